"""Tests for the search indexing stage worker."""
from collections.abc import Callable
from typing import Any

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker

from jobs.queue import JobQueue
from models import Bookmark, User
from schemas.bookmark import BookmarkCreate, LinkContentCreate, TextContentCreate
from schemas.jobs import Topic
from services.exceptions import TransientUpstreamError
from tests.conftest import FakeSearchClient, Pipeline
from workers.search_indexing import build_document


def _text(text: str = "remember the milk", **kwargs) -> BookmarkCreate:
    return BookmarkCreate(content=TextContentCreate(text=text), **kwargs)


async def test__build_document__text_bookmark(
    test_user: User,
    create_bookmark: Callable[..., Any],
    reload: Callable[..., Any],
) -> None:
    """Documents carry the owner, flags, tags and the bookmark's text."""
    created = await create_bookmark(
        test_user, _text(note="shopping", favourited=True, tags=["home"]),
    )
    bookmark = await reload(created.id)

    document = build_document(bookmark)

    assert document["id"] == str(bookmark.id)
    assert document["userId"] == str(test_user.id)
    assert document["type"] == "text"
    assert document["text"] == "remember the milk"
    assert document["note"] == "shopping"
    assert document["favourited"] is True
    assert document["archived"] is False
    assert document["tags"] == ["home"]
    assert document["createdAt"] == int(bookmark.created_at.timestamp())
    assert "url" not in document


async def test__build_document__link_bookmark(
    pipeline: Pipeline,
    test_user: User,
    create_bookmark: Callable[..., Any],
    reload: Callable[..., Any],
) -> None:
    """Link documents carry the crawled fields."""
    created = await create_bookmark(
        test_user, BookmarkCreate(content=LinkContentCreate(url="https://example.com")),
    )
    await pipeline.crawler.run_one()

    document = build_document(await reload(created.id))

    assert document["url"] == "https://example.com/"
    assert document["title"] == "Example Domain"
    assert document["content"] == "Example page content"


async def test__index__upserts_current_state(
    pipeline: Pipeline,
    search_client: FakeSearchClient,
    test_user: User,
    create_bookmark: Callable[..., Any],
) -> None:
    """An index job writes the bookmark's document."""
    bookmark = await create_bookmark(test_user, _text())

    await pipeline.indexing.run_one()

    assert search_client.documents[str(bookmark.id)]["text"] == "remember the milk"


async def test__index__deleted_bookmark_removes_document(
    pipeline: Pipeline,
    search_client: FakeSearchClient,
    session_factory: async_sessionmaker,
    test_user: User,
    create_bookmark: Callable[..., Any],
) -> None:
    """An index job for a deleted bookmark deletes instead of resurrecting it."""
    bookmark = await create_bookmark(test_user, _text())
    search_client.documents[str(bookmark.id)] = {"id": str(bookmark.id)}
    async with session_factory() as db:
        await db.execute(delete(Bookmark).where(Bookmark.id == bookmark.id))
        await db.commit()

    await pipeline.indexing.run_one()

    assert str(bookmark.id) not in search_client.documents


async def test__delete__removes_document(
    pipeline: Pipeline,
    search_client: FakeSearchClient,
    queue: JobQueue,
    test_user: User,
    create_bookmark: Callable[..., Any],
) -> None:
    """A delete job removes the document; deleting twice is fine."""
    bookmark = await create_bookmark(test_user, _text())
    await pipeline.indexing.run_one()
    payload = {"bookmarkId": str(bookmark.id), "kind": "delete"}

    await queue.enqueue(Topic.SEARCH_INDEXING, payload)
    await queue.enqueue(Topic.SEARCH_INDEXING, payload)
    await pipeline.indexing.run_one()
    await pipeline.indexing.run_one()

    assert search_client.documents == {}
    assert (await queue.counts(Topic.SEARCH_INDEXING))["failed"] == 0


async def test__index__busy_bookmark_is_deferred(
    pipeline: Pipeline,
    search_client: FakeSearchClient,
    queue: JobQueue,
    test_user: User,
    create_bookmark: Callable[..., Any],
) -> None:
    """A job whose bookmark is locked by another indexer is put back untouched."""
    bookmark = await create_bookmark(test_user, _text())

    async with queue.lock(f"search_indexing:bookmark:{bookmark.id}", ttl_seconds=10):
        await pipeline.indexing.run_one()

    assert search_client.documents == {}
    counts = await queue.counts(Topic.SEARCH_INDEXING)
    assert counts["delayed"] == 1
    assert counts["failed"] == 0


async def test__index__engine_outage_is_retried(
    pipeline: Pipeline,
    search_client: FakeSearchClient,
    queue: JobQueue,
    test_user: User,
    create_bookmark: Callable[..., Any],
) -> None:
    """A transient engine error retries the job."""
    search_client.errors = [TransientUpstreamError("Search engine unreachable")]
    bookmark = await create_bookmark(test_user, _text())

    await pipeline.indexing.run_one()
    assert str(bookmark.id) not in search_client.documents

    await pipeline.indexing.run_one()
    assert str(bookmark.id) in search_client.documents


async def test__index__unconfigured_search_drops_jobs(
    pipeline: Pipeline,
    queue: JobQueue,
    test_user: User,
    create_bookmark: Callable[..., Any],
) -> None:
    """Without a search engine, index jobs complete without effect."""
    pipeline.indexing.search_client = None
    await create_bookmark(test_user, _text())

    assert await pipeline.indexing.run_one() is True

    counts = await queue.counts(Topic.SEARCH_INDEXING)
    assert counts == {"waiting": 0, "delayed": 0, "active": 0, "failed": 0}
