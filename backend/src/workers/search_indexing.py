"""Search indexing stage: keep the search engine in sync with the database."""
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobs.queue import JobQueue
from models import Bookmark
from schemas.jobs import JobPayload, Topic
from services.bookmark_store import load_bookmark
from services.search_client import SearchEngineClient
from workers.base import Worker

logger = logging.getLogger(__name__)


def build_document(bookmark: Bookmark) -> dict[str, Any]:
    """Search document for a bookmark. `userId` is the owner filter key."""
    document: dict[str, Any] = {
        "id": str(bookmark.id),
        "userId": str(bookmark.user_id),
        "type": bookmark.type,
        "createdAt": int(bookmark.created_at.timestamp()),
        "archived": bookmark.archived,
        "favourited": bookmark.favourited,
        "note": bookmark.note,
        "summary": bookmark.summary,
        "tags": bookmark.tag_names,
    }
    if bookmark.link is not None:
        document.update(
            url=bookmark.link.url,
            title=bookmark.link.title,
            description=bookmark.link.description,
            content=bookmark.link.content,
        )
    if bookmark.text is not None:
        document["text"] = bookmark.text.text
    if bookmark.asset is not None:
        document["content"] = bookmark.asset.content
    return document


class SearchIndexingWorker(Worker):
    """
    Consumes `search_indexing` jobs.

    Jobs are serialized per bookmark and an index job always re-reads the
    database, so an index job that runs after the bookmark was deleted
    removes the document instead of resurrecting it.
    """

    topic = Topic.SEARCH_INDEXING
    lock_per_bookmark = True

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queue: JobQueue,
        search_client: SearchEngineClient | None,
        **kwargs,
    ) -> None:
        super().__init__(session_factory, queue, **kwargs)
        self.search_client = search_client

    async def handle(self, db: AsyncSession, payload: JobPayload) -> None:
        """Index or delete the bookmark's document."""
        if self.search_client is None:
            logger.debug("Search is not configured, dropping job for %s", payload.bookmark_id)
            return

        document_id = str(payload.bookmark_id)
        if payload.kind == "delete":
            await self.search_client.delete(document_id)
            logger.debug("Removed bookmark %s from the index", document_id)
            return

        bookmark = await load_bookmark(db, payload.bookmark_id)
        if bookmark is None:
            await self.search_client.delete(document_id)
            logger.info("Bookmark %s is gone, removed from the index", document_id)
            return
        await self.search_client.upsert(build_document(bookmark))
        logger.debug("Indexed bookmark %s", document_id)
