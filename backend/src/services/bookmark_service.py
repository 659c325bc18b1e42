"""Service layer for bookmark operations (the mutation API)."""
import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    AttachedBy,
    Bookmark,
    BookmarkAsset,
    BookmarkLink,
    BookmarkText,
    BookmarkType,
    CrawlStatus,
    TaggingStatus,
)
from schemas.bookmark import (
    AssetContentCreate,
    BookmarkCreate,
    BookmarkUpdate,
    LinkContentCreate,
)
from services import pipeline_state
from services.asset_store import AssetStore
from services.bookmark_store import (
    ScopedBookmarks,
    ensure_bookmark_ownership,
    referenced_asset_ids,
    reset_for_recrawl,
)
from services.exceptions import InvalidStateError, SearchUnavailableError
from services.search_client import SearchEngineClient, owner_filter
from services.tag_service import attach_tags, detach_tags, get_or_create_tags

logger = logging.getLogger(__name__)

__all__ = [
    "create_bookmark",
    "delete_bookmark",
    "ensure_bookmark_ownership",
    "get_bookmark",
    "list_bookmarks",
    "recrawl_bookmark",
    "search_bookmarks",
    "update_bookmark",
    "update_bookmark_tags",
    "update_bookmark_text",
]


async def create_bookmark(
    db: AsyncSession,
    user_id: UUID,
    data: BookmarkCreate,
    asset_store: AssetStore | None = None,
) -> Bookmark:
    """
    Create a bookmark with its content variant and stage its first jobs.

    The bookmark row, the variant row, human tags and the staged jobs (crawl
    for links, tagging for text and assets, plus an index job) are written
    in the caller's transaction, so either all of them exist or none do.

    Args:
        db: Database session.
        user_id: Owner of the new bookmark.
        data: Bookmark creation data.
        asset_store: Used to check that a referenced asset was uploaded.

    Returns:
        The created bookmark with content and tags loaded.

    Raises:
        InvalidStateError: If an asset bookmark references a missing asset.

    Note:
        Does not commit. Caller (session generator) handles commit at request end.
    """
    content = data.content
    bookmark = Bookmark(
        user_id=user_id,
        archived=data.archived,
        favourited=data.favourited,
        note=data.note,
        tagging_status=TaggingStatus.PENDING.value,
    )
    if isinstance(content, LinkContentCreate):
        bookmark.type = BookmarkType.LINK.value
        bookmark.link = BookmarkLink(url=str(content.url), crawl_status=CrawlStatus.PENDING.value)
    elif isinstance(content, AssetContentCreate):
        if asset_store is not None and not await asset_store.exists(user_id, content.asset_id):
            raise InvalidStateError(f"Asset not found: {content.asset_id}")
        bookmark.type = BookmarkType.ASSET.value
        bookmark.asset = BookmarkAsset(
            asset_id=content.asset_id,
            asset_type=content.asset_type.value,
        )
    else:
        bookmark.type = BookmarkType.TEXT.value
        bookmark.text = BookmarkText(text=content.text)

    db.add(bookmark)
    await db.flush()

    if data.tags:
        tags = await get_or_create_tags(db, user_id, data.tags)
        await attach_tags(db, bookmark.id, tags, AttachedBy.HUMAN)

    pipeline_state.stage_planned_jobs(
        db, bookmark.id, pipeline_state.plan_initial_jobs(bookmark),
    )
    await db.flush()
    logger.info("Created %s bookmark %s", bookmark.type, bookmark.id)
    return await ScopedBookmarks(db, user_id).require(bookmark.id)


async def get_bookmark(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
) -> Bookmark:
    """
    Get a bookmark by ID, scoped to user.

    Raises:
        BookmarkNotFoundError: If the bookmark does not exist.
        BookmarkForbiddenError: If the bookmark belongs to another user.
    """
    return await ScopedBookmarks(db, user_id).require(bookmark_id)


async def list_bookmarks(
    db: AsyncSession,
    user_id: UUID,
    *,
    limit: int = 20,
    cursor: datetime | None = None,
    archived: bool | None = None,
    favourited: bool | None = None,
    tag_id: UUID | None = None,
    ids: list[UUID] | None = None,
) -> tuple[list[Bookmark], datetime | None]:
    """
    List a user's bookmarks, newest first.

    Args:
        db: Database session.
        user_id: User ID to scope bookmarks.
        limit: Page size.
        cursor: `next_cursor` from the previous page.
        archived: Filter by archived flag.
        favourited: Filter by favourited flag.
        tag_id: Only bookmarks carrying this tag.
        ids: Only these bookmarks; an empty list returns nothing.

    Returns:
        Tuple of (bookmarks, next_cursor).
    """
    return await ScopedBookmarks(db, user_id).list_page(
        limit=limit,
        cursor=cursor,
        archived=archived,
        favourited=favourited,
        tag_id=tag_id,
        ids=ids,
    )


async def update_bookmark(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
    data: BookmarkUpdate,
) -> Bookmark:
    """
    Update flags and note, and stage a re-index.

    Raises:
        BookmarkNotFoundError: If the bookmark does not exist.
        BookmarkForbiddenError: If the bookmark belongs to another user.

    Note:
        Does not commit. Caller (session generator) handles commit at request end.
    """
    scoped = ScopedBookmarks(db, user_id)
    bookmark = await scoped.require(bookmark_id)

    update_data = data.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        # Flags are not nullable; an explicit null leaves them unchanged
        if value is None and field in ("archived", "favourited"):
            continue
        setattr(bookmark, field, value)

    pipeline_state.stage_planned_jobs(db, bookmark.id, pipeline_state.plan_after_edit(bookmark))
    await db.flush()
    return await scoped.require(bookmark_id)


async def update_bookmark_text(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
    text: str,
) -> Bookmark:
    """
    Replace the text of a text bookmark and stage a re-index.

    Raises:
        BookmarkNotFoundError: If the bookmark does not exist.
        BookmarkForbiddenError: If the bookmark belongs to another user.
        InvalidStateError: If the bookmark is not a text bookmark.
    """
    scoped = ScopedBookmarks(db, user_id)
    bookmark = await scoped.require(bookmark_id)
    if bookmark.type != BookmarkType.TEXT or bookmark.text is None:
        raise InvalidStateError("Only text bookmarks have editable text")

    bookmark.text.text = text
    pipeline_state.stage_planned_jobs(db, bookmark.id, pipeline_state.plan_after_edit(bookmark))
    await db.flush()
    return await scoped.require(bookmark_id)


async def delete_bookmark(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
    asset_store: AssetStore,
) -> bool:
    """
    Delete a bookmark, remove it from the index and release its blobs.

    Content variant rows and tag attachments cascade. Blobs are released
    only after the delete affected a row and was committed, so a no-op or
    rolled-back delete never releases anything. Releasing is best-effort.

    Args:
        db: Database session.
        user_id: User ID to scope the bookmark.
        bookmark_id: ID of the bookmark to delete.
        asset_store: Store holding the bookmark's blobs.

    Returns:
        True if a bookmark was deleted, False if there was nothing to delete.

    Note:
        Commits, so that blobs are released only for a durable delete.
    """
    scoped = ScopedBookmarks(db, user_id)
    bookmark = await scoped.get(bookmark_id)
    if bookmark is None:
        return False

    asset_ids = referenced_asset_ids(bookmark)
    if not await scoped.delete(bookmark_id):
        return False

    pipeline_state.stage_planned_jobs(db, bookmark_id, [pipeline_state.DELETE_FROM_INDEX])
    await db.commit()
    logger.info("Deleted bookmark %s", bookmark_id)

    for asset_id in asset_ids:
        try:
            await asset_store.release(user_id, asset_id)
        except Exception:
            logger.warning(
                "Failed to release asset %s of bookmark %s", asset_id, bookmark_id,
                exc_info=True,
            )
    return True


async def recrawl_bookmark(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
) -> Bookmark:
    """
    Re-run the crawl of a link bookmark regardless of its current state.

    Resets crawl and tagging status to pending; tagging is re-staged by the
    crawl stage once it finishes.

    Raises:
        BookmarkNotFoundError: If the bookmark does not exist.
        BookmarkForbiddenError: If the bookmark belongs to another user.
        InvalidStateError: If the bookmark is not a link.
    """
    scoped = ScopedBookmarks(db, user_id)
    bookmark = await scoped.require(bookmark_id)
    if bookmark.type != BookmarkType.LINK:
        raise InvalidStateError("Only link bookmarks can be re-crawled")

    await reset_for_recrawl(db, bookmark_id)
    pipeline_state.stage_planned_jobs(
        db, bookmark_id, pipeline_state.plan_after_recrawl(bookmark),
    )
    await db.flush()
    return await scoped.require(bookmark_id)


async def update_bookmark_tags(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
    attach: list[str],
    detach: list[UUID],
) -> tuple[list[UUID], list[UUID]]:
    """
    Detach tags by id and attach tags by name (created if missing).

    Attachments made here have human provenance; a tag the tagging stage
    already attached keeps its AI provenance.

    Returns:
        Tuple of (attached tag ids, detached tag ids).

    Raises:
        BookmarkNotFoundError: If the bookmark does not exist.
        BookmarkForbiddenError: If the bookmark belongs to another user.
    """
    await ensure_bookmark_ownership(db, user_id, bookmark_id)

    detached = await detach_tags(db, bookmark_id, detach)
    tags = await get_or_create_tags(db, user_id, attach)
    attached = await attach_tags(db, bookmark_id, tags, AttachedBy.HUMAN)

    pipeline_state.stage_planned_jobs(db, bookmark_id, [pipeline_state.INDEX])
    await db.flush()
    return attached, detached


async def search_bookmarks(
    db: AsyncSession,
    user_id: UUID,
    query: str,
    search_client: SearchEngineClient | None,
    limit: int = 20,
) -> list[Bookmark]:
    """
    Full-text search over a user's bookmarks, most relevant first.

    The engine is always queried with an explicit owner filter, and hits are
    re-read from the database scoped to the owner, so stale or foreign index
    entries are never returned.

    Raises:
        SearchUnavailableError: If no search engine is configured.
        UpstreamError: If the search engine call fails.
    """
    if search_client is None:
        raise SearchUnavailableError()

    hits = await search_client.search(query, filter=owner_filter(str(user_id)), limit=limit)
    scores: dict[UUID, float] = {}
    for hit in hits:
        try:
            scores[UUID(hit.id)] = hit.score
        except ValueError:
            logger.warning("Ignoring search hit with invalid id %r", hit.id)

    bookmarks = await ScopedBookmarks(db, user_id).by_ids(list(scores))
    bookmarks.sort(key=lambda b: scores[b.id], reverse=True)
    return bookmarks
