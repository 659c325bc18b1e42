"""
Bookmark persistence: an owner-scoped repository for the API and narrow
field-level writers for the pipeline stages.

`ScopedBookmarks` takes the owner once and filters every query by it, so no
call site can forget the tenant filter. Stage workers have no owner context;
they use the module-level accessors, each of which touches only the fields
its stage owns and reports whether a row was affected so a stage running
after a delete becomes a no-op.
"""
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models import (
    Bookmark,
    BookmarkAsset,
    BookmarkLink,
    CrawlStatus,
    TaggingStatus,
    TagOnBookmark,
)
from models.base import utcnow
from services.exceptions import BookmarkForbiddenError, BookmarkNotFoundError

DEFAULT_PAGE_SIZE = 20


async def ensure_bookmark_ownership(
    db: AsyncSession,
    user_id: UUID,
    bookmark_id: UUID,
) -> None:
    """
    Check that a bookmark exists and belongs to the user, in that order.

    Raises:
        BookmarkNotFoundError: If the bookmark does not exist.
        BookmarkForbiddenError: If the bookmark belongs to another user.
    """
    owner_id = (
        await db.execute(select(Bookmark.user_id).where(Bookmark.id == bookmark_id))
    ).scalar_one_or_none()
    if owner_id is None:
        raise BookmarkNotFoundError(bookmark_id)
    if owner_id != user_id:
        raise BookmarkForbiddenError(bookmark_id)


def referenced_asset_ids(bookmark: Bookmark) -> list[str]:
    """All asset store blobs a bookmark points at, without duplicates."""
    candidates: list[str | None] = []
    if bookmark.asset is not None:
        candidates.append(bookmark.asset.asset_id)
    if bookmark.link is not None:
        candidates.extend([
            bookmark.link.screenshot_asset_id,
            bookmark.link.full_page_screenshot_asset_id,
            bookmark.link.video_asset_id,
        ])
    return list(dict.fromkeys(a for a in candidates if a))


class ScopedBookmarks:
    """Bookmark repository pre-filtered by owner."""

    def __init__(self, db: AsyncSession, user_id: UUID) -> None:
        self.db = db
        self.user_id = user_id

    def _select(self):  # noqa: ANN202
        return select(Bookmark).where(Bookmark.user_id == self.user_id)

    async def get(self, bookmark_id: UUID) -> Bookmark | None:
        """Get a bookmark with its content and tags, or None if not owned or missing."""
        result = await self.db.execute(
            self._select()
            .where(Bookmark.id == bookmark_id)
            .execution_options(populate_existing=True),
        )
        return result.scalar_one_or_none()

    async def require(self, bookmark_id: UUID) -> Bookmark:
        """
        Get a bookmark, distinguishing missing from foreign.

        Raises:
            BookmarkNotFoundError: If the bookmark does not exist.
            BookmarkForbiddenError: If the bookmark belongs to another user.
        """
        await ensure_bookmark_ownership(self.db, self.user_id, bookmark_id)
        bookmark = await self.get(bookmark_id)
        if bookmark is None:
            # Deleted between the check and the read
            raise BookmarkNotFoundError(bookmark_id)
        return bookmark

    async def list_page(
        self,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        cursor: datetime | None = None,
        archived: bool | None = None,
        favourited: bool | None = None,
        tag_id: UUID | None = None,
        ids: list[UUID] | None = None,
    ) -> tuple[list[Bookmark], datetime | None]:
        """
        List bookmarks newest first with cursor pagination.

        One extra row is fetched to detect a following page; its `created_at`
        becomes the next cursor, used as an inclusive upper bound.

        Returns:
            Tuple of (bookmarks, next_cursor). next_cursor is None on the last page.
        """
        if ids is not None and not ids:
            return [], None

        stmt = self._select()
        if archived is not None:
            stmt = stmt.where(Bookmark.archived == archived)
        if favourited is not None:
            stmt = stmt.where(Bookmark.favourited == favourited)
        if ids is not None:
            stmt = stmt.where(Bookmark.id.in_(ids))
        if tag_id is not None:
            stmt = stmt.where(
                exists().where(
                    TagOnBookmark.bookmark_id == Bookmark.id,
                    TagOnBookmark.tag_id == tag_id,
                ),
            )
        if cursor is not None:
            stmt = stmt.where(Bookmark.created_at <= cursor)
        stmt = stmt.order_by(Bookmark.created_at.desc(), Bookmark.id.desc()).limit(limit + 1)

        items = list((await self.db.execute(stmt)).scalars().all())
        next_cursor = None
        if len(items) > limit:
            next_cursor = items.pop().created_at
        return items, next_cursor

    async def by_ids(self, ids: list[UUID]) -> list[Bookmark]:
        """Owned bookmarks among `ids`, in no particular order."""
        if not ids:
            return []
        result = await self.db.execute(self._select().where(Bookmark.id.in_(ids)))
        return list(result.scalars().all())

    async def delete(self, bookmark_id: UUID) -> bool:
        """
        Delete an owned bookmark. Variant rows and attachments cascade.

        Returns:
            True if a row was deleted.
        """
        result = await self.db.execute(
            delete(Bookmark).where(
                Bookmark.id == bookmark_id,
                Bookmark.user_id == self.user_id,
            ),
        )
        return result.rowcount > 0


# =============================================================================
# Stage accessors (no owner context)
# =============================================================================


async def load_bookmark(db: AsyncSession, bookmark_id: UUID) -> Bookmark | None:
    """Re-read a bookmark with content and tags, bypassing the identity map."""
    result = await db.execute(
        select(Bookmark)
        .where(Bookmark.id == bookmark_id)
        .execution_options(populate_existing=True),
    )
    return result.scalar_one_or_none()


async def write_crawl_result(
    db: AsyncSession,
    bookmark_id: UUID,
    fields: dict,
) -> bool:
    """
    Write crawl output to a link and mark the crawl successful.

    Only the keys present in `fields` are written, so a field the crawl did
    not produce keeps its previous value. Does not commit.

    Returns:
        True if the link row still existed.
    """
    values = {**fields, "crawled_at": utcnow(), "crawl_status": CrawlStatus.SUCCESS.value}
    result = await db.execute(
        update(BookmarkLink).where(BookmarkLink.id == bookmark_id).values(**values),
    )
    return result.rowcount > 0


async def mark_crawl_failed(db: AsyncSession, bookmark_id: UUID) -> bool:
    """Record a terminal crawl failure. `crawled_at` is left untouched."""
    result = await db.execute(
        update(BookmarkLink)
        .where(BookmarkLink.id == bookmark_id)
        .values(crawl_status=CrawlStatus.FAILURE.value),
    )
    return result.rowcount > 0


async def reset_for_recrawl(db: AsyncSession, bookmark_id: UUID) -> None:
    """Put crawl and tagging back to pending before a manual re-crawl."""
    await db.execute(
        update(BookmarkLink)
        .where(BookmarkLink.id == bookmark_id)
        .values(crawl_status=CrawlStatus.PENDING.value),
    )
    await db.execute(
        update(Bookmark)
        .where(Bookmark.id == bookmark_id)
        .values(tagging_status=TaggingStatus.PENDING.value),
    )


async def transition_tagging_status(
    db: AsyncSession,
    bookmark_id: UUID,
    new_status: TaggingStatus,
    *,
    summary: str | None = None,
) -> bool:
    """
    Compare-and-set `tagging_status` from pending to `new_status`.

    The summary is written in the same statement when given. On PostgreSQL
    the updated row stays locked until commit, so a concurrent delete waits
    for the tagging transaction to finish.

    Returns:
        True if this call performed the transition; False if the bookmark is
        gone or another delivery already finished it.
    """
    values: dict = {"tagging_status": new_status.value}
    if summary is not None:
        values["summary"] = summary
    result = await db.execute(
        update(Bookmark)
        .where(
            Bookmark.id == bookmark_id,
            Bookmark.tagging_status == TaggingStatus.PENDING.value,
        )
        .values(**values),
    )
    return result.rowcount > 0


async def set_asset_content(db: AsyncSession, bookmark_id: UUID, content: str) -> bool:
    """Store text extracted from an asset (PDF) by the tagging stage."""
    result = await db.execute(
        update(BookmarkAsset).where(BookmarkAsset.id == bookmark_id).values(content=content),
    )
    return result.rowcount > 0


async def set_video_asset(db: AsyncSession, bookmark_id: UUID, asset_id: str) -> bool:
    """
    Record a downloaded video on a link, only if none is recorded yet.

    Returns:
        True if the reference was written; False if the link is gone or
        already has a video.
    """
    result = await db.execute(
        update(BookmarkLink)
        .where(
            BookmarkLink.id == bookmark_id,
            BookmarkLink.video_asset_id.is_(None),
        )
        .values(video_asset_id=asset_id),
    )
    return result.rowcount > 0
