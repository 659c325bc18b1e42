"""Service layer for tag operations."""
from uuid import UUID

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobs.outbox import stage_bookmark_job
from models import AttachedBy, Tag, TagOnBookmark
from schemas.jobs import Topic
from schemas.tag import TagCount
from schemas.validators import validate_and_normalize_tags
from services.exceptions import TagAlreadyExistsError, TagNotFoundError
from services.utils import dialect_insert


async def get_or_create_tags(
    db: AsyncSession,
    user_id: UUID,
    tag_names: list[str],
) -> list[Tag]:
    """
    Get existing tags or create new ones.

    Concurrent creators of the same name (a user and the tagging stage, say)
    converge on a single row: missing names are inserted with ON CONFLICT DO
    NOTHING and then read back.

    Args:
        db: Database session.
        user_id: User ID to scope tags.
        tag_names: List of tag names to get or create.

    Returns:
        List of Tag objects in the order of the normalized names.
    """
    if not tag_names:
        return []

    normalized = validate_and_normalize_tags(tag_names)
    if not normalized:
        return []

    await db.execute(
        dialect_insert(db, Tag)
        .values([{"user_id": user_id, "name": name} for name in normalized])
        .on_conflict_do_nothing(index_elements=["user_id", "name"]),
    )

    result = await db.execute(
        select(Tag).where(
            Tag.user_id == user_id,
            Tag.name.in_(normalized),
        ),
    )
    by_name = {tag.name: tag for tag in result.scalars()}
    return [by_name[name] for name in normalized]


async def attach_tags(
    db: AsyncSession,
    bookmark_id: UUID,
    tags: list[Tag],
    attached_by: AttachedBy,
) -> list[UUID]:
    """
    Attach tags to a bookmark. Idempotent; does not commit.

    A pair that is already attached keeps its original provenance.

    Args:
        db: Database session.
        bookmark_id: Bookmark to attach to (ownership already checked).
        tags: Tags owned by the bookmark's owner.
        attached_by: Provenance recorded for newly created attachments.

    Returns:
        IDs of all requested tags.
    """
    if not tags:
        return []

    await db.execute(
        dialect_insert(db, TagOnBookmark)
        .values(
            [
                {
                    "bookmark_id": bookmark_id,
                    "tag_id": tag.id,
                    "attached_by": attached_by.value,
                }
                for tag in tags
            ],
        )
        .on_conflict_do_nothing(index_elements=["bookmark_id", "tag_id"]),
    )
    return [tag.id for tag in tags]


async def detach_tags(
    db: AsyncSession,
    bookmark_id: UUID,
    tag_ids: list[UUID],
) -> list[UUID]:
    """
    Detach tags from a bookmark. Detaching a tag that is not attached is a no-op.

    Returns:
        IDs of the requested tags.
    """
    if not tag_ids:
        return []
    await db.execute(
        delete(TagOnBookmark).where(
            TagOnBookmark.bookmark_id == bookmark_id,
            TagOnBookmark.tag_id.in_(tag_ids),
        ),
    )
    return list(tag_ids)


async def get_user_tags_with_counts(
    db: AsyncSession,
    user_id: UUID,
) -> list[TagCount]:
    """
    Get all tags for a user with their attachment counts split by provenance.

    Args:
        db: Database session.
        user_id: User ID to scope tags.

    Returns:
        List of TagCount objects sorted by count desc, then name asc.
    """
    # LEFT JOIN keeps tags with no attachments; COUNT ignores NULLs
    count = func.count(TagOnBookmark.bookmark_id)
    result = await db.execute(
        select(
            Tag.id,
            Tag.name,
            count.label("count"),
            func.coalesce(
                func.sum(case((TagOnBookmark.attached_by == AttachedBy.HUMAN.value, 1), else_=0)),
                0,
            ).label("human_count"),
            func.coalesce(
                func.sum(case((TagOnBookmark.attached_by == AttachedBy.AI.value, 1), else_=0)),
                0,
            ).label("ai_count"),
        )
        .outerjoin(TagOnBookmark, Tag.id == TagOnBookmark.tag_id)
        .where(Tag.user_id == user_id)
        .group_by(Tag.id, Tag.name)
        .order_by(count.desc(), Tag.name.asc()),
    )

    return [
        TagCount(
            id=row.id,
            name=row.name,
            bookmark_count=row.count,
            human_count=row.human_count,
            ai_count=row.ai_count,
        )
        for row in result
    ]


async def get_tag_by_name(db: AsyncSession, user_id: UUID, tag_name: str) -> Tag | None:
    """Look up one of the user's tags; the name is compared case-insensitively."""
    result = await db.execute(
        select(Tag).where(Tag.user_id == user_id, Tag.name == tag_name.strip().lower()),
    )
    return result.scalar_one_or_none()


async def _require_tag(db: AsyncSession, user_id: UUID, tag_name: str) -> Tag:
    tag = await get_tag_by_name(db, user_id, tag_name)
    if tag is None:
        raise TagNotFoundError(tag_name.strip().lower())
    return tag


async def _reindex_tagged_bookmarks(db: AsyncSession, tag_id: UUID) -> None:
    """Stage an index job for every bookmark carrying the tag."""
    result = await db.execute(
        select(TagOnBookmark.bookmark_id).where(TagOnBookmark.tag_id == tag_id),
    )
    for bookmark_id in result.scalars():
        stage_bookmark_job(db, Topic.SEARCH_INDEXING, bookmark_id, kind="index")


async def rename_tag(db: AsyncSession, user_id: UUID, old_name: str, new_name: str) -> Tag:
    """
    Rename one of the user's tags and re-index the bookmarks carrying it.

    Renaming a tag to its current name is a no-op.

    Raises:
        TagNotFoundError: The user has no tag called `old_name`.
        TagAlreadyExistsError: The user already has a tag called `new_name`.
    """
    tag = await _require_tag(db, user_id, old_name)
    target = new_name.strip().lower()
    if tag.name == target:
        return tag
    if await get_tag_by_name(db, user_id, target) is not None:
        raise TagAlreadyExistsError(target)

    tag.name = target
    try:
        await db.flush()
    except IntegrityError as e:
        # (user_id, name) is the only constraint a rename can violate
        await db.rollback()
        raise TagAlreadyExistsError(target) from e

    await _reindex_tagged_bookmarks(db, tag.id)
    await db.refresh(tag)
    return tag


async def delete_tag(db: AsyncSession, user_id: UUID, tag_name: str) -> None:
    """
    Delete one of the user's tags. Its attachments go with it and the
    bookmarks that carried it are re-indexed.

    Raises:
        TagNotFoundError: The user has no tag called `tag_name`.
    """
    tag = await _require_tag(db, user_id, tag_name)
    await _reindex_tagged_bookmarks(db, tag.id)
    await db.execute(delete(Tag).where(Tag.id == tag.id))
    await db.flush()
