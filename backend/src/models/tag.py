"""Tag model and the bookmark-tag attachment association."""
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, CreatedAtMixin, UTCDateTime, UUIDv7Mixin, utcnow

if TYPE_CHECKING:
    from models.bookmark import Bookmark
    from models.user import User


class AttachedBy(StrEnum):
    """Provenance of a tag attachment."""

    HUMAN = "human"
    AI = "ai"


class Tag(Base, UUIDv7Mixin, CreatedAtMixin):
    """Tag model - stores unique tag names per user."""

    __tablename__ = "tags"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_tags_user_id_name"),
    )

    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    user: Mapped["User"] = relationship(back_populates="tags")
    attachments: Mapped[list["TagOnBookmark"]] = relationship(
        back_populates="tag",
        passive_deletes=True,
    )


class TagOnBookmark(Base):
    """
    Attachment of a tag to a bookmark.

    `attached_by` records who attached the tag first and is never updated;
    re-attaching an existing pair is a no-op.
    """

    __tablename__ = "tags_on_bookmarks"
    __table_args__ = (
        # Composite PK already indexes bookmark_id first
        Index("ix_tags_on_bookmarks_tag_id", "tag_id"),
    )

    bookmark_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookmarks.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tag_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
    )
    attached_by: Mapped[str] = mapped_column(String(16), nullable=False)
    attached_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    bookmark: Mapped["Bookmark"] = relationship(back_populates="tag_links")
    tag: Mapped[Tag] = relationship(back_populates="attachments", lazy="joined")
