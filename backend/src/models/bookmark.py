"""Bookmark model and its content variants."""
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, CreatedAtMixin, UTCDateTime, UUIDv7Mixin

if TYPE_CHECKING:
    from models.tag import TagOnBookmark
    from models.user import User


class BookmarkType(StrEnum):
    """Discriminant naming the single content variant a bookmark carries."""

    LINK = "link"
    TEXT = "text"
    ASSET = "asset"


class TaggingStatus(StrEnum):
    """Lifecycle of the AI tagging stage."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class CrawlStatus(StrEnum):
    """Lifecycle of the crawl stage for link bookmarks."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class AssetType(StrEnum):
    """Supported uploaded asset kinds."""

    IMAGE = "image"
    PDF = "pdf"


class Bookmark(Base, UUIDv7Mixin, CreatedAtMixin):
    """
    Bookmark model - owner, flags and pipeline status.

    Exactly one variant row (link, text or asset) exists and it always matches
    `type`. Variant rows and tag attachments cascade on delete.
    """

    __tablename__ = "bookmarks"
    __table_args__ = (
        # Cursor pagination walks (user_id, created_at DESC)
        Index("ix_bookmarks_user_id_created_at", "user_id", "created_at"),
    )

    user_id: Mapped[UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    favourited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)  # AI-generated
    tagging_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=TaggingStatus.PENDING.value,
    )

    user: Mapped["User"] = relationship(back_populates="bookmarks")
    link: Mapped["BookmarkLink | None"] = relationship(
        back_populates="bookmark",
        uselist=False,
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    text: Mapped["BookmarkText | None"] = relationship(
        back_populates="bookmark",
        uselist=False,
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    asset: Mapped["BookmarkAsset | None"] = relationship(
        back_populates="bookmark",
        uselist=False,
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    tag_links: Mapped[list["TagOnBookmark"]] = relationship(
        back_populates="bookmark",
        lazy="selectin",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def content(self) -> "BookmarkLink | BookmarkText | BookmarkAsset | None":
        """The variant row selected by `type`."""
        if self.type == BookmarkType.LINK:
            return self.link
        if self.type == BookmarkType.TEXT:
            return self.text
        if self.type == BookmarkType.ASSET:
            return self.asset
        return None

    @property
    def tag_names(self) -> list[str]:
        """Names of attached tags, sorted for stable output."""
        return sorted(link.tag.name for link in self.tag_links)


class BookmarkLink(Base):
    """Link content: the URL plus everything the crawl stage derives from it."""

    __tablename__ = "bookmark_links"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookmarks.id", ondelete="CASCADE"),
        primary_key=True,
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    html_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    crawled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    crawl_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=CrawlStatus.PENDING.value,
    )
    screenshot_asset_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    full_page_screenshot_asset_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    video_asset_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    bookmark: Mapped[Bookmark] = relationship(back_populates="link")


class BookmarkText(Base):
    """Free-text content."""

    __tablename__ = "bookmark_texts"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookmarks.id", ondelete="CASCADE"),
        primary_key=True,
    )
    text: Mapped[str | None] = mapped_column(Text, nullable=True)

    bookmark: Mapped[Bookmark] = relationship(back_populates="text")


class BookmarkAsset(Base):
    """Uploaded asset content (image or PDF) stored in the asset store."""

    __tablename__ = "bookmark_assets"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookmarks.id", ondelete="CASCADE"),
        primary_key=True,
    )
    asset_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)  # extracted PDF text

    bookmark: Mapped[Bookmark] = relationship(back_populates="asset")
