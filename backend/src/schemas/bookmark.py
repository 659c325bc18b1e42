"""Pydantic schemas for bookmark endpoints."""
from datetime import datetime
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator

from models import AssetType, Bookmark, BookmarkType
from schemas.tag import TagAttachmentResponse
from schemas.validators import (
    validate_and_normalize_tags,
    validate_content_length,
    validate_note_length,
    validate_text_edit_length,
)


# =============================================================================
# Create
# =============================================================================


class LinkContentCreate(BaseModel):
    """Link variant: only the URL is user-provided, the crawl stage fills the rest."""

    type: Literal["link"] = "link"
    # HttpUrl normalizes root domains with trailing slash (example.com -> example.com/)
    url: HttpUrl


class TextContentCreate(BaseModel):
    """Free-text variant."""

    type: Literal["text"] = "text"
    text: str = Field(..., min_length=1)

    @field_validator("text")
    @classmethod
    def check_text_length(cls, v: str) -> str:
        """Validate text length."""
        return validate_content_length(v)


class AssetContentCreate(BaseModel):
    """Asset variant referencing a blob previously uploaded via /assets."""

    type: Literal["asset"] = "asset"
    asset_id: str = Field(..., min_length=1, max_length=64)
    asset_type: AssetType


BookmarkContentCreate = Annotated[
    LinkContentCreate | TextContentCreate | AssetContentCreate,
    Field(discriminator="type"),
]


class BookmarkCreate(BaseModel):
    """Schema for creating a new bookmark."""

    content: BookmarkContentCreate
    note: str | None = None
    archived: bool = False
    favourited: bool = False
    tags: list[str] = []

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, v: list[str]) -> list[str]:
        """Normalize and validate tags."""
        if v is None:
            return []
        return validate_and_normalize_tags(v)

    @field_validator("note")
    @classmethod
    def check_note_length(cls, v: str | None) -> str | None:
        """Validate note length."""
        return validate_note_length(v)


# =============================================================================
# Update
# =============================================================================


class BookmarkUpdate(BaseModel):
    """
    Schema for updating bookmark flags and note.

    Only fields present in the request are applied; sending `note: null`
    clears the note.
    """

    archived: bool | None = None
    favourited: bool | None = None
    note: str | None = None

    @field_validator("note")
    @classmethod
    def check_note_length(cls, v: str | None) -> str | None:
        """Validate note length."""
        return validate_note_length(v)


class BookmarkTextUpdate(BaseModel):
    """Schema for editing the text of a text bookmark."""

    text: str

    @field_validator("text")
    @classmethod
    def check_text_length(cls, v: str) -> str:
        """Validate text length against the direct-edit limit."""
        return validate_text_edit_length(v)


# =============================================================================
# Responses
# =============================================================================


class LinkContentResponse(BaseModel):
    """Link variant with crawl-derived fields (raw HTML and page text omitted)."""

    model_config = ConfigDict(from_attributes=True)

    type: Literal["link"] = "link"
    url: str
    title: str | None
    description: str | None
    image_url: str | None
    crawled_at: datetime | None  # null until the crawl stage succeeds
    crawl_status: str
    screenshot_asset_id: str | None
    full_page_screenshot_asset_id: str | None
    video_asset_id: str | None


class TextContentResponse(BaseModel):
    """Text variant."""

    model_config = ConfigDict(from_attributes=True)

    type: Literal["text"] = "text"
    text: str | None


class AssetContentResponse(BaseModel):
    """Asset variant."""

    model_config = ConfigDict(from_attributes=True)

    type: Literal["asset"] = "asset"
    asset_id: str
    asset_type: str


class BookmarkResponse(BaseModel):
    """
    Schema for bookmark responses.

    `stage` is the current pipeline stage (created, crawling, tagging, ready)
    computed from the bookmark's status fields at read time.
    """

    id: UUID
    type: str
    created_at: datetime
    archived: bool
    favourited: bool
    note: str | None
    summary: str | None
    tagging_status: str
    stage: str
    content: LinkContentResponse | TextContentResponse | AssetContentResponse | None
    tags: list[TagAttachmentResponse]

    @classmethod
    def from_bookmark(cls, bookmark: Bookmark, stage: str) -> "BookmarkResponse":
        """Build a response from a loaded bookmark and its pipeline stage."""
        content: LinkContentResponse | TextContentResponse | AssetContentResponse | None = None
        if bookmark.type == BookmarkType.LINK and bookmark.link is not None:
            content = LinkContentResponse.model_validate(bookmark.link)
        elif bookmark.type == BookmarkType.TEXT and bookmark.text is not None:
            content = TextContentResponse.model_validate(bookmark.text)
        elif bookmark.type == BookmarkType.ASSET and bookmark.asset is not None:
            content = AssetContentResponse.model_validate(bookmark.asset)

        tags = sorted(
            (
                TagAttachmentResponse(
                    id=link.tag.id,
                    name=link.tag.name,
                    attached_by=link.attached_by,
                )
                for link in bookmark.tag_links
            ),
            key=lambda t: t.name,
        )
        return cls(
            id=bookmark.id,
            type=bookmark.type,
            created_at=bookmark.created_at,
            archived=bookmark.archived,
            favourited=bookmark.favourited,
            note=bookmark.note,
            summary=bookmark.summary,
            tagging_status=bookmark.tagging_status,
            stage=stage,
            content=content,
            tags=tags,
        )


class BookmarkListResponse(BaseModel):
    """
    Schema for cursor-paginated bookmark lists.

    Pass `next_cursor` back as `cursor` to fetch the next page; it is null on
    the last page.
    """

    items: list[BookmarkResponse]
    next_cursor: datetime | None = None


class BookmarkSearchResponse(BaseModel):
    """Search results ordered by relevance."""

    items: list[BookmarkResponse]


class AssetUploadResponse(BaseModel):
    """Reference to a stored asset, used to create an asset bookmark."""

    asset_id: str
    asset_type: AssetType
    size: int
