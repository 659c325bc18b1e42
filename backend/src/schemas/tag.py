"""Pydantic schemas for tags and tag attachments."""
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import AttachedBy
from schemas.validators import (
    MAX_TAG_LENGTH,
    validate_and_normalize_tag,
    validate_and_normalize_tags,
)


class TagCount(BaseModel):
    """
    A tag with its usage.

    `human_count` + `ai_count` always equals `bookmark_count`: every attachment
    keeps the provenance of whoever attached it first.
    """

    id: UUID
    name: str
    bookmark_count: int
    human_count: int
    ai_count: int


class TagListResponse(BaseModel):
    """All of the caller's tags, most used first."""

    tags: list[TagCount]


class TagResponse(BaseModel):
    """A tag after rename."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    created_at: datetime


class TagRenameRequest(BaseModel):
    """New name for a tag; normalized the same way as names on attach."""

    new_name: str = Field(..., min_length=1, max_length=MAX_TAG_LENGTH)

    @field_validator("new_name", mode="before")
    @classmethod
    def normalize_and_validate(cls, v: str) -> str:
        if not isinstance(v, str):
            raise ValueError("Tag name must be a string")
        return validate_and_normalize_tag(v)


class TagAttachmentResponse(BaseModel):
    """A tag attached to a bookmark, with who attached it."""

    id: UUID
    name: str
    attached_by: AttachedBy


class BookmarkTagsUpdate(BaseModel):
    """
    Attach tags by name and detach tags by id in one request.

    Missing tags are created on attach. Attaching a tag the bookmark already
    carries is a no-op and keeps the original provenance.
    """

    attach: list[str] = []
    detach: list[UUID] = []

    @field_validator("attach", mode="before")
    @classmethod
    def normalize_tags(cls, v: list[str] | None) -> list[str]:
        if v is None:
            return []
        return validate_and_normalize_tags(v)


class BookmarkTagsUpdateResponse(BaseModel):
    """Ids of the tags that were attached and detached."""

    attached: list[UUID]
    detached: list[UUID]
