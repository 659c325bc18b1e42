"""SQLAlchemy models."""
from models.base import Base, UUIDv7Mixin
from models.tag import AttachedBy, Tag, TagOnBookmark  # Must be before bookmark due to import
from models.bookmark import (
    AssetType,
    Bookmark,
    BookmarkAsset,
    BookmarkLink,
    BookmarkText,
    BookmarkType,
    CrawlStatus,
    TaggingStatus,
)
from models.outbox import OutboxJob
from models.user import User

__all__ = [
    "AssetType",
    "AttachedBy",
    "Base",
    "Bookmark",
    "BookmarkAsset",
    "BookmarkLink",
    "BookmarkText",
    "BookmarkType",
    "CrawlStatus",
    "OutboxJob",
    "Tag",
    "TagOnBookmark",
    "TaggingStatus",
    "UUIDv7Mixin",
    "User",
]
