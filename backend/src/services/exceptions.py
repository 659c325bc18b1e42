"""Shared exceptions for service layer operations and pipeline capabilities."""
from uuid import UUID


class BookmarkAccessError(Exception):
    """
    Base exception for failed bookmark access checks.

    Missing and foreign bookmarks raise distinct subclasses so callers can tell
    them apart, but both map to a 4xx client error.
    """

    def __init__(self, bookmark_id: UUID, message: str) -> None:
        self.bookmark_id = bookmark_id
        super().__init__(message)


class BookmarkNotFoundError(BookmarkAccessError):
    """Raised when a referenced bookmark does not exist."""

    def __init__(self, bookmark_id: UUID) -> None:
        super().__init__(bookmark_id, f"Bookmark not found: {bookmark_id}")


class BookmarkForbiddenError(BookmarkAccessError):
    """Raised when a bookmark exists but belongs to another user."""

    def __init__(self, bookmark_id: UUID) -> None:
        super().__init__(bookmark_id, f"User is not allowed to access bookmark: {bookmark_id}")


class TagNotFoundError(Exception):
    """Raised when a tag is not found."""

    def __init__(self, tag_name: str) -> None:
        self.tag_name = tag_name
        super().__init__(f"Tag '{tag_name}' not found")


class TagAlreadyExistsError(Exception):
    """Raised when trying to rename a tag to a name that already exists."""

    def __init__(self, tag_name: str) -> None:
        self.tag_name = tag_name
        super().__init__(f"Tag '{tag_name}' already exists")


class InvalidStateError(Exception):
    """
    Raised when an operation is invalid for a resource's current state.

    Used when an operation does not apply to the bookmark's content variant
    (e.g., editing the text of a link bookmark, re-crawling a text bookmark).
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)


class UpstreamError(Exception):
    """
    Failure reported by an external capability (crawler, AI tagger, video
    extractor, search engine).

    Workers retry when `retryable` is True and record a terminal status
    otherwise.
    """

    retryable: bool = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        if retryable is not None:
            self.retryable = retryable
        super().__init__(message)


class TransientUpstreamError(UpstreamError):
    """Network error, timeout, rate limit or provider outage. Retried."""

    retryable = True


class PermanentUpstreamError(UpstreamError):
    """Input rejected outright (malformed URL, content filtered). Not retried."""

    retryable = False


class SearchUnavailableError(Exception):
    """Raised when search is requested but no search engine is configured."""

    def __init__(self, message: str = "Search engine is not configured") -> None:
        super().__init__(message)
