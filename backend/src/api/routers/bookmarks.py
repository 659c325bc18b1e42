"""Bookmark endpoints."""
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    get_asset_store,
    get_async_session,
    get_current_user,
    get_search_client,
)
from models import Bookmark
from models.user import User
from schemas.bookmark import (
    BookmarkCreate,
    BookmarkListResponse,
    BookmarkResponse,
    BookmarkSearchResponse,
    BookmarkTextUpdate,
    BookmarkUpdate,
)
from schemas.tag import BookmarkTagsUpdate, BookmarkTagsUpdateResponse
from services import bookmark_service, pipeline_state
from services.asset_store import AssetStore
from services.search_client import SearchEngineClient

router = APIRouter(prefix="/bookmarks", tags=["bookmarks"])


def _to_response(bookmark: Bookmark) -> BookmarkResponse:
    return BookmarkResponse.from_bookmark(bookmark, pipeline_state.display_stage(bookmark))


@router.post("/", response_model=BookmarkResponse, status_code=201)
async def create_bookmark(
    data: BookmarkCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    asset_store: AssetStore = Depends(get_asset_store),
) -> BookmarkResponse:
    """
    Create a bookmark.

    Crawling (links), AI tagging and search indexing run in the background;
    `stage` in the response shows where the bookmark currently is.
    """
    bookmark = await bookmark_service.create_bookmark(db, current_user.id, data, asset_store)
    return _to_response(bookmark)


@router.get("/", response_model=BookmarkListResponse)
async def list_bookmarks(
    limit: int = Query(default=20, ge=1, le=100, description="Page size"),
    cursor: datetime | None = Query(default=None, description="next_cursor of the previous page"),
    archived: bool | None = Query(default=None, description="Filter by archived flag"),
    favourited: bool | None = Query(default=None, description="Filter by favourited flag"),
    tag_id: UUID | None = Query(default=None, description="Only bookmarks with this tag"),
    ids: list[UUID] | None = Query(default=None, description="Only these bookmarks"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> BookmarkListResponse:
    """
    List bookmarks for the current user, newest first.

    - **cursor**: pass `next_cursor` from the previous page to continue
    - **archived** / **favourited**: filter by flag
    - **tag_id**: only bookmarks carrying this tag
    - **ids**: only the given bookmarks
    """
    bookmarks, next_cursor = await bookmark_service.list_bookmarks(
        db,
        current_user.id,
        limit=limit,
        cursor=cursor,
        archived=archived,
        favourited=favourited,
        tag_id=tag_id,
        ids=ids,
    )
    return BookmarkListResponse(
        items=[_to_response(b) for b in bookmarks],
        next_cursor=next_cursor,
    )


@router.get("/search", response_model=BookmarkSearchResponse)
async def search_bookmarks(
    q: str = Query(..., min_length=1, description="Full-text query"),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    search_client: SearchEngineClient | None = Depends(get_search_client),
) -> BookmarkSearchResponse:
    """
    Search the current user's bookmarks, most relevant first.

    Returns 503 if no search engine is configured or the engine is unavailable.
    """
    bookmarks = await bookmark_service.search_bookmarks(
        db, current_user.id, q, search_client, limit=limit,
    )
    return BookmarkSearchResponse(items=[_to_response(b) for b in bookmarks])


@router.get("/{bookmark_id}", response_model=BookmarkResponse)
async def get_bookmark(
    bookmark_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> BookmarkResponse:
    """Get a single bookmark by ID."""
    bookmark = await bookmark_service.get_bookmark(db, current_user.id, bookmark_id)
    return _to_response(bookmark)


@router.patch("/{bookmark_id}", response_model=BookmarkResponse)
async def update_bookmark(
    bookmark_id: UUID,
    data: BookmarkUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> BookmarkResponse:
    """Update archived/favourited flags and the note."""
    bookmark = await bookmark_service.update_bookmark(db, current_user.id, bookmark_id, data)
    return _to_response(bookmark)


@router.put("/{bookmark_id}/text", response_model=BookmarkResponse)
async def update_bookmark_text(
    bookmark_id: UUID,
    data: BookmarkTextUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> BookmarkResponse:
    """Replace the text of a text bookmark. Returns 400 for other bookmark types."""
    bookmark = await bookmark_service.update_bookmark_text(
        db, current_user.id, bookmark_id, data.text,
    )
    return _to_response(bookmark)


@router.delete("/{bookmark_id}", status_code=204)
async def delete_bookmark(
    bookmark_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    asset_store: AssetStore = Depends(get_asset_store),
) -> None:
    """Delete a bookmark and its stored assets."""
    await bookmark_service.ensure_bookmark_ownership(db, current_user.id, bookmark_id)
    await bookmark_service.delete_bookmark(db, current_user.id, bookmark_id, asset_store)


@router.post("/{bookmark_id}/recrawl", response_model=BookmarkResponse)
async def recrawl_bookmark(
    bookmark_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> BookmarkResponse:
    """Crawl a link bookmark again. Returns 400 for text and asset bookmarks."""
    bookmark = await bookmark_service.recrawl_bookmark(db, current_user.id, bookmark_id)
    return _to_response(bookmark)


@router.post("/{bookmark_id}/tags", response_model=BookmarkTagsUpdateResponse)
async def update_bookmark_tags(
    bookmark_id: UUID,
    data: BookmarkTagsUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> BookmarkTagsUpdateResponse:
    """Attach tags by name and detach tags by id."""
    attached, detached = await bookmark_service.update_bookmark_tags(
        db, current_user.id, bookmark_id, data.attach, data.detach,
    )
    return BookmarkTagsUpdateResponse(attached=attached, detached=detached)
