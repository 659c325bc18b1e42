"""
Tag endpoints.

Tags are addressed by name. Missing tags surface as 404 and rename collisions
as 409 through the app-level exception handlers.
"""
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_async_session, get_current_user
from models.user import User
from schemas.tag import TagListResponse, TagRenameRequest, TagResponse
from services import tag_service

router = APIRouter(prefix="/tags", tags=["tags"])


@router.get("/", response_model=TagListResponse)
async def list_tags(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> TagListResponse:
    """
    List the caller's tags, most used first.

    Counts are split by who attached the tag: the user (`human_count`) or
    the tagging stage (`ai_count`).
    """
    counts = await tag_service.get_user_tags_with_counts(db, current_user.id)
    return TagListResponse(tags=counts)


@router.patch("/{tag_name}", response_model=TagResponse)
async def rename_tag(
    tag_name: str,
    body: TagRenameRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> TagResponse:
    """Rename a tag; bookmarks carrying it are re-indexed under the new name."""
    renamed = await tag_service.rename_tag(db, current_user.id, tag_name, body.new_name)
    return TagResponse.model_validate(renamed)


@router.delete("/{tag_name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_tag(
    tag_name: str,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
) -> None:
    """Delete a tag and detach it from every bookmark."""
    await tag_service.delete_tag(db, current_user.id, tag_name)
