"""Asset upload and download endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Response, UploadFile, status

from api.dependencies import get_asset_store, get_current_user
from core.config import Settings, get_settings
from models import AssetType
from models.user import User
from schemas.bookmark import AssetUploadResponse
from services.asset_store import ASSET_ID_PATTERN, AssetStore

router = APIRouter(prefix="/assets", tags=["assets"])

PDF_CONTENT_TYPE = "application/pdf"


def _asset_type_for(content_type: str | None) -> AssetType | None:
    if not content_type:
        return None
    if content_type == PDF_CONTENT_TYPE:
        return AssetType.PDF
    if content_type.startswith("image/"):
        return AssetType.IMAGE
    return None


@router.post("/", response_model=AssetUploadResponse, status_code=201)
async def upload_asset(
    file: UploadFile,
    current_user: User = Depends(get_current_user),
    asset_store: AssetStore = Depends(get_asset_store),
    settings: Settings = Depends(get_settings),
) -> AssetUploadResponse:
    """
    Upload an image or PDF.

    The returned `asset_id` is used to create an asset bookmark.

    Returns 413 if the file exceeds MAX_ASSET_SIZE_MB.
    Returns 415 for content types other than images and PDF.
    """
    asset_type = _asset_type_for(file.content_type)
    if asset_type is None:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported content type: {file.content_type}",
        )

    limit = settings.max_asset_size_bytes
    data = await file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"Asset exceeds maximum size of {settings.max_asset_size_mb} MB",
        )
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty upload")

    asset_id = await asset_store.save(current_user.id, data, file.content_type)
    return AssetUploadResponse(asset_id=asset_id, asset_type=asset_type, size=len(data))


@router.get("/{asset_id}")
async def download_asset(
    asset_id: str,
    current_user: User = Depends(get_current_user),
    asset_store: AssetStore = Depends(get_asset_store),
) -> Response:
    """Download one of the current user's assets."""
    if not ASSET_ID_PATTERN.match(asset_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Asset not found")
    asset = await asset_store.read(current_user.id, asset_id)
    if asset is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Asset not found")
    return Response(content=asset.data, media_type=asset.content_type)
