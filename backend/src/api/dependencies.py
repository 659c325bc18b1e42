"""FastAPI dependencies for injection."""
from fastapi import Request

from core.auth import get_current_user
from core.config import get_settings
from db.session import get_async_session
from services.asset_store import AssetStore
from services.search_client import SearchEngineClient

__all__ = [
    "get_asset_store",
    "get_async_session",
    "get_current_user",
    "get_search_client",
    "get_settings",
]


def get_asset_store(request: Request) -> AssetStore:
    """Asset store created at startup."""
    return request.app.state.asset_store


def get_search_client(request: Request) -> SearchEngineClient | None:
    """Search client created at startup, or None when search is not configured."""
    return getattr(request.app.state, "search_client", None)
