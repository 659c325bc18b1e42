"""FastAPI application entry point."""
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from api.routers import assets, bookmarks, health, tags
from core.config import get_settings
from core.redis import RedisClient
from jobs.queue import JobQueue, set_job_queue
from services.asset_store import LocalAssetStore
from services.exceptions import (
    BookmarkForbiddenError,
    BookmarkNotFoundError,
    InvalidStateError,
    SearchUnavailableError,
    TagAlreadyExistsError,
    TagNotFoundError,
    UpstreamError,
)
from services.search_client import MeiliSearchClient

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Manage application lifespan - startup and shutdown."""
    app_settings = get_settings()

    # Startup: Connect to Redis. Without it jobs stay in the outbox.
    redis_client = RedisClient.from_settings(app_settings)
    await redis_client.connect()
    if redis_client.client is not None:
        set_job_queue(JobQueue.from_settings(redis_client.client, app_settings))

    app.state.asset_store = LocalAssetStore(app_settings.assets_dir)

    search_client = None
    if app_settings.search_configured:
        search_client = MeiliSearchClient(
            app_settings.meili_addr,
            app_settings.meili_master_key,
            app_settings.meili_index,
        )
        try:
            await search_client.configure()
        except UpstreamError as e:
            logger.warning("Search index configuration failed: %s", e)
    app.state.search_client = search_client

    yield

    # Shutdown
    if search_client is not None:
        await search_client.close()
    set_job_queue(None)
    await redis_client.close()


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Process request and add security headers to response."""
        response = await call_next(request)
        # Prevent MIME type sniffing of downloaded assets
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking - API shouldn't be framed
        response.headers["X-Frame-Options"] = "DENY"
        return response


app_settings = get_settings()

logging.basicConfig(
    level=app_settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(
    title="Bookmarks API",
    description="Bookmarks with background crawling, AI tagging and full-text search.",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(BookmarkNotFoundError)
async def bookmark_not_found_handler(
    _request: Request, exc: BookmarkNotFoundError,
) -> JSONResponse:
    """Missing bookmarks are 404."""
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(BookmarkForbiddenError)
async def bookmark_forbidden_handler(
    _request: Request, exc: BookmarkForbiddenError,
) -> JSONResponse:
    """Bookmarks owned by another user are 403."""
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(TagNotFoundError)
async def tag_not_found_handler(_request: Request, exc: TagNotFoundError) -> JSONResponse:
    """Missing tags are 404."""
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(TagAlreadyExistsError)
async def tag_exists_handler(_request: Request, exc: TagAlreadyExistsError) -> JSONResponse:
    """Renaming onto an existing tag name is 409."""
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(_request: Request, exc: InvalidStateError) -> JSONResponse:
    """Operations that don't apply to the bookmark are 400."""
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(SearchUnavailableError)
async def search_unavailable_handler(
    _request: Request, exc: SearchUnavailableError,
) -> JSONResponse:
    """Search without a configured engine is 503."""
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.exception_handler(UpstreamError)
async def upstream_error_handler(_request: Request, exc: UpstreamError) -> JSONResponse:
    """Failures of the search engine during a request are 503."""
    logger.warning("Upstream error during request: %s", exc)
    return JSONResponse(status_code=503, content={"detail": "Search engine unavailable"})


# Security headers middleware (runs after CORS, adds headers to responses)
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=app_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(bookmarks.router)
app.include_router(tags.router)
app.include_router(assets.router)
