"""Pytest fixtures for testing."""
import os

# Must be set before any app imports that trigger Settings validation
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
# Ensure tests run in dev mode (bypasses the identity header) regardless of local .env
os.environ["DEV_MODE"] = "true"

from collections.abc import AsyncGenerator, Callable  # noqa: E402
from pathlib import Path  # noqa: E402
from typing import Any  # noqa: E402
from uuid import UUID  # noqa: E402

import pytest  # noqa: E402
from fakeredis import FakeAsyncRedis, FakeServer  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool  # noqa: E402

from jobs.queue import JobQueue, set_job_queue  # noqa: E402
from models import Bookmark, User  # noqa: E402
from models.base import Base  # noqa: E402
from services.ai_tagger import TaggingResult  # noqa: E402
from services.asset_store import LocalAssetStore  # noqa: E402
from services.bookmark_store import load_bookmark  # noqa: E402
from services.search_client import SearchHit  # noqa: E402
from services.url_scraper import CrawlResult  # noqa: E402
from services.video_extractor import VideoDownload  # noqa: E402
from workers.base import Worker  # noqa: E402
from workers.crawler import CrawlerWorker  # noqa: E402
from workers.search_indexing import SearchIndexingWorker  # noqa: E402
from workers.tagging import TaggingWorker  # noqa: E402
from workers.video import VideoWorker  # noqa: E402


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """In-memory SQLite engine shared by every session of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:  # noqa: ANN001
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker:
    """Session factory used by fixtures, the API and the workers alike."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession]:
    """
    Session for the test body.

    All sessions share one connection, so fixtures and tests commit their
    writes before workers or API calls run.
    """
    async with session_factory() as session:
        yield session


@pytest.fixture
def reload(session_factory: async_sessionmaker) -> Callable[[UUID], Any]:
    """Load a bookmark in a fresh session, as it is committed now."""
    async def _reload(bookmark_id: UUID) -> Bookmark | None:
        async with session_factory() as session:
            return await load_bookmark(session, bookmark_id)
    return _reload


@pytest.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create a test user."""
    user = User(external_id="test-user-123", email="test@example.com")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def other_user(db_session: AsyncSession) -> User:
    """Create another test user for isolation tests."""
    user = User(external_id="other-user-456", email="other@example.com")
    db_session.add(user)
    await db_session.commit()
    return user


# =============================================================================
# Queue
# =============================================================================


@pytest.fixture
async def redis() -> AsyncGenerator[FakeAsyncRedis]:
    """Fake Redis server private to the test."""
    client = FakeAsyncRedis(server=FakeServer())
    yield client
    await client.aclose()


@pytest.fixture
def queue(redis: FakeAsyncRedis) -> JobQueue:
    """Job queue with no backoff so retried jobs are ready immediately."""
    return JobQueue(redis, max_attempts=3, backoff_base=0.0, backoff_max=0.0, lease_seconds=60)


# =============================================================================
# Fake capabilities
# =============================================================================


class FakeCrawler:
    """LinkCrawler returning a fixed result, or raising queued errors first."""

    def __init__(self, result: CrawlResult | None = None) -> None:
        self.result = result or CrawlResult(
            title="Example Domain",
            description="An example page",
            html_content="<html><body>Example</body></html>",
            content="Example page content",
        )
        self.errors: list[Exception] = []
        self.calls: list[str] = []

    async def crawl(self, url: str) -> CrawlResult:
        self.calls.append(url)
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class FakeTagger:
    """AITagger returning fixed tags, or raising queued errors first."""

    def __init__(self, tags: list[str] | None = None, summary: str | None = "A summary") -> None:
        self.tags = tags if tags is not None else ["Python", "web dev"]
        self.summary = summary
        self.errors: list[Exception] = []
        self.texts: list[str] = []
        self.images: list[tuple[bytes, str]] = []

    async def tag(self, text: str, language: str | None = None) -> TaggingResult:
        self.texts.append(text)
        if self.errors:
            raise self.errors.pop(0)
        return TaggingResult(tags=list(self.tags), summary=self.summary)

    async def tag_image(
        self, data: bytes, content_type: str, language: str | None = None,
    ) -> TaggingResult:
        self.images.append((data, content_type))
        if self.errors:
            raise self.errors.pop(0)
        return TaggingResult(tags=list(self.tags), summary=self.summary)


class FakeSearchClient:
    """In-memory SearchEngineClient. Matches the query as a substring of any text field."""

    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}
        self.filters: list[str] = []
        self.errors: list[Exception] = []

    async def configure(self) -> None:
        pass

    async def upsert(self, document: dict[str, Any]) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.documents[document["id"]] = document

    async def delete(self, document_id: str) -> None:
        if self.errors:
            raise self.errors.pop(0)
        self.documents.pop(document_id, None)

    async def search(
        self,
        query: str,
        *,
        filter: str,  # noqa: A002
        sort: list[str] | None = None,
        limit: int = 20,
    ) -> list[SearchHit]:
        self.filters.append(filter)
        if self.errors:
            raise self.errors.pop(0)
        hits = []
        for doc in self.documents.values():
            if filter != f"userId = '{doc['userId']}'":
                continue
            text = " ".join(str(v) for v in doc.values() if isinstance(v, str)).lower()
            if query.lower() in text:
                hits.append(SearchHit(id=doc["id"], score=float(text.count(query.lower()))))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]


class FakeVideoExtractor:
    """VideoExtractor returning a fixed download (or None)."""

    def __init__(self, download: VideoDownload | None = None) -> None:
        self.download = download or VideoDownload(data=b"\x00\x00video", content_type="video/mp4")
        self.calls: list[str] = []

    async def extract(self, url: str) -> VideoDownload | None:
        self.calls.append(url)
        return self.download


class RecordingAssetStore(LocalAssetStore):
    """LocalAssetStore that records every release."""

    def __init__(self, root: Path) -> None:
        super().__init__(root)
        self.released: list[str] = []

    async def release(self, owner_id: UUID, asset_id: str) -> None:
        self.released.append(asset_id)
        await super().release(owner_id, asset_id)


@pytest.fixture
def crawler() -> FakeCrawler:
    """Fake link crawler."""
    return FakeCrawler()


@pytest.fixture
def tagger() -> FakeTagger:
    """Fake AI tagger."""
    return FakeTagger()


@pytest.fixture
def search_client() -> FakeSearchClient:
    """Fake search engine."""
    return FakeSearchClient()


@pytest.fixture
def video_extractor() -> FakeVideoExtractor:
    """Fake video extractor."""
    return FakeVideoExtractor()


@pytest.fixture
def asset_store(tmp_path: Path) -> RecordingAssetStore:
    """Asset store in a temporary directory."""
    return RecordingAssetStore(tmp_path / "assets")


# =============================================================================
# Workers
# =============================================================================


class Pipeline:
    """All stage workers wired to the fakes, driven one job at a time."""

    def __init__(self, workers: dict[str, Worker]) -> None:
        self.workers = workers

    @property
    def crawler(self) -> CrawlerWorker:
        return self.workers["crawl"]

    @property
    def tagging(self) -> TaggingWorker:
        return self.workers["openai"]

    @property
    def indexing(self) -> SearchIndexingWorker:
        return self.workers["search_indexing"]

    @property
    def video(self) -> VideoWorker:
        return self.workers["video"]

    async def run_until_idle(self, max_rounds: int = 50) -> int:
        """Run every worker until no topic has a ready job. Returns jobs processed."""
        processed = 0
        for _ in range(max_rounds):
            progressed = False
            for worker in self.workers.values():
                while await worker.run_one():
                    processed += 1
                    progressed = True
            if not progressed:
                return processed
        raise AssertionError("Pipeline did not settle")


@pytest.fixture
def pipeline(
    session_factory: async_sessionmaker,
    queue: JobQueue,
    crawler: FakeCrawler,
    tagger: FakeTagger,
    search_client: FakeSearchClient,
    video_extractor: FakeVideoExtractor,
    asset_store: RecordingAssetStore,
) -> Pipeline:
    """Pipeline workers with video enabled."""
    options = {"job_timeout": 5.0, "poll_interval": 0.01}
    return Pipeline({
        "crawl": CrawlerWorker(
            session_factory, queue, crawler, asset_store, video_enabled=True, **options,
        ),
        "openai": TaggingWorker(session_factory, queue, tagger, asset_store, **options),
        "search_indexing": SearchIndexingWorker(
            session_factory, queue, search_client, **options,
        ),
        "video": VideoWorker(session_factory, queue, video_extractor, asset_store, **options),
    })


# =============================================================================
# API client
# =============================================================================


@pytest.fixture
async def client(
    session_factory: async_sessionmaker,
    queue: JobQueue,
    asset_store: RecordingAssetStore,
    search_client: FakeSearchClient,
) -> AsyncGenerator[AsyncClient]:
    """Create a test client with database, queue and capability overrides."""
    # Clear the settings cache so it picks up DATABASE_URL from environment
    from core.config import get_settings

    get_settings.cache_clear()

    from api.dependencies import get_asset_store, get_search_client
    from api.main import app
    from db.session import get_async_session, relay_after_commit

    async def override_get_async_session() -> AsyncGenerator[AsyncSession]:
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            await relay_after_commit(session)

    app.dependency_overrides[get_async_session] = override_get_async_session
    app.dependency_overrides[get_asset_store] = lambda: asset_store
    app.dependency_overrides[get_search_client] = lambda: search_client
    set_job_queue(queue)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as test_client:
        yield test_client

    set_job_queue(None)
    app.dependency_overrides.clear()


# =============================================================================
# Bookmarks
# =============================================================================


@pytest.fixture
def create_bookmark(
    db_session: AsyncSession,
    queue: JobQueue,
    asset_store: RecordingAssetStore,
) -> Callable[..., Any]:
    """Create a bookmark through the service, commit it and relay its first jobs."""
    from jobs.outbox import relay_outbox
    from services import bookmark_service

    async def _create(user: User, data: Any) -> Bookmark:
        bookmark = await bookmark_service.create_bookmark(db_session, user.id, data, asset_store)
        await db_session.commit()
        await relay_outbox(db_session, queue)
        return bookmark
    return _create
