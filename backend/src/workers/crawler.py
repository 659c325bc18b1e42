"""Crawl stage: fetch a link and store what the page offers."""
import logging
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobs.queue import JobQueue
from schemas.jobs import JobPayload, Topic
from services import pipeline_state
from services.asset_store import AssetStore
from services.bookmark_store import load_bookmark, mark_crawl_failed, write_crawl_result
from services.url_scraper import CrawlResult, LinkCrawler
from workers.base import Worker

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 500
SCREENSHOT_CONTENT_TYPE = "image/png"


class CrawlerWorker(Worker):
    """
    Consumes `crawl` jobs.

    Crawls of one bookmark never overlap: a duplicate delivery or a re-crawl
    arriving mid-crawl waits for the lock, so the screenshots it replaces are
    always the ones the previous crawl committed.
    """

    topic = Topic.CRAWL
    lock_per_bookmark = True

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queue: JobQueue,
        crawler: LinkCrawler,
        asset_store: AssetStore,
        *,
        video_enabled: bool = False,
        **kwargs,
    ) -> None:
        super().__init__(session_factory, queue, **kwargs)
        self.crawler = crawler
        self.asset_store = asset_store
        self.video_enabled = video_enabled

    async def handle(self, db: AsyncSession, payload: JobPayload) -> None:
        """
        Crawl the link and write the result.

        Screenshots are stored before the link row is updated. If the bookmark
        was deleted meanwhile, the update touches nothing and the new blobs are
        released again. Screenshots replaced by a re-crawl are released after
        the commit.
        """
        bookmark_id = payload.bookmark_id
        bookmark = await load_bookmark(db, bookmark_id)
        if bookmark is None or bookmark.link is None:
            logger.info("Bookmark %s is gone or not a link, skipping crawl", bookmark_id)
            return

        user_id = bookmark.user_id
        url = bookmark.link.url
        previous = {
            "screenshot_asset_id": bookmark.link.screenshot_asset_id,
            "full_page_screenshot_asset_id": bookmark.link.full_page_screenshot_asset_id,
        }

        logger.info("Crawling %s for bookmark %s", url, bookmark_id)
        result = await self.crawler.crawl(url)

        fields = result.produced_fields()
        if fields.get("title"):
            fields["title"] = fields["title"][:MAX_TITLE_LENGTH]
        saved = await self._save_screenshots(user_id, result)
        fields.update(saved)

        try:
            written = await write_crawl_result(db, bookmark_id, fields)
            if written:
                bookmark = await load_bookmark(db, bookmark_id)
                pipeline_state.stage_planned_jobs(
                    db,
                    bookmark_id,
                    pipeline_state.plan_after_crawl(
                        bookmark, crawl_succeeded=True, video_enabled=self.video_enabled,
                    ),
                )
            await db.commit()
        except BaseException:
            await self._release(user_id, bookmark_id, list(saved.values()))
            raise

        if not written:
            logger.info("Bookmark %s was deleted during the crawl", bookmark_id)
            await self._release(user_id, bookmark_id, list(saved.values()))
            return

        replaced = [old for column, old in previous.items() if old and column in saved]
        await self._release(user_id, bookmark_id, replaced)

    async def on_failure(self, db: AsyncSession, payload: JobPayload, error: str) -> None:
        """Mark the crawl failed and move on to tagging, which never waits on the crawler."""
        bookmark_id = payload.bookmark_id
        if not await mark_crawl_failed(db, bookmark_id):
            return
        logger.warning("Crawl of bookmark %s failed: %s", bookmark_id, error)
        bookmark = await load_bookmark(db, bookmark_id)
        pipeline_state.stage_planned_jobs(
            db,
            bookmark_id,
            pipeline_state.plan_after_crawl(
                bookmark, crawl_succeeded=False, video_enabled=self.video_enabled,
            ),
        )

    async def _save_screenshots(self, user_id: UUID, result: CrawlResult) -> dict[str, str]:
        saved: dict[str, str] = {}
        blobs = {
            "screenshot_asset_id": result.screenshot,
            "full_page_screenshot_asset_id": result.full_page_screenshot,
        }
        for column, data in blobs.items():
            if data:
                saved[column] = await self.asset_store.save(
                    user_id, data, SCREENSHOT_CONTENT_TYPE,
                )
        return saved

    async def _release(self, user_id: UUID, bookmark_id: UUID, asset_ids: list[str]) -> None:
        for asset_id in asset_ids:
            try:
                await self.asset_store.release(user_id, asset_id)
            except Exception:
                logger.warning(
                    "Failed to release asset %s of bookmark %s", asset_id, bookmark_id,
                    exc_info=True,
                )
