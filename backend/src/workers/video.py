"""Video stage: download the video embedded in a crawled link."""
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobs.queue import JobQueue
from schemas.jobs import JobPayload, Topic
from services.asset_store import AssetStore
from services.bookmark_store import load_bookmark, set_video_asset
from services.video_extractor import VideoExtractor
from workers.base import Worker

logger = logging.getLogger(__name__)


class VideoWorker(Worker):
    """Consumes `video` jobs."""

    topic = Topic.VIDEO

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queue: JobQueue,
        extractor: VideoExtractor,
        asset_store: AssetStore,
        **kwargs,
    ) -> None:
        super().__init__(session_factory, queue, **kwargs)
        self.extractor = extractor
        self.asset_store = asset_store

    async def handle(self, db: AsyncSession, payload: JobPayload) -> None:
        """Download and store the video unless the link already has one."""
        bookmark_id = payload.bookmark_id
        bookmark = await load_bookmark(db, bookmark_id)
        if bookmark is None or bookmark.link is None:
            logger.info("Bookmark %s is gone or not a link, skipping video", bookmark_id)
            return
        if bookmark.link.video_asset_id:
            logger.info("Bookmark %s already has a video", bookmark_id)
            return

        user_id = bookmark.user_id
        download = await self.extractor.extract(bookmark.link.url)
        if download is None:
            return

        asset_id = await self.asset_store.save(user_id, download.data, download.content_type)
        try:
            written = await set_video_asset(db, bookmark_id, asset_id)
            await db.commit()
        except BaseException:
            await self.asset_store.release(user_id, asset_id)
            raise
        if not written:
            logger.info("Bookmark %s was deleted or got a video meanwhile", bookmark_id)
            await self.asset_store.release(user_id, asset_id)
            return
        logger.info("Stored video %s for bookmark %s", asset_id, bookmark_id)
