"""AI tagging stage: infer tags and a summary for a bookmark."""
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobs.queue import JobQueue
from models import AssetType, AttachedBy, Bookmark, BookmarkType, TaggingStatus
from schemas.jobs import JobPayload, Topic
from schemas.validators import slugify_tags
from services import pipeline_state
from services.ai_tagger import AITagger, TaggingResult
from services.asset_store import AssetStore
from services.bookmark_store import load_bookmark, set_asset_content, transition_tagging_status
from services.exceptions import PermanentUpstreamError
from services.tag_service import attach_tags, get_or_create_tags
from services.url_scraper import pdf_text
from workers.base import Worker

logger = logging.getLogger(__name__)


class TaggingWorker(Worker):
    """Consumes `openai` jobs."""

    topic = Topic.OPENAI

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queue: JobQueue,
        tagger: AITagger | None,
        asset_store: AssetStore,
        **kwargs,
    ) -> None:
        super().__init__(session_factory, queue, **kwargs)
        self.tagger = tagger
        self.asset_store = asset_store

    async def handle(self, db: AsyncSession, payload: JobPayload) -> None:
        """
        Tag a bookmark whose tagging is pending.

        The status transition (pending to success) and the AI tag attachments
        are committed together. If another delivery already finished tagging,
        nothing is written, so replays never attach tags twice or move the
        status backwards.
        """
        bookmark_id = payload.bookmark_id
        bookmark = await load_bookmark(db, bookmark_id)
        if bookmark is None:
            logger.info("Bookmark %s is gone, skipping tagging", bookmark_id)
            return
        if bookmark.tagging_status != TaggingStatus.PENDING:
            logger.info("Bookmark %s is already tagged, skipping", bookmark_id)
            return
        if pipeline_state.is_crawl_pending(bookmark):
            # The crawl stage schedules tagging again when it finishes
            logger.info("Bookmark %s is still crawling, skipping tagging", bookmark_id)
            return
        if self.tagger is None:
            raise PermanentUpstreamError("No inference provider configured")

        result = await self._infer(db, bookmark)
        tag_names = slugify_tags(result.tags)

        if not await transition_tagging_status(
            db, bookmark_id, TaggingStatus.SUCCESS, summary=result.summary,
        ):
            logger.info("Tagging of bookmark %s finished elsewhere, discarding result", bookmark_id)
            await db.rollback()
            return

        if tag_names:
            tags = await get_or_create_tags(db, bookmark.user_id, tag_names)
            await attach_tags(db, bookmark_id, tags, AttachedBy.AI)
        pipeline_state.stage_planned_jobs(
            db, bookmark_id, pipeline_state.plan_after_tagging(bookmark),
        )
        logger.info("Tagged bookmark %s with %d tag(s)", bookmark_id, len(tag_names))

    async def on_failure(self, db: AsyncSession, payload: JobPayload, error: str) -> None:
        """Record tagging as failed so the bookmark settles as ready without AI tags."""
        bookmark_id = payload.bookmark_id
        if not await transition_tagging_status(db, bookmark_id, TaggingStatus.FAILURE):
            return
        logger.warning("Tagging of bookmark %s failed: %s", bookmark_id, error)
        bookmark = await load_bookmark(db, bookmark_id)
        pipeline_state.stage_planned_jobs(
            db, bookmark_id, pipeline_state.plan_after_tagging(bookmark),
        )

    async def _infer(self, db: AsyncSession, bookmark: Bookmark) -> TaggingResult:
        if bookmark.type == BookmarkType.ASSET and bookmark.asset.asset_type == AssetType.IMAGE:
            stored = await self.asset_store.read(bookmark.user_id, bookmark.asset.asset_id)
            if stored is None:
                raise PermanentUpstreamError(f"Asset {bookmark.asset.asset_id} is missing")
            return await self.tagger.tag_image(stored.data, stored.content_type)

        text = await self._text_for(db, bookmark)
        if not text or not text.strip():
            raise PermanentUpstreamError("Bookmark has no content to tag")
        return await self.tagger.tag(text)

    async def _text_for(self, db: AsyncSession, bookmark: Bookmark) -> str | None:
        if bookmark.type == BookmarkType.LINK:
            link = bookmark.link
            parts = [link.title, link.description, link.content]
            text = "\n".join(p for p in parts if p)
            # A failed crawl leaves only the URL to go on
            return text or link.url
        if bookmark.type == BookmarkType.TEXT:
            return bookmark.text.text

        asset = bookmark.asset
        if asset.content:
            return asset.content
        stored = await self.asset_store.read(bookmark.user_id, asset.asset_id)
        if stored is None:
            raise PermanentUpstreamError(f"Asset {asset.asset_id} is missing")
        content = await asyncio.to_thread(pdf_text, stored.data)
        if content:
            await set_asset_content(db, bookmark.id, content)
        return content
