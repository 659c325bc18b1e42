"""
Pipeline worker process.

Usage:
    python -m workers

Runs the crawl, tagging, search indexing and (optionally) video workers plus
the outbox relay until SIGINT/SIGTERM. Exits with an error if the job queue
broker becomes unavailable.
"""
import asyncio
import logging
import signal

from core.config import Settings, get_settings
from core.redis import RedisClient
from db.session import get_session_factory
from jobs.outbox import OutboxRelay
from jobs.queue import JobQueue
from services.ai_tagger import OpenAITagger
from services.asset_store import LocalAssetStore
from services.search_client import MeiliSearchClient
from services.url_scraper import HttpLinkCrawler
from services.video_extractor import YtDlpVideoExtractor
from workers.base import Worker
from workers.crawler import CrawlerWorker
from workers.search_indexing import SearchIndexingWorker
from workers.tagging import TaggingWorker
from workers.video import VideoWorker

logger = logging.getLogger(__name__)


async def run_workers(settings: Settings) -> None:
    """Build all workers and run them until a shutdown signal arrives."""
    redis_client = RedisClient.from_settings(settings)
    await redis_client.connect(required=True)
    queue = JobQueue.from_settings(redis_client.client, settings)
    session_factory = get_session_factory()
    asset_store = LocalAssetStore(settings.assets_dir)

    tagger = None
    if settings.inference_configured:
        tagger = OpenAITagger(
            settings.inference_base_url,
            settings.openai_api_key,
            text_model=settings.inference_text_model,
            image_model=settings.inference_image_model,
            language=settings.inference_language,
            max_content_chars=settings.inference_max_content_chars,
            timeout=settings.inference_timeout_seconds,
        )
    else:
        logger.warning("No inference provider configured, tagging jobs will fail")

    search_client = None
    if settings.search_configured:
        search_client = MeiliSearchClient(
            settings.meili_addr, settings.meili_master_key, settings.meili_index,
        )
        await search_client.configure()
    else:
        logger.warning("MEILI_ADDR not set, search indexing jobs will be dropped")

    video_enabled = settings.video_enabled and YtDlpVideoExtractor.is_available(
        settings.yt_dlp_binary,
    )
    if settings.video_enabled and not video_enabled:
        logger.warning("VIDEO_ENABLED is set but %s was not found", settings.yt_dlp_binary)

    poll = settings.job_poll_interval_seconds
    workers: list[Worker] = [
        CrawlerWorker(
            session_factory,
            queue,
            HttpLinkCrawler(navigate_timeout=settings.crawler_navigate_timeout_seconds),
            asset_store,
            video_enabled=video_enabled,
            concurrency=settings.crawler_num_workers,
            job_timeout=settings.crawler_job_timeout_seconds,
            poll_interval=poll,
        ),
        TaggingWorker(
            session_factory,
            queue,
            tagger,
            asset_store,
            concurrency=settings.inference_num_workers,
            job_timeout=settings.job_timeout_seconds,
            poll_interval=poll,
        ),
        SearchIndexingWorker(
            session_factory,
            queue,
            search_client,
            concurrency=settings.search_num_workers,
            job_timeout=settings.job_timeout_seconds,
            poll_interval=poll,
        ),
    ]
    if video_enabled:
        workers.append(VideoWorker(
            session_factory,
            queue,
            YtDlpVideoExtractor(
                settings.yt_dlp_binary,
                max_size_mb=settings.video_max_size_mb,
                timeout=settings.video_timeout_seconds,
            ),
            asset_store,
            concurrency=settings.video_num_workers,
            job_timeout=settings.video_timeout_seconds + 30,
            poll_interval=poll,
        ))

    relay = OutboxRelay(
        session_factory, queue, interval_seconds=settings.outbox_relay_interval_seconds,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        async with asyncio.TaskGroup() as group:
            group.create_task(relay.run(stop))
            for worker in workers:
                group.create_task(worker.run(stop))
    finally:
        if tagger is not None:
            await tagger.close()
        if search_client is not None:
            await search_client.close()
        await redis_client.close()


def main() -> None:
    """Entry point for running the workers as a script."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_workers(settings))


if __name__ == "__main__":
    main()
