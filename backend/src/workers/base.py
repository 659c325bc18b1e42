"""
Base class for pipeline stage workers.

A worker consumes one queue topic. Each job runs in its own database session
under a timeout; the handler re-reads the bookmark, does its work and commits,
and any follow-up jobs it staged are relayed to the queue right after the
commit. Failures are classified as:

- PermanentUpstreamError: no retry; the failure handler records the terminal
  status and the job is marked failed.
- Anything else (transient upstream errors, timeouts, database errors):
  retried with backoff; once attempts are exhausted the failure handler runs.
- RedisError: fatal. The worker stops and the process exits, so a supervisor
  can restart it once the broker is back.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobs.outbox import relay_outbox
from jobs.queue import Job, JobQueue
from schemas.jobs import JobPayload, Topic
from services.exceptions import UpstreamError

logger = logging.getLogger(__name__)

# Seconds between scans for jobs whose lease expired
RECOVERY_INTERVAL = 30.0
# Delay before retrying a job whose bookmark lock is held elsewhere
LOCK_RETRY_DELAY = 1.0


class Worker(ABC):
    """Consumer loop for one topic with bounded concurrency."""

    topic: Topic
    # Serialize jobs of this topic per bookmark
    lock_per_bookmark: bool = False

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queue: JobQueue,
        *,
        concurrency: int = 1,
        job_timeout: float = 120.0,
        poll_interval: float = 1.0,
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.concurrency = concurrency
        self.job_timeout = job_timeout
        self.poll_interval = poll_interval
        self._slots = asyncio.Semaphore(concurrency)
        self._fatal: BaseException | None = None

    @property
    def name(self) -> str:
        """Name used in log messages."""
        return type(self).__name__

    @abstractmethod
    async def handle(self, db: AsyncSession, payload: JobPayload) -> None:
        """
        Run the stage for one job.

        Changes are committed by the caller after this returns; a handler may
        commit (or roll back) earlier itself.
        """

    async def on_failure(self, db: AsyncSession, payload: JobPayload, error: str) -> None:
        """Record a terminal failure. Runs in a fresh session that is committed afterwards."""
        logger.info("%s gave up on bookmark %s: %s", self.name, payload.bookmark_id, error)

    # --- Loop ---

    async def run(self, stop: asyncio.Event) -> None:
        """
        Consume jobs until `stop` is set, then wait for jobs in flight.

        Raises:
            RedisError: If the broker fails; in-flight jobs are awaited first.
        """
        logger.info("%s started on '%s' (concurrency %d)", self.name, self.topic, self.concurrency)
        tasks: set[asyncio.Task] = set()
        next_recovery = 0.0
        try:
            while not stop.is_set() and self._fatal is None:
                if time.monotonic() >= next_recovery:
                    await self.queue.recover_expired(self.topic)
                    next_recovery = time.monotonic() + RECOVERY_INTERVAL

                await self._slots.acquire()
                try:
                    job = await self.queue.reserve(self.topic)
                except BaseException:
                    self._slots.release()
                    raise
                if job is None:
                    self._slots.release()
                    await self._sleep(stop, self.poll_interval)
                    continue

                task = asyncio.create_task(self._process_in_slot(job))
                tasks.add(task)
                task.add_done_callback(self._on_task_done(tasks))
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("%s stopped", self.name)

        if self._fatal is not None:
            raise self._fatal

    async def run_one(self) -> bool:
        """
        Reserve and process a single job, if one is ready.

        Returns:
            True if a job was processed.
        """
        job = await self.queue.reserve(self.topic)
        if job is None:
            return False
        await self.process(job)
        return True

    def _on_task_done(self, tasks: set[asyncio.Task]):  # noqa: ANN202
        def _done(task: asyncio.Task) -> None:
            tasks.discard(task)
            if not task.cancelled() and task.exception() is not None and self._fatal is None:
                self._fatal = task.exception()
        return _done

    async def _process_in_slot(self, job: Job) -> None:
        try:
            await self.process(job)
        finally:
            self._slots.release()

    @staticmethod
    async def _sleep(stop: asyncio.Event, seconds: float) -> None:
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
        except TimeoutError:
            pass

    # --- Job execution ---

    async def process(self, job: Job) -> None:
        """
        Run one reserved job and settle it on the queue.

        Raises:
            RedisError: If the broker fails.
        """
        bookmark_id = job.payload.bookmark_id
        try:
            if self.lock_per_bookmark:
                async with self.queue.lock(
                    f"{self.topic.value}:bookmark:{bookmark_id}",
                    ttl_seconds=self.job_timeout + 30,
                ) as acquired:
                    if not acquired:
                        logger.debug("Bookmark %s is busy, deferring job %s", bookmark_id, job.id)
                        await self.queue.defer(job, LOCK_RETRY_DELAY)
                        return
                    await self._run_handler(job)
            else:
                await self._run_handler(job)
        except RedisError:
            raise
        except UpstreamError as e:
            if e.retryable:
                await self._retry(job, str(e))
            else:
                logger.warning(
                    "%s: permanent failure for bookmark %s: %s", self.name, bookmark_id, e,
                )
                await self._give_up(job, str(e))
                await self.queue.fail(job, str(e))
            return
        except TimeoutError:
            await self._retry(job, f"Timed out after {self.job_timeout:.0f}s")
            return
        except Exception as e:
            logger.exception("%s: job %s for bookmark %s failed", self.name, job.id, bookmark_id)
            await self._retry(job, f"{type(e).__name__}: {e}")
            return

        await self.queue.complete(job)

    async def _run_handler(self, job: Job) -> None:
        async with self.session_factory() as db:
            await asyncio.wait_for(self.handle(db, job.payload), timeout=self.job_timeout)
            await db.commit()
            await self._relay(db)

    async def _retry(self, job: Job, error: str) -> None:
        if not await self.queue.retry(job, error):
            await self._give_up(job, error)

    async def _give_up(self, job: Job, error: str) -> None:
        try:
            async with self.session_factory() as db:
                await self.on_failure(db, job.payload, error)
                await db.commit()
                await self._relay(db)
        except SQLAlchemyError:
            logger.exception(
                "%s: failure handler for bookmark %s failed", self.name, job.payload.bookmark_id,
            )

    async def _relay(self, db: AsyncSession) -> None:
        # Leftovers are picked up by the outbox relay loop
        try:
            await relay_outbox(db, self.queue)
        except SQLAlchemyError as e:
            logger.warning("%s: relaying follow-up jobs failed: %s", self.name, e)
