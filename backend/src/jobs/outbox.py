"""
Transactional outbox for queue jobs.

Mutations never talk to the broker directly. They stage jobs as rows in the
same database transaction (`stage_job`), and the rows are relayed to the job
queue only after that transaction commits (`relay_outbox`). The API relays
right after each request commits; the worker process runs `OutboxRelay` to
drain anything left behind by a crash or a broker outage.
"""
import asyncio
import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobs.queue import JobQueue
from models import OutboxJob
from schemas.jobs import JobPayload, Topic, validate_job

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100


def stage_job(
    db: AsyncSession,
    topic: Topic | str,
    payload: JobPayload | dict,
) -> OutboxJob:
    """
    Stage a job in the caller's transaction. Does not flush or commit.

    Raises:
        ValueError: If the payload does not fit the topic.
    """
    topic, payload = validate_job(topic, payload)
    row = OutboxJob(topic=topic.value, payload=payload.to_message())
    db.add(row)
    return row


def stage_bookmark_job(
    db: AsyncSession,
    topic: Topic,
    bookmark_id: UUID,
    kind: str | None = None,
) -> OutboxJob:
    """Shorthand for staging a job about one bookmark."""
    return stage_job(db, topic, JobPayload(bookmark_id=bookmark_id, kind=kind))


async def relay_outbox(
    db: AsyncSession,
    queue: JobQueue,
    limit: int = DEFAULT_BATCH_SIZE,
) -> int:
    """
    Enqueue committed outbox rows in id order and delete them.

    Commits the deletions of every row enqueued so far, even when a later
    enqueue fails, so a partial relay is never repeated. A row whose payload
    is invalid is dropped with an error log instead of blocking the outbox.

    Args:
        db: Session with no pending changes.
        queue: Job queue to relay into.
        limit: Maximum number of rows to relay.

    Returns:
        Number of rows enqueued.

    Raises:
        redis.exceptions.RedisError: If the broker is unavailable.
    """
    # SKIP LOCKED lets concurrent relays split the rows on PostgreSQL
    result = await db.execute(
        select(OutboxJob)
        .order_by(OutboxJob.id)
        .limit(limit)
        .with_for_update(skip_locked=True),
    )
    rows = list(result.scalars().all())

    relayed = 0
    try:
        for row in rows:
            try:
                await queue.enqueue(row.topic, row.payload)
            except ValueError as e:
                logger.error("Dropping invalid outbox job %s (%s): %s", row.id, row.topic, e)
            else:
                relayed += 1
            await db.delete(row)
    finally:
        await db.commit()

    if relayed:
        logger.debug("Relayed %d outbox job(s)", relayed)
    return relayed


class OutboxRelay:
    """Background loop that drains the outbox into the job queue."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        queue: JobQueue,
        *,
        interval_seconds: float = 5.0,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._interval = interval_seconds
        self._batch_size = batch_size

    async def run_once(self) -> int:
        """Relay until the outbox is drained. Returns the number of jobs relayed."""
        total = 0
        while True:
            async with self._session_factory() as db:
                relayed = await relay_outbox(db, self._queue, self._batch_size)
            total += relayed
            if relayed < self._batch_size:
                return total

    async def run(self, stop: asyncio.Event) -> None:
        """
        Relay periodically until `stop` is set.

        Database errors are logged and retried on the next tick; broker errors
        propagate and stop the process.
        """
        logger.info("Outbox relay started (interval %.1fs)", self._interval)
        while not stop.is_set():
            try:
                relayed = await self.run_once()
                if relayed:
                    logger.info("Relayed %d leftover outbox job(s)", relayed)
            except SQLAlchemyError:
                logger.exception("Outbox relay failed, will retry")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._interval)
            except TimeoutError:
                pass
        logger.info("Outbox relay stopped")
