"""
Durable Redis-backed job queue with per-topic lists, retries and leases.

Layout per topic (all keys under the queue prefix):

    {prefix}:{topic}:waiting     LIST  job ids ready to run (LPUSH in, LMOVE out)
    {prefix}:{topic}:processing  LIST  job ids handed to a consumer
    {prefix}:{topic}:leases      ZSET  job id -> lease deadline (unix seconds)
    {prefix}:{topic}:delayed     ZSET  job id -> earliest run time (backoff)
    {prefix}:{topic}:failed      LIST  job ids that exhausted their attempts
    {prefix}:job:{id}            HASH  topic, payload, attempts, status, last_error

Delivery is at-least-once: a job whose lease expires is moved back to
`waiting` by `recover_expired`, so consumers must be idempotent. Broker
errors (`redis.exceptions.RedisError`) are never swallowed here.
"""
import json
import logging
import random
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import WatchError

from core.config import Settings
from schemas.jobs import JobPayload, Topic, validate_job

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "jobs"
FAILED_HISTORY_LIMIT = 1000
PROMOTE_BATCH_SIZE = 100


def _decode(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


@dataclass(frozen=True)
class Job:
    """A reserved job. `attempts` counts failed runs before this delivery."""

    id: str
    topic: Topic
    payload: JobPayload
    attempts: int


class JobQueue:
    """Producer and consumer operations for all pipeline topics."""

    def __init__(
        self,
        redis: Redis,
        *,
        prefix: str = DEFAULT_PREFIX,
        max_attempts: int = 5,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
        lease_seconds: int = 600,
    ) -> None:
        self._redis = redis
        self._prefix = prefix
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.lease_seconds = lease_seconds

    @classmethod
    def from_settings(cls, redis: Redis, settings: Settings) -> "JobQueue":
        """Build a queue using the JOB_* retry and lease policy."""
        return cls(
            redis,
            max_attempts=settings.job_max_attempts,
            backoff_base=settings.job_backoff_base_seconds,
            backoff_max=settings.job_backoff_max_seconds,
            lease_seconds=settings.job_lease_seconds,
        )

    # --- Keys ---

    def _key(self, topic: Topic, name: str) -> str:
        return f"{self._prefix}:{topic.value}:{name}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    # --- Producer ---

    async def enqueue(self, topic: Topic | str, payload: JobPayload | dict) -> str:
        """
        Add a job to a topic.

        Args:
            topic: Queue topic.
            payload: Job payload; dicts are validated against JobPayload.

        Returns:
            The new job id.

        Raises:
            ValueError: If the payload does not fit the topic.
        """
        topic, payload = validate_job(topic, payload)

        job_id = uuid4().hex
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._job_key(job_id),
                mapping={
                    "topic": topic.value,
                    "payload": json.dumps(payload.to_message()),
                    "attempts": 0,
                    "status": "waiting",
                    "enqueued_at": time.time(),
                },
            )
            pipe.lpush(self._key(topic, "waiting"), job_id)
            await pipe.execute()

        logger.debug("Enqueued job %s on %s for bookmark %s", job_id, topic, payload.bookmark_id)
        return job_id

    # --- Consumer ---

    async def reserve(self, topic: Topic | str) -> Job | None:
        """
        Take the next ready job off a topic and lease it to the caller.

        Returns:
            The reserved job, or None if nothing is ready.
        """
        topic = Topic(topic)
        await self._promote_delayed(topic)

        raw_id = await self._redis.lmove(
            self._key(topic, "waiting"), self._key(topic, "processing"), "RIGHT", "LEFT",
        )
        if raw_id is None:
            return None
        job_id = _decode(raw_id)
        await self._redis.zadd(
            self._key(topic, "leases"), {job_id: time.time() + self.lease_seconds},
        )

        data = await self.job_status(job_id)
        if data is None:
            # Completed by an earlier delivery whose lease had expired
            await self._release(topic, job_id)
            return None

        await self._redis.hset(self._job_key(job_id), "status", "active")
        return Job(
            id=job_id,
            topic=topic,
            payload=JobPayload.model_validate(json.loads(data["payload"])),
            attempts=int(data.get("attempts", 0)),
        )

    async def complete(self, job: Job) -> None:
        """Acknowledge a job and forget it."""
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key(job.topic, "processing"), 1, job.id)
            pipe.zrem(self._key(job.topic, "leases"), job.id)
            pipe.delete(self._job_key(job.id))
            await pipe.execute()

    async def retry(self, job: Job, error: str) -> bool:
        """
        Record a failed run and schedule the job again with backoff.

        Returns:
            True if the job was rescheduled, False if the attempt ceiling was
            reached and the job is now marked failed.
        """
        attempts = job.attempts + 1
        if attempts >= self.max_attempts:
            await self._mark_failed(job, error, attempts)
            return False

        delay = self.backoff_delay(attempts)
        await self._reschedule(job, delay, attempts=attempts, error=error)
        logger.info(
            "Job %s on %s failed (attempt %d/%d), retrying in %.1fs: %s",
            job.id, job.topic, attempts, self.max_attempts, delay, error,
        )
        return True

    async def fail(self, job: Job, error: str) -> None:
        """Mark a job terminally failed without further attempts."""
        await self._mark_failed(job, error, job.attempts + 1)

    async def defer(self, job: Job, delay: float) -> None:
        """Put a job back after `delay` seconds without consuming an attempt."""
        await self._reschedule(job, delay, attempts=job.attempts, error=None)

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with jitter for the given (1-based) attempt."""
        delay = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        return delay * (0.5 + random.random() / 2)  # noqa: S311

    async def recover_expired(self, topic: Topic | str) -> int:
        """
        Return jobs whose lease expired (crashed or stuck consumer) to waiting.

        Returns:
            Number of jobs recovered.
        """
        topic = Topic(topic)
        expired = await self._redis.zrangebyscore(self._key(topic, "leases"), 0, time.time())
        recovered = 0
        for raw_id in expired:
            job_id = _decode(raw_id)
            # ZREM decides the winner when several consumers recover at once
            if not await self._redis.zrem(self._key(topic, "leases"), job_id):
                continue
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._key(topic, "processing"), 1, job_id)
                pipe.lpush(self._key(topic, "waiting"), job_id)
                await pipe.execute()
            recovered += 1
        if recovered:
            logger.warning("Recovered %d expired job(s) on %s", recovered, topic)
        return recovered

    async def counts(self, topic: Topic | str) -> dict[str, int]:
        """Queue statistics for a topic."""
        topic = Topic(topic)
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.llen(self._key(topic, "waiting"))
            pipe.zcard(self._key(topic, "delayed"))
            pipe.llen(self._key(topic, "processing"))
            pipe.llen(self._key(topic, "failed"))
            waiting, delayed, active, failed = await pipe.execute()
        return {"waiting": waiting, "delayed": delayed, "active": active, "failed": failed}

    async def job_status(self, job_id: str) -> dict[str, str] | None:
        """Raw job record, or None once a job completed."""
        data = await self._redis.hgetall(self._job_key(job_id))
        if not data:
            return None
        return {_decode(k): _decode(v) for k, v in data.items()}

    # --- Locks ---

    @asynccontextmanager
    async def lock(self, key: str, ttl_seconds: float) -> AsyncIterator[bool]:
        """
        Try to take an advisory lock without blocking.

        Yields:
            True if the lock is held for the duration of the block.
        """
        lock_key = f"{self._prefix}:lock:{key}"
        token = uuid4().hex
        acquired = bool(
            await self._redis.set(lock_key, token, nx=True, px=int(ttl_seconds * 1000)),
        )
        try:
            yield acquired
        finally:
            if acquired:
                await self._release_lock(lock_key, token)

    async def _release_lock(self, lock_key: str, token: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(lock_key)
                current = await pipe.get(lock_key)
                if current is not None and _decode(current) == token:
                    pipe.multi()
                    pipe.delete(lock_key)
                    await pipe.execute()
                else:
                    await pipe.unwatch()
            except WatchError:
                # Lock expired and was taken over; it is no longer ours to release
                logger.debug("Lock %s changed before release", lock_key)

    # --- Private helpers ---

    async def _promote_delayed(self, topic: Topic) -> None:
        due = await self._redis.zrangebyscore(
            self._key(topic, "delayed"), 0, time.time(), start=0, num=PROMOTE_BATCH_SIZE,
        )
        for raw_id in due:
            if await self._redis.zrem(self._key(topic, "delayed"), raw_id):
                await self._redis.lpush(self._key(topic, "waiting"), raw_id)

    async def _reschedule(
        self, job: Job, delay: float, *, attempts: int, error: str | None,
    ) -> None:
        fields: dict[str, str | int] = {"attempts": attempts, "status": "delayed"}
        if error is not None:
            fields["last_error"] = error
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.id), mapping=fields)
            pipe.lrem(self._key(job.topic, "processing"), 1, job.id)
            pipe.zrem(self._key(job.topic, "leases"), job.id)
            pipe.zadd(self._key(job.topic, "delayed"), {job.id: time.time() + delay})
            await pipe.execute()

    async def _mark_failed(self, job: Job, error: str, attempts: int) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "attempts": attempts,
                    "status": "failed",
                    "last_error": error,
                    "failed_at": time.time(),
                },
            )
            pipe.lrem(self._key(job.topic, "processing"), 1, job.id)
            pipe.zrem(self._key(job.topic, "leases"), job.id)
            pipe.lpush(self._key(job.topic, "failed"), job.id)
            pipe.ltrim(self._key(job.topic, "failed"), 0, FAILED_HISTORY_LIMIT - 1)
            await pipe.execute()
        logger.warning(
            "Job %s on %s failed permanently after %d attempt(s): %s",
            job.id, job.topic, attempts, error,
        )

    async def _release(self, topic: Topic, job_id: str) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key(topic, "processing"), 1, job_id)
            pipe.zrem(self._key(topic, "leases"), job_id)
            await pipe.execute()


# Global queue state using a container to avoid global statement
class _QueueState:
    """Container for the process-wide job queue."""

    queue: JobQueue | None = None


_state = _QueueState()


def get_job_queue() -> JobQueue | None:
    """Get the global job queue, or None when the broker is unavailable."""
    return _state.queue


def set_job_queue(queue: JobQueue | None) -> None:
    """Set the global job queue instance."""
    _state.queue = queue
