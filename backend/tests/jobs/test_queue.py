"""Tests for the Redis-backed job queue."""
import time
from uuid import uuid4

import pytest
from fakeredis import FakeAsyncRedis

from jobs.queue import JobQueue, get_job_queue, set_job_queue
from schemas.jobs import JobPayload, Topic


def _payload(kind: str | None = None) -> JobPayload:
    return JobPayload(bookmark_id=uuid4(), kind=kind)


# =============================================================================
# enqueue / reserve / complete
# =============================================================================


async def test__enqueue__reserve_returns_job_with_payload(queue: JobQueue) -> None:
    """A job enqueued on a topic is reserved from that topic with its payload."""
    payload = _payload()
    job_id = await queue.enqueue(Topic.CRAWL, payload)

    job = await queue.reserve(Topic.CRAWL)

    assert job is not None
    assert job.id == job_id
    assert job.topic == Topic.CRAWL
    assert job.payload == payload
    assert job.attempts == 0


async def test__enqueue__accepts_wire_dict(queue: JobQueue) -> None:
    """Dict payloads in wire form (bookmarkId) are validated and accepted."""
    bookmark_id = uuid4()
    await queue.enqueue("search_indexing", {"bookmarkId": str(bookmark_id), "kind": "delete"})

    job = await queue.reserve(Topic.SEARCH_INDEXING)

    assert job.payload.bookmark_id == bookmark_id
    assert job.payload.kind == "delete"


async def test__enqueue__rejects_kind_on_non_search_topic(queue: JobQueue) -> None:
    """Only search indexing jobs carry a kind."""
    with pytest.raises(ValueError, match="not valid for topic"):
        await queue.enqueue(Topic.CRAWL, _payload(kind="index"))


async def test__enqueue__rejects_search_job_without_kind(queue: JobQueue) -> None:
    """Search indexing jobs must say whether to index or delete."""
    with pytest.raises(ValueError):
        await queue.enqueue(Topic.SEARCH_INDEXING, _payload())


async def test__enqueue__rejects_unknown_topic(queue: JobQueue) -> None:
    """Unknown topics are rejected before touching Redis."""
    with pytest.raises(ValueError):
        await queue.enqueue("thumbnails", _payload())


async def test__reserve__empty_topic_returns_none(queue: JobQueue) -> None:
    """Reserving from an empty topic returns None."""
    assert await queue.reserve(Topic.OPENAI) is None


async def test__reserve__topics_are_independent(queue: JobQueue) -> None:
    """A job on one topic is not visible on another."""
    await queue.enqueue(Topic.CRAWL, _payload())

    assert await queue.reserve(Topic.OPENAI) is None
    assert await queue.reserve(Topic.CRAWL) is not None


async def test__reserve__fifo_order(queue: JobQueue) -> None:
    """Jobs are delivered in the order they were enqueued."""
    first = await queue.enqueue(Topic.CRAWL, _payload())
    second = await queue.enqueue(Topic.CRAWL, _payload())

    assert (await queue.reserve(Topic.CRAWL)).id == first
    assert (await queue.reserve(Topic.CRAWL)).id == second


async def test__complete__removes_job(queue: JobQueue) -> None:
    """Completed jobs are forgotten and no longer counted as active."""
    await queue.enqueue(Topic.CRAWL, _payload())
    job = await queue.reserve(Topic.CRAWL)

    await queue.complete(job)

    assert await queue.job_status(job.id) is None
    counts = await queue.counts(Topic.CRAWL)
    assert counts == {"waiting": 0, "delayed": 0, "active": 0, "failed": 0}


async def test__counts__tracks_waiting_and_active(queue: JobQueue) -> None:
    """counts reports waiting and reserved jobs separately."""
    await queue.enqueue(Topic.VIDEO, _payload())
    await queue.enqueue(Topic.VIDEO, _payload())
    await queue.reserve(Topic.VIDEO)

    counts = await queue.counts(Topic.VIDEO)

    assert counts["waiting"] == 1
    assert counts["active"] == 1


# =============================================================================
# retry / fail / defer
# =============================================================================


async def test__retry__reschedules_with_incremented_attempts(queue: JobQueue) -> None:
    """A retried job comes back with its attempt counter incremented."""
    await queue.enqueue(Topic.OPENAI, _payload())
    job = await queue.reserve(Topic.OPENAI)

    assert await queue.retry(job, "rate limited") is True

    again = await queue.reserve(Topic.OPENAI)
    assert again.id == job.id
    assert again.attempts == 1
    status = await queue.job_status(job.id)
    assert status["last_error"] == "rate limited"


async def test__retry__marks_failed_at_attempt_ceiling(queue: JobQueue) -> None:
    """After max_attempts failed runs the job is failed, not rescheduled."""
    await queue.enqueue(Topic.OPENAI, _payload())

    results = []
    for _ in range(queue.max_attempts):
        job = await queue.reserve(Topic.OPENAI)
        results.append(await queue.retry(job, "boom"))

    assert results == [True, True, False]
    assert await queue.reserve(Topic.OPENAI) is None
    status = await queue.job_status(job.id)
    assert status["status"] == "failed"
    assert (await queue.counts(Topic.OPENAI))["failed"] == 1


async def test__retry__delays_by_backoff(redis: FakeAsyncRedis) -> None:
    """With a positive backoff the retried job is not ready immediately."""
    queue = JobQueue(redis, backoff_base=60.0, backoff_max=60.0)
    await queue.enqueue(Topic.CRAWL, _payload())
    job = await queue.reserve(Topic.CRAWL)

    await queue.retry(job, "timeout")

    assert await queue.reserve(Topic.CRAWL) is None
    assert (await queue.counts(Topic.CRAWL))["delayed"] == 1


async def test__fail__is_terminal(queue: JobQueue) -> None:
    """fail marks the job failed without further attempts."""
    await queue.enqueue(Topic.CRAWL, _payload())
    job = await queue.reserve(Topic.CRAWL)

    await queue.fail(job, "invalid url")

    assert await queue.reserve(Topic.CRAWL) is None
    status = await queue.job_status(job.id)
    assert status["status"] == "failed"
    assert status["last_error"] == "invalid url"


async def test__defer__does_not_consume_attempt(queue: JobQueue) -> None:
    """Deferred jobs come back with the same attempt count."""
    await queue.enqueue(Topic.SEARCH_INDEXING, _payload(kind="index"))
    job = await queue.reserve(Topic.SEARCH_INDEXING)

    await queue.defer(job, 0)

    again = await queue.reserve(Topic.SEARCH_INDEXING)
    assert again.id == job.id
    assert again.attempts == 0


def test__backoff_delay__grows_exponentially_and_is_capped(redis: FakeAsyncRedis) -> None:
    """Backoff doubles per attempt, is jittered into [50%, 100%] and capped."""
    queue = JobQueue(redis, backoff_base=2.0, backoff_max=10.0)

    assert 1.0 <= queue.backoff_delay(1) <= 2.0
    assert 2.0 <= queue.backoff_delay(2) <= 4.0
    assert 4.0 <= queue.backoff_delay(3) <= 8.0
    assert 5.0 <= queue.backoff_delay(10) <= 10.0


# =============================================================================
# Leases
# =============================================================================


async def test__recover_expired__returns_job_to_waiting(redis: FakeAsyncRedis) -> None:
    """A job whose consumer never settled it is delivered again."""
    queue = JobQueue(redis, lease_seconds=60)
    await queue.enqueue(Topic.CRAWL, _payload())
    job = await queue.reserve(Topic.CRAWL)
    # Simulate a crashed consumer by expiring the lease
    await redis.zadd(f"jobs:{Topic.CRAWL.value}:leases", {job.id: time.time() - 1})

    recovered = await queue.recover_expired(Topic.CRAWL)

    assert recovered == 1
    again = await queue.reserve(Topic.CRAWL)
    assert again.id == job.id


async def test__recover_expired__ignores_live_leases(queue: JobQueue) -> None:
    """Jobs within their lease stay with their consumer."""
    await queue.enqueue(Topic.CRAWL, _payload())
    await queue.reserve(Topic.CRAWL)

    assert await queue.recover_expired(Topic.CRAWL) == 0
    assert await queue.reserve(Topic.CRAWL) is None


async def test__reserve__skips_job_completed_by_earlier_delivery(
    queue: JobQueue, redis: FakeAsyncRedis,
) -> None:
    """A redelivered id whose job already completed is dropped."""
    await queue.enqueue(Topic.CRAWL, _payload())
    job = await queue.reserve(Topic.CRAWL)
    # A stale copy of the id is still waiting when the first delivery completes
    await redis.lpush(f"jobs:{Topic.CRAWL.value}:waiting", job.id)
    await queue.complete(job)

    assert await queue.reserve(Topic.CRAWL) is None
    assert (await queue.counts(Topic.CRAWL))["active"] == 0


# =============================================================================
# Locks
# =============================================================================


async def test__lock__is_exclusive(queue: JobQueue) -> None:
    """A held lock cannot be taken again until released."""
    async with queue.lock("bookmark:1", ttl_seconds=10) as first:
        async with queue.lock("bookmark:1", ttl_seconds=10) as second:
            assert first is True
            assert second is False

    async with queue.lock("bookmark:1", ttl_seconds=10) as third:
        assert third is True


async def test__lock__different_keys_do_not_conflict(queue: JobQueue) -> None:
    """Locks on different bookmarks are independent."""
    async with queue.lock("bookmark:1", ttl_seconds=10) as first:
        async with queue.lock("bookmark:2", ttl_seconds=10) as second:
            assert first is True
            assert second is True


# =============================================================================
# Global state
# =============================================================================


def test__set_job_queue__round_trips(queue: JobQueue) -> None:
    """The process-wide queue can be set and cleared."""
    set_job_queue(queue)
    try:
        assert get_job_queue() is queue
    finally:
        set_job_queue(None)
    assert get_job_queue() is None


def test__from_settings__applies_job_policy(redis: FakeAsyncRedis) -> None:
    """Retry and lease policy come from the JOB_* settings."""
    from core.config import Settings

    settings = Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        JOB_MAX_ATTEMPTS=7,
        JOB_BACKOFF_BASE_SECONDS=0.5,
        JOB_BACKOFF_MAX_SECONDS=30,
        JOB_LEASE_SECONDS=90,
    )

    queue = JobQueue.from_settings(redis, settings)

    assert queue.max_attempts == 7
    assert queue.backoff_base == 0.5
    assert queue.backoff_max == 30
    assert queue.lease_seconds == 90
