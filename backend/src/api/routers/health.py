"""Health check endpoints."""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import get_async_session
from jobs.queue import get_job_queue
from schemas.jobs import Topic


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    queue: str
    jobs: dict[str, dict[str, int]] = {}


@router.get("/health", response_model=HealthResponse)
async def health_check(
    db: AsyncSession = Depends(get_async_session),
) -> HealthResponse:
    """
    Check application, database and job queue health.

    An unavailable queue degrades the service without failing it: mutations
    keep committing and their jobs wait in the outbox.
    """
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Database health check failed")
        db_status = "unhealthy"

    queue_status = "unavailable"
    jobs: dict[str, dict[str, int]] = {}
    queue = get_job_queue()
    if queue is not None:
        try:
            for topic in Topic:
                jobs[topic.value] = await queue.counts(topic)
            queue_status = "healthy"
        except RedisError:
            logger.exception("Job queue health check failed")
            queue_status = "unhealthy"

    healthy = db_status == "healthy" and queue_status == "healthy"
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        database=db_status,
        queue=queue_status,
        jobs=jobs,
    )
