"""Database engine, session factory and the per-request session dependency."""
import logging
from collections.abc import AsyncGenerator

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.config import get_settings
from jobs.outbox import relay_outbox
from jobs.queue import get_job_queue

logger = logging.getLogger(__name__)

settings = get_settings()

_pool_options = (
    {}
    if settings.database_url.startswith("sqlite")
    else {"pool_size": settings.db_pool_size, "max_overflow": settings.db_max_overflow}
)

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_pre_ping=True,
    **_pool_options,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def get_session_factory() -> async_sessionmaker:
    """Return the session factory for workers and background loops."""
    return async_session_factory


async def relay_after_commit(session: AsyncSession) -> None:
    """
    Push jobs staged by the committed request to the queue.

    Failures are logged only: the rows stay in the outbox and the worker
    process relays them later.
    """
    queue = get_job_queue()
    if queue is None:
        return
    try:
        await relay_outbox(session, queue)
    except (RedisError, SQLAlchemyError) as e:
        logger.warning("Outbox relay after commit failed, leaving jobs staged: %s", e)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    One session, and one transaction, per request.

    Services only flush; the commit happens here once the endpoint returns and
    any exception rolls the whole request back. Jobs staged during the request
    reach the queue only after the commit, so a worker never sees a job for
    data that was rolled back.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        await relay_after_commit(session)
