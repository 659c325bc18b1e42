"""Redis connection used as the job queue broker."""
import logging

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError

from core.config import Settings

logger = logging.getLogger(__name__)


class RedisClient:
    """
    Owns the connection pool shared by the job queue and the locks.

    The API connects with `required=False`: while Redis is down, mutations
    still commit and their jobs wait in the outbox. Worker processes connect
    with `required=True` since they cannot run without the broker.
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 20,
        socket_timeout: float | None = 5.0,
    ) -> None:
        self._url = url
        self._pool_size = pool_size
        self._socket_timeout = socket_timeout
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisClient":
        """Build a client for REDIS_URL and REDIS_POOL_SIZE."""
        return cls(url=settings.redis_url, pool_size=settings.redis_pool_size)

    async def connect(self, required: bool = False) -> None:
        """
        Create the pool and verify the broker answers.

        Raises:
            RedisError: If the broker is unreachable and `required` is set.
        """
        try:
            self._pool = ConnectionPool.from_url(
                self._url,
                max_connections=self._pool_size,
                socket_timeout=self._socket_timeout,
            )
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            logger.info("Connected to Redis at %s", self._redacted_url)
        except RedisError as e:
            self._client = None
            self._pool = None
            if required:
                raise
            logger.warning("Redis unavailable, jobs will stay in the outbox: %s", e)

    async def close(self) -> None:
        """Close the pool."""
        if self._client:
            await self._client.aclose()
            self._client = None
            self._pool = None
            logger.info("Redis connection closed")

    @property
    def _redacted_url(self) -> str:
        # Drop credentials before logging
        return self._url.rsplit("@", 1)[-1]

    @property
    def is_connected(self) -> bool:
        """Whether connect() succeeded."""
        return self._client is not None

    @property
    def client(self) -> Redis | None:
        """The underlying redis.asyncio client, or None when not connected."""
        return self._client

    async def ping(self) -> bool:
        """Check broker connectivity without raising."""
        if not self._client:
            return False
        try:
            return await self._client.ping()
        except RedisError:
            return False
