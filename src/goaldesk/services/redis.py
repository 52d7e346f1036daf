import logging

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import StoreError
from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async get/set/delete against a Redis instance.

    Unlike a cache, session state must not silently vanish: connection and
    timeout failures are raised as ``StoreError`` after being logged.
    """

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(
            self._url,
            decode_responses=True,
        )
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise StoreError(f"redis unavailable: {e}") from e

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    def _require_client(self) -> Redis:
        if self._client is None:
            raise StoreError("redis is not connected")
        return self._client

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing."""
        client = self._require_client()
        try:
            value = await client.get(key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            raise StoreError(f"redis get failed: {e}") from e
        return value if value is None else str(value)

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: int | None = None,
    ) -> None:
        """Set key to value. If ttl_seconds is set, the key will expire."""
        client = self._require_client()
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await client.setex(key, ttl_seconds, value)
            else:
                await client.set(key, value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            raise StoreError(f"redis set failed: {e}") from e

    async def delete(self, key: str) -> None:
        """Delete key; a missing key is not an error."""
        client = self._require_client()
        try:
            await client.delete(key)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            raise StoreError(f"redis delete failed: {e}") from e


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
