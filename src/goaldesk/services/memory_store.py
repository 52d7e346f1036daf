import logging

from ..errors import ValidationError
from .redis import RedisCrudService

logger = logging.getLogger(__name__)


class RedisMemoryStore:
    """Rolling per-customer summary kept in Redis.

    Each update is appended on its own line and only the trailing
    ``max_chars`` characters are kept.
    """

    def __init__(
        self,
        redis_crud: RedisCrudService,
        key_prefix: str = "atod:memory:",
        max_chars: int = 2000,
    ) -> None:
        self._redis = redis_crud
        self._prefix = key_prefix
        self._max_chars = max_chars

    def _key(self, customer_id: str) -> str:
        customer_id = (customer_id or "").strip()
        if not customer_id:
            raise ValidationError("customer_id is empty")
        return f"{self._prefix}{customer_id}"

    async def read_summary(self, customer_id: str) -> str:
        raw = await self._redis.get(self._key(customer_id))
        return raw or ""

    async def write_summary(self, customer_id: str, text: str) -> None:
        text = (text or "").strip()
        if not text:
            return
        key = self._key(customer_id)
        current = await self._redis.get(key) or ""
        merged = f"{current}\n{text}" if current else text
        if self._max_chars > 0 and len(merged) > self._max_chars:
            merged = merged[-self._max_chars:]
        await self._redis.set(key, merged)
        logger.debug("Memory updated for customer %s (%d chars)", customer_id, len(merged))


class NoopMemoryStore:
    """Memory store used when Redis is not configured: remembers nothing."""

    async def read_summary(self, customer_id: str) -> str:
        return ""

    async def write_summary(self, customer_id: str, text: str) -> None:
        return None
