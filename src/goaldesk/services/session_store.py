import json
import logging
from typing import Any, Dict

from ..errors import GoalDeskError, SessionNotFoundError, StoreError, ValidationError
from ..models import SessionState, dict_to_session, session_to_dict
from .redis import RedisCrudService

logger = logging.getLogger(__name__)


def _require_session_id(session_id: str) -> str:
    session_id = (session_id or "").strip()
    if not session_id:
        raise ValidationError("session_id is empty")
    return session_id


class RedisSessionStore:
    """Session state persisted as JSON in Redis with a sliding TTL."""

    def __init__(
        self,
        redis_crud: RedisCrudService,
        ttl_seconds: int,
        key_prefix: str = "atod:session:",
    ) -> None:
        self._redis = redis_crud
        self._ttl = ttl_seconds
        self._prefix = key_prefix

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}"

    async def load(self, session_id: str) -> SessionState:
        """Load state for session_id.

        Raises:
            SessionNotFoundError: nothing is stored under the key.
            StoreError: Redis failed or the stored payload is unreadable.
        """
        session_id = _require_session_id(session_id)
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            raise SessionNotFoundError(f"session not found: {session_id}")
        try:
            data = json.loads(raw)
            state = dict_to_session(data)
            state.validate()
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Invalid session data for %s: %s", session_id, e)
            raise StoreError(f"invalid session data for {session_id}: {e}") from e
        except GoalDeskError as e:
            logger.warning("Stored session %s is inconsistent: %s", session_id, e)
            raise StoreError(f"invalid session data for {session_id}: {e}") from e
        return state

    async def save(self, state: SessionState) -> None:
        """Persist state with TTL (refreshed on every save)."""
        if state is None:
            raise ValidationError("state is nil")
        session_id = _require_session_id(state.session_id)
        try:
            payload = json.dumps(session_to_dict(state))
        except (TypeError, ValueError) as e:
            logger.warning("Session serialization failed for %s: %s", session_id, e)
            raise StoreError(f"session serialization failed: {e}") from e
        await self._redis.set(self._key(session_id), payload, ttl_seconds=self._ttl)

    async def delete(self, session_id: str) -> None:
        session_id = _require_session_id(session_id)
        await self._redis.delete(self._key(session_id))


class InMemorySessionStore:
    """Process-local store used when Redis is not configured (and in tests).

    States are stored as serialized dicts so callers never share live objects.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Any]] = {}

    async def load(self, session_id: str) -> SessionState:
        session_id = _require_session_id(session_id)
        data = self._data.get(session_id)
        if data is None:
            raise SessionNotFoundError(f"session not found: {session_id}")
        return dict_to_session(json.loads(json.dumps(data)))

    async def save(self, state: SessionState) -> None:
        if state is None:
            raise ValidationError("state is nil")
        session_id = _require_session_id(state.session_id)
        self._data[session_id] = session_to_dict(state)

    async def delete(self, session_id: str) -> None:
        session_id = _require_session_id(session_id)
        self._data.pop(session_id, None)
