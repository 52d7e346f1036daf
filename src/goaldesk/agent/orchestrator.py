import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from ..errors import ValidationError
from ..services.memory_store import NoopMemoryStore, RedisMemoryStore
from ..services.redis import RedisCrudService, get_redis_crud_service
from ..services.session_store import InMemorySessionStore, RedisSessionStore
from ..settings import Settings, get_settings
from . import nodes
from .contract import MemoryStore, SessionStore, ToolGateway
from .registry import Registry, build_registry
from .tools import build_tool_gateway

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Orchestrator:
    """Runs one turn through the fixed stage sequence.

    validate_request -> load_or_create_state -> read_memory -> plan_goal ->
    apply_plan -> dispatch_specialist -> apply_state_updates ->
    validate_and_save_state -> write_memory -> finalize_reply
    """

    def __init__(
        self,
        store: SessionStore,
        registry: Registry,
        tools: ToolGateway,
        memory: MemoryStore,
        workspace_id: str = "",
        customer_id: str = "",
        channel_type: str = "",
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if store is None or registry is None or tools is None or memory is None:
            raise ValidationError("orchestrator dependencies are required")
        self._store = store
        self._registry = registry
        self._tools = tools
        self._memory = memory
        self._workspace_id = workspace_id
        self._customer_id = customer_id
        self._channel_type = channel_type
        self._now = now or _utcnow

    async def handle_message(self, session_id: str, text: str) -> str:
        """Process one user message and return the reply.

        Any stage failure is logged with the stage name and re-raised; state
        is only persisted once every earlier stage has succeeded.
        """
        stage = "validate_request"
        try:
            turn = nodes.validate_request(session_id, text, self._now)
            logger.info("Turn started: session=%s", turn.session_id)

            stage = "load_or_create_state"
            turn = await nodes.load_or_create_state(
                turn, self._store, self._workspace_id, self._customer_id, self._channel_type
            )
            stage = "read_memory"
            turn = await nodes.read_memory(turn, self._memory)
            stage = "plan_goal"
            turn = await nodes.plan_goal(turn, self._registry)
            stage = "apply_plan"
            turn = nodes.apply_plan(turn)
            stage = "dispatch_specialist"
            turn = await nodes.dispatch_specialist(turn, self._registry, self._tools)
            stage = "apply_state_updates"
            turn = nodes.apply_state_updates(turn)
            stage = "validate_and_save_state"
            turn = await nodes.validate_and_save_state(turn, self._store)
            stage = "write_memory"
            turn = await nodes.write_memory(turn, self._memory)
            stage = "finalize_reply"
            reply = nodes.finalize_reply(turn)
        except Exception as e:
            logger.warning("Turn failed: session=%s stage=%s error=%s", session_id, stage, e)
            raise

        logger.info(
            "Turn finished: session=%s active_goal=%s",
            turn.session_id,
            turn.session.active_goal_id if turn.session else "",
        )
        return reply

    async def reset_session(self, session_id: str) -> None:
        """Forget all goal state for a session."""
        session_id = (session_id or "").strip()
        if not session_id:
            raise ValidationError("session_id is required")
        await self._store.delete(session_id)
        logger.info("Session reset: %s", session_id)


def build_orchestrator(
    settings: Optional[Settings] = None,
    redis_crud: Optional[RedisCrudService] = None,
    registry: Optional[Registry] = None,
    tools: Optional[ToolGateway] = None,
) -> Orchestrator:
    """Assemble an orchestrator from settings.

    With a connected ``redis_crud`` sessions and memory live in Redis;
    without one, sessions stay in process memory and nothing is remembered.
    """
    settings = settings or get_settings()
    if redis_crud is not None:
        store: SessionStore = RedisSessionStore(
            redis_crud=redis_crud,
            ttl_seconds=settings.session_ttl_seconds,
            key_prefix=settings.session_key_prefix,
        )
        memory: MemoryStore = RedisMemoryStore(
            redis_crud=redis_crud,
            key_prefix=settings.memory_key_prefix,
            max_chars=settings.memory_max_chars,
        )
    else:
        store = InMemorySessionStore()
        memory = NoopMemoryStore()

    return Orchestrator(
        store=store,
        registry=registry or build_registry(settings),
        tools=tools or build_tool_gateway(settings),
        memory=memory,
        workspace_id=settings.workspace_id,
        customer_id=settings.customer_id,
        channel_type=settings.channel_type,
    )


# Lazy singleton (connects to Redis on first use)
_orchestrator_instance: Orchestrator | None = None
_redis_crud_instance: RedisCrudService | None = None


async def get_orchestrator_async() -> Orchestrator:
    """Return the process-wide orchestrator, connecting to Redis if configured. Cached."""
    global _orchestrator_instance, _redis_crud_instance
    if _orchestrator_instance is not None:
        return _orchestrator_instance

    redis_crud = get_redis_crud_service()
    if redis_crud is None:
        logger.info("REDIS_URL not set; sessions are kept in memory and memory is disabled")
    else:
        await redis_crud.connect()

    _orchestrator_instance = build_orchestrator(redis_crud=redis_crud)
    _redis_crud_instance = redis_crud
    return _orchestrator_instance


async def close_orchestrator() -> None:
    """Close the Redis connection used by the orchestrator. Idempotent."""
    global _orchestrator_instance, _redis_crud_instance
    if _redis_crud_instance is not None:
        await _redis_crud_instance.close()
        logger.debug("Orchestrator (Redis) closed")
    _redis_crud_instance = None
    _orchestrator_instance = None
