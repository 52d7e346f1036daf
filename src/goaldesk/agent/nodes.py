"""Stages of a single turn. Each stage takes and returns the TurnState and
raises on failure; none of them recovers locally."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from ..errors import GoalDeskError, SessionNotFoundError, StateError, ValidationError
from ..models import SessionState, new_session_state, utc
from .contract import (
    GoalPatch,
    MemoryStore,
    PlannerRequest,
    SessionStore,
    StateUpdates,
    ToolGateway,
)
from .dispatch import dispatch_to_specialist
from .plan import apply_plan as apply_goal_patch
from .plan import validate_goal_patch
from .registry import Registry
from .updates import apply_state_updates as apply_goal_updates

logger = logging.getLogger(__name__)


@dataclass
class TurnState:
    """Everything one turn carries from stage to stage."""

    session_id: str
    user_message: str
    now: datetime
    session: Optional[SessionState] = None
    memory_summary: str = ""
    goal_patch: Optional[GoalPatch] = None
    message: str = ""
    state_updates: StateUpdates = field(default_factory=StateUpdates)


def _require_session(turn: TurnState) -> SessionState:
    if turn is None or turn.session is None:
        raise ValidationError("turn session is nil")
    return turn.session


def validate_request(session_id: str, text: str, now: Callable[[], datetime]) -> TurnState:
    session_id = (session_id or "").strip()
    if not session_id:
        raise ValidationError("session_id is required")
    text = (text or "").strip()
    if not text:
        raise ValidationError("text is required")
    return TurnState(session_id=session_id, user_message=text, now=utc(now()))


async def load_or_create_state(
    turn: TurnState,
    store: SessionStore,
    workspace_id: str,
    customer_id: str,
    channel_type: str,
) -> TurnState:
    try:
        turn.session = await store.load(turn.session_id)
    except SessionNotFoundError:
        logger.info("Session %s not found; starting a new one", turn.session_id)
        turn.session = new_session_state(
            turn.session_id, workspace_id, customer_id, channel_type, turn.now
        )
    return turn


async def read_memory(turn: TurnState, memory: MemoryStore) -> TurnState:
    st = _require_session(turn)
    turn.memory_summary = await memory.read_summary(st.customer_id)
    return turn


async def plan_goal(turn: TurnState, registry: Registry) -> TurnState:
    st = _require_session(turn)
    patch = await registry.planner.plan(
        PlannerRequest(
            user_message=turn.user_message,
            memory_summary=turn.memory_summary,
            session=st,
            now=turn.now,
        )
    )
    if patch is None:
        raise ValidationError("planner returned no goal")
    turn.goal_patch = validate_goal_patch(patch)
    return turn


def apply_plan(turn: TurnState) -> TurnState:
    st = _require_session(turn)
    if turn.goal_patch is None:
        raise ValidationError("goal patch is nil")
    apply_goal_patch(st, turn.goal_patch, turn.now)
    return turn


async def dispatch_specialist(
    turn: TurnState, registry: Registry, tools: ToolGateway
) -> TurnState:
    st = _require_session(turn)
    message, updates = await dispatch_to_specialist(
        turn.user_message,
        turn.memory_summary,
        st.active_goal(),
        registry,
        tools,
    )
    turn.message = message
    turn.state_updates = updates
    return turn


def apply_state_updates(turn: TurnState) -> TurnState:
    st = _require_session(turn)
    apply_goal_updates(st, st.active_goal_id, turn.state_updates, turn.now)
    return turn


async def validate_and_save_state(turn: TurnState, store: SessionStore) -> TurnState:
    st = _require_session(turn)
    st.touch(turn.now)
    try:
        st.validate()
    except GoalDeskError as e:
        raise StateError(f"state validation failed: {e}") from e
    await store.save(st)
    return turn


async def write_memory(turn: TurnState, memory: MemoryStore) -> TurnState:
    st = _require_session(turn)
    await memory.write_summary(st.customer_id, turn.state_updates.memory_update)
    return turn


def finalize_reply(turn: TurnState) -> str:
    reply = (turn.message or "").strip()
    if not reply:
        raise ValidationError("specialist returned empty message")
    return reply
