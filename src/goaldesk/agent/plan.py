import logging
from datetime import datetime
from typing import Tuple

from ..errors import NoActiveGoalError, SchemaViolationError, ValidationError
from ..models import Goal, SessionState, create_goal, utc
from .contract import GoalPatch
from .policy import default_priority_for_goal_type, is_supported_goal_type, should_interleave

logger = logging.getLogger(__name__)


def validate_goal_patch(patch: GoalPatch) -> GoalPatch:
    """Reject planner output the pipeline cannot act on.

    Raises:
        SchemaViolationError: unsupported goal type or non-positive priority.
    """
    goal_type = (patch.goal_type or "").strip()
    if not is_supported_goal_type(goal_type):
        raise SchemaViolationError(f"unsupported goal_type={goal_type!r}")
    if patch.priority <= 0:
        raise SchemaViolationError("priority must be > 0")
    patch.goal_type = goal_type
    return patch


def new_goal_id(goal_type: str, now: datetime) -> str:
    safe_type = (goal_type or "").strip().replace(".", "_") or "goal"
    now = utc(now)
    nanos = int(now.timestamp()) * 1_000_000_000 + now.microsecond * 1_000
    return f"{safe_type}_{nanos}"


def find_or_create_goal(
    st: SessionState, patch: GoalPatch, now: datetime
) -> Tuple[Goal, bool]:
    """Resolve the goal a patch targets. Returns (goal, created)."""
    goal_id = (patch.goal_id or "").strip()
    if goal_id:
        existing = st.get_goal(goal_id)
        if existing is not None:
            return existing, False

    active = st.active_goal()
    if active is not None and active.type == patch.goal_type and not active.is_done():
        return active, False

    if not goal_id:
        goal_id = new_goal_id(patch.goal_type, now)
    goal = create_goal(goal_id, patch.goal_type, patch.priority, now)
    if goal.priority <= 0:
        goal.priority = default_priority_for_goal_type(patch.goal_type)
    st.add_goal(goal)
    return goal, True


def apply_plan(st: SessionState, patch: GoalPatch, now: datetime) -> Goal:
    """Reconcile a planner patch against the session and return the focused goal.

    Raises:
        ValidationError: goal type outside a supported namespace.
        InvalidTransitionError: the patch targets a done goal that must take focus.
        NoActiveGoalError: nothing holds focus afterwards.
    """
    if st is None:
        raise ValidationError("session state is nil")

    goal_type = (patch.goal_type or "").strip()
    if not is_supported_goal_type(goal_type):
        raise ValidationError(f"unsupported goal type={goal_type!r}")
    patch.goal_type = goal_type

    target, created = find_or_create_goal(st, patch, now)

    if patch.priority > 0:
        target.priority = patch.priority
    elif target.priority <= 0:
        target.priority = default_priority_for_goal_type(goal_type)
    target.type = goal_type

    for key, value in (patch.slots_patch or {}).items():
        target.set_slot(key, value)
    target.set_missing(patch.missing, patch.next_question)
    target.updated_at = utc(now)

    current = st.active_goal()
    if created or current is None or should_interleave(current, target):
        if current is not None and current.id != target.id:
            logger.info(
                "Session %s: focus %s -> %s (created=%s)",
                st.session_id,
                current.id,
                target.id,
                created,
            )
        st.suspend_and_activate(target.id, now)

    st.touch(now)
    focused = st.active_goal()
    if focused is None:
        raise NoActiveGoalError("active goal is missing")
    return focused
