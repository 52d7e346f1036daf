from datetime import datetime

from ..errors import GoalNotFoundError, InvalidTransitionError, ValidationError
from ..models import (
    GOAL_ACTIVE,
    GOAL_BLOCKED,
    GOAL_DONE,
    GOAL_SUSPENDED,
    SessionState,
    utc,
)
from .contract import StateUpdates


def apply_state_updates(
    st: SessionState,
    goal_id: str,
    updates: StateUpdates,
    now: datetime,
) -> None:
    """Commit specialist updates onto a goal, completing it when asked.

    ``set_status="done"`` is treated as ``mark_done``; completing the focused
    goal resumes the previous one on the stack.
    """
    if st is None:
        raise ValidationError("nil state")
    goal_id = (goal_id or "").strip()
    if not goal_id:
        raise ValidationError("goal id is empty")

    goal = st.get_goal(goal_id)
    if goal is None:
        raise GoalNotFoundError(f"goal not found: {goal_id}")

    for key, value in (updates.slots_patch or {}).items():
        goal.set_slot(key, value)

    next_question = (updates.next_question or "").strip()
    if updates.missing or next_question:
        goal.set_missing(updates.missing, next_question)

    mark_done = updates.mark_done
    set_status = (updates.set_status or "").strip().lower()
    if set_status:
        if set_status == GOAL_ACTIVE:
            goal.status = GOAL_ACTIVE
        elif set_status == GOAL_BLOCKED:
            if not goal.missing or not goal.next_question.strip():
                raise InvalidTransitionError(
                    "blocked status requires missing+next_question"
                )
            goal.status = GOAL_BLOCKED
        elif set_status == GOAL_SUSPENDED:
            goal.status = GOAL_SUSPENDED
        elif set_status == GOAL_DONE:
            mark_done = True
        else:
            raise ValidationError(f"invalid set_status={updates.set_status!r}")

    if mark_done:
        st.mark_goal_done(goal_id, now)
        return

    goal.updated_at = utc(now)
    st.touch(now)
