from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .errors import (
    GoalNotFoundError,
    InvalidTransitionError,
    StackCorruptError,
    StateError,
    ValidationError,
)

GOAL_ACTIVE = "active"
GOAL_BLOCKED = "blocked"
GOAL_SUSPENDED = "suspended"
GOAL_DONE = "done"

GOAL_STATUSES = frozenset({GOAL_ACTIVE, GOAL_BLOCKED, GOAL_SUSPENDED, GOAL_DONE})


def utc(now: datetime) -> datetime:
    """Return ``now`` as an aware UTC datetime (naive values are taken as UTC)."""
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


@dataclass
class Goal:
    """A tracked customer intent (e.g. ``sales.recommend_item``)."""

    id: str
    type: str
    status: str = GOAL_ACTIVE
    priority: int = 0
    slots: Dict[str, Any] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    next_question: str = ""
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def is_blocked(self) -> bool:
        return self.status == GOAL_BLOCKED

    def is_done(self) -> bool:
        return self.status == GOAL_DONE

    def set_slot(self, key: str, value: Any) -> None:
        if self.slots is None:
            self.slots = {}
        self.slots[key] = value

    def set_missing(self, missing: Optional[List[str]], next_question: str) -> None:
        """Record outstanding slots and derive blocked/active from them.

        Done and suspended goals only get the bookkeeping fields updated; their
        status is never reopened here. The question is stored verbatim, even
        when it is empty while ``missing`` is not.
        """
        self.missing = list(missing or [])

        if self.status in (GOAL_DONE, GOAL_SUSPENDED):
            self.next_question = next_question if self.missing else ""
            return

        if not self.missing:
            if self.status == GOAL_BLOCKED:
                self.status = GOAL_ACTIVE
            self.next_question = ""
            return

        self.status = GOAL_BLOCKED
        self.next_question = next_question


@dataclass
class SessionState:
    """Per-session goal state: focus pointer, LIFO goal stack and goal map.

    Goals reference each other only through string ids so that the whole
    structure serializes as plain JSON and can be validated textually.
    """

    session_id: str
    workspace_id: str = ""
    customer_id: str = ""
    channel_type: str = ""
    active_goal_id: str = ""
    goal_stack: List[str] = field(default_factory=list)
    goals: Dict[str, Goal] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def touch(self, now: datetime) -> None:
        self.updated_at = utc(now)

    def get_goal(self, goal_id: str) -> Optional[Goal]:
        return self.goals.get(goal_id)

    def active_goal(self) -> Optional[Goal]:
        if not self.active_goal_id:
            return None
        return self.goals.get(self.active_goal_id)

    def add_goal(self, goal: Goal) -> None:
        """Add (or replace) a goal in the map."""
        if goal is None or not goal.id:
            raise ValidationError("goal id is empty")
        self.goals[goal.id] = goal

    def push_goal(self, goal_id: str) -> None:
        """Push onto the stack without touching statuses."""
        if not goal_id:
            raise ValidationError("goal id is empty")
        self.goal_stack.append(goal_id)

    def pop_goal(self) -> Optional[str]:
        if not self.goal_stack:
            return None
        return self.goal_stack.pop()

    def peek_goal(self) -> Optional[str]:
        if not self.goal_stack:
            return None
        return self.goal_stack[-1]

    def _push_unless_top(self, goal_id: str) -> None:
        if self.peek_goal() != goal_id:
            self.goal_stack.append(goal_id)

    def set_active_goal(self, goal_id: str) -> None:
        """Point focus at an existing goal and make sure it tops the stack."""
        if not goal_id:
            raise ValidationError("goal id is empty")
        if goal_id not in self.goals:
            raise GoalNotFoundError(f"goal not found: {goal_id}")
        self.active_goal_id = goal_id
        self._push_unless_top(goal_id)

    def suspend_and_activate(self, goal_id: str, now: datetime) -> None:
        """Interleave: suspend the focused goal and bring ``goal_id`` into focus.

        A blocked target keeps its blocked status while gaining focus.
        """
        if not goal_id:
            raise ValidationError("goal id is empty")
        target = self.get_goal(goal_id)
        if target is None:
            raise GoalNotFoundError(f"goal not found: {goal_id}")
        if target.is_done():
            raise InvalidTransitionError(f"cannot activate done goal {goal_id}")

        now = utc(now)
        current = self.active_goal()
        if current is not None and current.id != goal_id and not current.is_done():
            current.status = GOAL_SUSPENDED
            current.updated_at = now

        if target.status not in (GOAL_BLOCKED, GOAL_DONE):
            target.status = GOAL_ACTIVE
        target.updated_at = now

        self._push_unless_top(goal_id)
        self.active_goal_id = goal_id
        self.touch(now)

    def resume_previous(self, now: datetime) -> Optional[str]:
        """Pop the finished focus and resume whatever is under it.

        Returns the resumed goal id, or None when nothing can be resumed. A
        stack entry that no longer resolves clears focus instead of raising,
        because the completion that triggered the resume must still succeed.
        """
        if not self.goal_stack:
            return None

        if self.active_goal_id and self.peek_goal() == self.active_goal_id:
            self.pop_goal()

        now = utc(now)
        prev_id = self.peek_goal()
        if prev_id is None:
            self.active_goal_id = ""
            self.touch(now)
            return None

        prev = self.get_goal(prev_id)
        if prev is None:
            self.active_goal_id = ""
            self.touch(now)
            return None

        if prev.status == GOAL_SUSPENDED:
            prev.status = GOAL_ACTIVE
        prev.updated_at = now

        self.active_goal_id = prev_id
        self.touch(now)
        return prev_id

    def mark_goal_done(self, goal_id: str, now: datetime) -> None:
        """Complete a goal; if it held focus, resume the previous one."""
        if not goal_id:
            raise ValidationError("goal id is empty")
        goal = self.get_goal(goal_id)
        if goal is None:
            raise GoalNotFoundError(f"goal not found: {goal_id}")

        now = utc(now)
        goal.status = GOAL_DONE
        goal.missing = []
        goal.next_question = ""
        goal.updated_at = now

        if self.active_goal_id == goal_id:
            self.resume_previous(now)
        self.touch(now)

    def validate(self) -> None:
        """Check cross-reference and blocked-goal invariants."""
        if self.active_goal_id and self.active_goal_id not in self.goals:
            raise GoalNotFoundError(f"goal not found: active_goal_id={self.active_goal_id}")
        for goal_id in self.goal_stack:
            if goal_id not in self.goals:
                raise StackCorruptError(f"goal stack corrupt: stack has missing goal_id={goal_id}")
        for goal in self.goals.values():
            if goal.is_blocked() and (not goal.missing or not goal.next_question):
                raise StateError(
                    f"blocked goal {goal.id} must have missing and next_question"
                )


def create_goal(goal_id: str, goal_type: str, priority: int, now: datetime) -> Goal:
    return Goal(
        id=goal_id,
        type=goal_type,
        status=GOAL_ACTIVE,
        priority=priority,
        updated_at=utc(now),
    )


def new_session_state(
    session_id: str,
    workspace_id: str,
    customer_id: str,
    channel_type: str,
    now: datetime,
) -> SessionState:
    return SessionState(
        session_id=session_id,
        workspace_id=workspace_id,
        customer_id=customer_id,
        channel_type=channel_type,
        updated_at=utc(now),
    )


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return utc(value)
    if not value:
        return datetime.now(timezone.utc)
    return utc(datetime.fromisoformat(str(value)))


def goal_to_dict(goal: Goal) -> Dict[str, Any]:
    """Serialize a Goal to a JSON-serializable dict."""
    return {
        "id": goal.id,
        "type": goal.type,
        "status": goal.status,
        "priority": goal.priority,
        "slots": dict(goal.slots or {}),
        "missing": list(goal.missing or []),
        "next_question": goal.next_question,
        "updated_at": goal.updated_at.isoformat(),
    }


def dict_to_goal(data: Dict[str, Any]) -> Goal:
    return Goal(
        id=str(data.get("id", "")),
        type=str(data.get("type", "")),
        status=str(data.get("status") or GOAL_ACTIVE),
        priority=int(data.get("priority", 0)),
        slots=dict(data.get("slots") or {}),
        missing=[str(m) for m in data.get("missing") or []],
        next_question=str(data.get("next_question") or ""),
        updated_at=_parse_time(data.get("updated_at")),
    )


def session_to_dict(state: SessionState) -> Dict[str, Any]:
    """Serialize SessionState to a JSON-serializable dict."""
    return {
        "session_id": state.session_id,
        "workspace_id": state.workspace_id,
        "customer_id": state.customer_id,
        "channel_type": state.channel_type,
        "active_goal_id": state.active_goal_id,
        "goal_stack": list(state.goal_stack),
        "goals": {goal_id: goal_to_dict(g) for goal_id, g in state.goals.items()},
        "updated_at": state.updated_at.isoformat(),
    }


def dict_to_session(data: Dict[str, Any]) -> SessionState:
    """Build SessionState from a dict (e.g. from Redis)."""
    goals = {}
    for goal_id, raw in (data.get("goals") or {}).items():
        goal = dict_to_goal(raw)
        if not goal.id:
            goal.id = goal_id
        goals[goal_id] = goal
    return SessionState(
        session_id=str(data.get("session_id", "")),
        workspace_id=str(data.get("workspace_id") or ""),
        customer_id=str(data.get("customer_id") or ""),
        channel_type=str(data.get("channel_type") or ""),
        active_goal_id=str(data.get("active_goal_id") or ""),
        goal_stack=[str(g) for g in data.get("goal_stack") or []],
        goals=goals,
        updated_at=_parse_time(data.get("updated_at")),
    )
