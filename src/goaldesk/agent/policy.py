from typing import Optional

from ..models import Goal

SUPPORTED_NAMESPACES = ("sales", "support")

_DEFAULT_PRIORITIES = {
    "support": 100,
    "sales": 50,
}
_FALLBACK_PRIORITY = 10


def goal_namespace(goal_type: str) -> str:
    """Return the namespace prefix of a goal type ("" if it has none)."""
    goal_type = (goal_type or "").strip()
    if "." not in goal_type:
        return ""
    return goal_type.split(".", 1)[0]


def is_supported_goal_type(goal_type: str) -> bool:
    return goal_namespace(goal_type) in SUPPORTED_NAMESPACES


def default_priority_for_goal_type(goal_type: str) -> int:
    """Support outranks sales by default; anything else sits below both."""
    return _DEFAULT_PRIORITIES.get(goal_namespace(goal_type), _FALLBACK_PRIORITY)


def should_interleave(current: Optional[Goal], candidate: Optional[Goal]) -> bool:
    """Return True when ``candidate`` should take focus from ``current``.

    Ties never preempt.
    """
    if candidate is None:
        return False
    if current is None:
        return True
    if current.id == candidate.id:
        return False
    return candidate.priority > current.priority
