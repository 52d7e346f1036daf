"""Data exchanged with the planner, specialists and tool gateway, and the
capability interfaces those collaborators implement."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from ..errors import SchemaViolationError
from ..models import GOAL_DONE, Goal, SessionState

AGENT_PLANNER = "planner"
AGENT_SALES = "sales"
AGENT_SUPPORT = "support"


@dataclass
class GoalPatch:
    """Planner proposal for which goal should exist or advance this turn."""

    goal_type: str
    priority: int = 0
    goal_id: str = ""
    slots_patch: Dict[str, Any] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)
    next_question: str = ""


@dataclass
class StateUpdates:
    """Changes a specialist reports for the focused goal."""

    slots_patch: Dict[str, Any] = field(default_factory=dict)
    set_status: str = ""
    missing: List[str] = field(default_factory=list)
    next_question: str = ""
    memory_update: str = ""
    mark_done: bool = False


@dataclass
class ToolRequest:
    tool: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    tool: str
    result: Any = None
    error: str = ""


@dataclass
class PlannerRequest:
    user_message: str
    memory_summary: str
    session: SessionState
    now: datetime


@dataclass
class SpecialistRequest:
    user_message: str
    memory_summary: str
    active_goal: Optional[Goal]
    tool_results: List[ToolResult] = field(default_factory=list)


@dataclass
class SpecialistResponse:
    """Either a final ``message`` with ``state_updates`` or ``tool_requests``."""

    message: str = ""
    tool_requests: List[ToolRequest] = field(default_factory=list)
    state_updates: StateUpdates = field(default_factory=StateUpdates)


class Planner(Protocol):
    async def plan(self, request: PlannerRequest) -> GoalPatch: ...


class Specialist(Protocol):
    async def run(self, request: SpecialistRequest) -> SpecialistResponse: ...


class ToolGateway(Protocol):
    async def execute(self, agent_type: str, requests: List[ToolRequest]) -> List[ToolResult]: ...


class MemoryStore(Protocol):
    async def read_summary(self, customer_id: str) -> str: ...

    async def write_summary(self, customer_id: str, text: str) -> None: ...


class SessionStore(Protocol):
    async def load(self, session_id: str) -> SessionState: ...

    async def save(self, state: SessionState) -> None: ...

    async def delete(self, session_id: str) -> None: ...


def validate_final_response(resp: SpecialistResponse) -> SpecialistResponse:
    """Enforce the finalize-shape rules on a specialist response.

    Raises:
        SchemaViolationError: missing slots without a next_question, or an
            empty message.
    """
    updates = resp.state_updates
    if updates.missing and not updates.next_question.strip():
        raise SchemaViolationError("next_question required when missing is set")

    message = (resp.message or "").strip()
    if not message:
        raise SchemaViolationError("specialist message is empty")

    if updates.set_status.strip().lower() == GOAL_DONE:
        updates.mark_done = True

    resp.message = message
    return resp


def _str_list(value: Any, name: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise SchemaViolationError(f"{name} must be a list, got {type(value).__name__}")
    return [str(v).strip() for v in value if str(v).strip()]


def _mapping(value: Any, name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SchemaViolationError(f"{name} must be an object, got {type(value).__name__}")
    return dict(value)


def state_updates_from_dict(data: Optional[Dict[str, Any]]) -> StateUpdates:
    """Build StateUpdates from decoded model JSON."""
    data = _mapping(data, "state_updates")
    return StateUpdates(
        slots_patch=_mapping(data.get("slots_patch"), "slots_patch"),
        set_status=str(data.get("set_status") or "").strip(),
        missing=_str_list(data.get("missing"), "missing"),
        next_question=str(data.get("next_question") or "").strip(),
        memory_update=str(data.get("memory_update") or "").strip(),
        mark_done=bool(data.get("mark_done", False)),
    )


def goal_patch_from_dict(data: Dict[str, Any]) -> GoalPatch:
    """Build a GoalPatch from decoded planner JSON."""
    data = _mapping(data, "goal")
    try:
        priority = int(data.get("priority") or 0)
    except (TypeError, ValueError) as e:
        raise SchemaViolationError(f"priority must be an integer: {e}") from e
    return GoalPatch(
        goal_id=str(data.get("goal_id") or "").strip(),
        goal_type=str(data.get("goal_type") or "").strip(),
        priority=priority,
        slots_patch=_mapping(data.get("slots_patch"), "slots_patch"),
        missing=_str_list(data.get("missing"), "missing"),
        next_question=str(data.get("next_question") or "").strip(),
    )


def tool_result_to_dict(result: ToolResult) -> Dict[str, Any]:
    out: Dict[str, Any] = {"tool": result.tool}
    if result.result is not None:
        out["result"] = result.result
    if result.error:
        out["error"] = result.error
    return out
