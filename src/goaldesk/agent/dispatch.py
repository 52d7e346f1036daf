import logging
from typing import List, Optional, Tuple

from ..errors import NoActiveGoalError, SchemaViolationError
from ..models import Goal
from .contract import (
    SpecialistRequest,
    StateUpdates,
    ToolGateway,
    ToolRequest,
    ToolResult,
    validate_final_response,
)
from .registry import Registry

logger = logging.getLogger(__name__)


def _later_non_empty(a: str, b: str) -> str:
    a, b = (a or "").strip(), (b or "").strip()
    return b or a


def merge_state_updates(a: StateUpdates, b: StateUpdates) -> StateUpdates:
    """Merge pass-1 (``a``) and pass-2 (``b``) updates; ``b`` wins on conflicts."""
    slots = dict(a.slots_patch or {})
    slots.update(b.slots_patch or {})
    return StateUpdates(
        slots_patch=slots,
        set_status=_later_non_empty(a.set_status, b.set_status),
        missing=list(b.missing or a.missing or []),
        next_question=_later_non_empty(a.next_question, b.next_question),
        memory_update=_later_non_empty(a.memory_update, b.memory_update),
        mark_done=a.mark_done or b.mark_done,
    )


def _label_results(requests: List[ToolRequest], results: List[ToolResult]) -> List[ToolResult]:
    """Fill in tool names the gateway left empty from the matching request."""
    for i, result in enumerate(results):
        if not (result.tool or "").strip() and i < len(requests):
            result.tool = requests[i].tool
    return results


async def dispatch_to_specialist(
    user_message: str,
    memory_summary: str,
    active_goal: Optional[Goal],
    registry: Registry,
    tools: ToolGateway,
) -> Tuple[str, StateUpdates]:
    """Run the bounded two-pass specialist exchange for the focused goal.

    Pass 1 either finishes or asks for tools. Tool results are then sent
    back for exactly one finalize pass; a second tool request is rejected.

    Returns:
        Tuple of (reply message, merged state updates).
    """
    if active_goal is None:
        raise NoActiveGoalError("active goal is missing")

    specialist, agent_type = registry.specialist_for(active_goal.type)

    req = SpecialistRequest(
        user_message=user_message,
        memory_summary=memory_summary,
        active_goal=active_goal,
    )
    pass1 = await specialist.run(req)

    if not pass1.tool_requests:
        final = validate_final_response(pass1)
        return final.message, final.state_updates

    logger.info(
        "Specialist %s requested tools for goal %s: %s",
        agent_type,
        active_goal.id,
        ", ".join(r.tool for r in pass1.tool_requests),
    )
    results = await tools.execute(agent_type, pass1.tool_requests)
    req.tool_results = _label_results(pass1.tool_requests, list(results or []))

    pass2 = await specialist.run(req)
    if pass2.tool_requests:
        raise SchemaViolationError("specialist requested tools in pass 2")
    final = validate_final_response(pass2)

    merged = merge_state_updates(pass1.state_updates, final.state_updates)
    return final.message, merged
