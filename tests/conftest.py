import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

import pytest  # noqa: E402

from goaldesk.agent.contract import (  # noqa: E402
    GoalPatch,
    PlannerRequest,
    SpecialistRequest,
    SpecialistResponse,
    ToolRequest,
    ToolResult,
)
from goaldesk.errors import SessionNotFoundError  # noqa: E402
from goaldesk.models import SessionState, dict_to_session, session_to_dict  # noqa: E402

NOW = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


class FakeSessionStore:
    """Dict-backed store that records saves and can be told to fail."""

    def __init__(self, save_error: Optional[Exception] = None) -> None:
        self.data: Dict[str, dict] = {}
        self.save_calls = 0
        self.save_error = save_error

    async def load(self, session_id: str) -> SessionState:
        if session_id not in self.data:
            raise SessionNotFoundError(f"session not found: {session_id}")
        return dict_to_session(self.data[session_id])

    async def save(self, state: SessionState) -> None:
        self.save_calls += 1
        if self.save_error is not None:
            raise self.save_error
        self.data[state.session_id] = session_to_dict(state)

    async def delete(self, session_id: str) -> None:
        self.data.pop(session_id, None)


class FakeMemoryStore:
    def __init__(self, summary: str = "", write_error: Optional[Exception] = None) -> None:
        self.summary = summary
        self.writes: List[tuple] = []
        self.write_error = write_error

    async def read_summary(self, customer_id: str) -> str:
        return self.summary

    async def write_summary(self, customer_id: str, text: str) -> None:
        self.writes.append((customer_id, text))
        if self.write_error is not None:
            raise self.write_error


class FakePlanner:
    def __init__(self, *patches: GoalPatch) -> None:
        self.patches = list(patches)
        self.requests: List[PlannerRequest] = []

    async def plan(self, request: PlannerRequest) -> GoalPatch:
        self.requests.append(request)
        return self.patches.pop(0)


class FakeSpecialist:
    """Returns queued responses in order and records each request."""

    def __init__(self, *responses: SpecialistResponse) -> None:
        self.responses = list(responses)
        self.requests: List[SpecialistRequest] = []

    async def run(self, request: SpecialistRequest) -> SpecialistResponse:
        self.requests.append(
            SpecialistRequest(
                user_message=request.user_message,
                memory_summary=request.memory_summary,
                active_goal=request.active_goal,
                tool_results=list(request.tool_results),
            )
        )
        return self.responses.pop(0)


class FakeToolGateway:
    def __init__(self, results: Optional[List[ToolResult]] = None) -> None:
        self.results = results or []
        self.calls: List[tuple] = []

    async def execute(self, agent_type: str, requests: List[ToolRequest]) -> List[ToolResult]:
        self.calls.append((agent_type, list(requests)))
        return list(self.results)


@pytest.fixture
def now() -> datetime:
    return NOW
