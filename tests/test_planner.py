import json
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from goaldesk.agent.contract import PlannerRequest
from goaldesk.agent.llm import ModelConfig, model_config_for, parse_json_object
from goaldesk.agent.planner import LLMPlanner, summarize_session
from goaldesk.errors import SchemaViolationError
from goaldesk.models import create_goal, new_session_state
from goaldesk.settings import Settings

NOW = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def _completion(content: str) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


@pytest.fixture
def mock_client() -> MagicMock:
    """Mock AsyncOpenAI client with an async chat.completions.create."""
    m = MagicMock()
    m.chat.completions.create = AsyncMock()
    return m


@pytest.fixture
def planner(mock_client: MagicMock) -> LLMPlanner:
    return LLMPlanner(
        client=mock_client,
        model=ModelConfig(model="test-model", temperature=0.0, max_tokens=256),
        system_prompt="plan goals",
    )


def _request() -> PlannerRequest:
    st = new_session_state("s1", "ws", "cust", "chat", NOW)
    st.add_goal(create_goal("sales_1", "sales.recommend_item", 50, NOW))
    st.suspend_and_activate("sales_1", NOW)
    return PlannerRequest(user_message="my wifi drops", memory_summary="", session=st, now=NOW)


@pytest.mark.asyncio
async def test_plan_parses_patch(planner: LLMPlanner, mock_client: MagicMock) -> None:
    """A well-formed answer becomes a GoalPatch and the session is sent along."""
    mock_client.chat.completions.create.return_value = _completion(
        json.dumps(
            {
                "goal_type": "support.troubleshoot",
                "priority": 100,
                "slots_patch": {"issue": "wifi"},
                "missing": ["router_model"],
                "next_question": "Which router do you have?",
            }
        )
    )
    patch = await planner.plan(_request())

    assert patch.goal_type == "support.troubleshoot"
    assert patch.priority == 100
    assert patch.slots_patch == {"issue": "wifi"}
    assert patch.missing == ["router_model"]
    payload = json.loads(mock_client.chat.completions.create.call_args.kwargs["messages"][1]["content"])
    assert payload["session"]["active_goal_id"] == "sales_1"
    assert payload["now"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_plan_accepts_fenced_and_wrapped_json(planner: LLMPlanner, mock_client: MagicMock) -> None:
    """Code fences and a {"goal": ...} wrapper are tolerated."""
    mock_client.chat.completions.create.return_value = _completion(
        '```json\n{"goal": {"goal_id": "sales_1", "goal_type": "sales.recommend_item", "priority": "50"}}\n```'
    )
    patch = await planner.plan(_request())
    assert patch.goal_id == "sales_1"
    assert patch.priority == 50


@pytest.mark.asyncio
async def test_plan_drops_question_without_missing(planner: LLMPlanner, mock_client: MagicMock) -> None:
    """next_question is cleared when nothing is missing."""
    mock_client.chat.completions.create.return_value = _completion(
        '{"goal_type": "sales.recommend_item", "priority": 50, "next_question": "Anything else?"}'
    )
    patch = await planner.plan(_request())
    assert patch.next_question == ""


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "content",
    [
        '{"goal_type": "billing.refund", "priority": 10}',
        '{"goal_type": "sales.recommend_item", "priority": 0}',
        '{"goal_type": "sales.recommend_item", "priority": "high"}',
        '{"goal_type": "sales.recommend_item", "priority": 50, "missing": ["budget"]}',
        "no json here",
    ],
)
async def test_plan_rejects_invalid_output(
    planner: LLMPlanner, mock_client: MagicMock, content: str
) -> None:
    """Unusable planner output is a schema violation."""
    mock_client.chat.completions.create.return_value = _completion(content)
    with pytest.raises(SchemaViolationError):
        await planner.plan(_request())


def test_summarize_session_lists_goals() -> None:
    """The planner view carries focus, stack and every goal."""
    summary = summarize_session(_request().session)
    assert summary["goal_stack"] == ["sales_1"]
    assert [g["id"] for g in summary["goals"]] == ["sales_1"]


def test_parse_json_object_rejects_arrays() -> None:
    """Only JSON objects are accepted from the model."""
    with pytest.raises(SchemaViolationError):
        parse_json_object("[1, 2]")


def test_model_config_overrides() -> None:
    """Per-agent model and temperature override the defaults."""
    settings = Settings(model="base", temperature=0.5, support_model="strong", support_temperature=0.0)
    support = model_config_for("support", settings)
    sales = model_config_for("sales", settings)
    assert (support.model, support.temperature) == ("strong", 0.0)
    assert (sales.model, sales.temperature) == ("base", 0.5)
