import json
import logging
from typing import Any, Dict

import openai
from openai import AsyncOpenAI

from ..errors import ModelInvokeError, SchemaViolationError
from ..models import SessionState, goal_to_dict, utc
from .contract import GoalPatch, PlannerRequest, goal_patch_from_dict
from .llm import ModelConfig, parse_json_object
from .plan import validate_goal_patch

logger = logging.getLogger(__name__)


def summarize_session(st: SessionState) -> Dict[str, Any]:
    """Compact view of the session the planner needs to pick a goal."""
    return {
        "active_goal_id": st.active_goal_id,
        "goal_stack": list(st.goal_stack),
        "goals": [goal_to_dict(g) for g in st.goals.values()],
    }


class LLMPlanner:
    """Planner backed by an OpenAI-compatible chat model in JSON mode."""

    def __init__(self, client: AsyncOpenAI, model: ModelConfig, system_prompt: str) -> None:
        self._client = client
        self._model = model
        self._system_prompt = system_prompt

    async def plan(self, request: PlannerRequest) -> GoalPatch:
        """Ask the model which goal this message is about.

        Raises:
            ModelInvokeError: the model call failed.
            SchemaViolationError: the model output is not a usable goal patch.
        """
        payload = {
            "user_message": request.user_message,
            "memory_summary": request.memory_summary,
            "session": summarize_session(request.session),
            "now": utc(request.now).isoformat(),
        }
        try:
            response = await self._client.chat.completions.create(
                model=self._model.model,
                messages=[
                    {"role": "system", "content": self._system_prompt},
                    {"role": "user", "content": json.dumps(payload, ensure_ascii=False, default=str)},
                ],
                temperature=self._model.temperature,
                max_tokens=self._model.max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.OpenAIError as e:
            logger.error("Planner model call failed: %s", e)
            raise ModelInvokeError(f"planner model call failed: {e}") from e

        if not response.choices:
            raise SchemaViolationError("planner model returned no choices")
        data = parse_json_object(response.choices[0].message.content or "")

        # Some models wrap the patch as {"goal": {...}}.
        if isinstance(data.get("goal"), dict) and "goal_type" not in data:
            data = data["goal"]

        patch = validate_goal_patch(goal_patch_from_dict(data))
        if patch.missing and not patch.next_question:
            raise SchemaViolationError("next_question required when missing is set")
        if not patch.missing:
            patch.next_question = ""

        logger.info(
            "Planner chose goal_type=%s goal_id=%s priority=%d missing=%s",
            patch.goal_type,
            patch.goal_id or "<new>",
            patch.priority,
            patch.missing,
        )
        return patch
