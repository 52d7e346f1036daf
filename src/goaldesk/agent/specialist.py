import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import openai
from openai import AsyncOpenAI

from ..errors import ModelInvokeError, SchemaViolationError, ValidationError
from ..models import goal_to_dict
from .contract import (
    SpecialistRequest,
    SpecialistResponse,
    ToolRequest,
    state_updates_from_dict,
    tool_result_to_dict,
    validate_final_response,
)
from .llm import ModelConfig, parse_json_object
from .tools import ToolSpec, tool_name_from_function

logger = logging.getLogger(__name__)

MODE_ACT = "act"
MODE_ASK = "ask"
MODE_FINALIZE = "finalize"


class LLMSpecialist:
    """Specialist backed by an OpenAI-compatible chat model.

    A blocked goal gets an "ask" turn, a goal with tool results gets a
    "finalize" turn, and anything else gets an "act" turn in which the model
    may call tools. Answers are requested as JSON objects.
    """

    def __init__(
        self,
        agent_type: str,
        client: AsyncOpenAI,
        model: ModelConfig,
        system_prompt: str,
        tools: Sequence[ToolSpec] = (),
    ) -> None:
        self.agent_type = agent_type
        self._client = client
        self._model = model
        self._system_prompt = system_prompt
        self._tools = tuple(tools)

    async def run(self, request: SpecialistRequest) -> SpecialistResponse:
        goal = request.active_goal
        if goal is None or not (goal.type or "").strip():
            raise ValidationError("active goal is required")

        if goal.is_blocked() or goal.missing:
            return await self._run_structured(request, MODE_ASK)
        if request.tool_results:
            return await self._run_structured(request, MODE_FINALIZE)
        return await self._run_tool_planning(request)

    def _payload(self, request: SpecialistRequest, mode: str, act_message: str = "") -> str:
        payload: Dict[str, Any] = {
            "mode": mode,
            "user_message": request.user_message,
            "memory_summary": request.memory_summary,
            "active_goal": goal_to_dict(request.active_goal),
        }
        if request.tool_results:
            payload["tool_results"] = [tool_result_to_dict(r) for r in request.tool_results]
        if act_message:
            payload["act_message"] = act_message
        return json.dumps(payload, ensure_ascii=False, default=str)

    async def _complete(self, messages: List[Dict[str, Any]], **kwargs: Any) -> Any:
        try:
            response = await self._client.chat.completions.create(
                model=self._model.model,
                messages=messages,
                temperature=self._model.temperature,
                max_tokens=self._model.max_tokens,
                **kwargs,
            )
        except openai.OpenAIError as e:
            logger.error("Specialist %s model call failed: %s", self.agent_type, e)
            raise ModelInvokeError(f"{self.agent_type} model call failed: {e}") from e
        if not response.choices:
            raise SchemaViolationError(f"{self.agent_type} model returned no choices")
        return response.choices[0].message

    async def _run_structured(
        self, request: SpecialistRequest, mode: str, act_message: str = ""
    ) -> SpecialistResponse:
        logger.debug("Specialist %s running mode=%s", self.agent_type, mode)
        message = await self._complete(
            [
                {"role": "system", "content": self._system_prompt},
                {"role": "user", "content": self._payload(request, mode, act_message)},
            ],
            response_format={"type": "json_object"},
        )
        return _final_response_from_content(message.content or "")

    async def _run_tool_planning(self, request: SpecialistRequest) -> SpecialistResponse:
        kwargs: Dict[str, Any] = {}
        if self._tools:
            kwargs["tools"] = [t.to_function_schema() for t in self._tools]
            kwargs["tool_choice"] = "auto"

        message = await self._complete(
            [
                {"role": "system", "content": self._system_prompt},
                {"role": "user", "content": self._payload(request, MODE_ACT)},
            ],
            **kwargs,
        )

        if message.tool_calls:
            return SpecialistResponse(tool_requests=self._tool_requests(message.tool_calls))

        content = (message.content or "").strip()
        if not content:
            return await self._run_structured(request, MODE_FINALIZE)

        # The model may already have answered in the finalize shape.
        final = _try_final_response(content)
        if final is not None:
            return final
        return await self._run_structured(request, MODE_FINALIZE, act_message=content)

    def _tool_requests(self, tool_calls: Any) -> List[ToolRequest]:
        allowed = {t.name for t in self._tools}
        requests: List[ToolRequest] = []
        for call in tool_calls:
            name = tool_name_from_function(self.agent_type, call.function.name or "")
            if name not in allowed:
                raise SchemaViolationError(
                    f"tool={name} is not allowed for agent={self.agent_type}"
                )
            raw_args = call.function.arguments or ""
            try:
                args = json.loads(raw_args) if raw_args.strip() else {}
            except json.JSONDecodeError as e:
                raise SchemaViolationError(f"invalid arguments for tool={name}: {e}") from e
            if not isinstance(args, dict):
                raise SchemaViolationError(f"arguments for tool={name} must be an object")
            requests.append(ToolRequest(tool=name, args=args))
        return requests


def _final_response_from_content(content: str) -> SpecialistResponse:
    data = parse_json_object(content)
    resp = SpecialistResponse(
        message=str(data.get("message") or ""),
        state_updates=state_updates_from_dict(data.get("state_updates")),
    )
    return validate_final_response(resp)


def _try_final_response(content: str) -> Optional[SpecialistResponse]:
    try:
        data = parse_json_object(content)
    except SchemaViolationError:
        return None
    if not str(data.get("message") or "").strip():
        return None
    return _final_response_from_content(content)