import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict

from openai import AsyncOpenAI

from ..errors import SchemaViolationError
from ..settings import Settings
from .contract import AGENT_PLANNER, AGENT_SALES, AGENT_SUPPORT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelConfig:
    """Model name and sampling parameters for one agent."""

    model: str
    temperature: float
    max_tokens: int


def model_config_for(agent_type: str, settings: Settings) -> ModelConfig:
    """Resolve the model for an agent, falling back to the defaults."""
    overrides = {
        AGENT_PLANNER: (settings.planner_model, settings.planner_temperature),
        AGENT_SALES: (settings.sales_model, settings.sales_temperature),
        AGENT_SUPPORT: (settings.support_model, settings.support_temperature),
    }
    model, temperature = settings.model.strip(), settings.temperature
    override_model, override_temp = overrides.get(agent_type, ("", -1.0))
    if override_model.strip():
        model = override_model.strip()
    if override_temp >= 0:
        temperature = override_temp
    return ModelConfig(
        model=model,
        temperature=temperature,
        max_tokens=settings.max_completion_tokens,
    )


def make_client(settings: Settings) -> AsyncOpenAI:
    """Construct the OpenAI-compatible client shared by planner and specialists."""
    return AsyncOpenAI(
        api_key=settings.openai_api_key,
        base_url=(settings.openai_base_url or "").rstrip("/") or None,
        timeout=settings.request_timeout_seconds,
    )


def strip_code_fences(text: str) -> str:
    """Strip markdown code fences from LLM response."""
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def parse_json_object(content: str) -> Dict[str, Any]:
    """Extract the JSON object from model output.

    Raises:
        SchemaViolationError: no JSON object could be decoded.
    """
    text = strip_code_fences(content or "")
    json_match = re.search(r"\{.*\}", text, re.DOTALL)
    if not json_match:
        raise SchemaViolationError("model output is not a JSON object")
    try:
        data = json.loads(json_match.group(0))
    except json.JSONDecodeError as e:
        raise SchemaViolationError(f"model output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SchemaViolationError("model output is not a JSON object")
    return data
