import logging
from typing import Dict, Optional, Tuple

from openai import AsyncOpenAI

from ..errors import ValidationError
from ..settings import Settings, get_settings
from .contract import AGENT_PLANNER, AGENT_SALES, AGENT_SUPPORT, Planner, Specialist
from .llm import make_client, model_config_for
from .planner import LLMPlanner
from .policy import goal_namespace
from .specialist import LLMSpecialist
from .tools import tools_for_agent

logger = logging.getLogger(__name__)


class Registry:
    """Planner plus a dispatch table of specialists keyed by goal namespace."""

    def __init__(self, planner: Planner, specialists: Dict[str, Specialist]) -> None:
        self._planner = planner
        self._specialists = dict(specialists)

    @property
    def planner(self) -> Planner:
        return self._planner

    def specialist_for(self, goal_type: str) -> Tuple[Specialist, str]:
        """Return (specialist, agent_type) for a goal type.

        Raises:
            ValidationError: no specialist is registered for the namespace.
        """
        namespace = goal_namespace(goal_type)
        specialist = self._specialists.get(namespace)
        if specialist is None:
            raise ValidationError(f"unsupported goal type={goal_type!r}")
        return specialist, namespace


def build_registry(
    settings: Optional[Settings] = None,
    client: Optional[AsyncOpenAI] = None,
) -> Registry:
    """Wire the LLM planner and the sales/support specialists."""
    settings = settings or get_settings()
    client = client or make_client(settings)

    planner = LLMPlanner(
        client=client,
        model=model_config_for(AGENT_PLANNER, settings),
        system_prompt=settings.planner_system_prompt,
    )
    specialists: Dict[str, Specialist] = {
        AGENT_SALES: LLMSpecialist(
            agent_type=AGENT_SALES,
            client=client,
            model=model_config_for(AGENT_SALES, settings),
            system_prompt=settings.sales_system_prompt,
            tools=tools_for_agent(AGENT_SALES),
        ),
        AGENT_SUPPORT: LLMSpecialist(
            agent_type=AGENT_SUPPORT,
            client=client,
            model=model_config_for(AGENT_SUPPORT, settings),
            system_prompt=settings.support_system_prompt,
            tools=tools_for_agent(AGENT_SUPPORT),
        ),
    }
    logger.info("Registry ready: specialists=%s", ", ".join(sorted(specialists)))
    return Registry(planner=planner, specialists=specialists)
