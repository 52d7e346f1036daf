"""Goal-tracking dialogue agent.

This package exposes the orchestrator entry points while keeping the goal
lifecycle, planner/specialist wiring, tools and turn stages in separate
modules.
"""

from .orchestrator import (
    Orchestrator,
    build_orchestrator,
    close_orchestrator,
    get_orchestrator_async,
)

__all__ = [
    "Orchestrator",
    "build_orchestrator",
    "close_orchestrator",
    "get_orchestrator_async",
]
