"""Core package initialization."""

from workitem_orchestrator.core.config import OrchestratorConfig
from workitem_orchestrator.core.orchestrator import Orchestrator

__all__ = [
    "Orchestrator",
    "OrchestratorConfig",
]
