"""Bounded LLM tool-calling agent loop."""

from workitem_orchestrator.agent.loop import (
    AgentConfig,
    AgentLoop,
    AgentResult,
    AgentStatus,
    AgentTool,
    discover_tools,
)

__all__ = [
    "AgentConfig",
    "AgentLoop",
    "AgentResult",
    "AgentStatus",
    "AgentTool",
    "discover_tools",
]
