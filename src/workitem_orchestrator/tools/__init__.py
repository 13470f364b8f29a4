"""Tool gateway interface and the in-process gateway."""

from workitem_orchestrator.tools.gateway import (
    LocalToolGateway,
    ToolGateway,
    ToolHealth,
    ToolSpec,
)

__all__ = [
    "LocalToolGateway",
    "ToolGateway",
    "ToolHealth",
    "ToolSpec",
]
