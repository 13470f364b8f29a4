"""LLM package initialization."""

from workitem_orchestrator.llm.factory import LLMFactory
from workitem_orchestrator.llm.provider import LLMProvider, LLMResponse, TokenUsage, ToolCallRequest

__all__ = [
    "LLMFactory",
    "LLMProvider",
    "LLMResponse",
    "TokenUsage",
    "ToolCallRequest",
]
