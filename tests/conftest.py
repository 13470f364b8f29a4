"""Test configuration and fixtures."""

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from workitem_orchestrator.core.config import (
    ExecutionConfig,
    LLMConfig,
    OrchestratorConfig,
    StateConfig,
)
from workitem_orchestrator.llm.provider import LLMProvider, LLMResponse
from workitem_orchestrator.tools.gateway import LocalToolGateway
from workitem_orchestrator.workflow.store import WorkItemStore


class ScriptedLLM(LLMProvider):
    """LLM provider that replays canned responses and records every request."""

    def __init__(self, responses: list[LLMResponse] | Callable[[int], LLMResponse]) -> None:
        self._responses = responses
        self.calls: list[dict[str, Any]] = []

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> LLMResponse:
        index = len(self.calls)
        self.calls.append({"messages": list(messages), "tools": tools})
        if callable(self._responses):
            return self._responses(index)
        return self._responses[index]


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def llm_config() -> LLMConfig:
    """Provide a test LLM configuration."""
    return LLMConfig(
        provider="openai",
        openai_api_key="test-key",
        openai_model="gpt-4o-mini",
    )


@pytest.fixture
def state_config(temp_state_dir: Path) -> StateConfig:
    """Provide a test state configuration."""
    return StateConfig(storage_path=temp_state_dir / "work_items.json")


@pytest.fixture
def orchestrator_config(llm_config: LLMConfig, state_config: StateConfig) -> OrchestratorConfig:
    """Provide a test orchestrator configuration (no retry delays)."""
    return OrchestratorConfig(
        log_level="DEBUG",
        debug=True,
        llm=llm_config,
        execution=ExecutionConfig(retry_initial_delay_seconds=0.0),
        state=state_config,
    )


@pytest.fixture
def store() -> WorkItemStore:
    """In-memory work item store."""
    return WorkItemStore()


@pytest.fixture
def gateway() -> LocalToolGateway:
    return LocalToolGateway()


@pytest.fixture
def scripted_llm() -> type[ScriptedLLM]:
    """The scripted provider class; instantiate with a response list or factory."""
    return ScriptedLLM
