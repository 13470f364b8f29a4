"""Core configuration for the orchestrator.

Every section loads from environment variables (with its own prefix) and from a
local ``.env`` file, if present.
"""

import logging
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from workitem_orchestrator.core.logging import configure_logging


class LLMConfig(BaseSettings):
    """Configuration for LLM providers."""

    provider: Literal["openai"] = Field(
        default="openai",
        description="LLM provider to use",
    )

    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model to use",
    )
    openai_temperature: float = Field(
        default=0.7,
        ge=0.0,
        le=2.0,
        description="Temperature for OpenAI model",
    )
    openai_base_url: str | None = Field(
        default=None,
        description="Override for OpenAI-compatible endpoints",
    )
    request_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Per-request timeout for LLM calls",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_LLM_",
        env_file=".env",
        extra="ignore",
    )


class ExecutionConfig(BaseSettings):
    """Step execution defaults.

    Retries back off exponentially: ``initial_delay * multiplier ** (retry - 1)``,
    capped at ``max_delay``.
    """

    default_retries: int = Field(
        default=0,
        ge=0,
        description="Retries after the first attempt for steps that do not set 'retry'",
    )
    retry_initial_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay before the first retry",
    )
    retry_backoff_multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Multiplier applied to the delay for each further retry",
    )
    retry_max_delay_seconds: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound for a single retry delay",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_EXECUTION_",
        env_file=".env",
        extra="ignore",
    )


class AgentDefaults(BaseSettings):
    """Defaults for agent runs that do not set their own bounds."""

    max_iterations: int = Field(
        default=10,
        gt=0,
        description="Maximum LLM round-trips per agent run",
    )
    token_budget: int | None = Field(
        default=None,
        gt=0,
        description="Cumulative prompt+completion token budget (None = unbounded)",
    )
    tool_providers: list[str] = Field(
        default_factory=list,
        description="Providers whose tools are offered to the agent",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_AGENT_",
        env_file=".env",
        extra="ignore",
    )


class GuardrailConfig(BaseSettings):
    min_coverage_percent: float = Field(
        default=70.0,
        ge=0.0,
        le=100.0,
        description="Minimum reported test coverage required to enter VERIFIED",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_GUARDRAIL_",
        env_file=".env",
        extra="ignore",
    )


class StateConfig(BaseSettings):
    """Configuration for work item persistence."""

    storage_path: Path | None = Field(
        default=Path(".state/work_items.json"),
        description="JSON file holding work items (None keeps state in memory)",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_STATE_",
        env_file=".env",
        extra="ignore",
    )


class OrchestratorConfig(BaseSettings):
    """Main configuration for the orchestrator."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    llm: LLMConfig = Field(
        default_factory=LLMConfig,
        description="LLM configuration",
    )
    execution: ExecutionConfig = Field(
        default_factory=ExecutionConfig,
        description="Step execution configuration",
    )
    agent: AgentDefaults = Field(
        default_factory=AgentDefaults,
        description="Agent loop defaults",
    )
    guardrails: GuardrailConfig = Field(
        default_factory=GuardrailConfig,
        description="Guardrail thresholds",
    )
    state: StateConfig = Field(
        default_factory=StateConfig,
        description="State configuration",
    )

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        env_file=".env",
        extra="ignore",
    )

    def setup_logging(self) -> None:
        """Configure structured logging based on settings."""
        configure_logging(self.log_level)

        if self.debug:
            logging.getLogger("workitem_orchestrator").setLevel(logging.DEBUG)
