"""Bounded, LLM-directed tool-calling loop.

Each iteration asks the model for its next action. Requested tools are invoked
through the gateway one after another and their results appended to the
conversation; a reply without tool calls is the final answer. Reaching
``max_iterations`` or exhausting the token budget ends the run normally with an
``ABORTED`` phase; neither raises.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from workitem_orchestrator.errors import (
    IterationLimitExceeded,
    LLMProviderError,
    OrchestrationError,
    ToolInvocationError,
    TokenBudgetExceeded,
)
from workitem_orchestrator.llm.provider import LLMProvider, TokenUsage, ToolCallRequest
from workitem_orchestrator.tools.gateway import ToolGateway, ToolHealth, invoke_tool
from workitem_orchestrator.workflow.cancellation import CancellationToken

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are an autonomous engineering agent. Use the available tools to complete the "
    "task, then reply with a concise final answer."
)

_FUNCTION_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


class AgentPhase(str, Enum):
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    DONE = "done"
    ABORTED = "aborted"


class AgentStatus(str, Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    TOKEN_BUDGET_EXCEEDED = "token_budget_exceeded"
    CANCELLED = "cancelled"
    FAILED = "failed"


class AgentConfig(BaseModel):
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_iterations: int = Field(default=10, gt=0)
    token_budget: int | None = Field(
        default=None, gt=0, description="Cumulative prompt+completion tokens"
    )
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0, description="Per-response limit")
    tool_providers: list[str] = Field(
        default_factory=list,
        description="Providers to discover tools from when none are passed explicitly",
    )


@dataclass(frozen=True, slots=True)
class AgentTool:
    provider: str
    name: str
    description: str = ""
    input_schema: dict[str, Any] | None = None

    @property
    def reference(self) -> str:
        return f"{self.provider}.{self.name}"

    @property
    def function_name(self) -> str:
        return _FUNCTION_NAME_UNSAFE.sub("_", f"{self.provider}__{self.name}")

    def to_function(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.function_name,
                "description": self.description or self.reference,
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }


@dataclass(frozen=True, slots=True)
class ToolCallRecord:
    iteration: int
    call_id: str
    tool: str
    arguments: dict[str, Any]
    result: Any = None
    error: dict[str, Any] | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "call_id": self.call_id,
            "tool": self.tool,
            "arguments": self.arguments,
            "result": self.result,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True, slots=True)
class AgentResult:
    status: AgentStatus
    phase: AgentPhase
    response: str | None
    messages: tuple[dict[str, Any], ...]
    tool_calls: tuple[ToolCallRecord, ...]
    usage: TokenUsage
    iterations: int
    duration_ms: float
    max_iterations: int
    token_budget: int | None = None
    error: dict[str, Any] | None = None

    def raise_for_status(self) -> None:
        """Raise if the run did not end with a final answer."""

        if self.status is AgentStatus.MAX_ITERATIONS_REACHED:
            raise IterationLimitExceeded(self.max_iterations)
        if self.status is AgentStatus.TOKEN_BUDGET_EXCEEDED:
            assert self.token_budget is not None
            raise TokenBudgetExceeded(self.token_budget, self.usage.total_tokens)
        if self.status is not AgentStatus.COMPLETED:
            message = (self.error or {}).get("message") or f"Agent run {self.status.value}"
            raise OrchestrationError(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "phase": self.phase.value,
            "response": self.response,
            "iterations": self.iterations,
            "usage": self.usage.to_dict(),
            "tool_calls": [c.to_dict() for c in self.tool_calls],
            "messages": list(self.messages),
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


def discover_tools(gateway: ToolGateway, providers: list[str]) -> list[AgentTool]:
    """Collect tools from every provider that is not reported down."""

    tools: list[AgentTool] = []
    for provider in providers:
        health = gateway.health(provider)
        if health is ToolHealth.DOWN:
            logger.warning("Skipping tool provider that is down", extra={"provider": provider})
            continue
        if health is ToolHealth.DEGRADED:
            logger.warning("Tool provider is degraded", extra={"provider": provider})
        for spec in gateway.discover(provider):
            tools.append(
                AgentTool(
                    provider=provider,
                    name=spec.name,
                    description=spec.description,
                    input_schema=spec.input_schema,
                )
            )
    logger.info("Discovered agent tools", extra={"tool_count": len(tools)})
    return tools


def _to_content(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 3)


class AgentLoop:
    def __init__(self, gateway: ToolGateway, llm: LLMProvider) -> None:
        self.gateway = gateway
        self.llm = llm

    def run(
        self,
        prompt: str,
        config: AgentConfig | None = None,
        available_tools: list[AgentTool] | None = None,
        *,
        cancellation: CancellationToken | None = None,
    ) -> AgentResult:
        config = config or AgentConfig()
        if available_tools is None:
            available_tools = discover_tools(self.gateway, config.tool_providers)
        by_function = {tool.function_name: tool for tool in available_tools}
        functions = [tool.to_function() for tool in available_tools] or None

        messages: list[dict[str, Any]] = [
            {"role": "system", "content": config.system_prompt},
            {"role": "user", "content": prompt},
        ]
        records: list[ToolCallRecord] = []
        usage = TokenUsage()
        iterations = 0
        start = time.monotonic()

        def finish(
            status: AgentStatus,
            *,
            response: str | None = None,
            error: OrchestrationError | None = None,
        ) -> AgentResult:
            phase = AgentPhase.DONE if status is AgentStatus.COMPLETED else AgentPhase.ABORTED
            result = AgentResult(
                status=status,
                phase=phase,
                response=response,
                messages=tuple(messages),
                tool_calls=tuple(records),
                usage=usage,
                iterations=iterations,
                duration_ms=_elapsed_ms(start),
                max_iterations=config.max_iterations,
                token_budget=config.token_budget,
                error=error.to_dict() if error is not None else None,
            )
            logger.info(
                "Agent run finished",
                extra={
                    "status": status.value,
                    "iterations": iterations,
                    "tool_calls": len(records),
                    "total_tokens": usage.total_tokens,
                },
            )
            return result

        logger.info(
            "Agent run starting",
            extra={
                "max_iterations": config.max_iterations,
                "token_budget": config.token_budget,
                "tool_count": len(available_tools),
            },
        )

        while iterations < config.max_iterations:
            if cancellation is not None and cancellation.cancelled:
                return finish(AgentStatus.CANCELLED)

            iterations += 1
            try:
                reply = self.llm.chat(
                    messages,
                    tools=functions,
                    max_tokens=config.max_tokens,
                    temperature=config.temperature,
                )
            except OrchestrationError as e:
                logger.error("LLM provider call failed", extra={"error": e.to_dict()})
                return finish(AgentStatus.FAILED, error=e)
            except Exception as e:
                logger.exception("Unexpected LLM provider failure")
                return finish(
                    AgentStatus.FAILED, error=LLMProviderError(f"{type(e).__name__}: {e}")
                )

            usage = usage + reply.usage
            messages.append(self._assistant_message(reply.content, reply.tool_calls))

            if not reply.requests_tools:
                return finish(AgentStatus.COMPLETED, response=reply.content or "")

            if config.token_budget is not None and usage.total_tokens > config.token_budget:
                logger.warning(
                    "Agent token budget exhausted",
                    extra={"budget": config.token_budget, "used": usage.total_tokens},
                )
                return finish(AgentStatus.TOKEN_BUDGET_EXCEEDED)

            for call in reply.tool_calls:
                record = self._invoke(iterations, call, by_function)
                records.append(record)
                content = (
                    _to_content({"error": record.error})
                    if record.error is not None
                    else _to_content(record.result)
                )
                messages.append({"role": "tool", "tool_call_id": call.id, "content": content})

        logger.info(
            "Agent reached iteration limit", extra={"max_iterations": config.max_iterations}
        )
        return finish(AgentStatus.MAX_ITERATIONS_REACHED)

    @staticmethod
    def _assistant_message(
        content: str | None, tool_calls: tuple[ToolCallRequest, ...]
    ) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": content}
        if tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in tool_calls
            ]
        return message

    def _invoke(
        self, iteration: int, call: ToolCallRequest, by_function: dict[str, AgentTool]
    ) -> ToolCallRecord:
        start = time.monotonic()
        tool = by_function.get(call.name)

        def error_record(err: OrchestrationError, name: str) -> ToolCallRecord:
            return ToolCallRecord(
                iteration=iteration,
                call_id=call.id,
                tool=name,
                arguments=call.arguments,
                error=err.to_dict(),
                duration_ms=_elapsed_ms(start),
            )

        if tool is None:
            return error_record(
                ToolInvocationError(
                    "tool_not_found", f"Unknown tool: {call.name}", retryable=False
                ),
                call.name,
            )
        if call.arguments_error is not None:
            return error_record(
                ToolInvocationError("invalid_arguments", call.arguments_error, retryable=False),
                tool.reference,
            )

        logger.info(
            "Agent invoking tool",
            extra={"iteration": iteration, "tool": tool.reference},
        )
        try:
            result = invoke_tool(self.gateway, tool.provider, tool.name, call.arguments)
        except OrchestrationError as e:
            logger.warning(
                "Agent tool call failed",
                extra={"tool": tool.reference, "error": e.to_dict()},
            )
            return error_record(e, tool.reference)

        return ToolCallRecord(
            iteration=iteration,
            call_id=call.id,
            tool=tool.reference,
            arguments=call.arguments,
            result=result,
            duration_ms=_elapsed_ms(start),
        )
