"""Uniform call surface to named tool providers.

The remote transport lives outside this package; anything implementing the
:class:`ToolGateway` protocol can be injected into the step sequencer and the
agent loop. One gateway instance may be shared by concurrent runs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from workitem_orchestrator.errors import (
    OperationTimeoutError,
    OrchestrationError,
    ToolInvocationError,
    ValidationError,
)

logger = logging.getLogger(__name__)


class ToolHealth(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object"})
    description: str = ""


class ToolGateway(Protocol):
    def call(self, provider: str, method: str, params: Mapping[str, Any]) -> Any:
        """Invoke ``provider.method``. Failures raise ToolInvocationError."""
        ...

    def discover(self, provider: str) -> list[ToolSpec]: ...

    def health(self, provider: str) -> ToolHealth: ...


def parse_tool_reference(reference: str) -> tuple[str, str]:
    """Split ``"provider.method"`` into its parts."""

    provider, sep, method = reference.strip().partition(".")
    if not sep or not provider or not method:
        raise ValidationError(
            f'Invalid tool reference: {reference!r}. Expected format: "provider.method"'
        )
    return provider, method


def invoke_tool(
    gateway: ToolGateway, provider: str, method: str, params: Mapping[str, Any]
) -> Any:
    """Call through the gateway, normalizing every failure into a structured error."""

    try:
        return gateway.call(provider, method, params)
    except OrchestrationError:
        raise
    except TimeoutError as e:
        raise OperationTimeoutError(f"Tool call {provider}.{method} timed out: {e}") from e
    except Exception as e:
        logger.exception(
            "Unexpected tool gateway failure", extra={"provider": provider, "method": method}
        )
        raise ToolInvocationError(
            "internal_error",
            f"{type(e).__name__}: {e}",
            provider=provider,
            method=method,
        ) from e


ToolFunction = Callable[..., Any]


@dataclass(slots=True)
class _LocalTool:
    spec: ToolSpec
    func: ToolFunction


class LocalToolGateway:
    """In-process gateway over plain Python callables.

    Useful for embedding tools that do not need a remote provider, and for tests.
    Callables receive the resolved parameters as keyword arguments.
    """

    def __init__(self) -> None:
        self._providers: dict[str, dict[str, _LocalTool]] = {}
        self._health: dict[str, ToolHealth] = {}

    def register(
        self,
        provider: str,
        method: str,
        func: ToolFunction,
        *,
        description: str = "",
        input_schema: dict[str, Any] | None = None,
    ) -> None:
        spec = ToolSpec(
            name=method,
            input_schema=input_schema or {"type": "object"},
            description=description or (func.__doc__ or "").strip(),
        )
        self._providers.setdefault(provider, {})[method] = _LocalTool(spec=spec, func=func)
        self._health.setdefault(provider, ToolHealth.OK)

    def set_health(self, provider: str, health: ToolHealth) -> None:
        self._health[provider] = health

    def call(self, provider: str, method: str, params: Mapping[str, Any]) -> Any:
        tool = self._providers.get(provider, {}).get(method)
        if tool is None:
            raise ToolInvocationError(
                "tool_not_found",
                f"Tool not found: {provider}.{method}",
                provider=provider,
                method=method,
                retryable=False,
            )
        return tool.func(**dict(params))

    def discover(self, provider: str) -> list[ToolSpec]:
        return [tool.spec for tool in self._providers.get(provider, {}).values()]

    def health(self, provider: str) -> ToolHealth:
        return self._health.get(provider, ToolHealth.DOWN)
