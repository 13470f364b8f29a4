"""Error taxonomy for the orchestration core.

Every error carries a stable ``kind`` and a ``to_dict()`` rendering so it can be
logged and replayed. Guardrail blocks and terminal-state violations are normally
returned inside structured outcomes rather than raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from workitem_orchestrator.workflow.guardrails import GuardrailResult


class OrchestrationError(Exception):
    """Base class for all structured orchestration errors."""

    kind = "OrchestrationError"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "message": self.message}
        details = self.details()
        if details:
            out["details"] = details
        return out


class ValidationError(OrchestrationError, ValueError):
    """Malformed workflow or transition input, rejected before any side effect."""

    kind = "ValidationError"


class IllegalTransitionError(ValidationError):
    kind = "IllegalTransition"

    def __init__(self, from_state: str, to_state: str) -> None:
        super().__init__(f"Illegal transition: {from_state} -> {to_state}")
        self.from_state = from_state
        self.to_state = to_state

    def details(self) -> dict[str, Any]:
        return {"from": self.from_state, "to": self.to_state}


class UnresolvedReferenceError(ValidationError):
    """A ``${path}`` reference could not be resolved against the execution context."""

    kind = "UnresolvedReference"

    def __init__(self, path: str) -> None:
        super().__init__(f"Unresolved context reference: ${{{path}}}")
        self.path = path

    def details(self) -> dict[str, Any]:
        return {"path": self.path}


class ToolInvocationError(OrchestrationError):
    """A downstream tool failed. Retryable up to the configured bound when ``retryable``."""

    kind = "ToolInvocationError"

    def __init__(
        self,
        code: str,
        message: str,
        *,
        provider: str | None = None,
        method: str | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.provider = provider
        self.method = method
        self.retryable = retryable

    def details(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "retryable": self.retryable}
        if self.provider is not None:
            out["provider"] = self.provider
        if self.method is not None:
            out["method"] = self.method
        return out


class OperationTimeoutError(OrchestrationError, TimeoutError):
    kind = "TimeoutError"

    def __init__(self, message: str, *, timeout_seconds: float | None = None) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds

    def details(self) -> dict[str, Any]:
        if self.timeout_seconds is None:
            return {}
        return {"timeout_seconds": self.timeout_seconds}


class GuardrailBlocked(OrchestrationError):
    """Preconditions for the target state are unmet. A deliberate halt, not a fault."""

    kind = "GuardrailBlocked"

    def __init__(self, result: GuardrailResult) -> None:
        super().__init__(result.reason)
        self.result = result

    def details(self) -> dict[str, Any]:
        return {
            "failed_conditions": [c.name for c in self.result.conditions if not c.passed],
            "suggestions": list(self.result.suggestions),
        }


class TerminalStateViolation(OrchestrationError):
    """Attempted transition or execution on a DONE/KILLED work item."""

    kind = "TerminalStateViolation"

    def __init__(self, state: str, target: str | None = None) -> None:
        if target is None:
            message = f"Work item is in terminal state {state}; no further execution is permitted"
        else:
            message = (
                f"Work item is in terminal state {state}; transition to {target} is not permitted"
            )
        super().__init__(message)
        self.state = state
        self.target = target

    def details(self) -> dict[str, Any]:
        out: dict[str, Any] = {"state": self.state}
        if self.target is not None:
            out["target"] = self.target
        return out


class StaleStateError(OrchestrationError):
    """The stored state changed between read and write."""

    kind = "StaleState"

    def __init__(self, work_item_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Work item {work_item_id} changed concurrently: expected {expected}, found {actual}"
        )
        self.work_item_id = work_item_id
        self.expected = expected
        self.actual = actual

    def details(self) -> dict[str, Any]:
        return {"work_item_id": self.work_item_id, "expected": self.expected, "actual": self.actual}


class WorkItemNotFound(OrchestrationError, KeyError):
    kind = "WorkItemNotFound"

    def __init__(self, work_item_id: str) -> None:
        super().__init__(f"Work item not found: {work_item_id}")
        self.work_item_id = work_item_id

    def __str__(self) -> str:
        return self.message


class LLMProviderError(OrchestrationError):
    kind = "LLMProviderError"


class IterationLimitExceeded(OrchestrationError):
    """The agent loop reached ``max_iterations``. A normal terminal outcome."""

    kind = "IterationLimitExceeded"

    def __init__(self, max_iterations: int) -> None:
        super().__init__(f"Agent loop stopped after reaching max_iterations={max_iterations}")
        self.max_iterations = max_iterations

    def details(self) -> dict[str, Any]:
        return {"max_iterations": self.max_iterations}


class TokenBudgetExceeded(OrchestrationError):
    kind = "TokenBudgetExceeded"

    def __init__(self, budget: int, used: int) -> None:
        super().__init__(f"Agent loop used {used} tokens, exceeding the budget of {budget}")
        self.budget = budget
        self.used = used

    def details(self) -> dict[str, Any]:
        return {"budget": self.budget, "used": self.used}
