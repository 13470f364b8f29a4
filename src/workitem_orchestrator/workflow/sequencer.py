"""Sequential step execution.

Runs a workflow's steps strictly in declared order against one execution context:

1. a step whose condition is false is recorded ``skipped`` (never a failure)
2. ``${path}`` parameters are resolved; an unresolved path fails the step
3. the tool is invoked through the gateway, retrying with exponential backoff
4. after retries are exhausted the run either continues (``continue_on_error``)
   or stops with status ``failed``, keeping every step executed so far
5. a successful step's output is written to its ``assign`` path
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from workitem_orchestrator.errors import (
    OperationTimeoutError,
    OrchestrationError,
    ToolInvocationError,
    UnresolvedReferenceError,
)
from workitem_orchestrator.tools.gateway import ToolGateway, invoke_tool

from .cancellation import CancellationToken
from .context import ExecutionContext
from .definition import StepDefinition, WorkflowDefinition

if TYPE_CHECKING:
    from workitem_orchestrator.core.config import ExecutionConfig

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    default_retries: int = 0
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config: ExecutionConfig) -> RetryPolicy:
        return cls(
            default_retries=config.default_retries,
            initial_delay=config.retry_initial_delay_seconds,
            multiplier=config.retry_backoff_multiplier,
            max_delay=config.retry_max_delay_seconds,
        )

    def retries_for(self, step: StepDefinition) -> int:
        return step.retry if step.retry is not None else self.default_retries

    def delay_for(self, retry: int) -> float:
        """Delay before the ``retry``-th retry (1-based)."""

        if retry < 1:
            return 0.0
        return min(self.max_delay, self.initial_delay * self.multiplier ** (retry - 1))


@dataclass(frozen=True, slots=True)
class StepOutcome:
    index: int
    name: str
    tool: str
    status: StepStatus
    attempts: int = 0
    params: dict[str, Any] | None = None
    output: Any = None
    error: dict[str, Any] | None = None
    duration_ms: float = 0.0
    started_at: datetime | None = None

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "tool": self.tool,
            "status": self.status.value,
            "attempts": self.attempts,
            "retries": self.retries,
            "params": self.params,
            "output": self.output,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    execution_id: str
    workflow_name: str
    status: ExecutionStatus
    steps: tuple[StepOutcome, ...]
    steps_total: int
    variables: dict[str, Any]
    started_at: datetime
    completed_at: datetime
    duration_ms: float
    error: dict[str, Any] | None = None
    failed_step_index: int | None = None

    @property
    def succeeded_count(self) -> int:
        return sum(1 for s in self.steps if s.status is StepStatus.SUCCESS)

    @property
    def failed_count(self) -> int:
        return sum(1 for s in self.steps if s.status is StepStatus.FAILED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for s in self.steps if s.status is StepStatus.SKIPPED)

    def step(self, name: str) -> StepOutcome:
        for outcome in self.steps:
            if outcome.name == name:
                return outcome
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "workflow": self.workflow_name,
            "status": self.status.value,
            "steps": [s.to_dict() for s in self.steps],
            "steps_total": self.steps_total,
            "succeeded": self.succeeded_count,
            "failed": self.failed_count,
            "skipped": self.skipped_count,
            "variables": self.variables,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_ms": self.duration_ms,
            "error": self.error,
            "failed_step_index": self.failed_step_index,
        }


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000, 3)


class StepSequencer:
    """Executes a WorkflowDefinition against a ToolGateway, one step at a time."""

    def __init__(
        self,
        gateway: ToolGateway,
        retry_policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    def execute(
        self,
        definition: WorkflowDefinition,
        initial_context: Mapping[str, Any] | None = None,
        *,
        cancellation: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run every step in order.

        Raises:
            ValidationError: the initial context is malformed or a step refers forward
                to a variable assigned by a later step. Nothing has run at that point.
        """

        context = ExecutionContext.from_mapping(initial_context)
        definition.check_references(context.keys())

        execution_id = uuid.uuid4().hex
        started_at = datetime.now(UTC)
        start = time.monotonic()

        logger.info(
            "Workflow execution starting",
            extra={
                "execution_id": execution_id,
                "workflow": definition.name,
                "steps_total": len(definition.steps),
            },
        )

        outcomes: list[StepOutcome] = []
        status: ExecutionStatus | None = None
        error: dict[str, Any] | None = None
        failed_step_index: int | None = None
        had_failures = False

        for index, step in enumerate(definition.steps):
            if cancellation is not None and cancellation.cancelled:
                logger.info(
                    "Workflow execution cancelled",
                    extra={"execution_id": execution_id, "next_step": step.name},
                )
                status = ExecutionStatus.CANCELLED
                break

            if step.condition is not None and not step.condition.evaluate(context):
                logger.info(
                    "Skipping step (condition not met)",
                    extra={
                        "execution_id": execution_id,
                        "step_index": index,
                        "step_name": step.name,
                        "condition": step.condition.to_json(),
                    },
                )
                outcomes.append(
                    StepOutcome(
                        index=index,
                        name=step.name,
                        tool=step.tool,
                        status=StepStatus.SKIPPED,
                        started_at=datetime.now(UTC),
                    )
                )
                continue

            logger.info(
                "Executing step",
                extra={
                    "execution_id": execution_id,
                    "step_index": index,
                    "steps_total": len(definition.steps),
                    "step_name": step.name,
                    "tool": step.tool,
                },
            )
            outcome = self._run_step(index, step, context, cancellation)
            outcomes.append(outcome)

            if outcome.status is StepStatus.SUCCESS:
                if step.assign is not None:
                    context.assign(step.assign, outcome.output)
                continue

            if cancellation is not None and cancellation.cancelled:
                status = ExecutionStatus.CANCELLED
                break

            if step.continue_on_error:
                logger.warning(
                    "Step failed, continuing due to continueOnError",
                    extra={"execution_id": execution_id, "step_name": step.name},
                )
                had_failures = True
                continue

            logger.error(
                "Step failed, stopping workflow",
                extra={
                    "execution_id": execution_id,
                    "step_name": step.name,
                    "error": outcome.error,
                },
            )
            status = ExecutionStatus.FAILED
            error = outcome.error
            failed_step_index = index
            break

        if status is None:
            status = ExecutionStatus.PARTIAL if had_failures else ExecutionStatus.COMPLETED

        result = ExecutionResult(
            execution_id=execution_id,
            workflow_name=definition.name,
            status=status,
            steps=tuple(outcomes),
            steps_total=len(definition.steps),
            variables=context.snapshot(),
            started_at=started_at,
            completed_at=datetime.now(UTC),
            duration_ms=_elapsed_ms(start),
            error=error,
            failed_step_index=failed_step_index,
        )

        logger.info(
            "Workflow execution finished",
            extra={
                "execution_id": execution_id,
                "status": status.value,
                "duration_ms": result.duration_ms,
                "succeeded": result.succeeded_count,
                "failed": result.failed_count,
                "skipped": result.skipped_count,
            },
        )
        return result

    def _run_step(
        self,
        index: int,
        step: StepDefinition,
        context: ExecutionContext,
        cancellation: CancellationToken | None,
    ) -> StepOutcome:
        started_at = datetime.now(UTC)
        start = time.monotonic()

        def failed(
            attempts: int, err: OrchestrationError, params: dict[str, Any] | None
        ) -> StepOutcome:
            return StepOutcome(
                index=index,
                name=step.name,
                tool=step.tool,
                status=StepStatus.FAILED,
                attempts=attempts,
                params=params,
                error={**err.to_dict(), "step_index": index, "step_name": step.name},
                duration_ms=_elapsed_ms(start),
                started_at=started_at,
            )

        try:
            params = context.substitute(step.params, step.defaults)
        except UnresolvedReferenceError as e:
            logger.error(
                "Step parameters reference a missing context path",
                extra={"step_name": step.name, "path": e.path},
            )
            return failed(0, e, None)

        max_retries = self.retry_policy.retries_for(step)
        last_error: OrchestrationError | None = None
        attempts = 0

        for attempt in range(max_retries + 1):
            if attempt > 0:
                if cancellation is not None and cancellation.cancelled:
                    break
                delay = self.retry_policy.delay_for(attempt)
                logger.info(
                    "Retrying step",
                    extra={
                        "step_name": step.name,
                        "attempt": attempt + 1,
                        "max_attempts": max_retries + 1,
                        "delay_seconds": delay,
                    },
                )
                if delay > 0:
                    if cancellation is not None:
                        if cancellation.wait(delay):
                            break
                    else:
                        self._sleep(delay)

            attempts += 1
            try:
                output = invoke_tool(self.gateway, step.provider, step.method, params)
            except (ToolInvocationError, OperationTimeoutError) as e:
                last_error = e
                logger.warning(
                    "Step attempt failed",
                    extra={"step_name": step.name, "attempt": attempts, "error": e.to_dict()},
                )
                if isinstance(e, ToolInvocationError) and not e.retryable:
                    break
                continue
            except OrchestrationError as e:
                last_error = e
                break

            logger.info(
                "Step completed",
                extra={
                    "step_name": step.name,
                    "attempts": attempts,
                    "duration_ms": _elapsed_ms(start),
                },
            )
            return StepOutcome(
                index=index,
                name=step.name,
                tool=step.tool,
                status=StepStatus.SUCCESS,
                attempts=attempts,
                params=params,
                output=output,
                duration_ms=_elapsed_ms(start),
                started_at=started_at,
            )

        assert last_error is not None
        logger.error(
            "Step failed after all attempts",
            extra={"step_name": step.name, "attempts": attempts},
        )
        return failed(attempts, last_error, params)
