"""Unit tests for sequential workflow step execution."""

from __future__ import annotations

from typing import Any
from unittest.mock import Mock

import pytest

from workitem_orchestrator.core.config import ExecutionConfig
from workitem_orchestrator.errors import ToolInvocationError, ValidationError
from workitem_orchestrator.tools.gateway import LocalToolGateway, ToolGateway
from workitem_orchestrator.workflow.cancellation import CancellationToken
from workitem_orchestrator.workflow.definition import WorkflowDefinition
from workitem_orchestrator.workflow.sequencer import (
    ExecutionStatus,
    RetryPolicy,
    StepSequencer,
    StepStatus,
)


def _workflow(*steps: dict[str, Any]) -> WorkflowDefinition:
    return WorkflowDefinition.parse({"name": "test-workflow", "steps": list(steps)})


class Flaky:
    """Fails ``failures`` times, then returns ``result``."""

    def __init__(self, failures: int, result: Any = "ok") -> None:
        self.failures = failures
        self.result = result
        self.calls = 0

    def __call__(self, **params: Any) -> Any:
        self.calls += 1
        if self.calls <= self.failures:
            raise ToolInvocationError("unavailable", f"attempt {self.calls} failed")
        return self.result


@pytest.fixture
def delays() -> list[float]:
    return []


@pytest.fixture
def sequencer_for(delays: list[float]):
    def build(gateway: ToolGateway, policy: RetryPolicy | None = None) -> StepSequencer:
        return StepSequencer(gateway, policy, sleep=delays.append)

    return build


def test_scenario_c_retries_until_success(gateway: LocalToolGateway, sequencer_for) -> None:
    flaky = Flaky(failures=2, result={"id": 9})
    gateway.register("repo", "fetch", lambda: {"branch": "main"})
    gateway.register("repo", "flaky", flaky)
    gateway.register("repo", "report", lambda id: f"done {id}")

    result = sequencer_for(gateway).execute(
        _workflow(
            {"name": "one", "tool": "repo.fetch", "assign": "repo"},
            {"name": "two", "tool": "repo.flaky", "retry": 3, "assign": "created"},
            {"name": "three", "tool": "repo.report", "params": {"id": "${created.id}"}},
        )
    )

    assert result.status is ExecutionStatus.COMPLETED
    two = result.step("two")
    assert two.status is StepStatus.SUCCESS
    assert two.attempts == 3
    assert two.retries == 2
    assert flaky.calls == 3
    assert result.step("three").output == "done 9"
    assert result.variables["created"] == {"id": 9}


def test_retry_exhaustion_aborts_and_keeps_executed_steps(
    gateway: LocalToolGateway, sequencer_for
) -> None:
    never = Mock(side_effect=ToolInvocationError("boom", "still broken"))
    after = Mock(return_value=None)
    gateway.register("p", "first", lambda: 1)
    gateway.register("p", "never", never)
    gateway.register("p", "after", after)

    result = sequencer_for(gateway).execute(
        _workflow(
            {"name": "first", "tool": "p.first"},
            {"name": "broken", "tool": "p.never", "retry": 2},
            {"name": "after", "tool": "p.after"},
        )
    )

    assert result.status is ExecutionStatus.FAILED
    assert [s.name for s in result.steps] == ["first", "broken"]
    assert never.call_count == 3
    after.assert_not_called()
    assert result.failed_step_index == 1
    assert result.error is not None
    assert result.error["step_index"] == 1
    assert result.error["details"]["code"] == "boom"


def test_backoff_delays_grow_exponentially(
    gateway: LocalToolGateway, sequencer_for, delays: list[float]
) -> None:
    gateway.register("p", "flaky", Flaky(failures=4))
    policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=5.0)

    sequencer_for(gateway, policy).execute(
        _workflow({"name": "s", "tool": "p.flaky", "retry": 4})
    )

    assert delays == [1.0, 2.0, 4.0, 5.0]


def test_retry_policy_from_config() -> None:
    policy = RetryPolicy.from_config(
        ExecutionConfig(default_retries=2, retry_initial_delay_seconds=0.5)
    )

    assert policy.default_retries == 2
    assert policy.delay_for(1) == 0.5
    assert policy.delay_for(3) == 2.0


def test_default_retries_apply_when_step_does_not_set_retry(
    gateway: LocalToolGateway, sequencer_for
) -> None:
    flaky = Flaky(failures=1)
    gateway.register("p", "flaky", flaky)

    result = sequencer_for(gateway, RetryPolicy(default_retries=1)).execute(
        _workflow({"name": "s", "tool": "p.flaky"})
    )

    assert result.status is ExecutionStatus.COMPLETED
    assert flaky.calls == 2


def test_non_retryable_errors_fail_immediately(gateway: LocalToolGateway, sequencer_for) -> None:
    result = sequencer_for(gateway).execute(
        _workflow({"name": "s", "tool": "p.unregistered", "retry": 5})
    )

    assert result.status is ExecutionStatus.FAILED
    assert result.steps[0].attempts == 1
    assert result.error is not None
    assert result.error["details"]["code"] == "tool_not_found"


def test_unexpected_tool_exceptions_are_wrapped(gateway: LocalToolGateway, sequencer_for) -> None:
    def explode() -> None:
        raise RuntimeError("disk on fire")

    gateway.register("p", "explode", explode)

    result = sequencer_for(gateway).execute(_workflow({"name": "s", "tool": "p.explode"}))

    assert result.status is ExecutionStatus.FAILED
    assert result.error is not None
    assert result.error["kind"] == "ToolInvocationError"
    assert result.error["details"]["code"] == "internal_error"
    assert "disk on fire" in result.error["message"]


def test_false_condition_skips_without_counting_as_failure(
    gateway: LocalToolGateway, sequencer_for
) -> None:
    guarded = Mock(return_value="never")
    gateway.register("p", "guarded", guarded)
    gateway.register("p", "next", lambda: "ran")

    result = sequencer_for(gateway).execute(
        _workflow(
            {"name": "guarded", "tool": "p.guarded", "condition": "${input.enabled}"},
            {"name": "next", "tool": "p.next"},
        ),
        {"input": {}},
    )

    assert result.status is ExecutionStatus.COMPLETED
    assert result.step("guarded").status is StepStatus.SKIPPED
    assert result.failed_count == 0
    assert result.skipped_count == 1
    guarded.assert_not_called()


def test_false_flag_in_reference_condition_skips_step(
    gateway: LocalToolGateway, sequencer_for
) -> None:
    deploy = Mock(return_value="deployed")
    gateway.register("p", "deploy", deploy)

    result = sequencer_for(gateway).execute(
        _workflow({"name": "deploy", "tool": "p.deploy", "condition": "${input.deploy}"}),
        {"input": {"deploy": False}},
    )

    assert result.step("deploy").status is StepStatus.SKIPPED
    deploy.assert_not_called()


def test_continue_on_error_runs_remaining_steps(gateway: LocalToolGateway, sequencer_for) -> None:
    gateway.register("p", "fail", Mock(side_effect=ToolInvocationError("x", "nope")))
    gateway.register("p", "ok", lambda: "fine")

    result = sequencer_for(gateway).execute(
        _workflow(
            {"name": "optional", "tool": "p.fail", "continueOnError": True},
            {"name": "required", "tool": "p.ok"},
        )
    )

    assert result.status is ExecutionStatus.PARTIAL
    assert result.failed_count == 1
    assert result.succeeded_count == 1
    assert result.error is None


def test_unresolved_reference_fails_step_without_calling_tool(
    gateway: LocalToolGateway, sequencer_for
) -> None:
    tool = Mock(return_value=None)
    gateway.register("p", "use", tool)

    result = sequencer_for(gateway).execute(
        _workflow({"name": "s", "tool": "p.use", "params": {"v": "${input.missing}"}})
    )

    assert result.status is ExecutionStatus.FAILED
    assert result.steps[0].attempts == 0
    assert result.error is not None
    assert result.error["kind"] == "UnresolvedReference"
    tool.assert_not_called()


def test_step_defaults_fill_unresolved_references(
    gateway: LocalToolGateway, sequencer_for
) -> None:
    gateway.register("p", "echo", lambda v: v)

    result = sequencer_for(gateway).execute(
        _workflow(
            {
                "name": "s",
                "tool": "p.echo",
                "params": {"v": "${input.missing}"},
                "defaults": {"input.missing": "fallback"},
            }
        )
    )

    assert result.steps[0].output == "fallback"


def test_forward_reference_rejected_before_any_tool_call(sequencer_for) -> None:
    gateway = Mock(spec=ToolGateway)
    definition = _workflow(
        {"name": "use", "tool": "p.use", "params": {"v": "${later}"}},
        {"name": "make", "tool": "p.make", "assign": "later"},
    )

    with pytest.raises(ValidationError):
        sequencer_for(gateway).execute(definition)

    gateway.call.assert_not_called()


def test_cancellation_stops_scheduling_further_steps(
    gateway: LocalToolGateway, sequencer_for
) -> None:
    token = CancellationToken()
    second = Mock(return_value=None)
    gateway.register("p", "first", lambda: token.cancel("operator request"))
    gateway.register("p", "second", second)

    result = sequencer_for(gateway).execute(
        _workflow({"name": "first", "tool": "p.first"}, {"name": "second", "tool": "p.second"}),
        cancellation=token,
    )

    assert result.status is ExecutionStatus.CANCELLED
    assert [s.name for s in result.steps] == ["first"]
    second.assert_not_called()


def test_result_is_serializable_for_replay(gateway: LocalToolGateway, sequencer_for) -> None:
    gateway.register("p", "ok", lambda: {"n": 1})

    result = sequencer_for(gateway).execute(
        _workflow({"name": "s", "tool": "p.ok", "assign": "out"})
    )
    payload = result.to_dict()

    assert payload["status"] == "completed"
    assert payload["workflow"] == "test-workflow"
    assert payload["steps"][0]["status"] == "success"
    assert payload["variables"]["out"] == {"n": 1}
    assert len(result.execution_id) == 32
