"""Unit tests for the orchestrator entry points."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import Mock

import pytest

from workitem_orchestrator.agent.loop import AgentStatus
from workitem_orchestrator.core.config import AgentDefaults, OrchestratorConfig
from workitem_orchestrator.core.orchestrator import Orchestrator
from workitem_orchestrator.errors import TerminalStateViolation, ValidationError
from workitem_orchestrator.llm.provider import LLMResponse, ToolCallRequest
from workitem_orchestrator.tools.gateway import LocalToolGateway
from workitem_orchestrator.workflow.context import ExecutionContext
from workitem_orchestrator.workflow.guardrails import GuardrailContext
from workitem_orchestrator.workflow.sequencer import ExecutionStatus
from workitem_orchestrator.workflow.state_machine import WorkItemState

if TYPE_CHECKING:
    from conftest import ScriptedLLM

SPEC_EVIDENCE = GuardrailContext.model_validate(
    {
        "specification": {
            "exists": True,
            "isComplete": True,
            "hasRequirements": True,
            "hasAcceptanceCriteria": True,
        }
    }
)

WORKFLOW = {
    "name": "open-pr",
    "steps": [
        {
            "name": "branch",
            "tool": "git.createBranch",
            "params": {"name": "fix/${input.issue}"},
            "assign": "branch",
        },
        {
            "name": "pr",
            "tool": "git.openPullRequest",
            "params": {"head": "${branch.name}"},
            "retry": 1,
        },
    ],
}


@pytest.fixture
def git_gateway(gateway: LocalToolGateway) -> LocalToolGateway:
    gateway.register("git", "createBranch", lambda name: {"name": name})
    gateway.register("git", "openPullRequest", lambda head: {"number": 12, "head": head})
    return gateway


@pytest.fixture
def orchestrator(
    orchestrator_config: OrchestratorConfig, git_gateway: LocalToolGateway
) -> Orchestrator:
    return Orchestrator(orchestrator_config, gateway=git_gateway)


def test_execute_workflow_from_mapping(orchestrator: Orchestrator) -> None:
    result = orchestrator.execute_workflow(WORKFLOW, {"issue": 7})

    assert result.status is ExecutionStatus.COMPLETED
    assert result.step("pr").output == {"number": 12, "head": "fix/7"}


def test_execute_workflow_from_file(orchestrator: Orchestrator, tmp_path: Path) -> None:
    path = tmp_path / "open-pr.json"
    path.write_text(json.dumps(WORKFLOW), encoding="utf-8")

    result = orchestrator.execute_workflow(path, {"input": {"issue": 8}})

    assert result.variables["branch"] == {"name": "fix/8"}


def test_runs_do_not_share_a_caller_supplied_context(orchestrator: Orchestrator) -> None:
    shared = ExecutionContext({"issue": 3})

    first = orchestrator.execute_workflow(WORKFLOW, shared)
    second = orchestrator.execute_workflow(WORKFLOW, shared)

    assert first.status is ExecutionStatus.COMPLETED
    assert second.status is ExecutionStatus.COMPLETED
    assert "branch" not in shared
    assert shared.snapshot() == {"input": {"issue": 3}}


def test_malformed_workflow_is_rejected(orchestrator: Orchestrator) -> None:
    with pytest.raises(ValidationError):
        orchestrator.execute_workflow({"name": "bad", "steps": [{"name": "x", "tool": "nodot"}]})


def test_terminal_work_item_cannot_run_workflows(
    orchestrator_config: OrchestratorConfig,
) -> None:
    gateway = Mock(spec=LocalToolGateway)
    orchestrator = Orchestrator(orchestrator_config, gateway=gateway)
    item = orchestrator.create_work_item("abandoned")
    killed = orchestrator.attempt_transition(item, WorkItemState.KILLED).work_item

    with pytest.raises(TerminalStateViolation):
        orchestrator.execute_workflow(WORKFLOW, {"issue": 1}, work_item=killed)
    # A stale snapshot does not get around the check either.
    with pytest.raises(TerminalStateViolation):
        orchestrator.execute_workflow(WORKFLOW, {"issue": 1}, work_item=item)

    gateway.call.assert_not_called()


def test_execute_agent_uses_configured_defaults(
    orchestrator_config: OrchestratorConfig,
    git_gateway: LocalToolGateway,
    scripted_llm: type[ScriptedLLM],
) -> None:
    config = orchestrator_config.model_copy(
        update={"agent": AgentDefaults(max_iterations=2, tool_providers=["git"])}
    )
    call = ToolCallRequest(id="c1", name="git__createBranch", arguments={"name": "x"})
    llm = scripted_llm(lambda _: LLMResponse(content=None, tool_calls=(call,)))
    orchestrator = Orchestrator(config, gateway=git_gateway, llm=llm)

    result = orchestrator.execute_agent("Create a branch")

    assert result.status is AgentStatus.MAX_ITERATIONS_REACHED
    assert result.iterations == 2
    assert result.tool_calls[0].result == {"name": "x"}


def test_transitions_through_the_facade(orchestrator: Orchestrator) -> None:
    item = orchestrator.create_work_item("feature", work_item_id="wi-9")

    check = orchestrator.validate_state_transition("CREATED", "SPEC_READY", SPEC_EVIDENCE)
    assert check.allowed

    progression = orchestrator.evaluate_next_state_progression(item.current_state)
    assert progression.can_progress is False

    progress = orchestrator.advance(item, SPEC_EVIDENCE, actor="planner")
    assert progress.work_item.current_state is WorkItemState.IMPLEMENTING

    stored = orchestrator.get_work_item("wi-9")
    assert [r.actor for r in stored.history] == ["planner", "planner"]


def test_work_items_persist_to_configured_path(
    orchestrator: Orchestrator, orchestrator_config: OrchestratorConfig
) -> None:
    orchestrator.create_work_item("persisted", work_item_id="wi-1")

    path = orchestrator_config.state.storage_path
    assert path is not None
    saved = json.loads(path.read_text(encoding="utf-8"))
    assert [item["id"] for item in saved] == ["wi-1"]
