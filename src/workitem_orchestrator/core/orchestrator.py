"""Main orchestrator implementation."""

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from workitem_orchestrator.agent.loop import AgentConfig, AgentLoop, AgentResult, AgentTool
from workitem_orchestrator.core.config import OrchestratorConfig
from workitem_orchestrator.errors import TerminalStateViolation
from workitem_orchestrator.llm.factory import LLMFactory
from workitem_orchestrator.llm.provider import LLMProvider
from workitem_orchestrator.tools.gateway import LocalToolGateway, ToolGateway
from workitem_orchestrator.workflow.cancellation import CancellationToken
from workitem_orchestrator.workflow.context import ExecutionContext
from workitem_orchestrator.workflow.definition import WorkflowDefinition, load_workflow_definition
from workitem_orchestrator.workflow.guardrails import (
    GuardrailContext,
    GuardrailEvaluator,
    GuardrailResult,
    ProgressionResult,
)
from workitem_orchestrator.workflow.sequencer import ExecutionResult, RetryPolicy, StepSequencer
from workitem_orchestrator.workflow.state_machine import WorkItemState, parse_state
from workitem_orchestrator.workflow.store import WorkItem, WorkItemStore
from workitem_orchestrator.workflow.transitions import (
    AdvanceResult,
    TransitionOutcome,
    TransitionService,
)

logger = logging.getLogger(__name__)


class Orchestrator:
    """Entry point that wires configuration, tools, the LLM and work item state together.

    Workflows and agent runs call out through the tool gateway; every state change
    of a work item goes through the guardrail evaluator before it is applied.
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        *,
        gateway: ToolGateway | None = None,
        llm: LLMProvider | None = None,
        store: WorkItemStore | None = None,
        sequencer: StepSequencer | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Configuration object. If None, loads from environment.
            gateway: Tool gateway. Defaults to an empty in-process gateway.
            llm: LLM provider. Created from ``config.llm`` on first agent run if omitted.
            store: Work item store. Defaults to the configured JSON file.
            sequencer: Step sequencer. Built from ``config.execution`` if omitted.
        """
        self.config = config or OrchestratorConfig()
        self.config.setup_logging()

        logger.info("Initializing work item orchestrator")

        self.gateway: ToolGateway = gateway if gateway is not None else LocalToolGateway()
        self._llm = llm
        self.store = store if store is not None else WorkItemStore(self.config.state.storage_path)
        self.evaluator = GuardrailEvaluator(
            min_coverage_percent=self.config.guardrails.min_coverage_percent
        )
        self.transitions = TransitionService(self.store, self.evaluator)
        self.sequencer = sequencer or StepSequencer(
            self.gateway, RetryPolicy.from_config(self.config.execution)
        )

        logger.info("Orchestrator initialized successfully")

    @property
    def llm(self) -> LLMProvider:
        if self._llm is None:
            self._llm = LLMFactory.create(self.config.llm)
        return self._llm

    # Work items

    def create_work_item(self, title: str = "", *, work_item_id: str | None = None) -> WorkItem:
        return self.store.create(title, work_item_id=work_item_id)

    def get_work_item(self, work_item_id: str) -> WorkItem:
        return self.store.get(work_item_id)

    def _ensure_not_terminal(self, work_item: WorkItem | None) -> None:
        if work_item is None:
            return
        current = self.store.get(work_item.id)
        if current.is_terminal:
            logger.warning(
                "Refusing to execute on behalf of a terminal work item",
                extra={"work_item_id": current.id, "state": current.current_state.value},
            )
            raise TerminalStateViolation(current.current_state.value)

    # Execution

    def execute_workflow(
        self,
        definition: WorkflowDefinition | Mapping[str, Any] | Path,
        initial_context: Mapping[str, Any] | None = None,
        *,
        work_item: WorkItem | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ExecutionResult:
        """Run a workflow definition.

        Args:
            definition: A parsed definition, its JSON-shaped mapping, or a path to a JSON file.
            initial_context: Initial variables. Under ``input`` unless it already has that key.
            work_item: Work item the run acts for. Terminal work items are refused.
            cancellation: Optional cancellation signal polled between steps.

        Raises:
            ValidationError: The definition or initial context is malformed.
            TerminalStateViolation: ``work_item`` is DONE or KILLED.
        """
        if isinstance(definition, Path):
            definition = load_workflow_definition(definition)
        elif not isinstance(definition, WorkflowDefinition):
            definition = WorkflowDefinition.parse(definition)

        self._ensure_not_terminal(work_item)
        if (
            initial_context is not None
            and not isinstance(initial_context, ExecutionContext)
            and "input" not in initial_context
        ):
            initial_context = {"input": dict(initial_context)}
        return self.sequencer.execute(definition, initial_context, cancellation=cancellation)

    def execute_agent(
        self,
        prompt: str,
        config: AgentConfig | None = None,
        available_tools: list[AgentTool] | None = None,
        *,
        work_item: WorkItem | None = None,
        cancellation: CancellationToken | None = None,
    ) -> AgentResult:
        """Run the tool-calling agent loop.

        Bounds not given in ``config`` come from ``OrchestratorConfig.agent``.
        """
        self._ensure_not_terminal(work_item)
        if config is None:
            defaults = self.config.agent
            config = AgentConfig(
                max_iterations=defaults.max_iterations,
                token_budget=defaults.token_budget,
                tool_providers=list(defaults.tool_providers),
            )
        loop = AgentLoop(self.gateway, self.llm)
        return loop.run(prompt, config, available_tools, cancellation=cancellation)

    # State transitions

    def validate_state_transition(
        self,
        from_state: WorkItemState | str,
        to_state: WorkItemState | str,
        context: GuardrailContext | None = None,
    ) -> GuardrailResult:
        return self.evaluator.validate_state_transition(
            parse_state(from_state), parse_state(to_state), context or GuardrailContext()
        )

    def evaluate_next_state_progression(
        self, current: WorkItemState | str, context: GuardrailContext | None = None
    ) -> ProgressionResult:
        return self.evaluator.evaluate_next_state_progression(
            parse_state(current), context or GuardrailContext()
        )

    def attempt_transition(
        self,
        work_item: WorkItem,
        to_state: WorkItemState | str,
        context: GuardrailContext | None = None,
        *,
        actor: str = "orchestrator",
        reason: str = "",
    ) -> TransitionOutcome:
        return self.transitions.attempt_transition(
            work_item, to_state, context or GuardrailContext(), actor=actor, reason=reason
        )

    def advance(
        self,
        work_item: WorkItem,
        context: GuardrailContext | None = None,
        *,
        actor: str = "orchestrator",
    ) -> AdvanceResult:
        """Apply canonical successors until blocked, terminal, or on HOLD."""
        return self.transitions.advance(work_item, context or GuardrailContext(), actor=actor)
