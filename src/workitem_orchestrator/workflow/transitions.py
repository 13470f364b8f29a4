"""Applying guarded state transitions to work items.

``attempt_transition`` is the only path that changes a work item's state. Attempts
against the same work item are serialized with a per-item lock, and the state the
caller observed is used as an optimistic-concurrency guard when writing.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass

from workitem_orchestrator.errors import (
    GuardrailBlocked,
    IllegalTransitionError,
    OrchestrationError,
    StaleStateError,
    TerminalStateViolation,
    WorkItemNotFound,
)

from .guardrails import GuardrailContext, GuardrailEvaluator, GuardrailResult, Violation
from .state_machine import WorkItemState, is_terminal, next_canonical_state, parse_state
from .store import TransitionRecord, WorkItem, WorkItemStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TransitionOutcome:
    applied: bool
    result: GuardrailResult
    work_item: WorkItem
    record: TransitionRecord | None = None
    error: OrchestrationError | None = None

    @property
    def error_kind(self) -> str | None:
        return self.error.kind if self.error is not None else None

    def to_dict(self) -> dict[str, object]:
        return {
            "applied": self.applied,
            "work_item_id": self.work_item.id,
            "state": self.work_item.current_state.value,
            "result": self.result.to_dict(),
            "error": self.error.to_dict() if self.error is not None else None,
        }


@dataclass(frozen=True, slots=True)
class AdvanceResult:
    work_item: WorkItem
    outcomes: tuple[TransitionOutcome, ...]
    stopped_reason: str

    @property
    def transitions_applied(self) -> int:
        return sum(1 for o in self.outcomes if o.applied)


class TransitionService:
    def __init__(
        self,
        store: WorkItemStore,
        evaluator: GuardrailEvaluator | None = None,
    ) -> None:
        self.store = store
        self.evaluator = evaluator or GuardrailEvaluator()
        self._registry_lock = threading.Lock()
        self._item_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)

    def _lock_for(self, work_item_id: str) -> threading.Lock:
        with self._registry_lock:
            return self._item_locks[work_item_id]

    def attempt_transition(
        self,
        work_item: WorkItem,
        to: WorkItemState | str,
        context: GuardrailContext,
        *,
        actor: str = "orchestrator",
        reason: str = "",
    ) -> TransitionOutcome:
        target = parse_state(to)
        observed = work_item.current_state

        with self._lock_for(work_item.id):
            result = self.evaluator.validate_state_transition(observed, target, context)

            if is_terminal(observed):
                logger.warning(
                    "Rejected transition from terminal state",
                    extra={
                        "work_item_id": work_item.id,
                        "from_state": observed.value,
                        "to_state": target.value,
                    },
                )
                return TransitionOutcome(
                    applied=False,
                    result=result,
                    work_item=work_item,
                    error=TerminalStateViolation(observed.value, target.value),
                )

            if not result.allowed:
                error: OrchestrationError
                if result.violation is Violation.INVALID_TRANSITION:
                    error = IllegalTransitionError(observed.value, target.value)
                else:
                    error = GuardrailBlocked(result)
                logger.info(
                    "Transition blocked",
                    extra={
                        "work_item_id": work_item.id,
                        "from_state": observed.value,
                        "to_state": target.value,
                        "error_kind": error.kind,
                        "suggestions": list(result.suggestions),
                    },
                )
                return TransitionOutcome(
                    applied=False, result=result, work_item=work_item, error=error
                )

            record = TransitionRecord(
                from_state=observed,
                to_state=target,
                actor=actor,
                reason=reason or result.reason,
                evidence=context.model_dump(mode="json", by_alias=True, exclude_none=True),
                conditions=[c.to_dict() for c in result.conditions],
            )
            try:
                updated = self.store.compare_and_apply(
                    work_item.id, observed, record, expected_version=work_item.version
                )
            except StaleStateError as e:
                logger.warning(
                    "Transition rejected: work item changed since it was read",
                    extra={"work_item_id": work_item.id, **e.details()},
                )
                return TransitionOutcome(
                    applied=False, result=result, work_item=work_item, error=e
                )
            except WorkItemNotFound as e:
                logger.warning(
                    "Transition rejected: work item is not in the store",
                    extra={"work_item_id": work_item.id},
                )
                return TransitionOutcome(
                    applied=False, result=result, work_item=work_item, error=e
                )

        logger.info(
            "Transition applied",
            extra={
                "work_item_id": work_item.id,
                "from_state": observed.value,
                "to_state": target.value,
                "actor": actor,
            },
        )
        return TransitionOutcome(applied=True, result=result, work_item=updated, record=record)

    def advance(
        self,
        work_item: WorkItem,
        context: GuardrailContext,
        *,
        actor: str = "orchestrator",
    ) -> AdvanceResult:
        """Follow the canonical forward path until a guardrail blocks or no successor exists."""

        outcomes: list[TransitionOutcome] = []
        current = work_item
        while True:
            if is_terminal(current.current_state):
                stopped = "terminal"
                break
            next_state = next_canonical_state(current.current_state)
            if next_state is None:
                stopped = "no_canonical_successor"
                break

            outcome = self.attempt_transition(
                current, next_state, context, actor=actor, reason="Automatic progression"
            )
            outcomes.append(outcome)
            if not outcome.applied:
                stopped = outcome.error_kind or "blocked"
                break
            current = outcome.work_item

        logger.info(
            "Automatic progression finished",
            extra={
                "work_item_id": current.id,
                "state": current.current_state.value,
                "stopped_reason": stopped,
                "transitions_applied": sum(1 for o in outcomes if o.applied),
            },
        )
        return AdvanceResult(work_item=current, outcomes=tuple(outcomes), stopped_reason=stopped)
