"""Guardrails gating entry into work item states.

Each guarded target state has a fixed list of named conditions evaluated against
caller-supplied evidence:

- SPEC_READY: the specification exists, is complete, and defines requirements and
  acceptance criteria
- VERIFIED: QA tests were executed and passed (and coverage is sufficient, when reported)
- MERGE_READY: diff-gate criteria are met

Evaluation never raises for a blocked transition; it returns a GuardrailResult that
callers branch on. Missing evidence blocks with an explicit "Insufficient evidence"
condition rather than defaulting to pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .state_machine import WorkItemState, can_transition, is_terminal, next_canonical_state

logger = logging.getLogger(__name__)

DEFAULT_MIN_COVERAGE_PERCENT = 70.0


class _Evidence(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, extra="ignore"
    )


class SpecificationEvidence(_Evidence):
    exists: bool | None = None
    is_complete: bool | None = None
    has_requirements: bool | None = None
    has_acceptance_criteria: bool | None = None
    validated: bool | None = None


class QAEvidence(_Evidence):
    executed: bool | None = None
    passed: bool | None = None
    test_count: int | None = None
    passed_count: int | None = None
    failed_count: int | None = None
    coverage_percent: float | None = None


class DiffGateEvidence(_Evidence):
    has_changes: bool | None = None
    change_count: int | None = None
    conflicts_resolved: bool | None = None
    reviews_approved: bool | None = None
    ci_passing: bool | None = None
    security_checks_passed: bool | None = None


class GuardrailContext(_Evidence):
    """Evidence bundle supplied by the caller for a transition attempt.

    JSON keys are camelCase (``qaResults``, ``isComplete``); snake_case names are
    accepted too.
    """

    specification: SpecificationEvidence | None = None
    qa_results: QAEvidence | None = None
    diff_gate: DiffGateEvidence | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Violation(str, Enum):
    INVALID_TRANSITION = "InvalidTransition"
    TERMINAL_STATE = "TerminalStateViolation"
    GUARDRAIL_BLOCKED = "GuardrailBlocked"


@dataclass(frozen=True, slots=True)
class GuardrailCondition:
    name: str
    passed: bool
    message: str
    evidence_missing: bool = False

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"name": self.name, "passed": self.passed, "message": self.message}
        if self.evidence_missing:
            out["evidence_missing"] = True
        return out


@dataclass(frozen=True, slots=True)
class GuardrailResult:
    allowed: bool
    reason: str
    conditions: tuple[GuardrailCondition, ...]
    suggestions: tuple[str, ...] = ()
    target: WorkItemState | None = None
    violation: Violation | None = None

    @property
    def blocked(self) -> bool:
        return not self.allowed

    @property
    def failed_conditions(self) -> tuple[GuardrailCondition, ...]:
        return tuple(c for c in self.conditions if not c.passed)

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "target": self.target.value if self.target is not None else None,
            "violation": self.violation.value if self.violation is not None else None,
            "conditions": [c.to_dict() for c in self.conditions],
            "suggestions": list(self.suggestions),
        }


@dataclass(frozen=True, slots=True)
class ProgressionResult:
    can_progress: bool
    next_state: WorkItemState | None = None
    validation: GuardrailResult | None = None


@dataclass(slots=True)
class _Checklist:
    """Accumulates conditions and suggestions for one target state."""

    bundle: str
    conditions: list[GuardrailCondition] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)

    def check(
        self,
        name: str,
        value: bool | None,
        *,
        field_name: str,
        passed: str,
        failed: str,
        suggestion: str,
    ) -> None:
        if value is None:
            self.conditions.append(
                GuardrailCondition(
                    name=name,
                    passed=False,
                    message=f"Insufficient evidence: {self.bundle}.{field_name} was not supplied",
                    evidence_missing=True,
                )
            )
            self.suggestions.append(suggestion)
            return

        self.conditions.append(
            GuardrailCondition(name=name, passed=value, message=passed if value else failed)
        )
        if not value:
            self.suggestions.append(suggestion)

    def missing_bundle(self, name: str, suggestion: str) -> None:
        self.conditions.append(
            GuardrailCondition(
                name=name,
                passed=False,
                message=f"Insufficient evidence: no {self.bundle} data supplied",
                evidence_missing=True,
            )
        )
        self.suggestions.append(suggestion)

    def result(self, target: WorkItemState, *, ok: str, blocked: str) -> GuardrailResult:
        allowed = all(c.passed for c in self.conditions)
        return GuardrailResult(
            allowed=allowed,
            reason=ok if allowed else blocked,
            conditions=tuple(self.conditions),
            suggestions=tuple(self.suggestions),
            target=target,
            violation=None if allowed else Violation.GUARDRAIL_BLOCKED,
        )


class GuardrailEvaluator:
    """Evaluates target-state entry criteria. Stateless and pure."""

    def __init__(self, *, min_coverage_percent: float = DEFAULT_MIN_COVERAGE_PERCENT) -> None:
        self.min_coverage_percent = min_coverage_percent

    def evaluate(self, target: WorkItemState, context: GuardrailContext) -> GuardrailResult:
        if target is WorkItemState.SPEC_READY:
            return self._spec_ready(context)
        if target is WorkItemState.VERIFIED:
            return self._verified(context)
        if target is WorkItemState.MERGE_READY:
            return self._merge_ready(context)
        return GuardrailResult(
            allowed=True,
            reason=f"No specific guardrails for transition to {target.value}",
            conditions=(
                GuardrailCondition(
                    name="state_machine_valid",
                    passed=True,
                    message="Transition is valid in state machine",
                ),
            ),
            target=target,
        )

    def validate_state_transition(
        self,
        from_state: WorkItemState,
        to_state: WorkItemState,
        context: GuardrailContext,
    ) -> GuardrailResult:
        """Adjacency check first (short-circuits), then the target's guardrails."""

        if is_terminal(from_state):
            result = GuardrailResult(
                allowed=False,
                reason=(
                    f"{from_state.value} is a terminal state; "
                    f"transition to {to_state.value} is not permitted"
                ),
                conditions=(
                    GuardrailCondition(
                        name="source_not_terminal",
                        passed=False,
                        message=f"{from_state.value} has no outgoing transitions",
                    ),
                ),
                suggestions=("Create a new work item instead of reopening a finished one",),
                target=to_state,
                violation=Violation.TERMINAL_STATE,
            )
        elif not can_transition(from_state, to_state):
            result = GuardrailResult(
                allowed=False,
                reason=(
                    f"Invalid state transition: {from_state.value} -> {to_state.value} "
                    "is not allowed by the state machine"
                ),
                conditions=(
                    GuardrailCondition(
                        name="valid_transition",
                        passed=False,
                        message=(
                            f"Transition from {from_state.value} to {to_state.value} "
                            "is not defined"
                        ),
                    ),
                ),
                suggestions=(f"Check valid transitions from {from_state.value} state",),
                target=to_state,
                violation=Violation.INVALID_TRANSITION,
            )
        else:
            result = self.evaluate(to_state, context)

        logger.debug(
            "State transition validation",
            extra={
                "from_state": from_state.value,
                "to_state": to_state.value,
                "allowed": result.allowed,
                "reason": result.reason,
                "conditions_passed": sum(1 for c in result.conditions if c.passed),
                "conditions_total": len(result.conditions),
            },
        )
        return result

    def evaluate_next_state_progression(
        self, current: WorkItemState, context: GuardrailContext
    ) -> ProgressionResult:
        next_state = next_canonical_state(current)
        if next_state is None:
            return ProgressionResult(can_progress=False)

        validation = self.validate_state_transition(current, next_state, context)
        return ProgressionResult(
            can_progress=validation.allowed,
            next_state=next_state if validation.allowed else None,
            validation=validation,
        )

    def _spec_ready(self, context: GuardrailContext) -> GuardrailResult:
        checks = _Checklist(bundle="specification")
        spec = context.specification
        if spec is None:
            checks.missing_bundle(
                "specification_evidence", "Provide specification evidence for this work item"
            )
        else:
            checks.check(
                "specification_exists",
                spec.exists,
                field_name="exists",
                passed="Specification document exists",
                failed="Specification document is missing",
                suggestion="Create a specification document",
            )
            checks.check(
                "specification_complete",
                spec.is_complete,
                field_name="isComplete",
                passed="Specification is marked as complete",
                failed="Specification is incomplete",
                suggestion="Complete all sections of the specification",
            )
            checks.check(
                "has_requirements",
                spec.has_requirements,
                field_name="hasRequirements",
                passed="Requirements are defined",
                failed="Requirements are not defined",
                suggestion="Define clear requirements in the specification",
            )
            checks.check(
                "has_acceptance_criteria",
                spec.has_acceptance_criteria,
                field_name="hasAcceptanceCriteria",
                passed="Acceptance criteria are defined",
                failed="Acceptance criteria are not defined",
                suggestion="Define acceptance criteria for the implementation",
            )
        return checks.result(
            WorkItemState.SPEC_READY,
            ok="All specification requirements met",
            blocked="Specification validation failed: missing required elements",
        )

    def _verified(self, context: GuardrailContext) -> GuardrailResult:
        checks = _Checklist(bundle="qaResults")
        qa = context.qa_results
        if qa is None:
            checks.missing_bundle("qa_evidence", "Run QA test suite and report its results")
        else:
            checks.check(
                "tests_executed",
                qa.executed,
                field_name="executed",
                passed="QA tests have been executed",
                failed="QA tests have not been executed",
                suggestion="Run QA test suite",
            )
            failed = qa.failed_count or 0
            checks.check(
                "tests_passed",
                qa.passed,
                field_name="passed",
                passed="All QA tests passed (green)",
                failed="Some QA tests failed (red)",
                suggestion=f"Fix {failed} failing test{'' if failed == 1 else 's'}",
            )
            if qa.coverage_percent is not None:
                minimum = self.min_coverage_percent
                coverage = qa.coverage_percent
                met = coverage >= minimum
                checks.check(
                    "test_coverage",
                    met,
                    field_name="coveragePercent",
                    passed=f"Test coverage is {coverage:g}% (>= {minimum:g}%)",
                    failed=f"Test coverage is {coverage:g}% (< {minimum:g}%)",
                    suggestion=f"Increase test coverage to at least {minimum:g}%",
                )
        return checks.result(
            WorkItemState.VERIFIED,
            ok="All QA requirements met",
            blocked="QA validation failed: tests not passing",
        )

    def _merge_ready(self, context: GuardrailContext) -> GuardrailResult:
        checks = _Checklist(bundle="diffGate")
        gate = context.diff_gate
        if gate is None:
            checks.missing_bundle("diff_gate_evidence", "Provide diff-gate evidence for the branch")
        else:
            checks.check(
                "has_changes",
                gate.has_changes,
                field_name="hasChanges",
                passed="Changes are present for merge",
                failed="No changes to merge",
                suggestion="Commit changes to the branch",
            )
            checks.check(
                "conflicts_resolved",
                gate.conflicts_resolved,
                field_name="conflictsResolved",
                passed="No merge conflicts",
                failed="Merge conflicts must be resolved",
                suggestion="Resolve all merge conflicts",
            )
            checks.check(
                "reviews_approved",
                gate.reviews_approved,
                field_name="reviewsApproved",
                passed="Required reviews approved",
                failed="Awaiting review approvals",
                suggestion="Obtain required code review approvals",
            )
            checks.check(
                "ci_passing",
                gate.ci_passing,
                field_name="ciPassing",
                passed="CI pipeline is passing",
                failed="CI pipeline has failures",
                suggestion="Fix CI pipeline failures",
            )
            if gate.security_checks_passed is not None:
                checks.check(
                    "security_checks",
                    gate.security_checks_passed,
                    field_name="securityChecksPassed",
                    passed="Security checks passed",
                    failed="Security checks failed",
                    suggestion="Address security vulnerabilities",
                )
        return checks.result(
            WorkItemState.MERGE_READY,
            ok="All merge requirements met",
            blocked="Merge gate validation failed: requirements not met",
        )


_default_evaluator = GuardrailEvaluator()


def validate_state_transition(
    from_state: WorkItemState, to_state: WorkItemState, context: GuardrailContext
) -> GuardrailResult:
    return _default_evaluator.validate_state_transition(from_state, to_state, context)


def evaluate_next_state_progression(
    current: WorkItemState, context: GuardrailContext
) -> ProgressionResult:
    return _default_evaluator.evaluate_next_state_progression(current, context)
