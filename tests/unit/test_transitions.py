"""Unit tests for applying transitions to stored work items."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from workitem_orchestrator.errors import StaleStateError, ValidationError, WorkItemNotFound
from workitem_orchestrator.workflow.guardrails import GuardrailContext
from workitem_orchestrator.workflow.state_machine import WorkItemState
from workitem_orchestrator.workflow.store import TransitionRecord, WorkItem, WorkItemStore
from workitem_orchestrator.workflow.transitions import TransitionService

S = WorkItemState

READY_CTX = GuardrailContext.model_validate(
    {
        "specification": {
            "exists": True,
            "isComplete": True,
            "hasRequirements": True,
            "hasAcceptanceCriteria": True,
        },
        "qaResults": {"executed": True, "passed": True},
        "diffGate": {
            "hasChanges": True,
            "conflictsResolved": True,
            "reviewsApproved": True,
            "ciPassing": True,
        },
    }
)


def _force_state(store: WorkItemStore, work_item_id: str, *path: WorkItemState):
    item = store.get(work_item_id)
    for target in path:
        record = TransitionRecord(from_state=item.current_state, to_state=target, actor="test")
        item = store.compare_and_apply(work_item_id, item.current_state, record)
    return item


@pytest.mark.parametrize("target", list(WorkItemState))
def test_scenario_e_killed_work_item_is_never_reopened(
    store: WorkItemStore, target: WorkItemState
) -> None:
    service = TransitionService(store)
    item = store.create("zombie")
    killed = _force_state(store, item.id, S.KILLED)

    outcome = service.attempt_transition(killed, target, READY_CTX)

    assert outcome.applied is False
    assert outcome.error_kind == "TerminalStateViolation"
    assert store.get(item.id) == killed


def test_done_work_item_is_never_reopened(store: WorkItemStore) -> None:
    service = TransitionService(store)
    item = store.create()
    done = service.advance(item, READY_CTX).work_item
    assert done.current_state is S.DONE

    outcome = service.attempt_transition(done, S.HOLD, READY_CTX)

    assert outcome.applied is False
    assert outcome.error_kind == "TerminalStateViolation"
    assert len(store.get(item.id).history) == len(done.history)


def test_applied_transition_appends_exactly_one_record(store: WorkItemStore) -> None:
    service = TransitionService(store)
    item = store.create("feature")

    outcome = service.attempt_transition(
        item, "spec_ready", READY_CTX, actor="planner", reason="spec merged"
    )

    assert outcome.applied is True
    updated = store.get(item.id)
    assert updated.current_state is S.SPEC_READY
    assert len(updated.history) == 1
    (record,) = updated.history
    assert record.from_state is S.CREATED
    assert record.to_state is S.SPEC_READY
    assert record.actor == "planner"
    assert record.reason == "spec merged"
    assert record.evidence["specification"]["isComplete"] is True
    assert all(c["passed"] for c in record.conditions)
    # The caller's snapshot is never mutated.
    assert item.current_state is S.CREATED


def test_blocked_transition_leaves_work_item_unchanged(store: WorkItemStore) -> None:
    service = TransitionService(store)
    item = store.create()

    outcome = service.attempt_transition(item, S.SPEC_READY, GuardrailContext())

    assert outcome.applied is False
    assert outcome.error_kind == "GuardrailBlocked"
    assert outcome.error is not None
    assert outcome.error.to_dict()["details"]["failed_conditions"] == ["specification_evidence"]
    assert store.get(item.id).history == ()


def test_illegal_edge_is_reported(store: WorkItemStore) -> None:
    service = TransitionService(store)
    item = store.create()

    outcome = service.attempt_transition(item, S.MERGE_READY, READY_CTX)

    assert outcome.applied is False
    assert outcome.error_kind == "IllegalTransition"
    assert outcome.to_dict()["result"]["violation"] == "InvalidTransition"


def test_stale_snapshot_is_rejected(store: WorkItemStore) -> None:
    service = TransitionService(store)
    stale = store.create()
    service.attempt_transition(stale, S.HOLD, READY_CTX)

    outcome = service.attempt_transition(stale, S.SPEC_READY, READY_CTX)

    assert outcome.applied is False
    assert isinstance(outcome.error, StaleStateError)
    assert store.get(stale.id).current_state is S.HOLD


def test_snapshot_from_before_a_hold_round_trip_is_rejected(store: WorkItemStore) -> None:
    service = TransitionService(store)
    stale = store.create()
    _force_state(store, stale.id, S.HOLD, S.CREATED)

    outcome = service.attempt_transition(stale, S.HOLD, READY_CTX)

    assert outcome.applied is False
    assert isinstance(outcome.error, StaleStateError)
    current = store.get(stale.id)
    assert current.current_state is S.CREATED
    assert current.version == 2


def test_store_rejects_writes_at_an_old_version(store: WorkItemStore) -> None:
    item = store.create()
    _force_state(store, item.id, S.HOLD, S.CREATED)
    record = TransitionRecord(from_state=S.CREATED, to_state=S.HOLD, actor="test")

    with pytest.raises(StaleStateError, match="version 0"):
        store.compare_and_apply(item.id, S.CREATED, record, expected_version=0)

    assert store.compare_and_apply(item.id, S.CREATED, record, expected_version=2).version == 3


def test_unknown_work_item_yields_structured_outcome(store: WorkItemStore) -> None:
    service = TransitionService(store)
    ghost = WorkItem(id="ghost")

    outcome = service.attempt_transition(ghost, S.HOLD, GuardrailContext())

    assert outcome.applied is False
    assert isinstance(outcome.error, WorkItemNotFound)
    assert outcome.error_kind == "WorkItemNotFound"
    assert outcome.work_item == ghost

    progress = service.advance(ghost, READY_CTX)
    assert progress.stopped_reason == "WorkItemNotFound"
    assert progress.transitions_applied == 0


def test_concurrent_attempts_apply_once(store: WorkItemStore) -> None:
    service = TransitionService(store)
    item = store.create()
    outcomes = []
    barrier = threading.Barrier(8)

    def attempt() -> None:
        barrier.wait()
        outcomes.append(service.attempt_transition(item, S.SPEC_READY, READY_CTX))

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for o in outcomes if o.applied) == 1
    assert len(store.get(item.id).history) == 1


def test_advance_stops_at_first_blocking_guardrail(store: WorkItemStore) -> None:
    service = TransitionService(store)
    item = store.create()
    ctx = READY_CTX.model_copy(update={"qa_results": None})

    progress = service.advance(item, ctx)

    assert progress.work_item.current_state is S.IMPLEMENTING
    assert progress.transitions_applied == 2
    assert progress.stopped_reason == "GuardrailBlocked"


def test_advance_runs_to_done_and_stops(store: WorkItemStore) -> None:
    service = TransitionService(store)

    progress = service.advance(store.create(), READY_CTX)

    assert progress.work_item.current_state is S.DONE
    assert progress.transitions_applied == 5
    assert progress.stopped_reason == "terminal"


def test_advance_does_not_leave_hold(store: WorkItemStore) -> None:
    service = TransitionService(store)
    held = _force_state(store, store.create().id, S.HOLD)

    progress = service.advance(held, READY_CTX)

    assert progress.outcomes == ()
    assert progress.stopped_reason == "no_canonical_successor"


def test_store_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "state" / "work_items.json"
    store = WorkItemStore(path)
    item = store.create("persisted", work_item_id="wi-1")
    TransitionService(store).attempt_transition(item, S.SPEC_READY, READY_CTX)

    reloaded = WorkItemStore(path).get("wi-1")

    assert reloaded.title == "persisted"
    assert reloaded.current_state is S.SPEC_READY
    assert reloaded.history[0].to_state is S.SPEC_READY


def test_store_treats_invalid_json_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "work_items.json"
    path.write_text("{not json", encoding="utf-8")

    assert WorkItemStore(path).list_items() == []


def test_store_rejects_duplicate_ids_and_unknown_lookups(store: WorkItemStore) -> None:
    store.create(work_item_id="dup")
    with pytest.raises(ValidationError):
        store.create(work_item_id="dup")
    with pytest.raises(WorkItemNotFound):
        store.get("missing")
