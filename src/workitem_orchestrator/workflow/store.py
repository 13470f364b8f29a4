"""Minimal persisted state record for work items.

The store is the only place a WorkItem changes: ``compare_and_apply`` swaps in a
new snapshot carrying the new state and exactly one appended TransitionRecord, in
a single write, provided the stored state still matches what the caller observed.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from workitem_orchestrator.errors import StaleStateError, ValidationError, WorkItemNotFound

from .state_machine import WorkItemState, is_terminal

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


class TransitionRecord(BaseModel):
    """One applied transition. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    from_state: WorkItemState
    to_state: WorkItemState
    timestamp: datetime = Field(default_factory=_now)
    actor: str
    reason: str = ""
    evidence: dict[str, Any] = Field(default_factory=dict)
    conditions: list[dict[str, Any]] = Field(default_factory=list)


class WorkItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    current_state: WorkItemState = WorkItemState.CREATED
    history: tuple[TransitionRecord, ...] = ()
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.current_state)

    @property
    def version(self) -> int:
        """Number of applied transitions; grows by one on every write."""
        return len(self.history)

    def with_transition(self, record: TransitionRecord) -> WorkItem:
        return self.model_copy(
            update={
                "current_state": record.to_state,
                "history": (*self.history, record),
                "updated_at": record.timestamp,
            }
        )


class WorkItemStore:
    """JSON-file backed work item store. Keeps everything in memory when ``path`` is None."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._items: dict[str, WorkItem] = self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    def _load(self) -> dict[str, WorkItem]:
        if self._path is None or not self._path.exists():
            return {}

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Work item state file is not valid JSON; treating as empty",
                extra={"path": str(self._path)},
            )
            return {}

        if not isinstance(raw, list):
            logger.warning(
                "Work item state file has unexpected shape; treating as empty",
                extra={"path": str(self._path)},
            )
            return {}

        items = [WorkItem.model_validate(obj) for obj in raw]
        return {item.id: item for item in items}

    def _save(self, items: dict[str, WorkItem]) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = [item.model_dump(mode="json") for item in items.values()]
        self._path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    def create(self, title: str = "", *, work_item_id: str | None = None) -> WorkItem:
        item = WorkItem(id=work_item_id or uuid.uuid4().hex, title=title)
        with self._lock:
            if item.id in self._items:
                raise ValidationError(f"Work item already exists: {item.id}")
            items = {**self._items, item.id: item}
            self._save(items)
            self._items = items
        logger.info("Work item created", extra={"work_item_id": item.id, "title": title})
        return item

    def get(self, work_item_id: str) -> WorkItem:
        with self._lock:
            item = self._items.get(work_item_id)
        if item is None:
            raise WorkItemNotFound(work_item_id)
        return item

    def list_items(self) -> list[WorkItem]:
        with self._lock:
            return list(self._items.values())

    def compare_and_apply(
        self,
        work_item_id: str,
        expected_state: WorkItemState,
        record: TransitionRecord,
        *,
        expected_version: int | None = None,
    ) -> WorkItem:
        """Append ``record`` if the stored item still matches what the caller read.

        ``expected_version`` is the history length the caller observed. Passing it
        also catches a state that moved away and back (CREATED -> HOLD -> CREATED).
        """
        with self._lock:
            current = self._items.get(work_item_id)
            if current is None:
                raise WorkItemNotFound(work_item_id)
            if current.current_state is not expected_state:
                raise StaleStateError(
                    work_item_id, expected_state.value, current.current_state.value
                )
            if expected_version is not None and current.version != expected_version:
                raise StaleStateError(
                    work_item_id,
                    f"{expected_state.value} at version {expected_version}",
                    f"{current.current_state.value} at version {current.version}",
                )
            updated = current.with_transition(record)
            items = {**self._items, work_item_id: updated}
            # Persist before swapping so a failed write leaves memory untouched.
            self._save(items)
            self._items = items
        return updated
