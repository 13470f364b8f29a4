"""Execution context and ``${path}`` variable substitution.

Paths use dot notation with optional list indices, e.g. ``input.issue.labels[0].name``.
The context root always holds ``input``; each step's ``assign`` adds to it.
"""

from __future__ import annotations

import copy
import json
import re
from collections.abc import Iterator, Mapping
from typing import Any

from workitem_orchestrator.errors import UnresolvedReferenceError, ValidationError

INPUT_ROOT = "input"

REFERENCE_PATTERN = re.compile(r"\$\{([^}]+)\}")

_INDEX_PATTERN = re.compile(r"\[(\d+)\]")

_MISSING = object()


def split_path(path: str) -> list[str]:
    normalized = _INDEX_PATTERN.sub(r".\1", path.strip())
    parts = normalized.split(".")
    if not parts or any(not p for p in parts):
        raise ValidationError(f"Malformed context path: {path!r}")
    return parts


def path_root(path: str) -> str:
    return split_path(path)[0]


def find_references(value: Any) -> set[str]:
    """All ``${path}`` references contained in a (possibly nested) parameter value."""

    found: set[str] = set()
    if isinstance(value, str):
        found.update(m.strip() for m in REFERENCE_PATTERN.findall(value))
    elif isinstance(value, Mapping):
        for item in value.values():
            found |= find_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            found |= find_references(item)
    return found


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple, bool)) or value is None:
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


class ExecutionContext(Mapping[str, Any]):
    """Root namespace of variables visible to workflow steps."""

    def __init__(
        self, input: Mapping[str, Any] | None = None, **variables: Any  # noqa: A002
    ) -> None:
        if INPUT_ROOT in variables:
            raise ValidationError("'input' must be passed as the input argument")
        self._data: dict[str, Any] = {INPUT_ROOT: dict(input or {}), **variables}

    @classmethod
    def from_mapping(cls, initial: Mapping[str, Any] | None) -> ExecutionContext:
        """Build a fresh context; the caller's mapping is never written to."""
        if isinstance(initial, ExecutionContext):
            data = initial.snapshot()
        else:
            data = copy.deepcopy(dict(initial or {}))
        input_value = data.pop(INPUT_ROOT, None)
        if input_value is not None and not isinstance(input_value, Mapping):
            raise ValidationError("Execution context 'input' must be a mapping")
        return cls(input_value, **data)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def lookup(self, path: str) -> Any:
        """Return the value at ``path`` or ``_MISSING``."""

        current: Any = self._data
        for part in split_path(path):
            if isinstance(current, Mapping):
                current = current.get(part, _MISSING)
            elif isinstance(current, (list, tuple)) and part.isdigit():
                index = int(part)
                current = current[index] if index < len(current) else _MISSING
            else:
                return _MISSING
            if current is _MISSING:
                return _MISSING
        return current

    def has(self, path: str) -> bool:
        return self.lookup(path) is not _MISSING

    def value_at(self, path: str, default: Any = None) -> Any:
        value = self.lookup(path)
        return default if value is _MISSING else value

    def resolve(self, path: str, defaults: Mapping[str, Any] | None = None) -> Any:
        value = self.lookup(path)
        if value is not _MISSING:
            return value
        if defaults is not None and path in defaults:
            return defaults[path]
        raise UnresolvedReferenceError(path)

    def substitute(self, value: Any, defaults: Mapping[str, Any] | None = None) -> Any:
        """Resolve every ``${path}`` in ``value``.

        A string that is exactly one reference keeps the referenced value's type;
        references embedded in longer strings are rendered as text.
        """

        if isinstance(value, str):
            whole = REFERENCE_PATTERN.fullmatch(value)
            if whole is not None:
                return self.resolve(whole.group(1).strip(), defaults)
            return REFERENCE_PATTERN.sub(
                lambda m: _render(self.resolve(m.group(1).strip(), defaults)), value
            )
        if isinstance(value, Mapping):
            return {k: self.substitute(v, defaults) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.substitute(v, defaults) for v in value]
        return value

    def assign(self, path: str, value: Any) -> None:
        parts = split_path(path)
        if parts[0] == INPUT_ROOT:
            raise ValidationError(f"Cannot assign to {path!r}: 'input' is read-only")

        target = self._data
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[parts[-1]] = value

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)
