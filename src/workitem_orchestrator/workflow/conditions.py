"""Step condition expressions.

A small closed expression type evaluated against the execution context:

- ``Exists(path)``: the path resolves to a non-null value
- ``Truthy(path)``: the path resolves to a truthy value (``False``, ``0``, ``""`` and
  empty collections do not count)
- ``Equals(path, value)``: the path resolves and equals ``value``
- ``Not(expr)``

Declarative (JSON) forms accepted by :func:`parse_condition`::

    "${input.deploy}"                                  -> Truthy("input.deploy")
    {"exists": "input.branch"}                         -> Exists("input.branch")
    {"equals": {"path": "issue.state", "value": "open"}}
    {"not": {"exists": "input.skip_build"}}
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from workitem_orchestrator.errors import ValidationError

from .context import REFERENCE_PATTERN, ExecutionContext, split_path

_UNSET = object()


class Condition(ABC):
    @abstractmethod
    def evaluate(self, context: ExecutionContext) -> bool: ...

    @abstractmethod
    def paths(self) -> set[str]:
        """Context paths this expression reads."""

    @abstractmethod
    def to_json(self) -> object: ...


@dataclass(frozen=True, slots=True)
class Exists(Condition):
    path: str

    def evaluate(self, context: ExecutionContext) -> bool:
        return context.value_at(self.path) is not None

    def paths(self) -> set[str]:
        return {self.path}

    def to_json(self) -> object:
        return {"exists": self.path}


@dataclass(frozen=True, slots=True)
class Truthy(Condition):
    path: str

    def evaluate(self, context: ExecutionContext) -> bool:
        return bool(context.value_at(self.path))

    def paths(self) -> set[str]:
        return {self.path}

    def to_json(self) -> object:
        return f"${{{self.path}}}"


@dataclass(frozen=True, slots=True)
class Equals(Condition):
    path: str
    value: Any

    def evaluate(self, context: ExecutionContext) -> bool:
        actual = context.value_at(self.path, _UNSET)
        return actual is not _UNSET and actual == self.value

    def paths(self) -> set[str]:
        return {self.path}

    def to_json(self) -> object:
        return {"equals": {"path": self.path, "value": self.value}}


@dataclass(frozen=True, slots=True)
class Not(Condition):
    expr: Condition

    def evaluate(self, context: ExecutionContext) -> bool:
        return not self.expr.evaluate(context)

    def paths(self) -> set[str]:
        return self.expr.paths()

    def to_json(self) -> object:
        return {"not": self.expr.to_json()}


def _checked_path(raw: object) -> str:
    if not isinstance(raw, str):
        raise ValidationError(f"Condition path must be a string, got {type(raw).__name__}")
    split_path(raw)
    return raw.strip()


def parse_condition(raw: object) -> Condition:
    if isinstance(raw, Condition):
        return raw

    if isinstance(raw, str):
        match = REFERENCE_PATTERN.fullmatch(raw.strip())
        if match is None:
            raise ValidationError(
                f"Unsupported condition string {raw!r}; use '${{path}}' or a structured condition"
            )
        return Truthy(_checked_path(match.group(1)))

    if isinstance(raw, Mapping) and len(raw) == 1:
        ((op, arg),) = raw.items()
        if op == "exists":
            return Exists(_checked_path(arg))
        if op == "equals":
            if not isinstance(arg, Mapping) or "path" not in arg or "value" not in arg:
                raise ValidationError("'equals' condition requires 'path' and 'value'")
            return Equals(_checked_path(arg["path"]), arg["value"])
        if op == "not":
            return Not(parse_condition(arg))

    raise ValidationError(f"Unsupported condition: {raw!r}")
