"""Declarative workflow definitions.

JSON shape::

    {
      "name": "open-pr",
      "steps": [
        {"name": "fetch", "tool": "github.getIssue",
         "params": {"number": "${input.issue_number}"}, "assign": "issue"},
        {"name": "branch", "tool": "github.createBranch",
         "params": {"branch": "fix/${issue.number}"}, "retry": 2,
         "continueOnError": false, "condition": {"exists": "issue.number"}}
      ]
    }
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pydantic
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from workitem_orchestrator.errors import ValidationError
from workitem_orchestrator.tools.gateway import parse_tool_reference

from .conditions import Condition, parse_condition
from .context import INPUT_ROOT, find_references, path_root, split_path


class StepDefinition(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        frozen=True,
        extra="forbid",
    )

    name: str = Field(min_length=1)
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)
    assign: str | None = None
    retry: int | None = Field(default=None, ge=0, description="Retries after the first attempt")
    continue_on_error: bool = False
    condition: Condition | None = Field(
        default=None, validation_alias=AliasChoices("condition", "if")
    )
    defaults: dict[str, Any] = Field(
        default_factory=dict,
        description="Values used for ${path} references that do not resolve",
    )

    @field_validator("tool")
    @classmethod
    def _check_tool(cls, value: str) -> str:
        parse_tool_reference(value)
        return value.strip()

    @field_validator("assign")
    @classmethod
    def _check_assign(cls, value: str | None) -> str | None:
        if value is None:
            return None
        if split_path(value)[0] == INPUT_ROOT:
            raise ValidationError(f"Cannot assign to {value!r}: 'input' is read-only")
        return value.strip()

    @field_validator("condition", mode="before")
    @classmethod
    def _parse_condition(cls, value: object) -> Condition | None:
        if value is None:
            return None
        return parse_condition(value)

    @field_serializer("condition")
    def _dump_condition(self, value: Condition | None) -> object:
        return value.to_json() if value is not None else None

    @property
    def provider(self) -> str:
        return parse_tool_reference(self.tool)[0]

    @property
    def method(self) -> str:
        return parse_tool_reference(self.tool)[1]

    def references(self) -> set[str]:
        refs = find_references(self.params)
        if self.condition is not None:
            refs |= self.condition.paths()
        return refs


class WorkflowDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(min_length=1)
    description: str = ""
    steps: list[StepDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_step_names(self) -> WorkflowDefinition:
        seen: set[str] = set()
        for step in self.steps:
            if step.name in seen:
                raise ValidationError(f"Duplicate step name: {step.name!r}")
            seen.add(step.name)
        return self

    @classmethod
    def parse(cls, obj: object) -> WorkflowDefinition:
        """Validate raw data, raising this package's ValidationError on bad input."""

        try:
            return cls.model_validate(obj)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid workflow definition: {e}") from e

    def check_references(self, available: Iterable[str]) -> None:
        """Reject steps that read a variable only a later (or the same) step assigns."""

        known = {INPUT_ROOT, *available}
        assigned_at: dict[str, int] = {}
        for index, step in enumerate(self.steps):
            if step.assign is not None:
                assigned_at.setdefault(path_root(step.assign), index)

        for index, step in enumerate(self.steps):
            for ref in sorted(step.references()):
                root = path_root(ref)
                if root in known:
                    continue
                if root in assigned_at and assigned_at[root] >= index and ref not in step.defaults:
                    raise ValidationError(
                        f"Step {step.name!r} references ${{{ref}}} before it is assigned "
                        f"(assigned by step {self.steps[assigned_at[root]].name!r})"
                    )
            if step.assign is not None:
                known.add(path_root(step.assign))


def load_workflow_definition(path: Path) -> WorkflowDefinition:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Workflow definition {path} is not valid JSON: {e}") from e
    return WorkflowDefinition.parse(raw)
