#!/usr/bin/env python3
"""Programmatic orchestration example.

This demonstrates using the orchestrator components directly:

* load settings from `.env`
* register in-process tools on a LocalToolGateway
* run a declarative workflow for a work item
* move the work item forward as far as the collected evidence allows

State is persisted to the configured storage path (`.state/work_items.json` by default).
"""

from __future__ import annotations

import argparse
import json
from typing import Sequence

from workitem_orchestrator import Orchestrator, OrchestratorConfig
from workitem_orchestrator.tools.gateway import LocalToolGateway
from workitem_orchestrator.workflow.guardrails import GuardrailContext

WORKFLOW = {
    "name": "draft-specification",
    "steps": [
        {
            "name": "outline",
            "tool": "docs.outline",
            "params": {"title": "${input.title}"},
            "assign": "outline",
        },
        {
            "name": "review",
            "tool": "docs.review",
            "params": {"sections": "${outline.sections}"},
            "assign": "review",
            "retry": 2,
        },
    ],
}


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a workflow for a new work item.")
    parser.add_argument("--title", required=True, help="Work item title")
    return parser.parse_args(argv)


def _build_gateway() -> LocalToolGateway:
    gateway = LocalToolGateway()

    def outline(title: str) -> dict:
        """Produce a specification outline."""
        return {"sections": ["Requirements", "Acceptance criteria"], "title": title}

    def review(sections: list[str]) -> dict:
        """Check the outline for the required sections."""
        return {
            "has_requirements": "Requirements" in sections,
            "has_acceptance_criteria": "Acceptance criteria" in sections,
        }

    gateway.register("docs", "outline", outline)
    gateway.register("docs", "review", review)
    return gateway


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    orchestrator = Orchestrator(OrchestratorConfig(), gateway=_build_gateway())
    item = orchestrator.create_work_item(args.title)

    execution = orchestrator.execute_workflow(WORKFLOW, {"title": args.title}, work_item=item)
    print(f"Workflow {execution.workflow_name}: {execution.status.value}")
    if execution.error is not None:
        print(json.dumps(execution.error, indent=2))
        return 1

    review = execution.variables["review"]
    evidence = GuardrailContext.model_validate(
        {
            "specification": {
                "exists": True,
                "isComplete": True,
                "hasRequirements": review["has_requirements"],
                "hasAcceptanceCriteria": review["has_acceptance_criteria"],
            }
        }
    )

    progress = orchestrator.advance(item, evidence, actor="example")
    print(f"Work item {item.id} is now {progress.work_item.current_state.value}")
    print(f"Stopped: {progress.stopped_reason}")
    for outcome in progress.outcomes:
        for suggestion in outcome.result.suggestions:
            print(f"  - {suggestion}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
