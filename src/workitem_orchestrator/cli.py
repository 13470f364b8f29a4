"""CLI entrypoint for inspecting and moving work items through their lifecycle."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import pydantic

from workitem_orchestrator import __version__
from workitem_orchestrator.core.config import OrchestratorConfig
from workitem_orchestrator.core.orchestrator import Orchestrator
from workitem_orchestrator.errors import OrchestrationError, ValidationError, WorkItemNotFound
from workitem_orchestrator.workflow.guardrails import GuardrailContext
from workitem_orchestrator.workflow.state_machine import (
    WorkItemState,
    allowed_transitions,
    describe_state,
    is_terminal,
)
from workitem_orchestrator.workflow.store import WorkItem

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_INPUT = 2
EXIT_BLOCKED = 3
EXIT_NOT_FOUND = 4


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _load_evidence(path: str | None) -> GuardrailContext:
    if path is None:
        return GuardrailContext()
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        return GuardrailContext.model_validate(raw)
    except (OSError, json.JSONDecodeError, pydantic.ValidationError) as e:
        raise ValidationError(f"Invalid evidence file {path}: {e}") from e


def _item_payload(item: WorkItem) -> dict[str, Any]:
    return item.model_dump(mode="json")


def _add_evidence_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--evidence",
        default=None,
        help="Path to a JSON file with guardrail evidence (specification, qaResults, diffGate)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workitem-orchestrator",
        description="Guard-gated work item lifecycle orchestrator",
    )
    parser.add_argument(
        "--version", action="version", version=f"workitem-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    create_item = subparsers.add_parser("create-item", help="Create a work item in CREATED")
    create_item.add_argument("--title", required=True, help="Work item title")
    create_item.add_argument("--id", dest="work_item_id", default=None, help="Explicit id")

    show_item = subparsers.add_parser("show-item", help="Show a work item and its history")
    show_item.add_argument("work_item_id", help="Work item id")

    subparsers.add_parser("list-items", help="List stored work items")
    subparsers.add_parser("states", help="List states and their allowed transitions")

    validate = subparsers.add_parser(
        "validate-transition",
        help="Evaluate whether a transition would be allowed, without applying it",
    )
    validate.add_argument("--from", dest="from_state", required=True, help="Source state")
    validate.add_argument("--to", dest="to_state", required=True, help="Target state")
    _add_evidence_argument(validate)

    transition = subparsers.add_parser(
        "transition", help="Attempt to move a work item to a new state"
    )
    transition.add_argument("work_item_id", help="Work item id")
    transition.add_argument("--to", dest="to_state", required=True, help="Target state")
    transition.add_argument("--actor", default="cli", help="Recorded actor")
    transition.add_argument("--reason", default="", help="Recorded reason")
    _add_evidence_argument(transition)

    advance = subparsers.add_parser(
        "advance",
        help="Apply canonical forward transitions until a guardrail blocks",
    )
    advance.add_argument("work_item_id", help="Work item id")
    advance.add_argument("--actor", default="cli", help="Recorded actor")
    _add_evidence_argument(advance)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = OrchestratorConfig()
    except pydantic.ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_INVALID_INPUT

    try:
        orchestrator = Orchestrator(config)

        if args.command == "create-item":
            item = orchestrator.create_work_item(args.title, work_item_id=args.work_item_id)
            logger.info(
                "Work item persisted",
                extra={"work_item_id": item.id, "path": str(config.state.storage_path)},
            )
            _print_json(_item_payload(item))
            return EXIT_OK

        if args.command == "show-item":
            _print_json(_item_payload(orchestrator.get_work_item(args.work_item_id)))
            return EXIT_OK

        if args.command == "list-items":
            _print_json(
                [
                    {"id": i.id, "title": i.title, "current_state": i.current_state.value}
                    for i in orchestrator.store.list_items()
                ]
            )
            return EXIT_OK

        if args.command == "states":
            _print_json(
                [
                    {
                        "state": s.value,
                        "terminal": is_terminal(s),
                        "description": describe_state(s),
                        "allowed_transitions": sorted(t.value for t in allowed_transitions(s)),
                    }
                    for s in WorkItemState
                ]
            )
            return EXIT_OK

        if args.command == "validate-transition":
            result = orchestrator.validate_state_transition(
                args.from_state, args.to_state, _load_evidence(args.evidence)
            )
            _print_json(result.to_dict())
            return EXIT_OK if result.allowed else EXIT_BLOCKED

        if args.command == "transition":
            item = orchestrator.get_work_item(args.work_item_id)
            outcome = orchestrator.attempt_transition(
                item,
                args.to_state,
                _load_evidence(args.evidence),
                actor=args.actor,
                reason=args.reason,
            )
            _print_json(outcome.to_dict())
            return EXIT_OK if outcome.applied else EXIT_BLOCKED

        if args.command == "advance":
            item = orchestrator.get_work_item(args.work_item_id)
            progress = orchestrator.advance(item, _load_evidence(args.evidence), actor=args.actor)
            _print_json(
                {
                    "work_item_id": progress.work_item.id,
                    "current_state": progress.work_item.current_state.value,
                    "transitions_applied": progress.transitions_applied,
                    "stopped_reason": progress.stopped_reason,
                    "outcomes": [o.to_dict() for o in progress.outcomes],
                }
            )
            return EXIT_OK

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_INVALID_INPUT

    except WorkItemNotFound as e:
        logger.warning(str(e), extra={"work_item_id": e.work_item_id})
        print(str(e), file=sys.stderr)
        return EXIT_NOT_FOUND

    except ValidationError as e:
        logger.warning(e.message, extra={"error": e.to_dict()})
        print(e.message, file=sys.stderr)
        return EXIT_INVALID_INPUT

    except OrchestrationError as e:
        logger.error(e.message, extra={"error": e.to_dict()})
        print(e.message, file=sys.stderr)
        return EXIT_FAILED

    except Exception:
        logger.exception("Command failed")
        return EXIT_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
