"""CLI entrypoint for the workflow engine.

Every command prints one JSON document to stdout. Engine errors are printed as
``{"error": {...}}`` to stderr with exit code 1; configuration errors exit 2.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from engagement_workflows import __version__
from engagement_workflows.engine.config import EngineSettings
from engagement_workflows.engine.errors import WorkflowEngineError
from engagement_workflows.engine.errors import ValidationError as EngineValidationError
from engagement_workflows.engine.logging import configure_logging
from engagement_workflows.engine.service import WorkflowService, build_service
from engagement_workflows.engine.workflow.events import Actor, ActorType, EventType
from engagement_workflows.engine.workflow.models import WorkflowStatus

logger = logging.getLogger(__name__)


def _parse_field(raw: str) -> tuple[str, object]:
    """``code=value``. The value is read as JSON when it parses, else kept as text."""

    code, sep, value = raw.partition("=")
    if not sep or not code.strip():
        raise EngineValidationError(f"Expected --field code=value, got {raw!r}")
    try:
        parsed: object = json.loads(value)
    except json.JSONDecodeError:
        parsed = value
    return code.strip(), parsed


def _field_values(args: argparse.Namespace) -> dict[str, object]:
    values: dict[str, object] = {}
    if args.fields_json:
        try:
            loaded = json.loads(args.fields_json)
        except json.JSONDecodeError as e:
            raise EngineValidationError(f"--fields-json is not valid JSON: {e}") from e
        if not isinstance(loaded, dict):
            raise EngineValidationError("--fields-json must be a JSON object")
        values.update(loaded)
    for raw in args.field or []:
        code, value = _parse_field(raw)
        values[code] = value
    return values


def _read_document(path: Path) -> object:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise EngineValidationError(f"Cannot read template file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise EngineValidationError(f"Template file {path} is not valid JSON: {e}") from e


def _actor(args: argparse.Namespace) -> Actor:
    return Actor(type=ActorType(args.actor_type), id=args.actor_id or None)


def _emit(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workflow-engine",
        description="Template-driven workflow engine for client engagements",
    )
    parser.add_argument(
        "--version", action="version", version=f"engagement-workflows {__version__}"
    )
    parser.add_argument(
        "--actor-type",
        choices=[a.value for a in ActorType],
        default=ActorType.USER.value,
        help="Actor recorded on emitted events",
    )
    parser.add_argument("--actor-id", default="", help="Actor id recorded on emitted events")

    subparsers = parser.add_subparsers(dest="command", required=True)

    load_template = subparsers.add_parser(
        "load-template", help="Create template records from a JSON document"
    )
    load_template.add_argument("path", type=Path, help="Path to the template JSON document")

    start = subparsers.add_parser(
        "start-workflow", help="Materialise a workflow instance for a client"
    )
    start.add_argument("--client-id", required=True)
    start.add_argument("--template-id", dest="workflow_template_id", required=True)

    complete = subparsers.add_parser("complete-task", help="Complete a task instance")
    complete.add_argument("--task-id", dest="task_instance_id", required=True)
    complete.add_argument(
        "--field",
        action="append",
        metavar="CODE=VALUE",
        help="Collected field value (repeatable). Values are parsed as JSON when possible.",
    )
    complete.add_argument(
        "--fields-json", default=None, help="Collected field values as one JSON object"
    )
    complete.add_argument("--outcome", default=None, help="Selected outcome name")

    advance = subparsers.add_parser(
        "advance-stage", help="Close the current stage and enter the next one"
    )
    advance.add_argument("--workflow-id", dest="workflow_instance_id", required=True)

    start_task = subparsers.add_parser(
        "start-task", help="Pick up a task (unblocks it if blocked)"
    )
    start_task.add_argument("--task-id", dest="task_instance_id", required=True)

    block = subparsers.add_parser("block-task", help="Mark a task as blocked")
    block.add_argument("--task-id", dest="task_instance_id", required=True)
    block.add_argument("--reason", required=True, help="Why the task cannot proceed")

    cancel = subparsers.add_parser("cancel-workflow", help="Halt a workflow instance")
    cancel.add_argument("--workflow-id", dest="workflow_instance_id", required=True)

    status = subparsers.add_parser("status", help="Show a workflow instance and its stages")
    status.add_argument("--workflow-id", dest="workflow_instance_id", required=True)

    list_workflows = subparsers.add_parser("list-workflows", help="List workflow instances")
    list_workflows.add_argument("--client-id", default=None)
    list_workflows.add_argument(
        "--status", choices=[s.value for s in WorkflowStatus], default=None
    )
    list_workflows.add_argument("--limit", type=int, default=None)

    events = subparsers.add_parser("events", help="List emitted events in order")
    events.add_argument("--source-id", dest="source_entity_id", default=None)
    events.add_argument(
        "--type", dest="event_type", choices=[e.value for e in EventType], default=None
    )

    return parser


def _run(service: WorkflowService, args: argparse.Namespace) -> object:
    actor = _actor(args)

    if args.command == "load-template":
        return service.load_template(_read_document(args.path)).to_json()

    if args.command == "start-workflow":
        return service.start_workflow(
            client_id=args.client_id,
            workflow_template_id=args.workflow_template_id,
            actor=actor,
        ).to_json()

    if args.command == "complete-task":
        return service.complete_task(
            task_instance_id=args.task_instance_id,
            field_values=_field_values(args),
            selected_outcome=args.outcome,
            actor=actor,
        ).to_json()

    if args.command == "advance-stage":
        return service.advance_stage(
            workflow_instance_id=args.workflow_instance_id, actor=actor
        ).to_json()

    if args.command == "start-task":
        task = service.start_task(task_instance_id=args.task_instance_id, actor=actor)
        return task.model_dump(mode="json")

    if args.command == "block-task":
        task = service.block_task(
            task_instance_id=args.task_instance_id, blocker_reason=args.reason, actor=actor
        )
        return task.model_dump(mode="json")

    if args.command == "cancel-workflow":
        return service.cancel_workflow(
            workflow_instance_id=args.workflow_instance_id, actor=actor
        ).to_json()

    if args.command == "status":
        return service.get_workflow_status(args.workflow_instance_id).to_json()

    if args.command == "list-workflows":
        workflows = service.list_workflows(
            client_id=args.client_id,
            status=WorkflowStatus(args.status) if args.status else None,
            limit=args.limit,
        )
        return [w.model_dump(mode="json") for w in workflows]

    if args.command == "events":
        events = service.list_events(
            source_entity_id=args.source_entity_id,
            event_type=EventType(args.event_type) if args.event_type else None,
        )
        return [e.model_dump(mode="json") for e in events]

    raise AssertionError(f"Unhandled command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    # Logs go to stderr so stdout stays a single JSON document.
    configure_logging(settings.log_level, stream=sys.stderr)

    try:
        service = build_service(settings)
        _emit(_run(service, args))
        return 0
    except WorkflowEngineError as e:
        logger.info("Command failed", extra={"command": args.command, "kind": e.kind})
        print(json.dumps({"error": e.to_json()}, ensure_ascii=False), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
