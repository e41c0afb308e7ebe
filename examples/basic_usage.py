#!/usr/bin/env python3
"""Programmatic onboarding walkthrough.

This demonstrates using the engine components directly:

* load a template document into an in-memory store
* start a workflow for a client
* complete every task and advance through both stages
* print the emitted event stream

Nothing is written to disk.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Sequence

from engagement_workflows.engine.config import EngineSettings
from engagement_workflows.engine.logging import configure_logging
from engagement_workflows.engine.service import build_service
from engagement_workflows.engine.store import MemoryStore
from engagement_workflows.engine.workflow.models import TaskInstance, TaskStatus

_DEFAULT_TEMPLATE = Path(__file__).with_name("onboarding_template.json")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an onboarding workflow end to end.")
    parser.add_argument("--template", type=Path, default=_DEFAULT_TEMPLATE)
    parser.add_argument("--client-id", default="client-acme")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)

    service = build_service(settings, store=MemoryStore())
    loaded = service.load_template(json.loads(args.template.read_text(encoding="utf-8")))
    started = service.start_workflow(
        client_id=args.client_id, workflow_template_id=loaded.template.id
    )
    workflow_id = started.workflow_instance.id

    while True:
        open_tasks = service.store.filter(
            TaskInstance,
            workflow_instance_id=workflow_id,
            status=TaskStatus.NOT_STARTED,
            order_by="sequence_order",
        )
        for task in open_tasks:
            result = service.complete_task(
                task_instance_id=task.id,
                field_values={"contact_email": "ops@acme.example"},
                selected_outcome="approved",
            )
            print(f"Completed {task.name!r}: {result.progress_percentage}%")

        advanced = service.advance_stage(workflow_instance_id=workflow_id)
        if advanced.workflow_completed:
            break
        print(f"Entered stage {advanced.next_stage_name!r}")

    status = service.get_workflow_status(workflow_id)
    print(f"Workflow {status.workflow.status.value} at {status.workflow.progress_percentage}%")
    for event in service.list_events():
        print(f"  {event.event_type.value:<28} {event.source_entity_type}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
