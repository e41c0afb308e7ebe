"""Workflow REST API.

All routes are mounted under `/api`. Engine errors propagate to the handlers
registered in :mod:`engagement_workflows.server.app`.
"""

from __future__ import annotations

from enum import Enum
from typing import TypeVar

from fastapi import APIRouter, Header, HTTPException, Query, Request

from engagement_workflows import __version__
from engagement_workflows.engine.errors import ValidationError
from engagement_workflows.engine.service import WorkflowService
from engagement_workflows.engine.workflow.events import Actor, ActorType, EventType
from engagement_workflows.engine.workflow.models import WorkflowStatus
from engagement_workflows.server.models import (
    AdvanceStageRequest,
    BlockTaskRequest,
    CancelWorkflowRequest,
    CompleteTaskRequest,
    StartTaskRequest,
    StartWorkflowRequest,
)

router = APIRouter()

E = TypeVar("E", bound=Enum)


def _service(request: Request) -> WorkflowService:
    service = getattr(request.app.state, "service", None)
    if not isinstance(service, WorkflowService):
        # This should never happen for the real app, but keeps the API fail-fast.
        raise HTTPException(status_code=500, detail="Workflow service not configured")
    return service


def _actor(actor_type: str | None, actor_id: str | None) -> Actor:
    raw = (actor_type or "").strip().lower()
    if not raw:
        return Actor(type=ActorType.USER, id=actor_id or None)
    try:
        kind = ActorType(raw)
    except ValueError as e:
        raise ValidationError(f"Unknown X-Actor-Type: {actor_type!r}") from e
    return Actor(type=kind, id=actor_id or None)


def _enum_param(enum_cls: type[E], value: str | None, name: str) -> E | None:
    if value is None or not value.strip():
        return None
    try:
        return enum_cls(value.strip())
    except ValueError as e:
        raise ValidationError(f"Unknown {name}: {value!r}") from e


@router.get("/health")
def health() -> dict[str, object]:
    return {"status": "ok", "version": __version__}


@router.post("/templates")
def load_template(request: Request, payload: dict[str, object]) -> dict[str, object]:
    return _service(request).load_template(payload).to_json()


@router.post("/workflows/start")
def start_workflow(
    request: Request,
    body: StartWorkflowRequest,
    x_actor_type: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> dict[str, object]:
    result = _service(request).start_workflow(
        client_id=body.client_id,
        workflow_template_id=body.workflow_template_id,
        actor=_actor(x_actor_type, x_actor_id),
    )
    return result.to_json()


@router.post("/tasks/complete")
def complete_task(
    request: Request,
    body: CompleteTaskRequest,
    x_actor_type: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> dict[str, object]:
    result = _service(request).complete_task(
        task_instance_id=body.task_instance_id,
        field_values=body.field_values,
        selected_outcome=body.outcome,
        actor=_actor(x_actor_type, x_actor_id),
    )
    return result.to_json()


@router.post("/workflows/advance-stage")
def advance_stage(
    request: Request,
    body: AdvanceStageRequest,
    x_actor_type: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> dict[str, object]:
    result = _service(request).advance_stage(
        workflow_instance_id=body.workflow_instance_id,
        actor=_actor(x_actor_type, x_actor_id),
    )
    return result.to_json()


@router.post("/tasks/start")
def start_task(
    request: Request,
    body: StartTaskRequest,
    x_actor_type: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> dict[str, object]:
    task = _service(request).start_task(
        task_instance_id=body.task_instance_id, actor=_actor(x_actor_type, x_actor_id)
    )
    return {"task": task.model_dump(mode="json")}


@router.post("/tasks/block")
def block_task(
    request: Request,
    body: BlockTaskRequest,
    x_actor_type: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> dict[str, object]:
    task = _service(request).block_task(
        task_instance_id=body.task_instance_id,
        blocker_reason=body.blocker_reason,
        actor=_actor(x_actor_type, x_actor_id),
    )
    return {"task": task.model_dump(mode="json")}


@router.post("/workflows/cancel")
def cancel_workflow(
    request: Request,
    body: CancelWorkflowRequest,
    x_actor_type: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
) -> dict[str, object]:
    result = _service(request).cancel_workflow(
        workflow_instance_id=body.workflow_instance_id,
        actor=_actor(x_actor_type, x_actor_id),
    )
    return result.to_json()


@router.get("/workflows")
def list_workflows(
    request: Request,
    client_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=500),
) -> list[dict[str, object]]:
    workflows = _service(request).list_workflows(
        client_id=client_id,
        status=_enum_param(WorkflowStatus, status, "status"),
        limit=limit,
    )
    return [w.model_dump(mode="json") for w in workflows]


@router.get("/workflows/{workflow_instance_id}")
def get_workflow(request: Request, workflow_instance_id: str) -> dict[str, object]:
    return _service(request).get_workflow_status(workflow_instance_id).to_json()


@router.get("/events")
def list_events(
    request: Request,
    source_entity_id: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
) -> list[dict[str, object]]:
    events = _service(request).list_events(
        source_entity_id=source_entity_id,
        event_type=_enum_param(EventType, event_type, "event_type"),
    )
    return [e.model_dump(mode="json") for e in events]
