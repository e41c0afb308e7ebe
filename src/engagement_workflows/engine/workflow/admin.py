from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass

from engagement_workflows.engine.errors import NotFoundError, PreconditionFailed, ValidationError
from engagement_workflows.engine.store import ObjectStore, store_errors

from .events import SYSTEM_ACTOR, Actor, EventPublisher, EventType
from .models import (
    DeliverableInstance,
    DeliverableStatus,
    StageInstance,
    StageStatus,
    TaskInstance,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
    utc_now,
)
from .state_machine import HALTED_WORKFLOW_STATES, allowed_sources, can_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WorkflowStatusReport:
    workflow: WorkflowInstance
    stages: list[StageInstance]
    tasks_summary: dict[str, int]
    total_tasks: int
    total_deliverables: int

    def to_json(self) -> dict[str, object]:
        return {
            "workflow": self.workflow.model_dump(mode="json"),
            "stages": [s.model_dump(mode="json") for s in self.stages],
            "tasks_summary": dict(self.tasks_summary),
            "total_tasks": self.total_tasks,
            "total_deliverables": self.total_deliverables,
        }


@dataclass(frozen=True, slots=True)
class CancellationResult:
    workflow: WorkflowInstance
    stages_skipped: int
    deliverables_blocked: int

    def to_json(self) -> dict[str, object]:
        return {
            "workflow": self.workflow.model_dump(mode="json"),
            "stages_skipped": self.stages_skipped,
            "deliverables_blocked": self.deliverables_blocked,
        }


class WorkflowAdministration:
    """Operator-facing operations outside the normal progression path."""

    def __init__(
        self, *, store: ObjectStore, publisher: EventPublisher, list_limit: int = 50
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._list_limit = list_limit

    def start_task(self, *, task_instance_id: str, actor: Actor = SYSTEM_ACTOR) -> TaskInstance:
        """Pick up a task. A blocked task is unblocked; a started task is returned as is."""

        if not (task_instance_id or "").strip():
            raise ValidationError("Missing task_instance_id")

        with store_errors("start task"):
            task = self._store.get(TaskInstance, task_instance_id)
            if task is None:
                raise NotFoundError(f"Task not found: {task_instance_id}")
            workflow = self._store.get(WorkflowInstance, task.workflow_instance_id)
            if workflow is not None and workflow.status in HALTED_WORKFLOW_STATES:
                raise PreconditionFailed(
                    f"Workflow {workflow.id} is {workflow.status.value}; "
                    "tasks can no longer be started"
                )

            started = self._store.compare_and_set(
                TaskInstance,
                task.id,
                field="status",
                expected=allowed_sources(TaskStatus.IN_PROGRESS),
                changes={
                    "status": TaskStatus.IN_PROGRESS,
                    "started_at": task.started_at or utc_now(),
                    "blocker_reason": None,
                },
            )
            if started is None:
                current = self._store.get(TaskInstance, task.id) or task
                if current.status == TaskStatus.IN_PROGRESS:
                    return current
                raise PreconditionFailed(
                    f"Task {task.id} is {current.status.value} and cannot be started"
                )

            self._publisher.publish(
                EventType.TASK_STARTED,
                source_entity_type="task_instance",
                source_entity_id=started.id,
                actor=actor,
                payload={
                    "task_name": started.name,
                    "previous_status": task.status.value,
                    "client_id": started.client_id,
                    "workflow_instance_id": started.workflow_instance_id,
                },
            )
        logger.info("Task started", extra={"task_instance_id": started.id})
        return started

    def block_task(
        self, *, task_instance_id: str, blocker_reason: str, actor: Actor = SYSTEM_ACTOR
    ) -> TaskInstance:
        missing = [
            name
            for name, value in (
                ("task_instance_id", task_instance_id),
                ("blocker_reason", blocker_reason),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        with store_errors("block task"):
            task = self._store.get(TaskInstance, task_instance_id)
            if task is None:
                raise NotFoundError(f"Task not found: {task_instance_id}")
            if not can_transition(current=task.status, to=TaskStatus.BLOCKED):
                raise PreconditionFailed(
                    f"Task {task.id} is {task.status.value} and cannot be blocked"
                )

            task = self._store.update(
                TaskInstance, task.id, status=TaskStatus.BLOCKED, blocker_reason=blocker_reason
            )
            self._publisher.publish(
                EventType.TASK_BLOCKED,
                source_entity_type="task_instance",
                source_entity_id=task.id,
                actor=actor,
                payload={
                    "task_name": task.name,
                    "blocker_reason": blocker_reason,
                    "client_id": task.client_id,
                    "workflow_instance_id": task.workflow_instance_id,
                },
            )
        logger.info("Task blocked", extra={"task_instance_id": task.id})
        return task

    def cancel_workflow(
        self, *, workflow_instance_id: str, actor: Actor = SYSTEM_ACTOR
    ) -> CancellationResult:
        """Halt a workflow. Open stages are skipped and open deliverables blocked.

        Nothing is deleted; the task history stays queryable.
        """

        if not (workflow_instance_id or "").strip():
            raise ValidationError("Missing workflow_instance_id")

        with store_errors("cancel workflow"):
            workflow = self._store.get(WorkflowInstance, workflow_instance_id)
            if workflow is None:
                raise NotFoundError(f"Workflow not found: {workflow_instance_id}")

            cancelled = self._store.compare_and_set(
                WorkflowInstance,
                workflow.id,
                field="status",
                expected={
                    s
                    for s in WorkflowStatus
                    if can_transition(current=s, to=WorkflowStatus.CANCELLED)
                },
                changes={"status": WorkflowStatus.CANCELLED, "completed_at": utc_now()},
            )
            if cancelled is None:
                raise PreconditionFailed(
                    f"Workflow {workflow.id} is {workflow.status.value} and cannot be cancelled"
                )

            stages_skipped = 0
            for stage in self._store.filter(StageInstance, workflow_instance_id=workflow.id):
                if can_transition(current=stage.status, to=StageStatus.SKIPPED):
                    self._store.update(StageInstance, stage.id, status=StageStatus.SKIPPED)
                    stages_skipped += 1

            deliverables_blocked = 0
            for deliverable in self._store.filter(
                DeliverableInstance, workflow_instance_id=workflow.id
            ):
                if can_transition(current=deliverable.status, to=DeliverableStatus.BLOCKED):
                    self._store.update(
                        DeliverableInstance, deliverable.id, status=DeliverableStatus.BLOCKED
                    )
                    deliverables_blocked += 1

            self._publisher.publish(
                EventType.WORKFLOW_INSTANCE_CANCELLED,
                source_entity_type="workflow_instance",
                source_entity_id=workflow.id,
                actor=actor,
                payload={
                    "client_id": workflow.client_id,
                    "stages_skipped": stages_skipped,
                    "deliverables_blocked": deliverables_blocked,
                },
            )

        logger.info(
            "Workflow cancelled",
            extra={
                "workflow_instance_id": cancelled.id,
                "stages_skipped": stages_skipped,
                "deliverables_blocked": deliverables_blocked,
            },
        )
        return CancellationResult(
            workflow=cancelled,
            stages_skipped=stages_skipped,
            deliverables_blocked=deliverables_blocked,
        )

    def get_workflow_status(self, workflow_instance_id: str) -> WorkflowStatusReport:
        with store_errors("read workflow status"):
            workflow = self._store.get(WorkflowInstance, workflow_instance_id)
            if workflow is None:
                raise NotFoundError(f"Workflow not found: {workflow_instance_id}")
            stages = self._store.filter(
                StageInstance, workflow_instance_id=workflow.id, order_by="sequence_order"
            )
            tasks = self._store.filter(TaskInstance, workflow_instance_id=workflow.id)
            deliverables = self._store.filter(
                DeliverableInstance, workflow_instance_id=workflow.id
            )

        return WorkflowStatusReport(
            workflow=workflow,
            stages=stages,
            tasks_summary=dict(Counter(t.status.value for t in tasks)),
            total_tasks=len(tasks),
            total_deliverables=len(deliverables),
        )

    def list_workflows(
        self,
        *,
        client_id: str | None = None,
        status: WorkflowStatus | None = None,
        limit: int | None = None,
    ) -> list[WorkflowInstance]:
        """Newest first."""

        where: dict[str, object] = {}
        if client_id:
            where["client_id"] = client_id
        if status is not None:
            where["status"] = status
        with store_errors("list workflows"):
            return self._store.filter(
                WorkflowInstance,
                order_by="-created_at",
                limit=limit if limit is not None else self._list_limit,
                **where,
            )
