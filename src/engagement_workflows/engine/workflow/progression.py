"""Progression engine: task completion, outcome routing and stage advancement.

Stages never advance implicitly. A deliverable can complete while its stage
still waits on external sign-off, so stage advancement is a separate, explicit
call.

There is no cross-record transaction. Every status move that two requests can
race on goes through the store's compare-and-set, which keeps retries after a
crash resumable: the loser of a race (or a replay) observes the new status and
stops.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import assert_never

from engagement_workflows.engine.errors import NotFoundError, PreconditionFailed, ValidationError
from engagement_workflows.engine.store import ObjectStore, store_errors

from .events import SYSTEM_ACTOR, Actor, EventPublisher, EventType
from .models import (
    ClientRecord,
    DataFieldDefinition,
    DeliverableInstance,
    DeliverableStatus,
    OutcomeActionName,
    StageInstance,
    StageStatus,
    TaskInstance,
    TaskStatus,
    TaskTemplate,
    WorkflowInstance,
    WorkflowStatus,
    utc_now,
)
from .outcomes import (
    BlockWorkflow,
    Continue,
    EndWorkflow,
    OutcomeAction,
    SkipToDeliverable,
    SkipToStage,
    action_name,
    resolve_outcome,
)
from .progress import recompute_workflow_progress
from .state_machine import HALTED_WORKFLOW_STATES, allowed_sources, transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class EnrichedField:
    field_code: str
    client_field: str
    value: object

    def to_json(self) -> dict[str, object]:
        return {
            "field_code": self.field_code,
            "client_field": self.client_field,
            "value": self.value,
        }


@dataclass(frozen=True, slots=True)
class TaskCompletionResult:
    task: TaskInstance
    enriched_fields: list[EnrichedField]
    progress_percentage: int
    deliverable_completed: bool = False
    action: OutcomeActionName | None = None
    routing_warnings: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, object]:
        return {
            "task": self.task.model_dump(mode="json"),
            "enriched_fields": [f.to_json() for f in self.enriched_fields],
            "progress_percentage": self.progress_percentage,
            "deliverable_completed": self.deliverable_completed,
            "action": self.action.value if self.action else None,
            "routing_warnings": list(self.routing_warnings),
        }


@dataclass(frozen=True, slots=True)
class StageAdvanceResult:
    success: bool
    completed_stage_id: str
    progress_percentage: int
    next_stage_id: str | None = None
    next_stage_name: str | None = None
    workflow_completed: bool = False

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {
            "success": self.success,
            "completed_stage_id": self.completed_stage_id,
            "progress_percentage": self.progress_percentage,
            "workflow_completed": self.workflow_completed,
        }
        if self.next_stage_id is not None:
            out["next_stage_id"] = self.next_stage_id
            out["next_stage_name"] = self.next_stage_name
        return out


def _is_blank(value: object) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _require_id(name: str, value: str | None) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"Missing {name}")
    return value


class ProgressionEngine:
    def __init__(self, *, store: ObjectStore, publisher: EventPublisher) -> None:
        self._store = store
        self._publisher = publisher

    # ------------------------------------------------------------------
    # Task completion
    # ------------------------------------------------------------------

    def complete_task(
        self,
        *,
        task_instance_id: str,
        field_values: dict[str, object] | None = None,
        selected_outcome: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> TaskCompletionResult:
        task_instance_id = _require_id("task_instance_id", task_instance_id)
        values = dict(field_values or {})

        with store_errors("complete task"):
            task = self._store.get(TaskInstance, task_instance_id)
            if task is None:
                raise NotFoundError(f"Task not found: {task_instance_id}")
            deliverable = self._store.get(DeliverableInstance, task.deliverable_instance_id)
            if deliverable is None:
                raise NotFoundError(f"Deliverable not found: {task.deliverable_instance_id}")
            workflow = self._store.get(WorkflowInstance, task.workflow_instance_id)
            if workflow is None:
                raise NotFoundError(f"Workflow not found: {task.workflow_instance_id}")
            if workflow.status in HALTED_WORKFLOW_STATES:
                raise PreconditionFailed(
                    f"Workflow {workflow.id} is {workflow.status.value}; "
                    "tasks can no longer be completed"
                )
            transition(current=task.status, to=TaskStatus.COMPLETED)

            template = (
                self._store.get(TaskTemplate, task.task_template_id)
                if task.task_template_id
                else None
            )
            definitions = template.data_field_definitions if template is not None else []
            missing = [
                d.field_code
                for d in definitions
                if d.is_required and _is_blank(values.get(d.field_code))
            ]
            if missing:
                raise ValidationError(f"Missing required field values: {', '.join(missing)}")

            # Enrichment lands before the status write so a reader never sees a
            # completed task whose values have not reached the client record.
            enriched = self._enrich_client(task, definitions, values, actor)

            task = self._store.update(
                TaskInstance,
                task.id,
                status=TaskStatus.COMPLETED,
                field_values=values,
                completed_at=utc_now(),
            )
            self._publisher.publish(
                EventType.TASK_COMPLETED,
                source_entity_type="task_instance",
                source_entity_id=task.id,
                actor=actor,
                payload={
                    "task_name": task.name,
                    "client_id": task.client_id,
                    "workflow_instance_id": task.workflow_instance_id,
                    "enriched_fields": len(enriched),
                },
            )
            if enriched:
                self._publisher.publish(
                    EventType.CLIENT_RECORD_ENRICHED,
                    source_entity_type="client",
                    source_entity_id=task.client_id,
                    actor=actor,
                    payload={
                        "enriched_by_task": task.id,
                        "fields_updated": [f.to_json() for f in enriched],
                    },
                )

            deliverable_completed = False
            chosen: OutcomeActionName | None = None
            warnings: list[str] = []

            siblings = self._store.filter(
                TaskInstance, deliverable_instance_id=deliverable.id
            )
            if all(t.status == TaskStatus.COMPLETED for t in siblings):
                closed = self._store.compare_and_set(
                    DeliverableInstance,
                    deliverable.id,
                    field="status",
                    expected=allowed_sources(DeliverableStatus.COMPLETED),
                    changes={"status": DeliverableStatus.COMPLETED, "completed_at": utc_now()},
                )
                resuming = closed is None
                if resuming:
                    # Lost the race to a sibling, or replaying a call that stopped after
                    # closing the deliverable. Routing below is idempotent, so re-apply it.
                    closed = self._store.get(DeliverableInstance, deliverable.id)
                    if closed is None or closed.status != DeliverableStatus.COMPLETED:
                        raise PreconditionFailed(
                            f"Deliverable {deliverable.id} cannot be completed from status "
                            f"{(closed or deliverable).status.value}"
                        )
                    logger.info(
                        "Deliverable already closed; re-applying routing",
                        extra={
                            "deliverable_instance_id": deliverable.id,
                            "task_instance_id": task.id,
                        },
                    )
                else:
                    deliverable_completed = True
                self._publisher.publish(
                    EventType.DELIVERABLE_COMPLETED,
                    source_entity_type="deliverable_instance",
                    source_entity_id=closed.id,
                    payload={
                        "deliverable_name": closed.name,
                        "workflow_instance_id": closed.workflow_instance_id,
                        "client_id": task.client_id,
                    },
                    once_key=closed.id,
                )
                action = resolve_outcome(
                    template.outcome_rules if template is not None else None,
                    selected_outcome,
                )
                chosen = action_name(action)
                warnings = self._route(
                    action, workflow=workflow, deliverable=closed, resuming=resuming
                )

            progress = recompute_workflow_progress(self._store, workflow.id)

        logger.info(
            "Task completed",
            extra={
                "task_instance_id": task.id,
                "workflow_instance_id": workflow.id,
                "deliverable_completed": deliverable_completed,
                "action": chosen.value if chosen else None,
                "progress_percentage": progress,
            },
        )
        return TaskCompletionResult(
            task=task,
            enriched_fields=enriched,
            progress_percentage=progress,
            deliverable_completed=deliverable_completed,
            action=chosen,
            routing_warnings=warnings,
        )

    def _enrich_client(
        self,
        task: TaskInstance,
        definitions: list[DataFieldDefinition],
        values: dict[str, object],
        actor: Actor,
    ) -> list[EnrichedField]:
        enriched: list[EnrichedField] = []
        for definition in definitions:
            client_field = (definition.save_to_client_field or "").strip()
            if not client_field or definition.field_code not in values:
                continue
            value = values[definition.field_code]
            self._write_client_field(task.client_id, client_field, value)
            enriched.append(
                EnrichedField(
                    field_code=definition.field_code, client_field=client_field, value=value
                )
            )
            self._publisher.publish(
                EventType.FIELD_UPDATED,
                source_entity_type="client",
                source_entity_id=task.client_id,
                actor=actor,
                payload={
                    "field_name": definition.field_name or definition.field_code,
                    "field_code": definition.field_code,
                    "client_field": client_field,
                    "source_task_instance_id": task.id,
                },
            )
        return enriched

    def _write_client_field(self, client_id: str, key: str, value: object) -> None:
        record = self._store.get(ClientRecord, client_id)
        if record is None:
            self._store.create(ClientRecord(id=client_id, metadata={key: value}))
            return
        self._store.update(ClientRecord, client_id, metadata={**record.metadata, key: value})

    # ------------------------------------------------------------------
    # Outcome routing
    # ------------------------------------------------------------------

    def _route(
        self,
        action: OutcomeAction,
        *,
        workflow: WorkflowInstance,
        deliverable: DeliverableInstance,
        resuming: bool = False,
    ) -> list[str]:
        """Apply a routing action. Returns warnings for unresolvable targets.

        When ``resuming``, a target that has already left not_started is taken to be
        the work of the earlier attempt: stage entry is finished, nothing is reported.
        """

        match action:
            case Continue():
                nxt = self._next_deliverable(deliverable)
                if nxt is not None and nxt.status == DeliverableStatus.NOT_STARTED:
                    self._activate_deliverable(nxt)
                return []
            case SkipToDeliverable(target_id=target_id):
                target = self._resolve_deliverable(workflow.id, target_id)
                if target is None:
                    return [self._unresolved("skip_to_deliverable", target_id, workflow.id)]
                if target.status != DeliverableStatus.NOT_STARTED:
                    if resuming:
                        return []
                    return [
                        self._inactive_target(
                            "skip_to_deliverable", target.id, target.status.value, workflow.id
                        )
                    ]
                self._activate_deliverable(target)
                return []
            case SkipToStage(target_id=target_id):
                stage = self._resolve_stage(workflow.id, target_id)
                if stage is None:
                    return [self._unresolved("skip_to_stage", target_id, workflow.id)]
                if resuming and stage.status == StageStatus.IN_PROGRESS:
                    self._jump_to_stage(workflow, stage)
                    return []
                if stage.status != StageStatus.NOT_STARTED:
                    if resuming:
                        return []
                    return [
                        self._inactive_target(
                            "skip_to_stage", stage.id, stage.status.value, workflow.id
                        )
                    ]
                self._jump_to_stage(workflow, stage)
                return []
            case EndWorkflow():
                ended = self._store.compare_and_set(
                    WorkflowInstance,
                    workflow.id,
                    field="status",
                    expected=allowed_sources(WorkflowStatus.COMPLETED),
                    changes={"status": WorkflowStatus.COMPLETED, "completed_at": utc_now()},
                )
                if ended is not None:
                    self._publisher.publish(
                        EventType.WORKFLOW_INSTANCE_COMPLETED,
                        source_entity_type="workflow_instance",
                        source_entity_id=workflow.id,
                        payload={"client_id": workflow.client_id, "reason": "end_workflow"},
                    )
                return []
            case BlockWorkflow():
                blocked = self._store.compare_and_set(
                    WorkflowInstance,
                    workflow.id,
                    field="status",
                    expected=allowed_sources(WorkflowStatus.BLOCKED),
                    changes={"status": WorkflowStatus.BLOCKED},
                )
                if blocked is not None:
                    self._publisher.publish(
                        EventType.WORKFLOW_INSTANCE_BLOCKED,
                        source_entity_type="workflow_instance",
                        source_entity_id=workflow.id,
                        payload={"client_id": workflow.client_id, "reason": "block_workflow"},
                    )
                return []
            case _:
                assert_never(action)

    def _unresolved(self, action: str, target_id: str | None, workflow_id: str) -> str:
        message = f"{action} target {target_id!r} not found in workflow {workflow_id}"
        logger.warning(
            "Outcome target not found",
            extra={"action": action, "target_id": target_id, "workflow_instance_id": workflow_id},
        )
        return message

    def _inactive_target(self, action: str, target_id: str, status: str, workflow_id: str) -> str:
        logger.warning(
            "Outcome target is not startable",
            extra={
                "action": action,
                "target_id": target_id,
                "status": status,
                "workflow_instance_id": workflow_id,
            },
        )
        return f"{action} target {target_id!r} is {status}; no transition"

    def _resolve_deliverable(
        self, workflow_id: str, target_id: str | None
    ) -> DeliverableInstance | None:
        if not target_id:
            return None
        by_template = self._store.filter(
            DeliverableInstance,
            workflow_instance_id=workflow_id,
            deliverable_template_id=target_id,
            limit=1,
        )
        if by_template:
            return by_template[0]
        instance = self._store.get(DeliverableInstance, target_id)
        if instance is not None and instance.workflow_instance_id == workflow_id:
            return instance
        return None

    def _resolve_stage(self, workflow_id: str, target_id: str | None) -> StageInstance | None:
        if not target_id:
            return None
        by_template = self._store.filter(
            StageInstance, workflow_instance_id=workflow_id, stage_template_id=target_id, limit=1
        )
        if by_template:
            return by_template[0]
        instance = self._store.get(StageInstance, target_id)
        if instance is not None and instance.workflow_instance_id == workflow_id:
            return instance
        return None

    def _next_deliverable(self, deliverable: DeliverableInstance) -> DeliverableInstance | None:
        for candidate in self._store.filter(
            DeliverableInstance,
            stage_instance_id=deliverable.stage_instance_id,
            order_by="sequence_order",
        ):
            if candidate.sequence_order > deliverable.sequence_order:
                return candidate
        return None

    def _first_deliverable(self, stage_id: str) -> DeliverableInstance | None:
        first = self._store.filter(
            DeliverableInstance, stage_instance_id=stage_id, order_by="sequence_order", limit=1
        )
        return first[0] if first else None

    def _activate_deliverable(self, deliverable: DeliverableInstance) -> list[TaskInstance]:
        """Move a deliverable to in_progress and release its open tasks.

        Tasks already exist (materialisation is eager); activation only resets open
        tasks to not_started. Completed tasks stay completed so progress never drops.
        """

        activated = self._store.compare_and_set(
            DeliverableInstance,
            deliverable.id,
            field="status",
            expected={DeliverableStatus.NOT_STARTED},
            changes={"status": DeliverableStatus.IN_PROGRESS, "started_at": utc_now()},
        )
        if activated is None:
            logger.info(
                "Deliverable already active; not releasing tasks again",
                extra={"deliverable_instance_id": deliverable.id},
            )
            return []

        released: list[TaskInstance] = []
        for task in self._store.filter(
            TaskInstance, deliverable_instance_id=deliverable.id, order_by="sequence_order"
        ):
            if task.status == TaskStatus.COMPLETED:
                continue
            if task.status != TaskStatus.NOT_STARTED:
                task = self._store.update(TaskInstance, task.id, status=TaskStatus.NOT_STARTED)
            released.append(task)

        self._publisher.release_tasks(released)
        logger.info(
            "Deliverable activated",
            extra={"deliverable_instance_id": deliverable.id, "released_tasks": len(released)},
        )
        return released

    def _jump_to_stage(self, workflow: WorkflowInstance, stage: StageInstance) -> None:
        current_id = workflow.current_stage_id
        if current_id and current_id != stage.id:
            # Keep a single stage in progress: the stage being left is skipped.
            self._store.compare_and_set(
                StageInstance,
                current_id,
                field="status",
                expected={StageStatus.IN_PROGRESS},
                changes={"status": StageStatus.SKIPPED},
            )
        self._enter_stage(workflow, stage)

    def _enter_stage(self, workflow: WorkflowInstance, stage: StageInstance) -> bool:
        """Make ``stage`` the current stage and activate its first deliverable.

        Safe to call again for a stage an earlier attempt already moved to
        in_progress: the remaining steps are finished and nothing is repeated.
        """

        entered = self._store.compare_and_set(
            StageInstance,
            stage.id,
            field="status",
            expected={StageStatus.NOT_STARTED},
            changes={"status": StageStatus.IN_PROGRESS, "started_at": utc_now()},
        )
        if entered is None:
            current = self._store.get(StageInstance, stage.id)
            if current is None or current.status != StageStatus.IN_PROGRESS:
                return False
            logger.info(
                "Finishing stage entry",
                extra={"stage_instance_id": stage.id, "workflow_instance_id": workflow.id},
            )

        latest = self._store.get(WorkflowInstance, workflow.id)
        if latest is None or latest.current_stage_id != stage.id:
            self._store.update(WorkflowInstance, workflow.id, current_stage_id=stage.id)
        self._publisher.publish(
            EventType.STAGE_ENTERED,
            source_entity_type="stage_instance",
            source_entity_id=stage.id,
            payload={
                "stage_name": stage.name,
                "workflow_instance_id": workflow.id,
                "client_id": workflow.client_id,
            },
            once_key=stage.id,
        )
        first = self._first_deliverable(stage.id)
        if first is not None:
            self._activate_deliverable(first)
        return entered is not None

    # ------------------------------------------------------------------
    # Stage advancement
    # ------------------------------------------------------------------

    def advance_stage(
        self, *, workflow_instance_id: str, actor: Actor = SYSTEM_ACTOR
    ) -> StageAdvanceResult:
        workflow_instance_id = _require_id("workflow_instance_id", workflow_instance_id)

        with store_errors("advance stage"):
            workflow = self._store.get(WorkflowInstance, workflow_instance_id)
            if workflow is None:
                raise NotFoundError(f"Workflow not found: {workflow_instance_id}")
            if workflow.status in HALTED_WORKFLOW_STATES:
                raise PreconditionFailed(
                    f"Workflow {workflow.id} is {workflow.status.value}; "
                    "stages can no longer advance"
                )
            stage = (
                self._store.get(StageInstance, workflow.current_stage_id)
                if workflow.current_stage_id
                else None
            )
            if stage is None:
                raise NotFoundError(f"Current stage not found for workflow: {workflow.id}")

            deliverables = self._store.filter(DeliverableInstance, stage_instance_id=stage.id)
            pending = [d for d in deliverables if d.status != DeliverableStatus.COMPLETED]
            if pending:
                raise PreconditionFailed(
                    f"Cannot advance: {len(pending)} of {len(deliverables)} deliverables in "
                    f"stage {stage.name!r} are not completed"
                )

            closed = self._store.compare_and_set(
                StageInstance,
                stage.id,
                field="status",
                expected=allowed_sources(StageStatus.COMPLETED),
                changes={
                    "status": StageStatus.COMPLETED,
                    "completed_at": utc_now(),
                    "progress_percentage": 100,
                },
            )
            if closed is None:
                # A replay after a partial advance finds the stage already closed and resumes.
                current = self._store.get(StageInstance, stage.id)
                if current is None or current.status != StageStatus.COMPLETED:
                    raise PreconditionFailed(
                        f"Stage {stage.name!r} cannot be completed from status "
                        f"{(current or stage).status.value}"
                    )
            self._publisher.publish(
                EventType.STAGE_COMPLETED,
                source_entity_type="stage_instance",
                source_entity_id=stage.id,
                actor=actor,
                payload={
                    "stage_name": stage.name,
                    "workflow_instance_id": workflow.id,
                    "client_id": workflow.client_id,
                },
                once_key=stage.id,
            )

            next_stage = self._next_stage(workflow.id, stage.sequence_order)
            if next_stage is None:
                finished = self._store.compare_and_set(
                    WorkflowInstance,
                    workflow.id,
                    field="status",
                    expected=allowed_sources(WorkflowStatus.COMPLETED),
                    changes={"status": WorkflowStatus.COMPLETED, "completed_at": utc_now()},
                )
                if finished is not None:
                    self._publisher.publish(
                        EventType.WORKFLOW_INSTANCE_COMPLETED,
                        source_entity_type="workflow_instance",
                        source_entity_id=workflow.id,
                        payload={"client_id": workflow.client_id, "workflow_name": workflow.name},
                    )
                progress = recompute_workflow_progress(self._store, workflow.id)
                logger.info(
                    "Workflow completed",
                    extra={"workflow_instance_id": workflow.id, "progress_percentage": progress},
                )
                return StageAdvanceResult(
                    success=True,
                    completed_stage_id=stage.id,
                    progress_percentage=progress,
                    workflow_completed=True,
                )

            self._enter_stage(workflow, next_stage)
            progress = recompute_workflow_progress(self._store, workflow.id)

        logger.info(
            "Stage advanced",
            extra={
                "workflow_instance_id": workflow.id,
                "completed_stage_id": stage.id,
                "next_stage_id": next_stage.id,
            },
        )
        return StageAdvanceResult(
            success=True,
            completed_stage_id=stage.id,
            progress_percentage=progress,
            next_stage_id=next_stage.id,
            next_stage_name=next_stage.name,
        )

    def _next_stage(self, workflow_id: str, after_order: int) -> StageInstance | None:
        for candidate in self._store.filter(
            StageInstance, workflow_instance_id=workflow_id, order_by="sequence_order"
        ):
            # An in_progress stage past the current one is a stage entry that stopped
            # before the workflow pointed at it.
            if candidate.sequence_order > after_order and candidate.status in (
                StageStatus.NOT_STARTED,
                StageStatus.IN_PROGRESS,
            ):
                return candidate
        return None
