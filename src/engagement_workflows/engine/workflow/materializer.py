"""Instance materialisation.

Walks a template version depth-first and creates one instance node per
template node, in one pass, so outcome routing can later target any
deliverable without lazy creation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from engagement_workflows.engine.errors import DependencyError, NotFoundError, ValidationError
from engagement_workflows.engine.store import ObjectStore, R, StoreError

from .events import SYSTEM_ACTOR, Actor, EventPublisher, EventType
from .models import (
    DeliverableInstance,
    DeliverableStatus,
    DeliverableTemplate,
    Record,
    StageInstance,
    StageStatus,
    StageTemplate,
    SubitemInstance,
    SubitemTemplate,
    TaskInstance,
    TaskTemplate,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTemplate,
    WorkflowTemplateVersion,
    utc_now,
)

logger = logging.getLogger(__name__)


def instance_map_key(
    stage_order: int, deliverable_order: int | None = None, task_order: int | None = None
) -> str:
    key = f"stage_{stage_order}"
    if deliverable_order is not None:
        key += f"_deliverable_{deliverable_order}"
        if task_order is not None:
            key += f"_task_{task_order}"
    return key


def rebuild_instance_map(store: ObjectStore, workflow_instance_id: str) -> dict[str, str]:
    """Recompute the instance map from the graph's foreign keys.

    The stored map is a cache built at materialisation; this is the authoritative view.
    """

    out: dict[str, str] = {}
    for stage in store.filter(
        StageInstance, workflow_instance_id=workflow_instance_id, order_by="sequence_order"
    ):
        out[instance_map_key(stage.sequence_order)] = stage.id
        for deliverable in store.filter(
            DeliverableInstance, stage_instance_id=stage.id, order_by="sequence_order"
        ):
            out[instance_map_key(stage.sequence_order, deliverable.sequence_order)] = (
                deliverable.id
            )
            for task in store.filter(
                TaskInstance, deliverable_instance_id=deliverable.id, order_by="sequence_order"
            ):
                key = instance_map_key(
                    stage.sequence_order, deliverable.sequence_order, task.sequence_order
                )
                out[key] = task.id
    return out


@dataclass(frozen=True, slots=True)
class MaterializationResult:
    workflow_instance: WorkflowInstance
    stages_created: int

    def to_json(self) -> dict[str, object]:
        return {
            "workflow_instance": self.workflow_instance.model_dump(mode="json"),
            "stages_created": self.stages_created,
        }


class InstanceMaterializer:
    def __init__(
        self,
        *,
        store: ObjectStore,
        publisher: EventPublisher,
        default_priority: str = "normal",
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._default_priority = default_priority

    def latest_version(self, workflow_template_id: str) -> WorkflowTemplateVersion | None:
        """Highest version number, whatever its publication status."""

        versions = self._store.filter(
            WorkflowTemplateVersion,
            workflow_template_id=workflow_template_id,
            order_by="-version_number",
            limit=1,
        )
        return versions[0] if versions else None

    def start_workflow(
        self,
        *,
        client_id: str,
        workflow_template_id: str,
        actor: Actor = SYSTEM_ACTOR,
    ) -> MaterializationResult:
        missing = [
            name
            for name, value in (
                ("client_id", client_id),
                ("workflow_template_id", workflow_template_id),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        try:
            template = self._store.get(WorkflowTemplate, workflow_template_id)
            if template is None:
                raise NotFoundError(f"Workflow template not found: {workflow_template_id}")
            version = self.latest_version(workflow_template_id)
            if version is None:
                raise NotFoundError(
                    f"No workflow version found for template: {workflow_template_id}"
                )
        except StoreError as e:
            raise DependencyError(f"Failed to read template: {e}") from e

        created: list[Record] = []
        try:
            workflow, stages, released = self._materialize(
                template=template, version=version, client_id=client_id, created=created
            )
        except StoreError as e:
            self._discard(created)
            raise DependencyError(f"Failed to materialise workflow: {e}") from e

        logger.info(
            "Workflow instance materialised",
            extra={
                "workflow_instance_id": workflow.id,
                "workflow_template_id": template.id,
                "version_number": version.version_number,
                "stages": stages,
                "nodes": len(created),
            },
        )

        self._publisher.publish(
            EventType.WORKFLOW_INSTANCE_STARTED,
            source_entity_type="workflow_instance",
            source_entity_id=workflow.id,
            actor=actor,
            payload={
                "client_id": client_id,
                "workflow_template_id": template.id,
                "template_name": template.name,
                "version_number": version.version_number,
            },
        )
        self._publisher.release_tasks(released)

        return MaterializationResult(workflow_instance=workflow, stages_created=stages)

    def _materialize(
        self,
        *,
        template: WorkflowTemplate,
        version: WorkflowTemplateVersion,
        client_id: str,
        created: list[Record],
    ) -> tuple[WorkflowInstance, int, list[TaskInstance]]:
        now = utc_now()
        workflow = self._create(
            created,
            WorkflowInstance(
                template_id=template.id,
                version_id=version.id,
                client_id=client_id,
                name=f"{template.name} - {now.date().isoformat()}",
                status=WorkflowStatus.NOT_STARTED,
                started_at=now,
            ),
        )

        instance_map: dict[str, str] = {}
        released: list[TaskInstance] = []
        stage_templates = self._store.filter(
            StageTemplate, version_id=version.id, order_by="sequence_order"
        )
        first_stage_id: str | None = None

        for stage_index, stage_template in enumerate(stage_templates):
            first_stage = stage_index == 0
            stage = self._create(
                created,
                StageInstance(
                    workflow_instance_id=workflow.id,
                    stage_template_id=stage_template.id,
                    sequence_order=stage_template.sequence_order,
                    name=stage_template.name,
                    description=stage_template.description,
                    owner_ref=stage_template.owner_ref,
                    status=StageStatus.IN_PROGRESS if first_stage else StageStatus.NOT_STARTED,
                    started_at=now if first_stage else None,
                ),
            )
            if first_stage:
                first_stage_id = stage.id
            instance_map[instance_map_key(stage.sequence_order)] = stage.id

            deliverable_templates = self._store.filter(
                DeliverableTemplate, stage_template_id=stage_template.id, order_by="sequence_order"
            )
            for deliverable_index, deliverable_template in enumerate(deliverable_templates):
                active = first_stage and deliverable_index == 0
                deliverable = self._create(
                    created,
                    DeliverableInstance(
                        stage_instance_id=stage.id,
                        workflow_instance_id=workflow.id,
                        deliverable_template_id=deliverable_template.id,
                        sequence_order=deliverable_template.sequence_order,
                        name=deliverable_template.name,
                        description=deliverable_template.description,
                        status=(
                            DeliverableStatus.IN_PROGRESS
                            if active
                            else DeliverableStatus.NOT_STARTED
                        ),
                        started_at=now if active else None,
                    ),
                )
                instance_map[
                    instance_map_key(stage.sequence_order, deliverable.sequence_order)
                ] = deliverable.id

                tasks = self._create_tasks(
                    created,
                    workflow=workflow,
                    deliverable=deliverable,
                    client_id=client_id,
                )
                for task in tasks:
                    key = instance_map_key(
                        stage.sequence_order, deliverable.sequence_order, task.sequence_order
                    )
                    instance_map[key] = task.id
                if active:
                    released.extend(tasks)

        workflow = self._store.update(
            WorkflowInstance,
            workflow.id,
            status=WorkflowStatus.IN_PROGRESS,
            current_stage_id=first_stage_id,
            instance_map=instance_map,
        )
        return workflow, len(stage_templates), released

    def _create_tasks(
        self,
        created: list[Record],
        *,
        workflow: WorkflowInstance,
        deliverable: DeliverableInstance,
        client_id: str,
    ) -> list[TaskInstance]:
        tasks: list[TaskInstance] = []
        task_templates = self._store.filter(
            TaskTemplate,
            deliverable_template_id=deliverable.deliverable_template_id,
            order_by="sequence_order",
        )
        for task_template in task_templates:
            task = self._create(
                created,
                TaskInstance(
                    deliverable_instance_id=deliverable.id,
                    workflow_instance_id=workflow.id,
                    task_template_id=task_template.id,
                    client_id=client_id,
                    sequence_order=task_template.sequence_order,
                    name=task_template.name,
                    description=task_template.description,
                    instructions=task_template.instructions,
                    priority=task_template.priority or self._default_priority,
                ),
            )
            tasks.append(task)

            for subitem_template in self._store.filter(
                SubitemTemplate, task_template_id=task_template.id, order_by="sequence_order"
            ):
                self._create(
                    created,
                    SubitemInstance(
                        task_instance_id=task.id,
                        workflow_instance_id=workflow.id,
                        subitem_template_id=subitem_template.id,
                        sequence_order=subitem_template.sequence_order,
                        name=subitem_template.name,
                    ),
                )
        return tasks

    def _create(self, created: list[Record], record: R) -> R:
        stored = self._store.create(record)
        created.append(stored)
        return stored

    def _discard(self, created: list[Record]) -> None:
        """Compensating cleanup: remove partially created nodes, children first."""

        for record in reversed(created):
            try:
                self._store.delete(type(record), record.id)
            except StoreError:
                logger.exception(
                    "Failed to discard partially materialised node",
                    extra={"entity_type": record.entity_type, "record_id": record.id},
                )
