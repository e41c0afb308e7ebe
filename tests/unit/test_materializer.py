from __future__ import annotations

import pytest

from engagement_workflows.engine.errors import DependencyError, NotFoundError, ValidationError
from engagement_workflows.engine.service import WorkflowService
from engagement_workflows.engine.store import MemoryStore, R, StoreError
from engagement_workflows.engine.workflow.events import Actor, ActorType, Event, EventType
from engagement_workflows.engine.workflow.materializer import rebuild_instance_map
from engagement_workflows.engine.workflow.models import (
    DeliverableInstance,
    DeliverableStatus,
    StageInstance,
    StageStatus,
    SubitemInstance,
    TaskInstance,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTemplate,
)


def test_start_workflow_materialises_the_whole_graph(
    service: WorkflowService, onboarding_template_id: str
) -> None:
    result = service.start_workflow(
        client_id="client-1", workflow_template_id=onboarding_template_id
    )
    workflow = result.workflow_instance

    assert result.stages_created == 2
    assert workflow.status == WorkflowStatus.IN_PROGRESS
    assert workflow.client_id == "client-1"
    assert workflow.name.startswith("Onboarding - ")
    assert workflow.progress_percentage == 0

    stages = service.store.filter(
        StageInstance, workflow_instance_id=workflow.id, order_by="sequence_order"
    )
    assert [s.status for s in stages] == [StageStatus.IN_PROGRESS, StageStatus.NOT_STARTED]
    assert workflow.current_stage_id == stages[0].id

    deliverables = service.store.filter(
        DeliverableInstance, workflow_instance_id=workflow.id, order_by="sequence_order"
    )
    assert len(deliverables) == 2
    by_stage = {d.stage_instance_id: d for d in deliverables}
    assert by_stage[stages[0].id].status == DeliverableStatus.IN_PROGRESS
    assert by_stage[stages[1].id].status == DeliverableStatus.NOT_STARTED

    tasks = service.store.filter(TaskInstance, workflow_instance_id=workflow.id)
    assert len(tasks) == 4
    assert all(t.status == TaskStatus.NOT_STARTED for t in tasks)
    assert all(t.client_id == "client-1" for t in tasks)
    assert all(t.priority == "normal" for t in tasks)


def test_instance_map_matches_the_graph(
    service: WorkflowService, onboarding_template_id: str
) -> None:
    workflow = service.start_workflow(
        client_id="client-1", workflow_template_id=onboarding_template_id
    ).workflow_instance

    assert set(workflow.instance_map) == {
        "stage_1",
        "stage_1_deliverable_1",
        "stage_1_deliverable_1_task_1",
        "stage_1_deliverable_1_task_2",
        "stage_2",
        "stage_2_deliverable_1",
        "stage_2_deliverable_1_task_1",
        "stage_2_deliverable_1_task_2",
    }
    assert rebuild_instance_map(service.store, workflow.id) == workflow.instance_map


def test_start_emits_started_then_released_for_first_deliverable(
    service: WorkflowService, onboarding_template_id: str, received_events: list[Event]
) -> None:
    workflow = service.start_workflow(
        client_id="client-1",
        workflow_template_id=onboarding_template_id,
        actor=Actor(type=ActorType.USER, id="u-7"),
    ).workflow_instance

    assert [e.event_type for e in received_events] == [
        EventType.WORKFLOW_INSTANCE_STARTED,
        EventType.TASK_RELEASED,
        EventType.TASK_RELEASED,
    ]
    started = received_events[0]
    assert started.source_entity_id == workflow.id
    assert started.actor_type == ActorType.USER
    assert started.actor_id == "u-7"
    assert started.payload["workflow_template_id"] == onboarding_template_id

    first_stage_tasks = {
        workflow.instance_map["stage_1_deliverable_1_task_1"],
        workflow.instance_map["stage_1_deliverable_1_task_2"],
    }
    assert {e.source_entity_id for e in received_events[1:]} == first_stage_tasks
    assert service.list_events() == received_events


def test_latest_version_wins(service: WorkflowService) -> None:
    service.load_template(
        {
            "id": "tpl-versions",
            "name": "Versioned",
            "versions": [
                {"version_number": 1, "stages": [{"name": "Old"}]},
                {"version_number": 2, "stages": [{"name": "New A"}, {"name": "New B"}]},
            ],
        }
    )

    result = service.start_workflow(client_id="c", workflow_template_id="tpl-versions")

    assert result.stages_created == 2
    stages = service.store.filter(
        StageInstance,
        workflow_instance_id=result.workflow_instance.id,
        order_by="sequence_order",
    )
    assert [s.name for s in stages] == ["New A", "New B"]


def test_subitems_are_materialised_outside_the_instance_map(service: WorkflowService) -> None:
    service.load_template(
        {
            "id": "tpl-sub",
            "name": "Sub",
            "stages": [
                {
                    "name": "S",
                    "deliverables": [
                        {"name": "D", "tasks": [{"name": "T", "subitems": [{"name": "x"}]}]}
                    ],
                }
            ],
        }
    )
    workflow = service.start_workflow(
        client_id="c", workflow_template_id="tpl-sub"
    ).workflow_instance

    (subitem,) = service.store.filter(SubitemInstance, workflow_instance_id=workflow.id)
    assert subitem.task_instance_id == workflow.instance_map["stage_1_deliverable_1_task_1"]
    assert subitem.id not in workflow.instance_map.values()


def test_template_without_tasks_reports_zero_progress(service: WorkflowService) -> None:
    service.load_template({"id": "tpl-empty", "name": "Empty", "stages": [{"name": "Only"}]})

    workflow = service.start_workflow(
        client_id="c", workflow_template_id="tpl-empty"
    ).workflow_instance

    assert workflow.progress_percentage == 0
    assert service.get_workflow_status(workflow.id).total_tasks == 0


@pytest.mark.parametrize(
    ("client_id", "template_id"),
    [("", "tpl-onboarding"), ("client-1", ""), ("  ", "  ")],
)
def test_missing_inputs_are_validation_errors(
    service: WorkflowService, client_id: str, template_id: str
) -> None:
    with pytest.raises(ValidationError):
        service.start_workflow(client_id=client_id, workflow_template_id=template_id)
    assert service.store.filter(WorkflowInstance) == []


def test_unknown_template_is_not_found(service: WorkflowService) -> None:
    with pytest.raises(NotFoundError):
        service.start_workflow(client_id="c", workflow_template_id="nope")


def test_template_without_versions_is_not_found(service: WorkflowService) -> None:
    service.store.create(WorkflowTemplate(id="tpl-noversion", name="Bare"))

    with pytest.raises(NotFoundError, match="No workflow version"):
        service.start_workflow(client_id="c", workflow_template_id="tpl-noversion")


class _FailingTaskStore(MemoryStore):
    """Fails the Nth task instance write."""

    def __init__(self, fail_on: int) -> None:
        super().__init__()
        self._fail_on = fail_on
        self._task_writes = 0

    def create(self, record: R) -> R:
        if isinstance(record, TaskInstance):
            self._task_writes += 1
            if self._task_writes == self._fail_on:
                raise StoreError("simulated write failure")
        return super().create(record)


def test_failed_materialisation_is_cleaned_up(onboarding_document: dict[str, object]) -> None:
    store = _FailingTaskStore(fail_on=3)
    events: list[Event] = []
    service = WorkflowService(store=store, listeners=[events.append])
    service.load_template(onboarding_document)

    with pytest.raises(DependencyError):
        service.start_workflow(client_id="c", workflow_template_id="tpl-onboarding")

    assert store.filter(WorkflowInstance) == []
    assert store.filter(StageInstance) == []
    assert store.filter(DeliverableInstance) == []
    assert store.filter(TaskInstance) == []
    assert events == []
