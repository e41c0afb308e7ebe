"""Task completion, outcome routing and stage advancement."""

from __future__ import annotations

import threading

import pytest

from engagement_workflows.engine.errors import (
    DependencyError,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from engagement_workflows.engine.service import WorkflowService
from engagement_workflows.engine.store import MemoryStore, R, StoreError
from engagement_workflows.engine.workflow.events import Event, EventType
from engagement_workflows.engine.workflow.models import (
    ClientRecord,
    DeliverableInstance,
    DeliverableStatus,
    OutcomeActionName,
    StageInstance,
    StageStatus,
    TaskInstance,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
)

BRANCHING_DOCUMENT: dict[str, object] = {
    "id": "tpl-branching",
    "name": "Branching",
    "stages": [
        {
            "id": "st-a",
            "name": "Assess",
            "deliverables": [
                {
                    "id": "dl-a1",
                    "name": "Triage",
                    "tasks": [
                        {
                            "id": "tk-route",
                            "name": "Decide route",
                            "outcome_rules": [
                                {"outcome_name": "finish", "action": "end_workflow"},
                                {"outcome_name": "hold", "action": "block_workflow"},
                                {
                                    "outcome_name": "jump",
                                    "action": "skip_to_deliverable",
                                    "target_deliverable_id": "dl-a3",
                                },
                                {
                                    "outcome_name": "escalate",
                                    "action": "skip_to_stage",
                                    "target_stage_id": "st-b",
                                },
                                {
                                    "outcome_name": "lost",
                                    "action": "skip_to_deliverable",
                                    "target_deliverable_id": "dl-missing",
                                },
                            ],
                        }
                    ],
                },
                {"id": "dl-a2", "name": "Standard", "tasks": [{"id": "tk-a2", "name": "Work"}]},
                {"id": "dl-a3", "name": "Express", "tasks": [{"id": "tk-a3", "name": "Rush"}]},
            ],
        },
        {
            "id": "st-b",
            "name": "Escalation",
            "deliverables": [
                {"id": "dl-b1", "name": "Review", "tasks": [{"id": "tk-b1", "name": "Review"}]}
            ],
        },
    ],
}


def _task(service: WorkflowService, workflow_id: str, template_id: str) -> TaskInstance:
    (task,) = service.store.filter(
        TaskInstance, workflow_instance_id=workflow_id, task_template_id=template_id
    )
    return task


def _deliverable(
    service: WorkflowService, workflow_id: str, template_id: str
) -> DeliverableInstance:
    (deliverable,) = service.store.filter(
        DeliverableInstance, workflow_instance_id=workflow_id, deliverable_template_id=template_id
    )
    return deliverable


def _stage(service: WorkflowService, workflow_id: str, template_id: str) -> StageInstance:
    (stage,) = service.store.filter(
        StageInstance, workflow_instance_id=workflow_id, stage_template_id=template_id
    )
    return stage


def _workflow(service: WorkflowService, workflow_id: str) -> WorkflowInstance:
    workflow = service.store.get(WorkflowInstance, workflow_id)
    assert workflow is not None
    return workflow


def _types(events: list[Event]) -> list[EventType]:
    return [e.event_type for e in events]


@pytest.fixture
def onboarding_workflow_id(service: WorkflowService, onboarding_template_id: str) -> str:
    return service.start_workflow(
        client_id="client-1", workflow_template_id=onboarding_template_id
    ).workflow_instance.id


@pytest.fixture
def branching_workflow_id(service: WorkflowService) -> str:
    service.load_template(BRANCHING_DOCUMENT)
    return service.start_workflow(
        client_id="client-2", workflow_template_id="tpl-branching"
    ).workflow_instance.id


def test_onboarding_end_to_end(
    service: WorkflowService, onboarding_workflow_id: str, received_events: list[Event]
) -> None:
    wf = onboarding_workflow_id
    assert _types(received_events).count(EventType.TASK_RELEASED) == 2
    progress_seen = [_workflow(service, wf).progress_percentage]

    first = service.complete_task(
        task_instance_id=_task(service, wf, "tk-1a").id,
        field_values={"contact_email": "ops@acme.example"},
    )
    assert first.progress_percentage == 25
    assert not first.deliverable_completed
    assert _deliverable(service, wf, "dl-1").status == DeliverableStatus.IN_PROGRESS
    progress_seen.append(first.progress_percentage)

    second = service.complete_task(task_instance_id=_task(service, wf, "tk-1b").id)
    assert second.progress_percentage == 50
    assert second.deliverable_completed
    assert second.action == OutcomeActionName.CONTINUE
    assert _deliverable(service, wf, "dl-1").status == DeliverableStatus.COMPLETED
    assert EventType.DELIVERABLE_COMPLETED in _types(received_events)
    progress_seen.append(second.progress_percentage)

    received_events.clear()
    advanced = service.advance_stage(workflow_instance_id=wf)
    assert advanced.success
    assert not advanced.workflow_completed
    assert advanced.next_stage_name == "Delivery"
    assert _stage(service, wf, "st-1").status == StageStatus.COMPLETED
    assert _stage(service, wf, "st-2").status == StageStatus.IN_PROGRESS
    assert _workflow(service, wf).current_stage_id == _stage(service, wf, "st-2").id
    assert _deliverable(service, wf, "dl-2").status == DeliverableStatus.IN_PROGRESS
    assert _task(service, wf, "tk-2a").status == TaskStatus.NOT_STARTED
    assert _types(received_events) == [
        EventType.STAGE_COMPLETED,
        EventType.STAGE_ENTERED,
        EventType.TASK_RELEASED,
        EventType.TASK_RELEASED,
    ]

    for template_id in ("tk-2a", "tk-2b"):
        result = service.complete_task(task_instance_id=_task(service, wf, template_id).id)
        progress_seen.append(result.progress_percentage)

    final = service.advance_stage(workflow_instance_id=wf)
    assert final.workflow_completed
    assert final.progress_percentage == 100
    workflow = _workflow(service, wf)
    assert workflow.status == WorkflowStatus.COMPLETED
    assert workflow.completed_at is not None
    assert workflow.progress_percentage == 100
    assert received_events[-1].event_type == EventType.WORKFLOW_INSTANCE_COMPLETED

    progress_seen.append(final.progress_percentage)
    assert progress_seen == sorted(progress_seen)
    assert progress_seen == [0, 25, 50, 75, 100, 100]


def test_completion_enriches_the_client_record(
    service: WorkflowService, onboarding_workflow_id: str, received_events: list[Event]
) -> None:
    received_events.clear()
    task_id = _task(service, onboarding_workflow_id, "tk-1a").id

    result = service.complete_task(
        task_instance_id=task_id,
        field_values={"contact_email": "ops@acme.example", "note": "not mapped"},
    )

    assert [f.to_json() for f in result.enriched_fields] == [
        {
            "field_code": "contact_email",
            "client_field": "primary_email",
            "value": "ops@acme.example",
        }
    ]
    client = service.store.get(ClientRecord, "client-1")
    assert client is not None
    assert client.metadata == {"primary_email": "ops@acme.example"}
    assert result.task.field_values == {"contact_email": "ops@acme.example", "note": "not mapped"}
    assert result.task.completed_at is not None

    assert _types(received_events) == [
        EventType.FIELD_UPDATED,
        EventType.TASK_COMPLETED,
        EventType.CLIENT_RECORD_ENRICHED,
    ]
    enriched = received_events[-1]
    assert enriched.source_entity_id == "client-1"
    assert enriched.payload["enriched_by_task"] == task_id


def test_enrichment_merges_into_an_existing_client_record(
    service: WorkflowService, onboarding_workflow_id: str
) -> None:
    service.store.create(ClientRecord(id="client-1", metadata={"industry": "retail"}))

    service.complete_task(
        task_instance_id=_task(service, onboarding_workflow_id, "tk-1a").id,
        field_values={"contact_email": "new@acme.example"},
    )

    client = service.store.get(ClientRecord, "client-1")
    assert client is not None
    assert client.metadata == {"industry": "retail", "primary_email": "new@acme.example"}


def test_missing_required_field_mutates_nothing(
    service: WorkflowService, onboarding_workflow_id: str, received_events: list[Event]
) -> None:
    received_events.clear()
    task_id = _task(service, onboarding_workflow_id, "tk-1a").id

    with pytest.raises(ValidationError, match="contact_email"):
        service.complete_task(task_instance_id=task_id, field_values={"contact_email": "  "})

    assert service.store.get(TaskInstance, task_id).status == TaskStatus.NOT_STARTED
    assert service.store.get(ClientRecord, "client-1") is None
    assert received_events == []


def test_repeated_completion_does_not_complete_the_deliverable_twice(
    service: WorkflowService, onboarding_workflow_id: str, received_events: list[Event]
) -> None:
    wf = onboarding_workflow_id
    service.complete_task(
        task_instance_id=_task(service, wf, "tk-1a").id,
        field_values={"contact_email": "ops@acme.example"},
    )
    last = _task(service, wf, "tk-1b").id
    assert service.complete_task(task_instance_id=last).deliverable_completed

    retry = service.complete_task(task_instance_id=last)

    assert not retry.deliverable_completed
    assert retry.action == OutcomeActionName.CONTINUE
    assert retry.progress_percentage == 50
    assert _types(received_events).count(EventType.DELIVERABLE_COMPLETED) == 1
    assert _workflow(service, wf).status == WorkflowStatus.IN_PROGRESS


def test_end_workflow_outcome_stops_routing(
    service: WorkflowService, branching_workflow_id: str, received_events: list[Event]
) -> None:
    wf = branching_workflow_id

    result = service.complete_task(
        task_instance_id=_task(service, wf, "tk-route").id, selected_outcome="finish"
    )

    assert result.action == OutcomeActionName.END_WORKFLOW
    workflow = _workflow(service, wf)
    assert workflow.status == WorkflowStatus.COMPLETED
    assert workflow.completed_at is not None
    assert _deliverable(service, wf, "dl-a2").status == DeliverableStatus.NOT_STARTED
    assert _deliverable(service, wf, "dl-a3").status == DeliverableStatus.NOT_STARTED
    assert EventType.WORKFLOW_INSTANCE_COMPLETED in _types(received_events)

    with pytest.raises(PreconditionFailed):
        service.complete_task(task_instance_id=_task(service, wf, "tk-a2").id)


def test_block_workflow_outcome_halts_progression(
    service: WorkflowService, branching_workflow_id: str, received_events: list[Event]
) -> None:
    wf = branching_workflow_id

    result = service.complete_task(
        task_instance_id=_task(service, wf, "tk-route").id, selected_outcome="hold"
    )

    assert result.action == OutcomeActionName.BLOCK_WORKFLOW
    assert _workflow(service, wf).status == WorkflowStatus.BLOCKED
    assert received_events[-1].event_type == EventType.WORKFLOW_INSTANCE_BLOCKED
    with pytest.raises(PreconditionFailed):
        service.advance_stage(workflow_instance_id=wf)


def test_default_outcome_activates_the_next_deliverable(
    service: WorkflowService, branching_workflow_id: str
) -> None:
    wf = branching_workflow_id

    result = service.complete_task(task_instance_id=_task(service, wf, "tk-route").id)

    assert result.action == OutcomeActionName.CONTINUE
    assert _deliverable(service, wf, "dl-a2").status == DeliverableStatus.IN_PROGRESS
    assert _deliverable(service, wf, "dl-a3").status == DeliverableStatus.NOT_STARTED


def test_skip_to_deliverable_activates_the_target(
    service: WorkflowService, branching_workflow_id: str, received_events: list[Event]
) -> None:
    wf = branching_workflow_id
    received_events.clear()

    result = service.complete_task(
        task_instance_id=_task(service, wf, "tk-route").id, selected_outcome="jump"
    )

    assert result.action == OutcomeActionName.SKIP_TO_DELIVERABLE
    assert result.routing_warnings == []
    assert _deliverable(service, wf, "dl-a2").status == DeliverableStatus.NOT_STARTED
    assert _deliverable(service, wf, "dl-a3").status == DeliverableStatus.IN_PROGRESS
    released = [e for e in received_events if e.event_type == EventType.TASK_RELEASED]
    assert [e.source_entity_id for e in released] == [_task(service, wf, "tk-a3").id]


def test_skip_to_stage_enters_the_target_stage(
    service: WorkflowService, branching_workflow_id: str, received_events: list[Event]
) -> None:
    wf = branching_workflow_id

    service.complete_task(
        task_instance_id=_task(service, wf, "tk-route").id, selected_outcome="escalate"
    )

    target = _stage(service, wf, "st-b")
    assert _stage(service, wf, "st-a").status == StageStatus.SKIPPED
    assert target.status == StageStatus.IN_PROGRESS
    assert _workflow(service, wf).current_stage_id == target.id
    assert _deliverable(service, wf, "dl-b1").status == DeliverableStatus.IN_PROGRESS
    entered = [e for e in received_events if e.event_type == EventType.STAGE_ENTERED]
    assert [e.source_entity_id for e in entered] == [target.id]


def test_missing_routing_target_is_reported_not_applied(
    service: WorkflowService, branching_workflow_id: str
) -> None:
    wf = branching_workflow_id

    result = service.complete_task(
        task_instance_id=_task(service, wf, "tk-route").id, selected_outcome="lost"
    )

    assert result.deliverable_completed
    assert len(result.routing_warnings) == 1
    assert "dl-missing" in result.routing_warnings[0]
    assert _workflow(service, wf).status == WorkflowStatus.IN_PROGRESS
    assert _deliverable(service, wf, "dl-a2").status == DeliverableStatus.NOT_STARTED
    assert _deliverable(service, wf, "dl-a3").status == DeliverableStatus.NOT_STARTED


def test_stage_gating_mutates_nothing(
    service: WorkflowService, onboarding_workflow_id: str, received_events: list[Event]
) -> None:
    wf = onboarding_workflow_id
    service.complete_task(
        task_instance_id=_task(service, wf, "tk-1a").id,
        field_values={"contact_email": "ops@acme.example"},
    )
    before = (
        _workflow(service, wf),
        service.store.filter(StageInstance, workflow_instance_id=wf),
        service.store.filter(DeliverableInstance, workflow_instance_id=wf),
        len(received_events),
    )

    with pytest.raises(PreconditionFailed, match="not completed"):
        service.advance_stage(workflow_instance_id=wf)

    after = (
        _workflow(service, wf),
        service.store.filter(StageInstance, workflow_instance_id=wf),
        service.store.filter(DeliverableInstance, workflow_instance_id=wf),
        len(received_events),
    )
    assert after == before


def test_unknown_ids(service: WorkflowService) -> None:
    with pytest.raises(NotFoundError):
        service.complete_task(task_instance_id="missing")
    with pytest.raises(NotFoundError):
        service.advance_stage(workflow_instance_id="missing")
    with pytest.raises(ValidationError):
        service.complete_task(task_instance_id="")
    with pytest.raises(ValidationError):
        service.advance_stage(workflow_instance_id=" ")


PARALLEL_DOCUMENT: dict[str, object] = {
    "id": "tpl-parallel",
    "name": "Parallel",
    "stages": [
        {
            "id": "st-p",
            "name": "Paperwork",
            "deliverables": [
                {
                    "id": "dl-p1",
                    "name": "Forms",
                    "tasks": [{"id": "tk-p1", "name": "Form A"}, {"id": "tk-p2", "name": "Form B"}],
                },
                {"id": "dl-p2", "name": "Filing", "tasks": [{"id": "tk-p3", "name": "File"}]},
            ],
        }
    ],
}


class _FlakyStore(MemoryStore):
    """Once armed, fails the first create or update the predicate matches."""

    def __init__(self, *, on_create=None, on_update=None) -> None:
        super().__init__()
        self._on_create = on_create
        self._on_update = on_update
        self.armed = False
        self.tripped = False

    def _trip(self) -> None:
        self.armed = False
        self.tripped = True
        raise StoreError("simulated write failure")

    def create(self, record: R) -> R:
        if self.armed and self._on_create is not None and self._on_create(record):
            self._trip()
        return super().create(record)

    def update(self, model: type[R], record_id: str, **changes: object) -> R:
        if self.armed and self._on_update is not None and self._on_update(model, changes):
            self._trip()
        return super().update(model, record_id, **changes)


def test_advance_retry_finishes_a_half_entered_stage(
    onboarding_document: dict[str, object],
) -> None:
    store = _FlakyStore(
        on_update=lambda model, changes: (
            model is WorkflowInstance and "current_stage_id" in changes
        )
    )
    events: list[Event] = []
    service = WorkflowService(store=store, listeners=[events.append])
    service.load_template(onboarding_document)
    wf = service.start_workflow(
        client_id="client-1", workflow_template_id="tpl-onboarding"
    ).workflow_instance.id
    service.complete_task(
        task_instance_id=_task(service, wf, "tk-1a").id,
        field_values={"contact_email": "ops@acme.example"},
    )
    service.complete_task(task_instance_id=_task(service, wf, "tk-1b").id)

    store.armed = True
    with pytest.raises(DependencyError):
        service.advance_stage(workflow_instance_id=wf)
    assert store.tripped
    assert _stage(service, wf, "st-2").status == StageStatus.IN_PROGRESS

    retry = service.advance_stage(workflow_instance_id=wf)

    assert not retry.workflow_completed
    assert retry.next_stage_name == "Delivery"
    workflow = _workflow(service, wf)
    assert workflow.status == WorkflowStatus.IN_PROGRESS
    assert workflow.current_stage_id == _stage(service, wf, "st-2").id
    assert _deliverable(service, wf, "dl-2").status == DeliverableStatus.IN_PROGRESS
    assert _types(events).count(EventType.STAGE_COMPLETED) == 1
    assert _types(events).count(EventType.STAGE_ENTERED) == 1
    assert EventType.WORKFLOW_INSTANCE_COMPLETED not in _types(events)


def test_completion_retry_reapplies_routing() -> None:
    store = _FlakyStore(
        on_create=lambda record: (
            isinstance(record, Event) and record.event_type == EventType.DELIVERABLE_COMPLETED
        )
    )
    events: list[Event] = []
    service = WorkflowService(store=store, listeners=[events.append])
    service.load_template(BRANCHING_DOCUMENT)
    wf = service.start_workflow(
        client_id="client-2", workflow_template_id="tpl-branching"
    ).workflow_instance.id
    task_id = _task(service, wf, "tk-route").id

    store.armed = True
    with pytest.raises(DependencyError):
        service.complete_task(task_instance_id=task_id, selected_outcome="jump")
    assert _deliverable(service, wf, "dl-a1").status == DeliverableStatus.COMPLETED
    assert _deliverable(service, wf, "dl-a3").status == DeliverableStatus.NOT_STARTED

    retry = service.complete_task(task_instance_id=task_id, selected_outcome="jump")

    assert retry.action == OutcomeActionName.SKIP_TO_DELIVERABLE
    assert retry.routing_warnings == []
    assert _deliverable(service, wf, "dl-a3").status == DeliverableStatus.IN_PROGRESS
    assert _deliverable(service, wf, "dl-a2").status == DeliverableStatus.NOT_STARTED
    assert _types(events).count(EventType.DELIVERABLE_COMPLETED) == 1


def test_sibling_tasks_completed_concurrently_close_the_deliverable_once(
    service: WorkflowService, received_events: list[Event]
) -> None:
    service.load_template(PARALLEL_DOCUMENT)
    wf = service.start_workflow(
        client_id="client-3", workflow_template_id="tpl-parallel"
    ).workflow_instance.id
    task_ids = [_task(service, wf, t).id for t in ("tk-p1", "tk-p2")]
    barrier = threading.Barrier(len(task_ids))
    results = []
    errors: list[BaseException] = []

    def complete(task_id: str) -> None:
        barrier.wait()
        try:
            results.append(service.complete_task(task_instance_id=task_id))
        except BaseException as e:
            errors.append(e)

    threads = [threading.Thread(target=complete, args=(t,)) for t in task_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(results) == 2
    assert sum(r.deliverable_completed for r in results) == 1
    assert _deliverable(service, wf, "dl-p1").status == DeliverableStatus.COMPLETED
    assert _deliverable(service, wf, "dl-p2").status == DeliverableStatus.IN_PROGRESS
    assert _types(received_events).count(EventType.DELIVERABLE_COMPLETED) == 1
    follow_up = _task(service, wf, "tk-p3").id
    released = [
        e
        for e in received_events
        if e.event_type == EventType.TASK_RELEASED and e.source_entity_id == follow_up
    ]
    assert len(released) == 1
