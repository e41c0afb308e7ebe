"""Wiring for the engine components.

The CLI and the HTTP server both talk to a :class:`WorkflowService`, which owns
one store, one event publisher and the components built on top of them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from engagement_workflows.engine.config import EngineSettings
from engagement_workflows.engine.store import JsonFileStore, MemoryStore, ObjectStore
from engagement_workflows.engine.workflow.admin import (
    CancellationResult,
    WorkflowAdministration,
    WorkflowStatusReport,
)
from engagement_workflows.engine.workflow.events import (
    SYSTEM_ACTOR,
    Actor,
    Event,
    EventListener,
    EventPublisher,
    EventType,
)
from engagement_workflows.engine.workflow.materializer import (
    InstanceMaterializer,
    MaterializationResult,
)
from engagement_workflows.engine.workflow.models import (
    TaskInstance,
    WorkflowInstance,
    WorkflowStatus,
)
from engagement_workflows.engine.workflow.progression import (
    ProgressionEngine,
    StageAdvanceResult,
    TaskCompletionResult,
)
from engagement_workflows.engine.workflow.templates import LoadedTemplate, TemplateLoader

logger = logging.getLogger(__name__)


def open_store(settings: EngineSettings) -> ObjectStore:
    if settings.store_backend == "memory":
        return MemoryStore()
    return JsonFileStore(settings.state_path)


class WorkflowService:
    def __init__(
        self,
        *,
        store: ObjectStore,
        default_priority: str = "normal",
        list_limit: int = 50,
        listeners: Iterable[EventListener] = (),
    ) -> None:
        self.store = store
        self.publisher = EventPublisher(store, listeners)
        self.materializer = InstanceMaterializer(
            store=store, publisher=self.publisher, default_priority=default_priority
        )
        self.progression = ProgressionEngine(store=store, publisher=self.publisher)
        self.admin = WorkflowAdministration(
            store=store, publisher=self.publisher, list_limit=list_limit
        )
        self.loader = TemplateLoader(store=store)

    def load_template(self, document: object) -> LoadedTemplate:
        return self.loader.load(document)

    def start_workflow(
        self, *, client_id: str, workflow_template_id: str, actor: Actor = SYSTEM_ACTOR
    ) -> MaterializationResult:
        return self.materializer.start_workflow(
            client_id=client_id, workflow_template_id=workflow_template_id, actor=actor
        )

    def complete_task(
        self,
        *,
        task_instance_id: str,
        field_values: dict[str, object] | None = None,
        selected_outcome: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> TaskCompletionResult:
        return self.progression.complete_task(
            task_instance_id=task_instance_id,
            field_values=field_values,
            selected_outcome=selected_outcome,
            actor=actor,
        )

    def advance_stage(
        self, *, workflow_instance_id: str, actor: Actor = SYSTEM_ACTOR
    ) -> StageAdvanceResult:
        return self.progression.advance_stage(
            workflow_instance_id=workflow_instance_id, actor=actor
        )

    def start_task(
        self, *, task_instance_id: str, actor: Actor = SYSTEM_ACTOR
    ) -> TaskInstance:
        return self.admin.start_task(task_instance_id=task_instance_id, actor=actor)

    def block_task(
        self, *, task_instance_id: str, blocker_reason: str, actor: Actor = SYSTEM_ACTOR
    ) -> TaskInstance:
        return self.admin.block_task(
            task_instance_id=task_instance_id, blocker_reason=blocker_reason, actor=actor
        )

    def cancel_workflow(
        self, *, workflow_instance_id: str, actor: Actor = SYSTEM_ACTOR
    ) -> CancellationResult:
        return self.admin.cancel_workflow(workflow_instance_id=workflow_instance_id, actor=actor)

    def get_workflow_status(self, workflow_instance_id: str) -> WorkflowStatusReport:
        return self.admin.get_workflow_status(workflow_instance_id)

    def list_workflows(
        self,
        *,
        client_id: str | None = None,
        status: WorkflowStatus | None = None,
        limit: int | None = None,
    ) -> list[WorkflowInstance]:
        return self.admin.list_workflows(client_id=client_id, status=status, limit=limit)

    def list_events(
        self, *, source_entity_id: str | None = None, event_type: EventType | None = None
    ) -> list[Event]:
        return self.publisher.list(source_entity_id=source_entity_id, event_type=event_type)


def build_service(
    settings: EngineSettings,
    *,
    store: ObjectStore | None = None,
    listeners: Iterable[EventListener] = (),
) -> WorkflowService:
    if store is None:
        store = open_store(settings)
    logger.debug(
        "Workflow service built",
        extra={"store_backend": settings.store_backend, "state_path": str(settings.state_path)},
    )
    return WorkflowService(
        store=store,
        default_priority=settings.default_priority,
        list_limit=settings.list_limit,
        listeners=listeners,
    )
