from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import Field

from engagement_workflows.engine.errors import DependencyError
from engagement_workflows.engine.store import ObjectStore, RecordExists, StoreError

from .models import Record, TaskInstance, utc_now

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Fixed vocabulary consumed by external monitoring. Values must not be renamed."""

    WORKFLOW_INSTANCE_STARTED = "workflow_instance_started"
    TASK_RELEASED = "task_released"
    FIELD_UPDATED = "field_updated"
    CLIENT_RECORD_ENRICHED = "client_record_enriched"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    DELIVERABLE_COMPLETED = "deliverable_completed"
    STAGE_COMPLETED = "stage_completed"
    STAGE_ENTERED = "stage_entered"
    WORKFLOW_INSTANCE_COMPLETED = "workflow_instance_completed"
    TASK_BLOCKED = "task_blocked"
    WORKFLOW_INSTANCE_BLOCKED = "workflow_instance_blocked"
    WORKFLOW_INSTANCE_CANCELLED = "workflow_instance_cancelled"


class ActorType(str, Enum):
    USER = "user"
    SYSTEM = "system"
    AI = "ai"


@dataclass(frozen=True, slots=True)
class Actor:
    """Who caused a transition."""

    type: ActorType = ActorType.SYSTEM
    id: str | None = None


SYSTEM_ACTOR = Actor()


class Event(Record):
    """An immutable record of a state transition.

    Events are consumed by monitoring and automation, never by the engine itself.
    """

    entity_type: ClassVar[str] = "event"

    event_type: EventType
    source_entity_type: str
    source_entity_id: str
    actor_type: ActorType = ActorType.SYSTEM
    actor_id: str | None = None
    payload: dict[str, object] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utc_now)


EventListener = Callable[[Event], None]


class EventPublisher:
    """Append-only event sink.

    Listeners are notified after each append. They stand in for downstream
    automation and must not affect the transition that produced the event, so a
    failing listener is logged and the caller carries on.
    """

    def __init__(self, store: ObjectStore, listeners: Iterable[EventListener] = ()) -> None:
        self._store = store
        self._listeners: list[EventListener] = list(listeners)

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def publish(
        self,
        event_type: EventType,
        *,
        source_entity_type: str,
        source_entity_id: str,
        actor: Actor = SYSTEM_ACTOR,
        payload: dict[str, object] | None = None,
        once_key: str | None = None,
    ) -> Event:
        """Append an event and notify listeners.

        With ``once_key`` the event gets a deterministic id, so a replayed transition
        finds the earlier append and returns it without notifying anyone again.
        """

        event = Event(
            event_type=event_type,
            source_entity_type=source_entity_type,
            source_entity_id=source_entity_id,
            actor_type=actor.type,
            actor_id=actor.id,
            payload=dict(payload or {}),
        )
        if once_key is not None:
            event = event.model_copy(update={"id": f"evt-{event_type.value}-{once_key}"})
        try:
            self._store.create(event)
        except RecordExists:
            existing = self._store.get(Event, event.id)
            if existing is None:
                raise DependencyError(f"Failed to publish {event_type.value}: lost {event.id}")
            return existing
        except StoreError as e:
            raise DependencyError(f"Failed to publish {event_type.value}: {e}") from e

        logger.info(
            "Event published",
            extra={
                "event_type": event_type.value,
                "source_entity_type": source_entity_type,
                "source_entity_id": source_entity_id,
            },
        )

        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed",
                    extra={"event_id": event.id, "event_type": event_type.value},
                )
        return event

    def release_tasks(self, tasks: Iterable[TaskInstance]) -> list[Event]:
        """Announce that each task is ready for work."""

        return [
            self.publish(
                EventType.TASK_RELEASED,
                source_entity_type="task_instance",
                source_entity_id=task.id,
                payload={
                    "task_name": task.name,
                    "priority": task.priority,
                    "client_id": task.client_id,
                    "workflow_instance_id": task.workflow_instance_id,
                    "deliverable_instance_id": task.deliverable_instance_id,
                },
            )
            for task in tasks
        ]

    def list(
        self,
        *,
        source_entity_id: str | None = None,
        event_type: EventType | None = None,
    ) -> list[Event]:
        """Events in emission order."""

        where: dict[str, object] = {}
        if source_entity_id is not None:
            where["source_entity_id"] = source_entity_id
        if event_type is not None:
            where["event_type"] = event_type
        try:
            return self._store.filter(Event, **where)
        except StoreError as e:
            raise DependencyError(f"Failed to read events: {e}") from e
