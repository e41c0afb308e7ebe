"""Persisted entities for the template graph and the instance graph.

Every entity is a flat record keyed by ``id``. Nested data is limited to the
instance map and free-form value maps.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, Field


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class Record(BaseModel):
    """Base for anything the object store persists.

    ``entity_type`` names the table/collection the record lives in.
    """

    entity_type: ClassVar[str] = ""

    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Statuses
# ---------------------------------------------------------------------------


class WorkflowStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class DeliverableStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class VersionStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class OutcomeActionName(str, Enum):
    CONTINUE = "continue"
    SKIP_TO_DELIVERABLE = "skip_to_deliverable"
    SKIP_TO_STAGE = "skip_to_stage"
    END_WORKFLOW = "end_workflow"
    BLOCK_WORKFLOW = "block_workflow"


# ---------------------------------------------------------------------------
# Template graph (read-only to the engine)
# ---------------------------------------------------------------------------


class WorkflowTemplate(Record):
    entity_type: ClassVar[str] = "workflow_template"

    name: str
    description: str = ""
    owner_type: str = "user"
    owner_id: str | None = None


class WorkflowTemplateVersion(Record):
    entity_type: ClassVar[str] = "workflow_template_version"

    workflow_template_id: str
    version_number: int
    status: VersionStatus = VersionStatus.DRAFT


class StageTemplate(Record):
    entity_type: ClassVar[str] = "stage_template"

    version_id: str
    sequence_order: int
    name: str
    description: str = ""
    owner_ref: str | None = None


class DeliverableTemplate(Record):
    entity_type: ClassVar[str] = "deliverable_template"

    stage_template_id: str
    sequence_order: int
    name: str
    description: str = ""


class DataFieldDefinition(BaseModel):
    """A value collected when a task is completed."""

    field_code: str
    field_name: str = ""
    field_type: str = "text"
    is_required: bool = False
    save_to_client_field: str | None = Field(
        default=None,
        description="Client metadata key the collected value is copied into",
    )
    description: str = ""


class OutcomeRule(BaseModel):
    """A named branch on a task template.

    Targets name template ids (an instance id from the same workflow is also
    accepted when the rule was authored against a running instance).
    """

    outcome_name: str
    action: OutcomeActionName = OutcomeActionName.CONTINUE
    target_deliverable_id: str | None = None
    target_stage_id: str | None = None


class TaskTemplate(Record):
    entity_type: ClassVar[str] = "task_template"

    deliverable_template_id: str
    sequence_order: int
    name: str
    description: str = ""
    instructions: str = ""
    priority: str | None = None
    data_field_definitions: list[DataFieldDefinition] = Field(default_factory=list)
    outcome_rules: list[OutcomeRule] | None = None


class SubitemTemplate(Record):
    entity_type: ClassVar[str] = "subitem_template"

    task_template_id: str
    sequence_order: int
    name: str


# ---------------------------------------------------------------------------
# Instance graph
# ---------------------------------------------------------------------------


class WorkflowInstance(Record):
    entity_type: ClassVar[str] = "workflow_instance"

    template_id: str
    version_id: str
    client_id: str
    name: str = ""
    status: WorkflowStatus = WorkflowStatus.NOT_STARTED
    current_stage_id: str | None = None
    progress_percentage: int = 0
    instance_map: dict[str, str] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None


class StageInstance(Record):
    entity_type: ClassVar[str] = "stage_instance"

    workflow_instance_id: str
    stage_template_id: str | None = None
    sequence_order: int
    name: str = ""
    description: str = ""
    owner_ref: str | None = None
    status: StageStatus = StageStatus.NOT_STARTED
    progress_percentage: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None


class DeliverableInstance(Record):
    entity_type: ClassVar[str] = "deliverable_instance"

    stage_instance_id: str
    workflow_instance_id: str
    deliverable_template_id: str | None = None
    sequence_order: int
    name: str = ""
    description: str = ""
    status: DeliverableStatus = DeliverableStatus.NOT_STARTED
    started_at: datetime | None = None
    completed_at: datetime | None = None


class TaskInstance(Record):
    entity_type: ClassVar[str] = "task_instance"

    deliverable_instance_id: str
    workflow_instance_id: str
    task_template_id: str | None = None
    client_id: str
    sequence_order: int
    name: str = ""
    description: str = ""
    instructions: str = ""
    priority: str = "normal"
    status: TaskStatus = TaskStatus.NOT_STARTED
    field_values: dict[str, object] = Field(default_factory=dict)
    blocker_reason: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class SubitemInstance(Record):
    entity_type: ClassVar[str] = "subitem_instance"

    task_instance_id: str
    workflow_instance_id: str
    subitem_template_id: str | None = None
    sequence_order: int
    name: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED


class ClientRecord(Record):
    """Client metadata written by task field enrichment."""

    entity_type: ClassVar[str] = "client_record"

    metadata: dict[str, object] = Field(default_factory=dict)
