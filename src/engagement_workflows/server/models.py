"""Pydantic request bodies for the REST server.

Identifiers default to empty strings so a missing id reaches the engine and is
reported as a ``validation`` error with the engine's own message.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class StartWorkflowRequest(BaseModel):
    client_id: str = ""
    workflow_template_id: str = ""


class CompleteTaskRequest(BaseModel):
    task_instance_id: str = ""
    field_values: dict[str, object] = Field(default_factory=dict)
    outcome: str | None = None


class AdvanceStageRequest(BaseModel):
    workflow_instance_id: str = ""


class StartTaskRequest(BaseModel):
    task_instance_id: str = ""


class BlockTaskRequest(BaseModel):
    task_instance_id: str = ""
    blocker_reason: str = ""


class CancelWorkflowRequest(BaseModel):
    workflow_instance_id: str = ""
