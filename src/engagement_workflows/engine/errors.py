"""Error taxonomy surfaced to callers.

Every error carries a machine-readable ``kind`` so the HTTP and CLI adapters can
report it without inspecting the message.
"""

from __future__ import annotations

from typing import ClassVar


class WorkflowEngineError(Exception):
    """Base class for errors raised by engine operations."""

    kind: ClassVar[str] = "error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_json(self) -> dict[str, object]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(WorkflowEngineError):
    """Missing or malformed input. Nothing was mutated."""

    kind = "validation"


class NotFoundError(WorkflowEngineError):
    """A referenced entity does not exist. Nothing was mutated."""

    kind = "not_found"


class PreconditionFailed(WorkflowEngineError):
    """The current state does not allow the operation yet. Nothing was mutated."""

    kind = "precondition_failed"


class DependencyError(WorkflowEngineError):
    """A collaborator failed mid-operation.

    Part of the operation may already be applied; callers should re-read state
    before retrying.
    """

    kind = "dependency"
