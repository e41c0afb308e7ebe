"""Explicit status transitions for every node of the instance graph.

Illegal transitions fail loudly. ``allowed_sources`` feeds the store's
compare-and-set so a racing request cannot move a record twice.
"""

from __future__ import annotations

from enum import Enum
from typing import TypeVar

from engagement_workflows.engine.errors import PreconditionFailed

from .models import DeliverableStatus, StageStatus, TaskStatus, WorkflowStatus

S = TypeVar("S", bound=Enum)


WORKFLOW_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.NOT_STARTED: {WorkflowStatus.IN_PROGRESS, WorkflowStatus.CANCELLED},
    WorkflowStatus.IN_PROGRESS: {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.BLOCKED,
        WorkflowStatus.CANCELLED,
    },
    WorkflowStatus.BLOCKED: {WorkflowStatus.CANCELLED},
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.CANCELLED: set(),
}

STAGE_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.NOT_STARTED: {StageStatus.IN_PROGRESS, StageStatus.SKIPPED},
    StageStatus.IN_PROGRESS: {StageStatus.COMPLETED, StageStatus.SKIPPED},
    StageStatus.COMPLETED: set(),
    StageStatus.SKIPPED: set(),
}

DELIVERABLE_TRANSITIONS: dict[DeliverableStatus, set[DeliverableStatus]] = {
    DeliverableStatus.NOT_STARTED: {
        DeliverableStatus.IN_PROGRESS,
        DeliverableStatus.COMPLETED,
        DeliverableStatus.BLOCKED,
    },
    DeliverableStatus.IN_PROGRESS: {DeliverableStatus.COMPLETED, DeliverableStatus.BLOCKED},
    DeliverableStatus.COMPLETED: set(),
    DeliverableStatus.BLOCKED: set(),
}

# Completing an already-completed task is a retry, not a new transition.
TASK_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.NOT_STARTED: {TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.COMPLETED},
    TaskStatus.IN_PROGRESS: {TaskStatus.NOT_STARTED, TaskStatus.BLOCKED, TaskStatus.COMPLETED},
    TaskStatus.BLOCKED: {TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED},
    TaskStatus.COMPLETED: {TaskStatus.COMPLETED},
}

_TABLES: dict[type[Enum], dict] = {
    WorkflowStatus: WORKFLOW_TRANSITIONS,
    StageStatus: STAGE_TRANSITIONS,
    DeliverableStatus: DELIVERABLE_TRANSITIONS,
    TaskStatus: TASK_TRANSITIONS,
}

# Workflows in these states accept no further progression.
HALTED_WORKFLOW_STATES: frozenset[WorkflowStatus] = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED, WorkflowStatus.BLOCKED}
)


class IllegalTransitionError(PreconditionFailed):
    pass


def _table(status_type: type[S]) -> dict[S, set[S]]:
    try:
        return _TABLES[status_type]
    except KeyError:
        raise TypeError(f"No transition table for {status_type.__name__}") from None


def can_transition(*, current: S, to: S) -> bool:
    return to in _table(type(current)).get(current, set())


def transition(*, current: S, to: S) -> S:
    if not can_transition(current=current, to=to):
        raise IllegalTransitionError(
            f"Illegal {type(current).__name__} transition: {current.value} -> {to.value}"
        )
    return to


def allowed_sources(to: S) -> set[S]:
    """Every status that may legally move to ``to``."""

    return {src for src, targets in _table(type(to)).items() if to in targets}
