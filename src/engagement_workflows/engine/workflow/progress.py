from __future__ import annotations

from collections.abc import Iterable

from engagement_workflows.engine.store import ObjectStore

from .models import TaskInstance, TaskStatus, WorkflowInstance


def compute_progress(statuses: Iterable[TaskStatus]) -> int:
    """Percentage of completed tasks, rounded half-up. No tasks means 0."""

    total = 0
    completed = 0
    for status in statuses:
        total += 1
        if status == TaskStatus.COMPLETED:
            completed += 1
    if total == 0:
        return 0
    return (200 * completed + total) // (2 * total)


def recompute_workflow_progress(store: ObjectStore, workflow_instance_id: str) -> int:
    """Recount every task in the workflow (not just the active branch) and persist."""

    tasks = store.filter(TaskInstance, workflow_instance_id=workflow_instance_id)
    percentage = compute_progress(t.status for t in tasks)
    store.update(WorkflowInstance, workflow_instance_id, progress_percentage=percentage)
    return percentage
