"""Task state machine — enforces valid lifecycle transitions."""

from __future__ import annotations

from evocore.exceptions import TaskStateError
from evocore.types import Task, TaskStatus, utcnow

# QUEUED -> FAILED is how a cancellation lands.
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.CREATED: {TaskStatus.QUEUED},
    TaskStatus.QUEUED: {TaskStatus.EXECUTING, TaskStatus.FAILED},
    TaskStatus.EXECUTING: {TaskStatus.COMPLETED, TaskStatus.FAILED},
    TaskStatus.COMPLETED: set(),  # terminal
    TaskStatus.FAILED: set(),  # terminal
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def transition(task: Task, target: TaskStatus) -> TaskStatus:
    """Move a task to ``target`` in place; returns the previous status."""
    if not can_transition(task.status, target):
        raise TaskStateError(
            f"Cannot transition task {task.id} "
            f"from {task.status.value} to {target.value}"
        )
    old = task.status
    task.status = target
    if target == TaskStatus.EXECUTING:
        task.started_at = utcnow()
    elif target in (TaskStatus.COMPLETED, TaskStatus.FAILED):
        task.finished_at = utcnow()
    return old
