"""Task Orchestrator — the dependency-gated task table.

A task moves created -> queued -> executing -> completed | failed, and may
only start executing once every task it depends on has completed. The
orchestrator tracks state only; the work itself is done by agents, and the
outcome comes back through ``complete`` / ``fail``.

Release is event-driven: a task is checked on submission and again each
time one of its dependencies completes. Ready tasks are handed to the
dispatcher (normally ``AgentCoordinator.dispatch``) through a shared
work-list, so deep dependency chains never grow the call stack.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Iterable

from evocore.events.bus import EventBus
from evocore.exceptions import (
    DependencyNotSatisfiedError,
    EvocoreError,
    TaskNotFoundError,
    TaskStateError,
)
from evocore.tasks.state_machine import transition
from evocore.types import AgentId, Task, TaskDefinition, TaskId, TaskStatus

_logger = logging.getLogger(__name__)

Dispatcher = Callable[[TaskId], Awaitable[Any]]
FinishedListener = Callable[[Task], Awaitable[None]]

SOURCE = "task_orchestrator"


class TaskOrchestrator:
    """Owns every task and its place in the dependency graph."""

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self._bus = event_bus
        self._tasks: dict[TaskId, Task] = {}
        self._dependents: dict[TaskId, set[TaskId]] = defaultdict(set)
        self._dispatcher: Dispatcher | None = None
        self._listeners: list[FinishedListener] = []
        self._worklist: deque[TaskId] = deque()
        self._releasing = False
        self._completed = 0
        self._failed = 0
        self._lock = asyncio.Lock()

    def set_dispatcher(self, dispatcher: Dispatcher) -> None:
        """Set the callable that finds an agent for a ready task."""
        self._dispatcher = dispatcher

    def on_finished(self, listener: FinishedListener) -> None:
        """Be notified of every task that reaches completed or failed."""
        self._listeners.append(listener)

    # ── Caller-facing operations ─────────────────────────────────

    async def submit(
        self,
        definition: TaskDefinition,
        dependencies: Iterable[TaskId] = (),
        priority: int = 0,
    ) -> TaskId:
        """Create a task, queue it, and release it at once if it is ready."""
        deps = set(dependencies)
        async with self._lock:
            missing = sorted(d for d in deps if d not in self._tasks)
            if missing:
                raise TaskNotFoundError(f"Unknown dependencies: {', '.join(missing)}")
            task = Task(definition=definition, dependencies=deps, priority=priority)
            self._tasks[task.id] = task
            for dep in deps:
                self._dependents[dep].add(task.id)
            transition(task, TaskStatus.QUEUED)
            ready = self._is_ready(task)

        await self._emit("task.queued", {
            "task_id": task.id,
            "capability": definition.capability,
            "dependencies": sorted(deps),
            "priority": priority,
        })
        if ready:
            await self._release([task.id])
        return task.id

    async def begin_execution(
        self, task_id: TaskId, agent_id: AgentId, announce: bool = True
    ) -> Task | DependencyNotSatisfiedError:
        """Move a queued task to executing.

        When a dependency has not completed the task stays queued and the
        error is returned, not raised. A caller that holds a lock of its own
        passes ``announce=False`` and calls ``announce_execution`` once it
        has let go.
        """
        async with self._lock:
            task = self._get(task_id)
            if task.status != TaskStatus.QUEUED:
                raise TaskStateError(
                    f"Task {task_id} is {task.status.value}, not queued"
                )
            pending = sorted(
                d for d in task.dependencies
                if self._tasks[d].status != TaskStatus.COMPLETED
            )
            if pending:
                return DependencyNotSatisfiedError(task_id, pending)
            transition(task, TaskStatus.EXECUTING)
            task.assigned_agent = agent_id
            snapshot = task.model_copy(deep=True)

        if announce:
            await self.announce_execution(snapshot)
        return snapshot

    async def announce_execution(self, task: Task) -> None:
        await self._emit("task.executing", {
            "task_id": task.id,
            "agent_id": task.assigned_agent,
        })

    async def complete(self, task_id: TaskId) -> Task:
        """Record a successful execution and release newly unblocked dependents."""
        async with self._lock:
            task = self._get(task_id)
            transition(task, TaskStatus.COMPLETED)
            self._completed += 1
            snapshot = task.model_copy(deep=True)
            unblocked = sorted(
                d for d in self._dependents.get(task_id, ())
                if self._tasks[d].status == TaskStatus.QUEUED
                and self._is_ready(self._tasks[d])
            )

        await self._finished(snapshot, "task.completed")
        if unblocked:
            await self._release(unblocked)
        return snapshot

    async def fail(self, task_id: TaskId, error: str = "") -> Task:
        """Record a failed execution. Dependents stay queued; nothing is retried."""
        async with self._lock:
            task = self._get(task_id)
            transition(task, TaskStatus.FAILED)
            task.error = error
            self._failed += 1
            snapshot = task.model_copy(deep=True)

        await self._finished(snapshot, "task.failed")
        return snapshot

    async def cancel(self, task_id: TaskId) -> Task:
        """Cancel a queued or executing task.

        Cancellation is cooperative: the task is marked failed and flagged,
        and whoever is doing the work is expected to notice and stop.
        """
        async with self._lock:
            task = self._get(task_id)
            if task.status not in (TaskStatus.QUEUED, TaskStatus.EXECUTING):
                raise TaskStateError(
                    f"Cannot cancel task {task_id} in state {task.status.value}"
                )
            task.cancel_requested = True
            transition(task, TaskStatus.FAILED)
            task.error = "cancelled"
            self._failed += 1
            snapshot = task.model_copy(deep=True)

        await self._finished(snapshot, "task.cancelled")
        return snapshot

    async def redispatch(self) -> int:
        """Offer every ready queued task to the dispatcher again.

        Used when agents recover or the harmony controller rebalances.
        """
        ready = [t.id for t in self.ready_tasks()]
        if ready:
            await self._release(ready, ordered=True)
        return len(ready)

    # ── Reads ────────────────────────────────────────────────────

    def get(self, task_id: TaskId) -> Task:
        return self._get(task_id).model_copy(deep=True)

    def list_tasks(self, status: TaskStatus | None = None) -> list[Task]:
        return [
            t.model_copy(deep=True)
            for t in sorted(self._tasks.values(), key=lambda t: t.id)
            if status is None or t.status == status
        ]

    def ready_tasks(self) -> list[Task]:
        """Queued tasks whose dependencies are complete, most urgent first."""
        ready = [
            t for t in self._tasks.values()
            if t.status == TaskStatus.QUEUED and self._is_ready(t)
        ]
        ready.sort(key=lambda t: (-t.priority, t.created_at, t.id))
        return [t.model_copy(deep=True) for t in ready]

    def is_ready(self, task_id: TaskId) -> bool:
        return self._is_ready(self._get(task_id))

    def stats(self) -> dict[str, int]:
        counts = {s.value: 0 for s in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        return counts

    @property
    def completed_count(self) -> int:
        return self._completed

    @property
    def failed_count(self) -> int:
        return self._failed

    def __len__(self) -> int:
        return len(self._tasks)

    # ── Internals ────────────────────────────────────────────────

    def _get(self, task_id: TaskId) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"No task with id {task_id}")
        return task

    def _is_ready(self, task: Task) -> bool:
        return all(
            self._tasks[d].status == TaskStatus.COMPLETED for d in task.dependencies
        )

    async def _release(self, task_ids: list[TaskId], ordered: bool = False) -> None:
        # Completions that happen while dispatching only extend the
        # work-list; the outermost caller drains it.
        self._worklist.extend(task_ids if ordered else sorted(task_ids))
        if self._releasing:
            return
        self._releasing = True
        try:
            while self._worklist:
                task_id = self._worklist.popleft()
                task = self._tasks.get(task_id)
                if task is None or task.status != TaskStatus.QUEUED:
                    continue
                if not self._is_ready(task):
                    continue
                await self._dispatch(task_id)
        finally:
            self._releasing = False

    async def _dispatch(self, task_id: TaskId) -> None:
        if self._dispatcher is None:
            return
        try:
            await self._dispatcher(task_id)
        except EvocoreError as e:
            # Stays queued; picked up again by redispatch().
            _logger.info("Task %s not dispatched: %s", task_id, e)

    async def _finished(self, task: Task, topic: str) -> None:
        await self._emit(topic, {
            "task_id": task.id,
            "agent_id": task.assigned_agent,
            "status": task.status.value,
            "error": task.error,
        })
        for listener in self._listeners:
            try:
                await listener(task)
            except Exception:
                _logger.exception("Task listener failed for %s", task.id)

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(topic, data, source=SOURCE)
