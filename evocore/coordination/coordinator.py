"""Agent Coordinator — the registry of workers and the best-fit selector.

Every agent that can take work is tracked here, together with the two
callables it supplied at registration: a health probe and (optionally) an
execute function. The coordinator scores eligible agents for each ready
task, assigns the winner through the Task Orchestrator's dependency gate,
and runs the agent's execute function off-lock with a timeout.

Selection score (weights configurable):

    score = 0.4 * capability_match + 0.3 * availability + 0.3 * performance

Ties go to the agent with the fewest in-flight tasks, then the lowest id.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from evocore.events.bus import EventBus
from evocore.exceptions import (
    AgentNotFoundError,
    DependencyNotSatisfiedError,
    DuplicateIdError,
    NoEligibleAgentError,
    TaskStateError,
)
from evocore.tasks.orchestrator import TaskOrchestrator
from evocore.types import (
    AgentId,
    AgentRecord,
    AgentStatus,
    Assignment,
    Task,
    TaskId,
    TaskStatus,
    utcnow,
)

_logger = logging.getLogger(__name__)

ProbeFn = Callable[[], Awaitable[Any] | Any]
ExecuteFn = Callable[[Task], Awaitable[Any] | Any]

SOURCE = "agent_coordinator"

AVAILABILITY: dict[AgentStatus, float] = {
    AgentStatus.ACTIVE: 1.0,
    AgentStatus.DEGRADED: 0.5,
    AgentStatus.UNHEALTHY: 0.1,
    AgentStatus.FAILED: 0.0,
    AgentStatus.STOPPED: 0.0,
    AgentStatus.INITIALIZING: 0.0,
}

ELIGIBLE = {AgentStatus.ACTIVE, AgentStatus.DEGRADED}

NEUTRAL_PERFORMANCE = 0.5


async def call_with_timeout(fn: Callable[..., Any], *args: Any, timeout: float) -> Any:
    """Run a sync or async callable with a deadline.

    Sync callables run in a worker thread so a blocking call can still be
    timed out; the thread itself is left to finish on its own.
    """
    if inspect.iscoroutinefunction(fn):
        return await asyncio.wait_for(fn(*args), timeout=timeout)
    result = await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    if inspect.isawaitable(result):
        result = await asyncio.wait_for(result, timeout=timeout)
    return result


@dataclass
class RegisteredAgent:
    """Registry entry: the public record plus what the agent plugged in."""

    record: AgentRecord
    probe: ProbeFn
    execute: ExecuteFn | None = None
    in_flight: int = 0


class AgentCoordinator:
    """Registry and best-fit task assignment."""

    def __init__(
        self,
        orchestrator: TaskOrchestrator,
        event_bus: EventBus | None = None,
        capability_weight: float = 0.4,
        availability_weight: float = 0.3,
        performance_weight: float = 0.3,
        execution_timeout: float = 300.0,
        assignment_history: int = 500,
    ) -> None:
        self._orchestrator = orchestrator
        self._bus = event_bus
        self._weights = (capability_weight, availability_weight, performance_weight)
        self._execution_timeout = execution_timeout
        self._agents: dict[AgentId, RegisteredAgent] = {}
        self._retired: dict[AgentId, AgentRecord] = {}
        self._assignments: deque[Assignment] = deque(maxlen=assignment_history)
        self._running: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

        orchestrator.set_dispatcher(self.dispatch)
        orchestrator.on_finished(self._on_task_finished)

    # ── Registration ─────────────────────────────────────────────

    async def register(
        self,
        agent_id: AgentId,
        capabilities: Iterable[str],
        probe: ProbeFn,
        execute: ExecuteFn | None = None,
    ) -> AgentRecord:
        """Add an agent to the registry. It starts out INITIALIZING."""
        async with self._lock:
            if agent_id in self._agents:
                raise DuplicateIdError(f"Agent {agent_id} is already registered")
            record = AgentRecord(id=agent_id, capabilities=set(capabilities))
            self._agents[agent_id] = RegisteredAgent(
                record=record, probe=probe, execute=execute,
            )
            self._retired.pop(agent_id, None)
            snapshot = record.model_copy(deep=True)

        _logger.info("Registered agent %s (%s)", agent_id, ", ".join(sorted(record.capabilities)))
        await self._emit("agent.registered", {
            "agent_id": agent_id,
            "capabilities": sorted(record.capabilities),
        })
        return snapshot

    async def deregister(self, agent_id: AgentId) -> AgentRecord:
        """Remove an agent. Its record is kept, STOPPED, for status queries."""
        async with self._lock:
            entry = self._get(agent_id)
            old = entry.record.status
            entry.record.status = AgentStatus.STOPPED
            self._retire(agent_id)
            snapshot = entry.record.model_copy(deep=True)

        await self._emit("agent.deregistered", {
            "agent_id": agent_id,
            "previous": old.value,
        })
        return snapshot

    # ── Health (written by the Health Monitor only) ──────────────

    async def probe_targets(self) -> list[tuple[AgentId, AgentStatus, ProbeFn]]:
        """Snapshot of what the health monitor should probe this cycle."""
        async with self._lock:
            return [
                (agent_id, entry.record.status, entry.probe)
                for agent_id, entry in sorted(self._agents.items())
            ]

    async def apply_health(
        self, agent_id: AgentId, status: AgentStatus, responsive: bool = False
    ) -> AgentRecord | None:
        """Set an agent's status from a probe result.

        Returns None when the agent was deregistered while being probed.
        A STOPPED status retires the agent.
        """
        async with self._lock:
            entry = self._agents.get(agent_id)
            if entry is None:
                return None
            old = entry.record.status
            entry.record.status = status
            if responsive:
                entry.record.metrics.last_active_at = utcnow()
            if status == AgentStatus.STOPPED:
                self._retire(agent_id)
            snapshot = entry.record.model_copy(deep=True)

        if old != status:
            _logger.info("Agent %s: %s -> %s", agent_id, old.value, status.value)
            await self._emit("agent.status_changed", {
                "agent_id": agent_id,
                "previous": old.value,
                "status": status.value,
            })
        return snapshot

    # ── Selection & assignment ───────────────────────────────────

    def score(self, record: AgentRecord, capability: str) -> float:
        w_cap, w_avail, w_perf = self._weights
        capability_match = 1.0 if capability in record.capabilities else 0.0
        availability = AVAILABILITY.get(record.status, 0.0)
        metrics = record.metrics
        performance = (
            metrics.success_rate if metrics.tasks_finished else NEUTRAL_PERFORMANCE
        )
        return w_cap * capability_match + w_avail * availability + w_perf * performance

    async def select_agent(self, task: Task | TaskId) -> AgentId:
        """Pick the best eligible agent for a task."""
        if not isinstance(task, Task):
            task = self._orchestrator.get(task)
        capability = task.capability
        async with self._lock:
            candidates = [
                (round(self.score(e.record, capability), 9), e.in_flight, agent_id)
                for agent_id, e in self._agents.items()
                if capability in e.record.capabilities and e.record.status in ELIGIBLE
            ]
        if not candidates:
            raise NoEligibleAgentError(
                f"No active agent offers capability '{capability}' for task {task.id}"
            )
        candidates.sort(key=lambda c: (-c[0], c[1], c[2]))
        return candidates[0][2]

    async def assign_task(self, agent_id: AgentId, task_id: TaskId) -> Assignment | None:
        """Start a task on an agent if its dependencies allow it.

        Returns None, leaving the task queued, when a dependency has not
        completed yet.
        """
        async with self._lock:
            entry = self._get(agent_id)
            task = self._orchestrator.get(task_id)
            if (
                task.capability not in entry.record.capabilities
                or entry.record.status not in ELIGIBLE
            ):
                raise NoEligibleAgentError(
                    f"Agent {agent_id} cannot take task {task_id} "
                    f"({entry.record.status.value}, needs '{task.capability}')"
                )
            result = await self._orchestrator.begin_execution(
                task_id, agent_id, announce=False,
            )
            if isinstance(result, DependencyNotSatisfiedError):
                _logger.info("Assignment deferred: %s", result)
                return None
            entry.in_flight += 1
            assignment = Assignment(agent_id=agent_id, task_id=task_id)
            self._assignments.append(assignment)
            execute = entry.execute

        _logger.info("Assigned task %s to agent %s", task_id, agent_id)
        await self._orchestrator.announce_execution(result)
        await self._emit("task.assigned", {
            "task_id": task_id,
            "agent_id": agent_id,
        })
        if execute is not None:
            job = asyncio.create_task(
                self._execute(agent_id, execute, result), name=f"task-{task_id[:8]}",
            )
            self._running.add(job)
            job.add_done_callback(self._running.discard)
        return assignment

    async def dispatch(self, task_id: TaskId) -> Assignment | None:
        """Select the best agent for a task and assign it."""
        agent_id = await self.select_agent(task_id)
        return await self.assign_task(agent_id, task_id)

    async def record_outcome(
        self, agent_id: AgentId, success: bool, duration_ms: float | None = None
    ) -> AgentRecord | None:
        """Fold one finished task into an agent's metrics and free its slot.

        Called automatically for every task the orchestrator finishes.
        Returns None if the agent has left the registry meanwhile.
        """
        async with self._lock:
            entry = self._agents.get(agent_id)
            if entry is None:
                return None
            entry.in_flight = max(0, entry.in_flight - 1)
            metrics = entry.record.metrics
            if success:
                metrics.tasks_completed += 1
            else:
                metrics.tasks_failed += 1
            metrics.success_rate = metrics.tasks_completed / metrics.tasks_finished
            if duration_ms is not None:
                n = metrics.tasks_finished
                metrics.average_duration_ms += (duration_ms - metrics.average_duration_ms) / n
            metrics.last_active_at = utcnow()
            return entry.record.model_copy(deep=True)

    async def join(self) -> None:
        """Wait for every execution currently in flight."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    # ── Reads ────────────────────────────────────────────────────

    def get(self, agent_id: AgentId) -> AgentRecord:
        entry = self._agents.get(agent_id)
        if entry is not None:
            return entry.record.model_copy(deep=True)
        retired = self._retired.get(agent_id)
        if retired is not None:
            return retired.model_copy(deep=True)
        raise AgentNotFoundError(f"No agent with id {agent_id}")

    def list_agents(self) -> list[AgentRecord]:
        return [
            e.record.model_copy(deep=True)
            for _, e in sorted(self._agents.items())
        ]

    def in_flight(self, agent_id: AgentId) -> int:
        return self._get(agent_id).in_flight

    def assignments(self, limit: int = 50) -> list[Assignment]:
        return list(self._assignments)[-limit:]

    def fraction_active(self) -> float:
        if not self._agents:
            return 0.0
        active = sum(
            1 for e in self._agents.values() if e.record.status == AgentStatus.ACTIVE
        )
        return active / len(self._agents)

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    # ── Internals ────────────────────────────────────────────────

    def _get(self, agent_id: AgentId) -> RegisteredAgent:
        entry = self._agents.get(agent_id)
        if entry is None:
            raise AgentNotFoundError(f"No agent with id {agent_id}")
        return entry

    def _retire(self, agent_id: AgentId) -> None:
        entry = self._agents.pop(agent_id)
        self._retired[agent_id] = entry.record

    async def _execute(self, agent_id: AgentId, execute: ExecuteFn, task: Task) -> None:
        error = ""
        try:
            result = await call_with_timeout(
                execute, task, timeout=self._execution_timeout,
            )
            success = result is not False
            if not success:
                error = "agent reported failure"
        except asyncio.TimeoutError:
            success, error = False, f"execution timed out after {self._execution_timeout}s"
        except Exception as e:
            success, error = False, f"{type(e).__name__}: {e}"

        try:
            if success:
                await self._orchestrator.complete(task.id)
            else:
                await self._orchestrator.fail(task.id, error)
        except TaskStateError:
            # Cancelled while running; the cancellation already settled it.
            _logger.info("Result for task %s ignored: task already finished", task.id)

    async def _on_task_finished(self, task: Task) -> None:
        if task.assigned_agent is None:
            return
        if task.cancel_requested:
            # Not the agent's doing; just give the slot back.
            async with self._lock:
                entry = self._agents.get(task.assigned_agent)
                if entry is not None:
                    entry.in_flight = max(0, entry.in_flight - 1)
            return
        duration_ms = None
        if task.started_at and task.finished_at:
            duration_ms = (task.finished_at - task.started_at).total_seconds() * 1000
        await self.record_outcome(
            task.assigned_agent, task.status == TaskStatus.COMPLETED, duration_ms,
        )

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(topic, data, source=SOURCE)
