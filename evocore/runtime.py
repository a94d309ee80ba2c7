"""CoordinationRuntime — wires every subsystem together and is the public face.

    health monitor -> agent coordinator -> task orchestrator
                                        -> pattern store -> trigger queue
    harmony controller scores the whole core and may ask for rebalancing

Everything is built from one ``CoreSettings``. The three background loops
(health probing, trigger draining, harmony evaluation) run only between
``start()`` and ``stop()``; every operation also works without them, which
is how the tests drive the core step by step.
"""

from __future__ import annotations

import logging
from typing import Iterable

from evocore.config import CoreSettings, settings as default_settings
from evocore.coordination.coordinator import AgentCoordinator, ExecuteFn, ProbeFn
from evocore.events.bus import Event, EventBus
from evocore.events.journal import JournalSink, MemoryJournal
from evocore.evolution.daemon import EvolutionDaemon
from evocore.evolution.harmony import HarmonyController
from evocore.evolution.queue import TriggerQueue
from evocore.monitoring.health import HealthMonitor
from evocore.patterns.store import PatternStore, SimilarityFn
from evocore.tasks.orchestrator import TaskOrchestrator
from evocore.types import (
    AgentId,
    AgentRecord,
    AgentStatus,
    HarmonySnapshot,
    HealthReport,
    PatternStatistics,
    QueueStats,
    Task,
    TaskDefinition,
    TaskId,
)

_logger = logging.getLogger(__name__)

_DISPATCHABLE = {AgentStatus.ACTIVE.value, AgentStatus.DEGRADED.value}


class CoordinationRuntime:
    """The coordination and evolution scheduling core, ready to use."""

    def __init__(
        self,
        config: CoreSettings | None = None,
        event_bus: EventBus | None = None,
        journal: JournalSink | None = None,
        similarity: SimilarityFn | None = None,
    ) -> None:
        cfg = config or default_settings
        self.config = cfg
        self.event_bus = event_bus or EventBus()
        self.journal = journal or MemoryJournal(limit=cfg.evolution_history_limit)

        self.queue = TriggerQueue(
            capacity=cfg.trigger_queue_capacity,
            journal=self.journal,
            event_bus=self.event_bus,
            history_limit=cfg.evolution_history_limit,
        )
        self.orchestrator = TaskOrchestrator(event_bus=self.event_bus)
        self.coordinator = AgentCoordinator(
            self.orchestrator,
            event_bus=self.event_bus,
            capability_weight=cfg.capability_weight,
            availability_weight=cfg.availability_weight,
            performance_weight=cfg.performance_weight,
            execution_timeout=cfg.execution_timeout_seconds,
        )
        self.patterns = PatternStore(
            similarity=similarity,
            similarity_threshold=cfg.pattern_similarity_threshold,
            occurrence_threshold=cfg.pattern_occurrence_threshold,
            confidence_threshold=cfg.pattern_confidence_threshold,
            trigger_sink=self.queue.enqueue,
            event_bus=self.event_bus,
        )
        self.health = HealthMonitor(
            self.coordinator,
            event_bus=self.event_bus,
            trigger_sink=self.queue.enqueue,
            interval=cfg.health_check_interval_seconds,
            probe_timeout=cfg.probe_timeout_seconds,
            timeout_failure_limit=cfg.timeout_failure_limit,
            max_recovery_attempts=cfg.max_recovery_attempts,
            history_limit=cfg.health_history_limit,
        )
        self.daemon = EvolutionDaemon(
            self.queue,
            event_bus=self.event_bus,
            interval=cfg.trigger_drain_interval_seconds,
            max_failed_attempts=cfg.max_failed_attempts,
            pause_duration=cfg.pause_duration_seconds,
            history_limit=cfg.evolution_history_limit,
        )
        self.harmony = HarmonyController(
            self.queue,
            self.orchestrator,
            self.coordinator,
            event_bus=self.event_bus,
            rebalance=self._rebalance,
            interval=cfg.harmony_interval_seconds,
            pattern_weight=cfg.harmony_pattern_weight,
            task_weight=cfg.harmony_task_weight,
            agent_weight=cfg.harmony_agent_weight,
            balanced_threshold=cfg.harmony_balanced_threshold,
            critical_threshold=cfg.harmony_critical_threshold,
        )

        self.orchestrator.on_finished(self._record_outcome)
        self.event_bus.subscribe("agent.status_changed", self._on_agent_status)
        self._started = False

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Start health probing, trigger draining and harmony evaluation."""
        if self._started:
            return
        self._started = True
        await self.health.start()
        await self.daemon.start()
        await self.harmony.start()
        _logger.info("Coordination runtime started")

    async def stop(self) -> None:
        if not self._started:
            return
        await self.harmony.stop()
        await self.daemon.stop()
        await self.health.stop()
        self._started = False
        _logger.info("Coordination runtime stopped")

    @property
    def is_running(self) -> bool:
        return self._started

    # ── Agents ───────────────────────────────────────────────────

    async def register(
        self,
        agent_id: AgentId,
        capabilities: Iterable[str],
        probe: ProbeFn,
        execute: ExecuteFn | None = None,
    ) -> AgentRecord:
        """Register an agent. It becomes eligible after its first healthy probe."""
        return await self.coordinator.register(agent_id, capabilities, probe, execute)

    async def deregister(self, agent_id: AgentId) -> AgentRecord:
        return await self.coordinator.deregister(agent_id)

    # ── Tasks ────────────────────────────────────────────────────

    async def submit(
        self,
        definition: TaskDefinition | str,
        dependencies: Iterable[TaskId] = (),
        priority: int = 0,
    ) -> TaskId:
        if isinstance(definition, str):
            definition = TaskDefinition(capability=definition)
        return await self.orchestrator.submit(definition, dependencies, priority)

    async def complete(self, task_id: TaskId) -> Task:
        return await self.orchestrator.complete(task_id)

    async def fail(self, task_id: TaskId, error: str = "") -> Task:
        return await self.orchestrator.fail(task_id, error)

    async def cancel(self, task_id: TaskId) -> Task:
        return await self.orchestrator.cancel(task_id)

    def get_task(self, task_id: TaskId) -> Task:
        return self.orchestrator.get(task_id)

    # ── Status queries ───────────────────────────────────────────

    def get_agent_status(self, agent_id: AgentId) -> AgentRecord:
        """Current record for an agent. Raises AgentNotFoundError if unknown."""
        return self.coordinator.get(agent_id)

    def get_health_report(self) -> HealthReport:
        try:
            return self.health.report()
        except Exception:
            _logger.exception("Health report unavailable")
            return HealthReport(overall="unknown")

    def get_harmony_snapshot(self) -> HarmonySnapshot:
        """A fresh harmony score of the current state; nothing is recorded."""
        return self.harmony.compute()

    def get_queue_stats(self) -> QueueStats:
        return self.queue.stats()

    def get_pattern_statistics(self) -> PatternStatistics:
        return self.patterns.statistics()

    # ── Internals ────────────────────────────────────────────────

    async def _record_outcome(self, task: Task) -> None:
        if task.cancel_requested or task.assigned_agent is None:
            return
        await self.patterns.record(
            {"capability": task.capability, "agent_id": task.assigned_agent},
            {"status": task.status.value},
        )

    async def _on_agent_status(self, event: Event) -> None:
        if event.data.get("status") not in _DISPATCHABLE:
            return
        try:
            await self.orchestrator.redispatch()
        except Exception:
            _logger.exception("Redispatch after %s recovered failed", event.data.get("agent_id"))

    async def _rebalance(self, snapshot: HarmonySnapshot) -> None:
        released = await self.orchestrator.redispatch()
        _logger.info(
            "Harmony %s (weakest: %s); re-offered %d ready tasks",
            snapshot.status.value, snapshot.weakest, released,
        )
