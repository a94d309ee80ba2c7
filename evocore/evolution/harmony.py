"""Harmony controller — a periodic composite health score for the whole core.

Three sub-scores, each in [0, 1]:

    patterns  1 - share of evolution triggers the queue refused because an
              equivalent one was still pending (our own requests excluded)
    tasks     completed / (completed + failed), 0.5 before anything finished
    agents    fraction of registered agents that are ACTIVE

Their weighted average is the overall score. Below the balanced threshold
the core is UNBALANCED, below the critical threshold CRITICAL; either way a
MANUAL_REQUEST trigger naming the weakest subsystem is queued and the
rebalance hook (normally a redispatch of ready tasks) runs.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable

import structlog

from evocore.coordination.coordinator import AgentCoordinator
from evocore.events.bus import EventBus
from evocore.evolution.queue import HARMONY_SOURCE, TriggerQueue
from evocore.exceptions import DuplicateTriggerError
from evocore.tasks.orchestrator import TaskOrchestrator
from evocore.types import (
    EvolutionTrigger,
    HarmonySnapshot,
    HarmonyStatus,
    TriggerKind,
    TriggerPayload,
)

logger = structlog.get_logger()

RebalanceHook = Callable[[HarmonySnapshot], Awaitable[Any]]

NEUTRAL_TASK_SCORE = 0.5


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class HarmonyController:
    """Scores the core's balance and asks for rebalancing when it slips."""

    def __init__(
        self,
        trigger_queue: TriggerQueue,
        orchestrator: TaskOrchestrator,
        coordinator: AgentCoordinator,
        event_bus: EventBus | None = None,
        rebalance: RebalanceHook | None = None,
        interval: float = 300.0,
        pattern_weight: float = 0.33,
        task_weight: float = 0.33,
        agent_weight: float = 0.33,
        balanced_threshold: float = 0.8,
        critical_threshold: float = 0.5,
        history_limit: int = 500,
    ) -> None:
        self._queue = trigger_queue
        self._orchestrator = orchestrator
        self._coordinator = coordinator
        self._event_bus = event_bus
        self._rebalance = rebalance
        self._interval = interval
        self._weights = {
            "patterns": pattern_weight,
            "tasks": task_weight,
            "agents": agent_weight,
        }
        self._balanced = balanced_threshold
        self._critical = critical_threshold
        self._history: deque[HarmonySnapshot] = deque(maxlen=history_limit)
        self._running = False
        self._task: asyncio.Task | None = None

    def set_rebalance(self, hook: RebalanceHook) -> None:
        self._rebalance = hook

    # ── Scoring ──────────────────────────────────────────────────

    def compute(self) -> HarmonySnapshot:
        """Score the current state without recording or acting on it."""
        completed = self._orchestrator.completed_count
        failed = self._orchestrator.failed_count
        finished = completed + failed
        scores = {
            "patterns": _clamp(
                1.0 - self._queue.duplicate_reject_rate(exclude=(HARMONY_SOURCE,))
            ),
            "tasks": _clamp(completed / finished) if finished else NEUTRAL_TASK_SCORE,
            "agents": _clamp(self._coordinator.fraction_active()),
        }
        total_weight = sum(self._weights.values())
        overall = sum(self._weights[k] * s for k, s in scores.items()) / total_weight
        if overall < self._critical:
            status = HarmonyStatus.CRITICAL
        elif overall < self._balanced:
            status = HarmonyStatus.UNBALANCED
        else:
            status = HarmonyStatus.BALANCED
        weakest = min(scores, key=lambda k: scores[k])
        return HarmonySnapshot(
            pattern_score=scores["patterns"],
            task_score=scores["tasks"],
            agent_score=scores["agents"],
            overall=overall,
            status=status,
            weakest=weakest,
        )

    async def evaluate(self) -> HarmonySnapshot:
        """Score, record, and rebalance if the core is out of balance."""
        snapshot = self.compute()
        self._history.append(snapshot)
        logger.info(
            "harmony_evaluated",
            overall=round(snapshot.overall, 3),
            status=snapshot.status.value,
            weakest=snapshot.weakest,
        )
        await self._emit("harmony.evaluated", {
            "snapshot_id": snapshot.id,
            "overall": snapshot.overall,
            "status": snapshot.status.value,
            "scores": snapshot.scores(),
        })
        if snapshot.status != HarmonyStatus.BALANCED:
            await self._request_rebalance(snapshot)
        return snapshot

    async def _request_rebalance(self, snapshot: HarmonySnapshot) -> None:
        weakest_score = snapshot.scores()[snapshot.weakest]
        trigger = EvolutionTrigger(
            kind=TriggerKind.MANUAL_REQUEST,
            payload=TriggerPayload(
                ref_type="subsystem",
                ref_id=snapshot.weakest,
                data={
                    "score": weakest_score,
                    "overall": snapshot.overall,
                    "status": snapshot.status.value,
                    "snapshot_id": snapshot.id,
                },
            ),
            priority=round((1.0 - weakest_score) * 100),
            source=HARMONY_SOURCE,
        )
        try:
            await self._queue.enqueue(trigger)
        except DuplicateTriggerError:
            logger.info("harmony_request_already_pending", subsystem=snapshot.weakest)

        if self._rebalance is not None:
            try:
                await self._rebalance(snapshot)
            except Exception as e:
                logger.error("harmony_rebalance_failed", error=str(e))

    # ── Reads ────────────────────────────────────────────────────

    def latest(self) -> HarmonySnapshot | None:
        return self._history[-1] if self._history else None

    def history(self, limit: int = 50) -> list[HarmonySnapshot]:
        """Recorded snapshots, newest first."""
        return list(reversed(list(self._history)[-limit:]))

    # ── Loop ─────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="harmony-controller")
        await self._emit("harmony.started", {"interval_seconds": self._interval})

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._emit("harmony.stopped", {})

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            try:
                await self.evaluate()
            except Exception as e:
                logger.error("harmony_cycle_failed", error=str(e))

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.emit(topic, data, source="harmony_controller")
