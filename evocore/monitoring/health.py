"""Health Monitor — periodic probing of every registered agent.

Each cycle snapshots the registry, runs every agent's probe concurrently
(off-lock, with a timeout) and moves the agent along the severity ladder:

    active -> degraded -> unhealthy -> failed

A failed, erroring or timed-out probe moves one step down; a healthy probe
moves one step back up, never more, so a flapping agent cannot bounce
straight from unhealthy to active. Three consecutive timeouts force FAILED.
An agent that keeps failing while FAILED is retired (STOPPED) once its
recovery attempts run out.

The monitor must never take the process down: anything that goes wrong
while checking one agent is logged and the cycle moves on.
"""

from __future__ import annotations

import asyncio
from collections import Counter, deque
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping

import structlog

from evocore.coordination.coordinator import AgentCoordinator, ProbeFn, call_with_timeout
from evocore.events.bus import EventBus
from evocore.exceptions import DuplicateTriggerError, ProbeTimeoutError
from evocore.types import (
    AgentId,
    AgentStatus,
    EvolutionTrigger,
    HealthCheckEntry,
    HealthReport,
    ProbeOutcome,
    TriggerKind,
    TriggerPayload,
    utcnow,
)

logger = structlog.get_logger()

TriggerSink = Callable[[EvolutionTrigger], Awaitable[Any]]

SOURCE = "health_monitor"

LADDER = [
    AgentStatus.ACTIVE,
    AgentStatus.DEGRADED,
    AgentStatus.UNHEALTHY,
    AgentStatus.FAILED,
]

DEGRADATION_PRIORITY = {
    AgentStatus.DEGRADED: 5,
    AgentStatus.UNHEALTHY: 8,
}

_HEALTHY_SIGNALS = {"healthy", "active", "ok", "up"}


def is_healthy(signal: Any) -> bool:
    """Interpret whatever a probe returned as healthy or not.

    Accepts booleans, status strings ("healthy", "ok", ...), enums, or a
    mapping with a "status" key.
    """
    if isinstance(signal, Mapping):
        signal = signal.get("status")
    if isinstance(signal, Enum):
        signal = signal.value
    if isinstance(signal, str):
        return signal.lower() in _HEALTHY_SIGNALS
    return bool(signal)


def next_status(
    current: AgentStatus,
    outcome: ProbeOutcome,
    consecutive_timeouts: int = 0,
    timeout_limit: int = 3,
) -> AgentStatus:
    """One step of the severity ladder."""
    if current == AgentStatus.STOPPED:
        return current
    if outcome == ProbeOutcome.OK:
        if current == AgentStatus.INITIALIZING:
            return AgentStatus.ACTIVE
        return LADDER[max(0, LADDER.index(current) - 1)]
    if outcome == ProbeOutcome.TIMEOUT and consecutive_timeouts >= timeout_limit:
        return AgentStatus.FAILED
    if current == AgentStatus.INITIALIZING:
        return AgentStatus.DEGRADED
    return LADDER[min(len(LADDER) - 1, LADDER.index(current) + 1)]


class HealthMonitor:
    """Polls agents on a fixed interval and keeps a bounded history."""

    def __init__(
        self,
        coordinator: AgentCoordinator,
        event_bus: EventBus | None = None,
        trigger_sink: TriggerSink | None = None,
        interval: float = 60.0,
        probe_timeout: float = 5.0,
        timeout_failure_limit: int = 3,
        max_recovery_attempts: int = 3,
        history_limit: int = 500,
    ) -> None:
        self._coordinator = coordinator
        self._bus = event_bus
        self._trigger_sink = trigger_sink
        self._interval = interval
        self._probe_timeout = probe_timeout
        self._timeout_limit = timeout_failure_limit
        self._max_recovery = max_recovery_attempts
        self._history: deque[HealthCheckEntry] = deque(maxlen=history_limit)
        self._timeouts: Counter[AgentId] = Counter()
        self._failed_streak: Counter[AgentId] = Counter()
        self._cycles = 0
        self._last_cycle_at = None
        self._cycle_lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task | None = None

    # ── Loop ─────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic check loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="health-monitor")
        await self._emit("health.monitor_started", {"interval_seconds": self._interval})

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._emit("health.monitor_stopped", {})

    @property
    def is_running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.check_all()
            except Exception as e:
                logger.error("health_cycle_failed", error=str(e))
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break

    # ── Checks ───────────────────────────────────────────────────

    async def check_all(self) -> list[HealthCheckEntry]:
        """Probe every registered agent once and apply the results."""
        async with self._cycle_lock:
            targets = await self._coordinator.probe_targets()
            results = await asyncio.gather(
                *(self._check_one(agent_id, status, probe) for agent_id, status, probe in targets)
            )
            self._cycles += 1
            self._last_cycle_at = utcnow()
        entries = [e for e in results if e is not None]
        await self._emit("health.cycle_completed", {
            "checked": len(entries),
            "cycle": self._cycles,
        })
        return entries

    async def _check_one(
        self, agent_id: AgentId, current: AgentStatus, probe: ProbeFn
    ) -> HealthCheckEntry | None:
        try:
            loop = asyncio.get_running_loop()
            started = loop.time()
            outcome, error = await self._probe(agent_id, probe)
            latency_ms = (loop.time() - started) * 1000

            new = self._classify(agent_id, current, outcome)
            record = await self._coordinator.apply_health(
                agent_id, new, responsive=outcome == ProbeOutcome.OK,
            )
            if record is None:
                self._forget(agent_id)
                return None

            entry = HealthCheckEntry(
                agent_id=agent_id,
                previous=current,
                status=new,
                outcome=outcome,
                latency_ms=latency_ms,
                error=error,
            )
            self._history.append(entry)

            if new != current and new in DEGRADATION_PRIORITY:
                await self._raise_trigger(agent_id, current, new)
            if new == AgentStatus.STOPPED:
                logger.warning("agent_retired", agent_id=agent_id, reason="recovery exhausted")
                self._forget(agent_id)
            return entry
        except Exception as e:
            logger.error("health_check_failed", agent_id=agent_id, error=str(e))
            return None

    async def _probe(self, agent_id: AgentId, probe: ProbeFn) -> tuple[ProbeOutcome, str]:
        try:
            try:
                signal = await call_with_timeout(probe, timeout=self._probe_timeout)
            except asyncio.TimeoutError:
                raise ProbeTimeoutError(
                    f"probe for {agent_id} exceeded {self._probe_timeout}s"
                ) from None
        except ProbeTimeoutError as e:
            return ProbeOutcome.TIMEOUT, str(e)
        except Exception as e:
            return ProbeOutcome.ERROR, f"{type(e).__name__}: {e}"
        if is_healthy(signal):
            return ProbeOutcome.OK, ""
        return ProbeOutcome.FAILED, "probe reported unhealthy"

    def _classify(
        self, agent_id: AgentId, current: AgentStatus, outcome: ProbeOutcome
    ) -> AgentStatus:
        if outcome == ProbeOutcome.TIMEOUT:
            self._timeouts[agent_id] += 1
        else:
            self._timeouts[agent_id] = 0

        if outcome == ProbeOutcome.OK:
            self._failed_streak[agent_id] = 0
        elif current == AgentStatus.FAILED:
            self._failed_streak[agent_id] += 1
            if self._failed_streak[agent_id] >= self._max_recovery:
                return AgentStatus.STOPPED

        return next_status(
            current, outcome, self._timeouts[agent_id], self._timeout_limit,
        )

    def _forget(self, agent_id: AgentId) -> None:
        self._timeouts.pop(agent_id, None)
        self._failed_streak.pop(agent_id, None)

    async def _raise_trigger(
        self, agent_id: AgentId, previous: AgentStatus, status: AgentStatus
    ) -> None:
        if self._trigger_sink is None:
            return
        trigger = EvolutionTrigger(
            kind=TriggerKind.HEALTH_DEGRADED,
            payload=TriggerPayload(
                ref_type="agent",
                ref_id=agent_id,
                data={
                    "previous": previous.value,
                    "status": status.value,
                    "consecutive_timeouts": self._timeouts[agent_id],
                },
            ),
            priority=DEGRADATION_PRIORITY[status],
            source=SOURCE,
        )
        try:
            await self._trigger_sink(trigger)
        except DuplicateTriggerError:
            logger.info("health_trigger_already_pending", agent_id=agent_id)

    # ── Reads ────────────────────────────────────────────────────

    def history(self, agent_id: AgentId | None = None, limit: int = 50) -> list[HealthCheckEntry]:
        """Recent probe observations, newest first."""
        entries = [
            e for e in self._history
            if agent_id is None or e.agent_id == agent_id
        ]
        return list(reversed(entries[-limit:]))

    def trend(self, agent_id: AgentId) -> dict[str, Any]:
        """Outcome counts and status changes for one agent over the retained window."""
        entries = [e for e in self._history if e.agent_id == agent_id]
        outcomes = Counter(e.outcome.value for e in entries)
        latencies = [e.latency_ms for e in entries]
        return {
            "agent_id": agent_id,
            "checks": len(entries),
            "outcomes": {o.value: outcomes.get(o.value, 0) for o in ProbeOutcome},
            "transitions": sum(1 for e in entries if e.status != e.previous),
            "current": entries[-1].status.value if entries else None,
            "mean_latency_ms": sum(latencies) / len(latencies) if latencies else 0.0,
        }

    def report(self, recent: int = 20) -> HealthReport:
        agents = self._coordinator.list_agents()
        by_status = Counter(a.status.value for a in agents)
        if by_status[AgentStatus.UNHEALTHY.value] or by_status[AgentStatus.FAILED.value]:
            overall = "unhealthy"
        elif by_status[AgentStatus.DEGRADED.value]:
            overall = "degraded"
        else:
            overall = "healthy"
        return HealthReport(
            overall=overall,
            agents=agents,
            by_status={s.value: by_status.get(s.value, 0) for s in AgentStatus},
            recent=self.history(limit=recent),
            last_cycle_at=self._last_cycle_at,
        )

    @property
    def cycles(self) -> int:
        return self._cycles

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(topic, data, source=SOURCE)
