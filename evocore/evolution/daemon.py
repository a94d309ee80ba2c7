"""Evolution daemon — drains the trigger queue in the background.

Runs the queue's handlers on a short fixed interval. If the handlers keep
rejecting triggers the daemon backs off for a while instead of burning
through the whole queue.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

import structlog

from evocore.events.bus import EventBus
from evocore.evolution.queue import TriggerQueue
from evocore.types import EvolutionRecord, TriggerStatus

logger = structlog.get_logger()


class EvolutionDaemon:
    """Background daemon that processes pending evolution triggers."""

    def __init__(
        self,
        queue: TriggerQueue,
        event_bus: EventBus | None = None,
        interval: float = 1.0,
        max_failed_attempts: int = 3,
        pause_duration: float = 3600.0,
        history_limit: int = 1000,
    ) -> None:
        self._queue = queue
        self._event_bus = event_bus
        self._interval = interval
        self._max_failed = max_failed_attempts
        self._pause_duration = pause_duration
        self._consecutive_rejections = 0
        self._paused_until: float | None = None
        self._running = False
        self._task: asyncio.Task | None = None
        self._history: deque[EvolutionRecord] = deque(maxlen=history_limit)

    async def start(self) -> None:
        """Start the daemon loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="evolution-daemon")
        await self._emit("evolution.daemon_started", {"interval_seconds": self._interval})

    async def stop(self) -> None:
        """Stop the daemon."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._emit("evolution.daemon_stopped", {})

    async def run_once(self) -> list[EvolutionRecord]:
        """Process pending triggers until the queue is empty or the daemon pauses."""
        records: list[EvolutionRecord] = []
        while not self.paused:
            record = await self._queue.process_next()
            if record is None:
                break
            records.append(record)
            self._history.append(record)
            if record.status == TriggerStatus.REJECTED:
                self._consecutive_rejections += 1
                if self._consecutive_rejections >= self._max_failed:
                    await self._pause()
            else:
                self._consecutive_rejections = 0
        return records

    def resume(self) -> None:
        """Lift a pause early."""
        self._paused_until = None
        self._consecutive_rejections = 0

    @property
    def paused(self) -> bool:
        if self._paused_until is None:
            return False
        if asyncio.get_running_loop().time() >= self._paused_until:
            self._paused_until = None
            return False
        return True

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def history(self) -> list[EvolutionRecord]:
        return list(self._history)

    async def _pause(self) -> None:
        self._paused_until = asyncio.get_running_loop().time() + self._pause_duration
        logger.warning(
            "evolution_daemon_paused",
            rejections=self._consecutive_rejections,
            pause_seconds=self._pause_duration,
        )
        self._consecutive_rejections = 0
        await self._emit("evolution.daemon_paused", {"pause_seconds": self._pause_duration})

    async def _run_loop(self) -> None:
        """Main daemon loop — drains the queue every interval."""
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("evolution_daemon_cycle_failed", error=str(e))
                await self._emit("evolution.daemon_error", {"error": str(e)})

            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        """Emit an event on the bus."""
        if self._event_bus:
            await self._event_bus.emit(topic, data, source="evolution_daemon")
