"""Tests for the evolution daemon."""

import asyncio

import pytest

from evocore.events.bus import EventBus
from evocore.evolution.daemon import EvolutionDaemon
from evocore.evolution.queue import TriggerQueue
from evocore.types import (
    EvolutionTrigger,
    TriggerKind,
    TriggerPayload,
    TriggerStatus,
)


def _trigger(ref_id: str) -> EvolutionTrigger:
    return EvolutionTrigger(
        kind=TriggerKind.PATTERN_DETECTED,
        payload=TriggerPayload(ref_type="pattern", ref_id=ref_id),
    )


def _always_rejects(trigger):
    raise RuntimeError("no template")


# ── EvolutionDaemon tests ──────────────────────────────────────


@pytest.mark.asyncio
async def test_run_once_drains_queue():
    queue = TriggerQueue()
    for i in range(3):
        await queue.enqueue(_trigger(f"p{i}"))
    daemon = EvolutionDaemon(queue)

    records = await daemon.run_once()

    assert len(records) == 3
    assert all(r.status == TriggerStatus.COMPLETED for r in records)
    assert len(daemon.history) == 3
    assert len(queue) == 0


@pytest.mark.asyncio
async def test_pauses_after_repeated_rejections():
    bus = EventBus()
    queue = TriggerQueue(handlers={TriggerKind.PATTERN_DETECTED: _always_rejects})
    for i in range(5):
        await queue.enqueue(_trigger(f"p{i}"))
    daemon = EvolutionDaemon(queue, event_bus=bus, max_failed_attempts=3, pause_duration=60)

    records = await daemon.run_once()

    assert len(records) == 3
    assert daemon.paused
    assert len(queue) == 2
    assert bus.history("evolution.daemon_paused")
    assert await daemon.run_once() == []

    daemon.resume()
    assert not daemon.paused
    assert len(await daemon.run_once()) == 2


@pytest.mark.asyncio
async def test_pause_expires():
    queue = TriggerQueue(handlers={TriggerKind.PATTERN_DETECTED: _always_rejects})
    for i in range(4):
        await queue.enqueue(_trigger(f"p{i}"))
    daemon = EvolutionDaemon(queue, max_failed_attempts=3, pause_duration=0.01)

    await daemon.run_once()
    await asyncio.sleep(0.02)
    assert not daemon.paused
    assert len(await daemon.run_once()) == 1


@pytest.mark.asyncio
async def test_a_success_resets_the_rejection_streak():
    calls = []

    def flaky(trigger):
        calls.append(trigger.payload.ref_id)
        if len(calls) % 2:
            raise RuntimeError("odd one out")
        return {}

    queue = TriggerQueue(handlers={TriggerKind.PATTERN_DETECTED: flaky})
    for i in range(6):
        await queue.enqueue(_trigger(f"p{i}"))
    daemon = EvolutionDaemon(queue, max_failed_attempts=2)

    await daemon.run_once()
    assert not daemon.paused
    assert len(calls) == 6


@pytest.mark.asyncio
async def test_daemon_start_stop():
    bus = EventBus()
    queue = TriggerQueue()
    daemon = EvolutionDaemon(queue, event_bus=bus, interval=0.01)

    await daemon.start()
    assert daemon.is_running
    await queue.enqueue(_trigger("p1"))
    await asyncio.sleep(0.05)
    await daemon.stop()

    assert not daemon.is_running
    assert len(queue) == 0
    assert len(daemon.history) == 1
    topics = [e.topic for e in bus.history("evolution.*")]
    assert "evolution.daemon_started" in topics
    assert "evolution.daemon_stopped" in topics


@pytest.mark.asyncio
async def test_daemon_double_start_is_noop():
    daemon = EvolutionDaemon(TriggerQueue(), interval=0.01)
    await daemon.start()
    await daemon.start()
    await daemon.stop()
    assert not daemon.is_running
