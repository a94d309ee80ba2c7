"""Tests for the event bus, driven by the subsystems that publish on it."""

import asyncio
import logging

import pytest

from evocore.coordination.coordinator import AgentCoordinator
from evocore.events.bus import EventBus
from evocore.tasks.orchestrator import TaskOrchestrator
from evocore.types import AgentStatus, TaskDefinition, TaskStatus


async def _healthy():
    return True


@pytest.fixture
def wired(bus):
    orch = TaskOrchestrator(event_bus=bus)
    coord = AgentCoordinator(orch, event_bus=bus)
    return orch, coord


async def _active(coord, agent_id="a1"):
    await coord.register(agent_id, ["build"], _healthy)
    await coord.apply_health(agent_id, AgentStatus.ACTIVE)


@pytest.mark.asyncio
async def test_task_lifecycle_topics_in_order(bus, wired):
    orch, coord = wired
    await _active(coord)
    seen = []

    async def on_task(event):
        seen.append(event.topic)

    bus.subscribe("task.*", on_task)
    task_id = await orch.submit(TaskDefinition(capability="build"))
    await orch.complete(task_id)

    assert seen == ["task.queued", "task.executing", "task.assigned", "task.completed"]
    completed = bus.history("task.completed")[0]
    assert completed.source == "task_orchestrator"
    assert completed.data["agent_id"] == "a1"


@pytest.mark.asyncio
async def test_subscribers_run_one_after_another(bus):
    calls = []

    async def slow(event):
        calls.append("slow:start")
        await asyncio.sleep(0.01)
        calls.append("slow:end")

    async def fast(event):
        calls.append("fast")

    bus.subscribe("harmony.*", slow)
    bus.subscribe("*", fast)
    await bus.emit("harmony.evaluated", {"overall": 0.9})
    await bus.emit("pattern.created")

    assert calls == ["slow:start", "slow:end", "fast", "fast"]


@pytest.mark.asyncio
async def test_failing_subscriber_is_logged_and_skipped(bus, wired, caplog):
    _, coord = wired
    changes = []

    async def broken(event):
        raise RuntimeError("dashboard offline")

    async def record(event):
        changes.append(event.data["status"])

    bus.subscribe("agent.status_changed", broken)
    bus.subscribe("agent.status_changed", record)
    await coord.register("a1", ["build"], _healthy)

    with caplog.at_level(logging.ERROR, logger="evocore.events.bus"):
        record_after = await coord.apply_health("a1", AgentStatus.DEGRADED)

    assert record_after.status == AgentStatus.DEGRADED
    assert changes == ["degraded"]
    assert "agent.status_changed" in caplog.text
    assert "dashboard offline" in caplog.text


@pytest.mark.asyncio
async def test_subscriber_may_submit_follow_up_work(bus, wired):
    orch, coord = wired
    await _active(coord)
    follow_ups = []

    async def on_completed(event):
        if not follow_ups:
            follow_ups.append(await orch.submit(TaskDefinition(capability="build")))

    bus.subscribe("task.completed", on_completed)
    first = await orch.submit(TaskDefinition(capability="build"))
    await asyncio.wait_for(orch.complete(first), 1.0)

    assert len(follow_ups) == 1
    assert orch.get(follow_ups[0]).status == TaskStatus.EXECUTING


@pytest.mark.asyncio
async def test_subscription_made_during_delivery_starts_with_next_event(bus):
    late = []

    async def late_handler(event):
        late.append(event.topic)

    async def subscribe_more(event):
        bus.subscribe("trigger.*", late_handler)

    bus.subscribe("trigger.enqueued", subscribe_more)
    await bus.emit("trigger.enqueued")
    assert late == []

    await bus.emit("trigger.completed")
    assert late == ["trigger.completed"]


@pytest.mark.asyncio
async def test_history_is_bounded_filtered_and_detached(bus):
    small = EventBus(history_limit=3)
    payload = {"trigger_id": "t0"}
    await small.emit("trigger.enqueued", payload, source="trigger_queue")
    payload["trigger_id"] = "changed"
    for i in range(1, 5):
        await small.emit("trigger.dropped" if i % 2 else "task.queued", {"n": i})

    assert [e.data["n"] for e in small.history()] == [4, 3, 2]
    assert [e.data["n"] for e in small.history("trigger.*")] == [3]
    assert small.history("trigger.*", limit=0) == []

    await bus.emit("trigger.enqueued", payload)
    payload["trigger_id"] = "again"
    assert bus.history()[0].data == {"trigger_id": "changed"}
