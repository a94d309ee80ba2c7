"""Shared test fixtures — scriptable fake agents, no real workers or timers."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from evocore.config import CoreSettings
from evocore.events.bus import EventBus
from evocore.runtime import CoordinationRuntime


class FakeAgent:
    """Agent whose probe answer and execute result are set by the test.

    ``healthy`` / ``result`` may be an exception instance to raise instead.
    Set ``hold`` to an asyncio.Event to keep executions running until it fires.
    """

    def __init__(self, healthy=True, result=True, probe_delay: float = 0.0):
        self.healthy = healthy
        self.result = result
        self.probe_delay = probe_delay
        self.hold: asyncio.Event | None = None
        self.probes = 0
        self.executed: list[str] = []

    async def probe(self):
        self.probes += 1
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)
        if isinstance(self.healthy, Exception):
            raise self.healthy
        return self.healthy

    async def execute(self, task):
        self.executed.append(task.id)
        if self.hold is not None:
            await self.hold.wait()
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class TriggerCollector:
    """Trigger sink that just keeps everything it is given."""

    def __init__(self):
        self.triggers = []

    async def __call__(self, trigger):
        self.triggers.append(trigger)
        return trigger


@pytest.fixture
def fake_agent():
    def _factory(**kwargs) -> FakeAgent:
        return FakeAgent(**kwargs)
    return _factory


@pytest.fixture
def collector():
    return TriggerCollector()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def test_settings():
    return CoreSettings(
        probe_timeout_seconds=0.05,
        execution_timeout_seconds=1.0,
        health_check_interval_seconds=0.01,
        trigger_drain_interval_seconds=0.01,
        harmony_interval_seconds=0.01,
    )


@pytest_asyncio.fixture
async def core(test_settings):
    runtime = CoordinationRuntime(test_settings)
    yield runtime
    await runtime.stop()
    await runtime.coordinator.join()
