"""Tests for the evocore CLI."""

import pytest
from typer.testing import CliRunner

from evocore.cli.main import app, run_demo
from evocore.config import CoreSettings
from evocore.types import TaskStatus

runner = CliRunner()


def test_config_lists_settings():
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    assert "log_level" in result.output


def test_demo_renders_tables():
    result = runner.invoke(app, ["demo", "--agents", "2", "--tasks", "4", "--seed", "3"])
    assert result.exit_code == 0, result.output
    assert "Agents" in result.output
    assert "Harmony" in result.output


@pytest.mark.asyncio
async def test_run_demo_leaves_nothing_running():
    runtime = await run_demo(agents=3, tasks=10, seed=11, config=CoreSettings(probe_timeout_seconds=0.5))

    assert len(runtime.coordinator) == 3
    assert len(runtime.orchestrator) == 10
    assert runtime.orchestrator.stats()["executing"] == 0
    for task in runtime.orchestrator.list_tasks(TaskStatus.QUEUED):
        assert task.dependencies  # only blocked tasks are left waiting
    assert runtime.harmony.latest() is not None
    assert runtime.get_queue_stats().pending == 0
