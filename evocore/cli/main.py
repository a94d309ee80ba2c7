"""evocore CLI — developer tooling around the coordination core.

`evocore demo` runs a short simulated session end to end and prints what
the core ended up with. `evocore config` shows the effective settings
(environment variables use the EVOCORE_ prefix).
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Optional

import structlog
import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from evocore.config import CoreSettings, settings
from evocore.runtime import CoordinationRuntime
from evocore.types import AgentStatus, HarmonyStatus, Task, TaskDefinition

app = typer.Typer(
    name="evocore",
    help="evocore -- agent coordination and evolution scheduling core.",
    no_args_is_help=True,
)
console = Console()

CAPABILITIES = ["build", "test", "deploy"]

_STATUS_STYLE = {
    AgentStatus.ACTIVE: "green",
    AgentStatus.DEGRADED: "yellow",
    AgentStatus.UNHEALTHY: "red",
    AgentStatus.FAILED: "bold red",
    AgentStatus.STOPPED: "dim",
    AgentStatus.INITIALIZING: "cyan",
}

_HARMONY_STYLE = {
    HarmonyStatus.BALANCED: "green",
    HarmonyStatus.UNBALANCED: "yellow",
    HarmonyStatus.CRITICAL: "red",
}


def configure_logging(level: str) -> None:
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, format="%(levelname)s %(name)s: %(message)s")
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(numeric))


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override EVOCORE_LOG_LEVEL"),
):
    """Coordinate agents and schedule evolution work."""
    configure_logging(log_level or settings.log_level)


def _make_agent(rng: random.Random, flaky: bool):
    async def probe():
        return rng.random() > 0.5 if flaky else True

    async def execute(task: Task):
        await asyncio.sleep(0)
        return rng.random() > 0.2

    return probe, execute


async def run_demo(
    agents: int = 3, tasks: int = 8, seed: int = 7, config: CoreSettings | None = None,
) -> CoordinationRuntime:
    """Drive one simulated session step by step, without background loops."""
    rng = random.Random(seed)
    runtime = CoordinationRuntime(config or settings)

    for i in range(agents):
        capabilities = {CAPABILITIES[i % len(CAPABILITIES)], CAPABILITIES[(i + 1) % len(CAPABILITIES)]}
        probe, execute = _make_agent(rng, flaky=(i == agents - 1 and agents > 1))
        await runtime.register(f"agent-{i + 1}", capabilities, probe, execute)
    await runtime.health.check_all()

    submitted: list[str] = []
    for i in range(tasks):
        deps = [d for d in submitted if rng.random() < 0.25][:2]
        task_id = await runtime.submit(
            TaskDefinition(capability=rng.choice(CAPABILITIES), payload={"step": i}),
            dependencies=deps,
            priority=rng.randint(0, 5),
        )
        submitted.append(task_id)

    for _ in range(3):
        await runtime.coordinator.join()
        await runtime.health.check_all()
    await runtime.coordinator.join()

    await runtime.harmony.evaluate()
    await runtime.coordinator.join()
    await runtime.queue.drain()
    return runtime


def _render(runtime: CoordinationRuntime) -> None:
    agents = Table(title="Agents")
    agents.add_column("ID", style="bold")
    agents.add_column("Status")
    agents.add_column("Capabilities")
    agents.add_column("Done", justify="right")
    agents.add_column("Failed", justify="right")
    agents.add_column("Success", justify="right")
    for record in runtime.get_health_report().agents:
        style = _STATUS_STYLE.get(record.status, "white")
        agents.add_row(
            record.id,
            f"[{style}]{record.status.value}[/{style}]",
            ", ".join(sorted(record.capabilities)),
            str(record.metrics.tasks_completed),
            str(record.metrics.tasks_failed),
            f"{record.metrics.success_rate:.0%}",
        )
    console.print(agents)

    counts = runtime.orchestrator.stats()
    tasks = Table(title="Tasks")
    for status in counts:
        tasks.add_column(status, justify="right")
    tasks.add_row(*(str(c) for c in counts.values()))
    console.print(tasks)

    stats = runtime.get_queue_stats()
    queue = Table(title="Evolution Triggers")
    queue.add_column("Pending", justify="right")
    queue.add_column("Enqueued", justify="right")
    queue.add_column("Completed", justify="right")
    queue.add_column("Rejected", justify="right")
    queue.add_column("Dropped", justify="right")
    queue.add_column("Duplicates", justify="right")
    queue.add_row(
        str(stats.pending), str(stats.enqueued), str(stats.completed),
        str(stats.rejected), str(stats.dropped), str(stats.duplicates_refused),
    )
    console.print(queue)

    snapshot = runtime.harmony.latest() or runtime.get_harmony_snapshot()
    style = _HARMONY_STYLE[snapshot.status]
    console.print(Panel(
        f"Overall:   [{style}]{snapshot.overall:.2f} ({snapshot.status.value})[/{style}]\n"
        f"Patterns:  {snapshot.pattern_score:.2f}\n"
        f"Tasks:     {snapshot.task_score:.2f}\n"
        f"Agents:    {snapshot.agent_score:.2f}\n"
        f"Weakest:   {snapshot.weakest}",
        title="Harmony",
        border_style="cyan",
    ))


@app.command()
def demo(
    agents: int = typer.Option(3, "--agents", "-a", min=1, help="Number of simulated agents"),
    tasks: int = typer.Option(8, "--tasks", "-t", min=0, help="Number of tasks to submit"),
    seed: int = typer.Option(7, "--seed", help="Random seed for the simulation"),
):
    """Run a short simulated session and show the resulting state."""
    runtime = asyncio.run(run_demo(agents=agents, tasks=tasks, seed=seed))
    _render(runtime)


@app.command("config")
def show_config():
    """Show the effective settings."""
    table = Table(title="evocore settings")
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    table.add_column("Environment variable", style="dim")
    for name, value in settings.model_dump().items():
        table.add_row(name, str(value), f"EVOCORE_{name.upper()}")
    console.print(table)


if __name__ == "__main__":
    app()
