"""Tests for the task orchestrator — dependency gating and cascade release."""

import random

import pytest

from evocore.events.bus import EventBus
from evocore.exceptions import (
    DependencyNotSatisfiedError,
    NoEligibleAgentError,
    TaskNotFoundError,
    TaskStateError,
)
from evocore.tasks.orchestrator import TaskOrchestrator
from evocore.types import TaskDefinition, TaskStatus


def _def(capability="build", **payload) -> TaskDefinition:
    return TaskDefinition(capability=capability, payload=payload)


class RecordingDispatcher:
    """Dispatcher that remembers what it was offered; optionally starts it."""

    def __init__(self, orchestrator: TaskOrchestrator, start: bool = False, finish: bool = False):
        self.orchestrator = orchestrator
        self.start = start
        self.finish = finish
        self.offered: list[str] = []

    async def __call__(self, task_id):
        self.offered.append(task_id)
        if self.start:
            result = await self.orchestrator.begin_execution(task_id, "agent-1")
            assert not isinstance(result, DependencyNotSatisfiedError)
            if self.finish:
                await self.orchestrator.complete(task_id)


@pytest.fixture
def orch():
    return TaskOrchestrator()


# ── Submission ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_submit_queues_and_dispatches_ready_task(orch):
    dispatcher = RecordingDispatcher(orch)
    orch.set_dispatcher(dispatcher)

    task_id = await orch.submit(_def())

    assert orch.get(task_id).status == TaskStatus.QUEUED
    assert dispatcher.offered == [task_id]


@pytest.mark.asyncio
async def test_submit_with_unfinished_dependency_is_not_dispatched(orch):
    dispatcher = RecordingDispatcher(orch)
    orch.set_dispatcher(dispatcher)

    t1 = await orch.submit(_def())
    t2 = await orch.submit(_def(), dependencies=[t1])

    assert dispatcher.offered == [t1]
    assert not orch.is_ready(t2)


@pytest.mark.asyncio
async def test_submit_with_unknown_dependency(orch):
    with pytest.raises(TaskNotFoundError):
        await orch.submit(_def(), dependencies=["missing"])
    assert len(orch) == 0


@pytest.mark.asyncio
async def test_dispatch_errors_leave_task_queued(orch):
    async def no_agents(task_id):
        raise NoEligibleAgentError("nobody home")

    orch.set_dispatcher(no_agents)
    task_id = await orch.submit(_def())
    assert orch.get(task_id).status == TaskStatus.QUEUED


# ── Execution gate ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_begin_execution_refuses_when_dependency_pending(orch):
    t1 = await orch.submit(_def())
    t2 = await orch.submit(_def(), dependencies=[t1])

    result = await orch.begin_execution(t2, "agent-1")

    assert isinstance(result, DependencyNotSatisfiedError)
    assert result.pending == [t1]
    assert orch.get(t2).status == TaskStatus.QUEUED


@pytest.mark.asyncio
async def test_begin_execution_sets_agent(orch):
    t1 = await orch.submit(_def())
    task = await orch.begin_execution(t1, "agent-1")
    assert task.status == TaskStatus.EXECUTING
    assert task.assigned_agent == "agent-1"

    with pytest.raises(TaskStateError):
        await orch.begin_execution(t1, "agent-2")


@pytest.mark.asyncio
async def test_complete_requires_executing(orch):
    t1 = await orch.submit(_def())
    with pytest.raises(TaskStateError):
        await orch.complete(t1)


@pytest.mark.asyncio
async def test_unknown_task(orch):
    with pytest.raises(TaskNotFoundError):
        orch.get("nope")
    with pytest.raises(TaskNotFoundError):
        await orch.complete("nope")


# ── Cascade release ─────────────────────────────────────────────


@pytest.mark.asyncio
async def test_completion_releases_dependents_in_id_order(orch):
    dispatcher = RecordingDispatcher(orch)
    orch.set_dispatcher(dispatcher)
    root = await orch.submit(_def())
    children = [await orch.submit(_def(), dependencies=[root]) for _ in range(4)]

    await orch.begin_execution(root, "agent-1")
    dispatcher.offered.clear()
    await orch.complete(root)

    assert dispatcher.offered == sorted(children)


@pytest.mark.asyncio
async def test_dependent_waits_for_all_dependencies(orch):
    dispatcher = RecordingDispatcher(orch)
    orch.set_dispatcher(dispatcher)
    a = await orch.submit(_def())
    b = await orch.submit(_def())
    c = await orch.submit(_def(), dependencies=[a, b])

    await orch.begin_execution(a, "agent-1")
    await orch.complete(a)
    assert c not in dispatcher.offered

    await orch.begin_execution(b, "agent-1")
    await orch.complete(b)
    assert dispatcher.offered[-1] == c


@pytest.mark.asyncio
async def test_long_chain_cascades_without_recursion(orch):
    # Every dispatch completes immediately, which releases the next link.
    ids = []
    for _ in range(600):
        ids.append(await orch.submit(_def(), dependencies=ids[-1:]))

    dispatcher = RecordingDispatcher(orch, start=True, finish=True)
    orch.set_dispatcher(dispatcher)
    await orch.redispatch()

    assert dispatcher.offered == ids
    assert orch.stats()["completed"] == 600


@pytest.mark.asyncio
async def test_failed_dependency_keeps_dependents_queued(orch):
    dispatcher = RecordingDispatcher(orch)
    orch.set_dispatcher(dispatcher)
    t1 = await orch.submit(_def())
    t2 = await orch.submit(_def(), dependencies=[t1])

    await orch.begin_execution(t1, "agent-1")
    await orch.fail(t1, "compiler exploded")

    assert orch.get(t1).status == TaskStatus.FAILED
    assert orch.get(t1).error == "compiler exploded"
    assert orch.get(t2).status == TaskStatus.QUEUED
    assert t2 not in dispatcher.offered
    assert orch.ready_tasks() == []


# ── Cancellation & redispatch ───────────────────────────────────


@pytest.mark.asyncio
async def test_cancel_queued_and_executing(orch):
    queued = await orch.submit(_def())
    running = await orch.submit(_def())
    await orch.begin_execution(running, "agent-1")

    for task_id in (queued, running):
        task = await orch.cancel(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.error == "cancelled"
        assert task.cancel_requested

    with pytest.raises(TaskStateError):
        await orch.cancel(queued)


@pytest.mark.asyncio
async def test_ready_tasks_ordered_by_priority(orch):
    low = await orch.submit(_def(), priority=1)
    high = await orch.submit(_def(), priority=9)
    mid = await orch.submit(_def(), priority=5)

    assert [t.id for t in orch.ready_tasks()] == [high, mid, low]

    dispatcher = RecordingDispatcher(orch)
    orch.set_dispatcher(dispatcher)
    assert await orch.redispatch() == 3
    assert dispatcher.offered == [high, mid, low]


@pytest.mark.asyncio
async def test_finished_listeners_and_events():
    bus = EventBus()
    orch = TaskOrchestrator(event_bus=bus)
    seen = []

    async def broken(task):
        raise RuntimeError("listener bug")

    async def listener(task):
        seen.append((task.id, task.status))

    orch.on_finished(broken)
    orch.on_finished(listener)

    t1 = await orch.submit(_def())
    await orch.begin_execution(t1, "agent-1")
    await orch.complete(t1)

    assert seen == [(t1, TaskStatus.COMPLETED)]
    assert orch.completed_count == 1
    assert [e.topic for e in bus.history("task.*")][0] == "task.completed"


# ── Property: the dependency invariant holds on random DAGs ─────


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", [1, 7, 42, 1234])
async def test_random_dag_never_executes_before_dependencies(seed):
    rng = random.Random(seed)
    orch = TaskOrchestrator()
    started = []

    async def checking_dispatcher(task_id):
        result = await orch.begin_execution(task_id, "agent-1")
        assert not isinstance(result, DependencyNotSatisfiedError)
        for dep in orch.get(task_id).dependencies:
            assert orch.get(dep).status == TaskStatus.COMPLETED
        started.append(task_id)

    orch.set_dispatcher(checking_dispatcher)

    ids = []
    for _ in range(60):
        k = rng.randint(0, min(3, len(ids)))
        ids.append(await orch.submit(_def(), dependencies=rng.sample(ids, k)))

    while True:
        running = orch.list_tasks(TaskStatus.EXECUTING)
        if not running:
            break
        task = rng.choice(running)
        if rng.random() < 0.15:
            await orch.fail(task.id, "random failure")
        else:
            await orch.complete(task.id)

    for task in orch.list_tasks():
        if task.status == TaskStatus.QUEUED:
            # Only left behind because something upstream never completed.
            assert any(orch.get(d).status != TaskStatus.COMPLETED for d in task.dependencies)
        else:
            assert task.is_terminal
    assert len(started) == len(set(started))
