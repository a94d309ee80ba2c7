"""Evolution Trigger Queue — bounded, priority-ordered, at-most-once.

Triggers are served highest priority first; equal priorities come out in
the order they went in. A trigger that duplicates one still pending (same
kind, same payload reference) is refused, which keeps a single flapping
agent from flooding the queue.

When the queue is full the lowest-priority pending trigger (the newest one
among equals) is dropped and logged. Nothing is ever re-enqueued
automatically: a trigger whose handler raises is marked rejected.
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
from collections import Counter, deque
from typing import Any, Iterable

import structlog

from evocore.events.bus import EventBus
from evocore.events.journal import JournalSink
from evocore.evolution.handlers import TriggerHandler, default_handlers
from evocore.exceptions import (
    DuplicateTriggerError,
    InvalidTriggerError,
    QueueOverflowError,
)
from evocore.types import (
    EvolutionRecord,
    EvolutionTrigger,
    QueueStats,
    TriggerId,
    TriggerKind,
    TriggerStatus,
)

logger = structlog.get_logger()

SOURCE = "trigger_queue"

# The only source allowed to raise MANUAL_REQUEST triggers.
HARMONY_SOURCE = "harmony_controller"


class TriggerQueue:
    """Max-priority queue of pending evolution triggers."""

    def __init__(
        self,
        capacity: int = 1000,
        handlers: dict[TriggerKind, TriggerHandler] | None = None,
        journal: JournalSink | None = None,
        event_bus: EventBus | None = None,
        history_limit: int = 1000,
    ) -> None:
        self._capacity = capacity
        self._handlers = default_handlers()
        self._handlers.update(handlers or {})
        self._journal = journal
        self._bus = event_bus
        self._heap: list[tuple[int, int, TriggerId]] = []
        self._triggers: dict[TriggerId, EvolutionTrigger] = {}
        self._pending_keys: dict[tuple, TriggerId] = {}
        self._sequence = itertools.count(1)
        self._history: deque[EvolutionRecord] = deque(maxlen=history_limit)
        self._enqueued = 0
        self._completed = 0
        self._rejected = 0
        self._dropped = 0
        self._duplicates = 0
        self._offered: Counter[str] = Counter()
        self._refused: Counter[str] = Counter()
        self._lock = asyncio.Lock()

    def register_handler(self, kind: TriggerKind, handler: TriggerHandler) -> None:
        """Replace the handler for one trigger kind."""
        self._handlers[kind] = handler

    async def enqueue(self, trigger: EvolutionTrigger) -> EvolutionTrigger:
        """Add a trigger. Raises DuplicateTriggerError if an equivalent one is pending.

        Returns the stored trigger; if the queue overflowed and this very
        trigger was the lowest priority, it comes back REJECTED.
        """
        async with self._lock:
            if (
                trigger.kind == TriggerKind.MANUAL_REQUEST
                and trigger.source != HARMONY_SOURCE
            ):
                raise InvalidTriggerError(
                    f"manual requests are raised by {HARMONY_SOURCE}, not '{trigger.source}'"
                )
            key = trigger.dedup_key
            self._offered[trigger.source] += 1
            if key in self._pending_keys:
                self._duplicates += 1
                self._refused[trigger.source] += 1
                raise DuplicateTriggerError(
                    f"A {trigger.kind.value} trigger for "
                    f"{trigger.payload.ref_type} {trigger.payload.ref_id} is already pending"
                )
            stored = trigger.model_copy(update={
                "status": TriggerStatus.PENDING,
                "sequence": next(self._sequence),
            })
            self._triggers[stored.id] = stored
            self._pending_keys[key] = stored.id
            heapq.heappush(self._heap, (-stored.priority, stored.sequence, stored.id))
            self._enqueued += 1

            evicted = None
            if len(self._heap) > self._capacity:
                evicted = self._evict_lowest()
            result = stored.model_copy()

        if evicted is not None:
            overflow = QueueOverflowError(
                f"queue at capacity {self._capacity}; dropped trigger {evicted.id}"
            )
            logger.warning(
                "trigger_dropped",
                trigger_id=evicted.id,
                kind=evicted.kind.value,
                priority=evicted.priority,
                error=str(overflow),
            )
            await self._emit("trigger.dropped", {
                "trigger_id": evicted.id,
                "kind": evicted.kind.value,
                "priority": evicted.priority,
            })
        if evicted is None or evicted.id != result.id:
            await self._emit("trigger.enqueued", {
                "trigger_id": result.id,
                "kind": result.kind.value,
                "priority": result.priority,
                "source": result.source,
            })
        return result

    async def process_next(self) -> EvolutionRecord | None:
        """Handle the highest-priority pending trigger, if any."""
        async with self._lock:
            if not self._heap:
                return None
            _, _, trigger_id = heapq.heappop(self._heap)
            trigger = self._triggers.pop(trigger_id)
            self._pending_keys.pop(trigger.dedup_key, None)
            trigger.status = TriggerStatus.PROCESSING

        handler = self._handlers.get(trigger.kind)
        try:
            if handler is None:
                raise LookupError(f"No handler for {trigger.kind.value}")
            result = handler(trigger)
            if inspect.isawaitable(result):
                result = await result
            trigger.status = TriggerStatus.COMPLETED
            record = EvolutionRecord(
                trigger_id=trigger.id,
                kind=trigger.kind,
                status=trigger.status,
                result=dict(result or {}),
            )
        except Exception as e:
            trigger.status = TriggerStatus.REJECTED
            record = EvolutionRecord(
                trigger_id=trigger.id,
                kind=trigger.kind,
                status=trigger.status,
                error=f"{type(e).__name__}: {e}",
            )
            logger.warning(
                "trigger_rejected",
                trigger_id=trigger.id,
                kind=trigger.kind.value,
                error=record.error,
            )

        async with self._lock:
            if record.status == TriggerStatus.COMPLETED:
                self._completed += 1
            else:
                self._rejected += 1
            self._history.append(record)

        if self._journal is not None:
            try:
                await self._journal.write(record)
            except Exception as e:
                logger.error("journal_write_failed", trigger_id=trigger.id, error=str(e))

        await self._emit(f"trigger.{record.status.value}", {
            "trigger_id": trigger.id,
            "kind": trigger.kind.value,
            "error": record.error,
        })
        return record

    async def drain(self, limit: int | None = None) -> list[EvolutionRecord]:
        """Process pending triggers until the queue is empty (or ``limit`` is hit)."""
        records = []
        while limit is None or len(records) < limit:
            record = await self.process_next()
            if record is None:
                break
            records.append(record)
        return records

    # ── Reads ────────────────────────────────────────────────────

    def pending(self) -> list[EvolutionTrigger]:
        """Pending triggers in the order they will be processed."""
        return [self._triggers[tid].model_copy() for _, _, tid in sorted(self._heap)]

    def history(self, limit: int = 50) -> list[EvolutionRecord]:
        return list(reversed(list(self._history)[-limit:]))

    def stats(self) -> QueueStats:
        by_kind = Counter(t.kind.value for t in self._triggers.values())
        return QueueStats(
            pending=len(self._heap),
            capacity=self._capacity,
            enqueued=self._enqueued,
            completed=self._completed,
            rejected=self._rejected,
            dropped=self._dropped,
            duplicates_refused=self._duplicates,
            pending_by_kind={k.value: by_kind.get(k.value, 0) for k in TriggerKind},
        )

    def duplicate_reject_rate(self, exclude: Iterable[str] = ()) -> float:
        """Share of offered triggers refused because an equivalent one was pending.

        Sources named in ``exclude`` are left out of both counts.
        """
        skip = set(exclude)
        offered = sum(n for source, n in self._offered.items() if source not in skip)
        if not offered:
            return 0.0
        refused = sum(n for source, n in self._refused.items() if source not in skip)
        return refused / offered

    def __len__(self) -> int:
        return len(self._heap)

    # ── Internals ────────────────────────────────────────────────

    def _evict_lowest(self) -> EvolutionTrigger:
        # Largest (-priority, sequence) = lowest priority, newest among equals.
        victim = max(self._heap)
        self._heap.remove(victim)
        heapq.heapify(self._heap)
        trigger = self._triggers.pop(victim[2])
        self._pending_keys.pop(trigger.dedup_key, None)
        trigger.status = TriggerStatus.REJECTED
        self._dropped += 1
        return trigger

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(topic, data, source=SOURCE)
