"""Evolution Journal — append-only sink for evolution records.

The core only ever writes here; it never reads the journal back to make
decisions. Where the records end up (a file, a database, a docs pipeline)
is up to whoever supplies the sink.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Protocol, runtime_checkable

from evocore.types import EvolutionRecord, TriggerKind, TriggerStatus


@runtime_checkable
class JournalSink(Protocol):
    async def write(self, record: EvolutionRecord) -> None:
        ...


class MemoryJournal:
    """In-process journal with a bounded retention window."""

    def __init__(self, limit: int = 1000) -> None:
        self._entries: deque[EvolutionRecord] = deque(maxlen=limit)
        self._written = 0
        self._lock = asyncio.Lock()

    async def write(self, record: EvolutionRecord) -> None:
        """Append a record (immutable append)."""
        async with self._lock:
            self._entries.append(record)
            self._written += 1

    def entries(
        self,
        kind: TriggerKind | None = None,
        status: TriggerStatus | None = None,
        limit: int = 50,
    ) -> list[EvolutionRecord]:
        """Recent records, newest first."""
        result = [
            r for r in self._entries
            if (kind is None or r.kind == kind)
            and (status is None or r.status == status)
        ]
        return list(reversed(result[-limit:]))

    def count(self) -> int:
        """Total records written, including ones rotated out of the window."""
        return self._written

    def __len__(self) -> int:
        return len(self._entries)
