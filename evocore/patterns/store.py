"""Pattern Store — deduplicated memory of recurring (context, outcome) shapes.

Every observation is reduced to a canonical key/value projection:

    context={"capability": "build"}, outcome={"status": "failed"}
    -> {'context.capability="build"', 'outcome.status="failed"'}

An observation close enough to a stored record (Jaccard similarity over the
projections, >= 0.8 by default) counts as another occurrence of that record
and raises its confidence. Anything else becomes a new record. Once a record
has been seen often enough, the store raises a PATTERN_DETECTED evolution
trigger for it, exactly once.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, Iterator, Mapping

from evocore.events.bus import EventBus
from evocore.exceptions import DuplicateTriggerError
from evocore.types import (
    EvolutionTrigger,
    PatternRecord,
    PatternStatistics,
    Signature,
    TriggerKind,
    TriggerPayload,
    utcnow,
)

_logger = logging.getLogger(__name__)

Projection = frozenset[str]
SimilarityFn = Callable[[Projection, Projection], float]
TriggerSink = Callable[[EvolutionTrigger], Awaitable[Any]]

SOURCE = "pattern_store"


def _flatten(mapping: Mapping[str, Any], prefix: str) -> Iterator[tuple[str, Any]]:
    for key in sorted(mapping, key=str):
        value = mapping[key]
        path = f"{prefix}.{key}"
        if isinstance(value, Mapping) and value:
            yield from _flatten(value, path)
        else:
            yield path, value


def canonical_projection(context: Mapping[str, Any], outcome: Mapping[str, Any]) -> Projection:
    """Reduce an observation to a set of ``path=value`` strings."""
    items = set()
    for prefix, mapping in (("context", context), ("outcome", outcome)):
        for path, value in _flatten(mapping, prefix):
            items.add(f"{path}={json.dumps(value, sort_keys=True, default=str)}")
    return frozenset(items)


def signature_of(projection: Projection) -> Signature:
    digest = hashlib.sha256("\n".join(sorted(projection)).encode("utf-8"))
    return digest.hexdigest()[:16]


def jaccard(a: Projection, b: Projection) -> float:
    if not a and not b:
        return 1.0
    union = len(a | b)
    return len(a & b) / union if union else 0.0


def confidence_for(occurrences: int) -> float:
    return min(1.0, 0.5 + 0.1 * occurrences)


class PatternStore:
    """Similarity-deduplicated pattern records with confidence tracking."""

    def __init__(
        self,
        similarity: SimilarityFn | None = None,
        similarity_threshold: float = 0.8,
        occurrence_threshold: int = 3,
        confidence_threshold: float = 0.7,
        trigger_sink: TriggerSink | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._similarity = similarity or jaccard
        self._similarity_threshold = similarity_threshold
        self._occurrence_threshold = occurrence_threshold
        self._confidence_threshold = confidence_threshold
        self._trigger_sink = trigger_sink
        self._bus = event_bus
        self._records: dict[Signature, PatternRecord] = {}
        self._projections: dict[Signature, Projection] = {}
        self._observations = 0
        self._emitted = 0
        self._refused = 0
        self._lock = asyncio.Lock()

    async def record(
        self, context: Mapping[str, Any], outcome: Mapping[str, Any]
    ) -> PatternRecord:
        """Record one observation; returns the record it was folded into."""
        projection = canonical_projection(context, outcome)
        to_emit: PatternRecord | None = None

        async with self._lock:
            self._observations += 1
            match, score = self._best_match(projection)
            now = utcnow()
            if match is not None and score >= self._similarity_threshold:
                match.occurrences += 1
                match.confidence = confidence_for(match.occurrences)
                match.last_seen_at = now
                record = match
                created = False
            else:
                signature = signature_of(projection)
                record = PatternRecord(
                    signature=signature,
                    context=dict(context),
                    outcome=dict(outcome),
                    first_seen_at=now,
                    last_seen_at=now,
                )
                self._records[signature] = record
                self._projections[signature] = projection
                created = True

            if (
                record.occurrences >= self._occurrence_threshold
                and not record.trigger_emitted
            ):
                record.trigger_emitted = True
                to_emit = record.model_copy(deep=True)
            result = record.model_copy(deep=True)

        await self._emit("pattern.created" if created else "pattern.matched", {
            "signature": result.signature,
            "occurrences": result.occurrences,
            "confidence": result.confidence,
        })

        if to_emit is not None:
            await self._raise_trigger(to_emit)

        return result

    def find_by_similarity(
        self,
        context: Mapping[str, Any],
        outcome: Mapping[str, Any],
        threshold: float | None = None,
        limit: int = 10,
    ) -> list[tuple[PatternRecord, float]]:
        """Stored records similar to an observation, best first."""
        projection = canonical_projection(context, outcome)
        floor = self._similarity_threshold if threshold is None else threshold
        scored = []
        for signature, candidate in list(self._projections.items()):
            score = self._similarity(projection, candidate)
            if score >= floor:
                scored.append((self._records[signature], score))
        scored.sort(key=lambda pair: (-pair[1], pair[0].signature))
        return [(r.model_copy(deep=True), s) for r, s in scored[:limit]]

    def top_by_confidence(self, n: int = 10) -> list[PatternRecord]:
        records = sorted(
            list(self._records.values()),
            key=lambda r: (-r.confidence, -r.occurrences, r.signature),
        )
        return [r.model_copy(deep=True) for r in records[:n]]

    def get(self, signature: Signature) -> PatternRecord | None:
        record = self._records.get(signature)
        return record.model_copy(deep=True) if record else None

    def statistics(self) -> PatternStatistics:
        records = list(self._records.values())
        count = len(records)
        mean = sum(r.confidence for r in records) / count if count else 0.0
        return PatternStatistics(
            count=count,
            mean_confidence=mean,
            above_threshold=sum(
                1 for r in records if r.confidence >= self._confidence_threshold
            ),
            confidence_threshold=self._confidence_threshold,
            observations=self._observations,
            triggers_emitted=self._emitted,
            triggers_refused=self._refused,
        )

    def duplicate_reject_rate(self) -> float:
        """Share of raised triggers the queue refused as duplicates."""
        if self._emitted == 0:
            return 0.0
        return self._refused / self._emitted

    def __len__(self) -> int:
        return len(self._records)

    def _best_match(self, projection: Projection) -> tuple[PatternRecord | None, float]:
        best: PatternRecord | None = None
        best_score = -1.0
        for signature in sorted(self._projections):
            score = self._similarity(projection, self._projections[signature])
            if score > best_score:
                best, best_score = self._records[signature], score
        return best, best_score

    async def _raise_trigger(self, record: PatternRecord) -> None:
        self._emitted += 1
        if self._trigger_sink is None:
            return
        trigger = EvolutionTrigger(
            kind=TriggerKind.PATTERN_DETECTED,
            payload=TriggerPayload(
                ref_type="pattern",
                ref_id=record.signature,
                data={
                    "occurrences": record.occurrences,
                    "confidence": record.confidence,
                    "context": record.context,
                    "outcome": record.outcome,
                },
            ),
            priority=round(record.confidence * 10),
            source=SOURCE,
        )
        try:
            await self._trigger_sink(trigger)
        except DuplicateTriggerError:
            self._refused += 1
            _logger.info("Pattern trigger for %s already pending", record.signature)

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(topic, data, source=SOURCE)
