"""Merge snapshots from concurrent metric sources into one reading per tick."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta

from coga.errors import StaleAggregate
from coga.models.metrics import MetricSnapshot, mean_snapshot

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 15.0


@dataclass(frozen=True, slots=True)
class AggregateWindowEntry:
    source_id: str
    metrics: MetricSnapshot
    received_at: datetime


class MetricAggregator:
    """Latest snapshot per source, averaged across sources that are still live.

    Upserts and reads share one lock and reads work on a copy of the window,
    so a source reporting mid-aggregation never changes the result.
    """

    def __init__(self, *, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._ttl = timedelta(seconds=ttl_seconds)
        self._entries: dict[str, AggregateWindowEntry] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def record(self, source_id: str, snapshot: MetricSnapshot, now: datetime) -> AggregateWindowEntry:
        if not source_id:
            raise ValueError("source_id must be a non-empty string")
        entry = AggregateWindowEntry(source_id=source_id, metrics=snapshot, received_at=now)
        with self._lock:
            is_new = source_id not in self._entries
            self._entries[source_id] = entry
        if is_new:
            logger.debug("Metric source joined: %s", source_id)
        return entry

    def compute_aggregate(self, now: datetime) -> MetricSnapshot | None:
        """Mean over live sources, or None when every source went quiet."""
        live = self._sweep(now)
        if not live:
            return None
        return mean_snapshot([entry.metrics for entry in live], timestamp=now)

    def require_aggregate(self, now: datetime) -> MetricSnapshot:
        aggregate = self.compute_aggregate(now)
        if aggregate is None:
            raise StaleAggregate(f"no metric source reported in the last {self._ttl.total_seconds():g}s")
        return aggregate

    def live_sources(self, now: datetime) -> list[str]:
        return sorted(entry.source_id for entry in self._sweep(now))

    def forget(self, source_id: str) -> bool:
        with self._lock:
            removed = self._entries.pop(source_id, None) is not None
        if removed:
            logger.debug("Metric source closed: %s", source_id)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _sweep(self, now: datetime) -> list[AggregateWindowEntry]:
        with self._lock:
            expired = [
                source_id
                for source_id, entry in self._entries.items()
                if now - entry.received_at > self._ttl
            ]
            for source_id in expired:
                del self._entries[source_id]
            live = list(self._entries.values())
        if expired:
            logger.debug("Evicted %d stale metric sources: %s", len(expired), ", ".join(expired))
        return live


__all__ = ["AggregateWindowEntry", "DEFAULT_TTL_SECONDS", "MetricAggregator"]
