"""Signal store interface and an in-memory implementation.

The store keeps two parallel read paths feeding the confidence engine:
a raw, append-only signal log queried by time, and per-memory aggregates
that old signals are rolled up into. Rolling up never deletes raw
signals; the aggregate's ``last_rollup`` watermark records which of them
it already counts. Per-project weights live here too.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from reasoning_bank.logging import get_logger
from reasoning_bank.models import ProjectWeights, Signal, SignalAggregate, utcnow

log = get_logger("signals")


@runtime_checkable
class SignalStore(Protocol):
    """Persistence for signals, aggregates and project weights."""

    def store_signal(self, signal: Signal) -> None:
        """Append one signal."""
        ...

    def get_recent_signals(self, memory_id: str, window: timedelta) -> list[Signal]:
        """Return the memory's signals stamped within [now - window, now]."""
        ...

    def get_signals_since(self, memory_id: str, since: datetime | None) -> list[Signal]:
        """Return the memory's signals stamped within [since, now], or all if since is None."""
        ...

    def get_aggregate(self, memory_id: str) -> SignalAggregate:
        """Return rolled-up counters (empty if none)."""
        ...

    def store_aggregate(self, aggregate: SignalAggregate) -> None:
        """Persist rolled-up counters."""
        ...

    def get_project_weights(self, project_id: str) -> ProjectWeights:
        """Return stored weights, or the uniform prior for an unknown project."""
        ...

    def store_project_weights(self, weights: ProjectWeights) -> None:
        """Persist weights (last writer wins; callers serialize per project)."""
        ...

    def rollup_old_signals(self, memory_id: str, cutoff: timedelta) -> int:
        """Count signals older than cutoff into the aggregate and advance its watermark.

        Raw signals are kept. Returns the number of signals newly counted.
        """
        ...


class InMemorySignalStore:
    """Thread-safe dict-backed signal store, for tests and ephemeral use."""

    def __init__(self):
        self._lock = threading.RLock()
        self._signals: dict[str, list[Signal]] = {}
        self._aggregates: dict[str, SignalAggregate] = {}
        self._weights: dict[str, ProjectWeights] = {}

    def store_signal(self, signal: Signal) -> None:
        with self._lock:
            self._signals.setdefault(signal.memory_id, []).append(signal)

    def _between(self, memory_id: str, start: datetime | None, end: datetime) -> list[Signal]:
        with self._lock:
            found = [
                s
                for s in self._signals.get(memory_id, [])
                if (start is None or start <= s.timestamp) and s.timestamp <= end
            ]
        return sorted(found, key=lambda s: s.timestamp)

    def get_recent_signals(self, memory_id: str, window: timedelta) -> list[Signal]:
        now = utcnow()
        return self._between(memory_id, now - window, now)

    def get_signals_since(self, memory_id: str, since: datetime | None) -> list[Signal]:
        return self._between(memory_id, since, utcnow())

    def get_aggregate(self, memory_id: str) -> SignalAggregate:
        with self._lock:
            agg = self._aggregates.get(memory_id)
            return replace(agg) if agg else SignalAggregate(memory_id=memory_id)

    def store_aggregate(self, aggregate: SignalAggregate) -> None:
        with self._lock:
            self._aggregates[aggregate.memory_id] = replace(aggregate)

    def get_project_weights(self, project_id: str) -> ProjectWeights:
        with self._lock:
            weights = self._weights.get(project_id)
            return replace(weights) if weights else ProjectWeights(project_id=project_id)

    def store_project_weights(self, weights: ProjectWeights) -> None:
        with self._lock:
            self._weights[weights.project_id] = replace(weights)

    def rollup_old_signals(self, memory_id: str, cutoff: timedelta) -> int:
        cutoff_time = utcnow() - cutoff
        with self._lock:
            agg = self._aggregates.get(memory_id) or SignalAggregate(memory_id=memory_id)
            watermark = agg.last_rollup
            if watermark is not None and watermark >= cutoff_time:
                return 0

            old = [
                s
                for s in self._signals.get(memory_id, [])
                if s.timestamp < cutoff_time and (watermark is None or s.timestamp >= watermark)
            ]
            if not old:
                return 0

            agg = replace(agg)
            for signal in old:
                agg.add_signal(signal.type, signal.positive)
                agg.project_id = agg.project_id or signal.project_id
            agg.last_rollup = cutoff_time
            self._aggregates[memory_id] = agg

        log.debug("Rolled up {} signals for memory id={}", len(old), memory_id)
        return len(old)
