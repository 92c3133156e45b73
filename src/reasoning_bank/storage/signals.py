"""Signal store mixin for Storage class."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone

from reasoning_bank.logging import get_logger
from reasoning_bank.models import (
    ProjectWeights,
    Signal,
    SignalAggregate,
    SignalType,
    utcnow,
)

log = get_logger("storage.signals")

AGGREGATE_COLUMNS = tuple(
    f"{t.value}_{polarity}" for t in SignalType for polarity in ("pos", "neg")
)
WEIGHT_COLUMNS = tuple(f"{t.value}_{param}" for t in SignalType for param in ("alpha", "beta"))


def _ts(value: datetime) -> str:
    """Fixed-width UTC ISO timestamp so string comparison orders correctly."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _row_to_signal(row: sqlite3.Row) -> Signal:
    return Signal(
        id=row["id"],
        memory_id=row["memory_id"],
        project_id=row["project_id"],
        type=SignalType(row["type"]),
        positive=bool(row["positive"]),
        timestamp=datetime.fromisoformat(row["timestamp"]),
        session_id=row["session_id"],
    )


class SignalStoreMixin:
    """Mixin implementing the SignalStore protocol for Storage."""

    def store_signal(self, signal: Signal) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO signals (id, memory_id, project_id, type, positive, session_id, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    signal.id,
                    signal.memory_id,
                    signal.project_id,
                    signal.type.value,
                    int(signal.positive),
                    signal.session_id,
                    _ts(signal.timestamp),
                ),
            )
        log.debug(
            "Stored {} signal for memory id={} (positive={})",
            signal.type.value,
            signal.memory_id,
            signal.positive,
        )

    def _signals_between(
        self, memory_id: str, start: datetime | None, end: datetime
    ) -> list[Signal]:
        query = "SELECT * FROM signals WHERE memory_id = ? AND timestamp <= ?"
        params: list = [memory_id, _ts(end)]
        if start is not None:
            query += " AND timestamp >= ?"
            params.append(_ts(start))
        with self._connection() as conn:
            rows = conn.execute(query + " ORDER BY timestamp", params).fetchall()
            return [_row_to_signal(row) for row in rows]

    def get_recent_signals(self, memory_id: str, window: timedelta) -> list[Signal]:
        now = utcnow()
        return self._signals_between(memory_id, now - window, now)

    def get_signals_since(self, memory_id: str, since: datetime | None) -> list[Signal]:
        return self._signals_between(memory_id, since, utcnow())

    def get_aggregate(self, memory_id: str) -> SignalAggregate:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM signal_aggregates WHERE memory_id = ?", (memory_id,)
            ).fetchone()
        if row is None:
            return SignalAggregate(memory_id=memory_id)
        return SignalAggregate(
            memory_id=memory_id,
            project_id=row["project_id"] or "",
            last_rollup=datetime.fromisoformat(row["last_rollup"]) if row["last_rollup"] else None,
            **{col: row[col] for col in AGGREGATE_COLUMNS},
        )

    def store_aggregate(self, aggregate: SignalAggregate) -> None:
        with self.transaction() as conn:
            self._write_aggregate(conn, aggregate)

    def _write_aggregate(self, conn: sqlite3.Connection, aggregate: SignalAggregate) -> None:
        columns = ", ".join(AGGREGATE_COLUMNS)
        placeholders = ", ".join("?" for _ in AGGREGATE_COLUMNS)
        conn.execute(
            f"""
            INSERT OR REPLACE INTO signal_aggregates
                (memory_id, project_id, {columns}, last_rollup)
            VALUES (?, ?, {placeholders}, ?)
            """,
            (
                aggregate.memory_id,
                aggregate.project_id,
                *(getattr(aggregate, col) for col in AGGREGATE_COLUMNS),
                _ts(aggregate.last_rollup) if aggregate.last_rollup else None,
            ),
        )

    def get_project_weights(self, project_id: str) -> ProjectWeights:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM project_weights WHERE project_id = ?", (project_id,)
            ).fetchone()
        if row is None:
            return ProjectWeights(project_id=project_id)
        return ProjectWeights(project_id=project_id, **{col: row[col] for col in WEIGHT_COLUMNS})

    def store_project_weights(self, weights: ProjectWeights) -> None:
        columns = ", ".join(WEIGHT_COLUMNS)
        placeholders = ", ".join("?" for _ in WEIGHT_COLUMNS)
        with self.transaction() as conn:
            conn.execute(
                f"""
                INSERT OR REPLACE INTO project_weights (project_id, {columns}, updated_at)
                VALUES (?, {placeholders}, CURRENT_TIMESTAMP)
                """,
                (weights.project_id, *(getattr(weights, col) for col in WEIGHT_COLUMNS)),
            )
        log.debug("Stored project weights for project={}", weights.project_id)

    def rollup_old_signals(self, memory_id: str, cutoff: timedelta) -> int:
        """Count signals older than cutoff into the aggregate and advance its watermark.

        Raw signal rows are kept; only signals between the previous watermark
        and the cutoff are added.
        """
        cutoff_time = utcnow() - cutoff
        with self.transaction() as conn:
            aggregate = self.get_aggregate(memory_id)
            watermark = aggregate.last_rollup
            if watermark is not None and watermark >= cutoff_time:
                return 0

            query = "SELECT * FROM signals WHERE memory_id = ? AND timestamp < ?"
            params: list = [memory_id, _ts(cutoff_time)]
            if watermark is not None:
                query += " AND timestamp >= ?"
                params.append(_ts(watermark))
            rows = conn.execute(query, params).fetchall()
            if not rows:
                return 0

            for row in rows:
                signal = _row_to_signal(row)
                aggregate.add_signal(signal.type, signal.positive)
                aggregate.project_id = aggregate.project_id or signal.project_id
            aggregate.last_rollup = cutoff_time

            self._write_aggregate(conn, aggregate)

        log.info("Rolled up {} signals for memory id={}", len(rows), memory_id)
        return len(rows)
