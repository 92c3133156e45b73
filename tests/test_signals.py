"""Tests for signal stores (in-memory and SQLite)."""

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta

import pytest

from reasoning_bank.config import Settings
from reasoning_bank.models import (
    ProjectWeights,
    SignalAggregate,
    SignalType,
    new_signal,
    utcnow,
)
from reasoning_bank.signals import InMemorySignalStore, SignalStore
from reasoning_bank.storage import Storage

WINDOW = timedelta(days=30)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each test runs against both signal store implementations."""
    if request.param == "memory":
        yield InMemorySignalStore()
    else:
        stor = Storage(Settings(db_path=tmp_path / "test.db", embedding_dim=8))
        yield stor
        stor.close()


def days_ago(days: float):
    return utcnow() - timedelta(days=days)


def test_implements_protocol(store):
    assert isinstance(store, SignalStore)


class TestRecentSignals:
    def test_store_and_read_back(self, store):
        signal = new_signal("m1", "p", SignalType.OUTCOME, False, session_id="s1")
        store.store_signal(signal)

        recent = store.get_recent_signals("m1", WINDOW)
        assert len(recent) == 1
        assert recent[0].id == signal.id
        assert recent[0].type == SignalType.OUTCOME
        assert recent[0].positive is False
        assert recent[0].session_id == "s1"
        assert recent[0].timestamp == signal.timestamp

    def test_window_excludes_old_signals(self, store):
        store.store_signal(new_signal("m1", "p", SignalType.EXPLICIT, True, timestamp=days_ago(40)))
        store.store_signal(new_signal("m1", "p", SignalType.EXPLICIT, False, timestamp=days_ago(2)))

        recent = store.get_recent_signals("m1", WINDOW)
        assert [s.positive for s in recent] == [False]

    def test_ordered_by_time(self, store):
        for days in (3, 1, 2):
            store.store_signal(
                new_signal("m1", "p", SignalType.USAGE, True, timestamp=days_ago(days))
            )
        recent = store.get_recent_signals("m1", WINDOW)
        assert [s.timestamp for s in recent] == sorted(s.timestamp for s in recent)

    def test_scoped_to_memory(self, store):
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, True))
        store.store_signal(new_signal("m2", "p", SignalType.USAGE, True))
        assert len(store.get_recent_signals("m1", WINDOW)) == 1
        assert store.get_recent_signals("unknown", WINDOW) == []

    def test_concurrent_appends(self, store):
        errors = []

        def append(n):
            try:
                store.store_signal(new_signal("m1", "p", SignalType.USAGE, n % 2 == 0))
            except Exception as e:
                errors.append(e)

        with ThreadPoolExecutor(max_workers=10) as executor:
            futures = [executor.submit(append, i) for i in range(50)]
            for f in as_completed(futures):
                pass

        assert errors == []
        assert len(store.get_recent_signals("m1", WINDOW)) == 50


class TestAggregates:
    def test_missing_aggregate_is_empty(self, store):
        agg = store.get_aggregate("m1")
        assert agg.memory_id == "m1"
        assert agg.total == 0
        assert agg.last_rollup is None

    def test_store_and_get(self, store):
        agg = SignalAggregate(memory_id="m1", project_id="p", explicit_pos=2, outcome_neg=5)
        store.store_aggregate(agg)

        loaded = store.get_aggregate("m1")
        assert loaded.counts(SignalType.EXPLICIT) == (2, 0)
        assert loaded.counts(SignalType.OUTCOME) == (0, 5)
        assert loaded.project_id == "p"


class TestProjectWeights:
    def test_unknown_project_gets_uniform_prior(self, store):
        assert store.get_project_weights("p") == ProjectWeights(project_id="p")

    def test_store_and_get(self, store):
        store.store_project_weights(
            ProjectWeights(project_id="p", usage_alpha=4.0, outcome_beta=2.0)
        )
        loaded = store.get_project_weights("p")
        assert loaded.usage_alpha == 4.0
        assert loaded.outcome_beta == 2.0
        assert loaded.explicit_alpha == 1.0

    def test_returned_weights_are_copies(self, store):
        weights = store.get_project_weights("p")
        weights.usage_alpha = 50.0
        assert store.get_project_weights("p").usage_alpha == 1.0

    def test_last_writer_wins(self, store):
        store.store_project_weights(ProjectWeights(project_id="p", usage_alpha=2.0))
        store.store_project_weights(ProjectWeights(project_id="p", usage_alpha=3.0))
        assert store.get_project_weights("p").usage_alpha == 3.0


class TestSignalsSince:
    def test_none_returns_everything(self, store):
        for days in (400, 40, 1):
            store.store_signal(
                new_signal("m1", "p", SignalType.EXPLICIT, True, timestamp=days_ago(days))
            )
        assert len(store.get_signals_since("m1", None)) == 3

    def test_lower_bound_is_inclusive(self, store):
        boundary = days_ago(10)
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, True, timestamp=days_ago(11)))
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, False, timestamp=boundary))
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, True))

        since = store.get_signals_since("m1", boundary)
        assert [s.positive for s in since] == [False, True]


class TestRollup:
    def test_counts_old_signals_into_aggregate(self, store):
        store.store_signal(new_signal("m1", "p", SignalType.EXPLICIT, True, timestamp=days_ago(45)))
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, False, timestamp=days_ago(31)))
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, True, timestamp=days_ago(1)))

        counted = store.rollup_old_signals("m1", WINDOW)

        assert counted == 2
        agg = store.get_aggregate("m1")
        assert agg.counts(SignalType.EXPLICIT) == (1, 0)
        assert agg.counts(SignalType.USAGE) == (0, 1)
        assert agg.project_id == "p"
        assert agg.last_rollup is not None
        assert agg.last_rollup <= utcnow() - WINDOW

    def test_raw_signals_are_kept(self, store):
        store.store_signal(new_signal("m1", "p", SignalType.OUTCOME, False, timestamp=days_ago(40)))

        assert store.rollup_old_signals("m1", WINDOW) == 1

        kept = store.get_recent_signals("m1", timedelta(days=3650))
        assert [(s.type, s.positive) for s in kept] == [(SignalType.OUTCOME, False)]
        agg = store.get_aggregate("m1")
        assert store.get_signals_since("m1", agg.last_rollup) == []

    def test_accumulates_across_rollups(self, store):
        store.store_aggregate(SignalAggregate(memory_id="m1", project_id="p", explicit_pos=3))
        store.store_signal(new_signal("m1", "p", SignalType.EXPLICIT, True, timestamp=days_ago(60)))

        assert store.rollup_old_signals("m1", WINDOW) == 1
        assert store.get_aggregate("m1").counts(SignalType.EXPLICIT) == (4, 0)

    def test_nothing_to_roll_up(self, store):
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, True))
        assert store.rollup_old_signals("m1", WINDOW) == 0
        agg = store.get_aggregate("m1")
        assert agg.total == 0
        assert agg.last_rollup is None

    def test_second_rollup_is_noop(self, store):
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, True, timestamp=days_ago(90)))
        assert store.rollup_old_signals("m1", WINDOW) == 1
        assert store.rollup_old_signals("m1", WINDOW) == 0
        assert store.get_aggregate("m1").total == 1

    def test_only_signals_past_watermark_are_added(self, store):
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, True, timestamp=days_ago(90)))
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, False, timestamp=days_ago(10)))

        assert store.rollup_old_signals("m1", WINDOW) == 1
        assert store.rollup_old_signals("m1", timedelta(days=5)) == 1

        assert store.get_aggregate("m1").counts(SignalType.USAGE) == (1, 1)

    def test_longer_cutoff_than_watermark_is_noop(self, store):
        store.store_signal(new_signal("m1", "p", SignalType.USAGE, True, timestamp=days_ago(90)))
        assert store.rollup_old_signals("m1", WINDOW) == 1
        assert store.rollup_old_signals("m1", timedelta(days=60)) == 0
        assert store.get_aggregate("m1").total == 1
