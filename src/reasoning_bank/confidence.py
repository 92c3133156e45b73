"""Bayesian confidence scoring from feedback signals.

Each memory's trust is the mean of a Beta(alpha, beta) distribution that
starts at the uniform prior (1, 1). Every signal adds evidence to alpha
(positive) or beta (negative), scaled by how reliable that signal channel
has proven to be in the memory's project.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Iterable

from reasoning_bank.logging import get_logger
from reasoning_bank.models import (
    ProjectWeights,
    Signal,
    SignalAggregate,
    SignalType,
    clamp_confidence,
)

if TYPE_CHECKING:
    from reasoning_bank.signals import SignalStore

log = get_logger("confidence")


def compute_confidence_from_hybrid(
    aggregate: SignalAggregate | None,
    recent_signals: Iterable[Signal],
    weights: ProjectWeights,
) -> float:
    """Compute confidence from rolled-up counts plus recent raw signals.

    Pure and deterministic. With no evidence the result is exactly 0.5.

    Args:
        aggregate: Lifetime counters for signals already rolled out of the
            recent window, or None.
        recent_signals: Raw signals not yet counted by the aggregate.
            Treated as evidence in addition to it.
        weights: Project reliability per signal type.

    Returns:
        alpha / (alpha + beta), in [0, 1].
    """
    reliability = {t: weights.reliability(t) for t in SignalType}

    alpha = 1.0
    beta = 1.0

    if aggregate is not None:
        for signal_type, w in reliability.items():
            pos, neg = aggregate.counts(signal_type)
            alpha += pos * w
            beta += neg * w

    for signal in recent_signals:
        w = reliability[signal.type]
        if signal.positive:
            alpha += w
        else:
            beta += w

    return clamp_confidence(alpha / (alpha + beta))


class ConfidenceCalculator:
    """Loads a memory's evidence from a signal store and scores it.

    Signals that have aged out of the recent window are rolled up into the
    aggregate first, so old evidence keeps counting.
    """

    def __init__(self, store: SignalStore, recent_window: timedelta = timedelta(days=30)):
        self.store = store
        self.recent_window = recent_window

    def compute_confidence(self, memory_id: str, project_id: str) -> float:
        """Score a memory from its aggregate, recent signals and project weights."""
        self.store.rollup_old_signals(memory_id, self.recent_window)
        weights = self.store.get_project_weights(project_id)
        aggregate = self.store.get_aggregate(memory_id)
        recent = self.store.get_signals_since(memory_id, aggregate.last_rollup)
        confidence = compute_confidence_from_hybrid(aggregate, recent, weights)
        log.debug(
            "Computed confidence for memory id={}: {:.3f} (aggregate={}, recent={})",
            memory_id,
            confidence,
            aggregate.total,
            len(recent),
        )
        return confidence
