"""Data models for memories, feedback signals and learned project weights."""

from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

# Declared confidence levels
DEFAULT_CONFIDENCE = 0.5  # Neutral, set by new_memory()
EXPLICIT_RECORD_CONFIDENCE = 0.8  # Explicitly authored memories
DISTILLED_CONFIDENCE = 0.6  # Memories derived from session transcripts
MIN_CONFIDENCE = 0.7  # Search cutoff

# Description prefixes that mark a memory as distilled rather than authored
DISTILLED_MARKERS = (
    "Learned from session",
    "Anti-pattern learned from session",
    "Session summary",
)


# ========== Errors ==========


class ReasoningBankError(Exception):
    """Base class for all reasoning bank errors."""


class ValidationError(ReasoningBankError, ValueError):
    """Raised when input validation fails."""


class MemoryNotFoundError(ValidationError, LookupError):
    """Raised when a memory ID does not exist."""


class EmbeddingError(ReasoningBankError):
    """Raised when the embedder fails. The underlying error is chained."""


class VectorStoreError(ReasoningBankError):
    """Raised when the vector store fails. The underlying error is chained."""


class SignalStoreError(ReasoningBankError):
    """Raised when the signal store fails. The underlying error is chained."""


class ScrubberError(ReasoningBankError):
    """Raised when secret scrubbing fails. The underlying error is chained."""


# ========== Enums ==========


class Outcome(str, Enum):
    """Outcome of the action a memory describes."""

    SUCCESS = "success"  # Strategy that worked
    FAILURE = "failure"  # Anti-pattern to avoid


class MemoryState(str, Enum):
    """Lifecycle state of a memory."""

    ACTIVE = "active"
    ARCHIVED = "archived"  # Consolidated into another memory, hidden from search


class SignalType(str, Enum):
    """Source channel of a feedback signal."""

    EXPLICIT = "explicit"  # User rated the memory helpful/unhelpful
    USAGE = "usage"  # Memory was retrieved by a search
    OUTCOME = "outcome"  # Task the memory was used for succeeded or failed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_confidence(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


# ========== Memory ==========


@dataclass
class Memory:
    """A unit of recorded knowledge.

    ``confidence`` is the effective trust score that search filters on.
    ``declared_confidence`` is the value assigned at record time and is kept
    alongside so the origin of a score is never lost once signals start
    recomputing ``confidence``.
    """

    id: str
    project_id: str
    title: str
    content: str
    outcome: Outcome
    description: str = ""
    tags: list[str] = field(default_factory=list)
    confidence: float = DEFAULT_CONFIDENCE
    declared_confidence: float | None = None
    usage_count: int = 0
    state: MemoryState = MemoryState.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __setattr__(self, name, value):
        if name in ("id", "project_id") and name in self.__dict__:
            raise AttributeError(f"{name} is immutable after creation")
        if name == "confidence":
            value = clamp_confidence(value)
        super().__setattr__(name, value)

    @property
    def is_distilled(self) -> bool:
        """True if the description marks this memory as derived from a session."""
        return any(marker in self.description for marker in DISTILLED_MARKERS)

    def validate(self) -> None:
        """Check that all fields hold valid values.

        Raises:
            ValidationError: On the first invalid field.
        """
        if not self.id:
            raise ValidationError("memory ID cannot be empty")
        try:
            uuid.UUID(self.id)
        except ValueError as e:
            raise ValidationError(f"invalid memory ID format: {self.id!r}") from e
        _require(self.project_id, "project_id")
        _require(self.title, "title")
        _require(self.content, "content")
        if not isinstance(self.outcome, Outcome):
            raise ValidationError("outcome must be 'success' or 'failure'")
        if self.usage_count < 0:
            raise ValidationError("usage count cannot be negative")
        if not isinstance(self.state, MemoryState):
            raise ValidationError("state must be 'active' or 'archived'")

    def adjust_confidence(self, helpful: bool) -> None:
        """Step confidence without the Bayesian engine (+0.1 helpful, -0.15 unhelpful)."""
        self.confidence = self.confidence + (0.1 if helpful else -0.15)
        self.updated_at = utcnow()

    def to_metadata(self) -> dict:
        """Flatten into the metadata payload stored next to the vector."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "content": self.content,
            "description": self.description,
            "outcome": self.outcome.value,
            "confidence": self.confidence,
            "declared_confidence": self.declared_confidence,
            "usage_count": self.usage_count,
            "tags": list(self.tags),
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_metadata(cls, metadata: dict) -> Memory:
        """Rebuild a memory from a vector store metadata payload."""
        try:
            return cls(
                id=metadata["id"],
                project_id=metadata["project_id"],
                title=metadata["title"],
                content=metadata["content"],
                outcome=Outcome(metadata["outcome"]),
                description=metadata.get("description") or "",
                tags=list(metadata.get("tags") or []),
                confidence=float(metadata.get("confidence", DEFAULT_CONFIDENCE)),
                declared_confidence=metadata.get("declared_confidence"),
                usage_count=int(metadata.get("usage_count", 0)),
                state=MemoryState(metadata.get("state", MemoryState.ACTIVE.value)),
                created_at=datetime.fromisoformat(metadata["created_at"]),
                updated_at=datetime.fromisoformat(metadata["updated_at"]),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ValidationError(f"malformed memory metadata: {e}") from e


def _require(value: str | None, field_name: str) -> None:
    if not value or not value.strip():
        raise ValidationError(f"{field_name} cannot be empty")


def _normalize_tags(tags: list[str] | None) -> list[str]:
    """Strip, drop empties and de-duplicate while keeping order."""
    seen: dict[str, None] = {}
    for tag in tags or []:
        if tag and tag.strip():
            seen.setdefault(tag.strip(), None)
    return list(seen)


def new_memory(
    project_id: str,
    title: str,
    content: str,
    outcome: Outcome | str = Outcome.SUCCESS,
    tags: list[str] | None = None,
) -> Memory:
    """Create a memory with a fresh ID and neutral confidence.

    Raises:
        ValidationError: If project_id, title or content is empty, or the
            outcome is not 'success'/'failure'.
    """
    _require(project_id, "project_id")
    _require(title, "title")
    _require(content, "content")
    try:
        outcome = Outcome(outcome)
    except ValueError as e:
        raise ValidationError("outcome must be 'success' or 'failure'") from e

    now = utcnow()
    return Memory(
        id=str(uuid.uuid4()),
        project_id=project_id,
        title=title,
        content=content,
        outcome=outcome,
        tags=_normalize_tags(tags),
        confidence=DEFAULT_CONFIDENCE,
        created_at=now,
        updated_at=now,
    )


# ========== Signals ==========


@dataclass(frozen=True)
class Signal:
    """One feedback event about one memory."""

    id: str
    memory_id: str
    project_id: str
    type: SignalType
    positive: bool
    timestamp: datetime
    session_id: str | None = None


def new_signal(
    memory_id: str,
    project_id: str,
    signal_type: SignalType,
    positive: bool,
    session_id: str | None = None,
    timestamp: datetime | None = None,
) -> Signal:
    """Create a signal stamped with the current UTC time.

    Raises:
        ValidationError: If memory_id or project_id is empty.
    """
    _require(memory_id, "memory_id")
    _require(project_id, "project_id")
    if timestamp is not None and timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return Signal(
        id=str(uuid.uuid4()),
        memory_id=memory_id,
        project_id=project_id,
        type=SignalType(signal_type),
        positive=bool(positive),
        timestamp=timestamp or utcnow(),
        session_id=session_id or None,
    )


@dataclass
class SignalAggregate:
    """Lifetime signal counters for one memory, by type and polarity.

    ``last_rollup`` is the watermark: signals stamped before it are counted
    here, signals at or after it are read from the raw log. The raw rows are
    kept either way, so a signal is counted here or as a recent signal,
    never both.
    """

    memory_id: str
    project_id: str = ""
    explicit_pos: int = 0
    explicit_neg: int = 0
    usage_pos: int = 0
    usage_neg: int = 0
    outcome_pos: int = 0
    outcome_neg: int = 0
    last_rollup: datetime | None = None

    def add_signal(self, signal_type: SignalType, positive: bool) -> None:
        """Increment the counter for (signal_type, positive)."""
        attr = f"{SignalType(signal_type).value}_{'pos' if positive else 'neg'}"
        setattr(self, attr, getattr(self, attr) + 1)

    def counts(self, signal_type: SignalType) -> tuple[int, int]:
        """Return (positive, negative) counts for a signal type."""
        prefix = SignalType(signal_type).value
        return getattr(self, f"{prefix}_pos"), getattr(self, f"{prefix}_neg")

    @property
    def total(self) -> int:
        return sum(sum(self.counts(t)) for t in SignalType)


# ========== Project weights ==========


@dataclass
class ProjectWeights:
    """Per-project Beta(alpha, beta) reliability for each signal type.

    The mean alpha / (alpha + beta) estimates how well a signal channel
    predicts real helpfulness in this project. Parameters start at 1 (a
    uniform prior, reliability 0.5) and only ever grow.
    """

    project_id: str
    explicit_alpha: float = 1.0
    explicit_beta: float = 1.0
    usage_alpha: float = 1.0
    usage_beta: float = 1.0
    outcome_alpha: float = 1.0
    outcome_beta: float = 1.0

    def params(self, signal_type: SignalType) -> tuple[float, float]:
        prefix = SignalType(signal_type).value
        return getattr(self, f"{prefix}_alpha"), getattr(self, f"{prefix}_beta")

    def reliability(self, signal_type: SignalType) -> float:
        """Beta distribution mean for a signal type."""
        alpha, beta = self.params(signal_type)
        return alpha / (alpha + beta)

    def learn_from_feedback(self, outcome_was_helpful: bool, signals: list[Signal]) -> None:
        """Update per-type reliability once the true helpfulness is known.

        Each signal type present in ``signals`` casts one prediction: the
        majority polarity of its signals. A correct prediction bumps that
        type's alpha, a wrong one its beta. A type whose signals are evenly
        split abstains.
        """
        votes: dict[SignalType, Counter] = {}
        for signal in signals:
            votes.setdefault(signal.type, Counter())[signal.positive] += 1

        for signal_type, tally in votes.items():
            if tally[True] == tally[False]:
                continue
            predicted_helpful = tally[True] > tally[False]
            prefix = signal_type.value
            if predicted_helpful == outcome_was_helpful:
                attr = f"{prefix}_alpha"
            else:
                attr = f"{prefix}_beta"
            setattr(self, attr, getattr(self, attr) + 1.0)


# ========== Search types ==========


@dataclass
class SearchHit:
    """A raw vector store match."""

    id: str
    score: float
    metadata: dict


@dataclass
class CollectionInfo:
    """Summary of a vector store collection."""

    name: str
    point_count: int
    vector_size: int


@dataclass
class MemoryResult:
    """A memory returned by search, already scrubbed."""

    id: str
    title: str
    content: str
    confidence: float
    score: float
    outcome: Outcome
    tags: list[str] = field(default_factory=list)
