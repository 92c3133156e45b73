"""ReasoningBank service: record, search and feedback over trusted memories.

Wires the vector store, embedder and scrubber to the signal store and
confidence engine. Memories below the minimum confidence are never
returned by search; feedback recomputes a memory's confidence from its
signal history and teaches the project which signal channels to trust.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import timedelta
from typing import Iterator

from reasoning_bank.config import Settings, get_settings
from reasoning_bank.confidence import ConfidenceCalculator
from reasoning_bank.embeddings import Embedder, create_embedder
from reasoning_bank.logging import get_logger
from reasoning_bank.models import (
    DEFAULT_CONFIDENCE,
    EmbeddingError,
    Memory,
    MemoryNotFoundError,
    MemoryResult,
    MemoryState,
    ScrubberError,
    SignalStoreError,
    SignalType,
    ValidationError,
    VectorStoreError,
    new_signal,
    utcnow,
)
from reasoning_bank.scrubber import Scrubber
from reasoning_bank.signals import InMemorySignalStore, SignalStore
from reasoning_bank.vectorstore import (
    InMemoryVectorStore,
    IsolationMode,
    VectorStore,
    collection_name,
    is_memory_collection,
    project_filter,
)

log = get_logger("service")


class ReasoningBankService:
    """Orchestrates memory storage, retrieval and confidence updates.

    Thread-safe. Confidence read-modify-write is serialized per memory and
    project weight learning per project; record and search take no
    service-level locks.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        signal_store: SignalStore,
        embedder: Embedder,
        scrubber: Scrubber | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.vector_store = vector_store
        self.signal_store = signal_store
        self.embedder = embedder
        self.scrubber = scrubber or Scrubber(enabled=self.settings.scrub_enabled)
        self.recent_window = timedelta(days=self.settings.recent_signal_window_days)
        self.learning_window = timedelta(hours=self.settings.learning_window_hours)
        self.calculator = ConfidenceCalculator(signal_store, self.recent_window)

        self._registry_lock = threading.Lock()
        self._memory_locks: dict[str, threading.Lock] = {}
        self._project_locks: dict[str, threading.Lock] = {}

    # ========== Locking ==========

    @contextmanager
    def _locked(self, registry: dict[str, threading.Lock], key: str) -> Iterator[None]:
        with self._registry_lock:
            lock = registry.setdefault(key, threading.Lock())
        with lock:
            yield

    def _memory_lock(self, memory_id: str):
        return self._locked(self._memory_locks, memory_id)

    def _project_lock(self, project_id: str):
        return self._locked(self._project_locks, project_id)

    # ========== Helpers ==========

    def _collection(self, project_id: str) -> str:
        return collection_name(project_id, self.vector_store.isolation)

    def _scrub(self, text: str, operation: str) -> str:
        try:
            return self.scrubber.scrub(text).scrubbed
        except Exception as e:
            raise ScrubberError(f"{operation}: scrubbing content: {e}") from e

    def _validate_memory(self, memory: Memory | None) -> None:
        if memory is None:
            raise ValidationError("memory cannot be None")
        memory.validate()
        if len(memory.content) > self.settings.max_content_length:
            raise ValidationError(
                f"content too long: {len(memory.content)} chars "
                f"(max: {self.settings.max_content_length})"
            )
        if len(memory.tags) > self.settings.max_tags:
            raise ValidationError(
                f"Too many tags: {len(memory.tags)} (max: {self.settings.max_tags})"
            )

    def _find(self, memory_id: str) -> tuple[Memory, str]:
        """Locate a memory across collections. Returns (memory, collection)."""
        if not memory_id or not memory_id.strip():
            raise ValidationError("memory_id cannot be empty")
        try:
            collections = [c for c in self.vector_store.list_collections() if is_memory_collection(c)]
            for collection in collections:
                metadata = self.vector_store.get(collection, memory_id)
                if metadata is not None:
                    return Memory.from_metadata(metadata), collection
        except ValidationError:
            raise
        except Exception as e:
            raise VectorStoreError(f"get: looking up memory {memory_id}: {e}") from e
        raise MemoryNotFoundError(f"memory not found: {memory_id}")

    def _save_metadata(self, memory: Memory, collection: str, operation: str) -> None:
        try:
            updated = self.vector_store.update_metadata(collection, memory.id, memory.to_metadata())
        except Exception as e:
            raise VectorStoreError(f"{operation}: updating memory {memory.id}: {e}") from e
        if not updated:
            raise MemoryNotFoundError(f"memory not found: {memory.id}")

    # ========== Record ==========

    def record(self, memory: Memory, explicit: bool = True) -> Memory:
        """Scrub, embed and store a memory.

        An explicitly authored memory still carrying the neutral default
        confidence is bumped to the explicit-record level. Distilled memories
        and caller-supplied confidences are kept as given. The stored value
        is also kept as the memory's declared confidence.

        The caller's memory is left untouched; the stored copy is returned.

        Raises:
            ValidationError: Invalid memory; nothing is stored.
            ScrubberError, EmbeddingError, VectorStoreError: Collaborator failure.
        """
        self._validate_memory(memory)

        confidence = memory.confidence
        if explicit and not memory.is_distilled and confidence in (DEFAULT_CONFIDENCE, 0.0):
            confidence = self.settings.explicit_record_confidence

        stored = replace(
            memory,
            title=self._scrub(memory.title, "record"),
            content=self._scrub(memory.content, "record"),
            description=self._scrub(memory.description, "record"),
            tags=list(memory.tags),
            confidence=confidence,
            declared_confidence=confidence,
            updated_at=utcnow(),
        )

        try:
            vector = self.embedder.embed_documents([f"{stored.title}\n\n{stored.content}"])[0]
        except Exception as e:
            raise EmbeddingError(f"record: embedding memory {stored.id}: {e}") from e

        collection = self._collection(stored.project_id)
        try:
            if not self.vector_store.collection_exists(collection):
                self.vector_store.create_collection(collection, self.embedder.dimension)
            self.vector_store.upsert(collection, stored.id, vector, stored.to_metadata())
        except Exception as e:
            raise VectorStoreError(f"record: storing memory {stored.id}: {e}") from e

        log.info(
            "Recorded memory id={} project={} confidence={:.2f}",
            stored.id,
            stored.project_id,
            stored.confidence,
        )
        return stored

    # ========== Search ==========

    def _fetch_limit(self, limit: int) -> int:
        """Over-provision candidates to survive post-filtering."""
        return min(
            max(limit * 3, self.settings.search_overfetch_min),
            self.settings.search_overfetch_max,
        )

    def search(self, project_id: str, query: str, limit: int | None = None) -> list[MemoryResult]:
        """Semantic search gated by minimum confidence.

        Returns at most ``limit`` scrubbed results in similarity order. An
        unknown project or a query with no qualifying match yields [].
        Candidates are fetched in growing pages until enough pass the
        confidence cut or the collection is exhausted.
        """
        if not project_id or not project_id.strip():
            raise ValidationError("project_id cannot be empty")
        if not query or not query.strip():
            raise ValidationError("query cannot be empty")
        if limit is None or limit <= 0:
            limit = self.settings.default_search_limit
        limit = min(limit, self.settings.max_search_limit)

        collection = self._collection(project_id)
        try:
            if not self.vector_store.collection_exists(collection):
                log.debug("No collection for project={}", project_id)
                return []
        except Exception as e:
            raise VectorStoreError(f"search: checking collection {collection}: {e}") from e

        try:
            query_vector = self.embedder.embed_query(query)
        except Exception as e:
            raise EmbeddingError(f"search: embedding query: {e}") from e

        min_confidence = self.settings.min_confidence
        metadata_filter = {**project_filter(project_id), "state": MemoryState.ACTIVE.value}
        if self.vector_store.supports_range_filters:
            metadata_filter["confidence"] = {"$gte": min_confidence}

        results: list[MemoryResult] = []
        seen: set[str] = set()
        gated = 0
        fetch = self._fetch_limit(limit)
        while True:
            try:
                hits = self.vector_store.search(collection, query_vector, fetch, metadata_filter)
            except Exception as e:
                raise VectorStoreError(f"search: querying {collection}: {e}") from e

            for hit in hits:
                if hit.id in seen:
                    continue
                seen.add(hit.id)

                try:
                    memory = Memory.from_metadata(hit.metadata)
                except ValidationError as e:
                    log.warning("Skipping invalid memory id={}: {}", hit.id, e)
                    continue

                if memory.confidence < min_confidence or memory.state != MemoryState.ACTIVE:
                    gated += 1
                    continue

                results.append(
                    MemoryResult(
                        id=memory.id,
                        title=self._scrub(memory.title, "search"),
                        content=self._scrub(memory.content, "search"),
                        confidence=memory.confidence,
                        score=hit.score,
                        outcome=memory.outcome,
                        tags=list(memory.tags),
                    )
                )
                if len(results) >= limit:
                    break

            if len(results) >= limit or len(hits) < fetch:
                break
            fetch *= 2

        if self.settings.record_usage_signals:
            for result in results:
                self._record_usage(result.id, project_id)

        log.debug(
            "Search project={} limit={} -> {} results ({} gated by confidence)",
            project_id,
            limit,
            len(results),
            gated,
        )
        return results

    def _record_usage(self, memory_id: str, project_id: str) -> None:
        """Store a usage signal and bump usage_count. Failures are logged only."""
        try:
            self.signal_store.store_signal(
                new_signal(memory_id, project_id, SignalType.USAGE, positive=True)
            )
            with self._memory_lock(memory_id):
                memory, collection = self._find(memory_id)
                memory.usage_count += 1
                self._save_metadata(memory, collection, "search")
        except Exception as e:
            log.warning("Failed to record usage for memory id={}: {}", memory_id, e)

    # ========== Feedback ==========

    def _apply_signal(
        self,
        memory_id: str,
        signal_type: SignalType,
        positive: bool,
        session_id: str | None,
        operation: str,
    ) -> Memory:
        """Append a signal and persist the recomputed confidence, under the memory lock."""
        with self._memory_lock(memory_id):
            memory, collection = self._find(memory_id)

            signal = new_signal(memory_id, memory.project_id, signal_type, positive, session_id)
            try:
                self.signal_store.store_signal(signal)
                confidence = self.calculator.compute_confidence(memory_id, memory.project_id)
            except Exception as e:
                raise SignalStoreError(f"{operation}: updating signals for {memory_id}: {e}") from e

            previous = memory.confidence
            memory.confidence = confidence
            memory.updated_at = utcnow()
            self._save_metadata(memory, collection, operation)

        log.info(
            "{} on memory id={} (positive={}): confidence {:.3f} -> {:.3f}",
            signal_type.value,
            memory_id,
            positive,
            previous,
            memory.confidence,
        )
        return memory

    def feedback(self, memory_id: str, helpful: bool) -> float:
        """Record explicit feedback, recompute confidence and learn project weights.

        Weight learning is best effort: once the signal and the new confidence
        are stored, a failure to update project weights is logged and the
        feedback still succeeds.

        Returns:
            The memory's new confidence.

        Raises:
            MemoryNotFoundError: Unknown memory_id.
        """
        memory = self._apply_signal(memory_id, SignalType.EXPLICIT, helpful, None, "feedback")
        try:
            self._learn(memory.project_id, memory_id, helpful)
        except Exception as e:
            log.warning(
                "Failed to learn weights for project={} from memory id={}: {}",
                memory.project_id,
                memory_id,
                e,
            )
        return memory.confidence

    def _learn(self, project_id: str, memory_id: str, helpful: bool) -> None:
        with self._project_lock(project_id):
            signals = self.signal_store.get_recent_signals(memory_id, self.learning_window)
            weights = self.signal_store.get_project_weights(project_id)
            weights.learn_from_feedback(helpful, signals)
            self.signal_store.store_project_weights(weights)

        log.debug(
            "Updated weights for project={} from {} signals (helpful={})",
            project_id,
            len(signals),
            helpful,
        )

    def record_outcome(
        self, memory_id: str, succeeded: bool, session_id: str | None = None
    ) -> float:
        """Record whether the task a memory was used for succeeded.

        Returns:
            The memory's new confidence.
        """
        memory = self._apply_signal(
            memory_id, SignalType.OUTCOME, succeeded, session_id, "outcome"
        )
        return memory.confidence

    # ========== Lookup and maintenance ==========

    def get(self, memory_id: str) -> Memory:
        """Fetch a memory by ID from whichever collection holds it."""
        memory, _ = self._find(memory_id)
        return memory

    def count(self, project_id: str) -> int:
        """Number of memories stored for a project."""
        if not project_id or not project_id.strip():
            raise ValidationError("project_id cannot be empty")
        collection = self._collection(project_id)
        try:
            if not self.vector_store.collection_exists(collection):
                return 0
            return self.vector_store.count(collection, project_filter(project_id))
        except Exception as e:
            raise VectorStoreError(f"count: counting {collection}: {e}") from e

    def list_memories(self, project_id: str, limit: int = 20, offset: int = 0) -> list[Memory]:
        """List a project's memories in storage order, with pagination.

        A limit of 0 returns every memory after offset. Archived and
        low-confidence memories are included; this is not a search.
        """
        if not project_id or not project_id.strip():
            raise ValidationError("project_id cannot be empty")
        if limit < 0:
            raise ValidationError("limit cannot be negative")
        if offset < 0:
            raise ValidationError("offset cannot be negative")

        collection = self._collection(project_id)
        try:
            if not self.vector_store.collection_exists(collection):
                return []
            payloads = self.vector_store.list_points(
                collection, limit, offset, project_filter(project_id)
            )
        except Exception as e:
            raise VectorStoreError(f"list: listing {collection}: {e}") from e

        memories = []
        for metadata in payloads:
            try:
                memories.append(Memory.from_metadata(metadata))
            except ValidationError as e:
                log.warning("Skipping invalid memory id={}: {}", metadata.get("id"), e)
        return memories

    def rollup_signals(self, memory_id: str) -> int:
        """Fold signals that left the recent window into the memory's aggregate."""
        with self._memory_lock(memory_id):
            try:
                return self.signal_store.rollup_old_signals(memory_id, self.recent_window)
            except Exception as e:
                raise SignalStoreError(f"rollup: {memory_id}: {e}") from e

    def close(self) -> None:
        """Release backend resources (the SQLite connection, if any)."""
        for store in {id(s): s for s in (self.vector_store, self.signal_store)}.values():
            close = getattr(store, "close", None)
            if close is not None:
                close()


def create_service(settings: Settings | None = None) -> ReasoningBankService:
    """Build a service from settings (sqlite or in-memory backends)."""
    settings = settings or get_settings()
    embedder = create_embedder(settings)

    if settings.vector_backend == "memory":
        vector_store = InMemoryVectorStore(IsolationMode(settings.isolation_mode))
        signal_store = InMemorySignalStore()
    else:
        from reasoning_bank.storage import Storage

        storage = Storage(settings)
        vector_store = storage
        signal_store = storage

    log.info(
        "ReasoningBank service ready (vector_backend={}, isolation={})",
        settings.vector_backend,
        settings.isolation_mode,
    )
    return ReasoningBankService(
        vector_store=vector_store,
        signal_store=signal_store,
        embedder=embedder,
        scrubber=Scrubber(enabled=settings.scrub_enabled),
        settings=settings,
    )
