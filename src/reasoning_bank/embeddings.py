"""Embedding generation with pluggable provider interface.

Providers return L2-normalized float32 vectors, so a dot product is cosine
similarity. Implemented: SentenceTransformerProvider (default) and
MockEmbeddingProvider (tests, offline use).
"""

import hashlib
import re
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Protocol, runtime_checkable

import numpy as np

from reasoning_bank.config import Settings, get_settings
from reasoning_bank.logging import get_logger

log = get_logger("embeddings")


# ========== Provider Protocol ==========


@runtime_checkable
class Embedder(Protocol):
    """Protocol for embedding providers consumed by the service.

    Implementations must provide:
    - embed_documents(texts) -> list[np.ndarray]: Embeddings for stored content
    - embed_query(text) -> np.ndarray: Embedding for a search query
    - dimension: int: The embedding dimension
    - name: str: Provider identifier for logging/debugging
    """

    @property
    def dimension(self) -> int:
        """Return the embedding dimension."""
        ...

    @property
    def name(self) -> str:
        """Return the provider name."""
        ...

    def embed_documents(self, texts: list[str]) -> list[np.ndarray]:
        """Generate embeddings for documents."""
        ...

    def embed_query(self, text: str) -> np.ndarray:
        """Generate embedding for a query."""
        ...


class BaseEmbeddingProvider(ABC):
    """Abstract base class for embedding providers with common utilities."""

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimension."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name."""

    @abstractmethod
    def embed(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts."""
        return [self.embed(text) for text in texts]

    def embed_documents(self, texts: list[str]) -> list[np.ndarray]:
        return self.embed_batch(texts)

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed(text)

    def similarity(self, embedding1: np.ndarray, embedding2: np.ndarray) -> float:
        """Compute cosine similarity between embeddings.

        Since embeddings are normalized, dot product = cosine similarity.
        """
        return float(np.dot(embedding1, embedding2))


def _normalize(embedding: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(embedding)
    if norm > 0:
        embedding = embedding / norm
    return embedding.astype(np.float32)


# ========== Mock Provider (for tests) ==========


class MockEmbeddingProvider(BaseEmbeddingProvider):
    """Fast mock embedding provider for testing.

    Generates deterministic embeddings that preserve word-level similarity.
    Each word gets a consistent random vector, and text embeddings are
    the normalized sum of word vectors. This means texts with shared words
    will have higher cosine similarity.

    No model loading, instant results, reproducible across runs.
    """

    def __init__(self, dimension: int = 384):
        self._dimension = dimension
        self._word_vectors: dict[str, np.ndarray] = {}

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def name(self) -> str:
        return "mock"

    def _seeded_vector(self, key: str) -> np.ndarray:
        digest = hashlib.md5(key.encode()).digest()
        seed = int.from_bytes(digest[:4], "little")
        rng = np.random.Generator(np.random.PCG64(seed))
        return rng.standard_normal(self._dimension).astype(np.float32)

    def _get_word_vector(self, word: str) -> np.ndarray:
        """Get or create a consistent random vector for a word."""
        word_lower = word.lower()
        if word_lower not in self._word_vectors:
            self._word_vectors[word_lower] = self._seeded_vector(word_lower)
        return self._word_vectors[word_lower]

    def embed(self, text: str) -> np.ndarray:
        # Tokenize: split on non-alphanumeric, keep words 2+ chars
        words = [w for w in re.split(r"[^a-zA-Z0-9]+", text) if len(w) >= 2]

        if not words:
            # Fallback for empty/punctuation-only text
            return _normalize(self._seeded_vector(text))

        embedding = np.zeros(self._dimension, dtype=np.float32)
        for word in words:
            embedding += self._get_word_vector(word)
        return _normalize(embedding)


# ========== Sentence Transformers Provider ==========


class SentenceTransformerProvider(BaseEmbeddingProvider):
    """Embedding provider using sentence-transformers library.

    Default model: all-MiniLM-L6-v2 (384 dimensions, ~90MB).
    """

    def __init__(self, model_name: str, expected_dim: int):
        self._model_name = model_name
        self._expected_dim = expected_dim
        self._model = None

    @property
    def dimension(self) -> int:
        return self._expected_dim

    @property
    def name(self) -> str:
        return f"sentence-transformers:{self._model_name}"

    def _get_model(self):
        """Lazy-load the model."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            log.info("Loading embedding model: {}", self._model_name)
            self._model = SentenceTransformer(self._model_name)

            actual_dim = self._model.get_sentence_embedding_dimension()
            if actual_dim != self._expected_dim:
                log.warning(
                    "Model dimension {} != expected {}. Update REASONING_BANK_EMBEDDING_DIM.",
                    actual_dim,
                    self._expected_dim,
                )
        return self._model

    def embed(self, text: str) -> np.ndarray:
        model = self._get_model()
        embedding = model.encode(text, normalize_embeddings=True)
        return np.array(embedding, dtype=np.float32)

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        if not texts:
            return []
        model = self._get_model()
        embeddings = model.encode(texts, normalize_embeddings=True)
        return [np.array(e, dtype=np.float32) for e in embeddings]


# ========== Cached Provider Wrapper ==========


class CachedEmbeddingProvider(BaseEmbeddingProvider):
    """Wrapper that adds LRU caching to any embedding provider.

    Caches embeddings by content hash to avoid redundant computation.
    """

    def __init__(self, provider: BaseEmbeddingProvider, cache_size: int = 1000):
        self._provider = provider
        self._cache_size = cache_size
        self._cache: OrderedDict[str, np.ndarray] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def dimension(self) -> int:
        return self._provider.dimension

    @property
    def name(self) -> str:
        return f"cached:{self._provider.name}"

    def _cache_key(self, text: str) -> str:
        return hashlib.md5(text.encode()).hexdigest()

    def _remember(self, key: str, embedding: np.ndarray) -> None:
        with self._lock:
            self._cache[key] = embedding
            self._cache.move_to_end(key)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)

    def _lookup(self, key: str) -> np.ndarray | None:
        with self._lock:
            embedding = self._cache.get(key)
            if embedding is not None:
                self._cache.move_to_end(key)
            return embedding

    def embed(self, text: str) -> np.ndarray:
        key = self._cache_key(text)
        cached = self._lookup(key)
        if cached is not None:
            return cached

        embedding = self._provider.embed(text)
        self._remember(key, embedding)
        return embedding

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        results: list[np.ndarray | None] = []
        uncached_texts = []
        uncached_indices = []

        for i, text in enumerate(texts):
            cached = self._lookup(self._cache_key(text))
            if cached is not None:
                results.append(cached)
            else:
                results.append(None)
                uncached_texts.append(text)
                uncached_indices.append(i)

        if uncached_texts:
            new_embeddings = self._provider.embed_batch(uncached_texts)
            for idx, text, embedding in zip(uncached_indices, uncached_texts, new_embeddings):
                self._remember(self._cache_key(text), embedding)
                results[idx] = embedding

        return results

    def cache_stats(self) -> dict:
        """Return cache statistics."""
        return {
            "size": len(self._cache),
            "max_size": self._cache_size,
            "provider": self._provider.name,
        }

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()


# ========== Provider Factory ==========


def create_provider(settings: Settings | None = None) -> BaseEmbeddingProvider:
    """Create the raw embedding provider selected by settings.embedding_backend."""
    settings = settings or get_settings()

    if settings.embedding_backend == "mock":
        return MockEmbeddingProvider(settings.embedding_dim)

    if settings.embedding_backend != "sentence-transformers":
        log.warning(
            "Unknown embedding backend '{}', using sentence-transformers",
            settings.embedding_backend,
        )
    return SentenceTransformerProvider(settings.embedding_model, settings.embedding_dim)


def create_embedder(settings: Settings | None = None) -> CachedEmbeddingProvider:
    """Create the cached embedder used by the service."""
    settings = settings or get_settings()
    embedder = CachedEmbeddingProvider(
        create_provider(settings), cache_size=settings.embedding_cache_size
    )
    log.info("Embedder initialized with provider: {}", embedder.name)
    return embedder
