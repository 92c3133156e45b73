"""Tests for embedding providers."""

import numpy as np
import pytest

from reasoning_bank.config import Settings
from reasoning_bank.embeddings import (
    BaseEmbeddingProvider,
    CachedEmbeddingProvider,
    Embedder,
    MockEmbeddingProvider,
    SentenceTransformerProvider,
    create_embedder,
    create_provider,
)


class CountingProvider(BaseEmbeddingProvider):
    """Mock provider that counts calls."""

    def __init__(self, dim: int = 16):
        self._inner = MockEmbeddingProvider(dim)
        self.embed_calls = 0
        self.batch_calls = 0

    @property
    def dimension(self) -> int:
        return self._inner.dimension

    @property
    def name(self) -> str:
        return "counting"

    def embed(self, text: str) -> np.ndarray:
        self.embed_calls += 1
        return self._inner.embed(text)

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        self.batch_calls += 1
        return [self._inner.embed(t) for t in texts]


class TestMockProvider:
    def test_implements_protocol(self):
        assert isinstance(MockEmbeddingProvider(16), Embedder)

    def test_normalized_float32(self):
        vec = MockEmbeddingProvider(32).embed("check user != nil before dereferencing")
        assert vec.dtype == np.float32
        assert vec.shape == (32,)
        assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)

    def test_deterministic_across_instances(self):
        a = MockEmbeddingProvider(32).embed("nil pointer fix")
        b = MockEmbeddingProvider(32).embed("nil pointer fix")
        np.testing.assert_array_equal(a, b)

    def test_shared_words_are_closer(self):
        provider = MockEmbeddingProvider(64)
        query = provider.embed_query("nil pointer fix")
        related = provider.embed("nil pointer fix: check user != nil")
        unrelated = provider.embed("configure webpack aliases for monorepo builds")
        assert provider.similarity(query, related) > provider.similarity(query, unrelated)

    def test_punctuation_only_text(self):
        vec = MockEmbeddingProvider(16).embed("!!!")
        assert np.linalg.norm(vec) == pytest.approx(1.0, abs=1e-5)

    def test_embed_documents(self):
        provider = MockEmbeddingProvider(16)
        vectors = provider.embed_documents(["one text", "two text"])
        assert len(vectors) == 2
        np.testing.assert_array_equal(vectors[0], provider.embed("one text"))


class TestCachedProvider:
    def test_cache_hit_skips_provider(self):
        inner = CountingProvider()
        cached = CachedEmbeddingProvider(inner, cache_size=10)

        first = cached.embed("hello world")
        second = cached.embed("hello world")

        assert inner.embed_calls == 1
        np.testing.assert_array_equal(first, second)
        assert cached.cache_stats()["size"] == 1

    def test_batch_only_embeds_misses(self):
        inner = CountingProvider()
        cached = CachedEmbeddingProvider(inner, cache_size=10)
        cached.embed("alpha")

        results = cached.embed_batch(["alpha", "beta", "gamma"])

        assert len(results) == 3
        assert inner.batch_calls == 1
        assert cached.cache_stats()["size"] == 3
        np.testing.assert_array_equal(results[0], cached.embed("alpha"))

    def test_lru_eviction(self):
        inner = CountingProvider()
        cached = CachedEmbeddingProvider(inner, cache_size=2)
        cached.embed("a1")
        cached.embed("b2")
        cached.embed("a1")  # refresh
        cached.embed("c3")  # evicts b2

        calls = inner.embed_calls
        cached.embed("a1")
        assert inner.embed_calls == calls
        cached.embed("b2")
        assert inner.embed_calls == calls + 1

    def test_clear_cache(self):
        cached = CachedEmbeddingProvider(CountingProvider(), cache_size=10)
        cached.embed("x1")
        cached.clear_cache()
        assert cached.cache_stats()["size"] == 0

    def test_delegates_identity(self):
        cached = CachedEmbeddingProvider(CountingProvider(dim=24))
        assert cached.dimension == 24
        assert cached.name == "cached:counting"


class TestFactory:
    def test_mock_backend(self):
        provider = create_provider(Settings(embedding_backend="mock", embedding_dim=48))
        assert isinstance(provider, MockEmbeddingProvider)
        assert provider.dimension == 48

    def test_default_backend_is_lazy(self):
        provider = create_provider(Settings(embedding_backend="sentence-transformers"))
        assert isinstance(provider, SentenceTransformerProvider)
        assert provider._model is None
        assert provider.name.startswith("sentence-transformers:")

    def test_unknown_backend_falls_back(self):
        provider = create_provider(Settings(embedding_backend="word2vec"))
        assert isinstance(provider, SentenceTransformerProvider)

    def test_create_embedder_is_cached(self):
        embedder = create_embedder(
            Settings(embedding_backend="mock", embedding_dim=16, embedding_cache_size=5)
        )
        assert isinstance(embedder, CachedEmbeddingProvider)
        assert embedder.cache_stats()["max_size"] == 5
        assert embedder.embed_query("hello").shape == (16,)
