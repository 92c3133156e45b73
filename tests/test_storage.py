"""Tests for the SQLite storage backend."""

import sqlite3
from concurrent.futures import ThreadPoolExecutor, as_completed

import numpy as np
import pytest

from reasoning_bank.config import Settings
from reasoning_bank.storage import (
    SCHEMA_VERSION,
    EmbeddingDimensionError,
    SchemaVersionError,
    Storage,
)

DIM = 8


@pytest.fixture
def storage(tmp_path):
    """Create a storage instance with temp database."""
    stor = Storage(Settings(db_path=tmp_path / "test.db", embedding_dim=DIM))
    yield stor
    stor.close()


def vector(seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    v = rng.standard_normal(DIM).astype(np.float32)
    return v / np.linalg.norm(v)


class TestSchema:
    def test_schema_version_recorded(self, storage):
        assert storage.get_schema_version() == SCHEMA_VERSION

    def test_wal_mode(self, storage):
        with storage._connection() as conn:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"

    def test_creates_parent_directory(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "test.db"
        stor = Storage(Settings(db_path=db_path, embedding_dim=DIM))
        stor.get_schema_version()
        assert db_path.exists()
        stor.close()

    def test_reopen_keeps_data(self, tmp_path):
        settings = Settings(db_path=tmp_path / "test.db", embedding_dim=DIM)
        stor = Storage(settings)
        stor.create_collection("p_memories", DIM)
        stor.upsert("p_memories", "a", vector(1), {"project_id": "p", "confidence": 0.8})
        stor.close()

        reopened = Storage(settings)
        assert reopened.get("p_memories", "a") == {"project_id": "p", "confidence": 0.8}
        assert reopened.count("p_memories") == 1
        reopened.close()

    def test_newer_schema_rejected(self, tmp_path):
        db_path = tmp_path / "test.db"
        stor = Storage(Settings(db_path=db_path, embedding_dim=DIM))
        stor.get_schema_version()
        stor.close()

        conn = sqlite3.connect(str(db_path))
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION + 5,))
        conn.commit()
        conn.close()

        stor = Storage(Settings(db_path=db_path, embedding_dim=DIM))
        with pytest.raises(SchemaVersionError, match="newer than supported"):
            stor.get_schema_version()
        stor.close()

    def test_dimension_mismatch_with_data_fails_fast(self, tmp_path):
        db_path = tmp_path / "test.db"
        stor = Storage(Settings(db_path=db_path, embedding_dim=DIM))
        stor.create_collection("p_memories", DIM)
        stor.upsert("p_memories", "a", vector(1), {"project_id": "p"})
        stor.close()

        stor = Storage(Settings(db_path=db_path, embedding_dim=DIM * 2))
        with pytest.raises(EmbeddingDimensionError, match="dimension mismatch"):
            stor.get_schema_version()
        stor.close()

    def test_dimension_mismatch_without_data_is_allowed(self, tmp_path):
        db_path = tmp_path / "test.db"
        stor = Storage(Settings(db_path=db_path, embedding_dim=DIM))
        stor.get_schema_version()
        stor.close()

        stor = Storage(Settings(db_path=db_path, embedding_dim=DIM * 2))
        assert stor.get_schema_version() == SCHEMA_VERSION
        stor.close()


class TestTransactions:
    def test_failed_upsert_rolls_back(self, storage):
        storage.create_collection("c", DIM)
        with pytest.raises(LookupError):
            storage.upsert("missing", "a", vector(1), {"project_id": "p"})
        assert storage.count("c") == 0

    def test_confidence_column_tracks_metadata(self, storage):
        storage.create_collection("c", DIM)
        storage.upsert("c", "a", vector(1), {"project_id": "p", "confidence": 0.8})
        storage.update_metadata("c", "a", {"project_id": "p", "confidence": 0.4})

        with storage._connection() as conn:
            row = conn.execute(
                "SELECT confidence FROM points WHERE point_id = ?", ("a",)
            ).fetchone()
        assert row["confidence"] == pytest.approx(0.4)
        assert storage.search("c", vector(1), 5, {"confidence": {"$gte": 0.7}}) == []


class TestConcurrency:
    def test_concurrent_writes(self, storage):
        """Concurrent upserts should not lose points or raise lock errors."""
        storage.create_collection("c", DIM)
        errors = []

        def write_point(n):
            try:
                storage.upsert("c", f"m{n}", vector(n), {"project_id": "p", "confidence": 0.8})
            except Exception as e:
                errors.append(e)

        with ThreadPoolExecutor(max_workers=10) as executor:
            futures = [executor.submit(write_point, i) for i in range(20)]
            for f in as_completed(futures):
                pass

        assert len(errors) == 0, f"Errors during concurrent writes: {errors}"
        assert storage.count("c") == 20

    def test_concurrent_reads_and_writes(self, storage):
        storage.create_collection("c", DIM)
        storage.upsert("c", "seed", vector(0), {"project_id": "p"})
        errors = []

        def mixed_operations(n):
            try:
                if n % 2 == 0:
                    storage.upsert("c", f"m{n}", vector(n), {"project_id": "p"})
                else:
                    storage.search("c", vector(n), 5, {"project_id": "p"})
            except Exception as e:
                errors.append(e)

        with ThreadPoolExecutor(max_workers=10) as executor:
            futures = [executor.submit(mixed_operations, i) for i in range(20)]
            for f in as_completed(futures):
                pass

        assert len(errors) == 0, f"Errors during concurrent ops: {errors}"
