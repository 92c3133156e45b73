"""SQLite storage with sqlite-vec for vector search.

One database file backs both collaborator interfaces the service consumes:
the vector store (collections, points, vectors) and the signal store
(signal log, aggregates, project weights).
"""

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import sqlite_vec

from reasoning_bank.config import Settings, ensure_data_dir, get_settings
from reasoning_bank.logging import get_logger
from reasoning_bank.storage.signals import SignalStoreMixin
from reasoning_bank.storage.vectors import VectorStoreMixin
from reasoning_bank.vectorstore import IsolationMode

log = get_logger("storage")

# Current schema version - increment when making breaking changes
SCHEMA_VERSION = 1

SCHEMA = """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT DEFAULT CURRENT_TIMESTAMP
);

-- Vector collections (one per project, or one shared)
CREATE TABLE IF NOT EXISTS collections (
    name TEXT PRIMARY KEY,
    vector_size INTEGER NOT NULL,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

-- Points: one row per stored memory, vector lives in point_vectors
CREATE TABLE IF NOT EXISTS points (
    id INTEGER PRIMARY KEY,
    collection TEXT NOT NULL REFERENCES collections(name) ON DELETE CASCADE,
    point_id TEXT NOT NULL,
    project_id TEXT,
    confidence REAL,
    metadata TEXT NOT NULL,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (collection, point_id)
);

-- Append-only signal log (raw events, kept after rollup)
CREATE TABLE IF NOT EXISTS signals (
    id TEXT PRIMARY KEY,
    memory_id TEXT NOT NULL,
    project_id TEXT NOT NULL,
    type TEXT NOT NULL,
    positive INTEGER NOT NULL,
    session_id TEXT,
    timestamp TEXT NOT NULL
);

-- Rolled-up lifetime counters per memory
CREATE TABLE IF NOT EXISTS signal_aggregates (
    memory_id TEXT PRIMARY KEY,
    project_id TEXT,
    explicit_pos INTEGER DEFAULT 0,
    explicit_neg INTEGER DEFAULT 0,
    usage_pos INTEGER DEFAULT 0,
    usage_neg INTEGER DEFAULT 0,
    outcome_pos INTEGER DEFAULT 0,
    outcome_neg INTEGER DEFAULT 0,
    last_rollup TEXT
);

-- Learned signal reliability per project
CREATE TABLE IF NOT EXISTS project_weights (
    project_id TEXT PRIMARY KEY,
    explicit_alpha REAL NOT NULL DEFAULT 1.0,
    explicit_beta REAL NOT NULL DEFAULT 1.0,
    usage_alpha REAL NOT NULL DEFAULT 1.0,
    usage_beta REAL NOT NULL DEFAULT 1.0,
    outcome_alpha REAL NOT NULL DEFAULT 1.0,
    outcome_beta REAL NOT NULL DEFAULT 1.0,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_points_collection ON points(collection);
CREATE INDEX IF NOT EXISTS idx_points_project ON points(project_id);
CREATE INDEX IF NOT EXISTS idx_signals_memory_time ON signals(memory_id, timestamp);
"""


def get_vector_schema(dim: int) -> str:
    """Generate vector schema with correct dimension."""
    return f"""
CREATE VIRTUAL TABLE IF NOT EXISTS point_vectors USING vec0(
    embedding FLOAT[{dim}]
);
"""


class SchemaVersionError(Exception):
    """Raised when database schema is incompatible."""


class EmbeddingDimensionError(Exception):
    """Raised when embedding dimension doesn't match database."""


class Storage(VectorStoreMixin, SignalStoreMixin):
    """SQLite storage manager with thread-safe connection handling."""

    supports_range_filters = True

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.isolation = IsolationMode(self.settings.isolation_mode)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()  # Reentrant lock for nested calls
        log.info("Storage initialized with db_path={}", self.settings.db_path)

    @property
    def db_path(self) -> Path:
        return self.settings.db_path

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection. Must be called with lock held."""
        if self._conn is None:
            ensure_data_dir(self.settings)
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30.0,  # Wait up to 30s for locks
            )
            self._conn.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrency
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=30000")
            self._conn.execute("PRAGMA foreign_keys=ON")

            # Load sqlite-vec extension
            self._conn.enable_load_extension(True)
            sqlite_vec.load(self._conn)
            self._conn.enable_load_extension(False)

            self._init_schema()
        return self._conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for read operations with thread safety."""
        with self._lock:
            yield self._get_connection()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for transactions with thread safety."""
        with self._lock:
            conn = self._get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def _init_schema(self) -> None:
        """Initialize database schema with version tracking."""
        conn = self._conn
        if conn is None:
            return

        self._check_schema_version(conn)

        conn.executescript(SCHEMA)
        conn.execute(get_vector_schema(self.settings.embedding_dim))

        existing_version = conn.execute(
            "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
        ).fetchone()
        current_version = existing_version[0] if existing_version else 0

        if current_version < SCHEMA_VERSION:
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (SCHEMA_VERSION,),
            )
            log.info("Database initialized at schema v{}", SCHEMA_VERSION)

        conn.commit()

        self._validate_vector_dimension(conn)
        log.debug("Database schema initialized (version={})", SCHEMA_VERSION)

    def _check_schema_version(self, conn: sqlite3.Connection) -> None:
        """Refuse to open a database written by a newer release."""
        table_exists = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type='table' AND name='schema_version'"
        ).fetchone()
        if not table_exists:
            return

        current_version = conn.execute(
            "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
        ).fetchone()

        if current_version and current_version[0] > SCHEMA_VERSION:
            raise SchemaVersionError(
                f"Database schema version {current_version[0]} is newer than "
                f"supported version {SCHEMA_VERSION}. Please upgrade reasoning-bank."
            )

    def _validate_vector_dimension(self, conn: sqlite3.Connection) -> None:
        """Check that existing vector table matches configured dimension. Fails fast on mismatch."""
        result = conn.execute(
            "SELECT sql FROM sqlite_master WHERE name = 'point_vectors'"
        ).fetchone()
        if not result or not result[0]:
            return

        expected_dim = self.settings.embedding_dim
        if f"FLOAT[{expected_dim}]" in result[0].upper():
            return

        count = conn.execute("SELECT COUNT(*) FROM point_vectors").fetchone()[0]
        if count > 0:
            raise EmbeddingDimensionError(
                f"Embedding dimension mismatch: database has vectors with different "
                f"dimension than configured ({expected_dim}). "
                f"Delete the database or set REASONING_BANK_EMBEDDING_DIM to match. "
                f"Database: {self.db_path}"
            )
        log.warning(
            "Vector table dimension mismatch but no data. Consider recreating: {}",
            self.db_path,
        )

    def get_schema_version(self) -> int:
        """Get current database schema version."""
        with self._connection() as conn:
            result = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()
            return result[0] if result else 0

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


__all__ = [
    "SCHEMA_VERSION",
    "EmbeddingDimensionError",
    "SchemaVersionError",
    "Storage",
]
