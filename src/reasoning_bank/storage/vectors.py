"""Vector store mixin for Storage class.

Points live in the ``points`` table (metadata as JSON, with project_id and
confidence promoted to real columns) and their embeddings in the sqlite-vec
``point_vectors`` table under the same rowid. Filters, including confidence
ranges, are evaluated in SQL.
"""

from __future__ import annotations

import json
import re

import numpy as np

from reasoning_bank.logging import get_logger
from reasoning_bank.models import CollectionInfo, SearchHit

log = get_logger("storage.vectors")

# Metadata keys stored as real columns on the points table
COLUMN_KEYS = {"project_id", "confidence"}

SQL_OPERATORS = {"$gte": ">=", "$gt": ">", "$lte": "<=", "$lt": "<"}

_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _filter_clause(metadata_filter: dict | None) -> tuple[str, list]:
    """Translate a filter dict into a SQL fragment plus parameters."""
    clauses: list[str] = []
    params: list = []
    for key, condition in (metadata_filter or {}).items():
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid filter key: {key!r}")
        column = f"p.{key}" if key in COLUMN_KEYS else f"json_extract(p.metadata, '$.{key}')"
        if isinstance(condition, dict):
            for op, operand in condition.items():
                if op not in SQL_OPERATORS:
                    raise ValueError(f"Unsupported filter operator: {op}")
                clauses.append(f"{column} {SQL_OPERATORS[op]} ?")
                params.append(operand)
        else:
            clauses.append(f"{column} = ?")
            params.append(condition)
    sql = "".join(f" AND {c}" for c in clauses)
    return sql, params


class VectorStoreMixin:
    """Mixin implementing the VectorStore protocol for Storage."""

    def collection_exists(self, collection: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM collections WHERE name = ?", (collection,)
            ).fetchone()
            return row is not None

    def create_collection(self, collection: str, vector_size: int) -> None:
        """Create a collection. Vector size 0 means the configured dimension."""
        from reasoning_bank.storage import EmbeddingDimensionError

        vector_size = vector_size or self.settings.embedding_dim
        if vector_size != self.settings.embedding_dim:
            raise EmbeddingDimensionError(
                f"Collection {collection} requested dim={vector_size}, "
                f"database is configured for dim={self.settings.embedding_dim}"
            )
        with self.transaction() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO collections (name, vector_size) VALUES (?, ?)",
                (collection, vector_size),
            )
            if cursor.rowcount:
                log.info("Created collection {} (dim={})", collection, vector_size)

    def list_collections(self) -> list[str]:
        with self._connection() as conn:
            return [r["name"] for r in conn.execute("SELECT name FROM collections ORDER BY name")]

    def get_collection_info(self, collection: str) -> CollectionInfo:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT vector_size FROM collections WHERE name = ?", (collection,)
            ).fetchone()
            if row is None:
                raise LookupError(f"Collection not found: {collection}")
            count = conn.execute(
                "SELECT COUNT(*) FROM points WHERE collection = ?", (collection,)
            ).fetchone()[0]
            return CollectionInfo(name=collection, point_count=count, vector_size=row["vector_size"])

    def upsert(self, collection: str, id: str, vector: np.ndarray, metadata: dict) -> None:
        """Insert or replace a point and its embedding."""
        embedding = np.asarray(vector, dtype=np.float32)
        if embedding.shape != (self.settings.embedding_dim,):
            raise ValueError(
                f"Vector dimension {embedding.shape} != configured {self.settings.embedding_dim}"
            )
        payload = json.dumps(metadata)

        with self.transaction() as conn:
            if conn.execute("SELECT 1 FROM collections WHERE name = ?", (collection,)).fetchone() is None:
                raise LookupError(f"Collection not found: {collection}")

            existing = conn.execute(
                "SELECT id FROM points WHERE collection = ? AND point_id = ?",
                (collection, id),
            ).fetchone()

            if existing:
                rowid = existing["id"]
                conn.execute(
                    """
                    UPDATE points
                    SET project_id = ?, confidence = ?, metadata = ?,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                    """,
                    (metadata.get("project_id"), metadata.get("confidence"), payload, rowid),
                )
                conn.execute(
                    "UPDATE point_vectors SET embedding = ? WHERE rowid = ?",
                    (embedding.tobytes(), rowid),
                )
                log.debug("Updated point {} in {}", id, collection)
            else:
                cursor = conn.execute(
                    """
                    INSERT INTO points (collection, point_id, project_id, confidence, metadata)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (collection, id, metadata.get("project_id"), metadata.get("confidence"), payload),
                )
                conn.execute(
                    "INSERT INTO point_vectors (rowid, embedding) VALUES (?, ?)",
                    (cursor.lastrowid, embedding.tobytes()),
                )
                log.debug("Inserted point {} in {}", id, collection)

    def get(self, collection: str, id: str) -> dict | None:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT metadata FROM points WHERE collection = ? AND point_id = ?",
                (collection, id),
            ).fetchone()
            return json.loads(row["metadata"]) if row else None

    def update_metadata(self, collection: str, id: str, metadata: dict) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE points
                SET project_id = ?, confidence = ?, metadata = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE collection = ? AND point_id = ?
                """,
                (
                    metadata.get("project_id"),
                    metadata.get("confidence"),
                    json.dumps(metadata),
                    collection,
                    id,
                ),
            )
            return cursor.rowcount > 0

    def search(
        self,
        collection: str,
        query_vector: np.ndarray,
        limit: int,
        metadata_filter: dict | None = None,
    ) -> list[SearchHit]:
        """Cosine similarity search within a collection, filters applied in SQL."""
        if limit <= 0:
            return []
        embedding = np.asarray(query_vector, dtype=np.float32)
        where, params = _filter_clause(metadata_filter)

        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT p.point_id, p.metadata,
                       vec_distance_cosine(v.embedding, ?) AS distance
                FROM point_vectors v
                JOIN points p ON p.id = v.rowid
                WHERE p.collection = ?{where}
                ORDER BY distance ASC
                LIMIT ?
                """,
                (embedding.tobytes(), collection, *params, limit),
            ).fetchall()

        return [
            SearchHit(
                id=row["point_id"],
                score=1.0 - row["distance"],
                metadata=json.loads(row["metadata"]),
            )
            for row in rows
        ]

    def count(self, collection: str, metadata_filter: dict | None = None) -> int:
        where, params = _filter_clause(metadata_filter)
        with self._connection() as conn:
            return conn.execute(
                f"SELECT COUNT(*) FROM points p WHERE p.collection = ?{where}",
                (collection, *params),
            ).fetchone()[0]

    def list_points(
        self,
        collection: str,
        limit: int,
        offset: int = 0,
        metadata_filter: dict | None = None,
    ) -> list[dict]:
        where, params = _filter_clause(metadata_filter)
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT p.metadata FROM points p
                WHERE p.collection = ?{where}
                ORDER BY p.id
                LIMIT ? OFFSET ?
                """,
                (collection, *params, limit or -1, offset),
            ).fetchall()
        return [json.loads(row["metadata"]) for row in rows]
