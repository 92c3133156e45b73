"""Vector store interface, tenant isolation and an in-memory backend.

Filters are plain dicts: ``{"key": value}`` matches by equality and
``{"key": {"$gte": x}}`` / ``{"$lte": x}`` / ``{"$gt": x}`` / ``{"$lt": x}``
match numeric ranges. Backends that cannot evaluate ranges report
``supports_range_filters = False`` and callers must post-filter instead.
"""

from __future__ import annotations

import re
import threading
from enum import Enum
from typing import Protocol, runtime_checkable

import numpy as np

from reasoning_bank.logging import get_logger
from reasoning_bank.models import CollectionInfo, SearchHit

log = get_logger("vectorstore")

SHARED_COLLECTION = "memories"
COLLECTION_SUFFIX = "_memories"

RANGE_OPERATORS = {
    "$gte": lambda a, b: a >= b,
    "$gt": lambda a, b: a > b,
    "$lte": lambda a, b: a <= b,
    "$lt": lambda a, b: a < b,
}


class IsolationMode(str, Enum):
    """How project data is separated inside one store."""

    SHARED = "shared"  # One collection, rows tagged and filtered by project_id
    COLLECTION = "collection"  # One collection per project


def collection_name(project_id: str, mode: IsolationMode) -> str:
    """Name of the collection holding a project's memories."""
    if mode == IsolationMode.SHARED:
        return SHARED_COLLECTION
    safe = re.sub(r"[^A-Za-z0-9_\-]", "_", project_id)
    return f"{safe}{COLLECTION_SUFFIX}"


def is_memory_collection(name: str) -> bool:
    return name == SHARED_COLLECTION or name.endswith(COLLECTION_SUFFIX)


def project_filter(project_id: str) -> dict:
    """Filter scoping a query to one project.

    Applied in both isolation modes; sanitized collection names can collide.
    """
    return {"project_id": project_id}


def has_range_filter(metadata_filter: dict | None) -> bool:
    return any(isinstance(v, dict) for v in (metadata_filter or {}).values())


def matches_filter(metadata: dict, metadata_filter: dict | None) -> bool:
    """Evaluate a filter dict against a metadata payload."""
    for key, condition in (metadata_filter or {}).items():
        value = metadata.get(key)
        if isinstance(condition, dict):
            if value is None:
                return False
            for op, operand in condition.items():
                if op not in RANGE_OPERATORS:
                    raise ValueError(f"Unsupported filter operator: {op}")
                if not RANGE_OPERATORS[op](value, operand):
                    return False
        elif value != condition:
            return False
    return True


@runtime_checkable
class VectorStore(Protocol):
    """Similarity index holding memory vectors and their metadata."""

    isolation: IsolationMode
    supports_range_filters: bool

    def collection_exists(self, collection: str) -> bool: ...

    def create_collection(self, collection: str, vector_size: int) -> None: ...

    def list_collections(self) -> list[str]: ...

    def get_collection_info(self, collection: str) -> CollectionInfo: ...

    def upsert(self, collection: str, id: str, vector: np.ndarray, metadata: dict) -> None: ...

    def get(self, collection: str, id: str) -> dict | None:
        """Return the metadata stored for id, or None."""
        ...

    def update_metadata(self, collection: str, id: str, metadata: dict) -> bool:
        """Replace a point's metadata without touching its vector. False if absent."""
        ...

    def search(
        self,
        collection: str,
        query_vector: np.ndarray,
        limit: int,
        metadata_filter: dict | None = None,
    ) -> list[SearchHit]:
        """Return up to limit hits ordered by descending similarity."""
        ...

    def count(self, collection: str, metadata_filter: dict | None = None) -> int: ...

    def list_points(
        self,
        collection: str,
        limit: int,
        offset: int = 0,
        metadata_filter: dict | None = None,
    ) -> list[dict]:
        """Return metadata payloads in insertion order. A limit of 0 means no limit."""
        ...


class InMemoryVectorStore:
    """Brute-force cosine search over numpy arrays.

    Only equality filters are evaluated server-side; range filters are
    rejected so the service applies its confidence cut client-side.
    """

    supports_range_filters = False

    def __init__(self, isolation: IsolationMode = IsolationMode.COLLECTION):
        self.isolation = IsolationMode(isolation)
        self._lock = threading.RLock()
        self._collections: dict[str, dict] = {}

    def _get_collection(self, collection: str) -> dict:
        try:
            return self._collections[collection]
        except KeyError:
            raise LookupError(f"Collection not found: {collection}") from None

    def collection_exists(self, collection: str) -> bool:
        with self._lock:
            return collection in self._collections

    def create_collection(self, collection: str, vector_size: int) -> None:
        with self._lock:
            if collection not in self._collections:
                self._collections[collection] = {"vector_size": vector_size, "points": {}}
                log.info("Created collection {} (dim={})", collection, vector_size)

    def list_collections(self) -> list[str]:
        with self._lock:
            return sorted(self._collections)

    def get_collection_info(self, collection: str) -> CollectionInfo:
        with self._lock:
            coll = self._get_collection(collection)
            return CollectionInfo(
                name=collection,
                point_count=len(coll["points"]),
                vector_size=coll["vector_size"],
            )

    def upsert(self, collection: str, id: str, vector: np.ndarray, metadata: dict) -> None:
        vector = np.asarray(vector, dtype=np.float32)
        with self._lock:
            coll = self._get_collection(collection)
            if vector.shape != (coll["vector_size"],):
                raise ValueError(
                    f"Vector dimension {vector.shape[0]} != collection dimension "
                    f"{coll['vector_size']}"
                )
            coll["points"][id] = (vector, dict(metadata))

    def get(self, collection: str, id: str) -> dict | None:
        with self._lock:
            point = self._collections.get(collection, {}).get("points", {}).get(id)
            return dict(point[1]) if point else None

    def update_metadata(self, collection: str, id: str, metadata: dict) -> bool:
        with self._lock:
            points = self._collections.get(collection, {}).get("points", {})
            if id not in points:
                return False
            points[id] = (points[id][0], dict(metadata))
            return True

    def search(
        self,
        collection: str,
        query_vector: np.ndarray,
        limit: int,
        metadata_filter: dict | None = None,
    ) -> list[SearchHit]:
        if has_range_filter(metadata_filter):
            raise ValueError("InMemoryVectorStore does not support range filters")

        query = np.asarray(query_vector, dtype=np.float32)
        with self._lock:
            coll = self._get_collection(collection)
            candidates = [
                (pid, vec, meta)
                for pid, (vec, meta) in coll["points"].items()
                if matches_filter(meta, metadata_filter)
            ]

        if not candidates:
            return []

        matrix = np.stack([vec for _, vec, _ in candidates])
        scores = matrix @ query
        order = np.argsort(-scores, kind="stable")[:limit]
        return [
            SearchHit(id=candidates[i][0], score=float(scores[i]), metadata=dict(candidates[i][2]))
            for i in order
        ]

    def count(self, collection: str, metadata_filter: dict | None = None) -> int:
        with self._lock:
            coll = self._collections.get(collection)
            if coll is None:
                return 0
            return sum(
                1 for _, meta in coll["points"].values() if matches_filter(meta, metadata_filter)
            )

    def list_points(
        self,
        collection: str,
        limit: int,
        offset: int = 0,
        metadata_filter: dict | None = None,
    ) -> list[dict]:
        with self._lock:
            coll = self._collections.get(collection)
            if coll is None:
                return []
            matching = [
                dict(meta)
                for _, meta in coll["points"].values()
                if matches_filter(meta, metadata_filter)
            ]
        return matching[offset : offset + limit] if limit else matching[offset:]
