"""
Vector store interface and the in-memory cosine similarity implementation.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

import numpy as np

from ..core.errors import InvalidArgument
from .types import QueryResult, VectorRecord


class IVectorStore(ABC):
    """Abstract interface for vector storage operations."""

    dimension: int

    @abstractmethod
    def add(self, record: VectorRecord) -> None:
        """Add a single vector record to the store."""
        pass

    @abstractmethod
    def batch_add(self, records: List[VectorRecord]) -> None:
        """Add multiple vector records to the store."""
        pass

    @abstractmethod
    def search(self, query_vector: np.ndarray, threshold: float = 0.0, limit: int = 10,
               memory_type: Optional[str] = None,
               metadata_filter: Optional[Dict[str, str]] = None) -> List[QueryResult]:
        """Return records with cosine similarity >= threshold, best first."""
        pass

    @abstractmethod
    def delete(self, record_id: str) -> None:
        """Delete a vector record by ID."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Clear all records from the store."""
        pass

    @abstractmethod
    def __len__(self) -> int:
        pass


def normalize(vector, dimension: int) -> np.ndarray:
    """Validate dimensionality and return the unit-length float32 vector."""
    array = np.asarray(vector, dtype=np.float32).reshape(-1)
    if array.shape[0] != dimension:
        raise InvalidArgument(f"Vector dimension {array.shape[0]} does not match expected dimension {dimension}")
    norm = np.linalg.norm(array)
    if norm == 0 or not np.isfinite(norm):
        raise InvalidArgument("Cannot index a zero or non-finite vector")
    return array / norm


def matches_filters(record: VectorRecord, memory_type: Optional[str],
                    metadata_filter: Optional[Dict[str, str]]) -> bool:
    if memory_type is not None and record.memory_scope.value != str(memory_type):
        return False
    if metadata_filter:
        for key, value in metadata_filter.items():
            if str(record.metadata.get(key)) != str(value):
                return False
    return True


def rank_results(scored: Iterable[tuple], threshold: float, limit: int) -> List[QueryResult]:
    """Order (record, score) pairs by similarity desc, then most recent first."""
    hits = [(record, float(score)) for record, score in scored if score >= threshold]
    hits.sort(key=lambda hit: (-hit[1], -hit[0].created_at.timestamp()))
    return [
        QueryResult(
            id=record.id,
            memory_id=record.memory_id,
            memory_scope=record.memory_scope,
            score=min(1.0, score),
            source_text=record.source_text,
            metadata=record.metadata,
            created_at=record.created_at,
        )
        for record, score in hits[:limit]
    ]


class SimpleInMemoryVectorStore(IVectorStore):
    """Simple in-memory implementation of IVectorStore using cosine similarity."""

    def __init__(self, dimension: int = 384):
        self.dimension = dimension
        self._lock = threading.Lock()
        self._vectors: Dict[str, VectorRecord] = {}  # record_id -> VectorRecord
        self._index: Dict[str, np.ndarray] = {}      # record_id -> normalized vector

    def add(self, record: VectorRecord) -> None:
        """Add a single vector record to the store."""
        normalized = normalize(record.vector, self.dimension)
        with self._lock:
            self._vectors[record.id] = record
            self._index[record.id] = normalized

    def batch_add(self, records: List[VectorRecord]) -> None:
        """Add multiple vector records to the store."""
        prepared = [(record, normalize(record.vector, self.dimension)) for record in records]
        with self._lock:
            for record, normalized in prepared:
                self._vectors[record.id] = record
                self._index[record.id] = normalized

    def search(self, query_vector: np.ndarray, threshold: float = 0.0, limit: int = 10,
               memory_type: Optional[str] = None,
               metadata_filter: Optional[Dict[str, str]] = None) -> List[QueryResult]:
        """Search for similar vectors and return ranked results."""
        query = normalize(query_vector, self.dimension)

        with self._lock:
            candidates = [
                (self._vectors[record_id], stored)
                for record_id, stored in self._index.items()
                if matches_filters(self._vectors[record_id], memory_type, metadata_filter)
            ]

        if not candidates:
            return []

        matrix = np.vstack([stored for _, stored in candidates])
        similarities = matrix @ query
        return rank_results(
            ((record, score) for (record, _), score in zip(candidates, similarities)),
            threshold, limit
        )

    def delete(self, record_id: str) -> None:
        """Delete a vector record by ID."""
        with self._lock:
            self._vectors.pop(record_id, None)
            self._index.pop(record_id, None)

    def clear(self) -> None:
        """Clear all records from the store."""
        with self._lock:
            self._vectors.clear()
            self._index.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._index)
