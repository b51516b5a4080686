"""
FAISS-backed vector store.
Exact inner-product search over normalized vectors, i.e. cosine similarity.
"""

import threading
from typing import Dict, List, Optional

import faiss
import numpy as np

from .index import IVectorStore, matches_filters, normalize, rank_results
from .types import QueryResult, VectorRecord


class FaissVectorStore(IVectorStore):
    """FAISS-backed implementation of IVectorStore."""

    def __init__(self, dimension: int = 384):
        """
        Initialize FAISS vector store.

        Args:
            dimension: Dimension of the vectors (default: 384 for hash embeddings)
        """
        self.dimension = dimension
        self._lock = threading.Lock()
        self.index = faiss.IndexIDMap(faiss.IndexFlatIP(dimension))

        # Keep track of record IDs and their corresponding FAISS ids
        self.id_to_vector_index: Dict[str, int] = {}
        self.vector_id_map: Dict[int, VectorRecord] = {}  # FAISS id -> record
        self.next_vector_index = 0

    def add(self, record: VectorRecord) -> None:
        """Add a single vector record to the FAISS store."""
        self.batch_add([record])

    def batch_add(self, records: List[VectorRecord]) -> None:
        """Add multiple vector records to the FAISS store."""
        if not records:
            return

        prepared = [(record, normalize(record.vector, self.dimension)) for record in records]

        with self._lock:
            for record, _ in prepared:
                self._remove_locked(record.id)

            ids = np.arange(self.next_vector_index, self.next_vector_index + len(prepared), dtype=np.int64)
            batch_vectors = np.vstack([vector for _, vector in prepared]).astype(np.float32)
            self.index.add_with_ids(batch_vectors, ids)

            for faiss_id, (record, _) in zip(ids.tolist(), prepared):
                self.id_to_vector_index[record.id] = faiss_id
                self.vector_id_map[faiss_id] = record

            self.next_vector_index += len(prepared)

    def search(self, query_vector: np.ndarray, threshold: float = 0.0, limit: int = 10,
               memory_type: Optional[str] = None,
               metadata_filter: Optional[Dict[str, str]] = None) -> List[QueryResult]:
        """Search for similar vectors and return ranked results."""
        query_array = normalize(query_vector, self.dimension).reshape(1, -1)

        with self._lock:
            if not self.index.ntotal:
                return []
            # Filters are applied after scoring, so score everything in the flat index
            scores, indices = self.index.search(query_array, self.index.ntotal)
            scored = []
            for faiss_id, score in zip(indices[0].tolist(), scores[0].tolist()):
                record = self.vector_id_map.get(faiss_id)
                if record is None or not matches_filters(record, memory_type, metadata_filter):
                    continue
                scored.append((record, score))

        return rank_results(scored, threshold, limit)

    def delete(self, record_id: str) -> None:
        """Delete a vector record by ID."""
        with self._lock:
            self._remove_locked(record_id)

    def _remove_locked(self, record_id: str) -> None:
        faiss_id = self.id_to_vector_index.pop(record_id, None)
        if faiss_id is None:
            return
        self.index.remove_ids(np.array([faiss_id], dtype=np.int64))
        self.vector_id_map.pop(faiss_id, None)

    def clear(self) -> None:
        """Clear all records from the FAISS store."""
        with self._lock:
            self.index = faiss.IndexIDMap(faiss.IndexFlatIP(self.dimension))
            self.id_to_vector_index.clear()
            self.vector_id_map.clear()
            self.next_vector_index = 0

    def __len__(self) -> int:
        with self._lock:
            return int(self.index.ntotal)
