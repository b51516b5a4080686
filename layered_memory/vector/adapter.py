"""
Vector index adapter.
Embeds text, persists every embedding to the memory_embeddings table and keeps
the in-process similarity index in step with it. The index is an advisory
overlay: it can always be rebuilt from the table.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from util.logging import logger as structured_logger, preview
from ..api.schemas import VectorSearchOptions, parse_options
from ..core.config import EMBED_TIMEOUT_SEC, get_embedding_provider, get_vector_store
from ..core.dao import EmbeddingStore
from ..core.errors import EmbeddingUnavailable, InvalidArgument
from ..core.schema import MemoryScope
from .embeddings import IEmbeddingProvider
from .index import IVectorStore, normalize
from .types import QueryResult, VectorRecord

logger = logging.getLogger(__name__)


class VectorIndexAdapter:
    """Embedding generation plus similarity search over stored memory embeddings."""

    def __init__(self, embedding_provider: IEmbeddingProvider = None, vector_store: IVectorStore = None,
                 embedding_store: EmbeddingStore = None, db_path: str = None,
                 timeout_sec: float = None, max_workers: int = 4):
        self.embedding_provider = embedding_provider if embedding_provider is not None else get_embedding_provider()
        if vector_store is None:
            vector_store = get_vector_store(self.embedding_provider.get_dimension())
        self.vector_store = vector_store
        self.embedding_store = embedding_store if embedding_store is not None else EmbeddingStore(db_path)
        self.timeout_sec = timeout_sec if timeout_sec is not None else EMBED_TIMEOUT_SEC
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="embed")

    @property
    def dimension(self) -> int:
        return self.vector_store.dimension

    def embed(self, text: str, timeout: float = None) -> np.ndarray:
        """Embed text within the timeout. Never returns a zero vector."""
        if not text or not text.strip():
            raise EmbeddingUnavailable("Cannot embed empty text")

        timeout = timeout or self.timeout_sec
        future = self._executor.submit(self.embedding_provider.embed_text, text)
        try:
            raw = future.result(timeout=timeout)
        except FutureTimeout as e:
            future.cancel()
            raise EmbeddingUnavailable("Embedding timed out", {"timeout_sec": timeout}) from e
        except Exception as e:
            raise EmbeddingUnavailable(f"Embedding provider failed: {e}") from e

        vector = np.asarray(raw, dtype=np.float32).reshape(-1)
        if vector.size == 0 or not np.any(vector) or not np.all(np.isfinite(vector)):
            raise EmbeddingUnavailable("Embedding provider returned an unusable vector",
                                       {"text": preview(text)})
        return vector

    def index(self, memory_id: str, scope: MemoryScope, text: str,
              metadata: Dict[str, Any] = None, timeout: float = None) -> VectorRecord:
        """Embed and store the vector for one memory record.

        Raises EmbeddingUnavailable, InvalidArgument (dimension mismatch) or
        StoreUnavailable; the owning record is never touched.
        """
        vector = normalize(self.embed(text, timeout), self.dimension)
        record = VectorRecord(
            memory_id=memory_id,
            memory_scope=MemoryScope(scope),
            vector=vector,
            source_text=text,
            metadata=dict(metadata or {}),
        )

        self.embedding_store.insert(record)
        self.vector_store.add(record)

        structured_logger.log_vector_operation("index", record.id, {
            "memory_id": memory_id,
            "scope": record.memory_scope.value,
            "dimension": self.dimension,
        })
        return record

    def search(self, query_text: str, options=None, timeout: float = None,
               visibility: Optional[List[Tuple[MemoryScope, Dict[str, str]]]] = None) -> List[QueryResult]:
        """Records whose similarity to the query is >= threshold, best first.

        ``visibility`` optionally restricts hits to a union of (scope, metadata
        equality filter) partitions, e.g. one user's records plus the global tier.
        The query is embedded once for all partitions.
        """
        options = parse_options(VectorSearchOptions, options)
        if not query_text or not query_text.strip():
            raise InvalidArgument("query_text cannot be empty")

        base_filter = dict(options.metadata_filters)
        if options.category_filter:
            base_filter["category"] = options.category_filter.value

        if visibility is None:
            partitions = [(options.scope_filter, {})]
        else:
            partitions = [(scope, filters) for scope, filters in visibility
                          if options.scope_filter is None or MemoryScope(scope) == options.scope_filter]

        query_vector = self.embed(query_text, timeout)

        hits: Dict[str, QueryResult] = {}
        for scope, filters in partitions:
            metadata_filter = {**base_filter, **(filters or {})}
            for result in self.vector_store.search(query_vector, threshold=options.threshold,
                                                   limit=options.limit,
                                                   memory_type=MemoryScope(scope).value if scope else None,
                                                   metadata_filter=metadata_filter or None):
                hits[result.id] = result

        results = sorted(hits.values(), key=lambda r: (-r.score, -r.created_at.timestamp()))[:options.limit]

        structured_logger.log_vector_operation("search", "-", {
            "query": preview(query_text),
            "threshold": options.threshold,
            "results": len(results),
        })
        return results

    def delete_for_memory(self, scope: MemoryScope, memory_id: str) -> int:
        """Drop the stored and indexed vectors of one record."""
        removed = self.embedding_store.delete_for_memory(scope, memory_id)
        for vector_id in removed:
            self.vector_store.delete(vector_id)
        return len(removed)

    def rebuild_index(self) -> int:
        """Reload the similarity index from the embeddings table."""
        self.vector_store.clear()

        usable = []
        skipped = 0
        for record in self.embedding_store.list_embeddings():
            if record.vector is None or record.vector.shape[0] != self.dimension:
                skipped += 1
                continue
            usable.append(record)

        if usable:
            self.vector_store.batch_add(usable)

        if skipped:
            logger.warning(f"Skipped {skipped} stored embeddings with a dimension other than {self.dimension}")
        structured_logger.log_operation("vector.rebuild", "success",
                                        {"indexed": len(usable), "skipped": skipped})
        return len(usable)

    def indexed_count(self) -> int:
        return len(self.vector_store)

    def shutdown(self):
        self._executor.shutdown(wait=False)
