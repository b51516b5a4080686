"""
Unified memory orchestrator - the single entry point for the layered memory.

Writes fan out User -> Project -> Global, each step its own atomic write; only
the User write defines success. Reads fan in from every tier in parallel and
degrade per tier, so one unreachable tier never fails the whole read.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from util.logging import logger as structured_logger, preview
from . import anonymizer
from .cache import QueryCache, make_cache_key
from .config import (CONTEXT_GLOBAL_LIMIT, EMBED_TIMEOUT_SEC, GLOBAL_DIRECT_THRESHOLD,
                     GLOBAL_MERGED_THRESHOLD, INDUSTRY_CACHE_TTL_SEC, PATTERN_CACHE_TTL_SEC,
                     get_insight_analyzer)
from .dao import GlobalMemoryStore, ProjectMemoryStore, UserMemoryStore, metadata_snapshot
from .db import health_check, init_db
from .errors import InvalidArgument, LayeredMemoryError, StoreUnavailable
from .notifier import ChangeFeed, InsightNotifier
from .schema import MemoryCategory, MemoryRecord, MemoryScope
from ..api.schemas import MAX_QUERY_LIMIT, MemoryQueryOptions, SearchMemoriesRequest, parse_options
from ..vector.adapter import VectorIndexAdapter
from ..vector.types import QueryResult

logger = logging.getLogger(__name__)


@dataclass
class StoreResult:
    """Outcome of store_across_tiers; success reflects the User write only."""
    success: bool
    memory_id: Optional[str] = None
    project_memory_id: Optional[str] = None
    global_memory_id: Optional[str] = None
    errors: Dict[str, str] = field(default_factory=dict)


@dataclass
class ContextualMemories:
    user_memories: List[MemoryRecord] = field(default_factory=list)
    project_memories: List[MemoryRecord] = field(default_factory=list)
    global_memories: List[MemoryRecord] = field(default_factory=list)


@dataclass
class SearchResults:
    """Exact and semantic hits side by side, never merged or deduplicated."""
    exact_matches: List[MemoryRecord] = field(default_factory=list)
    semantic_matches: List[QueryResult] = field(default_factory=list)


def _category(value) -> MemoryCategory:
    try:
        return MemoryCategory(value)
    except ValueError as e:
        raise InvalidArgument(f"Unknown memory category: {value}") from e


def _scope(value) -> MemoryScope:
    try:
        return MemoryScope(value)
    except ValueError as e:
        raise InvalidArgument(f"Unknown memory scope: {value}") from e


class UnifiedMemoryOrchestrator:
    """Fan-out writes and fan-in reads over the three tiers and the vector index."""

    def __init__(self, user_store: UserMemoryStore = None, project_store: ProjectMemoryStore = None,
                 global_store: GlobalMemoryStore = None, vector_adapter: VectorIndexAdapter = None,
                 cache: QueryCache = None, change_feed: ChangeFeed = None, db_path: str = None,
                 max_workers: int = 8, search_timeout_sec: float = None):
        self.db_path = db_path
        self.change_feed = change_feed if change_feed is not None else ChangeFeed()
        self.user_store = user_store if user_store is not None else UserMemoryStore(db_path)
        self.project_store = project_store if project_store is not None else ProjectMemoryStore(db_path)
        if global_store is None:
            global_store = GlobalMemoryStore(db_path, change_feed=self.change_feed)
        self.global_store = global_store
        self.vector_adapter = vector_adapter if vector_adapter is not None else VectorIndexAdapter(db_path=db_path)
        self.cache = cache if cache is not None else QueryCache()
        self.search_timeout_sec = search_timeout_sec if search_timeout_sec is not None else EMBED_TIMEOUT_SEC * 2
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tier-read")

    @classmethod
    def from_config(cls, db_path: str = None, rebuild_index: bool = True, **kwargs) -> "UnifiedMemoryOrchestrator":
        """Initialize the database and wire an orchestrator from configuration."""
        init_db(db_path)
        orchestrator = cls(db_path=db_path, **kwargs)
        if rebuild_index:
            orchestrator.vector_adapter.rebuild_index()
        return orchestrator

    def create_insight_notifier(self, analyzer=None, **kwargs) -> InsightNotifier:
        """Insight notifier bound to this orchestrator's global tier and change feed."""
        return InsightNotifier(self.global_store, analyzer or get_insight_analyzer(),
                               self.change_feed, **kwargs)

    # Writes

    def store_across_tiers(self, owner_id: str, content: str, category, project_id: str = None,
                           metadata: Dict[str, Any] = None, share_anonymously: bool = False,
                           with_embedding: bool = True) -> StoreResult:
        """Record one observation in every tier it belongs to.

        Arguments are validated before any write. The User write is attempted
        first and alone decides success; Project, Global and indexing steps are
        best-effort and never undo an earlier step.
        """
        category = _category(category)
        metadata = dict(metadata or {})
        project_id = project_id.strip() if isinstance(project_id, str) and project_id.strip() else None

        user_record = MemoryRecord.create(MemoryScope.USER, content, category,
                                          owner_id=owner_id, metadata=metadata)
        project_record = (MemoryRecord.create(MemoryScope.PROJECT, content, category,
                                              owner_id=project_id, metadata=metadata)
                          if project_id else None)

        result = StoreResult(success=False)

        try:
            self.user_store.store(user_record)
        except StoreUnavailable as e:
            logger.error(f"User tier write failed for '{owner_id}': {e}")
            result.errors["user"] = str(e)
            return result
        result.success = True
        result.memory_id = user_record.id

        if project_record is not None:
            try:
                self.project_store.store(project_record)
                result.project_memory_id = project_record.id
            except StoreUnavailable as e:
                logger.warning(f"Project tier write failed for '{project_id}': {e}")
                result.errors["project"] = str(e)

        if with_embedding:
            self._index(user_record, result, "user_index")
            if result.project_memory_id:
                self._index(project_record, result, "project_index")

        if anonymizer.is_eligible_for_global(category, share_anonymously):
            try:
                global_record = anonymizer.prepare_global_record(content, category, metadata)
                self.global_store.store(global_record)
                result.global_memory_id = global_record.id
            except LayeredMemoryError as e:
                logger.warning(f"Global tier write failed: {e}")
                result.errors["global"] = str(e)
            else:
                self._index(global_record, result, "global_index")

        structured_logger.log_operation("orchestrator.store", "success", {
            "memory_id": result.memory_id,
            "project_memory_id": result.project_memory_id,
            "global_memory_id": result.global_memory_id,
            "content": preview(content),
            "failed_steps": sorted(result.errors),
        })
        return result

    def _index(self, record: MemoryRecord, result: StoreResult, step: str):
        try:
            self.vector_adapter.index(record.id, record.scope, record.content, metadata_snapshot(record))
        except LayeredMemoryError as e:
            structured_logger.log_vector_operation("index", record.id, {"error": str(e)}, status="failed")
            result.errors[step] = str(e)

    # Reads

    def get_contextual_memories(self, user_id: str, project_id: str = None, options=None) -> ContextualMemories:
        """User, Project and Global records for one logical read.

        The Global contribution always uses the direct threshold and is capped at
        the tighter of the caller's limit and the context cap.
        """
        options = parse_options(MemoryQueryOptions, options)
        global_options = options.model_copy(update={
            "relevance_threshold": GLOBAL_DIRECT_THRESHOLD,
            "limit": min(options.limit, CONTEXT_GLOBAL_LIMIT),
        })

        futures = {
            "user": self._executor.submit(self.user_store.query, user_id, options),
            "global": self._executor.submit(self.global_store.query, None, global_options),
        }
        if project_id:
            futures["project"] = self._executor.submit(self.project_store.query, project_id, options)

        results = {name: self._collect(name, future) for name, future in futures.items()}
        return ContextualMemories(
            user_memories=results["user"],
            project_memories=results.get("project", []),
            global_memories=results["global"],
        )

    def search_memories(self, query_text: str, options=None) -> SearchResults:
        """Exact tier matches plus semantic matches, returned unmerged."""
        options = parse_options(SearchMemoriesRequest, {"query_text": query_text, **(options or {})})

        tier_options = {"categories": options.categories, "limit": options.limit}
        exact = []
        if options.user_id:
            exact.append(("user", self._executor.submit(self.user_store.query, options.user_id, tier_options)))
        if options.project_id:
            exact.append(("project", self._executor.submit(self.project_store.query, options.project_id,
                                                           tier_options)))
        exact.append(("global", self._executor.submit(
            self.global_store.query, None, {**tier_options, "relevance_threshold": GLOBAL_MERGED_THRESHOLD}
        )))

        semantic = self._executor.submit(self._semantic_search, options) if options.use_vector_search else None

        exact_matches = []
        for name, future in exact:
            exact_matches.extend(self._collect(name, future))

        semantic_matches = []
        if semantic is not None:
            try:
                semantic_matches = semantic.result(timeout=self.search_timeout_sec)
            except FutureTimeout:
                structured_logger.log_vector_operation("search", "-", {"error": "timed out"}, status="failed")
            except LayeredMemoryError as e:
                structured_logger.log_vector_operation("search", "-", {"error": str(e)}, status="failed")
            except Exception as e:
                logger.error(f"Semantic search failed: {e}")

        return SearchResults(exact_matches=exact_matches, semantic_matches=semantic_matches)

    def _semantic_search(self, options: SearchMemoriesRequest) -> List[QueryResult]:
        visibility = [(MemoryScope.GLOBAL, {})]
        if options.user_id:
            visibility.append((MemoryScope.USER, {"user_id": options.user_id}))
        if options.project_id:
            visibility.append((MemoryScope.PROJECT, {"project_id": options.project_id}))

        categories = {c.value for c in options.categories or ()}
        search_options = {"threshold": options.threshold, "limit": options.limit}
        if len(categories) == 1:
            search_options["category_filter"] = next(iter(categories))
        elif categories:
            # several categories: widen the candidate set and filter afterwards
            search_options["limit"] = MAX_QUERY_LIMIT

        results = self.vector_adapter.search(options.query_text, search_options, visibility=visibility)
        if len(categories) > 1:
            results = [r for r in results if r.metadata.get("category") in categories][:options.limit]
        return results

    def _collect(self, name: str, future) -> List[MemoryRecord]:
        try:
            return future.result()
        except InvalidArgument:
            raise
        except Exception as e:
            logger.error(f"{name} tier read failed: {e}")
            return []

    # Feedback, deletion and cached aggregates

    def apply_feedback_by_id(self, memory_id: str, is_helpful: bool) -> bool:
        """Apply feedback to a Global record; False when it no longer exists."""
        try:
            updated = self.global_store.apply_feedback(memory_id, is_helpful)
        except StoreUnavailable as e:
            structured_logger.log_feedback(memory_id, is_helpful, status="failed")
            logger.error(f"Feedback for '{memory_id}' failed: {e}")
            return False
        if updated is None:
            structured_logger.log_feedback(memory_id, is_helpful, status="not_found")
            return False
        return True

    def delete_memory(self, scope, memory_id: str) -> bool:
        """Delete a User or Project record and its embeddings. Global records are not deletable."""
        scope = _scope(scope)
        if scope == MemoryScope.GLOBAL:
            raise InvalidArgument("Global memories cannot be deleted", {"memory_id": memory_id})

        store = self.user_store if scope == MemoryScope.USER else self.project_store
        deleted = store.delete(memory_id)
        if deleted:
            try:
                self.vector_adapter.delete_for_memory(scope, memory_id)
            except LayeredMemoryError as e:
                logger.warning(f"Failed to drop embeddings for '{memory_id}': {e}")
        return deleted

    def get_global_patterns(self, category=None, limit: int = 20, page: int = 1, industry: str = None,
                            ttl_sec: float = None, relevance_threshold: float = None) -> List[MemoryRecord]:
        """Paginated Global query memoized in the query cache.

        Industry-filtered pages default to the longer industry TTL.
        """
        if page < 1:
            raise InvalidArgument("page must be >= 1", {"page": page})

        options = parse_options(MemoryQueryOptions, {
            "categories": {_category(category)} if category else None,
            "limit": limit,
            "offset": (page - 1) * limit,
            "metadata_filters": {"industry": industry} if industry else {},
            "relevance_threshold": (GLOBAL_DIRECT_THRESHOLD if relevance_threshold is None
                                    else relevance_threshold),
        })
        if ttl_sec is None:
            ttl_sec = INDUSTRY_CACHE_TTL_SEC if industry else PATTERN_CACHE_TTL_SEC

        key = make_cache_key("global_patterns", options)
        return list(self.cache.get_or_compute(key, lambda: self.global_store.query(None, options), ttl_sec))

    def health(self) -> Dict[str, Any]:
        return {
            "db_health": health_check(self.db_path),
            "indexed_vectors": self.vector_adapter.indexed_count(),
            "cache": self.cache.stats(),
        }

    def shutdown(self):
        self._executor.shutdown(wait=True)
        self.vector_adapter.shutdown()
