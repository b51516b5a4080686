"""
Aggregate analytics over the memory tiers: embedding similarity trends and
cached global insights.
"""

from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from util.logging import logger as structured_logger
from .analyzer import IInsightAnalyzer, NOT_ENOUGH_DATA
from .cache import QueryCache, make_cache_key
from .config import DEEP_ANALYSIS_CACHE_TTL_SEC, GLOBAL_RAW_THRESHOLD
from .dao import EmbeddingStore, GlobalMemoryStore
from .errors import InvalidArgument
from .schema import MemoryCategory, utcnow

TREND_WINDOW = timedelta(days=30)
TREND_SAMPLE_LIMIT = 500
SEGMENT_KEYS = {"category": "category", "user": "user_id", "project": "project_id"}


@dataclass
class SimilarityTrend:
    segment: str
    count: int
    earliest: datetime
    latest: datetime
    top_categories: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class InsightReport:
    category: MemoryCategory
    insights: List[str]
    memory_count: int


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def top_categories(metadata_items: List[Dict[str, Any]], limit: int = 3) -> List[Dict[str, Any]]:
    """Most frequent subcategory (or category) names with their counts."""
    counts = Counter(
        str(item.get("subcategory") or item.get("category") or "unknown")
        for item in metadata_items
    )
    return [{"name": name, "count": count} for name, count in counts.most_common(limit)]


class MemoryAnalytics:
    """Read-only aggregates; expensive results are memoized in the query cache."""

    def __init__(self, global_store: GlobalMemoryStore, embedding_store: EmbeddingStore,
                 analyzer: IInsightAnalyzer, cache: QueryCache,
                 clock: Callable[[], datetime] = utcnow):
        self.global_store = global_store
        self.embedding_store = embedding_store
        self.analyzer = analyzer
        self.cache = cache
        self._clock = clock

    @classmethod
    def for_orchestrator(cls, orchestrator, analyzer: IInsightAnalyzer) -> "MemoryAnalytics":
        return cls(orchestrator.global_store, orchestrator.vector_adapter.embedding_store,
                   analyzer, orchestrator.cache)

    def similarity_trends(self, segment_by: str = "category", time_from: datetime = None,
                          time_to: datetime = None, limit: int = 10) -> List[SimilarityTrend]:
        """Group embeddings created in a window by segment, largest segments first.

        The window defaults to the 30 days before ``time_to`` (or now).
        """
        if segment_by not in SEGMENT_KEYS:
            raise InvalidArgument(f"segment_by must be one of {sorted(SEGMENT_KEYS)}",
                                  {"segment_by": segment_by})
        if limit < 1:
            raise InvalidArgument("limit must be >= 1", {"limit": limit})

        time_to = _aware(time_to or self._clock())
        time_from = _aware(time_from or (time_to - TREND_WINDOW))
        if time_from > time_to:
            raise InvalidArgument("time_from must not be after time_to")

        embeddings = self.embedding_store.list_embeddings(time_from, time_to, limit=TREND_SAMPLE_LIMIT)

        metadata_key = SEGMENT_KEYS[segment_by]
        segments = defaultdict(list)
        for embedding in embeddings:
            segments[str(embedding.metadata.get(metadata_key) or "unknown")].append(embedding)

        trends = [
            SimilarityTrend(
                segment=segment,
                count=len(items),
                earliest=min(item.created_at for item in items),
                latest=max(item.created_at for item in items),
                top_categories=top_categories([item.metadata for item in items]),
            )
            for segment, items in segments.items()
        ]
        trends.sort(key=lambda trend: (-trend.count, trend.segment))

        structured_logger.log_operation("analytics.similarity_trends", "success", {
            "segment_by": segment_by,
            "embeddings": len(embeddings),
            "segments": len(trends),
        })
        return trends[:limit]

    def global_insights(self, category, limit: int = 100, force_refresh: bool = False,
                        ttl_sec: float = DEEP_ANALYSIS_CACHE_TTL_SEC) -> InsightReport:
        """Analyzer insights over the most relevant global records of one category.

        Raises AnalyzerUnavailable when the analyzer fails; failures are never cached.
        """
        try:
            category = MemoryCategory(category)
        except ValueError as e:
            raise InvalidArgument(f"Unknown memory category: {category}") from e

        key = make_cache_key("global_insights", {"category": category.value, "limit": limit})
        if not force_refresh:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        records = self.global_store.query(None, {
            "categories": {category},
            "limit": limit,
            "relevance_threshold": GLOBAL_RAW_THRESHOLD,
        })
        if not records:
            return InsightReport(category=category, insights=[NOT_ENOUGH_DATA], memory_count=0)

        insights = self.analyzer.analyze(category, records, sample_limit=limit, force_refresh=force_refresh)
        report = InsightReport(category=category, insights=insights, memory_count=len(records))
        self.cache.put(key, report, ttl_sec)
        return report

    def on_insights(self, category, insights: List[str]):
        """Insight listener: drop cached insight reports once a category was re-analyzed."""
        removed = self.cache.invalidate_prefix("global_insights:")
        structured_logger.log_operation("analytics.insights_invalidated", "success", {
            "category": MemoryCategory(category).value,
            "insights": len(insights),
            "entries": removed,
        })
