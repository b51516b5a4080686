"""
HTTP surface over the unified memory orchestrator.
Run with: uvicorn layered_memory.api.main:create_app --factory
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .schemas import (
    ContextRequest,
    ContextResponse,
    DeleteResponse,
    FeedbackRequest,
    FeedbackResponse,
    HealthResponse,
    InsightsResponse,
    MemoryRecordResponse,
    SearchMemoriesRequest,
    SearchMemoriesResponse,
    SemanticMatchResponse,
    SimilarityTrendResponse,
    SimilarityTrendsResponse,
    StoreMemoryRequest,
    StoreMemoryResponse,
)
from ..core.analytics import MemoryAnalytics
from ..core.config import VERSION, debug_enabled, get_insight_analyzer
from ..core.errors import (AnalyzerUnavailable, EmbeddingUnavailable, InvalidArgument, NotFound,
                           StoreUnavailable)
from ..core.orchestrator import UnifiedMemoryOrchestrator
from ..core.schema import MemoryCategory, MemoryRecord, MemoryScope
from ..vector.types import QueryResult


def _record_response(record: MemoryRecord) -> MemoryRecordResponse:
    return MemoryRecordResponse(
        id=record.id,
        scope=record.scope,
        content=record.content,
        category=record.category,
        metadata=record.metadata,
        timestamp=record.timestamp,
        owner_id=record.owner_id,
        relevance_score=record.relevance_score,
        frequency=record.frequency,
    )


def _semantic_response(result: QueryResult) -> SemanticMatchResponse:
    return SemanticMatchResponse(
        memory_id=result.memory_id,
        memory_scope=result.memory_scope,
        content=result.source_text,
        similarity=result.score,
        metadata=result.metadata,
        created_at=result.created_at,
    )


def create_app(orchestrator: UnifiedMemoryOrchestrator = None,
               analytics: MemoryAnalytics = None) -> FastAPI:
    """Build the FastAPI application around an orchestrator (configured from env when omitted)."""
    owns_orchestrator = orchestrator is None
    if owns_orchestrator:
        orchestrator = UnifiedMemoryOrchestrator.from_config()
    if analytics is None:
        analytics = MemoryAnalytics.for_orchestrator(orchestrator, get_insight_analyzer())

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        notifier = orchestrator.create_insight_notifier(analytics.analyzer)
        for category in MemoryCategory:
            notifier.subscribe(category, analytics.on_insights)
        notifier.start()
        _app.state.notifier = notifier
        try:
            yield
        finally:
            notifier.shutdown()
            if owns_orchestrator:
                orchestrator.shutdown()

    app = FastAPI(
        title="Layered Memory API",
        version=VERSION,
        description="User, project and anonymized global memory with semantic retrieval",
        docs_url="/docs" if debug_enabled() else None,
        redoc_url="/redoc" if debug_enabled() else None,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.analytics = analytics

    @app.exception_handler(InvalidArgument)
    async def invalid_argument_handler(request: Request, exc: InvalidArgument):
        return JSONResponse(status_code=422, content={"detail": exc.message})

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": exc.message})

    @app.exception_handler(StoreUnavailable)
    @app.exception_handler(EmbeddingUnavailable)
    @app.exception_handler(AnalyzerUnavailable)
    async def unavailable_handler(request: Request, exc):
        return JSONResponse(status_code=503, content={"detail": f"{exc.__class__.__name__}: service unavailable"})

    @app.get("/health", response_model=HealthResponse)
    def health_check_endpoint():
        """Check system health."""
        health = orchestrator.health()
        return HealthResponse(
            status="healthy" if health["db_health"] else "unhealthy",
            version=VERSION,
            db_health=health["db_health"],
            indexed_vectors=health["indexed_vectors"],
        )

    @app.post("/memories", response_model=StoreMemoryResponse)
    def store_memory_endpoint(request: StoreMemoryRequest):
        """Store an observation across the tiers it belongs to."""
        result = orchestrator.store_across_tiers(
            owner_id=request.user_id,
            content=request.content,
            category=request.category,
            project_id=request.project_id,
            metadata=request.metadata,
            share_anonymously=request.share_anonymously,
            with_embedding=request.with_embedding,
        )
        if not result.success:
            raise HTTPException(status_code=503, detail="User memory could not be stored")
        return StoreMemoryResponse(
            success=result.success,
            memory_id=result.memory_id,
            project_memory_id=result.project_memory_id,
            global_memory_id=result.global_memory_id,
        )

    @app.post("/memories/context", response_model=ContextResponse)
    def context_endpoint(request: ContextRequest):
        context = orchestrator.get_contextual_memories(request.user_id, request.project_id, request.options)
        return ContextResponse(
            user_memories=[_record_response(r) for r in context.user_memories],
            project_memories=[_record_response(r) for r in context.project_memories],
            global_memories=[_record_response(r) for r in context.global_memories],
        )

    @app.post("/memories/search", response_model=SearchMemoriesResponse)
    def search_endpoint(request: SearchMemoriesRequest):
        """Exact and semantic matches, side by side and not deduplicated."""
        results = orchestrator.search_memories(
            request.query_text,
            request.model_dump(exclude={"query_text"}),
        )
        return SearchMemoriesResponse(
            exact_matches=[_record_response(r) for r in results.exact_matches],
            semantic_matches=[_semantic_response(r) for r in results.semantic_matches],
        )

    @app.post("/memories/global/{memory_id}/feedback", response_model=FeedbackResponse)
    def feedback_endpoint(memory_id: str, request: FeedbackRequest):
        if not orchestrator.apply_feedback_by_id(memory_id, request.is_helpful):
            raise NotFound("Global memory not found", {"memory_id": memory_id})
        return FeedbackResponse(success=True, memory_id=memory_id)

    @app.delete("/memories/{scope}/{memory_id}", response_model=DeleteResponse)
    def delete_endpoint(scope: MemoryScope, memory_id: str):
        if not orchestrator.delete_memory(scope, memory_id):
            raise NotFound("Memory not found", {"scope": scope.value, "memory_id": memory_id})
        return DeleteResponse(success=True, memory_id=memory_id)

    @app.get("/insights/{category}", response_model=InsightsResponse)
    def insights_endpoint(category: MemoryCategory, limit: int = 100, force_refresh: bool = False):
        report = analytics.global_insights(category, limit=limit, force_refresh=force_refresh)
        return InsightsResponse(category=report.category, insights=report.insights,
                                memory_count=report.memory_count)

    @app.get("/analytics/similarity-trends", response_model=SimilarityTrendsResponse)
    def similarity_trends_endpoint(segment_by: str = "category", time_from: Optional[datetime] = None,
                                   time_to: Optional[datetime] = None, limit: int = 10):
        trends = analytics.similarity_trends(segment_by, time_from, time_to, limit)
        return SimilarityTrendsResponse(
            segment_by=segment_by,
            trends=[
                SimilarityTrendResponse(
                    segment=t.segment,
                    count=t.count,
                    earliest=t.earliest,
                    latest=t.latest,
                    top_categories=t.top_categories,
                )
                for t in trends
            ],
        )

    return app
