"""
Request and option models for the layered memory API.
Validation failures are reported to library callers as InvalidArgument.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..core.config import DEFAULT_QUERY_LIMIT, DEFAULT_SEARCH_LIMIT, DEFAULT_SIMILARITY_THRESHOLD
from ..core.errors import InvalidArgument
from ..core.schema import MemoryCategory, MemoryScope

MAX_QUERY_LIMIT = 1000

ModelT = TypeVar("ModelT", bound=BaseModel)


class TimeRange(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: Optional[datetime] = Field(default=None, alias="from")
    to: Optional[datetime] = None

    @model_validator(mode="after")
    def range_must_be_ordered(self):
        if self.from_ and self.to and self.from_ > self.to:
            raise ValueError('time range start must not be after its end')
        return self


class MemoryQueryOptions(BaseModel):
    """Options recognized by every tier query."""
    model_config = ConfigDict(populate_by_name=True)

    categories: Optional[Set[MemoryCategory]] = None
    limit: int = DEFAULT_QUERY_LIMIT
    offset: int = 0
    time_range: Optional[TimeRange] = None
    metadata_filters: Dict[str, str] = Field(default_factory=dict)
    relevance_threshold: Optional[float] = None

    @field_validator('limit')
    @classmethod
    def limit_must_be_in_range(cls, v):
        if v < 1 or v > MAX_QUERY_LIMIT:
            raise ValueError(f'limit must be between 1 and {MAX_QUERY_LIMIT}')
        return v

    @field_validator('offset')
    @classmethod
    def offset_must_not_be_negative(cls, v):
        if v < 0:
            raise ValueError('offset cannot be negative')
        return v

    @field_validator('relevance_threshold')
    @classmethod
    def threshold_must_be_unit_interval(cls, v):
        if v is not None and not 0.0 <= v <= 1.0:
            raise ValueError('relevance_threshold must be within [0, 1]')
        return v

    @field_validator('metadata_filters')
    @classmethod
    def filter_keys_must_not_be_empty(cls, v):
        for key in v:
            if not key.strip() or '"' in key:
                raise ValueError('metadata filter keys must be non-empty and unquoted')
        return v


class VectorSearchOptions(BaseModel):
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    limit: int = DEFAULT_SEARCH_LIMIT
    scope_filter: Optional[MemoryScope] = None
    category_filter: Optional[MemoryCategory] = None
    metadata_filters: Dict[str, str] = Field(default_factory=dict)

    @field_validator('threshold')
    @classmethod
    def threshold_must_be_unit_interval(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError('threshold must be within [0, 1]')
        return v

    @field_validator('limit')
    @classmethod
    def limit_must_be_positive(cls, v):
        if v < 1 or v > MAX_QUERY_LIMIT:
            raise ValueError(f'limit must be between 1 and {MAX_QUERY_LIMIT}')
        return v


class StoreMemoryRequest(BaseModel):
    user_id: str
    content: str
    category: MemoryCategory
    project_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    share_anonymously: bool = False
    with_embedding: bool = True

    @field_validator('user_id')
    @classmethod
    def user_id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('user_id cannot be empty')
        return v

    @field_validator('content')
    @classmethod
    def content_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('content cannot be empty')
        return v


class ContextRequest(BaseModel):
    user_id: str
    project_id: Optional[str] = None
    options: MemoryQueryOptions = Field(default_factory=MemoryQueryOptions)


class SearchMemoriesRequest(BaseModel):
    query_text: str
    user_id: Optional[str] = None
    project_id: Optional[str] = None
    categories: Optional[Set[MemoryCategory]] = None
    limit: int = DEFAULT_SEARCH_LIMIT
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    use_vector_search: bool = True

    @field_validator('query_text')
    @classmethod
    def query_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('query_text cannot be empty')
        return v

    @field_validator('threshold')
    @classmethod
    def threshold_must_be_unit_interval(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError('threshold must be within [0, 1]')
        return v

    @field_validator('limit')
    @classmethod
    def limit_must_be_in_range(cls, v):
        if v < 1 or v > MAX_QUERY_LIMIT:
            raise ValueError(f'limit must be between 1 and {MAX_QUERY_LIMIT}')
        return v


class FeedbackRequest(BaseModel):
    is_helpful: bool


# Response models

class MemoryRecordResponse(BaseModel):
    id: str
    scope: MemoryScope
    content: str
    category: MemoryCategory
    metadata: Dict[str, Any]
    timestamp: datetime
    owner_id: Optional[str] = None
    relevance_score: Optional[float] = None
    frequency: Optional[int] = None


class StoreMemoryResponse(BaseModel):
    success: bool
    memory_id: Optional[str] = None
    project_memory_id: Optional[str] = None
    global_memory_id: Optional[str] = None


class ContextResponse(BaseModel):
    user_memories: List[MemoryRecordResponse]
    project_memories: List[MemoryRecordResponse]
    global_memories: List[MemoryRecordResponse]


class SemanticMatchResponse(BaseModel):
    memory_id: str
    memory_scope: MemoryScope
    content: str
    similarity: float
    metadata: Dict[str, Any]
    created_at: datetime


class SearchMemoriesResponse(BaseModel):
    exact_matches: List[MemoryRecordResponse]
    semantic_matches: List[SemanticMatchResponse]


class FeedbackResponse(BaseModel):
    success: bool
    memory_id: str


class InsightsResponse(BaseModel):
    category: MemoryCategory
    insights: List[str]
    memory_count: int


class CategoryCount(BaseModel):
    name: str
    count: int


class SimilarityTrendResponse(BaseModel):
    segment: str
    count: int
    earliest: datetime
    latest: datetime
    top_categories: List[CategoryCount]


class SimilarityTrendsResponse(BaseModel):
    segment_by: str
    trends: List[SimilarityTrendResponse]


class DeleteResponse(BaseModel):
    success: bool
    memory_id: str


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    indexed_vectors: int


def parse_options(model_cls: Type[ModelT], value: Any = None) -> ModelT:
    """Coerce None, a mapping or a model into ``model_cls``; invalid input raises InvalidArgument."""
    if isinstance(value, model_cls):
        return value
    try:
        if value is None:
            return model_cls()
        if isinstance(value, BaseModel):
            value = value.model_dump(by_alias=True)
        return model_cls.model_validate(value)
    except ValidationError as e:
        raise InvalidArgument(f"Invalid {model_cls.__name__}: {e.error_count()} error(s)",
                              {"errors": [err.get("msg") for err in e.errors()]}) from e
