"""
Record shapes shared by the memory tiers, the vector overlay and the cache.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import InvalidArgument


class MemoryScope(str, Enum):
    """Tier that owns a record."""
    USER = "User"
    PROJECT = "Project"
    GLOBAL = "Global"


class MemoryCategory(str, Enum):
    """Kind of observation a record holds."""
    DESIGN_PREFERENCE = "DesignPreference"
    TONE_PREFERENCE = "TonePreference"
    INTERACTION_PATTERN = "InteractionPattern"
    LAYOUT_PREFERENCE = "LayoutPreference"
    COLOR_PREFERENCE = "ColorPreference"
    PROJECT_CONTEXT = "ProjectContext"
    CLIENT_FEEDBACK = "ClientFeedback"
    SUCCESSFUL_OUTPUT = "SuccessfulOutput"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_memory_id() -> str:
    return str(uuid.uuid4())


@dataclass
class MemoryRecord:
    """One observation stored in a single tier."""

    id: str
    scope: MemoryScope
    content: str
    category: MemoryCategory
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    owner_id: Optional[str] = None
    """User id (User scope) or project id (Project scope); None for Global"""

    relevance_score: Optional[float] = None
    """Global only: broad usefulness in [0, 1]"""

    frequency: Optional[int] = None
    """Global only: number of reinforcing feedback events, >= 1"""

    @classmethod
    def create(cls, scope: MemoryScope, content: str, category: MemoryCategory,
               owner_id: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None,
               relevance_score: Optional[float] = None, frequency: Optional[int] = None) -> "MemoryRecord":
        """Build a new record with a fresh id and creation timestamp."""
        record = cls(
            id=new_memory_id(),
            scope=MemoryScope(scope),
            content=content,
            category=MemoryCategory(category),
            metadata=dict(metadata or {}),
            owner_id=owner_id,
            relevance_score=relevance_score,
            frequency=frequency,
        )
        validate_record(record)
        return record

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "scope": self.scope.value,
            "content": self.content,
            "category": self.category.value,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.owner_id is not None:
            data["owner_id"] = self.owner_id
        if self.scope == MemoryScope.GLOBAL:
            data["relevance_score"] = self.relevance_score
            data["frequency"] = self.frequency
        return data


def validate_record(record: MemoryRecord) -> None:
    """Shared validation for all three tiers."""
    if not record.id:
        raise InvalidArgument("record id is required")
    if not isinstance(record.content, str) or not record.content.strip():
        raise InvalidArgument("content cannot be empty", {"memory_id": record.id})
    if not isinstance(record.metadata, dict):
        raise InvalidArgument("metadata must be a mapping", {"memory_id": record.id})

    if record.scope in (MemoryScope.USER, MemoryScope.PROJECT):
        if not record.owner_id or not str(record.owner_id).strip():
            raise InvalidArgument(f"{record.scope.value} records require an owner id",
                                  {"memory_id": record.id})
        if record.relevance_score is not None or record.frequency is not None:
            raise InvalidArgument("relevance and frequency are global-only fields",
                                  {"memory_id": record.id})
    else:
        if record.owner_id is not None:
            raise InvalidArgument("global records cannot carry an owner id",
                                  {"memory_id": record.id})
        if record.relevance_score is None or not 0.0 <= record.relevance_score <= 1.0:
            raise InvalidArgument("relevance_score must be within [0, 1]",
                                  {"memory_id": record.id, "relevance_score": record.relevance_score})
        if record.frequency is None or record.frequency < 1:
            raise InvalidArgument("frequency must be >= 1",
                                  {"memory_id": record.id, "frequency": record.frequency})


@dataclass
class CacheEntry:
    """Cached aggregate query result."""
    key: str
    value: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now >= self.stored_at + self.ttl
