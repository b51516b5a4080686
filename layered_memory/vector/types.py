"""
Vector overlay types - an advisory similarity index derived from the
memory_embeddings table.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

import numpy as np

from ..core.schema import MemoryScope, new_memory_id, utcnow


@dataclass
class VectorRecord:
    """Embedding of one memory record."""

    memory_id: str
    """Identifier of the owning memory record"""

    memory_scope: MemoryScope
    """Tier that owns the record; ids are only unique within a tier"""

    vector: Optional[np.ndarray]
    """The vector representation of the content"""

    source_text: str = ""
    """Text the vector was computed from"""

    metadata: Dict[str, object] = field(default_factory=dict)
    """Denormalized metadata snapshot used for filtering"""

    created_at: datetime = field(default_factory=utcnow)

    id: str = field(default_factory=new_memory_id)
    """Unique identifier for the vector record"""


@dataclass
class QueryResult:
    """A similarity search hit."""

    id: str
    """Identifier of the matching vector record"""

    memory_id: str
    memory_scope: MemoryScope

    score: float
    """Cosine similarity of the match"""

    source_text: str
    metadata: Dict[str, object]
    created_at: datetime
