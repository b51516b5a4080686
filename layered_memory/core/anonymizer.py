"""
Anonymization and relevance engine.
Masks identifying text, strips identifying metadata and scores records that are
promoted from a private tier to the global tier.
"""

import re
from dataclasses import replace
from typing import Any, Dict, Iterable

from util.logging import audit_event
from .config import IDENTIFYING_METADATA_KEYS, LEARNABLE_CATEGORIES
from .schema import MemoryCategory, MemoryRecord, MemoryScope

# Placeholders contain only letters and brackets, so no pattern can re-match them.
EMAIL_PATTERN = re.compile(r'[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}')
SSN_PATTERN = re.compile(r'\b\d{3}-\d{2}-\d{4}\b')
PHONE_PATTERN = re.compile(
    r'(?<![\w+])(?:\+?\d{1,3}[\s.-]?)?(?:\(\d{3}\)|\d{3})[\s.-]?\d{3}[\s.-]?\d{4}\b'
)
NAME_PATTERN = re.compile(
    r"\b(?:Mr|Mrs|Ms|Miss|Mx|Dr|Prof)\.?\s+[A-Z][a-zA-Z'-]*(?:\s+[A-Z][a-zA-Z'-]*)*\b"
)

# A placeholder can expose a neighbouring match to an earlier lookbehind, so
# sanitize repeats the rules until the text stops changing.
REDACTION_RULES = (
    (EMAIL_PATTERN, "[EMAIL]"),
    (SSN_PATTERN, "[SSN]"),
    (PHONE_PATTERN, "[PHONE]"),
    (NAME_PATTERN, "[NAME]"),
)

# snake_case spellings are stripped alongside the canonical keys
_IDENTIFYING_KEYS = frozenset(IDENTIFYING_METADATA_KEYS) | frozenset(
    {"user_id", "owner_id", "user_email", "client_name", "project_name"}
)

BASE_RELEVANCE = 0.5
MAX_INITIAL_RELEVANCE = 0.9
FEEDBACK_STEP = 0.1


def sanitize(content: str) -> str:
    """Mask email, government id, phone and honorific+name patterns."""
    if not content:
        return content
    previous = None
    while content != previous:
        previous = content
        for pattern, placeholder in REDACTION_RULES:
            content = pattern.sub(placeholder, content)
    return content


def strip_identifying_metadata(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Drop identifying keys and sanitize remaining string values."""
    cleaned = {}
    for key, value in (metadata or {}).items():
        if key in _IDENTIFYING_KEYS:
            continue
        cleaned[key] = _strip_value(value)
    return cleaned


def _strip_value(value: Any) -> Any:
    if isinstance(value, str):
        return sanitize(value)
    if isinstance(value, dict):
        return strip_identifying_metadata(value)
    if isinstance(value, list):
        return [_strip_value(v) for v in value]
    return value


def _clamp(score: float) -> float:
    return min(1.0, max(0.0, round(score, 6)))


def initial_relevance(content: str, category) -> float:
    """Starting relevance for a newly promoted global record."""
    category = MemoryCategory(category)
    score = BASE_RELEVANCE
    if 10 < len(content or "") < 1000:
        score += 0.1
    if category == MemoryCategory.SUCCESSFUL_OUTPUT:
        score += 0.2
    elif category == MemoryCategory.TONE_PREFERENCE:
        score += 0.15
    return _clamp(min(score, MAX_INITIAL_RELEVANCE))


def apply_feedback(record: MemoryRecord, is_helpful: bool) -> MemoryRecord:
    """Return a copy with relevance nudged by feedback and frequency incremented."""
    current = record.relevance_score if record.relevance_score is not None else BASE_RELEVANCE
    delta = FEEDBACK_STEP if is_helpful else -FEEDBACK_STEP
    return replace(
        record,
        relevance_score=_clamp(current + delta),
        frequency=(record.frequency or 1) + 1,
    )


def is_eligible_for_global(category, share_anonymously: bool,
                           learnable: Iterable[str] = LEARNABLE_CATEGORIES) -> bool:
    """Promotion needs both the caller's consent and a learnable category."""
    if not share_anonymously:
        return False
    return MemoryCategory(category).value in set(learnable)


def prepare_global_record(content: str, category, metadata: Dict[str, Any] = None) -> MemoryRecord:
    """Build the anonymized global-tier copy of an observation."""
    clean_content = sanitize(content)
    clean_metadata = strip_identifying_metadata(metadata or {})
    record = MemoryRecord.create(
        scope=MemoryScope.GLOBAL,
        content=clean_content,
        category=category,
        metadata=clean_metadata,
        relevance_score=initial_relevance(clean_content, category),
        frequency=1,
    )

    audit_event(
        event_type="global_promotion",
        identifiers={"memory_id": record.id, "category": record.category.value},
        payload={
            "content": clean_content,
            "masked": clean_content != content,
            "metadata_keys_dropped": len(metadata or {}) - len(clean_metadata),
            "relevance_score": record.relevance_score,
        }
    )
    return record
