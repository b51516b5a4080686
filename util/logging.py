"""
Structured logging for the layered memory subsystem.
Tier writes, vector indexing, cache and notifier activity are logged as
auditable operations; free-text content is truncated or redacted.
"""

import logging
from typing import Any, Dict, List

SENSITIVE_FIELDS = ['content', 'value', 'payload', 'source_text', 'email',
                    'user_email', 'userEmail', 'secret', 'password']


def _truncate(text: str, limit: int = 50) -> str:
    return text[:limit] + "..." if len(text) > limit else text


class StructuredLogger:
    """Structured logger for memory tier, vector, cache and notifier operations."""

    def __init__(self, name: str = "layered_memory"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "error"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_tier_write(self, scope: str, memory_id: str, category: str, status: str = "success",
                       details: Dict[str, Any] = None):
        """Log a write against one memory tier."""
        log_details = {"memory_id": memory_id, "category": category}
        if details:
            log_details.update(details)

        self.log_operation(f"tier.{scope.lower()}.store", status, log_details)

    def log_vector_operation(self, operation: str, record_id: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector operation."""
        log_details = {"record_id": record_id}
        if details:
            log_details.update(details)

        self.log_operation(f"vector.{operation}", status, log_details)

    def log_cache_event(self, event: str, key: str, details: Dict[str, Any] = None):
        """Log cache hits, misses, expirations and stores at debug level."""
        message = f"Operation: cache.{event}, Key: {key[:16]}"
        if details:
            message += f", Details: {details}"
        self.logger.debug(message)

    def log_notifier_transition(self, category: str, from_state: str, to_state: str,
                                details: Dict[str, Any] = None):
        """Log an insight notifier state change for one category."""
        log_details = {"category": category, "from": from_state, "to": to_state}
        if details:
            log_details.update(details)

        self.log_operation("notifier.transition", "success", log_details)

    def log_feedback(self, memory_id: str, is_helpful: bool, relevance_score: float = None,
                     frequency: int = None, status: str = "success"):
        """Log feedback applied to a global memory."""
        log_details = {"memory_id": memory_id, "helpful": is_helpful}
        if relevance_score is not None:
            log_details["relevance_score"] = round(relevance_score, 4)
        if frequency is not None:
            log_details["frequency"] = frequency

        self.log_operation("global.feedback", status, log_details)


# Global logger instance
logger = StructuredLogger()


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                sensitive_fields: List[str] = None):
    """General audit event logging with privacy controls."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    log_details = identifiers.copy() if identifiers else {}

    if payload:
        log_details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    logger.log_operation(event_type.replace(".", "_"), "audit", log_details)


def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        return _truncate(payload, 100)
    elif isinstance(payload, list):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    else:
        return payload


def preview(text: str) -> str:
    """Short preview of free text for log lines."""
    return _truncate(text or "")
