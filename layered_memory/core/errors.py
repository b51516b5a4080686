"""Error taxonomy for the layered memory subsystem."""

from typing import Optional


class LayeredMemoryError(Exception):
    """Base exception for the layered memory subsystem."""

    def __init__(self, message: str, context: Optional[dict] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def __str__(self) -> str:
        result = f"[{self.__class__.__name__}] {self.message}"
        if self.context:
            result += f" (context: {self.context})"
        return result


class StoreUnavailable(LayeredMemoryError):
    """Raised when a persistent store call fails."""
    pass


class EmbeddingUnavailable(LayeredMemoryError):
    """Raised when an embedding call fails, times out or yields no usable vector."""
    pass


class InvalidArgument(LayeredMemoryError, ValueError):
    """Raised when a caller-supplied threshold, limit or scope is out of range."""
    pass


class NotFound(LayeredMemoryError):
    """Raised when a lookup by id found nothing."""
    pass


class AnalyzerUnavailable(LayeredMemoryError):
    """Raised when the external pattern analyzer call fails."""
    pass
