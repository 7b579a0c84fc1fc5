"""Error hierarchy for the hivemem memory system."""

from __future__ import annotations


class HiveMemError(Exception):
    """Base class for all hivemem errors."""
    pass


class ValidationError(HiveMemError):
    """Malformed input: oversized content, invalid tag, bad timeframe or strategy."""
    pass


class NotFoundError(HiveMemError):
    """Operation on a nonexistent or already hard-deleted item."""
    pass


class BreakerOpenError(HiveMemError):
    """Raised by a CircuitBreaker that is rejecting calls."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circuit breaker '{name}' is open")


class EmbeddingError(HiveMemError):
    """The embedding provider failed or returned an unusable vector."""
    pass


class TagError(HiveMemError):
    """The tag provider failed or returned an unusable response."""
    pass


class StoreError(HiveMemError):
    """Backing store failure, such as a content-hash race that could not be resolved."""
    pass
