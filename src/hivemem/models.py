"""Core data models for the hivemem memory system."""

from __future__ import annotations

import time
import hashlib
from datetime import datetime, timezone
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any


class RecallStrategy(str, Enum):
    """Ranking strategy used by recall."""
    VECTOR = "vector"       # Cosine similarity only
    FULLTEXT = "fulltext"   # Lexical rank with fuzzy fallback
    HYBRID = "hybrid"       # Similarity blended with tag boost


class ContextStrategy(str, Enum):
    """Ordering used when assembling working memory into a prompt context."""
    RECENT = "recent"
    IMPORTANT = "important"
    BALANCED = "balanced"


class BreakerStatus(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def hash_content(content: str) -> str:
    """SHA-256 hex digest used as the deduplication key."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def to_datetime(ts: float | None) -> datetime | None:
    """Epoch seconds to an aware UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@dataclass
class StoredItem:
    """A unit of durable memory.

    ``embedding`` stays ``None`` until the enrichment pipeline writes it.
    """
    id: str
    content: str
    content_hash: str
    token_count: int = 0
    embedding: list[float] | None = None
    access_count: int = 0
    last_accessed_at: float | None = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    deleted_at: float | None = None
    tags: list[str] = field(default_factory=list)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary (embedding omitted)."""
        data = asdict(self)
        data.pop("embedding")
        data["has_embedding"] = self.has_embedding
        return data


@dataclass
class OwnerLink:
    """Association between an owner (robot) and a stored item."""
    owner_id: str
    item_id: str
    first_seen_at: float = field(default_factory=time.time)
    last_seen_at: float = field(default_factory=time.time)
    remember_count: int = 1
    in_working_memory: bool = False


@dataclass
class AddResult:
    """Outcome of ContentStore.add."""
    id: str
    is_new: bool
    restored: bool = False


@dataclass
class WorkingMemoryEntry:
    """In-process working memory slot, keyed by stored item id."""
    key: str
    value: str
    token_count: int
    importance: float = 1.0
    added_at: float = field(default_factory=time.time)
    last_accessed_at: float = field(default_factory=time.time)
    from_recall: bool = False

    def age_seconds(self, now: float | None = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.last_accessed_at)


@dataclass
class CircuitBreakerState:
    """Snapshot of a breaker's state machine."""
    status: BreakerStatus = BreakerStatus.CLOSED
    consecutive_failures: int = 0
    last_failure_at: float | None = None
    half_open_trials_in_flight: int = 0


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive creation-time window, in epoch seconds."""
    start: float
    end: float

    def contains(self, ts: float) -> bool:
        return self.start <= ts <= self.end

    @property
    def start_dt(self) -> datetime:
        return to_datetime(self.start)

    @property
    def end_dt(self) -> datetime:
        return to_datetime(self.end)


@dataclass
class TagMatch:
    """A stored tag path matched against a query."""
    path: str
    step: int           # 0 = exact, 1 = prefix, 2 = component
    strength: float


@dataclass
class RankedItem:
    """A search hit with its scoring breakdown."""
    item: StoredItem
    score: float
    similarity: float | None = None
    text_rank: float | None = None
    tag_boost: float = 0.0
    matched_tags: list[str] = field(default_factory=list)
    relevance: float | None = None     # 0-10, set by relevance-scored searches

    @property
    def id(self) -> str:
        return self.item.id

    @property
    def content(self) -> str:
        return self.item.content
