"""Working Memory - token-bounded active context.

Holds the items a robot is currently thinking about. Capacity is measured
in tokens, not nodes. ``admit`` checks capacity, evicts and inserts under
one lock; ``add`` itself never evicts, so callers using it directly check
``has_space`` and call ``evict_to_make_space`` first.

All public methods run under one instance-wide lock so that a concurrent
add cannot interleave with an eviction sweep.
"""

from __future__ import annotations

import time
import logging
import threading
from collections import OrderedDict
from dataclasses import replace
from typing import Callable

from src.hivemem.config import WorkingMemoryConfig
from src.hivemem.errors import ValidationError
from src.hivemem.models import WorkingMemoryEntry, ContextStrategy

logger = logging.getLogger(__name__)

MIN_IMPORTANCE = 0.0
MAX_IMPORTANCE = 10.0


class WorkingMemory:
    """In-process eviction cache keyed by stored item id.

    Eviction order is ``(importance, -age)`` ascending: the least important
    entry goes first and, among equals, the one accessed longest ago.
    """

    def __init__(
        self,
        config: WorkingMemoryConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or WorkingMemoryConfig()
        if self.config.max_tokens <= 0:
            raise ValidationError("max_tokens must be positive")
        self._clock = clock
        self._lock = threading.Lock()
        # Ordered least- to most-recently accessed
        self._entries: OrderedDict[str, WorkingMemoryEntry] = OrderedDict()
        self._total_tokens = 0

    @property
    def max_tokens(self) -> int:
        return self.config.max_tokens

    # ==================== Mutation ====================

    def _check_entry(self, token_count: int, importance: float) -> None:
        if token_count < 0:
            raise ValidationError("token_count must be non-negative")
        if not MIN_IMPORTANCE <= importance <= MAX_IMPORTANCE:
            raise ValidationError(
                f"importance must be between {MIN_IMPORTANCE} and {MAX_IMPORTANCE}"
            )

    def _put(
        self,
        key: str,
        value: str,
        token_count: int,
        importance: float,
        from_recall: bool,
    ) -> WorkingMemoryEntry:
        """Insert or refresh an entry. Caller holds the lock."""
        now = self._clock()
        existing = self._entries.pop(key, None)
        if existing:
            self._total_tokens -= existing.token_count
            entry = replace(
                existing,
                value=value,
                token_count=token_count,
                importance=importance,
                last_accessed_at=now,
                from_recall=from_recall,
            )
        else:
            entry = WorkingMemoryEntry(
                key=key,
                value=value,
                token_count=token_count,
                importance=importance,
                added_at=now,
                last_accessed_at=now,
                from_recall=from_recall,
            )
        self._entries[key] = entry
        self._total_tokens += token_count
        return replace(entry)

    def add(
        self,
        key: str,
        value: str,
        token_count: int,
        importance: float = 1.0,
        from_recall: bool = False,
    ) -> WorkingMemoryEntry:
        """Insert or refresh an entry. Does not check capacity."""
        self._check_entry(token_count, importance)
        with self._lock:
            return self._put(key, value, token_count, importance, from_recall)

    def admit(
        self,
        key: str,
        value: str,
        token_count: int,
        importance: float = 1.0,
        from_recall: bool = False,
    ) -> tuple[WorkingMemoryEntry, list[WorkingMemoryEntry]]:
        """Check capacity, evict and insert as one step.

        A recalled entry that is already present keeps the higher of its
        current and the given importance. Returns the stored entry and the
        entries evicted to make room for it.
        """
        self._check_entry(token_count, importance)
        if token_count > self.config.max_tokens:
            raise ValidationError(
                f"Entry of {token_count} tokens exceeds capacity of {self.config.max_tokens}"
            )

        with self._lock:
            existing = self._entries.get(key)
            if existing and from_recall:
                importance = max(existing.importance, importance)

            held = existing.token_count if existing else 0
            needed = self._total_tokens - held + token_count - self.config.max_tokens
            evicted = self._evict(needed, keep=key) if needed > 0 else []
            entry = self._put(key, value, token_count, importance, from_recall)

        self._log_eviction(evicted)
        return entry, evicted

    def remove(self, key: str) -> WorkingMemoryEntry | None:
        """Remove an entry if present."""
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry:
                self._total_tokens -= entry.token_count
            return entry

    def access(self, key: str) -> str | None:
        """Return an entry's value and mark it as recently used."""
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            entry.last_accessed_at = self._clock()
            self._entries.move_to_end(key)
            return entry.value

    def clear(self) -> int:
        """Drop every entry. Returns how many were dropped."""
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._total_tokens = 0
            return count

    # ==================== Capacity ====================

    def has_space(self, token_count: int) -> bool:
        with self._lock:
            return self._total_tokens + token_count <= self.config.max_tokens

    def evict_to_make_space(self, needed_tokens: int) -> list[WorkingMemoryEntry]:
        """Evict lowest-scoring entries until ``needed_tokens`` have been freed.

        Returns the evicted entries so the caller can record eviction state
        in the durable store.
        """
        if needed_tokens <= 0:
            return []
        with self._lock:
            evicted = self._evict(needed_tokens)
        self._log_eviction(evicted)
        return evicted

    def _evict(self, needed_tokens: int, keep: str | None = None) -> list[WorkingMemoryEntry]:
        """Caller holds the lock. ``keep`` is never evicted."""
        now = self._clock()
        candidates = sorted(
            (pair for pair in enumerate(self._entries.values()) if pair[1].key != keep),
            key=lambda pair: (
                pair[1].importance,
                -pair[1].age_seconds(now),
                pair[0],
            ),
        )
        evicted: list[WorkingMemoryEntry] = []
        freed = 0
        for _, entry in candidates:
            if freed >= needed_tokens:
                break
            del self._entries[entry.key]
            self._total_tokens -= entry.token_count
            freed += entry.token_count
            evicted.append(entry)
        return evicted

    def _log_eviction(self, evicted: list[WorkingMemoryEntry]) -> None:
        if evicted:
            logger.debug(
                "Evicted %d entries (%d tokens) from working memory",
                len(evicted), sum(e.token_count for e in evicted),
            )

    # ==================== Context ====================

    def assemble_context(
        self,
        strategy: ContextStrategy | str = ContextStrategy.BALANCED,
        max_tokens: int | None = None,
    ) -> str:
        """Concatenate entry values in strategy order, within a token budget."""
        try:
            strategy = ContextStrategy(strategy)
        except ValueError:
            raise ValidationError(f"Unknown context strategy: {strategy}") from None

        budget = self.config.max_tokens if max_tokens is None else max_tokens

        with self._lock:
            now = self._clock()
            entries = list(self._entries.values())

            if strategy == ContextStrategy.RECENT:
                ordered = sorted(entries, key=lambda e: e.last_accessed_at, reverse=True)
            elif strategy == ContextStrategy.IMPORTANT:
                ordered = sorted(entries, key=lambda e: e.importance, reverse=True)
            else:
                ordered = sorted(
                    entries,
                    key=lambda e: e.importance / (1.0 + e.age_seconds(now) / 3600.0),
                    reverse=True,
                )

            parts = []
            used = 0
            for entry in ordered:
                if used + entry.token_count > budget:
                    break
                parts.append(entry.value)
                used += entry.token_count

        return "\n\n".join(parts)

    # ==================== Monitoring ====================

    def token_count(self) -> int:
        with self._lock:
            return self._total_tokens

    def utilization_percentage(self) -> float:
        with self._lock:
            return round(self._total_tokens / self.config.max_tokens * 100.0, 2)

    def entry_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def contains(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def entries(self) -> list[WorkingMemoryEntry]:
        """Copies of all entries, least- to most-recently accessed."""
        with self._lock:
            return [replace(e) for e in self._entries.values()]

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        return self.entry_count()

    def __contains__(self, key: str) -> bool:
        return self.contains(key)
