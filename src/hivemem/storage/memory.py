"""In-process content store.

Dict-backed implementation of ContentStore for tests, notebooks and
offline use. Mirrors the Postgres backend's semantics: hash uniqueness,
soft delete, owner links and window-filtered search. Fulltext ranking
approximates tsvector matching with suffix stemming, and falls back to
difflib similarity for typo tolerance.
"""

from __future__ import annotations

import re
import math
import time
import uuid
import threading
from dataclasses import replace
from difflib import SequenceMatcher
from typing import Any

from src.hivemem.models import OwnerLink, StoredItem, TimeWindow
from src.hivemem.storage.base import ContentStore, cap_limit

_WORD = re.compile(r"[a-z0-9]+")
_SUFFIXES = ("ing", "ed", "es", "s", "ly")


def tokenize(text: str) -> list[str]:
    return _WORD.findall(text.lower())


def stem(word: str) -> str:
    for suffix in _SUFFIXES:
        if word.endswith(suffix) and len(word) - len(suffix) >= 3:
            return word[: -len(suffix)]
    return word


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryContentStore(ContentStore):
    """Dictionary-backed ContentStore.

    Safe to share between the event loop and enrichment worker threads;
    every mutation runs under one re-entrant lock.
    """

    def __init__(self, fuzzy_threshold: float = 0.75):
        self.fuzzy_threshold = fuzzy_threshold
        self._lock = threading.RLock()
        self._items: dict[str, StoredItem] = {}
        self._by_hash: dict[str, str] = {}
        self._tags: dict[str, float] = {}                 # path -> created_at
        self._item_tags: dict[str, dict[str, float]] = {}  # item_id -> {path: created_at}
        self._owners: dict[str, str] = {}                 # name -> owner_id
        self._links: dict[tuple[str, str], OwnerLink] = {}
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    # ==================== Primitives ====================

    def _copy(self, item: StoredItem) -> StoredItem:
        return StoredItem(
            id=item.id,
            content=item.content,
            content_hash=item.content_hash,
            token_count=item.token_count,
            embedding=list(item.embedding) if item.embedding else None,
            access_count=item.access_count,
            last_accessed_at=item.last_accessed_at,
            created_at=item.created_at,
            updated_at=item.updated_at,
            deleted_at=item.deleted_at,
            tags=sorted(self._item_tags.get(item.id, {})),
        )

    async def _find_by_hash(self, content_hash: str) -> StoredItem | None:
        with self._lock:
            item_id = self._by_hash.get(content_hash)
            return self._copy(self._items[item_id]) if item_id else None

    async def _insert_item(
        self, content: str, content_hash: str, token_count: int
    ) -> StoredItem | None:
        with self._lock:
            if content_hash in self._by_hash:
                return None
            now = time.time()
            item = StoredItem(
                id=str(uuid.uuid4()),
                content=content,
                content_hash=content_hash,
                token_count=token_count,
                created_at=now,
                updated_at=now,
            )
            self._items[item.id] = item
            self._by_hash[content_hash] = item.id
            return self._copy(item)

    async def get(self, item_id: str) -> StoredItem | None:
        with self._lock:
            item = self._items.get(item_id)
            return self._copy(item) if item else None

    async def track_access(self, item_ids: list[str]) -> None:
        now = time.time()
        with self._lock:
            for item_id in item_ids:
                item = self._items.get(item_id)
                if item:
                    item.access_count += 1
                    item.last_accessed_at = now

    async def _set_deleted_at(self, item_id: str, deleted_at: float | None) -> bool:
        with self._lock:
            item = self._items.get(item_id)
            if not item:
                return False
            item.deleted_at = deleted_at
            item.updated_at = time.time()
            return True

    async def _delete_item(self, item_id: str) -> bool:
        with self._lock:
            item = self._items.pop(item_id, None)
            if not item:
                return False
            self._by_hash.pop(item.content_hash, None)
            self._item_tags.pop(item_id, None)
            for key in [k for k in self._links if k[1] == item_id]:
                del self._links[key]
            return True

    async def _purge_deleted(self, cutoff: float) -> int:
        with self._lock:
            doomed = [
                i.id for i in self._items.values()
                if i.deleted_at is not None and i.deleted_at < cutoff
            ]
        for item_id in doomed:
            await self._delete_item(item_id)
        return len(doomed)

    # ==================== Owners ====================

    async def register_owner(self, name: str) -> str:
        with self._lock:
            if name not in self._owners:
                self._owners[name] = str(uuid.uuid4())
            return self._owners[name]

    async def link_owner(self, owner_id: str, item_id: str) -> OwnerLink:
        now = time.time()
        with self._lock:
            link = self._links.get((owner_id, item_id))
            if link:
                link.remember_count += 1
                link.last_seen_at = now
            else:
                link = OwnerLink(
                    owner_id=owner_id,
                    item_id=item_id,
                    first_seen_at=now,
                    last_seen_at=now,
                )
                self._links[(owner_id, item_id)] = link
            return replace(link)

    async def unlink_owner(self, owner_id: str, item_id: str) -> bool:
        with self._lock:
            return self._links.pop((owner_id, item_id), None) is not None

    async def get_owner_link(self, owner_id: str, item_id: str) -> OwnerLink | None:
        with self._lock:
            link = self._links.get((owner_id, item_id))
            return replace(link) if link else None

    async def set_working_memory_flag(
        self, owner_id: str, item_ids: list[str], in_working_memory: bool
    ) -> None:
        with self._lock:
            for item_id in item_ids:
                link = self._links.get((owner_id, item_id))
                if link:
                    link.in_working_memory = in_working_memory

    async def clear_working_memory_flags(self, owner_id: str) -> int:
        count = 0
        with self._lock:
            for (link_owner, _), link in self._links.items():
                if link_owner == owner_id and link.in_working_memory:
                    link.in_working_memory = False
                    count += 1
        return count

    # ==================== Enrichment writes ====================

    async def set_embedding(self, item_id: str, embedding: list[float]) -> bool:
        with self._lock:
            item = self._items.get(item_id)
            if not item:
                return False
            item.embedding = list(embedding)
            item.updated_at = time.time()
            return True

    async def add_tags(self, item_id: str, paths: list[str]) -> int:
        now = time.time()
        added = 0
        with self._lock:
            if item_id not in self._items:
                return 0
            assoc = self._item_tags.setdefault(item_id, {})
            for path in paths:
                self._tags.setdefault(path, now)
                if path not in assoc:
                    assoc[path] = now
                    added += 1
        return added

    async def item_tags(self, item_id: str) -> list[str]:
        with self._lock:
            return sorted(self._item_tags.get(item_id, {}))

    async def recent_tag_paths(self, limit: int = 100) -> list[str]:
        with self._lock:
            ordered = sorted(self._tags.items(), key=lambda kv: kv[1], reverse=True)
            return [path for path, _ in ordered[:limit]]

    async def find_tags_by_segments(self, segments: list[str]) -> list[str]:
        wanted = {s.lower() for s in segments}
        with self._lock:
            return sorted(
                path for path in self._tags
                if wanted.intersection(path.split(":"))
            )

    async def items_missing_embedding(self, limit: int = 100) -> list[str]:
        with self._lock:
            pending = [
                i for i in self._items.values()
                if not i.is_deleted and not i.embedding
            ]
            pending.sort(key=lambda i: i.created_at)
            return [i.id for i in pending[:limit]]

    async def find_ids_by_content(self, substring: str) -> list[str]:
        needle = substring.lower()
        with self._lock:
            return [
                i.id for i in self._items.values()
                if not i.is_deleted and needle in i.content.lower()
            ]

    # ==================== Search primitives ====================

    def _visible(self, window: TimeWindow | None) -> list[StoredItem]:
        """Non-deleted items inside the window. Caller holds the lock."""
        return [
            item for item in self._items.values()
            if not item.is_deleted and (window is None or window.contains(item.created_at))
        ]

    async def vector_search(
        self,
        window: TimeWindow | None,
        vector: list[float],
        limit: int,
        neutral_similarity: float,
    ) -> list[tuple[StoredItem, float]]:
        with self._lock:
            scored = [
                (
                    self._copy(item),
                    cosine_similarity(item.embedding, vector)
                    if item.embedding else neutral_similarity,
                )
                for item in self._visible(window)
            ]
        scored.sort(key=lambda pair: (-pair[1], pair[0].created_at))
        return scored[:cap_limit(limit)]

    def _text_rank(self, query: str, content: str) -> float:
        query_words = tokenize(query)
        if not query_words:
            return 0.0
        content_words = tokenize(content)
        if not content_words:
            return 0.0

        query_stems = {stem(w) for w in query_words}
        content_stems = [stem(w) for w in content_words]
        if query_stems.issubset(content_stems):
            hits = sum(1 for s in content_stems if s in query_stems)
            return 1.0 + hits / (len(content_stems) + 1)

        # Fuzzy fallback, ranked below every lexical match
        vocabulary = set(content_words)
        best = [
            max(SequenceMatcher(None, w, c).ratio() for c in vocabulary)
            for w in query_words
        ]
        fuzzy = sum(best) / len(best)
        return min(fuzzy, 0.99) if fuzzy >= self.fuzzy_threshold else 0.0

    async def fulltext_search(
        self,
        window: TimeWindow | None,
        query: str,
        limit: int,
    ) -> list[tuple[StoredItem, float]]:
        with self._lock:
            candidates = [self._copy(item) for item in self._visible(window)]
        scored = [(item, self._text_rank(query, item.content)) for item in candidates]
        scored = [pair for pair in scored if pair[1] > 0]
        scored.sort(key=lambda pair: (-pair[1], pair[0].created_at))
        return scored[:cap_limit(limit)]

    async def items_with_tags(
        self,
        window: TimeWindow | None,
        paths: list[str],
        limit: int,
        match_all: bool = False,
    ) -> list[tuple[StoredItem, list[str]]]:
        wanted = set(paths)
        if not wanted:
            return []
        results = []
        with self._lock:
            for item in self._visible(window):
                matched = sorted(wanted.intersection(self._item_tags.get(item.id, {})))
                if matched and (not match_all or len(matched) == len(wanted)):
                    results.append((self._copy(item), matched))
        results.sort(key=lambda pair: (-len(pair[1]), pair[0].created_at))
        return results[:cap_limit(limit)]

    async def recent_items(
        self,
        window: TimeWindow | None,
        limit: int,
    ) -> list[StoredItem]:
        with self._lock:
            items = [self._copy(item) for item in self._visible(window)]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items[:cap_limit(limit)]

    async def similarity_scores(
        self, item_ids: list[str], vector: list[float]
    ) -> dict[str, float | None]:
        with self._lock:
            return {
                item_id: (
                    cosine_similarity(self._items[item_id].embedding, vector)
                    if self._items[item_id].embedding else None
                )
                for item_id in item_ids
                if item_id in self._items
            }

    async def stats(self) -> dict[str, Any]:
        with self._lock:
            items = list(self._items.values())
            return {
                "backend": "memory",
                "items": len(items),
                "deleted_items": sum(1 for i in items if i.is_deleted),
                "embedded_items": sum(1 for i in items if i.embedding),
                "tags": len(self._tags),
                "owners": len(self._owners),
            }
