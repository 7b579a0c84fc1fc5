"""Abstract content store.

``ContentStore`` is the repository every other component talks to. It
takes an explicit connection handle (config or pool) at construction; there
is no global connection state.

``add`` is implemented here once on top of backend primitives so that
deduplication behaves the same for every backend: the uniqueness of
``content_hash`` is enforced by the backend, and an insert that loses a
race is resolved by re-reading the row that won.
"""

from __future__ import annotations

import time
import logging
from abc import ABC, abstractmethod
from typing import Any

from src.hivemem.errors import NotFoundError, StoreError, ValidationError
from src.hivemem.models import (
    AddResult,
    OwnerLink,
    StoredItem,
    TimeWindow,
    hash_content,
)

logger = logging.getLogger(__name__)

# Backend search limits are capped at this value
MAX_QUERY_LIMIT = 1000


class ContentStore(ABC):
    """Durable item store with content-hash deduplication and soft delete."""

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to the storage."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to the storage."""
        pass

    # ==================== Dedup-aware insert ====================

    async def add(self, content: str, owner_id: str, token_count: int = 0) -> AddResult:
        """Store ``content`` for ``owner_id``, deduplicating by content hash.

        An existing soft-deleted item with the same hash is restored rather
        than duplicated.
        """
        content_hash = hash_content(content)

        for _ in range(3):
            existing = await self._find_by_hash(content_hash)
            if existing:
                restored = False
                if existing.is_deleted:
                    restored = await self.restore(existing.id)
                await self.link_owner(owner_id, existing.id)
                logger.debug("Dedup hit for %s (owner %s)", existing.id, owner_id)
                return AddResult(id=existing.id, is_new=False, restored=restored)

            created = await self._insert_item(content, content_hash, token_count)
            if created:
                await self.link_owner(owner_id, created.id)
                return AddResult(id=created.id, is_new=True)

            # Lost the insert race; the winner's row is now readable
            logger.debug("Content hash conflict on %s, re-reading", content_hash[:12])

        raise StoreError(f"Could not resolve content hash {content_hash[:12]}")

    @abstractmethod
    async def _find_by_hash(self, content_hash: str) -> StoredItem | None:
        """Find an item by hash, including soft-deleted ones."""
        pass

    @abstractmethod
    async def _insert_item(
        self, content: str, content_hash: str, token_count: int
    ) -> StoredItem | None:
        """Insert a new item. Returns None when the hash already exists."""
        pass

    # ==================== Reads ====================

    @abstractmethod
    async def get(self, item_id: str) -> StoredItem | None:
        """Fetch an item (soft-deleted included) without touching access stats."""
        pass

    async def retrieve(self, item_id: str) -> StoredItem:
        """Fetch an item and record the access."""
        if not await self.get(item_id):
            raise NotFoundError(f"Item not found: {item_id}")
        await self.track_access([item_id])
        return await self.get(item_id)

    @abstractmethod
    async def track_access(self, item_ids: list[str]) -> None:
        """Increment access_count and set last_accessed_at for each id."""
        pass

    # ==================== Deletion ====================

    async def soft_delete(self, item_id: str) -> bool:
        item = await self.get(item_id)
        if not item:
            raise NotFoundError(f"Item not found: {item_id}")
        if item.is_deleted:
            return False
        return await self._set_deleted_at(item_id, time.time())

    async def restore(self, item_id: str) -> bool:
        item = await self.get(item_id)
        if not item:
            raise NotFoundError(f"Item not found: {item_id}")
        if not item.is_deleted:
            return False
        return await self._set_deleted_at(item_id, None)

    async def hard_delete(self, item_id: str, confirmed: bool = False) -> bool:
        """Irreversibly delete an item with its tag and owner associations."""
        if confirmed is not True:
            raise ValidationError("Permanent deletion requires confirmed=True")
        if not await self._delete_item(item_id):
            raise NotFoundError(f"Item not found: {item_id}")
        return True

    async def purge_deleted_older_than(self, cutoff: float, confirmed: bool = False) -> int:
        """Hard-delete soft-deleted items whose deleted_at is before ``cutoff``."""
        if confirmed is not True:
            raise ValidationError("Purging deleted items requires confirmed=True")
        count = await self._purge_deleted(cutoff)
        logger.info("Purged %d soft-deleted items", count)
        return count

    @abstractmethod
    async def _set_deleted_at(self, item_id: str, deleted_at: float | None) -> bool:
        pass

    @abstractmethod
    async def _delete_item(self, item_id: str) -> bool:
        pass

    @abstractmethod
    async def _purge_deleted(self, cutoff: float) -> int:
        pass

    # ==================== Owners ====================

    @abstractmethod
    async def register_owner(self, name: str) -> str:
        """Find or create an owner by name. Returns its id."""
        pass

    @abstractmethod
    async def link_owner(self, owner_id: str, item_id: str) -> OwnerLink:
        """Create the owner link, or refresh it and bump remember_count."""
        pass

    @abstractmethod
    async def unlink_owner(self, owner_id: str, item_id: str) -> bool:
        """Remove an owner link. Never deletes the item."""
        pass

    @abstractmethod
    async def get_owner_link(self, owner_id: str, item_id: str) -> OwnerLink | None:
        pass

    @abstractmethod
    async def set_working_memory_flag(
        self, owner_id: str, item_ids: list[str], in_working_memory: bool
    ) -> None:
        pass

    @abstractmethod
    async def clear_working_memory_flags(self, owner_id: str) -> int:
        pass

    # ==================== Enrichment writes ====================

    @abstractmethod
    async def set_embedding(self, item_id: str, embedding: list[float]) -> bool:
        """Store an embedding. Returns False when the item is gone."""
        pass

    @abstractmethod
    async def add_tags(self, item_id: str, paths: list[str]) -> int:
        """Associate tags with an item, creating tags as needed.

        Idempotent. Returns the number of new associations.
        """
        pass

    @abstractmethod
    async def item_tags(self, item_id: str) -> list[str]:
        pass

    @abstractmethod
    async def recent_tag_paths(self, limit: int = 100) -> list[str]:
        """Most recently created tag paths, used as a taxonomy hint."""
        pass

    @abstractmethod
    async def find_tags_by_segments(self, segments: list[str]) -> list[str]:
        """Tag paths sharing at least one segment with ``segments``."""
        pass

    @abstractmethod
    async def items_missing_embedding(self, limit: int = 100) -> list[str]:
        pass

    @abstractmethod
    async def find_ids_by_content(self, substring: str) -> list[str]:
        """Ids of non-deleted items whose content contains ``substring``."""
        pass

    # ==================== Search primitives ====================
    # Every primitive excludes soft-deleted items and applies the window
    # inside the backend query.

    @abstractmethod
    async def vector_search(
        self,
        window: TimeWindow | None,
        vector: list[float],
        limit: int,
        neutral_similarity: float,
    ) -> list[tuple[StoredItem, float]]:
        """Rank by cosine similarity; unembedded items score ``neutral_similarity``."""
        pass

    @abstractmethod
    async def fulltext_search(
        self,
        window: TimeWindow | None,
        query: str,
        limit: int,
    ) -> list[tuple[StoredItem, float]]:
        """Lexical rank with a fuzzy fallback for non-matching items."""
        pass

    @abstractmethod
    async def items_with_tags(
        self,
        window: TimeWindow | None,
        paths: list[str],
        limit: int,
        match_all: bool = False,
    ) -> list[tuple[StoredItem, list[str]]]:
        """Items carrying any of ``paths`` (all of them with ``match_all``),
        with the matching paths.
        """
        pass

    @abstractmethod
    async def recent_items(
        self,
        window: TimeWindow | None,
        limit: int,
    ) -> list[StoredItem]:
        """Newest non-deleted items in the window."""
        pass

    @abstractmethod
    async def similarity_scores(
        self, item_ids: list[str], vector: list[float]
    ) -> dict[str, float | None]:
        """Cosine similarity per id; None for items without an embedding."""
        pass

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        pass


def cap_limit(limit: int) -> int:
    return max(1, min(int(limit), MAX_QUERY_LIMIT))
