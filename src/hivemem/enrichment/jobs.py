"""Enrichment jobs.

Both jobs are idempotent: an item that already has an embedding is
skipped, and tag associations are upserted. A BreakerOpenError drops the
job with a warning; the reprocessing sweep picks the item up later.
"""

from __future__ import annotations

import logging

from src.hivemem.circuit_breaker import CircuitBreaker
from src.hivemem.errors import BreakerOpenError
from src.hivemem.enrichment.providers import EmbeddingProvider, TagProvider, fit_dimension
from src.hivemem.storage.base import ContentStore
from src.hivemem.tags import DEFAULT_MAX_DEPTH, filter_extracted_tags

logger = logging.getLogger(__name__)


class EmbeddingJob:
    """Computes and stores the embedding for one item."""

    def __init__(
        self,
        store: ContentStore,
        provider: EmbeddingProvider,
        breaker: CircuitBreaker,
        dimension: int,
    ):
        self.store = store
        self.provider = provider
        self.breaker = breaker
        self.dimension = dimension

    async def run(self, item_id: str) -> bool:
        """Returns True when an embedding was written."""
        item = await self.store.get(item_id)
        if not item or item.is_deleted:
            logger.warning("EmbeddingJob: item %s not found, skipping", item_id)
            return False
        if item.has_embedding:
            logger.debug("EmbeddingJob: item %s already embedded", item_id)
            return False

        try:
            vector = await self.breaker.call(self.provider.embed, item.content)
        except BreakerOpenError:
            logger.warning("EmbeddingJob: breaker open, dropping item %s", item_id)
            return False

        written = await self.store.set_embedding(item_id, fit_dimension(vector, self.dimension))
        if written:
            logger.debug("EmbeddingJob: embedded item %s", item_id)
        return written


class TagJob:
    """Extracts, validates and stores tags for one item."""

    def __init__(
        self,
        store: ContentStore,
        provider: TagProvider,
        breaker: CircuitBreaker,
        max_depth: int = DEFAULT_MAX_DEPTH,
        taxonomy_hint_size: int = 100,
    ):
        self.store = store
        self.provider = provider
        self.breaker = breaker
        self.max_depth = max_depth
        self.taxonomy_hint_size = taxonomy_hint_size

    async def run(self, item_id: str) -> list[str]:
        """Returns the validated tags that were associated."""
        item = await self.store.get(item_id)
        if not item or item.is_deleted:
            logger.warning("TagJob: item %s not found, skipping", item_id)
            return []

        hint = await self.store.recent_tag_paths(self.taxonomy_hint_size)
        try:
            raw = await self.breaker.call(self.provider.extract, item.content, hint)
        except BreakerOpenError:
            logger.warning("TagJob: breaker open, dropping item %s", item_id)
            return []

        tags = filter_extracted_tags(raw, self.max_depth)
        if not tags:
            logger.debug("TagJob: no valid tags for item %s", item_id)
            return []

        added = await self.store.add_tags(item_id, tags)
        logger.debug("TagJob: item %s tagged %s (%d new)", item_id, tags, added)
        return tags
