"""EnrichmentPipeline - embeddings and tags off the write path.

``enqueue`` hands an embedding job and a tag job to the configured
executor and returns immediately. Each external service sits behind its
own CircuitBreaker.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from src.hivemem.circuit_breaker import CircuitBreaker
from src.hivemem.config import BreakerConfig, EmbeddingConfig, TagConfig
from src.hivemem.errors import EmbeddingError, TagError
from src.hivemem.enrichment.executors import InlineExecutor, JobExecutor, run_job
from src.hivemem.enrichment.jobs import EmbeddingJob, TagJob
from src.hivemem.enrichment.providers import EmbeddingProvider, TagProvider, fit_dimension
from src.hivemem.models import AddResult
from src.hivemem.storage.base import ContentStore
from src.hivemem.tags import filter_extracted_tags

logger = logging.getLogger(__name__)


class EnrichmentPipeline:
    """Schedules and runs enrichment for stored items.

    Either provider may be None, which disables that branch.
    """

    def __init__(
        self,
        store: ContentStore,
        embedding_provider: EmbeddingProvider | None = None,
        tag_provider: TagProvider | None = None,
        executor: JobExecutor | None = None,
        embedding_config: EmbeddingConfig | None = None,
        tag_config: TagConfig | None = None,
        breaker_config: BreakerConfig | None = None,
    ):
        self.store = store
        self.embedding_provider = embedding_provider
        self.tag_provider = tag_provider
        self.executor = executor or InlineExecutor()
        self.embedding_config = embedding_config or EmbeddingConfig()
        self.tag_config = tag_config or TagConfig()

        self.embedding_breaker = CircuitBreaker("embedding", breaker_config)
        self.tag_breaker = CircuitBreaker("tags", breaker_config)

        self.embedding_job = (
            EmbeddingJob(
                store, embedding_provider, self.embedding_breaker,
                self.embedding_config.dimension,
            )
            if embedding_provider else None
        )
        self.tag_job = (
            TagJob(
                store, tag_provider, self.tag_breaker,
                max_depth=self.tag_config.max_depth,
                taxonomy_hint_size=self.tag_config.taxonomy_hint_size,
            )
            if tag_provider else None
        )

    # ==================== Scheduling ====================

    async def enqueue(self, item_id: str) -> None:
        """Schedule embedding and tag extraction for an item."""
        if self.embedding_job:
            await self.executor.submit(
                f"embed:{item_id}", lambda: self.embedding_job.run(item_id)
            )
        if self.tag_job:
            await self.executor.submit(
                f"tags:{item_id}", lambda: self.tag_job.run(item_id)
            )

    async def enrich(self, item_id: str) -> None:
        """Run both branches now, concurrently, logging their failures."""
        branches = []
        if self.embedding_job:
            branches.append(run_job(f"embed:{item_id}", lambda: self.embedding_job.run(item_id)))
        if self.tag_job:
            branches.append(run_job(f"tags:{item_id}", lambda: self.tag_job.run(item_id)))
        await asyncio.gather(*branches)

    async def reprocess_missing_embeddings(self, limit: int = 100) -> int:
        """Re-enqueue embedding jobs for items still lacking a vector."""
        if not self.embedding_job:
            return 0
        item_ids = await self.store.items_missing_embedding(limit)
        for item_id in item_ids:
            await self.executor.submit(
                f"embed:{item_id}",
                lambda item_id=item_id: self.embedding_job.run(item_id),
            )
        if item_ids:
            logger.info("Re-enqueued %d items for embedding", len(item_ids))
        return len(item_ids)

    async def drain(self) -> None:
        await self.executor.drain()

    # ==================== Direct calls ====================

    async def embed_query(self, text: str) -> list[float]:
        """Embed text through the embedding breaker.

        Raises BreakerOpenError so callers can degrade gracefully.
        """
        if not self.embedding_provider:
            raise EmbeddingError("No embedding provider configured")
        vector = await self.embedding_breaker.call(self.embedding_provider.embed, text)
        return fit_dimension(vector, self.embedding_config.dimension)

    async def extract_tags(self, text: str) -> list[str]:
        """Validated tags for text, through the tag breaker."""
        if not self.tag_provider:
            raise TagError("No tag provider configured")
        hint = await self.store.recent_tag_paths(self.tag_config.taxonomy_hint_size)
        raw = await self.tag_breaker.call(self.tag_provider.extract, text, hint)
        return filter_extracted_tags(raw, self.tag_config.max_depth)

    def stats(self) -> dict[str, Any]:
        return {
            "pending_jobs": self.executor.pending,
            "embedding_breaker": self.embedding_breaker.stats(),
            "tag_breaker": self.tag_breaker.stats(),
        }


class RememberWorkflow:
    """save -> (embedding || tags) -> finalize.

    The two enrichment branches have no data dependency and run
    concurrently. Enrichment only runs for newly created items.
    """

    def __init__(
        self,
        pipeline: EnrichmentPipeline,
        save: Callable[..., Awaitable[AddResult]],
        finalize: Callable[[AddResult], Awaitable[None]],
    ):
        self.pipeline = pipeline
        self.save = save
        self.finalize = finalize

    async def run(self, *args, **kwargs) -> AddResult:
        result = await self.save(*args, **kwargs)
        if result.is_new:
            await self.pipeline.enrich(result.id)
        await self.finalize(result)
        return result
