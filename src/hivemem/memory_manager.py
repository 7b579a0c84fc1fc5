"""MemoryManager - main entry point for hivemem.

Ties the pieces together for one owner (robot):
- remember: dedup-aware store, admit to working memory, enqueue enrichment
- recall: ranked (optionally relevance-scored) search, results pulled into
  working memory; recall_by_tags for tag-only lookups
- forget / restore / purge: soft and confirmed hard deletion
"""

from __future__ import annotations

import time
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from src.hivemem.config import MemoryConfig
from src.hivemem.errors import NotFoundError, ValidationError
from src.hivemem.models import AddResult, ContextStrategy, RankedItem, RecallStrategy
from src.hivemem.retrieval import RetrievalEngine
from src.hivemem.storage.base import ContentStore
from src.hivemem.storage.postgres import PostgresContentStore
from src.hivemem.tags import validate_tags
from src.hivemem.timeframe import normalize_window
from src.hivemem.working_memory import MAX_IMPORTANCE, MIN_IMPORTANCE, WorkingMemory
from src.hivemem.enrichment.executors import JobExecutor, build_executor
from src.hivemem.enrichment.pipeline import EnrichmentPipeline, RememberWorkflow
from src.hivemem.enrichment.providers import (
    EmbeddingProvider,
    TagProvider,
    TokenCounter,
    build_embedding_provider,
    build_tag_provider,
)

logger = logging.getLogger(__name__)


class MemoryManager:
    """Two-tier memory for one owner over a (possibly shared) store.

    Several managers may share one ContentStore (hive-mind) and, if
    desired, one WorkingMemory.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        store: ContentStore | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        tag_provider: TagProvider | None = None,
        executor: JobExecutor | None = None,
        token_counter: Callable[[str], int] | None = None,
        working_memory: WorkingMemory | None = None,
    ):
        self.config = config or MemoryConfig()
        self.store = store or PostgresContentStore(
            self.config.postgres_config, dimension=self.config.embedding_config.dimension
        )
        self.working_memory = working_memory or WorkingMemory(self.config.working_memory_config)
        self.retrieval = RetrievalEngine(self.store, self.config.retrieval_config)
        self.pipeline = EnrichmentPipeline(
            self.store,
            embedding_provider or build_embedding_provider(self.config.embedding_config),
            tag_provider or build_tag_provider(self.config.tag_config),
            executor or build_executor(self.config.enrichment_config),
            embedding_config=self.config.embedding_config,
            tag_config=self.config.tag_config,
            breaker_config=self.config.breaker_config,
        )
        self.count_tokens = token_counter or TokenCounter(self.config.token_model)
        self.owner_id: str | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """Connect the store and register this owner."""
        if self._initialized:
            return
        await self.store.connect()
        self.owner_id = await self.store.register_owner(self.config.owner_name)
        self._initialized = True
        logger.info("Memory ready for owner '%s' (%s)", self.config.owner_name, self.owner_id)

    async def shutdown(self) -> None:
        """Wait for pending enrichment, then release the store."""
        await self.pipeline.drain()
        if self.pipeline.embedding_provider:
            await self.pipeline.embedding_provider.close()
        await self.store.disconnect()
        self._initialized = False

    async def __aenter__(self) -> "MemoryManager":
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.shutdown()

    # ==================== Remember ====================

    def _validate_remember(
        self, content: str, tags: list[str] | None, importance: float
    ) -> list[str]:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Content must be a non-empty string")
        size = len(content.encode("utf-8"))
        if size > self.config.max_content_bytes:
            raise ValidationError(
                f"Content is {size} bytes; maximum is {self.config.max_content_bytes}"
            )
        if isinstance(importance, bool) or not isinstance(importance, (int, float)):
            raise ValidationError("importance must be a number")
        if not MIN_IMPORTANCE <= importance <= MAX_IMPORTANCE:
            raise ValidationError(
                f"importance must be between {MIN_IMPORTANCE} and {MAX_IMPORTANCE}"
            )
        return validate_tags(tags or [], self.config.tag_config.max_depth)

    async def _save(self, content: str, tags: list[str], token_count: int) -> AddResult:
        await self.initialize()
        result = await self.store.add(content, self.owner_id, token_count)
        if tags:
            await self.store.add_tags(result.id, tags)
        return result

    async def remember(
        self,
        content: str,
        tags: list[str] | None = None,
        importance: float = 1.0,
    ) -> str:
        """Store content and return its item id.

        Returns as soon as the item is durable; embedding and tag
        extraction happen in the background for new items.
        """
        tags = self._validate_remember(content, tags, importance)
        token_count = self.count_tokens(content)

        result = await self._save(content, tags, token_count)
        await self._admit(result.id, content, token_count, importance, from_recall=False)

        if result.is_new:
            await self.pipeline.enqueue(result.id)
        return result.id

    async def remember_and_enrich(
        self,
        content: str,
        tags: list[str] | None = None,
        importance: float = 1.0,
    ) -> str:
        """Like ``remember`` but waits for both enrichment branches."""
        tags = self._validate_remember(content, tags, importance)
        token_count = self.count_tokens(content)

        async def finalize(result: AddResult) -> None:
            await self._admit(result.id, content, token_count, importance, from_recall=False)

        workflow = RememberWorkflow(self.pipeline, self._save, finalize)
        result = await workflow.run(content, tags, token_count)
        return result.id

    # ==================== Recall ====================

    async def recall(
        self,
        query: str,
        timeframe: Any = None,
        strategy: RecallStrategy | str = RecallStrategy.FULLTEXT,
        limit: int | None = None,
        with_relevance: bool = False,
        query_tags: list[str] | None = None,
    ) -> list[RankedItem]:
        """Ranked items for ``query``, also pulled into working memory.

        With ``with_relevance`` the candidates are re-ranked by composite
        relevance against ``query_tags``; vector and hybrid strategies then
        draw candidates from vector search, fulltext from fulltext search.
        """
        limit = self.config.default_recall_limit if limit is None else limit
        strategy = self.retrieval.validate_request(strategy, limit)
        window = normalize_window(timeframe)
        if isinstance(query_tags, str):
            raise ValidationError("query_tags must be a list of tag paths")
        query_tags = validate_tags(query_tags or [], self.config.tag_config.max_depth)
        await self.initialize()

        if with_relevance:
            embed = None if strategy == RecallStrategy.FULLTEXT else self.pipeline.embed_query
            results = await self.retrieval.search_with_relevance(
                window, query, limit, query_tags=query_tags, embed=embed
            )
        else:
            results = await self.retrieval.search(
                strategy, window, query, limit, embed=self.pipeline.embed_query
            )
        await self._load_results(results)
        return results

    async def recall_by_tags(
        self,
        tags: list[str],
        match_all: bool = False,
        timeframe: Any = None,
        limit: int | None = None,
    ) -> list[RankedItem]:
        """Items carrying any (or every, with ``match_all``) of ``tags``."""
        limit = self.config.default_recall_limit if limit is None else limit
        if isinstance(tags, str):
            raise ValidationError("tags must be a list of tag paths")
        tags = validate_tags(tags, self.config.tag_config.max_depth)
        window = normalize_window(timeframe)
        await self.initialize()

        results = await self.retrieval.search_by_tags(tags, match_all, window, limit)
        await self._load_results(results)
        return results

    async def _load_results(self, results: list[RankedItem]) -> None:
        """Record access and pull search hits into working memory."""
        if not results:
            return
        await self.store.track_access([r.id for r in results])
        for ranked in results:
            tokens = ranked.item.token_count or self.count_tokens(ranked.content)
            await self._admit(ranked.id, ranked.content, tokens, from_recall=True)

    # ==================== Forget / restore ====================

    async def forget(self, item_id: str, soft: bool = True, confirmed: bool = False) -> bool:
        """Soft-delete an item, or hard-delete it with ``soft=False, confirmed=True``."""
        if not soft and confirmed is not True:
            raise ValidationError("Permanent deletion requires confirmed=True")
        await self.initialize()

        if not await self.store.get(item_id):
            raise NotFoundError(f"Item not found: {item_id}")

        if soft:
            forgotten = await self.store.soft_delete(item_id)
        else:
            forgotten = await self.store.hard_delete(item_id, confirmed=True)

        self.working_memory.remove(item_id)
        logger.debug("Forgot item %s (soft=%s, changed=%s)", item_id, soft, forgotten)
        return forgotten

    async def forget_content(
        self, substring: str, soft: bool = True, confirmed: bool = False
    ) -> list[str]:
        """Forget every live item whose content contains ``substring``."""
        if not substring or not substring.strip():
            raise ValidationError("substring must be non-empty")
        if not soft and confirmed is not True:
            raise ValidationError("Permanent deletion requires confirmed=True")
        await self.initialize()

        item_ids = await self.store.find_ids_by_content(substring)
        for item_id in item_ids:
            await self.forget(item_id, soft=soft, confirmed=confirmed)
        return item_ids

    async def restore(self, item_id: str) -> bool:
        await self.initialize()
        item = await self.store.get(item_id)
        if not item:
            raise NotFoundError(f"Item not found: {item_id}")
        if not item.is_deleted:
            raise ValidationError(f"Item {item_id} is not deleted")
        return await self.store.restore(item_id)

    async def purge_deleted(
        self,
        older_than: float | datetime | timedelta,
        confirmed: bool = False,
    ) -> int:
        """Hard-delete items soft-deleted before ``older_than``.

        ``older_than`` is an epoch timestamp, a datetime, or an age.
        """
        if confirmed is not True:
            raise ValidationError("Purging deleted items requires confirmed=True")
        if isinstance(older_than, timedelta):
            cutoff = time.time() - older_than.total_seconds()
        elif isinstance(older_than, datetime):
            cutoff = older_than.timestamp()
        elif isinstance(older_than, (int, float)) and not isinstance(older_than, bool):
            cutoff = float(older_than)
        else:
            raise ValidationError(f"Invalid purge cutoff: {older_than!r}")
        await self.initialize()
        return await self.store.purge_deleted_older_than(cutoff, confirmed=True)

    # ==================== Working memory ====================

    async def _admit(
        self,
        item_id: str,
        content: str,
        token_count: int,
        importance: float = 1.0,
        from_recall: bool = False,
    ) -> None:
        """Put an item into working memory, evicting to make room."""
        wm = self.working_memory
        if token_count > wm.max_tokens:
            logger.warning(
                "Item %s (%d tokens) exceeds working memory capacity; not admitted",
                item_id, token_count,
            )
            return

        _, evicted = wm.admit(
            item_id, content, token_count, importance=importance, from_recall=from_recall
        )
        if evicted:
            await self.store.set_working_memory_flag(
                self.owner_id, [e.key for e in evicted], False
            )
        await self.store.set_working_memory_flag(self.owner_id, [item_id], True)

    def create_context(
        self,
        strategy: ContextStrategy | str = ContextStrategy.BALANCED,
        max_tokens: int | None = None,
    ) -> str:
        return self.working_memory.assemble_context(strategy, max_tokens)

    async def clear_working_memory(self) -> int:
        count = self.working_memory.clear()
        if self.owner_id:
            await self.store.clear_working_memory_flags(self.owner_id)
        return count

    # ==================== Monitoring ====================

    async def stats(self) -> dict[str, Any]:
        await self.initialize()
        wm = self.working_memory
        return {
            "owner": self.config.owner_name,
            "store": await self.store.stats(),
            "working_memory": {
                "entries": wm.entry_count(),
                "tokens": wm.token_count(),
                "max_tokens": wm.max_tokens,
                "utilization": wm.utilization_percentage(),
            },
            "enrichment": self.pipeline.stats(),
        }
