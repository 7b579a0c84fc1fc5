"""RetrievalEngine - ranks stored items against a query.

Three strategies:
- vector: cosine similarity of the query embedding; unembedded items get
  a neutral similarity so fresh content stays findable.
- fulltext: lexical rank with a fuzzy (trigram) fallback.
- hybrid: candidates from a fulltext prefilter plus items carrying a tag
  that matches the query, scored ``similarity * 0.7 + tag_boost * 0.3``.

Tag matching runs in three steps: exact path, prefix (ancestor or
descendant), then component (a query term equals one segment, the
rightmost segment weighing most). Within a step, ties break by strength,
then lexicographically by path.

Relevance-scored search and tag search re-rank their candidates with
RelevanceScorer (semantic, tag, recency and access signals).
"""

from __future__ import annotations

import re
import time
import logging
from typing import Awaitable, Callable

from src.hivemem.config import RetrievalConfig
from src.hivemem.errors import BreakerOpenError, EmbeddingError, ValidationError
from src.hivemem.models import RankedItem, RecallStrategy, TagMatch, TimeWindow
from src.hivemem.relevance import RelevanceScorer
from src.hivemem.storage.base import ContentStore

logger = logging.getLogger(__name__)

EmbedFn = Callable[[str], Awaitable[list[float]]]

EXACT, PREFIX, COMPONENT = 0, 1, 2

# Extra boost per additional matching tag, and its ceiling
MULTI_MATCH_BONUS = 0.05
MULTI_MATCH_CAP = 0.2

_QUERY_TOKEN = re.compile(r"[a-z0-9][a-z0-9:\-]*[a-z0-9]|[a-z0-9]")


def query_tokens(query: str, min_length: int = 3) -> list[str]:
    """Lowercased query tokens of at least ``min_length`` characters.

    Colon-joined tokens such as ``database:postgresql`` are kept whole so
    they can match a tag path exactly.
    """
    tokens = []
    for token in _QUERY_TOKEN.findall(query.lower()):
        token = token.strip(":")
        if len(token) >= min_length and token not in tokens:
            tokens.append(token)
    return tokens


def classify_tag(path: str, tokens: list[str]) -> TagMatch | None:
    """Best match of one tag path against the query tokens."""
    segments = path.split(":")
    best: TagMatch | None = None

    for token in tokens:
        if token == path:
            return TagMatch(path=path, step=EXACT, strength=1.0)

        token_segments = token.split(":")
        shared = 0
        for a, b in zip(segments, token_segments):
            if a != b:
                break
            shared += 1
        if shared and shared == min(len(segments), len(token_segments)):
            strength = 0.5 + 0.5 * shared / max(len(segments), len(token_segments))
            candidate = TagMatch(path=path, step=PREFIX, strength=strength)
        else:
            candidate = None
            for seg in token_segments:
                if seg in segments:
                    # Rightmost (most specific) segment matches weigh most
                    strength = 0.5 * (segments.index(seg) + 1) / len(segments)
                    if candidate is None or strength > candidate.strength:
                        candidate = TagMatch(path=path, step=COMPONENT, strength=strength)

        if candidate and (
            best is None
            or (candidate.step, -candidate.strength) < (best.step, -best.strength)
        ):
            best = candidate

    return best


def order_matches(matches: list[TagMatch]) -> list[TagMatch]:
    return sorted(matches, key=lambda m: (m.step, -m.strength, m.path))


def tag_boost(item_tags: list[str], matches: dict[str, TagMatch]) -> tuple[float, list[str]]:
    """Boost in [0, 1] for an item from the matched tags it carries."""
    hits = sorted(
        (matches[t] for t in item_tags if t in matches),
        key=lambda m: (-m.strength, m.path),
    )
    if not hits:
        return 0.0, []
    bonus = min(MULTI_MATCH_BONUS * (len(hits) - 1), MULTI_MATCH_CAP)
    return min(1.0, hits[0].strength + bonus), [m.path for m in hits]


class RetrievalEngine:
    """Issues ranked, window-filtered queries against a ContentStore."""

    def __init__(self, store: ContentStore, config: RetrievalConfig | None = None):
        self.store = store
        self.config = config or RetrievalConfig()
        self.scorer = RelevanceScorer(self.config)

    def _check_limit(self, limit: int, name: str = "limit") -> int:
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValidationError(f"{name} must be a positive integer, got {limit!r}")
        return min(limit, self.config.max_limit)

    def validate_request(self, strategy: RecallStrategy | str, limit: int) -> RecallStrategy:
        try:
            strategy = RecallStrategy(strategy)
        except ValueError:
            raise ValidationError(
                f"Unknown strategy {strategy!r}; expected one of "
                f"{', '.join(s.value for s in RecallStrategy)}"
            ) from None
        self._check_limit(limit)
        return strategy

    # ==================== Strategies ====================

    async def search(
        self,
        strategy: RecallStrategy | str,
        window: TimeWindow | None,
        query: str,
        limit: int,
        embed: EmbedFn | None = None,
    ) -> list[RankedItem]:
        """Dispatch to one strategy. Validates before touching the store."""
        strategy = self.validate_request(strategy, limit)

        if strategy == RecallStrategy.FULLTEXT:
            return await self.search_fulltext(window, query, limit)
        if embed is None:
            raise ValidationError(f"{strategy.value} search requires an embed function")
        if strategy == RecallStrategy.VECTOR:
            return await self.search_vector(window, query, limit, embed)
        return await self.search_hybrid(window, query, limit, embed)

    async def search_vector(
        self,
        window: TimeWindow | None,
        query: str,
        limit: int,
        embed: EmbedFn,
    ) -> list[RankedItem]:
        limit = self._check_limit(limit)
        vector = await embed(query)
        rows = await self.store.vector_search(
            window, vector, limit, self.config.neutral_similarity
        )
        return [
            RankedItem(item=item, score=similarity, similarity=similarity)
            for item, similarity in rows
        ]

    async def search_fulltext(
        self,
        window: TimeWindow | None,
        query: str,
        limit: int,
    ) -> list[RankedItem]:
        limit = self._check_limit(limit)
        if not query or not query.strip():
            return []
        rows = await self.store.fulltext_search(window, query, limit)
        return [RankedItem(item=item, score=rank, text_rank=rank) for item, rank in rows]

    async def search_hybrid(
        self,
        window: TimeWindow | None,
        query: str,
        limit: int,
        embed: EmbedFn,
        prefilter_limit: int | None = None,
    ) -> list[RankedItem]:
        limit = self._check_limit(limit)
        prefilter_limit = self._check_limit(
            self.config.prefilter_limit if prefilter_limit is None else prefilter_limit,
            "prefilter_limit",
        )

        matches = {m.path: m for m in await self.match_tags(query)}

        candidates: dict[str, RankedItem] = {}
        if query.strip():
            for item, rank in await self.store.fulltext_search(window, query, prefilter_limit):
                candidates[item.id] = RankedItem(item=item, score=0.0, text_rank=rank)
        if matches:
            tagged = await self.store.items_with_tags(window, list(matches), prefilter_limit)
            for item, _ in tagged:
                candidates.setdefault(item.id, RankedItem(item=item, score=0.0))

        if not candidates:
            return []

        similarities: dict[str, float | None] = {}
        try:
            vector = await embed(query)
            similarities = await self.store.similarity_scores(list(candidates), vector)
        except (BreakerOpenError, EmbeddingError) as e:
            logger.warning("Hybrid search without query embedding: %s", e)

        neutral = self.config.neutral_similarity
        for ranked in candidates.values():
            similarity = similarities.get(ranked.id)
            ranked.similarity = neutral if similarity is None else similarity
            ranked.tag_boost, ranked.matched_tags = tag_boost(ranked.item.tags, matches)
            ranked.score = (
                ranked.similarity * self.config.similarity_weight
                + ranked.tag_boost * self.config.tag_weight
            )

        ordered = sorted(
            candidates.values(),
            key=lambda r: (-r.score, -(r.text_rank or 0.0), r.item.created_at),
        )
        return ordered[:limit]

    # ==================== Tags ====================

    async def match_tags(self, query: str) -> list[TagMatch]:
        """Stored tags matching the query, best first."""
        tokens = query_tokens(query, self.config.min_term_length)
        if not tokens:
            return []

        segments = sorted({seg for token in tokens for seg in token.split(":") if seg})
        paths = await self.store.find_tags_by_segments(segments)

        matches = [m for m in (classify_tag(p, tokens) for p in paths) if m]
        return order_matches(matches)

    async def find_tags_matching(self, query: str) -> list[str]:
        return [m.path for m in await self.match_tags(query)]

    # ==================== Relevance ====================

    async def search_with_relevance(
        self,
        window: TimeWindow | None,
        query: str | None,
        limit: int,
        query_tags: list[str] | None = None,
        embed: EmbedFn | None = None,
    ) -> list[RankedItem]:
        """Re-rank candidates by composite relevance.

        Candidates (twice ``limit``) come from vector search when ``embed``
        is given, from fulltext search otherwise, and from the newest items
        in the window when there is no query text.
        """
        limit = self._check_limit(limit)
        pool = min(limit * 2, self.config.max_limit)

        if query and query.strip():
            if embed is not None:
                candidates = await self.search_vector(window, query, pool, embed)
            else:
                candidates = await self.search_fulltext(window, query, pool)
        else:
            items = await self.store.recent_items(window, pool)
            candidates = [RankedItem(item=item, score=0.0) for item in items]

        return self._rank_by_relevance(candidates, list(query_tags or []), limit)

    async def search_by_tags(
        self,
        tags: list[str],
        match_all: bool = False,
        window: TimeWindow | None = None,
        limit: int = 20,
    ) -> list[RankedItem]:
        """Items carrying any (or, with ``match_all``, every) tag, by relevance."""
        limit = self._check_limit(limit)
        if isinstance(tags, str) or not isinstance(tags, (list, tuple)):
            raise ValidationError(f"tags must be a list of tag paths, got {tags!r}")
        wanted = list(dict.fromkeys(tags))
        if not wanted:
            return []

        rows = await self.store.items_with_tags(window, wanted, limit, match_all=match_all)
        candidates = [
            RankedItem(item=item, score=0.0, matched_tags=matched)
            for item, matched in rows
        ]
        return self._rank_by_relevance(candidates, wanted, limit)

    def _rank_by_relevance(
        self, candidates: list[RankedItem], query_tags: list[str], limit: int
    ) -> list[RankedItem]:
        now = time.time()
        for ranked in candidates:
            ranked.relevance = self.scorer.score(ranked.item, query_tags, ranked.similarity, now)
            ranked.score = ranked.relevance
        ordered = sorted(candidates, key=lambda r: (-r.score, r.item.created_at))
        return ordered[:limit]
