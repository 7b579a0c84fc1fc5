"""RelevanceScorer - composite relevance for search candidates.

Combines four signals into a score in [0, 10]:
- semantic: vector similarity (neutral 0.5 when unknown)
- tags: weighted hierarchical Jaccard between query and item tags
- recency: R = e^(-age_hours / half_life_hours)
- access: log(1 + access_count) / 10
"""

from __future__ import annotations

import math
import time

from src.hivemem.config import RetrievalConfig
from src.hivemem.errors import ValidationError
from src.hivemem.models import StoredItem
from src.hivemem.tags import DELIMITER

NEUTRAL_SCORE = 0.5
ACCESS_NORMALIZER = 10.0
RELEVANCE_SCALE = 10.0
RELEVANCE_MIN = 0.0
RELEVANCE_MAX = 10.0

# Weight charged for each item tag outside the query tag's root
NON_MATCH_WEIGHT = 0.5


def hierarchical_similarity(parts_a: list[str], parts_b: list[str]) -> tuple[float, float]:
    """Shared-prefix similarity of two split tag paths, and its weight.

    Deeper pairs weigh less: the weight is ``1 / max_depth``.
    """
    max_depth = max(len(parts_a), len(parts_b))
    common = 0
    for a, b in zip(parts_a, parts_b):
        if a != b:
            break
        common += 1
    return common / max_depth, 1.0 / max_depth


def weighted_hierarchical_jaccard(tags_a: list[str], tags_b: list[str]) -> float:
    """Similarity in [0, 1] between two sets of hierarchical tags.

    Each tag in ``tags_a`` is compared with the tags in ``tags_b`` sharing
    its root, or with all of them when none does. Tags under other roots
    add weight without similarity.
    """
    set_a, set_b = sorted(set(tags_a)), sorted(set(tags_b))
    if not set_a or not set_b:
        return 0.0
    if set_a == set_b:
        return 1.0

    split_b = [tag.split(DELIMITER) for tag in set_b]
    by_root: dict[str, list[list[str]]] = {}
    for parts in split_b:
        by_root.setdefault(parts[0], []).append(parts)

    total_similarity = 0.0
    total_weight = 0.0
    for tag in set_a:
        parts_a = tag.split(DELIMITER)
        candidates = by_root.get(parts_a[0]) or split_b
        for parts_b in candidates:
            similarity, weight = hierarchical_similarity(parts_a, parts_b)
            total_similarity += similarity * weight
            total_weight += weight
        total_weight += NON_MATCH_WEIGHT * (len(split_b) - len(candidates))

    return total_similarity / total_weight if total_weight > 0 else 0.0


class RelevanceScorer:
    """Scores a stored item against a query context."""

    def __init__(self, config: RetrievalConfig | None = None):
        self.config = config or RetrievalConfig()
        total = (
            self.config.relevance_semantic_weight
            + self.config.relevance_tag_weight
            + self.config.relevance_recency_weight
            + self.config.relevance_access_weight
        )
        if not 0.99 <= total <= 1.01:
            raise ValidationError(f"Relevance weights must sum to 1.0 (got {total:.3f})")
        if self.config.recency_half_life_hours <= 0:
            raise ValidationError("recency_half_life_hours must be positive")

    def recency(self, item: StoredItem, now: float | None = None) -> float:
        now = time.time() if now is None else now
        age_hours = max(0.0, now - item.created_at) / 3600.0
        return math.exp(-age_hours / self.config.recency_half_life_hours)

    @staticmethod
    def access(item: StoredItem) -> float:
        return math.log1p(max(0, item.access_count)) / ACCESS_NORMALIZER

    def score(
        self,
        item: StoredItem,
        query_tags: list[str] | None = None,
        similarity: float | None = None,
        now: float | None = None,
    ) -> float:
        """Composite relevance in [0, 10].

        Missing signals (no similarity, or no tags on either side) count
        as neutral rather than zero.
        """
        semantic = NEUTRAL_SCORE if similarity is None else similarity
        if query_tags and item.tags:
            tag_score = weighted_hierarchical_jaccard(query_tags, item.tags)
        else:
            tag_score = NEUTRAL_SCORE

        relevance = (
            semantic * self.config.relevance_semantic_weight
            + tag_score * self.config.relevance_tag_weight
            + self.recency(item, now) * self.config.relevance_recency_weight
            + self.access(item) * self.config.relevance_access_weight
        ) * RELEVANCE_SCALE
        return min(RELEVANCE_MAX, max(RELEVANCE_MIN, relevance))
