"""Tests for composite relevance scoring and hierarchical tag similarity."""

import math

import pytest

from src.hivemem.config import RetrievalConfig
from src.hivemem.errors import ValidationError
from src.hivemem.models import StoredItem
from src.hivemem.relevance import (
    RelevanceScorer,
    hierarchical_similarity,
    weighted_hierarchical_jaccard,
)

NOW = 1_700_000_000.0


def item(tags=None, age_hours: float = 0.0, access_count: int = 0) -> StoredItem:
    return StoredItem(
        id="item-1",
        content="content",
        content_hash="hash",
        created_at=NOW - age_hours * 3600,
        access_count=access_count,
        tags=list(tags or []),
    )


class TestHierarchicalSimilarity:

    def test_shared_prefix(self):
        similarity, weight = hierarchical_similarity(
            ["database", "postgresql"], ["database", "postgresql", "extensions"]
        )
        assert similarity == pytest.approx(2 / 3)
        assert weight == pytest.approx(1 / 3)

    def test_different_roots(self):
        assert hierarchical_similarity(["ai", "llm"], ["database"]) == (0.0, 0.5)


class TestWeightedHierarchicalJaccard:

    def test_identical_sets(self):
        assert weighted_hierarchical_jaccard(["ai:llm", "database"], ["database", "ai:llm"]) == 1.0

    def test_empty_side(self):
        assert weighted_hierarchical_jaccard([], ["ai"]) == 0.0
        assert weighted_hierarchical_jaccard(["ai"], []) == 0.0

    def test_parent_and_child(self):
        score = weighted_hierarchical_jaccard(
            ["database:postgresql"], ["database:postgresql:extensions"]
        )
        assert score == pytest.approx(2 / 3)

    def test_unrelated_roots(self):
        assert weighted_hierarchical_jaccard(["database"], ["ai:llm"]) == 0.0

    def test_partial_overlap(self):
        score = weighted_hierarchical_jaccard(
            ["database:postgresql", "ai"], ["database:postgresql"]
        )
        assert score == pytest.approx(0.5)

    def test_other_roots_dilute(self):
        focused = weighted_hierarchical_jaccard(["database"], ["database"])
        diluted = weighted_hierarchical_jaccard(["database"], ["database", "ai:llm"])
        assert diluted < focused
        assert diluted == pytest.approx(1.0 / 1.5)


class TestRelevanceScorer:

    @pytest.fixture
    def scorer(self):
        return RelevanceScorer()

    def test_all_neutral_fresh_item(self, scorer):
        # semantic 0.5, tags 0.5, recency 1.0, access 0.0
        assert scorer.score(item(), now=NOW) == pytest.approx(
            (0.5 * 0.5 + 0.5 * 0.3 + 1.0 * 0.1) * 10
        )

    def test_matching_tags_raise_score(self, scorer):
        tagged = item(tags=["database:postgresql"])

        matched = scorer.score(tagged, ["database:postgresql"], now=NOW)
        unrelated = scorer.score(tagged, ["ai:llm"], now=NOW)

        assert matched == pytest.approx((0.5 * 0.5 + 1.0 * 0.3 + 0.1) * 10)
        assert unrelated == pytest.approx((0.5 * 0.5 + 0.0 * 0.3 + 0.1) * 10)

    def test_similarity_is_used(self, scorer):
        assert scorer.score(item(), similarity=1.0, now=NOW) > scorer.score(item(), now=NOW)

    def test_recency_decays(self, scorer):
        week_old = item(age_hours=168)
        assert scorer.recency(week_old, NOW) == pytest.approx(math.exp(-1))
        assert scorer.score(week_old, now=NOW) < scorer.score(item(), now=NOW)

    def test_future_items_count_as_fresh(self, scorer):
        assert scorer.recency(item(age_hours=-1), NOW) == 1.0

    def test_access_is_log_normalized(self, scorer):
        assert scorer.access(item(access_count=0)) == 0.0
        assert scorer.access(item(access_count=9)) == pytest.approx(math.log(10) / 10)

    def test_score_is_clamped(self):
        scorer = RelevanceScorer(RetrievalConfig(
            relevance_semantic_weight=0.0,
            relevance_tag_weight=0.0,
            relevance_recency_weight=0.0,
            relevance_access_weight=1.0,
        ))
        assert scorer.score(item(access_count=10**9), now=NOW) == 10.0

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValidationError, match="sum to 1.0"):
            RelevanceScorer(RetrievalConfig(relevance_semantic_weight=0.9))

    def test_half_life_must_be_positive(self):
        with pytest.raises(ValidationError):
            RelevanceScorer(RetrievalConfig(recency_half_life_hours=0))
