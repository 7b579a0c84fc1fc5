"""Tests for the token-bounded working memory."""

import threading

import pytest

from src.hivemem.config import WorkingMemoryConfig
from src.hivemem.errors import ValidationError
from src.hivemem.working_memory import WorkingMemory


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestWorkingMemoryBasics:
    """Tests for add/remove and monitoring accessors."""

    @pytest.fixture
    def wm(self):
        return WorkingMemory(WorkingMemoryConfig(max_tokens=300), clock=FakeClock())

    def test_add_and_counts(self, wm):
        wm.add("a", "alpha", 100)
        wm.add("b", "beta", 50, importance=3.0)

        assert wm.entry_count() == 2
        assert wm.token_count() == 150
        assert "a" in wm
        assert wm.utilization_percentage() == 50.0

    def test_has_space_boundary(self, wm):
        wm.add("a", "alpha", 200)

        assert wm.has_space(100)
        assert not wm.has_space(101)

    def test_add_does_not_check_capacity(self, wm):
        wm.add("a", "alpha", 250)
        wm.add("b", "beta", 250)

        assert wm.token_count() == 500

    def test_readd_refreshes_without_double_counting(self, wm):
        wm.add("a", "alpha", 100)
        wm.add("a", "alpha v2", 120, importance=7.0)

        assert wm.entry_count() == 1
        assert wm.token_count() == 120
        entry = wm.entries()[0]
        assert entry.value == "alpha v2"
        assert entry.importance == 7.0

    def test_remove_is_noop_for_missing(self, wm):
        wm.add("a", "alpha", 100)

        assert wm.remove("missing") is None
        removed = wm.remove("a")
        assert removed.key == "a"
        assert wm.token_count() == 0

    def test_utilization_rounding(self, wm):
        wm.add("a", "alpha", 100)
        assert wm.utilization_percentage() == 33.33

    def test_importance_bounds(self, wm):
        with pytest.raises(ValidationError):
            wm.add("a", "alpha", 10, importance=10.5)
        with pytest.raises(ValidationError):
            wm.add("a", "alpha", 10, importance=-0.1)

    def test_entries_are_copies(self, wm):
        wm.add("a", "alpha", 100)
        entry = wm.entries()[0]
        entry.importance = 9.0

        assert wm.entries()[0].importance == 1.0

    def test_clear(self, wm):
        wm.add("a", "alpha", 100)
        wm.add("b", "beta", 100)

        assert wm.clear() == 2
        assert wm.token_count() == 0


class TestEviction:
    """Tests for importance/recency eviction."""

    def test_scenario_evicts_lowest_importance(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=250), clock=FakeClock())
        wm.add("low", "low", 100, importance=2.0)
        wm.add("high", "high", 100, importance=8.0)
        wm.add("mid", "mid", 100, importance=5.0)

        evicted = wm.evict_to_make_space(100)

        assert [e.key for e in evicted] == ["low"]
        assert sorted(wm.keys()) == ["high", "mid"]

    def test_priority_by_importance(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=1000), clock=FakeClock())
        wm.add("nine", "9", 10, importance=9.0)
        wm.add("one", "1", 10, importance=1.0)
        wm.add("five", "5", 10, importance=5.0)

        evicted = wm.evict_to_make_space(1)

        assert [e.key for e in evicted] == ["one"]

    def test_equal_importance_evicts_oldest(self):
        clock = FakeClock()
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=1000), clock=clock)
        wm.add("old", "old", 10)
        clock.advance(60)
        wm.add("new", "new", 10)

        evicted = wm.evict_to_make_space(1)

        assert [e.key for e in evicted] == ["old"]

    def test_access_protects_entry(self):
        clock = FakeClock()
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=1000), clock=clock)
        wm.add("first", "first", 10)
        clock.advance(60)
        wm.add("second", "second", 10)
        clock.advance(60)
        assert wm.access("first") == "first"

        evicted = wm.evict_to_make_space(1)

        assert [e.key for e in evicted] == ["second"]

    def test_evicts_minimum_prefix(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=600), clock=FakeClock())
        wm.add("a", "a", 100, importance=1.0)
        wm.add("b", "b", 200, importance=2.0)
        wm.add("c", "c", 300, importance=3.0)

        evicted = wm.evict_to_make_space(250)

        assert [e.key for e in evicted] == ["a", "b"]
        assert sum(e.token_count for e in evicted) == 300
        assert wm.has_space(250)

    def test_sufficiency_when_everything_must_go(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=600), clock=FakeClock())
        wm.add("a", "a", 100)
        wm.add("b", "b", 200)

        evicted = wm.evict_to_make_space(500)

        assert len(evicted) == 2
        assert wm.has_space(500)

    def test_nothing_needed(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=100), clock=FakeClock())
        wm.add("a", "a", 50)

        assert wm.evict_to_make_space(0) == []
        assert wm.entry_count() == 1


class TestAdmit:
    """Capacity check, eviction and insert as one step."""

    def test_evicts_then_inserts(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=250), clock=FakeClock())
        wm.add("low", "low", 100, importance=2.0)
        wm.add("high", "high", 100, importance=8.0)

        entry, evicted = wm.admit("new", "new", 100, importance=5.0)

        assert entry.key == "new"
        assert [e.key for e in evicted] == ["low"]
        assert sorted(wm.keys()) == ["high", "new"]
        assert wm.token_count() == 200

    def test_no_eviction_when_it_fits(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=300), clock=FakeClock())
        wm.add("a", "a", 100)

        _, evicted = wm.admit("b", "b", 200)

        assert evicted == []
        assert wm.token_count() == 300

    def test_recall_keeps_higher_importance(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=300), clock=FakeClock())
        wm.admit("plan", "plan", 100, importance=9.0)

        entry, _ = wm.admit("plan", "plan", 100, importance=1.0, from_recall=True)

        assert entry.importance == 9.0
        assert entry.from_recall

    def test_recall_can_raise_importance(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=300), clock=FakeClock())
        wm.admit("note", "note", 100, importance=1.0)

        entry, _ = wm.admit("note", "note", 100, importance=4.0, from_recall=True)

        assert entry.importance == 4.0

    def test_remember_overwrites_importance(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=300), clock=FakeClock())
        wm.admit("note", "note", 100, importance=9.0)

        entry, _ = wm.admit("note", "note", 100, importance=2.0)

        assert entry.importance == 2.0

    def test_growing_entry_never_evicts_itself(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=300), clock=FakeClock())
        wm.add("grow", "small", 100, importance=1.0)
        wm.add("other", "other", 150, importance=5.0)

        _, evicted = wm.admit("grow", "bigger", 200, importance=1.0)

        assert [e.key for e in evicted] == ["other"]
        assert wm.keys() == ["grow"]
        assert wm.token_count() == 200

    def test_oversized_entry_rejected(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=100), clock=FakeClock())
        wm.add("a", "a", 50)

        with pytest.raises(ValidationError):
            wm.admit("huge", "huge", 101)
        assert wm.keys() == ["a"]


class TestAssembleContext:
    """Tests for context assembly strategies."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def wm(self, clock):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=1000), clock=clock)
        wm.add("old", "old important", 10, importance=9.0)
        clock.advance(10 * 3600)
        wm.add("new", "new minor", 10, importance=2.0)
        return wm

    def test_recent(self, wm):
        assert wm.assemble_context("recent") == "new minor\n\nold important"

    def test_important(self, wm):
        assert wm.assemble_context("important") == "old important\n\nnew minor"

    def test_balanced_is_default(self, wm):
        # 9 / (1 + 10h) < 2 / (1 + 0h)
        assert wm.assemble_context() == "new minor\n\nold important"

    def test_access_changes_recent_order(self, wm, clock):
        clock.advance(1)
        wm.access("old")
        assert wm.assemble_context("recent") == "old important\n\nnew minor"

    def test_token_budget_stops_assembly(self, wm):
        assert wm.assemble_context("important", max_tokens=15) == "old important"

    def test_unknown_strategy(self, wm):
        with pytest.raises(ValidationError):
            wm.assemble_context("random")

    def test_empty(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=10))
        assert wm.assemble_context() == ""


class TestConcurrency:
    """Working memory shared between threads stays consistent."""

    def test_concurrent_add_and_evict(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=500))

        def worker(prefix: str):
            for i in range(100):
                if not wm.has_space(10):
                    wm.evict_to_make_space(10)
                wm.add(f"{prefix}-{i}", f"value {i}", 10, importance=float(i % 10))

        threads = [threading.Thread(target=worker, args=(f"t{n}",)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        entries = wm.entries()
        assert wm.token_count() == sum(e.token_count for e in entries)
        assert wm.entry_count() == len(entries)

    def test_concurrent_admit_never_overfills(self):
        wm = WorkingMemory(WorkingMemoryConfig(max_tokens=500))
        overfilled = []

        def worker(prefix: str):
            for i in range(100):
                wm.admit(f"{prefix}-{i}", f"value {i}", 10, importance=float(i % 10))
                if wm.token_count() > wm.max_tokens:
                    overfilled.append(wm.token_count())

        threads = [threading.Thread(target=worker, args=(f"t{n}",)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overfilled == []
        assert wm.token_count() == sum(e.token_count for e in wm.entries())
