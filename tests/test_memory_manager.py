"""Tests for MemoryManager end to end over the in-memory store."""

import time
import asyncio
from datetime import timedelta

import pytest

from src.hivemem.config import EmbeddingConfig, MemoryConfig, WorkingMemoryConfig
from src.hivemem.errors import EmbeddingError, NotFoundError, ValidationError
from src.hivemem.enrichment.executors import InlineExecutor
from src.hivemem.enrichment.providers import CallableEmbeddingProvider, CallableTagProvider
from src.hivemem.memory_manager import MemoryManager
from src.hivemem.models import RecallStrategy
from src.hivemem.storage.memory import InMemoryContentStore
from src.hivemem.working_memory import WorkingMemory


class FakeEmbedder:
    def __init__(self, vector=(1.0, 0.0, 0.0), error: Exception | None = None):
        self.vector = list(vector)
        self.error = error
        self.calls = 0

    async def __call__(self, text: str) -> list[float]:
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.vector)


class FakeTagger:
    def __init__(self, reply: str = "misc"):
        self.reply = reply

    async def __call__(self, text: str, taxonomy_hint: list[str]) -> str:
        return self.reply


class YieldingStore(InMemoryContentStore):
    """Yields to the event loop on every working-memory flag write."""

    def __init__(self):
        super().__init__()
        self.working_memory: WorkingMemory | None = None
        self.overfilled: list[int] = []

    async def set_working_memory_flag(self, owner_id, item_ids, in_working_memory):
        await asyncio.sleep(0)
        wm = self.working_memory
        if wm is not None and wm.token_count() > wm.max_tokens:
            self.overfilled.append(wm.token_count())
        await super().set_working_memory_flag(owner_id, item_ids, in_working_memory)


def word_count(text: str) -> int:
    return len(text.split())


@pytest.fixture
def store():
    return InMemoryContentStore()


@pytest.fixture
def make_manager(store):
    def factory(
        owner: str = "robot-a",
        max_tokens: int = 1000,
        embedder: FakeEmbedder | None = None,
        tagger: FakeTagger | None = None,
        backing: InMemoryContentStore | None = None,
        working_memory: WorkingMemory | None = None,
        **config_kwargs,
    ) -> MemoryManager:
        config = MemoryConfig(
            owner_name=owner,
            working_memory_config=WorkingMemoryConfig(max_tokens=max_tokens),
            embedding_config=EmbeddingConfig(dimension=3),
            **config_kwargs,
        )
        return MemoryManager(
            config=config,
            store=backing or store,
            embedding_provider=CallableEmbeddingProvider(embedder or FakeEmbedder()),
            tag_provider=CallableTagProvider(tagger or FakeTagger()),
            executor=InlineExecutor(),
            token_counter=word_count,
            working_memory=working_memory,
        )
    return factory


class TestRemember:
    """Dedup-aware writes."""

    @pytest.mark.asyncio
    async def test_remember_is_idempotent(self, make_manager, store):
        mm = make_manager()

        first = await mm.remember("The sky is blue")
        second = await mm.remember("The sky is blue")

        assert first == second
        assert (await store.stats())["items"] == 1
        assert (await store.get_owner_link(mm.owner_id, first)).remember_count == 2

    @pytest.mark.asyncio
    async def test_hive_mind_shares_items(self, make_manager, store):
        embedder = FakeEmbedder()
        robot_a = make_manager("robot-a", embedder=embedder)
        robot_b = make_manager("robot-b", embedder=embedder)

        a_id = await robot_a.remember("Charging dock is in room 4")
        b_id = await robot_b.remember("Charging dock is in room 4")

        assert a_id == b_id
        assert embedder.calls == 1
        assert await store.get_owner_link(robot_b.owner_id, a_id)

    @pytest.mark.asyncio
    async def test_enrichment_runs_for_new_items(self, make_manager, store):
        mm = make_manager(tagger=FakeTagger("robotics:navigation"))

        item_id = await mm.remember("Turn left at the red door")

        item = await store.get(item_id)
        assert item.embedding == [1.0, 0.0, 0.0]
        assert item.tags == ["robotics:navigation"]

    @pytest.mark.asyncio
    async def test_enrichment_failure_does_not_fail_remember(self, make_manager):
        mm = make_manager(embedder=FakeEmbedder(error=EmbeddingError("ollama down")))

        item_id = await mm.remember("Battery swap takes four minutes")
        results = await mm.recall("battery swap")

        assert [r.id for r in results] == [item_id]

    @pytest.mark.asyncio
    async def test_manual_tags(self, make_manager, store):
        mm = make_manager()

        item_id = await mm.remember("Vacuum runs nightly", tags=["database:postgresql"])
        await mm.remember("Vacuum runs nightly", tags=["ops:maintenance"])

        assert await store.item_tags(item_id) == ["database:postgresql", "misc", "ops:maintenance"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"content": ""},
        {"content": "   "},
        {"content": "x" * 11},
        {"content": "ok", "importance": 10.5},
        {"content": "ok", "importance": -1},
        {"content": "ok", "importance": True},
        {"content": "ok", "tags": ["Bad Tag"]},
        {"content": "ok", "tags": ["ai:llm:ai"]},
    ])
    async def test_validation(self, make_manager, store, kwargs):
        mm = make_manager(max_content_bytes=10)

        with pytest.raises(ValidationError):
            await mm.remember(**kwargs)
        assert (await store.stats())["items"] == 0

    @pytest.mark.asyncio
    async def test_remember_and_enrich(self, make_manager, store):
        mm = make_manager(tagger=FakeTagger("robotics:arm"))

        item_id = await mm.remember_and_enrich("Gripper torque limit is 5 Nm", importance=4.0)

        item = await store.get(item_id)
        assert item.has_embedding
        assert item.tags == ["robotics:arm"]
        assert item_id in mm.working_memory
        assert mm.working_memory.entries()[0].importance == 4.0


class TestWorkingMemoryIntegration:
    """Admission, eviction and owner flags."""

    @pytest.mark.asyncio
    async def test_remember_admits_and_flags(self, make_manager, store):
        mm = make_manager()

        item_id = await mm.remember("one two three")

        assert item_id in mm.working_memory
        assert mm.working_memory.token_count() == 3
        assert (await store.get_owner_link(mm.owner_id, item_id)).in_working_memory

    @pytest.mark.asyncio
    async def test_eviction_clears_flag(self, make_manager, store):
        mm = make_manager(max_tokens=10)

        low = await mm.remember("one two three four five six", importance=1.0)
        high = await mm.remember("alpha beta gamma delta epsilon", importance=5.0)

        assert mm.working_memory.keys() == [high]
        assert not (await store.get_owner_link(mm.owner_id, low)).in_working_memory
        assert (await store.get_owner_link(mm.owner_id, high)).in_working_memory

    @pytest.mark.asyncio
    async def test_oversized_item_is_stored_but_not_admitted(self, make_manager, store):
        mm = make_manager(max_tokens=3)

        item_id = await mm.remember("far too many words here")

        assert await store.get(item_id)
        assert item_id not in mm.working_memory

    @pytest.mark.asyncio
    async def test_recall_admits_from_recall(self, make_manager):
        writer = make_manager("robot-a")
        reader = make_manager("robot-b")
        item_id = await writer.remember("Elevator B is out of service")

        results = await reader.recall("elevator service")

        assert [r.id for r in results] == [item_id]
        entry = reader.working_memory.entries()[0]
        assert entry.key == item_id
        assert entry.from_recall

    @pytest.mark.asyncio
    async def test_recall_keeps_remembered_importance(self, make_manager):
        mm = make_manager(max_tokens=12)
        plan = await mm.remember(
            "deployment checklist covers rollback plan and smoke tests", importance=9.0
        )
        lunch = await mm.remember("lunch is at noon", importance=2.0)

        assert [r.id for r in await mm.recall("deployment")] == [plan]
        await mm.remember("parking lot closes early", importance=2.0)

        assert plan in mm.working_memory
        assert lunch not in mm.working_memory
        entry = next(e for e in mm.working_memory.entries() if e.key == plan)
        assert entry.importance == 9.0

    @pytest.mark.asyncio
    async def test_shared_working_memory_is_never_overfilled(self, make_manager):
        shared_store = YieldingStore()
        shared_wm = WorkingMemory(WorkingMemoryConfig(max_tokens=10))
        shared_store.working_memory = shared_wm
        managers = [
            make_manager(owner, backing=shared_store, working_memory=shared_wm)
            for owner in ("robot-a", "robot-b")
        ]

        await asyncio.gather(*(
            mm.remember(f"{mm.config.owner_name} note {n} for shift log", importance=float(n % 3))
            for n in range(6)
            for mm in managers
        ))

        assert shared_store.overfilled == []
        assert shared_wm.token_count() <= 10
        assert shared_wm.token_count() == sum(e.token_count for e in shared_wm.entries())

    @pytest.mark.asyncio
    async def test_create_context(self, make_manager):
        mm = make_manager()
        await mm.remember("first fact", importance=1.0)
        await mm.remember("second fact", importance=9.0)

        assert mm.create_context("important") == "second fact\n\nfirst fact"
        assert mm.create_context("important", max_tokens=2) == "second fact"

    @pytest.mark.asyncio
    async def test_clear_working_memory(self, make_manager, store):
        mm = make_manager()
        item_id = await mm.remember("keep me handy")

        assert await mm.clear_working_memory() == 1

        assert mm.working_memory.entry_count() == 0
        assert not (await store.get_owner_link(mm.owner_id, item_id)).in_working_memory


class TestRecall:
    """Strategy dispatch and argument validation."""

    @pytest.mark.asyncio
    async def test_fulltext_is_default_and_tracks_access(self, make_manager, store):
        mm = make_manager()
        item_id = await mm.remember("Lidar calibration drifts in cold rooms")

        results = await mm.recall("lidar calibration")

        assert [r.id for r in results] == [item_id]
        assert (await store.get(item_id)).access_count == 1

    @pytest.mark.asyncio
    async def test_vector_strategy(self, make_manager):
        mm = make_manager()
        item_id = await mm.remember("Wheel encoders need cleaning")

        results = await mm.recall("anything", strategy=RecallStrategy.VECTOR)

        assert [r.id for r in results] == [item_id]
        assert results[0].similarity == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_hybrid_prefers_tagged_item(self, make_manager):
        mm = make_manager()
        tagged = await mm.remember("Autovacuum tuning notes", tags=["database:postgresql"])
        plain = await mm.remember("Postgresql vacuum guide")

        results = await mm.recall("postgresql", strategy="hybrid")

        assert [r.id for r in results] == [tagged, plain]
        assert results[0].matched_tags == ["database:postgresql"]

    @pytest.mark.asyncio
    async def test_timeframe(self, make_manager, store):
        mm = make_manager()
        old = await mm.remember("Old map of floor two")
        new = await mm.remember("New map of floor two")
        store._items[old].created_at = time.time() - 30 * 86400

        results = await mm.recall("map floor", timeframe="last 7 days")

        assert [r.id for r in results] == [new]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"strategy": "semantic"},
        {"limit": 0},
        {"limit": True},
        {"timeframe": "someday"},
    ])
    async def test_invalid_arguments(self, make_manager, kwargs):
        mm = make_manager()

        with pytest.raises(ValidationError):
            await mm.recall("anything", **kwargs)

    @pytest.mark.asyncio
    async def test_recall_with_relevance(self, make_manager, store):
        mm = make_manager()
        other = await mm.remember("Gripper pads wear out fast", tags=["hardware:gripper"])
        match = await mm.remember("Gripper firmware needs update", tags=["software:firmware"])

        results = await mm.recall(
            "gripper", with_relevance=True, query_tags=["software:firmware"]
        )

        assert [r.id for r in results] == [match, other]
        assert all(r.relevance is not None for r in results)
        assert (await store.get(match)).access_count == 1
        assert match in mm.working_memory

    @pytest.mark.asyncio
    async def test_recall_with_relevance_hybrid_uses_embeddings(self, make_manager):
        embedder = FakeEmbedder()
        mm = make_manager(embedder=embedder)
        await mm.remember("Battery swap procedure")
        calls_after_remember = embedder.calls

        results = await mm.recall("battery", strategy="hybrid", with_relevance=True)

        assert len(results) == 1
        assert results[0].similarity == pytest.approx(1.0)
        assert embedder.calls == calls_after_remember + 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query_tags", ["database", ["Not A Tag"]])
    async def test_invalid_query_tags(self, make_manager, query_tags):
        mm = make_manager()

        with pytest.raises(ValidationError):
            await mm.recall("anything", with_relevance=True, query_tags=query_tags)

    @pytest.mark.asyncio
    async def test_recall_by_tags(self, make_manager):
        mm = make_manager(max_tokens=1000)
        both = await mm.remember("Replica lag alert runbook", tags=["database:postgresql", "ops"])
        db = await mm.remember("Vacuum settings", tags=["database:postgresql"])
        await mm.remember("Shift roster", tags=["ops"])

        assert {r.id for r in await mm.recall_by_tags(["database:postgresql"])} == {both, db}

        results = await mm.recall_by_tags(["database:postgresql", "ops"], match_all=True)
        assert [r.id for r in results] == [both]
        entry = next(e for e in mm.working_memory.entries() if e.key == both)
        assert entry.from_recall

    @pytest.mark.asyncio
    async def test_recall_by_tags_validates(self, make_manager):
        mm = make_manager()

        with pytest.raises(ValidationError):
            await mm.recall_by_tags("ops")
        with pytest.raises(ValidationError):
            await mm.recall_by_tags(["ops"], limit=0)


class TestForgetAndRestore:
    """Soft delete, hard delete and purge."""

    @pytest.mark.asyncio
    async def test_soft_delete_round_trip(self, make_manager):
        mm = make_manager()
        item_id = await mm.remember("Door code is 4711")

        assert await mm.forget(item_id)
        assert item_id not in mm.working_memory
        assert await mm.recall("door code") == []

        assert await mm.restore(item_id)
        assert [r.id for r in await mm.recall("door code")] == [item_id]

    @pytest.mark.asyncio
    async def test_hard_delete(self, make_manager, store):
        mm = make_manager()
        item_id = await mm.remember("Temporary note")

        assert await mm.forget(item_id, soft=False, confirmed=True)

        assert await store.get(item_id) is None
        with pytest.raises(NotFoundError):
            await mm.forget(item_id)
        with pytest.raises(NotFoundError):
            await mm.restore(item_id)

    @pytest.mark.asyncio
    async def test_hard_delete_requires_confirmation(self, make_manager, store):
        mm = make_manager()
        item_id = await mm.remember("Important note")

        with pytest.raises(ValidationError):
            await mm.forget(item_id, soft=False)
        assert await store.get(item_id)

    @pytest.mark.asyncio
    async def test_forget_twice_reports_no_change(self, make_manager):
        mm = make_manager()
        item_id = await mm.remember("Badge reader on door 3 is flaky")

        assert await mm.forget(item_id) is True
        assert await mm.forget(item_id) is False
        assert (await mm.store.get(item_id)).is_deleted

    @pytest.mark.asyncio
    async def test_forget_unknown(self, make_manager):
        with pytest.raises(NotFoundError):
            await make_manager().forget("no-such-item")

    @pytest.mark.asyncio
    async def test_restore_live_item(self, make_manager):
        mm = make_manager()
        item_id = await mm.remember("Still here")

        with pytest.raises(ValidationError):
            await mm.restore(item_id)

    @pytest.mark.asyncio
    async def test_remember_restores_soft_deleted(self, make_manager, store):
        mm = make_manager()
        item_id = await mm.remember("Comes back")
        await mm.forget(item_id)

        assert await mm.remember("Comes back") == item_id
        assert not (await store.get(item_id)).is_deleted

    @pytest.mark.asyncio
    async def test_forget_content(self, make_manager):
        mm = make_manager()
        secret = await mm.remember("The secret token is abc")
        await mm.remember("Public notice")

        assert await mm.forget_content("SECRET token") == [secret]
        assert await mm.recall("secret token") == []

        with pytest.raises(ValidationError):
            await mm.forget_content("  ")

    @pytest.mark.asyncio
    async def test_purge_deleted(self, make_manager, store):
        mm = make_manager()
        old = await mm.remember("Old deleted")
        recent = await mm.remember("Recently deleted")
        await mm.forget(old)
        await mm.forget(recent)
        store._items[old].deleted_at = time.time() - 2 * 3600

        with pytest.raises(ValidationError):
            await mm.purge_deleted(timedelta(hours=1))
        with pytest.raises(ValidationError):
            await mm.purge_deleted("yesterday", confirmed=True)

        assert await mm.purge_deleted(timedelta(hours=1), confirmed=True) == 1
        assert await store.get(old) is None
        assert await store.get(recent)


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_context_manager_and_stats(self, make_manager, store):
        async with make_manager() as mm:
            await mm.remember("one two")
            stats = await mm.stats()

        assert stats["owner"] == "robot-a"
        assert stats["store"]["items"] == 1
        assert stats["working_memory"]["tokens"] == 2
        assert stats["enrichment"]["embedding_breaker"]["status"] == "closed"
        assert not store._connected
