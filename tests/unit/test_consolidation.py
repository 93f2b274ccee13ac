"""Unit tests for the consolidation engine."""

from __future__ import annotations

import asyncio
import time

import pytest

from appu_memory.audit import AuditEventType
from appu_memory.config import ConsolidationConfig
from appu_memory.engine.consolidation import ConsolidationEngine
from appu_memory.engine.consolidation import decayed_importance
from appu_memory.engine.consolidation import derive_insights
from appu_memory.engine.consolidation import find_merge_groups
from appu_memory.engine.consolidation import merge_group
from appu_memory.memory import InMemoryMemoryStore
from appu_memory.memory import MemoryFilters
from tests.unit.helpers.fakes import make_memory


@pytest.fixture()
def engine(store, audit) -> ConsolidationEngine:
    return ConsolidationEngine(store, audit=audit)


async def _seed(store, *memories):
    for memory in memories:
        await store.insert(memory)
    return memories


async def _all(store, child_id):
    return await store.query(child_id, MemoryFilters(include_archived=True))


class _FlakyStore(InMemoryMemoryStore):
    """Reads for child 2 fail."""

    async def query(self, child_id, *args, **kwargs):
        if child_id == 2:
            raise ConnectionError("replica lagging")
        return await super().query(child_id, *args, **kwargs)


class _VanishingStore(InMemoryMemoryStore):
    """Memories disappear the moment they are archived."""

    async def update(self, memory_id, fields):
        if "archived_at" in fields:
            await self.delete(memory_id)
        return await super().update(memory_id, fields)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestDecay:
    def test_half_life(self):
        memory = make_memory(importance=0.8, age_days=30)
        value = decayed_importance(memory, time.time(), half_life_days=30)
        assert value == pytest.approx(0.4, abs=1e-3)

    def test_decays_from_pinned_base(self):
        memory = make_memory(importance=0.4, age_days=30, importance_score=0.8)
        value = decayed_importance(memory, time.time(), half_life_days=30)
        assert value == pytest.approx(0.4, abs=1e-3)

    def test_recent_access_resets_idle_time(self):
        memory = make_memory(importance=0.8, age_days=60).model_copy(
            update={"last_accessed_at": time.time()}
        )
        value = decayed_importance(memory, time.time(), half_life_days=30)
        assert value == pytest.approx(0.8, abs=1e-3)


class TestMergeGroups:
    def test_identical_content_groups_across_types(self):
        a = make_memory("Counted to ten", type="learning")
        b = make_memory("counted   to TEN", type="conversational")
        c = make_memory("Something else")
        groups = find_merge_groups([a, b, c], 0.9)
        assert [{m.id for m in g} for g in groups] == [{a.id, b.id}]

    def test_near_duplicate_embeddings_same_type_only(self):
        a = make_memory("loves dinosaurs", embedding=[1.0, 0.0, 0.0])
        b = make_memory("really loves dinosaurs", embedding=[0.99, 0.05, 0.0])
        c = make_memory("dinosaur lesson", type="learning", embedding=[1.0, 0.0, 0.0])
        groups = find_merge_groups([a, b, c], 0.9)
        assert [{m.id for m in g} for g in groups] == [{a.id, b.id}]

    def test_links_are_transitive(self):
        a = make_memory("a", embedding=[1.0, 0.0])
        b = make_memory("b", embedding=[0.95, 0.31])
        c = make_memory("c", embedding=[0.81, 0.59])
        groups = find_merge_groups([a, b, c], 0.94)
        assert len(groups) == 1
        assert {m.id for m in groups[0]} == {a.id, b.id, c.id}

    def test_no_groups(self):
        memories = [make_memory("a"), make_memory("b")]
        assert find_merge_groups(memories, 0.9) == []

    def test_survivor_fields(self):
        low = make_memory(
            "X", importance=0.4, age_days=2, concepts=["count"], emotional_tone="happy"
        )
        high = make_memory("X", importance=0.9, age_days=1, concepts=["number", "count"])
        survivor, absorbed, fields = merge_group([low, high])

        assert survivor.id == high.id
        assert [m.id for m in absorbed] == [low.id]
        assert fields["importance"] == 0.9
        assert fields["metadata"]["concepts"] == ["number", "count"]
        assert fields["metadata"]["emotional_tone"] == "happy"
        assert fields["metadata"]["importance_score"] == 0.9
        assert fields["metadata"]["merged_from"] == [low.id]

    def test_importance_tie_keeps_oldest(self):
        newer = make_memory("X", importance=0.5, age_days=1)
        older = make_memory("X", importance=0.5, age_days=3)
        survivor, _, _ = merge_group([newer, older])
        assert survivor.id == older.id


class TestInsights:
    def test_recurring_interest(self):
        memories = [make_memory(f"dino {i}", concepts=["dinosaur"]) for i in range(3)]
        memories.append(
            make_memory("happy", type="emotional", emotional_tone="happy", concepts=["dinosaur"])
        )
        insights = derive_insights(memories)

        assert [i.pattern for i in insights] == ["recurring_interest"]
        insight = insights[0]
        assert insight.confidence == pytest.approx(0.3)
        assert insight.recommendations == ["Weave dinosaur into upcoming activities"]
        assert insight.supporting_memory_ids == [m.id for m in memories[:3]]

    def test_two_occurrences_are_not_a_pattern(self):
        memories = [make_memory(f"dino {i}", concepts=["dinosaur"]) for i in range(2)]
        assert derive_insights(memories) == []

    def test_learning_trends_and_acceleration(self):
        memories = [
            make_memory(f"lesson {i}", type="learning", concepts=["count"])
            for i in range(6)
        ]
        patterns = [i.pattern for i in derive_insights(memories)]
        assert patterns == ["recurring_interest", "learning_trends", "learning_acceleration"]

    def test_emotional_trends(self):
        memories = [
            make_memory(f"feel {i}", type="emotional", emotional_tone="happy", concepts=["happy"])
            for i in range(3)
        ]
        insights = derive_insights(memories)
        assert [i.pattern for i in insights] == ["emotional_trends"]
        assert insights[0].recommendations == ["Encourage more activities related to happy"]

    def test_supporting_ids_are_capped(self):
        memories = [make_memory(f"dino {i}", concepts=["dinosaur"]) for i in range(8)]
        insight = derive_insights(memories, ConsolidationConfig(max_supporting_memories=2))[0]
        assert len(insight.supporting_memory_ids) == 2
        assert insight.confidence == pytest.approx(0.8)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestConsolidate:
    async def test_duplicate_content_merges_to_max_importance(self, engine, store):
        await _seed(
            store,
            make_memory("X", child_id=1, importance=0.9),
            make_memory("X", child_id=1, importance=0.4),
        )
        result = await engine.consolidate(1)

        assert result.merged_memories == 1
        remaining = await _all(store, 1)
        assert len(remaining) == 1
        assert remaining[0].importance == 0.9
        assert remaining[0].merged_at is not None

    async def test_merge_unions_concepts(self, engine, store):
        await _seed(
            store,
            make_memory("Counted to ten", importance=0.7, concepts=["count"]),
            make_memory("counted to ten", importance=0.6, concepts=["number", "count"]),
        )
        await engine.consolidate(1)
        (survivor,) = await _all(store, 1)
        assert set(survivor.metadata.concepts) == {"count", "number"}

    async def test_second_pass_changes_nothing(self, engine, store):
        await _seed(
            store,
            make_memory("X", importance=0.9, age_days=2),
            make_memory("X", importance=0.4, age_days=3),
            make_memory("old chat", importance=0.8, age_days=30),
            make_memory("faded", importance=0.05, age_days=40),
            make_memory("fresh", importance=0.5),
        )
        first = await engine.consolidate(1)
        second = await engine.consolidate(1)

        assert first.merged_memories == 1
        assert first.archived_memories == 1
        assert first.importance_updates == 1
        assert second.merged_memories == 0
        assert second.archived_memories == 0
        assert second.importance_updates == 0

    async def test_decay_rewrites_and_pins_base(self, engine, store):
        (memory,) = await _seed(store, make_memory("old chat", importance=0.8, age_days=30))
        result = await engine.consolidate(1)

        assert result.importance_updates == 1
        stored = await store.get(memory.id)
        assert stored.importance == pytest.approx(0.4, abs=1e-3)
        assert stored.metadata.importance_score == 0.8

    async def test_small_decay_is_not_written(self, engine, store):
        (memory,) = await _seed(store, make_memory("chat", importance=0.5, age_days=2))
        result = await engine.consolidate(1)
        assert result.importance_updates == 0
        assert (await store.get(memory.id)).updated_at == memory.updated_at

    async def test_archives_unimportant_idle_memories(self, engine, store):
        faded, recent_low = await _seed(
            store,
            make_memory("faded", importance=0.05, age_days=40),
            make_memory("recent but low", importance=0.05, age_days=5),
        )
        result = await engine.consolidate(1)

        assert result.archived_memories == 1
        assert (await store.get(faded.id)).is_archived
        assert not (await store.get(recent_low.id)).is_archived
        active = await store.query(1)
        assert [m.id for m in active] == [recent_low.id]

    async def test_insights_come_from_surviving_memories(self, engine, store):
        await _seed(
            store,
            *(make_memory(f"dino {i}", concepts=["dinosaur"]) for i in range(3)),
        )
        result = await engine.consolidate(1)
        assert [i.pattern for i in result.new_insights] == ["recurring_interest"]
        assert result.consolidated_memories == 3
        assert result.processing_time >= 0

    async def test_other_children_untouched(self, engine, store):
        (other,) = await _seed(store, make_memory("X", child_id=2, importance=0.4))
        await _seed(
            store,
            make_memory("X", child_id=1, importance=0.9),
            make_memory("X", child_id=1, importance=0.4),
        )
        await engine.consolidate(1)
        assert await store.get(other.id) == other

    async def test_audit_trail(self, engine, store, audit):
        await _seed(
            store,
            make_memory("X", importance=0.9),
            make_memory("X", importance=0.4),
            make_memory("faded", importance=0.05, age_days=40),
        )
        await engine.consolidate(1)

        merged = await audit.read_events(event_type=AuditEventType.MEMORY_MERGED)
        archived = await audit.read_events(event_type=AuditEventType.MEMORY_ARCHIVED)
        runs = await audit.read_events(event_type=AuditEventType.CONSOLIDATION_RUN)
        assert len(merged) == 1
        assert len(merged[0].payload["absorbed_ids"]) == 1
        assert len(archived) == 1
        assert runs[0].payload["merged_memories"] == 1
        assert runs[0].child_id == 1

    async def test_concurrent_passes_are_serialized(self, engine, store):
        await _seed(
            store,
            make_memory("X", importance=0.9),
            make_memory("X", importance=0.4),
            make_memory("X", importance=0.2),
        )
        first, second = await asyncio.gather(engine.consolidate(1), engine.consolidate(1))

        assert first.merged_memories + second.merged_memories == 2
        assert len(await _all(store, 1)) == 1
        assert engine._locks == {}

    async def test_locks_are_dropped_after_each_pass(self, engine, store):
        for child_id in range(1, 6):
            await _seed(store, make_memory("chat", child_id=child_id))
            await engine.consolidate(child_id)
        assert engine._locks == {}
        assert engine._lock_users == {}

    async def test_vanished_memory_is_not_counted_as_archived(self, audit):
        store = _VanishingStore()
        engine = ConsolidationEngine(store, audit=audit)
        await _seed(store, make_memory("faded", importance=0.05, age_days=40))

        result = await engine.consolidate(1)

        assert result.archived_memories == 0
        assert await audit.read_events(event_type=AuditEventType.MEMORY_ARCHIVED) == []
        assert await _all(store, 1) == []


class TestSweep:
    async def test_sweeps_every_child(self, engine, store):
        await _seed(
            store,
            make_memory("X", child_id=1),
            make_memory("X", child_id=1),
            make_memory("Y", child_id=3),
        )
        sweep = await engine.sweep()

        assert sweep.children_processed == 2
        assert sweep.children_failed == 0
        assert [r.child_id for r in sweep.results] == [1, 3]
        assert sweep.results[0].merged_memories == 1

    async def test_failure_is_isolated(self):
        store = _FlakyStore()
        await _seed(
            store,
            make_memory("a", child_id=1),
            make_memory("b", child_id=2),
            make_memory("c", child_id=3),
        )
        sweep = await ConsolidationEngine(store).sweep()

        assert sweep.children_processed == 2
        assert sweep.children_failed == 1
        assert sweep.failures[0].child_id == 2
        assert "replica lagging" in sweep.failures[0].error
        assert [r.child_id for r in sweep.results] == [1, 3]

    async def test_explicit_child_list(self, engine, store):
        await _seed(store, make_memory("a", child_id=1), make_memory("b", child_id=3))
        sweep = await engine.sweep([3])
        assert [r.child_id for r in sweep.results] == [3]

    async def test_custom_thresholds(self, store):
        await _seed(store, make_memory("low", importance=0.25, age_days=10))
        engine = ConsolidationEngine(
            store,
            config=ConsolidationConfig(archive_importance_threshold=0.3, archive_idle_days=7),
        )
        result = await engine.consolidate(1)
        assert result.archived_memories == 1
