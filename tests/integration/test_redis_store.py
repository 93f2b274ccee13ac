"""RedisMemoryStore against a real Redis 7 server."""

from __future__ import annotations

import time

import pytest

from appu_memory.memory import build_memory
from appu_memory.memory import Memory
from appu_memory.memory import MemoryFilters
from appu_memory.memory import MemoryStore
from appu_memory.memory import OrderBy
from appu_memory.memory import RedisMemoryStore
from appu_memory.memory import StoreWriteFailure

DAY = 86_400.0


def _memory(content: str, *, child_id: int = 1, age_days: float = 0.0, **kwargs) -> Memory:
    memory = build_memory(child_id, content, kwargs.pop("type", "conversational"), **kwargs)
    created = time.time() - age_days * DAY
    return memory.model_copy(update={"created_at": created, "updated_at": created})


class TestWrites:
    async def test_satisfies_protocol(self, redis_store):
        assert isinstance(redis_store, MemoryStore)

    async def test_insert_and_get_round_trip(self, redis_store):
        memory = _memory(
            "Learning interaction: counting",
            type="learning",
            metadata={"concepts": ["count"], "learning_outcome": "engagement"},
            embedding=[0.1, 0.2, 0.3],
        )
        await redis_store.insert(memory)
        assert await redis_store.get(memory.id) == memory

    async def test_duplicate_id_is_rejected(self, redis_store):
        memory = _memory("once")
        await redis_store.insert(memory)
        with pytest.raises(StoreWriteFailure, match="already exists"):
            await redis_store.insert(memory)

    async def test_update(self, redis_store):
        memory = await redis_store.insert(_memory("chat", importance=0.5))
        updated = await redis_store.update(memory.id, {"importance": 0.9})
        assert updated.importance == 0.9
        assert (await redis_store.get(memory.id)).importance == 0.9
        assert await redis_store.update("mem_missing", {"importance": 0.1}) is None

    async def test_update_cannot_change_owner(self, redis_store):
        memory = await redis_store.insert(_memory("chat"))
        with pytest.raises(StoreWriteFailure):
            await redis_store.update(memory.id, {"child_id": 2})

    async def test_delete_removes_from_index(self, redis_store):
        memory = await redis_store.insert(_memory("chat"))
        assert await redis_store.delete(memory.id) is True
        assert await redis_store.get(memory.id) is None
        assert await redis_store.query(1) == []
        assert await redis_store.delete(memory.id) is False

    async def test_mark_accessed(self, redis_store):
        memory = await redis_store.insert(_memory("chat"))
        await redis_store.mark_accessed([memory.id, "mem_missing"], 123.0)
        assert (await redis_store.get(memory.id)).last_accessed_at == 123.0


class TestReads:
    async def test_query_orders_and_filters(self, redis_store):
        old = await redis_store.insert(_memory("old", age_days=10, importance=0.9))
        mid = await redis_store.insert(
            _memory("mid", age_days=3, type="learning", importance=0.2)
        )
        new = await redis_store.insert(_memory("new", age_days=0.5, importance=0.5))

        recency = await redis_store.query(1)
        assert [m.id for m in recency] == [new.id, mid.id, old.id]
        by_importance = await redis_store.query(1, order_by=OrderBy.importance)
        assert [m.id for m in by_importance] == [old.id, new.id, mid.id]
        week = await redis_store.query(1, MemoryFilters(since=time.time() - 7 * DAY))
        assert [m.id for m in week] == [new.id, mid.id]
        learning = await redis_store.query(1, MemoryFilters(type="learning"))
        assert [m.id for m in learning] == [mid.id]
        assert len(await redis_store.query(1, limit=2)) == 2

    async def test_archived_hidden_by_default(self, redis_store):
        memory = await redis_store.insert(_memory("faded"))
        await redis_store.update(memory.id, {"archived_at": time.time()})
        assert await redis_store.query(1) == []
        assert len(await redis_store.query(1, MemoryFilters(include_archived=True))) == 1

    async def test_children_are_isolated(self, redis_store):
        await redis_store.insert(_memory("mine", child_id=1))
        await redis_store.insert(_memory("theirs", child_id=2))
        assert [m.content for m in await redis_store.query(1)] == ["mine"]
        assert await redis_store.child_ids() == [1, 2]

    async def test_similarity_search(self, redis_store):
        close = await redis_store.insert(_memory("close", embedding=[1.0, 0.0]))
        await redis_store.insert(_memory("far", embedding=[0.0, 1.0]))
        await redis_store.insert(_memory("none"))

        hits = await redis_store.similarity_search(1, [1.0, 0.1], 0.5, 5)
        assert [m.id for m, _ in hits] == [close.id]
        assert hits[0][1] == pytest.approx(0.995, abs=1e-3)

    async def test_stale_index_entries_are_pruned(self, redis_store, redis_client):
        memory = await redis_store.insert(_memory("chat"))
        await redis_client.delete(f"appu_test:memory:{memory.id}")

        assert await redis_store.query(1) == []
        assert await redis_client.zcard("appu_test:child:1:memories") == 0

    async def test_clear_only_touches_prefix(self, redis_store, redis_client):
        await redis_client.set("other:key", "1")
        await redis_store.insert(_memory("chat"))
        await redis_store.clear()

        assert await redis_store.child_ids() == []
        assert await redis_client.get("other:key") == b"1"

    async def test_prefixes_do_not_collide(self, redis_store, redis_client):
        other = RedisMemoryStore(redis_client, key_prefix="appu_other")
        await redis_store.insert(_memory("chat"))
        assert await other.query(1) == []
