"""Memories of one child never surface in calls scoped to another."""

from __future__ import annotations

CHILD_A = 101
CHILD_B = 202


async def _seed_child_a(services):
    turns = [
        ("I love dinosaurs", "user"),
        ("Can we count dinosaurs?", "user"),
        ("I am so happy today", "user"),
        ("Great job counting!", "assistant"),
    ]
    for text, role in turns:
        await services.form_memory(CHILD_A, text, role)
    await services.form_memory(CHILD_A, "I love dinosaurs", "user")
    await services.record_observation(CHILD_A, "a dinosaur toy")


class TestChildIsolation:
    async def test_retrieval(self, services):
        await _seed_child_a(services)

        assert await services.retrieve("", CHILD_B) == []
        assert await services.retrieve("dinosaurs", CHILD_B, threshold=0.0) == []
        assert await services.find_similar(CHILD_B, "I love dinosaurs") == []
        assert await services.timeline(CHILD_B) == []

    async def test_context(self, services):
        await _seed_child_a(services)

        context = await services.get_child_context(CHILD_B)
        assert context.active_interests == []
        assert context.recent_memories == []
        bundle = await services.build_personalization_input(CHILD_B)
        assert bundle.recent_memories == []

    async def test_consolidation(self, services, store):
        await _seed_child_a(services)
        await services.form_memory(CHILD_B, "I love dinosaurs", "user")
        before = await store.query(CHILD_A)

        result = await services.consolidate(CHILD_B)

        assert result.merged_memories == 0
        assert result.consolidated_memories == 1
        after = await store.query(CHILD_A)
        assert {m.id for m in after} == {m.id for m in before}

    async def test_statistics_and_delete(self, services):
        await _seed_child_a(services)
        memory = (await services.retrieve("", CHILD_A, limit=1))[0]

        assert (await services.memory_stats(CHILD_B)).total_memories == 0
        assert await services.delete_memory(memory.id, child_id=CHILD_B) is False
        assert (await services.memory_stats(CHILD_A)).total_memories > 0
