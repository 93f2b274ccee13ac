"""Consolidation engine.

One pass per child, in this order:

1. decay importance towards zero with a half-life measured from the
   memory's last activity;
2. collapse duplicate groups (same content hash, or near-identical
   embeddings of the same type) into one survivor;
3. archive memories that are both unimportant and idle;
4. derive insights from what survives.

Passes for the same child are serialized with an ``asyncio.Lock``.  A pass
run twice with no writes in between changes nothing the second time.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from collections import defaultdict
from collections.abc import Callable
from collections.abc import Iterable
from time import perf_counter

import numpy as np

from appu_memory.audit.schemas import AuditEventType
from appu_memory.audit.store import AuditLogger
from appu_memory.config import ConsolidationConfig
from appu_memory.engine.schemas import ConsolidationResult
from appu_memory.engine.schemas import MemoryInsight
from appu_memory.engine.schemas import SweepFailure
from appu_memory.engine.schemas import SweepResult
from appu_memory.memory.schemas import Memory
from appu_memory.memory.schemas import MemoryType
from appu_memory.memory.store import MemoryFilters
from appu_memory.memory.store import MemoryStore
from appu_memory.memory.store import OrderBy
from appu_memory.observability import record_latency

logger = logging.getLogger(__name__)

_DAY_SECONDS = 86_400.0


class ConsolidationChildFailure(Exception):
    """One child's pass failed inside a sweep."""

    def __init__(self, child_id: int, cause: BaseException) -> None:
        super().__init__(f"consolidation failed for child {child_id}: {cause}")
        self.child_id = child_id
        self.cause = cause


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def decayed_importance(
    memory: Memory,
    now: float,
    half_life_days: float,
) -> float:
    """Base salience halved once per ``half_life_days`` of inactivity."""
    base = memory.metadata.importance_score
    if base is None:
        base = memory.importance
    idle_days = max(now - memory.last_activity_at, 0.0) / _DAY_SECONDS
    value = base * 0.5 ** (idle_days / half_life_days)
    return min(max(value, 0.0), 1.0)


class _DisjointSet:
    def __init__(self, items: Iterable[str]) -> None:
        self._parent = {item: item for item in items}

    def find(self, item: str) -> str:
        root = item
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[item] != root:
            self._parent[item], item = root, self._parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self._parent[rb] = ra


def find_merge_groups(
    memories: list[Memory],
    similarity_threshold: float,
) -> list[list[Memory]]:
    """Groups of two or more memories that should collapse into one.

    Equal content hashes link memories of any type; embeddings with cosine
    similarity at or above *similarity_threshold* link memories of the same
    type.  Links are transitive.
    """
    sets = _DisjointSet(m.id for m in memories)

    by_hash: dict[str, str] = {}
    for memory in memories:
        first = by_hash.setdefault(memory.fingerprint, memory.id)
        if first != memory.id:
            sets.union(first, memory.id)

    by_kind: dict[tuple[MemoryType, int], list[Memory]] = defaultdict(list)
    for memory in memories:
        if memory.embedding:
            by_kind[(memory.type, len(memory.embedding))].append(memory)
    for bucket in by_kind.values():
        if len(bucket) < 2:
            continue
        matrix = np.asarray([m.embedding for m in bucket], dtype=float)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        unit = matrix / norms[:, None]
        similarity = unit @ unit.T
        rows, cols = np.nonzero(np.triu(similarity >= similarity_threshold, k=1))
        for i, j in zip(rows.tolist(), cols.tolist()):
            sets.union(bucket[i].id, bucket[j].id)

    groups: dict[str, list[Memory]] = defaultdict(list)
    for memory in memories:
        groups[sets.find(memory.id)].append(memory)
    return [group for group in groups.values() if len(group) > 1]


def merge_group(group: list[Memory]) -> tuple[Memory, list[Memory], dict]:
    """Pick the survivor and compute its merged fields.

    The survivor is the most important member, the oldest on ties.  Returns
    ``(survivor, absorbed, update_fields)``.
    """
    ranked = sorted(group, key=lambda m: (-m.importance, m.created_at))
    survivor, absorbed = ranked[0], ranked[1:]

    concepts: list[str] = []
    for memory in ranked:
        for concept in memory.metadata.concepts:
            if concept not in concepts:
                concepts.append(concept)

    tone = next(
        (m.metadata.emotional_tone for m in ranked if m.metadata.emotional_tone),
        None,
    )
    importance = min(max(m.importance for m in group), 1.0)

    merged_from = list(survivor.metadata.merged_from)
    for memory in absorbed:
        for memory_id in [memory.id, *memory.metadata.merged_from]:
            if memory_id not in merged_from:
                merged_from.append(memory_id)

    metadata = survivor.metadata.model_dump()
    metadata.update(
        concepts=concepts,
        emotional_tone=tone,
        importance_score=importance,
        merged_from=merged_from,
    )
    return survivor, absorbed, {"importance": importance, "metadata": metadata}


def _top_concepts(memories: list[Memory], limit: int = 5) -> list[str]:
    counts = Counter(c for m in memories for c in m.metadata.concepts)
    return [concept for concept, _ in counts.most_common(limit)]


def derive_insights(
    memories: list[Memory],
    config: ConsolidationConfig | None = None,
) -> list[MemoryInsight]:
    """Patterns over a child's active memories, newest first."""
    cfg = config or ConsolidationConfig()
    insights: list[MemoryInsight] = []

    # Concepts repeated across non-emotional memories
    holders: dict[str, list[str]] = defaultdict(list)
    for memory in memories:
        if memory.type == MemoryType.emotional:
            continue
        for concept in dict.fromkeys(memory.metadata.concepts):
            holders[concept].append(memory.id)
    recurring = sorted(
        (c for c, ids in holders.items() if len(ids) >= cfg.insight_min_occurrences),
        key=lambda c: (-len(holders[c]), c),
    )
    for concept in recurring:
        count = len(holders[concept])
        insights.append(
            MemoryInsight(
                pattern="recurring_interest",
                description=f"Child keeps coming back to {concept} ({count} memories)",
                confidence=min(count / 10, 1.0),
                recommendations=[f"Weave {concept} into upcoming activities"],
                supporting_memory_ids=holders[concept][: cfg.max_supporting_memories],
            )
        )

    for memory_type in (MemoryType.learning, MemoryType.emotional):
        typed = [m for m in memories if m.type == memory_type]
        if len(typed) <= 2:
            continue
        top = _top_concepts(typed)
        if not top:
            continue
        insights.append(
            MemoryInsight(
                pattern=f"{memory_type.value}_trends",
                description=(
                    f"Strong interest in {', '.join(top)} "
                    f"based on {memory_type.value} memories"
                ),
                confidence=min(len(typed) / 10, 1.0),
                recommendations=[f"Encourage more activities related to {top[0]}"],
                supporting_memory_ids=[m.id for m in typed[:3]],
            )
        )

    learning = [m for m in memories if m.type == MemoryType.learning]
    if len(learning) > cfg.learning_acceleration_min:
        insights.append(
            MemoryInsight(
                pattern="learning_acceleration",
                description=(
                    "Child shows consistent learning progress across multiple concepts"
                ),
                confidence=0.8,
                recommendations=[
                    "Continue with current pace",
                    "Introduce slightly more challenging concepts",
                ],
                supporting_memory_ids=[m.id for m in learning[:3]],
            )
        )
    return insights


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ConsolidationEngine:
    """Periodic merge, archive and insight pass over a child's memories."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        config: ConsolidationConfig | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._config = config or ConsolidationConfig()
        self._audit = audit
        self._clock = clock
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: dict[int, int] = {}

    def _lock_for(self, child_id: int) -> asyncio.Lock:
        lock = self._locks.get(child_id)
        if lock is None:
            lock = self._locks[child_id] = asyncio.Lock()
        self._lock_users[child_id] = self._lock_users.get(child_id, 0) + 1
        return lock

    def _release_lock(self, child_id: int) -> None:
        # the lock stays while any caller still holds or awaits it
        remaining = self._lock_users[child_id] - 1
        if remaining:
            self._lock_users[child_id] = remaining
        else:
            del self._lock_users[child_id]
            del self._locks[child_id]

    async def consolidate(self, child_id: int) -> ConsolidationResult:
        start = perf_counter()
        ok = False
        lock = self._lock_for(child_id)
        try:
            async with lock:
                result = await self._consolidate(child_id)
            ok = True
        finally:
            self._release_lock(child_id)
            record_latency(
                operation="consolidation.consolidate",
                duration_ms=(perf_counter() - start) * 1000,
                ok=ok,
            )
        result.processing_time = round((perf_counter() - start) * 1000, 3)
        logger.info(
            "Consolidated child %d: %d examined, %d merged, %d archived, %d insights",
            child_id,
            result.consolidated_memories,
            result.merged_memories,
            result.archived_memories,
            len(result.new_insights),
        )
        await self._record(
            AuditEventType.CONSOLIDATION_RUN,
            child_id,
            consolidated_memories=result.consolidated_memories,
            merged_memories=result.merged_memories,
            archived_memories=result.archived_memories,
            importance_updates=result.importance_updates,
            processing_time=result.processing_time,
        )
        for insight in result.new_insights:
            await self._record(
                AuditEventType.INSIGHT_DERIVED,
                child_id,
                pattern=insight.pattern,
                confidence=insight.confidence,
                supporting_memory_ids=insight.supporting_memory_ids,
            )
        return result

    async def _consolidate(self, child_id: int) -> ConsolidationResult:
        now = self._clock()
        memories = await self._store.query(
            child_id, MemoryFilters(), OrderBy.chronological
        )
        result = ConsolidationResult(
            child_id=child_id, consolidated_memories=len(memories)
        )

        memories, result.importance_updates = await self._decay(memories, now)
        memories, result.merged_memories = await self._merge(child_id, memories, now)
        memories, result.archived_memories = await self._archive(
            child_id, memories, now
        )

        newest_first = sorted(memories, key=lambda m: m.created_at, reverse=True)
        result.new_insights = derive_insights(newest_first, self._config)
        return result

    async def _decay(
        self, memories: list[Memory], now: float
    ) -> tuple[list[Memory], int]:
        updated: list[Memory] = []
        rewrites = 0
        for memory in memories:
            value = decayed_importance(memory, now, self._config.decay_half_life_days)
            if abs(value - memory.importance) <= self._config.importance_update_epsilon:
                updated.append(memory)
                continue
            fields: dict = {"importance": value}
            if memory.metadata.importance_score is None:
                # pin the base so later passes decay from the same origin
                metadata = memory.metadata.model_dump()
                metadata["importance_score"] = memory.importance
                fields["metadata"] = metadata
            written = await self._store.update(memory.id, fields)
            updated.append(written or memory)
            rewrites += 1
        return updated, rewrites

    async def _merge(
        self, child_id: int, memories: list[Memory], now: float
    ) -> tuple[list[Memory], int]:
        groups = find_merge_groups(memories, self._config.merge_similarity_threshold)
        if not groups:
            return memories, 0

        removed: set[str] = set()
        replaced: dict[str, Memory] = {}
        merged = 0
        for group in groups:
            survivor, absorbed, fields = merge_group(group)
            fields["merged_at"] = now
            written = await self._store.update(survivor.id, fields)
            if written is None:
                logger.warning("Survivor %s vanished during merge", survivor.id)
                continue
            replaced[survivor.id] = written
            absorbed_ids = [m.id for m in absorbed]
            for memory_id in absorbed_ids:
                if await self._store.delete(memory_id):
                    merged += 1
                removed.add(memory_id)
            await self._record(
                AuditEventType.MEMORY_MERGED,
                child_id,
                survivor_id=survivor.id,
                absorbed_ids=absorbed_ids,
                importance=written.importance,
            )

        survivors = [
            replaced.get(m.id, m) for m in memories if m.id not in removed
        ]
        return survivors, merged

    async def _archive(
        self, child_id: int, memories: list[Memory], now: float
    ) -> tuple[list[Memory], int]:
        idle_cutoff = now - self._config.archive_idle_days * _DAY_SECONDS
        active: list[Memory] = []
        archived = 0
        for memory in memories:
            if (
                memory.importance < self._config.archive_importance_threshold
                and memory.last_activity_at < idle_cutoff
            ):
                if await self._store.update(memory.id, {"archived_at": now}) is None:
                    logger.warning("Memory %s vanished before archiving", memory.id)
                    continue
                archived += 1
                await self._record(
                    AuditEventType.MEMORY_ARCHIVED,
                    child_id,
                    memory_id=memory.id,
                    importance=memory.importance,
                )
                continue
            active.append(memory)
        return active, archived

    async def sweep(self, child_ids: Iterable[int] | None = None) -> SweepResult:
        """Consolidate each child in turn; one failure never stops the loop."""
        start = perf_counter()
        if child_ids is None:
            targets = await self._store.child_ids()
        else:
            targets = list(child_ids)
        sweep = SweepResult()
        for child_id in targets:
            try:
                result = await self.consolidate(child_id)
            except Exception as exc:
                failure = ConsolidationChildFailure(child_id, exc)
                logger.error("%s", failure, exc_info=exc)
                sweep.children_failed += 1
                sweep.failures.append(SweepFailure(child_id=child_id, error=str(exc)))
                continue
            sweep.children_processed += 1
            sweep.results.append(result)
        sweep.processing_time = round((perf_counter() - start) * 1000, 3)
        logger.info(
            "Consolidation sweep finished: %d processed, %d failed",
            sweep.children_processed,
            sweep.children_failed,
        )
        return sweep

    async def _record(self, event_type: AuditEventType, child_id: int, **payload) -> None:
        if self._audit is not None:
            await self._audit.record(event_type, child_id=child_id, **payload)
