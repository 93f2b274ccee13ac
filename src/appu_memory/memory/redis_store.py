"""Redis-backed memory store.

Memories are stored as JSON strings keyed by ``appu:memory:{id}``.
A sorted set ``appu:child:{child_id}:memories`` tracks each child's
memories by creation time (score = ``created_at``), and the set
``appu:children`` lists every child that owns at least one record.
Similarity search loads the child's candidates and scores them
in-process; Redis holds no vector index.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from redis.asyncio import Redis  # type: ignore[import-untyped]
from redis.exceptions import RedisError  # type: ignore[import-untyped]

from appu_memory.config import StoreConfig
from appu_memory.memory.schemas import Memory
from appu_memory.memory.store import apply_update
from appu_memory.memory.store import MemoryFilters
from appu_memory.memory.store import OrderBy
from appu_memory.memory.store import rank_by_similarity
from appu_memory.memory.store import sort_memories
from appu_memory.memory.store import StoreWriteFailure

logger = logging.getLogger(__name__)


def _decode(raw: bytes | str) -> str:
    return raw.decode() if isinstance(raw, bytes) else raw


class RedisMemoryStore:
    """Per-child memory records in Redis."""

    def __init__(self, redis: Redis, *, key_prefix: str = "appu") -> None:
        self._redis = redis
        self._prefix = key_prefix

    @classmethod
    def from_config(cls, config: StoreConfig) -> RedisMemoryStore:
        client = Redis.from_url(
            config.redis_url,
            socket_timeout=config.socket_timeout_seconds,
            socket_connect_timeout=config.socket_timeout_seconds,
        )
        return cls(client, key_prefix=config.key_prefix)

    # -- keys --

    def _memory_key(self, memory_id: str) -> str:
        return f"{self._prefix}:memory:{memory_id}"

    def _child_key(self, child_id: int) -> str:
        return f"{self._prefix}:child:{child_id}:memories"

    @property
    def _children_key(self) -> str:
        return f"{self._prefix}:children"

    # -- write --

    async def insert(self, memory: Memory) -> Memory:
        """Store *memory*; an existing record with the same ID is never overwritten."""
        key = self._memory_key(memory.id)
        try:
            created = await self._redis.set(key, memory.model_dump_json(), nx=True)
        except RedisError as exc:
            raise StoreWriteFailure(f"insert {memory.id} failed: {exc}") from exc
        if not created:
            raise StoreWriteFailure(f"memory {memory.id} already exists")

        pipe = self._redis.pipeline()
        pipe.zadd(self._child_key(memory.child_id), {memory.id: memory.created_at})
        pipe.sadd(self._children_key, str(memory.child_id))
        try:
            await pipe.execute()
        except RedisError as exc:
            await self._rollback_insert(memory)
            raise StoreWriteFailure(f"indexing {memory.id} failed: {exc}") from exc
        return memory

    async def _rollback_insert(self, memory: Memory) -> None:
        try:
            pipe = self._redis.pipeline()
            pipe.delete(self._memory_key(memory.id))
            pipe.zrem(self._child_key(memory.child_id), memory.id)
            await pipe.execute()
        except RedisError:
            logger.exception("rollback of memory %s failed", memory.id)

    async def update(self, memory_id: str, fields: dict[str, Any]) -> Memory | None:
        current = await self.get(memory_id)
        if current is None:
            return None
        updated = apply_update(current, fields)
        try:
            written = await self._redis.set(
                self._memory_key(memory_id), updated.model_dump_json(), xx=True
            )
        except RedisError as exc:
            raise StoreWriteFailure(f"update {memory_id} failed: {exc}") from exc
        return updated if written else None

    async def delete(self, memory_id: str) -> bool:
        memory = await self.get(memory_id)
        if memory is None:
            return False
        pipe = self._redis.pipeline()
        pipe.delete(self._memory_key(memory_id))
        pipe.zrem(self._child_key(memory.child_id), memory_id)
        try:
            removed, _ = await pipe.execute()
        except RedisError as exc:
            raise StoreWriteFailure(f"delete {memory_id} failed: {exc}") from exc
        return bool(removed)

    async def mark_accessed(self, memory_ids: Sequence[str], at: float) -> None:
        if not memory_ids:
            return
        memories = await self._fetch(list(memory_ids))
        pipe = self._redis.pipeline()
        for memory in memories:
            touched = memory.model_copy(update={"last_accessed_at": at})
            pipe.set(self._memory_key(memory.id), touched.model_dump_json(), xx=True)
        try:
            await pipe.execute()
        except RedisError as exc:
            raise StoreWriteFailure(f"mark_accessed failed: {exc}") from exc

    # -- read --

    async def get(self, memory_id: str) -> Memory | None:
        data = await self._redis.get(self._memory_key(memory_id))
        if data is None:
            return None
        return Memory.model_validate_json(data)

    async def query(
        self,
        child_id: int,
        filters: MemoryFilters | None = None,
        order_by: OrderBy = OrderBy.recency,
        limit: int | None = None,
    ) -> list[Memory]:
        active = filters or MemoryFilters()
        child_key = self._child_key(child_id)
        if active.since is not None:
            raw_ids = await self._redis.zrevrangebyscore(child_key, "+inf", active.since)
        else:
            raw_ids = await self._redis.zrevrange(child_key, 0, -1)

        memories = await self._fetch([_decode(r) for r in raw_ids], child_id=child_id)
        matches = [m for m in memories if m.child_id == child_id and active.matches(m)]
        sort_memories(matches, order_by)
        return matches if limit is None else matches[:limit]

    async def similarity_search(
        self,
        child_id: int,
        embedding: Sequence[float],
        threshold: float,
        limit: int,
        filters: MemoryFilters | None = None,
    ) -> list[tuple[Memory, float]]:
        candidates = await self.query(child_id, filters)
        return rank_by_similarity(embedding, candidates, threshold=threshold, limit=limit)

    async def child_ids(self) -> list[int]:
        members = await self._redis.smembers(self._children_key)
        return sorted(int(_decode(m)) for m in members)

    async def close(self) -> None:
        await self._redis.aclose()

    async def clear(self) -> None:
        """Remove every key under this store's prefix (test helper)."""
        batch: list = []
        async for key in self._redis.scan_iter(match=f"{self._prefix}:*"):
            batch.append(key)
            if len(batch) >= 100:
                await self._redis.delete(*batch)
                batch.clear()
        if batch:
            await self._redis.delete(*batch)

    # -- internal --

    async def _fetch(
        self, memory_ids: list[str], *, child_id: int | None = None
    ) -> list[Memory]:
        """Batch-load records, pruning index entries whose record is gone."""
        if not memory_ids:
            return []
        pipe = self._redis.pipeline()
        for memory_id in memory_ids:
            pipe.get(self._memory_key(memory_id))
        raw_results = await pipe.execute()

        stale_ids: list[str] = []
        results: list[Memory] = []
        for memory_id, raw in zip(memory_ids, raw_results):
            if raw is None:
                stale_ids.append(memory_id)
            else:
                results.append(Memory.model_validate_json(raw))

        if stale_ids and child_id is not None:
            try:
                await self._redis.zrem(self._child_key(child_id), *stale_ids)
            except RedisError:
                logger.warning("could not prune %d stale ids", len(stale_ids))
        return results
