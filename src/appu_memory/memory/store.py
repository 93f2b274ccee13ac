"""Memory store contract and the process-local backend.

Every query is scoped by ``child_id``; a store never returns one child's
memories to a call made for another child.  Backends without a native
vector operator emulate ``similarity_search`` by loading the candidates
and scoring them in-process with :func:`rank_by_similarity`.
"""

from __future__ import annotations

import time
from collections.abc import Iterable
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any
from typing import Protocol
from typing import runtime_checkable

import numpy as np
from pydantic import ValidationError

from appu_memory.memory.schemas import Memory
from appu_memory.memory.schemas import MemoryType


class StoreWriteFailure(Exception):
    """Raised when an insert, update or delete cannot be applied."""


class OrderBy(StrEnum):
    """Sort orders understood by ``MemoryStore.query``."""

    recency = "recency"
    importance = "importance"
    chronological = "chronological"


@dataclass(frozen=True)
class MemoryFilters:
    """Row filters applied on top of the ``child_id`` scope."""

    type: MemoryType | None = None
    since: float | None = None
    content_contains: str | None = None
    include_archived: bool = False
    has_embedding: bool | None = None

    def matches(self, memory: Memory) -> bool:
        if not self.include_archived and memory.is_archived:
            return False
        if self.type is not None and memory.type != self.type:
            return False
        if self.since is not None and memory.created_at < self.since:
            return False
        if self.has_embedding is not None and (
            (memory.embedding is not None) != self.has_embedding
        ):
            return False
        if self.content_contains:
            if self.content_contains.casefold() not in memory.content.casefold():
                return False
        return True


def sort_memories(memories: list[Memory], order_by: OrderBy) -> list[Memory]:
    """Sort in place and return *memories* for the given order."""
    if order_by == OrderBy.importance:
        memories.sort(key=lambda m: (m.importance, m.created_at), reverse=True)
    elif order_by == OrderBy.chronological:
        memories.sort(key=lambda m: m.created_at)
    else:
        memories.sort(key=lambda m: m.created_at, reverse=True)
    return memories


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """Cosine similarity (``1 - cosine distance``) of two vectors."""
    if not vec1 or not vec2 or len(vec1) != len(vec2):
        return 0.0
    v1 = np.asarray(vec1, dtype=float)
    v2 = np.asarray(vec2, dtype=float)
    norm = np.linalg.norm(v1) * np.linalg.norm(v2)
    return float(np.dot(v1, v2) / norm) if norm > 0 else 0.0


def rank_by_similarity(
    embedding: Sequence[float],
    candidates: Iterable[Memory],
    *,
    threshold: float,
    limit: int,
) -> list[tuple[Memory, float]]:
    """Score *candidates* against *embedding* and keep the best ``limit``.

    Candidates without an embedding, or with a different dimensionality,
    are skipped.  Ties on similarity are broken by importance.
    """
    query = np.asarray(embedding, dtype=float)
    query_norm = np.linalg.norm(query)
    if query.size == 0 or query_norm == 0:
        return []

    usable = [
        m for m in candidates if m.embedding is not None and len(m.embedding) == query.size
    ]
    if not usable:
        return []

    matrix = np.asarray([m.embedding for m in usable], dtype=float)
    norms = np.linalg.norm(matrix, axis=1) * query_norm
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, matrix @ query / norms, 0.0)

    scored = [
        (memory, float(score))
        for memory, score in zip(usable, scores)
        if float(score) >= threshold
    ]
    scored.sort(key=lambda pair: (pair[1], pair[0].importance), reverse=True)
    return scored[:limit]


def apply_update(memory: Memory, fields: dict[str, Any]) -> Memory:
    """Return a validated copy of *memory* with *fields* applied.

    ``id`` and ``child_id`` are immutable; ``updated_at`` defaults to now.
    """
    forbidden = {"id", "child_id"} & fields.keys()
    if forbidden:
        raise StoreWriteFailure(f"cannot update immutable fields {sorted(forbidden)}")
    payload = memory.model_dump()
    payload.update(fields)
    if "updated_at" not in fields:
        payload["updated_at"] = time.time()
    try:
        return Memory.model_validate(payload)
    except ValidationError as exc:
        raise StoreWriteFailure(f"invalid update for {memory.id}: {exc}") from exc


@runtime_checkable
class MemoryStore(Protocol):
    """Persistence contract consumed by formation, retrieval and consolidation."""

    async def insert(self, memory: Memory) -> Memory: ...

    async def get(self, memory_id: str) -> Memory | None: ...

    async def query(
        self,
        child_id: int,
        filters: MemoryFilters | None = None,
        order_by: OrderBy = OrderBy.recency,
        limit: int | None = None,
    ) -> list[Memory]: ...

    async def similarity_search(
        self,
        child_id: int,
        embedding: Sequence[float],
        threshold: float,
        limit: int,
        filters: MemoryFilters | None = None,
    ) -> list[tuple[Memory, float]]: ...

    async def update(self, memory_id: str, fields: dict[str, Any]) -> Memory | None: ...

    async def delete(self, memory_id: str) -> bool: ...

    async def mark_accessed(self, memory_ids: Sequence[str], at: float) -> None: ...

    async def child_ids(self) -> list[int]: ...


class InMemoryMemoryStore:
    """Process-local store with the same semantics as the Redis backend."""

    def __init__(self) -> None:
        self._memories: dict[str, Memory] = {}
        self._by_child: dict[int, set[str]] = {}

    # -- write --

    async def insert(self, memory: Memory) -> Memory:
        if memory.id in self._memories:
            raise StoreWriteFailure(f"memory {memory.id} already exists")
        self._memories[memory.id] = memory
        self._by_child.setdefault(memory.child_id, set()).add(memory.id)
        return memory

    async def update(self, memory_id: str, fields: dict[str, Any]) -> Memory | None:
        current = self._memories.get(memory_id)
        if current is None:
            return None
        updated = apply_update(current, fields)
        self._memories[memory_id] = updated
        return updated

    async def delete(self, memory_id: str) -> bool:
        memory = self._memories.pop(memory_id, None)
        if memory is None:
            return False
        self._by_child.get(memory.child_id, set()).discard(memory_id)
        return True

    async def mark_accessed(self, memory_ids: Sequence[str], at: float) -> None:
        for memory_id in memory_ids:
            memory = self._memories.get(memory_id)
            if memory is not None:
                self._memories[memory_id] = memory.model_copy(
                    update={"last_accessed_at": at}
                )

    # -- read --

    async def get(self, memory_id: str) -> Memory | None:
        return self._memories.get(memory_id)

    async def query(
        self,
        child_id: int,
        filters: MemoryFilters | None = None,
        order_by: OrderBy = OrderBy.recency,
        limit: int | None = None,
    ) -> list[Memory]:
        active = filters or MemoryFilters()
        matches = [
            self._memories[mid]
            for mid in self._by_child.get(child_id, ())
            if active.matches(self._memories[mid])
        ]
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
        return sorted(cid for cid, ids in self._by_child.items() if ids)

    async def close(self) -> None:
        return None
