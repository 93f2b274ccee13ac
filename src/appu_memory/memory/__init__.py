"""Memory domain — records, metadata variants and store backends."""

from __future__ import annotations

from appu_memory.memory.redis_store import RedisMemoryStore
from appu_memory.memory.schemas import content_hash
from appu_memory.memory.schemas import Memory
from appu_memory.memory.schemas import MemoryMetadata
from appu_memory.memory.schemas import MemoryType
from appu_memory.memory.store import InMemoryMemoryStore
from appu_memory.memory.store import MemoryFilters
from appu_memory.memory.store import MemoryStore
from appu_memory.memory.store import OrderBy
from appu_memory.memory.store import StoreWriteFailure

__all__ = [
    "InMemoryMemoryStore",
    "Memory",
    "MemoryFilters",
    "MemoryMetadata",
    "MemoryStore",
    "MemoryType",
    "OrderBy",
    "RedisMemoryStore",
    "StoreWriteFailure",
    "build_memory",
    "content_hash",
]


def build_memory(
    child_id: int,
    content: str,
    memory_type: MemoryType | str,
    *,
    metadata: dict | None = None,
    importance: float = 0.5,
    embedding: list[float] | None = None,
) -> Memory:
    """Factory for a new ``Memory`` with all domain invariants.

    Clamps importance into [0, 1], stamps the content hash and records the
    base salience in ``metadata.importance_score`` so that decay never
    compounds across consolidation runs.
    """
    memory_type = MemoryType(memory_type)
    clamped = min(max(float(importance), 0.0), 1.0)
    meta = dict(metadata or {})
    meta["type"] = memory_type.value
    meta.setdefault("hash", content_hash(content))
    if meta.get("importance_score") is None:
        meta["importance_score"] = clamped
    return Memory(
        child_id=child_id,
        content=content,
        type=memory_type,
        importance=clamped,
        embedding=embedding,
        metadata=meta,
    )
