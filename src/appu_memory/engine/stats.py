"""Per-child memory statistics."""

from __future__ import annotations

from collections import Counter

from appu_memory.engine.schemas import MemoryStatistics
from appu_memory.memory.schemas import Memory


def compute_statistics(child_id: int, memories: list[Memory]) -> MemoryStatistics:
    """Summarize *memories*, archived ones included in the totals."""
    active = [m for m in memories if not m.is_archived]
    by_type = Counter(m.type.value for m in memories)
    average = sum(m.importance for m in active) / len(active) if active else 0.0
    return MemoryStatistics(
        child_id=child_id,
        total_memories=len(memories),
        active_memories=len(active),
        archived_memories=len(memories) - len(active),
        embedded_memories=sum(1 for m in memories if m.embedding is not None),
        memories_by_type=dict(sorted(by_type.items())),
        average_importance=round(average, 4),
    )
