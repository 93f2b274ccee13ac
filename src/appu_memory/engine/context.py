"""Child context aggregation.

``summarize_memories`` is a pure function over a child's recent memories;
``ContextAggregator`` loads the window plus the relationship counts over
all active memories, and falls back to a neutral context when the store
cannot be read.
"""

from __future__ import annotations

import logging
import time
from collections import Counter

from appu_memory.config import ContextConfig
from appu_memory.engine.schemas import ChildContext
from appu_memory.engine.schemas import PersonalityProfile
from appu_memory.memory.schemas import Memory
from appu_memory.memory.schemas import MemoryType
from appu_memory.memory.schemas import NEGATIVE_TONES
from appu_memory.memory.schemas import POSITIVE_TONES
from appu_memory.memory.store import MemoryFilters
from appu_memory.memory.store import MemoryStore
from appu_memory.memory.store import OrderBy
from appu_memory.observability import track_latency

logger = logging.getLogger(__name__)

_DAY_SECONDS = 86_400.0


def _clamp_score(value: float) -> int:
    return int(min(max(round(value), 0), 10))


def active_interests(memories: list[Memory], limit: int) -> list[str]:
    """Most frequent concepts, ties going to the most recently seen."""
    counts: Counter[str] = Counter()
    first_seen: dict[str, int] = {}
    for index, memory in enumerate(memories):
        if memory.type == MemoryType.emotional:
            continue
        for concept in memory.metadata.concepts:
            counts[concept] += 1
            first_seen.setdefault(concept, index)
    ranked = sorted(counts, key=lambda c: (-counts[c], first_seen[c]))
    return ranked[:limit]


def communication_style(memories: list[Memory]) -> str:
    tones = [m.metadata.emotional_tone for m in memories]
    positive = sum(1 for t in tones if t in POSITIVE_TONES)
    negative = sum(1 for t in tones if t in NEGATIVE_TONES)
    type_counts = Counter(m.type for m in memories)

    if negative > positive:
        return "gentle"
    learning = type_counts.get(MemoryType.learning, 0)
    if learning and all(
        learning >= count for t, count in type_counts.items() if t != MemoryType.learning
    ):
        return "inquisitive"
    if positive > negative:
        return "enthusiastic"
    return "friendly"


def relationship_level(positive_relationship: int, positive_conversational: int) -> int:
    return min(10, positive_relationship + positive_conversational // 5)


def count_positive(memories: list[Memory], memory_type: MemoryType) -> int:
    return sum(
        1
        for m in memories
        if m.type == memory_type and m.metadata.emotional_tone in POSITIVE_TONES
    )


def summarize_memories(
    child_id: int,
    memories: list[Memory],
    config: ContextConfig | None = None,
    *,
    positive_relationship: int | None = None,
    positive_conversational: int | None = None,
) -> ChildContext:
    """Derive a ``ChildContext`` from *memories*, newest first.

    The relationship level uses the positive counts when given, so callers
    can count over the whole active set rather than the window.
    """
    cfg = config or ContextConfig()
    if positive_relationship is None:
        positive_relationship = count_positive(memories, MemoryType.relationship)
    if positive_conversational is None:
        positive_conversational = count_positive(memories, MemoryType.conversational)
    level = relationship_level(positive_relationship, positive_conversational)
    if not memories:
        return ChildContext.default(child_id).model_copy(
            update={"relationship_level": level}
        )

    total = len(memories)
    learning = sum(1 for m in memories if m.type == MemoryType.learning)
    curiosity = _clamp_score(3 + 7 * learning / total)

    tones = [m.metadata.emotional_tone for m in memories]
    positive = sum(1 for t in tones if t in POSITIVE_TONES)
    negative = sum(1 for t in tones if t in NEGATIVE_TONES)
    toned = positive + negative
    confidence = _clamp_score(5 + 5 * (positive - negative) / toned) if toned else 5

    emotional_state = next(
        (
            m.metadata.emotional_tone
            for m in memories
            if m.type == MemoryType.emotional and m.metadata.emotional_tone
        ),
        None,
    )

    return ChildContext(
        child_id=child_id,
        active_interests=active_interests(memories, cfg.max_interests),
        personality_profile=PersonalityProfile(
            communication_style=communication_style(memories),
            confidence=confidence,
            curiosity=curiosity,
        ),
        relationship_level=level,
        emotional_state=emotional_state,
        recent_memories=memories[: cfg.recent_memories],
    )


class ContextAggregator:
    """Builds a child's context from the recent memory window."""

    def __init__(self, store: MemoryStore, *, config: ContextConfig | None = None) -> None:
        self._store = store
        self._config = config or ContextConfig()

    async def get_child_context(self, child_id: int) -> ChildContext:
        since = time.time() - self._config.window_days * _DAY_SECONDS
        try:
            with track_latency("context.get_child_context"):
                memories = await self._store.query(
                    child_id,
                    MemoryFilters(since=since),
                    OrderBy.recency,
                    self._config.window_limit,
                )
                relationships = await self._store.query(
                    child_id, MemoryFilters(type=MemoryType.relationship)
                )
                conversations = await self._store.query(
                    child_id, MemoryFilters(type=MemoryType.conversational)
                )
        except Exception:
            logger.exception("Loading context window for child %d failed", child_id)
            return ChildContext.default(child_id)
        return summarize_memories(
            child_id,
            memories,
            self._config,
            positive_relationship=count_positive(relationships, MemoryType.relationship),
            positive_conversational=count_positive(
                conversations, MemoryType.conversational
            ),
        )
