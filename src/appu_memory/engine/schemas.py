"""Engine input and result models.

Pydantic schemas for retrieval queries and for everything the engines hand
back to callers: formation results, the derived child context,
consolidation and sweep reports, statistics and the personalization bundle.
"""

from __future__ import annotations

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel
from pydantic import Field

from appu_memory.memory.schemas import Memory
from appu_memory.memory.schemas import MemoryType

_DAY_SECONDS = 86_400.0


class Timeframe(StrEnum):
    """Retrieval windows measured back from now."""

    day = "day"
    week = "week"
    month = "month"
    all = "all"

    @property
    def days(self) -> int | None:
        return {"day": 1, "week": 7, "month": 30}.get(self.value)

    def since(self, now: float | None = None) -> float | None:
        """Lower ``created_at`` bound for this window, ``None`` for ``all``."""
        if self.days is None:
            return None
        return (time.time() if now is None else now) - self.days * _DAY_SECONDS


class Role(StrEnum):
    """Speaker of a conversation turn."""

    user = "user"
    assistant = "assistant"


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


class MemoryQuery(BaseModel):
    """Validated retrieval parameters."""

    query: str = Field(default="", description="Free text; blank means recency only.")
    child_id: int
    limit: int = Field(default=10, ge=1, description="Maximum memories returned.")
    threshold: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity on the vector path.",
    )
    type: MemoryType | None = None
    timeframe: Timeframe | None = None


# ---------------------------------------------------------------------------
# Formation
# ---------------------------------------------------------------------------


class FormationResult(BaseModel):
    """Memories created from one turn plus any per-memory errors."""

    memories: list[Memory] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Child context
# ---------------------------------------------------------------------------


class PersonalityProfile(BaseModel):
    communication_style: str = "friendly"
    confidence: int = Field(default=5, ge=0, le=10)
    curiosity: int = Field(default=5, ge=0, le=10)


class ChildContext(BaseModel):
    """Summary of a child derived from recent memories."""

    child_id: int
    active_interests: list[str] = Field(default_factory=list)
    personality_profile: PersonalityProfile = Field(default_factory=PersonalityProfile)
    relationship_level: int = Field(default=0, ge=0, le=10)
    emotional_state: str | None = None
    recent_memories: list[Memory] = Field(default_factory=list)

    @classmethod
    def default(cls, child_id: int) -> ChildContext:
        """Neutral context used when no memories can be read."""
        return cls(child_id=child_id)


# ---------------------------------------------------------------------------
# Consolidation
# ---------------------------------------------------------------------------


class MemoryInsight(BaseModel):
    """A pattern observed across a child's memories."""

    pattern: str
    description: str
    confidence: float = Field(ge=0.0, le=1.0)
    recommendations: list[str] = Field(default_factory=list)
    supporting_memory_ids: list[str] = Field(default_factory=list)


class ConsolidationResult(BaseModel):
    """Outcome of one consolidation pass for one child."""

    child_id: int
    consolidated_memories: int = Field(
        default=0, description="Active memories examined by the pass."
    )
    merged_memories: int = Field(
        default=0, description="Memories absorbed into a survivor and deleted."
    )
    archived_memories: int = 0
    importance_updates: int = 0
    processing_time: float = Field(default=0.0, description="Milliseconds.")
    new_insights: list[MemoryInsight] = Field(default_factory=list)


class SweepFailure(BaseModel):
    child_id: int
    error: str


class SweepResult(BaseModel):
    """Outcome of one consolidation run over every child."""

    children_processed: int = 0
    children_failed: int = 0
    results: list[ConsolidationResult] = Field(default_factory=list)
    failures: list[SweepFailure] = Field(default_factory=list)
    processing_time: float = Field(default=0.0, description="Milliseconds.")


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


class MemoryStatistics(BaseModel):
    child_id: int
    total_memories: int = 0
    active_memories: int = 0
    archived_memories: int = 0
    embedded_memories: int = 0
    memories_by_type: dict[str, int] = Field(default_factory=dict)
    average_importance: float = 0.0


# ---------------------------------------------------------------------------
# Personalization
# ---------------------------------------------------------------------------


class LearningMilestone(BaseModel):
    """Progress towards a learning goal, owned by the external app."""

    milestone_type: str = Field(
        description="counting, alphabet, colors, shapes, vocabulary, social_skills."
    )
    milestone_description: str
    target_value: int | None = None
    current_progress: int = 0
    is_completed: bool = False


class PersonalizationInput(BaseModel):
    """Structured inputs handed to the external prompt renderer."""

    child_context: ChildContext
    recent_memories: list[Memory] = Field(default_factory=list)
    profile: dict[str, Any] = Field(default_factory=dict)
    milestones: list[LearningMilestone] = Field(default_factory=list)
