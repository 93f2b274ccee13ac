"""Pydantic models for the MCP tool interface.

Input models validate tool arguments; output models shape responses.
Memories are returned as ``MemoryEntry`` views without their embedding.
FastMCP v2 serializes Pydantic models automatically.
"""

from __future__ import annotations

from pydantic import BaseModel
from pydantic import Field

from appu_memory.engine.schemas import ChildContext
from appu_memory.engine.schemas import LearningMilestone
from appu_memory.engine.schemas import PersonalityProfile
from appu_memory.engine.schemas import Role
from appu_memory.engine.schemas import Timeframe
from appu_memory.memory.schemas import Memory
from appu_memory.memory.schemas import MemoryType

# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------


class FormMemoryInput(BaseModel):
    """Input for form_memory."""

    child_id: int = Field(description="Child taking part in the conversation.")
    text: str = Field(min_length=1, description="Transcript of the turn.")
    role: Role = Field(description="Who spoke: user (the child) or assistant.")
    conversation_id: int | str | None = Field(
        default=None,
        description="Conversation the turn belongs to.",
    )


class RecordObservationInput(BaseModel):
    """Input for record_observation."""

    child_id: int
    description: str = Field(min_length=1, description="What the child showed.")
    conversation_id: int | str | None = None
    visual_objects: list[str] = Field(default_factory=list)


class PersonalizationRequest(BaseModel):
    """Input for get_personalization_input."""

    child_id: int
    profile: dict = Field(
        default_factory=dict,
        description="Child profile owned by the app (name, age, likes, ...).",
    )
    milestones: list[LearningMilestone] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Output models
# ---------------------------------------------------------------------------


class MemoryEntry(BaseModel):
    """A memory as returned by the tools."""

    id: str
    type: MemoryType
    content: str
    importance: float
    concepts: list[str] = Field(default_factory=list)
    emotional_tone: str | None = None
    created_at: float
    similarity: float | None = Field(
        default=None,
        description="Cosine similarity to the query, when one was computed.",
    )

    @classmethod
    def from_memory(cls, memory: Memory, similarity: float | None = None) -> MemoryEntry:
        return cls(
            id=memory.id,
            type=memory.type,
            content=memory.content,
            importance=round(memory.importance, 4),
            concepts=list(memory.metadata.concepts),
            emotional_tone=memory.metadata.emotional_tone,
            created_at=memory.created_at,
            similarity=None if similarity is None else round(similarity, 4),
        )


class FormMemoryResult(BaseModel):
    """Response from form_memory and record_observation."""

    status: str = Field(
        default="ok",
        description="Outcome status (ok, rejected).",
    )
    memories: list[MemoryEntry] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    error_code: str | None = None
    message: str | None = None


class MemoryListResult(BaseModel):
    """Response from retrieve_memories, find_similar_memories and get_memory_timeline."""

    status: str = Field(
        default="ok",
        description="Outcome status (ok, error).",
    )
    memories: list[MemoryEntry] = Field(default_factory=list)
    count: int = 0
    timeframe: Timeframe | None = None
    error_code: str | None = None
    message: str | None = None


class ChildContextResult(BaseModel):
    """Response from get_child_context."""

    child_id: int
    active_interests: list[str] = Field(default_factory=list)
    personality_profile: PersonalityProfile = Field(default_factory=PersonalityProfile)
    relationship_level: int = 0
    emotional_state: str | None = None
    recent_memories: list[MemoryEntry] = Field(default_factory=list)

    @classmethod
    def from_context(cls, context: ChildContext) -> ChildContextResult:
        return cls(
            child_id=context.child_id,
            active_interests=context.active_interests,
            personality_profile=context.personality_profile,
            relationship_level=context.relationship_level,
            emotional_state=context.emotional_state,
            recent_memories=[MemoryEntry.from_memory(m) for m in context.recent_memories],
        )


class PersonalizationResult(BaseModel):
    """Response from get_personalization_input."""

    status: str = "ok"
    context: ChildContextResult | None = None
    recent_memories: list[MemoryEntry] = Field(default_factory=list)
    rendered: str = Field(
        default="",
        description="Memory section of the prompt as labelled lines.",
    )
    error_code: str | None = None
    message: str | None = None


class DeleteMemoryResult(BaseModel):
    """Response from delete_memory."""

    memory_id: str
    status: str = Field(
        default="deleted",
        description="Outcome status (deleted, not_found, error).",
    )
    message: str | None = None
