"""Memory domain data models.

Metadata is a discriminated union keyed by ``type``: every variant shares
the common bookkeeping fields and adds only what is relevant to its kind
of observation.
"""

from __future__ import annotations

import hashlib
import time
import uuid
from enum import StrEnum
from typing import Annotated
from typing import Any
from typing import Literal
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import model_validator


class MemoryType(StrEnum):
    """Kinds of observations a memory can hold."""

    conversational = "conversational"
    learning = "learning"
    emotional = "emotional"
    relationship = "relationship"
    visual = "visual"
    behavioral = "behavioral"
    cultural = "cultural"
    preference = "preference"


POSITIVE_TONES = frozenset({"positive", "happy", "excited", "encouraging"})
NEGATIVE_TONES = frozenset({"sad", "angry", "scared", "tired", "negative"})


def content_hash(content: str) -> str:
    """Fingerprint of *content* used to detect exact duplicates.

    Case and runs of whitespace do not change the hash.
    """
    normalized = " ".join(content.lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Metadata variants
# ---------------------------------------------------------------------------


class _MetadataBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    conversation_id: int | str | None = Field(
        default=None,
        description="Conversation the observation came from.",
    )
    emotional_tone: str | None = Field(
        default=None,
        description="Tone detected for the observation (positive, happy, ...).",
    )
    concepts: list[str] = Field(
        default_factory=list,
        description="Topic tags from the concept lexicon.",
    )
    importance_score: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Base salience before decay.",
    )
    hash: str | None = Field(
        default=None,
        description="Content fingerprint for duplicate detection.",
    )
    merged_from: list[str] = Field(
        default_factory=list,
        description="IDs of memories folded into this one by consolidation.",
    )


class ConversationalMetadata(_MetadataBase):
    type: Literal["conversational"] = "conversational"
    context_tags: list[str] = Field(default_factory=list)


class LearningMetadata(_MetadataBase):
    type: Literal["learning"] = "learning"
    learning_outcome: str | None = None


class EmotionalMetadata(_MetadataBase):
    type: Literal["emotional"] = "emotional"
    emotional_tone: str


class RelationshipMetadata(_MetadataBase):
    type: Literal["relationship"] = "relationship"


class VisualMetadata(_MetadataBase):
    type: Literal["visual"] = "visual"
    visual_objects: list[str] = Field(default_factory=list)


class BehavioralMetadata(_MetadataBase):
    type: Literal["behavioral"] = "behavioral"
    context_tags: list[str] = Field(default_factory=list)


class CulturalMetadata(_MetadataBase):
    type: Literal["cultural"] = "cultural"
    family_context: str | None = None


class PreferenceMetadata(_MetadataBase):
    type: Literal["preference"] = "preference"
    context_tags: list[str] = Field(default_factory=list)


MemoryMetadata = Annotated[
    Union[
        ConversationalMetadata,
        LearningMetadata,
        EmotionalMetadata,
        RelationshipMetadata,
        VisualMetadata,
        BehavioralMetadata,
        CulturalMetadata,
        PreferenceMetadata,
    ],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class Memory(BaseModel):
    """One observation about a child, derived from a conversation turn."""

    id: str = Field(
        default_factory=lambda: f"mem_{uuid.uuid4().hex}",
        description="Unique identifier, auto-generated as mem_{uuid4_hex}.",
    )
    child_id: int = Field(description="Owning child.")
    content: str = Field(min_length=1, description="Human-readable observation.")
    type: MemoryType
    importance: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Current salience after decay.",
    )
    embedding: list[float] | None = Field(
        default=None,
        description="Embedding of ``content``; absent when the provider was down.",
    )
    metadata: MemoryMetadata
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    last_accessed_at: float | None = None
    merged_at: float | None = None
    archived_at: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_metadata(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        memory_type = data.get("type")
        if memory_type is None:
            return data
        metadata = data.get("metadata")
        if metadata is None:
            return {**data, "metadata": {"type": str(memory_type)}}
        if isinstance(metadata, dict) and "type" not in metadata:
            return {**data, "metadata": {**metadata, "type": str(memory_type)}}
        return data

    @model_validator(mode="after")
    def _metadata_matches_type(self) -> Memory:
        if self.metadata.type != self.type.value:
            raise ValueError(
                f"metadata variant '{self.metadata.type}' does not match "
                f"memory type '{self.type.value}'"
            )
        return self

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    @property
    def fingerprint(self) -> str:
        """Stored content hash, computed on the fly for legacy records."""
        return self.metadata.hash or content_hash(self.content)

    @property
    def last_activity_at(self) -> float:
        """Latest of creation, retrieval and merge."""
        return max(
            self.created_at,
            self.last_accessed_at or 0.0,
            self.merged_at or 0.0,
        )
