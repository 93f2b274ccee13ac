"""Memory formation: conversation turn to typed memories.

Detection is a single ordered rule table.  Each rule names the speaker role
it applies to, a detector that returns the matched label (or ``None``), the
memory type it produces and a builder for the content and metadata.  Every
detected memory is created independently, so one failure never prevents
the others.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from appu_memory.audit.schemas import AuditEventType
from appu_memory.audit.store import AuditLogger
from appu_memory.config import FormationConfig
from appu_memory.engine.embeddings import embed_or_none
from appu_memory.engine.embeddings import EmbeddingProvider
from appu_memory.engine.schemas import FormationResult
from appu_memory.engine.schemas import Role
from appu_memory.memory import build_memory
from appu_memory.memory.schemas import Memory
from appu_memory.memory.schemas import MemoryType
from appu_memory.memory.store import MemoryStore
from appu_memory.memory.store import StoreWriteFailure
from appu_memory.observability import track_latency

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Lexicons
# ---------------------------------------------------------------------------

INTEREST_KEYWORDS: tuple[str, ...] = ("love", "like", "favorite")

LEARNING_KEYWORDS: tuple[str, ...] = (
    "count",
    "learn",
    "teach",
    "show",
    "how",
    "what",
    "why",
    "number",
    "letter",
    "color",
)

# Checked in order; the first emotion with a matching word wins.
EMOTION_LEXICON: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("happy", ("happy", "excited", "fun")),
    ("sad", ("sad", "cry")),
    ("angry", ("angry", "mad")),
    ("scared", ("scared", "afraid")),
    ("tired", ("tired", "sleepy")),
)

ENCOURAGEMENT_KEYWORDS: tuple[str, ...] = ("great job", "wonderful", "proud")

EDUCATIONAL_CONCEPTS: tuple[str, ...] = (
    "count",
    "number",
    "color",
    "shape",
    "letter",
    "word",
    "math",
    "read",
)
INTEREST_CONCEPTS: tuple[str, ...] = (
    "dinosaur",
    "animal",
    "story",
    "song",
    "game",
    "family",
    "friend",
)


def extract_concepts(text: str) -> list[str]:
    """Lexicon terms contained in *text*, in lexicon order."""
    lowered = text.lower()
    return [
        term for term in EDUCATIONAL_CONCEPTS + INTEREST_CONCEPTS if term in lowered
    ]


def detect_emotion(text: str) -> str | None:
    lowered = text.lower()
    for emotion, words in EMOTION_LEXICON:
        if any(word in lowered for word in words):
            return emotion
    return None


def _first_keyword(keywords: tuple[str, ...]) -> Callable[[str], str | None]:
    def detect(text: str) -> str | None:
        lowered = text.lower()
        return next((kw for kw in keywords if kw in lowered), None)

    return detect


def initial_importance(
    memory_type: MemoryType,
    metadata: dict[str, Any],
    *,
    base: float = 0.5,
) -> float:
    """Starting salience for a new memory.

    An explicit ``importance_score`` wins; otherwise learning and emotional
    memories, happy or excited tones and concept-rich content score higher.
    """
    override = metadata.get("importance_score")
    if override is not None:
        return min(max(float(override), 0.0), 1.0)
    importance = base
    if memory_type == MemoryType.learning:
        importance += 0.3
    if memory_type == MemoryType.emotional:
        importance += 0.2
    if metadata.get("emotional_tone") in ("happy", "excited"):
        importance += 0.1
    if len(metadata.get("concepts") or []) > 2:
        importance += 0.1
    return min(max(importance, 0.0), 1.0)


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------

Builder = Callable[[str, str, Any, FormationConfig], tuple[str, dict[str, Any]]]


@dataclass(frozen=True)
class FormationRule:
    """One detection rule: ``detect`` returns the matched label or ``None``."""

    name: str
    role: Role
    detect: Callable[[str], str | None]
    memory_type: MemoryType
    build: Builder


def _build_interest(text, match, conversation_id, config):
    return f'Child expressed interest: "{text}"', {
        "conversation_id": conversation_id,
        "emotional_tone": "positive",
        "concepts": extract_concepts(text),
        "importance_score": 0.7,
    }


def _build_learning(text, match, conversation_id, config):
    return f'Learning interaction: "{text}"', {
        "conversation_id": conversation_id,
        "concepts": extract_concepts(text),
        "learning_outcome": "engagement",
    }


def _build_emotion(text, match, conversation_id, config):
    return f'Child showed {match} emotion: "{text}"', {
        "conversation_id": conversation_id,
        "emotional_tone": match,
        "concepts": [match],
    }


def _build_encouragement(text, match, conversation_id, config):
    quote = text[: config.quote_max_chars]
    return f'Appu provided encouragement: "{quote}..."', {
        "conversation_id": conversation_id,
        "emotional_tone": "encouraging",
        "importance_score": 0.6,
    }


FORMATION_RULES: tuple[FormationRule, ...] = (
    FormationRule(
        name="interest",
        role=Role.user,
        detect=_first_keyword(INTEREST_KEYWORDS),
        memory_type=MemoryType.conversational,
        build=_build_interest,
    ),
    FormationRule(
        name="learning",
        role=Role.user,
        detect=_first_keyword(LEARNING_KEYWORDS),
        memory_type=MemoryType.learning,
        build=_build_learning,
    ),
    FormationRule(
        name="emotion",
        role=Role.user,
        detect=detect_emotion,
        memory_type=MemoryType.emotional,
        build=_build_emotion,
    ),
    FormationRule(
        name="encouragement",
        role=Role.assistant,
        detect=_first_keyword(ENCOURAGEMENT_KEYWORDS),
        memory_type=MemoryType.relationship,
        build=_build_encouragement,
    ),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MemoryFormation:
    """Creates memories from conversation turns and explicit observations."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: EmbeddingProvider,
        *,
        config: FormationConfig | None = None,
        embedding_timeout: float = 3.0,
        audit: AuditLogger | None = None,
        rules: tuple[FormationRule, ...] = FORMATION_RULES,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config or FormationConfig()
        self._embedding_timeout = embedding_timeout
        self._audit = audit
        self._rules = rules

    async def create_memory(
        self,
        child_id: int,
        content: str,
        memory_type: MemoryType | str,
        metadata: dict[str, Any] | None = None,
    ) -> Memory:
        """Embed and store one memory.

        Embedding problems only leave ``embedding`` empty; store problems
        raise ``StoreWriteFailure``.
        """
        memory_type = MemoryType(memory_type)
        meta = dict(metadata or {})
        importance = initial_importance(
            memory_type, meta, base=self._config.default_importance
        )
        embedding = await embed_or_none(
            self._embedder, content, timeout_seconds=self._embedding_timeout
        )
        memory = build_memory(
            child_id,
            content,
            memory_type,
            metadata=meta,
            importance=importance,
            embedding=embedding,
        )
        stored = await self._store.insert(memory)
        logger.info(
            "Created %s memory %s for child %d", memory_type.value, stored.id, child_id
        )
        if self._audit is not None:
            await self._audit.record(
                AuditEventType.MEMORY_CREATED,
                child_id=child_id,
                memory_id=stored.id,
                type=memory_type.value,
                importance=stored.importance,
                embedded=stored.embedding is not None,
            )
        return stored

    async def form(
        self,
        child_id: int,
        text: str,
        role: Role | str,
        conversation_id: int | str | None = None,
    ) -> FormationResult:
        """Run the rule table over one turn.  Never raises."""
        result = FormationResult()
        try:
            speaker = Role(role)
        except ValueError:
            result.errors.append(f"unknown role '{role}'")
            return result
        if not text or not text.strip():
            return result

        with track_latency("formation.form"):
            for rule in self._rules:
                if rule.role != speaker:
                    continue
                match = rule.detect(text)
                if match is None:
                    continue
                content, metadata = rule.build(
                    text, match, conversation_id, self._config
                )
                await self._create_into(
                    result, rule.name, child_id, content, rule.memory_type, metadata
                )
        return result

    async def record_observation(
        self,
        child_id: int,
        description: str,
        *,
        conversation_id: int | str | None = None,
        visual_objects: list[str] | None = None,
    ) -> FormationResult:
        """Record something the child showed on camera."""
        result = FormationResult()
        if not description or not description.strip():
            result.errors.append("observation description is empty")
            return result
        await self._create_into(
            result,
            "observation",
            child_id,
            f"Child showed something: {description}",
            MemoryType.visual,
            {
                "conversation_id": conversation_id,
                "concepts": extract_concepts(description),
                "visual_objects": list(visual_objects or []),
                "importance_score": 0.8,
            },
        )
        return result

    async def bulk_create(
        self,
        child_id: int,
        items: Iterable[tuple[str, MemoryType | str, dict[str, Any] | None]],
    ) -> FormationResult:
        """Create many ``(content, type, metadata)`` memories, skipping failures."""
        result = FormationResult()
        for index, (content, memory_type, metadata) in enumerate(items):
            await self._create_into(
                result, f"item {index}", child_id, content, memory_type, metadata
            )
        return result

    async def _create_into(
        self,
        result: FormationResult,
        label: str,
        child_id: int,
        content: str,
        memory_type: MemoryType | str,
        metadata: dict[str, Any] | None,
    ) -> None:
        try:
            result.memories.append(
                await self.create_memory(child_id, content, memory_type, metadata)
            )
        except StoreWriteFailure as exc:
            logger.error("Storing %s memory for child %d failed: %s", label, child_id, exc)
            result.errors.append(f"{label}: {exc}")
        except Exception as exc:
            logger.exception("Forming %s memory for child %d failed", label, child_id)
            result.errors.append(f"{label}: {exc}")
