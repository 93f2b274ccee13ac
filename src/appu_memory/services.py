"""Process-wide wiring of the memory pipeline.

``build_memory_services`` constructs every component once and returns a
``MemoryServices`` context object.  Callers and tests pass it around
explicitly; substitute a store or embedding provider by handing them to the
builder.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from appu_memory.audit.schemas import AuditEventType
from appu_memory.audit.store import AuditLogger
from appu_memory.config import Settings
from appu_memory.config import StoreConfig
from appu_memory.engine.consolidation import ConsolidationEngine
from appu_memory.engine.context import ContextAggregator
from appu_memory.engine.embeddings import build_embedding_provider
from appu_memory.engine.embeddings import EmbeddingProvider
from appu_memory.engine.formation import MemoryFormation
from appu_memory.engine.prompt_builder import build_personalization_input
from appu_memory.engine.retrieval import MemoryRetriever
from appu_memory.engine.schemas import ChildContext
from appu_memory.engine.schemas import ConsolidationResult
from appu_memory.engine.schemas import FormationResult
from appu_memory.engine.schemas import LearningMilestone
from appu_memory.engine.schemas import MemoryStatistics
from appu_memory.engine.schemas import PersonalizationInput
from appu_memory.engine.schemas import Role
from appu_memory.engine.schemas import SweepResult
from appu_memory.engine.schemas import Timeframe
from appu_memory.engine.stats import compute_statistics
from appu_memory.memory.redis_store import RedisMemoryStore
from appu_memory.memory.schemas import Memory
from appu_memory.memory.schemas import MemoryType
from appu_memory.memory.store import InMemoryMemoryStore
from appu_memory.memory.store import MemoryFilters
from appu_memory.memory.store import MemoryStore

logger = logging.getLogger(__name__)


def build_store(config: StoreConfig) -> MemoryStore:
    """Create the configured store backend."""
    backend = config.backend.strip().lower()
    if backend == "memory":
        return InMemoryMemoryStore()
    if backend == "redis":
        return RedisMemoryStore.from_config(config)
    raise ValueError(
        f"Unsupported store.backend '{config.backend}'. Supported backends: memory, redis."
    )


@dataclass
class MemoryServices:
    """Every memory component for one process."""

    settings: Settings
    store: MemoryStore
    embedder: EmbeddingProvider
    audit: AuditLogger
    formation: MemoryFormation
    retriever: MemoryRetriever
    aggregator: ContextAggregator
    consolidation: ConsolidationEngine

    # ------------------------------------------------------------------
    # Formation
    # ------------------------------------------------------------------

    async def form_memory(
        self,
        child_id: int,
        text: str,
        role: Role | str,
        conversation_id: int | str | None = None,
    ) -> FormationResult:
        return await self.formation.form(child_id, text, role, conversation_id)

    async def create_memory(
        self,
        child_id: int,
        content: str,
        memory_type: MemoryType | str,
        metadata: dict[str, Any] | None = None,
    ) -> Memory:
        return await self.formation.create_memory(child_id, content, memory_type, metadata)

    async def record_observation(
        self,
        child_id: int,
        description: str,
        *,
        conversation_id: int | str | None = None,
        visual_objects: list[str] | None = None,
    ) -> FormationResult:
        return await self.formation.record_observation(
            child_id,
            description,
            conversation_id=conversation_id,
            visual_objects=visual_objects,
        )

    # ------------------------------------------------------------------
    # Retrieval and context
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        query: str,
        child_id: int,
        *,
        limit: int | None = None,
        threshold: float | None = None,
        type: MemoryType | str | None = None,
        timeframe: Timeframe | str | None = None,
    ) -> list[Memory]:
        return await self.retriever.retrieve(
            query,
            child_id,
            limit=limit,
            threshold=threshold,
            type=type,
            timeframe=timeframe,
        )

    async def find_similar(
        self,
        child_id: int,
        content: str,
        *,
        type: MemoryType | str | None = None,
    ) -> list[tuple[Memory, float]]:
        return await self.retriever.find_similar(child_id, content, type=type)

    async def timeline(
        self,
        child_id: int,
        timeframe: Timeframe | str = Timeframe.all,
    ) -> list[Memory]:
        return await self.retriever.timeline(child_id, timeframe)

    async def get_child_context(self, child_id: int) -> ChildContext:
        return await self.aggregator.get_child_context(child_id)

    async def build_personalization_input(
        self,
        child_id: int,
        profile: dict[str, Any] | None = None,
        milestones: Iterable[LearningMilestone | dict[str, Any]] = (),
    ) -> PersonalizationInput:
        return await build_personalization_input(
            self.aggregator, self.retriever, child_id, profile, milestones
        )

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    async def consolidate(self, child_id: int) -> ConsolidationResult:
        return await self.consolidation.consolidate(child_id)

    async def sweep(self, child_ids: Iterable[int] | None = None) -> SweepResult:
        return await self.consolidation.sweep(child_ids)

    # ------------------------------------------------------------------
    # Statistics and maintenance
    # ------------------------------------------------------------------

    async def memory_stats(self, child_id: int) -> MemoryStatistics:
        memories = await self.store.query(
            child_id, MemoryFilters(include_archived=True)
        )
        return compute_statistics(child_id, memories)

    async def delete_memory(self, memory_id: str, *, child_id: int | None = None) -> bool:
        """Delete one memory; with *child_id*, only if that child owns it."""
        memory = await self.store.get(memory_id)
        if memory is None or (child_id is not None and memory.child_id != child_id):
            return False
        deleted = await self.store.delete(memory_id)
        if deleted:
            await self.audit.record(
                AuditEventType.MEMORY_DELETED,
                child_id=memory.child_id,
                memory_id=memory_id,
            )
        return deleted

    async def update_importance(self, memory_id: str, value: float) -> Memory | None:
        """Set a memory's importance, clamped to [0, 1], as its new decay base."""
        memory = await self.store.get(memory_id)
        if memory is None:
            return None
        clamped = min(max(float(value), 0.0), 1.0)
        metadata = memory.metadata.model_dump()
        metadata["importance_score"] = clamped
        return await self.store.update(
            memory_id, {"importance": clamped, "metadata": metadata}
        )

    async def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()


def build_memory_services(
    settings: Settings | None = None,
    *,
    store: MemoryStore | None = None,
    embedder: EmbeddingProvider | None = None,
    audit: AuditLogger | None = None,
) -> MemoryServices:
    """Construct the memory pipeline from *settings*.

    Explicit ``store``, ``embedder`` and ``audit`` arguments override what
    the settings would build.
    """
    settings = settings or Settings()
    store = store if store is not None else build_store(settings.store)
    embedder = (
        embedder if embedder is not None else build_embedding_provider(settings.embedding)
    )
    audit = audit if audit is not None else AuditLogger(settings.audit)
    timeout = settings.embedding.timeout_seconds

    services = MemoryServices(
        settings=settings,
        store=store,
        embedder=embedder,
        audit=audit,
        formation=MemoryFormation(
            store,
            embedder,
            config=settings.formation,
            embedding_timeout=timeout,
            audit=audit,
        ),
        retriever=MemoryRetriever(
            store,
            embedder,
            config=settings.retrieval,
            embedding_timeout=timeout,
        ),
        aggregator=ContextAggregator(store, config=settings.context),
        consolidation=ConsolidationEngine(
            store,
            config=settings.consolidation,
            audit=audit,
        ),
    )
    logger.info(
        "Memory services ready: store=%s embedder=%s",
        type(store).__name__,
        type(embedder).__name__,
    )
    return services
