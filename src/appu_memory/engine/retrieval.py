"""Memory retrieval: query and child to ranked memories.

Three paths, chosen per call:

* blank query: newest memories in the window, no similarity filtering;
* vector path: embed the query and rank by cosine similarity, then
  importance, appending keyword matches among memories that were stored
  without an embedding;
* keyword fallback: case-insensitive substring match on ``content`` when
  the query cannot be embedded.

Malformed parameters raise ``InvalidQuery``.  Provider and store failures
never escape: the caller gets a possibly empty list.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace

from pydantic import ValidationError

from appu_memory.config import RetrievalConfig
from appu_memory.engine.embeddings import embed_or_none
from appu_memory.engine.embeddings import EmbeddingProvider
from appu_memory.engine.schemas import MemoryQuery
from appu_memory.engine.schemas import Timeframe
from appu_memory.memory.schemas import Memory
from appu_memory.memory.schemas import MemoryType
from appu_memory.memory.store import MemoryFilters
from appu_memory.memory.store import MemoryStore
from appu_memory.memory.store import OrderBy
from appu_memory.observability import track_latency

logger = logging.getLogger(__name__)


class InvalidQuery(ValueError):
    """Raised for malformed retrieval parameters."""


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'query'}: {err['msg']}"
        for err in exc.errors()
    )


class MemoryRetriever:
    """Reads memories back for prompts, tools and the context aggregator."""

    def __init__(
        self,
        store: MemoryStore,
        embedder: EmbeddingProvider,
        *,
        config: RetrievalConfig | None = None,
        embedding_timeout: float = 3.0,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config or RetrievalConfig()
        self._embedding_timeout = embedding_timeout

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def build_query(
        self,
        query: str,
        child_id: int,
        *,
        limit: int | None = None,
        threshold: float | None = None,
        type: MemoryType | str | None = None,
        timeframe: Timeframe | str | None = None,
    ) -> MemoryQuery:
        """Validate raw parameters, raising ``InvalidQuery`` on any problem."""
        try:
            return MemoryQuery(
                query=query or "",
                child_id=child_id,
                limit=self._config.default_limit if limit is None else limit,
                threshold=threshold,
                type=type,
                timeframe=timeframe,
            )
        except ValidationError as exc:
            raise InvalidQuery(_validation_message(exc)) from exc

    # ------------------------------------------------------------------
    # Retrieve
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
        params = self.build_query(
            query,
            child_id,
            limit=limit,
            threshold=threshold,
            type=type,
            timeframe=timeframe,
        )
        return await self.run(params)

    async def run(self, params: MemoryQuery) -> list[Memory]:
        """Execute an already validated query."""
        filters = MemoryFilters(
            type=params.type,
            since=params.timeframe.since() if params.timeframe else None,
        )
        text = params.query.strip()
        try:
            with track_latency("retrieval.retrieve"):
                if not text:
                    results = await self._store.query(
                        params.child_id, filters, OrderBy.recency, params.limit
                    )
                else:
                    embedding = await embed_or_none(
                        self._embedder, text, timeout_seconds=self._embedding_timeout
                    )
                    if embedding is None:
                        results = await self._keyword(
                            params.child_id, text, filters, params.limit
                        )
                    else:
                        results = await self._vector(params, text, embedding, filters)
        except Exception:
            logger.exception("Retrieval failed for child %d", params.child_id)
            return []
        return await self._touch(results)

    async def _vector(
        self,
        params: MemoryQuery,
        text: str,
        embedding: list[float],
        filters: MemoryFilters,
    ) -> list[Memory]:
        threshold = (
            self._config.default_threshold
            if params.threshold is None
            else params.threshold
        )
        hits = await self._store.similarity_search(
            params.child_id, embedding, threshold, params.limit, filters
        )
        results = [memory for memory, _ in hits]
        remaining = params.limit - len(results)
        if remaining > 0:
            results.extend(
                await self._keyword(
                    params.child_id,
                    text,
                    replace(filters, has_embedding=False),
                    remaining,
                )
            )
        return results

    async def _keyword(
        self,
        child_id: int,
        text: str,
        filters: MemoryFilters,
        limit: int,
    ) -> list[Memory]:
        return await self._store.query(
            child_id,
            replace(filters, content_contains=text),
            OrderBy.importance,
            limit,
        )

    async def _touch(self, memories: list[Memory]) -> list[Memory]:
        if not memories:
            return memories
        now = time.time()
        try:
            await self._store.mark_accessed([m.id for m in memories], now)
        except Exception:
            logger.warning("Could not stamp last_accessed_at on %d memories", len(memories))
        return [m.model_copy(update={"last_accessed_at": now}) for m in memories]

    # ------------------------------------------------------------------
    # Similar / timeline
    # ------------------------------------------------------------------

    async def find_similar(
        self,
        child_id: int,
        content: str,
        *,
        type: MemoryType | str | None = None,
        threshold: float | None = None,
        limit: int | None = None,
    ) -> list[tuple[Memory, float]]:
        """Memories whose embedding is close to *content*'s, best first.

        Returns an empty list when *content* cannot be embedded.
        """
        params = self.build_query(
            content,
            child_id,
            limit=self._config.similar_limit if limit is None else limit,
            threshold=(
                self._config.similar_threshold if threshold is None else threshold
            ),
            type=type,
        )
        if not params.query.strip():
            return []
        embedding = await embed_or_none(
            self._embedder, params.query, timeout_seconds=self._embedding_timeout
        )
        if embedding is None:
            return []
        try:
            return await self._store.similarity_search(
                child_id,
                embedding,
                params.threshold,
                params.limit,
                MemoryFilters(type=params.type),
            )
        except Exception:
            logger.exception("Similarity search failed for child %d", child_id)
            return []

    async def timeline(
        self,
        child_id: int,
        timeframe: Timeframe | str = Timeframe.all,
        *,
        limit: int | None = None,
    ) -> list[Memory]:
        """Memories in the window, oldest first."""
        params = self.build_query(
            "",
            child_id,
            limit=self._config.timeline_limit if limit is None else limit,
            timeframe=timeframe,
        )
        since = params.timeframe.since() if params.timeframe else None
        try:
            return await self._store.query(
                child_id,
                MemoryFilters(since=since),
                OrderBy.chronological,
                params.limit,
            )
        except Exception:
            logger.exception("Timeline query failed for child %d", child_id)
            return []
