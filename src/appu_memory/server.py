"""Appu memory MCP server.

``create_server(services)`` returns a FastMCP server whose tools are thin
adapters over a ``MemoryServices`` instance: validate arguments, delegate,
shape the response.  ``main`` wires everything from the environment and
runs the server with the hourly consolidation job alongside it.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from collections.abc import Iterator
from contextlib import contextmanager
from time import perf_counter

from dotenv import load_dotenv
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from pydantic import ValidationError

from appu_memory.config import load_settings_from_env
from appu_memory.engine.prompt_builder import render_memory_context
from appu_memory.engine.retrieval import InvalidQuery
from appu_memory.engine.schemas import FormationResult
from appu_memory.engine.schemas import MemoryStatistics
from appu_memory.engine.schemas import SweepResult
from appu_memory.memory.store import StoreWriteFailure
from appu_memory.models.schemas import ChildContextResult
from appu_memory.models.schemas import DeleteMemoryResult
from appu_memory.models.schemas import FormMemoryInput
from appu_memory.models.schemas import FormMemoryResult
from appu_memory.models.schemas import MemoryEntry
from appu_memory.models.schemas import MemoryListResult
from appu_memory.models.schemas import PersonalizationRequest
from appu_memory.models.schemas import PersonalizationResult
from appu_memory.models.schemas import RecordObservationInput
from appu_memory.observability import record_latency
from appu_memory.scheduler import MemoryJobScheduler
from appu_memory.services import build_memory_services
from appu_memory.services import MemoryServices

logger = logging.getLogger(__name__)


def _validation_message(exc: ValidationError) -> str:
    err = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in err.get("loc", ()))
    message = str(err.get("msg", "Invalid input"))
    return f"{location}: {message}" if location else message


@contextmanager
def _timed(operation: str) -> Iterator[Callable[[bool], None]]:
    """Record ``mcp.<operation>`` latency; the block reports success itself."""
    start = perf_counter()
    state = {"ok": False}

    def mark(ok: bool = True) -> None:
        state["ok"] = ok

    try:
        yield mark
    finally:
        record_latency(
            operation=f"mcp.{operation}",
            duration_ms=(perf_counter() - start) * 1000,
            ok=state["ok"],
        )


def _formation_response(result: FormationResult) -> FormMemoryResult:
    return FormMemoryResult(
        memories=[MemoryEntry.from_memory(m) for m in result.memories],
        errors=result.errors,
    )


def _list_error(error_code: str, message: str) -> MemoryListResult:
    return MemoryListResult(status="error", error_code=error_code, message=message)


def create_server(services: MemoryServices, *, name: str = "Appu Memory") -> FastMCP:
    """Build the MCP server for *services*."""
    mcp = FastMCP(name)

    @mcp.tool
    async def form_memory(
        child_id: int,
        text: str,
        role: str,
        conversation_id: int | str | None = None,
    ) -> FormMemoryResult:
        """Form memories from one conversation turn.

        Args:
            child_id: Child taking part in the conversation.
            text: Transcript of the turn.
            role: "user" for the child, "assistant" for Appu.
            conversation_id: Conversation the turn belongs to.
        """
        with _timed("form_memory") as mark:
            try:
                validated = FormMemoryInput.model_validate(
                    {
                        "child_id": child_id,
                        "text": text,
                        "role": role,
                        "conversation_id": conversation_id,
                    }
                )
            except ValidationError as exc:
                return FormMemoryResult(
                    status="rejected",
                    error_code="validation_error",
                    message=_validation_message(exc),
                )
            result = await services.form_memory(
                validated.child_id,
                validated.text,
                validated.role,
                validated.conversation_id,
            )
            mark(not result.errors)
            return _formation_response(result)

    @mcp.tool
    async def record_observation(
        child_id: int,
        description: str,
        conversation_id: int | str | None = None,
        visual_objects: list[str] | None = None,
    ) -> FormMemoryResult:
        """Record something the child showed on camera as a visual memory.

        Args:
            child_id: Child who showed the object.
            description: What was seen.
            conversation_id: Conversation the observation belongs to.
            visual_objects: Objects recognized in the frame.
        """
        with _timed("record_observation") as mark:
            try:
                validated = RecordObservationInput.model_validate(
                    {
                        "child_id": child_id,
                        "description": description,
                        "conversation_id": conversation_id,
                        "visual_objects": visual_objects or [],
                    }
                )
            except ValidationError as exc:
                return FormMemoryResult(
                    status="rejected",
                    error_code="validation_error",
                    message=_validation_message(exc),
                )
            result = await services.record_observation(
                validated.child_id,
                validated.description,
                conversation_id=validated.conversation_id,
                visual_objects=validated.visual_objects,
            )
            mark(not result.errors)
            return _formation_response(result)

    @mcp.tool
    async def retrieve_memories(
        child_id: int,
        query: str = "",
        limit: int = 10,
        threshold: float | None = None,
        type: str | None = None,
        timeframe: str | None = None,
    ) -> MemoryListResult:
        """Retrieve a child's memories relevant to a query.

        Args:
            child_id: Child whose memories to search.
            query: Free text; empty returns the most recent memories.
            limit: Maximum memories returned.
            threshold: Minimum similarity (0-1) on the semantic path.
            type: Restrict to one memory type.
            timeframe: day, week, month or all.
        """
        with _timed("retrieve_memories") as mark:
            try:
                memories = await services.retrieve(
                    query,
                    child_id,
                    limit=limit,
                    threshold=threshold,
                    type=type,
                    timeframe=timeframe,
                )
            except InvalidQuery as exc:
                return _list_error("invalid_query", str(exc))
            mark()
            return MemoryListResult(
                memories=[MemoryEntry.from_memory(m) for m in memories],
                count=len(memories),
                timeframe=timeframe,
            )

    @mcp.tool
    async def find_similar_memories(
        child_id: int,
        content: str,
        type: str | None = None,
    ) -> MemoryListResult:
        """Find memories semantically close to a piece of text.

        Args:
            child_id: Child whose memories to search.
            content: Text to compare against.
            type: Restrict to one memory type.
        """
        with _timed("find_similar_memories") as mark:
            try:
                matches = await services.find_similar(child_id, content, type=type)
            except InvalidQuery as exc:
                return _list_error("invalid_query", str(exc))
            mark()
            return MemoryListResult(
                memories=[MemoryEntry.from_memory(m, score) for m, score in matches],
                count=len(matches),
            )

    @mcp.tool
    async def get_memory_timeline(
        child_id: int,
        timeframe: str = "all",
    ) -> MemoryListResult:
        """List a child's memories oldest first.

        Args:
            child_id: Child whose timeline to read.
            timeframe: day, week, month or all.
        """
        with _timed("get_memory_timeline") as mark:
            try:
                memories = await services.timeline(child_id, timeframe)
            except InvalidQuery as exc:
                return _list_error("invalid_query", str(exc))
            mark()
            return MemoryListResult(
                memories=[MemoryEntry.from_memory(m) for m in memories],
                count=len(memories),
                timeframe=timeframe,
            )

    @mcp.tool
    async def get_child_context(child_id: int) -> ChildContextResult:
        """Summarize a child's interests, personality and mood from recent memories."""
        with _timed("get_child_context") as mark:
            context = await services.get_child_context(child_id)
            mark()
            return ChildContextResult.from_context(context)

    @mcp.tool
    async def get_personalization_input(
        child_id: int,
        profile: dict | None = None,
        milestones: list[dict] | None = None,
    ) -> PersonalizationResult:
        """Gather everything needed to personalize Appu's next prompt.

        Args:
            child_id: Child in the conversation.
            profile: Child profile (name, age, likes, ...).
            milestones: Learning milestones with progress.
        """
        with _timed("get_personalization_input") as mark:
            try:
                request = PersonalizationRequest.model_validate(
                    {
                        "child_id": child_id,
                        "profile": profile or {},
                        "milestones": milestones or [],
                    }
                )
            except ValidationError as exc:
                return PersonalizationResult(
                    status="rejected",
                    error_code="validation_error",
                    message=_validation_message(exc),
                )
            bundle = await services.build_personalization_input(
                request.child_id, request.profile, request.milestones
            )
            mark()
            return PersonalizationResult(
                context=ChildContextResult.from_context(bundle.child_context),
                recent_memories=[MemoryEntry.from_memory(m) for m in bundle.recent_memories],
                rendered=render_memory_context(bundle),
            )

    @mcp.tool
    async def consolidate_memories(child_id: int | None = None) -> SweepResult:
        """Merge duplicates, archive faded memories and derive insights.

        Args:
            child_id: Only this child; every child when omitted.
        """
        with _timed("consolidate_memories") as mark:
            try:
                result = await services.sweep(None if child_id is None else [child_id])
            except Exception as exc:
                logger.exception("consolidate_memories failed")
                raise ToolError(f"consolidation could not run: {exc}") from exc
            mark(result.children_failed == 0)
            return result

    @mcp.tool
    async def memory_stats(child_id: int) -> MemoryStatistics:
        """Counts and average importance of a child's memories."""
        with _timed("memory_stats") as mark:
            try:
                stats = await services.memory_stats(child_id)
            except Exception as exc:
                logger.exception("memory_stats failed for child %d", child_id)
                raise ToolError(f"memory store unavailable: {exc}") from exc
            mark()
            return stats

    @mcp.tool
    async def delete_memory(memory_id: str, child_id: int | None = None) -> DeleteMemoryResult:
        """Delete one memory.

        Args:
            memory_id: Memory to delete.
            child_id: When given, the memory must belong to this child.
        """
        with _timed("delete_memory") as mark:
            try:
                deleted = await services.delete_memory(memory_id, child_id=child_id)
            except StoreWriteFailure as exc:
                return DeleteMemoryResult(
                    memory_id=memory_id, status="error", message=str(exc)
                )
            mark()
            return DeleteMemoryResult(
                memory_id=memory_id,
                status="deleted" if deleted else "not_found",
            )

    return mcp


async def serve(services: MemoryServices, scheduler: MemoryJobScheduler) -> None:
    """Run the stdio MCP server with the consolidation job alongside."""
    mcp = create_server(services)
    scheduler.start()
    try:
        await mcp.run_async()
    finally:
        scheduler.stop()
        await services.close()


def main() -> None:
    """Console entry point: configure from the environment and serve."""
    load_dotenv(override=False)
    logging.basicConfig(
        level=os.environ.get("APPU_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = load_settings_from_env()
    services = build_memory_services(settings)
    scheduler = MemoryJobScheduler(services.consolidation, settings.scheduler)
    asyncio.run(serve(services, scheduler))


if __name__ == "__main__":
    main()
