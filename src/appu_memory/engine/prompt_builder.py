"""Personalization input for the conversation prompt.

Gathers the child context and the latest memories into a
``PersonalizationInput`` and renders its memory part as plain labelled
lines.  The surrounding system prompt is owned by the conversation handler.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from appu_memory.engine.context import ContextAggregator
from appu_memory.engine.retrieval import MemoryRetriever
from appu_memory.engine.schemas import ChildContext
from appu_memory.engine.schemas import LearningMilestone
from appu_memory.engine.schemas import PersonalizationInput
from appu_memory.engine.schemas import Timeframe

logger = logging.getLogger(__name__)

RECENT_MEMORY_LIMIT = 5


async def build_personalization_input(
    aggregator: ContextAggregator,
    retriever: MemoryRetriever,
    child_id: int,
    profile: dict[str, Any] | None = None,
    milestones: Iterable[LearningMilestone | dict[str, Any]] = (),
) -> PersonalizationInput:
    """Bundle context, last week's memories, profile and milestones.

    Best effort: any failure yields the neutral context and no memories.
    """
    parsed = [LearningMilestone.model_validate(m) for m in milestones]
    try:
        context = await aggregator.get_child_context(child_id)
        recent = await retriever.retrieve(
            "", child_id, limit=RECENT_MEMORY_LIMIT, timeframe=Timeframe.week
        )
    except Exception:
        logger.exception("Building personalization input for child %d failed", child_id)
        context, recent = ChildContext.default(child_id), []
    return PersonalizationInput(
        child_context=context,
        recent_memories=recent,
        profile=dict(profile or {}),
        milestones=parsed,
    )


def _format_milestone(milestone: LearningMilestone) -> str:
    if milestone.is_completed:
        status = "completed"
    elif milestone.target_value:
        status = f"{milestone.current_progress}/{milestone.target_value}"
    else:
        status = f"progress {milestone.current_progress}"
    return f"- {milestone.milestone_type}: {milestone.milestone_description} ({status})"


def render_memory_context(bundle: PersonalizationInput) -> str:
    """Render the memory-derived part of the prompt."""
    context = bundle.child_context
    profile = context.personality_profile
    lines = ["CHILD CONTEXT:"]
    if bundle.profile.get("name"):
        lines.append(f"- Name: {bundle.profile['name']}")
    if bundle.profile.get("age"):
        lines.append(f"- Age: {bundle.profile['age']}")
    if context.active_interests:
        lines.append(f"- Active interests: {', '.join(context.active_interests)}")
    lines.append(f"- Communication style: {profile.communication_style}")
    lines.append(f"- Confidence: {profile.confidence}/10")
    lines.append(f"- Curiosity: {profile.curiosity}/10")
    lines.append(f"- Relationship level: {context.relationship_level}/10")
    if context.emotional_state:
        lines.append(f"- Emotional state: {context.emotional_state}")

    if bundle.recent_memories:
        lines.append("")
        lines.append("RECENT MEMORIES:")
        lines.extend(f"- {memory.content}" for memory in bundle.recent_memories)

    if bundle.milestones:
        lines.append("")
        lines.append("LEARNING MILESTONES:")
        lines.extend(_format_milestone(m) for m in bundle.milestones)
    return "\n".join(lines)
