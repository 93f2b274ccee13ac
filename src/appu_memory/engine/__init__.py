"""Engine domain — formation, retrieval, context, consolidation."""

from appu_memory.engine.consolidation import ConsolidationChildFailure
from appu_memory.engine.consolidation import ConsolidationEngine
from appu_memory.engine.context import ContextAggregator
from appu_memory.engine.context import summarize_memories
from appu_memory.engine.embeddings import build_embedding_provider
from appu_memory.engine.embeddings import EmbeddingProvider
from appu_memory.engine.embeddings import EmbeddingUnavailable
from appu_memory.engine.embeddings import NoopEmbeddingProvider
from appu_memory.engine.embeddings import OpenAICompatibleEmbeddingProvider
from appu_memory.engine.formation import FORMATION_RULES
from appu_memory.engine.formation import FormationRule
from appu_memory.engine.formation import MemoryFormation
from appu_memory.engine.prompt_builder import build_personalization_input
from appu_memory.engine.prompt_builder import render_memory_context
from appu_memory.engine.retrieval import InvalidQuery
from appu_memory.engine.retrieval import MemoryRetriever
from appu_memory.engine.schemas import ChildContext
from appu_memory.engine.schemas import ConsolidationResult
from appu_memory.engine.schemas import FormationResult
from appu_memory.engine.schemas import MemoryInsight
from appu_memory.engine.schemas import PersonalizationInput
from appu_memory.engine.schemas import PersonalityProfile
from appu_memory.engine.schemas import Role
from appu_memory.engine.schemas import SweepResult
from appu_memory.engine.schemas import Timeframe

__all__ = [
    "ChildContext",
    "ConsolidationChildFailure",
    "ConsolidationEngine",
    "ConsolidationResult",
    "ContextAggregator",
    "EmbeddingProvider",
    "EmbeddingUnavailable",
    "FORMATION_RULES",
    "FormationResult",
    "FormationRule",
    "InvalidQuery",
    "MemoryFormation",
    "MemoryInsight",
    "MemoryRetriever",
    "NoopEmbeddingProvider",
    "OpenAICompatibleEmbeddingProvider",
    "PersonalizationInput",
    "PersonalityProfile",
    "Role",
    "SweepResult",
    "Timeframe",
    "build_embedding_provider",
    "build_personalization_input",
    "render_memory_context",
    "summarize_memories",
]
