"""Application configuration dataclasses.

Frozen dataclasses with sensible defaults for each subsystem.  Values can
be overridden at construction time; ``load_settings_from_env`` is only used
by the server entry point.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from dataclasses import field


@dataclass(frozen=True)
class EmbeddingConfig:
    """Embedding provider settings."""

    provider: str = "openai"
    model: str = "text-embedding-3-small"
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    dimensions: int = 1536
    timeout_seconds: float = 3.0


@dataclass(frozen=True)
class StoreConfig:
    """Memory store backend settings."""

    backend: str = "memory"
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "appu"
    socket_timeout_seconds: float = 2.0


@dataclass(frozen=True)
class FormationConfig:
    """Tuneable parameters for memory formation."""

    quote_max_chars: int = 100
    default_importance: float = 0.5


@dataclass(frozen=True)
class RetrievalConfig:
    """Defaults applied by the retrieval engine."""

    default_limit: int = 10
    default_threshold: float = 0.5
    similar_threshold: float = 0.8
    similar_limit: int = 5
    timeline_limit: int = 50


@dataclass(frozen=True)
class ContextConfig:
    """Window used to build a child context."""

    window_days: int = 30
    window_limit: int = 50
    recent_memories: int = 10
    max_interests: int = 5


@dataclass(frozen=True)
class ConsolidationConfig:
    """Tuneable parameters for the consolidation engine."""

    merge_similarity_threshold: float = 0.9
    archive_importance_threshold: float = 0.1
    archive_idle_days: int = 30
    decay_half_life_days: float = 30.0
    importance_update_epsilon: float = 0.05
    insight_min_occurrences: int = 3
    learning_acceleration_min: int = 5
    max_supporting_memories: int = 5


@dataclass(frozen=True)
class SchedulerConfig:
    """Periodic consolidation job settings."""

    interval_hours: float = 1.0
    run_on_start: bool = True


@dataclass(frozen=True)
class AuditConfig:
    """Settings for the JSONL audit logger."""

    file_path: str = "appu_memory_audit.jsonl"
    enabled: bool = True


@dataclass(frozen=True)
class Settings:
    """Aggregate of every subsystem config."""

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    formation: FormationConfig = field(default_factory=FormationConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)


def load_settings_from_env(environ: dict[str, str] | None = None) -> Settings:
    """Build ``Settings`` from ``APPU_*`` environment variables.

    Unset variables keep the dataclass defaults.  The embedding provider
    falls back to ``noop`` when no API key is available.
    """
    env = dict(os.environ if environ is None else environ)

    api_key = env.get("APPU_EMBEDDING_API_KEY") or env.get("OPENAI_API_KEY")
    provider = env.get("APPU_EMBEDDING_PROVIDER") or ("openai" if api_key else "noop")
    embedding = EmbeddingConfig(
        provider=provider,
        model=env.get("APPU_EMBEDDING_MODEL", EmbeddingConfig.model),
        api_key=api_key,
        base_url=env.get("APPU_EMBEDDING_BASE_URL", EmbeddingConfig.base_url),
        timeout_seconds=float(
            env.get("APPU_EMBEDDING_TIMEOUT", EmbeddingConfig.timeout_seconds)
        ),
    )

    redis_url = env.get("APPU_REDIS_URL")
    store = StoreConfig(
        backend=env.get("APPU_STORE_BACKEND", "redis" if redis_url else "memory"),
        redis_url=redis_url or StoreConfig.redis_url,
        key_prefix=env.get("APPU_KEY_PREFIX", StoreConfig.key_prefix),
    )

    scheduler = SchedulerConfig(
        interval_hours=float(
            env.get("APPU_CONSOLIDATION_INTERVAL_HOURS", SchedulerConfig.interval_hours)
        ),
    )
    audit = AuditConfig(
        file_path=env.get("APPU_AUDIT_FILE", AuditConfig.file_path),
        enabled=env.get("APPU_AUDIT_ENABLED", "true").strip().lower()
        not in {"0", "false", "no"},
    )
    return Settings(embedding=embedding, store=store, scheduler=scheduler, audit=audit)
