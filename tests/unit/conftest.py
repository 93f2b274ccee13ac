"""Unit test fixtures — in-memory store, fake embedders, wired services.

Nothing here needs Docker or network access.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from fastmcp import Client

from appu_memory.audit import AuditLogger
from appu_memory.config import AuditConfig
from appu_memory.config import EmbeddingConfig
from appu_memory.config import Settings
from appu_memory.memory import InMemoryMemoryStore
from appu_memory.observability import reset_latency_metrics
from appu_memory.server import create_server
from appu_memory.services import build_memory_services
from tests.unit.helpers.fakes import BagOfWordsEmbedder


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_latency():
    reset_latency_metrics()
    yield
    reset_latency_metrics()


@pytest.fixture()
def store() -> InMemoryMemoryStore:
    return InMemoryMemoryStore()


@pytest.fixture()
def embedder() -> BagOfWordsEmbedder:
    return BagOfWordsEmbedder()


@pytest.fixture()
def audit_config(tmp_path: Path) -> AuditConfig:
    return AuditConfig(file_path=str(tmp_path / "audit.jsonl"))


@pytest.fixture()
def audit(audit_config) -> AuditLogger:
    return AuditLogger(audit_config)


@pytest.fixture()
def settings(audit_config) -> Settings:
    return Settings(
        embedding=EmbeddingConfig(provider="noop", timeout_seconds=0.5),
        audit=audit_config,
    )


@pytest.fixture()
def services(settings, store, embedder, audit):
    return build_memory_services(settings, store=store, embedder=embedder, audit=audit)


@pytest.fixture()
async def mcp_client(services):
    """Yield a FastMCP Client wired to a server over the test services."""
    async with Client(create_server(services)) as client:
        yield client
