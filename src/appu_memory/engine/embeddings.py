"""Embedding providers and factory helpers."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from appu_memory.config import EmbeddingConfig
from appu_memory.observability import record_latency

logger = logging.getLogger(__name__)


class EmbeddingUnavailable(Exception):
    """Raised when the provider fails or returns no usable vector."""


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Text to fixed-length float vector."""

    async def embed(self, text: str) -> list[float]: ...


class NoopEmbeddingProvider:
    """Provider used when no embedding backend is configured."""

    async def embed(self, text: str) -> list[float]:
        del text
        raise EmbeddingUnavailable("no embedding provider configured")


class OpenAICompatibleEmbeddingProvider:
    """OpenAI-compatible ``/embeddings`` adapter."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        dimensions: int | None = None,
        timeout_seconds: float = 3.0,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._dimensions = dimensions
        self._timeout = timeout_seconds

    async def embed(self, text: str) -> list[float]:
        if not text.strip():
            raise EmbeddingUnavailable("cannot embed empty text")
        return await asyncio.to_thread(self._embed_sync, text)

    def _embed_sync(self, text: str) -> list[float]:
        payload: dict = {"model": self._model, "input": text}
        if self._dimensions:
            payload["dimensions"] = self._dimensions
        request = Request(
            url=f"{self._base_url}/embeddings",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise EmbeddingUnavailable(
                f"provider HTTP {exc.code}: {detail[:200]}"
            ) from exc
        except URLError as exc:
            raise EmbeddingUnavailable(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise EmbeddingUnavailable(f"provider IO error: {exc}") from exc

        try:
            vector = json.loads(raw)["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise EmbeddingUnavailable(
                "provider response missing data[0].embedding"
            ) from exc

        if not isinstance(vector, list) or not vector:
            raise EmbeddingUnavailable("provider returned an empty embedding")
        return [float(v) for v in vector]


def build_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Create a concrete provider from ``EmbeddingConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError("embedding.api_key is required when provider='openai'")
        return OpenAICompatibleEmbeddingProvider(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            dimensions=config.dimensions,
            timeout_seconds=config.timeout_seconds,
        )
    if provider == "noop":
        return NoopEmbeddingProvider()
    raise ValueError(
        f"Unsupported embedding.provider '{config.provider}'. "
        "Supported providers: openai, noop."
    )


async def embed_or_none(
    provider: EmbeddingProvider,
    text: str,
    *,
    timeout_seconds: float,
) -> list[float] | None:
    """Embed *text*, returning ``None`` on failure or timeout.

    A slow provider must never hold up a conversation turn, so the call is
    bounded by ``asyncio.wait_for`` and every failure degrades to ``None``.
    """
    loop = asyncio.get_running_loop()
    start = loop.time()
    try:
        vector = await asyncio.wait_for(provider.embed(text), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning("Embedding timed out after %.1fs", timeout_seconds)
        vector = None
    except EmbeddingUnavailable as exc:
        logger.warning("Embedding unavailable: %s", exc)
        vector = None
    except Exception:
        logger.exception("Embedding provider raised unexpectedly")
        vector = None
    record_latency(
        operation="embedding.embed",
        duration_ms=(loop.time() - start) * 1000,
        ok=vector is not None,
    )
    if vector is not None and not vector:
        return None
    return vector
