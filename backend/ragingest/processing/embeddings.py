"""
Embedding Client  —  Validated Embeddings with Retry & Sub-Batching
══════════════════════════════════════════════════════════════════════

Design goals:
  • Validation: every vector is a non-empty list of numbers, or it is an error
  • Retry logic: exponential back-off on every failure (1s, 2s, 4s)
  • Rate-limit friendliness: batches go out in small bursts with a pause
  • Failure isolation: one bad text never aborts the rest of a batch

Providers:
  openai       → AsyncOpenAI embeddings.create(model, input=text)
  huggingface  → POST {HUGGING_FACE_URL}/{model}  {"inputs": text}
                 (sentence-transformers feature-extraction pipeline)

Retry policy (embed):
  Up to MAX_ATTEMPTS attempts. After failed attempt n, wait
  RETRY_BASE_DELAY × 2^(n−1). Validation failures count against the same
  budget. The last EmbeddingError propagates.

Batch policy (embed_batch):
  Sub-batches of SUB_BATCH_SIZE texts requested concurrently, one attempt
  each, SUB_BATCH_DELAY between sub-batches. A failed text maps to an
  empty vector (or is dropped) — the caller decides how to recover it.
"""

from __future__ import annotations

import asyncio
import logging
import numbers
import time
from abc import ABC, abstractmethod
from typing import Any, Sequence

import httpx

from ragingest.core.config import Settings
from ragingest.core.exceptions import EmbeddingError
from ragingest.processing.retry import retry_async

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MAX_ATTEMPTS     = 3      # per-text attempt budget for embed()
RETRY_BASE_DELAY = 1.0    # seconds: doubles each retry
SUB_BATCH_SIZE   = 3      # texts per concurrent burst
SUB_BATCH_DELAY  = 1.0    # seconds between bursts

EmbeddingPair = tuple[str, list[float]]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def validate_embedding(raw: Any) -> list[float]:
    """
    Coerce a provider response into a vector or raise EmbeddingError.

    Accepts a flat numeric list, or a single-element nested list [[...]]
    (feature-extraction endpoints wrap single inputs that way).
    """
    if isinstance(raw, (list, tuple)) and len(raw) == 1 and isinstance(raw[0], (list, tuple)):
        raw = raw[0]

    if not isinstance(raw, (list, tuple)):
        raise EmbeddingError(f"Malformed embedding response: expected a list, got {type(raw).__name__}")
    if len(raw) == 0:
        raise EmbeddingError("Malformed embedding response: empty vector")

    vector: list[float] = []
    for i, value in enumerate(raw):
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise EmbeddingError(
                f"Malformed embedding response: non-numeric member at index {i} "
                f"({type(value).__name__})"
            )
        vector.append(float(value))
    return vector


def is_valid_vector(vector: Any) -> bool:
    """True for a non-empty list/tuple of real numbers."""
    try:
        validate_embedding(vector)
    except EmbeddingError:
        return False
    return True


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class EmbeddingProvider(ABC):
    """One remote embedding call per text. No retry, no validation."""

    name: str = "base"

    @abstractmethod
    async def request(self, text: str) -> Any:
        """Return the provider's raw vector payload for `text`."""

    async def aclose(self) -> None:
        """Release network resources."""


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI (or OpenAI-compatible) /v1/embeddings."""

    name = "openai"

    def __init__(
        self,
        api_key:    str,
        model:      str   = "text-embedding-3-small",
        dimensions: int   = 1536,
        timeout:    float = 30.0,
    ) -> None:
        from openai import AsyncOpenAI

        self._model      = model
        self._dimensions = dimensions
        self._client     = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def request(self, text: str) -> Any:
        from openai import APIConnectionError, APIStatusError, APITimeoutError, NOT_GIVEN

        try:
            response = await self._client.embeddings.create(
                model=self._model,
                input=text,
                # dimensions param only works for text-embedding-3-* models
                dimensions=self._dimensions if self._dimensions != 1536 else NOT_GIVEN,
            )
        except APIStatusError as exc:
            raise EmbeddingError(
                f"OpenAI embeddings error: {exc.message}",
                status_code=exc.status_code,
                body=exc.body,
            ) from exc
        except (APIConnectionError, APITimeoutError) as exc:
            raise EmbeddingError(f"OpenAI embeddings transport error: {exc}") from exc

        if not response.data:
            raise EmbeddingError("Malformed embedding response: no data items")
        return response.data[0].embedding

    async def aclose(self) -> None:
        await self._client.close()


class HuggingFaceEmbeddingProvider(EmbeddingProvider):
    """Hugging Face Inference API feature-extraction pipeline."""

    name = "huggingface"

    def __init__(
        self,
        token:    str,
        model:    str   = "sentence-transformers/all-MiniLM-L6-v2",
        base_url: str   = "https://api-inference.huggingface.co/pipeline/feature-extraction",
        timeout:  float = 30.0,
        client:   httpx.AsyncClient | None = None,
    ) -> None:
        self._url    = f"{base_url.rstrip('/')}/{model}"
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type":  "application/json",
            },
        )

    async def request(self, text: str) -> Any:
        try:
            response = await self._client.post(self._url, json={"inputs": text})
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"Hugging Face transport error: {exc}") from exc

        if response.status_code >= 400:
            try:
                body: Any = response.json()
            except ValueError:
                body = response.text
            raise EmbeddingError(
                "Hugging Face embeddings error",
                status_code=response.status_code,
                body=body,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise EmbeddingError("Malformed embedding response: body is not JSON") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


def get_embedding_provider(config: Settings) -> EmbeddingProvider:
    """Return the provider selected by EMBEDDING_PROVIDER."""
    backend = config.embedding_provider.lower()
    overrides = {"model": config.embedding_model} if config.embedding_model else {}

    if backend == "openai":
        return OpenAIEmbeddingProvider(
            api_key=config.openai_api_key,
            dimensions=config.embedding_dimensions,
            timeout=config.embedding_timeout,
            **overrides,
        )

    if backend == "huggingface":
        return HuggingFaceEmbeddingProvider(
            token=config.hugging_face_token,
            base_url=config.hugging_face_url,
            timeout=config.embedding_timeout,
            **overrides,
        )

    raise ValueError(
        f"Unknown embedding provider: '{backend}'. "
        f"Valid options: 'openai', 'huggingface'"
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class EmbeddingClient:
    """
    Validating, retrying wrapper around an EmbeddingProvider.

    Usage:
        client = EmbeddingClient(get_embedding_provider(settings))
        vector = await client.embed("some text")
        pairs  = await client.embed_batch(["a", "b", "c", "d"])
    """

    def __init__(
        self,
        provider:         EmbeddingProvider,
        max_attempts:     int   = MAX_ATTEMPTS,
        retry_base_delay: float = RETRY_BASE_DELAY,
        sub_batch_size:   int   = SUB_BATCH_SIZE,
        sub_batch_delay:  float = SUB_BATCH_DELAY,
    ) -> None:
        if sub_batch_size < 1:
            raise ValueError("sub_batch_size must be >= 1")
        self._provider         = provider
        self._max_attempts     = max_attempts
        self._retry_base_delay = retry_base_delay
        self._sub_batch_size   = sub_batch_size
        self._sub_batch_delay  = sub_batch_delay

    @classmethod
    def from_settings(cls, config: Settings, provider: EmbeddingProvider | None = None) -> "EmbeddingClient":
        return cls(
            provider or get_embedding_provider(config),
            max_attempts=config.max_attempts,
            retry_base_delay=config.retry_base_delay,
            sub_batch_size=config.embed_sub_batch_size,
            sub_batch_delay=config.embed_sub_batch_delay,
        )

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    # ------------------------------------------------------------------
    # Single text
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> list[float]:
        """Embed one text with validation and exponential back-off retry."""
        return await retry_async(
            lambda: self._embed_once(text),
            max_attempts=self._max_attempts,
            base_delay=self._retry_base_delay,
            retry_on=(EmbeddingError,),
            label=f"embed[{self._provider.name}]",
        )

    async def _embed_once(self, text: str) -> list[float]:
        t0 = time.monotonic()
        try:
            raw = await self._provider.request(text)
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"Embedding request failed: {type(exc).__name__}: {exc}") from exc

        vector = validate_embedding(raw)
        logger.debug(
            "Embedding ok | provider=%s chars=%d dims=%d api_ms=%.0f",
            self._provider.name, len(text), len(vector), (time.monotonic() - t0) * 1000,
        )
        return vector

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def embed_batch(
        self,
        texts:       Sequence[str],
        drop_failed: bool = False,
    ) -> list[EmbeddingPair]:
        """
        Embed many texts in rate-limited sub-batches.

        Returns (text, vector) pairs in input order. A text whose request
        fails maps to an empty vector, or is omitted when drop_failed=True.
        """
        results: list[EmbeddingPair] = []
        failed = 0
        sub_batches = [
            list(texts[i : i + self._sub_batch_size])
            for i in range(0, len(texts), self._sub_batch_size)
        ]

        for batch_idx, sub_batch in enumerate(sub_batches):
            outcomes = await asyncio.gather(
                *(self._embed_once(text) for text in sub_batch),
                return_exceptions=True,
            )
            for text, outcome in zip(sub_batch, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    failed += 1
                    logger.warning(
                        "Batch embedding failed for text | sub_batch=%d chars=%d error=%s",
                        batch_idx, len(text), outcome,
                    )
                    if not drop_failed:
                        results.append((text, []))
                    continue
                results.append((text, outcome))

            if batch_idx < len(sub_batches) - 1:
                await asyncio.sleep(self._sub_batch_delay)

        logger.info(
            "Embedding batch done | provider=%s texts=%d failed=%d sub_batches=%d",
            self._provider.name, len(texts), failed, len(sub_batches),
        )
        return results

    async def aclose(self) -> None:
        await self._provider.aclose()
