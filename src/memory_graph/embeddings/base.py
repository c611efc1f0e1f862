# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Embedding provider base class.

Implements everything that is independent of the model server: the
zero-vector short-circuit for blank text, the exact-text cache, bounded retry
with exponential backoff, dimension discovery and validation, and the chunked
batch pipeline with bounded concurrency and memory-pressure throttling.
Concrete providers only implement the single HTTP call and the lifecycle
operations.
"""

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..exceptions import EmbeddingDimensionError, EmbeddingProviderError
from .throttling import BYTES_PER_FLOAT, ConcurrencyGate, MemoryPressureMonitor

logger = logging.getLogger(__name__)


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception from a provider call should be retried.

    Notes:
        - Connection failures, 5xx, 408 and 429 responses are transient
        - Malformed payloads and dimension mismatches are retried too; a
          flaky model server occasionally returns truncated bodies
        - Other 4xx responses are configuration errors and are NOT retried
    """
    return isinstance(exception, EmbeddingProviderError) and exception.retryable


@dataclass(frozen=True, slots=True)
class EmbeddingResult:
    """Outcome of one item in a batch: an embedding or the error that ended it."""

    index: int
    text: str
    embedding: list[float] | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EmbeddingProvider(ABC):
    """Base class for remote embedding model servers."""

    provider_name = "base"

    def __init__(
        self,
        model: str,
        *,
        default_dimension: int = 768,
        batch_size: int = 32,
        max_concurrency: int = 3,
        max_retries: int = 3,
        backoff_multiplier: float = 1.0,
        backoff_max: float = 10.0,
        cache_size: int = 1000,
        pressure_monitor: MemoryPressureMonitor | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.model = model
        self.default_dimension = default_dimension
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max
        self.cache_size = cache_size

        self.gate = ConcurrencyGate(max_concurrency)
        self.pressure = pressure_monitor or MemoryPressureMonitor(max_bytes=512 * 1024 * 1024)

        # Fixed by the first successful call
        self._dimension: int | None = None
        # Plain key -> vector map, insertion-ordered for FIFO eviction
        self._cache: dict[str, list[float]] = {}

        self._stats = {
            "requests": 0,
            "cache_hits": 0,
            "successes": 0,
            "failures": 0,
            "retries": 0,
        }

    # ------------------------------------------------------------------
    # Provider-specific hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _request_embedding(self, text: str) -> Any:
        """Make one provider call and return the raw vector payload.

        Must raise ``EmbeddingProviderError`` for any failure.
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True when the model server is reachable and has the model."""

    @abstractmethod
    async def pull_model(self) -> None:
        """Ask the model server to make the configured model available."""

    async def close(self) -> None:
        """Release network resources."""

    # ------------------------------------------------------------------
    # Dimension and cache
    # ------------------------------------------------------------------

    @property
    def dimension(self) -> int:
        """Discovered dimension, or the configured default before discovery."""
        return self._dimension if self._dimension is not None else self.default_dimension

    def _cache_key(self, text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def _get_cached(self, text: str) -> list[float] | None:
        return self._cache.get(self._cache_key(text))

    def _set_cached(self, text: str, embedding: list[float]) -> None:
        if self.cache_size <= 0:
            return
        self._cache[self._cache_key(text)] = embedding
        while len(self._cache) > self.cache_size:
            oldest = next(iter(self._cache))
            del self._cache[oldest]

    def cache_stats(self) -> dict[str, int]:
        return {"size": len(self._cache), "max_size": self.cache_size}

    def clear_cache(self) -> None:
        self._cache.clear()

    def stats(self) -> dict[str, Any]:
        """Counters for calls, cache hits and outcomes, plus gate/pressure state."""
        return {
            **self._stats,
            "provider": self.provider_name,
            "model": self.model,
            "dimension": self._dimension,
            "in_flight": self.gate.in_flight,
            "peak_in_flight": self.gate.peak_in_flight,
            "pressure_bytes": self.pressure.usage_bytes,
            "pressure_stalls": self.pressure.stall_count,
            "cache": self.cache_stats(),
        }

    # ------------------------------------------------------------------
    # Single embedding
    # ------------------------------------------------------------------

    def _validate(self, payload: Any) -> list[float]:
        if not isinstance(payload, list | tuple) or not payload:
            raise EmbeddingProviderError(
                f"Invalid response format from {self.provider_name}: expected a non-empty vector",
                provider=self.provider_name,
                code="INVALID_RESPONSE",
            )
        try:
            embedding = [float(x) for x in payload]
        except (TypeError, ValueError) as e:
            raise EmbeddingProviderError(
                f"Invalid vector values from {self.provider_name}: {e}",
                provider=self.provider_name,
                code="INVALID_RESPONSE",
            ) from e

        if self._dimension is None:
            self._dimension = len(embedding)
            logger.info(f"Detected embedding dimension from {self.provider_name}/{self.model}: {self._dimension}")
        elif len(embedding) != self._dimension:
            raise EmbeddingDimensionError(self.provider_name, self._dimension, len(embedding))
        return embedding

    async def _call_with_retry(self, text: str) -> list[float]:
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    self._stats["retries"] += 1
                try:
                    payload = await self._request_embedding(text)
                    return self._validate(payload)
                except EmbeddingProviderError as e:
                    logger.warning(
                        f"Embedding attempt {attempt_number}/{self.max_retries} failed "
                        f"({self.provider_name}/{self.model}): {e}"
                    )
                    raise
        raise AssertionError("unreachable: tenacity reraises the last failure")

    async def generate_embedding(self, text: str) -> list[float]:
        """
        Generate an embedding for one text.

        Blank text returns a zero vector without a network call. Identical
        text is served from the cache after the first success.

        Raises:
            EmbeddingProviderError: When every retry attempt failed
        """
        if not text or not text.strip():
            return [0.0] * self.dimension

        cached = self._get_cached(text)
        if cached is not None:
            self._stats["cache_hits"] += 1
            return list(cached)

        self._stats["requests"] += 1
        try:
            embedding = await self._call_with_retry(text)
        except EmbeddingProviderError:
            self._stats["failures"] += 1
            raise
        self._stats["successes"] += 1
        self._set_cached(text, embedding)
        return list(embedding)

    # ------------------------------------------------------------------
    # Batch pipeline
    # ------------------------------------------------------------------

    async def _embed_gated(self, index: int, text: str) -> EmbeddingResult:
        text_bytes = len(text.encode("utf-8"))
        async with self.gate.slot():
            self.pressure.reserve(text_bytes)
            try:
                embedding = await self.generate_embedding(text)
            except Exception as e:
                logger.warning(f"Batch item {index} failed (non-fatal for siblings): {e}")
                return EmbeddingResult(index=index, text=text, error=e)
            finally:
                self.pressure.release(text_bytes)
        self.pressure.reserve(len(embedding) * BYTES_PER_FLOAT)
        return EmbeddingResult(index=index, text=text, embedding=embedding)

    async def generate_embeddings_batch(self, texts: list[str]) -> list[EmbeddingResult]:
        """
        Generate embeddings for many texts.

        Texts are processed in chunks of ``batch_size``; inside a chunk every
        item runs through the concurrency gate, and before each chunk the
        pipeline waits for memory pressure to clear. Results are positional:
        ``results[i]`` belongs to ``texts[i]``. A failed item carries its
        error and does not affect the others.
        """
        if not texts:
            return []

        results: list[EmbeddingResult | None] = [None] * len(texts)
        for start in range(0, len(texts), self.batch_size):
            chunk = texts[start : start + self.batch_size]
            await self.pressure.wait_for_headroom()

            chunk_results = await asyncio.gather(
                *(self._embed_gated(start + offset, text) for offset, text in enumerate(chunk))
            )

            vector_bytes = 0
            for result in chunk_results:
                results[result.index] = result
                if result.embedding is not None:
                    vector_bytes += len(result.embedding) * BYTES_PER_FLOAT
            # Vectors are handed over to the caller from here on
            self.pressure.release(vector_bytes)

            failed = sum(1 for r in chunk_results if not r.ok)
            logger.debug(
                f"Embedded chunk {start // self.batch_size + 1}: {len(chunk) - failed}/{len(chunk)} succeeded"
            )

        return [r for r in results if r is not None]
