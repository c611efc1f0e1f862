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
Ollama embedding provider.

Talks to a local Ollama server over HTTP: ``POST /api/embeddings`` for vectors,
``GET /api/tags`` for health, and a streamed ``POST /api/pull`` to fetch the
model.
"""

import json
import logging
from typing import Any

import httpx

from ..exceptions import EmbeddingProviderError
from .base import EmbeddingProvider

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429})


def status_is_retryable(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by an Ollama server."""

    provider_name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text:latest",
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ):
        super().__init__(model, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _error_from_response(self, response: httpx.Response, action: str) -> EmbeddingProviderError:
        return EmbeddingProviderError(
            f"Ollama {action} failed with HTTP {response.status_code}: {response.text[:200]}",
            provider=self.provider_name,
            status_code=response.status_code,
            retryable=status_is_retryable(response.status_code),
            code="HTTP_ERROR",
        )

    async def _request_embedding(self, text: str) -> Any:
        try:
            response = await self._client.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
            )
        except httpx.TimeoutException as e:
            raise EmbeddingProviderError(
                f"Ollama request timed out after {self.timeout}s",
                provider=self.provider_name,
                code="CONNECTION_ERROR",
            ) from e
        except httpx.TransportError as e:
            raise EmbeddingProviderError(
                f"Cannot reach Ollama at {self.base_url}: {e}",
                provider=self.provider_name,
                code="CONNECTION_ERROR",
            ) from e

        if response.status_code >= 400:
            raise self._error_from_response(response, "embedding request")

        try:
            body = response.json()
        except ValueError as e:
            raise EmbeddingProviderError(
                "Ollama returned a non-JSON body",
                provider=self.provider_name,
                code="INVALID_RESPONSE",
            ) from e

        if not isinstance(body, dict) or "embedding" not in body:
            raise EmbeddingProviderError(
                "Ollama response has no 'embedding' field",
                provider=self.provider_name,
                code="INVALID_RESPONSE",
            )
        return body["embedding"]

    async def health_check(self) -> bool:
        """Check that Ollama is up and lists the configured model."""
        try:
            response = await self._client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False
        if response.status_code != 200:
            logger.warning(f"Ollama health check returned HTTP {response.status_code}")
            return False

        try:
            models = response.json().get("models", [])
        except (ValueError, AttributeError):
            logger.warning("Ollama health check returned an unreadable model list")
            return False

        wanted = self.model.split(":")[0]
        for entry in models:
            name = entry.get("name", "") if isinstance(entry, dict) else ""
            if name == self.model or name.startswith(wanted):
                return True
        logger.warning(f"Ollama is reachable but model {self.model} is not installed")
        return False

    async def pull_model(self) -> None:
        """
        Pull the configured model, logging streamed progress lines.

        Raises:
            EmbeddingProviderError: If the server rejects the pull or reports an error
        """
        logger.info(f"Pulling Ollama model {self.model}")
        try:
            async with self._client.stream(
                "POST",
                f"{self.base_url}/api/pull",
                json={"name": self.model},
                timeout=None,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise self._error_from_response(response, "model pull")
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping unparseable pull progress line: {line[:80]}")
                        continue
                    if "error" in event:
                        raise EmbeddingProviderError(
                            f"Ollama pull failed: {event['error']}",
                            provider=self.provider_name,
                            retryable=False,
                        )
                    if status := event.get("status"):
                        logger.info(f"Pull {self.model}: {status}")
        except httpx.HTTPError as e:
            raise EmbeddingProviderError(
                f"Ollama pull of {self.model} failed: {e}",
                provider=self.provider_name,
                code="CONNECTION_ERROR",
            ) from e
        logger.info(f"Model {self.model} is available")
