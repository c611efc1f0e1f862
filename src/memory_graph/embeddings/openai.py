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

"""OpenAI-compatible embedding provider."""

import logging
from typing import Any

import httpx

from ..exceptions import EmbeddingProviderError
from .base import EmbeddingProvider
from .ollama import status_is_retryable

logger = logging.getLogger(__name__)


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """Embedding provider for the OpenAI ``/embeddings`` endpoint."""

    provider_name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
        *,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ):
        if not api_key:
            raise ValueError("OpenAI provider requires an API key")
        super().__init__(model, **kwargs)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request_embedding(self, text: str) -> Any:
        try:
            response = await self._client.post(
                f"{self.base_url}/embeddings",
                json={"model": self.model, "input": text},
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            raise EmbeddingProviderError(
                f"OpenAI request failed: {type(e).__name__}",
                provider=self.provider_name,
                code="CONNECTION_ERROR",
            ) from e

        if response.status_code >= 400:
            raise EmbeddingProviderError(
                f"OpenAI embedding request failed with HTTP {response.status_code}",
                provider=self.provider_name,
                status_code=response.status_code,
                retryable=status_is_retryable(response.status_code),
                code="HTTP_ERROR",
            )

        try:
            return response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EmbeddingProviderError(
                "OpenAI response has no data[0].embedding",
                provider=self.provider_name,
                code="INVALID_RESPONSE",
            ) from e

    async def health_check(self) -> bool:
        try:
            response = await self._client.get(f"{self.base_url}/models/{self.model}", headers=self._headers)
        except httpx.HTTPError as e:
            logger.warning(f"OpenAI health check failed: {type(e).__name__}")
            return False
        return response.status_code == 200

    async def pull_model(self) -> None:
        # Hosted models need no pull
        logger.info(f"OpenAI model {self.model} is hosted, nothing to pull")
