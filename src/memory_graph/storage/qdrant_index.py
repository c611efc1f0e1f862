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
Qdrant vector index.

Stores one point per memory in a Qdrant collection (embedded path, in-process
``:memory:`` or a server URL). Embeddings come from an ``EmbeddingProvider``;
the collection is created lazily with the dimension of the first vector, since
the provider only discovers it at runtime. Blocking client calls run in the
default executor.
"""

import asyncio
import logging
import uuid
from typing import Any

from qdrant_client import QdrantClient
from qdrant_client.models import Distance, PointStruct, VectorParams

from ..embeddings.base import EmbeddingProvider
from ..exceptions import StorageError
from .base import SimilarMatch, VectorIndex

logger = logging.getLogger(__name__)

DISTANCES = {
    "Cosine": Distance.COSINE,
    "Dot": Distance.DOT,
    "Euclid": Distance.EUCLID,
}


def memory_id_to_point_id(memory_id: str) -> str:
    """Qdrant point ids must be UUIDs; map a memory id onto one deterministically."""
    try:
        return str(uuid.UUID(memory_id))
    except ValueError:
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"memory:{memory_id}"))


class QdrantVectorIndex(VectorIndex):
    """``VectorIndex`` backed by a single Qdrant collection."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        collection_name: str = "memory_graph",
        distance_metric: str = "Cosine",
        storage_path: str | None = None,
        url: str | None = None,
        client: QdrantClient | None = None,
    ):
        """
        Initialize the index in server, embedded, or in-process mode.

        Args:
            provider: Embedding provider used for indexing and text queries
            collection_name: Qdrant collection holding memory vectors
            distance_metric: ``Cosine``, ``Dot`` or ``Euclid``
            storage_path: Embedded mode directory, or ``:memory:``
            url: Server mode URL; takes precedence over ``storage_path``
            client: Pre-built client (tests)
        """
        if distance_metric not in DISTANCES:
            raise ValueError(f"Unknown distance metric: {distance_metric}")
        self.provider = provider
        self.collection_name = collection_name
        self.distance_metric = distance_metric
        self.storage_path = storage_path
        self.url = url
        self.client = client
        self._vector_size: int | None = None

    async def initialize(self) -> None:
        loop = asyncio.get_event_loop()
        if self.client is None:
            if self.url:
                self.client = await loop.run_in_executor(None, lambda: QdrantClient(url=self.url))
                logger.info(f"Connected to Qdrant server at {self.url}")
            elif self.storage_path and self.storage_path != ":memory:":
                self.client = await loop.run_in_executor(None, lambda: QdrantClient(path=self.storage_path))
                logger.info(f"Initialized Qdrant embedded storage at {self.storage_path}")
            else:
                self.client = QdrantClient(":memory:")
                logger.info("Initialized in-process Qdrant storage")

        exists = await loop.run_in_executor(None, self.client.collection_exists, self.collection_name)
        if exists:
            info = await loop.run_in_executor(None, self.client.get_collection, self.collection_name)
            self._vector_size = info.config.params.vectors.size
            logger.info(f"Using existing collection '{self.collection_name}' (vector size {self._vector_size})")

    async def close(self) -> None:
        if self.client is not None:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, self.client.close)

    def _require_client(self) -> QdrantClient:
        if self.client is None:
            raise StorageError("QdrantVectorIndex used before initialize()")
        return self.client

    async def _ensure_collection(self, vector_size: int) -> None:
        if self._vector_size is not None:
            if vector_size != self._vector_size:
                raise StorageError(
                    f"Vector size {vector_size} does not match collection '{self.collection_name}' "
                    f"({self._vector_size}); the embedding model changed"
                )
            return

        client = self._require_client()
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(
            None,
            lambda: client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(size=vector_size, distance=DISTANCES[self.distance_metric]),
            ),
        )
        self._vector_size = vector_size
        logger.info(f"Created collection '{self.collection_name}' with vector size {vector_size}")

    async def _upsert(self, point_id: str, memory_id: str, vector: list[float], context: dict[str, Any] | None) -> None:
        await self._ensure_collection(len(vector))
        client = self._require_client()
        point = PointStruct(
            id=point_id,
            vector=vector,
            payload={"memory_id": memory_id, "context": context or {}},
        )
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(
            None, lambda: client.upsert(collection_name=self.collection_name, points=[point])
        )

    async def index(self, memory_id: str, text: str, context: dict[str, Any] | None = None) -> str:
        """Embed ``text`` and upsert it; the reference is the Qdrant point id."""
        vector = await self.provider.generate_embedding(text)
        point_id = memory_id_to_point_id(memory_id)
        await self._upsert(point_id, memory_id, vector, context)
        logger.debug(f"Indexed memory {memory_id} as point {point_id}")
        return point_id

    async def update_vector(self, reference: str, text: str, context: dict[str, Any] | None = None) -> None:
        client = self._require_client()
        loop = asyncio.get_event_loop()
        existing = await loop.run_in_executor(
            None,
            lambda: client.retrieve(collection_name=self.collection_name, ids=[reference], with_payload=True),
        )
        if not existing:
            raise StorageError(f"No vector point with reference {reference}")
        memory_id = existing[0].payload.get("memory_id", reference)
        vector = await self.provider.generate_embedding(text)
        await self._upsert(reference, memory_id, vector, context)

    async def find_similar(
        self,
        query: str | list[float],
        threshold: float,
        limit: int,
    ) -> list[SimilarMatch]:
        if self._vector_size is None:
            # Nothing indexed yet
            return []

        vector = await self.provider.generate_embedding(query) if isinstance(query, str) else list(query)
        if len(vector) != self._vector_size:
            raise StorageError(f"Query vector size {len(vector)} does not match collection size {self._vector_size}")

        client = self._require_client()
        loop = asyncio.get_event_loop()
        response = await loop.run_in_executor(
            None,
            lambda: client.query_points(
                collection_name=self.collection_name,
                query=vector,
                limit=limit,
                score_threshold=threshold,
                with_payload=True,
                with_vectors=False,
            ),
        )

        matches = []
        for scored_point in response.points:
            payload = scored_point.payload or {}
            memory_id = payload.get("memory_id")
            if memory_id is None:
                continue
            matches.append(SimilarMatch(memory_id=memory_id, similarity=float(scored_point.score)))
        return matches
