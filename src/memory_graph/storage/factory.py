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
Storage factory for the memory graph.

Builds the relational store, the vector index and the embedding provider from
settings.
"""

import logging

from ..config import Settings, get_settings
from ..embeddings.base import EmbeddingProvider
from ..embeddings.factory import create_embedding_provider
from ..services.memory_service import MemoryGraphService
from .qdrant_index import QdrantVectorIndex
from .sqlite_store import SQLiteMemoryStore

logger = logging.getLogger(__name__)


async def create_relational_store(config: Settings) -> SQLiteMemoryStore:
    store = SQLiteMemoryStore(config.storage.sqlite_path)
    await store.initialize()
    return store


async def create_vector_index(config: Settings, provider: EmbeddingProvider) -> QdrantVectorIndex:
    """
    Create and initialize the Qdrant vector index.

    Server mode when ``qdrant_url`` is set, otherwise embedded at
    ``qdrant_path`` (``:memory:`` or unset for in-process).
    """
    storage = config.storage
    index = QdrantVectorIndex(
        provider=provider,
        collection_name=storage.collection_name,
        distance_metric=storage.distance_metric,
        storage_path=storage.qdrant_path,
        url=storage.qdrant_url,
    )
    await index.initialize()
    mode = "server" if storage.qdrant_url else "embedded"
    logger.info(f"Vector index ready in {mode} mode (collection '{storage.collection_name}')")
    return index


async def create_storage(config: Settings | None = None):
    """
    Create the store, index and provider.

    Returns:
        Tuple of (relational store, vector index, embedding provider)
    """
    if config is None:
        config = get_settings()

    provider = create_embedding_provider(config.embedding)
    store = await create_relational_store(config)
    index = await create_vector_index(config, provider)
    return store, index, provider


async def create_memory_graph_service(config: Settings | None = None) -> MemoryGraphService:
    """Build storage from settings and wire the service façade."""
    if config is None:
        config = get_settings()

    store, index, provider = await create_storage(config)
    return MemoryGraphService(store, index, provider=provider, relationship_config=config.relationship)
