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
Configuration for the memory graph service.

Settings are grouped by concern; each group reads its own environment prefix
(``MCP_EMBEDDING_``, ``MCP_RELATIONSHIP_``, ``MCP_STORAGE_``) and may also be
constructed directly with keyword arguments in tests.
"""

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

# Hard ceiling for in-flight embedding calls per provider instance
MAX_EMBEDDING_CONCURRENCY = 10


class EmbeddingSettings(BaseSettings):
    """Embedding model server and batch pipeline configuration."""

    model_config = SettingsConfigDict(env_prefix="MCP_EMBEDDING_", extra="ignore")

    provider: Literal["ollama", "openai"] = "ollama"
    base_url: str = "http://localhost:11434"
    model: str = "nomic-embed-text:latest"
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "text-embedding-3-small"
    api_key: SecretStr | None = None

    # Used for zero vectors before the first successful call reveals the real dimension
    default_dimension: int = Field(default=768, ge=1)

    batch_size: int = Field(default=32, ge=1, le=100)
    max_concurrency: int = Field(default=3, ge=1, le=MAX_EMBEDDING_CONCURRENCY)
    max_retries: int = Field(default=3, ge=1, le=10)
    backoff_multiplier: float = Field(default=1.0, ge=0.0)
    backoff_max: float = Field(default=10.0, ge=0.0)
    request_timeout: float = Field(default=30.0, gt=0.0)
    cache_size: int = Field(default=1000, ge=0)

    # Memory-pressure throttling for batch processing
    max_memory_bytes: int = Field(default=512 * 1024 * 1024, ge=1)
    memory_pressure_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    pressure_poll_interval: float = Field(default=0.5, ge=0.0)
    gc_on_pressure: bool = True

    @model_validator(mode="after")
    def openai_needs_key(self) -> "EmbeddingSettings":
        if self.provider == "openai" and self.api_key is None:
            raise ValueError("MCP_EMBEDDING_API_KEY is required when using the OpenAI provider")
        return self


class RelationshipSettings(BaseSettings):
    """Thresholds for automatic relationship detection."""

    model_config = SettingsConfigDict(env_prefix="MCP_RELATIONSHIP_", extra="ignore")

    seed_similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    seed_result_limit: int = Field(default=5, ge=1)
    scan_similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    candidate_similarity_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    max_candidates: int = Field(default=50, ge=1)
    topic_overlap_strength: float = Field(default=0.8, ge=0.0, le=1.0)
    tag_similarity_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    temporal_window_seconds: float = Field(default=24 * 60 * 60, gt=0.0)
    temporal_min_strength: float = Field(default=0.1, ge=0.0, le=1.0)


class StorageSettings(BaseSettings):
    """Relational store and vector index locations."""

    model_config = SettingsConfigDict(env_prefix="MCP_STORAGE_", extra="ignore")

    sqlite_path: str = "./data/memory_graph.db"
    qdrant_url: str | None = None
    qdrant_path: str | None = "./data/qdrant"
    collection_name: str = "memory_graph"
    distance_metric: Literal["Cosine", "Dot", "Euclid"] = "Cosine"


class Settings(BaseSettings):
    """Top-level settings container."""

    model_config = SettingsConfigDict(env_prefix="MCP_", extra="ignore")

    log_level: str = "INFO"
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    relationship: RelationshipSettings = Field(default_factory=RelationshipSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)


@lru_cache
def get_settings() -> Settings:
    """Load settings from the environment on first use."""
    return Settings()
