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

"""Embedding provider factory."""

import logging

from ..config import EmbeddingSettings, get_settings
from .base import EmbeddingProvider
from .ollama import OllamaEmbeddingProvider
from .openai import OpenAIEmbeddingProvider
from .throttling import MemoryPressureMonitor

logger = logging.getLogger(__name__)


def create_embedding_provider(config: EmbeddingSettings | None = None) -> EmbeddingProvider:
    """
    Build the configured embedding provider.

    Args:
        config: Embedding settings; defaults to the global settings

    Returns:
        An Ollama or OpenAI provider sharing the pipeline settings
    """
    if config is None:
        config = get_settings().embedding

    pressure = MemoryPressureMonitor(
        max_bytes=config.max_memory_bytes,
        threshold=config.memory_pressure_threshold,
        poll_interval=config.pressure_poll_interval,
        gc_hint=config.gc_on_pressure,
    )
    common = {
        "default_dimension": config.default_dimension,
        "batch_size": config.batch_size,
        "max_concurrency": config.max_concurrency,
        "max_retries": config.max_retries,
        "backoff_multiplier": config.backoff_multiplier,
        "backoff_max": config.backoff_max,
        "cache_size": config.cache_size,
        "pressure_monitor": pressure,
        "timeout": config.request_timeout,
    }

    if config.provider == "openai":
        logger.info(f"Using OpenAI embedding provider ({config.openai_model})")
        return OpenAIEmbeddingProvider(
            api_key=config.api_key.get_secret_value(),
            model=config.openai_model,
            base_url=config.openai_base_url,
            **common,
        )

    logger.info(f"Using Ollama embedding provider ({config.model} at {config.base_url})")
    return OllamaEmbeddingProvider(base_url=config.base_url, model=config.model, **common)
