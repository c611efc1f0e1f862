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

"""Embedding providers and the batch embedding pipeline."""

from .base import EmbeddingProvider, EmbeddingResult, is_retryable_error
from .factory import create_embedding_provider
from .ollama import OllamaEmbeddingProvider
from .openai import OpenAIEmbeddingProvider
from .throttling import ConcurrencyGate, MemoryPressureMonitor

__all__ = [
    "ConcurrencyGate",
    "EmbeddingProvider",
    "EmbeddingResult",
    "MemoryPressureMonitor",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "create_embedding_provider",
    "is_retryable_error",
]
