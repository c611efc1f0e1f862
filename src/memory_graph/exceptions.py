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

"""Typed failures surfaced by the memory graph.

``NotFoundError`` and ``MemoryValidationError`` reach the caller unchanged and
are never retried. ``EmbeddingProviderError`` is retried by the embedding
pipeline with bounded backoff and becomes terminal for that one text only.
"""


class MemoryGraphError(Exception):
    """Base class for memory graph failures."""

    code = "MEMORY_GRAPH_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class NotFoundError(MemoryGraphError):
    """A referenced memory id does not exist."""

    code = "NOT_FOUND"

    def __init__(self, memory_ids: str | list[str], message: str | None = None):
        self.memory_ids = [memory_ids] if isinstance(memory_ids, str) else list(memory_ids)
        if message is None:
            if len(self.memory_ids) == 1:
                message = f"Memory with id {self.memory_ids[0]} not found"
            else:
                message = f"Memories not found: {', '.join(self.memory_ids)}"
        super().__init__(message)


class MemoryValidationError(MemoryGraphError):
    """Bad input (unknown strategy, missing id, illegal state transition)."""

    code = "VALIDATION_ERROR"


class StorageError(MemoryGraphError):
    """Relational store or vector index failure."""

    code = "STORAGE_ERROR"


class DuplicateContentError(StorageError):
    """Another active memory already holds this content hash."""

    code = "DUPLICATE_CONTENT"

    def __init__(self, content_hash: str):
        super().__init__(f"Active memory with content hash {content_hash} already exists")
        self.content_hash = content_hash


class EmbeddingProviderError(MemoryGraphError):
    """The embedding model server failed or returned an unusable payload."""

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str,
        status_code: int | None = None,
        retryable: bool = True,
        code: str | None = None,
    ):
        super().__init__(message, code=code)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class EmbeddingDimensionError(EmbeddingProviderError):
    """A returned vector does not match the dimension fixed by the first response."""

    code = "DIMENSION_MISMATCH"

    def __init__(self, provider: str, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}",
            provider=provider,
        )
        self.expected = expected
        self.actual = actual
