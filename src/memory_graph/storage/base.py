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
Abstract storage interfaces for the memory graph.

``RelationalStore`` holds memories, concepts, relationships and merge audit
records. ``VectorIndex`` holds one embedding per indexed memory and answers
nearest-neighbour queries. The two are independent services with no shared
transaction.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from ..models.audit_log import MergeAuditRecord
from ..models.memory import Concept, Memory, Relationship


@dataclass(frozen=True, slots=True)
class SimilarMatch:
    """One ranked vector-search hit."""

    memory_id: str
    similarity: float


class RelationalStore(ABC):
    """Durable records for memories, concepts, relationships and audits."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables and open connections."""

    async def close(self) -> None:
        """Release connections."""

    # -- memories -------------------------------------------------------

    @abstractmethod
    async def create_memory(self, memory: Memory) -> Memory:
        pass

    @abstractmethod
    async def get_memory(self, memory_id: str) -> Memory | None:
        pass

    @abstractmethod
    async def update_memory(self, memory: Memory) -> Memory:
        """Persist every field of ``memory``; raises NotFoundError if absent."""

    @abstractmethod
    async def search_memories(
        self,
        *,
        ids: list[str] | None = None,
        content_hash: str | None = None,
        status: str | None = None,
        creator: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Memory]:
        """Filter memories; newest first."""

    async def get_memories(self, memory_ids: list[str]) -> dict[str, Memory]:
        """Fetch several memories by id, keyed by id."""
        if not memory_ids:
            return {}
        found = await self.search_memories(ids=memory_ids)
        return {m.id: m for m in found}

    # -- concepts -------------------------------------------------------

    @abstractmethod
    async def create_concept(self, concept: Concept) -> Concept:
        pass

    @abstractmethod
    async def find_concept_by_name(self, name: str) -> Concept | None:
        pass

    @abstractmethod
    async def link_memory_concept(self, memory_id: str, concept_id: str) -> None:
        """Link a concept to a memory; linking twice is a no-op."""

    @abstractmethod
    async def get_memory_concepts(self, memory_id: str) -> list[Concept]:
        pass

    @abstractmethod
    async def clear_memory_concepts(self, memory_id: str) -> None:
        pass

    # -- relationships --------------------------------------------------

    @abstractmethod
    async def create_relationship(self, relationship: Relationship) -> Relationship:
        pass

    @abstractmethod
    async def get_relationships(self, memory_id: str) -> list[Relationship]:
        """Every relationship with ``memory_id`` as source or target."""

    @abstractmethod
    async def delete_relationship(self, relationship_id: str) -> bool:
        pass

    # -- audit ----------------------------------------------------------

    @abstractmethod
    async def append_merge_audit(self, record: MergeAuditRecord) -> None:
        pass

    @abstractmethod
    async def get_merge_audits(self, primary_id: str | None = None) -> list[MergeAuditRecord]:
        pass

    # -- stats ----------------------------------------------------------

    @abstractmethod
    async def get_stats(self, top_n: int = 10) -> dict[str, Any]:
        """Aggregate counts; see ``MemoryStats`` for the keys."""


class VectorIndex(ABC):
    """Nearest-neighbour index over memory embeddings."""

    @abstractmethod
    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        """Release the index client."""

    @abstractmethod
    async def index(self, memory_id: str, text: str, context: dict[str, Any] | None = None) -> str:
        """Embed and store ``text``; return the embedding reference."""

    @abstractmethod
    async def find_similar(
        self,
        query: str | list[float],
        threshold: float,
        limit: int,
    ) -> list[SimilarMatch]:
        """Ranked matches with similarity >= ``threshold``, best first."""

    @abstractmethod
    async def update_vector(self, reference: str, text: str, context: dict[str, Any] | None = None) -> None:
        """Re-embed the point behind ``reference``."""
