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

"""Service-layer response models.

Typed Pydantic models returned by ``MemoryGraphService``: a memory together
with its concepts, search results with similarity scores, one-hop
neighbourhoods, and aggregate statistics.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .memory import Concept, Memory, Relationship

# ---------------------------------------------------------------------------
# Memory nodes
# ---------------------------------------------------------------------------


class MemoryNode(BaseModel):
    """A memory as the caller sees it: the record plus its linked concepts."""

    memory: Memory
    concepts: list[Concept] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.memory.id

    @property
    def content(self) -> str:
        return self.memory.content

    @property
    def concept_names(self) -> list[str]:
        return [c.name for c in self.concepts]

    def to_dict(self) -> dict[str, Any]:
        data = self.memory.model_dump()
        data["created_at_iso"] = self.memory.created_at_iso
        data["updated_at_iso"] = self.memory.updated_at_iso
        data["concepts"] = [c.model_dump() for c in self.concepts]
        return data


class ScoredMemory(BaseModel):
    """A memory node with its similarity to the query."""

    node: MemoryNode
    similarity: float


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class MemorySearchResults(BaseModel):
    """Ranked vector-search results."""

    results: list[ScoredMemory] = Field(default_factory=list)
    total: int = 0
    processing_time_ms: float = 0.0

    @property
    def memories(self) -> list[MemoryNode]:
        return [r.node for r in self.results]


# ---------------------------------------------------------------------------
# Graph neighbourhood
# ---------------------------------------------------------------------------


class RelatedNode(BaseModel):
    """A neighbour of the center memory and the edge that reached it."""

    node: MemoryNode
    relationship: Relationship
    distance: int = 1


class RelatedMemories(BaseModel):
    """The center memory, its direct neighbours, and its concepts."""

    center: MemoryNode
    related: list[RelatedNode] = Field(default_factory=list)
    concepts: list[Concept] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


class CreatorCount(BaseModel):
    creator: str
    count: int


class ProjectCount(BaseModel):
    project: str
    count: int


class ConceptCount(BaseModel):
    name: str
    count: int


class MemoryStats(BaseModel):
    """Aggregate counts over the memory graph."""

    total_memories: int = 0
    total_relationships: int = 0
    total_concepts: int = 0
    average_importance: float = 0.0
    status_counts: dict[str, int] = Field(default_factory=dict)
    most_active_creators: list[CreatorCount] = Field(default_factory=list)
    top_projects: list[ProjectCount] = Field(default_factory=list)
    concept_distribution: dict[str, int] = Field(default_factory=dict)
    top_concepts: list[ConceptCount] = Field(default_factory=list)
