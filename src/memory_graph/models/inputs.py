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

"""Service input models.

Each public ``MemoryGraphService`` operation validates its arguments by
constructing the corresponding model, so range clamping, enum checking, and
required-field logic live here as declarative constraints.
"""

from __future__ import annotations

from typing import Any, Self

from pydantic import BaseModel, Field, field_validator, model_validator

from .validators import ConceptNames, Importance, MemoryId, MergeStrategy, RelationshipType, UnitFloat


class StoreMemoryParams(BaseModel):
    """Validated input for ``store``."""

    content: str = Field(min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)
    importance: Importance = 1
    concepts: ConceptNames = None

    @field_validator("content")
    @classmethod
    def content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be blank")
        return v

    @field_validator("context", mode="before")
    @classmethod
    def context_default(cls, v: Any) -> Any:
        return {} if v is None else v


class RetrieveParams(BaseModel):
    """Validated input for ``retrieve``."""

    query: str | None = None
    creator: str | None = None
    limit: int = Field(default=10, ge=1, le=100)
    similarity_threshold: UnitFloat = 0.7


class SearchParams(BaseModel):
    """Validated input for ``search``."""

    query: str = Field(min_length=1)
    similarity_threshold: UnitFloat = 0.7
    limit: int = Field(default=10, ge=1, le=100)


class ConnectParams(BaseModel):
    """Validated input for ``connect``."""

    source_id: MemoryId
    target_id: MemoryId
    relationship_type: RelationshipType = "explicit"
    strength: UnitFloat = 1.0
    bidirectional: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class RelatedParams(BaseModel):
    """Validated input for ``get_related``."""

    memory_id: MemoryId
    depth: int = Field(default=1, ge=1, le=5)
    min_strength: UnitFloat = 0.0


class UpdateMemoryParams(BaseModel):
    """Validated input for ``update_memory``."""

    memory_id: MemoryId
    content: str | None = Field(default=None, min_length=1)
    importance: Importance | None = None
    context: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None


class MergeParams(BaseModel):
    """Validated input for ``merge``.

    Rejects an empty secondary list, duplicated secondaries, and a primary
    that is also listed as a secondary.
    """

    primary_id: MemoryId
    secondary_ids: list[MemoryId] = Field(min_length=1)
    strategy: MergeStrategy = "combine"

    @model_validator(mode="after")
    def distinct_ids(self) -> Self:
        if self.primary_id in self.secondary_ids:
            raise ValueError("primary_id must not appear in secondary_ids")
        if len(set(self.secondary_ids)) != len(self.secondary_ids):
            raise ValueError("secondary_ids must not contain duplicates")
        return self
