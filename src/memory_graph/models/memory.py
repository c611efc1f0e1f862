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

"""Memory graph data models.

Pydantic v2 models for memories, concepts, relationships, and merge audit
records, with float epoch timestamps and ISO accessors.
"""

import logging
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as dateutil_parser
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .validators import (
    ConceptType,
    ContentHash,
    Importance,
    MemoryId,
    MemoryStatus,
    NonNegativeInt,
    RelationshipType,
    UnitFloat,
    normalize_tags,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def new_id() -> str:
    """Generate a new record identifier."""
    return uuid.uuid4().hex


def float_to_iso(ts: float) -> str:
    """Convert float timestamp to ISO string (UTC, Z-suffix)."""
    return datetime.fromtimestamp(ts, timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> float | None:
    """Normalise an epoch number or ISO string to a float timestamp.

    Returns None when the value is missing or cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = dateutil_parser.isoparse(value)
        except (ValueError, OverflowError):
            logger.debug("Unparseable timestamp %r", value)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


# ---------------------------------------------------------------------------
# Memory model
# ---------------------------------------------------------------------------


class Memory(BaseModel):
    """A stored unit of captured text plus its context and metadata."""

    model_config = ConfigDict(populate_by_name=True, validate_assignment=True)

    id: MemoryId = Field(default_factory=new_id)
    content: str = Field(min_length=1)
    content_hash: ContentHash
    context: dict[str, Any] = Field(default_factory=dict)
    importance: Importance = 1
    status: MemoryStatus = "active"
    access_count: NonNegativeInt = 0
    last_accessed_at: float | None = None
    # None until the vector index has accepted the content
    embedding_reference: str | None = None
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    creator: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def normalize_timestamp(cls, v: Any) -> Any:
        if isinstance(v, str):
            parsed = parse_timestamp(v)
            if parsed is None:
                raise ValueError(f"Invalid timestamp: {v!r}")
            return parsed
        return v

    @field_validator("last_accessed_at", mode="before")
    @classmethod
    def normalize_optional_timestamp(cls, v: Any) -> Any:
        return parse_timestamp(v) if isinstance(v, str) else v

    @property
    def created_at_iso(self) -> str:
        return float_to_iso(self.created_at)

    @property
    def updated_at_iso(self) -> str:
        return float_to_iso(self.updated_at)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def is_searchable(self) -> bool:
        """True once the memory has an embedding in the vector index."""
        return self.embedding_reference is not None

    @property
    def project(self) -> str | None:
        value = self.context.get("project")
        return str(value) if value else None

    @property
    def topic(self) -> str | None:
        value = self.context.get("topic")
        return str(value) if value else None

    @property
    def tags(self) -> list[str]:
        return normalize_tags(self.context.get("tags"))

    def touch(self) -> None:
        """Update the updated_at timestamp to the current time."""
        self.updated_at = time.time()


class Concept(BaseModel):
    """A topical tag linked to memories; unique by normalised name."""

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    description: str | None = None
    type: ConceptType = "topic"
    confidence: UnitFloat = 0.8
    extracted_at: float = Field(default_factory=time.time)


class Relationship(BaseModel):
    """A typed, strength-weighted edge between two memories."""

    id: str = Field(default_factory=new_id)
    source_id: MemoryId
    target_id: MemoryId
    relationship_type: RelationshipType
    strength: UnitFloat = 1.0
    bidirectional: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def other_end(self, memory_id: str) -> str:
        """Return the endpoint opposite ``memory_id``."""
        return self.target_id if self.source_id == memory_id else self.source_id

    def touches(self, memory_id: str) -> bool:
        return memory_id in (self.source_id, self.target_id)
