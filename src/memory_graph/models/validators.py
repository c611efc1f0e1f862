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

"""Shared Pydantic types and validators for reuse across models.

Centralises tag and concept-name normalisation, range-clamped numbers,
identifier constraints, and Literal enums so every model speaks the same
language.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, TypeAlias

from pydantic import BeforeValidator, Field

# ---------------------------------------------------------------------------
# Open key/value payloads
# ---------------------------------------------------------------------------

MetadataValue: TypeAlias = str | int | float | bool | None | list["MetadataValue"] | dict[str, "MetadataValue"]
"""A tagged value inside an open context/metadata map."""

OpenMap: TypeAlias = dict[str, MetadataValue]
"""String-keyed open map used for memory context and metadata."""


# ---------------------------------------------------------------------------
# Tag and concept normalisation
# ---------------------------------------------------------------------------


def normalize_tags(v: Any) -> list[str]:
    """Accept ``str | list | None`` and return a clean ``list[str]``.

    * ``"a, b, c"`` → ``["a", "b", "c"]``
    * ``["a", None, " b "]`` → ``["a", "b"]``
    * ``None`` → ``[]``
    """
    if v is None:
        return []
    if isinstance(v, str):
        return [t.strip() for t in v.split(",") if t.strip()]
    if isinstance(v, list | tuple | set | frozenset):
        return [s for item in v if item is not None and (s := str(item).strip())]
    return []


def normalize_concept_name(name: Any) -> str:
    """Concept names are unique case-insensitively: strip and lower-case."""
    return str(name).strip().lower()


def normalize_concept_names(v: Any) -> list[str] | None:
    """Normalise an explicit concept list, keeping first-seen order.

    ``None`` stays ``None`` so callers can tell "not given" from "empty".
    """
    if v is None:
        return None
    seen: dict[str, None] = {}
    for item in normalize_tags(v):
        name = normalize_concept_name(item)
        if name:
            seen.setdefault(name, None)
    return list(seen)


ConceptNames = Annotated[list[str] | None, BeforeValidator(normalize_concept_names)]
"""Explicit concept list: normalised names, or None when not provided."""


# ---------------------------------------------------------------------------
# Numeric types
# ---------------------------------------------------------------------------

UnitFloat = Annotated[float, Field(ge=0.0, le=1.0)]
"""Float in [0.0, 1.0], used for strengths and confidences."""

NonNegativeInt = Annotated[int, Field(ge=0)]
"""Non-negative integer count."""

Importance = Annotated[int, Field(ge=1, le=5)]
"""Memory importance on a 1..5 scale."""


# ---------------------------------------------------------------------------
# String constraints
# ---------------------------------------------------------------------------

MemoryId = Annotated[str, Field(min_length=1)]
"""Non-empty memory identifier."""

ContentHash = Annotated[str, Field(min_length=1)]
"""Non-empty content hash."""


# ---------------------------------------------------------------------------
# Literal enums
# ---------------------------------------------------------------------------

MemoryStatus = Literal["active", "archived", "merged"]
ConceptType = Literal["entity", "topic", "skill", "project", "person", "custom"]
RelationshipType = Literal[
    "semantic_similarity",
    "topic_overlap",
    "tag_similarity",
    "temporal_proximity",
    "explicit",
]
MergeStrategy = Literal["combine", "replace", "append"]

MERGE_STRATEGIES: frozenset[str] = frozenset({"combine", "replace", "append"})