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
Automatic relationship detection.

Finds edges between a new memory and the existing corpus along four
independent signals: semantic similarity, exact topic match, tag overlap, and
creation-time proximity. Candidates for the non-semantic passes come from a
low-threshold similarity scan, so two memories that are close in time but
semantically unrelated never receive a temporal edge.
"""

import logging
from dataclasses import dataclass, field

from ..config import RelationshipSettings
from ..models.memory import Memory, Relationship
from ..models.outcome import StepOutcome
from ..storage.base import RelationalStore, SimilarMatch, VectorIndex
from ..utils.similarity import jaccard_similarity, temporal_strength

logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    """Edges produced by one detection run, with the candidates that were considered."""

    memory_id: str
    relationships: list[Relationship] = field(default_factory=list)
    candidates_checked: int = 0

    def count_by_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for rel in self.relationships:
            counts[rel.relationship_type] = counts.get(rel.relationship_type, 0) + 1
        return counts


def in_scope(memory: Memory, candidate: Memory) -> bool:
    """Same creator and project as ``memory``, for whichever of those it has."""
    if memory.creator and candidate.creator != memory.creator:
        return False
    if memory.project and candidate.project != memory.project:
        return False
    return True


class RelationshipDetector:
    """Detects and persists relationships for newly stored memories."""

    def __init__(
        self,
        store: RelationalStore,
        index: VectorIndex,
        config: RelationshipSettings | None = None,
    ):
        self.store = store
        self.index = index
        self.config = config or RelationshipSettings()

    async def _candidates(self, memory: Memory, threshold: float, limit: int) -> list[tuple[Memory, float]]:
        """Active in-scope memories similar to ``memory``, best first, excluding itself."""
        # One extra slot since the memory usually finds itself
        matches: list[SimilarMatch] = await self.index.find_similar(memory.content, threshold, limit + 1)
        matches = [m for m in matches if m.memory_id != memory.id][:limit]
        if not matches:
            return []

        hydrated = await self.store.get_memories([m.memory_id for m in matches])
        candidates = []
        for match in matches:
            candidate = hydrated.get(match.memory_id)
            if candidate is None or not candidate.is_active or not in_scope(memory, candidate):
                continue
            candidates.append((candidate, match.similarity))
        return candidates

    def _edge(
        self,
        memory: Memory,
        candidate: Memory,
        relationship_type: str,
        strength: float,
        method: str,
        **extra,
    ) -> Relationship:
        return Relationship(
            source_id=memory.id,
            target_id=candidate.id,
            relationship_type=relationship_type,
            strength=max(0.0, min(1.0, strength)),
            bidirectional=True,
            metadata={"auto_generated": True, "detection_method": method, **extra},
        )

    async def _persist(self, edges: list[Relationship]) -> list[Relationship]:
        saved = []
        for edge in edges:
            saved.append(await self.store.create_relationship(edge))
        return saved

    # ------------------------------------------------------------------
    # Individual passes
    # ------------------------------------------------------------------

    def semantic_edges(
        self, memory: Memory, candidates: list[tuple[Memory, float]], threshold: float
    ) -> list[Relationship]:
        return [
            self._edge(memory, candidate, "semantic_similarity", similarity, "vector_similarity")
            for candidate, similarity in candidates
            if similarity >= threshold
        ]

    def topic_edges(self, memory: Memory, candidates: list[tuple[Memory, float]]) -> list[Relationship]:
        if not memory.topic:
            return []
        return [
            self._edge(
                memory,
                candidate,
                "topic_overlap",
                self.config.topic_overlap_strength,
                "topic_match",
                topic=memory.topic,
            )
            for candidate, _ in candidates
            if candidate.topic == memory.topic
        ]

    def tag_edges(self, memory: Memory, candidates: list[tuple[Memory, float]]) -> list[Relationship]:
        tags = memory.tags
        if not tags:
            return []
        edges = []
        for candidate, _ in candidates:
            ratio, shared = jaccard_similarity(tags, candidate.tags)
            if shared and ratio > self.config.tag_similarity_threshold:
                edges.append(
                    self._edge(
                        memory,
                        candidate,
                        "tag_similarity",
                        ratio,
                        "tag_jaccard",
                        shared_tags=shared,
                        jaccard_similarity=ratio,
                    )
                )
        return edges

    def temporal_edges(self, memory: Memory, candidates: list[tuple[Memory, float]]) -> list[Relationship]:
        edges = []
        for candidate, _ in candidates:
            delta = memory.created_at - candidate.created_at
            strength = temporal_strength(delta, self.config.temporal_window_seconds)
            if strength > self.config.temporal_min_strength:
                edges.append(
                    self._edge(
                        memory,
                        candidate,
                        "temporal_proximity",
                        strength,
                        "temporal_window",
                        time_difference_seconds=abs(delta),
                    )
                )
        return edges

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def seed(self, memory: Memory) -> StepOutcome:
        """
        Store-time pass: semantic similarity only, with the high seed threshold.

        Never raises; failures come back as a failed outcome.
        """
        try:
            candidates = await self._candidates(
                memory,
                self.config.seed_similarity_threshold,
                self.config.seed_result_limit,
            )
            edges = self.semantic_edges(memory, candidates, self.config.seed_similarity_threshold)
            saved = await self._persist(edges)
        except Exception as e:
            return StepOutcome.failure("relationship_seed", e)
        if saved:
            logger.debug(f"Seeded {len(saved)} semantic relationship(s) for memory {memory.id}")
        return StepOutcome.success("relationship_seed", saved)

    async def detect(self, memory: Memory) -> DetectionResult:
        """
        Full scan across all four signals.

        A memory that has no embedding yet is not searchable, so it gets no
        edges rather than an error.
        """
        result = DetectionResult(memory_id=memory.id)
        if not memory.is_searchable:
            logger.debug(f"Memory {memory.id} has no embedding yet, skipping relationship scan")
            return result

        candidates = await self._candidates(
            memory,
            self.config.candidate_similarity_threshold,
            self.config.max_candidates,
        )
        result.candidates_checked = len(candidates)

        edges = (
            self.semantic_edges(memory, candidates, self.config.scan_similarity_threshold)
            + self.topic_edges(memory, candidates)
            + self.tag_edges(memory, candidates)
            + self.temporal_edges(memory, candidates)
        )
        result.relationships = await self._persist(edges)
        logger.info(
            f"Detected {len(result.relationships)} relationship(s) for memory {memory.id} "
            f"across {result.candidates_checked} candidate(s): {result.count_by_type()}"
        )
        return result
