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
Memory Graph Service - business logic for memory graph operations.

Façade over the relational store, the vector index, the relationship detector
and the merge engine. The primary write of every operation (the new memory,
the updated memory, the merged primary) is the unit of success; embedding
indexing and relationship seeding are auxiliary steps that are logged on
failure and never surfaced to the caller.
"""

import logging
import time
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from ..config import RelationshipSettings
from ..embeddings.base import EmbeddingProvider
from ..exceptions import DuplicateContentError, MemoryValidationError, NotFoundError
from ..models.inputs import (
    ConnectParams,
    RelatedParams,
    RetrieveParams,
    SearchParams,
    StoreMemoryParams,
    UpdateMemoryParams,
)
from ..models.memory import Concept, Memory, Relationship
from ..models.outcome import StepOutcome
from ..models.responses import (
    MemoryNode,
    MemorySearchResults,
    MemoryStats,
    RelatedMemories,
    RelatedNode,
    ScoredMemory,
)
from ..storage.base import RelationalStore, VectorIndex
from ..utils.concepts import extract_concepts
from ..utils.hashing import generate_content_hash
from .merge_engine import MergeEngine
from .relationship_detector import RelationshipDetector

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)

# Traversal in get_related stops after this many hops
MAX_TRAVERSAL_DEPTH = 1


def _validate(model: type[P], **kwargs: Any) -> P:
    """Build an input model, translating pydantic errors."""
    try:
        return model(**kwargs)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"]) or model.__name__
        raise MemoryValidationError(f"Invalid {location}: {first['msg']}") from e


class MemoryGraphService:
    """
    Memory graph operations shared by every caller.

    All methods are coroutines and may suspend on store, index, and provider
    I/O.
    """

    def __init__(
        self,
        store: RelationalStore,
        index: VectorIndex,
        provider: EmbeddingProvider | None = None,
        relationship_config: RelationshipSettings | None = None,
    ):
        self.repository = store
        self.index = index
        self.provider = provider
        self.detector = RelationshipDetector(store, index, relationship_config)
        self.merger = MergeEngine(store, index)

    async def _node(self, memory: Memory) -> MemoryNode:
        return MemoryNode(memory=memory, concepts=await self.repository.get_memory_concepts(memory.id))

    async def _require(self, memory_id: str) -> Memory:
        memory = await self.repository.get_memory(memory_id)
        if memory is None:
            raise NotFoundError(memory_id)
        return memory

    def _report(self, memory_id: str, outcome: StepOutcome) -> None:
        if not outcome.ok:
            logger.warning(f"Memory {memory_id}: {outcome.describe()} (non-fatal)")

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    async def _resolve_concepts(self, memory: Memory, names: list[str]) -> list[Concept]:
        concepts = []
        for name in names:
            concept = await self.repository.find_concept_by_name(name)
            if concept is None:
                concept = await self.repository.create_concept(Concept(name=name, type="topic", confidence=0.8))
            await self.repository.link_memory_concept(memory.id, concept.id)
            concepts.append(concept)
        return concepts

    async def _index(self, memory: Memory) -> StepOutcome:
        try:
            reference = await self.index.index(memory.id, memory.content, memory.context)
            memory.embedding_reference = reference
            await self.repository.update_memory(memory)
        except Exception as e:
            return StepOutcome.failure("index", e)
        return StepOutcome.success("index", reference)

    async def store(
        self,
        content: str,
        context: dict[str, Any] | None = None,
        importance: int = 1,
        concepts: list[str] | None = None,
    ) -> MemoryNode:
        """
        Store a memory, or return the existing active memory with the same content.

        Args:
            content: Text to store
            context: Open map; ``user_id`` becomes the creator, ``project``,
                ``topic`` and ``tags`` drive relationship detection
            importance: 1..5
            concepts: Explicit concept names; extracted from content when omitted

        Returns:
            The stored (or pre-existing) memory with its concepts

        Raises:
            MemoryValidationError: Blank content or importance out of range
        """
        params = _validate(StoreMemoryParams, content=content, context=context, importance=importance, concepts=concepts)
        content_hash = generate_content_hash(params.content)

        existing = await self.repository.search_memories(content_hash=content_hash, status="active", limit=1)
        if existing:
            logger.debug(f"Duplicate content, returning existing memory {existing[0].id}")
            return await self._node(existing[0])

        creator = params.context.get("user_id")
        memory = Memory(
            content=params.content,
            content_hash=content_hash,
            context=params.context,
            importance=params.importance,
            creator=str(creator) if creator is not None else None,
        )
        try:
            await self.repository.create_memory(memory)
        except DuplicateContentError:
            # A concurrent store of the same content committed first
            winner = await self.repository.search_memories(content_hash=content_hash, status="active", limit=1)
            if not winner:
                raise
            logger.debug(f"Lost insert race, returning existing memory {winner[0].id}")
            return await self._node(winner[0])

        names = params.concepts if params.concepts is not None else extract_concepts(params.content)
        linked = await self._resolve_concepts(memory, names)

        index_outcome = await self._index(memory)
        self._report(memory.id, index_outcome)

        seed_outcome = await self.detector.seed(memory)
        self._report(memory.id, seed_outcome)

        logger.info(f"Stored memory {memory.id} ({len(linked)} concept(s))")
        return MemoryNode(memory=memory, concepts=linked)

    # ------------------------------------------------------------------
    # Read paths
    # ------------------------------------------------------------------

    async def retrieve(
        self,
        query: str | None = None,
        creator: str | None = None,
        limit: int = 10,
        similarity_threshold: float = 0.7,
    ) -> list[MemoryNode]:
        """
        Retrieve active memories.

        With a query, results follow vector similarity rank. Without one,
        newest first.
        """
        params = _validate(
            RetrieveParams, query=query, creator=creator, limit=limit, similarity_threshold=similarity_threshold
        )

        if params.query and params.query.strip():
            matches = await self.index.find_similar(params.query, params.similarity_threshold, params.limit)
            if not matches:
                return []
            rank = {m.memory_id: i for i, m in enumerate(matches)}
            memories = await self.repository.search_memories(
                ids=list(rank), status="active", creator=params.creator
            )
            memories.sort(key=lambda m: rank[m.id])
        else:
            memories = await self.repository.search_memories(status="active", creator=params.creator, limit=params.limit)

        return [await self._node(m) for m in memories]

    async def search(self, query: str, similarity_threshold: float = 0.7, limit: int = 10) -> MemorySearchResults:
        """Vector search over active memories, with similarity scores and timing."""
        params = _validate(SearchParams, query=query, similarity_threshold=similarity_threshold, limit=limit)
        start = time.perf_counter()

        matches = await self.index.find_similar(params.query, params.similarity_threshold, params.limit)
        hydrated = await self.repository.get_memories([m.memory_id for m in matches])

        results = []
        for match in matches:
            memory = hydrated.get(match.memory_id)
            if memory is None or not memory.is_active:
                continue
            results.append(ScoredMemory(node=await self._node(memory), similarity=match.similarity))

        elapsed_ms = (time.perf_counter() - start) * 1000
        return MemorySearchResults(results=results, total=len(results), processing_time_ms=elapsed_ms)

    async def get_memory(self, memory_id: str) -> MemoryNode:
        """Fetch one memory of any status and record the access."""
        memory = await self._require(memory_id)
        memory.access_count += 1
        memory.last_accessed_at = time.time()
        await self.repository.update_memory(memory)
        return await self._node(memory)

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    async def connect(
        self,
        source_id: str,
        target_id: str,
        relationship_type: str = "explicit",
        strength: float = 1.0,
        bidirectional: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> Relationship:
        """Create an explicit relationship; no duplicate check."""
        params = _validate(
            ConnectParams,
            source_id=source_id,
            target_id=target_id,
            relationship_type=relationship_type,
            strength=strength,
            bidirectional=bidirectional,
            metadata=metadata or {},
        )
        found = await self.repository.get_memories([params.source_id, params.target_id])
        missing = [mid for mid in (params.source_id, params.target_id) if mid not in found]
        if missing:
            raise NotFoundError(missing)

        relationship = Relationship(
            source_id=params.source_id,
            target_id=params.target_id,
            relationship_type=params.relationship_type,
            strength=params.strength,
            bidirectional=params.bidirectional,
            metadata=params.metadata,
        )
        return await self.repository.create_relationship(relationship)

    async def get_related(self, memory_id: str, depth: int = 1, min_strength: float = 0.0) -> RelatedMemories:
        """
        Direct neighbours of a memory over every stored relationship.

        ``depth`` and ``min_strength`` are validated but traversal is single
        hop and unfiltered; see ``MAX_TRAVERSAL_DEPTH``.
        """
        params = _validate(RelatedParams, memory_id=memory_id, depth=depth, min_strength=min_strength)
        if params.depth > MAX_TRAVERSAL_DEPTH:
            logger.debug(f"get_related depth {params.depth} requested, traversing {MAX_TRAVERSAL_DEPTH} hop")

        center = await self._require(params.memory_id)
        relationships = await self.repository.get_relationships(center.id)
        neighbours = await self.repository.get_memories(list({r.other_end(center.id) for r in relationships}))

        related = []
        for rel in relationships:
            neighbour = neighbours.get(rel.other_end(center.id))
            if neighbour is None or not neighbour.is_active:
                continue
            related.append(RelatedNode(node=await self._node(neighbour), relationship=rel, distance=1))

        center_node = await self._node(center)
        return RelatedMemories(center=center_node, related=related, concepts=center_node.concepts)

    async def detect_relationships(self, memory_id: str) -> list[Relationship]:
        """Run the full four-signal relationship scan for one memory."""
        memory = await self._require(memory_id)
        if not memory.is_active:
            raise MemoryValidationError(f"Memory {memory_id} is {memory.status}, not active")
        result = await self.detector.detect(memory)
        return result.relationships

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def update_memory(
        self,
        memory_id: str,
        content: str | None = None,
        importance: int | None = None,
        context: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryNode:
        """
        Update an active memory in place.

        A content change recomputes the hash and re-indexes the embedding.

        Raises:
            NotFoundError: Unknown id
            MemoryValidationError: Memory not active, bad values, or content
                that duplicates another active memory
        """
        params = _validate(
            UpdateMemoryParams,
            memory_id=memory_id,
            content=content,
            importance=importance,
            context=context,
            metadata=metadata,
        )
        memory = await self._require(params.memory_id)
        if not memory.is_active:
            raise MemoryValidationError(f"Memory {memory.id} is {memory.status} and cannot be updated")

        content_changed = False
        if params.content is not None and params.content != memory.content:
            if not params.content.strip():
                raise MemoryValidationError("content must not be blank")
            new_hash = generate_content_hash(params.content)
            clashes = await self.repository.search_memories(content_hash=new_hash, status="active")
            if any(m.id != memory.id for m in clashes):
                raise MemoryValidationError("Updated content duplicates another active memory")
            memory.content = params.content
            memory.content_hash = new_hash
            content_changed = True

        if params.importance is not None:
            memory.importance = params.importance
        if params.context is not None:
            memory.context = params.context
            user_id = params.context.get("user_id")
            memory.creator = str(user_id) if user_id is not None else memory.creator
        if params.metadata is not None:
            memory.metadata = params.metadata
        memory.touch()
        try:
            await self.repository.update_memory(memory)
        except DuplicateContentError as e:
            raise MemoryValidationError("Updated content duplicates another active memory") from e

        if content_changed:
            self._report(memory.id, await self._reindex(memory))
        return await self._node(memory)

    async def _reindex(self, memory: Memory) -> StepOutcome:
        if not memory.embedding_reference:
            return await self._index(memory)
        try:
            await self.index.update_vector(memory.embedding_reference, memory.content, memory.context)
        except Exception as e:
            return StepOutcome.failure("reindex", e)
        return StepOutcome.success("reindex", memory.embedding_reference)

    async def archive_memory(self, memory_id: str) -> MemoryNode:
        """Move an active memory to archived."""
        memory = await self._require(memory_id)
        if not memory.is_active:
            raise MemoryValidationError(f"Memory {memory.id} is {memory.status}; only active memories can be archived")
        memory.status = "archived"
        memory.touch()
        await self.repository.update_memory(memory)
        logger.info(f"Archived memory {memory.id}")
        return await self._node(memory)

    async def merge(
        self,
        primary_id: str,
        secondary_ids: list[str],
        strategy: str = "combine",
        created_by: str | None = None,
    ) -> MemoryNode:
        """Merge secondary memories into a primary; see ``MergeEngine.merge``."""
        return await self.merger.merge(primary_id, secondary_ids, strategy, created_by=created_by)

    # ------------------------------------------------------------------
    # Stats and health
    # ------------------------------------------------------------------

    async def get_stats(self) -> MemoryStats:
        return MemoryStats(**await self.repository.get_stats())

    async def health_check(self) -> dict[str, Any]:
        """Embedding provider availability plus basic store counts."""
        provider_ok: bool | None = None
        if self.provider is not None:
            provider_ok = await self.provider.health_check()
        stats = await self.get_stats()
        return {
            "status": "healthy" if provider_ok is not False else "degraded",
            "embedding_provider": {
                "available": provider_ok,
                **(self.provider.stats() if self.provider is not None else {}),
            },
            "total_memories": stats.total_memories,
            "total_relationships": stats.total_relationships,
            "total_concepts": stats.total_concepts,
        }
