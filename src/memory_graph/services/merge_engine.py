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
Merge engine.

Folds one or more secondary memories into a primary memory. Everything that
can fail on bad input is checked before the first write. The primary update
and the retirement of the secondaries define success; embedding re-index,
relationship redirection and the audit record are auxiliary steps whose
failures are logged and swallowed.
"""

import logging
import time

from pydantic import ValidationError

from ..exceptions import MemoryValidationError, NotFoundError
from ..models.audit_log import MergeAuditRecord
from ..models.inputs import MergeParams
from ..models.memory import Concept, Memory, Relationship
from ..models.outcome import StepOutcome
from ..models.responses import MemoryNode
from ..models.validators import MERGE_STRATEGIES
from ..storage.base import RelationalStore, VectorIndex
from ..utils.hashing import generate_content_hash
from ..utils.metadata import merge_all

logger = logging.getLogger(__name__)

COMBINE_SEPARATOR = "\n\n---\n\n"
APPEND_SEPARATOR = "\n\n"


def merge_content(primary: Memory, secondaries: list[Memory], strategy: str) -> str:
    """Build the merged body for ``strategy``."""
    bodies = [primary.content] + [m.content for m in secondaries]
    if strategy == "combine":
        return COMBINE_SEPARATOR.join(bodies)
    if strategy == "append":
        return APPEND_SEPARATOR.join(bodies)
    if strategy == "replace":
        return primary.content
    raise MemoryValidationError(f"Unknown merge strategy: {strategy}")


def union_concepts(concept_lists: list[list[Concept]]) -> list[Concept]:
    """Union by name, keeping the higher-confidence record; first-seen order."""
    by_name: dict[str, Concept] = {}
    for concepts in concept_lists:
        for concept in concepts:
            current = by_name.get(concept.name)
            if current is None or concept.confidence > current.confidence:
                by_name[concept.name] = concept
    return list(by_name.values())


def edge_key(source_id: str, target_id: str) -> tuple[str, str]:
    return (source_id, target_id)


class MergeEngine:
    """Merges secondary memories into a primary memory."""

    def __init__(self, store: RelationalStore, index: VectorIndex):
        self.store = store
        self.index = index

    async def _load(self, primary_id: str, secondary_ids: list[str]) -> tuple[Memory, list[Memory]]:
        primary = await self.store.get_memory(primary_id)
        if primary is None:
            raise NotFoundError(primary_id)

        found = await self.store.get_memories(secondary_ids)
        missing = [sid for sid in secondary_ids if sid not in found]
        if missing:
            raise NotFoundError(missing, message=f"Secondary memories not found: {', '.join(missing)}")

        secondaries = [found[sid] for sid in secondary_ids]
        inactive = [m.id for m in [primary, *secondaries] if not m.is_active]
        if inactive:
            raise MemoryValidationError(f"Only active memories can be merged; not active: {', '.join(inactive)}")
        return primary, secondaries

    async def merge(
        self,
        primary_id: str,
        secondary_ids: list[str],
        strategy: str = "combine",
        created_by: str | None = None,
    ) -> MemoryNode:
        """
        Merge ``secondary_ids`` into ``primary_id``.

        Args:
            primary_id: Memory that survives and absorbs the others
            secondary_ids: Memories to fold in, in merge order
            strategy: ``combine``, ``replace`` or ``append``
            created_by: Recorded in the audit log

        Returns:
            The updated primary with its unioned concepts

        Raises:
            MemoryValidationError: Bad strategy, bad id list, inactive input, or hash collision
            NotFoundError: Primary or any secondary is missing
        """
        if strategy not in MERGE_STRATEGIES:
            raise MemoryValidationError(f"Unknown merge strategy: {strategy}")
        try:
            params = MergeParams(primary_id=primary_id, secondary_ids=secondary_ids, strategy=strategy)
        except ValidationError as e:
            raise MemoryValidationError(f"Invalid merge request: {e.errors()[0]['msg']}") from e

        primary, secondaries = await self._load(params.primary_id, params.secondary_ids)

        new_content = merge_content(primary, secondaries, params.strategy)
        new_hash = generate_content_hash(new_content)
        clashes = await self.store.search_memories(content_hash=new_hash, status="active")
        if any(m.id != primary.id for m in clashes):
            raise MemoryValidationError("Merged content duplicates another active memory")

        concept_lists = [await self.store.get_memory_concepts(m.id) for m in [primary, *secondaries]]
        concepts = union_concepts(concept_lists)

        # Primary update
        content_changed = new_hash != primary.content_hash
        metadata = merge_all([primary.metadata] + [m.metadata for m in secondaries])
        previous = metadata.get("merged_from", [])
        previous = previous if isinstance(previous, list) else [previous]
        metadata["merged_from"] = previous + [m.id for m in secondaries if m.id not in previous]

        primary.content = new_content
        primary.content_hash = new_hash
        primary.importance = max(m.importance for m in [primary, *secondaries])
        primary.metadata = metadata
        primary.touch()
        await self.store.update_memory(primary)

        await self.store.clear_memory_concepts(primary.id)
        for concept in concepts:
            await self.store.link_memory_concept(primary.id, concept.id)

        # Retire secondaries
        merged_at = time.time()
        for secondary in secondaries:
            secondary.metadata = {
                **secondary.metadata,
                "merged_into": primary.id,
                "merged_at": merged_at,
                "merge_strategy": params.strategy,
            }
            secondary.status = "merged"
            secondary.touch()
            await self.store.update_memory(secondary)

        outcomes = []
        if content_changed or not primary.is_searchable:
            outcomes.append(await self._reindex(primary))
        remap = {m.id: primary.id for m in secondaries}
        for secondary in secondaries:
            outcomes.append(await self._redirect(secondary.id, primary.id, remap))
        outcomes.append(await self._audit(primary.id, params.secondary_ids, params.strategy, created_by))

        for outcome in outcomes:
            if not outcome.ok:
                logger.warning(f"Merge into {primary.id}, auxiliary step failed (non-fatal): {outcome.describe()}")

        logger.info(f"Merged {len(secondaries)} memory(ies) into {primary.id} using '{params.strategy}'")
        return MemoryNode(memory=primary, concepts=concepts)

    # ------------------------------------------------------------------
    # Auxiliary steps
    # ------------------------------------------------------------------

    async def _reindex(self, primary: Memory) -> StepOutcome:
        try:
            if primary.embedding_reference:
                await self.index.update_vector(primary.embedding_reference, primary.content, primary.context)
            else:
                primary.embedding_reference = await self.index.index(primary.id, primary.content, primary.context)
                await self.store.update_memory(primary)
        except Exception as e:
            return StepOutcome.failure("reindex", e)
        return StepOutcome.success("reindex", primary.embedding_reference)

    async def _redirect(self, secondary_id: str, primary_id: str, remap: dict[str, str]) -> StepOutcome:
        """
        Move every edge touching ``secondary_id`` onto the primary.

        An edge is dropped instead of moved when it would become a self-loop,
        or when the primary already has an edge on the same endpoint pair (the
        reversed pair also counts when either edge is bidirectional). The
        original edge is deleted either way.
        """
        step = f"redirect:{secondary_id}"
        try:
            existing: dict[tuple[str, str], bool] = {}
            for rel in await self.store.get_relationships(primary_id):
                key = edge_key(rel.source_id, rel.target_id)
                existing[key] = existing.get(key, False) or rel.bidirectional

            redirected = skipped = 0
            for rel in await self.store.get_relationships(secondary_id):
                source = remap.get(rel.source_id, rel.source_id)
                target = remap.get(rel.target_id, rel.target_id)

                duplicate = edge_key(source, target) in existing or (
                    edge_key(target, source) in existing
                    and (existing[edge_key(target, source)] or rel.bidirectional)
                )
                if source == target or duplicate:
                    skipped += 1
                else:
                    moved = Relationship(
                        source_id=source,
                        target_id=target,
                        relationship_type=rel.relationship_type,
                        strength=rel.strength,
                        bidirectional=rel.bidirectional,
                        metadata={
                            **rel.metadata,
                            "redirected_from": {
                                "relationship_id": rel.id,
                                "original_source": rel.source_id,
                                "original_target": rel.target_id,
                            },
                        },
                        created_at=rel.created_at,
                    )
                    await self.store.create_relationship(moved)
                    key = edge_key(source, target)
                    existing[key] = existing.get(key, False) or moved.bidirectional
                    redirected += 1
                await self.store.delete_relationship(rel.id)
        except Exception as e:
            return StepOutcome.failure(step, e)
        return StepOutcome.success(step, {"redirected": redirected, "skipped": skipped})

    async def _audit(
        self, primary_id: str, secondary_ids: list[str], strategy: str, created_by: str | None
    ) -> StepOutcome:
        record = MergeAuditRecord(
            primary_id=primary_id,
            absorbed_ids=tuple(secondary_ids),
            strategy=strategy,
            created_by=created_by,
        )
        try:
            await self.store.append_merge_audit(record)
        except Exception as e:
            return StepOutcome.failure("audit", e)
        return StepOutcome.success("audit", record)
