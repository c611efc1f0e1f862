"""
Tests for merging memories.

Covers:
- Content strategies (combine / replace / append) and importance
- Metadata merging and merge pointers on secondaries
- Concept union
- Relationship redirection (self-loops, duplicates, origin metadata)
- Audit record
- Validation before any write
- Auxiliary failures swallowed
"""

from unittest.mock import AsyncMock

import pytest

from memory_graph.exceptions import MemoryValidationError, NotFoundError, StorageError
from memory_graph.models.memory import Concept
from memory_graph.services.merge_engine import union_concepts
from memory_graph.utils.hashing import generate_content_hash


@pytest.fixture
async def trio(service):
    """Three unrelated active memories A, B, C with importance 2, 5, 3."""
    a = await service.store("Primary body", {"user_id": "ann"}, importance=2, concepts=["alpha"])
    b = await service.store("Second body", {"user_id": "ann"}, importance=5, concepts=["beta"])
    c = await service.store("Third body", {"user_id": "bob"}, importance=3, concepts=["alpha", "gamma"])
    return a.memory, b.memory, c.memory


class TestMergeContent:
    @pytest.mark.asyncio
    async def test_combine_conserves_bodies_in_order(self, service, store, trio):
        a, b, c = trio

        merged = await service.merge(a.id, [b.id, c.id], "combine")

        assert merged.content == "Primary body\n\n---\n\nSecond body\n\n---\n\nThird body"
        assert merged.memory.importance == 5
        assert merged.memory.content_hash == generate_content_hash(merged.content)

        for secondary in (b, c):
            loaded = await store.get_memory(secondary.id)
            assert loaded.status == "merged"
            assert loaded.metadata["merged_into"] == a.id
            assert loaded.metadata["merge_strategy"] == "combine"
            assert "merged_at" in loaded.metadata

    @pytest.mark.asyncio
    async def test_append(self, service):
        start = await service.store("Start content")
        middle = await service.store("Middle content")
        end = await service.store("End content")

        merged = await service.merge(start.id, [middle.id, end.id], "append")
        assert merged.content == "Start content\n\nMiddle content\n\nEnd content"

    @pytest.mark.asyncio
    async def test_replace_keeps_primary_body(self, service, trio):
        a, b, c = trio
        merged = await service.merge(a.id, [b.id, c.id], "replace")
        assert merged.content == "Primary body"
        assert merged.memory.importance == 5

    @pytest.mark.asyncio
    async def test_merged_content_is_reindexed(self, service, index, trio):
        a, b, _ = trio
        merged = await service.merge(a.id, [b.id], "combine")

        memory_id, vector = index.points[merged.memory.embedding_reference]
        assert memory_id == a.id
        assert vector == await service.provider.generate_embedding(merged.content)


class TestMergeMetadataAndConcepts:
    @pytest.mark.asyncio
    async def test_metadata_merged_field_by_field(self, service, trio):
        a, b, c = trio
        await service.update_memory(a.id, metadata={"source": "slack", "labels": ["x"], "owner": {"team": "core"}})
        await service.update_memory(b.id, metadata={"source": "email", "labels": ["x", "y"], "owner": {"team": "core"}})

        merged = await service.merge(a.id, [b.id, c.id])

        metadata = merged.memory.metadata
        assert metadata["source"] == ["slack", "email"]
        assert metadata["labels"] == ["x", "y"]
        assert metadata["owner"] == {"team": "core"}
        assert metadata["merged_from"] == [b.id, c.id]

    @pytest.mark.asyncio
    async def test_concepts_unioned_by_name(self, service, store, trio):
        a, b, c = trio
        merged = await service.merge(a.id, [b.id, c.id])

        assert sorted(merged.concept_names) == ["alpha", "beta", "gamma"]
        assert sorted(c.name for c in await store.get_memory_concepts(a.id)) == ["alpha", "beta", "gamma"]

    def test_union_keeps_higher_confidence(self):
        low = Concept(name="python", confidence=0.4)
        high = Concept(name="python", confidence=0.9)
        other = Concept(name="rust")

        result = union_concepts([[low, other], [high]])

        assert [c.name for c in result] == ["python", "rust"]
        assert result[0].confidence == 0.9


class TestRelationshipRedirection:
    @pytest.mark.asyncio
    async def test_no_relationship_references_secondaries(self, service, store, trio):
        a, b, c = trio
        d = (await service.store("Fourth body")).memory
        await service.connect(b.id, d.id, metadata={"note": "b-d"})
        await service.connect(c.id, b.id)
        await service.connect(a.id, b.id)

        await service.merge(a.id, [b.id, c.id])

        assert await store.get_relationships(b.id) == []
        assert await store.get_relationships(c.id) == []

        edges = await store.get_relationships(a.id)
        assert len(edges) == 1
        moved = edges[0]
        assert (moved.source_id, moved.target_id) == (a.id, d.id)
        assert moved.metadata["note"] == "b-d"
        assert moved.metadata["redirected_from"]["original_source"] == b.id
        assert moved.metadata["redirected_from"]["original_target"] == d.id

    @pytest.mark.asyncio
    async def test_duplicate_on_primary_is_skipped(self, service, store, trio):
        a, b, _ = trio
        d = (await service.store("Fourth body")).memory
        existing = await service.connect(a.id, d.id)
        await service.connect(b.id, d.id)

        await service.merge(a.id, [b.id])

        edges = await store.get_relationships(a.id)
        assert [e.id for e in edges] == [existing.id]

    @pytest.mark.asyncio
    async def test_reverse_pair_is_duplicate_only_when_bidirectional(self, service, store, trio):
        a, b, c = trio
        d = (await service.store("Fourth body")).memory
        e = (await service.store("Fifth body")).memory
        await service.connect(d.id, a.id, bidirectional=True)
        await service.connect(a.id, e.id)
        await service.connect(b.id, d.id)
        await service.connect(c.id, e.id)
        await service.connect(e.id, c.id)

        await service.merge(a.id, [b.id, c.id])

        pairs = sorted((r.source_id, r.target_id) for r in await store.get_relationships(a.id))
        # b->d reversed matches bidirectional d->a: skipped. c->e duplicates a->e: skipped.
        # e->c becomes e->a; a->e is one-way, so the reverse is kept.
        assert pairs == sorted([(d.id, a.id), (a.id, e.id), (e.id, a.id)])

    @pytest.mark.asyncio
    async def test_redirect_failure_is_swallowed(self, service, store, trio, monkeypatch):
        a, b, _ = trio
        d = (await service.store("Fourth body")).memory
        await service.connect(b.id, d.id)
        monkeypatch.setattr(store, "delete_relationship", AsyncMock(side_effect=StorageError("disk full")))

        merged = await service.merge(a.id, [b.id])

        assert merged.memory.id == a.id
        assert (await store.get_memory(b.id)).status == "merged"
        assert len(await store.get_merge_audits(a.id)) == 1


class TestAudit:
    @pytest.mark.asyncio
    async def test_audit_record_appended(self, service, store, trio):
        a, b, c = trio
        await service.merge(a.id, [b.id, c.id], "append", created_by="ann")

        audits = await store.get_merge_audits(a.id)
        assert len(audits) == 1
        assert audits[0].absorbed_ids == (b.id, c.id)
        assert audits[0].strategy == "append"
        assert audits[0].created_by == "ann"

    @pytest.mark.asyncio
    async def test_audit_failure_is_swallowed(self, service, store, trio, monkeypatch):
        a, b, _ = trio
        monkeypatch.setattr(store, "append_merge_audit", AsyncMock(side_effect=StorageError("locked")))

        merged = await service.merge(a.id, [b.id])
        assert merged.memory.importance == 5


class TestMergeValidation:
    @pytest.mark.asyncio
    async def test_unknown_strategy(self, service, trio):
        a, b, _ = trio
        with pytest.raises(MemoryValidationError, match="Unknown merge strategy: unknown"):
            await service.merge(a.id, [b.id], "unknown")

    @pytest.mark.asyncio
    async def test_missing_primary(self, service, trio):
        _, b, _ = trio
        with pytest.raises(NotFoundError, match="Memory with id nope not found"):
            await service.merge("nope", [b.id])

    @pytest.mark.asyncio
    async def test_missing_secondaries_listed(self, service, trio):
        a, b, _ = trio
        with pytest.raises(NotFoundError, match="Secondary memories not found: x1, x2") as exc_info:
            await service.merge(a.id, [b.id, "x1", "x2"])
        assert exc_info.value.memory_ids == ["x1", "x2"]

    @pytest.mark.asyncio
    async def test_primary_in_secondaries(self, service, trio):
        a, b, _ = trio
        with pytest.raises(MemoryValidationError):
            await service.merge(a.id, [b.id, a.id])

    @pytest.mark.asyncio
    async def test_empty_secondaries(self, service, trio):
        a, _, _ = trio
        with pytest.raises(MemoryValidationError):
            await service.merge(a.id, [])

    @pytest.mark.asyncio
    async def test_merged_memory_cannot_merge_again(self, service, store, trio):
        a, b, c = trio
        await service.merge(a.id, [b.id])

        with pytest.raises(MemoryValidationError):
            await service.merge(c.id, [b.id])
        assert (await store.get_memory(c.id)).status == "active"

    @pytest.mark.asyncio
    async def test_hash_collision_rejected_before_writes(self, service, store, trio):
        a, b, _ = trio
        await service.store("Primary body\n\n---\n\nSecond body")

        with pytest.raises(MemoryValidationError):
            await service.merge(a.id, [b.id])

        assert (await store.get_memory(a.id)).content == "Primary body"
        assert (await store.get_memory(b.id)).status == "active"
        assert await store.get_merge_audits() == []
