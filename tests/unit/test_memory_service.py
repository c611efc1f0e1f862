"""
Unit tests for MemoryGraphService.

Runs the service against an in-memory SQLite store and a brute-force stub
vector index.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from memory_graph.exceptions import MemoryValidationError, NotFoundError
from memory_graph.utils.hashing import generate_content_hash


class TestStore:
    @pytest.mark.asyncio
    async def test_identical_content_is_idempotent(self, service, store):
        first = await service.store("Fix login bug", {"project": "web"})
        second = await service.store("Fix login bug", {"project": "api", "user_id": "bob"}, importance=5)

        assert first.id == second.id
        rows = await store.search_memories(content_hash=generate_content_hash("Fix login bug"))
        assert len(rows) == 1
        assert rows[0].importance == 1
        assert rows[0].context == {"project": "web"}

    @pytest.mark.asyncio
    async def test_concurrent_identical_stores_share_one_row(self, service, store):
        first, second = await asyncio.gather(service.store("Fix login bug"), service.store("Fix login bug"))

        assert first.id == second.id
        rows = await store.search_memories(content_hash=generate_content_hash("Fix login bug"), status="active")
        assert [m.id for m in rows] == [first.id]

    @pytest.mark.asyncio
    async def test_lost_insert_race_returns_existing(self, service, store, monkeypatch):
        winner = await service.store("Fix login bug")
        search = store.search_memories
        calls = []

        async def stale_first_read(**kwargs):
            calls.append(kwargs)
            return [] if len(calls) == 1 else await search(**kwargs)

        monkeypatch.setattr(store, "search_memories", AsyncMock(side_effect=stale_first_read))

        loser = await service.store("Fix login bug", {"project": "api"})

        assert loser.id == winner.id
        assert loser.memory.context == {}
        assert len(await search(content_hash=generate_content_hash("Fix login bug"))) == 1

    @pytest.mark.asyncio
    async def test_login_timeout_scenario(self, service, store):
        first = await service.store("Fix login bug", {"project": "web"})
        again = await service.store("Fix login bug", {"project": "web"})
        timeout = await service.store("Investigate timeout", {"project": "web"})

        assert first.id == again.id
        assert await store.get_relationships(first.id) == []
        assert await store.get_relationships(timeout.id) == []

    @pytest.mark.asyncio
    async def test_duplicate_does_no_embedding_work(self, service, provider):
        await service.store("Fix login bug")
        calls = len(provider.calls)
        await service.store("Fix login bug")
        assert len(provider.calls) == calls

    @pytest.mark.asyncio
    async def test_new_memory_defaults(self, service):
        node = await service.store("Investigate timeout", {"user_id": "ann", "project": "web"})

        memory = node.memory
        assert memory.status == "active"
        assert memory.access_count == 0
        assert memory.creator == "ann"
        assert memory.content_hash == generate_content_hash("Investigate timeout")
        assert memory.embedding_reference == f"vec-{memory.id}"

    @pytest.mark.asyncio
    async def test_extracted_concepts(self, service):
        node = await service.store("Investigate timeout in payment gateway")
        assert node.concept_names == ["investigate", "timeout", "payment", "gateway"]
        assert all(c.type == "topic" and c.confidence == 0.8 for c in node.concepts)

    @pytest.mark.asyncio
    async def test_explicit_concepts_reuse_existing(self, service, store):
        first = await service.store("One", concepts=["Python"])
        second = await service.store("Two", concepts=["python", "asyncio"])

        assert first.concepts[0].id == second.concepts[0].id
        assert second.concept_names == ["python", "asyncio"]
        stats = await store.get_stats()
        assert stats["total_concepts"] == 2

    @pytest.mark.asyncio
    async def test_rejects_blank_content(self, service):
        with pytest.raises(MemoryValidationError):
            await service.store("   ")

    @pytest.mark.asyncio
    async def test_rejects_importance_out_of_range(self, service):
        with pytest.raises(MemoryValidationError):
            await service.store("Valid", importance=6)

    @pytest.mark.asyncio
    async def test_index_failure_is_not_surfaced(self, service, index, store):
        index.fail_index = True

        node = await service.store("Unindexed memory")

        assert node.memory.embedding_reference is None
        assert (await store.get_memory(node.id)).embedding_reference is None

    @pytest.mark.asyncio
    async def test_unrelated_memories_not_linked(self, service):
        login = await service.store("Fix login bug", {"project": "web"})
        await service.store("Investigate timeout", {"project": "web"})

        related = await service.get_related(login.id)
        assert related.related == []

    @pytest.mark.asyncio
    async def test_similar_memories_linked_at_seed(self, service, provider):
        provider.set_vector("Fix login bug", 1.0, 0.0)
        provider.set_vector("Investigate timeout", 0.95, 0.31)
        login = await service.store("Fix login bug", {"project": "web"})
        timeout = await service.store("Investigate timeout", {"project": "web"})

        related = await service.get_related(login.id)

        assert [r.node.id for r in related.related] == [timeout.id]
        edge = related.related[0].relationship
        assert edge.relationship_type == "semantic_similarity"
        assert edge.strength > 0.8

    @pytest.mark.asyncio
    async def test_seed_respects_project_scope(self, service, provider):
        provider.set_vector("Fix login bug", 1.0, 0.0)
        provider.set_vector("Investigate timeout", 0.95, 0.31)
        login = await service.store("Fix login bug", {"project": "web"})
        await service.store("Investigate timeout", {"project": "cli"})

        assert (await service.get_related(login.id)).related == []


class TestReadPaths:
    @pytest.mark.asyncio
    async def test_retrieve_by_query_in_similarity_order(self, service, provider):
        provider.set_vector("query", 1.0, 0.0)
        provider.set_vector("best", 1.0, 0.05)
        provider.set_vector("good", 1.0, 0.4)
        provider.set_vector("far", 0.0, 1.0)
        good = await service.store("good")
        best = await service.store("best")
        await service.store("far")

        results = await service.retrieve("query")
        assert [n.id for n in results] == [best.id, good.id]

    @pytest.mark.asyncio
    async def test_retrieve_filters_creator_and_status(self, service, provider):
        provider.set_vector("query", 1.0, 0.0)
        provider.set_vector("mine", 1.0, 0.1)
        provider.set_vector("theirs", 1.0, 0.1001)
        provider.set_vector("archived", 1.0, 0.0)
        mine = await service.store("mine", {"user_id": "ann"})
        await service.store("theirs", {"user_id": "bob"})
        archived = await service.store("archived", {"user_id": "ann"})
        await service.archive_memory(archived.id)

        results = await service.retrieve("query", creator="ann")
        assert [n.id for n in results] == [mine.id]

    @pytest.mark.asyncio
    async def test_retrieve_without_query_newest_first(self, service):
        first = await service.store("first entry")
        second = await service.store("second entry")
        third = await service.store("third entry")

        results = await service.retrieve(limit=2)
        assert [n.id for n in results] == [third.id, second.id]
        assert first.id not in [n.id for n in results]

    @pytest.mark.asyncio
    async def test_search_reports_similarity(self, service, provider):
        provider.set_vector("query", 1.0, 0.0)
        provider.set_vector("hit", 1.0, 0.1)
        provider.set_vector("miss", 0.0, 1.0)
        hit = await service.store("hit")
        await service.store("miss")

        results = await service.search("query", similarity_threshold=0.7)

        assert results.total == 1
        assert results.memories[0].id == hit.id
        assert results.results[0].similarity == pytest.approx(0.995, abs=1e-3)
        assert results.processing_time_ms >= 0

    @pytest.mark.asyncio
    async def test_search_excludes_inactive(self, service, provider):
        provider.set_vector("query", 1.0, 0.0)
        provider.set_vector("old", 1.0, 0.0)
        old = await service.store("old")
        await service.archive_memory(old.id)

        results = await service.search("query")
        assert results.total == 0

    @pytest.mark.asyncio
    async def test_search_requires_query(self, service):
        with pytest.raises(MemoryValidationError):
            await service.search("")

    @pytest.mark.asyncio
    async def test_get_memory_records_access(self, service):
        node = await service.store("Remember me")

        fetched = await service.get_memory(node.id)
        again = await service.get_memory(node.id)

        assert fetched.memory.access_count == 1
        assert again.memory.access_count == 2
        assert again.memory.last_accessed_at is not None

    @pytest.mark.asyncio
    async def test_get_memory_missing(self, service):
        with pytest.raises(NotFoundError, match="Memory with id missing not found"):
            await service.get_memory("missing")


class TestGraph:
    @pytest.mark.asyncio
    async def test_connect_requires_both_ends(self, service):
        node = await service.store("Exists")
        with pytest.raises(NotFoundError):
            await service.connect(node.id, "ghost")

    @pytest.mark.asyncio
    async def test_connect_allows_duplicates(self, service, store):
        a = await service.store("Left")
        b = await service.store("Right")
        await service.connect(a.id, b.id)
        await service.connect(a.id, b.id)
        assert len(await store.get_relationships(a.id)) == 2

    @pytest.mark.asyncio
    async def test_connect_rejects_unknown_type(self, service):
        a = await service.store("Left")
        b = await service.store("Right")
        with pytest.raises(MemoryValidationError):
            await service.connect(a.id, b.id, relationship_type="friends")

    @pytest.mark.asyncio
    async def test_get_related_both_directions_skips_inactive(self, service):
        center = await service.store("Center", concepts=["hub"])
        outgoing = await service.store("Outgoing")
        incoming = await service.store("Incoming")
        archived = await service.store("Archived")
        await service.connect(center.id, outgoing.id, strength=0.9)
        await service.connect(incoming.id, center.id, strength=0.5)
        await service.connect(center.id, archived.id)
        await service.archive_memory(archived.id)

        related = await service.get_related(center.id, depth=3, min_strength=0.7)

        assert related.center.id == center.id
        assert [c.name for c in related.concepts] == ["hub"]
        assert {r.node.id for r in related.related} == {outgoing.id, incoming.id}
        assert all(r.distance == 1 for r in related.related)

    @pytest.mark.asyncio
    async def test_get_related_missing(self, service):
        with pytest.raises(NotFoundError):
            await service.get_related("missing")

    @pytest.mark.asyncio
    async def test_detect_relationships_full_scan(self, service, provider):
        provider.set_vector("Deploy api", 1.0, 0.0)
        provider.set_vector("Deploy api v2", 0.75, 0.66)
        first = await service.store("Deploy api", {"topic": "release", "tags": ["api", "deploy"]})
        second = await service.store("Deploy api v2", {"topic": "release", "tags": ["api", "deploy", "v2"]})

        edges = await service.detect_relationships(second.id)

        types = sorted(e.relationship_type for e in edges)
        assert types == ["semantic_similarity", "tag_similarity", "temporal_proximity", "topic_overlap"]
        assert all(e.target_id == first.id for e in edges)


class TestMutation:
    @pytest.mark.asyncio
    async def test_update_content_rehashes_and_reindexes(self, service, index):
        node = await service.store("Draft")

        updated = await service.update_memory(node.id, content="Final", importance=4)

        assert updated.memory.content_hash == generate_content_hash("Final")
        assert updated.memory.importance == 4
        _, vector = index.points[updated.memory.embedding_reference]
        assert vector == await service.provider.generate_embedding("Final")

    @pytest.mark.asyncio
    async def test_update_rejects_collision(self, service):
        await service.store("Taken")
        node = await service.store("Other")
        with pytest.raises(MemoryValidationError):
            await service.update_memory(node.id, content="Taken")

    @pytest.mark.asyncio
    async def test_archive_is_one_way(self, service):
        node = await service.store("Old news")

        archived = await service.archive_memory(node.id)
        assert archived.memory.status == "archived"

        with pytest.raises(MemoryValidationError):
            await service.archive_memory(node.id)
        with pytest.raises(MemoryValidationError):
            await service.update_memory(node.id, importance=3)

    @pytest.mark.asyncio
    async def test_archived_content_can_be_stored_again(self, service):
        node = await service.store("Recurring")
        await service.archive_memory(node.id)

        again = await service.store("Recurring")
        assert again.id != node.id


class TestStatsAndHealth:
    @pytest.mark.asyncio
    async def test_stats(self, service):
        await service.store("Alpha entry", {"user_id": "ann", "project": "web"}, importance=2)
        await service.store("Bravo entry", {"user_id": "ann", "project": "web"}, importance=4)
        c = await service.store("Charlie entry", {"user_id": "bob"}, importance=3)
        d = await service.store("Delta entry", {"user_id": "bob"}, importance=5)
        await service.connect(c.id, d.id)

        stats = await service.get_stats()

        assert stats.total_memories == 4
        assert stats.total_relationships == 1
        assert stats.average_importance == pytest.approx(3.5)
        assert stats.most_active_creators[0].count == 2
        assert stats.top_projects[0].project == "web"
        assert stats.concept_distribution == {"topic": stats.total_concepts}
        assert stats.top_concepts[0].name == "entry"
        assert stats.top_concepts[0].count == 4

    @pytest.mark.asyncio
    async def test_health_check(self, service):
        await service.store("Something")
        health = await service.health_check()
        assert health["status"] == "healthy"
        assert health["embedding_provider"]["available"] is True
        assert health["total_memories"] == 1
