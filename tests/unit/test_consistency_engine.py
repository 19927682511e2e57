"""
Tests for ConsistencyEngine.

Runs against real backends where they can run in-process (SQLite file,
in-memory Qdrant, dict graph) and injects failures with patch.object.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from openmemory_mcp.errors import (
    IndexUnavailable,
    InvalidArgument,
    NotFound,
    PartialFailure,
    ScopeViolation,
    StoreUnavailable,
)
from openmemory_mcp.models.graph import ExtractedEntity
from openmemory_mcp.models.memory import MemoryState
from openmemory_mcp.models.scope import FilterSpec
from openmemory_mcp.services.consistency_engine import ConsistencyEngine


async def _texts(engine, scope):
    return [r.text for r in await engine.list_memories(scope).to_list()]


async def _assert_indexes_match_records(engine, scope):
    active = {r.id for r in await engine.list_memories(scope).to_list()}
    assert await engine.vector_index.list_ids(scope) == active
    assert await engine.graph.list_origin_ids(scope) <= active


def _failing(message="backend down"):
    return AsyncMock(side_effect=IndexUnavailable(message, backend="test"))


class TestAddAndRead:
    @pytest.mark.asyncio
    async def test_add_indexes_all_backends(self, engine, alice):
        record = await engine.add_memory("Bob likes the coffee shop on Main Street.", alice, metadata={"k": "v"})

        assert record.is_active
        assert record.metadata == {"k": "v"}
        assert await engine.vector_index.list_ids(alice) == {record.id}
        assert engine.graph.origins() == {record.id}
        fetched = await engine.get_memory(record.id, alice)
        assert fetched.text == record.text

    @pytest.mark.asyncio
    async def test_search_returns_scored_hits(self, engine, alice):
        coffee = await engine.add_memory("espresso and coffee beans", alice)
        await engine.add_memory("vintage racing cars", alice)

        hits = await engine.search_memory("coffee beans", alice, k=2)
        assert hits[0]["id"] == coffee.id
        assert set(hits[0]) == {"id", "text", "score", "created_at"}
        assert hits[0]["score"] > 0

    @pytest.mark.asyncio
    async def test_search_drops_inactive_hits(self, engine, record_store, alice):
        record = await engine.add_memory("stale memory", alice)
        # Deleted behind the engine's back; the vector is still there
        await record_store.mark_deleted(record.id)
        assert await engine.search_memory("stale memory", alice) == []

    @pytest.mark.asyncio
    async def test_list_most_recent_first_with_limit(self, engine, alice):
        for i in range(5):
            await engine.add_memory(f"memory {i}", alice)
        assert await _texts(engine, alice) == [f"memory {i}" for i in reversed(range(5))]
        assert len(await engine.list_memories(alice, limit=2).to_list()) == 2
        assert await engine.count_memories(alice) == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("k", [0, 101])
    async def test_search_k_bounds(self, engine, alice, k):
        with pytest.raises(InvalidArgument):
            await engine.search_memory("x", alice, k=k)

    @pytest.mark.asyncio
    async def test_empty_scope_and_text_rejected(self, engine, alice):
        with pytest.raises(InvalidArgument):
            await engine.add_memory("x", FilterSpec.of())
        with pytest.raises(InvalidArgument):
            await engine.add_memory("   ", alice)
        with pytest.raises(InvalidArgument):
            await engine.search_memory("", alice)
        with pytest.raises(InvalidArgument):
            engine.list_memories(alice, limit=0)

    @pytest.mark.asyncio
    async def test_embedding_failure_is_index_unavailable(self, engine, embedder, alice):
        with patch.object(embedder, "embed_query", AsyncMock(side_effect=RuntimeError("model crashed"))):
            with pytest.raises(IndexUnavailable) as exc_info:
                await engine.search_memory("x", alice)
        assert exc_info.value.backend == "embedder"

    @pytest.mark.asyncio
    async def test_list_entities_only_from_active_records(self, engine, alice):
        kept = await engine.add_memory("Bob likes coffee", alice)
        gone = await engine.add_memory("Carol likes tea", alice)
        await engine.delete_memory(gone.id, alice)

        result = await engine.list_entities(alice)
        assert {e["origin_id"] for e in result["entities"]} == {kept.id}
        assert result["relationships"] == [
            {"source": "Bob", "relation": "LIKES", "target": "coffee", "origin_id": kept.id}
        ]

    def test_graph_disabled_without_extractor(self, record_store, vector_index, embedder, graph):
        engine = ConsistencyEngine(record_store, vector_index, embedder, graph, None)
        assert engine.graph is None

    @pytest.mark.asyncio
    async def test_runs_without_graph(self, record_store, vector_index, embedder, alice):
        engine = ConsistencyEngine(record_store, vector_index, embedder, None, None)
        record = await engine.add_memory("Bob likes coffee", alice)

        assert await engine.list_entities(alice) == {"entities": [], "relationships": []}
        assert (await engine.delete_all(alice))["deleted_count"] == 1
        assert (await engine.delete_all(alice))["deleted_count"] == 0
        assert await engine.vector_index.list_ids(alice) == set()
        with pytest.raises(NotFound):
            await engine.get_memory(record.id, alice)


class TestTenantIsolation:
    @pytest.mark.asyncio
    async def test_other_tenant_cannot_see_or_touch(self, engine, alice, bob):
        record = await engine.add_memory("alice's secret", alice)

        assert await engine.search_memory("alice's secret", bob) == []
        assert await _texts(engine, bob) == []
        with pytest.raises(ScopeViolation):
            await engine.get_memory(record.id, bob)
        with pytest.raises(ScopeViolation):
            await engine.delete_memory(record.id, bob)
        with pytest.raises(ScopeViolation):
            await engine.update_memory(record.id, "hijacked", bob)
        assert (await engine.get_memory(record.id, alice)).text == "alice's secret"

    @pytest.mark.asyncio
    async def test_narrower_scope_sees_subset(self, engine, alice):
        planner = FilterSpec.of(user_id="alice", agent_id="planner")
        await engine.add_memory("planner note", planner)
        await engine.add_memory("general note", alice)

        assert await _texts(engine, planner) == ["planner note"]
        assert await _texts(engine, alice) == ["general note", "planner note"]

    @pytest.mark.asyncio
    async def test_quiet_coffee_scenario(self, engine, alice, bob):
        alice_memory = await engine.add_memory("I prefer quiet coffee shops", alice)
        bob_memory = await engine.add_memory("Bob enjoys loud jazz bars", bob)

        hits = await engine.search_memory("work preferences", alice)
        assert [h["id"] for h in hits] == [alice_memory.id]
        assert hits[0]["score"] > 0
        assert [h["id"] for h in await engine.search_memory("quiet coffee shops", bob)] == [bob_memory.id]

        result = await engine.delete_all(alice)
        assert result["deleted_count"] == 1
        assert await _texts(engine, alice) == []
        assert await _texts(engine, bob) == ["Bob enjoys loud jazz bars"]


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_from_all_backends(self, engine, alice):
        record = await engine.add_memory("Bob likes coffee", alice)
        result = await engine.delete_memory(record.id, alice)

        assert result == {"id": record.id, "already_deleted": False}
        assert await engine.vector_index.list_ids(alice) == set()
        assert engine.graph.origins() == set()
        with pytest.raises(NotFound):
            await engine.get_memory(record.id, alice)

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self, engine, alice):
        record = await engine.add_memory("x", alice)
        await engine.delete_memory(record.id, alice)
        assert (await engine.delete_memory(record.id, alice))["already_deleted"] is True

    @pytest.mark.asyncio
    async def test_delete_unknown_raises_not_found(self, engine, alice):
        with pytest.raises(NotFound):
            await engine.delete_memory("no-such-id", alice)

    @pytest.mark.asyncio
    async def test_delete_superseded_version_raises_not_found(self, engine, alice):
        record = await engine.add_memory("v1", alice)
        await engine.update_memory(record.id, "v2", alice)
        with pytest.raises(NotFound):
            await engine.delete_memory(record.id, alice)

    @pytest.mark.asyncio
    async def test_graph_failure_restores_vector(self, engine, graph, alice):
        record = await engine.add_memory("Bob likes coffee", alice)

        with patch.object(graph, "delete_by_origin", _failing()):
            with pytest.raises(PartialFailure) as exc_info:
                await engine.delete_memory(record.id, alice)

        failure = exc_info.value
        assert failure.failed_step == "graph"
        assert failure.completed_steps == ["vector"]
        assert failure.compensated is True
        assert (await engine.get_memory(record.id, alice)).is_active
        assert await engine.vector_index.list_ids(alice) == {record.id}

    @pytest.mark.asyncio
    async def test_concurrent_double_delete(self, engine, alice):
        record = await engine.add_memory("x", alice)
        results = await asyncio.gather(engine.delete_memory(record.id, alice), engine.delete_memory(record.id, alice))
        assert sorted(r["already_deleted"] for r in results) == [False, True]


class TestDeleteAll:
    @pytest.mark.asyncio
    async def test_deletes_in_batches_and_leaves_other_scopes(self, engine, alice, bob):
        # delete_batch_size=4 in the fixture
        for i in range(9):
            await engine.add_memory(f"alice note {i}", alice)
        await engine.add_memory("bob note", bob)

        result = await engine.delete_all(alice)

        assert result["deleted_count"] == 9
        assert await _texts(engine, alice) == []
        assert await engine.vector_index.list_ids(alice) == set()
        assert await engine.graph.list_origin_ids(alice) == set()
        assert await _texts(engine, bob) == ["bob note"]
        assert len(await engine.vector_index.list_ids(bob)) == 1

    @pytest.mark.asyncio
    async def test_records_after_cutoff_survive(self, engine, record_store, alice):
        first = await engine.add_memory("before", alice)
        await engine.add_memory("after", alice)

        with patch.object(record_store, "current_revision", AsyncMock(return_value=first.revision)):
            result = await engine.delete_all(alice)

        assert result == {"deleted_count": 1, "cutoff_revision": first.revision}
        assert await _texts(engine, alice) == ["after"]
        await _assert_indexes_match_records(engine, alice)

    @pytest.mark.asyncio
    async def test_empty_scope_refused(self, engine):
        with pytest.raises(InvalidArgument):
            await engine.delete_all(FilterSpec.of())

    @pytest.mark.asyncio
    async def test_vector_failure_reindexes_batch(self, engine, vector_index, alice):
        for i in range(3):
            await engine.add_memory(f"note {i}", alice)

        with patch.object(vector_index, "remove_many", _failing()):
            with pytest.raises(PartialFailure) as exc_info:
                await engine.delete_all(alice)

        assert exc_info.value.failed_step == "vector[1]"
        assert await engine.count_memories(alice) == 3
        await _assert_indexes_match_records(engine, alice)

    @pytest.mark.asyncio
    async def test_graph_failure_is_reported_not_compensated(self, engine, graph, alice):
        await engine.add_memory("Bob likes coffee", alice)

        with patch.object(graph, "delete_by_scope", _failing()):
            with pytest.raises(PartialFailure) as exc_info:
                await engine.delete_all(alice)

        assert exc_info.value.compensated is False
        assert await _texts(engine, alice) == []
        # Leftover graph items are hidden because their record is gone
        assert await engine.list_entities(alice) == {"entities": [], "relationships": []}

    @pytest.mark.asyncio
    async def test_concurrent_adds_stay_consistent(self, engine, alice):
        await engine.add_memory("seed", alice)
        adds = [engine.add_memory(f"concurrent {i}", alice) for i in range(8)]
        await asyncio.gather(*adds, engine.delete_all(alice))
        await _assert_indexes_match_records(engine, alice)

    @pytest.mark.asyncio
    async def test_nothing_in_scope(self, engine, alice, bob):
        await engine.add_memory("alice note", alice)

        result = await engine.delete_all(bob)

        assert result["deleted_count"] == 0
        assert await _texts(engine, alice) == ["alice note"]
        assert engine.get_audit_trail(operation="delete_all")["operations"][0]["success"] is True

    @pytest.mark.asyncio
    async def test_repeat_is_idempotent(self, engine, alice):
        for i in range(3):
            await engine.add_memory(f"note {i}", alice)

        first = await engine.delete_all(alice)
        second = await engine.delete_all(alice)

        assert first["deleted_count"] == 3
        assert second["deleted_count"] == 0
        await _assert_indexes_match_records(engine, alice)

    @pytest.mark.asyncio
    async def test_interleaves_with_update(self, engine, alice):
        records = [await engine.add_memory(f"Bob likes drink {i}", alice) for i in range(3)]

        results = await asyncio.gather(
            engine.update_memory(records[0].id, "Bob likes coffee", alice),
            engine.delete_all(alice),
            return_exceptions=True,
        )

        updated, deleted = results
        assert isinstance(deleted, dict)
        assert isinstance(updated, NotFound) or updated.text == "Bob likes coffee"
        await _assert_indexes_match_records(engine, alice)
        assert engine.graph.origins() <= {r.id for r in await engine.list_memories(alice).to_list()}


class TestAddCompensation:
    @pytest.mark.asyncio
    async def test_vector_failure_rolls_back_record(self, engine, vector_index, record_store, alice):
        with patch.object(vector_index, "upsert", _failing()):
            with pytest.raises(PartialFailure) as exc_info:
                await engine.add_memory("will not stick", alice)

        failure = exc_info.value
        assert failure.operation == "add_memory"
        assert failure.failed_step == "vector"
        assert failure.completed_steps == ["record"]
        assert failure.compensated is True
        assert (await record_store.get(failure.memory_id)).state is MemoryState.DELETED
        assert await _texts(engine, alice) == []

    @pytest.mark.asyncio
    async def test_graph_failure_removes_vector(self, engine, graph, alice):
        with patch.object(graph, "add_entities", _failing()):
            with pytest.raises(PartialFailure) as exc_info:
                await engine.add_memory("Bob likes coffee", alice)

        assert exc_info.value.failed_step == "graph"
        assert await engine.vector_index.list_ids(alice) == set()
        assert await engine.search_memory("Bob likes coffee", alice) == []

    @pytest.mark.asyncio
    async def test_record_failure_is_not_partial(self, engine, record_store, alice):
        with patch.object(record_store, "create", AsyncMock(side_effect=StoreUnavailable("disk full"))):
            with pytest.raises(StoreUnavailable):
                await engine.add_memory("x", alice)
        assert await engine.vector_index.count() == 0
        assert engine.get_audit_trail()["operations"][0]["failed_step"] == "record"

    @pytest.mark.asyncio
    async def test_failed_compensation_is_reported(self, engine, vector_index, record_store, alice):
        with patch.object(vector_index, "upsert", _failing()), patch.object(
            record_store, "mark_deleted", AsyncMock(side_effect=StoreUnavailable("locked"))
        ):
            with pytest.raises(PartialFailure) as exc_info:
                await engine.add_memory("x", alice)

        failure = exc_info.value
        assert failure.compensated is False
        assert len(failure.compensation_errors) == 1
        assert failure.compensation_errors[0].startswith("mark_deleted:")

    @pytest.mark.asyncio
    async def test_caller_cancellation_does_not_abort_mutation(self, engine, alice):
        task = asyncio.create_task(engine.add_memory("keep going", alice))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        await engine.drain()
        assert await _texts(engine, alice) == ["keep going"]
        await _assert_indexes_match_records(engine, alice)


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update_supersedes_and_reindexes(self, engine, alice):
        old = await engine.add_memory("Bob likes tea", alice)
        new = await engine.update_memory(old.id, "Bob likes coffee", alice)

        assert new.id != old.id
        assert new.supersedes == old.id
        assert await _texts(engine, alice) == ["Bob likes coffee"]
        assert await engine.vector_index.list_ids(alice) == {new.id}
        assert engine.graph.origins() == {new.id}

        history = await engine.memory_history(new.id, alice)
        assert [v.text for v in history] == ["Bob likes tea", "Bob likes coffee"]
        assert [v.state for v in history] == [MemoryState.SUPERSEDED, MemoryState.ACTIVE]

    @pytest.mark.asyncio
    async def test_update_non_active_raises_not_found(self, engine, alice):
        record = await engine.add_memory("x", alice)
        await engine.delete_memory(record.id, alice)
        with pytest.raises(NotFound):
            await engine.update_memory(record.id, "y", alice)

    @pytest.mark.asyncio
    async def test_index_failure_reinstates_previous_version(self, engine, vector_index, alice):
        old = await engine.add_memory("Bob likes tea", alice)

        with patch.object(vector_index, "upsert", _failing()):
            with pytest.raises(PartialFailure) as exc_info:
                await engine.update_memory(old.id, "Bob likes coffee", alice)

        assert exc_info.value.compensated is True
        assert (await engine.get_memory(old.id, alice)).text == "Bob likes tea"
        assert await _texts(engine, alice) == ["Bob likes tea"]
        await _assert_indexes_match_records(engine, alice)

    @pytest.mark.asyncio
    async def test_retire_failure_keeps_new_version(self, engine, vector_index, alice):
        old = await engine.add_memory("Bob likes tea", alice)

        with patch.object(vector_index, "remove", _failing()):
            with pytest.raises(PartialFailure) as exc_info:
                await engine.update_memory(old.id, "Bob likes coffee", alice)

        assert exc_info.value.failed_step == "retire_vector"
        assert exc_info.value.compensated is False
        assert await _texts(engine, alice) == ["Bob likes coffee"]
        # The old vector is stale but filtered from results
        assert [h["text"] for h in await engine.search_memory("Bob likes tea", alice)] == ["Bob likes coffee"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("update_first", [True, False])
    async def test_update_and_delete_same_id_are_exclusive(self, engine, alice, update_first):
        record = await engine.add_memory("Bob likes tea", alice)
        update = engine.update_memory(record.id, "Bob likes coffee", alice)
        delete = engine.delete_memory(record.id, alice)
        calls = [update, delete] if update_first else [delete, update]

        results = await asyncio.gather(*calls, return_exceptions=True)

        errors = [r for r in results if isinstance(r, Exception)]
        assert len(errors) == 1
        assert isinstance(errors[0], NotFound)
        await _assert_indexes_match_records(engine, alice)
        if update_first:
            assert await _texts(engine, alice) == ["Bob likes coffee"]
        else:
            assert await _texts(engine, alice) == []


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_reconcile_repairs_drift(self, engine, vector_index, graph, embedder, alice):
        record = await engine.add_memory("Bob likes coffee", alice)
        await vector_index.remove(record.id)
        await vector_index.upsert("ghost", embedder.vector("ghost"), alice)
        await graph.add_entities("ghost", alice, [ExtractedEntity(name="Ghost")])

        report = await engine.reconcile(alice, dry_run=True)
        assert report["vectors_missing"] == 1
        assert report["vectors_stale"] == 1
        assert report["graph_stale"] == 1
        assert report["reindexed"] == 0
        assert await vector_index.list_ids(alice) == {"ghost"}

        report = await engine.reconcile(alice)
        assert report["reindexed"] == 1
        assert report["removed_vectors"] == 1
        assert report["removed_graph_origins"] == 1
        await _assert_indexes_match_records(engine, alice)
        assert graph.origins() == {record.id}

    @pytest.mark.asyncio
    async def test_purge_deleted(self, engine, record_store, alice):
        record = await engine.add_memory("x", alice)
        await engine.delete_memory(record.id, alice)
        assert await engine.purge_deleted(alice) == 1
        with pytest.raises(NotFound):
            await record_store.get(record.id)

    @pytest.mark.asyncio
    async def test_health(self, engine, vector_index, alice):
        await engine.add_memory("x", alice)
        report = await engine.health()
        assert report["healthy"] is True
        assert report["store"]["backend"] == "sqlite"
        assert report["vector"]["total_vectors"] == 1
        assert report["graph"]["backend"] == "memory"
        assert report["engine"] == {"locks_held": 0, "inflight_mutations": 0, "audit_entries": 1}

        with patch.object(vector_index, "get_stats", _failing("qdrant down")):
            report = await engine.health()
        assert report["healthy"] is False
        assert report["vector"] == {"status": "error", "error": "qdrant down"}

    @pytest.mark.asyncio
    async def test_audit_trail(self, engine, alice):
        record = await engine.add_memory("x", alice)
        await engine.delete_memory(record.id, alice)
        await engine.add_memory("y", alice)

        trail = engine.get_audit_trail()
        assert trail["total_operations"] == 3
        assert trail["operations"][0]["operation"] == "add_memory"
        assert trail["operations_by_type"] == {"add_memory": 2, "delete_memory": 1}
        assert trail["success_rate"] == 1.0
        assert engine.get_audit_trail(memory_id=record.id)["total_operations"] == 2
        assert len(engine.get_audit_trail(limit=1)["operations"]) == 1
