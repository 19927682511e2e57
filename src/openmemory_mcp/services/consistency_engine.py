"""
Consistency Engine - keeps the record store, vector index and graph coherent.

The record store is the source of truth. Every mutation writes the record
first (or last, for deletes) and treats the vector index and graph as
derived data, so any read path can fall back on "is the record active?"
to hide transient inconsistencies.

Mutations on one memory id are serialized with a ``KeyedLock``; unrelated
ids run concurrently. Each mutation runs under ``asyncio.shield`` so that a
caller disconnecting mid-call cannot leave a half-applied write behind.
When a step fails the engine compensates best-effort and raises a single
``PartialFailure`` describing what happened.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Coroutine
from typing import Any, TypeVar

from ..errors import (
    IndexUnavailable,
    InvalidArgument,
    MemoryServiceError,
    NotFound,
    PartialFailure,
    ScopeViolation,
)
from ..graph.base import GraphAdapter
from ..graph.extraction import EntityExtractor
from ..models.memory import MemoryRecord, MemoryState
from ..models.scope import FilterSpec
from ..storage.base import MemoryRecordStore, RecordQuery
from ..vector.base import Embedder, VectorIndex
from .locks import KeyedLock
from .mutation import AuditTrail, MutationState, MutationTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

STEP_RECORD = "record"
STEP_VECTOR = "vector"
STEP_GRAPH = "graph"
STEP_RETIRE_VECTOR = "retire_vector"
STEP_RETIRE_GRAPH = "retire_graph"

MAX_SEARCH_K = 100


class ConsistencyEngine:
    """
    Coordinates memory mutations across the record store, vector index and graph.

    The graph (and its extractor) is optional; when absent, graph steps are
    skipped and graph reads return nothing.
    """

    def __init__(
        self,
        store: MemoryRecordStore,
        vector_index: VectorIndex,
        embedder: Embedder,
        graph: GraphAdapter | None = None,
        extractor: EntityExtractor | None = None,
        *,
        delete_batch_size: int = 100,
        audit_log_size: int = 10_000,
        default_search_k: int = 10,
    ):
        if delete_batch_size < 1:
            raise ValueError("delete_batch_size must be >= 1")
        self.store = store
        self.vector_index = vector_index
        self.embedder = embedder
        self.graph = graph if extractor is not None else None
        self.extractor = extractor
        self.delete_batch_size = delete_batch_size
        self.default_search_k = default_search_k
        self.locks = KeyedLock()
        self.audit = AuditTrail(audit_log_size)
        self._inflight: set[asyncio.Task] = set()

        if graph is not None and extractor is None:
            logger.warning("Graph adapter configured without an extractor; graph steps disabled")

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    async def _shielded(self, coro: Coroutine[Any, Any, T]) -> T:
        """Run a mutation to completion even if the awaiting caller is cancelled."""
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._mutation_done)
        return await asyncio.shield(task)

    def _mutation_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        # Mark the outcome retrieved; the caller (if still there) already saw it
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Mutation finished with {type(task.exception()).__name__}")

    async def drain(self) -> None:
        """Wait for in-flight mutations (used at shutdown)."""
        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight mutations")
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    @staticmethod
    def _require_scope(scope: FilterSpec) -> None:
        if not isinstance(scope, FilterSpec):
            raise InvalidArgument(f"scope must be a FilterSpec, got {type(scope).__name__}")
        if scope.is_empty():
            raise InvalidArgument("scope must contain at least one dimension")

    @staticmethod
    def _check_scope(record: MemoryRecord, scope: FilterSpec) -> None:
        if not record.scope.matches(scope):
            raise ScopeViolation(f"Memory {record.id} is outside the caller's scope", memory_id=record.id)

    async def _index_vector(self, record: MemoryRecord) -> None:
        embedding = await self.embedder.embed_passage(record.text)
        await self.vector_index.upsert(record.id, embedding, record.scope, revision=record.revision)

    async def _index_graph(self, record: MemoryRecord) -> None:
        if self.graph is None:
            return
        loop = asyncio.get_running_loop()
        extracted = await loop.run_in_executor(None, self.extractor.extract, record.text)
        if extracted.is_empty:
            return
        await self.graph.add_entities(record.id, record.scope, extracted.entities, origin_revision=record.revision)
        await self.graph.add_relationships(
            record.id, record.scope, extracted.relationships, origin_revision=record.revision
        )

    async def _best_effort(self, tracker: MutationTracker, step: str, action: Awaitable[Any]) -> None:
        """Run one compensation step; failures are logged and reported, never raised."""
        try:
            await action
        except Exception as e:
            tracker.compensation_failed(step, e)

    def _finish(self, tracker: MutationTracker) -> None:
        self.audit.record(tracker)

    def _partial_failure(
        self,
        tracker: MutationTracker,
        cause: BaseException,
        compensated: bool | None = None,
    ) -> PartialFailure:
        tracker.fail()
        self._finish(tracker)
        failure = PartialFailure(
            operation=tracker.operation,
            memory_id=tracker.memory_id,
            completed_steps=tracker.completed_steps,
            failed_step=tracker.failed_step or "unknown",
            cause=cause,
            compensated=tracker.compensated if compensated is None else compensated,
            compensation_errors=tracker.compensation_errors,
        )
        logger.error(f"{failure.message} (compensated={failure.compensated})")
        return failure

    # ------------------------------------------------------------------
    # add
    # ------------------------------------------------------------------

    async def add_memory(self, text: str, scope: FilterSpec, *, metadata: dict[str, Any] | None = None) -> MemoryRecord:
        """
        Store a new memory in all three backends.

        Raises:
            InvalidArgument: empty text or scope.
            StoreUnavailable: the record could not be written (nothing to undo).
            PartialFailure: indexing failed; the record was rolled back.
        """
        if not isinstance(text, str) or not text.strip():
            raise InvalidArgument("text must be a non-empty string")
        self._require_scope(scope)
        return await self._shielded(self._add_memory(text, scope, metadata))

    async def _add_memory(self, text: str, scope: FilterSpec, metadata: dict[str, Any] | None) -> MemoryRecord:
        memory_id = str(uuid.uuid4())
        tracker = MutationTracker("add_memory", memory_id)

        # Lock before the record exists so no other mutation can see it half-built
        async with self.locks.hold(memory_id):
            tracker.begin(MutationState.APPLYING_RECORD)
            try:
                record = await self.store.create(text, scope, memory_id=memory_id, metadata=metadata)
            except Exception as e:
                tracker.compensate(STEP_RECORD, e)
                tracker.fail()
                self._finish(tracker)
                raise
            tracker.step_done(STEP_RECORD)

            step = STEP_VECTOR
            try:
                tracker.begin(MutationState.APPLYING_VECTOR)
                await self._index_vector(record)
                tracker.step_done(STEP_VECTOR)

                if self.graph is not None:
                    step = STEP_GRAPH
                    tracker.begin(MutationState.APPLYING_GRAPH)
                    await self._index_graph(record)
                    tracker.step_done(STEP_GRAPH)
            except Exception as e:
                tracker.compensate(step, e)
                logger.warning(f"add_memory {memory_id} failed at {step}, rolling back")
                await self._best_effort(tracker, "remove_vector", self.vector_index.remove(memory_id))
                if self.graph is not None:
                    await self._best_effort(tracker, "delete_graph", self.graph.delete_by_origin(memory_id))
                await self._best_effort(tracker, "mark_deleted", self.store.mark_deleted(memory_id))
                raise self._partial_failure(tracker, e) from e

            tracker.commit()
            self._finish(tracker)
            logger.info(f"Added memory {memory_id} (revision {record.revision})")
            return record

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def search_memory(self, query: str, scope: FilterSpec, k: int | None = None) -> list[dict[str, Any]]:
        """
        Semantic search within ``scope``.

        Returns hits ``{id, text, score, created_at}`` in index rank order.
        Hits whose record is no longer active, or whose stored scope does
        not satisfy ``scope``, are dropped.
        """
        if not isinstance(query, str) or not query.strip():
            raise InvalidArgument("query must be a non-empty string")
        self._require_scope(scope)
        k = self.default_search_k if k is None else k
        if not 1 <= k <= MAX_SEARCH_K:
            raise InvalidArgument(f"k must be between 1 and {MAX_SEARCH_K}", k=k)

        try:
            embedding = await self.embedder.embed_query(query)
        except Exception as e:
            raise IndexUnavailable(f"Query embedding failed: {e}", backend="embedder") from e

        hits = await self.vector_index.search(embedding, scope, k)
        if not hits:
            return []

        records = await self.store.get_many(memory_id for memory_id, _ in hits)
        results = []
        for memory_id, score in hits:
            record = records.get(memory_id)
            if record is None or not record.is_active or not record.scope.matches(scope):
                logger.debug(f"Filtered stale search hit {memory_id}")
                continue
            results.append({"id": record.id, "text": record.text, "score": score, "created_at": record.created_at_iso})
        return results

    def list_memories(self, scope: FilterSpec, *, limit: int | None = None, text_hint: str | None = None) -> RecordQuery:
        """Active records in ``scope``, most recent first."""
        self._require_scope(scope)
        if limit is not None and limit < 1:
            raise InvalidArgument("limit must be >= 1", limit=limit)
        return self.store.query(scope, text_hint, limit=limit)

    async def count_memories(self, scope: FilterSpec) -> int:
        self._require_scope(scope)
        return await self.store.count(scope)

    async def get_memory(self, memory_id: str, scope: FilterSpec) -> MemoryRecord:
        """The active record ``memory_id``, if the caller may see it."""
        self._require_scope(scope)
        record = await self.store.get(memory_id)
        self._check_scope(record, scope)
        if not record.is_active:
            raise NotFound(memory_id, f"Memory {memory_id} is {record.state.value}")
        return record

    async def memory_history(self, memory_id: str, scope: FilterSpec) -> list[MemoryRecord]:
        """Every version of the logical memory ``memory_id`` belongs to, oldest first."""
        self._require_scope(scope)
        record = await self.store.get(memory_id)
        self._check_scope(record, scope)
        return await self.store.history(memory_id)

    async def list_entities(self, scope: FilterSpec, limit: int = 100) -> dict[str, list[dict[str, Any]]]:
        """Graph entities and relationships in ``scope`` whose origin record is active."""
        self._require_scope(scope)
        if self.graph is None:
            return {"entities": [], "relationships": []}

        entities = await self.graph.get_entities(scope, limit=limit)
        relationships = await self.graph.get_relationships(scope, limit=limit)
        origins = {e.origin_id for e in entities} | {r.origin_id for r in relationships}
        records = await self.store.get_many(origins)
        live = {memory_id for memory_id, record in records.items() if record.is_active}
        return {
            "entities": [e.to_dict() for e in entities if e.origin_id in live],
            "relationships": [r.to_dict() for r in relationships if r.origin_id in live],
        }

    # ------------------------------------------------------------------
    # delete
    # ------------------------------------------------------------------

    async def delete_memory(self, memory_id: str, scope: FilterSpec) -> dict[str, Any]:
        """
        Delete one memory from all backends.

        Idempotent: deleting an already-deleted memory re-runs the index
        cleanup and succeeds with ``already_deleted=True``.

        Raises:
            NotFound: unknown id, or the id names a superseded version.
            ScopeViolation: the record is outside ``scope``.
            PartialFailure: a step failed; removed index entries were restored.
        """
        self._require_scope(scope)
        return await self._shielded(self._delete_memory(memory_id, scope))

    async def _delete_memory(self, memory_id: str, scope: FilterSpec) -> dict[str, Any]:
        async with self.locks.hold(memory_id):
            record = await self.store.get(memory_id)
            self._check_scope(record, scope)
            if record.state is MemoryState.SUPERSEDED:
                raise NotFound(memory_id, f"Memory {memory_id} was superseded by {record.superseded_by}")
            already_deleted = record.state is MemoryState.DELETED

            tracker = MutationTracker("delete_memory", memory_id)
            tracker.metadata["already_deleted"] = already_deleted
            step = STEP_VECTOR
            try:
                tracker.begin(MutationState.APPLYING_VECTOR)
                await self.vector_index.remove(memory_id)
                tracker.step_done(STEP_VECTOR)

                if self.graph is not None:
                    step = STEP_GRAPH
                    tracker.begin(MutationState.APPLYING_GRAPH)
                    await self.graph.delete_by_origin(memory_id)
                    tracker.step_done(STEP_GRAPH)

                step = STEP_RECORD
                tracker.begin(MutationState.APPLYING_RECORD)
                await self.store.mark_deleted(memory_id)
                tracker.step_done(STEP_RECORD)
            except Exception as e:
                tracker.compensate(step, e)
                if not already_deleted:
                    # The record is still active: put back what was removed
                    logger.warning(f"delete_memory {memory_id} failed at {step}, restoring indexes")
                    if tracker.did(STEP_VECTOR) or step == STEP_VECTOR:
                        await self._best_effort(tracker, "restore_vector", self._index_vector(record))
                    if tracker.did(STEP_GRAPH) or step == STEP_GRAPH:
                        await self._best_effort(tracker, "restore_graph", self._index_graph(record))
                raise self._partial_failure(tracker, e) from e

            tracker.commit()
            self._finish(tracker)
            logger.info(f"Deleted memory {memory_id}" + (" (already deleted)" if already_deleted else ""))
            return {"id": memory_id, "already_deleted": already_deleted}

    async def delete_all(self, scope: FilterSpec) -> dict[str, Any]:
        """
        Delete every active memory in ``scope`` that exists when the call starts.

        A revision cutoff is taken first; memories created after it survive.
        Records are processed in batches under per-id locks (sorted order).
        The graph is wiped for the scope once, at the end, bounded by the
        same cutoff.

        Returns:
            ``{"deleted_count": int, "cutoff_revision": int}``
        """
        self._require_scope(scope)
        return await self._shielded(self._delete_all(scope))

    async def _delete_all(self, scope: FilterSpec) -> dict[str, Any]:
        cutoff = await self.store.current_revision()
        candidates = [record.id async for record in self.store.query(scope, up_to_revision=cutoff)]
        tracker = MutationTracker("delete_all")
        tracker.metadata.update({"scope": scope.as_dict(), "cutoff_revision": cutoff})
        logger.info(f"delete_all for scope {scope}: {len(candidates)} candidates at cutoff {cutoff}")

        deleted = 0
        for batch_no, start in enumerate(range(0, len(candidates), self.delete_batch_size), start=1):
            batch = candidates[start : start + self.delete_batch_size]
            async with self.locks.hold_many(batch) as keys:
                # Re-check under the locks: concurrent deletes/updates may have won
                current = await self.store.get_many(keys)
                live = [
                    current[k]
                    for k in keys
                    if k in current and current[k].is_active and current[k].scope.matches(scope) and current[k].revision <= cutoff
                ]
                if not live:
                    continue
                live_ids = [r.id for r in live]

                step = f"{STEP_VECTOR}[{batch_no}]"
                try:
                    tracker.begin(MutationState.APPLYING_VECTOR)
                    await self.vector_index.remove_many(live_ids)
                    tracker.step_done(step)

                    step = f"{STEP_RECORD}[{batch_no}]"
                    tracker.begin(MutationState.APPLYING_RECORD)
                    deleted += await self.store.mark_deleted_many(live_ids)
                    tracker.step_done(step)
                except Exception as e:
                    tracker.compensate(step, e)
                    tracker.metadata["deleted_before_failure"] = deleted
                    logger.warning(f"delete_all batch {batch_no} failed at {step}, re-indexing {len(live)} records")
                    for record in live:
                        await self._best_effort(tracker, f"restore_vector:{record.id}", self._index_vector(record))
                    raise self._partial_failure(tracker, e) from e

        if tracker.state is MutationState.PENDING:
            # Nothing live in scope; the scope-wide graph sweep still runs
            tracker.begin(MutationState.APPLYING_RECORD)

        if self.graph is not None:
            step = STEP_GRAPH
            try:
                tracker.begin(MutationState.APPLYING_GRAPH)
                await self.graph.delete_by_scope(scope, up_to_revision=cutoff)
                tracker.step_done(step)
            except Exception as e:
                # Records are gone; leftover graph items are hidden by the active-origin filter
                tracker.compensate(step, e)
                tracker.metadata["deleted_count"] = deleted
                raise self._partial_failure(tracker, e, compensated=False) from e

        tracker.metadata["deleted_count"] = deleted
        tracker.commit()
        self._finish(tracker)
        logger.info(f"delete_all for scope {scope} removed {deleted} memories")
        return {"deleted_count": deleted, "cutoff_revision": cutoff}

    # ------------------------------------------------------------------
    # update
    # ------------------------------------------------------------------

    async def update_memory(self, memory_id: str, text: str, scope: FilterSpec) -> MemoryRecord:
        """
        Replace the text of an active memory.

        The old version is superseded (kept for history) and a new active
        version is indexed. Returns the new record.

        Raises:
            NotFound: ``memory_id`` is unknown or not active.
            ScopeViolation: the record is outside ``scope``.
            PartialFailure: indexing the new version failed (old version
                reinstated), or retiring the old index entries failed.
        """
        if not isinstance(text, str) or not text.strip():
            raise InvalidArgument("text must be a non-empty string")
        self._require_scope(scope)
        return await self._shielded(self._update_memory(memory_id, text, scope))

    async def _update_memory(self, memory_id: str, text: str, scope: FilterSpec) -> MemoryRecord:
        new_id = str(uuid.uuid4())
        async with self.locks.hold_many([memory_id, new_id]):
            old = await self.store.get(memory_id)
            self._check_scope(old, scope)
            if not old.is_active:
                raise NotFound(memory_id, f"Memory {memory_id} is {old.state.value}")

            tracker = MutationTracker("update_memory", memory_id)
            tracker.metadata["new_id"] = new_id
            tracker.begin(MutationState.APPLYING_RECORD)
            try:
                new = await self.store.supersede(memory_id, text, new_id=new_id)
            except Exception as e:
                tracker.compensate(STEP_RECORD, e)
                tracker.fail()
                self._finish(tracker)
                raise
            tracker.step_done(STEP_RECORD)

            step = STEP_VECTOR
            try:
                tracker.begin(MutationState.APPLYING_VECTOR)
                await self._index_vector(new)
                tracker.step_done(STEP_VECTOR)

                if self.graph is not None:
                    step = STEP_GRAPH
                    tracker.begin(MutationState.APPLYING_GRAPH)
                    await self._index_graph(new)
                    tracker.step_done(STEP_GRAPH)
            except Exception as e:
                tracker.compensate(step, e)
                logger.warning(f"update_memory {memory_id} failed at {step}, reinstating previous version")
                await self._best_effort(tracker, "remove_vector", self.vector_index.remove(new_id))
                if self.graph is not None:
                    await self._best_effort(tracker, "delete_graph", self.graph.delete_by_origin(new_id))
                await self._best_effort(tracker, "reinstate", self.store.reinstate(memory_id, new_id))
                raise self._partial_failure(tracker, e) from e

            # Retire the old version's index entries; reads already hide them
            step = STEP_RETIRE_VECTOR
            try:
                tracker.begin(MutationState.APPLYING_VECTOR)
                await self.vector_index.remove(memory_id)
                tracker.step_done(STEP_RETIRE_VECTOR)

                if self.graph is not None:
                    step = STEP_RETIRE_GRAPH
                    tracker.begin(MutationState.APPLYING_GRAPH)
                    await self.graph.delete_by_origin(memory_id)
                    tracker.step_done(STEP_RETIRE_GRAPH)
            except Exception as e:
                tracker.compensate(step, e)
                raise self._partial_failure(tracker, e, compensated=False) from e

            tracker.commit()
            self._finish(tracker)
            logger.info(f"Updated memory {memory_id} -> {new_id}")
            return new

    # ------------------------------------------------------------------
    # maintenance
    # ------------------------------------------------------------------

    async def purge_deleted(self, scope: FilterSpec, older_than: float | None = None) -> int:
        """Physically remove non-active records in ``scope`` (optionally only older ones)."""
        self._require_scope(scope)
        return await self.store.purge(scope, older_than=older_than)

    async def reconcile(self, scope: FilterSpec, *, dry_run: bool = False) -> dict[str, Any]:
        """
        Repair drift between the record store and the indexes.

        Active records without a vector are re-indexed; vectors and graph
        items whose record is not active are removed.
        """
        self._require_scope(scope)
        active = {record.id: record async for record in self.store.query(scope)}
        indexed = await self.vector_index.list_ids(scope)
        graph_origins = await self.graph.list_origin_ids(scope) if self.graph is not None else set()

        missing = sorted(set(active) - indexed)
        stale_vectors = sorted(indexed - set(active))
        stale_graph = sorted(graph_origins - set(active))
        report: dict[str, Any] = {
            "dry_run": dry_run,
            "active_records": len(active),
            "vectors_missing": len(missing),
            "vectors_stale": len(stale_vectors),
            "graph_stale": len(stale_graph),
            "reindexed": 0,
            "removed_vectors": 0,
            "removed_graph_origins": 0,
        }
        if dry_run:
            return report

        for memory_id in missing:
            async with self.locks.hold(memory_id):
                record = (await self.store.get_many([memory_id])).get(memory_id)
                if record is None or not record.is_active:
                    continue
                await self._index_vector(record)
                await self._index_graph(record)
                report["reindexed"] += 1

        for ids, key, remove in (
            (stale_vectors, "removed_vectors", self.vector_index.remove),
            (stale_graph, "removed_graph_origins", self.graph.delete_by_origin if self.graph else None),
        ):
            for memory_id in ids:
                async with self.locks.hold(memory_id):
                    record = (await self.store.get_many([memory_id])).get(memory_id)
                    if record is not None and record.is_active:
                        continue
                    await remove(memory_id)
                    report[key] += 1

        logger.info(f"Reconciled scope {scope}: {report}")
        return report

    async def health(self) -> dict[str, Any]:
        """Backend statistics plus engine counters."""
        result: dict[str, Any] = {"healthy": True, "timestamp": time.time()}
        backends: list[tuple[str, Any]] = [("store", self.store), ("vector", self.vector_index)]
        if self.graph is not None:
            backends.append(("graph", self.graph))
        for name, backend in backends:
            try:
                result[name] = await backend.get_stats()
            except MemoryServiceError as e:
                result["healthy"] = False
                result[name] = {"status": "error", "error": e.message}
        if self.graph is None:
            result["graph"] = {"status": "disabled"}
        result["engine"] = {
            "locks_held": len(self.locks),
            "inflight_mutations": len(self._inflight),
            "audit_entries": len(self.audit),
        }
        return result

    def get_audit_trail(
        self, limit: int = 100, operation: str | None = None, memory_id: str | None = None
    ) -> dict[str, Any]:
        """
        Get audit trail of finished mutations, newest first.

        Statistics are computed over all matching entries, not just the
        returned page.
        """
        entries = [e for e in self.audit.entries(memory_id=memory_id) if operation is None or e.operation == operation]
        entries.reverse()
        by_operation: dict[str, int] = {}
        failed = 0
        for entry in entries:
            by_operation[entry.operation] = by_operation.get(entry.operation, 0) + 1
            if not entry.success:
                failed += 1
        total = len(entries)
        return {
            "total_operations": total,
            "operations": [e.to_dict() for e in entries[:limit]],
            "operations_by_type": by_operation,
            "success_rate": (total - failed) / total if total else 1.0,
        }
