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
SQLite memory record store.

Durable store for memory text, scope and lifecycle state, built on aiosqlite.
Each operation opens its own connection; writes run inside ``BEGIN IMMEDIATE``
so that multi-row changes (supersede, reinstate) are atomic.

``revision`` is an AUTOINCREMENT rowid: strictly increasing, never reused,
and therefore usable as a cutoff token for bulk deletes.
"""

import json
import logging
import os
import sqlite3
import time
import uuid
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

import aiosqlite
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..errors import InvalidArgument, NotFound, StoreUnavailable
from ..models.memory import MemoryRecord, MemoryState
from ..models.scope import FilterSpec
from .base import ACTIVE_ONLY, MemoryRecordStore, RecordQuery

logger = logging.getLogger(__name__)

T = TypeVar("T")

_COLUMNS = "revision, id, chain_id, text, scope, state, supersedes, superseded_by, metadata, created_at, updated_at"

# SQLite caps bound parameters per statement; stay well under the old 999 limit.
_ID_CHUNK = 500


def _is_locked_error(exc: BaseException) -> bool:
    """Writer contention that outlived busy_timeout is worth another attempt."""
    return isinstance(exc, sqlite3.OperationalError) and "locked" in str(exc).lower()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _scope_clause(scope: FilterSpec) -> tuple[list[str], list[Any]]:
    """SQL conditions for "every query dimension present and equal"."""
    clauses: list[str] = []
    params: list[Any] = []
    for name, value in scope.items():
        clauses.append("json_extract(scope, ?) = ?")
        params.extend((f"$.{name}", value))
    return clauses, params


def _row_to_record(row: aiosqlite.Row) -> MemoryRecord:
    return MemoryRecord(
        revision=row["revision"],
        id=row["id"],
        chain_id=row["chain_id"],
        text=row["text"],
        scope=FilterSpec.model_validate(json.loads(row["scope"])),
        state=MemoryState(row["state"]),
        supersedes=row["supersedes"],
        superseded_by=row["superseded_by"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SqliteRecordStore(MemoryRecordStore):
    """Async SQLite implementation of ``MemoryRecordStore``."""

    def __init__(self, db_path: str, busy_timeout: float = 5.0, page_size: int = 100):
        """
        Initialize the record store.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds a writer waits on a locked database
            page_size: Rows fetched per page by ``query()``
        """
        if db_path == ":memory:":
            # Every operation opens a fresh connection, which would see an empty database.
            raise ValueError("SqliteRecordStore needs a file path, not ':memory:'")
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self.page_size = page_size
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize database schema if not exists."""
        if self._initialized:
            return

        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        async def _create(db: aiosqlite.Connection) -> None:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS memories (
                    revision INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    chain_id TEXT NOT NULL,
                    text TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    state TEXT NOT NULL,
                    supersedes TEXT,
                    superseded_by TEXT,
                    metadata TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_memories_chain ON memories(chain_id)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_memories_state ON memories(state)")
            # At most one active version per logical memory
            await db.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS idx_memories_one_active ON memories(chain_id) WHERE state = 'active'"
            )

        await self._run(_create)
        self._initialized = True
        logger.info(f"Memory record store initialized at {self.db_path}")

    # ------------------------------------------------------------------
    # connection plumbing
    # ------------------------------------------------------------------

    async def _run(self, op: Callable[[aiosqlite.Connection], Awaitable[T]], write: bool = False) -> T:
        """Run ``op`` on a fresh connection, mapping backend failures to ``StoreUnavailable``."""
        try:
            return await self._run_with_retry(op, write)
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Record store operation failed: {e}")
            raise StoreUnavailable(f"Record store error: {e}", backend="sqlite") from e

    @retry(
        retry=retry_if_exception(_is_locked_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1.0),
        reraise=True,
    )
    async def _run_with_retry(self, op: Callable[[aiosqlite.Connection], Awaitable[T]], write: bool) -> T:
        async with aiosqlite.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            if not write:
                return await op(db)
            await db.execute("BEGIN IMMEDIATE")
            try:
                result = await op(db)
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")
            return result

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    @staticmethod
    async def _fetch_by_id(db: aiosqlite.Connection, memory_id: str) -> MemoryRecord | None:
        cursor = await db.execute(f"SELECT {_COLUMNS} FROM memories WHERE id = ?", (memory_id,))
        row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def create(
        self,
        text: str,
        scope: FilterSpec,
        *,
        memory_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryRecord:
        await self._ensure_initialized()
        new_id = memory_id or str(uuid.uuid4())
        now = time.time()

        async def _insert(db: aiosqlite.Connection) -> MemoryRecord:
            try:
                cursor = await db.execute(
                    """
                    INSERT INTO memories
                    (id, chain_id, text, scope, state, metadata, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        new_id,
                        new_id,
                        text,
                        json.dumps(scope.as_dict(), sort_keys=True),
                        MemoryState.ACTIVE.value,
                        json.dumps(metadata) if metadata else None,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise InvalidArgument(f"Memory id {new_id} already exists", memory_id=new_id) from e
            return MemoryRecord(
                revision=cursor.lastrowid,
                id=new_id,
                chain_id=new_id,
                text=text,
                scope=scope,
                metadata=metadata or {},
                created_at=now,
                updated_at=now,
            )

        record = await self._run(_insert, write=True)
        logger.debug(f"Created record {record.id} at revision {record.revision}")
        return record

    async def supersede(self, memory_id: str, new_text: str, *, new_id: str | None = None) -> MemoryRecord:
        await self._ensure_initialized()
        new_id = new_id or str(uuid.uuid4())
        now = time.time()

        async def _supersede(db: aiosqlite.Connection) -> MemoryRecord:
            old = await self._fetch_by_id(db, memory_id)
            if old is None or not old.is_active:
                raise NotFound(memory_id, f"Memory {memory_id} is not an active record")
            # Retire first: the partial unique index allows one active row per chain
            await db.execute(
                "UPDATE memories SET state = ?, superseded_by = ?, updated_at = ? WHERE id = ?",
                (MemoryState.SUPERSEDED.value, new_id, now, memory_id),
            )
            cursor = await db.execute(
                """
                INSERT INTO memories
                (id, chain_id, text, scope, state, supersedes, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    new_id,
                    old.chain_id,
                    new_text,
                    json.dumps(old.scope.as_dict(), sort_keys=True),
                    MemoryState.ACTIVE.value,
                    old.id,
                    json.dumps(old.metadata) if old.metadata else None,
                    now,
                    now,
                ),
            )
            return MemoryRecord(
                revision=cursor.lastrowid,
                id=new_id,
                chain_id=old.chain_id,
                text=new_text,
                scope=old.scope,
                supersedes=old.id,
                metadata=old.metadata,
                created_at=now,
                updated_at=now,
            )

        return await self._run(_supersede, write=True)

    async def reinstate(self, superseded_id: str, replacement_id: str) -> None:
        await self._ensure_initialized()
        now = time.time()

        async def _reinstate(db: aiosqlite.Connection) -> None:
            await db.execute(
                "UPDATE memories SET state = ?, updated_at = ? WHERE id = ? AND state = ?",
                (MemoryState.DELETED.value, now, replacement_id, MemoryState.ACTIVE.value),
            )
            cursor = await db.execute(
                """
                UPDATE memories SET state = ?, superseded_by = NULL, updated_at = ?
                WHERE id = ? AND state = ? AND superseded_by = ?
            """,
                (MemoryState.ACTIVE.value, now, superseded_id, MemoryState.SUPERSEDED.value, replacement_id),
            )
            if cursor.rowcount == 0:
                raise NotFound(superseded_id, f"Memory {superseded_id} is not superseded by {replacement_id}")

        await self._run(_reinstate, write=True)
        logger.info(f"Reinstated {superseded_id}, retired replacement {replacement_id}")

    async def mark_deleted(self, memory_id: str) -> bool:
        await self._ensure_initialized()
        now = time.time()

        async def _mark(db: aiosqlite.Connection) -> bool:
            cursor = await db.execute(
                "UPDATE memories SET state = ?, updated_at = ? WHERE id = ? AND state != ?",
                (MemoryState.DELETED.value, now, memory_id, MemoryState.DELETED.value),
            )
            if cursor.rowcount:
                return True
            cursor = await db.execute("SELECT 1 FROM memories WHERE id = ?", (memory_id,))
            if await cursor.fetchone() is None:
                raise NotFound(memory_id)
            return False

        return await self._run(_mark, write=True)

    async def mark_deleted_many(self, memory_ids: Iterable[str]) -> int:
        await self._ensure_initialized()
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return 0
        now = time.time()

        async def _mark(db: aiosqlite.Connection) -> int:
            changed = 0
            for start in range(0, len(ids), _ID_CHUNK):
                chunk = ids[start : start + _ID_CHUNK]
                placeholders = ",".join("?" * len(chunk))
                cursor = await db.execute(
                    f"UPDATE memories SET state = ?, updated_at = ? WHERE state = ? AND id IN ({placeholders})",
                    (MemoryState.DELETED.value, now, MemoryState.ACTIVE.value, *chunk),
                )
                changed += cursor.rowcount
            return changed

        return await self._run(_mark, write=True)

    async def purge(self, scope: FilterSpec, *, older_than: float | None = None) -> int:
        await self._ensure_initialized()
        clauses, params = _scope_clause(scope)
        clauses.insert(0, "state != ?")
        params.insert(0, MemoryState.ACTIVE.value)
        if older_than is not None:
            clauses.append("updated_at < ?")
            params.append(older_than)

        async def _purge(db: aiosqlite.Connection) -> int:
            cursor = await db.execute(f"DELETE FROM memories WHERE {' AND '.join(clauses)}", params)
            return cursor.rowcount

        removed = await self._run(_purge, write=True)
        logger.info(f"Purged {removed} non-active records for scope {scope}")
        return removed

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def get(self, memory_id: str) -> MemoryRecord:
        await self._ensure_initialized()

        async def _get(db: aiosqlite.Connection) -> MemoryRecord | None:
            return await self._fetch_by_id(db, memory_id)

        record = await self._run(_get)
        if record is None:
            raise NotFound(memory_id)
        return record

    async def get_many(self, memory_ids: Iterable[str]) -> dict[str, MemoryRecord]:
        await self._ensure_initialized()
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}

        async def _get_many(db: aiosqlite.Connection) -> dict[str, MemoryRecord]:
            found: dict[str, MemoryRecord] = {}
            for start in range(0, len(ids), _ID_CHUNK):
                chunk = ids[start : start + _ID_CHUNK]
                placeholders = ",".join("?" * len(chunk))
                cursor = await db.execute(f"SELECT {_COLUMNS} FROM memories WHERE id IN ({placeholders})", chunk)
                for row in await cursor.fetchall():
                    record = _row_to_record(row)
                    found[record.id] = record
            return found

        return await self._run(_get_many)

    def query(
        self,
        scope: FilterSpec,
        text_hint: str | None = None,
        *,
        states: tuple[MemoryState, ...] = ACTIVE_ONLY,
        up_to_revision: int | None = None,
        limit: int | None = None,
    ) -> RecordQuery:
        if not states:
            raise ValueError("states must not be empty")

        clauses, params = _scope_clause(scope)
        clauses.append(f"state IN ({','.join('?' * len(states))})")
        params.extend(MemoryState(s).value for s in states)
        if up_to_revision is not None:
            clauses.append("revision <= ?")
            params.append(up_to_revision)
        if text_hint:
            clauses.append("text LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(text_hint)}%")

        async def fetch_page(before: int | None, size: int) -> list[MemoryRecord]:
            await self._ensure_initialized()
            page_clauses = list(clauses)
            page_params = list(params)
            if before is not None:
                page_clauses.append("revision < ?")
                page_params.append(before)
            page_params.append(size)
            sql = f"SELECT {_COLUMNS} FROM memories WHERE {' AND '.join(page_clauses)} ORDER BY revision DESC LIMIT ?"

            async def _page(db: aiosqlite.Connection) -> list[MemoryRecord]:
                cursor = await db.execute(sql, page_params)
                return [_row_to_record(row) for row in await cursor.fetchall()]

            return await self._run(_page)

        return RecordQuery(fetch_page, page_size=self.page_size, limit=limit)

    async def count(self, scope: FilterSpec, states: tuple[MemoryState, ...] = ACTIVE_ONLY) -> int:
        await self._ensure_initialized()
        clauses, params = _scope_clause(scope)
        clauses.append(f"state IN ({','.join('?' * len(states))})")
        params.extend(MemoryState(s).value for s in states)

        async def _count(db: aiosqlite.Connection) -> int:
            cursor = await db.execute(f"SELECT COUNT(*) FROM memories WHERE {' AND '.join(clauses)}", params)
            row = await cursor.fetchone()
            return row[0] if row else 0

        return await self._run(_count)

    async def current_revision(self) -> int:
        await self._ensure_initialized()

        async def _revision(db: aiosqlite.Connection) -> int:
            # sqlite_sequence keeps the high-water mark even after purges
            cursor = await db.execute("SELECT seq FROM sqlite_sequence WHERE name = 'memories'")
            row = await cursor.fetchone()
            return int(row[0]) if row else 0

        return await self._run(_revision)

    async def history(self, memory_id: str) -> list[MemoryRecord]:
        await self._ensure_initialized()

        async def _history(db: aiosqlite.Connection) -> list[MemoryRecord] | None:
            record = await self._fetch_by_id(db, memory_id)
            if record is None:
                return None
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM memories WHERE chain_id = ? ORDER BY revision ASC", (record.chain_id,)
            )
            return [_row_to_record(row) for row in await cursor.fetchall()]

        versions = await self._run(_history)
        if versions is None:
            raise NotFound(memory_id)
        return versions

    async def get_stats(self) -> dict[str, Any]:
        await self._ensure_initialized()

        async def _stats(db: aiosqlite.Connection) -> dict[str, Any]:
            cursor = await db.execute("SELECT state, COUNT(*) FROM memories GROUP BY state")
            by_state = {row[0]: row[1] for row in await cursor.fetchall()}
            return {
                "backend": "sqlite",
                "database_path": self.db_path,
                "total": sum(by_state.values()),
                "by_state": by_state,
            }

        return await self._run(_stats)

    async def close(self) -> None:
        # Connections are per-operation; nothing is held open.
        self._initialized = False
