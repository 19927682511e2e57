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
Memory record store interface.

The record store is the source of truth for text, scope and lifecycle state.
The vector index and the graph only hold derived data keyed by record id.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from typing import Any

from ..models.memory import MemoryRecord, MemoryState
from ..models.scope import FilterSpec

ACTIVE_ONLY: tuple[MemoryState, ...] = (MemoryState.ACTIVE,)

PageFetcher = Callable[[int | None, int], Awaitable[list[MemoryRecord]]]


class RecordQuery:
    """Lazily paged, restartable sequence of records (most recent first).

    Every ``async for`` starts a fresh scan. Pages are fetched with keyset
    pagination on ``revision``, so concurrent inserts never shift a page.
    """

    def __init__(self, fetch_page: PageFetcher, page_size: int = 100, limit: int | None = None):
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._fetch_page = fetch_page
        self._page_size = page_size
        self._limit = limit

    def __aiter__(self) -> AsyncIterator[MemoryRecord]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[MemoryRecord]:
        if self._limit is not None and self._limit <= 0:
            return
        before: int | None = None
        produced = 0
        while True:
            size = self._page_size
            if self._limit is not None:
                size = min(size, self._limit - produced)
            page = await self._fetch_page(before, size)
            for record in page:
                yield record
                produced += 1
                if self._limit is not None and produced >= self._limit:
                    return
            if len(page) < size:
                return
            before = page[-1].revision

    async def to_list(self) -> list[MemoryRecord]:
        return [record async for record in self]


class MemoryRecordStore(ABC):
    """Durable record of memory text, scope and lifecycle state."""

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare the backend (schema, directories). Idempotent."""

    @abstractmethod
    async def create(
        self,
        text: str,
        scope: FilterSpec,
        *,
        memory_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> MemoryRecord:
        """Write a new active record.

        Raises:
            StoreUnavailable: backend unreachable or erroring.
            InvalidArgument: ``memory_id`` already exists.
        """

    @abstractmethod
    async def get(self, memory_id: str) -> MemoryRecord:
        """Return the record in any state.

        Raises:
            NotFound: unknown id.
        """

    @abstractmethod
    async def get_many(self, memory_ids: Iterable[str]) -> dict[str, MemoryRecord]:
        """Return known records keyed by id; unknown ids are omitted."""

    @abstractmethod
    def query(
        self,
        scope: FilterSpec,
        text_hint: str | None = None,
        *,
        states: tuple[MemoryState, ...] = ACTIVE_ONLY,
        up_to_revision: int | None = None,
        limit: int | None = None,
    ) -> RecordQuery:
        """Records matching ``scope``, most recent first. Sole full-listing path."""

    @abstractmethod
    async def count(self, scope: FilterSpec, states: tuple[MemoryState, ...] = ACTIVE_ONLY) -> int:
        """Number of records matching ``scope`` in the given states."""

    @abstractmethod
    async def supersede(self, memory_id: str, new_text: str, *, new_id: str | None = None) -> MemoryRecord:
        """Atomically retire an active record and create its replacement.

        Raises:
            NotFound: ``memory_id`` is not an active record.
        """

    @abstractmethod
    async def reinstate(self, superseded_id: str, replacement_id: str) -> None:
        """Undo a supersede: delete the replacement and reactivate the original."""

    @abstractmethod
    async def mark_deleted(self, memory_id: str) -> bool:
        """Mark a record deleted. Returns False if it already was.

        Raises:
            NotFound: unknown id.
        """

    @abstractmethod
    async def mark_deleted_many(self, memory_ids: Iterable[str]) -> int:
        """Mark the active records among ``memory_ids`` deleted; returns how many changed."""

    @abstractmethod
    async def current_revision(self) -> int:
        """Highest revision ever assigned (0 when empty). Used as a cutoff token."""

    @abstractmethod
    async def history(self, memory_id: str) -> list[MemoryRecord]:
        """All versions in the record's chain, oldest first.

        Raises:
            NotFound: unknown id.
        """

    @abstractmethod
    async def purge(self, scope: FilterSpec, *, older_than: float | None = None) -> int:
        """Physically remove non-active records matching ``scope``."""

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]:
        """Backend statistics for health checks."""

    @abstractmethod
    async def close(self) -> None:
        """Release resources. Safe to call more than once."""
