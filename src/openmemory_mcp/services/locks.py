"""Per-key asyncio locks.

Mutations on the same memory id are serialized; unrelated ids never wait on
each other. Entries are reference-counted and dropped as soon as nobody
holds or waits on them, so the registry stays as small as the set of ids
currently being mutated.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.refs = 0


class KeyedLock:
    """Registry of ``asyncio.Lock`` objects keyed by string."""

    def __init__(self) -> None:
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        await self._acquire(key)
        try:
            yield
        finally:
            self._release(key)

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str]) -> AsyncIterator[list[str]]:
        """
        Hold the locks for several keys at once.

        Keys are de-duplicated and acquired in sorted order, so two callers
        locking overlapping sets cannot deadlock. Yields the sorted keys.
        """
        ordered = sorted(set(keys))
        acquired: list[str] = []
        try:
            for key in ordered:
                await self._acquire(key)
                acquired.append(key)
            yield ordered
        finally:
            for key in reversed(acquired):
                self._release(key)

    async def _acquire(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.refs += 1
        try:
            await entry.lock.acquire()
        except BaseException:
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[key]
            raise

    def _release(self, key: str) -> None:
        entry = self._entries[key]
        entry.lock.release()
        entry.refs -= 1
        if entry.refs == 0:
            del self._entries[key]
