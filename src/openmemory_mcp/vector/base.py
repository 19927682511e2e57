"""Vector index and embedder interfaces.

The vector index stores one point per active memory record, keyed by the
record id and tagged with the record's scope. It never holds text; callers
re-read the record store for anything user-visible.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any, Protocol, runtime_checkable

from ..models.scope import FilterSpec

VectorHit = tuple[str, float]
"""``(memory_id, score)``: higher score means more similar."""


@runtime_checkable
class Embedder(Protocol):
    """Turns text into fixed-size vectors."""

    @property
    def dimension(self) -> int: ...

    async def embed_passage(self, text: str) -> list[float]:
        """Embedding used when storing a memory."""
        ...

    async def embed_query(self, text: str) -> list[float]:
        """Embedding used when searching."""
        ...


class VectorIndex(ABC):
    """Similarity index over memory record ids."""

    @abstractmethod
    async def initialize(self, dimension: int) -> None:
        """Create or verify the collection for vectors of ``dimension``."""

    @abstractmethod
    async def upsert(self, memory_id: str, embedding: list[float], scope: FilterSpec, *, revision: int = 0) -> None:
        """Insert or replace the point for ``memory_id``. Idempotent."""

    @abstractmethod
    async def remove(self, memory_id: str) -> None:
        """Remove the point for ``memory_id``. Removing an absent point is a no-op."""

    @abstractmethod
    async def remove_many(self, memory_ids: Iterable[str]) -> None:
        """Remove several points in one call."""

    @abstractmethod
    async def search(self, embedding: list[float], scope: FilterSpec, k: int) -> list[VectorHit]:
        """Top ``k`` points whose scope satisfies ``scope``, best first."""

    @abstractmethod
    async def list_ids(self, scope: FilterSpec) -> set[str]:
        """Every memory id indexed under ``scope``. Used by reconciliation."""

    @abstractmethod
    async def count(self, scope: FilterSpec | None = None) -> int:
        """Number of indexed memories, optionally restricted to ``scope``."""

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]:
        """Backend statistics for health checks."""

    @abstractmethod
    async def close(self) -> None:
        """Release the client connection."""
