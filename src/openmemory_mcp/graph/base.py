"""
Entity/relationship graph adapter interface.

Every graph item is owned by one memory record. The two delete paths take
deliberately different argument types: ``delete_by_origin`` removes one
record's items by id, ``delete_by_scope`` wipes a whole scope. Mixing them
up would either delete nothing or delete a tenant's graph, so both check
their argument type before touching the backend.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from ..models.graph import Entity, ExtractedEntity, ExtractedRelationship, Relationship
from ..models.scope import FilterSpec
from .schema import entity_id


class GraphAdapter(ABC):
    """Base class for graph backends. Subclasses implement the ``_``-prefixed hooks."""

    name = "graph"

    @abstractmethod
    async def initialize(self) -> None:
        """Connect and apply schema. Idempotent."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections. Safe to call more than once."""

    # -- writes -------------------------------------------------------------

    async def add_entities(
        self,
        origin_id: str,
        scope: FilterSpec,
        entities: Iterable[ExtractedEntity],
        *,
        origin_revision: int = 0,
    ) -> list[Entity]:
        """Store ``entities`` as owned by ``origin_id``. Re-adding is idempotent."""
        _require_origin_id(origin_id)
        _require_scope(scope)
        bound: dict[str, Entity] = {}
        for extracted in entities:
            bound.setdefault(
                extracted.key,
                Entity(
                    id=entity_id(origin_id, extracted.key),
                    name=extracted.name,
                    entity_type=extracted.entity_type,
                    origin_id=origin_id,
                    origin_revision=origin_revision,
                    scope=scope,
                ),
            )
        items = list(bound.values())
        if items:
            await self._add_entities(items)
        return items

    async def add_relationships(
        self,
        origin_id: str,
        scope: FilterSpec,
        edges: Iterable[ExtractedRelationship],
        *,
        origin_revision: int = 0,
    ) -> list[Relationship]:
        """Store ``edges`` between this record's entities (referenced by name)."""
        _require_origin_id(origin_id)
        _require_scope(scope)
        bound: dict[tuple[str, str, str], Relationship] = {}
        for edge in edges:
            source_key, target_key = edge.source.strip().lower(), edge.target.strip().lower()
            if source_key == target_key:
                continue
            rel = Relationship(
                source=entity_id(origin_id, source_key),
                target=entity_id(origin_id, target_key),
                relation=edge.relation,
                origin_id=origin_id,
                origin_revision=origin_revision,
                scope=scope,
                source_name=edge.source,
                target_name=edge.target,
            )
            bound.setdefault((rel.source, rel.relation, rel.target), rel)
        items = list(bound.values())
        if items:
            await self._add_relationships(items)
        return items

    async def delete_by_origin(self, origin_id: str) -> int:
        """Remove exactly the items whose origin is ``origin_id``. Returns nodes removed."""
        _require_origin_id(origin_id)
        return await self._delete_by_origin(origin_id)

    async def delete_by_scope(self, scope: FilterSpec, *, up_to_revision: int | None = None) -> int:
        """
        Remove every item matching ``scope``, regardless of origin.

        With ``up_to_revision`` only items whose ``origin_revision`` is at or
        below it are removed. An empty scope is refused.
        """
        _require_scope(scope)
        if scope.is_empty():
            raise ValueError("delete_by_scope refuses an empty scope")
        return await self._delete_by_scope(scope, up_to_revision)

    # -- reads --------------------------------------------------------------

    async def get_entities(
        self, scope: FilterSpec, *, origin_ids: Iterable[str] | None = None, limit: int = 100
    ) -> list[Entity]:
        _require_scope(scope)
        return await self._get_entities(scope, None if origin_ids is None else list(origin_ids), limit)

    async def get_relationships(
        self, scope: FilterSpec, *, origin_ids: Iterable[str] | None = None, limit: int = 100
    ) -> list[Relationship]:
        _require_scope(scope)
        return await self._get_relationships(scope, None if origin_ids is None else list(origin_ids), limit)

    async def list_origin_ids(self, scope: FilterSpec) -> set[str]:
        """Origins that own at least one item in ``scope``. Used by reconciliation."""
        _require_scope(scope)
        return await self._list_origin_ids(scope)

    @abstractmethod
    async def get_stats(self) -> dict[str, Any]:
        """Backend statistics for health checks."""

    # -- backend hooks ------------------------------------------------------

    @abstractmethod
    async def _add_entities(self, entities: list[Entity]) -> None: ...

    @abstractmethod
    async def _add_relationships(self, relationships: list[Relationship]) -> None: ...

    @abstractmethod
    async def _delete_by_origin(self, origin_id: str) -> int: ...

    @abstractmethod
    async def _delete_by_scope(self, scope: FilterSpec, up_to_revision: int | None) -> int: ...

    @abstractmethod
    async def _get_entities(self, scope: FilterSpec, origin_ids: list[str] | None, limit: int) -> list[Entity]: ...

    @abstractmethod
    async def _get_relationships(
        self, scope: FilterSpec, origin_ids: list[str] | None, limit: int
    ) -> list[Relationship]: ...

    @abstractmethod
    async def _list_origin_ids(self, scope: FilterSpec) -> set[str]: ...


def _require_origin_id(origin_id: Any) -> None:
    if not isinstance(origin_id, str):
        raise TypeError(f"origin_id must be a str, got {type(origin_id).__name__}")
    if not origin_id:
        raise ValueError("origin_id must not be empty")


def _require_scope(scope: Any) -> None:
    if not isinstance(scope, FilterSpec):
        raise TypeError(f"scope must be a FilterSpec, got {type(scope).__name__}")
