"""
FalkorDB graph adapter for the memory knowledge graph.

Entities are per-record ``:Entity`` nodes; relationships are typed edges
between entities of the same record. Scope dimensions are stored as
``scope_<dim>`` properties on both, so scope-wide deletes and reads are
plain property matches.

All Cypher is parameterized except relation types and property names,
which are pattern-validated before formatting (see schema.py).
"""

import logging
from typing import Any

from falkordb.asyncio import FalkorDB
from redis.asyncio import BlockingConnectionPool
from redis.exceptions import RedisError

from ..errors import IndexUnavailable
from ..models.graph import Entity, Relationship
from ..models.scope import FilterSpec
from .base import GraphAdapter
from .schema import (
    ENTITY_LABEL,
    SCHEMA_STATEMENTS,
    scope_from_properties,
    scope_properties,
    scope_where,
    validate_relation_type,
)

logger = logging.getLogger(__name__)


class FalkorGraphAdapter(GraphAdapter):
    """
    Async FalkorDB client for the memory knowledge graph.

    Manages a Redis connection pool; every query goes through ``_query`` so
    backend failures surface as ``IndexUnavailable``.
    """

    name = "falkordb"

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        password: str | None = None,
        graph_name: str = "openmemory_graph",
        max_connections: int = 16,
    ):
        self.host = host
        self.port = port
        self.password = password
        self.graph_name = graph_name
        self.max_connections = max_connections

        self._pool: BlockingConnectionPool | None = None
        self._db: FalkorDB | None = None
        self._graph = None
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize connection pool, select graph, and apply schema."""
        if self._initialized:
            return

        self._pool = BlockingConnectionPool(
            host=self.host,
            port=self.port,
            password=self.password,
            max_connections=self.max_connections,
            timeout=None,
            decode_responses=True,
        )

        self._db = FalkorDB(connection_pool=self._pool)
        self._graph = self._db.select_graph(self.graph_name)

        # Apply schema idempotently
        for stmt in SCHEMA_STATEMENTS:
            try:
                await self._graph.query(stmt)
            except RedisError as e:
                # Index already exists is not an error
                if "already indexed" not in str(e).lower():
                    logger.warning(f"Schema statement warning: {stmt} -> {e}")

        self._initialized = True
        logger.info(f"FalkorGraphAdapter initialized: {self.host}:{self.port}/{self.graph_name}")

    @property
    def graph(self):
        """Expose graph for direct query access."""
        if self._graph is None:
            raise RuntimeError("FalkorGraphAdapter not initialized. Call initialize() first.")
        return self._graph

    async def _query(self, operation: str, cypher: str, params: dict[str, Any] | None = None):
        try:
            return await self.graph.query(cypher, params=params or {})
        except (RedisError, OSError) as e:
            logger.error(f"Graph {operation} failed: {e}")
            raise IndexUnavailable(f"Graph {operation} failed: {e}", backend=self.name, operation=operation) from e

    # ── writes ───────────────────────────────────────────────────────────

    async def _add_entities(self, entities: list[Entity]) -> None:
        for entity in entities:
            props = scope_properties(entity.scope)
            set_clause = "".join(f", e.{key} = ${key}" for key in props)
            await self._query(
                "add_entities",
                f"MERGE (e:{ENTITY_LABEL} {{id: $id}}) "
                "SET e.name = $name, e.key = $key, e.entity_type = $entity_type, "
                f"e.origin_id = $origin_id, e.origin_revision = $origin_revision{set_clause}",
                params={
                    "id": entity.id,
                    "name": entity.name,
                    "key": entity.name.strip().lower(),
                    "entity_type": entity.entity_type,
                    "origin_id": entity.origin_id,
                    "origin_revision": entity.origin_revision,
                    **props,
                },
            )
        logger.debug(f"Stored {len(entities)} entities for {entities[0].origin_id}")

    async def _add_relationships(self, relationships: list[Relationship]) -> None:
        for rel in relationships:
            label = validate_relation_type(rel.relation)
            props = scope_properties(rel.scope)
            set_clause = "".join(f", r.{key} = ${key}" for key in props)
            await self._query(
                "add_relationships",
                f"MATCH (a:{ENTITY_LABEL} {{id: $src}}), (b:{ENTITY_LABEL} {{id: $dst}}) "
                f"MERGE (a)-[r:{label} {{origin_id: $origin_id}}]->(b) "
                f"SET r.origin_revision = $origin_revision{set_clause}",
                params={
                    "src": rel.source,
                    "dst": rel.target,
                    "origin_id": rel.origin_id,
                    "origin_revision": rel.origin_revision,
                    **props,
                },
            )
        logger.debug(f"Stored {len(relationships)} relationships for {relationships[0].origin_id}")

    async def _delete_by_origin(self, origin_id: str) -> int:
        # Edges only join entities of one record, so DETACH DELETE covers them
        result = await self._query(
            "delete_by_origin",
            f"MATCH (e:{ENTITY_LABEL} {{origin_id: $origin_id}}) DETACH DELETE e",
            params={"origin_id": origin_id},
        )
        removed = int(result.nodes_deleted or 0)
        logger.debug(f"Removed {removed} graph nodes for {origin_id}")
        return removed

    async def _delete_by_scope(self, scope: FilterSpec, up_to_revision: int | None) -> int:
        clauses, params = scope_where("e", scope)
        if up_to_revision is not None:
            clauses.append("e.origin_revision <= $cutoff")
            params["cutoff"] = up_to_revision
        result = await self._query(
            "delete_by_scope",
            f"MATCH (e:{ENTITY_LABEL}) WHERE {' AND '.join(clauses)} DETACH DELETE e",
            params=params,
        )
        removed = int(result.nodes_deleted or 0)
        logger.info(f"Removed {removed} graph nodes for scope {scope}")
        return removed

    # ── reads ────────────────────────────────────────────────────────────

    async def _get_entities(self, scope: FilterSpec, origin_ids: list[str] | None, limit: int) -> list[Entity]:
        clauses, params = scope_where("e", scope)
        if origin_ids is not None:
            if not origin_ids:
                return []
            clauses.append("e.origin_id IN $origins")
            params["origins"] = origin_ids
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        result = await self._query(
            "get_entities",
            f"MATCH (e:{ENTITY_LABEL}) {where}RETURN properties(e) AS props, e.name AS name ORDER BY name LIMIT $limit",
            params={**params, "limit": limit},
        )
        entities = []
        for props, _name in result.result_set:
            entities.append(
                Entity(
                    id=props["id"],
                    name=props["name"],
                    entity_type=props.get("entity_type") or "concept",
                    origin_id=props["origin_id"],
                    origin_revision=int(props.get("origin_revision") or 0),
                    scope=scope_from_properties(props),
                )
            )
        return entities

    async def _get_relationships(self, scope: FilterSpec, origin_ids: list[str] | None, limit: int) -> list[Relationship]:
        clauses, params = scope_where("r", scope)
        if origin_ids is not None:
            if not origin_ids:
                return []
            clauses.append("r.origin_id IN $origins")
            params["origins"] = origin_ids
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        result = await self._query(
            "get_relationships",
            f"MATCH (a:{ENTITY_LABEL})-[r]->(b:{ENTITY_LABEL}) {where}"
            "RETURN a.id, a.name, type(r), b.id, b.name, properties(r) LIMIT $limit",
            params={**params, "limit": limit},
        )
        relationships = []
        for src_id, src_name, rel_type, dst_id, dst_name, props in result.result_set:
            relationships.append(
                Relationship(
                    source=src_id,
                    target=dst_id,
                    relation=rel_type,
                    origin_id=props["origin_id"],
                    origin_revision=int(props.get("origin_revision") or 0),
                    scope=scope_from_properties(props),
                    source_name=src_name,
                    target_name=dst_name,
                )
            )
        return relationships

    async def _list_origin_ids(self, scope: FilterSpec) -> set[str]:
        clauses, params = scope_where("e", scope)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        result = await self._query(
            "list_origin_ids",
            f"MATCH (e:{ENTITY_LABEL}) {where}RETURN DISTINCT e.origin_id",
            params=params,
        )
        return {row[0] for row in result.result_set if row[0]}

    async def get_stats(self) -> dict[str, Any]:
        """Get graph statistics for health checks."""
        node_result = await self._query("stats", f"MATCH (e:{ENTITY_LABEL}) RETURN count(e)")
        edge_result = await self._query("stats", f"MATCH (:{ENTITY_LABEL})-[r]->(:{ENTITY_LABEL}) RETURN count(r)")
        node_count = node_result.result_set[0][0] if node_result.result_set else 0
        edge_count = edge_result.result_set[0][0] if edge_result.result_set else 0
        return {
            "backend": self.name,
            "graph_name": self.graph_name,
            "node_count": int(node_count),
            "edge_count": int(edge_count),
            "status": "operational",
        }

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            try:
                await self._pool.aclose()
                logger.info("FalkorGraphAdapter connection pool closed")
            except (RedisError, OSError) as e:
                logger.warning(f"Error closing FalkorGraphAdapter pool: {e}")
            finally:
                self._pool = None
                self._db = None
                self._graph = None
                self._initialized = False
