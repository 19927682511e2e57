"""
Graph schema for the memory knowledge graph.

Defines the Cypher schema for FalkorDB: node labels, property naming, and
indices. Schema is applied idempotently on startup.

Node Labels:
    :Entity  - A named thing mentioned by exactly one memory record

Relationship Types:
    Free-form UPPER_SNAKE labels produced by extraction (e.g. ``WORKS_AT``).

Node and edge properties:
    id, name, key, entity_type  - entity identity (nodes only)
    origin_id                   - id of the originating memory record
    origin_revision             - that record's store revision
    scope_<dim>                 - one property per scope dimension

Indices:
    Entity(id)        - Unique lookup for relationship endpoints
    Entity(origin_id) - Per-record cleanup
"""

import hashlib

from ..models.scope import FilterSpec
from ..models.validators import RELATION_PATTERN, validate_dimension_name

ENTITY_LABEL = "Entity"

SCOPE_PROPERTY_PREFIX = "scope_"

# Cypher statements executed idempotently on graph initialization.
SCHEMA_STATEMENTS: list[str] = [
    f"CREATE INDEX IF NOT EXISTS FOR (e:{ENTITY_LABEL}) ON (e.id)",
    f"CREATE INDEX IF NOT EXISTS FOR (e:{ENTITY_LABEL}) ON (e.origin_id)",
]


def validate_relation_type(relation: str) -> str:
    """
    Check a relation label before it is formatted into a query.

    FalkorDB doesn't support parameterized relationship types, so labels
    are pattern-checked instead.
    """
    if not isinstance(relation, str) or not RELATION_PATTERN.fullmatch(relation):
        raise ValueError(f"Invalid relation type: {relation!r}")
    return relation


def scope_property(dimension: str) -> str:
    """Property name holding ``dimension`` on nodes and edges."""
    return f"{SCOPE_PROPERTY_PREFIX}{validate_dimension_name(dimension)}"


def scope_properties(scope: FilterSpec) -> dict[str, str]:
    """``{"scope_user_id": "alice", ...}`` for SET clauses."""
    return {scope_property(name): value for name, value in scope.items()}


def scope_from_properties(props: dict) -> FilterSpec:
    """Inverse of ``scope_properties``; ignores unrelated properties."""
    return FilterSpec.model_validate(
        {key[len(SCOPE_PROPERTY_PREFIX) :]: value for key, value in props.items() if key.startswith(SCOPE_PROPERTY_PREFIX)}
    )


def scope_where(alias: str, scope: FilterSpec, param_prefix: str = "s_") -> tuple[list[str], dict[str, str]]:
    """WHERE conditions matching ``scope`` on ``alias``, with their parameters."""
    clauses: list[str] = []
    params: dict[str, str] = {}
    for name, value in scope.items():
        param = f"{param_prefix}{name}"
        clauses.append(f"{alias}.{scope_property(name)} = ${param}")
        params[param] = value
    return clauses, params


def entity_id(origin_id: str, key: str) -> str:
    """Deterministic entity id, so re-adding a record's entities is idempotent."""
    return hashlib.sha256(f"{origin_id}\x00{key}".encode()).hexdigest()[:32]
