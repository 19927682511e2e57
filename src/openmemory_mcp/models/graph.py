"""Entity and relationship models for the knowledge graph.

Every graph item is owned by exactly one originating memory record
(``origin_id``) and carries that record's scope and revision.
"""

from __future__ import annotations

import uuid

from pydantic import BaseModel, ConfigDict, Field

from .scope import FilterSpec
from .validators import MemoryIdStr, NonNegativeInt, RelationLabel


class ExtractedEntity(BaseModel):
    """Entity as produced by an extractor, before it is bound to a record."""

    name: str = Field(min_length=1, max_length=256)
    entity_type: str = Field(default="concept", min_length=1, max_length=64)

    @property
    def key(self) -> str:
        return self.name.strip().lower()


class ExtractedRelationship(BaseModel):
    """Directed relation between two extracted entities, referenced by name."""

    source: str = Field(min_length=1)
    relation: RelationLabel
    target: str = Field(min_length=1)


class ExtractionResult(BaseModel):
    """Output of an ``EntityExtractor``."""

    entities: list[ExtractedEntity] = Field(default_factory=list)
    relationships: list[ExtractedRelationship] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.entities and not self.relationships


class Entity(BaseModel):
    """Entity node stored in the graph."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    entity_type: str
    origin_id: MemoryIdStr
    origin_revision: NonNegativeInt = 0
    scope: FilterSpec

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "entity_type": self.entity_type,
            "origin_id": self.origin_id,
        }


class Relationship(BaseModel):
    """Directed, labelled edge between two entity ids."""

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    relation: RelationLabel
    origin_id: MemoryIdStr
    origin_revision: NonNegativeInt = 0
    scope: FilterSpec
    source_name: str | None = None
    target_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "source": self.source_name or self.source,
            "relation": self.relation,
            "target": self.target_name or self.target,
            "origin_id": self.origin_id,
        }
