"""Tool response models.

Typed Pydantic models for every successful tool result. The dispatcher
returns ``model_dump()`` of one of these; errors use
``MemoryServiceError.to_dict()`` instead.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class ServiceResult(BaseModel):
    """Common base for operation results."""

    success: bool = True


# ---------------------------------------------------------------------------
# Memory data (wire-format)
# ---------------------------------------------------------------------------


class MemorySummary(BaseModel):
    """Listing shape of a memory."""

    id: str
    text: str
    created_at: str | None = None


class SearchHit(MemorySummary):
    score: float


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class AddMemoryResult(ServiceResult):
    id: str
    text: str


class SearchMemoryResult(ServiceResult):
    results: list[SearchHit] = Field(default_factory=list)


class ListMemoriesResult(ServiceResult):
    memories: list[MemorySummary] = Field(default_factory=list)
    total: int = 0


class DeleteMemoryResult(ServiceResult):
    id: str
    already_deleted: bool = False


class DeleteAllResult(ServiceResult):
    deleted_count: int = 0
    cutoff_revision: int = 0


class GetMemoryResult(ServiceResult):
    memory: dict[str, Any]


class UpdateMemoryResult(ServiceResult):
    id: str
    previous_id: str
    text: str


class MemoryHistoryResult(ServiceResult):
    versions: list[dict[str, Any]] = Field(default_factory=list)


class EntitiesResult(ServiceResult):
    entities: list[dict[str, Any]] = Field(default_factory=list)
    relationships: list[dict[str, Any]] = Field(default_factory=list)


class CloseSessionResult(ServiceResult):
    closed: bool
