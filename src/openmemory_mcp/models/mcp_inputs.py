"""MCP tool input models.

Each tool validates its arguments by constructing the corresponding model.
Range limits and required fields live here as declarative constraints; the
dispatcher turns a ``ValidationError`` into ``InvalidArgument``.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .validators import MemoryIdStr

ScopeArg = dict[str, Any] | None
"""Optional client-supplied scope; merged with the session scope before use."""


class ToolParams(BaseModel):
    """Base for tool inputs: unknown arguments are rejected."""

    model_config = ConfigDict(extra="forbid")


class NoParams(ToolParams):
    """For tools that take no arguments."""


class AddMemoryParams(ToolParams):
    """Validated input for the ``add_memory`` tool."""

    text: str = Field(min_length=1)
    scope: ScopeArg = None
    metadata: dict[str, Any] | None = None

    @field_validator("text")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("text must not be blank")
        return v


class SearchMemoryParams(ToolParams):
    """Validated input for the ``search_memory`` tool."""

    query: str = Field(min_length=1)
    k: int | None = Field(default=None, ge=1, le=100)
    scope: ScopeArg = None


class ListMemoriesParams(ToolParams):
    """Validated input for the ``list_memories`` tool."""

    scope: ScopeArg = None
    limit: int | None = Field(default=None, ge=1, le=1000)
    text_hint: str | None = None


class MemoryIdParams(ToolParams):
    """Validated input for tools addressing one memory by id."""

    memory_id: MemoryIdStr


class UpdateMemoryParams(MemoryIdParams):
    """Validated input for the ``update_memory`` tool."""

    text: str = Field(min_length=1)

    @field_validator("text")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("text must not be blank")
        return v


class ScopeOnlyParams(ToolParams):
    """Validated input for ``delete_all_memories``."""

    scope: ScopeArg = None


class ListEntitiesParams(ToolParams):
    """Validated input for the ``list_entities`` tool."""

    scope: ScopeArg = None
    limit: int = Field(default=100, ge=1, le=1000)
