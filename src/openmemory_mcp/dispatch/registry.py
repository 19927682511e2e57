"""Fixed registry of tool operations.

Every operation the server exposes is declared once in ``OPERATIONS``.
The exposed tool name is ``<prefix><operation>``; the prefix is configured
per deployment so several memory servers can share one MCP client.
"""

from collections.abc import Iterator
from dataclasses import dataclass

from ..errors import UnknownOperation
from ..models import mcp_inputs
from ..models.validators import validate_tool_prefix


@dataclass(frozen=True)
class ToolSpec:
    operation: str
    params: type[mcp_inputs.ToolParams]
    description: str
    mutating: bool = False


OPERATIONS: tuple[ToolSpec, ...] = (
    ToolSpec(
        "add_memory",
        mcp_inputs.AddMemoryParams,
        "Remember a piece of text. It is indexed for semantic search and its entities are added to the graph.",
        mutating=True,
    ),
    ToolSpec(
        "search_memory",
        mcp_inputs.SearchMemoryParams,
        "Semantic search over your memories. Returns up to k hits ranked by similarity.",
    ),
    ToolSpec(
        "list_memories",
        mcp_inputs.ListMemoriesParams,
        "List your active memories, most recent first. Optional substring filter via text_hint.",
    ),
    ToolSpec("delete_memory", mcp_inputs.MemoryIdParams, "Delete one memory by id.", mutating=True),
    ToolSpec(
        "delete_all_memories",
        mcp_inputs.ScopeOnlyParams,
        "Delete every memory in your scope that exists when the call starts.",
        mutating=True,
    ),
    ToolSpec("get_memory", mcp_inputs.MemoryIdParams, "Fetch one active memory by id."),
    ToolSpec(
        "update_memory",
        mcp_inputs.UpdateMemoryParams,
        "Replace the text of a memory. The previous version is kept in its history.",
        mutating=True,
    ),
    ToolSpec("memory_history", mcp_inputs.MemoryIdParams, "All versions of a memory, oldest first."),
    ToolSpec(
        "list_entities",
        mcp_inputs.ListEntitiesParams,
        "Entities and relationships extracted from your active memories.",
    ),
    ToolSpec("check_health", mcp_inputs.NoParams, "Backend status and statistics."),
    ToolSpec("close_session", mcp_inputs.NoParams, "End this session."),
)


class ToolRegistry:
    """Maps prefixed tool names to ``ToolSpec`` entries."""

    def __init__(self, prefix: str = "openmemory_", operations: tuple[ToolSpec, ...] = OPERATIONS):
        self.prefix = validate_tool_prefix(prefix)
        self._by_name = {self.tool_name(spec.operation): spec for spec in operations}

    def tool_name(self, operation: str) -> str:
        return f"{self.prefix}{operation}"

    def resolve(self, name: str) -> ToolSpec:
        try:
            return self._by_name[name]
        except KeyError:
            raise UnknownOperation(name) from None

    def names(self) -> list[str]:
        return list(self._by_name)

    def __iter__(self) -> Iterator[tuple[str, ToolSpec]]:
        return iter(self._by_name.items())

    def __len__(self) -> int:
        return len(self._by_name)
