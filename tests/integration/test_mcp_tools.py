"""
Integration tests for the MCP tools exercised through the FastMCP Client interface.

Tests the full pipeline: MCP tool → ToolDispatcher → ConsistencyEngine →
SQLite + Qdrant (in-memory) + in-process graph. No external services required.
"""

import json
import uuid

import pytest
from fastmcp import Client
from openmemory_mcp.config import RecordStoreSettings, ServerSettings, Settings
from openmemory_mcp.context import ServiceContext
from openmemory_mcp.graph.extraction import KeywordEntityExtractor
from openmemory_mcp.mcp_server import create_mcp_server
from openmemory_mcp.storage.sqlite_store import SqliteRecordStore
from openmemory_mcp.vector.qdrant_index import QdrantVectorIndex

pytestmark = pytest.mark.integration

PREFIX = "mem_"


def parse_tool_result(result) -> dict:
    """Parse a FastMCP CallToolResult into a dict."""
    return json.loads(result.content[0].text)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        records=RecordStoreSettings(database_path=str(tmp_path / "records.db")),
        server=ServerSettings(tool_prefix=PREFIX, default_user_id="alice"),
    )


@pytest.fixture
def mcp(settings, embedder, graph):
    async def factory(s):
        return await ServiceContext.create(
            s,
            store=SqliteRecordStore(s.records.database_path),
            vector_index=QdrantVectorIndex(f"mcp_{uuid.uuid4().hex[:8]}", location=":memory:"),
            embedder=embedder,
            graph=graph,
            extractor=KeywordEntityExtractor(),
        )

    return create_mcp_server(settings, context_factory=factory)


async def call(client, operation, **arguments):
    return parse_tool_result(await client.call_tool(f"{PREFIX}{operation}", arguments))


class TestToolListing:
    @pytest.mark.asyncio
    async def test_all_operations_exposed_with_prefix(self, mcp):
        async with Client(mcp) as client:
            tools = {tool.name: tool for tool in await client.list_tools()}

        assert set(tools) == {
            f"{PREFIX}{name}"
            for name in (
                "add_memory",
                "search_memory",
                "list_memories",
                "delete_memory",
                "delete_all_memories",
                "get_memory",
                "update_memory",
                "memory_history",
                "list_entities",
                "check_health",
                "close_session",
            )
        }
        assert tools[f"{PREFIX}add_memory"].description.startswith("Remember a piece of text")


class TestMemoryLifecycle:
    @pytest.mark.asyncio
    async def test_add_search_list_delete(self, mcp):
        async with Client(mcp) as client:
            added = await call(client, "add_memory", text="I prefer quiet coffee shops")
            assert added["success"] is True

            found = await call(client, "search_memory", query="work preferences")
            assert [hit["id"] for hit in found["results"]] == [added["id"]]
            assert found["results"][0]["score"] > 0

            listed = await call(client, "list_memories")
            assert listed["total"] == 1
            assert listed["memories"][0]["text"] == "I prefer quiet coffee shops"

            deleted = await call(client, "delete_memory", memory_id=added["id"])
            assert deleted["already_deleted"] is False
            again = await call(client, "delete_memory", memory_id=added["id"])
            assert again["already_deleted"] is True

            assert (await call(client, "list_memories"))["memories"] == []

    @pytest.mark.asyncio
    async def test_update_and_history(self, mcp):
        async with Client(mcp) as client:
            added = await call(client, "add_memory", text="Bob likes tea")
            updated = await call(client, "update_memory", memory_id=added["id"], text="Bob likes coffee")
            assert updated["previous_id"] == added["id"]

            fetched = await call(client, "get_memory", memory_id=updated["id"])
            assert fetched["memory"]["text"] == "Bob likes coffee"
            assert fetched["memory"]["scope"] == {"user_id": "alice"}

            history = await call(client, "memory_history", memory_id=updated["id"])
            assert [v["state"] for v in history["versions"]] == ["superseded", "active"]

            graph = await call(client, "list_entities")
            assert [r["target"] for r in graph["relationships"]] == ["coffee"]

    @pytest.mark.asyncio
    async def test_delete_all_with_narrowed_scope(self, mcp):
        async with Client(mcp) as client:
            await call(client, "add_memory", text="planner note", scope={"agent_id": "planner"})
            await call(client, "add_memory", text="general note")

            result = await call(client, "delete_all_memories", scope={"agent_id": "planner"})
            assert result["deleted_count"] == 1

            listed = await call(client, "list_memories")
            assert [m["text"] for m in listed["memories"]] == ["general note"]


class TestErrors:
    @pytest.mark.asyncio
    async def test_errors_are_payloads(self, mcp):
        async with Client(mcp) as client:
            missing = await call(client, "get_memory", memory_id="does-not-exist")
            assert missing["success"] is False
            assert missing["error_type"] == "NotFound"

            spoofed = await call(client, "add_memory", text="x", scope={"user_id": "mallory"})
            assert spoofed["error_type"] == "ScopeViolation"

            bad_k = await call(client, "search_memory", query="x", k=500)
            assert bad_k["error_type"] == "InvalidArgument"

            # The session keeps working after failed calls
            assert (await call(client, "list_memories"))["success"] is True


class TestSession:
    @pytest.mark.asyncio
    async def test_health_and_close(self, mcp):
        async with Client(mcp) as client:
            health = await call(client, "check_health")
            assert health["success"] is True
            assert health["healthy"] is True
            assert health["graph"]["backend"] == "memory"
            assert health["sessions"] == 1

            closed = await call(client, "close_session")
            assert closed == {"success": True, "closed": True}
