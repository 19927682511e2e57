#!/usr/bin/env python3
"""FastMCP server for the OpenMemory service.

Every operation in the tool registry is exposed as an MCP tool under its
prefixed name. Tool handlers only collect arguments and the caller's
identity; validation, scoping and error mapping happen in the dispatcher,
so handlers never raise into the transport.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastmcp import Context, FastMCP
from fastmcp.server.dependencies import get_http_headers
from starlette.requests import Request
from starlette.responses import JSONResponse

from .config import Settings, get_settings
from .context import ServiceContext
from .dispatch.registry import ToolRegistry
from .dispatch.session import CallerIdentity

logger = logging.getLogger(__name__)

USER_HEADER = "x-openmemory-user"
CLIENT_HEADER = "x-openmemory-client"

ContextFactory = Callable[[Settings], Awaitable[ServiceContext]]


def caller_identity(settings: Settings) -> CallerIdentity:
    """Identity of the current caller, from HTTP headers or the configured default."""
    headers = get_http_headers()
    user_id = (headers.get(USER_HEADER) or "").strip() or settings.server.default_user_id
    client_name = (headers.get(CLIENT_HEADER) or "").strip() or None
    return CallerIdentity(user_id=user_id, client_name=client_name)


def _arguments(**kwargs: Any) -> dict[str, Any]:
    # Omitted arguments fall back to the input model defaults
    return {k: v for k, v in kwargs.items() if v is not None}


def create_mcp_server(settings: Settings | None = None, *, context_factory: ContextFactory | None = None) -> FastMCP:
    """
    Build a FastMCP server bound to ``settings``.

    ``context_factory`` builds the ServiceContext at start-up; it defaults to
    ``ServiceContext.create``. Tests use it to inject in-process backends.
    """
    settings = settings or get_settings()
    factory = context_factory or ServiceContext.create
    registry = ToolRegistry(settings.server.tool_prefix)
    live: dict[str, ServiceContext] = {}

    @asynccontextmanager
    async def lifespan(server: FastMCP) -> AsyncIterator[ServiceContext]:
        logger.info("Starting OpenMemory service context")
        service = await factory(settings)
        live["context"] = service
        try:
            yield service
        finally:
            live.pop("context", None)
            logger.info("Shutting down OpenMemory service context")
            await service.aclose()

    mcp = FastMCP(settings.server.name, lifespan=lifespan)

    async def call(ctx: Context, operation: str, arguments: dict[str, Any]) -> dict[str, Any]:
        service: ServiceContext = ctx.request_context.lifespan_context
        return await service.dispatcher.dispatch(
            registry.tool_name(operation),
            arguments,
            session_id=ctx.session_id,
            identity=caller_identity(settings),
        )

    def tool(operation: str):
        spec = registry.resolve(registry.tool_name(operation))
        return mcp.tool(name=registry.tool_name(operation), description=spec.description)

    # =========================================================================
    # CORE MEMORY OPERATIONS
    # =========================================================================

    @tool("add_memory")
    async def add_memory(
        text: str,
        ctx: Context,
        scope: dict[str, str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Remember a piece of text.

        Args:
            text: Content to remember (stored verbatim)
            scope: Extra scope dimensions, e.g. {"agent_id": "planner"}. Your user id is always added.
            metadata: Free-form data stored with the memory

        Returns:
            {success, id, text}
        """
        return await call(ctx, "add_memory", _arguments(text=text, scope=scope, metadata=metadata))

    @tool("search_memory")
    async def search_memory(
        query: str,
        ctx: Context,
        k: int | None = None,
        scope: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Semantic search over your memories.

        Args:
            query: Natural language query
            k: Max results, 1-100 (default 10)
            scope: Narrow the search to these scope dimensions

        Returns:
            {success, results: [{id, text, score, created_at}]}
        """
        return await call(ctx, "search_memory", _arguments(query=query, k=k, scope=scope))

    @tool("list_memories")
    async def list_memories(
        ctx: Context,
        scope: dict[str, str] | None = None,
        limit: int | None = None,
        text_hint: str | None = None,
    ) -> dict[str, Any]:
        """List active memories, most recent first.

        Returns:
            {success, memories: [{id, text, created_at}], total}
        """
        return await call(ctx, "list_memories", _arguments(scope=scope, limit=limit, text_hint=text_hint))

    @tool("delete_memory")
    async def delete_memory(memory_id: str, ctx: Context) -> dict[str, Any]:
        """Delete one memory. Deleting an already-deleted memory succeeds."""
        return await call(ctx, "delete_memory", {"memory_id": memory_id})

    @tool("delete_all_memories")
    async def delete_all_memories(ctx: Context, scope: dict[str, str] | None = None) -> dict[str, Any]:
        """Delete every memory in scope that exists when the call starts.

        Returns:
            {success, deleted_count, cutoff_revision}
        """
        return await call(ctx, "delete_all_memories", _arguments(scope=scope))

    @tool("get_memory")
    async def get_memory(memory_id: str, ctx: Context) -> dict[str, Any]:
        return await call(ctx, "get_memory", {"memory_id": memory_id})

    @tool("update_memory")
    async def update_memory(memory_id: str, text: str, ctx: Context) -> dict[str, Any]:
        """Replace a memory's text. The new version gets a new id; the old one stays in history.

        Returns:
            {success, id, previous_id, text}
        """
        return await call(ctx, "update_memory", {"memory_id": memory_id, "text": text})

    @tool("memory_history")
    async def memory_history(memory_id: str, ctx: Context) -> dict[str, Any]:
        return await call(ctx, "memory_history", {"memory_id": memory_id})

    # =========================================================================
    # GRAPH
    # =========================================================================

    @tool("list_entities")
    async def list_entities(ctx: Context, scope: dict[str, str] | None = None, limit: int | None = None) -> dict[str, Any]:
        """Entities and relationships extracted from your active memories."""
        return await call(ctx, "list_entities", _arguments(scope=scope, limit=limit))

    # =========================================================================
    # SESSION / HEALTH
    # =========================================================================

    @tool("check_health")
    async def check_health(ctx: Context) -> dict[str, Any]:
        return await call(ctx, "check_health", {})

    @tool("close_session")
    async def close_session(ctx: Context) -> dict[str, Any]:
        return await call(ctx, "close_session", {})

    @mcp.custom_route("/health", methods=["GET"])
    async def health(request: Request) -> JSONResponse:
        service = live.get("context")
        if service is None:
            return JSONResponse({"status": "starting"}, status_code=503)
        report = await service.engine.health()
        report["sessions"] = len(service.sessions)
        report["status"] = "healthy" if report["healthy"] else "degraded"
        return JSONResponse(report, status_code=200 if report["healthy"] else 503)

    return mcp


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main():
    """Main entry point for the OpenMemory MCP server."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.server.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    server = settings.server
    logger.info(f"Starting OpenMemory MCP server ({server.transport}) on {server.host}:{server.port}")
    logger.info(f"Tool prefix: {server.tool_prefix}")

    mcp = create_mcp_server(settings)
    if server.transport == "stdio":
        mcp.run(transport="stdio")
    else:
        mcp.run(transport=server.transport, host=server.host, port=server.port)


if __name__ == "__main__":
    main()
