"""
Tool dispatcher: name resolution, argument validation, scoping, error mapping.

``ToolDispatcher.dispatch`` never raises. Typed service errors become
``{"success": False, "error_type": ...}`` payloads; anything unexpected is
logged with its traceback and reported as ``InternalError``. A failing call
only affects the session that made it.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from ..errors import InvalidArgument, MemoryServiceError
from ..models import mcp_inputs as inputs
from ..models import responses
from ..models.scope import FilterSpec, merge_caller_scope
from ..services.consistency_engine import ConsistencyEngine
from .registry import ToolRegistry
from .session import CallerIdentity, Session, SessionRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[Any, FilterSpec, Session], Awaitable[dict[str, Any]]]


def _validation_message(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {item.get('msg')}")
    return "; ".join(parts)


class ToolDispatcher:
    """Routes prefixed tool calls to the consistency engine on behalf of a session."""

    def __init__(
        self,
        engine: ConsistencyEngine,
        registry: ToolRegistry,
        sessions: SessionRegistry,
        *,
        scope_by_client: bool = False,
    ):
        self.engine = engine
        self.registry = registry
        self.sessions = sessions
        self.scope_by_client = scope_by_client
        self._handlers: dict[str, Handler] = {
            "add_memory": self._add_memory,
            "search_memory": self._search_memory,
            "list_memories": self._list_memories,
            "delete_memory": self._delete_memory,
            "delete_all_memories": self._delete_all_memories,
            "get_memory": self._get_memory,
            "update_memory": self._update_memory,
            "memory_history": self._memory_history,
            "list_entities": self._list_entities,
            "check_health": self._check_health,
            "close_session": self._close_session,
        }
        missing = {spec.operation for _, spec in registry} - set(self._handlers)
        if missing:
            raise ValueError(f"No handler for operations: {sorted(missing)}")

    async def dispatch(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None,
        *,
        session_id: str,
        identity: CallerIdentity,
    ) -> dict[str, Any]:
        """Run one tool call and return its wire payload."""
        try:
            spec = self.registry.resolve(tool_name)
            session = self.sessions.get_or_create(session_id, identity)
            try:
                params = spec.params.model_validate(arguments or {})
            except ValidationError as e:
                raise InvalidArgument(f"Invalid arguments for {tool_name}: {_validation_message(e)}") from e

            scope = self._caller_scope(session, getattr(params, "scope", None))
            logger.debug(f"Dispatching {tool_name} for session {session_id} with scope {scope}")
            return await self._handlers[spec.operation](params, scope, session)
        except MemoryServiceError as e:
            logger.info(f"{tool_name} failed for session {session_id}: {e.error_type}: {e.message}")
            return e.to_dict()
        except Exception as e:
            logger.exception(f"Unexpected error in {tool_name} for session {session_id}")
            return {"success": False, "error": str(e) or type(e).__name__, "error_type": "InternalError"}

    def _caller_scope(self, session: Session, client_scope: dict[str, Any] | None) -> FilterSpec:
        injected = session.identity.base_scope(self.scope_by_client)
        try:
            return merge_caller_scope(injected, client_scope)
        except ValidationError as e:
            raise InvalidArgument(f"Invalid scope: {_validation_message(e)}") from e
        except ValueError as e:
            raise InvalidArgument(f"Invalid scope: {e}") from e

    # ------------------------------------------------------------------
    # handlers
    # ------------------------------------------------------------------

    async def _add_memory(self, params: inputs.AddMemoryParams, scope: FilterSpec, session: Session) -> dict[str, Any]:
        metadata = dict(params.metadata or {})
        if session.identity.client_name:
            metadata.setdefault("client_name", session.identity.client_name)
        record = await self.engine.add_memory(params.text, scope, metadata=metadata or None)
        return responses.AddMemoryResult(id=record.id, text=record.text).model_dump()

    async def _search_memory(
        self, params: inputs.SearchMemoryParams, scope: FilterSpec, session: Session
    ) -> dict[str, Any]:
        hits = await self.engine.search_memory(params.query, scope, params.k)
        return responses.SearchMemoryResult(results=[responses.SearchHit(**hit) for hit in hits]).model_dump()

    async def _list_memories(
        self, params: inputs.ListMemoriesParams, scope: FilterSpec, session: Session
    ) -> dict[str, Any]:
        records = await self.engine.list_memories(scope, limit=params.limit, text_hint=params.text_hint).to_list()
        total = await self.engine.count_memories(scope)
        return responses.ListMemoriesResult(
            memories=[responses.MemorySummary(**r.to_summary()) for r in records],
            total=total,
        ).model_dump()

    async def _delete_memory(self, params: inputs.MemoryIdParams, scope: FilterSpec, session: Session) -> dict[str, Any]:
        result = await self.engine.delete_memory(params.memory_id, scope)
        return responses.DeleteMemoryResult(**result).model_dump()

    async def _delete_all_memories(
        self, params: inputs.ScopeOnlyParams, scope: FilterSpec, session: Session
    ) -> dict[str, Any]:
        result = await self.engine.delete_all(scope)
        return responses.DeleteAllResult(**result).model_dump()

    async def _get_memory(self, params: inputs.MemoryIdParams, scope: FilterSpec, session: Session) -> dict[str, Any]:
        record = await self.engine.get_memory(params.memory_id, scope)
        return responses.GetMemoryResult(memory=record.to_dict()).model_dump()

    async def _update_memory(
        self, params: inputs.UpdateMemoryParams, scope: FilterSpec, session: Session
    ) -> dict[str, Any]:
        record = await self.engine.update_memory(params.memory_id, params.text, scope)
        return responses.UpdateMemoryResult(id=record.id, previous_id=params.memory_id, text=record.text).model_dump()

    async def _memory_history(
        self, params: inputs.MemoryIdParams, scope: FilterSpec, session: Session
    ) -> dict[str, Any]:
        versions = await self.engine.memory_history(params.memory_id, scope)
        return responses.MemoryHistoryResult(versions=[v.to_dict() for v in versions]).model_dump()

    async def _list_entities(
        self, params: inputs.ListEntitiesParams, scope: FilterSpec, session: Session
    ) -> dict[str, Any]:
        graph = await self.engine.list_entities(scope, limit=params.limit)
        return responses.EntitiesResult(**graph).model_dump()

    async def _check_health(self, params: inputs.NoParams, scope: FilterSpec, session: Session) -> dict[str, Any]:
        health = await self.engine.health()
        health["sessions"] = len(self.sessions)
        return {"success": True, **health}

    async def _close_session(self, params: inputs.NoParams, scope: FilterSpec, session: Session) -> dict[str, Any]:
        return responses.CloseSessionResult(closed=self.sessions.close(session.session_id)).model_dump()
