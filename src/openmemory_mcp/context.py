"""
Service context for the OpenMemory MCP server.

Owns every long-lived component (record store, vector index, embedder,
graph, engine, session registry, dispatcher) for exactly one server
lifetime. Built once at start-up by ``ServiceContext.create`` and closed at
shutdown; nothing is kept in module globals.
"""

import logging
from typing import Any

from .config import Settings, get_settings
from .dispatch.dispatcher import ToolDispatcher
from .dispatch.registry import ToolRegistry
from .dispatch.session import SessionRegistry
from .graph.base import GraphAdapter
from .graph.extraction import EntityExtractor, get_extractor
from .graph.factory import create_graph_layer
from .services.consistency_engine import ConsistencyEngine
from .storage.base import MemoryRecordStore
from .storage.sqlite_store import SqliteRecordStore
from .vector.base import Embedder, VectorIndex
from .vector.embeddings import SentenceTransformerEmbedder
from .vector.qdrant_index import QdrantVectorIndex

logger = logging.getLogger(__name__)


class ServiceContext:
    """All components of one running server."""

    def __init__(
        self,
        settings: Settings,
        store: MemoryRecordStore,
        vector_index: VectorIndex,
        embedder: Embedder,
        graph: GraphAdapter | None,
        extractor: EntityExtractor | None,
    ):
        self.settings = settings
        self.store = store
        self.vector_index = vector_index
        self.embedder = embedder
        self.graph = graph
        self.extractor = extractor
        self.engine = ConsistencyEngine(
            store,
            vector_index,
            embedder,
            graph,
            extractor,
            delete_batch_size=settings.engine.delete_batch_size,
            audit_log_size=settings.engine.audit_log_size,
            default_search_k=settings.engine.default_search_k,
        )
        self.registry = ToolRegistry(settings.server.tool_prefix)
        self.sessions = SessionRegistry(settings.server.session_idle_ttl_seconds)
        self.dispatcher = ToolDispatcher(
            self.engine,
            self.registry,
            self.sessions,
            scope_by_client=settings.server.scope_by_client,
        )
        self._closed = False

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        *,
        store: MemoryRecordStore | None = None,
        vector_index: VectorIndex | None = None,
        embedder: Embedder | None = None,
        graph: GraphAdapter | None = None,
        extractor: EntityExtractor | None = None,
    ) -> "ServiceContext":
        """
        Build and initialize every component.

        Components passed in explicitly are used as given and still
        initialized here; the rest are built from ``settings``. If any
        initialization step fails, what was already opened is closed again.
        """
        settings = settings or get_settings()
        opened: list[Any] = []
        try:
            if store is None:
                store = SqliteRecordStore(
                    settings.records.database_path,
                    busy_timeout=settings.records.busy_timeout_seconds,
                    page_size=settings.records.page_size,
                )
            await store.initialize()
            opened.append(store)

            if embedder is None:
                embedder = SentenceTransformerEmbedder(settings.qdrant.embedding_model)
            if vector_index is None:
                vector_index = QdrantVectorIndex.from_settings(settings.qdrant)
            await vector_index.initialize(embedder.dimension)
            opened.append(vector_index)

            if graph is None:
                graph = await create_graph_layer(settings.falkordb)
            else:
                await graph.initialize()
            if graph is not None:
                opened.append(graph)
                if extractor is None:
                    extractor = get_extractor(
                        settings.extraction.backend,
                        settings.extraction.spacy_model,
                        settings.extraction.max_entities,
                    )
        except BaseException:
            for component in reversed(opened):
                await component.close()
            raise

        logger.info(
            f"Service context ready: store={type(store).__name__}, vector={type(vector_index).__name__}, "
            f"graph={type(graph).__name__ if graph else 'disabled'}"
        )
        return cls(settings, store, vector_index, embedder, graph, extractor)

    async def aclose(self) -> None:
        """Drain in-flight mutations, then close backends (graph, vector, store)."""
        if self._closed:
            return
        self._closed = True
        await self.engine.drain()
        self.sessions.clear()
        for name, component in (("graph", self.graph), ("vector", self.vector_index), ("store", self.store)):
            if component is None:
                continue
            try:
                await component.close()
            except Exception as e:
                logger.warning(f"Error closing {name}: {e}")
        logger.info("Service context closed")

    async def __aenter__(self) -> "ServiceContext":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
