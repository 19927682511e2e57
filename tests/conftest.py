import hashlib
import os
import uuid

import pytest

# Force CPU-only mode for tests (avoids CUDA compatibility issues)
os.environ["CUDA_VISIBLE_DEVICES"] = ""

from openmemory_mcp.graph.base import GraphAdapter  # noqa: E402
from openmemory_mcp.graph.extraction import KeywordEntityExtractor  # noqa: E402
from openmemory_mcp.models.graph import Entity, Relationship  # noqa: E402
from openmemory_mcp.models.scope import FilterSpec  # noqa: E402
from openmemory_mcp.services.consistency_engine import ConsistencyEngine  # noqa: E402
from openmemory_mcp.storage.sqlite_store import SqliteRecordStore  # noqa: E402
from openmemory_mcp.vector.qdrant_index import QdrantVectorIndex  # noqa: E402

# ---------------------------------------------------------------------------
# Deterministic embeddings (no model download)
# ---------------------------------------------------------------------------


class TrigramEmbedder:
    """Hashes character trigrams into buckets; the last dimension is a constant bias.

    All components are non-negative, so any two texts have a positive cosine
    similarity, and texts sharing trigrams score higher.
    """

    def __init__(self, dimension: int = 64):
        self._dimension = dimension
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def vector(self, text: str) -> list[float]:
        buckets = [0.0] * self._dimension
        padded = f"  {text.lower()}  "
        for i in range(len(padded) - 2):
            digest = hashlib.md5(padded[i : i + 3].encode()).digest()
            buckets[int.from_bytes(digest[:4], "big") % (self._dimension - 1)] += 1.0
        buckets[-1] = 1.0
        return buckets

    async def embed_passage(self, text: str) -> list[float]:
        self.calls += 1
        return self.vector(text)

    async def embed_query(self, text: str) -> list[float]:
        self.calls += 1
        return self.vector(text)


# ---------------------------------------------------------------------------
# In-process graph backend
# ---------------------------------------------------------------------------


class InMemoryGraphAdapter(GraphAdapter):
    """Dict-backed ``GraphAdapter`` with the same semantics as the FalkorDB one."""

    name = "memory"

    def __init__(self):
        self.entities: dict[str, Entity] = {}
        self.relationships: dict[tuple[str, str, str, str], Relationship] = {}
        self.initialized = False

    async def initialize(self) -> None:
        self.initialized = True

    async def close(self) -> None:
        self.initialized = False

    async def _add_entities(self, entities):
        for entity in entities:
            self.entities[entity.id] = entity

    async def _add_relationships(self, relationships):
        for rel in relationships:
            if rel.source in self.entities and rel.target in self.entities:
                self.relationships[(rel.source, rel.relation, rel.target, rel.origin_id)] = rel

    def _drop(self, doomed: set[str]) -> int:
        for entity_id in doomed:
            del self.entities[entity_id]
        for key, rel in list(self.relationships.items()):
            if rel.source in doomed or rel.target in doomed:
                del self.relationships[key]
        return len(doomed)

    async def _delete_by_origin(self, origin_id):
        return self._drop({eid for eid, e in self.entities.items() if e.origin_id == origin_id})

    async def _delete_by_scope(self, scope, up_to_revision):
        return self._drop(
            {
                eid
                for eid, e in self.entities.items()
                if e.scope.matches(scope) and (up_to_revision is None or e.origin_revision <= up_to_revision)
            }
        )

    async def _get_entities(self, scope, origin_ids, limit):
        found = [
            e for e in self.entities.values() if e.scope.matches(scope) and (origin_ids is None or e.origin_id in origin_ids)
        ]
        return sorted(found, key=lambda e: e.name)[:limit]

    async def _get_relationships(self, scope, origin_ids, limit):
        found = [
            r
            for r in self.relationships.values()
            if r.scope.matches(scope) and (origin_ids is None or r.origin_id in origin_ids)
        ]
        return found[:limit]

    async def _list_origin_ids(self, scope):
        return {e.origin_id for e in self.entities.values() if e.scope.matches(scope)}

    async def get_stats(self):
        return {"backend": self.name, "node_count": len(self.entities), "edge_count": len(self.relationships)}

    def origins(self) -> set[str]:
        return {e.origin_id for e in self.entities.values()}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def alice() -> FilterSpec:
    return FilterSpec.of(user_id="alice")


@pytest.fixture
def bob() -> FilterSpec:
    return FilterSpec.of(user_id="bob")


@pytest.fixture
def embedder() -> TrigramEmbedder:
    return TrigramEmbedder()


@pytest.fixture
async def record_store(tmp_path):
    """SQLite record store in a temporary file."""
    store = SqliteRecordStore(str(tmp_path / "records.db"), page_size=3)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def vector_index(embedder):
    """In-memory Qdrant collection (no server, no files)."""
    index = QdrantVectorIndex(f"test_{uuid.uuid4().hex[:8]}", location=":memory:", embedding_model="trigram")
    await index.initialize(embedder.dimension)
    yield index
    await index.close()


@pytest.fixture
async def graph():
    adapter = InMemoryGraphAdapter()
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest.fixture
def extractor() -> KeywordEntityExtractor:
    return KeywordEntityExtractor()


@pytest.fixture
async def engine(record_store, vector_index, embedder, graph, extractor):
    engine = ConsistencyEngine(record_store, vector_index, embedder, graph, extractor, delete_batch_size=4)
    yield engine
    await engine.drain()
