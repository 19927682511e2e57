# Copyright 2024 Heinrich Krupp
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Qdrant vector index for memory records.

Points carry only ``memory_id``, ``revision`` and the record scope (as a
nested ``scope`` object). Scope filters are pushed down to Qdrant and every
hit is re-checked against the query scope before it is returned.

Client calls are synchronous and run in the default executor, guarded by a
circuit breaker (5 consecutive failures open it for 60 seconds) and retried
on transient 5xx responses.
"""

import asyncio
import hashlib
import logging
import re
import time
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from qdrant_client import QdrantClient
from qdrant_client.http import exceptions as qdrant_exceptions
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PayloadSchemaType,
    PointIdsList,
    PointStruct,
    VectorParams,
)
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..config import QdrantSettings
from ..errors import IndexUnavailable
from ..models.scope import FilterSpec
from .base import VectorHit, VectorIndex

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DISTANCES = {"Cosine": Distance.COSINE, "Dot": Distance.DOT, "Euclid": Distance.EUCLID}


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception is retryable (transient 5xx server errors only).

    4xx client errors and local validation errors are permanent and are not retried.
    """
    if isinstance(exception, qdrant_exceptions.UnexpectedResponse):
        return exception.status_code is not None and 500 <= exception.status_code < 600
    return False


def scope_filter(scope: FilterSpec) -> Filter | None:
    """Qdrant filter requiring every dimension of ``scope`` to match exactly."""
    if scope.is_empty():
        return None
    return Filter(must=[FieldCondition(key=f"scope.{name}", match=MatchValue(value=value)) for name, value in scope.items()])


class QdrantVectorIndex(VectorIndex):
    """
    Qdrant-backed ``VectorIndex`` in embedded, in-memory or server mode.
    """

    # Reserved point holding collection metadata (memory points use UUIDs)
    METADATA_POINT_ID = 1

    def __init__(
        self,
        collection_name: str = "openmemory",
        *,
        url: str | None = None,
        storage_path: str | None = None,
        location: str | None = None,
        distance_metric: str = "Cosine",
        embedding_model: str | None = None,
        timeout: int = 30,
    ):
        """
        Args:
            collection_name: Qdrant collection name
            url: Qdrant server URL (server mode, multi-process safe)
            storage_path: Storage directory (embedded mode, single process)
            location: Special location such as ``":memory:"``
            distance_metric: One of Cosine, Dot, Euclid
            embedding_model: Recorded in the metadata point to detect model changes
            timeout: Request timeout in seconds (server mode)
        """
        modes = [m for m in (url, storage_path, location) if m]
        if len(modes) != 1:
            raise ValueError("Specify exactly one of url (server), storage_path (embedded) or location (e.g. ':memory:').")
        if distance_metric not in _DISTANCES:
            raise ValueError(f"Unsupported distance metric: {distance_metric}")

        self.collection_name = collection_name
        self.url = url
        self.storage_path = storage_path
        self.location = location
        self.distance_metric = distance_metric
        self.embedding_model = embedding_model
        self.timeout = timeout

        # Circuit breaker state
        self._failure_count = 0
        self._circuit_open_until: datetime | None = None
        self._failure_threshold = 5
        self._circuit_timeout = 60

        self._vector_size: int | None = None
        self._indexed_dimensions: set[str] = set()
        self.client: QdrantClient | None = None
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: QdrantSettings) -> "QdrantVectorIndex":
        return cls(
            settings.collection_name,
            url=settings.url,
            storage_path=None if settings.url or settings.location else settings.storage_path,
            location=None if settings.url else settings.location,
            distance_metric=settings.distance_metric,
            embedding_model=settings.embedding_model,
            timeout=settings.timeout_seconds,
        )

    @property
    def mode(self) -> str:
        if self.url:
            return "server"
        return "memory" if self.location else "embedded"

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def initialize(self, dimension: int) -> None:
        """
        Create the collection, or verify an existing one matches ``dimension``.

        Raises:
            IndexUnavailable: backend unreachable, or the stored vector size
                differs (embedding model changed without re-indexing).
        """
        if self._initialized:
            return
        self._vector_size = dimension
        loop = asyncio.get_running_loop()
        logger.info(f"Initializing Qdrant vector index in {self.mode} mode: {self.url or self.storage_path or self.location}")

        try:
            if self.url:
                self.client = await loop.run_in_executor(None, lambda: QdrantClient(url=self.url, timeout=self.timeout))
            elif self.storage_path:
                self.client = await loop.run_in_executor(None, lambda: QdrantClient(path=self.storage_path))
            else:
                self.client = await loop.run_in_executor(None, lambda: QdrantClient(location=self.location))

            exists = await loop.run_in_executor(None, lambda: self.client.collection_exists(self.collection_name))
            if exists:
                await self._verify_collection(loop)
            else:
                await self._create_collection(loop)
            await self._ensure_payload_indexes(loop, ("memory_id",))
        except IndexUnavailable:
            raise
        except Exception as e:
            logger.error(f"Failed to initialize Qdrant: {e}")
            raise IndexUnavailable(f"Vector index initialization failed: {e}", backend="qdrant") from e

        self._initialized = True
        logger.info(f"Qdrant vector index ready (collection={self.collection_name}, size={dimension})")

    async def _verify_collection(self, loop: asyncio.AbstractEventLoop) -> None:
        info = await loop.run_in_executor(None, lambda: self.client.get_collection(self.collection_name))
        vectors = info.config.params.vectors
        stored_size = getattr(vectors, "size", None)
        if stored_size is not None and stored_size != self._vector_size:
            raise IndexUnavailable(
                f"Collection vector size ({stored_size}) doesn't match embedding dimensions ({self._vector_size}). "
                f"Re-index with scripts/reconcile_indexes.py into a new collection.",
                backend="qdrant",
            )

        points = await loop.run_in_executor(
            None, lambda: self.client.retrieve(collection_name=self.collection_name, ids=[self.METADATA_POINT_ID])
        )
        if points:
            stored_model = (points[0].payload or {}).get("embedding_model")
            if stored_model and self.embedding_model and stored_model != self.embedding_model:
                logger.warning(
                    f"Embedding model changed from {stored_model} to {self.embedding_model}; "
                    f"existing vectors will score poorly until re-indexed"
                )
        logger.info("Vector collection compatibility verified")

    async def _create_collection(self, loop: asyncio.AbstractEventLoop) -> None:
        await loop.run_in_executor(
            None,
            lambda: self.client.create_collection(
                collection_name=self.collection_name,
                vectors_config=VectorParams(size=self._vector_size, distance=_DISTANCES[self.distance_metric]),
            ),
        )
        metadata_point = PointStruct(
            id=self.METADATA_POINT_ID,
            # Unit placeholder vector: an all-zero vector cannot be cosine-normalised
            vector=[1.0] + [0.0] * (self._vector_size - 1),
            payload={
                "embedding_model": self.embedding_model,
                "vector_size": self._vector_size,
                "distance_metric": self.distance_metric,
                "created_at": time.time(),
            },
        )
        await loop.run_in_executor(None, lambda: self.client.upsert(collection_name=self.collection_name, points=[metadata_point]))
        logger.info(f"Created collection '{self.collection_name}' with vector size {self._vector_size}")

    async def _ensure_payload_indexes(self, loop: asyncio.AbstractEventLoop, fields: Iterable[str]) -> None:
        """Keyword indexes for filter keys. Idempotent on the Qdrant side."""
        for field in fields:
            if field in self._indexed_dimensions:
                continue
            await loop.run_in_executor(
                None,
                lambda f=field: self.client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=f,
                    field_schema=PayloadSchemaType.KEYWORD,
                ),
            )
            self._indexed_dimensions.add(field)
            logger.debug(f"Ensured payload index on '{field}' (KEYWORD)")

    async def close(self) -> None:
        if self.client is not None:
            client, self.client = self.client, None
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, client.close)
        self._initialized = False

    # ------------------------------------------------------------------
    # circuit breaker
    # ------------------------------------------------------------------

    def _check_circuit_breaker(self) -> None:
        """
        Fail fast while the circuit is open.

        Raises:
            IndexUnavailable: If circuit breaker is open
        """
        if self._circuit_open_until is not None:
            if datetime.now() < self._circuit_open_until:
                retry_time = self._circuit_open_until.strftime("%Y-%m-%d %H:%M:%S")
                raise IndexUnavailable(
                    f"Circuit breaker is open until {retry_time}. Vector index temporarily unavailable.",
                    backend="qdrant",
                )
            logger.info("Circuit breaker timeout expired, resetting to closed state")
            self._circuit_open_until = None
            self._failure_count = 0

    def _record_failure(self) -> None:
        self._failure_count += 1
        logger.warning(f"Recorded failure #{self._failure_count}")
        if self._failure_count >= self._failure_threshold:
            self._circuit_open_until = datetime.now() + timedelta(seconds=self._circuit_timeout)
            logger.error(
                f"Circuit breaker opened after {self._failure_count} consecutive failures. "
                f"Will retry at {self._circuit_open_until.strftime('%Y-%m-%d %H:%M:%S')}"
            )

    def _record_success(self) -> None:
        if self._failure_count > 0:
            logger.info(f"Operation successful, resetting circuit breaker (was at {self._failure_count} failures)")
            self._failure_count = 0
            self._circuit_open_until = None

    @retry(
        retry=retry_if_exception(is_retryable_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _call(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn)

    async def _execute(self, operation: str, fn: Callable[[], T]) -> T:
        """Run a client call with circuit breaker and retry, mapping failures to ``IndexUnavailable``."""
        if not self._initialized or self.client is None:
            raise IndexUnavailable("Vector index is not initialized", backend="qdrant", operation=operation)
        self._check_circuit_breaker()
        try:
            result = await self._call(fn)
        except Exception as e:
            self._record_failure()
            logger.error(f"Qdrant {operation} failed: {e}")
            raise IndexUnavailable(f"Vector index {operation} failed: {e}", backend="qdrant", operation=operation) from e
        self._record_success()
        return result

    # ------------------------------------------------------------------
    # point ids
    # ------------------------------------------------------------------

    @staticmethod
    def point_id(memory_id: str) -> str:
        """
        Map a memory id to a Qdrant point id (UUID string).

        UUID-shaped ids are used as-is; anything else is hashed.
        """
        if re.fullmatch(r"[0-9a-fA-F-]{32,36}", memory_id):
            try:
                return str(uuid.UUID(memory_id))
            except ValueError:
                pass
        return str(uuid.UUID(hashlib.sha256(memory_id.encode()).hexdigest()[:32]))

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def upsert(self, memory_id: str, embedding: list[float], scope: FilterSpec, *, revision: int = 0) -> None:
        if self._vector_size is not None and len(embedding) != self._vector_size:
            raise ValueError(f"Embedding dimension mismatch: expected {self._vector_size}, got {len(embedding)}")

        new_keys = [f"scope.{name}" for name in scope.keys() if f"scope.{name}" not in self._indexed_dimensions]
        if new_keys and self.client is not None:
            try:
                await self._ensure_payload_indexes(asyncio.get_running_loop(), new_keys)
            except Exception as e:
                # Indexes only speed up filtering; the write itself can proceed
                logger.warning(f"Could not create payload index for {new_keys}: {e}")

        point = PointStruct(
            id=self.point_id(memory_id),
            vector=embedding,
            payload={"memory_id": memory_id, "revision": revision, "scope": scope.as_dict()},
        )
        await self._execute("upsert", lambda: self.client.upsert(collection_name=self.collection_name, points=[point]))
        logger.debug(f"Indexed vector for {memory_id}")

    async def remove(self, memory_id: str) -> None:
        await self.remove_many([memory_id])

    async def remove_many(self, memory_ids: Iterable[str]) -> None:
        point_ids = [self.point_id(mid) for mid in dict.fromkeys(memory_ids)]
        if not point_ids:
            return
        await self._execute(
            "delete",
            lambda: self.client.delete(collection_name=self.collection_name, points_selector=PointIdsList(points=point_ids)),
        )
        logger.debug(f"Removed {len(point_ids)} vectors")

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def search(self, embedding: list[float], scope: FilterSpec, k: int) -> list[VectorHit]:
        if k <= 0:
            return []
        query_filter = scope_filter(scope)
        response = await self._execute(
            "search",
            lambda: self.client.query_points(
                collection_name=self.collection_name,
                query=embedding,
                query_filter=query_filter,
                limit=k,
                with_payload=True,
                with_vectors=False,
            ),
        )

        hits: list[VectorHit] = []
        for point in response.points:
            if point.id == self.METADATA_POINT_ID:
                continue
            payload = point.payload or {}
            memory_id = payload.get("memory_id")
            if not memory_id:
                continue
            stored_scope = FilterSpec.model_validate(payload.get("scope") or {})
            # Post-check: the backend filter must never widen a result set
            if not stored_scope.matches(scope):
                logger.warning(f"Dropping vector hit {memory_id} outside query scope {scope}")
                continue
            hits.append((memory_id, float(point.score)))
        return hits

    async def list_ids(self, scope: FilterSpec) -> set[str]:
        query_filter = scope_filter(scope)
        ids: set[str] = set()
        offset = None
        while True:
            points, offset = await self._execute(
                "scroll",
                lambda o=offset: self.client.scroll(
                    collection_name=self.collection_name,
                    scroll_filter=query_filter,
                    limit=256,
                    offset=o,
                    with_payload=["memory_id", "scope"],
                    with_vectors=False,
                ),
            )
            for point in points:
                payload = point.payload or {}
                memory_id = payload.get("memory_id")
                if memory_id and FilterSpec.model_validate(payload.get("scope") or {}).matches(scope):
                    ids.add(memory_id)
            if offset is None:
                return ids

    async def count(self, scope: FilterSpec | None = None) -> int:
        if scope is None or scope.is_empty():
            info = await self._execute("count", lambda: self.client.get_collection(self.collection_name))
            return max(0, (info.points_count or 0) - 1)  # exclude metadata point
        query_filter = scope_filter(scope)
        result = await self._execute(
            "count",
            lambda: self.client.count(collection_name=self.collection_name, count_filter=query_filter, exact=True),
        )
        return result.count

    async def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "backend": "qdrant",
            "mode": self.mode,
            "collection_name": self.collection_name,
            "vector_size": self._vector_size,
            "embedding_model": self.embedding_model,
            "circuit_breaker": {
                "status": "open" if self._circuit_open_until else "closed",
                "failure_count": self._failure_count,
            },
        }
        stats["total_vectors"] = await self.count()
        return stats
