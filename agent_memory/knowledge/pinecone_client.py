"""
Pinecone client for concept vectors.

Semantic memory keeps one index (cosine metric, dimension fixed by
`embedding.dimensions`) and one namespace per user, so clearing a user is a
single namespace delete and a search can never see another user's concepts.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, TypedDict, TypeVar

import structlog
from pinecone import Pinecone, ServerlessSpec

from agent_memory.core.exceptions import InitializationError, KnowledgeStoreConnectionError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

INDEX_READY_TIMEOUT_SECONDS = 300
INDEX_READY_POLL_SECONDS = 5
UPSERT_BATCH_SIZE = 100


class ConceptMetadata(TypedDict):
    """Metadata stored alongside each concept vector."""

    userId: str
    category: str
    concept: str
    confidence: float
    lastAccessed: str


class VectorRecord(TypedDict):
    id: str
    values: list[float]
    metadata: ConceptMetadata


class PineconeClient:
    """
    Namespaced vector operations over a single serverless index.

    The SDK is synchronous; every data-plane call is pushed to the default
    executor and SDK failures surface as KnowledgeStoreConnectionError so the
    caller's RetryPolicy can retry them.

    Usage:
        vectors = PineconeClient(api_key, "agent-semantic-memory", dimension=768)
        vectors.connect()
        vectors.ensure_index()

        await vectors.upsert([record], namespace="user-1")
        matches = await vectors.query(query_vector, namespace="user-1", top_k=20)
    """

    METRIC = "cosine"

    def __init__(
        self,
        api_key: str,
        index_name: str,
        dimension: int = 768,
        cloud: str = "aws",
        region: str = "us-east-1",
    ) -> None:
        self._api_key = api_key
        self._index_name = index_name
        self._dimension = dimension
        self._cloud = cloud
        self._region = region
        self._client: Pinecone | None = None
        self._index: Any = None

    @property
    def dimension(self) -> int:
        return self._dimension

    def connect(self) -> None:
        if self._client is None:
            self._client = Pinecone(api_key=self._api_key)
            logger.info("pinecone_client_initialized", index_name=self._index_name)

    @property
    def client(self) -> Pinecone:
        if self._client is None:
            raise RuntimeError("Pinecone client not initialized. Call connect() first.")
        return self._client

    @property
    def index(self) -> Any:
        if self._index is None:
            raise RuntimeError("Pinecone index not initialized. Call ensure_index() first.")
        return self._index

    def ensure_index(self, wait_for_ready: bool = True) -> None:
        """
        Open the concept index, creating it on first use.

        Raises:
            InitializationError: If the existing index was built for another
                dimension, or a new index never becomes ready.
        """
        described = {idx.name: idx for idx in self.client.list_indexes()}
        existing = described.get(self._index_name)

        if existing is None:
            logger.info(
                "pinecone_creating_index",
                index_name=self._index_name,
                dimension=self._dimension,
                cloud=self._cloud,
                region=self._region,
            )
            self.client.create_index(
                name=self._index_name,
                dimension=self._dimension,
                metric=self.METRIC,
                spec=ServerlessSpec(cloud=self._cloud, region=self._region),
            )
            if wait_for_ready:
                self._await_ready()
        elif getattr(existing, "dimension", None) not in (None, self._dimension):
            raise InitializationError(
                "PineconeClient",
                f"Index {self._index_name} has dimension {existing.dimension}, expected {self._dimension}",
            )

        self._index = self.client.Index(self._index_name)
        logger.info("pinecone_index_connected", index_name=self._index_name, created=existing is None)

    def _await_ready(self) -> None:
        deadline = time.monotonic() + INDEX_READY_TIMEOUT_SECONDS
        while not self.client.describe_index(self._index_name).status.ready:
            if time.monotonic() > deadline:
                raise InitializationError(
                    "PineconeClient",
                    f"Index {self._index_name} not ready after {INDEX_READY_TIMEOUT_SECONDS}s",
                )
            logger.debug("pinecone_waiting_for_index", index_name=self._index_name)
            time.sleep(INDEX_READY_POLL_SECONDS)

    async def _call(self, operation: str, namespace: str, fn: Callable[[Any], T]) -> T:
        index = self.index
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, index)
        except Exception as e:
            logger.error("pinecone_call_failed", operation=operation, namespace=namespace, error=str(e))
            raise KnowledgeStoreConnectionError(
                f"Pinecone {operation} failed: {e}",
                {"index": self._index_name, "namespace": namespace},
            ) from e

    async def upsert(self, records: list[VectorRecord], namespace: str) -> int:
        """Write concept vectors into a user's namespace. Returns the count written."""
        written = 0
        for start in range(0, len(records), UPSERT_BATCH_SIZE):
            batch = [dict(r) for r in records[start : start + UPSERT_BATCH_SIZE]]
            result = await self._call("upsert", namespace, lambda index: index.upsert(vectors=batch, namespace=namespace))
            written += result.upserted_count
        logger.debug("pinecone_upserted", namespace=namespace, count=written)
        return written

    async def query(
        self,
        vector: list[float],
        namespace: str,
        top_k: int = 10,
        filter: dict[str, Any] | None = None,
        include_metadata: bool = True,
    ) -> list[dict[str, Any]]:
        """
        Nearest concepts in a namespace.

        Returns:
            Dicts with `id`, `score` (cosine) and, when requested, `metadata`.
        """
        result = await self._call(
            "query",
            namespace,
            lambda index: index.query(
                vector=vector,
                top_k=top_k,
                filter=filter,
                namespace=namespace,
                include_metadata=include_metadata,
            ),
        )
        matches = [
            {"id": m.id, "score": m.score, **({"metadata": dict(m.metadata)} if include_metadata and m.metadata else {})}
            for m in result.matches
        ]
        logger.debug("pinecone_queried", namespace=namespace, top_k=top_k, matches=len(matches))
        return matches

    async def fetch(self, ids: list[str], namespace: str) -> dict[str, list[float]]:
        """Stored vectors by id; unknown ids are absent from the result."""
        if not ids:
            return {}
        result = await self._call("fetch", namespace, lambda index: index.fetch(ids=ids, namespace=namespace))
        return {vector_id: list(vector.values) for vector_id, vector in result.vectors.items()}

    async def delete(
        self,
        namespace: str,
        ids: list[str] | None = None,
        delete_all: bool = False,
    ) -> None:
        """Remove the given ids, or with `delete_all` the whole namespace."""
        if delete_all:
            await self._call("delete", namespace, lambda index: index.delete(delete_all=True, namespace=namespace))
            logger.info("pinecone_namespace_cleared", namespace=namespace)
        elif ids:
            await self._call("delete", namespace, lambda index: index.delete(ids=ids, namespace=namespace))
            logger.debug("pinecone_deleted", namespace=namespace, count=len(ids))
