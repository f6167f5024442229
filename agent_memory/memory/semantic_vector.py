"""
Semantic store on Neo4j + Pinecone.

Neo4j holds the concept nodes, the unique conceptKey constraint and the
typed relationship edges; Pinecone holds one vector per concept in the
owning user's namespace. Writes touch Neo4j first and undo that write when
the vector side fails, so a concept is never visible without its vector.
Vectors left behind by a failed delete are ignored by search, since every
hit is resolved against Neo4j.
"""

import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from neo4j import AsyncManagedTransaction

from agent_memory.core.exceptions import (
    DuplicateConceptError,
    KnowledgeStoreQueryError,
    MemoryNotFoundError,
)
from agent_memory.core.retry import RetryPolicy
from agent_memory.knowledge.neo4j_client import Neo4jClient
from agent_memory.knowledge.pinecone_client import ConceptMetadata, PineconeClient
from agent_memory.knowledge.providers import EmbeddingProvider
from agent_memory.memory.models import (
    ExtractionMetadata,
    RelationKind,
    ScoredSemanticMemory,
    SemanticMemory,
    SemanticMetadata,
    SemanticRelationships,
    SemanticStats,
    SemanticUpdate,
    concept_key,
    to_iso,
    utcnow,
)
from agent_memory.memory.relations import (
    SEMANTIC_EDGE_TYPES,
    attach_edge,
    canonical_edge,
    rank_similarity_hits,
    related_endpoint,
)
from agent_memory.memory.semantic import (
    apply_update,
    check_linkable,
    check_same_concept,
    ensure_vector,
)
from agent_memory.monitoring.metrics import track_store_operation

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_EDGE_PATTERN = "|".join(SEMANTIC_EDGE_TYPES)

_PROJECTION = f"""s {{
    .*,
    edges: [(s)-[r:{_EDGE_PATTERN}]-(:SemanticMemory) |
        {{type: type(r), source: startNode(r).id, target: endNode(r).id}}]
}} AS memory"""


# =============================================================================
# Cypher
# =============================================================================

GET_CONCEPT = f"""
MATCH (s:SemanticMemory {{id: $id}})
RETURN {_PROJECTION}
"""

GET_CONCEPTS = f"""
MATCH (s:SemanticMemory)
WHERE s.id IN $ids
RETURN {_PROJECTION}
"""

FIND_BY_KEY = f"""
MATCH (s:SemanticMemory {{conceptKey: $conceptKey}})
RETURN {_PROJECTION}
"""

CREATE_CONCEPT = """
MERGE (u:User {id: $userId})
CREATE (s:SemanticMemory)
SET s = $props
CREATE (u)-[:HAS_MEMORY]->(s)
RETURN s.id AS id
"""

UPDATE_CONCEPT = """
MATCH (s:SemanticMemory {id: $id})
SET s += $props
"""

DELETE_CONCEPT = """
MATCH (s:SemanticMemory {id: $id})
WITH s, s.id AS deletedId, s.userId AS userId
DETACH DELETE s
RETURN deletedId, userId
"""

CLEAR_USER = """
MATCH (s:SemanticMemory {userId: $userId})
DETACH DELETE s
"""

CONCEPT_STATS = """
MATCH (s:SemanticMemory {userId: $userId})
RETURN count(s) AS count, collect(DISTINCT s.category) AS categories
"""

RECORD_ACCESS = f"""
MATCH (s:SemanticMemory {{id: $id}})
SET s.accessCount = coalesce(s.accessCount, 0) + 1, s.lastAccessed = $now
RETURN {_PROJECTION}
"""

GET_RELATED = f"""
MATCH (s:SemanticMemory {{id: $id}})-[r:{_EDGE_PATTERN}]-(o:SemanticMemory)
RETURN type(r) AS edgeType, startNode(r).id AS sourceId, endNode(r).id AS targetId, o.id AS otherId
"""

LIST_CONCEPTS = f"""
MATCH (s:SemanticMemory {{userId: $userId}})
WHERE $categories IS NULL OR s.category IN $categories
RETURN {_PROJECTION}
ORDER BY s.concept
"""


def _link_query(edge_type: str, single_valued: bool) -> str:
    # edge_type comes from RELATION_SPECS, never from callers.
    drop_previous = (
        f"""
OPTIONAL MATCH (:SemanticMemory)-[old:{edge_type}]->(b)
WHERE startNode(old) <> a
DELETE old
WITH a, b
"""
        if single_valued
        else ""
    )
    return f"""
MATCH (a:SemanticMemory {{id: $sourceId}}), (b:SemanticMemory {{id: $targetId}})
{drop_previous}
MERGE (a)-[:{edge_type}]->(b)
"""


# =============================================================================
# Conversion
# =============================================================================


def to_properties(memory: SemanticMemory) -> dict[str, Any]:
    metadata = memory.metadata
    return {
        "id": memory.id,
        "userId": memory.user_id,
        "concept": memory.concept,
        "description": memory.description,
        "conceptKey": memory.concept_key,
        "category": metadata.category,
        "confidence": metadata.confidence,
        "source": metadata.source,
        "lastAccessed": to_iso(metadata.last_accessed),
        "accessCount": metadata.access_count,
        "extractionMetadata": (
            metadata.extraction_metadata.model_dump_json() if metadata.extraction_metadata else None
        ),
    }


def from_record(node: dict[str, Any], vector: Optional[list[float]] = None) -> SemanticMemory:
    extraction = node.get("extractionMetadata")
    relationships = SemanticRelationships()
    scratch = SemanticRelationships()
    for edge in sorted(node.get("edges") or [], key=lambda e: (e["type"], e["source"], e["target"])):
        if edge["source"] == node["id"]:
            attach_edge(relationships, scratch, edge["source"], edge["target"], edge["type"])
        else:
            attach_edge(scratch, relationships, edge["source"], edge["target"], edge["type"])

    return SemanticMemory(
        id=node["id"],
        user_id=node["userId"],
        concept=node["concept"],
        description=node.get("description") or "",
        vector=vector,
        metadata=SemanticMetadata(
            category=node["category"],
            confidence=node["confidence"],
            source=node.get("source", "manual"),
            last_accessed=datetime.fromisoformat(node["lastAccessed"]),
            access_count=node.get("accessCount", 0),
            extraction_metadata=(
                ExtractionMetadata.model_validate(json.loads(extraction)) if extraction else None
            ),
        ),
        relationships=relationships,
    )


def vector_metadata(memory: SemanticMemory) -> ConceptMetadata:
    return {
        "userId": memory.user_id,
        "category": memory.metadata.category,
        "concept": memory.concept,
        "confidence": memory.metadata.confidence,
        "lastAccessed": to_iso(memory.metadata.last_accessed),
    }


def _is_constraint_violation(error: KnowledgeStoreQueryError) -> bool:
    return "ConstraintValidationFailed" in str(error.details.get("code") or "")


# =============================================================================
# Store
# =============================================================================


class VectorSemanticStore:
    """
    SemanticStore backed by Neo4j (nodes, edges) and Pinecone (vectors).

    Only `get` loads the vector; search and listing results carry
    `vector=None`.

    Usage:
        store = VectorSemanticStore(neo4j, pinecone, embedder, retry)
        hits = await store.search_by_similarity("u1", query_vector, threshold=0.7, limit=10)
    """

    def __init__(
        self,
        graph: Neo4jClient,
        vectors: PineconeClient,
        embedder: EmbeddingProvider,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._graph = graph
        self._vectors = vectors
        self._embedder = embedder
        self._dimension = vectors.dimension
        self._retry = retry or RetryPolicy()

    async def _run(self, store: str, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        with track_store_operation(store, f"semantic.{operation}"):
            return await self._retry.run(f"semantic.{operation}", call)

    async def _read(self, operation: str, query: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        return await self._run("neo4j", operation, lambda: self._graph.run_query(query, params))

    async def _write(self, operation: str, query: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        return await self._run("neo4j", operation, lambda: self._graph.run_write_query(query, params))

    async def _upsert_vector(self, memory: SemanticMemory, vector: list[float]) -> None:
        record = {"id": memory.id, "values": vector, "metadata": dict(vector_metadata(memory))}
        await self._run("pinecone", "upsert", lambda: self._vectors.upsert([record], namespace=memory.user_id))

    async def store(self, memory: SemanticMemory) -> SemanticMemory:
        existing = await self.get(memory.id)
        if existing is not None:
            check_same_concept(existing, memory)
            return existing

        duplicate = await self.find_by_concept(memory.user_id, memory.concept, memory.metadata.category)
        if duplicate is not None:
            raise DuplicateConceptError(memory.user_id, memory.concept, memory.metadata.category, duplicate.id)

        vector = await ensure_vector(memory, self._embedder, self._dimension, self._retry)

        try:
            await self._write("store", CREATE_CONCEPT, {"userId": memory.user_id, "props": to_properties(memory)})
        except KnowledgeStoreQueryError as e:
            if _is_constraint_violation(e):
                raise DuplicateConceptError(
                    memory.user_id, memory.concept, memory.metadata.category
                ) from e
            raise

        try:
            await self._upsert_vector(memory, vector)
        except Exception:
            logger.warning("semantic_store_vector_failed_rolling_back", memory_id=memory.id)
            await self._write("rollback", DELETE_CONCEPT, {"id": memory.id})
            raise

        logger.debug("semantic_memory_stored", memory_id=memory.id, concept=memory.concept)
        stored = memory.model_copy(deep=True)
        stored.vector = vector
        stored.relationships = SemanticRelationships()
        return stored

    async def get(self, memory_id: str) -> Optional[SemanticMemory]:
        records = await self._read("get", GET_CONCEPT, {"id": memory_id})
        if not records:
            return None
        node = records[0]["memory"]
        vectors = await self._run(
            "pinecone", "fetch", lambda: self._vectors.fetch([memory_id], namespace=node["userId"])
        )
        return from_record(node, vectors.get(memory_id))

    async def find_by_concept(self, user_id: str, concept: str, category: str) -> Optional[SemanticMemory]:
        records = await self._read(
            "find_by_concept", FIND_BY_KEY, {"conceptKey": concept_key(user_id, category, concept)}
        )
        return from_record(records[0]["memory"]) if records else None

    async def search_by_similarity(
        self,
        user_id: str,
        query_vector: list[float],
        threshold: float,
        limit: int,
        categories: Optional[list[str]] = None,
    ) -> list[ScoredSemanticMemory]:
        if limit <= 0:
            return []
        matches = await self._run(
            "pinecone",
            "search",
            lambda: self._vectors.query(
                query_vector,
                namespace=user_id,
                top_k=min(max(limit * 2, 10), 1000),
                filter={"category": {"$in": categories}} if categories else None,
                include_metadata=False,
            ),
        )
        scores = {m["id"]: m["score"] for m in matches if m["score"] >= threshold}
        if not scores:
            return []

        records = await self._read("search", GET_CONCEPTS, {"ids": list(scores)})
        hits = [(from_record(r["memory"]), scores[r["memory"]["id"]]) for r in records]
        return rank_similarity_hits(hits, threshold, limit)

    async def update(self, memory_id: str, update: SemanticUpdate) -> SemanticMemory:
        current = await self.get(memory_id)
        if current is None:
            raise MemoryNotFoundError("semantic", memory_id)

        updated = apply_update(current, update)
        if updated.concept_key != current.concept_key:
            clash = await self.find_by_concept(updated.user_id, updated.concept, updated.metadata.category)
            if clash is not None and clash.id != memory_id:
                raise DuplicateConceptError(
                    updated.user_id, updated.concept, updated.metadata.category, clash.id
                )

        if update.changes_embedding or current.vector is None:
            updated.vector = None
            updated.vector = await ensure_vector(updated, self._embedder, self._dimension, self._retry)

        await self._write("update", UPDATE_CONCEPT, {"id": memory_id, "props": to_properties(updated)})
        try:
            await self._upsert_vector(updated, updated.vector)
        except Exception:
            logger.warning("semantic_update_vector_failed_rolling_back", memory_id=memory_id)
            await self._write("rollback", UPDATE_CONCEPT, {"id": memory_id, "props": to_properties(current)})
            raise
        return updated

    async def delete(self, memory_id: str) -> bool:
        records = await self._write("delete", DELETE_CONCEPT, {"id": memory_id})
        if not records:
            return False
        user_id = records[0]["userId"]
        await self._run("pinecone", "delete", lambda: self._vectors.delete(namespace=user_id, ids=[memory_id]))
        return True

    async def clear_user(self, user_id: str) -> bool:
        stats = await self.stats(user_id)
        await self._write("clear_user", CLEAR_USER, {"userId": user_id})
        if stats.count:
            await self._run(
                "pinecone", "clear_user", lambda: self._vectors.delete(namespace=user_id, delete_all=True)
            )
        logger.info("semantic_memories_cleared", user_id=user_id, count=stats.count)
        return True

    async def stats(self, user_id: str) -> SemanticStats:
        records = await self._read("stats", CONCEPT_STATS, {"userId": user_id})
        if not records:
            return SemanticStats()
        return SemanticStats(count=records[0]["count"], categories=sorted(records[0]["categories"]))

    async def link_related(self, a_id: str, b_id: str, kind: RelationKind) -> bool:
        records = await self._read("link", GET_CONCEPTS, {"ids": [a_id, b_id]})
        found = {r["memory"]["id"]: from_record(r["memory"]) for r in records}
        check_linkable(found.get(a_id), found.get(b_id), a_id, b_id)

        source, target, spec = canonical_edge(a_id, b_id, kind)

        async def work(tx: AsyncManagedTransaction) -> None:
            result = await tx.run(
                _link_query(spec.edge_type, spec.single_valued),
                {"sourceId": source, "targetId": target},
            )
            await result.consume()

        await self._run("neo4j", "link", lambda: self._graph.execute_write(work, label="semantic.link"))
        logger.debug("semantic_relationship_linked", source=source, target=target, edge_type=spec.edge_type)
        return True

    async def record_access(self, memory_id: str) -> SemanticMemory:
        records = await self._write("record_access", RECORD_ACCESS, {"id": memory_id, "now": to_iso(utcnow())})
        if not records:
            raise MemoryNotFoundError("semantic", memory_id)
        return from_record(records[0]["memory"])

    async def get_related(self, memory_id: str, kind: Optional[RelationKind] = None) -> list[SemanticMemory]:
        records = await self._read("get_related", GET_RELATED, {"id": memory_id})
        other_ids: dict[str, None] = {}
        for r in records:
            other = related_endpoint((r["edgeType"], r["sourceId"], r["targetId"]), memory_id, kind)
            if other is not None:
                other_ids[other] = None
        if not other_ids:
            return []
        nodes = await self._read("get_related", GET_CONCEPTS, {"ids": list(other_ids)})
        by_id = {n["memory"]["id"]: from_record(n["memory"]) for n in nodes}
        return [by_id[i] for i in other_ids if i in by_id]

    async def list_concepts(self, user_id: str, categories: Optional[list[str]] = None) -> list[SemanticMemory]:
        records = await self._read("list", LIST_CONCEPTS, {"userId": user_id, "categories": categories})
        return [from_record(r["memory"]) for r in records]
