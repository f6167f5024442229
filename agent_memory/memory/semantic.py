"""
Semantic memory store.

Concepts are kept in an arena keyed by id; typed relationships live in a
separate edge set and are projected onto each concept's `relationships`
view when read. A concept is unique per (user, category, normalized name).
"""

from typing import Optional, Protocol

import structlog

from agent_memory.core.exceptions import (
    DuplicateConceptError,
    MemoryNotFoundError,
    MemoryValidationError,
)
from agent_memory.core.retry import RetryPolicy
from agent_memory.knowledge.providers import EmbeddingProvider
from agent_memory.memory.models import (
    RelationKind,
    ScoredSemanticMemory,
    SemanticMemory,
    SemanticRelationships,
    SemanticStats,
    SemanticUpdate,
    concept_key,
    utcnow,
)
from agent_memory.memory.relations import (
    attach_edge,
    canonical_edge,
    cosine_similarity,
    rank_similarity_hits,
    related_endpoint,
)

logger = structlog.get_logger(__name__)


class SemanticStore(Protocol):
    async def store(self, memory: SemanticMemory) -> SemanticMemory: ...

    async def get(self, memory_id: str) -> Optional[SemanticMemory]: ...

    async def find_by_concept(
        self, user_id: str, concept: str, category: str
    ) -> Optional[SemanticMemory]: ...

    async def search_by_similarity(
        self,
        user_id: str,
        query_vector: list[float],
        threshold: float,
        limit: int,
        categories: Optional[list[str]] = None,
    ) -> list[ScoredSemanticMemory]: ...

    async def update(self, memory_id: str, update: SemanticUpdate) -> SemanticMemory: ...

    async def delete(self, memory_id: str) -> bool: ...

    async def clear_user(self, user_id: str) -> bool: ...

    async def stats(self, user_id: str) -> SemanticStats: ...

    async def link_related(self, a_id: str, b_id: str, kind: RelationKind) -> bool: ...

    async def record_access(self, memory_id: str) -> SemanticMemory: ...

    async def get_related(
        self, memory_id: str, kind: Optional[RelationKind] = None
    ) -> list[SemanticMemory]: ...

    async def list_concepts(
        self, user_id: str, categories: Optional[list[str]] = None
    ) -> list[SemanticMemory]: ...


# =============================================================================
# Shared rules
# =============================================================================


async def ensure_vector(
    memory: SemanticMemory,
    embedder: EmbeddingProvider,
    dimension: int,
    retry: RetryPolicy,
) -> list[float]:
    """Embed "{concept}: {description}" when absent and check the dimension."""
    vector = memory.vector
    if vector is None:
        vector = await retry.run("semantic.embed", lambda: embedder.embed_text(memory.embedding_text))
    if len(vector) != dimension:
        raise MemoryValidationError(
            f"Vector dimension {len(vector)} does not match configured {dimension}",
            {"memory_id": memory.id, "expected": dimension, "actual": len(vector)},
        )
    return list(vector)


def apply_update(memory: SemanticMemory, update: SemanticUpdate) -> SemanticMemory:
    """Return a copy of `memory` with the update applied (vector untouched)."""
    updated = memory.model_copy(deep=True)
    if update.concept is not None:
        updated.concept = update.concept
    if update.description is not None:
        updated.description = update.description
    if update.category is not None:
        updated.metadata.category = update.category
    if update.confidence is not None:
        updated.metadata.confidence = update.confidence
    if update.access_count is not None:
        updated.metadata.access_count = update.access_count
    if update.extraction_metadata is not None:
        updated.metadata.extraction_metadata = update.extraction_metadata
    return updated


def check_same_concept(existing: SemanticMemory, memory: SemanticMemory) -> None:
    """A retried store under one id must describe the same concept."""
    if existing.concept_key != memory.concept_key:
        raise MemoryValidationError(
            f"Semantic memory id {memory.id} is already used by another concept",
            {"memory_id": memory.id, "concept": existing.concept},
        )


def check_linkable(a: Optional[SemanticMemory], b: Optional[SemanticMemory], a_id: str, b_id: str) -> None:
    if a is None:
        raise MemoryNotFoundError("semantic", a_id)
    if b is None:
        raise MemoryNotFoundError("semantic", b_id)
    if a_id == b_id:
        raise MemoryValidationError("A concept cannot be related to itself", {"memory_id": a_id})
    if a.user_id != b.user_id:
        raise MemoryValidationError(
            "Concepts of different users cannot be related",
            {"source_id": a_id, "target_id": b_id},
        )


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemorySemanticStore:
    """
    Process-local SemanticStore with brute-force cosine search.

    Usage:
        store = InMemorySemanticStore(embedder)
        python = await store.store(SemanticMemory(user_id="u1", concept="Python", description="..."))
        hits = await store.search_by_similarity("u1", vector, threshold=0.7, limit=5)
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        dimension: Optional[int] = None,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._embedder = embedder
        self._dimension = dimension or embedder.dimension
        self._retry = retry or RetryPolicy()
        self._memories: dict[str, SemanticMemory] = {}
        self._keys: dict[str, str] = {}
        # (edge_type, source_id, target_id)
        self._edges: set[tuple[str, str, str]] = set()

    def _view(self, memory_id: str) -> SemanticMemory:
        memory = self._memories[memory_id].model_copy(deep=True)
        memory.relationships = self._relationships(memory_id)
        return memory

    def _relationships(self, memory_id: str) -> SemanticRelationships:
        own = SemanticRelationships()
        scratch = SemanticRelationships()
        for edge_type, source, target in sorted(self._edges):
            if source == memory_id:
                attach_edge(own, scratch, source, target, edge_type)
            elif target == memory_id:
                attach_edge(scratch, own, source, target, edge_type)
        return own

    async def store(self, memory: SemanticMemory) -> SemanticMemory:
        existing = self._memories.get(memory.id)
        if existing is not None:
            check_same_concept(existing, memory)
            return self._view(memory.id)

        key = memory.concept_key
        existing_id = self._keys.get(key)
        if existing_id is not None:
            raise DuplicateConceptError(memory.user_id, memory.concept, memory.metadata.category, existing_id)

        stored = memory.model_copy(deep=True)
        stored.vector = await ensure_vector(memory, self._embedder, self._dimension, self._retry)
        stored.relationships = SemanticRelationships()

        # The embed call above yields to the loop; re-check the key.
        existing_id = self._keys.get(key)
        if existing_id is not None:
            raise DuplicateConceptError(memory.user_id, memory.concept, memory.metadata.category, existing_id)

        self._memories[stored.id] = stored
        self._keys[key] = stored.id
        logger.debug("semantic_memory_stored", memory_id=stored.id, concept=stored.concept)
        return self._view(stored.id)

    async def get(self, memory_id: str) -> Optional[SemanticMemory]:
        if memory_id not in self._memories:
            return None
        return self._view(memory_id)

    async def find_by_concept(self, user_id: str, concept: str, category: str) -> Optional[SemanticMemory]:
        memory_id = self._keys.get(concept_key(user_id, category, concept))
        return self._view(memory_id) if memory_id else None

    async def search_by_similarity(
        self,
        user_id: str,
        query_vector: list[float],
        threshold: float,
        limit: int,
        categories: Optional[list[str]] = None,
    ) -> list[ScoredSemanticMemory]:
        hits = []
        for memory in self._memories.values():
            if memory.user_id != user_id:
                continue
            if categories is not None and memory.metadata.category not in categories:
                continue
            hits.append((self._view(memory.id), cosine_similarity(query_vector, memory.vector or [])))
        return rank_similarity_hits(hits, threshold, limit)

    async def update(self, memory_id: str, update: SemanticUpdate) -> SemanticMemory:
        current = self._memories.get(memory_id)
        if current is None:
            raise MemoryNotFoundError("semantic", memory_id)

        updated = apply_update(current, update)
        old_key, new_key = current.concept_key, updated.concept_key
        if new_key != old_key and self._keys.get(new_key) not in (None, memory_id):
            raise DuplicateConceptError(
                updated.user_id, updated.concept, updated.metadata.category, self._keys[new_key]
            )
        if update.changes_embedding:
            updated.vector = None
            updated.vector = await ensure_vector(updated, self._embedder, self._dimension, self._retry)

        self._keys.pop(old_key, None)
        self._keys[new_key] = memory_id
        self._memories[memory_id] = updated
        return self._view(memory_id)

    async def delete(self, memory_id: str) -> bool:
        memory = self._memories.pop(memory_id, None)
        if memory is None:
            return False
        self._keys.pop(memory.concept_key, None)
        self._edges = {e for e in self._edges if memory_id not in (e[1], e[2])}
        return True

    async def clear_user(self, user_id: str) -> bool:
        for memory_id in [mid for mid, m in self._memories.items() if m.user_id == user_id]:
            await self.delete(memory_id)
        return True

    async def stats(self, user_id: str) -> SemanticStats:
        mine = [m for m in self._memories.values() if m.user_id == user_id]
        return SemanticStats(count=len(mine), categories=sorted({m.metadata.category for m in mine}))

    async def link_related(self, a_id: str, b_id: str, kind: RelationKind) -> bool:
        check_linkable(self._memories.get(a_id), self._memories.get(b_id), a_id, b_id)
        source, target, spec = canonical_edge(a_id, b_id, kind)
        edge = (spec.edge_type, source, target)
        if edge in self._edges:
            return True
        if spec.single_valued:
            self._edges = {
                e for e in self._edges if not (e[0] == spec.edge_type and e[2] == target)
            }
        self._edges.add(edge)
        logger.debug("semantic_relationship_linked", source=source, target=target, edge_type=spec.edge_type)
        return True

    async def record_access(self, memory_id: str) -> SemanticMemory:
        memory = self._memories.get(memory_id)
        if memory is None:
            raise MemoryNotFoundError("semantic", memory_id)
        memory.metadata.access_count += 1
        memory.metadata.last_accessed = utcnow()
        return self._view(memory_id)

    async def get_related(self, memory_id: str, kind: Optional[RelationKind] = None) -> list[SemanticMemory]:
        if memory_id not in self._memories:
            return []
        related_ids: dict[str, None] = {}
        for edge in sorted(self._edges):
            other = related_endpoint(edge, memory_id, kind)
            if other is not None:
                related_ids[other] = None
        return [self._view(i) for i in related_ids]

    async def list_concepts(self, user_id: str, categories: Optional[list[str]] = None) -> list[SemanticMemory]:
        return [
            self._view(m.id)
            for m in self._memories.values()
            if m.user_id == user_id and (categories is None or m.metadata.category in categories)
        ]
