"""Semantic relationship table and similarity ranking helpers."""

import math
from dataclasses import dataclass
from typing import Iterable, Optional

from agent_memory.memory.models import (
    RelationKind,
    ScoredSemanticMemory,
    SemanticMemory,
    SemanticRelationships,
)


@dataclass(frozen=True)
class RelationSpec:
    """
    How one RelationKind is stored.

    Every edge is kept once, in its canonical direction; EDGE_FIELDS maps it
    back onto SemanticRelationships when read.
    """

    edge_type: str
    symmetric: bool = False
    reversed: bool = False  # stored target -> source
    single_valued: bool = False  # stored target keeps at most one incoming edge of this type


RELATION_SPECS: dict[RelationKind, RelationSpec] = {
    RelationKind.SIMILAR: RelationSpec("SIMILAR", symmetric=True),
    RelationKind.RELATED: RelationSpec("RELATED", symmetric=True),
    RelationKind.OPPOSITE: RelationSpec("OPPOSITE", symmetric=True),
    # a PARENT_OF b means a is b's parent
    RelationKind.PARENT: RelationSpec("PARENT_OF", reversed=True, single_valued=True),
    RelationKind.CHILD: RelationSpec("PARENT_OF", single_valued=True),
    RelationKind.CAUSES: RelationSpec("CAUSES"),
    RelationKind.CAUSED_BY: RelationSpec("CAUSES", reversed=True),
    RelationKind.PART_OF: RelationSpec("PART_OF"),
    RelationKind.HAS_PARTS: RelationSpec("PART_OF", reversed=True),
    RelationKind.INSTANCE_OF: RelationSpec("INSTANCE_OF"),
}

# Edge type -> (field on the stored source, field on the stored target)
EDGE_FIELDS: dict[str, tuple[str, Optional[str]]] = {
    "SIMILAR": ("similar", "similar"),
    "RELATED": ("related", "related"),
    "OPPOSITE": ("opposite", "opposite"),
    "PARENT_OF": ("children", "parent"),
    "CAUSES": ("causes", "caused_by"),
    "PART_OF": ("part_of", "has_parts"),
    "INSTANCE_OF": ("instance_of", None),
}

SEMANTIC_EDGE_TYPES = tuple(EDGE_FIELDS)


def canonical_edge(a_id: str, b_id: str, kind: RelationKind) -> tuple[str, str, RelationSpec]:
    """Return (source, target, spec) of the stored edge for `a --kind--> b`.

    Symmetric edges are stored with the ids in sorted order so that linking
    (a, b) and (b, a) produce the same edge.
    """
    spec = RELATION_SPECS[kind]
    if spec.symmetric:
        source, target = sorted((a_id, b_id))
    elif spec.reversed:
        source, target = b_id, a_id
    else:
        source, target = a_id, b_id
    return source, target, spec


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity clamped to [-1, 1]. Zero vectors score 0."""
    if len(a) != len(b):
        raise ValueError(f"Vector dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))


def rank_similarity_hits(
    hits: Iterable[tuple[SemanticMemory, float]],
    threshold: float,
    limit: int,
) -> list[ScoredSemanticMemory]:
    """Drop hits below threshold; order by score, confidence, recency of access."""
    kept = [(memory, max(-1.0, min(1.0, score))) for memory, score in hits if score >= threshold]
    kept.sort(
        key=lambda pair: (
            pair[1],
            pair[0].metadata.confidence,
            pair[0].metadata.last_accessed,
        ),
        reverse=True,
    )
    return [ScoredSemanticMemory(memory=memory, score=score) for memory, score in kept[:limit]]


def attach_edge(
    source: SemanticRelationships,
    target: SemanticRelationships,
    source_id: str,
    target_id: str,
    edge_type: str,
) -> None:
    """Record a stored edge on both endpoints' relationship views."""
    source_field, target_field = EDGE_FIELDS[edge_type]
    _add(source, source_field, target_id)
    if target_field is not None:
        _add(target, target_field, source_id)


def _add(relationships: SemanticRelationships, field: str, other_id: str) -> None:
    if field == "parent":
        relationships.parent = other_id
        return
    values = getattr(relationships, field)
    if other_id not in values:
        values.append(other_id)


def related_endpoint(
    edge: tuple[str, str, str],
    memory_id: str,
    kind: Optional[RelationKind] = None,
) -> Optional[str]:
    """The other end of a stored edge when `memory_id --kind--> other`.

    With no kind, any edge touching `memory_id` qualifies.
    """
    edge_type, source, target = edge
    if kind is None:
        if source == memory_id:
            return target
        return source if target == memory_id else None

    spec = RELATION_SPECS[kind]
    if edge_type != spec.edge_type:
        return None
    if spec.symmetric:
        return related_endpoint(edge, memory_id)
    if spec.reversed:
        return source if target == memory_id else None
    return target if source == memory_id else None
