"""
Semantic extraction pipeline.

Promotes recurring content from episodic memory into semantic memory:
episodes are chunked, each chunk is sent to the completion model with a
fixed prompt, and the returned concepts are filtered, deduplicated against
existing concepts and then merged or stored.

Usage:
    pipeline = SemanticExtractionPipeline(episodic, semantic, embedder, completion, settings)
    stats = await pipeline.run("user-1", session_id="session-9")
"""

import json
import re
import time
from collections import Counter, defaultdict
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from agent_memory.config.settings import SemanticExtractionSettings
from agent_memory.core.exceptions import (
    DuplicateConceptError,
    ExtractionError,
    MemoryConnectionError,
    ProviderError,
)
from agent_memory.core.locks import KeyedLock
from agent_memory.core.retry import RetryPolicy
from agent_memory.knowledge.providers import EmbeddingProvider, TextCompletionProvider
from agent_memory.memory.episodic import EpisodicStore
from agent_memory.memory.models import (
    EpisodeKind,
    EpisodicMemory,
    EpisodicQuery,
    ExtractedConcept,
    ExtractedRelationship,
    ExtractionMetadata,
    ExtractionStats,
    ExtractionSummary,
    SemanticMemory,
    SemanticMetadata,
    SemanticUpdate,
    normalize_concept,
    to_iso,
    utcnow,
)
from agent_memory.memory.semantic import SemanticStore
from agent_memory.monitoring.metrics import (
    EXTRACTION_CANDIDATES,
    EXTRACTION_DURATION,
    EXTRACTION_RUNS,
)

logger = structlog.get_logger(__name__)

EXTRACTION_SOURCE = "semantic_extraction"

MINED_KINDS = (EpisodeKind.TURN, EpisodeKind.NOTE)

EXTRACTION_PROMPT = """You extract durable semantic knowledge from an agent's episodic memories.
Identify the key concepts, describe each one, assign it a category and identify
relationships between concepts.

Available categories: {categories}

Instructions:
1. Extract only the most important concepts from the memories
2. Give each concept a clear description and the most appropriate category
3. Identify relationships between concepts
4. Assign confidence scores (0-1) reflecting how clear and well-defined each item is
5. List keywords that help identify the concept
6. Extract at most {max_concepts} concepts per memory

Memory Data:
{memories}

Respond with a JSON object in exactly this format:
{{
  "concepts": [
    {{
      "concept": "concept_name",
      "description": "clear description of the concept",
      "category": "category_name",
      "confidence": 0.8,
      "sourceMemoryId": "memory_id",
      "keywords": ["keyword1", "keyword2"]
    }}
  ],
  "relationships": [
    {{
      "sourceConcept": "concept1",
      "targetConcept": "concept2",
      "relationshipType": "similar|parent|child|related|opposite|causes|part_of|instance_of",
      "confidence": 0.7,
      "description": "description of the relationship"
    }}
  ],
  "confidence": 0.75
}}

Only include items with confidence >= {min_confidence}."""


def format_episode(memory: EpisodicMemory) -> str:
    context = memory.context.model_dump(mode="json", exclude_defaults=True)
    return (
        f"Memory ID: {memory.id}\n"
        f"Content: {memory.content}\n"
        f"Context: {json.dumps(context, sort_keys=True)}\n"
        f"Tags: {', '.join(memory.metadata.tags)}\n"
        f"Importance: {memory.metadata.importance}\n"
        f"Timestamp: {to_iso(memory.timestamp)}\n"
    )


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a JSON object from model output, tolerating code fences and prose.

    Raises:
        ValueError: If no JSON object can be recovered.
    """
    text = text.strip()

    # Strip markdown code fences if present
    if text.startswith("```"):
        lines = text.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{[\s\S]*\}", text)
        if not match:
            raise ValueError(f"Could not parse JSON from response: {text[:200]}")
        try:
            parsed = json.loads(match.group())
        except json.JSONDecodeError as e:
            raise ValueError(f"Could not parse JSON from response: {e}") from e

    if not isinstance(parsed, dict):
        raise ValueError("Response JSON is not an object")
    return parsed


def chunk(items: list[EpisodicMemory], size: int) -> list[list[EpisodicMemory]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class SemanticExtractionPipeline:
    """
    Derives semantic memories from batches of episodes.

    Runs are serialized per user; the store's unique concept key backs the
    lock up if two processes extract for one user at once.
    """

    def __init__(
        self,
        episodic: EpisodicStore,
        semantic: SemanticStore,
        embedder: EmbeddingProvider,
        completion: TextCompletionProvider,
        settings: SemanticExtractionSettings,
        retry: Optional[RetryPolicy] = None,
        locks: Optional[KeyedLock] = None,
    ) -> None:
        self._episodic = episodic
        self._semantic = semantic
        self._embedder = embedder
        self._completion = completion
        self._settings = settings
        self._retry = retry or RetryPolicy()
        self._locks = locks or KeyedLock()

    def build_prompt(self, episodes: list[EpisodicMemory]) -> str:
        return EXTRACTION_PROMPT.format(
            categories=", ".join(self._settings.categories),
            max_concepts=self._settings.max_concepts_per_memory,
            memories="\n---\n".join(format_episode(m) for m in episodes),
            min_confidence=self._settings.min_confidence,
        )

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        episodes: Optional[list[EpisodicMemory]] = None,
    ) -> ExtractionStats:
        """
        Extract concepts for a user.

        Args:
            user_id: Owner of the episodes and the resulting concepts.
            session_id: Restrict loaded episodes to one session.
            episodes: Episodes to mine; the most recent ones are loaded when omitted.

        Returns:
            Counts of what the run created, merged, linked and skipped.
        """
        if not self._settings.enabled:
            logger.debug("semantic_extraction_disabled", user_id=user_id)
            return ExtractionStats()

        started = time.perf_counter()
        stats = ExtractionStats()

        async with self._locks.hold(user_id):
            if episodes is None:
                episodes = await self._load_episodes(user_id, session_id)
            episodes = [e for e in episodes if self._is_minable(e, user_id)]

            run_concepts: dict[str, str] = {}
            relationships: list[ExtractedRelationship] = []

            for batch_index, batch in enumerate(chunk(episodes, self._settings.batch_size)):
                try:
                    concepts, batch_relationships, skipped = await self._extract_batch(batch, batch_index)
                except (ExtractionError, ProviderError, MemoryConnectionError) as e:
                    stats.failed_batches += 1
                    logger.warning(
                        "semantic_extraction_batch_failed",
                        user_id=user_id,
                        batch_index=batch_index,
                        error=str(e),
                    )
                    continue

                stats.skipped_candidates += skipped
                EXTRACTION_CANDIDATES.labels(outcome="skipped").inc(skipped)
                relationships.extend(batch_relationships)

                for candidate in concepts:
                    memory, created = await self._merge_or_create(user_id, candidate, batch)
                    run_concepts[normalize_concept(candidate.concept)] = memory.id
                    stats.extracted_concepts += 1
                    if created:
                        stats.created += 1
                    else:
                        stats.merged += 1
                    EXTRACTION_CANDIDATES.labels(outcome="created" if created else "merged").inc()

            if self._settings.enable_relationship_extraction:
                stats.extracted_relationships = await self._link(relationships, run_concepts)

        stats.processing_time_ms = (time.perf_counter() - started) * 1000
        EXTRACTION_DURATION.observe(stats.processing_time_ms / 1000)
        EXTRACTION_RUNS.labels(status="partial" if stats.failed_batches else "success").inc()

        logger.info(
            "semantic_extraction_completed",
            user_id=user_id,
            session_id=session_id,
            episodes=len(episodes),
            created=stats.created,
            merged=stats.merged,
            relationships=stats.extracted_relationships,
            failed_batches=stats.failed_batches,
            processing_time_ms=round(stats.processing_time_ms, 1),
        )
        return stats

    async def _load_episodes(self, user_id: str, session_id: Optional[str]) -> list[EpisodicMemory]:
        recent = await self._episodic.search(
            EpisodicQuery(
                user_id=user_id,
                session_id=session_id,
                kinds=list(MINED_KINDS),
                limit=self._settings.max_episodes_per_run,
            )
        )
        return list(reversed(recent))

    @staticmethod
    def _is_minable(memory: EpisodicMemory, user_id: str) -> bool:
        return memory.user_id == user_id and memory.context.kind in MINED_KINDS

    async def _extract_batch(
        self,
        batch: list[EpisodicMemory],
        batch_index: int,
    ) -> tuple[list[ExtractedConcept], list[ExtractedRelationship], int]:
        prompt = self.build_prompt(batch)
        response = await self._retry.run(
            "extraction.complete",
            lambda: self._completion.complete(
                prompt,
                temperature=self._settings.temperature,
                max_tokens=self._settings.max_output_tokens,
            ),
        )
        try:
            payload = parse_json_object(response)
        except ValueError as e:
            raise ExtractionError(str(e), batch_index, {"response": response[:200]}) from e

        concepts, skipped = self._accept_concepts(payload.get("concepts"), batch)
        relationships = self._accept_relationships(payload.get("relationships"))
        return concepts, relationships, skipped

    def _accept_concepts(
        self,
        raw: Any,
        batch: list[EpisodicMemory],
    ) -> tuple[list[ExtractedConcept], int]:
        if not isinstance(raw, list):
            return [], 0

        batch_ids = [m.id for m in batch]
        categories = set(self._settings.categories)
        accepted: list[ExtractedConcept] = []
        skipped = 0

        for item in raw:
            try:
                candidate = ExtractedConcept.model_validate(item)
            except ValidationError:
                skipped += 1
                continue
            if candidate.confidence < self._settings.min_confidence or candidate.category not in categories:
                skipped += 1
                continue
            if candidate.source_memory_id not in batch_ids:
                candidate.source_memory_id = batch_ids[0]
            accepted.append(candidate)

        # Cap per source episode, keeping the most confident candidates.
        per_source: dict[str, list[ExtractedConcept]] = defaultdict(list)
        for candidate in accepted:
            per_source[candidate.source_memory_id].append(candidate)
        kept: list[ExtractedConcept] = []
        for candidates in per_source.values():
            candidates.sort(key=lambda c: c.confidence, reverse=True)
            kept.extend(candidates[: self._settings.max_concepts_per_memory])
            skipped += max(0, len(candidates) - self._settings.max_concepts_per_memory)
        return kept, skipped

    def _accept_relationships(self, raw: Any) -> list[ExtractedRelationship]:
        if not isinstance(raw, list):
            return []
        accepted = []
        for item in raw:
            try:
                relationship = ExtractedRelationship.model_validate(item)
            except ValidationError:
                continue
            if relationship.confidence >= self._settings.min_confidence:
                accepted.append(relationship)
        return accepted

    # -------------------------------------------------------------------------
    # Merge
    # -------------------------------------------------------------------------

    async def _find_match(self, user_id: str, candidate: ExtractedConcept, vector: list[float]) -> Optional[SemanticMemory]:
        exact = await self._semantic.find_by_concept(user_id, candidate.concept, candidate.category)
        if exact is not None:
            return exact
        hits = await self._semantic.search_by_similarity(
            user_id,
            vector,
            threshold=self._settings.merge_threshold,
            limit=1,
            categories=[candidate.category],
        )
        return hits[0].memory if hits else None

    async def _merge_or_create(
        self,
        user_id: str,
        candidate: ExtractedConcept,
        batch: list[EpisodicMemory],
    ) -> tuple[SemanticMemory, bool]:
        text = f"{candidate.concept}: {candidate.description}"
        vector = await self._retry.run("extraction.embed", lambda: self._embedder.embed_text(text))

        match = await self._find_match(user_id, candidate, vector)
        if match is not None:
            return await self._merge(match, candidate), False

        extraction = ExtractionMetadata(
            source_memory_ids=[candidate.source_memory_id] if candidate.source_memory_id else [m.id for m in batch[:1]],
            extraction_confidence=candidate.confidence,
            keywords=list(dict.fromkeys(candidate.keywords)),
        )
        memory = SemanticMemory(
            user_id=user_id,
            concept=candidate.concept,
            description=candidate.description,
            vector=vector,
            metadata=SemanticMetadata(
                category=candidate.category,
                confidence=candidate.confidence,
                source=EXTRACTION_SOURCE,
                extraction_metadata=extraction,
            ),
        )
        try:
            return await self._semantic.store(memory), True
        except DuplicateConceptError:
            # Another writer created the key between lookup and store.
            existing = await self._semantic.find_by_concept(user_id, candidate.concept, candidate.category)
            if existing is None:
                raise
            return await self._merge(existing, candidate), False

    async def _merge(self, existing: SemanticMemory, candidate: ExtractedConcept) -> SemanticMemory:
        previous = existing.metadata.extraction_metadata or ExtractionMetadata()
        source_ids = list(previous.source_memory_ids)
        if candidate.source_memory_id and candidate.source_memory_id not in source_ids:
            source_ids.append(candidate.source_memory_id)

        merged = await self._semantic.update(
            existing.id,
            SemanticUpdate(
                confidence=max(existing.metadata.confidence, candidate.confidence),
                access_count=existing.metadata.access_count + 1,
                extraction_metadata=ExtractionMetadata(
                    source_memory_ids=source_ids,
                    extraction_timestamp=utcnow(),
                    extraction_confidence=max(previous.extraction_confidence, candidate.confidence),
                    keywords=list(dict.fromkeys([*previous.keywords, *candidate.keywords])),
                    processing_time_ms=previous.processing_time_ms,
                ),
            ),
        )
        logger.debug(
            "semantic_concept_merged",
            memory_id=existing.id,
            concept=existing.concept,
            access_count=merged.metadata.access_count,
        )
        return merged

    async def _link(self, relationships: list[ExtractedRelationship], run_concepts: dict[str, str]) -> int:
        linked = 0
        for relationship in relationships:
            source_id = run_concepts.get(normalize_concept(relationship.source_concept))
            target_id = run_concepts.get(normalize_concept(relationship.target_concept))
            if source_id is None or target_id is None or source_id == target_id:
                continue
            await self._semantic.link_related(source_id, target_id, relationship.relationship_type)
            linked += 1
        return linked

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    async def get_extraction_stats(self, user_id: str) -> ExtractionSummary:
        """
        Aggregate view over a user's extracted concepts.

        Every creation and every merge counts as one extraction.
        """
        concepts = [
            c for c in await self._semantic.list_concepts(user_id) if c.metadata.source == EXTRACTION_SOURCE
        ]
        if not concepts:
            return ExtractionSummary()

        timestamps = [
            c.metadata.extraction_metadata.extraction_timestamp
            for c in concepts
            if c.metadata.extraction_metadata is not None
        ]
        return ExtractionSummary(
            total_extractions=sum(c.metadata.access_count + 1 for c in concepts),
            total_concepts=len(concepts),
            average_confidence=sum(c.metadata.confidence for c in concepts) / len(concepts),
            concepts_by_category=dict(Counter(c.metadata.category for c in concepts)),
            last_extraction=max(timestamps) if timestamps else None,
        )
