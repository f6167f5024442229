"""
Memory service facade.

The single entry point agent code talks to. Owns the lifecycle of the
stores, the context assembler, working memory, the extraction pipeline and
its background queue, and serializes episodic appends per session.

Usage:
    service = MemoryService.from_settings()
    await service.init()

    episode = await service.record_turn("user-1", "session-9", interaction)
    context = await service.enhance_context("user-1", "session-9", "what did I say about Rust?")

    await service.close()
"""

from __future__ import annotations

import asyncio
from typing import Literal, Optional

import structlog

from agent_memory.config.settings import Settings, get_settings
from agent_memory.core.container import DependencyContainer
from agent_memory.core.exceptions import (
    ConfigurationError,
    MemoryConnectionError,
    MemoryNotFoundError,
    MemoryValidationError,
    RetryableError,
)
from agent_memory.core.locks import KeyedLock
from agent_memory.core.retry import RetryPolicy
from agent_memory.knowledge.providers import EmbeddingProvider, TextCompletionProvider
from agent_memory.memory.cache import InMemoryWorkingMemoryCache, WorkingMemoryCache
from agent_memory.memory.context import MemoryContextAssembler, extract_keywords, keyword_overlap
from agent_memory.memory.episodic import EpisodicStore
from agent_memory.memory.extraction import SemanticExtractionPipeline
from agent_memory.memory.extraction_queue import ExtractionQueue
from agent_memory.memory.goals import GoalStore, InMemoryGoalStore
from agent_memory.memory.models import (
    AssembledContext,
    ContextOptions,
    EpisodeContext,
    EpisodeKind,
    EpisodeMetadata,
    EpisodicMemory,
    EpisodicQuery,
    EpisodicRelation,
    EpisodicUpdate,
    ExtractionStats,
    ExtractionSummary,
    Interaction,
    MemorySearchQuery,
    MemorySearchResult,
    MemoryStats,
    RelatedMemories,
    RelationKind,
    SemanticMemory,
    WorkingMemoryContext,
)
from agent_memory.memory.semantic import SemanticStore
from agent_memory.memory.working import PROFILE_CATEGORIES, WorkingMemoryManager, format_turn

logger = structlog.get_logger(__name__)

MINABLE_KINDS = (EpisodeKind.TURN, EpisodeKind.NOTE)


class MemoryService:
    """
    Agent conversational memory.

    Construct with explicit stores (tests, embedded use) or through
    `from_settings()`, which wires the Neo4j and Pinecone backed stores via a
    DependencyContainer. Call `init()` before use and `close()` at shutdown.

    Args:
        episodic: Episodic store
        semantic: Semantic store
        embedder: Embedding provider used for query vectors
        settings: Application settings. Defaults to get_settings().
        completion: Completion model for extraction, topic and goal work.
            Without one, semantic extraction is unavailable.
        cache: Working memory cache. Defaults to the container's cache or
            an in-process cache.
        goals: Session goal store. Defaults to an in-process store.
        container: Container whose lifecycle this service owns
        run_extraction_queue: Start the background extraction queue in `init()`
    """

    def __init__(
        self,
        episodic: EpisodicStore,
        semantic: SemanticStore,
        embedder: EmbeddingProvider,
        settings: Optional[Settings] = None,
        completion: Optional[TextCompletionProvider] = None,
        cache: Optional[WorkingMemoryCache] = None,
        goals: Optional[GoalStore] = None,
        container: Optional[DependencyContainer] = None,
        run_extraction_queue: bool = True,
    ) -> None:
        self._settings = settings or get_settings()
        self._episodic = episodic
        self._semantic = semantic
        self._embedder = embedder
        self._completion = completion
        self._cache = cache
        self._goals = goals or InMemoryGoalStore()
        self._container = container
        self._run_extraction_queue = run_extraction_queue

        self._retry = RetryPolicy.from_settings(self._settings.resilience)
        self._session_locks = KeyedLock()
        self._user_locks = KeyedLock()

        self._assembler: Optional[MemoryContextAssembler] = None
        self._working: Optional[WorkingMemoryManager] = None
        self._pipeline: Optional[SemanticExtractionPipeline] = None
        self._queue: Optional[ExtractionQueue] = None
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MemoryService":
        """Build a service backed by Neo4j, Pinecone and the configured providers."""
        container = DependencyContainer(settings)
        return cls(
            episodic=container.episodic_store(),
            semantic=container.semantic_store(),
            embedder=container.embeddings,
            goals=container.goal_store(),
            settings=container.settings,
            completion=container.completion,
            container=container,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init(self) -> None:
        """Connect backends and start background extraction."""
        if self._initialized:
            logger.warning("memory_service_already_initialized")
            return

        if self._container is not None:
            await self._container.initialize()
            if self._cache is None:
                self._cache = self._container.cache
        if self._cache is None:
            self._cache = InMemoryWorkingMemoryCache(self._settings.working_memory.stale_retention_seconds)

        settings = self._settings
        self._assembler = MemoryContextAssembler(
            self._episodic,
            self._semantic,
            self._embedder,
            settings.memory,
            settings.working_memory,
            retry=self._retry,
        )
        self._working = WorkingMemoryManager(
            self._episodic,
            self._semantic,
            self._cache,
            settings.working_memory,
            settings.memory,
            completion=self._completion,
            goals=self._goals,
        )

        if self._completion is not None:
            self._pipeline = SemanticExtractionPipeline(
                self._episodic,
                self._semantic,
                self._embedder,
                self._completion,
                settings.semantic_extraction,
                retry=self._retry,
                locks=self._user_locks,
            )
            if self._run_extraction_queue and settings.semantic_extraction.enabled:
                self._queue = ExtractionQueue(self._pipeline, settings.extraction_queue)
                await self._queue.start()
        else:
            logger.warning("semantic_extraction_unavailable", reason="no completion provider")

        self._initialized = True
        logger.info(
            "memory_service_initialized",
            extraction=self._pipeline is not None,
            extraction_queue=self._queue is not None,
        )

    async def close(self) -> None:
        """Stop background work and release backends."""
        if self._queue is not None:
            await self._queue.stop()
            self._queue = None

        if self._container is not None:
            await self._container.shutdown()
        elif self._cache is not None:
            await self._cache.close()

        self._initialized = False
        logger.info("memory_service_closed")

    async def __aenter__(self) -> "MemoryService":
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def _require_init(self) -> None:
        if not self._initialized:
            raise RuntimeError("MemoryService not initialized. Call init() first.")

    @property
    def episodic(self) -> EpisodicStore:
        return self._episodic

    @property
    def semantic(self) -> SemanticStore:
        return self._semantic

    @property
    def working(self) -> WorkingMemoryManager:
        self._require_init()
        return self._working

    @property
    def extraction_queue(self) -> Optional[ExtractionQueue]:
        return self._queue

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def store_episodic_memory(self, memory: EpisodicMemory) -> EpisodicMemory:
        """Append an episode to its session chain."""
        self._require_init()
        async with self._session_locks.hold((memory.user_id, memory.session_id)):
            stored = await self._episodic.store(memory)

        self._mark_dirty(stored)
        await self._working.invalidate(stored.user_id, stored.session_id)
        logger.info(
            "episodic_memory_stored",
            memory_id=stored.id,
            user_id=stored.user_id,
            session_id=stored.session_id,
        )
        return stored

    async def store_semantic_memory(self, memory: SemanticMemory) -> SemanticMemory:
        self._require_init()
        stored = await self._semantic.store(memory)
        if stored.metadata.category in PROFILE_CATEGORIES:
            await self._working.invalidate_user(stored.user_id)
        logger.info(
            "semantic_memory_stored",
            memory_id=stored.id,
            user_id=stored.user_id,
            concept=stored.concept,
            category=stored.metadata.category,
        )
        return stored

    async def record_turn(
        self,
        user_id: str,
        session_id: str,
        interaction: Interaction,
        importance: float = 0.5,
        tags: Optional[list[str]] = None,
    ) -> EpisodicMemory:
        """
        Persist a completed conversational turn and update working memory.

        The turn is stored with the conversation phase it leads to, computed
        under the session lock from the turn before it.

        The episode write fails loudly. A working memory update that fails
        because a backend is unavailable only drops the cached context, since
        the next read recomputes it from the stored turn.
        """
        self._require_init()
        content = format_turn(interaction.user_input, interaction.assistant_response)
        if not content:
            raise MemoryValidationError("A turn needs user input or an assistant response", {"session_id": session_id})

        memory = EpisodicMemory(
            id=interaction.id,
            user_id=user_id,
            session_id=session_id,
            timestamp=interaction.timestamp,
            content=content,
            context=EpisodeContext(
                kind=EpisodeKind.TURN,
                intent=interaction.intent,
                confidence=interaction.confidence,
                tools_used=list(interaction.tools_used),
                tools_pending=interaction.tools_pending,
                response_time_ms=interaction.response_time_ms,
                error=interaction.error,
            ),
            metadata=EpisodeMetadata(
                source="conversation",
                importance=importance,
                tags=list(tags) if tags else extract_keywords(interaction.user_input, limit=5),
            ),
        )
        async with self._session_locks.hold((user_id, session_id)):
            memory.context.phase, memory.context.phase_since = await self._working.phase_after(
                user_id, session_id, interaction
            )
            stored = await self._episodic.store(memory)
        self._mark_dirty(stored)

        try:
            await self._working.record_interaction(user_id, session_id, interaction, importance)
        except RetryableError as e:
            logger.warning("working_memory_update_failed", user_id=user_id, session_id=session_id, error=str(e))
            await self._working.invalidate(user_id, session_id)

        return stored

    async def create_memory_relationship(
        self,
        source_id: str,
        target_id: str,
        kind: RelationKind = RelationKind.RELATED,
        memory_type: Literal["episodic", "semantic"] = "semantic",
    ) -> bool:
        """
        Relate two memories of the same user.

        Semantic memories take any typed relation; episodic memories only
        support the symmetric `related` link.
        """
        self._require_init()
        if memory_type == "semantic":
            return await self._semantic.link_related(source_id, target_id, kind)

        if kind != RelationKind.RELATED:
            raise MemoryValidationError(
                "Episodic memories only support the related relationship",
                {"kind": kind.value},
            )
        source, target = await asyncio.gather(self._episodic.get(source_id), self._episodic.get(target_id))
        if source is None:
            raise MemoryNotFoundError("episodic", source_id)
        if target is None:
            raise MemoryNotFoundError("episodic", target_id)
        if source_id == target_id:
            raise MemoryValidationError("A memory cannot be related to itself", {"memory_id": source_id})
        if source.user_id != target.user_id:
            raise MemoryValidationError(
                "Memories of different users cannot be related",
                {"source_id": source_id, "target_id": target_id},
            )
        if target_id in source.relationships.related:
            return True

        related = [*source.relationships.related, target_id]
        await self._episodic.update(source_id, EpisodicUpdate(related=related))
        return True

    async def clear_user_memories(self, user_id: str) -> bool:
        """Remove every episodic and semantic memory and every goal of a user."""
        self._require_init()
        async with self._user_locks.hold(user_id):
            episodic_cleared, semantic_cleared, goals_cleared = await asyncio.gather(
                self._episodic.clear_user(user_id),
                self._semantic.clear_user(user_id),
                self._goals.clear_user(user_id),
            )
        await self._working.invalidate_user(user_id)
        logger.info("user_memories_cleared", user_id=user_id)
        return episodic_cleared and semantic_cleared and goals_cleared

    async def clear_session_memories(self, user_id: str, session_id: str) -> bool:
        self._require_init()
        async with self._session_locks.hold((user_id, session_id)):
            cleared = await self._episodic.clear_session(user_id, session_id)
            cleared = await self._goals.clear_session(user_id, session_id) and cleared
        await self._working.invalidate(user_id, session_id)
        logger.info("session_memories_cleared", user_id=user_id, session_id=session_id)
        return cleared

    def _mark_dirty(self, memory: EpisodicMemory) -> None:
        if self._queue is not None and memory.context.kind in MINABLE_KINDS:
            self._queue.mark_dirty(memory.user_id, memory.session_id)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get_memory_context(
        self,
        user_id: str,
        session_id: str,
        query: str = "",
        options: Optional[ContextOptions] = None,
    ) -> AssembledContext:
        """Ranked, token-bounded memory context for a session."""
        self._require_init()
        return await self._assembler.assemble(user_id, session_id, query, options)

    async def enhance_context(
        self,
        user_id: str,
        session_id: str,
        query: str,
        options: Optional[ContextOptions] = None,
    ) -> AssembledContext:
        """
        Memory context for a query about to be answered.

        Same as get_memory_context, and additionally records an access on
        every semantic memory that made it into the rendered context.
        """
        context = await self.get_memory_context(user_id, session_id, query, options)
        for hit in context.semantic:
            try:
                await self._semantic.record_access(hit.memory.id)
            except (MemoryConnectionError, MemoryNotFoundError) as e:
                logger.warning("semantic_access_not_recorded", memory_id=hit.memory.id, error=str(e))
        return context

    async def search_memories(self, query: MemorySearchQuery) -> MemorySearchResult:
        """
        Search episodic and/or semantic memory.

        Episodic results are filtered by the query's filters and ordered by
        keyword overlap with the query text, newest first on ties. Semantic
        results come from vector similarity when there is query text and are
        listed by confidence otherwise.
        """
        self._require_init()
        result = MemorySearchResult()
        filters = query.filters

        async def search_episodic() -> None:
            hits = await self._episodic.search(
                EpisodicQuery(
                    user_id=query.user_id,
                    session_id=query.session_id,
                    time_range=filters.time_range,
                    tags=filters.tags,
                    importance_range=filters.importance_range,
                    limit=query.limit,
                )
            )
            keywords = extract_keywords(query.query)
            scored = [(memory, keyword_overlap(keywords, memory)) for memory in hits]
            scored.sort(key=lambda pair: pair[1], reverse=True)
            result.episodic = [m for m, _ in scored]
            result.episodic_scores = [s for _, s in scored]

        async def search_semantic() -> None:
            if query.query.strip():
                vector = await self._retry.run("search.embed", lambda: self._embedder.embed_text(query.query))
                threshold = (
                    query.threshold if query.threshold is not None else self._settings.memory.similarity_threshold
                )
                hits = await self._semantic.search_by_similarity(
                    query.user_id, vector, threshold, query.limit, filters.categories
                )
                result.semantic = [h.memory for h in hits]
                result.semantic_scores = [h.score for h in hits]
            else:
                concepts = await self._semantic.list_concepts(query.user_id, filters.categories)
                concepts.sort(key=lambda m: m.metadata.confidence, reverse=True)
                result.semantic = concepts[: query.limit]
                result.semantic_scores = [m.metadata.confidence for m in result.semantic]

        searches = []
        if query.type in ("episodic", "both"):
            searches.append(search_episodic())
        if query.type in ("semantic", "both"):
            searches.append(search_semantic())
        await asyncio.gather(*searches)

        logger.debug(
            "memories_searched",
            user_id=query.user_id,
            type=query.type,
            episodic=len(result.episodic),
            semantic=len(result.semantic),
        )
        return result

    async def get_related_memories(
        self,
        memory_id: str,
        memory_type: Literal["episodic", "semantic"] = "semantic",
        kind: Optional[RelationKind] = None,
        relation: Optional[EpisodicRelation] = None,
    ) -> RelatedMemories:
        self._require_init()
        if memory_type == "episodic":
            return RelatedMemories(episodic=await self._episodic.get_related(memory_id, relation))
        return RelatedMemories(semantic=await self._semantic.get_related(memory_id, kind))

    async def get_memory_stats(self, user_id: str) -> MemoryStats:
        self._require_init()
        episodic, semantic = await asyncio.gather(
            self._episodic.stats(user_id),
            self._semantic.stats(user_id),
        )
        return MemoryStats(episodic=episodic, semantic=semantic)

    async def get_working_memory(self, user_id: str, session_id: str) -> WorkingMemoryContext:
        self._require_init()
        return await self._working.get_working_memory(user_id, session_id)

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    def _require_pipeline(self) -> SemanticExtractionPipeline:
        self._require_init()
        if self._pipeline is None:
            raise ConfigurationError(
                "Semantic extraction needs a completion provider",
                "anthropic_api_key",
            )
        return self._pipeline

    async def extract_semantic(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        episodes: Optional[list[EpisodicMemory]] = None,
    ) -> ExtractionStats:
        """Run semantic extraction now, bypassing the background queue."""
        stats = await self._require_pipeline().run(user_id, session_id=session_id, episodes=episodes)
        if stats.created or stats.merged:
            await self._working.invalidate_user(user_id)
        return stats

    async def get_extraction_stats(self, user_id: str) -> ExtractionSummary:
        return await self._require_pipeline().get_extraction_stats(user_id)
