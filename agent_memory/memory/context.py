"""
Memory context assembly.

Builds the memory block handed to the response model for one query:
recent session episodes, tag-matched episodes and semantic hits are
fetched concurrently, scored with a blended recency/similarity/importance
score, cut to the configured item count and rendered under a token budget.

Usage:
    assembler = MemoryContextAssembler(episodic, semantic, embedder, settings.memory, settings.working_memory)
    context = await assembler.assemble("user-1", "session-9", "what did we say about pandas?")
    prompt = context.enhanced_context
"""

import asyncio
import math
import re
from datetime import datetime
from typing import Optional

import structlog

from agent_memory.config.settings import MemorySettings, WorkingMemorySettings
from agent_memory.core.exceptions import (
    CircuitBreakerOpenError,
    CompressionError,
    MemoryConnectionError,
    ProviderError,
)
from agent_memory.core.retry import RetryPolicy
from agent_memory.knowledge.providers import EmbeddingProvider
from agent_memory.memory.episodic import EpisodicStore
from agent_memory.memory.models import (
    AssembledContext,
    ContextItem,
    ContextOptions,
    ContextWindow,
    EpisodeKind,
    EpisodicMemory,
    EpisodicQuery,
    ScoredSemanticMemory,
    estimate_tokens,
    to_iso,
    utcnow,
)
from agent_memory.memory.semantic import SemanticStore
from agent_memory.monitoring.metrics import CONTEXT_ITEMS_TRUNCATED

logger = structlog.get_logger(__name__)

# Smallest slice of an item worth rendering when the budget runs out.
MIN_SLICE_TOKENS = 16
ELLIPSIS = "..."

STOPWORDS = frozenset(
    """
    a about above after again all also am an and any are as at be because been
    before being below between both but by can could did do does doing down
    during each few for from further get got had has have having he her here
    hers him his how i if in into is it its itself just let like me more most
    my no nor not now of off on once only or other our ours out over own please
    same she should so some such than that the their theirs them then there
    these they this those through to too under until up us very want was we
    were what when where which while who whom why will with would you your
    yours
    """.split()
)

_WORD = re.compile(r"[a-z0-9][a-z0-9_+#.-]*")


def extract_keywords(text: str, limit: Optional[int] = None) -> list[str]:
    """Lowercase content words of `text` in first-seen order."""
    seen: dict[str, None] = {}
    for word in _WORD.findall(text.lower()):
        word = word.strip(".-")
        if len(word) < 3 or word in STOPWORDS:
            continue
        seen[word] = None
    keywords = list(seen)
    return keywords[:limit] if limit is not None else keywords


def recency_score(timestamp: datetime, now: datetime, half_life_hours: float) -> float:
    """Exponential decay: 1.0 now, 0.5 after one half-life."""
    age_hours = max((now - timestamp).total_seconds(), 0.0) / 3600
    return math.exp(-math.log(2) * age_hours / half_life_hours)


def blended_score(settings: MemorySettings, recency: float, similarity: float, importance: float) -> float:
    return (
        settings.recency_weight * recency
        + settings.similarity_weight * similarity
        + settings.importance_weight * importance
    )


def keyword_overlap(query_keywords: list[str], memory: EpisodicMemory) -> float:
    if not query_keywords:
        return 0.0
    vocabulary = set(extract_keywords(memory.content)) | {t.lower() for t in memory.metadata.tags}
    return len(set(query_keywords) & vocabulary) / len(set(query_keywords))


def select_items(
    items: list[ContextItem],
    max_items: int,
    max_tokens: int,
) -> tuple[list[ContextItem], int]:
    """
    Keep the best `max_items` and fit them into `max_tokens`.

    Items are taken in descending score order. The first item that does not
    fit is cut down when at least MIN_SLICE_TOKENS of it fit; everything
    after that is dropped.

    Returns:
        The rendered items (possibly one truncated) and the number of
        candidates not rendered in full.
    """
    ranked = sorted(items, key=lambda i: i.score, reverse=True)
    kept, truncated = ranked[:max_items], len(ranked) - min(len(ranked), max_items)

    rendered: list[ContextItem] = []
    used = 0
    for index, item in enumerate(kept):
        if used + item.tokens <= max_tokens:
            rendered.append(item)
            used += item.tokens
            continue

        remaining = max_tokens - used
        if remaining >= MIN_SLICE_TOKENS:
            chars = remaining * 4 - len(ELLIPSIS)
            text = item.text[:chars].rstrip() + ELLIPSIS
            rendered.append(
                item.model_copy(update={"text": text, "tokens": estimate_tokens(text), "truncated": True})
            )
        truncated += len(kept) - index
        break

    return rendered, truncated


def render_context(items: list[ContextItem], query: str) -> str:
    episodic = [i.text for i in items if i.kind == "episodic"]
    semantic = [i.text for i in items if i.kind == "semantic"]

    sections = []
    if episodic:
        sections.append("Previous conversation context:\n" + "\n".join(episodic))
    if semantic:
        sections.append("Relevant knowledge:\n" + "\n".join(semantic))
    if query:
        sections.append(f"Current query: {query}")
    return "\n\n".join(sections)


class MemoryContextAssembler:
    """Retrieves, ranks and renders memories relevant to a query."""

    def __init__(
        self,
        episodic: EpisodicStore,
        semantic: SemanticStore,
        embedder: EmbeddingProvider,
        settings: MemorySettings,
        working_settings: WorkingMemorySettings,
        retry: Optional[RetryPolicy] = None,
    ) -> None:
        self._episodic = episodic
        self._semantic = semantic
        self._embedder = embedder
        self._settings = settings
        self._working_settings = working_settings
        self._retry = retry or RetryPolicy()

    async def assemble(
        self,
        user_id: str,
        session_id: str,
        query: str,
        options: Optional[ContextOptions] = None,
    ) -> AssembledContext:
        """
        Assemble the memory context for a query.

        Episodic failures propagate. When the embedding provider or the
        vector store is unavailable the semantic side is empty and `error`
        describes why. When candidates exist but not one fits the token
        budget, `error` carries the CompressionError message.
        """
        options = options or ContextOptions()
        max_episodic = options.max_episodic if options.max_episodic is not None else self._settings.max_episodic
        max_semantic = options.max_semantic if options.max_semantic is not None else self._settings.max_semantic
        threshold = (
            options.similarity_threshold
            if options.similarity_threshold is not None
            else self._settings.similarity_threshold
        )
        max_items = options.max_items if options.max_items is not None else self._settings.max_context_memories
        max_tokens = options.max_tokens or self._working_settings.max_tokens

        keywords = extract_keywords(query, limit=10)

        recent, tagged, (semantic_hits, error) = await asyncio.gather(
            self._recent_episodes(user_id, session_id, max_episodic),
            self._tagged_episodes(user_id, keywords, max_episodic),
            self._semantic_hits(user_id, query, threshold, max_semantic),
        )

        episodes: dict[str, EpisodicMemory] = {}
        for memory in [*recent, *tagged]:
            episodes.setdefault(memory.id, memory)

        now = utcnow()
        items = [self._episodic_item(m, keywords, now) for m in episodes.values()]
        items.extend(self._semantic_item(hit, now) for hit in semantic_hits)

        rendered, truncated_count = select_items(items, max_items, max_tokens)
        if truncated_count:
            CONTEXT_ITEMS_TRUNCATED.inc(truncated_count)
        if items and not rendered:
            exhausted = str(CompressionError(truncated_count=truncated_count, max_tokens=max_tokens))
            logger.warning("memory_context_budget_exhausted", candidates=len(items), max_tokens=max_tokens)
            error = f"{error}; {exhausted}" if error else exhausted

        rendered_ids = {i.id for i in rendered}
        current_tokens = sum(i.tokens for i in rendered)
        timestamps = [i.timestamp for i in rendered]
        window = ContextWindow(
            start_time=min(timestamps) if timestamps else None,
            end_time=max(timestamps) if timestamps else None,
            relevance_score=sum(i.score for i in rendered) / len(rendered) if rendered else 0.0,
            max_tokens=max_tokens,
            current_tokens=current_tokens,
            compression_ratio=truncated_count / len(items) if items else 0.0,
        )

        logger.debug(
            "memory_context_assembled",
            user_id=user_id,
            session_id=session_id,
            candidates=len(items),
            rendered=len(rendered),
            truncated=truncated_count,
            tokens=current_tokens,
            semantic_error=error,
        )

        return AssembledContext(
            enhanced_context=render_context(rendered, query),
            episodic=[m for m in episodes.values() if m.id in rendered_ids],
            semantic=[h for h in semantic_hits if h.memory.id in rendered_ids],
            items=rendered,
            context_window=window,
            truncated_count=truncated_count,
            error=error,
        )

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    async def _recent_episodes(self, user_id: str, session_id: str, limit: int) -> list[EpisodicMemory]:
        if limit == 0:
            return []
        return await self._episodic.search(
            EpisodicQuery(
                user_id=user_id,
                session_id=session_id,
                kinds=[EpisodeKind.TURN, EpisodeKind.NOTE],
                limit=limit,
            )
        )

    async def _tagged_episodes(self, user_id: str, keywords: list[str], limit: int) -> list[EpisodicMemory]:
        if not keywords or limit == 0:
            return []
        return await self._episodic.search(
            EpisodicQuery(
                user_id=user_id,
                tags=keywords,
                kinds=[EpisodeKind.TURN, EpisodeKind.NOTE],
                limit=limit,
            )
        )

    async def _semantic_hits(
        self,
        user_id: str,
        query: str,
        threshold: float,
        limit: int,
    ) -> tuple[list[ScoredSemanticMemory], Optional[str]]:
        if not query.strip() or limit == 0:
            return [], None
        try:
            vector = await self._retry.run("context.embed", lambda: self._embedder.embed_text(query))
            hits = await self._semantic.search_by_similarity(user_id, vector, threshold, limit)
        except (MemoryConnectionError, ProviderError, CircuitBreakerOpenError) as e:
            logger.warning("semantic_retrieval_degraded", user_id=user_id, error=str(e))
            return [], f"semantic memory unavailable: {e.message}"
        return hits, None

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def _blend(self, recency: float, similarity: float, importance: float) -> float:
        return blended_score(self._settings, recency, similarity, importance)

    def _episodic_item(self, memory: EpisodicMemory, keywords: list[str], now: datetime) -> ContextItem:
        text = f"[{to_iso(memory.timestamp)}] {memory.content}"
        recency = recency_score(memory.timestamp, now, self._settings.recency_half_life_hours)
        similarity = keyword_overlap(keywords, memory)
        importance = memory.metadata.importance
        return ContextItem(
            kind="episodic",
            id=memory.id,
            text=text,
            timestamp=memory.timestamp,
            recency=recency,
            similarity=similarity,
            importance=importance,
            score=self._blend(recency, similarity, importance),
            tokens=estimate_tokens(text),
        )

    def _semantic_item(self, hit: ScoredSemanticMemory, now: datetime) -> ContextItem:
        memory = hit.memory
        text = f"{memory.concept}: {memory.description}" if memory.description else memory.concept
        recency = recency_score(memory.metadata.last_accessed, now, self._settings.recency_half_life_hours)
        similarity = (hit.score + 1) / 2
        importance = memory.metadata.confidence
        return ContextItem(
            kind="semantic",
            id=memory.id,
            text=text,
            timestamp=memory.metadata.last_accessed,
            recency=recency,
            similarity=similarity,
            importance=importance,
            score=self._blend(recency, similarity, importance),
            tokens=estimate_tokens(text),
        )
