"""Unit tests for memory context assembly."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_memory.core.exceptions import MemoryConnectionError
from agent_memory.core.retry import RetryPolicy
from agent_memory.memory.context import (
    MIN_SLICE_TOKENS,
    MemoryContextAssembler,
    extract_keywords,
    recency_score,
    render_context,
    select_items,
)
from agent_memory.memory.models import (
    ContextItem,
    ContextOptions,
    EpisodeMetadata,
    EpisodicMemory,
    SemanticMemory,
    SemanticMetadata,
    estimate_tokens,
)

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def item(item_id: str, score: float, text: str = "memory text", kind: str = "episodic") -> ContextItem:
    return ContextItem(
        kind=kind,
        id=item_id,
        text=text,
        timestamp=NOW,
        score=score,
        tokens=estimate_tokens(text),
    )


class TestKeywords:
    """Test keyword extraction."""

    def test_drops_stopwords_and_short_words(self):
        assert extract_keywords("What do I like about Python and ML?") == ["python"]

    def test_first_seen_order_without_duplicates(self):
        assert extract_keywords("pandas numpy pandas scipy") == ["pandas", "numpy", "scipy"]

    def test_limit(self):
        assert extract_keywords("alpha beta gamma delta", limit=2) == ["alpha", "beta"]


class TestScoring:
    """Test recency decay."""

    def test_recency_is_one_now(self):
        assert recency_score(NOW, NOW, 24.0) == pytest.approx(1.0)

    def test_recency_halves_after_half_life(self):
        assert recency_score(NOW - timedelta(hours=24), NOW, 24.0) == pytest.approx(0.5)

    def test_future_timestamp_clamped(self):
        assert recency_score(NOW + timedelta(hours=1), NOW, 24.0) == pytest.approx(1.0)


class TestSelectItems:
    """Test ranking and token budgeting."""

    def test_max_items_keeps_highest_scores(self):
        items = [item("a", 0.9), item("b", 0.7), item("c", 0.3)]

        rendered, truncated = select_items(items, max_items=2, max_tokens=4000)

        assert [i.id for i in rendered] == ["a", "b"]
        assert truncated == 1

    def test_overflowing_item_is_sliced(self):
        long_text = "x" * 400  # 100 tokens
        items = [item("a", 0.9, text="y" * 40), item("b", 0.5, text=long_text)]

        rendered, truncated = select_items(items, max_items=10, max_tokens=50)

        assert [i.id for i in rendered] == ["a", "b"]
        assert rendered[1].truncated is True
        assert rendered[1].text.endswith("...")
        assert sum(i.tokens for i in rendered) <= 50
        assert truncated == 1

    def test_too_small_remainder_drops_item(self):
        items = [item("a", 0.9, text="y" * 160), item("b", 0.5, text="x" * 400)]

        rendered, truncated = select_items(items, max_items=10, max_tokens=40 + MIN_SLICE_TOKENS - 1)

        assert [i.id for i in rendered] == ["a"]
        assert truncated == 1

    def test_everything_after_overflow_is_dropped(self):
        items = [item("a", 0.9, text="y" * 400), item("b", 0.5), item("c", 0.4)]

        rendered, truncated = select_items(items, max_items=10, max_tokens=5)

        assert rendered == []
        assert truncated == 3

    def test_render_sections(self):
        text = render_context(
            [item("a", 0.9, text="[t] I like Python"), item("b", 0.8, text="Python: A language", kind="semantic")],
            "what do I like?",
        )

        assert text == (
            "Previous conversation context:\n[t] I like Python\n\n"
            "Relevant knowledge:\nPython: A language\n\n"
            "Current query: what do I like?"
        )


class TestMemoryContextAssembler:
    """Test end-to-end assembly over the in-memory stores."""

    @pytest.fixture
    def assembler(self, episodic_store, semantic_store, embedder, settings):
        return MemoryContextAssembler(
            episodic_store,
            semantic_store,
            embedder,
            settings.memory,
            settings.working_memory,
            retry=RetryPolicy.from_settings(settings.resilience),
        )

    @pytest.mark.asyncio
    async def test_assembles_episodes_and_concepts(self, assembler, episodic_store, semantic_store):
        await episodic_store.store(
            EpisodicMemory(user_id="u1", session_id="s1", content="I like Python", metadata=EpisodeMetadata(tags=["python"]))
        )
        concept = await semantic_store.store(
            SemanticMemory(
                user_id="u1",
                concept="Python",
                description="A programming language",
                metadata=SemanticMetadata(category="Programming", confidence=0.8),
            )
        )

        context = await assembler.assemble("u1", "s1", "python", ContextOptions(similarity_threshold=0.0))

        assert context.error is None
        assert [m.content for m in context.episodic] == ["I like Python"]
        assert [h.memory.id for h in context.semantic] == [concept.id]
        assert "Previous conversation context:" in context.enhanced_context
        assert "Python: A programming language" in context.enhanced_context
        assert context.enhanced_context.endswith("Current query: python")
        assert context.context_window.current_tokens <= context.context_window.max_tokens

    @pytest.mark.asyncio
    async def test_other_sessions_reach_context_through_tags(self, assembler, episodic_store):
        await episodic_store.store(
            EpisodicMemory(user_id="u1", session_id="old", content="We discussed pandas", metadata=EpisodeMetadata(tags=["pandas"]))
        )
        await episodic_store.store(
            EpisodicMemory(user_id="u1", session_id="old", content="We discussed cooking", metadata=EpisodeMetadata(tags=["cooking"]))
        )

        context = await assembler.assemble("u1", "s1", "pandas dataframes")

        assert [m.content for m in context.episodic] == ["We discussed pandas"]

    @pytest.mark.asyncio
    async def test_empty_query_skips_semantic_search(self, assembler, embedder):
        context = await assembler.assemble("u1", "s1", "")

        assert embedder.calls == []
        assert context.enhanced_context == ""
        assert context.truncated_count == 0

    @pytest.mark.asyncio
    async def test_semantic_outage_degrades_to_episodic_only(self, episodic_store, embedder, settings):
        semantic = MagicMock()
        semantic.search_by_similarity = AsyncMock(side_effect=MemoryConnectionError("pinecone unreachable"))
        assembler = MemoryContextAssembler(episodic_store, semantic, embedder, settings.memory, settings.working_memory)
        await episodic_store.store(EpisodicMemory(user_id="u1", session_id="s1", content="I like Python"))

        context = await assembler.assemble("u1", "s1", "python")

        assert context.semantic == []
        assert len(context.episodic) == 1
        assert context.error == "semantic memory unavailable: pinecone unreachable"

    @pytest.mark.asyncio
    async def test_episodic_outage_propagates(self, semantic_store, embedder, settings):
        episodic = MagicMock()
        episodic.search = AsyncMock(side_effect=MemoryConnectionError("neo4j unreachable"))
        assembler = MemoryContextAssembler(episodic, semantic_store, embedder, settings.memory, settings.working_memory)

        with pytest.raises(MemoryConnectionError):
            await assembler.assemble("u1", "s1", "python")

    @pytest.mark.asyncio
    async def test_max_items_option_counts_truncation(self, assembler, episodic_store):
        for i in range(3):
            await episodic_store.store(
                EpisodicMemory(
                    user_id="u1",
                    session_id="s1",
                    content=f"turn number {i}",
                    timestamp=NOW + timedelta(seconds=i),
                )
            )

        context = await assembler.assemble("u1", "s1", "", ContextOptions(max_items=2))

        assert len(context.items) == 2
        assert context.truncated_count == 1

    @pytest.mark.asyncio
    async def test_transient_embedding_failure_is_retried(self, assembler, semantic_store, embedder):
        concept = await semantic_store.store(
            SemanticMemory(user_id="u1", concept="Python", description="A programming language")
        )
        embedder.failures = 1

        context = await assembler.assemble("u1", "s1", "python", ContextOptions(similarity_threshold=0.0))

        assert context.error is None
        assert [h.memory.id for h in context.semantic] == [concept.id]
        assert embedder.calls[-2:] == ["python", "python"]

    @pytest.mark.asyncio
    async def test_embedding_outage_after_retries_degrades(self, assembler, embedder, settings):
        embedder.failures = settings.resilience.max_attempts

        context = await assembler.assemble("u1", "s1", "python")

        assert context.semantic == []
        assert context.error.startswith("semantic memory unavailable")

    @pytest.mark.asyncio
    async def test_budget_too_small_for_any_item_reports_error(self, assembler, episodic_store):
        await episodic_store.store(
            EpisodicMemory(user_id="u1", session_id="s1", content="a fairly long remark about the weather " * 10)
        )

        context = await assembler.assemble("u1", "s1", "", ContextOptions(max_tokens=1))

        assert context.items == []
        assert context.truncated_count == 1
        assert context.error == "No memory item fits in a 1 token window | Details: {'truncated_count': 1, 'max_tokens': 1}"

    @pytest.mark.asyncio
    async def test_empty_session_has_no_error(self, assembler):
        context = await assembler.assemble("u1", "s1", "", ContextOptions(max_tokens=1))

        assert context.items == []
        assert context.error is None
