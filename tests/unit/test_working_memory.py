"""Unit tests for the working memory manager."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from agent_memory.core.exceptions import (
    MemoryConnectionError,
    MemoryNotFoundError,
    MemoryValidationError,
)
from agent_memory.memory.cache import InMemoryWorkingMemoryCache
from agent_memory.memory.models import (
    ContextItem,
    ContextWindow,
    ConversationPhase,
    EpisodeContext,
    EpisodicMemory,
    GoalStatus,
    Interaction,
    SemanticMemory,
    SemanticMetadata,
)
from agent_memory.memory.working import (
    DEFAULT_TOPIC,
    WorkingMemoryManager,
    build_user_profile,
    extract_goal_phrases,
    format_turn,
    keyword_topic,
    next_phase,
    parse_turn,
    replay_phase,
)
from tests.conftest import FakeCompletion

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def window_item(item_id: str, score: float, tokens: int) -> ContextItem:
    return ContextItem(kind="episodic", id=item_id, text="t" * tokens * 4, timestamp=NOW, score=score, tokens=tokens)


class TestConversationPhase:
    """Test the phase state machine."""

    def test_greeting_to_active(self):
        assert next_phase(ConversationPhase.GREETING, Interaction(intent="question")) == ConversationPhase.ACTIVE

    def test_planning_intent(self):
        assert next_phase(ConversationPhase.ACTIVE, Interaction(intent="plan")) == ConversationPhase.PLANNING

    def test_several_tools_means_planning(self):
        interaction = Interaction(tools_used=["search", "calendar"])

        assert next_phase(ConversationPhase.ACTIVE, interaction) == ConversationPhase.PLANNING

    def test_pending_tools_means_waiting(self):
        assert next_phase(ConversationPhase.PLANNING, Interaction(tools_pending=1)) == ConversationPhase.WAITING

    def test_error_from_any_phase(self):
        for phase in ConversationPhase:
            assert next_phase(phase, Interaction(error="tool failed")) == ConversationPhase.ERROR_RECOVERY

    def test_error_recovery_only_returns_to_active(self):
        assert next_phase(ConversationPhase.ERROR_RECOVERY, Interaction(intent="plan")) == ConversationPhase.ACTIVE

    def test_waiting_cannot_jump_to_planning(self):
        assert next_phase(ConversationPhase.WAITING, Interaction(intent="plan")) == ConversationPhase.ACTIVE


class TestTurnText:
    """Test turn formatting helpers."""

    def test_format_and_parse(self):
        content = format_turn("What is pandas?", "A dataframe library.")

        assert content == "User: What is pandas?\nAssistant: A dataframe library."
        assert parse_turn(content) == ("What is pandas?", "A dataframe library.")

    def test_format_skips_empty_side(self):
        assert format_turn("hello", "") == "User: hello"


class TestReplayPhase:
    """Test folding stored turns into the session phase."""

    def turn(self, offset: int, **context) -> EpisodicMemory:
        return EpisodicMemory(
            user_id="u1",
            session_id="s1",
            timestamp=NOW + timedelta(minutes=offset),
            content="User: hi",
            context=EpisodeContext(**context),
        )

    def test_no_turns_is_greeting(self):
        assert replay_phase([]) == (ConversationPhase.GREETING, None)

    def test_turns_without_phase_are_folded(self):
        turns = [self.turn(0, intent="question"), self.turn(1, error="tool failed"), self.turn(2, intent="plan")]

        assert replay_phase(turns) == (ConversationPhase.ACTIVE, NOW + timedelta(minutes=2))

    def test_stored_phase_resets_fold(self):
        turns = [
            self.turn(0, intent="question"),
            self.turn(5, intent="plan", phase=ConversationPhase.WAITING, phase_since=NOW + timedelta(minutes=3)),
        ]

        assert replay_phase(turns) == (ConversationPhase.WAITING, NOW + timedelta(minutes=3))

    def test_fold_continues_after_stored_phase(self):
        turns = [
            self.turn(0, phase=ConversationPhase.PLANNING, phase_since=NOW),
            self.turn(1, intent="plan"),
            self.turn(2, tools_pending=1),
        ]

        assert replay_phase(turns) == (ConversationPhase.WAITING, NOW + timedelta(minutes=2))


class TestHeuristics:
    """Test goal phrase, topic and profile heuristics."""

    def test_help_me_phrase(self):
        assert extract_goal_phrases("Hi! Can you help me plan a trip to Japan?") == ["plan a trip to Japan"]

    def test_can_you_phrase(self):
        assert extract_goal_phrases("Can you summarize this article") == ["summarize this article"]

    def test_no_goal_in_plain_statement(self):
        assert extract_goal_phrases("The weather is nice today") == []

    def test_keyword_topic(self):
        texts = ["pandas dataframes are great", "I use pandas for dataframes daily"]

        assert keyword_topic(texts).split()[:2] == ["pandas", "dataframes"]

    def test_keyword_topic_default(self):
        assert keyword_topic(["ok", "hi"]) == DEFAULT_TOPIC

    def test_profile_from_concepts(self):
        concepts = [
            SemanticMemory(
                user_id="u1",
                concept="Concise",
                metadata=SemanticMetadata(category="CommunicationStyle", confidence=0.9),
            ),
            SemanticMemory(
                user_id="u1",
                concept="Python",
                description="Enjoys Python",
                metadata=SemanticMetadata(category="Interest", confidence=0.8),
            ),
        ]

        profile = build_user_profile(concepts)

        assert profile.communication_style == "Concise"
        assert profile.interests == ["Enjoys Python"]


class TestCompression:
    """Test context window compression."""

    @pytest.fixture
    def manager(self, episodic_store, semantic_store, settings):
        settings.working_memory.compression_ratio = 0.2
        return WorkingMemoryManager(
            episodic_store,
            semantic_store,
            InMemoryWorkingMemoryCache(),
            settings.working_memory,
            settings.memory,
        )

    def test_under_budget_unchanged(self, manager):
        items = [window_item("a", 0.5, 10), window_item("b", 0.4, 10)]

        result = manager.compress(ContextWindow(max_tokens=100), items)

        assert result.items == items
        assert result.truncated_count == 0
        assert result.window.current_tokens == 20

    def test_evicts_lowest_scores_to_target(self, manager):
        items = [window_item("a", 0.9, 40), window_item("b", 0.1, 40), window_item("c", 0.5, 40)]

        result = manager.compress(ContextWindow(max_tokens=100), items)

        assert [i.id for i in result.items] == ["a", "c"]
        assert result.window.current_tokens == 80
        assert result.window.current_tokens <= 100
        assert result.truncated_count == 1
        assert result.error is None

    def test_ties_evict_earlier_items_first(self, manager):
        items = [window_item("old", 0.5, 60), window_item("new", 0.5, 60)]

        result = manager.compress(ContextWindow(max_tokens=100), items)

        assert [i.id for i in result.items] == ["new"]

    def test_nothing_fits_reports_error(self, manager):
        items = [window_item("huge", 0.9, 500)]

        result = manager.compress(ContextWindow(max_tokens=100), items)

        assert result.items == []
        assert result.window.current_tokens == 0
        assert "No memory item fits" in result.error


class TestWorkingMemoryManager:
    """Test recomputation, caching and goals."""

    @pytest.fixture
    def cache(self):
        return InMemoryWorkingMemoryCache()

    @pytest.fixture
    def manager(self, episodic_store, semantic_store, cache, settings):
        return WorkingMemoryManager(
            episodic_store,
            semantic_store,
            cache,
            settings.working_memory,
            settings.memory,
        )

    @pytest.mark.asyncio
    async def test_fresh_session_defaults(self, manager):
        context = await manager.get_working_memory("u1", "s1")

        assert context.conversation_state.state == ConversationPhase.GREETING
        assert context.current_topic == DEFAULT_TOPIC
        assert context.active_goals == []
        assert context.session_metadata.total_interactions == 0

    @pytest.mark.asyncio
    async def test_second_lookup_is_cache_hit(self, manager):
        await manager.get_working_memory("u1", "s1")
        await manager.get_working_memory("u1", "s1")

        metrics = manager.get_performance_metrics()
        assert metrics.total_retrievals == 2
        assert metrics.cache_hits == 1
        assert metrics.cache_hit_rate == pytest.approx(0.5)
        assert metrics.active_sessions == 1

    @pytest.mark.asyncio
    async def test_stale_context_served_when_store_down(self, manager, episodic_store, settings):
        settings.working_memory.cache_ttl_seconds = 0
        await manager.get_working_memory("u1", "s1")
        episodic_store.search = AsyncMock(side_effect=MemoryConnectionError("neo4j unreachable"))

        context = await manager.get_working_memory("u1", "s1")

        assert context.stale is True
        assert manager.get_performance_metrics().stale_served == 1

    @pytest.mark.asyncio
    async def test_store_down_without_cache_raises(self, manager, episodic_store):
        episodic_store.search = AsyncMock(side_effect=MemoryConnectionError("neo4j unreachable"))

        with pytest.raises(MemoryConnectionError):
            await manager.get_working_memory("u1", "s1")

    @pytest.mark.asyncio
    async def test_record_interaction_updates_state(self, manager):
        interaction = Interaction(
            user_input="Can you help me plan a trip to Japan?",
            assistant_response="Sure, when would you like to travel?",
            intent="plan",
            response_time_ms=120.0,
        )

        context = await manager.record_interaction("u1", "s1", interaction)

        assert context.conversation_state.state == ConversationPhase.PLANNING
        assert context.session_metadata.total_interactions == 1
        assert context.session_metadata.average_response_time_ms == pytest.approx(120.0)
        assert context.conversation_history[-1].turn_number == 1
        assert context.current_topic != DEFAULT_TOPIC
        assert context.session_metadata.context_switches == 1
        assert [g.description for g in context.active_goals] == ["plan a trip to Japan"]

    @pytest.mark.asyncio
    async def test_repeated_goal_phrase_not_duplicated(self, manager):
        await manager.record_interaction("u1", "s1", Interaction(user_input="Help me plan a trip to Japan"))
        context = await manager.record_interaction("u1", "s1", Interaction(user_input="help me plan a trip to japan"))

        assert len(context.active_goals) == 1

    @pytest.mark.asyncio
    async def test_llm_goal_extraction(self, episodic_store, semantic_store, cache, settings):
        settings.working_memory.llm_goal_extraction = True
        completion = FakeCompletion(['{"goals": [{"description": "Book flights", "priority": 3}]}'])
        manager = WorkingMemoryManager(
            episodic_store, semantic_store, cache, settings.working_memory, settings.memory, completion=completion
        )

        goals = await manager.extract_goals("u1", "s1", ["I am going to Tokyo next month"])

        assert [(g.description, g.priority) for g in goals] == [("Book flights", 3)]

    @pytest.mark.asyncio
    async def test_llm_goal_failure_falls_back_to_phrases(self, episodic_store, semantic_store, cache, settings):
        settings.working_memory.llm_goal_extraction = True
        completion = FakeCompletion(["not json"])
        manager = WorkingMemoryManager(
            episodic_store, semantic_store, cache, settings.working_memory, settings.memory, completion=completion
        )

        goals = await manager.extract_goals("u1", "s1", ["I need to renew my passport"])

        assert [g.description for g in goals] == ["renew my passport"]

    @pytest.mark.asyncio
    async def test_goals_ordered_by_priority(self, manager):
        await manager.create_goal("u1", "s1", "low", priority=1)
        await manager.create_goal("u1", "s1", "high", priority=5)

        context = await manager.get_working_memory("u1", "s1")

        assert [g.description for g in context.active_goals] == ["high", "low"]

    @pytest.mark.asyncio
    async def test_goal_cap_cancels_lowest_priority(self, manager, settings):
        settings.working_memory.max_active_goals = 2
        await manager.create_goal("u1", "s1", "first", priority=3)
        await manager.create_goal("u1", "s1", "second", priority=2)

        third = await manager.create_goal("u1", "s1", "third", priority=1)

        context = await manager.get_working_memory("u1", "s1")
        assert third.status == GoalStatus.CANCELLED
        assert [g.description for g in context.active_goals] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_completed_goal_never_regresses(self, manager):
        goal = await manager.create_goal("u1", "s1", "ship the release")
        await manager.update_goal_status("u1", "s1", goal.id, GoalStatus.COMPLETED)

        with pytest.raises(MemoryValidationError):
            await manager.update_goal_status("u1", "s1", goal.id, GoalStatus.IN_PROGRESS)

        context = await manager.get_working_memory("u1", "s1")
        assert context.active_goals == []

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, manager):
        goal = await manager.create_goal("u1", "s1", "ship the release")

        same = await manager.update_goal_status("u1", "s1", goal.id, GoalStatus.PENDING)

        assert same.status == GoalStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_goal_raises(self, manager):
        with pytest.raises(MemoryNotFoundError):
            await manager.update_goal_status("u1", "s1", "missing", GoalStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_invalidate_user_forces_recompute(self, manager, cache):
        await manager.get_working_memory("u1", "s1")
        await manager.get_working_memory("u1", "s2")

        await manager.invalidate_user("u1")

        assert await cache.size() == 0
        assert manager.get_performance_metrics().active_sessions == 0

    @pytest.mark.asyncio
    async def test_history_is_token_bounded(self, manager, settings):
        settings.working_memory.max_tokens = 100
        start = datetime.now(timezone.utc) - timedelta(minutes=10)
        context = None
        for i in range(10):
            context = await manager.record_interaction(
                "u1",
                "s1",
                Interaction(timestamp=start + timedelta(seconds=i), user_input="x" * 80, assistant_response="ok"),
            )

        assert context.context_window.current_tokens <= 100
        assert len(context.conversation_history) < 10

    @pytest.mark.asyncio
    async def test_phase_after_first_turn(self, manager):
        interaction = Interaction(timestamp=NOW, intent="plan")

        assert await manager.phase_after("u1", "s1", interaction) == (ConversationPhase.PLANNING, NOW)

    @pytest.mark.asyncio
    async def test_phase_after_keeps_entry_time_when_unchanged(self, manager, episodic_store):
        await episodic_store.store(
            EpisodicMemory(
                user_id="u1",
                session_id="s1",
                timestamp=NOW,
                content="User: plan my week",
                context=EpisodeContext(intent="plan", phase=ConversationPhase.PLANNING, phase_since=NOW),
            )
        )
        later = Interaction(timestamp=NOW + timedelta(minutes=1), intent="plan")

        assert await manager.phase_after("u1", "s1", later) == (ConversationPhase.PLANNING, NOW)

    @pytest.mark.asyncio
    async def test_goals_kept_out_of_episodic_memory(self, manager, episodic_store):
        await manager.create_goal("u1", "s1", "ship the release")

        assert (await episodic_store.stats("u1")).count == 0
        assert (await manager.get_working_memory("u1", "s1")).session_metadata.session_goals != []
