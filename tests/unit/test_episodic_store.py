"""Unit tests for the in-memory episodic store and the chain rules."""

from datetime import datetime, timedelta, timezone

import pytest

from agent_memory.core.exceptions import MemoryNotFoundError, MemoryValidationError
from agent_memory.memory.episodic import InMemoryEpisodicStore, resolve_append_timestamp
from agent_memory.memory.models import (
    EpisodeContext,
    EpisodeKind,
    EpisodeMetadata,
    EpisodicMemory,
    EpisodicQuery,
    EpisodicRelation,
    EpisodicUpdate,
    ImportanceRange,
)

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def episode(content: str, offset: int = 0, session_id: str = "s1", user_id: str = "u1", **kwargs) -> EpisodicMemory:
    return EpisodicMemory(
        user_id=user_id,
        session_id=session_id,
        content=content,
        timestamp=T0 + timedelta(seconds=offset),
        **kwargs,
    )


class TestAppendTimestamp:
    """Test timestamp resolution for appends."""

    def test_first_episode_keeps_timestamp(self):
        assert resolve_append_timestamp(None, T0) == T0

    def test_later_timestamp_kept(self):
        assert resolve_append_timestamp(T0, T0 + timedelta(seconds=1)) == T0 + timedelta(seconds=1)

    def test_equal_timestamp_nudged(self):
        assert resolve_append_timestamp(T0, T0) == T0 + timedelta(microseconds=1)

    def test_older_timestamp_rejected(self):
        with pytest.raises(MemoryValidationError):
            resolve_append_timestamp(T0, T0 - timedelta(seconds=1))


class TestSessionChain:
    """Test the per-session previous/next chain."""

    @pytest.fixture
    def store(self):
        return InMemoryEpisodicStore()

    @pytest.mark.asyncio
    async def test_appends_link_previous_and_next(self, store):
        """Each append links to the session tail."""
        first = await store.store(episode("I like Python", 0))
        second = await store.store(episode("I like Rust", 1))

        assert first.relationships.previous is None
        assert second.relationships.previous == first.id

        first = await store.get(first.id)
        assert first.relationships.next == second.id

    @pytest.mark.asyncio
    async def test_chain_is_timestamp_ordered_without_cycles(self, store):
        """Walking next pointers visits every episode once in time order."""
        ids = [(await store.store(episode(f"turn {i}", i))).id for i in range(5)]

        current = await store.get(ids[0])
        seen = []
        while current is not None:
            assert current.id not in seen
            seen.append(current.id)
            next_id = current.relationships.next
            following = await store.get(next_id) if next_id else None
            if following is not None:
                assert following.timestamp > current.timestamp
            current = following

        assert seen == ids

    @pytest.mark.asyncio
    async def test_sessions_have_independent_chains(self, store):
        a = await store.store(episode("session one", 0, session_id="s1"))
        b = await store.store(episode("session two", 1, session_id="s2"))

        assert b.relationships.previous is None
        assert (await store.get(a.id)).relationships.next is None

    @pytest.mark.asyncio
    async def test_equal_timestamps_are_nudged(self, store):
        first = await store.store(episode("same time", 0))
        second = await store.store(episode("same time again", 0))

        assert second.timestamp > first.timestamp

    @pytest.mark.asyncio
    async def test_out_of_order_append_rejected(self, store):
        await store.store(episode("later", 10))

        with pytest.raises(MemoryValidationError):
            await store.store(episode("earlier", 0))

    @pytest.mark.asyncio
    async def test_store_then_get_round_trips_content_and_metadata(self, store):
        metadata = EpisodeMetadata(importance=0.6, tags=["python", "languages"], source="chat")
        stored = await store.store(episode("I like Python", 0, metadata=metadata))

        fetched = await store.get(stored.id)

        assert fetched.content == "I like Python"
        assert fetched.metadata == metadata

    @pytest.mark.asyncio
    async def test_retried_store_is_idempotent(self, store):
        memory = episode("only once", 0)
        first = await store.store(memory)
        again = await store.store(memory)

        assert again.id == first.id
        assert (await store.stats("u1")).count == 1


class TestDeletion:
    """Test deletion relinking."""

    @pytest.fixture
    def store(self):
        return InMemoryEpisodicStore()

    @pytest.mark.asyncio
    async def test_middle_deletion_relinks_neighbours(self, store):
        a = await store.store(episode("a", 0))
        b = await store.store(episode("b", 1))
        c = await store.store(episode("c", 2))

        assert await store.delete(b.id) is True

        a, c = await store.get(a.id), await store.get(c.id)
        assert a.relationships.next == c.id
        assert c.relationships.previous == a.id

    @pytest.mark.asyncio
    async def test_tail_deletion_moves_tail_back(self, store):
        a = await store.store(episode("a", 0))
        b = await store.store(episode("b", 1))
        await store.delete(b.id)

        c = await store.store(episode("c", 2))

        assert c.relationships.previous == a.id

    @pytest.mark.asyncio
    async def test_delete_unknown_returns_false(self, store):
        assert await store.delete("missing") is False

    @pytest.mark.asyncio
    async def test_clear_session_keeps_other_sessions(self, store):
        await store.store(episode("a", 0, session_id="s1"))
        kept = await store.store(episode("b", 1, session_id="s2"))

        await store.clear_session("u1", "s1")

        assert await store.list_sessions("u1") == ["s2"]
        assert await store.get(kept.id) is not None


class TestUpdatesAndRelations:
    """Test updates and related links."""

    @pytest.fixture
    def store(self):
        return InMemoryEpisodicStore()

    @pytest.mark.asyncio
    async def test_sealed_episode_body_cannot_change(self, store):
        a = await store.store(episode("a", 0))
        await store.store(episode("b", 1))

        with pytest.raises(MemoryValidationError):
            await store.update(a.id, EpisodicUpdate(content="rewritten"))

    @pytest.mark.asyncio
    async def test_tail_episode_can_be_edited(self, store):
        a = await store.store(episode("a", 0))

        updated = await store.update(a.id, EpisodicUpdate(content="edited"))

        assert updated.content == "edited"

    @pytest.mark.asyncio
    async def test_update_unknown_raises(self, store):
        with pytest.raises(MemoryNotFoundError):
            await store.update("missing", EpisodicUpdate(content="x"))

    @pytest.mark.asyncio
    async def test_related_links_are_symmetric(self, store):
        a = await store.store(episode("a", 0, session_id="s1"))
        b = await store.store(episode("b", 1, session_id="s2"))

        await store.update(a.id, EpisodicUpdate(related=[b.id]))

        related = await store.get_related(b.id, EpisodicRelation.RELATED)
        assert [m.id for m in related] == [a.id]

    @pytest.mark.asyncio
    async def test_get_related_unknown_is_empty(self, store):
        assert await store.get_related("missing") == []


class TestSearch:
    """Test episodic search filters."""

    @pytest.fixture
    async def store(self):
        store = InMemoryEpisodicStore()
        await store.store(episode("low", 0, metadata=EpisodeMetadata(importance=0.1, tags=["misc"])))
        await store.store(episode("high", 1, metadata=EpisodeMetadata(importance=0.9, tags=["python"])))
        await store.store(episode("other user", 2, user_id="u2"))
        return store

    @pytest.mark.asyncio
    async def test_newest_first_and_user_scoped(self, store):
        hits = await store.search(EpisodicQuery(user_id="u1"))

        assert [m.content for m in hits] == ["high", "low"]

    @pytest.mark.asyncio
    async def test_tag_filter(self, store):
        hits = await store.search(EpisodicQuery(user_id="u1", tags=["python"]))

        assert [m.content for m in hits] == ["high"]

    @pytest.mark.asyncio
    async def test_importance_filter(self, store):
        hits = await store.search(
            EpisodicQuery(user_id="u1", importance_range=ImportanceRange(min=0.5, max=1.0))
        )

        assert [m.content for m in hits] == ["high"]


class TestSessionStats:
    """Test the per-session turn aggregate."""

    @pytest.fixture
    def store(self):
        return InMemoryEpisodicStore()

    @pytest.mark.asyncio
    async def test_counts_turns_of_one_session(self, store):
        await store.store(episode("one", 0, context=EpisodeContext(response_time_ms=100.0)))
        await store.store(episode("two", 60))
        await store.store(episode("three", 120, context=EpisodeContext(response_time_ms=300.0)))
        await store.store(episode("note", 180, context=EpisodeContext(kind=EpisodeKind.NOTE)))
        await store.store(episode("elsewhere", 0, session_id="s2"))

        stats = await store.session_stats("u1", "s1")

        assert (stats.turns, stats.timed_turns) == (3, 2)
        assert stats.first == T0
        assert stats.last == T0 + timedelta(seconds=120)
        assert stats.average_response_time_ms == pytest.approx(200.0)

    @pytest.mark.asyncio
    async def test_empty_session(self, store):
        stats = await store.session_stats("u1", "s1")

        assert stats.turns == 0
        assert stats.last is None
        assert stats.average_response_time_ms == 0.0
