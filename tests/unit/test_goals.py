"""Unit tests for the session goal store."""

from datetime import datetime, timedelta, timezone

import pytest

from agent_memory.memory.goals import InMemoryGoalStore, active_goals
from agent_memory.memory.models import Goal, GoalStatus

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def goal(description: str, priority: int = 1, offset: int = 0, status: GoalStatus = GoalStatus.PENDING) -> Goal:
    created = T0 + timedelta(seconds=offset)
    return Goal(description=description, priority=priority, status=status, created_at=created, updated_at=created)


class TestActiveGoals:
    """Test ordering of live goals."""

    def test_priority_then_age(self):
        goals = [goal("late", 2, 20), goal("early", 2, 10), goal("urgent", 5, 30)]

        assert [g.description for g in active_goals(goals)] == ["urgent", "early", "late"]

    def test_terminal_goals_dropped(self):
        goals = [
            goal("done", status=GoalStatus.COMPLETED),
            goal("dropped", status=GoalStatus.CANCELLED),
            goal("open", status=GoalStatus.IN_PROGRESS),
        ]

        assert [g.description for g in active_goals(goals)] == ["open"]


class TestInMemoryGoalStore:
    """Test the process-local goal store."""

    @pytest.fixture
    def store(self):
        return InMemoryGoalStore()

    @pytest.mark.asyncio
    async def test_save_then_list_in_creation_order(self, store):
        await store.save("u1", "s1", goal("second", offset=10))
        await store.save("u1", "s1", goal("first"))

        assert [g.description for g in await store.list_goals("u1", "s1")] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_save_replaces_by_id(self, store):
        saved = await store.save("u1", "s1", goal("ship it"))
        saved.status = GoalStatus.COMPLETED

        await store.save("u1", "s1", saved)

        goals = await store.list_goals("u1", "s1")
        assert [(g.id, g.status) for g in goals] == [(saved.id, GoalStatus.COMPLETED)]

    @pytest.mark.asyncio
    async def test_returned_goals_are_copies(self, store):
        saved = await store.save("u1", "s1", goal("ship it"))

        fetched = await store.get("u1", "s1", saved.id)
        fetched.description = "changed"

        assert (await store.get("u1", "s1", saved.id)).description == "ship it"

    @pytest.mark.asyncio
    async def test_get_is_session_scoped(self, store):
        saved = await store.save("u1", "s1", goal("ship it"))

        assert await store.get("u1", "s2", saved.id) is None

    @pytest.mark.asyncio
    async def test_clear_session_keeps_other_sessions(self, store):
        await store.save("u1", "s1", goal("a"))
        await store.save("u1", "s2", goal("b"))

        assert await store.clear_session("u1", "s1") is True

        assert await store.list_goals("u1", "s1") == []
        assert len(await store.list_goals("u1", "s2")) == 1

    @pytest.mark.asyncio
    async def test_clear_user_keeps_other_users(self, store):
        await store.save("u1", "s1", goal("a"))
        await store.save("u1", "s2", goal("b"))
        await store.save("u2", "s1", goal("c"))

        assert await store.clear_user("u1") is True

        assert await store.list_goals("u1", "s2") == []
        assert len(await store.list_goals("u2", "s1")) == 1
