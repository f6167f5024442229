"""
Session goal store.

Goals are the one piece of working memory the caller steers directly, so
they cannot be recomputed from turns. They are kept beside the episode
chain, keyed by (user, session), and never show up in episodic search,
stats or chain links.

Usage:
    goals = InMemoryGoalStore()
    await goals.save("user-1", "session-9", Goal(description="book a flight"))
    pending = await goals.list_goals("user-1", "session-9")
"""

from typing import Iterable, Optional, Protocol

import structlog

from agent_memory.memory.models import Goal

logger = structlog.get_logger(__name__)


class GoalStore(Protocol):
    async def save(self, user_id: str, session_id: str, goal: Goal) -> Goal: ...

    async def get(self, user_id: str, session_id: str, goal_id: str) -> Optional[Goal]: ...

    async def list_goals(self, user_id: str, session_id: str) -> list[Goal]: ...

    async def clear_session(self, user_id: str, session_id: str) -> bool: ...

    async def clear_user(self, user_id: str) -> bool: ...


def active_goals(goals: Iterable[Goal]) -> list[Goal]:
    """Non-terminal goals, highest priority first, oldest first on ties."""
    live = [g for g in goals if not g.status.is_terminal]
    return sorted(live, key=lambda g: (-g.priority, g.created_at))


class InMemoryGoalStore:
    """Process-local GoalStore."""

    def __init__(self) -> None:
        self._goals: dict[tuple[str, str], dict[str, Goal]] = {}

    async def save(self, user_id: str, session_id: str, goal: Goal) -> Goal:
        self._goals.setdefault((user_id, session_id), {})[goal.id] = goal.model_copy(deep=True)
        logger.debug("goal_saved", user_id=user_id, session_id=session_id, goal_id=goal.id, status=goal.status.value)
        return goal.model_copy(deep=True)

    async def get(self, user_id: str, session_id: str, goal_id: str) -> Optional[Goal]:
        goal = self._goals.get((user_id, session_id), {}).get(goal_id)
        return goal.model_copy(deep=True) if goal else None

    async def list_goals(self, user_id: str, session_id: str) -> list[Goal]:
        goals = self._goals.get((user_id, session_id), {}).values()
        return [g.model_copy(deep=True) for g in sorted(goals, key=lambda g: g.created_at)]

    async def clear_session(self, user_id: str, session_id: str) -> bool:
        self._goals.pop((user_id, session_id), None)
        return True

    async def clear_user(self, user_id: str) -> bool:
        for key in [k for k in self._goals if k[0] == user_id]:
            del self._goals[key]
        return True
