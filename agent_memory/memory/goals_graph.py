"""
Neo4j-backed goal store.

Graph layout:
    (:User {id})-[:HAS_GOAL]->(:Goal {userId, sessionId, ...})

Goal nodes are never linked to EpisodicMemory nodes, so session chains and
episodic statistics only ever see conversation episodes.
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from agent_memory.core.retry import RetryPolicy
from agent_memory.knowledge.neo4j_client import Neo4jClient
from agent_memory.memory.models import Goal, GoalStatus, to_iso
from agent_memory.monitoring.metrics import track_store_operation

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SAVE_GOAL = """
MERGE (u:User {id: $userId})
MERGE (g:Goal {id: $id})
SET g += $props
MERGE (u)-[:HAS_GOAL]->(g)
"""

GET_GOAL = """
MATCH (g:Goal {id: $id, userId: $userId, sessionId: $sessionId})
RETURN g {.*} AS goal
"""

LIST_GOALS = """
MATCH (g:Goal {userId: $userId, sessionId: $sessionId})
RETURN g {.*} AS goal
ORDER BY g.createdAt
"""

CLEAR_SESSION_GOALS = """
MATCH (g:Goal {userId: $userId, sessionId: $sessionId})
DETACH DELETE g
"""

CLEAR_USER_GOALS = """
MATCH (g:Goal {userId: $userId})
DETACH DELETE g
"""


def to_properties(user_id: str, session_id: str, goal: Goal) -> dict[str, Any]:
    return {
        "id": goal.id,
        "userId": user_id,
        "sessionId": session_id,
        "description": goal.description,
        "priority": goal.priority,
        "status": goal.status.value,
        "subgoals": list(goal.subgoals),
        "successCriteria": list(goal.success_criteria),
        "createdAt": to_iso(goal.created_at),
        "updatedAt": to_iso(goal.updated_at),
    }


def from_record(node: dict[str, Any]) -> Goal:
    return Goal(
        id=node["id"],
        description=node["description"],
        priority=node.get("priority", 1),
        status=GoalStatus(node.get("status", GoalStatus.PENDING.value)),
        subgoals=list(node.get("subgoals") or []),
        success_criteria=list(node.get("successCriteria") or []),
        created_at=datetime.fromisoformat(node["createdAt"]),
        updated_at=datetime.fromisoformat(node["updatedAt"]),
    )


class GraphGoalStore:
    """
    GoalStore on Neo4j.

    Usage:
        goals = GraphGoalStore(neo4j_client, RetryPolicy.from_settings(settings.resilience))
        await goals.save("u1", "s1", goal)
    """

    STORE = "neo4j"

    def __init__(self, client: Neo4jClient, retry: Optional[RetryPolicy] = None) -> None:
        self._client = client
        self._retry = retry or RetryPolicy()

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        with track_store_operation(self.STORE, f"goals.{operation}"):
            return await self._retry.run(f"goals.{operation}", call)

    async def save(self, user_id: str, session_id: str, goal: Goal) -> Goal:
        params = {"userId": user_id, "id": goal.id, "props": to_properties(user_id, session_id, goal)}
        await self._run("save", lambda: self._client.run_write_query(SAVE_GOAL, params))
        logger.debug("goal_saved", user_id=user_id, session_id=session_id, goal_id=goal.id, status=goal.status.value)
        return goal.model_copy(deep=True)

    async def get(self, user_id: str, session_id: str, goal_id: str) -> Optional[Goal]:
        params = {"id": goal_id, "userId": user_id, "sessionId": session_id}
        records = await self._run("get", lambda: self._client.run_query(GET_GOAL, params))
        return from_record(records[0]["goal"]) if records else None

    async def list_goals(self, user_id: str, session_id: str) -> list[Goal]:
        params = {"userId": user_id, "sessionId": session_id}
        records = await self._run("list", lambda: self._client.run_query(LIST_GOALS, params))
        return [from_record(r["goal"]) for r in records]

    async def clear_session(self, user_id: str, session_id: str) -> bool:
        params = {"userId": user_id, "sessionId": session_id}
        await self._run("clear_session", lambda: self._client.run_write_query(CLEAR_SESSION_GOALS, params))
        return True

    async def clear_user(self, user_id: str) -> bool:
        await self._run("clear_user", lambda: self._client.run_write_query(CLEAR_USER_GOALS, {"userId": user_id}))
        logger.info("goals_cleared", user_id=user_id)
        return True
