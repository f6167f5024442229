"""
Neo4j-backed episodic store.

Graph layout:
    (:User {id})-[:HAS_MEMORY]->(:EpisodicMemory)
    (older)-[:NEXT]->(newer), (newer)-[:PREVIOUS]->(older)
    (:EpisodicMemory)-[:RELATED]->(:EpisodicMemory), read as undirected

Timestamps are stored as fixed-width UTC ISO strings so that ordering and
range filters work on plain string comparison. The typed context is stored
as a JSON string; metadata is flattened into node properties.
"""

import json
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from neo4j import AsyncManagedTransaction

from agent_memory.core.exceptions import KnowledgeStoreQueryError, MemoryNotFoundError
from agent_memory.core.retry import RetryPolicy
from agent_memory.knowledge.neo4j_client import Neo4jClient
from agent_memory.memory.episodic import (
    check_idempotent_write,
    check_update_allowed,
    resolve_append_timestamp,
)
from agent_memory.memory.models import (
    EpisodeContext,
    EpisodeKind,
    EpisodeMetadata,
    EpisodeRelationships,
    EpisodicMemory,
    EpisodicQuery,
    EpisodicRelation,
    EpisodicStats,
    EpisodicUpdate,
    SessionStats,
    to_iso,
    utcnow,
)
from agent_memory.monitoring.metrics import track_store_operation

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _projection(var: str) -> str:
    return f"""{var} {{
        .*,
        previous: [({var})-[:PREVIOUS]->(p:EpisodicMemory) | p.id][0],
        next: [({var})-[:NEXT]->(n:EpisodicMemory) | n.id][0],
        related: [({var})-[:RELATED]-(r:EpisodicMemory) | r.id]
    }} AS memory"""


# =============================================================================
# Cypher
# =============================================================================

GET_EPISODE = f"""
MATCH (m:EpisodicMemory {{id: $id}})
RETURN {_projection("m")}
"""

# Write-locks the user node so concurrent appends to one chain serialize.
LOCK_USER = """
MERGE (u:User {id: $userId})
SET u.lastWriteAt = $now
"""

GET_TAIL = """
MATCH (t:EpisodicMemory {userId: $userId, sessionId: $sessionId})
WHERE NOT (t)-[:NEXT]->(:EpisodicMemory)
RETURN t.id AS id, t.timestamp AS timestamp
ORDER BY t.timestamp DESC
LIMIT 1
"""

CREATE_EPISODE = """
MATCH (u:User {id: $userId})
CREATE (m:EpisodicMemory)
SET m = $props
CREATE (u)-[:HAS_MEMORY]->(m)
WITH m
OPTIONAL MATCH (t:EpisodicMemory {id: $tailId})
FOREACH (_ IN CASE WHEN t IS NULL THEN [] ELSE [1] END |
    CREATE (t)-[:NEXT]->(m)
    CREATE (m)-[:PREVIOUS]->(t)
)
"""

LINK_RELATED = """
MATCH (m:EpisodicMemory {id: $id})
UNWIND $relatedIds AS relatedId
MATCH (r:EpisodicMemory {id: relatedId, userId: m.userId})
WHERE r.id <> m.id
MERGE (m)-[:RELATED]->(r)
"""

UNLINK_RELATED = """
MATCH (m:EpisodicMemory {id: $id})-[rel:RELATED]-(:EpisodicMemory)
DELETE rel
"""

UPDATE_EPISODE = """
MATCH (m:EpisodicMemory {id: $id})
SET m += $props
"""

# Bridges the gap left by the deleted node so the chain stays connected.
DELETE_EPISODE = """
MATCH (m:EpisodicMemory {id: $id})
OPTIONAL MATCH (m)-[:PREVIOUS]->(p:EpisodicMemory)
OPTIONAL MATCH (m)-[:NEXT]->(n:EpisodicMemory)
WITH m, p, n, m.id AS deletedId
DETACH DELETE m
WITH p, n, deletedId
FOREACH (_ IN CASE WHEN p IS NOT NULL AND n IS NOT NULL THEN [1] ELSE [] END |
    CREATE (p)-[:NEXT]->(n)
    CREATE (n)-[:PREVIOUS]->(p)
)
RETURN deletedId
"""

CLEAR_USER = """
MATCH (m:EpisodicMemory {userId: $userId})
DETACH DELETE m
"""

CLEAR_SESSION = """
MATCH (m:EpisodicMemory {userId: $userId, sessionId: $sessionId})
DETACH DELETE m
"""

SEARCH_EPISODES = f"""
MATCH (m:EpisodicMemory {{userId: $userId}})
WHERE ($sessionId IS NULL OR m.sessionId = $sessionId)
  AND ($start IS NULL OR m.timestamp >= $start)
  AND ($end IS NULL OR m.timestamp <= $end)
  AND ($tags IS NULL OR any(tag IN m.tags WHERE tag IN $tags))
  AND ($minImportance IS NULL OR m.importance >= $minImportance)
  AND ($maxImportance IS NULL OR m.importance <= $maxImportance)
  AND ($kinds IS NULL OR m.kind IN $kinds)
RETURN {_projection("m")}
ORDER BY m.timestamp DESC
LIMIT $limit
"""

EPISODE_STATS = """
MATCH (m:EpisodicMemory {userId: $userId})
RETURN count(m) AS count, min(m.timestamp) AS oldest, max(m.timestamp) AS newest
"""

SESSION_STATS = """
MATCH (m:EpisodicMemory {userId: $userId, sessionId: $sessionId})
WHERE m.kind = $kind
RETURN count(m) AS turns,
       count(m.responseTimeMs) AS timedTurns,
       min(m.timestamp) AS first,
       max(m.timestamp) AS last,
       avg(m.responseTimeMs) AS averageResponseTimeMs
"""

GET_RELATED = f"""
MATCH (m:EpisodicMemory {{id: $id}})-[rel]-(other:EpisodicMemory)
WHERE (type(rel) = 'RELATED' AND 'RELATED' IN $types)
   OR (startNode(rel) = m AND type(rel) IN $types AND type(rel) <> 'RELATED')
WITH DISTINCT other
RETURN {_projection("other")}
ORDER BY other.timestamp DESC
"""

LIST_SESSIONS = """
MATCH (m:EpisodicMemory {userId: $userId})
RETURN DISTINCT m.sessionId AS sessionId
ORDER BY sessionId
"""


# =============================================================================
# Conversion
# =============================================================================


def to_properties(memory: EpisodicMemory) -> dict[str, Any]:
    """Flatten an episode into Neo4j node properties."""
    props: dict[str, Any] = {
        "id": memory.id,
        "userId": memory.user_id,
        "sessionId": memory.session_id,
        "timestamp": to_iso(memory.timestamp),
        "content": memory.content,
        "kind": memory.context.kind.value,
        "context": memory.context.model_dump_json(),
        "source": memory.metadata.source,
        "importance": memory.metadata.importance,
        "tags": list(memory.metadata.tags),
    }
    if memory.context.response_time_ms is not None:
        props["responseTimeMs"] = memory.context.response_time_ms
    if memory.metadata.location is not None:
        props["location"] = memory.metadata.location
    if memory.metadata.participants is not None:
        props["participants"] = list(memory.metadata.participants)
    return props


def from_record(node: dict[str, Any]) -> EpisodicMemory:
    """Rebuild an episode from a projected node map."""
    return EpisodicMemory(
        id=node["id"],
        user_id=node["userId"],
        session_id=node["sessionId"],
        timestamp=datetime.fromisoformat(node["timestamp"]),
        content=node["content"],
        context=EpisodeContext.model_validate(json.loads(node.get("context") or "{}")),
        metadata=EpisodeMetadata(
            source=node.get("source", "conversation"),
            importance=node.get("importance", 0.5),
            tags=list(node.get("tags") or []),
            location=node.get("location"),
            participants=node.get("participants"),
        ),
        relationships=EpisodeRelationships(
            previous=node.get("previous"),
            next=node.get("next"),
            related=sorted(node.get("related") or []),
        ),
    )


async def _fetch(tx: AsyncManagedTransaction, memory_id: str) -> Optional[EpisodicMemory]:
    result = await tx.run(GET_EPISODE, {"id": memory_id})
    record = await result.single()
    return from_record(record["memory"]) if record else None


# =============================================================================
# Store
# =============================================================================


class GraphEpisodicStore:
    """
    EpisodicStore on Neo4j.

    Every mutation runs as one write transaction, so a cancelled or failed
    append never leaves a half-linked chain.

    Usage:
        store = GraphEpisodicStore(neo4j_client, RetryPolicy.from_settings(settings.resilience))
        memory = await store.store(EpisodicMemory(user_id="u1", session_id="s1", content="..."))
    """

    STORE = "neo4j"

    def __init__(self, client: Neo4jClient, retry: Optional[RetryPolicy] = None) -> None:
        self._client = client
        self._retry = retry or RetryPolicy()

    async def _run(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        with track_store_operation(self.STORE, f"episodic.{operation}"):
            return await self._retry.run(f"episodic.{operation}", call)

    async def store(self, memory: EpisodicMemory) -> EpisodicMemory:
        async def work(tx: AsyncManagedTransaction) -> EpisodicMemory:
            existing = await _fetch(tx, memory.id)
            if existing is not None:
                return check_idempotent_write(existing, memory)

            await (await tx.run(LOCK_USER, {"userId": memory.user_id, "now": to_iso(utcnow())})).consume()

            tail = await (
                await tx.run(GET_TAIL, {"userId": memory.user_id, "sessionId": memory.session_id})
            ).single()
            tail_timestamp = datetime.fromisoformat(tail["timestamp"]) if tail else None

            stored = memory.model_copy(deep=True)
            stored.timestamp = resolve_append_timestamp(tail_timestamp, memory.timestamp)

            await (
                await tx.run(
                    CREATE_EPISODE,
                    {
                        "userId": stored.user_id,
                        "props": to_properties(stored),
                        "tailId": tail["id"] if tail else None,
                    },
                )
            ).consume()

            if stored.relationships.related:
                await (
                    await tx.run(
                        LINK_RELATED,
                        {"id": stored.id, "relatedIds": list(dict.fromkeys(stored.relationships.related))},
                    )
                ).consume()

            created = await _fetch(tx, stored.id)
            if created is None:
                raise KnowledgeStoreQueryError(
                    f"Episode {stored.id} was not readable after create",
                    {"memory_id": stored.id, "session_id": stored.session_id},
                )
            return created

        created = await self._run(
            "store", lambda: self._client.execute_write(work, label="episodic.store")
        )
        logger.debug(
            "episodic_memory_stored",
            memory_id=created.id,
            user_id=created.user_id,
            session_id=created.session_id,
            previous=created.relationships.previous,
        )
        return created

    async def get(self, memory_id: str) -> Optional[EpisodicMemory]:
        records = await self._run("get", lambda: self._client.run_query(GET_EPISODE, {"id": memory_id}))
        return from_record(records[0]["memory"]) if records else None

    async def search(self, query: EpisodicQuery) -> list[EpisodicMemory]:
        params = {
            "userId": query.user_id,
            "sessionId": query.session_id,
            "start": to_iso(query.time_range.start) if query.time_range else None,
            "end": to_iso(query.time_range.end) if query.time_range else None,
            "tags": list(query.tags) if query.tags else None,
            "minImportance": query.importance_range.min if query.importance_range else None,
            "maxImportance": query.importance_range.max if query.importance_range else None,
            "kinds": [k.value for k in query.kinds] if query.kinds is not None else None,
            "limit": query.limit,
        }
        records = await self._run("search", lambda: self._client.run_query(SEARCH_EPISODES, params))
        return [from_record(r["memory"]) for r in records]

    async def update(self, memory_id: str, update: EpisodicUpdate) -> EpisodicMemory:
        async def work(tx: AsyncManagedTransaction) -> EpisodicMemory:
            current = await _fetch(tx, memory_id)
            if current is None:
                raise MemoryNotFoundError("episodic", memory_id)
            check_update_allowed(current, update)

            props: dict[str, Any] = {}
            if update.content is not None:
                props["content"] = update.content
            if update.context is not None:
                props["context"] = update.context.model_dump_json()
                props["kind"] = update.context.kind.value
                props["responseTimeMs"] = update.context.response_time_ms
            if update.metadata is not None:
                props.update(
                    {
                        "source": update.metadata.source,
                        "importance": update.metadata.importance,
                        "tags": list(update.metadata.tags),
                        "location": update.metadata.location,
                        "participants": update.metadata.participants,
                    }
                )
            if props:
                await (await tx.run(UPDATE_EPISODE, {"id": memory_id, "props": props})).consume()

            if update.related is not None:
                await (await tx.run(UNLINK_RELATED, {"id": memory_id})).consume()
                if update.related:
                    await (
                        await tx.run(
                            LINK_RELATED,
                            {"id": memory_id, "relatedIds": list(dict.fromkeys(update.related))},
                        )
                    ).consume()

            updated = await _fetch(tx, memory_id)
            if updated is None:
                raise KnowledgeStoreQueryError(
                    f"Episode {memory_id} was not readable after update",
                    {"memory_id": memory_id},
                )
            return updated

        return await self._run("update", lambda: self._client.execute_write(work, label="episodic.update"))

    async def delete(self, memory_id: str) -> bool:
        records = await self._run(
            "delete", lambda: self._client.run_write_query(DELETE_EPISODE, {"id": memory_id})
        )
        deleted = bool(records)
        if deleted:
            logger.debug("episodic_memory_deleted", memory_id=memory_id)
        return deleted

    async def clear_user(self, user_id: str) -> bool:
        await self._run("clear_user", lambda: self._client.run_write_query(CLEAR_USER, {"userId": user_id}))
        logger.info("episodic_memories_cleared", user_id=user_id)
        return True

    async def clear_session(self, user_id: str, session_id: str) -> bool:
        await self._run(
            "clear_session",
            lambda: self._client.run_write_query(
                CLEAR_SESSION, {"userId": user_id, "sessionId": session_id}
            ),
        )
        logger.info("episodic_session_cleared", user_id=user_id, session_id=session_id)
        return True

    async def stats(self, user_id: str) -> EpisodicStats:
        records = await self._run("stats", lambda: self._client.run_query(EPISODE_STATS, {"userId": user_id}))
        if not records or not records[0]["count"]:
            return EpisodicStats()
        row = records[0]
        return EpisodicStats(
            count=row["count"],
            oldest=datetime.fromisoformat(row["oldest"]),
            newest=datetime.fromisoformat(row["newest"]),
        )

    async def session_stats(self, user_id: str, session_id: str) -> SessionStats:
        params = {"userId": user_id, "sessionId": session_id, "kind": EpisodeKind.TURN.value}
        records = await self._run("session_stats", lambda: self._client.run_query(SESSION_STATS, params))
        if not records or not records[0]["turns"]:
            return SessionStats()
        row = records[0]
        return SessionStats(
            turns=row["turns"],
            timed_turns=row["timedTurns"],
            first=datetime.fromisoformat(row["first"]),
            last=datetime.fromisoformat(row["last"]),
            average_response_time_ms=row["averageResponseTimeMs"] or 0.0,
        )

    async def get_related(
        self, memory_id: str, relation: Optional[EpisodicRelation] = None
    ) -> list[EpisodicMemory]:
        types = [relation.value.upper()] if relation else ["RELATED", "NEXT", "PREVIOUS"]
        records = await self._run(
            "get_related",
            lambda: self._client.run_query(GET_RELATED, {"id": memory_id, "types": types}),
        )
        return [from_record(r["memory"]) for r in records]

    async def list_sessions(self, user_id: str) -> list[str]:
        records = await self._run(
            "list_sessions", lambda: self._client.run_query(LIST_SESSIONS, {"userId": user_id})
        )
        return [r["sessionId"] for r in records]
