"""
Episodic memory store.

Episodes form one doubly-linked chain per (user, session) in strictly
increasing timestamp order, plus undirected RELATED links between any two
episodes of the same user.

Usage:
    store = InMemoryEpisodicStore()
    first = await store.store(EpisodicMemory(user_id="u1", session_id="s1", content="Hi"))
    second = await store.store(EpisodicMemory(user_id="u1", session_id="s1", content="Plan my trip"))
    assert second.relationships.previous == first.id
"""

from datetime import datetime, timedelta
from typing import Optional, Protocol

import structlog

from agent_memory.core.exceptions import MemoryNotFoundError, MemoryValidationError
from agent_memory.memory.models import (
    EpisodeKind,
    EpisodicMemory,
    EpisodicQuery,
    EpisodicRelation,
    EpisodicStats,
    EpisodicUpdate,
    SessionStats,
)

logger = structlog.get_logger(__name__)

TIMESTAMP_NUDGE = timedelta(microseconds=1)


class EpisodicStore(Protocol):
    async def store(self, memory: EpisodicMemory) -> EpisodicMemory: ...

    async def get(self, memory_id: str) -> Optional[EpisodicMemory]: ...

    async def search(self, query: EpisodicQuery) -> list[EpisodicMemory]: ...

    async def update(self, memory_id: str, update: EpisodicUpdate) -> EpisodicMemory: ...

    async def delete(self, memory_id: str) -> bool: ...

    async def clear_user(self, user_id: str) -> bool: ...

    async def clear_session(self, user_id: str, session_id: str) -> bool: ...

    async def stats(self, user_id: str) -> EpisodicStats: ...

    async def session_stats(self, user_id: str, session_id: str) -> SessionStats: ...

    async def get_related(
        self, memory_id: str, relation: Optional[EpisodicRelation] = None
    ) -> list[EpisodicMemory]: ...

    async def list_sessions(self, user_id: str) -> list[str]: ...


# =============================================================================
# Chain rules shared by all implementations
# =============================================================================


def resolve_append_timestamp(tail_timestamp: Optional[datetime], timestamp: datetime) -> datetime:
    """
    Timestamp an appended episode is stored with.

    Equal to the tail's: nudged forward by one microsecond.
    Older than the tail's: rejected.
    """
    if tail_timestamp is None or timestamp > tail_timestamp:
        return timestamp
    if timestamp == tail_timestamp:
        return tail_timestamp + TIMESTAMP_NUDGE
    raise MemoryValidationError(
        "Episode timestamp precedes the session tail",
        {"timestamp": timestamp.isoformat(), "tail_timestamp": tail_timestamp.isoformat()},
    )


def check_idempotent_write(existing: EpisodicMemory, memory: EpisodicMemory) -> EpisodicMemory:
    """A retried write returns the node already written under that id."""
    if existing.user_id != memory.user_id or existing.session_id != memory.session_id:
        raise MemoryValidationError(
            f"Episode id {memory.id} already belongs to another session",
            {"memory_id": memory.id},
        )
    return existing


def check_update_allowed(memory: EpisodicMemory, update: EpisodicUpdate) -> None:
    """Once an episode has a successor only its relationships may change."""
    if memory.relationships.next is not None and update.touches_body:
        raise MemoryValidationError(
            f"Episode {memory.id} is sealed; only relationships may be updated",
            {"memory_id": memory.id, "next": memory.relationships.next},
        )


def summarize_turns(turns: list[EpisodicMemory]) -> SessionStats:
    if not turns:
        return SessionStats()
    timed = [m.context.response_time_ms for m in turns if m.context.response_time_ms is not None]
    return SessionStats(
        turns=len(turns),
        timed_turns=len(timed),
        first=min(m.timestamp for m in turns),
        last=max(m.timestamp for m in turns),
        average_response_time_ms=sum(timed) / len(timed) if timed else 0.0,
    )


def matches_query(memory: EpisodicMemory, query: EpisodicQuery) -> bool:
    if memory.user_id != query.user_id:
        return False
    if query.session_id is not None and memory.session_id != query.session_id:
        return False
    if query.time_range is not None and not (
        query.time_range.start <= memory.timestamp <= query.time_range.end
    ):
        return False
    if query.tags and not set(query.tags) & set(memory.metadata.tags):
        return False
    if query.importance_range is not None and not (
        query.importance_range.min <= memory.metadata.importance <= query.importance_range.max
    ):
        return False
    if query.kinds is not None and memory.context.kind not in query.kinds:
        return False
    return True


# =============================================================================
# In-memory implementation
# =============================================================================


class InMemoryEpisodicStore:
    """
    Process-local EpisodicStore with the same semantics as the graph store.

    Operations have no await points between reads and writes, so each call
    is atomic with respect to other tasks on the loop.
    """

    def __init__(self) -> None:
        self._memories: dict[str, EpisodicMemory] = {}
        self._tails: dict[tuple[str, str], str] = {}
        self._related: dict[str, set[str]] = {}

    def _view(self, memory_id: str) -> EpisodicMemory:
        memory = self._memories[memory_id].model_copy(deep=True)
        memory.relationships.related = sorted(self._related.get(memory_id, ()))
        return memory

    async def store(self, memory: EpisodicMemory) -> EpisodicMemory:
        existing = self._memories.get(memory.id)
        if existing is not None:
            check_idempotent_write(existing, memory)
            return self._view(memory.id)

        session_key = (memory.user_id, memory.session_id)
        tail_id = self._tails.get(session_key)
        tail = self._memories.get(tail_id) if tail_id else None

        stored = memory.model_copy(deep=True)
        stored.timestamp = resolve_append_timestamp(tail.timestamp if tail else None, memory.timestamp)
        stored.relationships.previous = tail_id
        stored.relationships.next = None
        related_ids = [
            rid
            for rid in dict.fromkeys(memory.relationships.related)
            if rid in self._memories and self._memories[rid].user_id == memory.user_id
        ]
        stored.relationships.related = []

        self._memories[stored.id] = stored
        self._tails[session_key] = stored.id
        if tail is not None:
            tail.relationships.next = stored.id
        for rid in related_ids:
            self._link(stored.id, rid)

        logger.debug(
            "episodic_memory_stored",
            memory_id=stored.id,
            user_id=stored.user_id,
            session_id=stored.session_id,
            previous=tail_id,
        )
        return self._view(stored.id)

    def _link(self, a_id: str, b_id: str) -> None:
        if a_id == b_id:
            return
        self._related.setdefault(a_id, set()).add(b_id)
        self._related.setdefault(b_id, set()).add(a_id)

    def _unlink_all(self, memory_id: str) -> None:
        for other in self._related.pop(memory_id, set()):
            peers = self._related.get(other)
            if peers is not None:
                peers.discard(memory_id)
                if not peers:
                    del self._related[other]

    async def get(self, memory_id: str) -> Optional[EpisodicMemory]:
        if memory_id not in self._memories:
            return None
        return self._view(memory_id)

    async def search(self, query: EpisodicQuery) -> list[EpisodicMemory]:
        hits = [m for m in self._memories.values() if matches_query(m, query)]
        hits.sort(key=lambda m: m.timestamp, reverse=True)
        return [self._view(m.id) for m in hits[: query.limit]]

    async def update(self, memory_id: str, update: EpisodicUpdate) -> EpisodicMemory:
        memory = self._memories.get(memory_id)
        if memory is None:
            raise MemoryNotFoundError("episodic", memory_id)
        check_update_allowed(memory, update)

        if update.content is not None:
            memory.content = update.content
        if update.context is not None:
            memory.context = update.context.model_copy(deep=True)
        if update.metadata is not None:
            memory.metadata = update.metadata.model_copy(deep=True)
        if update.related is not None:
            self._unlink_all(memory_id)
            for rid in update.related:
                other = self._memories.get(rid)
                if other is not None and other.user_id == memory.user_id:
                    self._link(memory_id, rid)
        return self._view(memory_id)

    async def delete(self, memory_id: str) -> bool:
        memory = self._memories.pop(memory_id, None)
        if memory is None:
            return False

        previous_id = memory.relationships.previous
        next_id = memory.relationships.next
        if previous_id is not None:
            self._memories[previous_id].relationships.next = next_id
        if next_id is not None:
            self._memories[next_id].relationships.previous = previous_id
        else:
            session_key = (memory.user_id, memory.session_id)
            if previous_id is not None:
                self._tails[session_key] = previous_id
            else:
                self._tails.pop(session_key, None)
        self._unlink_all(memory_id)

        logger.debug("episodic_memory_deleted", memory_id=memory_id, relinked=(previous_id, next_id))
        return True

    def _drop(self, ids: list[str]) -> None:
        for memory_id in ids:
            self._unlink_all(memory_id)
            memory = self._memories.pop(memory_id)
            self._tails.pop((memory.user_id, memory.session_id), None)

    async def clear_user(self, user_id: str) -> bool:
        self._drop([mid for mid, m in self._memories.items() if m.user_id == user_id])
        return True

    async def clear_session(self, user_id: str, session_id: str) -> bool:
        self._drop(
            [
                mid
                for mid, m in self._memories.items()
                if m.user_id == user_id and m.session_id == session_id
            ]
        )
        return True

    async def stats(self, user_id: str) -> EpisodicStats:
        timestamps = [m.timestamp for m in self._memories.values() if m.user_id == user_id]
        if not timestamps:
            return EpisodicStats()
        return EpisodicStats(count=len(timestamps), oldest=min(timestamps), newest=max(timestamps))

    async def session_stats(self, user_id: str, session_id: str) -> SessionStats:
        return summarize_turns(
            [
                m
                for m in self._memories.values()
                if m.user_id == user_id and m.session_id == session_id and m.context.kind == EpisodeKind.TURN
            ]
        )

    async def get_related(
        self, memory_id: str, relation: Optional[EpisodicRelation] = None
    ) -> list[EpisodicMemory]:
        memory = self._memories.get(memory_id)
        if memory is None:
            return []

        ids: list[str] = []
        if relation in (None, EpisodicRelation.PREVIOUS) and memory.relationships.previous:
            ids.append(memory.relationships.previous)
        if relation in (None, EpisodicRelation.NEXT) and memory.relationships.next:
            ids.append(memory.relationships.next)
        if relation in (None, EpisodicRelation.RELATED):
            ids.extend(sorted(self._related.get(memory_id, ())))
        return [self._view(i) for i in dict.fromkeys(ids)]

    async def list_sessions(self, user_id: str) -> list[str]:
        return sorted({m.session_id for m in self._memories.values() if m.user_id == user_id})
