"""
Tiered Memory System.

This module implements the agent's memory in three layers:

- episodic: Time-ordered conversation episodes chained per session (Neo4j)
- semantic: Deduplicated concepts with typed relationships (Neo4j + Pinecone)
- working: Derived, cached per-session state (topic, phase, goals, profile)
- goals: Session goals kept beside the episode chain (Neo4j)

Around them:

- context: Ranks and renders memories for a query under a token budget
- extraction: Promotes recurring episodic content into semantic memory
- extraction_queue: Bounded background queue that drives extraction

Example:
    from agent_memory.memory import InMemoryEpisodicStore, EpisodicMemory

    store = InMemoryEpisodicStore()
    await store.store(EpisodicMemory(user_id="u1", session_id="s1", content="I like Python"))
"""

from agent_memory.memory.cache import (
    InMemoryWorkingMemoryCache,
    RedisWorkingMemoryCache,
    WorkingMemoryCache,
    create_working_memory_cache,
)
from agent_memory.memory.context import MemoryContextAssembler
from agent_memory.memory.episodic import EpisodicStore, InMemoryEpisodicStore
from agent_memory.memory.episodic_graph import GraphEpisodicStore
from agent_memory.memory.extraction import SemanticExtractionPipeline
from agent_memory.memory.extraction_queue import ExtractionQueue
from agent_memory.memory.goals import GoalStore, InMemoryGoalStore
from agent_memory.memory.goals_graph import GraphGoalStore
from agent_memory.memory.models import (
    AssembledContext,
    ContextOptions,
    ConversationPhase,
    EpisodeContext,
    EpisodeKind,
    EpisodeMetadata,
    EpisodicMemory,
    EpisodicQuery,
    ExtractionStats,
    Goal,
    GoalStatus,
    Interaction,
    MemorySearchQuery,
    MemorySearchResult,
    MemoryStats,
    RelationKind,
    SemanticMemory,
    SemanticMetadata,
    WorkingMemoryContext,
)
from agent_memory.memory.semantic import InMemorySemanticStore, SemanticStore
from agent_memory.memory.semantic_vector import VectorSemanticStore
from agent_memory.memory.working import WorkingMemoryManager

__all__ = [
    "EpisodicStore",
    "InMemoryEpisodicStore",
    "GraphEpisodicStore",
    "SemanticStore",
    "InMemorySemanticStore",
    "VectorSemanticStore",
    "GoalStore",
    "InMemoryGoalStore",
    "GraphGoalStore",
    "MemoryContextAssembler",
    "WorkingMemoryManager",
    "WorkingMemoryCache",
    "InMemoryWorkingMemoryCache",
    "RedisWorkingMemoryCache",
    "create_working_memory_cache",
    "SemanticExtractionPipeline",
    "ExtractionQueue",
    "AssembledContext",
    "ContextOptions",
    "ConversationPhase",
    "EpisodeContext",
    "EpisodeKind",
    "EpisodeMetadata",
    "EpisodicMemory",
    "EpisodicQuery",
    "ExtractionStats",
    "Goal",
    "GoalStatus",
    "Interaction",
    "MemorySearchQuery",
    "MemorySearchResult",
    "MemoryStats",
    "RelationKind",
    "SemanticMemory",
    "SemanticMetadata",
    "WorkingMemoryContext",
]
