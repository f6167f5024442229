"""Pydantic models for episodic, semantic and working memory."""

import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    """Fixed-width UTC ISO string; sorts lexicographically in time order."""
    return ensure_utc(value).isoformat(timespec="microseconds")


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text) / 4)


_WHITESPACE = re.compile(r"\s+")


def normalize_concept(concept: str) -> str:
    return _WHITESPACE.sub(" ", concept).strip().casefold()


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# Enums
# =============================================================================


class EpisodeKind(str, Enum):
    """What an episode records."""
    TURN = "turn"
    NOTE = "note"


class GoalStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (GoalStatus.COMPLETED, GoalStatus.CANCELLED)


class ConversationPhase(str, Enum):
    GREETING = "greeting"
    ACTIVE = "active"
    PLANNING = "planning"
    WAITING = "waiting"
    ERROR_RECOVERY = "error_recovery"


class RelationKind(str, Enum):
    """Typed relationship between two semantic memories."""
    SIMILAR = "similar"
    PARENT = "parent"
    CHILD = "child"
    RELATED = "related"
    CAUSES = "causes"
    CAUSED_BY = "caused_by"
    PART_OF = "part_of"
    HAS_PARTS = "has_parts"
    OPPOSITE = "opposite"
    INSTANCE_OF = "instance_of"


class EpisodicRelation(str, Enum):
    """Edges followed by EpisodicStore.get_related."""
    RELATED = "related"
    NEXT = "next"
    PREVIOUS = "previous"


# =============================================================================
# Episodic Memory
# =============================================================================


class EpisodeContext(BaseModel):
    """Typed context of an episode. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = 1
    kind: EpisodeKind = EpisodeKind.TURN
    role: Optional[str] = None
    intent: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    tools_used: list[str] = Field(default_factory=list)
    tools_pending: int = Field(0, ge=0, description="Tool calls still awaiting results")
    response_time_ms: Optional[float] = Field(None, ge=0.0)
    error: Optional[str] = None
    phase: Optional[ConversationPhase] = Field(None, description="Conversation phase after this turn")
    phase_since: Optional[datetime] = Field(None, description="When the session entered `phase`")


class EpisodeMetadata(BaseModel):
    source: str = "conversation"
    importance: float = Field(0.5, ge=0.0, le=1.0)
    tags: list[str] = Field(default_factory=list)
    location: Optional[str] = None
    participants: Optional[list[str]] = None


class EpisodeRelationships(BaseModel):
    previous: Optional[str] = None
    next: Optional[str] = None
    related: list[str] = Field(default_factory=list)


class EpisodicMemory(BaseModel):
    """A discrete, timestamped interaction event in a session."""

    id: str = Field(default_factory=new_id)
    user_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    content: str = Field(..., min_length=1)
    context: EpisodeContext = Field(default_factory=EpisodeContext)
    metadata: EpisodeMetadata = Field(default_factory=EpisodeMetadata)
    relationships: EpisodeRelationships = Field(default_factory=EpisodeRelationships)

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class TimeRange(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _ordered(self) -> "TimeRange":
        self.start = ensure_utc(self.start)
        self.end = ensure_utc(self.end)
        if self.end < self.start:
            raise ValueError("time_range end must not precede start")
        return self


class ImportanceRange(BaseModel):
    min: float = Field(0.0, ge=0.0, le=1.0)
    max: float = Field(1.0, ge=0.0, le=1.0)


class EpisodicQuery(BaseModel):
    user_id: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    time_range: Optional[TimeRange] = None
    tags: Optional[list[str]] = Field(None, description="Match episodes carrying any of these tags")
    importance_range: Optional[ImportanceRange] = None
    kinds: Optional[list[EpisodeKind]] = None
    limit: int = Field(50, ge=1, le=1000)


class EpisodicUpdate(BaseModel):
    """Mutable parts of an episode. timestamp and user_id are never updatable."""

    model_config = ConfigDict(extra="forbid")

    content: Optional[str] = Field(None, min_length=1)
    context: Optional[EpisodeContext] = None
    metadata: Optional[EpisodeMetadata] = None
    related: Optional[list[str]] = None

    @property
    def touches_body(self) -> bool:
        return self.content is not None or self.context is not None or self.metadata is not None


class EpisodicStats(BaseModel):
    count: int = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None


class SessionStats(BaseModel):
    """Aggregate over the turn episodes of one session."""

    turns: int = 0
    timed_turns: int = 0
    first: Optional[datetime] = None
    last: Optional[datetime] = None
    average_response_time_ms: float = 0.0


# =============================================================================
# Semantic Memory
# =============================================================================


class ExtractionMetadata(BaseModel):
    source_memory_ids: list[str] = Field(default_factory=list)
    extraction_timestamp: datetime = Field(default_factory=utcnow)
    extraction_confidence: float = Field(0.0, ge=0.0, le=1.0)
    keywords: list[str] = Field(default_factory=list)
    processing_time_ms: float = 0.0


class SemanticMetadata(BaseModel):
    category: str = Field("General", min_length=1)
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    source: str = "manual"
    last_accessed: datetime = Field(default_factory=utcnow)
    access_count: int = Field(0, ge=0)
    extraction_metadata: Optional[ExtractionMetadata] = None

    @field_validator("last_accessed")
    @classmethod
    def _utc_last_accessed(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class SemanticRelationships(BaseModel):
    similar: list[str] = Field(default_factory=list)
    parent: Optional[str] = None
    children: list[str] = Field(default_factory=list)
    related: list[str] = Field(default_factory=list)
    causes: list[str] = Field(default_factory=list)
    caused_by: list[str] = Field(default_factory=list)
    part_of: list[str] = Field(default_factory=list)
    has_parts: list[str] = Field(default_factory=list)
    opposite: list[str] = Field(default_factory=list)
    instance_of: list[str] = Field(default_factory=list)


class SemanticMemory(BaseModel):
    """A durable concept derived from episodes."""

    id: str = Field(default_factory=new_id)
    user_id: str = Field(..., min_length=1)
    concept: str = Field(..., min_length=1)
    description: str = ""
    vector: Optional[list[float]] = None
    metadata: SemanticMetadata = Field(default_factory=SemanticMetadata)
    relationships: SemanticRelationships = Field(default_factory=SemanticRelationships)

    @property
    def embedding_text(self) -> str:
        return f"{self.concept}: {self.description}"

    @property
    def concept_key(self) -> str:
        return concept_key(self.user_id, self.metadata.category, self.concept)


def concept_key(user_id: str, category: str, concept: str) -> str:
    """Uniqueness key of a concept within a user's semantic memory."""
    return f"{user_id}|{normalize_concept(category)}|{normalize_concept(concept)}"


class ScoredSemanticMemory(BaseModel):
    memory: SemanticMemory
    score: float = Field(..., ge=-1.0, le=1.0)


class SemanticUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    concept: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[str] = Field(None, min_length=1)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    access_count: Optional[int] = Field(None, ge=0)
    extraction_metadata: Optional[ExtractionMetadata] = None

    @property
    def changes_embedding(self) -> bool:
        return self.concept is not None or self.description is not None


class SemanticStats(BaseModel):
    count: int = 0
    categories: list[str] = Field(default_factory=list)


# =============================================================================
# Extraction
# =============================================================================


class ExtractedConcept(BaseModel):
    """A concept candidate as returned by the completion model."""

    model_config = ConfigDict(populate_by_name=True)

    concept: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    confidence: float
    source_memory_id: Optional[str] = Field(None, alias="sourceMemoryId")
    keywords: list[str] = Field(default_factory=list)

    @field_validator("concept", "description", "category")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return min(1.0, max(0.0, value))


class ExtractedRelationship(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source_concept: str = Field(..., min_length=1, alias="sourceConcept")
    target_concept: str = Field(..., min_length=1, alias="targetConcept")
    relationship_type: RelationKind = Field(..., alias="relationshipType")
    confidence: float
    description: str = ""

    @field_validator("confidence")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return min(1.0, max(0.0, value))


class ExtractionStats(BaseModel):
    extracted_concepts: int = 0
    created: int = 0
    merged: int = 0
    extracted_relationships: int = 0
    skipped_candidates: int = 0
    failed_batches: int = 0
    processing_time_ms: float = 0.0


class ExtractionSummary(BaseModel):
    """Aggregate view over a user's extracted concepts."""

    total_extractions: int = 0
    total_concepts: int = 0
    average_confidence: float = 0.0
    concepts_by_category: dict[str, int] = Field(default_factory=dict)
    last_extraction: Optional[datetime] = None


# =============================================================================
# Context Assembly
# =============================================================================


class ContextOptions(BaseModel):
    """Per-call overrides; unset fields fall back to configuration."""

    max_episodic: Optional[int] = Field(None, ge=0)
    max_semantic: Optional[int] = Field(None, ge=0)
    similarity_threshold: Optional[float] = Field(None, ge=-1.0, le=1.0)
    max_items: Optional[int] = Field(None, ge=0)
    max_tokens: Optional[int] = Field(None, ge=1)


class ContextItem(BaseModel):
    kind: Literal["episodic", "semantic"]
    id: str
    text: str
    timestamp: datetime
    recency: float = 0.0
    similarity: float = 0.0
    importance: float = 0.0
    score: float = 0.0
    tokens: int = 0
    truncated: bool = False


class ContextWindow(BaseModel):
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    relevance_score: float = 0.0
    max_tokens: int = 4000
    current_tokens: int = 0
    compression_ratio: float = 0.0


class AssembledContext(BaseModel):
    enhanced_context: str = ""
    episodic: list[EpisodicMemory] = Field(default_factory=list)
    semantic: list[ScoredSemanticMemory] = Field(default_factory=list)
    items: list[ContextItem] = Field(default_factory=list)
    context_window: ContextWindow = Field(default_factory=ContextWindow)
    truncated_count: int = 0
    error: Optional[str] = None


class CompressionResult(BaseModel):
    window: ContextWindow
    items: list[ContextItem] = Field(default_factory=list)
    truncated_count: int = 0
    error: Optional[str] = None


# =============================================================================
# Working Memory
# =============================================================================


class Goal(BaseModel):
    id: str = Field(default_factory=new_id)
    description: str = Field(..., min_length=1)
    priority: int = 1
    status: GoalStatus = GoalStatus.PENDING
    subgoals: list[str] = Field(default_factory=list)
    success_criteria: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConversationState(BaseModel):
    state: ConversationPhase = ConversationPhase.GREETING
    topic: str = "general conversation"
    last_transition: datetime = Field(default_factory=utcnow)
    context_relevance: float = 0.5


class UserProfile(BaseModel):
    preferences: list[str] = Field(default_factory=list)
    communication_style: str = "conversational"
    formality: str = "medium"
    response_length: str = "detailed"
    interests: list[str] = Field(default_factory=list)
    expertise: list[str] = Field(default_factory=list)
    personality: str = "helpful"


class SessionMetadata(BaseModel):
    session_id: str
    start_time: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    total_interactions: int = 0
    timed_interactions: int = Field(0, description="Interactions that reported a response time")
    average_response_time_ms: float = 0.0
    session_goals: list[str] = Field(default_factory=list)
    context_switches: int = 0


class Interaction(BaseModel):
    """One user/assistant exchange as reported by the caller."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    user_input: str = ""
    assistant_response: str = ""
    intent: str = "unknown"
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    tools_used: list[str] = Field(default_factory=list)
    tools_pending: int = Field(0, ge=0)
    response_time_ms: Optional[float] = Field(None, ge=0.0)
    error: Optional[str] = None
    memory_retrieved: int = 0


class ConversationTurn(BaseModel):
    turn_number: int
    timestamp: datetime
    user_input: str = ""
    assistant_response: str = ""
    intent: str = "unknown"
    confidence: float = 0.0
    context_relevance: float = 0.0
    tools_used: list[str] = Field(default_factory=list)


class WorkingMemoryContext(BaseModel):
    """Derived per-session state. Recomputable from the stores; never persisted."""

    conversation_id: str
    user_id: str
    current_topic: str = "general conversation"
    conversation_state: ConversationState = Field(default_factory=ConversationState)
    active_goals: list[Goal] = Field(default_factory=list)
    context_window: ContextWindow = Field(default_factory=ContextWindow)
    user_profile: UserProfile = Field(default_factory=UserProfile)
    session_metadata: SessionMetadata
    last_interaction: Optional[Interaction] = None
    conversation_history: list[ConversationTurn] = Field(default_factory=list)
    stale: bool = False


class WorkingMemoryMetrics(BaseModel):
    total_retrievals: int = 0
    cache_hits: int = 0
    cache_hit_rate: float = 0.0
    average_retrieval_time_ms: float = 0.0
    stale_served: int = 0
    active_sessions: int = 0


# =============================================================================
# Service Queries and Results
# =============================================================================


class SearchFilters(BaseModel):
    time_range: Optional[TimeRange] = None
    tags: Optional[list[str]] = None
    importance_range: Optional[ImportanceRange] = None
    categories: Optional[list[str]] = None


class MemorySearchQuery(BaseModel):
    user_id: str = Field(..., min_length=1)
    query: str = ""
    type: Literal["episodic", "semantic", "both"] = "both"
    session_id: Optional[str] = None
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int = Field(10, ge=1, le=1000)
    threshold: Optional[float] = Field(None, ge=-1.0, le=1.0)


class MemorySearchResult(BaseModel):
    episodic: list[EpisodicMemory] = Field(default_factory=list)
    episodic_scores: list[float] = Field(default_factory=list)
    semantic: list[SemanticMemory] = Field(default_factory=list)
    semantic_scores: list[float] = Field(default_factory=list)


class MemoryStats(BaseModel):
    episodic: EpisodicStats = Field(default_factory=EpisodicStats)
    semantic: SemanticStats = Field(default_factory=SemanticStats)


class RelatedMemories(BaseModel):
    episodic: list[EpisodicMemory] = Field(default_factory=list)
    semantic: list[SemanticMemory] = Field(default_factory=list)
