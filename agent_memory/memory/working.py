"""
Working memory manager.

Maintains derived, session-scoped state for a conversation: topic,
conversation phase, active goals, user profile and a token-bounded window
over the recent turns. Everything except goals is recomputable from the
episodic and semantic stores; the cache only saves recomputation cost.

Goals are kept in their own GoalStore so they never enter the session's
episode chain. Each stored turn records the phase the session reached, so
a recompute reads the phase from the newest turn instead of replaying the
whole session.

Usage:
    manager = WorkingMemoryManager(episodic, semantic, cache, settings.working_memory, settings.memory, goals=goals)
    context = await manager.get_working_memory("user-1", "session-9")
    context = await manager.record_interaction("user-1", "session-9", interaction)
"""

import asyncio
import math
import re
import time
from collections import Counter
from datetime import datetime
from typing import Optional

import structlog

from agent_memory.config.settings import MemorySettings, WorkingMemorySettings
from agent_memory.core.exceptions import (
    CompressionError,
    MemoryConnectionError,
    MemoryNotFoundError,
    MemoryValidationError,
    ProviderError,
    RetryableError,
)
from agent_memory.core.locks import KeyedLock
from agent_memory.knowledge.providers import TextCompletionProvider
from agent_memory.memory.cache import CacheEntry, WorkingMemoryCache
from agent_memory.memory.context import blended_score, extract_keywords, recency_score
from agent_memory.memory.episodic import EpisodicStore
from agent_memory.memory.extraction import parse_json_object
from agent_memory.memory.goals import GoalStore, InMemoryGoalStore, active_goals
from agent_memory.memory.models import (
    CompressionResult,
    ContextItem,
    ContextWindow,
    ConversationPhase,
    ConversationState,
    ConversationTurn,
    EpisodeKind,
    EpisodicMemory,
    EpisodicQuery,
    Goal,
    GoalStatus,
    Interaction,
    SemanticMemory,
    SessionMetadata,
    UserProfile,
    WorkingMemoryContext,
    WorkingMemoryMetrics,
    estimate_tokens,
    normalize_concept,
    utcnow,
)
from agent_memory.memory.semantic import SemanticStore
from agent_memory.monitoring.metrics import WORKING_MEMORY_LOOKUPS

logger = structlog.get_logger(__name__)

DEFAULT_TOPIC = "general conversation"
PROFILE_CATEGORIES = ["Preference", "Interest", "Expertise", "CommunicationStyle"]
TOPIC_WINDOW = 5

# =============================================================================
# Conversation phase
# =============================================================================

ALLOWED_TRANSITIONS: dict[ConversationPhase, frozenset[ConversationPhase]] = {
    ConversationPhase.GREETING: frozenset(
        {ConversationPhase.ACTIVE, ConversationPhase.PLANNING, ConversationPhase.WAITING}
    ),
    ConversationPhase.ACTIVE: frozenset(
        {ConversationPhase.ACTIVE, ConversationPhase.PLANNING, ConversationPhase.WAITING}
    ),
    ConversationPhase.PLANNING: frozenset(
        {ConversationPhase.PLANNING, ConversationPhase.WAITING, ConversationPhase.ACTIVE}
    ),
    ConversationPhase.WAITING: frozenset({ConversationPhase.WAITING, ConversationPhase.ACTIVE}),
    ConversationPhase.ERROR_RECOVERY: frozenset({ConversationPhase.ACTIVE}),
}

PLANNING_INTENTS = frozenset({"plan", "planning", "multi_step", "multi_step_task", "task_planning", "goal_setting"})
PLANNING_TOOL_COUNT = 2


def next_phase(current: ConversationPhase, interaction: Interaction) -> ConversationPhase:
    """
    Apply one interaction to the phase state machine.

    Any phase moves to error_recovery when the interaction carries an
    error. Otherwise the target is waiting (tool calls pending), planning
    (multi-step intent or several tools) or active; a target not allowed
    from `current` falls back to active.
    """
    if interaction.error:
        return ConversationPhase.ERROR_RECOVERY

    intent = interaction.intent.lower()
    if interaction.tools_pending > 0:
        target = ConversationPhase.WAITING
    elif intent in PLANNING_INTENTS or len(interaction.tools_used) >= PLANNING_TOOL_COUNT:
        target = ConversationPhase.PLANNING
    else:
        target = ConversationPhase.ACTIVE

    if target not in ALLOWED_TRANSITIONS[current]:
        return ConversationPhase.ACTIVE
    return target


# =============================================================================
# Turn text
# =============================================================================

USER_PREFIX = "User: "
ASSISTANT_PREFIX = "Assistant: "


def format_turn(user_input: str, assistant_response: str) -> str:
    lines = []
    if user_input:
        lines.append(f"{USER_PREFIX}{user_input}")
    if assistant_response:
        lines.append(f"{ASSISTANT_PREFIX}{assistant_response}")
    return "\n".join(lines)


def turn_text(user_input: str, assistant_response: str) -> str:
    """Both sides of a turn without speaker labels."""
    return " ".join(part for part in (user_input, assistant_response) if part)


def parse_turn(content: str) -> tuple[str, str]:
    """Split stored turn content back into (user_input, assistant_response)."""
    user, assistant = [], []
    target = user
    for line in content.split("\n"):
        if line.startswith(USER_PREFIX):
            target = user
            line = line[len(USER_PREFIX):]
        elif line.startswith(ASSISTANT_PREFIX):
            target = assistant
            line = line[len(ASSISTANT_PREFIX):]
        target.append(line)
    return "\n".join(user), "\n".join(assistant)


def interaction_from_episode(memory: EpisodicMemory) -> Interaction:
    user_input, assistant_response = parse_turn(memory.content)
    ctx = memory.context
    return Interaction(
        id=memory.id,
        timestamp=memory.timestamp,
        user_input=user_input,
        assistant_response=assistant_response,
        intent=ctx.intent or "unknown",
        confidence=ctx.confidence or 0.0,
        tools_used=list(ctx.tools_used),
        tools_pending=ctx.tools_pending,
        response_time_ms=ctx.response_time_ms,
        error=ctx.error,
    )


def replay_phase(turns: list[EpisodicMemory]) -> tuple[ConversationPhase, Optional[datetime]]:
    """
    Fold turns (oldest first) into the session phase and when it was entered.

    A turn that recorded its phase resets the fold to that phase. Turns
    stored without one go through the state machine.
    """
    phase, since = ConversationPhase.GREETING, None
    for memory in turns:
        ctx = memory.context
        if ctx.phase is not None:
            phase, since = ctx.phase, ctx.phase_since or memory.timestamp
            continue
        updated = next_phase(phase, interaction_from_episode(memory))
        if updated != phase:
            phase, since = updated, memory.timestamp
    return phase, since


# =============================================================================
# Goals
# =============================================================================

GOAL_PATTERNS = [
    re.compile(
        r"\b(?:i need to|i want to|i'd like to|i would like to|i have to|we need to|"
        r"help me(?: to)?|remind me to|let's|lets)\s+(?P<goal>[^.!?\n]{3,})",
        re.IGNORECASE,
    ),
    re.compile(
        r"^\s*(?:please\s+)?(?:can|could|would) you(?: please)?\s+(?P<goal>[^.!?\n]{3,})",
        re.IGNORECASE,
    ),
    re.compile(
        r"^\s*please\s+(?P<goal>[^.!?\n]{3,})",
        re.IGNORECASE,
    ),
]

GOAL_EXTRACTION_PROMPT = """Identify the goals the user is trying to accomplish in this conversation.

Conversation:
{conversation}

Respond with a JSON object in exactly this format:
{{"goals": [{{"description": "short imperative description", "priority": 1}}]}}

Priority is 1 (low) to 5 (high). Return an empty list when there is no goal."""

TOPIC_PROMPT = """Analyze this conversation and extract the main topic in 2-3 words:

Conversation: "{conversation}"

Return only the topic, no explanation."""


def extract_goal_phrases(text: str) -> list[str]:
    """Imperative or intent phrasing in `text`, e.g. "help me plan a trip"."""
    found: dict[str, str] = {}
    for pattern in GOAL_PATTERNS:
        for match in pattern.finditer(text):
            phrase = match.group("goal").strip().rstrip(",;:")
            if phrase:
                found.setdefault(normalize_concept(phrase), phrase)
        # Patterns are ordered most specific first; one that matches wins.
        if found:
            break
    return list(found.values())


# =============================================================================
# Profile / topic
# =============================================================================


def build_user_profile(concepts: list[SemanticMemory]) -> UserProfile:
    profile = UserProfile()
    ranked = sorted(concepts, key=lambda m: m.metadata.confidence, reverse=True)
    for memory in ranked:
        text = memory.description or memory.concept
        category = memory.metadata.category
        if category == "Preference":
            profile.preferences.append(text)
        elif category == "Interest":
            profile.interests.append(text)
        elif category == "Expertise":
            profile.expertise.append(text)
    styles = [m for m in ranked if m.metadata.category == "CommunicationStyle"]
    if styles:
        profile.communication_style = styles[0].concept
    return profile


def keyword_topic(texts: list[str], size: int = 3) -> str:
    counts: Counter[str] = Counter()
    for text in texts:
        counts.update(extract_keywords(text))
    if not counts:
        return DEFAULT_TOPIC
    return " ".join(word for word, _ in counts.most_common(size))


class WorkingMemoryManager:
    """
    Session-scoped working memory with a TTL cache and stale fallback.

    Args:
        episodic: Episodic store the session is read from
        semantic: Semantic store the user profile is built from
        cache: Working memory cache (Redis or in-process)
        settings: Working memory settings
        memory_settings: Blend weights used to rank turns for compression
        completion: Optional model for topic and goal extraction
        goals: Goal store. Defaults to an in-process store.
    """

    def __init__(
        self,
        episodic: EpisodicStore,
        semantic: SemanticStore,
        cache: WorkingMemoryCache,
        settings: WorkingMemorySettings,
        memory_settings: MemorySettings,
        completion: Optional[TextCompletionProvider] = None,
        goals: Optional[GoalStore] = None,
    ) -> None:
        self._episodic = episodic
        self._semantic = semantic
        self._cache = cache
        self._settings = settings
        self._memory_settings = memory_settings
        self._completion = completion
        self._goals = goals or InMemoryGoalStore()
        self._goal_locks = KeyedLock()

        self._total_retrievals = 0
        self._cache_hits = 0
        self._stale_served = 0
        self._total_retrieval_ms = 0.0
        self._active_sessions: set[tuple[str, str]] = set()

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------

    async def get_working_memory(self, user_id: str, session_id: str) -> WorkingMemoryContext:
        """
        Get the working memory for a session.

        Serves the cached context while it is younger than the TTL,
        otherwise recomputes it from the stores. If the stores are
        unavailable the last cached context is returned with `stale=True`;
        with nothing cached the error propagates.
        """
        started = time.perf_counter()
        self._total_retrievals += 1
        self._active_sessions.add((user_id, session_id))

        try:
            entry = await self._read_cache(user_id, session_id)
            if entry is not None and entry.age_seconds < self._settings.cache_ttl_seconds:
                self._cache_hits += 1
                WORKING_MEMORY_LOOKUPS.labels(result="hit").inc()
                logger.debug("working_memory_cache_hit", user_id=user_id, session_id=session_id)
                return entry.context

            try:
                context = await self._build(user_id, session_id)
            except RetryableError as e:
                if entry is None:
                    raise
                self._stale_served += 1
                WORKING_MEMORY_LOOKUPS.labels(result="stale").inc()
                logger.warning(
                    "working_memory_served_stale",
                    user_id=user_id,
                    session_id=session_id,
                    age_seconds=round(entry.age_seconds, 1),
                    error=str(e),
                )
                stale = entry.context
                stale.stale = True
                return stale

            WORKING_MEMORY_LOOKUPS.labels(result="miss").inc()
            await self._write_cache(context)
            logger.info(
                "working_memory_recomputed",
                user_id=user_id,
                session_id=session_id,
                topic=context.current_topic,
                phase=context.conversation_state.state.value,
                goals=len(context.active_goals),
            )
            return context
        finally:
            self._total_retrieval_ms += (time.perf_counter() - started) * 1000

    async def _build(self, user_id: str, session_id: str) -> WorkingMemoryContext:
        recent, stats, goals, concepts = await asyncio.gather(
            self._episodic.search(
                EpisodicQuery(
                    user_id=user_id,
                    session_id=session_id,
                    kinds=[EpisodeKind.TURN],
                    limit=self._settings.recent_episodes,
                )
            ),
            self._episodic.session_stats(user_id, session_id),
            self._goals.list_goals(user_id, session_id),
            self._semantic.list_concepts(user_id, categories=PROFILE_CATEGORIES),
        )
        turns = list(reversed(recent))

        phase, last_transition = replay_phase(turns)
        if last_transition is None:
            last_transition = turns[0].timestamp if turns else utcnow()

        # Turn numbers count from the start of the session, not the window.
        offset = max(stats.turns - len(turns), 0)
        history = [
            self._turn(offset + index + 1, interaction_from_episode(m), m.metadata.importance)
            for index, m in enumerate(turns)
        ][-self._settings.history_size:]

        topic = await self._extract_topic([turn_text(*parse_turn(m.content)) for m in turns[-TOPIC_WINDOW:]])

        context = WorkingMemoryContext(
            conversation_id=session_id,
            user_id=user_id,
            current_topic=topic,
            conversation_state=ConversationState(
                state=phase,
                topic=topic,
                last_transition=last_transition,
                context_relevance=sum(m.metadata.importance for m in turns) / len(turns) if turns else 0.5,
            ),
            active_goals=active_goals(goals),
            user_profile=build_user_profile(concepts),
            session_metadata=SessionMetadata(
                session_id=session_id,
                start_time=stats.first or utcnow(),
                last_activity=stats.last or utcnow(),
                total_interactions=stats.turns,
                timed_interactions=stats.timed_turns,
                average_response_time_ms=stats.average_response_time_ms,
                session_goals=[g.id for g in goals],
            ),
            last_interaction=interaction_from_episode(turns[-1]) if turns else None,
            conversation_history=history,
        )
        self._fit_window(context)
        return context

    # -------------------------------------------------------------------------
    # Interactions
    # -------------------------------------------------------------------------

    async def phase_after(
        self,
        user_id: str,
        session_id: str,
        interaction: Interaction,
    ) -> tuple[ConversationPhase, datetime]:
        """
        Phase the session reaches with `interaction`, and since when.

        Reads the newest stored turn, so callers hold the session's append
        lock until the interaction's own turn is stored.
        """
        query = EpisodicQuery(user_id=user_id, session_id=session_id, kinds=[EpisodeKind.TURN], limit=1)
        latest = await self._episodic.search(query)
        if latest and latest[0].context.phase is None:
            latest = await self._episodic.search(query.model_copy(update={"limit": self._settings.recent_episodes}))

        phase, since = replay_phase(list(reversed(latest)))
        updated = next_phase(phase, interaction)
        if updated != phase or since is None:
            return updated, interaction.timestamp
        return phase, since

    async def record_interaction(
        self,
        user_id: str,
        session_id: str,
        interaction: Interaction,
        importance: float = 0.5,
    ) -> WorkingMemoryContext:
        """
        Apply a completed interaction to the session's working memory.

        Advances the phase state machine, updates session counters and the
        turn history, re-derives the topic and records any goals phrased in
        the user's input. When nothing is cached the context is rebuilt from
        the stores; if the interaction's turn is already stored there it is
        not applied a second time.
        """
        entry = await self._read_cache(user_id, session_id)
        if entry is not None:
            context = entry.context
            await self._apply(context, interaction, importance)
        else:
            context = await self._build(user_id, session_id)
            if context.last_interaction is None or context.last_interaction.id != interaction.id:
                await self._apply(context, interaction, importance)
        context.stale = False

        self._fit_window(context)
        await self._write_cache(context)

        if interaction.user_input:
            created = await self.extract_goals(user_id, session_id, [interaction.user_input])
            if created:
                context = await self._refresh_goals(context)

        return context

    async def _apply(self, context: WorkingMemoryContext, interaction: Interaction, importance: float) -> None:
        state = context.conversation_state
        phase = next_phase(state.state, interaction)
        if phase != state.state:
            logger.debug(
                "conversation_phase_changed",
                session_id=context.conversation_id,
                previous=state.state.value,
                current=phase.value,
            )
            state.state = phase
            state.last_transition = interaction.timestamp

        meta = context.session_metadata
        if interaction.response_time_ms is not None:
            timed = meta.timed_interactions
            meta.average_response_time_ms = (
                meta.average_response_time_ms * timed + interaction.response_time_ms
            ) / (timed + 1)
            meta.timed_interactions += 1
        meta.total_interactions += 1
        meta.last_activity = interaction.timestamp
        context.last_interaction = interaction

        turn_number = context.conversation_history[-1].turn_number + 1 if context.conversation_history else 1
        context.conversation_history.append(self._turn(turn_number, interaction, importance))
        context.conversation_history = context.conversation_history[-self._settings.history_size:]

        topic = await self._extract_topic(
            [turn_text(t.user_input, t.assistant_response) for t in context.conversation_history[-TOPIC_WINDOW:]]
        )
        if topic != context.current_topic:
            meta.context_switches += 1
            context.current_topic = topic
            state.topic = topic

    @staticmethod
    def _turn(number: int, interaction: Interaction, importance: float) -> ConversationTurn:
        return ConversationTurn(
            turn_number=number,
            timestamp=interaction.timestamp,
            user_input=interaction.user_input,
            assistant_response=interaction.assistant_response,
            intent=interaction.intent,
            confidence=interaction.confidence,
            context_relevance=importance,
            tools_used=list(interaction.tools_used),
        )

    # -------------------------------------------------------------------------
    # Context window
    # -------------------------------------------------------------------------

    def compress(self, window: ContextWindow, items: list[ContextItem]) -> CompressionResult:
        """
        Evict the lowest-scored items until the window is back under budget.

        Compression only triggers when `current_tokens > max_tokens` and then
        drops items until `current_tokens <= max_tokens * (1 - compression_ratio)`.
        Stored memories are never touched. When nothing is left the result
        carries the CompressionError message instead of raising.
        """
        current = sum(i.tokens for i in items)
        if current <= window.max_tokens:
            return CompressionResult(
                window=window.model_copy(update={"current_tokens": current}),
                items=list(items),
            )

        target = math.floor(window.max_tokens * (1 - self._settings.compression_ratio))
        evicted: set[int] = set()
        remaining = current
        for index in sorted(range(len(items)), key=lambda i: (items[i].score, i)):
            if remaining <= target:
                break
            evicted.add(index)
            remaining -= items[index].tokens

        kept = [item for index, item in enumerate(items) if index not in evicted]
        compressed = window.model_copy(
            update={
                "current_tokens": max(remaining, 0),
                "compression_ratio": 1 - remaining / current if current else 0.0,
            }
        )

        error = None
        if not kept:
            error = str(CompressionError(truncated_count=len(items), max_tokens=window.max_tokens))
            logger.warning("context_window_compression_exhausted", items=len(items), max_tokens=window.max_tokens)

        logger.debug(
            "context_window_compressed",
            before=current,
            after=compressed.current_tokens,
            evicted=len(evicted),
        )
        return CompressionResult(window=compressed, items=kept, truncated_count=len(evicted), error=error)

    def _fit_window(self, context: WorkingMemoryContext) -> None:
        """Bound the turn history by the token budget."""
        now = utcnow()
        items = []
        for turn in context.conversation_history:
            text = format_turn(turn.user_input, turn.assistant_response)
            recency = recency_score(turn.timestamp, now, self._memory_settings.recency_half_life_hours)
            items.append(
                ContextItem(
                    kind="episodic",
                    id=str(turn.turn_number),
                    text=text,
                    timestamp=turn.timestamp,
                    recency=recency,
                    importance=turn.context_relevance,
                    score=blended_score(self._memory_settings, recency, 0.0, turn.context_relevance),
                    tokens=estimate_tokens(text),
                )
            )

        timestamps = [t.timestamp for t in context.conversation_history]
        window = ContextWindow(
            start_time=min(timestamps) if timestamps else None,
            end_time=max(timestamps) if timestamps else None,
            relevance_score=context.conversation_state.context_relevance,
            max_tokens=self._settings.max_tokens,
            current_tokens=sum(i.tokens for i in items),
        )
        result = self.compress(window, items)
        kept = {i.id for i in result.items}
        context.conversation_history = [t for t in context.conversation_history if str(t.turn_number) in kept]
        context.context_window = result.window

    # -------------------------------------------------------------------------
    # Goals
    # -------------------------------------------------------------------------

    async def create_goal(
        self,
        user_id: str,
        session_id: str,
        description: str,
        priority: int = 1,
    ) -> Goal:
        """
        Create a goal for the session.

        When the number of active goals exceeds `max_active_goals` the
        lowest-priority ones are marked cancelled, which may include the
        goal just created.
        """
        goal = Goal(description=description, priority=priority)
        async with self._goal_locks.hold((user_id, session_id)):
            await self._goals.save(user_id, session_id, goal)
            logger.info("goal_created", user_id=user_id, session_id=session_id, goal_id=goal.id, priority=priority)

            live = active_goals(await self._goals.list_goals(user_id, session_id))
            for evicted in live[self._settings.max_active_goals:]:
                evicted.status = GoalStatus.CANCELLED
                evicted.updated_at = utcnow()
                await self._goals.save(user_id, session_id, evicted)
                logger.info("goal_evicted", user_id=user_id, session_id=session_id, goal_id=evicted.id)
                if evicted.id == goal.id:
                    goal = evicted

        await self.invalidate(user_id, session_id)
        return goal

    async def update_goal_status(
        self,
        user_id: str,
        session_id: str,
        goal_id: str,
        status: GoalStatus,
    ) -> Goal:
        """
        Move a goal to a new status.

        Raises:
            MemoryNotFoundError: If the goal does not exist in the session
            MemoryValidationError: If the goal is already completed or cancelled
        """
        async with self._goal_locks.hold((user_id, session_id)):
            goal = await self._goals.get(user_id, session_id, goal_id)
            if goal is None:
                raise MemoryNotFoundError("goal", goal_id)
            if goal.status == status:
                return goal
            if goal.status.is_terminal:
                raise MemoryValidationError(
                    f"Goal {goal_id} is already {goal.status.value}",
                    {"goal_id": goal_id, "status": goal.status.value, "requested": status.value},
                )

            goal.status = status
            goal.updated_at = utcnow()
            await self._goals.save(user_id, session_id, goal)
        logger.info("goal_status_updated", user_id=user_id, session_id=session_id, goal_id=goal_id, status=status.value)

        await self.invalidate(user_id, session_id)
        return goal

    async def extract_goals(
        self,
        user_id: str,
        session_id: str,
        texts: Optional[list[str]] = None,
    ) -> list[Goal]:
        """
        Create goals from imperative phrasing.

        Scans `texts`, or the user side of the session's recent turns, and
        creates a goal for each phrase not already tracked. Uses the
        completion model when LLM goal extraction is enabled and falls back
        to the phrase heuristic if it fails.
        """
        if texts is None:
            recent = await self._episodic.search(
                EpisodicQuery(
                    user_id=user_id,
                    session_id=session_id,
                    kinds=[EpisodeKind.TURN],
                    limit=self._settings.history_size,
                )
            )
            texts = [parse_turn(m.content)[0] for m in reversed(recent)]

        candidates = await self._goal_candidates(texts)
        if not candidates:
            return []

        known = {normalize_concept(g.description) for g in await self._goals.list_goals(user_id, session_id)}
        created = []
        for description, priority in candidates:
            if normalize_concept(description) in known:
                continue
            known.add(normalize_concept(description))
            created.append(await self.create_goal(user_id, session_id, description, priority))
        return created

    async def _goal_candidates(self, texts: list[str]) -> list[tuple[str, int]]:
        if self._settings.llm_goal_extraction and self._completion is not None:
            prompt = GOAL_EXTRACTION_PROMPT.format(conversation="\n".join(texts))
            try:
                response = await self._completion.complete(prompt, temperature=0.2, max_tokens=500)
                parsed = parse_json_object(response)
                return [
                    (str(g["description"]).strip(), int(g.get("priority", 1)))
                    for g in parsed.get("goals", [])
                    if isinstance(g, dict) and str(g.get("description", "")).strip()
                ]
            except (ProviderError, MemoryConnectionError, ValueError, KeyError, TypeError) as e:
                logger.warning("goal_extraction_llm_failed", error=str(e))

        phrases: dict[str, str] = {}
        for text in texts:
            for phrase in extract_goal_phrases(text):
                phrases.setdefault(normalize_concept(phrase), phrase)
        return [(phrase, 1) for phrase in phrases.values()]

    async def _refresh_goals(self, context: WorkingMemoryContext) -> WorkingMemoryContext:
        goals = await self._goals.list_goals(context.user_id, context.conversation_id)
        context.active_goals = active_goals(goals)
        context.session_metadata.session_goals = [g.id for g in goals]
        await self._write_cache(context)
        return context

    # -------------------------------------------------------------------------
    # Topic
    # -------------------------------------------------------------------------

    async def _extract_topic(self, texts: list[str]) -> str:
        texts = [t for t in texts if t.strip()]
        if not texts:
            return DEFAULT_TOPIC

        if self._settings.llm_topic_extraction and self._completion is not None:
            try:
                response = await self._completion.complete(
                    TOPIC_PROMPT.format(conversation=" ".join(texts)),
                    temperature=0.3,
                    max_tokens=50,
                )
                topic = response.strip().strip('"').strip()
                if topic:
                    return topic
            except (ProviderError, MemoryConnectionError) as e:
                logger.warning("topic_extraction_llm_failed", error=str(e))

        return keyword_topic(texts)

    # -------------------------------------------------------------------------
    # Cache
    # -------------------------------------------------------------------------

    async def _read_cache(self, user_id: str, session_id: str) -> Optional[CacheEntry]:
        try:
            return await self._cache.get(user_id, session_id)
        except MemoryConnectionError as e:
            logger.warning("working_memory_cache_read_failed", user_id=user_id, session_id=session_id, error=str(e))
            return None

    async def _write_cache(self, context: WorkingMemoryContext) -> None:
        try:
            await self._cache.set(context.user_id, context.conversation_id, context)
        except MemoryConnectionError as e:
            logger.warning(
                "working_memory_cache_write_failed",
                user_id=context.user_id,
                session_id=context.conversation_id,
                error=str(e),
            )

    async def invalidate(self, user_id: str, session_id: str) -> None:
        await self._cache.delete(user_id, session_id)

    async def invalidate_user(self, user_id: str) -> None:
        await self._cache.clear_user(user_id)
        self._active_sessions = {k for k in self._active_sessions if k[0] != user_id}

    def get_performance_metrics(self) -> WorkingMemoryMetrics:
        retrievals = self._total_retrievals
        return WorkingMemoryMetrics(
            total_retrievals=retrievals,
            cache_hits=self._cache_hits,
            cache_hit_rate=self._cache_hits / retrievals if retrievals else 0.0,
            average_retrieval_time_ms=self._total_retrieval_ms / retrievals if retrievals else 0.0,
            stale_served=self._stale_served,
            active_sessions=len(self._active_sessions),
        )
