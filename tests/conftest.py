"""
Pytest Configuration and Shared Fixtures.

This module provides common fixtures for all tests:

- settings: Settings isolated from the environment and .env
- embedder: Deterministic fake embedding provider
- completion: Scripted fake completion provider
- episodic_store / semantic_store: In-memory stores
- service: Initialized MemoryService over the in-memory stores
"""

import zlib

import pytest

from agent_memory.config.settings import ResilienceSettings, Settings
from agent_memory.core.exceptions import ProviderConnectionError
from agent_memory.core.retry import RetryPolicy
from agent_memory.memory.episodic import InMemoryEpisodicStore
from agent_memory.memory.semantic import InMemorySemanticStore
from agent_memory.service import MemoryService

DIMENSION = 8


class FakeEmbedder:
    """
    Bag-of-words embedder with stable buckets.

    Texts in `vectors` get exactly that vector, which lets a test pin the
    cosine similarity between two concepts. The first `failures` calls
    raise ProviderConnectionError.
    """

    def __init__(self, dimension: int = DIMENSION, vectors: dict[str, list[float]] | None = None):
        self._dimension = dimension
        self.vectors = dict(vectors or {})
        self.calls: list[str] = []
        self.failures = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed_text(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.failures:
            self.failures -= 1
            raise ProviderConnectionError("fake", "connection reset")
        if text in self.vectors:
            return list(self.vectors[text])
        vector = [0.0] * self._dimension
        for word in text.lower().split():
            vector[zlib.crc32(word.encode()) % self._dimension] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed_text(t) for t in texts]


class FakeCompletion:
    """Returns queued responses in order, then `default`. Exceptions are raised."""

    def __init__(self, responses=None, default: str = '{"concepts": [], "relationships": []}'):
        self.responses = list(responses or [])
        self.default = default
        self.prompts: list[str] = []

    async def complete(self, prompt: str, *, temperature: float = 0.3, max_tokens: int = 2000) -> str:
        self.prompts.append(prompt)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return self.default


@pytest.fixture
def settings() -> Settings:
    """Default settings, ignoring any local .env file. Retries do not back off."""
    return Settings(
        _env_file=None,
        resilience=ResilienceSettings(min_backoff_seconds=0.0, max_backoff_seconds=0.0),
    )


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def episodic_store() -> InMemoryEpisodicStore:
    return InMemoryEpisodicStore()


@pytest.fixture
def semantic_store(embedder, settings) -> InMemorySemanticStore:
    return InMemorySemanticStore(embedder, retry=RetryPolicy.from_settings(settings.resilience))


@pytest.fixture
async def service(episodic_store, semantic_store, embedder, completion, settings):
    """Initialized MemoryService without the background queue."""
    memory_service = MemoryService(
        episodic=episodic_store,
        semantic=semantic_store,
        embedder=embedder,
        settings=settings,
        completion=completion,
        run_extraction_queue=False,
    )
    await memory_service.init()
    yield memory_service
    await memory_service.close()
