"""
External capability interfaces.

Memory code depends only on these protocols; the concrete adapters
(Ollama, Cohere, OpenAI embeddings and the Anthropic completion service)
are chosen by the dependency container from settings.
"""

from typing import Protocol, runtime_checkable

from agent_memory.core.exceptions import ProviderResponseError


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns text into a fixed-dimension vector."""

    @property
    def dimension(self) -> int: ...

    async def embed_text(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


@runtime_checkable
class TextCompletionProvider(Protocol):
    """Single-turn prompt completion."""

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> str: ...


def check_dimension(provider: str, vector: list[float], expected: int) -> list[float]:
    """Raise ProviderResponseError if a provider returned the wrong vector size."""
    if len(vector) != expected:
        raise ProviderResponseError(
            provider,
            f"Expected embedding dimension {expected}, got {len(vector)}",
            {"expected": expected, "actual": len(vector)},
        )
    return vector
