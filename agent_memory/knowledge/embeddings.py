"""
OpenAI Embeddings Service.

Provides text embedding generation using OpenAI's text-embedding-3 models,
truncated server-side to the deployment's configured dimension.
"""

from __future__ import annotations

import structlog
from openai import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)

from agent_memory.core.exceptions import ProviderConnectionError, ProviderResponseError
from agent_memory.knowledge.providers import check_dimension

logger = structlog.get_logger(__name__)

_TRANSIENT_ERRORS = (RateLimitError, APIConnectionError, APITimeoutError, InternalServerError)


class EmbeddingsService:
    """
    OpenAI embeddings service.

    Usage:
        service = EmbeddingsService(api_key, model="text-embedding-3-small", dimension=768)
        vector = await service.embed_text("User is learning Rust")
    """

    PROVIDER = "openai"
    MAX_BATCH_SIZE = 2048  # OpenAI limit

    def __init__(self, api_key: str, model: str, dimension: int) -> None:
        self._api_key = api_key
        self._model = model
        self._dimension = dimension
        self._client: AsyncOpenAI | None = None

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def client(self) -> AsyncOpenAI:
        """Get or create the OpenAI async client."""
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def _embed_batch_request(self, texts: list[str]) -> list[list[float]]:
        try:
            response = await self.client.embeddings.create(
                model=self._model,
                input=texts,
                dimensions=self._dimension,
            )
        except _TRANSIENT_ERRORS as e:
            logger.warning("openai_embedding_transient_error", error=str(e))
            raise ProviderConnectionError(self.PROVIDER, str(e), {"model": self._model}) from e
        except APIError as e:
            logger.error("openai_embedding_failed", error=str(e))
            raise ProviderResponseError(self.PROVIDER, str(e), {"model": self._model}) from e

        # Sort by index to maintain order
        sorted_data = sorted(response.data, key=lambda x: x.index)
        return [check_dimension(self.PROVIDER, item.embedding, self._dimension) for item in sorted_data]

    async def embed_text(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Raises:
            ValueError: If text is empty.
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        embedding = (await self._embed_batch_request([text]))[0]
        logger.debug("embedding_generated", text_length=len(text), dimension=len(embedding))
        return embedding

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts in input order."""
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise ValueError("Texts cannot be empty")

        result: list[list[float]] = []
        for i in range(0, len(texts), self.MAX_BATCH_SIZE):
            result.extend(await self._embed_batch_request(texts[i : i + self.MAX_BATCH_SIZE]))

        logger.info("embedding_batch_completed", total_texts=len(texts))
        return result
