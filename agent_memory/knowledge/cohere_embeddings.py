"""
Cohere Embeddings Service.

Provides text embedding generation using Cohere's embed-v3 models with
batch processing. Rate limits and outages surface as ProviderConnectionError
so the caller's RetryPolicy backs off.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor

import cohere
import structlog

from agent_memory.core.exceptions import ProviderConnectionError, ProviderResponseError
from agent_memory.knowledge.providers import check_dimension

logger = structlog.get_logger(__name__)

# Thread pool for sync Cohere client
_executor = ThreadPoolExecutor(max_workers=4)

_RETRYABLE_MARKERS = ("rate", "limit", "timeout", "unavailable")


def _is_retryable(exception: BaseException) -> bool:
    """Check if a Cohere failure is transient."""
    error_str = str(exception).lower()
    return any(keyword in error_str for keyword in _RETRYABLE_MARKERS)


class CohereEmbeddingsService:
    """
    Cohere embeddings service.

    The model's native dimension must match `embedding.dimensions`; a
    vector of any other length is rejected as a ProviderResponseError.

    Usage:
        service = CohereEmbeddingsService(api_key, model="embed-english-v3.0", dimension=1024)
        vector = await service.embed_text("Prefers concise answers")
    """

    PROVIDER = "cohere"
    MAX_BATCH_SIZE = 96  # Cohere limit per request
    INPUT_TYPE_DOCUMENT = "search_document"

    def __init__(self, api_key: str, model: str, dimension: int) -> None:
        self._api_key = api_key
        self._model = model
        self._dimension = dimension
        self._client: cohere.ClientV2 | None = None

        logger.info("cohere_embeddings_initialized", model=self._model, dimension=self._dimension)

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def client(self) -> cohere.ClientV2:
        """Get or create the Cohere client."""
        if self._client is None:
            self._client = cohere.ClientV2(api_key=self._api_key)
        return self._client

    def _embed_sync(self, texts: list[str]) -> list[list[float]]:
        response = self.client.embed(
            model=self._model,
            texts=texts,
            input_type=self.INPUT_TYPE_DOCUMENT,
            embedding_types=["float"],
        )
        return response.embeddings.float_

    async def _embed_batch_request(self, texts: list[str]) -> list[list[float]]:
        loop = asyncio.get_running_loop()
        try:
            embeddings = await loop.run_in_executor(_executor, lambda: self._embed_sync(texts))
        except Exception as e:
            logger.error("cohere_embedding_failed", batch_size=len(texts), error=str(e))
            error_cls = ProviderConnectionError if _is_retryable(e) else ProviderResponseError
            raise error_cls(self.PROVIDER, f"Embedding request failed: {e}", {"model": self._model}) from e

        return [check_dimension(self.PROVIDER, list(e), self._dimension) for e in embeddings]

    async def embed_text(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Raises:
            ValueError: If text is empty.
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        embeddings = await self._embed_batch_request([text])
        logger.debug("cohere_embedding_generated", text_length=len(text))
        return embeddings[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts with automatic batching.

        Returns:
            List of embedding vectors in same order as input.
        """
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise ValueError("Texts cannot be empty")

        result: list[list[float]] = []
        for i in range(0, len(texts), self.MAX_BATCH_SIZE):
            batch = texts[i : i + self.MAX_BATCH_SIZE]
            logger.debug(
                "cohere_embedding_batch_processing",
                batch_num=i // self.MAX_BATCH_SIZE + 1,
                batch_size=len(batch),
            )
            result.extend(await self._embed_batch_request(batch))

        logger.info("cohere_embedding_batch_completed", total_texts=len(texts))
        return result
