"""
Ollama Embeddings Service.

Local embeddings through the Ollama HTTP API, the default provider
(nomic-embed-text, 768 dimensions).
"""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx
import structlog

from agent_memory.core.exceptions import ProviderConnectionError, ProviderResponseError
from agent_memory.knowledge.providers import check_dimension

logger = structlog.get_logger(__name__)


class OllamaEmbeddingsService:
    """
    Embeddings from a local Ollama server.

    Retries are left to the caller's RetryPolicy; this class only maps
    transport failures to ProviderConnectionError.

    Usage:
        async with OllamaEmbeddingsService("http://localhost:11434") as service:
            vector = await service.embed_text("Python is a programming language")
    """

    PROVIDER = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dimension: int = 768,
        timeout: float = 30.0,
        max_concurrency: int = 4,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._dimension = dimension
        self._timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model(self) -> str:
        return self._model

    async def __aenter__(self) -> "OllamaEmbeddingsService":
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def embed_text(self, text: str) -> list[float]:
        """
        Generate embedding for a single text.

        Raises:
            ValueError: If text is empty.
            ProviderConnectionError: If Ollama is unreachable or times out.
            ProviderResponseError: If Ollama answers with an error or a malformed body.
        """
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        client = await self._ensure_client()

        try:
            async with self._semaphore:
                response = await client.post(
                    "/api/embeddings",
                    json={"model": self._model, "prompt": text},
                )
        except httpx.TimeoutException as e:
            logger.error("ollama_timeout", model=self._model, error=str(e))
            raise ProviderConnectionError(
                self.PROVIDER, f"Request timeout: {e}", {"model": self._model}
            ) from e
        except httpx.RequestError as e:
            logger.error("ollama_request_error", model=self._model, error=str(e))
            raise ProviderConnectionError(
                self.PROVIDER,
                f"Request failed: {e}",
                {"model": self._model, "original_error": str(e)},
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderConnectionError(
                self.PROVIDER,
                f"Ollama unavailable: HTTP {response.status_code}",
                {"model": self._model, "status_code": response.status_code},
            )
        if response.status_code >= 400:
            logger.error(
                "ollama_api_error",
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise ProviderResponseError(
                self.PROVIDER,
                f"API error {response.status_code}: {response.text[:200]}",
                {"model": self._model, "status_code": response.status_code},
            )

        embedding = response.json().get("embedding")
        if not isinstance(embedding, list):
            raise ProviderResponseError(
                self.PROVIDER, "Response has no embedding", {"model": self._model}
            )

        logger.debug("ollama_embedding_generated", text_length=len(text), dimension=len(embedding))
        return check_dimension(self.PROVIDER, embedding, self._dimension)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Generate embeddings for multiple texts, preserving order.

        The Ollama embeddings endpoint takes one prompt per call, so requests
        are issued concurrently under the service's concurrency limit.
        """
        if not texts:
            return []
        return list(await asyncio.gather(*(self.embed_text(t) for t in texts)))
