"""
Anthropic completion service.

The text-completion capability used by semantic extraction and the optional
LLM-assisted topic and goal extraction in working memory.
"""

from __future__ import annotations

import anthropic
import structlog

from agent_memory.core.exceptions import ProviderConnectionError, ProviderResponseError

logger = structlog.get_logger(__name__)

_TRANSIENT_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
    anthropic.InternalServerError,
)


class AnthropicCompletionService:
    """
    Single-turn completions through Claude.

    Usage:
        service = AnthropicCompletionService(api_key, model="claude-sonnet-4-20250514")
        text = await service.complete("Extract concepts from ...", temperature=0.3)
    """

    PROVIDER = "anthropic"

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-20250514") -> None:
        self.client = anthropic.AsyncAnthropic(api_key=api_key)
        self.model = model

    async def complete(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> str:
        """
        Complete a single user prompt.

        Returns:
            Concatenated text blocks of the response.

        Raises:
            ProviderConnectionError: On rate limits, timeouts and server errors.
            ProviderResponseError: On any other API error or an empty response.
        """
        try:
            raw = await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except _TRANSIENT_ERRORS as e:
            logger.warning("anthropic_transient_error", model=self.model, error=str(e))
            raise ProviderConnectionError(self.PROVIDER, str(e), {"model": self.model}) from e
        except anthropic.APIError as e:
            logger.error("anthropic_request_failed", model=self.model, error=str(e))
            raise ProviderResponseError(self.PROVIDER, str(e), {"model": self.model}) from e

        text = "".join(block.text for block in raw.content if getattr(block, "type", None) == "text")
        if not text.strip():
            raise ProviderResponseError(self.PROVIDER, "Empty completion", {"model": self.model})

        logger.debug(
            "anthropic_completion",
            model=self.model,
            prompt_length=len(prompt),
            response_length=len(text),
        )
        return text
