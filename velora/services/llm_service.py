"""
LLM Service - OpenAI API wrapper for chat completions

Provides:
- Single-shot completion from a system and a user instruction
- Token accounting (API usage, or a tiktoken estimate when usage is absent)
- Retries with backoff for rate limits and connection errors
- JSON response mode for structured extraction
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

import tiktoken
from openai import AsyncOpenAI, APIError, RateLimitError, APIConnectionError

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from LLM completion"""
    content: str
    model: str
    tokens_total: int
    finish_reason: Optional[str] = None


class LLMClient(Protocol):
    """The narrow completion contract the radar depends on"""

    async def complete(
        self,
        system: str,
        user: str,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        ...


class LLMService:
    """
    OpenAI chat completion client.

    Raises on failure after retries; callers own the fallback.
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-5-mini",
        max_tokens: int = 150,
        timeout: float = 10.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        # SDK retries are disabled; this class owns the retry policy
        self.client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._encoding = None

    @classmethod
    def from_settings(cls, settings) -> "LLMService":
        return cls(
            api_key=settings.openai_api_key,
            model=settings.draft_model,
            max_tokens=settings.draft_max_tokens,
            timeout=settings.remote_call_timeout,
            max_retries=settings.llm_max_retries,
        )

    def count_tokens(self, text: str) -> int:
        """Count tokens in a text string."""
        if self._encoding is None:
            try:
                self._encoding = tiktoken.encoding_for_model(self.model)
            except KeyError:
                # Fall back to o200k_base for models tiktoken does not know
                self._encoding = tiktoken.get_encoding("o200k_base")
        return len(self._encoding.encode(text))

    async def complete(
        self,
        system: str,
        user: str,
        max_tokens: Optional[int] = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
        kwargs: Dict[str, Any] = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        for attempt in range(self.max_retries):
            try:
                response = await self.client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    max_completion_tokens=max_tokens or self.max_tokens,
                    **kwargs,
                )
                choice = response.choices[0]
                content = choice.message.content or ""
                if response.usage is not None:
                    tokens = response.usage.total_tokens
                else:
                    tokens = self.count_tokens(system) + self.count_tokens(user) + self.count_tokens(content)
                return LLMResponse(
                    content=content,
                    model=response.model,
                    tokens_total=tokens,
                    finish_reason=choice.finish_reason,
                )

            except (RateLimitError, APIConnectionError) as e:
                if attempt < self.max_retries - 1:
                    wait_time = self.retry_delay * (2 ** attempt)
                    logger.warning(f"OpenAI transient error, retrying in {wait_time}s: {e}")
                    await asyncio.sleep(wait_time)
                else:
                    raise

            except APIError as e:
                logger.error(f"OpenAI API error: {e}")
                raise

        raise RuntimeError("LLM completion retries exhausted")
