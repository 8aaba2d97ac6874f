"""
brain/openai_backend.py — OpenAI Reasoning Backend

Classification uses JSON mode (response_format=json_object); response
generation streams with stream=True. Works with any OpenAI-compatible
endpoint via base_url.
"""

from __future__ import annotations

from typing import AsyncIterator, Iterable, Optional

import openai
from openai import AsyncOpenAI

from actions.types import ActionDefinition
from brain.backend import LLMReasoningBackend
from brain.types import ReasoningOptions, TokenUsage
from exceptions import (
    ReasoningConnectionError,
    ReasoningError,
    ReasoningInvalidRequestError,
    ReasoningRateLimitError,
    ReasoningTimeoutError,
)
from observability.logger import get_logger

log = get_logger(__name__)


def _retry_after(e: openai.APIStatusError) -> Optional[float]:
    try:
        value = e.response.headers.get("retry-after")
        return float(value) if value is not None else None
    except (AttributeError, TypeError, ValueError):
        return None


def map_openai_error(e: Exception) -> ReasoningError:
    """Translate an openai SDK exception into the reasoning error hierarchy."""
    if isinstance(e, openai.APITimeoutError):
        return ReasoningTimeoutError(str(e), provider="openai")
    if isinstance(e, openai.AuthenticationError):
        return ReasoningConnectionError(str(e), provider="openai", status_code=401)
    if isinstance(e, openai.RateLimitError):
        return ReasoningRateLimitError(str(e), provider="openai", retry_after=_retry_after(e))
    if isinstance(e, openai.BadRequestError):
        return ReasoningInvalidRequestError(str(e), provider="openai", status_code=400)
    if isinstance(e, openai.APIConnectionError):
        return ReasoningConnectionError(str(e), provider="openai")
    if isinstance(e, openai.InternalServerError):
        return ReasoningConnectionError(
            str(e), provider="openai", status_code=getattr(e, "status_code", None)
        )
    return ReasoningError(str(e), provider="openai", status_code=getattr(e, "status_code", None))


class OpenAIReasoningBackend(LLMReasoningBackend):

    provider = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        options: ReasoningOptions,
        catalogue: Iterable[ActionDefinition] = (),
        base_url: Optional[str] = None,     # None = official OpenAI endpoint
        client: Optional[AsyncOpenAI] = None,
    ):
        super().__init__(options, catalogue)
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def _complete(self, system: str, user: str) -> tuple[str, TokenUsage]:
        try:
            response = await self._client.chat.completions.create(
                model=self.options.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                response_format={"type": "json_object"},
                temperature=self.options.temperature,
                max_tokens=self.options.max_tokens,
                timeout=self.options.timeout_seconds,
            )
        except openai.APIError as e:
            raise map_openai_error(e) from e

        usage = TokenUsage()
        if response.usage:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        content = response.choices[0].message.content if response.choices else ""
        return content or "", usage

    async def _stream(self, system: str, user: str) -> AsyncIterator[str]:
        try:
            stream = await self._client.chat.completions.create(
                model=self.options.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=self.options.temperature,
                max_tokens=self.options.max_tokens,
                timeout=self.options.timeout_seconds,
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.APIError as e:
            raise map_openai_error(e) from e

    async def close(self) -> None:
        await self._client.close()
