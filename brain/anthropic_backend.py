"""
brain/anthropic_backend.py — Anthropic Reasoning Backend

Key differences from OpenAI:
  - the system prompt is a top-level parameter, not a message
  - there is no JSON mode, so the reply is parsed leniently (fenced or bare)
  - streaming goes through messages.stream() and its text_stream
"""

from __future__ import annotations

from typing import AsyncIterator, Iterable, Optional

import anthropic
from anthropic import AsyncAnthropic

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


def map_anthropic_error(e: Exception) -> ReasoningError:
    if isinstance(e, anthropic.APITimeoutError):
        return ReasoningTimeoutError(str(e), provider="anthropic")
    if isinstance(e, anthropic.AuthenticationError):
        return ReasoningConnectionError(str(e), provider="anthropic", status_code=401)
    if isinstance(e, anthropic.RateLimitError):
        retry_after = None
        try:
            header = e.response.headers.get("retry-after")
            retry_after = float(header) if header is not None else None
        except (AttributeError, TypeError, ValueError):
            retry_after = None
        return ReasoningRateLimitError(str(e), provider="anthropic", retry_after=retry_after)
    if isinstance(e, anthropic.BadRequestError):
        return ReasoningInvalidRequestError(str(e), provider="anthropic", status_code=400)
    if isinstance(e, anthropic.APIConnectionError):
        return ReasoningConnectionError(str(e), provider="anthropic")
    if isinstance(e, anthropic.InternalServerError):
        return ReasoningConnectionError(
            str(e), provider="anthropic", status_code=getattr(e, "status_code", None)
        )
    return ReasoningError(str(e), provider="anthropic", status_code=getattr(e, "status_code", None))


class AnthropicReasoningBackend(LLMReasoningBackend):

    provider = "anthropic"

    def __init__(
        self,
        api_key: Optional[str],
        options: ReasoningOptions,
        catalogue: Iterable[ActionDefinition] = (),
        base_url: Optional[str] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        super().__init__(options, catalogue)
        self._client = client or AsyncAnthropic(api_key=api_key, base_url=base_url)

    async def _complete(self, system: str, user: str) -> tuple[str, TokenUsage]:
        try:
            response = await self._client.messages.create(
                model=self.options.model,
                system=system,
                messages=[{"role": "user", "content": user}],
                temperature=self.options.temperature,
                max_tokens=self.options.max_tokens,
                timeout=self.options.timeout_seconds,
            )
        except anthropic.APIError as e:
            raise map_anthropic_error(e) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = TokenUsage(
            input_tokens=getattr(response.usage, "input_tokens", 0) or 0,
            output_tokens=getattr(response.usage, "output_tokens", 0) or 0,
        )
        return text, usage

    async def _stream(self, system: str, user: str) -> AsyncIterator[str]:
        try:
            async with self._client.messages.stream(
                model=self.options.model,
                system=system,
                messages=[{"role": "user", "content": user}],
                temperature=self.options.temperature,
                max_tokens=self.options.max_tokens,
                timeout=self.options.timeout_seconds,
            ) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except anthropic.APIError as e:
            raise map_anthropic_error(e) from e

    async def close(self) -> None:
        await self._client.close()
