"""
gateway/streaming.py — Streaming Response Pipeline

Pulls text fragments from an async iterator and emits each one as a
`message` frame with a strictly increasing sequence number (from 0).

The source is drained by an inner pump task, so cancel() can interrupt a
generator that is suspended mid-step (waiting on the provider) instead of
waiting for its next fragment. After cancel() returns the source is closed
and nothing more is emitted. The stream is not restartable.

If emitting fails because the connection went away, the stream cancels
itself and raises StreamCancelledError carrying the partial text, so the
caller can still persist what was produced.

Usage:
    stream = ResponseStream(backend.generate(prompt), emit=sink)
    text = await stream.run()
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from exceptions import ConnectionGoneError, StreamCancelledError
from gateway.protocol import OutboundMessage, make_fragment
from observability.logger import get_logger

log = get_logger(__name__)

Emit = Callable[[OutboundMessage], Awaitable[Any]]


class ResponseStream:

    def __init__(self, source: AsyncIterator[str], emit: Emit):
        self._source = source
        self._emit = emit
        self._sequence = 0
        self._parts: list[str] = []
        self._cancelled = False
        self._closed = False
        self._pump: Optional[asyncio.Task] = None

    @property
    def sequence(self) -> int:
        """Number of fragments emitted so far (= the next sequence number)."""
        return self._sequence

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def running(self) -> bool:
        return self._pump is not None and not self._pump.done()

    async def run(self) -> str:
        if self._closed or self._pump is not None:
            raise StreamCancelledError(self.text, self._sequence)

        pump = asyncio.create_task(self._drain(), name="stream-pump")
        self._pump = pump
        try:
            await asyncio.wait({pump})
        finally:
            if not pump.done():
                # run() itself was cancelled (generation timeout); take the source down too.
                pump.cancel()
                await asyncio.wait({pump})

        if pump.cancelled() or self._cancelled:
            if not pump.cancelled() and pump.exception() is not None:
                log.debug("stream.error_after_cancel", error_type=type(pump.exception()).__name__)
            raise StreamCancelledError(self.text, self._sequence)
        return pump.result()

    async def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        pump = self._pump
        if pump is not None and not pump.done() and pump is not asyncio.current_task():
            pump.cancel()
            await asyncio.wait({pump})
            log.info("stream.cancelled", sequence=self._sequence)
        await self._close_source()

    async def _drain(self) -> str:
        try:
            async for fragment in self._source:
                if self._cancelled:
                    break
                if not fragment:
                    continue
                try:
                    await self._emit(make_fragment(fragment, self._sequence))
                except ConnectionGoneError:
                    log.info("stream.connection_gone", sequence=self._sequence)
                    self._cancelled = True
                    raise StreamCancelledError(self.text, self._sequence) from None
                self._parts.append(fragment)
                self._sequence += 1
        finally:
            await self._close_source()

        log.debug("stream.finished", fragments=self._sequence, chars=len(self.text))
        return self.text

    async def _close_source(self) -> None:
        if self._closed:
            return
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except RuntimeError:
                # Generator is mid-step in the pump; the pump closes it on its way out.
                log.debug("stream.aclose_deferred")
                return
        self._closed = True
