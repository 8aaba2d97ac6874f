"""
ratelimit/limiter.py — Per-user sliding-window rate limiter

Two budgets per user:
  - messages: messages_per_minute + burst_allowance within any 60s window
  - tokens:   tokens_per_day reasoning tokens within any 24h window

A user may hold several connections at once, so state is keyed by user,
not by conversation. check_and_consume_message() evaluates and records in
one critical section under the limiter's own lock: two concurrent messages
can never both take the last slot.

Idle users are garbage-collected once both windows have fully drained.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from observability.logger import get_logger

log = get_logger(__name__)

MESSAGE_WINDOW_SECONDS = 60.0
TOKEN_WINDOW_SECONDS = 24 * 3600.0


@dataclass(frozen=True)
class RateLimitStatus:
    allowed: bool
    messages_remaining: int
    tokens_remaining: int
    reset_at: float
    reason: Optional[str] = None
    retry_after_s: Optional[int] = None


@dataclass
class _UserWindow:
    messages: deque = field(default_factory=deque)      # timestamps
    tokens: deque = field(default_factory=deque)        # (timestamp, count)
    token_total: int = 0
    last_seen: float = 0.0

    def prune(self, now: float) -> None:
        horizon = now - MESSAGE_WINDOW_SECONDS
        while self.messages and self.messages[0] <= horizon:
            self.messages.popleft()
        horizon = now - TOKEN_WINDOW_SECONDS
        while self.tokens and self.tokens[0][0] <= horizon:
            _, count = self.tokens.popleft()
            self.token_total -= count

    @property
    def idle(self) -> bool:
        return not self.messages and not self.tokens


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(messages_per_minute=20, burst_allowance=5)
        status = await limiter.check_and_consume_message(user_id)
        if not status.allowed:
            ...  # tell the user to wait status.retry_after_s seconds
        await limiter.record_token_usage(user_id, 850)
    """

    def __init__(
        self,
        messages_per_minute: int = 20,
        burst_allowance: int = 5,
        tokens_per_day: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.messages_per_minute = messages_per_minute
        self.burst_allowance = burst_allowance
        self.tokens_per_day = tokens_per_day
        self._clock = clock
        self._users: dict[str, _UserWindow] = {}
        self._lock = asyncio.Lock()

    @property
    def message_capacity(self) -> int:
        return self.messages_per_minute + self.burst_allowance

    def _window(self, user_id: str, now: float) -> _UserWindow:
        window = self._users.get(user_id)
        if window is None:
            window = self._users[user_id] = _UserWindow(last_seen=now)
        window.prune(now)
        return window

    def _status(self, window: _UserWindow, now: float, allowed: bool = True,
                reason: Optional[str] = None, retry_after: Optional[float] = None) -> RateLimitStatus:
        reset_at = (window.messages[0] + MESSAGE_WINDOW_SECONDS) if window.messages else now
        return RateLimitStatus(
            allowed=allowed,
            messages_remaining=max(0, self.message_capacity - len(window.messages)),
            tokens_remaining=max(0, self.tokens_per_day - window.token_total),
            reset_at=reset_at,
            reason=reason,
            retry_after_s=None if retry_after is None else max(1, math.ceil(retry_after)),
        )

    # ── Messages ──────────────────────────────────────────────────────────────

    async def check_and_consume_message(self, user_id: str) -> RateLimitStatus:
        """Atomically check the message budget and, if allowed, consume one slot."""
        async with self._lock:
            now = self._clock()
            window = self._window(user_id, now)
            window.last_seen = now

            if len(window.messages) >= self.message_capacity:
                retry_after = window.messages[0] + MESSAGE_WINDOW_SECONDS - now
                status = self._status(
                    window, now, allowed=False,
                    reason=(
                        f"Message rate limit exceeded. You can send "
                        f"{self.messages_per_minute} messages per minute."
                    ),
                    retry_after=retry_after,
                )
                log.warning(
                    "rate_limit.denied",
                    user_id=user_id,
                    kind="messages",
                    retry_after_s=status.retry_after_s,
                )
                return status

            if window.token_total >= self.tokens_per_day:
                retry_after = window.tokens[0][0] + TOKEN_WINDOW_SECONDS - now
                status = self._status(
                    window, now, allowed=False,
                    reason="Daily token limit reached. Please try again later.",
                    retry_after=retry_after,
                )
                log.warning("rate_limit.denied", user_id=user_id, kind="tokens",
                            retry_after_s=status.retry_after_s)
                return status

            window.messages.append(now)
            return self._status(window, now)

    # ── Tokens ────────────────────────────────────────────────────────────────

    async def check_tokens(self, user_id: str, estimated: int = 1000) -> RateLimitStatus:
        """Would `estimated` more tokens fit in the user's daily budget? Consumes nothing."""
        async with self._lock:
            now = self._clock()
            window = self._window(user_id, now)
            if window.token_total + estimated > self.tokens_per_day:
                retry_after = (
                    window.tokens[0][0] + TOKEN_WINDOW_SECONDS - now if window.tokens else 0.0
                )
                return self._status(
                    window, now, allowed=False,
                    reason="Daily token limit reached. Please try again later.",
                    retry_after=retry_after,
                )
            return self._status(window, now)

    async def record_token_usage(self, user_id: str, tokens: int) -> None:
        if tokens <= 0:
            return
        async with self._lock:
            now = self._clock()
            window = self._window(user_id, now)
            window.tokens.append((now, tokens))
            window.token_total += tokens
            window.last_seen = now
        log.debug("rate_limit.tokens_recorded", user_id=user_id, tokens=tokens)

    # ── Admin ─────────────────────────────────────────────────────────────────

    async def status(self, user_id: str) -> RateLimitStatus:
        async with self._lock:
            now = self._clock()
            window = self._users.get(user_id)
            if window is None:
                return self._status(_UserWindow(last_seen=now), now)
            window.prune(now)
            return self._status(window, now)

    async def reset_user(self, user_id: str) -> None:
        async with self._lock:
            self._users.pop(user_id, None)
        log.info("rate_limit.reset", user_id=user_id)

    async def collect_garbage(self) -> int:
        """Drop state for users whose windows have fully drained. Returns count removed."""
        async with self._lock:
            now = self._clock()
            stale = []
            for user_id, window in self._users.items():
                window.prune(now)
                if window.idle:
                    stale.append(user_id)
            for user_id in stale:
                del self._users[user_id]
        if stale:
            log.debug("rate_limit.gc", removed=len(stale))
        return len(stale)

    @property
    def tracked_users(self) -> int:
        return len(self._users)
