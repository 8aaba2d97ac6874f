"""
tests/unit/test_rate_limiter.py — Per-user sliding-window limiter

All tests drive the limiter with a fake clock; nothing sleeps.
"""

from __future__ import annotations

import asyncio

import pytest

from ratelimit.limiter import MESSAGE_WINDOW_SECONDS, TOKEN_WINDOW_SECONDS, RateLimiter


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ─────────────────────────────────────────────────────────────────────────────
# Message budget
# ─────────────────────────────────────────────────────────────────────────────

class TestMessageBudget:

    @pytest.mark.asyncio
    async def test_capacity_includes_burst(self):
        limiter = RateLimiter(messages_per_minute=3, burst_allowance=2, clock=_Clock())
        results = [await limiter.check_and_consume_message("u") for _ in range(6)]
        assert [r.allowed for r in results] == [True] * 5 + [False]
        assert results[4].messages_remaining == 0

    @pytest.mark.asyncio
    async def test_deny_carries_reason_and_retry_after(self):
        clock = _Clock()
        limiter = RateLimiter(messages_per_minute=1, burst_allowance=0, clock=clock)
        await limiter.check_and_consume_message("u")
        clock.advance(20)
        denied = await limiter.check_and_consume_message("u")

        assert not denied.allowed
        assert denied.reason == "Message rate limit exceeded. You can send 1 messages per minute."
        assert denied.retry_after_s == 40

    @pytest.mark.asyncio
    async def test_denied_message_is_not_counted(self):
        clock = _Clock()
        limiter = RateLimiter(messages_per_minute=1, burst_allowance=0, clock=clock)
        await limiter.check_and_consume_message("u")
        for _ in range(5):
            await limiter.check_and_consume_message("u")
        clock.advance(MESSAGE_WINDOW_SECONDS)
        assert (await limiter.check_and_consume_message("u")).allowed

    @pytest.mark.asyncio
    async def test_window_slides(self):
        clock = _Clock()
        limiter = RateLimiter(messages_per_minute=2, burst_allowance=0, clock=clock)
        await limiter.check_and_consume_message("u")
        clock.advance(30)
        await limiter.check_and_consume_message("u")
        assert not (await limiter.check_and_consume_message("u")).allowed

        clock.advance(30)       # the first message has left the window
        assert (await limiter.check_and_consume_message("u")).allowed
        assert not (await limiter.check_and_consume_message("u")).allowed

    @pytest.mark.asyncio
    async def test_users_are_independent(self):
        limiter = RateLimiter(messages_per_minute=1, burst_allowance=0, clock=_Clock())
        assert (await limiter.check_and_consume_message("alice")).allowed
        assert (await limiter.check_and_consume_message("bob")).allowed
        assert not (await limiter.check_and_consume_message("alice")).allowed

    @pytest.mark.asyncio
    async def test_concurrent_checks_never_oversubscribe(self):
        limiter = RateLimiter(messages_per_minute=5, burst_allowance=0, clock=_Clock())
        results = await asyncio.gather(
            *[limiter.check_and_consume_message("u") for _ in range(20)]
        )
        assert sum(r.allowed for r in results) == 5


# ─────────────────────────────────────────────────────────────────────────────
# Token budget
# ─────────────────────────────────────────────────────────────────────────────

class TestTokenBudget:

    @pytest.mark.asyncio
    async def test_exhausted_tokens_deny_messages(self):
        clock = _Clock()
        limiter = RateLimiter(tokens_per_day=1000, clock=clock)
        await limiter.record_token_usage("u", 1000)
        status = await limiter.check_and_consume_message("u")

        assert not status.allowed
        assert status.reason == "Daily token limit reached. Please try again later."
        assert status.tokens_remaining == 0
        assert status.retry_after_s == int(TOKEN_WINDOW_SECONDS)

    @pytest.mark.asyncio
    async def test_tokens_expire_after_a_day(self):
        clock = _Clock()
        limiter = RateLimiter(tokens_per_day=1000, clock=clock)
        await limiter.record_token_usage("u", 1000)
        clock.advance(TOKEN_WINDOW_SECONDS)
        assert (await limiter.check_and_consume_message("u")).allowed

    @pytest.mark.asyncio
    async def test_check_tokens_consumes_nothing(self):
        limiter = RateLimiter(tokens_per_day=1000, clock=_Clock())
        await limiter.record_token_usage("u", 600)
        assert not (await limiter.check_tokens("u", estimated=500)).allowed
        assert (await limiter.check_tokens("u", estimated=400)).allowed
        assert (await limiter.status("u")).tokens_remaining == 400

    @pytest.mark.asyncio
    async def test_non_positive_usage_ignored(self):
        limiter = RateLimiter(clock=_Clock())
        await limiter.record_token_usage("u", 0)
        await limiter.record_token_usage("u", -5)
        assert limiter.tracked_users == 0


# ─────────────────────────────────────────────────────────────────────────────
# Admin
# ─────────────────────────────────────────────────────────────────────────────

class TestAdmin:

    @pytest.mark.asyncio
    async def test_status_for_unknown_user_is_full(self):
        limiter = RateLimiter(messages_per_minute=4, burst_allowance=1, tokens_per_day=50, clock=_Clock())
        status = await limiter.status("nobody")
        assert status.allowed
        assert status.messages_remaining == 5
        assert status.tokens_remaining == 50
        assert limiter.tracked_users == 0

    @pytest.mark.asyncio
    async def test_reset_user(self):
        limiter = RateLimiter(messages_per_minute=1, burst_allowance=0, clock=_Clock())
        await limiter.check_and_consume_message("u")
        await limiter.reset_user("u")
        assert (await limiter.check_and_consume_message("u")).allowed

    @pytest.mark.asyncio
    async def test_garbage_collection_drops_idle_users(self):
        clock = _Clock()
        limiter = RateLimiter(clock=clock)
        await limiter.check_and_consume_message("a")
        await limiter.check_and_consume_message("b")
        await limiter.record_token_usage("b", 10)

        clock.advance(MESSAGE_WINDOW_SECONDS + 1)
        assert await limiter.collect_garbage() == 1     # "b" still has token history
        assert limiter.tracked_users == 1

        clock.advance(TOKEN_WINDOW_SECONDS)
        assert await limiter.collect_garbage() == 1
        assert limiter.tracked_users == 0
