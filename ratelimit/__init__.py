"""
ratelimit — Per-user message and token budgets.
"""

from ratelimit.limiter import RateLimiter, RateLimitStatus

__all__ = ["RateLimiter", "RateLimitStatus"]
