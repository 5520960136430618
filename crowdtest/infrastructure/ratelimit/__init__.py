"""Sensitive-operation throttling."""

from .limiter import (
    FixedWindowRateLimiter,
    RateLimitDecision,
    RateLimitPolicy,
    SensitiveOperation,
    DEFAULT_POLICIES,
)

__all__ = [
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "RateLimitPolicy",
    "SensitiveOperation",
    "DEFAULT_POLICIES",
]
