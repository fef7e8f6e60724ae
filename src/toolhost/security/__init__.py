"""Toolhost security: Rate-Limiting für die Transport-Schicht."""

from toolhost.security.rate_limiter import (  # noqa: F401
    RateLimitBucket,
    RateLimitDecision,
    RateLimiter,
)
