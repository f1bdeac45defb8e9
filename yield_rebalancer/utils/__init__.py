"""Utilities: Precision helpers, math functions, retry and rate limiting."""

from yield_rebalancer.utils.precision import format_size
from yield_rebalancer.utils.math_helpers import ewma
from yield_rebalancer.utils.retry import RetryPolicy, RetryState, call_with_retries
from yield_rebalancer.utils.rate_limiter import RateLimiter

__all__ = [
    "format_size",
    "ewma",
    "RetryPolicy",
    "RetryState",
    "call_with_retries",
    "RateLimiter",
]
