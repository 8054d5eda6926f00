"""Resilience components for the graph crawler."""

from graphcrawler.resilience.rate_limiter import EndpointRateLimiter, RateBucket, spacing_ms
from graphcrawler.resilience.retry import RetryDecision, RetryPolicy, backoff_delay, decide_retry

__all__ = [
    "EndpointRateLimiter",
    "RateBucket",
    "RetryDecision",
    "RetryPolicy",
    "backoff_delay",
    "decide_retry",
    "spacing_ms",
]
