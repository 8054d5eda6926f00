"""Retry policy as a pure decision function.

``decide_retry(attempt, error, policy)`` tells the caller whether to try a
failed upstream request again and how long to wait first. It never sleeps
and never touches the network, so the policy is testable on its own.

- TransientNetworkError: exponential backoff
  ``min(base * factor ** (attempt - 1), max)`` for up to ``max_retries`` retries
- RateLimitError: retried with no extra delay (the rate limiter spaces the
  re-queued request) up to ``max_rate_limit_requeues`` times
- anything else: never retried
"""

from __future__ import annotations

from dataclasses import dataclass

from graphcrawler.config.settings import CrawlerSettings
from graphcrawler.middleware.error_handler import RateLimitError, TransientNetworkError


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 5.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    max_rate_limit_requeues: int = 5

    @classmethod
    def from_settings(cls, settings: CrawlerSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            backoff_factor=settings.retry_backoff_factor,
            max_rate_limit_requeues=settings.max_rate_limit_requeues,
        )


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    delay: float = 0.0


_GIVE_UP = RetryDecision(should_retry=False)


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """Delay before retry number *attempt* (1-based)."""
    exponent = max(attempt, 1) - 1
    return min(policy.base_delay * policy.backoff_factor**exponent, policy.max_delay)


def decide_retry(attempt: int, error: BaseException, policy: RetryPolicy) -> RetryDecision:
    """Decide whether attempt number *attempt* (1-based) that raised *error* is retried.

    Rate-limit attempts are counted separately by the caller, so *attempt*
    means "rate-limit attempts so far" for ``RateLimitError`` and "transient
    attempts so far" for ``TransientNetworkError``.
    """
    if isinstance(error, RateLimitError):
        if attempt <= policy.max_rate_limit_requeues:
            return RetryDecision(should_retry=True, delay=0.0)
        return _GIVE_UP
    if isinstance(error, TransientNetworkError):
        if attempt <= policy.max_retries:
            return RetryDecision(should_retry=True, delay=backoff_delay(attempt, policy))
        return _GIVE_UP
    return _GIVE_UP
