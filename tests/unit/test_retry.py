"""Unit tests for the pure retry decision function."""

from __future__ import annotations

import pytest

from graphcrawler.config.settings import CrawlerSettings
from graphcrawler.middleware.error_handler import (
    ClientError,
    RateLimitError,
    TransientNetworkError,
    ValidationError,
)
from graphcrawler.resilience.retry import RetryPolicy, backoff_delay, decide_retry

POLICY = RetryPolicy(max_retries=3, base_delay=5.0, max_delay=30.0, backoff_factor=2.0, max_rate_limit_requeues=5)


class TestBackoff:
    @pytest.mark.parametrize(("attempt", "expected"), [(1, 5.0), (2, 10.0), (3, 20.0), (4, 30.0), (10, 30.0)])
    def test_exponential_with_cap(self, attempt: int, expected: float) -> None:
        assert backoff_delay(attempt, POLICY) == expected


class TestDecideRetry:
    def test_transient_retried_with_backoff(self) -> None:
        decision = decide_retry(2, TransientNetworkError(), POLICY)
        assert decision.should_retry is True
        assert decision.delay == 10.0

    def test_transient_gives_up_after_max_retries(self) -> None:
        assert decide_retry(3, TransientNetworkError(), POLICY).should_retry is True
        assert decide_retry(4, TransientNetworkError(), POLICY).should_retry is False

    def test_rate_limit_requeued_without_delay(self) -> None:
        decision = decide_retry(1, RateLimitError(), POLICY)
        assert decision.should_retry is True
        assert decision.delay == 0.0

    def test_rate_limit_requeue_cap(self) -> None:
        assert decide_retry(5, RateLimitError(), POLICY).should_retry is True
        assert decide_retry(6, RateLimitError(), POLICY).should_retry is False

    @pytest.mark.parametrize("error", [ClientError(), ValidationError(), ValueError("x")])
    def test_other_errors_never_retried(self, error: Exception) -> None:
        assert decide_retry(1, error, POLICY).should_retry is False

    def test_zero_retries_policy(self) -> None:
        policy = RetryPolicy(max_retries=0, max_rate_limit_requeues=0)
        assert decide_retry(1, TransientNetworkError(), policy).should_retry is False
        assert decide_retry(1, RateLimitError(), policy).should_retry is False

    def test_from_settings(self) -> None:
        settings = CrawlerSettings(service_key="k", max_retries=1, retry_base_delay_seconds=2, retry_max_delay_seconds=3)
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_retries == 1
        assert backoff_delay(5, policy) == 3.0
