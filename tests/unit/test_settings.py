"""Unit tests for CrawlerSettings, endpoint policies and crawl budgets."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from graphcrawler.config.budget import CrawlBudget
from graphcrawler.config.endpoint_policies import (
    BUILTIN_POLICIES,
    DEFAULT_ENDPOINT,
    load_endpoint_policies,
)
from graphcrawler.config.settings import CrawlerSettings
from graphcrawler.middleware.error_handler import ConfigurationError


class TestCrawlerSettings:
    def test_defaults(self) -> None:
        s = CrawlerSettings(service_key="k")
        assert s.port == 8002
        assert s.api_base_url == "https://public.api.bsky.app"
        assert s.max_depth == 3
        assert s.checkpoint_frequency == 5
        assert s.proxy_failure_threshold == 3
        assert s.proxy_list == []

    def test_reads_prefixed_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CRAWLER_SERVICE_KEY", "from-env")
        monkeypatch.setenv("CRAWLER_MAX_DEPTH", "2")
        monkeypatch.setenv("CRAWLER_PROXY_LIST", '["http://p1:8080", "p2:3128"]')
        s = CrawlerSettings()  # type: ignore[call-arg]
        assert s.service_key == "from-env"
        assert s.max_depth == 2
        assert s.proxy_list == ["http://p1:8080", "p2:3128"]

    def test_missing_service_key_fails(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CRAWLER_SERVICE_KEY", raising=False)
        with pytest.raises(ValidationError):
            CrawlerSettings()  # type: ignore[call-arg]

    def test_api_base_url_must_be_https(self) -> None:
        with pytest.raises(ValidationError):
            CrawlerSettings(service_key="k", api_base_url="http://insecure.example")

    def test_api_base_url_trailing_slash_stripped(self) -> None:
        s = CrawlerSettings(service_key="k", api_base_url="https://api.example/")
        assert s.api_base_url == "https://api.example"

    def test_redis_url_scheme(self) -> None:
        with pytest.raises(ValidationError):
            CrawlerSettings(service_key="k", redis_url="memcached://localhost")

    @pytest.mark.parametrize("depth", [0, 6])
    def test_max_depth_bounds(self, depth: int) -> None:
        with pytest.raises(ValidationError):
            CrawlerSettings(service_key="k", max_depth=depth)

    def test_retry_window(self) -> None:
        with pytest.raises(ValidationError):
            CrawlerSettings(service_key="k", retry_base_delay_seconds=10, retry_max_delay_seconds=5)


class TestEndpointPolicies:
    def test_none_path_returns_builtins(self) -> None:
        assert load_endpoint_policies(None) == BUILTIN_POLICIES

    def test_missing_file_returns_builtins(self, tmp_path) -> None:
        assert load_endpoint_policies(str(tmp_path / "nope.yaml")) == BUILTIN_POLICIES

    def test_yaml_overrides_builtins(self, tmp_path) -> None:
        path = tmp_path / "policies.yaml"
        path.write_text(
            "endpoints:\n"
            "  app.bsky.graph.getFollowers:\n"
            "    requests_per_minute: 20\n"
            "    burst_limit: 2\n"
            "  custom.method:\n"
            "    requests_per_minute: 5\n"
        )
        policies = load_endpoint_policies(str(path))
        assert policies["app.bsky.graph.getFollowers"].requests_per_minute == 20
        assert policies["app.bsky.graph.getFollowers"].burst_limit == 2
        assert policies["custom.method"].requests_per_minute == 5
        assert policies["custom.method"].burst_limit == 10
        assert policies[DEFAULT_ENDPOINT] == BUILTIN_POLICIES[DEFAULT_ENDPOINT]

    def test_invalid_entry_skipped(self, tmp_path) -> None:
        path = tmp_path / "policies.yaml"
        path.write_text(
            "endpoints:\n"
            "  bad.method:\n"
            "    requests_per_minute: 0\n"
            "  good.method:\n"
            "    requests_per_minute: 7\n"
        )
        policies = load_endpoint_policies(str(path))
        assert "bad.method" not in policies
        assert policies["good.method"].requests_per_minute == 7

    def test_malformed_yaml_returns_builtins(self, tmp_path) -> None:
        path = tmp_path / "policies.yaml"
        path.write_text("endpoints: [unclosed\n")
        assert load_endpoint_policies(str(path)) == BUILTIN_POLICIES

    def test_shipped_yaml_matches_builtins(self) -> None:
        from pathlib import Path

        import graphcrawler.config

        shipped = Path(graphcrawler.config.__file__).parent / "endpoint_policies.yaml"
        assert load_endpoint_policies(str(shipped)) == BUILTIN_POLICIES


class TestCrawlBudget:
    def test_from_settings(self, settings: CrawlerSettings) -> None:
        budget = CrawlBudget.from_settings(settings)
        assert budget.max_depth == settings.max_depth
        assert budget.min_follower_count == settings.min_follower_count
        assert budget.max_nodes is None

    def test_overrides_ignore_none(self, settings: CrawlerSettings) -> None:
        budget = CrawlBudget.from_settings(settings, max_depth=1, max_nodes=None, seed_limit=3)
        assert budget.max_depth == 1
        assert budget.max_nodes is None
        assert budget.seed_limit == 3

    @pytest.mark.parametrize(
        "override",
        [{"max_depth": 0}, {"max_depth": 6}, {"max_edges": 0}, {"min_follower_count": -1}],
    )
    def test_invalid_budget_is_configuration_error(self, settings: CrawlerSettings, override: dict) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            CrawlBudget.from_settings(settings, **override)
        assert exc_info.value.status_code == 400
        assert exc_info.value.details["errors"]

    def test_budget_is_frozen(self) -> None:
        budget = CrawlBudget()
        with pytest.raises(ValidationError):
            budget.max_depth = 4  # type: ignore[misc]
