"""Pydantic Settings for the graph crawler.

All environment variables use the CRAWLER_ prefix.
Example: CRAWLER_REDIS_URL=redis://cache:6379/0, CRAWLER_SERVICE_KEY=my-secret-key

Settings are built once at startup and passed to every component; invalid or
missing values fail at construction.
"""

from __future__ import annotations

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class CrawlerSettings(BaseSettings):
    """Crawler configuration validated from environment variables."""

    # Service
    port: int = 8002
    service_key: str  # X-Service-Key for the control API
    log_level: str = "INFO"

    # Shared key-value store
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "graphcrawler"
    store_timeout_seconds: float = Field(default=5.0, gt=0)

    # Upstream API
    api_base_url: str = "https://public.api.bsky.app"
    user_agent: str = "GraphCrawler/1.0"
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    page_size: int = Field(default=100, ge=1, le=100)

    # Proxy pool
    proxy_list: list[str] = []
    proxy_rotation_enabled: bool = True
    proxy_failure_threshold: int = Field(default=3, ge=1)
    proxy_rate_limit_cooldown_seconds: float = Field(default=60.0, gt=0)
    proxy_probe_url: str = "https://httpbin.org/ip"
    proxy_probe_timeout_seconds: float = Field(default=10.0, gt=0)
    proxy_health_check_interval_seconds: int = Field(default=300, ge=1)

    # Rate limiting defaults
    requests_per_minute: int = Field(default=60, ge=1)
    burst_limit: int = Field(default=10, ge=1)
    concurrent_requests: int = Field(default=5, ge=1)
    min_request_interval_ms: int = Field(default=500, ge=0)
    randomize_delays: bool = True
    endpoint_policies_path: str = "graphcrawler/config/endpoint_policies.yaml"

    # Retries
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay_seconds: float = Field(default=5.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)
    retry_backoff_factor: float = Field(default=2.0, ge=1)
    max_rate_limit_requeues: int = Field(default=5, ge=0)

    # Deduplication
    bloom_expected_elements: int = Field(default=1_000_000, ge=1)
    bloom_false_positive_rate: float = Field(default=0.01, gt=0, lt=1)
    edge_cardinality_factor: int = Field(default=10, ge=1)
    dedup_record_ttl_seconds: int = Field(default=7 * 86400, ge=1)

    # Checkpoints
    checkpoint_frequency: int = Field(default=5, ge=1)
    checkpoint_max_age_seconds: int = Field(default=86400, ge=1)
    checkpoint_backup: bool = True
    checkpoint_every_nodes: int = Field(default=50, ge=1)

    # Crawl budgets
    max_depth: int = Field(default=3, ge=1, le=5)
    max_nodes: int | None = Field(default=None, ge=1)
    max_edges: int = Field(default=10_000_000, ge=1)
    max_followers_per_node: int = Field(default=1000, ge=0)
    max_following_per_node: int = Field(default=1000, ge=0)
    min_follower_count: int = Field(default=10, ge=0)
    prioritize_popular: bool = True
    output_batch_size: int = Field(default=1000, ge=1)
    seed_limit: int = Field(default=1000, ge=1)

    # Search seeding, used when no earlier discovery data exists
    seed_search_terms: list[str] = []
    seed_search_max_pages: int = Field(default=10, ge=1)

    # Output
    output_dir: str = "./data"

    # Docker / resource management
    graceful_shutdown_seconds: int = Field(default=30, ge=0)

    model_config = {"env_prefix": "CRAWLER_"}

    @field_validator("api_base_url")
    @classmethod
    def _require_https(cls, value: str) -> str:
        if not value.startswith("https://"):
            raise ValueError("api_base_url must be a valid HTTPS URL")
        return value.rstrip("/")

    @field_validator("redis_url")
    @classmethod
    def _require_redis_scheme(cls, value: str) -> str:
        if not value.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("redis_url must start with redis://, rediss:// or unix://")
        return value

    @model_validator(mode="after")
    def _check_retry_window(self) -> "CrawlerSettings":
        if self.retry_max_delay_seconds < self.retry_base_delay_seconds:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self
