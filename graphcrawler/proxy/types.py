"""Proxy data models for the proxy pool manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ProxyStatus(str, Enum):
    """Health state of a proxy; a proxy is in exactly one at any instant."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    RATE_LIMITED = "rate_limited"


@dataclass
class ProxyRecord:
    """A single egress proxy with health and usage tracking.

    ``id`` is the canonical URI including any embedded credentials; use
    ``masked_id`` whenever the proxy is logged or returned over the API.
    """

    id: str
    scheme: str  # http, https, socks4, socks5
    host: str
    port: int
    username: str | None = None
    password: str | None = None
    status: ProxyStatus = ProxyStatus.HEALTHY
    consecutive_failures: int = 0
    total_requests: int = 0
    success_count: int = 0
    failure_count: int = 0
    rate_limited_count: int = 0
    avg_response_time_ms: float = 0.0
    response_samples: int = 0
    cooldown_until: float | None = None  # set only while rate_limited
    unhealthy_on_expiry: bool = False
    last_used: float | None = None
    last_error: str | None = None

    @property
    def masked_id(self) -> str:
        if self.username is None:
            return self.id
        return f"{self.scheme}://***:***@{_host_port(self.host, self.port)}"

    def to_dict(self) -> dict:
        """Public view of the record, credentials masked."""
        return {
            "id": self.masked_id,
            "scheme": self.scheme,
            "host": self.host,
            "port": self.port,
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "total_requests": self.total_requests,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "rate_limited_count": self.rate_limited_count,
            "avg_response_time_ms": round(self.avg_response_time_ms, 2),
            "cooldown_until": self.cooldown_until,
            "last_error": self.last_error,
        }

    def to_store_mapping(self) -> dict[str, str]:
        """Counters and cooldown state as a flat string hash for the shared store."""
        return {
            "status": self.status.value,
            "consecutive_failures": str(self.consecutive_failures),
            "total_requests": str(self.total_requests),
            "success_count": str(self.success_count),
            "failure_count": str(self.failure_count),
            "rate_limited_count": str(self.rate_limited_count),
            "avg_response_time_ms": str(self.avg_response_time_ms),
            "response_samples": str(self.response_samples),
            "cooldown_until": "" if self.cooldown_until is None else str(self.cooldown_until),
            "unhealthy_on_expiry": "1" if self.unhealthy_on_expiry else "0",
        }

    def apply_store_mapping(self, mapping: dict[str, str]) -> None:
        """Overwrite local state with values published by another worker."""
        if not mapping:
            return
        try:
            self.status = ProxyStatus(mapping.get("status", self.status.value))
            self.consecutive_failures = int(mapping.get("consecutive_failures", 0))
            self.total_requests = int(mapping.get("total_requests", 0))
            self.success_count = int(mapping.get("success_count", 0))
            self.failure_count = int(mapping.get("failure_count", 0))
            self.rate_limited_count = int(mapping.get("rate_limited_count", 0))
            self.avg_response_time_ms = float(mapping.get("avg_response_time_ms", 0.0))
            self.response_samples = int(mapping.get("response_samples", 0))
            cooldown = mapping.get("cooldown_until") or ""
            self.cooldown_until = float(cooldown) if cooldown else None
            self.unhealthy_on_expiry = mapping.get("unhealthy_on_expiry") == "1"
        except ValueError:
            # Garbled entry: keep local state.
            return
        if self.status is not ProxyStatus.RATE_LIMITED:
            self.cooldown_until = None


@dataclass
class RegistrationResult:
    """Outcome of registering a batch of proxy URIs."""

    registered: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "registered": list(self.registered),
            "duplicates": list(self.duplicates),
            "errors": list(self.errors),
        }


def _host_port(host: str, port: int) -> str:
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"
