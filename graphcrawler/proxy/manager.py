"""Proxy pool manager with random healthy selection and lazy cooldown re-admission.

Proxies are registered from a list of URI strings (``scheme://[user:pass@]host:port``
or ``host:port[:user:pass]``). Selection picks uniformly at random among the
proxies currently ``healthy``. Health moves through three states:

    healthy  <-> unhealthy     (failure threshold reached / success)
    healthy  <-> rate_limited  (429 response / cooldown elapsed)

Cooldown expiry is evaluated lazily inside ``acquire`` against an injectable
clock; there are no background timers. Removal is an explicit operator action
and is never reversed by promotion.

Transitions are published best-effort to the shared key-value store so that
other crawl processes see the same pool; the store is advisory (last writer
wins) and an unreachable store never blocks selection or reporting.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
import time
from collections.abc import Callable, Iterable

import httpx

from graphcrawler.middleware.error_handler import ConfigurationError, StoreUnavailableError
from graphcrawler.proxy.parser import mask_proxy_uri, parse_proxy_uri
from graphcrawler.proxy.types import ProxyRecord, ProxyStatus, RegistrationResult
from graphcrawler.store import KeyValueStore

logger = logging.getLogger(__name__)

_KEY_ALL = "proxies:all"
_KEY_REMOVED = "proxies:removed"


def _status_key(status: ProxyStatus) -> str:
    return f"proxies:status:{status.value}"


def _record_key(proxy_id: str) -> str:
    return "proxies:record:" + hashlib.sha256(proxy_id.encode("utf-8")).hexdigest()[:24]


class ProxyPoolManager:
    """Tracks proxy health and serves random healthy proxies.

    Parameters
    ----------
    store:
        Shared key-value store, or None for a purely in-process pool.
    failure_threshold:
        Consecutive failures that move a healthy proxy to unhealthy.
    rate_limit_cooldown:
        Default cooldown in seconds after a 429.
    enabled:
        When False, ``acquire`` always returns None (direct egress).
    clock:
        Wall-clock source in seconds; cooldown expiries are shared across
        processes so they use epoch time.
    rng:
        Random source used for selection.
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        failure_threshold: int = 3,
        rate_limit_cooldown: float = 60.0,
        probe_url: str = "https://httpbin.org/ip",
        probe_timeout: float = 10.0,
        health_check_interval: float = 300.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        if failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1")
        self._store = store
        self._failure_threshold = failure_threshold
        self._rate_limit_cooldown = rate_limit_cooldown
        self._probe_url = probe_url
        self._probe_timeout = probe_timeout
        self._health_check_interval = health_check_interval
        self._enabled = enabled
        self._clock = clock
        self._rng = rng or random.Random()
        self._proxies: dict[str, ProxyRecord] = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    def __len__(self) -> int:
        return len(self._proxies)

    def get(self, proxy_id: str) -> ProxyRecord | None:
        return self._proxies.get(proxy_id)

    # ------------------------------------------------------------------
    # Initialization / registration
    # ------------------------------------------------------------------

    async def initialize(self, uris: Iterable[str] = ()) -> RegistrationResult:
        """Register configured proxies and reconcile with the shared store.

        Proxies removed by another process are dropped; proxies registered by
        another process are adopted along with their published health.
        """
        result = await self.register(uris, _from_config=True)
        if self._store is None:
            return result

        try:
            removed = await self._store.set_members(_KEY_REMOVED)
            known = await self._store.set_members(_KEY_ALL)
        except StoreUnavailableError:
            logger.warning("Proxy pool starting without shared state: store unavailable")
            return result

        for proxy_id in removed & set(self._proxies):
            self._proxies.pop(proxy_id, None)
            logger.info("Dropping proxy removed by operator: %s", mask_proxy_uri(proxy_id))

        for proxy_id in known - removed:
            record = self._proxies.get(proxy_id)
            if record is None:
                try:
                    record = parse_proxy_uri(proxy_id)
                except ConfigurationError:
                    logger.warning("Ignoring malformed proxy in shared store: %s", mask_proxy_uri(proxy_id))
                    continue
                self._proxies[record.id] = record
            try:
                record.apply_store_mapping(await self._store.hash_get_all(_record_key(proxy_id)))
            except StoreUnavailableError:
                break

        logger.info(
            "Proxy pool initialized with %d proxies (%d healthy)",
            len(self._proxies),
            self._count(ProxyStatus.HEALTHY),
        )
        return result

    async def register(self, uris: Iterable[str], *, _from_config: bool = False) -> RegistrationResult:
        """Parse and add proxies; malformed entries are reported, not fatal.

        Valid entries start ``healthy``. Re-registering a known id is a no-op.
        """
        result = RegistrationResult()
        new_records: list[ProxyRecord] = []

        for raw in uris:
            try:
                record = parse_proxy_uri(raw)
            except ConfigurationError as exc:
                result.errors.append({"entry": mask_proxy_uri(str(raw)), "error": exc.message})
                logger.warning("Rejected proxy entry %s: %s", mask_proxy_uri(str(raw)), exc.message)
                continue
            if record.id in self._proxies:
                result.duplicates.append(record.masked_id)
                continue
            self._proxies[record.id] = record
            new_records.append(record)
            result.registered.append(record.masked_id)

        if new_records and self._store is not None:
            try:
                ids = [r.id for r in new_records]
                if not _from_config:
                    # An explicit registration lifts an earlier removal.
                    await self._store.set_remove(_KEY_REMOVED, *ids)
                await self._store.set_add(_KEY_ALL, *ids)
            except StoreUnavailableError:
                logger.debug("Could not publish %d new proxies", len(new_records))
            for record in new_records:
                await self._publish(record)

        if result.registered or result.errors:
            logger.info(
                "Registered %d proxies (%d duplicates, %d rejected)",
                len(result.registered),
                len(result.duplicates),
                len(result.errors),
            )
        return result

    async def remove(self, proxy_ids: Iterable[str]) -> list[str]:
        """Remove proxies from the pool. Removal is authoritative.

        Accepts canonical ids or raw entries in either textual form.
        """
        removed: list[str] = []
        for raw in proxy_ids:
            proxy_id = self._resolve_id(raw)
            record = self._proxies.pop(proxy_id, None)
            if record is None:
                continue
            removed.append(record.masked_id)
            logger.info("Proxy removed by operator: %s", record.masked_id)
            if self._store is None:
                continue
            try:
                await self._store.set_add(_KEY_REMOVED, proxy_id)
                await self._store.set_remove(_KEY_ALL, proxy_id)
                for status in ProxyStatus:
                    await self._store.set_remove(_status_key(status), proxy_id)
                await self._store.delete(_record_key(proxy_id))
            except StoreUnavailableError:
                logger.warning("Proxy removal not published: store unavailable")
        return removed

    def _resolve_id(self, raw: str) -> str:
        if raw in self._proxies:
            return raw
        try:
            return parse_proxy_uri(raw).id
        except ConfigurationError:
            return raw

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def acquire(self) -> ProxyRecord | None:
        """Return a uniformly random healthy proxy, or None for direct egress.

        Rate-limited proxies whose cooldown has elapsed are re-evaluated
        first: they return to ``healthy`` unless a failure threshold was
        reached during the cooldown, in which case they become ``unhealthy``.
        """
        if not self._enabled or not self._proxies:
            return None

        now = self._clock()
        for record in self._promote_expired(now):
            await self._publish(record)

        healthy = [r for r in self._proxies.values() if r.status is ProxyStatus.HEALTHY]
        if not healthy:
            return None

        record = self._rng.choice(healthy)
        record.total_requests += 1
        record.last_used = now
        return record

    def _promote_expired(self, now: float) -> list[ProxyRecord]:
        changed: list[ProxyRecord] = []
        for record in self._proxies.values():
            if record.status is not ProxyStatus.RATE_LIMITED:
                continue
            if record.cooldown_until is not None and now < record.cooldown_until:
                continue
            record.cooldown_until = None
            if record.unhealthy_on_expiry:
                record.status = ProxyStatus.UNHEALTHY
                record.unhealthy_on_expiry = False
                logger.info("Proxy cooldown elapsed, now unhealthy: %s", record.masked_id)
            else:
                record.status = ProxyStatus.HEALTHY
                logger.info("Proxy cooldown elapsed, healthy again: %s", record.masked_id)
            changed.append(record)
        return changed

    # ------------------------------------------------------------------
    # Health reporting
    # ------------------------------------------------------------------

    async def report_success(self, proxy_id: str, response_time_ms: float | None = None) -> None:
        """Reset consecutive failures and restore the proxy to ``healthy``."""
        record = self._proxies.get(proxy_id)
        if record is None:
            return
        previous = record.status
        record.consecutive_failures = 0
        record.success_count += 1
        record.status = ProxyStatus.HEALTHY
        record.cooldown_until = None
        record.unhealthy_on_expiry = False
        if response_time_ms is not None:
            record.response_samples += 1
            record.avg_response_time_ms += (
                response_time_ms - record.avg_response_time_ms
            ) / record.response_samples
        if previous is not ProxyStatus.HEALTHY:
            logger.info("Proxy restored to healthy: %s", record.masked_id)
        await self._publish(record)

    async def report_failure(self, proxy_id: str, reason: str = "") -> None:
        """Count a failure; reaching the threshold makes a healthy proxy unhealthy.

        A rate-limited proxy keeps its status but is marked to become
        unhealthy when its cooldown elapses.
        """
        record = self._proxies.get(proxy_id)
        if record is None:
            return
        record.consecutive_failures += 1
        record.failure_count += 1
        record.last_error = reason or None
        if record.consecutive_failures >= self._failure_threshold:
            if record.status is ProxyStatus.HEALTHY:
                record.status = ProxyStatus.UNHEALTHY
                logger.warning(
                    "Proxy marked unhealthy: %s (consecutive failures: %d)",
                    record.masked_id,
                    record.consecutive_failures,
                    extra={"proxy": record.masked_id, "error_reason": reason},
                )
            elif record.status is ProxyStatus.RATE_LIMITED:
                record.unhealthy_on_expiry = True
        await self._publish(record)

    async def report_rate_limited(self, proxy_id: str, cooldown: float | None = None) -> None:
        """Put the proxy into cooldown after a 429.

        An unhealthy proxy stays unhealthy; a proxy already cooling down
        keeps the later of the two expiries.
        """
        record = self._proxies.get(proxy_id)
        if record is None:
            return
        record.rate_limited_count += 1
        if record.status is ProxyStatus.UNHEALTHY:
            await self._publish(record)
            return
        expiry = self._clock() + (self._rate_limit_cooldown if cooldown is None else cooldown)
        if record.cooldown_until is not None:
            expiry = max(expiry, record.cooldown_until)
        record.status = ProxyStatus.RATE_LIMITED
        record.cooldown_until = expiry
        logger.warning(
            "Proxy rate limited until %.0f: %s",
            expiry,
            record.masked_id,
            extra={"proxy": record.masked_id},
        )
        await self._publish(record)

    async def reset_stats(self) -> None:
        """Return every proxy to ``healthy`` with zeroed counters."""
        for record in self._proxies.values():
            record.status = ProxyStatus.HEALTHY
            record.consecutive_failures = 0
            record.total_requests = 0
            record.success_count = 0
            record.failure_count = 0
            record.rate_limited_count = 0
            record.avg_response_time_ms = 0.0
            record.response_samples = 0
            record.cooldown_until = None
            record.unhealthy_on_expiry = False
            record.last_error = None
            await self._publish(record)
        logger.info("Proxy statistics reset for %d proxies", len(self._proxies))

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    async def health_check(self) -> dict[str, bool]:
        """Probe every registered proxy once.

        A successful probe counts as ``report_success``, a failed one as
        ``report_failure`` and a 429 as ``report_rate_limited``.
        """
        records = list(self._proxies.values())
        outcomes = await asyncio.gather(*(self._probe(r) for r in records))
        results = {r.masked_id: ok for r, ok in zip(records, outcomes)}
        logger.info(
            "Proxy health check complete: %d/%d passed",
            sum(1 for ok in outcomes if ok),
            len(records),
        )
        return results

    async def _probe(self, record: ProxyRecord) -> bool:
        started = time.monotonic()
        try:
            async with httpx.AsyncClient(
                proxy=record.id,
                timeout=httpx.Timeout(self._probe_timeout),
            ) as client:
                response = await client.get(self._probe_url)
        # ValueError: transport does not support the proxy scheme.
        except (httpx.HTTPError, OSError, ValueError) as exc:
            logger.debug("Health probe failed for %s: %s", record.masked_id, type(exc).__name__)
            await self.report_failure(record.id, f"probe: {type(exc).__name__}")
            return False

        if response.status_code == 429:
            await self.report_rate_limited(record.id)
            return False
        if response.status_code >= 400:
            await self.report_failure(record.id, f"probe: HTTP {response.status_code}")
            return False
        await self.report_success(record.id, (time.monotonic() - started) * 1000)
        return True

    async def health_check_loop(self) -> None:
        """Run ``health_check`` every ``health_check_interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(self._health_check_interval)
            if self._proxies:
                await self.health_check()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def _count(self, status: ProxyStatus) -> int:
        return sum(1 for r in self._proxies.values() if r.status is status)

    def list_proxies(self, status: ProxyStatus | None = None) -> list[ProxyRecord]:
        return [r for r in self._proxies.values() if status is None or r.status is status]

    def stats(self) -> dict:
        """Per-status counts, totals, aggregate success rate and response time."""
        records = list(self._proxies.values())
        successes = sum(r.success_count for r in records)
        failures = sum(r.failure_count for r in records)
        outcomes = successes + failures
        samples = sum(r.response_samples for r in records)
        weighted = sum(r.avg_response_time_ms * r.response_samples for r in records)
        return {
            "enabled": self._enabled,
            "total": len(records),
            "healthy": self._count(ProxyStatus.HEALTHY),
            "unhealthy": self._count(ProxyStatus.UNHEALTHY),
            "rate_limited": self._count(ProxyStatus.RATE_LIMITED),
            "total_requests": sum(r.total_requests for r in records),
            "total_successes": successes,
            "total_failures": failures,
            "total_rate_limited": sum(r.rate_limited_count for r in records),
            "success_rate": successes / outcomes if outcomes else 0.0,
            "average_response_time_ms": weighted / samples if samples else 0.0,
        }

    # ------------------------------------------------------------------
    # Shared store publication
    # ------------------------------------------------------------------

    def _tracked(self, record: ProxyRecord) -> bool:
        return self._proxies.get(record.id) is record

    async def _publish(self, record: ProxyRecord) -> None:
        """Write *record*'s status and counters; stops once the proxy is removed."""
        if self._store is None:
            return
        try:
            for status in ProxyStatus:
                if status is record.status:
                    continue
                if not self._tracked(record):
                    return
                await self._store.set_remove(_status_key(status), record.id)
            if not self._tracked(record):
                return
            await self._store.set_add(_status_key(record.status), record.id)
            if not self._tracked(record):
                return
            await self._store.hash_set(_record_key(record.id), record.to_store_mapping())
        except StoreUnavailableError:
            logger.debug("Proxy state for %s not published: store unavailable", record.masked_id)
