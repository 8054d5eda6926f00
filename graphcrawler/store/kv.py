"""Shared key-value store used to coordinate crawler workers.

Thin async wrapper over ``redis.asyncio.Redis`` that namespaces every key
with a configurable prefix and turns connection level failures into
``StoreUnavailableError`` so callers can degrade to in-process state.

Only the per-key atomic primitives the crawler relies on are exposed: plain
values (optionally with TTL / NX), counters, sets, hashes and sorted sets.
Values are bytes on the wire; string helpers decode UTF-8.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from graphcrawler.middleware.error_handler import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class KeyValueStore:
    """Prefixed, failure-mapped view over a Redis connection.

    Parameters
    ----------
    client:
        A ``redis.asyncio.Redis`` (or API compatible) client created with
        ``decode_responses=False``.
    prefix:
        Namespace prepended to every key as ``{prefix}:{key}``.
    timeout:
        Per-operation timeout in seconds.
    """

    def __init__(self, client: redis.Redis, prefix: str = "graphcrawler", timeout: float = 5.0) -> None:
        self._client = client
        self._prefix = prefix.rstrip(":")
        self._timeout = timeout
        self._available = True

    @classmethod
    def from_url(cls, url: str, prefix: str = "graphcrawler", timeout: float = 5.0) -> "KeyValueStore":
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
            decode_responses=False,
        )
        return cls(client, prefix=prefix, timeout=timeout)

    @property
    def available(self) -> bool:
        """Whether the most recent operation reached the store."""
        return self._available

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}" if self._prefix else key

    def _strip(self, full_key: bytes | str) -> str:
        key = _text(full_key)
        head = f"{self._prefix}:"
        return key[len(head):] if self._prefix and key.startswith(head) else key

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            result = await asyncio.wait_for(awaitable, timeout=self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            if self._available:
                logger.warning("Key-value store unavailable during %s: %s", operation, exc)
            self._available = False
            raise StoreUnavailableError(operation=operation, reason=str(exc)) from exc
        if not self._available:
            logger.info("Key-value store reachable again")
        self._available = True
        return result

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        """Return True when the store answers, False otherwise."""
        try:
            return bool(await self._call("ping", self._client.ping()))
        except StoreUnavailableError:
            return False

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as exc:
            logger.debug("Error closing key-value store connection: %s", exc)

    # ------------------------------------------------------------------
    # Plain values
    # ------------------------------------------------------------------

    async def get(self, key: str) -> bytes | None:
        return await self._call("get", self._client.get(self._key(key)))

    async def get_text(self, key: str) -> str | None:
        value = await self.get(key)
        return None if value is None else _text(value)

    async def set(
        self,
        key: str,
        value: bytes | str,
        *,
        ttl: int | None = None,
        nx: bool = False,
    ) -> bool:
        """Write *value*; with ``nx`` only when the key does not exist yet."""
        result = await self._call(
            "set", self._client.set(self._key(key), value, ex=ttl, nx=nx)
        )
        return bool(result)

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self._client.exists(self._key(key))))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self._client.delete(*(self._key(k) for k in keys))))

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", self._client.incr(self._key(key))))

    # ------------------------------------------------------------------
    # Sets
    # ------------------------------------------------------------------

    async def set_add(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("sadd", self._client.sadd(self._key(key), *members)))

    async def set_remove(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("srem", self._client.srem(self._key(key), *members)))

    async def set_members(self, key: str) -> set[str]:
        members = await self._call("smembers", self._client.smembers(self._key(key)))
        return {_text(m) for m in members}

    # ------------------------------------------------------------------
    # Hashes
    # ------------------------------------------------------------------

    async def hash_set(self, key: str, mapping: dict[str, str | int | float]) -> None:
        if mapping:
            await self._call("hset", self._client.hset(self._key(key), mapping=mapping))

    async def hash_get_all(self, key: str) -> dict[str, str]:
        raw = await self._call("hgetall", self._client.hgetall(self._key(key)))
        return {_text(k): _text(v) for k, v in raw.items()}

    # ------------------------------------------------------------------
    # Sorted sets
    # ------------------------------------------------------------------

    async def sorted_add(self, key: str, member: str, score: float) -> None:
        await self._call("zadd", self._client.zadd(self._key(key), {member: score}))

    async def sorted_items(self, key: str, *, newest_first: bool = True) -> list[tuple[str, float]]:
        """(member, score) pairs ordered by score."""
        if newest_first:
            raw = await self._call(
                "zrevrange", self._client.zrevrange(self._key(key), 0, -1, withscores=True)
            )
        else:
            raw = await self._call("zrange", self._client.zrange(self._key(key), 0, -1, withscores=True))
        return [(_text(m), float(s)) for m, s in raw]

    async def sorted_remove(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("zrem", self._client.zrem(self._key(key), *members)))

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    async def scan(self, pattern: str) -> list[str]:
        """Keys matching *pattern* (relative to the prefix), prefix stripped."""

        async def _collect() -> list[str]:
            return [self._strip(k) async for k in self._client.scan_iter(match=self._key(pattern))]

        return await self._call("scan", _collect())
