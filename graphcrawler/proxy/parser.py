"""Proxy URI parsing and masking.

Two textual forms are accepted:

* ``scheme://[user:pass@]host:port`` with scheme in http/https/socks4/socks5
* ``host:port`` or ``host:port:user:pass`` (implicitly ``http``)

Both normalize to the canonical ``scheme://[user:pass@]host:port`` form,
which is the proxy's identifier.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

from graphcrawler.middleware.error_handler import ConfigurationError
from graphcrawler.proxy.types import ProxyRecord, _host_port

SUPPORTED_SCHEMES: frozenset[str] = frozenset({"http", "https", "socks4", "socks5"})

_HOSTNAME = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9._-]*[A-Za-z0-9])?$")
_IPV6 = re.compile(r"^[0-9A-Fa-f:.]+$")
_CREDENTIALS = re.compile(r"(?P<scheme>[a-z0-9]+://)[^/\s@]+@", re.IGNORECASE)


def mask_proxy_uri(uri: str) -> str:
    """Replace embedded credentials with ``***:***``.

    Bare ``host:port:user:pass`` entries are reduced to ``host:port:***:***``.
    """
    if "://" in uri:
        return _CREDENTIALS.sub(r"\g<scheme>***:***@", uri)
    parts = uri.split(":")
    if len(parts) == 4:
        return f"{parts[0]}:{parts[1]}:***:***"
    return uri


def _validate_host(host: str | None, raw: str) -> str:
    if not host:
        raise ConfigurationError("Proxy entry has no host", entry=mask_proxy_uri(raw))
    if ":" in host:
        if not _IPV6.match(host):
            raise ConfigurationError("Invalid proxy host", entry=mask_proxy_uri(raw))
        return host.lower()
    if not _HOSTNAME.match(host):
        raise ConfigurationError("Invalid proxy host", entry=mask_proxy_uri(raw))
    return host.lower()


def _validate_port(port: str | int | None, raw: str) -> int:
    if port is None or port == "":
        raise ConfigurationError("Proxy entry has no port", entry=mask_proxy_uri(raw))
    try:
        value = int(port)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("Proxy port is not a number", entry=mask_proxy_uri(raw)) from exc
    if not 1 <= value <= 65535:
        raise ConfigurationError("Proxy port out of range 1-65535", entry=mask_proxy_uri(raw))
    return value


def parse_proxy_uri(raw: str) -> ProxyRecord:
    """Parse one proxy entry into a fresh, healthy ``ProxyRecord``.

    Raises ``ConfigurationError`` for malformed entries.
    """
    entry = (raw or "").strip()
    if not entry:
        raise ConfigurationError("Empty proxy entry")

    if "://" in entry:
        parts = urlsplit(entry)
        scheme = parts.scheme.lower()
        if scheme not in SUPPORTED_SCHEMES:
            raise ConfigurationError(
                "Unsupported proxy scheme",
                entry=mask_proxy_uri(entry),
                scheme=scheme,
            )
        if parts.path not in ("", "/") or parts.query or parts.fragment:
            raise ConfigurationError("Proxy URI must not carry a path", entry=mask_proxy_uri(entry))
        try:
            port: int | str | None = parts.port
        except ValueError as exc:
            raise ConfigurationError("Invalid proxy port", entry=mask_proxy_uri(entry)) from exc
        host = _validate_host(parts.hostname, entry)
        username = parts.username or None
        password = parts.password if username is not None else None
    else:
        pieces = entry.split(":")
        if len(pieces) == 2:
            host_raw, port, username, password = pieces[0], pieces[1], None, None
        elif len(pieces) == 4:
            host_raw, port, username, password = pieces
            if not username or not password:
                raise ConfigurationError("Proxy credentials are empty", entry=mask_proxy_uri(entry))
        else:
            raise ConfigurationError(
                "Proxy entry must be host:port or host:port:user:pass",
                entry=mask_proxy_uri(entry),
            )
        scheme = "http"
        host = _validate_host(host_raw, entry)

    port_value = _validate_port(port, entry)

    userinfo = ""
    if username is not None:
        userinfo = f"{username}:{password}@" if password is not None else f"{username}@"

    return ProxyRecord(
        id=f"{scheme}://{userinfo}{_host_port(host, port_value)}",
        scheme=scheme,
        host=host,
        port=port_value,
        username=username,
        password=password,
    )
