"""Proxy pool package: parsing, health tracking, and random healthy selection."""

from graphcrawler.proxy.manager import ProxyPoolManager
from graphcrawler.proxy.parser import SUPPORTED_SCHEMES, mask_proxy_uri, parse_proxy_uri
from graphcrawler.proxy.types import ProxyRecord, ProxyStatus, RegistrationResult

__all__ = [
    "SUPPORTED_SCHEMES",
    "ProxyPoolManager",
    "ProxyRecord",
    "ProxyStatus",
    "RegistrationResult",
    "mask_proxy_uri",
    "parse_proxy_uri",
]
