# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Outbound proxy selection.

A ``ProxyOptions`` describes *which* proxy a job needs (group, country,
or caller-supplied URLs); ``ProxySettings`` holds the gateway's own proxy
endpoint and credentials. Together they produce the proxy URL a worker
pool is launched with.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote, unquote, urlsplit, urlunsplit

GROUP_RESIDENTIAL = "RESIDENTIAL"
GROUP_GOOGLE_SERP = "GOOGLE_SERP"


@dataclass(frozen=True, slots=True)
class ProxySettings:
    """Gateway-wide proxy endpoint. Empty host means direct connections."""

    host: str = ""  # "proxy.example.com:8000"
    password: str = ""
    scheme: str = "http"

    @property
    def enabled(self) -> bool:
        return bool(self.host)


@dataclass(frozen=True, slots=True)
class ProxyOptions:
    """Per-request proxy requirements.

    Instances are compared through :meth:`canonical`, which normalizes
    group order and letter case.
    """

    groups: tuple[str, ...] = ()
    country_code: str | None = None
    proxy_urls: tuple[str, ...] = ()

    def canonical(self) -> dict:
        return {
            "groups": sorted({g.upper() for g in self.groups}),
            "countryCode": self.country_code.upper() if self.country_code else None,
            "proxyUrls": list(self.proxy_urls),
        }

    def redacted(self) -> dict:
        """:meth:`canonical` with credentials stripped from caller proxy URLs."""
        canonical = self.canonical()
        canonical["proxyUrls"] = [redact_proxy_url(url) for url in self.proxy_urls]
        return canonical

    def proxy_url(self, settings: ProxySettings) -> str | None:
        """Resolve the proxy URL for these options, or None for direct."""
        if self.proxy_urls:
            return self.proxy_urls[0]
        if not settings.enabled:
            return None
        parts = []
        canonical = self.canonical()
        if canonical["groups"]:
            parts.append("groups-" + "+".join(canonical["groups"]))
        if canonical["countryCode"]:
            parts.append("country-" + canonical["countryCode"])
        username = ",".join(parts) or "auto"
        return f"{settings.scheme}://{quote(username, safe='+,-')}:{quote(settings.password, safe='')}@{settings.host}"


def playwright_proxy(url: str | None) -> dict[str, str] | None:
    """Split a proxy URL into Playwright's ``{server, username, password}`` form."""
    if not url:
        return None
    parts = urlsplit(url)
    server = f"{parts.scheme or 'http'}://{parts.hostname}"
    if parts.port:
        server += f":{parts.port}"
    proxy = {"server": server}
    if parts.username:
        proxy["username"] = unquote(parts.username)
    if parts.password:
        proxy["password"] = unquote(parts.password)
    return proxy


def redact_proxy_url(url: str) -> str:
    """Replace the userinfo part of a proxy URL with ``<redacted>``."""
    parts = urlsplit(url)
    if not (parts.username or parts.password):
        return url
    netloc = parts.netloc.rpartition("@")[2]
    return urlunsplit(parts._replace(netloc=f"<redacted>@{netloc}"))
