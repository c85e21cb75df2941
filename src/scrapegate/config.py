# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Server configuration from CLI arguments and ``SCRAPEGATE_*`` env vars.

Environment variables override CLI flags, so container deployments can
configure the gateway without changing the command line.
"""

from __future__ import annotations

import argparse
import os
from contextlib import suppress
from dataclasses import dataclass

from .proxy import ProxySettings
from .renderer import BrowserConfig
from .worker_pool import DEFAULT_MAX_CONCURRENCY, DEFAULT_MAX_REQUEST_RETRIES

DEFAULT_PORT = 8080
DEFAULT_RESPONSE_TIMEOUT_MS = 140_000
MAX_RESPONSE_TIMEOUT_MS = 140_000

_TRUTHY = ("1", "true", "yes")
_FALSY = ("0", "false", "no")


@dataclass(frozen=True, slots=True, kw_only=True)
class ServerConfig:
    host: str = "0.0.0.0"  # nosec B104
    port: int = DEFAULT_PORT
    log_format: str = "json"
    log_level: str = "INFO"
    headless: bool = True
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_request_retries: int = DEFAULT_MAX_REQUEST_RETRIES
    navigation_timeout_ms: int = 30_000
    default_timeout_ms: int = DEFAULT_RESPONSE_TIMEOUT_MS
    max_timeout_ms: int = MAX_RESPONSE_TIMEOUT_MS
    prewarm: bool = True
    drain_timeout: int = 30
    proxy_host: str = ""
    proxy_password: str = ""

    @property
    def browser_config(self) -> BrowserConfig:
        return BrowserConfig(headless=self.headless, timeout_ms=self.navigation_timeout_ms)

    @property
    def proxy_settings(self) -> ProxySettings:
        return ProxySettings(host=self.proxy_host, password=self.proxy_password)

    def response_timeout_ms(self, requested: int | None) -> int:
        """Effective response ceiling for a request asking for *requested* ms."""
        if requested is None:
            return self.default_timeout_ms
        return max(1, min(requested, self.max_timeout_ms))


def _env_bool(name: str, current: bool) -> bool:
    value = os.environ.get(name, "").strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    return current


def _env_int(name: str, current: int) -> int:
    value = os.environ.get(name, "").strip()
    if value:
        with suppress(ValueError):
            return int(value)
    return current


def parse_server_args(argv: list[str] | None = None) -> ServerConfig:
    """Parse CLI args and env vars into a ``ServerConfig``."""
    parser = argparse.ArgumentParser(description="ScrapeGate scraping API gateway")
    parser.add_argument("--host", default="0.0.0.0", help="HTTP server host (default: 0.0.0.0)")  # nosec B104
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help=f"HTTP server port (default: {DEFAULT_PORT})")
    parser.add_argument(
        "--log-format",
        choices=["json", "console"],
        default="json",
        help="Log output format (default: json)",
    )
    parser.add_argument("--log-level", default="INFO", help="Root log level (default: INFO)")
    parser.add_argument(
        "--headed",
        action="store_true",
        default=False,
        help="Run Chromium with a visible window (debugging)",
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=DEFAULT_MAX_CONCURRENCY,
        help=f"Worker tasks per pool (default: {DEFAULT_MAX_CONCURRENCY})",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=DEFAULT_MAX_REQUEST_RETRIES,
        help=f"Extra attempts per job after a failure (default: {DEFAULT_MAX_REQUEST_RETRIES})",
    )
    parser.add_argument(
        "--navigation-timeout",
        type=int,
        default=30_000,
        help="Navigation and selector timeout in ms (default: 30000)",
    )
    parser.add_argument(
        "--default-timeout",
        type=int,
        default=DEFAULT_RESPONSE_TIMEOUT_MS,
        help=f"Response timeout in ms when the request sets none (default: {DEFAULT_RESPONSE_TIMEOUT_MS})",
    )
    parser.add_argument(
        "--max-timeout",
        type=int,
        default=MAX_RESPONSE_TIMEOUT_MS,
        help=f"Upper bound for the timeout parameter in ms (default: {MAX_RESPONSE_TIMEOUT_MS})",
    )
    parser.add_argument(
        "--no-prewarm",
        action="store_true",
        default=False,
        help="Do not create the default and residential pools at startup",
    )
    parser.add_argument(
        "--drain-timeout",
        type=int,
        default=30,
        help="Graceful shutdown drain timeout seconds (default: 30)",
    )
    parser.add_argument("--proxy-host", default="", help="Proxy endpoint host:port for proxy groups")
    args, _ = parser.parse_known_args(argv)

    # Env var overrides
    host = os.environ.get("SCRAPEGATE_HOST", "").strip() or args.host
    port = _env_int("ACTOR_STANDBY_PORT", args.port)
    port = _env_int("SCRAPEGATE_PORT", port)

    log_format = os.environ.get("SCRAPEGATE_LOG_FORMAT", "").strip().lower()
    if log_format not in ("json", "console"):
        log_format = args.log_format
    log_level = os.environ.get("SCRAPEGATE_LOG_LEVEL", "").strip().upper() or args.log_level.upper()

    return ServerConfig(
        host=host,
        port=port,
        log_format=log_format,
        log_level=log_level,
        headless=_env_bool("SCRAPEGATE_HEADLESS", not args.headed),
        max_concurrency=max(1, _env_int("SCRAPEGATE_MAX_CONCURRENCY", args.max_concurrency)),
        max_request_retries=max(0, _env_int("SCRAPEGATE_MAX_RETRIES", args.max_retries)),
        navigation_timeout_ms=_env_int("SCRAPEGATE_NAVIGATION_TIMEOUT", args.navigation_timeout),
        default_timeout_ms=_env_int("SCRAPEGATE_DEFAULT_TIMEOUT", args.default_timeout),
        max_timeout_ms=_env_int("SCRAPEGATE_MAX_TIMEOUT", args.max_timeout),
        prewarm=_env_bool("SCRAPEGATE_PREWARM", not args.no_prewarm),
        drain_timeout=_env_int("SCRAPEGATE_DRAIN_TIMEOUT", args.drain_timeout),
        proxy_host=os.environ.get("SCRAPEGATE_PROXY_HOST", "").strip() or args.proxy_host,
        proxy_password=os.environ.get("SCRAPEGATE_PROXY_PASSWORD", "").strip(),
    )
