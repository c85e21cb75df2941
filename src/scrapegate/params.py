# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Query-string normalization into a ``ScrapeRequest``.

ScrapingBee parameter names are canonical. ScrapingAnt and ScraperAPI
spellings are accepted as aliases and copied over when the canonical
name is absent.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import Mapping
from typing import Any, Literal
from urllib.parse import urlsplit

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError
from .extract_rules import compile_rules
from .instructions import MAX_WAIT_MS, ActionKind, Instruction, Scenario, parse_scenario
from .job import (
    DEFAULT_WINDOW_HEIGHT,
    DEFAULT_WINDOW_WIDTH,
    RenderMode,
    ScrapeRequest,
    ScreenshotMode,
    ScreenshotSpec,
)
from .proxy import GROUP_GOOGLE_SERP, GROUP_RESIDENTIAL, ProxyOptions
from .renderer import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)

# canonical name -> alternatives, first present wins
EQUIVALENT_PARAMS: dict[str, tuple[str, ...]] = {
    "wait_for": ("wait_for_selector",),
    "country_code": ("proxy_country",),
    "premium_proxy": ("premium", "ultra_premium"),
    "device": ("device_type",),
}

VALID_RESOURCES = frozenset(
    {
        "document",
        "stylesheet",
        "image",
        "media",
        "font",
        "script",
        "texttrack",
        "xhr",
        "fetch",
        "eventsource",
        "websocket",
        "manifest",
        "other",
    }
)

# Query keys that may repeat; everything else takes its first value.
_LIST_PARAMS = frozenset({"block_resource"})

_FORWARD_PREFIXES = ("spb-", "ant-")
_SKIPPED_FORWARD_HEADERS = frozenset({"cookie", "set-cookie", "host"})
# hop-by-hop / connection-bound headers never replayed with keep_headers
_SKIPPED_KEEP_HEADERS = frozenset({"host", "content-length", "connection", "transfer-encoding"})

MOBILE_USER_AGENT = (
    "Mozilla/5.0 (Linux; Android 14; Pixel 8) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/130.0.0.0 Mobile Safari/537.36"
)

_BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Upgrade-Insecure-Requests": "1",
}


def browser_headers(device: str) -> dict[str, str]:
    """Realistic browser request headers for *device*."""
    headers = dict(_BASE_HEADERS)
    if device == "mobile":
        headers["User-Agent"] = MOBILE_USER_AGENT
        headers["Sec-CH-UA-Mobile"] = "?1"
    else:
        headers["User-Agent"] = DEFAULT_USER_AGENT
        headers["Sec-CH-UA-Mobile"] = "?0"
    return headers


class ScrapeParams(BaseModel):
    """Typed view of the gateway's query parameters."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=False)

    url: str = Field(min_length=1)
    extract_rules: str | None = None
    device: Literal["desktop", "mobile"] = "desktop"
    js_scenario: str | None = None
    render_js: bool = True
    browser: bool = True
    render: bool = True
    wait: int | None = None
    wait_for: str | None = None
    wait_browser: Literal["load", "domcontentloaded", "networkidle"] | None = None
    js_snippet: str | None = None
    screenshot: bool = False
    screenshot_full_page: bool = False
    screenshot_selector: str | None = None
    window_width: int = Field(default=DEFAULT_WINDOW_WIDTH, gt=0)
    window_height: int = Field(default=DEFAULT_WINDOW_HEIGHT, gt=0)
    return_page_source: bool = False
    transparent_status_code: bool = False
    json_response: bool = False
    forward_headers: bool = False
    forward_headers_pure: bool = False
    keep_headers: bool = False
    cookies: str | None = None
    timeout: int | None = Field(default=None, gt=0)
    custom_google: bool = False
    own_proxy: str | None = None
    premium_proxy: bool = False
    stealth_proxy: bool = False
    country_code: str | None = None
    proxy_type: Literal["datacenter", "residential"] = "datacenter"
    block_resources: bool = True
    block_resource: list[str] = Field(default_factory=list)
    binary_target: bool = False

    @property
    def renders(self) -> bool:
        return self.render_js and self.browser and self.render


# ---------------------------------------------------------------------------
# Raw query handling
# ---------------------------------------------------------------------------


def map_equivalent_params(params: dict[str, Any]) -> dict[str, Any]:
    """Copy alias values onto canonical names that are missing (in place)."""
    for canonical, alternatives in EQUIVALENT_PARAMS.items():
        if params.get(canonical):
            continue
        for alternative in alternatives:
            if params.get(alternative):
                params[canonical] = params[alternative]
                logger.debug("Parameter %s used as %s", alternative, canonical)
                break
    return params


def _flatten_query(query: Any) -> dict[str, Any]:
    """Collapse a query mapping to single values (lists for repeatable keys).

    Accepts Starlette ``QueryParams`` (``multi_items``), a plain mapping of
    strings, or a mapping of lists as produced by ``urllib.parse.parse_qs``.
    """
    if hasattr(query, "multi_items"):
        items = query.multi_items()
    else:
        items = []
        for key, value in query.items():
            if isinstance(value, list | tuple):
                items.extend((key, v) for v in value)
            else:
                items.append((key, value))

    flat: dict[str, Any] = {}
    for key, value in items:
        if key in _LIST_PARAMS:
            flat.setdefault(key, []).append(value)
        else:
            flat.setdefault(key, value)
    return flat


def _validate(raw: dict[str, Any]) -> ScrapeParams:
    if not raw.get("url"):
        raise ValidationError("Parameter url is either missing or empty", key="url")
    # Empty strings mean "not given" for every optional parameter.
    cleaned = {k: v for k, v in raw.items() if v != ""}
    try:
        return ScrapeParams.model_validate(cleaned)
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        key = ".".join(str(p) for p in first["loc"])
        raise ValidationError(f"Invalid value for parameter {key}: {first['msg']}", key=key) from None


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------


def build_scenario(params: ScrapeParams) -> Scenario:
    """User scenario with wait/wait_for/wait_browser/js_snippet steps prepended."""
    scenario = parse_scenario(params.js_scenario) if params.js_scenario else Scenario(strict=False)
    if not params.renders:
        return scenario

    if params.wait is not None:
        if params.wait < 0:
            raise ValidationError("Number value expected for wait parameter", key="wait")
        scenario = scenario.prepend(Instruction(ActionKind.WAIT, min(params.wait, MAX_WAIT_MS)))
    if params.wait_for is not None:
        scenario = scenario.prepend(Instruction(ActionKind.WAIT_FOR, params.wait_for))
    if params.wait_browser is not None:
        scenario = scenario.prepend(Instruction(ActionKind.WAIT_BROWSER, params.wait_browser))
    if params.js_snippet is not None:
        scenario = scenario.prepend(Instruction(ActionKind.EVALUATE, _decode_snippet(params.js_snippet)))
    return scenario


def _decode_snippet(encoded: str) -> str:
    try:
        snippet = base64.b64decode(encoded + "=" * (-len(encoded) % 4)).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        raise ValidationError("Decoding of js_snippet was not successful", key="js_snippet") from None
    if not snippet:
        raise ValidationError("Decoding of js_snippet was not successful", key="js_snippet")
    return snippet


def build_screenshot(params: ScrapeParams) -> ScreenshotSpec:
    spec = ScreenshotSpec()
    if params.screenshot:
        spec = ScreenshotSpec(ScreenshotMode.WINDOW)
    if params.screenshot_full_page:
        spec = ScreenshotSpec(ScreenshotMode.FULL)
    if params.screenshot_selector:
        spec = ScreenshotSpec(ScreenshotMode.SELECTOR, params.screenshot_selector)
    return spec


def build_block_types(params: ScrapeParams) -> frozenset[str]:
    for resource in params.block_resource:
        if resource not in VALID_RESOURCES:
            raise ValidationError(f"Unsupported value in block_resource: {resource}", key="block_resource")
    return frozenset(params.block_resource)


def build_headers(params: ScrapeParams, incoming: Mapping[str, str]) -> dict[str, str]:
    headers = browser_headers(params.device)

    if params.forward_headers or params.forward_headers_pure:
        forwarded: dict[str, str] = {}
        for name, value in incoming.items():
            lowered = name.lower()
            if not lowered.startswith(_FORWARD_PREFIXES):
                continue
            stripped = lowered[4:]
            if stripped in _SKIPPED_FORWARD_HEADERS:
                continue
            forwarded[stripped] = value
        headers = {**headers, **forwarded} if params.forward_headers else forwarded

    if params.keep_headers:
        headers = {k: v for k, v in incoming.items() if k.lower() not in _SKIPPED_KEEP_HEADERS}

    if params.cookies:
        headers["Cookie"] = params.cookies
    return headers


def create_proxy_options(params: ScrapeParams) -> ProxyOptions:
    """Translate proxy-related parameters into ``ProxyOptions``.

    Raises:
        ValidationError: Google target without ``custom_google``, bad country code.
    """
    host = urlsplit(params.url).hostname or ""
    if "google" in host and not params.custom_google:
        raise ValidationError("Set param custom_google to true to scrape Google urls", key="custom_google")
    if params.custom_google:
        return ProxyOptions(groups=(GROUP_GOOGLE_SERP,))

    if params.own_proxy:
        return ProxyOptions(proxy_urls=(params.own_proxy,))

    use_premium = params.premium_proxy or params.stealth_proxy or params.proxy_type == "residential"
    groups = (GROUP_RESIDENTIAL,) if use_premium else ()

    country_code = None
    if params.country_code:
        country_code = params.country_code.upper()
        if len(country_code) != 2:
            raise ValidationError("Parameter for country code must be a string of length 2", key="country_code")
        if not use_premium and country_code != "US":
            raise ValidationError(
                "Parameter for country code must be used with premium proxies when using non-US country",
                key="country_code",
            )
    return ProxyOptions(groups=groups, country_code=country_code)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse_request(query: Any, headers: Mapping[str, str], *, inputted_url: str = "") -> ScrapeRequest:
    """Normalize query parameters and incoming headers into a ``ScrapeRequest``.

    Raises:
        ValidationError: for any malformed or conflicting parameter.
    """
    raw = map_equivalent_params(_flatten_query(query))
    params = _validate(raw)

    parts = urlsplit(params.url)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ValidationError("Parameter url must be an absolute http(s) URL", key="url")

    extract_rules = None
    if params.extract_rules:
        try:
            decoded = json.loads(params.extract_rules)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"extract_rules is not valid JSON: {exc.msg}", key="extract_rules") from exc
        extract_rules = compile_rules(decoded)

    if params.binary_target and params.renders:
        raise ValidationError(
            "Param binary_target can be used only when JS rendering is set to false (render_js, browser, render)",
            key="binary_target",
        )
    if params.renders:
        render_mode = RenderMode.BROWSER
    elif params.binary_target:
        render_mode = RenderMode.BINARY
    else:
        render_mode = RenderMode.HTTP

    return ScrapeRequest(
        url=params.url,
        headers=build_headers(params, headers),
        render_mode=render_mode,
        extract_rules=extract_rules,
        scenario=build_scenario(params),
        screenshot=build_screenshot(params),
        proxy=create_proxy_options(params),
        device=params.device,
        block_resources=params.block_resources,
        block_resource_types=build_block_types(params),
        window_width=params.window_width,
        window_height=params.window_height,
        return_page_source=params.return_page_source,
        transparent_status_code=params.transparent_status_code,
        json_response=params.json_response,
        timeout_ms=params.timeout,
        inputted_url=inputted_url,
    )
