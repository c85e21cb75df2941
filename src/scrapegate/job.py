# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Normalized scrape request and the job that carries it through a worker pool."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType

from .extract_rules import ExtractRules
from .instructions import Scenario
from .proxy import ProxyOptions
from .timing import TimingPipeline

DEFAULT_WINDOW_WIDTH = 1920
DEFAULT_WINDOW_HEIGHT = 1080


class RenderMode(StrEnum):
    BROWSER = "browser"
    HTTP = "http"
    BINARY = "binary-target"


class ScreenshotMode(StrEnum):
    NONE = "none"
    WINDOW = "window"
    FULL = "full"
    SELECTOR = "selector"


@dataclass(frozen=True, slots=True)
class ScreenshotSpec:
    mode: ScreenshotMode = ScreenshotMode.NONE
    selector: str | None = None

    @property
    def requested(self) -> bool:
        return self.mode is not ScreenshotMode.NONE


@dataclass(frozen=True, slots=True, kw_only=True)
class ScrapeRequest:
    """Everything a worker needs to fetch and shape one page. Immutable."""

    url: str
    headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    render_mode: RenderMode = RenderMode.BROWSER
    extract_rules: ExtractRules | None = None
    scenario: Scenario = field(default_factory=Scenario)
    screenshot: ScreenshotSpec = field(default_factory=ScreenshotSpec)
    proxy: ProxyOptions = field(default_factory=ProxyOptions)
    device: str = "desktop"
    block_resources: bool = True
    block_resource_types: frozenset[str] = frozenset()
    window_width: int = DEFAULT_WINDOW_WIDTH
    window_height: int = DEFAULT_WINDOW_HEIGHT
    return_page_source: bool = False
    transparent_status_code: bool = False
    json_response: bool = False
    timeout_ms: int | None = None
    inputted_url: str = ""  # raw gateway path + query, for logs

    @property
    def renders(self) -> bool:
        return self.render_mode is RenderMode.BROWSER


@dataclass(slots=True)
class RequestDetails:
    """Mutable per-job facts gathered while executing (single writer)."""

    resolved_url: str | None = None
    response_headers: dict[str, str] | None = None
    upstream_status: int | None = None
    request_errors: list[dict] = field(default_factory=list)
    xhr: list[dict] = field(default_factory=list)
    iframes: list[dict] = field(default_factory=list)

    def add_error(self, attempt: int, message: str) -> None:
        self.request_errors.append({"attempt": attempt, "errorMessage": message})


@dataclass(slots=True, eq=False)
class Job:
    request: ScrapeRequest
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    details: RequestDetails = field(default_factory=RequestDetails)
    timing: TimingPipeline = field(default_factory=TimingPipeline)
    retry_count: int = 0
