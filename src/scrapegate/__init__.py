# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""ScrapeGate: scraping API gateway with ScrapingBee-style parameters.

Accepts a target URL plus options over HTTP, runs the fetch on a pooled
headless browser (or a plain HTTP client), and returns:
- the rendered HTML, an extraction result, a screenshot, or raw bytes
- with ``json_response=true``, a full envelope (cookies, XHR, iframes,
  scenario report, headers)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ResultEnvelope:
    """Structured result returned for ``json_response=true``."""

    body: Any  # HTML string, extraction dict, or file text
    type: str  # html, json, file
    headers: dict[str, str] = field(default_factory=dict)
    cookies: list[dict] = field(default_factory=list)
    evaluate_results: list[str] = field(default_factory=list)
    scenario_report: dict | None = None
    iframes: list[dict] = field(default_factory=list)
    xhr: list[dict] = field(default_factory=list)
    initial_status_code: int | None = None
    resolved_url: str | None = None
    screenshot: str | None = None  # base64 PNG

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "body": self.body,
            "type": self.type,
            "headers": self.headers,
            "cookies": self.cookies,
            "evaluateResults": self.evaluate_results,
            "scenarioReport": self.scenario_report or {},
            "iframes": self.iframes,
            "xhr": self.xhr,
            "initialStatusCode": self.initial_status_code,
            "resolvedUrl": self.resolved_url,
        }
        if self.screenshot is not None:
            d["screenshot"] = self.screenshot
        return d
