# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for query-parameter normalization into ScrapeRequest."""

from __future__ import annotations

import base64
import json

import pytest
from starlette.datastructures import QueryParams

from scrapegate.errors import ValidationError
from scrapegate.instructions import MAX_WAIT_MS, ActionKind
from scrapegate.job import RenderMode, ScreenshotMode
from scrapegate.params import (
    MOBILE_USER_AGENT,
    browser_headers,
    map_equivalent_params,
    parse_request,
)
from scrapegate.proxy import GROUP_GOOGLE_SERP, GROUP_RESIDENTIAL
from scrapegate.renderer import DEFAULT_USER_AGENT

URL = "https://example.com/page"


def _parse(headers: dict | None = None, **params):
    query = {"url": URL, **{k: str(v).lower() if isinstance(v, bool) else str(v) for k, v in params.items()}}
    return parse_request(query, headers or {})


# ---------------------------------------------------------------------------
# Aliases and basics
# ---------------------------------------------------------------------------


class TestEquivalentParams:
    def test_alias_fills_missing_canonical(self):
        assert map_equivalent_params({"wait_for_selector": ".x"})["wait_for"] == ".x"

    def test_canonical_wins(self):
        params = map_equivalent_params({"wait_for": ".a", "wait_for_selector": ".b"})
        assert params["wait_for"] == ".a"

    def test_first_alternative_wins(self):
        params = map_equivalent_params({"premium": "true", "ultra_premium": "false"})
        assert params["premium_proxy"] == "true"

    def test_alias_used_end_to_end(self):
        request = parse_request({"url": URL, "device_type": "mobile", "proxy_country": "us"}, {})
        assert request.device == "mobile"
        assert request.proxy.country_code == "US"


class TestUrl:
    def test_missing_url(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_request({}, {})
        assert exc_info.value.key == "url"

    def test_empty_url(self):
        with pytest.raises(ValidationError, match="missing or empty"):
            parse_request({"url": ""}, {})

    @pytest.mark.parametrize("url", ["example.com", "ftp://example.com/", "/relative"])
    def test_non_http_url_rejected(self, url):
        with pytest.raises(ValidationError, match="absolute"):
            parse_request({"url": url}, {})

    def test_starlette_query_params(self):
        query = QueryParams("url=https%3A%2F%2Fexample.com%2F&block_resource=image&block_resource=font")
        request = parse_request(query, {}, inputted_url="/?url=...")
        assert request.url == "https://example.com/"
        assert request.block_resource_types == frozenset({"image", "font"})
        assert request.inputted_url == "/?url=..."

    def test_parse_qs_style_lists(self):
        request = parse_request({"url": [URL], "json_response": ["true"]}, {})
        assert request.json_response is True

    def test_invalid_typed_value_reports_key(self):
        with pytest.raises(ValidationError) as exc_info:
            _parse(window_width="wide")
        assert exc_info.value.key == "window_width"

    def test_empty_optional_values_ignored(self):
        request = parse_request({"url": URL, "wait": "", "country_code": ""}, {})
        assert request.proxy.country_code is None

    def test_defaults(self):
        request = _parse()
        assert request.render_mode is RenderMode.BROWSER
        assert request.block_resources is True
        assert request.window_width == 1920
        assert request.window_height == 1080
        assert request.json_response is False
        assert request.timeout_ms is None
        assert not request.scenario


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


class TestRenderMode:
    @pytest.mark.parametrize("flag", ["render_js", "browser", "render"])
    def test_any_false_flag_disables_rendering(self, flag):
        assert _parse(**{flag: False}).render_mode is RenderMode.HTTP

    def test_binary_target(self):
        assert _parse(render_js=False, binary_target=True).render_mode is RenderMode.BINARY

    def test_binary_target_requires_no_rendering(self):
        with pytest.raises(ValidationError) as exc_info:
            _parse(binary_target=True)
        assert exc_info.value.key == "binary_target"


class TestScenarioBuilding:
    """Convenience wait parameters become leading instructions."""

    def test_run_order(self):
        snippet = base64.b64encode(b"window.x = 1").decode()
        scenario = json.dumps({"instructions": [{"click": "#go"}]})
        request = _parse(wait=100, wait_for=".ready", wait_browser="networkidle", js_snippet=snippet, js_scenario=scenario)
        actions = [i.action for i in request.scenario.instructions]
        assert actions == [
            ActionKind.EVALUATE,
            ActionKind.WAIT_BROWSER,
            ActionKind.WAIT_FOR,
            ActionKind.WAIT,
            ActionKind.CLICK,
        ]
        assert request.scenario.instructions[0].param == "window.x = 1"
        assert request.scenario.strict is True

    def test_without_js_scenario_is_lenient(self):
        request = _parse(wait_for=".ready")
        assert request.scenario.strict is False
        assert len(request.scenario.instructions) == 1

    def test_js_scenario_strict_false(self):
        request = _parse(js_scenario=json.dumps({"instructions": [], "strict": False}))
        assert request.scenario.strict is False

    def test_wait_clamped(self):
        assert _parse(wait=10**6).scenario.instructions[0].param == MAX_WAIT_MS

    def test_negative_wait(self):
        with pytest.raises(ValidationError) as exc_info:
            _parse(wait=-5)
        assert exc_info.value.key == "wait"

    def test_unpadded_snippet(self):
        snippet = base64.b64encode(b"1+12").decode().rstrip("=")
        assert _parse(js_snippet=snippet).scenario.instructions[0].param == "1+12"

    def test_bad_snippet(self):
        with pytest.raises(ValidationError, match="js_snippet"):
            _parse(js_snippet="%%%")

    def test_waits_ignored_without_rendering(self):
        assert not _parse(render_js=False, wait=100).scenario

    def test_invalid_js_scenario(self):
        with pytest.raises(ValidationError) as exc_info:
            _parse(js_scenario="[1, 2")
        assert exc_info.value.key == "js_scenario"


class TestScreenshotAndBlocking:
    def test_window(self):
        assert _parse(screenshot=True).screenshot.mode is ScreenshotMode.WINDOW

    def test_full_page(self):
        assert _parse(screenshot_full_page=True).screenshot.mode is ScreenshotMode.FULL

    def test_selector_takes_precedence(self):
        spec = _parse(screenshot=True, screenshot_full_page=True, screenshot_selector="#main").screenshot
        assert spec.mode is ScreenshotMode.SELECTOR
        assert spec.selector == "#main"

    def test_none_by_default(self):
        assert _parse().screenshot.requested is False

    def test_block_resources_off(self):
        assert _parse(block_resources=False).block_resources is False

    def test_unknown_resource_type(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_request({"url": URL, "block_resource": ["image", "sprites"]}, {})
        assert exc_info.value.key == "block_resource"


class TestExtractRules:
    def test_compiled(self):
        request = _parse(extract_rules=json.dumps({"title": "h1"}))
        assert request.extract_rules["title"].selector == "h1"

    def test_invalid_json(self):
        with pytest.raises(ValidationError) as exc_info:
            _parse(extract_rules="{title")
        assert exc_info.value.key == "extract_rules"

    def test_invalid_rule(self):
        with pytest.raises(ValidationError) as exc_info:
            _parse(extract_rules=json.dumps({"title": {"selector": "h1", "type": "many"}}))
        assert exc_info.value.key == "title"


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------


class TestHeaders:
    def test_desktop_profile(self):
        headers = _parse().headers
        assert headers["User-Agent"] == DEFAULT_USER_AGENT
        assert headers["Sec-CH-UA-Mobile"] == "?0"

    def test_mobile_profile(self):
        assert browser_headers("mobile")["User-Agent"] == MOBILE_USER_AGENT

    def test_forward_headers_merges_prefixed(self):
        incoming = {"Spb-Accept-Language": "de", "Ant-X-Token": "t", "X-Other": "no", "Spb-Cookie": "c=1"}
        headers = _parse(headers=incoming, forward_headers=True).headers
        assert headers["accept-language"] == "de"
        assert headers["x-token"] == "t"
        assert "x-other" not in headers
        assert "cookie" not in headers
        assert headers["User-Agent"] == DEFAULT_USER_AGENT

    def test_forward_headers_pure(self):
        headers = _parse(headers={"Spb-X-A": "1"}, forward_headers_pure=True).headers
        assert headers == {"x-a": "1"}

    def test_keep_headers(self):
        incoming = {"Host": "gateway", "Content-Length": "0", "X-Custom": "1", "User-Agent": "mine"}
        headers = _parse(headers=incoming, keep_headers=True).headers
        assert headers == {"X-Custom": "1", "User-Agent": "mine"}

    def test_cookies(self):
        assert _parse(cookies="a=1; b=2").headers["Cookie"] == "a=1; b=2"


# ---------------------------------------------------------------------------
# Proxy selection
# ---------------------------------------------------------------------------


class TestProxyOptions:
    def test_default_is_direct(self):
        proxy = _parse().proxy
        assert proxy.groups == ()
        assert proxy.country_code is None

    @pytest.mark.parametrize("flag", ["premium_proxy", "stealth_proxy"])
    def test_premium_flags_select_residential(self, flag):
        assert _parse(**{flag: True}).proxy.groups == (GROUP_RESIDENTIAL,)

    def test_proxy_type_residential(self):
        assert _parse(proxy_type="residential").proxy.groups == (GROUP_RESIDENTIAL,)

    def test_google_requires_custom_google(self):
        with pytest.raises(ValidationError) as exc_info:
            parse_request({"url": "https://www.google.com/search?q=x"}, {})
        assert exc_info.value.key == "custom_google"

    def test_custom_google(self):
        request = parse_request({"url": "https://www.google.com/search?q=x", "custom_google": "true"}, {})
        assert request.proxy.groups == (GROUP_GOOGLE_SERP,)

    def test_own_proxy(self):
        proxy = _parse(own_proxy="http://u:p@10.0.0.1:3128").proxy
        assert proxy.proxy_urls == ("http://u:p@10.0.0.1:3128",)

    def test_us_without_premium(self):
        assert _parse(country_code="us").proxy.country_code == "US"

    def test_non_us_requires_premium(self):
        with pytest.raises(ValidationError, match="premium"):
            _parse(country_code="de")

    def test_non_us_with_premium(self):
        proxy = _parse(country_code="de", premium_proxy=True).proxy
        assert proxy.country_code == "DE"
        assert proxy.groups == (GROUP_RESIDENTIAL,)

    def test_country_code_length(self):
        with pytest.raises(ValidationError, match="length 2"):
            _parse(country_code="usa", premium_proxy=True)
