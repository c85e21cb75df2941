# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for server configuration (CLI flags + env overrides)."""

from __future__ import annotations

import os

import pytest

from scrapegate.config import DEFAULT_PORT, MAX_RESPONSE_TIMEOUT_MS, ServerConfig, parse_server_args


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("SCRAPEGATE_") or name == "ACTOR_STANDBY_PORT":
            monkeypatch.delenv(name)


class TestDefaults:
    def test_no_args(self):
        config = parse_server_args([])
        assert config == ServerConfig()
        assert config.port == DEFAULT_PORT
        assert config.headless is True
        assert config.prewarm is True

    def test_unknown_args_ignored(self):
        assert parse_server_args(["--frobnicate"]).port == DEFAULT_PORT


class TestCliFlags:
    def test_flags(self):
        config = parse_server_args(
            [
                "--port",
                "9000",
                "--log-format",
                "console",
                "--log-level",
                "debug",
                "--headed",
                "--max-concurrency",
                "4",
                "--max-retries",
                "0",
                "--no-prewarm",
                "--proxy-host",
                "proxy.local:8000",
            ]
        )
        assert config.port == 9000
        assert config.log_format == "console"
        assert config.log_level == "DEBUG"
        assert config.headless is False
        assert config.max_concurrency == 4
        assert config.max_request_retries == 0
        assert config.prewarm is False
        assert config.proxy_settings.host == "proxy.local:8000"

    def test_bad_log_format_rejected(self):
        with pytest.raises(SystemExit):
            parse_server_args(["--log-format", "xml"])


class TestEnvOverrides:
    """Env vars win over CLI flags."""

    def test_port_precedence(self, monkeypatch):
        monkeypatch.setenv("ACTOR_STANDBY_PORT", "4321")
        assert parse_server_args(["--port", "9000"]).port == 4321
        monkeypatch.setenv("SCRAPEGATE_PORT", "5555")
        assert parse_server_args(["--port", "9000"]).port == 5555

    def test_invalid_int_keeps_flag(self, monkeypatch):
        monkeypatch.setenv("SCRAPEGATE_PORT", "eighty")
        assert parse_server_args(["--port", "9000"]).port == 9000

    def test_booleans(self, monkeypatch):
        monkeypatch.setenv("SCRAPEGATE_HEADLESS", "false")
        monkeypatch.setenv("SCRAPEGATE_PREWARM", "0")
        config = parse_server_args([])
        assert config.headless is False
        assert config.prewarm is False

    def test_unrecognized_boolean_keeps_flag(self, monkeypatch):
        monkeypatch.setenv("SCRAPEGATE_HEADLESS", "maybe")
        assert parse_server_args(["--headed"]).headless is False

    def test_log_format_and_level(self, monkeypatch):
        monkeypatch.setenv("SCRAPEGATE_LOG_FORMAT", "console")
        monkeypatch.setenv("SCRAPEGATE_LOG_LEVEL", "warning")
        config = parse_server_args([])
        assert config.log_format == "console"
        assert config.log_level == "WARNING"

    def test_invalid_log_format_ignored(self, monkeypatch):
        monkeypatch.setenv("SCRAPEGATE_LOG_FORMAT", "xml")
        assert parse_server_args([]).log_format == "json"

    def test_concurrency_floor(self, monkeypatch):
        monkeypatch.setenv("SCRAPEGATE_MAX_CONCURRENCY", "0")
        monkeypatch.setenv("SCRAPEGATE_MAX_RETRIES", "-2")
        config = parse_server_args([])
        assert config.max_concurrency == 1
        assert config.max_request_retries == 0

    def test_proxy_credentials(self, monkeypatch):
        monkeypatch.setenv("SCRAPEGATE_PROXY_HOST", "p.example:8000")
        monkeypatch.setenv("SCRAPEGATE_PROXY_PASSWORD", "secret")
        settings = parse_server_args([]).proxy_settings
        assert settings.enabled
        assert settings.password == "secret"


class TestResponseTimeout:
    def test_default_when_unset(self):
        assert ServerConfig().response_timeout_ms(None) == 140_000

    def test_clamped_to_max(self):
        assert ServerConfig().response_timeout_ms(10**9) == MAX_RESPONSE_TIMEOUT_MS

    def test_requested_below_max(self):
        assert ServerConfig().response_timeout_ms(5_000) == 5_000

    def test_browser_config(self):
        config = ServerConfig(headless=False, navigation_timeout_ms=1_000)
        assert config.browser_config.headless is False
        assert config.browser_config.timeout_ms == 1_000
