# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import scrapegate  # noqa: F401
except ImportError:
    raise ImportError("scrapegate is not installed. Run: pip install -e '.[dev]'") from None

import pytest
import structlog


@pytest.fixture(autouse=True)
def _block_real_browser(monkeypatch):
    """Safety net: prevent real Chromium launches in unit tests.

    Tests that need a browser patch ``scrapegate.worker_pool.async_playwright``
    explicitly; that patch takes priority over this fixture.
    """

    def _no_real_playwright():
        raise RuntimeError("Test tried to start a real Playwright. Patch 'scrapegate.worker_pool.async_playwright'.")

    monkeypatch.setattr("scrapegate.worker_pool.async_playwright", _no_real_playwright)


@pytest.fixture(autouse=True)
def _clear_contextvars():
    """Request-scoped log context must not leak between tests."""
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
