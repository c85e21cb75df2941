# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Playwright page rendering for the gateway.

Chromium launch configuration, per-page resource blocking and XHR
capture, and the ``PlaywrightRenderer`` that browser instructions and
the job handler drive.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Any, Protocol

from playwright.async_api import Dialog, Error, Page, Response, Route

from .job import ScreenshotMode, ScreenshotSpec

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en-US"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/130.0.0.0 Safari/537.36"
)

# Resource types dropped whenever block_resources is on.
DEFAULT_BLOCKED_TYPES = frozenset({"image", "font", "media", "stylesheet"})
_BLOCKED_SUFFIXES = (".svg",)

_MAX_XHR_BODY = 256 * 1024


@dataclass
class BrowserConfig:
    """Browser launch configuration."""

    headless: bool = True
    locale: str = DEFAULT_LOCALE
    timeout_ms: int = 30000  # navigation and selector waits
    wait_until: str = "load"


@dataclass(frozen=True, slots=True)
class NavigationInfo:
    """Facts about the initial navigation response."""

    status: int | None
    url: str
    headers: dict[str, str]


class Renderer(Protocol):
    """Operations scenario instructions and the job handler need from a page."""

    @property
    def navigation(self) -> NavigationInfo: ...

    async def wait(self, ms: int) -> None: ...
    async def wait_for(self, selector: str) -> None: ...
    async def wait_browser(self, state: str) -> None: ...
    async def click(self, selector: str) -> None: ...
    async def fill(self, selector: str, value: str) -> None: ...
    async def scroll_x(self, pixels: int) -> None: ...
    async def scroll_y(self, pixels: int) -> None: ...
    async def evaluate(self, script: str) -> Any: ...
    async def screenshot(self, spec: ScreenshotSpec) -> bytes: ...
    async def cookies(self, url: str) -> list[dict]: ...
    async def frames(self) -> list[dict]: ...
    async def content(self) -> str: ...
    async def source(self) -> str: ...


# ── Chromium launch ───────────────────────────────────────────────

_chromium_install_attempted = False
_AUTO_INSTALL_TIMEOUT = 300  # seconds


async def _auto_install_chromium() -> bool:
    """Run ``playwright install chromium`` once per process.

    Returns True if install succeeded, False otherwise.
    """
    global _chromium_install_attempted  # noqa: PLW0603
    if _chromium_install_attempted:
        return False
    _chromium_install_attempted = True

    logger.info("Chromium not found, running 'playwright install chromium'")
    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=_AUTO_INSTALL_TIMEOUT)
        if proc.returncode == 0:
            logger.info("Chromium installed successfully")
            return True
        logger.warning(
            "playwright install chromium failed (rc=%d): %s",
            proc.returncode,
            stderr.decode(errors="replace")[:500],
        )
        return False
    except TimeoutError:
        logger.warning("Chromium install timed out after %ds", _AUTO_INSTALL_TIMEOUT)
        return False
    except Exception:
        logger.warning("Chromium auto-install failed", exc_info=True)
        return False


def chromium_launch_args(config: BrowserConfig) -> list[str]:
    """Chromium arguments used for every pooled browser."""
    return [
        "--disable-blink-features=AutomationControlled",
        f"--lang={config.locale}",
        "--disable-extensions",
        "--disable-dev-shm-usage",
        "--disable-background-networking",
        "--disable-sync",
        "--disable-gpu",
        "--no-first-run",
        "--disable-breakpad",
        "--no-pings",
        "--disable-component-update",
        "--noerrdialogs",
    ]


# ── Per-page setup ────────────────────────────────────────────────


def blocked_types_for(block_resources: bool, extra: frozenset[str]) -> frozenset[str]:
    return (DEFAULT_BLOCKED_TYPES | extra) if block_resources else extra


async def install_resource_blocking(page: Page, blocked_types: frozenset[str], *, block_svg: bool) -> None:
    """Abort requests whose resource type (or URL suffix) is blocked."""
    if not blocked_types and not block_svg:
        return

    async def _handler(route: Route) -> None:
        request = route.request
        path = request.url.split("?", 1)[0].lower()
        if request.resource_type in blocked_types or (block_svg and path.endswith(_BLOCKED_SUFFIXES)):
            await route.abort("blockedbyclient")
            return
        await route.continue_()

    await page.route("**/*", _handler)


class XhrRecorder:
    """Collect XHR responses observed on a page into ``sink``."""

    def __init__(self, sink: list[dict]) -> None:
        self._sink = sink

    def attach(self, page: Page) -> None:
        page.on("response", self._on_response)

    async def _on_response(self, response: Response) -> None:
        request = response.request
        if request.resource_type != "xhr":
            return
        try:
            body = (await response.body())[:_MAX_XHR_BODY].decode("utf-8", errors="replace")
        except Error:
            body = ""
        self._sink.append(
            {
                "url": request.url,
                "statusCode": response.status,
                "method": request.method,
                "requestHeaders": dict(request.headers),
                "headers": dict(response.headers),
                "body": body,
            }
        )


async def _dismiss_dialog(dialog: Dialog) -> None:
    logger.debug("JS dialog dismissed: type=%s message=%.100s", dialog.type, dialog.message)
    try:
        await dialog.dismiss()
    except Error:
        logger.debug("Dialog already handled", exc_info=True)


# ── Renderer ──────────────────────────────────────────────────────


class PlaywrightRenderer:
    """``Renderer`` backed by a live Playwright page."""

    def __init__(self, page: Page, response: Response | None, *, timeout_ms: int = 30000) -> None:
        self._page = page
        self._response = response
        self._timeout_ms = timeout_ms
        page.on("dialog", _dismiss_dialog)
        self._navigation = NavigationInfo(
            status=response.status if response is not None else None,
            url=page.url,
            headers=dict(response.headers) if response is not None else {},
        )

    @property
    def page(self) -> Page:
        return self._page

    @property
    def navigation(self) -> NavigationInfo:
        return self._navigation

    async def wait(self, ms: int) -> None:
        await self._page.wait_for_timeout(ms)

    async def wait_for(self, selector: str) -> None:
        await self._page.wait_for_selector(selector, timeout=self._timeout_ms)

    async def wait_browser(self, state: str) -> None:
        await self._page.wait_for_load_state(state, timeout=self._timeout_ms)

    async def click(self, selector: str) -> None:
        await self._page.click(selector, timeout=self._timeout_ms)

    async def fill(self, selector: str, value: str) -> None:
        await self._page.fill(selector, value, timeout=self._timeout_ms)

    async def scroll_x(self, pixels: int) -> None:
        await self._page.evaluate("([dx, dy]) => window.scrollBy(dx, dy)", [pixels, 0])

    async def scroll_y(self, pixels: int) -> None:
        await self._page.evaluate("([dx, dy]) => window.scrollBy(dx, dy)", [0, pixels])

    async def evaluate(self, script: str) -> Any:
        return await self._page.evaluate(script)

    async def screenshot(self, spec: ScreenshotSpec) -> bytes:
        if spec.mode is ScreenshotMode.SELECTOR and spec.selector:
            return await self._page.locator(spec.selector).first.screenshot(timeout=self._timeout_ms)
        return await self._page.screenshot(full_page=spec.mode is ScreenshotMode.FULL, type="png")

    async def cookies(self, url: str) -> list[dict]:
        return [dict(c) for c in await self._page.context.cookies(url)]

    async def frames(self) -> list[dict]:
        result = []
        for frame in self._page.frames:
            if frame is self._page.main_frame:
                continue
            try:
                element = await frame.frame_element()
                src = await element.get_attribute("src") or frame.url
                content = await frame.content()
            except Error:
                logger.debug("Skipping detached frame %s", frame.url)
                continue
            result.append({"src": src, "content": content})
        return result

    async def content(self) -> str:
        return await self._page.content()

    async def source(self) -> str:
        if self._response is None:
            return ""
        try:
            return (await self._response.body()).decode("utf-8", errors="replace")
        except Error:
            logger.debug("Initial response body unavailable", exc_info=True)
            return ""
