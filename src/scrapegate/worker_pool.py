# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""WorkerPool: one proxy configuration, one Chromium, many queued jobs.

A pool owns a FIFO queue and ``max_concurrency`` worker tasks. Every
worker shares the pool's browser (rendered jobs, fresh context per
attempt) and httpx client (plain and binary fetches), both configured
with the pool's proxy.

Lifecycle::

    pool = WorkerPool(PoolOptions(), handler)
    await pool.start()
    await pool.submit(job)
    ...
    await pool.shutdown()
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Protocol

import httpx
import structlog
from playwright.async_api import Browser, Playwright, async_playwright

from .errors import BrowserError, NavigationError
from .job import Job, RenderMode
from .proxy import ProxyOptions, ProxySettings, playwright_proxy
from .renderer import (
    BrowserConfig,
    PlaywrightRenderer,
    Renderer,
    XhrRecorder,
    _auto_install_chromium,
    blocked_types_for,
    chromium_launch_args,
    install_resource_blocking,
)
from .timing import BEFORE_QUEUE_ADD, ERROR, PAGE_LOADED, PRE_NAVIGATION, WORKER_PICKED_UP

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_MAX_REQUEST_RETRIES = 3

# Navigation statuses treated as a failed attempt in browser mode.
_BLOCKED_STATUSES = frozenset({401, 403, 429})

# httpx advertises only the content codings it can decode.
_CLIENT_MANAGED_HEADERS = frozenset({"accept-encoding"})


# ---------------------------------------------------------------------------
# Options and snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PoolOptions:
    """Configuration that selects (and keys) a worker pool."""

    proxy: ProxyOptions = field(default_factory=ProxyOptions)
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY

    def to_dict(self) -> dict:
        return {"proxy": self.proxy.canonical(), "maxConcurrency": self.max_concurrency}

    @property
    def key(self) -> str:
        """Canonical serialization; equal configurations yield equal keys."""
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @property
    def redacted_key(self) -> str:
        """:attr:`key` without proxy credentials, for logs and health output."""
        data = {"proxy": self.proxy.redacted(), "maxConcurrency": self.max_concurrency}
        return json.dumps(data, sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True, slots=True)
class PoolHealth:
    """Immutable snapshot of pool state for monitoring."""

    key: str
    queued: int
    active: int
    max_concurrency: int
    workers_alive: int
    browser_connected: bool

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "queued": self.queued,
            "active": self.active,
            "maxConcurrency": self.max_concurrency,
            "workersAlive": self.workers_alive,
            "browserConnected": self.browser_connected,
        }


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of a non-rendered fetch."""

    status_code: int
    url: str
    headers: dict[str, str]
    content: bytes
    encoding: str = "utf-8"

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")


class JobHandler(Protocol):
    async def handle_browser(self, job: Job, renderer: Renderer) -> None: ...
    async def handle_http(self, job: Job, fetch: FetchResult) -> None: ...
    async def handle_failure(self, job: Job, exc: BaseException | None) -> None: ...


# ---------------------------------------------------------------------------
# WorkerPool
# ---------------------------------------------------------------------------


class WorkerPool:
    """Queue plus worker tasks sharing one browser and one HTTP client."""

    def __init__(
        self,
        options: PoolOptions,
        handler: JobHandler,
        *,
        browser_config: BrowserConfig | None = None,
        proxy_settings: ProxySettings | None = None,
        max_request_retries: int = DEFAULT_MAX_REQUEST_RETRIES,
    ) -> None:
        self._options = options
        self._handler = handler
        self._config = browser_config or BrowserConfig()
        self._proxy_url = options.proxy.proxy_url(proxy_settings or ProxySettings())
        self._max_request_retries = max_request_retries

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._client: httpx.AsyncClient | None = None
        self._queue: asyncio.Queue[Job] = asyncio.Queue()
        self._workers: set[asyncio.Task] = set()
        self._active = 0
        self._shutdown_event = asyncio.Event()
        self._started = False

    @property
    def options(self) -> PoolOptions:
        return self._options

    @property
    def key(self) -> str:
        return self._options.key

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Launch the browser and HTTP client, then spawn the workers."""
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._launch_browser()
        except BaseException:
            await self._playwright.stop()
            self._playwright = None
            raise

        self._client = httpx.AsyncClient(
            proxy=self._proxy_url,
            follow_redirects=True,
            timeout=httpx.Timeout(self._config.timeout_ms / 1000),
        )
        self._shutdown_event.clear()
        for index in range(self._options.max_concurrency):
            self._spawn_worker(index)
        self._started = True
        logger.info(
            "WorkerPool started (max_concurrency=%d, proxy=%s)",
            self._options.max_concurrency,
            "yes" if self._proxy_url else "direct",
        )

    async def _launch_browser(self) -> Browser:
        kwargs = {
            "headless": self._config.headless,
            "args": chromium_launch_args(self._config),
        }
        proxy = playwright_proxy(self._proxy_url)
        if proxy is not None:
            kwargs["proxy"] = proxy
        try:
            return await self._playwright.chromium.launch(**kwargs)
        except Exception as exc:
            if "executable doesn't exist" not in str(exc).lower():
                raise BrowserError(f"Chromium launch failed: {exc}") from exc
            if await _auto_install_chromium():
                return await self._playwright.chromium.launch(**kwargs)
            raise BrowserError(
                "Chromium is not installed and auto-install failed. Please run: playwright install chromium"
            ) from exc

    async def submit(self, job: Job) -> None:
        """Enqueue *job*. Never blocks; the queue is unbounded."""
        if not self._started or self._shutdown_event.is_set():
            raise BrowserError("Worker pool is not running")
        job.timing.mark(BEFORE_QUEUE_ADD)
        self._queue.put_nowait(job)

    async def shutdown(self) -> None:
        """Cancel workers and close the browser, client, and playwright."""
        self._shutdown_event.set()
        self._started = False

        workers = list(self._workers)
        for task in workers:
            task.cancel()
        for task in workers:
            with suppress(asyncio.CancelledError):
                await task
        self._workers.clear()

        if self._client is not None:
            with suppress(Exception):
                await self._client.aclose()
            self._client = None
        if self._browser is not None:
            with suppress(Exception):
                await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            with suppress(Exception):
                await self._playwright.stop()
            self._playwright = None

        logger.info("WorkerPool shut down (dropped %d queued job(s))", self._queue.qsize())

    def health(self) -> PoolHealth:
        """Return a snapshot of pool health."""
        return PoolHealth(
            key=self._options.redacted_key,
            queued=self._queue.qsize(),
            active=self._active,
            max_concurrency=self._options.max_concurrency,
            workers_alive=sum(1 for t in self._workers if not t.done()),
            browser_connected=self._browser is not None and self._browser.is_connected(),
        )

    # ── Workers ──────────────────────────────────────────────────────

    def _spawn_worker(self, index: int) -> None:
        task = asyncio.get_running_loop().create_task(self._worker_loop(), name=f"scrapegate-worker-{index}")
        self._workers.add(task)
        task.add_done_callback(lambda t, i=index: self._handle_worker_exit(t, i))

    def _handle_worker_exit(self, task: asyncio.Task, index: int) -> None:
        """Restart a worker if it crashed unexpectedly (not cancelled)."""
        self._workers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not self._shutdown_event.is_set():
            logger.error("Worker %d crashed, restarting: %s", index, exc, exc_info=exc)
            self._spawn_worker(index)

    async def _worker_loop(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                with structlog.contextvars.bound_contextvars(request_id=job.token, url=job.request.url):
                    await self.process(job)
            finally:
                self._queue.task_done()

    async def process(self, job: Job) -> None:
        """Run *job* with retries, ending in exactly one handler call."""
        job.timing.mark(WORKER_PICKED_UP)
        self._active += 1
        try:
            attempts = 1 if job.request.transparent_status_code else self._max_request_retries + 1
            last_exc: BaseException | None = None
            for attempt in range(1, attempts + 1):
                job.retry_count = attempt - 1
                try:
                    await self._run_once(job)
                    return
                except Exception as exc:
                    last_exc = exc
                    job.timing.mark(ERROR)
                    job.details.add_error(attempt, str(exc) or type(exc).__name__)
                    logger.warning("Attempt %d/%d for %s failed: %s", attempt, attempts, job.request.url, exc)
            try:
                await self._handler.handle_failure(job, last_exc)
            except Exception:
                logger.exception("Failure handler raised for %s", job.request.url)
        finally:
            self._active -= 1

    async def _run_once(self, job: Job) -> None:
        if job.request.render_mode is RenderMode.BROWSER:
            await self._run_browser(job)
            return
        fetch = await self.fetch(job)
        await self._handler.handle_http(job, fetch)

    # ── Browser mode ─────────────────────────────────────────────────

    async def _run_browser(self, job: Job) -> None:
        if self._browser is None:
            raise BrowserError("Browser is not running")
        request = job.request
        headers = dict(request.headers)
        user_agent = headers.pop("User-Agent", None)
        context = await self._browser.new_context(
            viewport={"width": request.window_width, "height": request.window_height},
            locale=self._config.locale,
            user_agent=user_agent,
            extra_http_headers=headers,
            ignore_https_errors=True,
            accept_downloads=False,
        )
        try:
            page = await context.new_page()
            job.timing.mark(PRE_NAVIGATION)
            await install_resource_blocking(
                page,
                blocked_types_for(request.block_resources, request.block_resource_types),
                block_svg=request.block_resources,
            )
            XhrRecorder(job.details.xhr).attach(page)

            response = await page.goto(request.url, wait_until=self._config.wait_until, timeout=self._config.timeout_ms)
            job.timing.mark(PAGE_LOADED)
            status = response.status if response is not None else None
            job.details.upstream_status = status
            if status is not None and (status >= 500 or status in _BLOCKED_STATUSES):
                raise NavigationError(f"Request blocked or failed - received {status} status code", status_code=status)

            renderer = PlaywrightRenderer(page, response, timeout_ms=self._config.timeout_ms)
            await self._handler.handle_browser(job, renderer)
        finally:
            with suppress(Exception):
                await context.close()

    # ── HTTP / binary mode ───────────────────────────────────────────

    async def fetch(self, job: Job) -> FetchResult:
        """GET the job URL without rendering.

        Raises:
            NavigationError: for a final status >= 300 other than 404.
        """
        if self._client is None:
            raise BrowserError("HTTP client is not running")
        try:
            headers = {k: v for k, v in job.request.headers.items() if k.lower() not in _CLIENT_MANAGED_HEADERS}
            response = await self._client.get(job.request.url, headers=headers)
        except httpx.HTTPError as exc:
            raise NavigationError(f"{type(exc).__name__}: {exc}") from exc
        job.timing.mark(PAGE_LOADED)
        job.details.upstream_status = response.status_code
        if response.status_code >= 300 and response.status_code != 404:
            raise NavigationError(f"HTTPError: Response code {response.status_code}", status_code=response.status_code)
        return FetchResult(
            status_code=response.status_code,
            url=str(response.url),
            headers=dict(response.headers),
            content=response.content,
            encoding=response.encoding or "utf-8",
        )


async def create_pool(
    options: PoolOptions,
    handler: JobHandler,
    *,
    browser_config: BrowserConfig | None = None,
    proxy_settings: ProxySettings | None = None,
    max_request_retries: int = DEFAULT_MAX_REQUEST_RETRIES,
) -> WorkerPool:
    """Build and start a pool (the registry's default factory)."""
    pool = WorkerPool(
        options,
        handler,
        browser_config=browser_config,
        proxy_settings=proxy_settings,
        max_request_retries=max_request_retries,
    )
    await pool.start()
    return pool
