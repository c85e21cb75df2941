# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""ScrapeGate HTTP server (Starlette + uvicorn).

Every ``GET`` outside the probe endpoints is a scrape request: parameters
are normalized, a job is queued on the matching worker pool, and the
response is held open until the job handler or the response timeout
resolves its correlation token.

Usage:
    scrapegate --port 8080 --log-format console
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass, field
from functools import partial

import structlog
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .config import ServerConfig, parse_server_args
from .correlator import Delivery, ResponseCorrelator
from .errors import ValidationError
from .handler import JobHandler
from .job import Job
from .params import parse_request
from .pool_registry import PoolFactory, WorkerPoolRegistry
from .problem_details import from_exception, from_validation
from .proxy import GROUP_RESIDENTIAL, ProxyOptions
from .timing import REQUEST_RECEIVED, now_ms
from .worker_pool import PoolOptions, create_pool

logger = logging.getLogger(__name__)


@dataclass(kw_only=True)
class Gateway:
    """Services shared by all requests, built once per application."""

    config: ServerConfig
    correlator: ResponseCorrelator
    handler: JobHandler
    registry: WorkerPoolRegistry
    draining: bool = False
    prewarmed: bool = False
    _prewarm_task: asyncio.Task | None = field(default=None, repr=False)

    def pool_options(self, proxy: ProxyOptions) -> PoolOptions:
        return PoolOptions(proxy=proxy, max_concurrency=self.config.max_concurrency)

    def baseline_pools(self) -> list[PoolOptions]:
        """Default and residential pools, created ahead of traffic."""
        return [
            self.pool_options(ProxyOptions()),
            self.pool_options(ProxyOptions(groups=(GROUP_RESIDENTIAL,))),
        ]


def build_gateway(config: ServerConfig, *, pool_factory: PoolFactory | None = None) -> Gateway:
    correlator = ResponseCorrelator()
    handler = JobHandler(correlator)
    if pool_factory is None:
        pool_factory = partial(
            create_pool,
            handler=handler,
            browser_config=config.browser_config,
            proxy_settings=config.proxy_settings,
            max_request_retries=config.max_request_retries,
        )
    return Gateway(
        config=config,
        correlator=correlator,
        handler=handler,
        registry=WorkerPoolRegistry(pool_factory),
    )


# ── Probes ───────────────────────────────────────────────────────────


async def _health_check(request: Request) -> JSONResponse:
    gateway: Gateway = request.app.state.gateway
    return JSONResponse({"status": "ok", "pendingResponses": gateway.correlator.pending})


async def _readiness_check(request: Request) -> JSONResponse:
    gateway: Gateway = request.app.state.gateway
    pools = gateway.registry.health()
    if gateway.draining:
        status = "draining"
    elif gateway.config.prewarm and not gateway.prewarmed:
        status = "starting"
    elif all(p.browser_connected for p in pools):
        status = "ready"
    else:
        status = "not_ready"
    return JSONResponse(
        {"status": status, "pools": [p.to_dict() for p in pools]},
        status_code=200 if status == "ready" else 503,
    )


# ── Scrape endpoint ──────────────────────────────────────────────────


def to_response(delivery: Delivery) -> Response:
    return Response(
        content=delivery.body,
        status_code=delivery.status_code,
        media_type=delivery.media_type,
        headers=dict(delivery.headers),
    )


async def _scrape(request: Request) -> Response:
    gateway: Gateway = request.app.state.gateway
    received = now_ms()
    inputted_url = request.url.path + (f"?{request.url.query}" if request.url.query else "")

    try:
        scrape_request = parse_request(request.query_params, request.headers, inputted_url=inputted_url)
    except ValidationError as exc:
        logger.info("Rejected request %s: %s", inputted_url, exc)
        return from_validation(str(exc), key=exc.key).to_response()

    job = Job(scrape_request)
    job.timing.mark(REQUEST_RECEIVED, received)
    structlog.contextvars.bind_contextvars(request_id=job.token, url=scrape_request.url)

    correlator = gateway.correlator
    sink = correlator.register(job.token)
    correlator.timeout_after(job.token, gateway.config.response_timeout_ms(scrape_request.timeout_ms) / 1000)
    try:
        await gateway.registry.submit(gateway.pool_options(scrape_request.proxy), job)
    except Exception as exc:
        logger.exception("Could not queue job for %s", scrape_request.url)
        correlator.resolve(job.token, from_exception(exc).to_delivery())

    try:
        delivery = await sink
    finally:
        correlator.discard(job.token)
    return to_response(delivery)


# ── Application ──────────────────────────────────────────────────────


async def _prewarm(gateway: Gateway) -> None:
    try:
        await gateway.registry.prewarm(gateway.baseline_pools())
    except Exception:
        logger.exception("Pool pre-warm failed; pools will be created on first use")
    else:
        logger.info("Pre-warmed %d worker pool(s)", len(gateway.registry))
    finally:
        gateway.prewarmed = True


def create_app(config: ServerConfig | None = None, *, gateway: Gateway | None = None) -> Starlette:
    """Build the Starlette application around a (possibly injected) gateway."""
    config = config or ServerConfig()
    gateway = gateway or build_gateway(config)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if gateway.config.prewarm:
            gateway._prewarm_task = asyncio.get_running_loop().create_task(_prewarm(gateway), name="scrapegate-prewarm")
        try:
            yield
        finally:
            gateway.draining = True
            if gateway._prewarm_task is not None and not gateway._prewarm_task.done():
                gateway._prewarm_task.cancel()
                with suppress(asyncio.CancelledError):
                    await gateway._prewarm_task
            gateway.correlator.timeout_all()
            await gateway.registry.shutdown()
            logger.info("ScrapeGate shutdown complete")

    app = Starlette(
        routes=[
            Route("/health", _health_check, methods=["GET"]),
            Route("/ready", _readiness_check, methods=["GET"]),
            Route("/{path:path}", _scrape, methods=["GET"]),
        ],
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    return app


async def _run_http_server(config: ServerConfig) -> None:
    import uvicorn

    app = create_app(config)
    gateway: Gateway = app.state.gateway
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_config=None,
            timeout_graceful_shutdown=config.drain_timeout,
        )
    )

    # Wrap uvicorn's handle_exit: pending responses get a timeout delivery
    # before the graceful shutdown window closes.
    _original_handle_exit = server.handle_exit

    def _drain_then_exit(sig: int, frame) -> None:
        gateway.draining = True
        logger.info("Shutdown signal (sig=%d), drain mode (timeout=%ds)", sig, config.drain_timeout)
        gateway.correlator.timeout_all(max(config.drain_timeout - 5, 0))
        _original_handle_exit(sig, frame)

    server.handle_exit = _drain_then_exit  # type: ignore[assignment]
    await server.serve()


def main(argv: list[str] | None = None) -> None:
    """Entry point for the gateway server."""
    config = parse_server_args(argv if argv is not None else sys.argv[1:])

    from .logging_config import configure as configure_logging

    configure_logging(json_output=config.log_format == "json", level=config.log_level)
    logger.info(
        "Starting ScrapeGate on %s:%d (max_concurrency=%d, retries=%d, prewarm=%s)",
        config.host,
        config.port,
        config.max_concurrency,
        config.max_request_retries,
        config.prewarm,
    )
    with suppress(KeyboardInterrupt):
        asyncio.run(_run_http_server(config))


if __name__ == "__main__":
    main()
