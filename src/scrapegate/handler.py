# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Job handler: turns a finished navigation or fetch into a client delivery.

Called by worker pools exactly once per attempt (``handle_browser`` /
``handle_http``) and once per exhausted job (``handle_failure``). Every
path ends in ``ResponseCorrelator.resolve``; a result that loses the race
against the response timeout is logged and dropped.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any

import structlog

from . import ResultEnvelope
from .correlator import Delivery, Outcome, ResponseCorrelator
from .document import Document
from .errors import NavigationError
from .extract_rules import evaluate
from .instructions import Instruction, InstructionReport, ScenarioReport, run_scenario
from .job import Job, RenderMode
from .problem_details import from_job_failure
from .renderer import Renderer
from .timing import FAILED_REQUEST, HANDLER_END
from .worker_pool import FetchResult

logger = logging.getLogger(__name__)
measures_logger = structlog.get_logger("scrapegate.measures")

HTML_MEDIA_TYPE = "text/html; charset=utf-8"
JSON_MEDIA_TYPE = "application/json"
PNG_MEDIA_TYPE = "image/png"


def _json_bytes(value: Any) -> bytes:
    return json.dumps(value, ensure_ascii=False).encode()


class JobHandler:
    def __init__(self, correlator: ResponseCorrelator) -> None:
        self._correlator = correlator

    # ── Browser-rendered jobs ────────────────────────────────────────

    async def handle_browser(self, job: Job, renderer: Renderer) -> None:
        request = job.request
        details = job.details

        report: ScenarioReport | None = None
        if request.scenario:
            report = await run_scenario(
                request.scenario,
                renderer,
                on_failure=lambda instruction, entry: self._instruction_failed(job, instruction, entry),
            )

        navigation = renderer.navigation
        details.resolved_url = navigation.url
        details.response_headers = navigation.headers

        html = await renderer.content()
        cookies = await renderer.cookies(request.url)
        if request.json_response:
            details.iframes = await renderer.frames()

        screenshot: bytes | None = None
        if request.screenshot.requested:
            screenshot = await renderer.screenshot(request.screenshot)
            if not request.json_response:
                self._deliver(job, Delivery(200, screenshot, PNG_MEDIA_TYPE))
                return

        if request.extract_rules is not None:
            body: Any = evaluate(Document.parse(html), request.extract_rules)
            body_type = "json"
        elif request.return_page_source:
            body, body_type = await renderer.source(), "html"
        else:
            body, body_type = html, "html"

        if request.json_response:
            envelope = ResultEnvelope(
                body=body,
                type=body_type,
                headers=details.response_headers or {},
                cookies=cookies,
                evaluate_results=report.evaluate_results if report else [],
                scenario_report=report.to_dict() if report else None,
                iframes=details.iframes,
                xhr=details.xhr,
                initial_status_code=navigation.status,
                resolved_url=details.resolved_url,
                screenshot=base64.b64encode(screenshot).decode() if screenshot else None,
            )
            self._deliver(job, Delivery(200, _json_bytes(envelope.to_dict()), JSON_MEDIA_TYPE))
        elif body_type == "json":
            self._deliver(job, Delivery(200, _json_bytes(body), JSON_MEDIA_TYPE))
        else:
            self._deliver(job, Delivery(200, body.encode(), HTML_MEDIA_TYPE))

    def _instruction_failed(self, job: Job, instruction: Instruction, entry: InstructionReport) -> None:
        logger.warning(
            "Instruction %s failed on %s (strict=%s): %s",
            instruction.action,
            job.request.url,
            job.request.scenario.strict,
            entry.error,
        )

    # ── Non-rendered jobs ────────────────────────────────────────────

    async def handle_http(self, job: Job, fetch: FetchResult) -> None:
        """Shape a plain or binary fetch.

        Raises:
            NavigationError: binary target responded without a content type.
        """
        request = job.request
        details = job.details
        details.resolved_url = fetch.url
        details.response_headers = fetch.headers

        if request.render_mode is RenderMode.BINARY:
            content_type = fetch.headers.get("content-type")
            if not content_type:
                raise NavigationError("No content-type returned in the response")
            if request.json_response:
                envelope = self._plain_envelope(job, fetch, fetch.text, "file")
                self._deliver(job, Delivery(200, _json_bytes(envelope.to_dict()), JSON_MEDIA_TYPE))
            else:
                self._deliver(job, Delivery(200, fetch.content, content_type))
            return

        if request.extract_rules is not None:
            result = evaluate(Document.parse(fetch.content), request.extract_rules)
            if request.json_response:
                envelope = self._plain_envelope(job, fetch, result, "json")
                self._deliver(job, Delivery(200, _json_bytes(envelope.to_dict()), JSON_MEDIA_TYPE))
            else:
                self._deliver(job, Delivery(200, _json_bytes(result), JSON_MEDIA_TYPE))
            return

        if request.json_response:
            envelope = self._plain_envelope(job, fetch, fetch.text, "html")
            self._deliver(job, Delivery(200, _json_bytes(envelope.to_dict()), JSON_MEDIA_TYPE))
        else:
            self._deliver(job, Delivery(200, fetch.text.encode(), HTML_MEDIA_TYPE))

    @staticmethod
    def _plain_envelope(job: Job, fetch: FetchResult, body: Any, body_type: str) -> ResultEnvelope:
        return ResultEnvelope(
            body=body,
            type=body_type,
            headers=fetch.headers,
            initial_status_code=fetch.status_code,
            resolved_url=job.details.resolved_url,
        )

    # ── Failure path ─────────────────────────────────────────────────

    async def handle_failure(self, job: Job, exc: BaseException | None) -> None:
        """Deliver the error document for a job whose retries are exhausted."""
        job.timing.mark(FAILED_REQUEST)
        request = job.request
        status = None
        if request.transparent_status_code and job.details.upstream_status:
            status = job.details.upstream_status
        problem = from_job_failure(
            exc,
            status=status,
            request_errors=job.details.request_errors if request.json_response else None,
        )
        self._deliver(job, problem.to_delivery(), failed=True)

    # ── Delivery ─────────────────────────────────────────────────────

    def _deliver(self, job: Job, delivery: Delivery, *, failed: bool = False) -> None:
        if not failed:
            job.timing.mark(HANDLER_END)
        measures_logger.info(
            "job_measures",
            inputted_url=job.request.inputted_url or job.request.url,
            measures=[e.to_dict() for e in job.timing.finalize()],
            request_errors=job.details.request_errors,
            retries=job.retry_count,
            failed=failed,
            status=delivery.status_code,
        )
        if not self._correlator.resolve(job.token, delivery):
            logger.info(
                "Discarded %s result for %s: response already completed",
                Outcome.FAILED if failed else Outcome.SUCCEEDED,
                job.request.url,
            )
