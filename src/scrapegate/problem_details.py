# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""RFC 9457 Problem Details for the gateway.

Maps request validation failures, exhausted jobs and response timeouts
to structured problem documents. The module depends only on stdlib,
``errors`` and (lazily) Starlette, so any layer can import it.

Every document also carries ``errorMessage``, the field existing
ScrapingBee-style clients read.

Type URI namespace: ``https://scrapegate.dev/errors/{slug}``
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .correlator import Delivery

# ── Constants ────────────────────────────────────────────────────────

_ERROR_BASE = "https://scrapegate.dev/errors"

MAX_DETAIL_LENGTH = 500

PROBLEM_MEDIA_TYPE = "application/problem+json"

# ── ProblemType taxonomy ─────────────────────────────────────────────


class ProblemType(StrEnum):
    VALIDATION_ERROR = "validation-error"
    NAVIGATION_FAILED = "navigation-failed"
    UPSTREAM_STATUS = "upstream-status"
    DNS_RESOLUTION_FAILED = "dns-resolution-failed"
    CONNECTION_FAILED = "connection-failed"
    RESPONSE_TIMEOUT = "response-timeout"
    BROWSER_UNAVAILABLE = "browser-unavailable"
    INTERNAL_ERROR = "internal-error"

    @property
    def uri(self) -> str:
        """Full type URI for RFC 9457 ``type`` field."""
        return f"{_ERROR_BASE}/{self.value}"


# ── Per-type metadata: (status, title) ───────────────────────────────

_TYPE_METADATA: dict[ProblemType, tuple[int, str]] = {
    ProblemType.VALIDATION_ERROR: (400, "Invalid Request"),
    ProblemType.NAVIGATION_FAILED: (500, "Scrape Failed"),
    ProblemType.UPSTREAM_STATUS: (500, "Upstream Error Status"),
    ProblemType.DNS_RESOLUTION_FAILED: (500, "DNS Resolution Failed"),
    ProblemType.CONNECTION_FAILED: (500, "Connection Failed"),
    ProblemType.RESPONSE_TIMEOUT: (504, "Response Timed Out"),
    ProblemType.BROWSER_UNAVAILABLE: (503, "Browser Unavailable"),
    ProblemType.INTERNAL_ERROR: (500, "Internal Error"),
}

# ── Secret sanitization patterns ─────────────────────────────────────

_SECRET_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"Bearer\s+\S+"), "Bearer <redacted>"),
    (re.compile(r"Basic\s+[A-Za-z0-9+/=]{8,}"), "Basic <redacted>"),
    (
        re.compile(
            r"(?:API_KEY|SECRET|TOKEN|PASSWORD|CREDENTIAL)\s*[=:]\s*\S+",
            re.IGNORECASE,
        ),
        "<redacted>",
    ),
    # proxy URLs carry credentials in the userinfo part
    (re.compile(r"://[^@\s/]+@"), "://<redacted>@"),
]

_PATH_PATTERN = re.compile(
    r"(/(?:Users|home|tmp|var|etc|opt|root|srv|proc|sys|usr|Library"
    r"|Applications|private|snap|mnt|media|nix)/[\w./-]+"
    r"|[A-Z]:\\[\w.\\-]+)"
)

# ── Chromium net::ERR_* classification ───────────────────────────────

_NET_ERR_RE = re.compile(r"net::ERR_(\w+)")

_DNS_CODES = {"NAME_NOT_RESOLVED"}
_CONNECTION_TIMED_OUT_CODES = {"CONNECTION_TIMED_OUT", "TIMED_OUT"}
_CONNECTION_CODES = {
    "CONNECTION_REFUSED",
    "CONNECTION_CLOSED",
    "CONNECTION_RESET",
    "EMPTY_RESPONSE",
    "ADDRESS_UNREACHABLE",
    "PROXY_CONNECTION_FAILED",
    "TUNNEL_CONNECTION_FAILED",
}

_HOSTNAME_RE = re.compile(r"https?://([^/:\s]+)")


def classify_network_error(exc_message: str) -> tuple[ProblemType, str] | None:
    """Classify a Playwright network error message into a ProblemType + human message.

    Returns ``None`` if *exc_message* does not contain a ``net::ERR_*`` code.
    """
    m = _NET_ERR_RE.search(exc_message)
    if m is None:
        return None
    code = m.group(1)

    hm = _HOSTNAME_RE.search(exc_message)
    hostname = hm.group(1) if hm else ""

    if code in _DNS_CODES:
        host_part = f" '{hostname}'" if hostname else ""
        return ProblemType.DNS_RESOLUTION_FAILED, f"Could not resolve domain name{host_part}"

    if code in _CONNECTION_TIMED_OUT_CODES:
        host_part = f" to '{hostname}'" if hostname else ""
        return ProblemType.CONNECTION_FAILED, f"Connection timed out{host_part}"

    if code in _CONNECTION_CODES:
        host_part = f" to '{hostname}'" if hostname else ""
        return ProblemType.CONNECTION_FAILED, f"Connection failed{host_part}"

    if "CERT" in code or "SSL" in code:
        host_part = f" for '{hostname}'" if hostname else ""
        return ProblemType.CONNECTION_FAILED, f"SSL/TLS error{host_part}"

    return ProblemType.NAVIGATION_FAILED, f"Navigation failed (net::ERR_{code})"


def sanitize_detail(text: str) -> str:
    """Scrub secrets and filesystem paths from *text*, truncating long messages."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    text = _PATH_PATTERN.sub("<path>", text)
    if len(text) > MAX_DETAIL_LENGTH:
        text = text[:MAX_DETAIL_LENGTH] + "..."
    return text


# ── ProblemDetail dataclass ──────────────────────────────────────────

_STANDARD_FIELDS = frozenset({"type", "title", "status", "detail", "instance"})


@dataclass(frozen=True, slots=True)
class ProblemDetail:
    """RFC 9457 Problem Detail object."""

    type: str = "about:blank"
    title: str = ""
    status: int = 500
    detail: str = ""
    instance: str = ""
    extensions: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """RFC 9457 JSON dict.  Empty optional fields omitted, extensions merged at top level."""
        d: dict[str, Any] = {"type": self.type, "status": self.status}
        if self.title:
            d["title"] = self.title
        if self.detail:
            d["detail"] = self.detail
        if self.instance:
            d["instance"] = self.instance
        for k, v in self.extensions.items():
            if k not in _STANDARD_FIELDS:
                d[k] = v
        d.setdefault("errorMessage", self.detail or self.title)
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_response(self):
        """Starlette ``JSONResponse`` with ``application/problem+json``."""
        from starlette.responses import JSONResponse

        return JSONResponse(
            content=self.to_dict(),
            status_code=self.status,
            media_type=PROBLEM_MEDIA_TYPE,
            headers={"Cache-Control": "no-store"},
        )

    def to_delivery(self) -> Delivery:
        """Wrap as a correlator ``Delivery`` (for results produced off the request task)."""
        from .correlator import Delivery, Outcome

        outcome = Outcome.TIMED_OUT if self.status == 504 else Outcome.FAILED
        return Delivery(
            status_code=self.status,
            body=self.to_json().encode(),
            media_type=PROBLEM_MEDIA_TYPE,
            outcome=outcome,
        )


def _build(problem_type: ProblemType, detail: str, *, status: int | None = None, **extensions: Any) -> ProblemDetail:
    default_status, title = _TYPE_METADATA[problem_type]
    return ProblemDetail(
        type=problem_type.uri,
        title=title,
        status=status or default_status,
        detail=sanitize_detail(detail),
        extensions=extensions,
    )


# ── Factory functions ────────────────────────────────────────────────


def from_exception(exc: BaseException, *, status: int | None = None, **extensions: Any) -> ProblemDetail:
    """Build a ProblemDetail from an exception.

    ``status`` overrides the taxonomy default (used for transparent
    upstream status codes).
    """
    from .errors import BrowserError, NavigationError, ScrapeGateError, ValidationError

    if isinstance(exc, ValidationError):
        return from_validation(str(exc), key=exc.key)
    if isinstance(exc, TimeoutError):
        return from_timeout(str(exc) or "Response timed out")
    if isinstance(exc, BrowserError):
        return _build(ProblemType.BROWSER_UNAVAILABLE, str(exc), status=status, **extensions)

    net_result = classify_network_error(str(exc))
    if net_result is not None:
        problem_type, human_msg = net_result
        return _build(problem_type, human_msg, status=status, **extensions)

    if isinstance(exc, NavigationError) and exc.status_code is not None:
        return _build(ProblemType.UPSTREAM_STATUS, str(exc), status=status, upstreamStatus=exc.status_code, **extensions)
    if isinstance(exc, ScrapeGateError):
        return _build(ProblemType.NAVIGATION_FAILED, str(exc), status=status, **extensions)
    return _build(ProblemType.INTERNAL_ERROR, str(exc) or type(exc).__name__, status=status, **extensions)


def from_validation(detail: str, *, key: str = "") -> ProblemDetail:
    """Build a 400 ProblemDetail for malformed request input."""
    if key:
        return _build(ProblemType.VALIDATION_ERROR, detail, key=key)
    return _build(ProblemType.VALIDATION_ERROR, detail)


def from_timeout(detail: str = "Response timed out") -> ProblemDetail:
    """Build a 504 ProblemDetail for the response ceiling."""
    return _build(ProblemType.RESPONSE_TIMEOUT, detail)


def from_job_failure(
    exc: BaseException | None,
    *,
    status: int | None = None,
    request_errors: list[dict] | None = None,
) -> ProblemDetail:
    """Build the terminal failure document for a job whose retries are exhausted.

    ``status`` is the transparent upstream status; without it the
    taxonomy default applies.
    """
    extensions: dict[str, Any] = {}
    if request_errors:
        extensions["requestErrors"] = request_errors
    if exc is None:
        return _build(ProblemType.NAVIGATION_FAILED, "Request failed", status=status, **extensions)
    return from_exception(exc, status=status, **extensions)
