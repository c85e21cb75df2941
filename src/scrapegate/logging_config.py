# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Logging for the gateway: structlog on top of stdlib ``logging``.

Module loggers stay plain ``logging.getLogger(__name__)``; their records
and structlog's keyword events (``job_measures``) pass through the same
processor chain and leave as one JSON object per line when deployed, or
as console lines for local runs.

Every line carries ``service``. In JSON mode it also carries
``request_id`` (null outside a request) so log queries can group by job.
Proxy credentials are scrubbed from string fields before rendering.

Leaf module: no scrapegate imports. Safe to call early in startup.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

SERVICE_NAME = "scrapegate"

# Chatty third-party loggers that drown the per-request lines at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")

_USERINFO = re.compile(r"://[^@\s/]+@")


def add_service(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def default_request_id(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Give lines logged outside a request an explicit null ``request_id``."""
    event_dict.setdefault("request_id", None)
    return event_dict


def redact_credentials(_logger: Any, _method: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Replace ``user:pass@`` in any URL-bearing string field."""
    for key, value in event_dict.items():
        if isinstance(value, str) and "@" in value:
            event_dict[key] = _USERINFO.sub("://<redacted>@", value)
    return event_dict


def configure(*, json_output: bool = True, level: str = "INFO") -> None:
    """Install the processor chain and a single stderr handler on the root logger.

    Args:
        json_output: True for JSON lines (deployed gateway), False for human-readable.
        level: Root logger level name, case-insensitive. Unknown names mean INFO.
    """
    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        add_service,
    ]
    if json_output:
        shared_processors.append(default_request_id)
    shared_processors += [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        redact_credentials,
    ]

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared_processors,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
