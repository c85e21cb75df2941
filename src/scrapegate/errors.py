# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""ScrapeGate exception hierarchy.

All gateway-specific errors inherit from ScrapeGateError, allowing callers
to catch the base class for any failure or specific subclasses for
targeted handling.
"""

from __future__ import annotations


class ScrapeGateError(Exception):
    """Base exception for all ScrapeGate errors."""


class ValidationError(ScrapeGateError):
    """Malformed request input (extraction rules, scenario, parameters).

    Raised before a job is submitted; never retried.
    """

    def __init__(self, message: str, *, key: str = "") -> None:
        super().__init__(message)
        self.key = key


class InstructionError(ScrapeGateError):
    """A single scenario instruction failed (recorded, not propagated)."""


class NavigationError(ScrapeGateError):
    """Fetch or navigation failure, retried by the worker pool."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResponseTimeoutError(ScrapeGateError, TimeoutError):
    """The caller-facing response ceiling was exceeded."""


class BrowserError(ScrapeGateError):
    """Browser launch or page lifecycle failure."""
