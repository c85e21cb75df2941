# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Correlation of pending client responses with job results.

The HTTP handler registers a token and awaits the returned future; a
worker (success or failure path) or the timeout timer later resolves it.
Whoever pops the token first wins, and every later ``resolve`` for that
token is a no-op returning ``False``. All access happens on the event
loop thread, so the pop needs no lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum

logger = logging.getLogger(__name__)


class Outcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True, slots=True)
class Delivery:
    """Final response for one client request."""

    status_code: int
    body: bytes
    media_type: str
    headers: Mapping[str, str] = field(default_factory=dict)
    outcome: Outcome = Outcome.SUCCEEDED


@dataclass(slots=True)
class _Pending:
    sink: asyncio.Future[Delivery]
    timer: asyncio.TimerHandle | None = None


def _timeout_delivery() -> Delivery:
    from .problem_details import from_timeout

    return from_timeout().to_delivery()


class ResponseCorrelator:
    """Token -> pending response sink, with per-token timeouts."""

    def __init__(self, timeout_delivery: Callable[[], Delivery] = _timeout_delivery) -> None:
        self._pending: dict[str, _Pending] = {}
        self._timeout_delivery = timeout_delivery

    def register(self, token: str, sink: asyncio.Future[Delivery] | None = None) -> asyncio.Future[Delivery]:
        """Associate *token* with a response sink and return it.

        Raises:
            ValueError: if *token* already has a live association.
        """
        if token in self._pending:
            raise ValueError(f"token {token!r} is already registered")
        if sink is None:
            sink = asyncio.get_running_loop().create_future()
        self._pending[token] = _Pending(sink)
        return sink

    def resolve(self, token: str, delivery: Delivery) -> bool:
        """Deliver *delivery* to the sink for *token*.

        Returns False when the token is unknown or already resolved.
        """
        entry = self._pending.pop(token, None)
        if entry is None:
            logger.debug("Ignoring %s delivery for settled token %s", delivery.outcome, token)
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.sink.done():
            # client side went away (sink cancelled)
            return False
        entry.sink.set_result(delivery)
        logger.debug("Resolved token %s (%s, status=%d)", token, delivery.outcome, delivery.status_code)
        return True

    def timeout_after(self, token: str, seconds: float) -> None:
        """Arm (or re-arm) the timeout for *token*."""
        entry = self._pending.get(token)
        if entry is None:
            return
        if entry.timer is not None:
            entry.timer.cancel()
        loop = asyncio.get_running_loop()
        entry.timer = loop.call_later(max(seconds, 0), self._expire, token)

    def timeout_all(self, seconds: float = 0) -> int:
        """Force a timeout delivery for every pending token.

        With ``seconds == 0`` deliveries happen immediately; otherwise every
        token is re-armed to expire after *seconds*. Returns how many
        tokens were affected.
        """
        tokens = list(self._pending)
        for token in tokens:
            if seconds > 0:
                self.timeout_after(token, seconds)
            else:
                self._expire(token)
        if tokens:
            logger.info("Timing out %d pending response(s) in %.1fs", len(tokens), seconds)
        return len(tokens)

    def discard(self, token: str) -> None:
        """Drop *token* without delivering anything."""
        entry = self._pending.pop(token, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()

    def _expire(self, token: str) -> None:
        if self.resolve(token, self._timeout_delivery()):
            logger.warning("Response for token %s timed out", token)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def __contains__(self, token: object) -> bool:
        return token in self._pending
