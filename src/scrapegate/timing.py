# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Per-job lifecycle timing.

Each stage of a job (admission, queueing, navigation, handler) appends a
wall-clock event. Stages run on different tasks, so events may arrive out
of order; ``finalize`` re-sorts them and converts to offsets from the
earliest event.
"""

from __future__ import annotations

import time
from dataclasses import dataclass

# Event labels, in the order they normally occur.
REQUEST_RECEIVED = "request received"
BEFORE_QUEUE_ADD = "before queue add"
WORKER_PICKED_UP = "worker picked up"
PRE_NAVIGATION = "pre-navigation hook"
PAGE_LOADED = "page loaded"
ERROR = "error"
HANDLER_END = "handler end"
FAILED_REQUEST = "failed request"


def now_ms() -> int:
    return time.time_ns() // 1_000_000


@dataclass(frozen=True, slots=True)
class TimingEvent:
    label: str
    timestamp_ms: int

    def to_dict(self) -> dict:
        return {"event": self.label, "time": self.timestamp_ms}


class TimingPipeline:
    """Append-only list of timestamped events for one job."""

    __slots__ = ("_events",)

    def __init__(self) -> None:
        self._events: list[TimingEvent] = []

    def mark(self, label: str, timestamp_ms: int | None = None) -> None:
        """Record *label* at *timestamp_ms* (defaults to now)."""
        self._events.append(TimingEvent(label, now_ms() if timestamp_ms is None else timestamp_ms))

    @property
    def events(self) -> list[TimingEvent]:
        return list(self._events)

    def __len__(self) -> int:
        return len(self._events)

    def finalize(self) -> list[TimingEvent]:
        """Return events as offsets from the earliest one, sorted ascending."""
        return relative_to_earliest(self._events)


def relative_to_earliest(events: list[TimingEvent]) -> list[TimingEvent]:
    if not events:
        return []
    base = min(e.timestamp_ms for e in events)
    shifted = [TimingEvent(e.label, e.timestamp_ms - base) for e in events]
    # sorted() is stable: events with equal offsets keep their recording order
    return sorted(shifted, key=lambda e: e.timestamp_ms)
