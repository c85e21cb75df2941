# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Page-interaction scenarios: parsing and sequential execution.

Input format::

    {"instructions": [{"click": "#load-more"}, {"wait": 500}, {"evaluate": "document.title"}],
     "strict": false}

Each instruction is executed in isolation: a failing step is recorded in
the report and, unless the scenario is strict, the next step still runs.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from .errors import InstructionError, ValidationError

if TYPE_CHECKING:
    from .renderer import Renderer

logger = logging.getLogger(__name__)

MAX_WAIT_MS = 35_000
BROWSER_STATES = ("load", "domcontentloaded", "networkidle")

Param = int | str | list[str]


class ActionKind(StrEnum):
    WAIT = "wait"
    WAIT_FOR = "wait_for"
    WAIT_BROWSER = "wait_browser"
    CLICK = "click"
    FILL = "fill"
    SCROLL_X = "scroll_x"
    SCROLL_Y = "scroll_y"
    EVALUATE = "evaluate"


@dataclass(frozen=True, slots=True)
class Instruction:
    action: ActionKind
    param: Param

    def to_dict(self) -> dict[str, Any]:
        return {self.action.value: self.param}


@dataclass(frozen=True, slots=True)
class Scenario:
    instructions: tuple[Instruction, ...] = ()
    strict: bool = True

    def __bool__(self) -> bool:
        return bool(self.instructions)

    def prepend(self, instruction: Instruction) -> Scenario:
        return Scenario((instruction, *self.instructions), self.strict)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_scenario(raw: str | Mapping[str, Any]) -> Scenario:
    """Validate a JSON scenario (string or decoded object).

    Raises:
        ValidationError: on malformed JSON, unknown actions, or mistyped params.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"js_scenario is not valid JSON: {exc.msg}", key="js_scenario") from exc
    if not isinstance(raw, Mapping):
        raise ValidationError("js_scenario must be a JSON object", key="js_scenario")

    strict = raw.get("strict", True)
    if not isinstance(strict, bool):
        raise ValidationError("strict must be true or false", key="js_scenario.strict")

    items = raw.get("instructions")
    if not isinstance(items, list):
        return Scenario(strict=strict)

    return Scenario(tuple(_parse_instruction(i, item) for i, item in enumerate(items)), strict)


def _parse_instruction(index: int, item: Any) -> Instruction:
    key = f"js_scenario.instructions[{index}]"
    if not isinstance(item, Mapping):
        raise ValidationError("Instruction must be an object", key=key)
    if len(item) != 1:
        raise ValidationError("Instruction must include only one action with params", key=key)

    name, param = next(iter(item.items()))
    try:
        action = ActionKind(str(name).lower())
    except ValueError:
        raise ValidationError(f"Unsupported instruction: {name}", key=key) from None
    return Instruction(action, _validate_param(action, param, key))


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _validate_param(action: ActionKind, param: Any, key: str) -> Param:
    if action is ActionKind.WAIT:
        if not _is_number(param) or param < 0:
            raise ValidationError("wait expects a non-negative number of milliseconds", key=key)
        return min(int(param), MAX_WAIT_MS)

    if action in (ActionKind.SCROLL_X, ActionKind.SCROLL_Y):
        if not _is_number(param):
            raise ValidationError(f"{action} expects a number of pixels", key=key)
        return int(param)

    if action is ActionKind.WAIT_BROWSER:
        if param not in BROWSER_STATES:
            raise ValidationError(f"wait_browser expects one of {list(BROWSER_STATES)}", key=key)
        return param

    if action is ActionKind.FILL:
        if (
            not isinstance(param, list)
            or len(param) != 2
            or not all(isinstance(p, str) for p in param)
            or not param[0]
        ):
            raise ValidationError("fill expects [selector, value]", key=key)
        return list(param)

    # wait_for, click, evaluate: non-empty string
    if not isinstance(param, str) or not param.strip():
        raise ValidationError(f"{action} expects a non-empty string", key=key)
    return param


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class InstructionReport:
    action: ActionKind
    param: Param
    success: bool
    duration_ms: float
    result: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "action": self.action.value,
            "param": self.param,
            "success": self.success,
            "duration": self.duration_ms,
        }
        if self.result is not None:
            d["result"] = self.result
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass(slots=True)
class ScenarioReport:
    instructions: list[InstructionReport] = field(default_factory=list)
    evaluate_results: list[str] = field(default_factory=list)
    executed: int = 0
    success: int = 0
    failed: int = 0
    total_duration_ms: float = 0.0

    def record(self, entry: InstructionReport) -> None:
        self.instructions.append(entry)
        self.executed += 1
        if entry.success:
            self.success += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "executed": self.executed,
            "success": self.success,
            "failed": self.failed,
            "totalDuration": self.total_duration_ms,
            "instructions": [i.to_dict() for i in self.instructions],
        }


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

_DISPATCH: dict[ActionKind, Callable[[Renderer, Any], Awaitable[Any]]] = {
    ActionKind.WAIT: lambda r, p: r.wait(p),
    ActionKind.WAIT_FOR: lambda r, p: r.wait_for(p),
    ActionKind.WAIT_BROWSER: lambda r, p: r.wait_browser(p),
    ActionKind.CLICK: lambda r, p: r.click(p),
    ActionKind.FILL: lambda r, p: r.fill(p[0], p[1]),
    ActionKind.SCROLL_X: lambda r, p: r.scroll_x(p),
    ActionKind.SCROLL_Y: lambda r, p: r.scroll_y(p),
    ActionKind.EVALUATE: lambda r, p: r.evaluate(p),
}

FailureHook = Callable[[Instruction, InstructionReport], None]


def stringify_result(value: Any) -> str:
    """Flatten an in-page return value to text (objects as JSON)."""
    if isinstance(value, str):
        return value
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


async def run_scenario(
    scenario: Scenario | Sequence[Instruction],
    renderer: Renderer,
    *,
    on_failure: FailureHook | None = None,
) -> ScenarioReport:
    """Execute instructions strictly in order against *renderer*.

    ``on_failure`` is called for every failed instruction, before the strict
    check, so callers can log or flag pages a failed step may have broken.
    """
    if not isinstance(scenario, Scenario):
        scenario = Scenario(tuple(scenario))

    report = ScenarioReport()
    started = time.monotonic()
    for instruction in scenario.instructions:
        entry = await _run_instruction(instruction, renderer)
        report.record(entry)
        if entry.success and instruction.action is ActionKind.EVALUATE:
            report.evaluate_results.append(entry.result or "")
        if not entry.success:
            if on_failure is not None:
                on_failure(instruction, entry)
            if scenario.strict:
                logger.info("Strict scenario stopped at %s (%d executed)", instruction.action, report.executed)
                break
    report.total_duration_ms = round((time.monotonic() - started) * 1000, 1)
    return report


async def _run_instruction(instruction: Instruction, renderer: Renderer) -> InstructionReport:
    started = time.monotonic()
    try:
        step = _DISPATCH.get(instruction.action)
        if step is None:
            raise InstructionError(f"Unsupported action: {instruction.action}")
        value = await step(renderer, instruction.param)
    except Exception as exc:
        logger.debug("Instruction %s failed: %s", instruction.action, exc)
        return InstructionReport(
            action=instruction.action,
            param=instruction.param,
            success=False,
            duration_ms=_elapsed_ms(started),
            error=str(exc) or type(exc).__name__,
        )
    result = stringify_result(value) if instruction.action is ActionKind.EVALUATE else None
    return InstructionReport(
        action=instruction.action,
        param=instruction.param,
        success=True,
        duration_ms=_elapsed_ms(started),
        result=result,
    )


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 1)
