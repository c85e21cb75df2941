# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Declarative extraction rules: compile untrusted input, evaluate against a Document.

Two input notations are accepted per field::

    {"title": "h1"}                       # shorthand: first match, text
    {"link": "a.more@href"}               # shorthand: first match, attribute
    {"rows": {"selector": "tr", "type": "list", "output": {...}, "clean": false}}

Compilation is strict and fails fast with the offending key. Evaluation is
lenient: a selector that matches nothing degrades to null / "" / [] and
never raises.

Selectors are standard CSS as understood by soupsieve, checked at compile
time. jQuery-style extensions are rejected as invalid: positional pseudos
such as ``:eq(1)`` or ``:first`` (use ``:nth-of-type(2)`` or
``:first-child``), and a bare leading combinator such as ``> span`` in a
nested rule. Nested selectors already search the matched element and its
descendants, so the leading ``>`` is simply dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from types import MappingProxyType
from typing import Any

from soupsieve import SelectorSyntaxError

from .document import Document, Node, check_selector
from .errors import ValidationError

logger = logging.getLogger(__name__)

MAX_RULE_DEPTH = 16


class Cardinality(StrEnum):
    ITEM = "item"
    LIST = "list"


class OutputKind(StrEnum):
    TEXT = "text"
    HTML = "html"
    TABLE_JSON = "table_json"
    TABLE_ARRAY = "table_array"
    ATTRIBUTE = "attribute"
    NESTED = "nested"


_STRING_OUTPUTS = {
    "text": OutputKind.TEXT,
    "html": OutputKind.HTML,
    "table_json": OutputKind.TABLE_JSON,
    "table_array": OutputKind.TABLE_ARRAY,
}


@dataclass(frozen=True, slots=True)
class OutputSpec:
    """How a matched element becomes a value.

    ``attribute`` is set only for ATTRIBUTE, ``rules`` only for NESTED.
    """

    kind: OutputKind
    attribute: str = ""
    rules: Mapping[str, ExtractRule] | None = None

    @classmethod
    def attr(cls, name: str) -> OutputSpec:
        return cls(OutputKind.ATTRIBUTE, attribute=name)

    @classmethod
    def nested(cls, rules: Mapping[str, ExtractRule]) -> OutputSpec:
        return cls(OutputKind.NESTED, rules=MappingProxyType(dict(rules)))


TEXT = OutputSpec(OutputKind.TEXT)


@dataclass(frozen=True, slots=True)
class ExtractRule:
    selector: str
    cardinality: Cardinality = Cardinality.ITEM
    output: OutputSpec = TEXT
    clean: bool = True


ExtractRules = Mapping[str, ExtractRule]


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


def compile_rules(raw: Any) -> ExtractRules:
    """Validate *raw* (decoded JSON) and return an immutable rule map.

    Raises:
        ValidationError: with ``key`` set to the dotted path of the bad rule.
    """
    return _compile_map(raw, path="", depth=1)


def _compile_map(raw: Any, *, path: str, depth: int) -> ExtractRules:
    if depth > MAX_RULE_DEPTH:
        raise ValidationError(f"Extract rules nested deeper than {MAX_RULE_DEPTH} levels", key=path)
    if not isinstance(raw, Mapping):
        raise ValidationError("Extract rules must be a JSON object", key=path)

    rules: dict[str, ExtractRule] = {}
    for key, value in raw.items():
        full_key = f"{path}.{key}" if path else str(key)
        if isinstance(value, str):
            rules[key] = _compile_shorthand(full_key, value)
        elif isinstance(value, Mapping):
            rules[key] = _compile_full(full_key, value, depth=depth)
        else:
            raise ValidationError(
                f"Extract rule for {full_key} in a wrong format, expected object or a string",
                key=full_key,
            )
    return MappingProxyType(rules)


def _compile_shorthand(key: str, raw: str) -> ExtractRule:
    rule = raw.strip()
    if "@" not in rule:
        _check_selector(key, rule)
        return ExtractRule(selector=rule)

    selector, _, attribute = rule.partition("@")
    if not selector:
        raise ValidationError(f"Selector cannot be an empty string, rule: {rule} for key {key}", key=key)
    if not attribute:
        raise ValidationError(f"Attribute name cannot be an empty string, rule: {rule} for key {key}", key=key)
    _check_selector(key, selector)
    return ExtractRule(selector=selector, output=OutputSpec.attr(attribute))


def _compile_full(key: str, raw: Mapping[str, Any], *, depth: int) -> ExtractRule:
    selector = raw.get("selector")
    cardinality = raw.get("type", "item")
    output = raw.get("output", "text")
    clean = raw.get("clean", True)

    if not isinstance(selector, str) or not selector.strip():
        raise ValidationError(f"Selector must be a non-empty string, rule for key: {key}", key=key)
    selector = selector.strip()
    _check_selector(key, selector)

    if cardinality not in ("item", "list"):
        raise ValidationError(f"Type can be either 'item' or 'list', rule for key: {key}", key=key)

    if not isinstance(clean, bool):
        raise ValidationError(f"Clean can be set either to true or false, rule for key: {key}", key=key)

    if isinstance(output, str):
        spec = _compile_output_string(key, output)
    elif isinstance(output, Mapping):
        spec = OutputSpec.nested(_compile_map(output, path=key, depth=depth + 1))
    else:
        raise ValidationError(
            f"Output in the extract rule for {key} in a wrong format, expected object or a string",
            key=key,
        )

    return ExtractRule(selector=selector, cardinality=Cardinality(cardinality), output=spec, clean=clean)


def _compile_output_string(key: str, output: str) -> OutputSpec:
    trimmed = output.strip()
    if trimmed in _STRING_OUTPUTS:
        kind = _STRING_OUTPUTS[trimmed]
        return TEXT if kind is OutputKind.TEXT else OutputSpec(kind)
    if trimmed.startswith("@") and len(trimmed) > 1:
        return OutputSpec.attr(trimmed[1:])
    raise ValidationError(
        f"Output in the extract rule for {key} has invalid value, expected one of "
        f"{sorted(_STRING_OUTPUTS)} or an attribute name starting with '@'",
        key=key,
    )


def _check_selector(key: str, selector: str) -> None:
    if not selector:
        raise ValidationError(f"Selector must be a non-empty string, rule for key: {key}", key=key)
    try:
        check_selector(selector)
    except SelectorSyntaxError as exc:
        raise ValidationError(f"Invalid CSS selector {selector!r} for key {key}: {exc}", key=key) from exc


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate(document: Document, rules: ExtractRules) -> dict[str, Any]:
    """Apply *rules* to the whole *document*."""
    return _evaluate_scope(document.root, rules)


def _evaluate_scope(scope: Node, rules: ExtractRules) -> dict[str, Any]:
    scraped: dict[str, Any] = {}
    for key, rule in rules.items():
        matches = Document.query(scope, rule.selector)
        if rule.cardinality is Cardinality.ITEM:
            scraped[key] = _resolve(matches[0] if matches else None, rule)
        else:
            scraped[key] = [_resolve(node, rule) for node in matches]
    return scraped


def _resolve(node: Node | None, rule: ExtractRule) -> Any:
    """Turn one match (or its absence) into a value."""
    output = rule.output
    kind = output.kind

    if kind is OutputKind.TEXT:
        if node is None:
            return None if rule.clean else ""
        text = Document.text(node)
        if rule.clean:
            return text.strip() or None
        return text

    if kind is OutputKind.HTML:
        return Document.serialize(node) if node is not None else ""

    if kind is OutputKind.ATTRIBUTE:
        if node is None:
            return ""
        return Document.attr(node, output.attribute) or ""

    if kind is OutputKind.TABLE_JSON:
        return _table_records(node)

    if kind is OutputKind.TABLE_ARRAY:
        return _table_rows(node)

    if kind is OutputKind.NESTED:
        # Nested selectors are relative to the match and may match it too
        scope = Document.wrap(node) if node is not None else Document.empty_scope()
        return _evaluate_scope(scope, output.rules or {})

    raise ValueError(f"Unhandled output kind: {kind}")


def _table_headings(table: Node) -> list[str]:
    for row in Document.query(table, "tr"):
        cells = Document.query(row, "th")
        if cells:
            return [Document.text(th).strip() for th in cells]
    return []


def _table_rows(table: Node | None) -> list[list[str]]:
    """Data rows as lists, truncated/padded to the header width."""
    if table is None:
        return []
    headings = _table_headings(table)
    if not headings:
        return []
    rows: list[list[str]] = []
    for row in Document.query(table, "tr"):
        cells = Document.query(row, "td")
        if not cells:
            continue
        rows.append([Document.text(cells[i]).strip() if i < len(cells) else "" for i in range(len(headings))])
    return rows


def _table_records(table: Node | None) -> list[dict[str, str]]:
    if table is None:
        return []
    headings = _table_headings(table)
    return [dict(zip(headings, row, strict=True)) for row in _table_rows(table)]
