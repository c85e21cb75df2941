# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Parsed HTML document with CSS-selector queries.

Thin wrapper over BeautifulSoup (lxml tree builder) + soupsieve. The
extraction engine only talks to this module, never to bs4 directly.
"""

from __future__ import annotations

import copy

import soupsieve
from bs4 import BeautifulSoup, Tag

# Scope for queries: the document root or any element inside it.
Node = Tag


def _soup(markup: str | bytes) -> BeautifulSoup:
    # multi_valued_attributes=None keeps ``class`` etc. as plain strings
    return BeautifulSoup(markup, "lxml", multi_valued_attributes=None)


def check_selector(selector: str) -> None:
    """Raise ``soupsieve.SelectorSyntaxError`` if *selector* is not valid CSS."""
    soupsieve.compile(selector)


class Document:
    """A parsed page. Nodes returned by :meth:`query` belong to this tree."""

    __slots__ = ("_root",)

    def __init__(self, root: BeautifulSoup) -> None:
        self._root = root

    @classmethod
    def parse(cls, markup: str | bytes) -> Document:
        return cls(_soup(markup or ""))

    @property
    def root(self) -> Node:
        return self._root

    def html(self) -> str:
        """Serialize the whole document."""
        return self._root.decode()

    # ── Queries ──────────────────────────────────────────────────────

    @staticmethod
    def query(scope: Node, selector: str) -> list[Node]:
        """All elements under *scope* matching *selector*, in document order."""
        return scope.select(selector)

    @staticmethod
    def text(node: Node) -> str:
        return node.get_text()

    @staticmethod
    def attr(node: Node, name: str) -> str | None:
        value = node.get(name)
        if value is None:
            return None
        return value if isinstance(value, str) else " ".join(value)

    @staticmethod
    def wrap(node: Node) -> Node:
        """Copy *node* into a throwaway ``<body>`` container.

        Queries against the container can then match *node* itself, not only
        its descendants.
        """
        container = _soup("<body></body>").body
        container.append(copy.copy(node))
        return container

    @staticmethod
    def empty_scope() -> Node:
        return _soup("<body></body>").body

    @classmethod
    def serialize(cls, node: Node) -> str:
        """Outer HTML of *node* (the element itself, not just its children)."""
        return cls.wrap(node).decode_contents()
