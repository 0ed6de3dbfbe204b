"""
Text Leaves - the slice of a tree the recovery scanner is allowed to touch

The recovery scanner only needs ordered text leaves it can read, rewrite,
insert after and remove. LeafTree hides which tree library holds them;
SoupLeafTree is the BeautifulSoup implementation.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional

from bs4 import BeautifulSoup, NavigableString, Tag

from backend_selector import RenderOutcome
from models import MathKind
from restorer import build_math_wrapper

# Leaves under these never take part in recovery
EXCLUDED_TAGS = {"math", "svg", "code", "pre", "script", "style"}
EXCLUDED_CLASSES = {
    "math-display",
    "math-inline",
    "math-placeholder",
    "math-placeholder-recovered",
    "math-error",
    "restored-markdown-placeholder",
    "restored-html-placeholder",
}
# Display math never spans two of these
BLOCK_TAGS = {
    "p", "li", "h1", "h2", "h3", "h4", "h5", "h6",
    "td", "th", "blockquote", "div", "dd", "dt",
}


class TextLeaf(ABC):
    """
    One text node.

    Leaves with different segment numbers are separated by content the
    scanner must not look through (a rendered formula, a code span...).
    """

    segment: int = 0

    @property
    @abstractmethod
    def text(self) -> str:
        ...

    @abstractmethod
    def set_text(self, text: str) -> None:
        ...

    @abstractmethod
    def insert_after(self, node: Any) -> None:
        ...

    @abstractmethod
    def remove(self) -> None:
        ...


class LeafTree(ABC):
    """Ordered eligible leaves plus node factories."""

    @abstractmethod
    def leaves(self) -> List[TextLeaf]:
        ...

    @abstractmethod
    def make_text(self, text: str) -> Any:
        ...

    @abstractmethod
    def make_rendered(self, outcome: RenderOutcome, content: str, kind: MathKind) -> Any:
        ...


# =============================================================================
# BEAUTIFULSOUP
# =============================================================================

class SoupTextLeaf(TextLeaf):
    def __init__(self, node: NavigableString, segment: int = 0):
        self.node = node
        self.segment = segment

    @property
    def text(self) -> str:
        return str(self.node)

    def set_text(self, text: str) -> None:
        replacement = NavigableString(text)
        self.node.replace_with(replacement)
        self.node = replacement

    def insert_after(self, node: Any) -> None:
        self.node.insert_after(node)

    def remove(self) -> None:
        self.node.extract()


def _excluded_tag(tag: Tag) -> bool:
    if tag.name in EXCLUDED_TAGS:
        return True
    classes = tag.get("class") or []
    return bool(EXCLUDED_CLASSES.intersection(classes))


def _nearest_block(node: NavigableString) -> Optional[Tag]:
    for parent in node.parents:
        if isinstance(parent, Tag) and parent.name in BLOCK_TAGS:
            return parent
    return None


class SoupLeafTree(LeafTree):
    def __init__(self, soup: BeautifulSoup):
        self.soup = soup

    def leaves(self) -> List[TextLeaf]:
        result: List[TextLeaf] = []
        segment = 0
        block = None
        for node in self.soup.descendants:
            if isinstance(node, Tag):
                if _excluded_tag(node) or node.name in BLOCK_TAGS:
                    segment += 1
                continue
            # Plain text only: comments, CDATA and doctypes are subclasses
            if type(node) is not NavigableString:
                continue
            if any(_excluded_tag(parent) for parent in node.parents if isinstance(parent, Tag)):
                continue
            # Text after a closed block (a tail inside the outer block) starts over too
            nearest = _nearest_block(node)
            if nearest is not block:
                segment += 1
                block = nearest
            result.append(SoupTextLeaf(node, segment))
        return result

    def make_text(self, text: str) -> NavigableString:
        return NavigableString(text)

    def make_rendered(self, outcome: RenderOutcome, content: str, kind: MathKind) -> Tag:
        return build_math_wrapper(self.soup, outcome, content, kind)
