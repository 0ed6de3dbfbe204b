"""
Recovery Scanner - last resort for display math protection missed

Looks for display math that is still sitting in the finished tree as raw
text: \\[...\\], $$...$$ and bare known environments. The transform may
have split such text over several adjacent leaves, so a sliding window of
up to recovery_window leaves is searched.

Only display forms are recovered; inline dollars in prose are far too
ambiguous at this stage.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from backend_selector import PRIMARY_ENVIRONMENTS, render_math
from models import MathKind
from text_leaves import LeafTree, TextLeaf

if TYPE_CHECKING:
    from render_context import RenderContext

logger = logging.getLogger("math_preview.recovery")

RECOVERY_PATTERNS = [
    (re.compile(r"\\\[(.+?)\\\]", re.DOTALL), MathKind.display_math),
    (re.compile(r"\$\$(.+?)\$\$", re.DOTALL), MathKind.display_math),
    (
        re.compile(
            r"\\begin\{(%s)(\*?)\}.+?\\end\{\1\2\}" % "|".join(PRIMARY_ENVIRONMENTS),
            re.DOTALL,
        ),
        MathKind.latex_environment,
    ),
]


@dataclass
class _WindowMatch:
    first: int
    size: int
    start: int
    end: int
    content: str
    kind: MathKind


def _match_in_window(leaves: List[TextLeaf], first: int, size: int) -> Optional[_WindowMatch]:
    texts = [leaf.text for leaf in leaves[first:first + size]]
    combined = "".join(texts)
    first_len = len(texts[0])
    best = None
    for pattern, kind in RECOVERY_PATTERNS:
        m = pattern.search(combined)
        # Must start in the first leaf, otherwise a later window owns it
        if not m or m.start() >= first_len:
            continue
        if best is None or m.start() < best.start:
            if kind == MathKind.latex_environment:
                content = m.group(0)
            else:
                content = m.group(1)
                if "\\begin{" in content:
                    kind = MathKind.latex_environment
            if not content.strip():
                continue
            best = _WindowMatch(first, size, m.start(), m.end(), content.strip(), kind)
    return best


def find_recoverable(leaves: List[TextLeaf], window: int) -> Optional[_WindowMatch]:
    """First display form in document order, using the smallest window that holds it."""
    for first in range(len(leaves)):
        for size in range(1, window + 1):
            if first + size > len(leaves):
                break
            if leaves[first + size - 1].segment != leaves[first].segment:
                break
            found = _match_in_window(leaves, first, size)
            if found:
                return found
    return None


async def recover_unrestored_math(tree: LeafTree, ctx: "RenderContext") -> int:
    """Render leftover display math found in tree's text leaves. Returns how many."""
    window = ctx.settings.recovery_window
    recovered = 0

    while True:
        leaves = tree.leaves()
        found = find_recoverable(leaves, window)
        if found is None:
            break

        covered = leaves[found.first:found.first + found.size]
        start_leaf, end_leaf = covered[0], covered[-1]
        end_offset = sum(len(leaf.text) for leaf in covered[:-1])
        before = start_leaf.text[:found.start]
        after = end_leaf.text[found.end - end_offset:]

        outcome = await render_math(found.content, found.kind, ctx)
        rendered = tree.make_rendered(outcome, found.content, found.kind)

        if found.size == 1:
            if after:
                start_leaf.insert_after(tree.make_text(after))
            start_leaf.insert_after(rendered)
            start_leaf.set_text(before)
        else:
            start_leaf.insert_after(rendered)
            start_leaf.set_text(before)
            for leaf in covered[1:-1]:
                leaf.remove()
            end_leaf.set_text(after)

        recovered += 1
        logger.warning(
            f"Recovered unprotected {found.kind.value} across {found.size} text node(s): "
            f"{found.content[:50]!r}"
        )

    if recovered:
        logger.info(f"Recovery pass rendered {recovered} region(s)")
    return recovered
