"""
Placeholders - protect math from the markup transform

Every math region found by the scanner is swapped for a marker that the
markup transform passes through untouched:

    <span class="math-placeholder" data-math-key="MATH-a1b2c3-0">&zwnj;⟦MATH-a1b2c3-0⟧</span>

- an inline container, so it never breaks a paragraph apart
- a queryable attribute, so the restorer can find it in the tree
- the ⟦⟧ brackets, which no markup language gives a meaning to
- a zero-width non-joiner in front, so the key never merges into a word

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import hashlib
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from math_scanner import ScanResult, scan_math_regions
from models import MathRegion

logger = logging.getLogger("math_preview.placeholders")

KEY_PREFIX = "MATH"
BRACKET_OPEN = "⟦"
BRACKET_CLOSE = "⟧"
ZERO_WIDTH_TAG = "\u200c"
PLACEHOLDER_CLASS = "math-placeholder"
KEY_ATTRIBUTE = "data-math-key"

KEY_RE = re.compile(rf"{KEY_PREFIX}-[a-f0-9]{{6}}-\d+")


# =============================================================================
# KEYS AND MARKERS
# =============================================================================

def generate_placeholder_key(content: str, index: int, prefix: str = KEY_PREFIX) -> str:
    """
    Generate a key for one region.

    Format: MATH-a1b2c3-0. The hash keeps keys readable in logs, the index
    keeps them unique even when the same formula appears twice.
    """
    content_hash = hashlib.md5(content.encode("utf-8")).hexdigest()[:6]
    return f"{prefix}-{content_hash}-{index}"


def is_placeholder_key(text: str) -> bool:
    """Check if text is exactly one placeholder key."""
    return bool(KEY_RE.fullmatch(text))


def marker_text(key: str) -> str:
    """The visible part of a marker: zero-width tag plus bracketed key."""
    return f"{ZERO_WIDTH_TAG}{BRACKET_OPEN}{key}{BRACKET_CLOSE}"


def build_marker(key: str) -> str:
    return f'<span class="{PLACEHOLDER_CLASS}" {KEY_ATTRIBUTE}="{key}">{marker_text(key)}</span>'


# Marker as it appears in protected text, in case a transform returns it verbatim
_MARKER_RE = re.compile(
    rf'<span class="{PLACEHOLDER_CLASS}" {KEY_ATTRIBUTE}="({KEY_RE.pattern})">'
    rf"{ZERO_WIDTH_TAG}?{BRACKET_OPEN}\1{BRACKET_CLOSE}</span>"
)
_BARE_MARKER_RE = re.compile(
    rf"{ZERO_WIDTH_TAG}?{BRACKET_OPEN}?({KEY_RE.pattern}){BRACKET_CLOSE}?"
)


def locate_marker_text(text: str, key: str) -> Optional[Tuple[int, int]]:
    """
    Span of the marker for key inside plain text.

    Tries the whole marker first (a transform that escaped it), then the
    bare key with its brackets and zero-width tag.
    """
    escaped = re.escape(key)
    full = re.search(
        rf'<span class="{PLACEHOLDER_CLASS}" {KEY_ATTRIBUTE}="{escaped}">'
        rf"{ZERO_WIDTH_TAG}?{BRACKET_OPEN}?{escaped}{BRACKET_CLOSE}?</span>",
        text,
    )
    if full:
        return full.span()
    bare = re.search(rf"{ZERO_WIDTH_TAG}?{BRACKET_OPEN}?{escaped}{BRACKET_CLOSE}?", text)
    return bare.span() if bare else None


# =============================================================================
# REGISTRY
# =============================================================================

class PlaceholderRegistry:
    """Ordered mapping key -> MathRegion for one render pass."""

    def __init__(self):
        self._regions: "OrderedDict[str, MathRegion]" = OrderedDict()

    def add(self, region: MathRegion) -> None:
        if region.key in self._regions:
            raise ValueError(f"Duplicate placeholder key: {region.key}")
        self._regions[region.key] = region

    def get(self, key: str) -> Optional[MathRegion]:
        return self._regions.get(key)

    def keys(self) -> List[str]:
        return list(self._regions)

    def contents(self) -> List[str]:
        return [region.content for region in self._regions.values()]

    def __contains__(self, key: str) -> bool:
        return key in self._regions

    def __iter__(self) -> Iterator[MathRegion]:
        return iter(list(self._regions.values()))

    def __len__(self) -> int:
        return len(self._regions)


# =============================================================================
# PROTECTION
# =============================================================================

@dataclass
class ProtectionResult:
    """Result of protecting one document."""
    protected_text: str
    registry: PlaceholderRegistry
    scan: ScanResult

    def restore_source(self, text: Optional[str] = None) -> str:
        """
        Put the original source back in place of every marker.

        Plain-text inverse of protect_text: restore_source() gives back the
        scanned text unchanged.
        """
        if text is None:
            text = self.protected_text
        originals: Dict[str, str] = {r.key: r.original_match for r in self.registry}

        def _sub(match: re.Match) -> str:
            key = match.group(1)
            return originals.get(key, match.group(0))

        text = _MARKER_RE.sub(_sub, text)
        return _BARE_MARKER_RE.sub(_sub, text)

    def verify_restoration(self, restored_text: str) -> List[str]:
        """Returns a list of issues, empty when every region came back."""
        issues = []
        remaining = KEY_RE.findall(restored_text)
        if remaining:
            issues.append(f"Unrestored placeholders: {remaining}")
        for region in self.registry:
            if region.original_match not in restored_text:
                issues.append(f"Region not found: {region.original_match[:50]}...")
        return issues


def protect_text(
    text: str,
    repair: bool = True,
    min_tail: int = 5,
    max_tail: int = 500,
) -> ProtectionResult:
    """
    Scan text and replace every math region with a marker.

    Residuals are not written back into the protected text. They live only
    in the registry and are re-inserted as plain text by the restorer.
    """
    scan = scan_math_regions(text, repair=repair, min_tail=min_tail, max_tail=max_tail)
    registry = PlaceholderRegistry()

    for index, match in enumerate(scan.matches):
        registry.add(MathRegion(
            key=generate_placeholder_key(match.content, index),
            kind=match.kind,
            content=match.content,
            original_match=match.original_match,
            leading_residual=match.leading_residual,
            trailing_residual=match.trailing_residual,
            start=match.start,
            end=match.end,
        ))

    # Reverse order keeps earlier offsets valid
    protected = scan.text
    for region in sorted(registry, key=lambda r: r.start, reverse=True):
        protected = protected[:region.start] + build_marker(region.key) + protected[region.end:]

    logger.info(f"Protected {len(registry)} math regions")
    return ProtectionResult(protected_text=protected, registry=registry, scan=scan)


if __name__ == "__main__":
    sample = r"""
The famous equation $E = mc^2$ shows mass-energy equivalence.

$$
\begin{align}
a &= b \\
c &= d
\end{align}
$$

Price: $10.99 and `sqrt(x^2 + 1)` in AsciiMath.
"""
    result = protect_text(sample)
    print(f"Protected {len(result.registry)} regions:")
    for region in result.registry:
        print(f"  [{region.kind.value}] {region.key}: {region.content[:50]}")
    print()
    print(result.protected_text)
    assert result.restore_source() == result.scan.text
