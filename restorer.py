"""
Placeholder Restorer - put rendered math back into the transformed tree

For each registered region, in registry order:
1. find its marker (inside code/pre or an attribute -> original source as
   literal text)
2. reject content that is really markup that got caught between delimiters
3. clean the content and render it with the selected backend
4. splice the rendered wrapper in place of the marker, residuals as text
5. marker gone -> record a diagnostic, rebuild the marker around the raw
   key if it survived as text, retry once

One failing region never aborts the pass.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, List, Optional

from bs4 import BeautifulSoup, NavigableString, Tag

from backend_selector import RenderOutcome, render_math
from models import FailureKind, MathKind, MathRegion, RestorationDiagnostic
from placeholders import (
    BRACKET_OPEN,
    KEY_ATTRIBUTE,
    KEY_RE,
    PlaceholderRegistry,
    locate_marker_text,
)

if TYPE_CHECKING:
    from render_context import RenderContext

logger = logging.getLogger("math_preview.restorer")

CODE_CONTAINERS = ["code", "pre"]
RECOVERED_CLASS = "math-placeholder-recovered"

# Content limits for diagnostics
SURROUNDING_LIMIT = 2000
NEAREST_NODE_LIMIT = 1000
CONTEXT_LIMIT = 500

# Markup structure at a line start. Leading residuals are checked from the
# very first character, content only after a newline: "$- x$" is math.
RESIDUAL_MARKDOWN_RE = re.compile(r"(^|\n)\s*#{1,6}\s+|(^|\n)\s*[-*+]\s+|```")
CONTENT_MARKDOWN_RE = re.compile(r"(^|\n)\s*#{1,6}\s+|\n\s*[-*+]\s+|```")
HTML_TAG_RE = re.compile(r"</?[a-zA-Z][\w-]*(?:\s[^<>]*)?/?>")
ESCAPED_HTML_RE = re.compile(r"&lt;/?[a-zA-Z][\w-]*.*?&gt;")
BR_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)


@dataclass
class RestoreReport:
    """Per-pass bookkeeping of what happened to each key."""
    restored: List[str] = field(default_factory=list)
    literal: List[str] = field(default_factory=list)
    misclassified: List[str] = field(default_factory=list)
    recovered: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    render_errors: List[str] = field(default_factory=list)

    def summary(self) -> str:
        return (
            f"{len(self.restored)} rendered, {len(self.literal)} literal, "
            f"{len(self.misclassified)} misclassified, {len(self.recovered)} recovered, "
            f"{len(self.missing)} missing, {len(self.failed)} failed"
        )


# =============================================================================
# CONTENT
# =============================================================================

def clean_math_content(content: str, display_mode: bool) -> str:
    """
    Undo markup damage inside a math body.

    Entities are decoded, <br> becomes a TeX line break and stray tags are
    dropped. Display content keeps its line structure; inline content is
    collapsed to single spaces.
    """
    text = html.unescape(content)
    text = BR_RE.sub(r" \\\\ ", text)
    text = HTML_TAG_RE.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    if display_mode:
        return "\n".join(line.rstrip() for line in text.split("\n")).strip()
    return " ".join(text.split())


def classify_misplaced_content(region: MathRegion) -> Optional[str]:
    """
    Is this "math" really markup caught between delimiters?

    Returns "markdown" or "html" when it is, None for genuine math.
    """
    if region.leading_residual and RESIDUAL_MARKDOWN_RE.search(region.leading_residual):
        return "markdown"
    if CONTENT_MARKDOWN_RE.search(region.content):
        return "markdown"
    if any(not BR_RE.fullmatch(m.group(0)) for m in HTML_TAG_RE.finditer(region.content)):
        return "html"
    if ESCAPED_HTML_RE.search(region.content):
        return "html"
    if KEY_RE.search(region.content) or BRACKET_OPEN in region.content:
        return "html"
    return None


# =============================================================================
# TREE HELPERS
# =============================================================================

def parse_fragment(markup: str) -> List:
    return list(BeautifulSoup(markup, "html.parser").contents)


def build_math_wrapper(soup: BeautifulSoup, outcome: RenderOutcome, content: str, kind: MathKind) -> Tag:
    """div.math-display or span.math-inline holding the rendered markup."""
    display = kind.display_mode
    wrapper = soup.new_tag("div" if display else "span")
    wrapper["class"] = ["math-display" if display else "math-inline"]
    wrapper["data-engine"] = outcome.engine.value
    wrapper["data-math-kind"] = kind.value
    wrapper["data-math-source"] = content
    for node in parse_fragment(outcome.markup):
        wrapper.append(node.extract())
    return wrapper


def _inside_code(node: Tag) -> bool:
    return node.find_parent(CODE_CONTAINERS) is not None


def _sole_content(parent: Tag, node: Tag) -> bool:
    for child in parent.contents:
        if child is node:
            continue
        if isinstance(child, NavigableString) and not child.strip():
            continue
        return False
    return True


def _place(marker: Tag, node: Tag, block: bool) -> None:
    """Swap marker for node; a block that fills a <p> on its own replaces the <p>."""
    parent = marker.parent
    if block and parent is not None and parent.name == "p" and _sole_content(parent, marker):
        parent.replace_with(node)
    else:
        marker.replace_with(node)


def _find_marker(soup: BeautifulSoup, key: str) -> Optional[Tag]:
    return soup.find(attrs={KEY_ATTRIBUTE: key})


def _find_key_text(soup: BeautifulSoup, key: str) -> Optional[NavigableString]:
    for text_node in soup.find_all(string=lambda s: s is not None and key in s):
        # Comments and CDATA never hold real markers
        if type(text_node) is NavigableString:
            return text_node
    return None


def restore_in_attributes(soup: BeautifulSoup, region: MathRegion) -> bool:
    """
    Put the original source back where a marker ended up inside an attribute.

    Image alt text and link targets cannot hold rendered math, so the
    marker is replaced by region.original_match as plain attribute text.
    """
    restored = False
    for tag in soup.find_all(True):
        for name, value in list(tag.attrs.items()):
            if name == KEY_ATTRIBUTE:
                continue
            text = " ".join(value) if isinstance(value, list) else str(value)
            if region.key not in text:
                continue
            span = locate_marker_text(text, region.key)
            if span is None:
                continue
            tag[name] = text[:span[0]] + region.original_match + text[span[1]:]
            restored = True
    return restored


def _diagnose_miss(soup: BeautifulSoup, region: MathRegion) -> RestorationDiagnostic:
    diagnostic = RestorationDiagnostic(
        key=region.key,
        kind=region.kind,
        failure=FailureKind.restoration_miss,
        surrounding_markup=str(soup)[:SURROUNDING_LIMIT],
    )
    text_node = _find_key_text(soup, region.key)
    if text_node is not None:
        text = str(text_node)
        at = text.find(region.key)
        half = CONTEXT_LIMIT // 2
        diagnostic.context_snippet = text[max(0, at - half):at + half][:CONTEXT_LIMIT]
        if text_node.parent is not None:
            diagnostic.nearest_node_markup = str(text_node.parent)[:NEAREST_NODE_LIMIT]
    return diagnostic


def recover_marker(soup: BeautifulSoup, key: str) -> Optional[Tag]:
    """
    Rebuild a marker around a key that survived only as text.

    The bracket characters and the zero-width tag go, the key is wrapped in
    span.math-placeholder-recovered carrying the usual key attribute.
    """
    text_node = _find_key_text(soup, key)
    if text_node is None:
        return None

    text = str(text_node)
    span = locate_marker_text(text, key)
    if span is None:
        return None

    marker = soup.new_tag("span")
    marker["class"] = [RECOVERED_CLASS]
    marker[KEY_ATTRIBUTE] = key
    marker.string = key

    before, after = text[:span[0]], text[span[1]:]
    text_node.replace_with(marker)
    if before:
        marker.insert_before(NavigableString(before))
    if after:
        marker.insert_after(NavigableString(after))
    return marker


# =============================================================================
# RESTORATION
# =============================================================================

async def restore_placeholders(
    soup: BeautifulSoup,
    registry: PlaceholderRegistry,
    ctx: "RenderContext",
) -> RestoreReport:
    """Restore every registered region into soup; never raises for content problems."""
    report = RestoreReport()

    for region in registry:
        try:
            await _restore_region(soup, region, ctx, report)
        except Exception as e:
            logger.error(f"Restoring {region.key} failed: {type(e).__name__}: {e}")
            report.failed.append(region.key)

    logger.info(f"Restored {len(registry)} regions: {report.summary()}")
    return report


async def _restore_region(
    soup: BeautifulSoup,
    region: MathRegion,
    ctx: "RenderContext",
    report: RestoreReport,
) -> None:
    key = region.key
    marker = _find_marker(soup, key)

    if marker is None and restore_in_attributes(soup, region):
        logger.info(f"Math placeholder {key} sits in an attribute, kept as source text")
        report.literal.append(key)
        return

    if marker is None:
        diagnostic = _diagnose_miss(soup, region)
        marker = recover_marker(soup, key)
        diagnostic.recovered = marker is not None
        ctx.record_diagnostic(diagnostic)
        if marker is None:
            logger.warning(f"Math placeholder {key} not found in output tree ({region.kind.value})")
            report.missing.append(key)
            return
        logger.warning(f"Math placeholder {key} lost its marker, rebuilt from text")
        report.recovered.append(key)

    if _inside_code(marker):
        marker.replace_with(NavigableString(region.original_match))
        report.literal.append(key)
        return

    reason = classify_misplaced_content(region)
    if reason:
        pre = soup.new_tag("pre")
        pre["class"] = [f"restored-{reason}-placeholder"]
        pre.string = region.original_match
        _place(marker, pre, block=True)
        ctx.record_diagnostic(RestorationDiagnostic(
            key=key,
            kind=region.kind,
            failure=FailureKind.misclassified_content,
            context_snippet=region.original_match[:CONTEXT_LIMIT],
        ))
        logger.warning(f"{key}: {reason} content between math delimiters, kept literal")
        report.misclassified.append(key)
        return

    content = clean_math_content(region.content, region.display_mode)
    outcome = await render_math(content, region.kind, ctx)
    wrapper = build_math_wrapper(soup, outcome, content, region.kind)
    _place(marker, wrapper, block=region.display_mode)

    if region.leading_residual:
        wrapper.insert_before(NavigableString(region.leading_residual + " "))
    if region.trailing_residual:
        wrapper.insert_after(NavigableString(" " + region.trailing_residual))

    if outcome.ok:
        report.restored.append(key)
    else:
        report.render_errors.append(key)
