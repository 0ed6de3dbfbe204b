"""
Unit Tests - Placeholder Restorer

Run with: pytest tests/test_restorer.py -v

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
import asyncio
import html
import sys
from pathlib import Path

import markdown
import pytest
from bs4 import BeautifulSoup

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import restorer
from fakes import FakeFallback, make_context
from models import FailureKind, MathKind, MathRegion
from placeholders import PlaceholderRegistry, build_marker, protect_text
from restorer import (
    RECOVERED_CLASS,
    classify_misplaced_content,
    clean_math_content,
    recover_marker,
    restore_placeholders,
)


def _region(key="MATH-abcdef-0", kind=MathKind.inline_math, content="x", original=None, **extra):
    return MathRegion(
        key=key,
        kind=kind,
        content=content,
        original_match=original if original is not None else f"${content}$",
        **extra,
    )


def _registry(*regions):
    registry = PlaceholderRegistry()
    for region in regions:
        registry.add(region)
    return registry


def _restore(soup, registry, ctx):
    return asyncio.run(restore_placeholders(soup, registry, ctx))


def _through_markdown(text):
    protection = protect_text(text)
    soup = BeautifulSoup(markdown.markdown(protection.protected_text), "html.parser")
    return soup, protection.registry


# =============================================================================
# CONTENT CLEANING
# =============================================================================

class TestCleanContent:
    """Markup damage inside math bodies."""

    def test_entities_decoded(self):
        assert clean_math_content("a &lt; b", False) == "a < b"

    def test_br_becomes_line_break(self):
        assert clean_math_content("a &amp;= b<br>c", True) == r"a &= b \\ c"

    def test_tags_dropped(self):
        assert clean_math_content("<em>x</em>^2", False) == "x^2"

    def test_inline_collapsed(self):
        assert clean_math_content("  x  +\n y ", False) == "x + y"

    def test_display_keeps_lines(self):
        assert clean_math_content("a  \nb\r\nc", True) == "a\nb\nc"


# =============================================================================
# MISCLASSIFICATION
# =============================================================================

class TestMisclassification:
    """Markup caught between math delimiters."""

    def test_heading(self):
        assert classify_misplaced_content(_region(content="x\n## Heading")) == "markdown"

    def test_list_item_after_newline(self):
        assert classify_misplaced_content(_region(content="a\n- item")) == "markdown"

    def test_leading_minus_is_math(self):
        assert classify_misplaced_content(_region(content="- x")) is None

    def test_list_in_leading_residual(self):
        region = _region(kind=MathKind.latex_environment, content=r"\begin{align}a\end{align}",
                         leading_residual="- item")
        assert classify_misplaced_content(region) == "markdown"

    def test_html_tag(self):
        assert classify_misplaced_content(_region(content="<div>x</div>")) == "html"

    def test_escaped_html(self):
        assert classify_misplaced_content(_region(content="&lt;div&gt;x")) == "html"

    def test_br_is_fine(self):
        assert classify_misplaced_content(_region(content="a<br>b")) is None

    def test_nested_placeholder(self):
        assert classify_misplaced_content(_region(content="x ⟦MATH-abcdef-1⟧")) == "html"

    def test_plain_math(self):
        assert classify_misplaced_content(_region(content=r"\frac{a}{b}")) is None


# =============================================================================
# RESTORATION
# =============================================================================

class TestRestore:
    """restore_placeholders over real markdown output and hand-built trees."""

    def test_inline_restored(self, fallback_only_ctx):
        soup, registry = _through_markdown("Inline $a+b$ here.")
        report = _restore(soup, registry, fallback_only_ctx)

        wrapper = soup.find("span", class_="math-inline")
        assert wrapper is not None
        assert wrapper["data-engine"] == "fallback"
        assert wrapper["data-math-source"] == "a+b"
        assert wrapper.find("span", class_="fake-fallback") is not None
        assert report.restored == registry.keys()
        assert "⟦" not in str(soup)
        assert soup.find("p").get_text().startswith("Inline ")

    def test_display_replaces_paragraph(self, fallback_only_ctx):
        soup, registry = _through_markdown("Before\n\n$$\nx^2\n$$\n\nAfter")
        _restore(soup, registry, fallback_only_ctx)

        display = soup.find("div", class_="math-display")
        assert display is not None
        assert display.parent.name != "p"
        assert [p.get_text() for p in soup.find_all("p")] == ["Before", "After"]

    def test_marker_in_code_becomes_literal(self, fallback_only_ctx):
        region = _region(original="$x$")
        soup = BeautifulSoup(f"<p><code>{build_marker(region.key)}</code></p>", "html.parser")

        report = _restore(soup, _registry(region), fallback_only_ctx)

        assert soup.find("code").get_text() == "$x$"
        assert report.literal == [region.key]
        assert fallback_only_ctx.backends.fallback.calls == []

    def test_escaped_marker_recovered(self, fallback_only_ctx):
        region = _region(content="y^2")
        soup = BeautifulSoup(f"<p>see {html.escape(build_marker(region.key))} here</p>", "html.parser")

        report = _restore(soup, _registry(region), fallback_only_ctx)

        assert report.recovered == [region.key]
        assert report.restored == [region.key]
        assert soup.find("span", class_="math-inline")["data-math-source"] == "y^2"
        assert soup.find("p").get_text().startswith("see ")
        assert region.key not in soup.get_text()

        diagnostic = fallback_only_ctx.diagnostics[0]
        assert diagnostic.failure == FailureKind.restoration_miss
        assert diagnostic.recovered
        assert region.key in diagnostic.context_snippet

    def test_marker_in_image_alt_becomes_source(self, fallback_only_ctx):
        soup, registry = _through_markdown("![area $r^2$](img.png)")
        report = _restore(soup, registry, fallback_only_ctx)

        assert soup.find("img")["alt"] == "area $r^2$"
        assert "math-placeholder" not in str(soup)
        assert report.literal == registry.keys()
        assert report.missing == []
        assert fallback_only_ctx.diagnostics == []

    def test_marker_in_link_target_becomes_source(self, fallback_only_ctx):
        region = _region(content="k")
        soup = BeautifulSoup("<p><a>doc</a></p>", "html.parser")
        soup.find("a")["href"] = "http://x.org/" + build_marker(region.key)

        report = _restore(soup, _registry(region), fallback_only_ctx)

        assert soup.find("a")["href"] == "http://x.org/$k$"
        assert soup.find("a").get_text() == "doc"
        assert report.literal == [region.key]
        assert fallback_only_ctx.backends.fallback.calls == []

    def test_missing_marker(self, fallback_only_ctx):
        region = _region()
        soup = BeautifulSoup("<p>nothing here</p>", "html.parser")

        report = _restore(soup, _registry(region), fallback_only_ctx)

        assert report.missing == [region.key]
        diagnostic = fallback_only_ctx.diagnostics[0]
        assert not diagnostic.recovered
        assert diagnostic.surrounding_markup == "<p>nothing here</p>"

    def test_residuals_reinserted(self, fallback_only_ctx):
        region = _region(
            kind=MathKind.latex_environment,
            content="\\begin{align}\na &= b\n\\end{align}",
            original="$$...$$",
            leading_residual="Some text",
            trailing_residual="after",
        )
        soup = BeautifulSoup(f"<p>{build_marker(region.key)}</p>", "html.parser")

        _restore(soup, _registry(region), fallback_only_ctx)

        display = soup.find("div", class_="math-display")
        assert display["data-math-kind"] == "latex_environment"
        assert str(display.previous_sibling) == "Some text "
        assert str(display.next_sibling) == " after"

    def test_misclassified_kept_literal(self, fallback_only_ctx):
        region = _region(
            kind=MathKind.latex_environment,
            content="\\begin{align}\n- item one\n\\end{align}",
            original="$$\n\\begin{align}\n- item one\n\\end{align}\n$$",
        )
        soup = BeautifulSoup(f"<p>{build_marker(region.key)}</p>", "html.parser")

        report = _restore(soup, _registry(region), fallback_only_ctx)

        pre = soup.find("pre", class_="restored-markdown-placeholder")
        assert pre is not None
        assert pre.get_text() == region.original_match
        assert soup.find("p") is None
        assert report.misclassified == [region.key]
        assert fallback_only_ctx.diagnostics[0].failure == FailureKind.misclassified_content

    def test_render_error_annotated(self):
        ctx = make_context(fallback=FakeFallback(fail_on=["bad"]))
        region = _region(content=r"\bad")
        soup = BeautifulSoup(f"<p>{build_marker(region.key)}</p>", "html.parser")

        report = _restore(soup, _registry(region), ctx)

        wrapper = soup.find("span", class_="math-inline")
        assert wrapper["data-engine"] == "none"
        assert wrapper.find("span", class_="math-error") is not None
        assert report.render_errors == [region.key]

    def test_one_failure_does_not_stop_the_pass(self, fallback_only_ctx, monkeypatch):
        original = restorer.render_math

        async def flaky(content, kind, ctx):
            if content == "boom":
                raise RuntimeError("renderer exploded")
            return await original(content, kind, ctx)

        monkeypatch.setattr(restorer, "render_math", flaky)
        first = _region(key="MATH-aaaaaa-0", content="boom")
        second = _region(key="MATH-bbbbbb-1", content="ok")
        soup = BeautifulSoup(
            f"<p>{build_marker(first.key)} and {build_marker(second.key)}</p>", "html.parser"
        )

        report = _restore(soup, _registry(first, second), fallback_only_ctx)

        assert report.failed == [first.key]
        assert report.restored == [second.key]

    def test_recover_marker_without_brackets(self):
        key = "MATH-abcdef-0"
        soup = BeautifulSoup(f"<p>before {key} after</p>", "html.parser")

        marker = recover_marker(soup, key)

        assert marker["class"] == [RECOVERED_CLASS]
        assert str(marker.previous_sibling) == "before "
        assert str(marker.next_sibling) == " after"

    @pytest.mark.parametrize("text", ["$a$ and $b$", "\\(x\\)", "`sqrt(y)`"])
    def test_no_markers_left(self, fallback_only_ctx, text):
        soup, registry = _through_markdown(text)
        report = _restore(soup, registry, fallback_only_ctx)

        assert "⟦" not in str(soup)
        assert len(report.restored) == len(registry)
