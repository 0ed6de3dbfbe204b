"""
Unit Tests - Recovery Scanner and Text Leaves

Run with: pytest tests/test_recovery.py -v

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
import asyncio
import sys
from pathlib import Path

from bs4 import BeautifulSoup

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fakes import FakeFallback, make_context
from models import MathKind
from recovery import find_recoverable, recover_unrestored_math
from text_leaves import SoupLeafTree


def _recover(markup, ctx):
    soup = BeautifulSoup(markup, "html.parser")
    count = asyncio.run(recover_unrestored_math(SoupLeafTree(soup), ctx))
    return soup, count


# =============================================================================
# TEXT LEAVES
# =============================================================================

class TestSoupLeaves:
    """Which text nodes the recovery scanner may touch."""

    def test_plain_leaves(self):
        soup = BeautifulSoup("<p>a <em>b</em> c</p>", "html.parser")
        leaves = SoupLeafTree(soup).leaves()

        assert [leaf.text for leaf in leaves] == ["a ", "b", " c"]
        assert len({leaf.segment for leaf in leaves}) == 1

    def test_code_and_math_excluded(self):
        soup = BeautifulSoup(
            '<p>a <code>x</code> b <span class="math-inline">y</span> c</p>', "html.parser"
        )
        leaves = SoupLeafTree(soup).leaves()

        assert [leaf.text for leaf in leaves] == ["a ", " b ", " c"]
        assert len({leaf.segment for leaf in leaves}) == 3

    def test_comments_skipped(self):
        soup = BeautifulSoup("<p>a<!-- $$x$$ --></p>", "html.parser")
        assert [leaf.text for leaf in SoupLeafTree(soup).leaves()] == ["a"]

    def test_set_text(self):
        soup = BeautifulSoup("<p>old</p>", "html.parser")
        leaf = SoupLeafTree(soup).leaves()[0]
        leaf.set_text("new")

        assert str(soup) == "<p>new</p>"
        assert leaf.text == "new"


# =============================================================================
# RECOVERY
# =============================================================================

class TestRecovery:
    """Display math left behind as raw text."""

    def test_single_leaf(self, fallback_only_ctx):
        soup, count = _recover(r"<p>Before \[x^2\] after</p>", fallback_only_ctx)

        assert count == 1
        display = soup.find("div", class_="math-display")
        assert display["data-math-source"] == "x^2"
        assert str(display.previous_sibling) == "Before "
        assert str(display.next_sibling) == " after"

    def test_split_across_leaves(self, fallback_only_ctx):
        soup, count = _recover("<p>$$a <em>+</em> b$$</p>", fallback_only_ctx)

        assert count == 1
        assert soup.find("div", class_="math-display")["data-math-source"] == "a + b"
        assert "$$" not in soup.get_text()

    def test_window_too_small(self):
        ctx = make_context(fallback=FakeFallback(), recovery_window=2)
        soup, count = _recover("<p>$$a <em>+</em> b$$</p>", ctx)

        assert count == 0
        assert "$$a" in soup.get_text()

    def test_code_never_recovered(self, fallback_only_ctx):
        soup, count = _recover(r"<p><code>\[x\]</code></p><pre>$$y$$</pre>", fallback_only_ctx)

        assert count == 0
        assert fallback_only_ctx.backends.fallback.calls == []

    def test_window_never_crosses_excluded_node(self, fallback_only_ctx):
        _, count = _recover(r"<p>\[a <code>z</code> b\]</p>", fallback_only_ctx)
        assert count == 0

    def test_window_never_crosses_paragraphs(self, fallback_only_ctx):
        soup, count = _recover("<p>it costs $$ in A</p><p>and B $$ done</p>", fallback_only_ctx)

        assert count == 0
        assert soup.find(class_="math-display") is None
        assert [p.get_text() for p in soup.find_all("p")] == ["it costs $$ in A", "and B $$ done"]

    def test_window_never_crosses_list_items(self, fallback_only_ctx):
        _, count = _recover(r"<ul><li>\[a</li><li>b\]</li></ul>", fallback_only_ctx)
        assert count == 0

    def test_text_after_nested_block_starts_new_segment(self):
        soup = BeautifulSoup("<div>a<p>b</p>c</div>", "html.parser")
        leaves = SoupLeafTree(soup).leaves()

        assert [leaf.text for leaf in leaves] == ["a", "b", "c"]
        assert len({leaf.segment for leaf in leaves}) == 3

    def test_rendered_math_left_alone(self, fallback_only_ctx):
        _, count = _recover(
            '<p><span class="math-inline" data-engine="fallback"><span>\\[x\\]</span></span></p>',
            fallback_only_ctx,
        )
        assert count == 0

    def test_bare_environment(self, fallback_only_ctx):
        soup, count = _recover(r"<p>\begin{align}a &amp;= b\end{align}</p>", fallback_only_ctx)

        assert count == 1
        display = soup.find("div", class_="math-display")
        assert display["data-math-kind"] == "latex_environment"
        assert display["data-math-source"] == r"\begin{align}a &= b\end{align}"

    def test_environment_inside_dollars(self, fallback_only_ctx):
        soup, count = _recover(r"<p>$$\begin{cases}a\end{cases}$$</p>", fallback_only_ctx)

        assert count == 1
        assert soup.find("div", class_="math-display")["data-math-kind"] == "latex_environment"

    def test_several_in_order(self, fallback_only_ctx):
        soup, count = _recover(r"<p>\[a\] mid \[b\]</p>", fallback_only_ctx)

        assert count == 2
        assert [d["data-math-source"] for d in soup.find_all("div", class_="math-display")] == ["a", "b"]

    def test_inline_dollars_ignored(self, fallback_only_ctx):
        _, count = _recover("<p>costs $5 and $x$</p>", fallback_only_ctx)
        assert count == 0

    def test_smallest_window_reported(self):
        soup = BeautifulSoup(r"<p>\[a\]<em>b</em></p>", "html.parser")
        found = find_recoverable(SoupLeafTree(soup).leaves(), 4)

        assert found.size == 1
        assert found.kind == MathKind.display_math
        assert found.content == "a"
