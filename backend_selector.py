"""
Backend Selector - decide which engine renders a region, then render it

Decision order:
1. content only the primary can handle (chemistry, multi-line
   environments, AsciiMath) -> primary, gated on readiness at render time
2. primary known ready and preferred -> primary
3. fallback available -> fallback
4. primary exists but is not known ready -> primary, best effort
5. nothing -> "No math renderer available"

render_math() never raises. Failures come back as a RenderOutcome that
carries an inline error annotation instead of math.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import html
import inspect
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional

from bs4 import BeautifulSoup

from backends import BackendRegistry, BackendRenderError, MathBackend
from models import EngineChoice, FailureKind, MathKind, ReadinessState

if TYPE_CHECKING:
    from render_context import RenderContext

logger = logging.getLogger("math_preview.selector")

CHEMISTRY_RE = re.compile(r"\\ce\{")
PRIMARY_ENVIRONMENTS = (
    "align", "equation", "gather", "alignat", "flalign", "multline",
    "matrix", "pmatrix", "bmatrix", "vmatrix", "Vmatrix", "array", "cases",
)
COMPLEX_ENVIRONMENT_RE = re.compile(
    r"\\begin\{(?:%s)\*?\}" % "|".join(PRIMARY_ENVIRONMENTS)
)
# Heuristic only: what a MathML engine emits when it gave up on the input
ERROR_MARKUP_RE = re.compile(r"<merror|Unknown environment")
ERROR_FRAGMENT_SELECTOR = 'merror, mjx-container, [data-mml-node="merror"], .MathJax'

NO_RENDERER_MESSAGE = "No math renderer available"


@dataclass
class RenderOutcome:
    """What render_math produced for one region."""
    markup: str
    engine: EngineChoice
    error: Optional[str] = None
    failure: Optional[FailureKind] = None
    fallback_while_pending: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# SELECTION
# =============================================================================

def requires_primary(content: str, kind: MathKind) -> bool:
    """Chemistry, multi-line environments and AsciiMath need the primary."""
    if kind == MathKind.ascii_math:
        return True
    if CHEMISTRY_RE.search(content):
        return True
    return bool(COMPLEX_ENVIRONMENT_RE.search(content))


def select_backend(
    content: str,
    kind: MathKind,
    state: ReadinessState,
    registry: BackendRegistry,
    preferred: str = "primary",
) -> EngineChoice:
    if registry.primary is not None:
        if requires_primary(content, kind):
            return EngineChoice.primary
        if state == ReadinessState.ready and preferred == "primary":
            return EngineChoice.primary
    if registry.fallback is not None:
        return EngineChoice.fallback
    if registry.primary is not None:
        return EngineChoice.primary
    return EngineChoice.none


# =============================================================================
# MARKUP HELPERS
# =============================================================================

def looks_like_error_markup(markup: str) -> bool:
    return bool(ERROR_MARKUP_RE.search(markup))


def strip_error_fragments(markup: str) -> str:
    """Remove what a failed primary attempt may have left in the markup."""
    if not re.search(r"merror|mjx-container|MathJax", markup):
        return markup
    soup = BeautifulSoup(markup, "html.parser")
    for node in soup.select(ERROR_FRAGMENT_SELECTOR):
        node.decompose()
    return str(soup)


def error_annotation(display_mode: bool, message: str, source: str, snippet_length: int = 100) -> str:
    mode = "display" if display_mode else "inline"
    return (
        f'<span class="math-error">Math Error ({mode}): {html.escape(message)} '
        f"<small>Content: {html.escape(source[:snippet_length])}</small></span>"
    )


def no_renderer_markup() -> str:
    return f'<span class="math-error">{NO_RENDERER_MESSAGE}</span>'


# =============================================================================
# RENDERING
# =============================================================================

async def _call_backend(backend: MathBackend, content: str, kind: MathKind) -> str:
    if kind == MathKind.ascii_math:
        result = backend.render_asciimath(content, kind.display_mode)
    else:
        result = backend.render(content, kind.display_mode)
    if inspect.isawaitable(result):
        result = await result
    return result


async def render_with_primary(content: str, kind: MathKind, ctx: "RenderContext") -> str:
    """Primary only. Raises when it fails or returns error-shaped markup."""
    primary = ctx.backends.primary
    if primary is None:
        raise BackendRenderError("No primary backend configured", content)
    markup = await _call_backend(primary, content, kind)
    if looks_like_error_markup(markup):
        raise BackendRenderError("Primary backend returned error markup", content)
    return markup


async def render_math(content: str, kind: MathKind, ctx: "RenderContext") -> RenderOutcome:
    """
    Render one region with the best available engine.

    A primary failure is retried with the fallback. A fallback render
    while the primary is still pending is queued for a later upgrade.
    """
    registry = ctx.backends
    tracker = ctx.tracker
    state = tracker.state
    display_mode = kind.display_mode
    snippet_length = ctx.settings.error_snippet_length
    errors: List[str] = []

    choice = select_backend(content, kind, state, registry, ctx.preferred_engine)
    logger.debug(f"{kind.value}: {choice.value} (readiness {state.value}) for {content[:50]!r}")

    if choice == EngineChoice.none:
        logger.warning(f"{NO_RENDERER_MESSAGE}: {content[:50]!r}")
        return RenderOutcome(
            markup=no_renderer_markup(),
            engine=EngineChoice.none,
            error=NO_RENDERER_MESSAGE,
            failure=FailureKind.backend_unavailable,
        )

    if choice == EngineChoice.primary:
        forced = requires_primary(content, kind)
        usable = state == ReadinessState.ready or tracker.is_ready_sync()
        if forced and not usable and registry.fallback is not None:
            logger.debug(f"Primary not ready for {kind.value}, using fallback")
            choice = EngineChoice.fallback
        else:
            try:
                markup = await render_with_primary(content, kind, ctx)
                return RenderOutcome(markup=markup, engine=EngineChoice.primary)
            except Exception as e:
                errors.append(str(e))
                logger.warning(f"Primary render failed, retrying with fallback: {e}")
            if registry.fallback is None:
                return _failed(display_mode, errors, content, snippet_length)

    # Fallback path
    retried = bool(errors)
    try:
        markup = await _call_backend(registry.fallback, content, kind)
    except Exception as e:
        errors.append(str(e))
        logger.warning(f"Fallback render failed: {e}")
        return _failed(display_mode, errors, content, snippet_length)

    if retried:
        markup = strip_error_fragments(markup)

    # Only renders the primary would have produced are worth upgrading
    wants_primary = ctx.preferred_engine == "primary" or requires_primary(content, kind)
    pending = (
        not retried
        and wants_primary
        and registry.primary is not None
        and state == ReadinessState.pending
    )
    if pending:
        ctx.record_fallback_usage(content, kind)

    return RenderOutcome(
        markup=markup,
        engine=EngineChoice.fallback,
        fallback_while_pending=pending,
    )


def _failed(display_mode: bool, errors: List[str], content: str, snippet_length: int) -> RenderOutcome:
    message = errors[-1] if errors else "render failed"
    return RenderOutcome(
        markup=error_annotation(display_mode, message, content, snippet_length),
        engine=EngineChoice.none,
        error=message,
        failure=FailureKind.backend_render_failure,
    )
