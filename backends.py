"""
Math Backends - the two typesetting engines behind the preview

PrimaryBackend
    Full-featured, may need time to become usable. The concrete one is
    latex2mathml: imported lazily in a worker thread, renders MathML,
    handles environments, \\ce{...} chemistry and AsciiMath.

FallbackBackend
    Fast and always ready, narrower coverage. The concrete one is
    matplotlib mathtext, which renders an SVG embedded as a base64 <img>.

Backends raise MathBackendError subclasses on failure. Containing those
errors per region is the selector's job, never the backend's.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import asyncio
import base64
import html
import importlib
import importlib.util
import inspect
import io
import logging
import re
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from xml.etree import ElementTree
from xml.sax.saxutils import unescape

from asciimath import asciimath_to_tex
from models import EngineChoice

logger = logging.getLogger("math_preview.backends")

RenderResult = Union[str, Awaitable[str]]


# =============================================================================
# ERRORS
# =============================================================================

class MathBackendError(Exception):
    """Base class for backend failures."""

    def __init__(self, message: str, source: str = ""):
        self.source = source
        if source:
            message = f"{message} [source: {source[:100]}]"
        super().__init__(message)


class BackendUnavailableError(MathBackendError):
    """The backend is not loaded or not installed."""
    pass


class BackendRenderError(MathBackendError):
    """The backend rejected or failed to typeset the source."""
    pass


# =============================================================================
# INTERFACE
# =============================================================================

class MathBackend(ABC):
    """A typesetting engine: source + display mode -> markup."""

    name: str = "backend"
    engine: EngineChoice = EngineChoice.none

    @abstractmethod
    def render(self, source: str, display_mode: bool) -> RenderResult:
        """Render TeX. May return the markup or an awaitable of it; raises on failure."""
        ...

    def render_asciimath(self, source: str, display_mode: bool) -> RenderResult:
        return self.render(asciimath_to_tex(source), display_mode)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class PrimaryBackend(MathBackend):
    """Primary engine with asynchronous readiness."""

    engine = EngineChoice.primary

    def startup(self) -> Optional[Awaitable[Any]]:
        """Awaitable that completes when loading finished, or None if there is none."""
        return None

    @abstractmethod
    def probe(self) -> bool:
        """Is the render entry point present right now?"""
        ...

    def assemble_entry_point(self) -> bool:
        """Rebuild the entry point from lower-level primitives if possible."""
        return self.probe()

    def check_functional(self) -> bool:
        """One trivial render to confirm the entry point actually works."""
        result = self.render("x", False)
        if inspect.isawaitable(result):
            # Cannot be confirmed synchronously; presence has to do
            if inspect.iscoroutine(result):
                result.close()
            return True
        return bool(result)


class FallbackBackend(MathBackend):
    """Synchronous engine that is always ready."""

    engine = EngineChoice.fallback


# =============================================================================
# CHEMISTRY STUB
# =============================================================================

_CE_OPEN = "\\ce{"
_CE_ARROWS = [
    ("<=>", r" \rightleftharpoons "),
    ("<->", r" \leftrightarrow "),
    ("->", r" \rightarrow "),
    ("<-", r" \leftarrow "),
]


def _convert_formula(formula: str) -> str:
    for arrow, tex in _CE_ARROWS:
        formula = formula.replace(arrow, tex)
    # H2O -> H_{2}O, leading coefficients stay as they are
    formula = re.sub(r"(?<=[A-Za-z)\]])(\d+)", r"_{\1}", formula)
    # Charges: Fe^3+ -> Fe^{3+}
    formula = re.sub(r"\^(?!\{)([0-9]*[+-])", r"^{\1}", formula)
    return rf"\mathrm{{{formula.strip()}}}"


def expand_chemistry(tex: str) -> str:
    """
    Lightweight \\ce{...} support: rewrite each formula into plain TeX.

    Covers element subscripts, charges and reaction arrows, which is what
    shows up in notes. Anything fancier renders as upright text.
    """
    out = []
    i = 0
    while True:
        start = tex.find(_CE_OPEN, i)
        if start < 0:
            out.append(tex[i:])
            break
        out.append(tex[i:start])
        depth = 1
        j = start + len(_CE_OPEN)
        while j < len(tex) and depth:
            if tex[j] == "{":
                depth += 1
            elif tex[j] == "}":
                depth -= 1
            j += 1
        if depth:
            raise BackendRenderError("Unbalanced braces in \\ce{...}", tex)
        out.append(_convert_formula(tex[start + len(_CE_OPEN):j - 1]))
        i = j
    return "".join(out)


# =============================================================================
# PRIMARY: latex2mathml
# =============================================================================

class MathMLPrimaryBackend(PrimaryBackend):
    """
    latex2mathml, imported in a worker thread on first startup().

    The module's own convert() is the entry point. When only the
    lower-level convert_to_element() is around, assemble_entry_point()
    rebuilds convert() from it.
    """

    name = "latex2mathml"

    def __init__(self, module_name: str = "latex2mathml.converter"):
        self.module_name = module_name
        self._module = None
        self._startup_task: Optional[asyncio.Future] = None
        # Convenience entry point: (latex, display_mode) -> MathML string
        self.convert: Optional[Callable[[str, bool], str]] = None

    def startup(self) -> Optional[Awaitable[Any]]:
        task = self._startup_task
        # A load interrupted by a closed event loop is started again
        if task is None or task.get_loop().is_closed() or (task.done() and task.cancelled()):
            self._startup_task = asyncio.ensure_future(self._load())
        return self._startup_task

    async def _load(self) -> None:
        logger.debug(f"Loading {self.module_name} in worker thread")
        module = await asyncio.to_thread(importlib.import_module, self.module_name)
        self._module = module
        entry = getattr(module, "convert", None)
        if callable(entry):
            self.convert = self._wrap_convert(entry)
        else:
            self.assemble_entry_point()
        logger.info(f"{self.module_name} loaded (entry point ready: {self.probe()})")

    @staticmethod
    def _wrap_convert(entry: Callable[..., str]) -> Callable[[str, bool], str]:
        def convert(latex: str, display_mode: bool = False) -> str:
            return entry(latex, display="block" if display_mode else "inline")
        return convert

    def probe(self) -> bool:
        return callable(self.convert)

    def assemble_entry_point(self) -> bool:
        if callable(self.convert):
            return True
        module = self._module or sys.modules.get(self.module_name)
        to_element = getattr(module, "convert_to_element", None) if module else None
        if not callable(to_element):
            return False

        def convert(latex: str, display_mode: bool = False) -> str:
            element = to_element(latex, display="block" if display_mode else "inline")
            return unescape(ElementTree.tostring(element, encoding="unicode"))

        self._module = module
        self.convert = convert
        logger.info(f"Rebuilt {self.module_name}.convert from convert_to_element")
        return True

    def render(self, source: str, display_mode: bool) -> str:
        if not self.assemble_entry_point():
            raise BackendUnavailableError(f"{self.module_name} is not loaded", source)
        tex = expand_chemistry(source) if _CE_OPEN in source else source
        try:
            return self.convert(tex, display_mode)
        except Exception as e:
            raise BackendRenderError(f"{type(e).__name__}: {e}", source) from e

    def render_asciimath(self, source: str, display_mode: bool) -> str:
        return self.render(asciimath_to_tex(source), display_mode)


# =============================================================================
# FALLBACK: matplotlib mathtext
# =============================================================================

# Macros the fallback expands itself; mathtext has no \newcommand
FALLBACK_MACROS: Dict[str, str] = {
    "RR": r"\mathbb{R}",
    "CC": r"\mathbb{C}",
    "NN": r"\mathbb{N}",
    "ZZ": r"\mathbb{Z}",
    "QQ": r"\mathbb{Q}",
    "FF": r"\mathbb{F}",
    "d": r"\mathrm{d}",
    "e": r"\mathrm{e}",
    "i": r"\mathrm{i}",
    "Re": r"\mathrm{Re}",
    "Im": r"\mathrm{Im}",
}


def expand_macros(tex: str, macros: Optional[Dict[str, str]] = None) -> str:
    macros = FALLBACK_MACROS if macros is None else macros
    if not macros:
        return tex
    names = "|".join(sorted((re.escape(n) for n in macros), key=len, reverse=True))
    return re.sub(
        rf"\\({names})(?![A-Za-z])",
        lambda m: macros[m.group(1)],
        tex,
    )


@lru_cache(maxsize=512)
def _mathtext_svg(tex: str, fontsize: int) -> bytes:
    # Figure() directly, not pyplot: no global state, safe off the main thread
    from matplotlib.backends.backend_svg import FigureCanvasSVG
    from matplotlib.figure import Figure

    fig = Figure(figsize=(0.01, 0.01))
    fig.patch.set_alpha(0)
    FigureCanvasSVG(fig)
    fig.text(0, 0, f"${tex}$", fontsize=fontsize, math_fontfamily="cm")
    buf = io.BytesIO()
    fig.savefig(buf, format="svg", bbox_inches="tight", pad_inches=0.02, transparent=True)
    return buf.getvalue()


class MathTextFallbackBackend(FallbackBackend):
    """matplotlib mathtext -> inline SVG image."""

    name = "mathtext"

    def __init__(
        self,
        fontsize: int = 16,
        display_fontsize: int = 18,
        macros: Optional[Dict[str, str]] = None,
    ):
        self.fontsize = fontsize
        self.display_fontsize = display_fontsize
        self.macros = dict(FALLBACK_MACROS if macros is None else macros)

    def render(self, source: str, display_mode: bool) -> str:
        tex = expand_macros(source.strip(), self.macros)
        if "\\begin{" in tex:
            rows = split_environment_rows(tex)
            if rows is None:
                raise BackendRenderError("mathtext has no support for this environment", source)
            return "<br>".join(self._image(row, row, True) for row in rows)
        return self._image(tex, source, display_mode)

    def _image(self, tex: str, source: str, display_mode: bool) -> str:
        # mathtext wants a single line
        tex = " ".join(tex.split())
        try:
            svg = _mathtext_svg(tex, self.display_fontsize if display_mode else self.fontsize)
        except Exception as e:
            raise BackendRenderError(f"{type(e).__name__}: {e}", source) from e

        b64 = base64.b64encode(svg).decode("ascii")
        css_class = "math-svg-display" if display_mode else "math-svg-inline"
        return (
            f'<img class="{css_class}" '
            f'src="data:image/svg+xml;base64,{b64}" '
            f'alt="{html.escape(source, quote=True)}">'
        )


# Environments the fallback can fake by stacking one image per row
ROW_ENVIRONMENTS = ("align", "equation", "gather", "multline", "split", "aligned", "gathered", "flalign")
_ROW_ENV_RE = re.compile(
    r"^\\begin\{(%s)(\*?)\}(.*)\\end\{\1\2\}$" % "|".join(ROW_ENVIRONMENTS),
    re.DOTALL,
)


def split_environment_rows(tex: str) -> Optional[List[str]]:
    """Rows of a simple aligned environment with alignment marks removed, or None."""
    m = _ROW_ENV_RE.match(tex.strip())
    if not m or "\\begin{" in m.group(3):
        return None
    body = re.sub(r"\\label\{[^}]*\}|\\nonumber|\\notag", "", m.group(3))
    rows = [row.replace("&", " ").strip() for row in re.split(r"\\\\(?:\[[^\]]*\])?", body)]
    return [row for row in rows if row]


# =============================================================================
# REGISTRY
# =============================================================================

@dataclass
class BackendRegistry:
    """The concrete backends, resolved once at startup and injected."""
    primary: Optional[PrimaryBackend] = None
    fallback: Optional[FallbackBackend] = None

    @classmethod
    def default(cls) -> "BackendRegistry":
        """latex2mathml primary and mathtext fallback, each if installed."""
        primary = None
        fallback = None
        if importlib.util.find_spec("latex2mathml") is not None:
            primary = MathMLPrimaryBackend()
        else:
            logger.warning("latex2mathml not installed: no primary backend")
        if importlib.util.find_spec("matplotlib") is not None:
            fallback = MathTextFallbackBackend()
        else:
            logger.warning("matplotlib not installed: no fallback backend")
        return cls(primary=primary, fallback=fallback)

    def describe(self) -> Dict[str, Optional[str]]:
        return {
            "primary": self.primary.name if self.primary else None,
            "fallback": self.fallback.name if self.fallback else None,
        }
