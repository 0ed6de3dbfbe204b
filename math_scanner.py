"""
Math Scanner - find math regions in raw markup before it is transformed

Math must be pulled out of the text BEFORE the markup transform runs:
the transform happily eats backslashes, underscores and asterisks, which
is exactly what TeX is made of.

Delimiter classes are scanned in a fixed priority, each one by a small
two-state machine (SEEK_OPEN -> IN_BODY). Spans claimed by an earlier class
are masked so later classes never claim inside them:

0. fenced code blocks (masked, never math)
1. \\[ ... \\]      display math
2. `...`            AsciiMath (heuristically validated, otherwise inline code)
3. $$ ... $$        display math, with \\begin{...} environment splitting
4. \\( ... \\)      inline math
5. $ ... $          inline math (prices, URLs, calls rejected)

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Tuple

from models import MathKind

logger = logging.getLogger("math_preview.scanner")

# Private-use character used to blank out claimed spans. Offsets stay valid.
MASK_CHAR = "\ue000"

SEEK_OPEN = "seek_open"
IN_BODY = "in_body"

Guard = Callable[[str, int], bool]


# =============================================================================
# MATCH TYPES
# =============================================================================

@dataclass
class MathMatch:
    """One accepted math region, offsets into the scanned text."""
    kind: MathKind
    start: int
    end: int
    content: str
    original_match: str
    leading_residual: str = ""
    trailing_residual: str = ""


@dataclass
class ScanResult:
    """Result of a full scan."""
    text: str
    matches: List[MathMatch] = field(default_factory=list)
    repaired: bool = False
    # Offset of a $$ left unclosed after repair, None when balanced
    unclosed_at: Optional[int] = None

    def contents(self) -> List[str]:
        return [m.content for m in self.matches]


# =============================================================================
# STATE MACHINE
# =============================================================================

def _scan_pairs(
    text: str,
    opener: str,
    closer: str,
    multiline: bool = True,
    open_ok: Optional[Guard] = None,
    close_ok: Optional[Guard] = None,
    escapes: bool = True,
) -> Iterator[Tuple[int, int]]:
    """
    Yield (start, end) of every opener..closer pair, delimiters included.

    A body never crosses a masked span. A closer that fails its guard, a
    forbidden newline or the end of text abandons the opener and scanning
    resumes one character after it.
    """
    state = SEEK_OPEN
    n = len(text)
    i = 0
    start = -1

    while True:
        if i >= n:
            if state == IN_BODY:
                state = SEEK_OPEN
                i = start + 1
                continue
            break

        ch = text[i]

        if state == SEEK_OPEN:
            if text.startswith(opener, i) and (open_ok is None or open_ok(text, i)):
                state = IN_BODY
                start = i
                i += len(opener)
                continue
            if escapes and ch == "\\" and not opener.startswith("\\"):
                i += 2
                continue
            i += 1
            continue

        # IN_BODY
        if ch == MASK_CHAR or (not multiline and ch in "\r\n"):
            state = SEEK_OPEN
            i = start + 1
            continue
        if text.startswith(closer, i):
            if close_ok is None or close_ok(text, i):
                yield start, i + len(closer)
                state = SEEK_OPEN
                i += len(closer)
            else:
                state = SEEK_OPEN
                i = start + 1
            continue
        if escapes and ch == "\\" and not closer.startswith("\\"):
            i += 2
            continue
        i += 1


def _prev_char(text: str, i: int) -> str:
    return text[i - 1] if i > 0 else ""


def _next_char(text: str, i: int) -> str:
    return text[i] if i < len(text) else ""


def _mask(text: str, spans: List[Tuple[int, int]]) -> str:
    if not spans:
        return text
    chars = list(text)
    for start, end in spans:
        for j in range(start, end):
            if chars[j] not in "\r\n":
                chars[j] = MASK_CHAR
    return "".join(chars)


# =============================================================================
# FENCED CODE
# =============================================================================

_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")


def mask_code_fences(text: str) -> List[Tuple[int, int]]:
    """Spans of fenced code blocks (``` or ~~~), unclosed fences run to the end."""
    spans = []
    offset = 0
    fence = None
    fence_start = 0

    for line in text.splitlines(keepends=True):
        m = _FENCE_RE.match(line)
        if fence is None:
            if m:
                fence = m.group(1)
                fence_start = offset
        elif m and m.group(1)[0] == fence[0] and len(m.group(1)) >= len(fence) \
                and not line.strip()[len(m.group(1)):].strip():
            spans.append((fence_start, offset + len(line.rstrip("\r\n"))))
            fence = None
        offset += len(line)

    if fence is not None:
        spans.append((fence_start, len(text)))
    return spans


# =============================================================================
# CLASS 1: \[ ... \]
# =============================================================================

def scan_bracket_display(text: str) -> List[MathMatch]:
    """Bracket-delimited display math. \\\\[2pt] (a line break) never opens."""
    matches = []
    for start, end in _scan_pairs(
        text, "\\[", "\\]",
        open_ok=lambda t, i: _prev_char(t, i) != "\\",
    ):
        inner = text[start + 2:end - 2].strip()
        if not inner:
            continue
        matches.append(MathMatch(
            kind=MathKind.display_math,
            start=start, end=end,
            content=inner,
            original_match=text[start:end],
        ))
    return matches


# =============================================================================
# CLASS 2: `AsciiMath`
# =============================================================================

ASCIIMATH_HINT_RE = re.compile(
    r"[+\-*/^=<>]|\b(?:sqrt|frac|sum|int|lim|sin|cos|tan|log|exp|alpha|beta|gamma|theta|pi)\b"
)
CODE_KEYWORD_RE = re.compile(
    r"\b(?:function|const|let|var|return|if|for|while|class|import|export|def)\b"
)


def looks_like_asciimath(inner: str) -> bool:
    """Operators or math names present, code keywords absent."""
    inner = inner.strip()
    if not inner:
        return False
    if not ASCIIMATH_HINT_RE.search(inner):
        return False
    if CODE_KEYWORD_RE.search(inner):
        return False
    # Calls and member access read as code: foo.bar(), obj->x
    if re.search(r"[A-Za-z_]\w*\.\w+\s*\(|;\s*$|==|&&|\|\|", inner):
        return False
    return True


def _backtick_spans(text: str) -> List[Tuple[int, int]]:
    return list(_scan_pairs(
        text, "`", "`",
        multiline=False,
        open_ok=lambda t, i: _prev_char(t, i) != "`" and _next_char(t, i + 1) != "`",
        close_ok=lambda t, i: _next_char(t, i + 1) != "`",
        escapes=False,
    ))


def scan_backtick_math(text: str) -> List[MathMatch]:
    """Backtick-delimited AsciiMath that does not look like inline code."""
    matches = []
    for start, end in _backtick_spans(text):
        inner = text[start + 1:end - 1]
        if not looks_like_asciimath(inner):
            continue
        matches.append(MathMatch(
            kind=MathKind.ascii_math,
            start=start, end=end,
            content=inner.strip(),
            original_match=text[start:end],
        ))
    return matches


# =============================================================================
# CLASS 3: $$ ... $$
# =============================================================================

BEGIN_RE = re.compile(r"\\begin\{[^}]+\}")
END_RE = re.compile(r"\\end\{[^}]+\}")


def split_environment(inner: str) -> Tuple[str, str, str]:
    """
    Split bundled prose away from a math environment.

    Returns (leading_residual, environment, trailing_residual).
    """
    begin = BEGIN_RE.search(inner)
    if not begin:
        return "", inner, ""
    leading = inner[:begin.start()].strip()
    body = inner[begin.start():]

    ends = list(END_RE.finditer(body))
    trailing = ""
    if ends:
        last_end = ends[-1].end()
        trailing = body[last_end:].strip()
        body = body[:last_end]
    return leading, body.strip(), trailing


def scan_dollar_display(text: str) -> List[MathMatch]:
    """Dollar-delimited display math; environments get their residuals split out."""
    matches = []
    for start, end in _scan_pairs(
        text, "$$", "$$",
        open_ok=lambda t, i: i == 0 or t[i - 1].isspace() or t[i - 1] == MASK_CHAR,
        close_ok=lambda t, i: i + 2 >= len(t) or t[i + 2].isspace(),
    ):
        inner = text[start + 2:end - 2].strip()
        if not inner:
            continue

        kind = MathKind.display_math
        leading = trailing = ""
        content = inner
        if BEGIN_RE.search(inner):
            kind = MathKind.latex_environment
            leading, content, trailing = split_environment(inner)

        if MARKUP_CONTAMINATION_RE.search(inner):
            logger.warning(f"Display math at {start} contains markup syntax: {inner[:100]!r}")

        matches.append(MathMatch(
            kind=kind,
            start=start, end=end,
            content=content,
            original_match=text[start:end],
            leading_residual=leading,
            trailing_residual=trailing,
        ))
    return matches


# =============================================================================
# CLASS 4: \( ... \)
# =============================================================================

def scan_paren_inline(text: str) -> List[MathMatch]:
    """Parenthesis-delimited inline math on a single line."""
    matches = []
    for start, end in _scan_pairs(
        text, "\\(", "\\)",
        multiline=False,
        open_ok=lambda t, i: _prev_char(t, i) != "\\",
    ):
        inner = text[start + 2:end - 2].strip()
        if not inner:
            continue
        matches.append(MathMatch(
            kind=MathKind.inline_math,
            start=start, end=end,
            content=inner,
            original_match=text[start:end],
        ))
    return matches


# =============================================================================
# CLASS 5: $ ... $
# =============================================================================

MATH_CHAR_RE = re.compile(r"[a-zA-Z\\{}^_]")
FUNCTION_CALL_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_.]*\s*\(.*\)$")
PUNCTUATION_ONLY_RE = re.compile(r"^[\s.,!?;:()\-]+$")
# "$5 and $" - an amount followed by prose
PRICE_RE = re.compile(r"^\d[\d,]*(?:\.\d+)?(?:\s+[A-Za-z]{2,}|\s*$)")


def looks_like_inline_math(inner: str) -> bool:
    """Reject prices, URLs, function calls and bodies with nothing math-like."""
    stripped = inner.strip()
    if not stripped:
        return False
    if re.search(r"\s{2,}", inner):
        return False
    if "http" in inner:
        return False
    if PUNCTUATION_ONLY_RE.match(inner):
        return False
    if FUNCTION_CALL_RE.match(stripped):
        return False
    if PRICE_RE.match(stripped):
        return False
    if "**" in inner or "`" in inner:
        return False
    return bool(MATH_CHAR_RE.search(inner))


def scan_dollar_inline(text: str) -> List[MathMatch]:
    """Single-dollar inline math."""
    matches = []
    for start, end in _scan_pairs(
        text, "$", "$",
        multiline=False,
        open_ok=lambda t, i: _prev_char(t, i) not in ("\\", "$") and _next_char(t, i + 1) != "$",
        close_ok=lambda t, i: not re.match(r"[\\$0-9]", _next_char(t, i + 1)),
    ):
        inner = text[start + 1:end - 1]
        if not looks_like_inline_math(inner):
            logger.debug(f"Rejected inline dollar span {text[start:end]!r}")
            continue
        matches.append(MathMatch(
            kind=MathKind.inline_math,
            start=start, end=end,
            content=inner.strip(),
            original_match=text[start:end],
        ))
    return matches


# =============================================================================
# UNBALANCED DISPLAY REPAIR
# =============================================================================

TAIL_MATH_RE = re.compile(r"\\[a-zA-Z]+|[a-zA-Z]_\{|[a-zA-Z]\^|\{.*\}")
MARKUP_STRUCTURE_RE = re.compile(r"^\s*#+\s|^\s*[-*]\s|\[.*\]\(|^---", re.MULTILINE)
MARKUP_CONTAMINATION_RE = re.compile(r"\*\*|##|\]\(|```|\n\s*#+\s|\n\s*[-*]\s")
DISPLAY_DELIMITER_RE = re.compile(r"(?<!\\)\$\$")


def _dangling_display(text: str) -> Optional[re.Match]:
    """The last $$ outside code when the $$ count is odd."""
    view = _mask(text, mask_code_fences(text))
    delimiters = list(DISPLAY_DELIMITER_RE.finditer(view))
    if len(delimiters) % 2 == 0:
        return None
    return delimiters[-1]


def repair_unbalanced_display(
    text: str,
    min_tail: int = 5,
    max_tail: int = 500,
) -> Tuple[str, bool]:
    """
    Close a dangling $$ only when what follows it is short and clearly math.

    Returns (text, repaired). Anything else is left unclosed so it shows up
    as literal text instead of swallowing the rest of the document.
    """
    last = _dangling_display(text)
    if last is None:
        return text, False

    tail = text[last.end():]
    tail_len = len(tail.strip())
    looks_like_math = bool(TAIL_MATH_RE.search(tail))
    has_markup = bool(MARKUP_STRUCTURE_RE.search(tail))

    if looks_like_math and not has_markup and min_tail < tail_len < max_tail:
        logger.warning(f"Unclosed $$ at {last.start()}: appending closing delimiter")
        return text + "\n$$", True

    logger.warning(
        f"Unclosed $$ at {last.start()} left as-is "
        f"(math-like={looks_like_math}, markup={has_markup}, tail={tail_len} chars)"
    )
    return text, False


# =============================================================================
# FULL SCAN
# =============================================================================

def scan_math_regions(
    text: str,
    repair: bool = True,
    min_tail: int = 5,
    max_tail: int = 500,
) -> ScanResult:
    """
    Run every delimiter class in priority order.

    Returns the scanned (possibly repaired) text and the non-overlapping
    matches sorted by position.
    """
    repaired = False
    if repair:
        text, repaired = repair_unbalanced_display(text, min_tail, max_tail)

    view = _mask(text, mask_code_fences(text))
    found: List[MathMatch] = []

    def claim(matches: List[MathMatch]) -> None:
        nonlocal view
        found.extend(matches)
        view = _mask(view, [(m.start, m.end) for m in matches])

    claim(scan_bracket_display(view))

    ascii_matches = scan_backtick_math(view)
    claim(ascii_matches)
    # Remaining backtick spans are inline code: nothing inside them is math
    view = _mask(view, _backtick_spans(view))

    claim(scan_dollar_display(view))
    claim(scan_paren_inline(view))
    claim(scan_dollar_inline(view))

    found.sort(key=lambda m: m.start)
    dangling = _dangling_display(text)
    logger.debug(f"Scanned {len(text)} chars: {len(found)} math regions")
    return ScanResult(
        text=text,
        matches=found,
        repaired=repaired,
        unclosed_at=dangling.start() if dangling is not None else None,
    )
