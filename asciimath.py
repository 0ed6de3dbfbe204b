"""
AsciiMath to TeX

Small recursive-descent translator for the AsciiMath subset people type
between backticks: operators, greek letters, functions, sqrt/frac/root,
sub- and superscripts, a/b fractions and bracket groups.

    asciimath_to_tex("x = (-b +- sqrt(b^2 - 4ac))/(2a)")
    -> 'x = \\frac{- b \\pm \\sqrt{b^{2} - 4 a c}}{2 a}'

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import re
from typing import List, Optional, Tuple

# =============================================================================
# SYMBOL TABLES
# =============================================================================

GREEK = [
    "alpha", "beta", "gamma", "delta", "epsilon", "varepsilon", "zeta", "eta",
    "theta", "vartheta", "iota", "kappa", "lambda", "mu", "nu", "xi", "pi",
    "rho", "sigma", "tau", "upsilon", "phi", "varphi", "chi", "psi", "omega",
    "Gamma", "Delta", "Theta", "Lambda", "Xi", "Pi", "Sigma", "Phi", "Psi", "Omega",
]

FUNCTIONS = [
    "sin", "cos", "tan", "cot", "sec", "csc", "sinh", "cosh", "tanh",
    "arcsin", "arccos", "arctan", "log", "ln", "exp", "det", "dim",
    "gcd", "min", "max", "lim",
]

SYMBOLS = {
    "+-": r"\pm", "-+": r"\mp", "xx": r"\times", "-:": r"\div",
    "***": r"\star", "**": r"\ast", "*": r"\cdot", "//": "/",
    "<=>": r"\Leftrightarrow", "=>": r"\Rightarrow", "->": r"\to", "|->": r"\mapsto",
    "<=": r"\le", ">=": r"\ge", "!=": r"\ne", "~~": r"\approx", "~=": r"\cong",
    "-=": r"\equiv", "o+": r"\oplus", "ox": r"\otimes", "o.": r"\odot",
    "sum": r"\sum", "prod": r"\prod", "int": r"\int", "oint": r"\oint",
    "oo": r"\infty", "del": r"\partial", "grad": r"\nabla", "AA": r"\forall",
    "EE": r"\exists", "in": r"\in", "!in": r"\notin", "sub": r"\subset",
    "sup": r"\supset", "uu": r"\cup", "nn": r"\cap", "and": r"\wedge",
    "or": r"\vee", "not": r"\neg", "...": r"\ldots", "cdots": r"\cdots",
    "RR": r"\mathbb{R}", "NN": r"\mathbb{N}", "ZZ": r"\mathbb{Z}",
    "QQ": r"\mathbb{Q}", "CC": r"\mathbb{C}",
}
SYMBOLS.update({name: "\\" + name for name in GREEK})
SYMBOLS.update({name: "\\" + name for name in FUNCTIONS})

UNARY = {
    "sqrt": r"\sqrt{{{0}}}",
    "abs": r"\left|{0}\right|",
    "hat": r"\hat{{{0}}}",
    "bar": r"\overline{{{0}}}",
    "vec": r"\vec{{{0}}}",
    "dot": r"\dot{{{0}}}",
    "ddot": r"\ddot{{{0}}}",
    "bb": r"\mathbf{{{0}}}",
    "text": r"\text{{{0}}}",
}

BINARY = {
    "frac": r"\frac{{{0}}}{{{1}}}",
    "root": r"\sqrt[{0}]{{{1}}}",
}

LEFT_BRACKETS = {"(": "(", "[": "[", "{": r"\{", "(:": r"\langle", "<<": r"\langle"}
RIGHT_BRACKETS = {")": ")", "]": "]", "}": r"\}", ":)": r"\rangle", ">>": r"\rangle"}

# Longest first so "<=>" wins over "<=" and "sinh" over "sin"
_TOKENS = sorted(
    list(SYMBOLS) + list(UNARY) + list(BINARY) + list(LEFT_BRACKETS)
    + list(RIGHT_BRACKETS) + ["/", "_", "^"],
    key=len,
    reverse=True,
)
_NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
_TEXT_RE = re.compile(r'"([^"]*)"')


# =============================================================================
# TOKENIZER
# =============================================================================

def tokenize(source: str) -> List[str]:
    tokens = []
    i = 0
    while i < len(source):
        ch = source[i]
        if ch.isspace():
            i += 1
            continue
        quoted = _TEXT_RE.match(source, i)
        if quoted:
            tokens.append(quoted.group(0))
            i = quoted.end()
            continue
        number = _NUMBER_RE.match(source, i)
        if number:
            tokens.append(number.group(0))
            i = number.end()
            continue
        for token in _TOKENS:
            if source.startswith(token, i):
                tokens.append(token)
                i += len(token)
                break
        else:
            tokens.append(ch)
            i += 1
    return tokens


# =============================================================================
# PARSER
# =============================================================================

class _Parser:
    """
    E ::= I E | I/I E
    I ::= S | S_S | S^S | S_S^S
    S ::= symbol | (E) | unary S | binary S S
    """

    def __init__(self, tokens: List[str]):
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Optional[str]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> str:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def parse(self) -> str:
        parts = []
        while self.peek() is not None:
            parts.append(self.expression())
            # Unmatched closing bracket at top level
            if self.peek() in RIGHT_BRACKETS:
                parts.append(RIGHT_BRACKETS[self.take()])
        return " ".join(p for p in parts if p)

    def expression(self) -> str:
        parts = []
        while self.peek() is not None and self.peek() not in RIGHT_BRACKETS:
            tex, inner = self.intermediate()
            if self.peek() == "/":
                self.take()
                denominator, denominator_inner = self.intermediate()
                tex = r"\frac{%s}{%s}" % (inner or tex, denominator_inner or denominator)
            parts.append(tex)
        return " ".join(parts)

    def intermediate(self) -> Tuple[str, Optional[str]]:
        tex, inner = self.simple()
        scripted = False
        for script in ("_", "^"):
            if self.peek() == script:
                self.take()
                arg, arg_inner = self.simple()
                tex = f"{tex}{script}{{{arg_inner or arg}}}"
                scripted = True
        return tex, None if scripted else inner

    def simple(self) -> Tuple[str, Optional[str]]:
        """Returns (tex, inner) where inner is the group body for bracketed groups."""
        token = self.peek()
        if token is None:
            return "", None
        self.take()

        if token in LEFT_BRACKETS:
            inner = self.expression()
            right = ""
            if self.peek() in RIGHT_BRACKETS:
                right = RIGHT_BRACKETS[self.take()]
            if right:
                return rf"\left{LEFT_BRACKETS[token]} {inner} \right{right}", inner
            return f"{LEFT_BRACKETS[token]}{inner}", inner

        if token in UNARY:
            if token == "text" and self.peek() and self.peek().startswith('"'):
                return UNARY[token].format(self.take()[1:-1]), None
            arg, arg_inner = self.simple()
            return UNARY[token].format(arg_inner or arg), None

        if token in BINARY:
            first, first_inner = self.simple()
            second, second_inner = self.simple()
            return BINARY[token].format(first_inner or first, second_inner or second), None

        if token.startswith('"'):
            return rf"\text{{{token[1:-1]}}}", None

        if token in SYMBOLS:
            return SYMBOLS[token], None

        if token in ("_", "^", "/"):
            return token, None
        if token in ("%", "#", "&", "$"):
            return "\\" + token, None
        return token, None


def asciimath_to_tex(source: str) -> str:
    """Translate an AsciiMath expression to TeX."""
    return _Parser(tokenize(source)).parse()
