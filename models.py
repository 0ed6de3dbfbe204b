"""
Data Models for the Math Preview Renderer

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class MathKind(str, Enum):
    """Delimiter class a math region was claimed by."""
    display_math = "display_math"
    inline_math = "inline_math"
    ascii_math = "ascii_math"
    latex_environment = "latex_environment"

    @property
    def display_mode(self) -> bool:
        return self in (MathKind.display_math, MathKind.latex_environment)


class ReadinessState(str, Enum):
    unknown = "unknown"
    pending = "pending"
    ready = "ready"
    timed_out = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (ReadinessState.ready, ReadinessState.timed_out)


class EngineChoice(str, Enum):
    primary = "primary"
    fallback = "fallback"
    none = "none"


class FailureKind(str, Enum):
    """Per-region failure taxonomy. None of these abort a render pass."""
    syntax_ambiguity = "syntax_ambiguity"
    backend_unavailable = "backend_unavailable"
    backend_render_failure = "backend_render_failure"
    restoration_miss = "restoration_miss"
    misclassified_content = "misclassified_content"


class MathRegion(BaseModel):
    """Registry value: one protected math region."""
    key: str = Field(..., description="Unique placeholder key within one pass")
    kind: MathKind
    # Math body without the delimiters that identified its kind
    content: str
    # Verbatim source text of the whole match
    original_match: str
    # Non-math text bundled with an environment match, reinserted as plain text
    leading_residual: str = Field("", description="Text before \\begin{...}")
    trailing_residual: str = Field("", description="Text after the last \\end{...}")
    start: int = Field(0, ge=0)
    end: int = Field(0, ge=0)

    @property
    def display_mode(self) -> bool:
        return self.kind.display_mode


class FallbackUsageRecord(BaseModel):
    """A region rendered by the fallback while the primary was still pending."""
    content: str
    display_mode: bool = False
    kind: Optional[MathKind] = None

    @property
    def effective_kind(self) -> MathKind:
        if self.kind is not None:
            return self.kind
        return MathKind.display_math if self.display_mode else MathKind.inline_math


class RestorationDiagnostic(BaseModel):
    """Snapshot recorded when a region could not be restored normally."""
    key: str
    kind: Optional[MathKind] = None
    failure: FailureKind = FailureKind.restoration_miss
    surrounding_markup: Optional[str] = Field(None, description="First 2000 chars of the tree")
    nearest_node_markup: Optional[str] = Field(None, description="Parent of the nearest node holding the key")
    context_snippet: Optional[str] = None
    recovered: bool = False
    timestamp: float = Field(default_factory=time.time)

    model_config = {"use_enum_values": False}
