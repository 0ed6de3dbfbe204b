"""
Render Context - process-wide state of the math preview

One RenderContext is created per process (or per test) and handed to every
component: resolved backends, readiness tracker, settings, the queue of
fallback renders waiting for an upgrade and the restoration diagnostics.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import logging
from typing import List, Optional

from backends import BackendRegistry
from config import ENGINES, RenderSettings
from models import FallbackUsageRecord, MathKind, RestorationDiagnostic
from readiness import BackendReadinessTracker

logger = logging.getLogger("math_preview.context")


class RenderContext:
    """Explicit replacement for module-level render state."""

    def __init__(
        self,
        backends: Optional[BackendRegistry] = None,
        settings: Optional[RenderSettings] = None,
    ):
        self.settings = settings or RenderSettings()
        self.backends = backends if backends is not None else BackendRegistry.default()
        self.tracker = BackendReadinessTracker(self.backends.primary, self.settings)
        self.preferred_engine = self.settings.preferred_engine
        self.fallback_usage: List[FallbackUsageRecord] = []
        self.diagnostics: List[RestorationDiagnostic] = []

        logger.debug(f"RenderContext created: {self.backends.describe()}")

    def set_engine(self, engine: str) -> None:
        """Prefer 'primary' or 'fallback' for regions that do not force one."""
        engine = engine.lower()
        if engine not in ENGINES:
            raise ValueError(f"Unknown math engine {engine!r}, expected one of {ENGINES}")
        self.preferred_engine = engine
        logger.info(f"Preferred math engine: {engine}")

    # =========================================================================
    # FALLBACK USAGE
    # =========================================================================

    def record_fallback_usage(self, content: str, kind: MathKind) -> None:
        self.fallback_usage.append(FallbackUsageRecord(
            content=content,
            display_mode=kind.display_mode,
            kind=kind,
        ))

    def take_fallback_usage(self) -> List[FallbackUsageRecord]:
        """Hand out the queued records; each one is consumed exactly once."""
        records, self.fallback_usage = self.fallback_usage, []
        return records

    # =========================================================================
    # DIAGNOSTICS
    # =========================================================================

    def record_diagnostic(self, diagnostic: RestorationDiagnostic) -> None:
        self.diagnostics.append(diagnostic)
        overflow = len(self.diagnostics) - self.settings.max_diagnostics
        if overflow > 0:
            del self.diagnostics[:overflow]
