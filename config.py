"""
Render Settings - tunables for math protection and rendering

Defaults mirror what the preview has always shipped with; every value can be
overridden through MATH_PREVIEW_* environment variables.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

ENV_PREFIX = "MATH_PREVIEW_"

ENGINES = ("primary", "fallback")


@dataclass
class RenderSettings:
    """Configuration for one RenderContext."""
    # Readiness tracking of the primary backend
    readiness_timeout: float = 3.0
    poll_interval: float = 0.05

    # Which backend to prefer once both are usable
    preferred_engine: str = "primary"

    # Unbalanced $$ repair: trailing content length bounds (exclusive)
    repair_min_tail: int = 5
    repair_max_tail: int = 500

    # Recovery scanner sliding window (adjacent text leaves)
    recovery_window: int = 4

    # Offending source shown in an error annotation
    error_snippet_length: int = 100

    max_diagnostics: int = 200

    markdown_extensions: List[str] = field(
        default_factory=lambda: ["fenced_code", "tables"]
    )

    log_dir: Optional[Path] = None
    log_level: str = "INFO"

    def __post_init__(self):
        if self.readiness_timeout <= 0:
            raise ValueError(f"readiness_timeout must be positive, got {self.readiness_timeout}")
        if self.poll_interval <= 0 or self.poll_interval > self.readiness_timeout:
            raise ValueError(
                f"poll_interval must be in (0, readiness_timeout], got {self.poll_interval}"
            )
        if self.preferred_engine not in ENGINES:
            raise ValueError(f"preferred_engine must be one of {ENGINES}, got {self.preferred_engine!r}")
        if self.recovery_window < 1:
            raise ValueError("recovery_window must be at least 1")
        if self.repair_min_tail >= self.repair_max_tail:
            raise ValueError("repair_min_tail must be smaller than repair_max_tail")
        if self.log_dir is not None:
            self.log_dir = Path(self.log_dir)

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **overrides) -> "RenderSettings":
        """Build settings from MATH_PREVIEW_* variables, then apply overrides."""
        env = os.environ if environ is None else environ
        values = {}

        def _get(name: str) -> Optional[str]:
            raw = env.get(ENV_PREFIX + name)
            return raw.strip() if raw and raw.strip() else None

        converters = {
            "READINESS_TIMEOUT": ("readiness_timeout", float),
            "POLL_INTERVAL": ("poll_interval", float),
            "ENGINE": ("preferred_engine", str.lower),
            "RECOVERY_WINDOW": ("recovery_window", int),
            "LOG_DIR": ("log_dir", Path),
            "LOG_LEVEL": ("log_level", str.upper),
        }
        for name, (attr, convert) in converters.items():
            raw = _get(name)
            if raw is not None:
                values[attr] = convert(raw)

        values.update(overrides)
        return cls(**values)
