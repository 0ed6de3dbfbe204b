"""
Unit Tests - Settings, Logging and CLI

Run with: pytest tests/test_config_logging.py -v

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
import json
import logging
import pytest
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import RenderSettings
from models import FallbackUsageRecord, MathKind, ReadinessState


# =============================================================================
# SETTINGS
# =============================================================================

class TestSettings:
    """RenderSettings defaults, validation and environment overrides."""

    def test_defaults(self):
        settings = RenderSettings()

        assert settings.readiness_timeout == 3.0
        assert settings.poll_interval == 0.05
        assert settings.preferred_engine == "primary"
        assert settings.recovery_window == 4

    def test_from_env(self):
        settings = RenderSettings.from_env({
            "MATH_PREVIEW_READINESS_TIMEOUT": "2.5",
            "MATH_PREVIEW_ENGINE": "Fallback",
            "MATH_PREVIEW_RECOVERY_WINDOW": "6",
            "MATH_PREVIEW_LOG_LEVEL": "debug",
        })

        assert settings.readiness_timeout == 2.5
        assert settings.preferred_engine == "fallback"
        assert settings.recovery_window == 6
        assert settings.log_level == "DEBUG"

    def test_blank_values_ignored(self):
        settings = RenderSettings.from_env({"MATH_PREVIEW_READINESS_TIMEOUT": "  "})
        assert settings.readiness_timeout == 3.0

    def test_overrides_beat_environment(self):
        settings = RenderSettings.from_env({"MATH_PREVIEW_ENGINE": "fallback"}, preferred_engine="primary")
        assert settings.preferred_engine == "primary"

    def test_log_dir_becomes_path(self, tmp_path):
        settings = RenderSettings.from_env({"MATH_PREVIEW_LOG_DIR": str(tmp_path)})
        assert settings.log_dir == tmp_path

    @pytest.mark.parametrize("kwargs", [
        {"readiness_timeout": 0},
        {"poll_interval": 0},
        {"readiness_timeout": 1.0, "poll_interval": 2.0},
        {"preferred_engine": "gpu"},
        {"recovery_window": 0},
        {"repair_min_tail": 10, "repair_max_tail": 10},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RenderSettings(**kwargs)


# =============================================================================
# MODELS
# =============================================================================

class TestModels:
    """Small behaviours on the pydantic models."""

    def test_display_mode(self):
        assert MathKind.display_math.display_mode
        assert MathKind.latex_environment.display_mode
        assert not MathKind.inline_math.display_mode
        assert not MathKind.ascii_math.display_mode

    def test_terminal_states(self):
        assert ReadinessState.ready.is_terminal
        assert ReadinessState.timed_out.is_terminal
        assert not ReadinessState.pending.is_terminal

    def test_effective_kind(self):
        assert FallbackUsageRecord(content="x", display_mode=True).effective_kind == MathKind.display_math
        assert FallbackUsageRecord(content="x").effective_kind == MathKind.inline_math
        record = FallbackUsageRecord(content="x", kind=MathKind.ascii_math)
        assert record.effective_kind == MathKind.ascii_math


# =============================================================================
# LOGGING
# =============================================================================

class TestLogging:
    """Log file setup and analysis."""

    def test_setup_and_analyze(self, tmp_path, restore_root_logging):
        from logging_config import analyze_log, get_latest_log, setup_logging

        log_file = setup_logging(logging.DEBUG, log_dir=tmp_path)
        logger = logging.getLogger("math_preview.test")
        logger.warning("Math placeholder MATH-abcdef-0 not found in output tree (inline_math)")
        logger.warning("Primary render failed, retrying with fallback: boom")
        logger.info("Rendered 12 chars: 1 regions, 0 recovered, readiness pending (0.010s)")
        logger.error("Render pass failed: RuntimeError: boom")

        assert log_file.exists()
        assert get_latest_log(tmp_path) == log_file

        summary = analyze_log(log_dir=tmp_path)
        assert summary["log_file"] == str(log_file)
        assert summary["warning_count"] == 2
        assert summary["error_count"] == 1
        assert summary["restoration_misses"] == 1
        assert summary["fallbacks"] == 1
        assert summary["errors"][0]["module"] == "math_preview.test"
        assert summary["timeline_count"] == 3
        assert summary["timeline"][0]["event"].startswith("Primary render failed")
        assert summary["timeline"][-1]["event"].startswith("Render pass failed")

    def test_no_log(self, tmp_path):
        from logging_config import analyze_log

        assert analyze_log(log_dir=tmp_path) == {"error": "No log file found"}


# =============================================================================
# CLI
# =============================================================================

class TestCli:
    """Command line entry points."""

    def test_help(self, capsys):
        from cli import main

        assert main([]) == 0
        assert "Math Preview Renderer" in capsys.readouterr().out

    def test_scan(self, tmp_path, capsys):
        from cli import main

        source = tmp_path / "notes.md"
        source.write_text("Inline $x^2$ and \\(y\\).\n", encoding="utf-8")

        assert main(["scan", str(source), "--roundtrip"]) == 0
        captured = capsys.readouterr()
        regions = [json.loads(line) for line in captured.out.splitlines()]

        assert [r["content"] for r in regions] == ["x^2", "y"]
        assert regions[0]["kind"] == "inline_math"
        assert "round-trip" in captured.err

    def test_missing_file(self, tmp_path, capsys):
        from cli import main

        assert main(["scan", str(tmp_path / "nope.md")]) == 1
        assert "File not found" in capsys.readouterr().err

    def test_logs_without_file(self, tmp_path, capsys):
        from cli import main

        assert main(["logs", "--log-dir", str(tmp_path)]) == 1
        assert "No log file found" in capsys.readouterr().out

    def test_render_with_fallback(self, tmp_path, monkeypatch, capsys, restore_root_logging):
        pytest.importorskip("matplotlib")
        from cli import main

        monkeypatch.setenv("MATH_PREVIEW_LOG_DIR", str(tmp_path / "logs"))
        monkeypatch.setenv("MATH_PREVIEW_READINESS_TIMEOUT", "10")
        source = tmp_path / "notes.md"
        output = tmp_path / "notes.html"
        source.write_text("Inline $x^2$ here.\n", encoding="utf-8")

        assert main(["render", str(source), "-o", str(output), "--engine", "fallback"]) == 0
        html = output.read_text(encoding="utf-8")

        assert "math-svg-inline" in html
        assert "[OK] Wrote" in capsys.readouterr().out
        assert list((tmp_path / "logs").glob("math_preview_*.log"))
