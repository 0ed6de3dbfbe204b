"""
Logging Configuration for the Math Preview Renderer

Creates detailed log files for debugging placeholder restoration and
backend selection.

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

# Default log directory
LOG_DIR = Path(__file__).parent / "logs"

LOG_PREFIX = "math_preview_"

# Messages that mark a point on the render timeline
TIMELINE_KEYWORDS = ("rendered", "restored", "recovered", "readiness", "failed", "upgrade")


def setup_logging(level=logging.DEBUG, log_dir: Optional[Path] = None) -> Path:
    """
    Setup logging to both console and a timestamped file.

    Log levels:
    - DEBUG: Per-region tracing (scanner claims, engine choice)
    - INFO: Pass summaries
    - WARNING: Unbalanced delimiters, lost markers, backend fallbacks
    - ERROR: Something failed outside a single region

    Returns the path of the log file.
    """
    log_dir = Path(log_dir) if log_dir else LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{LOG_PREFIX}{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    file_formatter = logging.Formatter(
        '%(asctime)s | %(levelname)-8s | %(name)-30s | %(funcName)-20s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    console_formatter = logging.Formatter(
        '%(levelname)-8s | %(name)-20s | %(message)s'
    )

    # File handler - captures everything
    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(max(level, logging.INFO) if isinstance(level, int) else logging.INFO)
    console_handler.setFormatter(console_formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logging.getLogger("math_preview").setLevel(level)

    # Reduce noise from external libraries
    logging.getLogger("matplotlib").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("MARKDOWN").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logger = logging.getLogger("math_preview.logging")
    logger.info("=" * 60)
    logger.info("Math Preview Logging Started")
    logger.info(f"Log file: {log_file}")
    logger.info("=" * 60)

    return log_file


def get_latest_log(log_dir: Optional[Path] = None) -> Optional[Path]:
    """Returns the path to the most recent log file."""
    log_dir = Path(log_dir) if log_dir else LOG_DIR
    logs = sorted(log_dir.glob(f"{LOG_PREFIX}*.log"), reverse=True)
    return logs[0] if logs else None


def analyze_log(log_path: Optional[Path] = None, log_dir: Optional[Path] = None) -> dict:
    """
    Analyze a log file and return summary statistics.

    Returns dict with:
    - errors / warnings: lists of {time, module, message}
    - restoration_misses: warnings about lost placeholders
    - fallbacks: messages about fallback rendering
    - timeline: list of {time, event} for pass milestones
    """
    if log_path is None:
        log_path = get_latest_log(log_dir)

    if not log_path or not Path(log_path).exists():
        return {"error": "No log file found"}

    errors = []
    warnings = []
    restoration_misses = 0
    fallbacks = 0
    timeline = []

    with open(log_path, 'r', encoding='utf-8') as f:
        for line in f:
            parts = line.split(' | ')
            if len(parts) < 4:
                continue
            timestamp = parts[0].strip()
            level = parts[1].strip()
            module = parts[2].strip()
            message = ' | '.join(parts[4:] if len(parts) > 4 else parts[3:]).strip()

            if level == "ERROR":
                errors.append({"time": timestamp, "module": module, "message": message})
            elif level == "WARNING":
                warnings.append({"time": timestamp, "module": module, "message": message})

            lowered = message.lower()
            if "placeholder" in lowered and "not found" in lowered:
                restoration_misses += 1
            if "fallback" in lowered:
                fallbacks += 1

            # Pass milestones
            if any(kw in lowered for kw in TIMELINE_KEYWORDS):
                timeline.append({"time": timestamp, "event": message[:100]})

    return {
        "log_file": str(log_path),
        "errors": errors,
        "warnings": warnings,
        "timeline": timeline,
        "error_count": len(errors),
        "warning_count": len(warnings),
        "restoration_misses": restoration_misses,
        "fallbacks": fallbacks,
        "timeline_count": len(timeline),
    }
