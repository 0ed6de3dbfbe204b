#!/usr/bin/env python3
"""
Math Preview CLI - Command Line Interface

Usage:
    python cli.py render notes.md -o notes.html
    python cli.py render - --engine fallback < notes.md
    python cli.py scan notes.md
    python cli.py logs

© 2025 Sven Kalinowski with small help of Lino Casu
Licensed under the Anti-Capitalist Software License v1.4
"""
import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional


def print_banner():
    """Print CLI banner."""
    try:
        print("""
+-----------------------------------------------------------+
|              Math Preview Renderer - CLI                  |
|     Markdown with LaTeX math, two rendering engines       |
+-----------------------------------------------------------+
""")
    except UnicodeEncodeError:
        print("\n=== Math Preview Renderer - CLI ===\n")


def read_input(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8")


def _settings(args):
    from config import RenderSettings

    overrides = {}
    if getattr(args, "engine", None):
        overrides["preferred_engine"] = args.engine
    return RenderSettings.from_env(**overrides)


# =============================================================================
# RENDER COMMAND
# =============================================================================

async def _render(text: str, settings, wait_ready: bool):
    from pipeline import MathRenderPipeline
    from render_context import RenderContext

    ctx = RenderContext(settings=settings)
    pipeline = MathRenderPipeline(ctx)
    if wait_ready:
        await ctx.tracker.wait_ready()
    html = await pipeline.render_html(text)
    # Upgrades patch the published tree in place
    await pipeline.scheduler.drain()
    if pipeline.scheduler.upgraded:
        html = pipeline.target.html()
    return html, pipeline


def cmd_render(args):
    """Render a markdown document with math to HTML."""
    if args.input != "-" and not Path(args.input).exists():
        print(f"[ERROR] File not found: {args.input}", file=sys.stderr)
        return 1

    try:
        settings = _settings(args)
        text = read_input(args.input)
        html, pipeline = asyncio.run(_render(text, settings, args.wait_ready))
    except KeyboardInterrupt:
        print("\n\nInterrupted.", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        return 1

    if args.output:
        Path(args.output).write_text(html, encoding="utf-8")
        stats = pipeline.last_stats
        print(f"[OK] Wrote {args.output}")
        print(f"Regions: {stats.regions} | Recovered: {stats.recovered} | "
              f"Readiness: {pipeline.ctx.tracker.state.value} | Time: {stats.duration:.2f}s")
        if stats.report is not None:
            print(f"Restore: {stats.report.summary()}")
        if pipeline.ctx.diagnostics:
            print(f"Diagnostics: {len(pipeline.ctx.diagnostics)} (see log file)")
    else:
        sys.stdout.write(html)
        sys.stdout.write("\n")
    return 0


# =============================================================================
# SCAN COMMAND
# =============================================================================

def cmd_scan(args):
    """List the math regions of a document as JSON lines."""
    from placeholders import protect_text

    if args.input != "-" and not Path(args.input).exists():
        print(f"[ERROR] File not found: {args.input}", file=sys.stderr)
        return 1

    settings = _settings(args)
    result = protect_text(
        read_input(args.input),
        min_tail=settings.repair_min_tail,
        max_tail=settings.repair_max_tail,
    )

    for region in result.registry:
        print(json.dumps(region.model_dump(mode="json"), ensure_ascii=False))

    if args.roundtrip:
        issues = result.verify_restoration(result.restore_source())
        if issues:
            for issue in issues:
                print(f"[FAILED] {issue}", file=sys.stderr)
            return 1
        print(f"[OK] {len(result.registry)} regions round-trip", file=sys.stderr)
    if result.scan.repaired:
        print("[WARN] Unclosed $$ was closed automatically", file=sys.stderr)
    return 0


# =============================================================================
# LOGS COMMAND
# =============================================================================

def cmd_logs(args):
    """Summarize the latest log file."""
    from logging_config import analyze_log

    summary = analyze_log(Path(args.path) if args.path else None, log_dir=args.log_dir)
    if "error" in summary:
        print(f"[ERROR] {summary['error']}")
        return 1

    print(f"Log file: {summary['log_file']}")
    print(f"  Errors:             {summary['error_count']}")
    print(f"  Warnings:           {summary['warning_count']}")
    print(f"  Restoration misses: {summary['restoration_misses']}")
    print(f"  Fallback messages:  {summary['fallbacks']}")
    print(f"  Timeline events:    {summary['timeline_count']}")

    for event in summary["timeline"][-args.tail:]:
        print(f"  [{event['time']}] {event['event']}")
    for entry in summary["errors"][-args.tail:]:
        print(f"  [ERROR] {entry['time']} {entry['module']}: {entry['message']}")
    return 0


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="Math Preview Renderer - CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python cli.py render notes.md -o notes.html
  python cli.py render notes.md --engine fallback
  python cli.py scan notes.md --roundtrip
  python cli.py logs
"""
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Render command
    p_render = subparsers.add_parser("render", help="Render markdown with math to HTML")
    p_render.add_argument("input", help="Input file, or - for stdin")
    p_render.add_argument("-o", "--output", help="Output HTML file (default: stdout)")
    p_render.add_argument("--engine", choices=["primary", "fallback"], help="Preferred math engine")
    p_render.add_argument("--wait-ready", action="store_true",
                          help="Wait for the primary engine before rendering")
    p_render.set_defaults(func=cmd_render)

    # Scan command
    p_scan = subparsers.add_parser("scan", help="List math regions as JSON lines")
    p_scan.add_argument("input", help="Input file, or - for stdin")
    p_scan.add_argument("--roundtrip", action="store_true",
                        help="Check that protecting and restoring gives the source back")
    p_scan.set_defaults(func=cmd_scan)

    # Logs command
    p_logs = subparsers.add_parser("logs", help="Summarize the latest log file")
    p_logs.add_argument("--path", help="Specific log file")
    p_logs.add_argument("--log-dir", help="Log directory")
    p_logs.add_argument("--tail", type=int, default=10, help="Errors to show")
    p_logs.set_defaults(func=cmd_logs)

    args = parser.parse_args(argv)

    if not args.command:
        print_banner()
        parser.print_help()
        return 0

    if args.command == "render":
        from config import RenderSettings
        from logging_config import setup_logging

        settings = RenderSettings.from_env()
        level = logging.DEBUG if args.verbose else getattr(logging, settings.log_level, logging.INFO)
        setup_logging(level, log_dir=settings.log_dir)
    elif args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
