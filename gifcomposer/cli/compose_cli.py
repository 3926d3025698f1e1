"""
CLI command for exporting one composed GIF from a job file.

Usage:
    gifcomposer compose job.yaml --output-dir exports/
    gifcomposer compose job.json --search ~/Captures --search ~/Captures/GIF -v
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from ..config import ComposerConfig
from ..exceptions import ExportCancelled, GifComposerError, SourceNotFoundError, StageError
from ..orchestrator import Composer, RetryPolicy
from ..progress import ConsoleProgress
from ..request import load_job_file


def load_config(args: argparse.Namespace) -> ComposerConfig:
    """Config file, then GIFCOMPOSER_* variables, then command-line flags."""
    config_path = getattr(args, "config", None)
    config = ComposerConfig.from_file(Path(config_path)) if config_path else ComposerConfig()
    config = config.with_env()
    if getattr(args, "output_dir", None):
        config.output_dir = Path(args.output_dir).expanduser()
    if getattr(args, "search", None):
        config.search_folders = [Path(p).expanduser() for p in args.search] + list(
            config.search_folders)
    if getattr(args, "no_optimize", False):
        config.optimize = False
    return config


def _format_size(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def cmd_compose(args: argparse.Namespace) -> int:
    """Main handler for ``gifcomposer compose``."""
    job_file = Path(args.job_file)
    if not job_file.is_file():
        print(f"Error: file not found: {job_file}", file=sys.stderr)
        return 1

    try:
        config = load_config(args)
        job = load_job_file(job_file)
    except (GifComposerError, ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    composer = Composer(config, retry=RetryPolicy(max_attempts=args.attempts))
    progress = ConsoleProgress(f"Exporting {job.frame_name}")
    job.on_progress = progress
    try:
        result = composer.run(job)
    except (ExportCancelled, KeyboardInterrupt):
        print("\nCancelled.", file=sys.stderr)
        return 130
    except SourceNotFoundError as exc:
        print(f"\nError: {exc}", file=sys.stderr)
        return 1
    except StageError as exc:
        print(f"\nError: {exc}", file=sys.stderr)
        if exc.tool_output:
            print(exc.tool_output, file=sys.stderr)
        return 1
    except GifComposerError as exc:
        print(f"\nError: {exc}", file=sys.stderr)
        return 1
    finally:
        progress.close()

    if result.skipped:
        print(f"Already exported: {result.output_path}")
    else:
        print(f"Done! {result.output_path} ({_format_size(result.size_bytes)})")
    return 0


def build_compose_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the ``compose`` subcommand and its arguments."""
    p = subparsers.add_parser(
        "compose",
        help="Compose a job file into an annotated GIF",
        description="Composite animated sources, static layers and annotation into one GIF.",
    )
    p.add_argument(
        "job_file",
        help="YAML or JSON job request",
    )
    p.add_argument(
        "--output-dir", default=None,
        help="Folder receiving the exported GIF (default: from config)",
    )
    p.add_argument(
        "--config", default=None,
        help="YAML configuration file",
    )
    p.add_argument(
        "--search", action="append", default=[], metavar="DIR",
        help="Extra folder to search for sources; repeatable",
    )
    p.add_argument(
        "--attempts", type=int, default=1,
        help="Whole-pipeline attempts on stage failures (default: 1)",
    )
    p.add_argument(
        "--no-optimize", action="store_true",
        help="Skip gifsicle optimization",
    )
    p.set_defaults(func=cmd_compose)
