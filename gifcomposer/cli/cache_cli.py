"""
CLI commands for inspecting and pruning the source caches.

Usage:
    gifcomposer cache stats
    gifcomposer cache clean --days 7
"""

from __future__ import annotations

import argparse
import sys

from ..cache import ConversionCache, DirectoryContentCache
from ..exceptions import CacheError
from .compose_cli import load_config


def _open_caches(args):
    config = load_config(args)
    content = DirectoryContentCache(config.cache_dir)
    converted = None
    if config.conversion_cache_dir is not None:
        converted = ConversionCache(config.conversion_cache_dir)
    return content, converted


def cmd_stats(args: argparse.Namespace) -> int:
    try:
        content, converted = _open_caches(args)
    except CacheError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    s = content.stats()
    print(f"Source cache:     {s['root']}")
    print(f"  entries:        {s['entries']}")
    print(f"  size:           {s['size_mb']} MB")
    for ext, count in sorted(s["by_ext"].items()):
        print(f"  {ext:15s} {count}")
    if converted is not None:
        c = converted.stats()
        print(f"Conversion cache: {c['root']}")
        print(f"  entries:        {c['entries']}")
        print(f"  size:           {c['size_mb']} MB")
    return 0


def cmd_clean(args: argparse.Namespace) -> int:
    try:
        content, converted = _open_caches(args)
    except CacheError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    removed = content.clean_older_than(args.days)
    print(f"Removed {removed} source cache entries older than {args.days:g} day(s).")
    if converted is not None and args.conversions:
        print(f"Removed {converted.clear()} converted clips.")
    return 0


def build_cache_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the ``cache`` command group."""
    p = subparsers.add_parser("cache", help="Inspect and prune the source caches")
    p.add_argument("--config", default=None, help="YAML configuration file")
    sub = p.add_subparsers(dest="cache_command")

    stats = sub.add_parser("stats", help="Show cache size and entry counts")
    stats.set_defaults(func=cmd_stats)

    clean = sub.add_parser("clean", help="Remove old cache entries")
    clean.add_argument(
        "--days", type=float, default=30.0,
        help="Remove entries stored more than N days ago (default: 30)",
    )
    clean.add_argument(
        "--conversions", action="store_true",
        help="Also clear every converted clip",
    )
    clean.set_defaults(func=cmd_clean)
