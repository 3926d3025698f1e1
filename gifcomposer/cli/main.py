"""Main CLI entry point for gifcomposer."""

from __future__ import annotations

import argparse
import logging
import sys

from .. import __version__
from ..detection import print_diagnostics
from .cache_cli import build_cache_parser
from .compose_cli import build_compose_parser, load_config


def cmd_doctor(args: argparse.Namespace) -> int:
    print(print_diagnostics(load_config(args)))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="gifcomposer",
        description="Compose annotated animated GIFs from screen captures",
    )
    parser.add_argument("--version", action="version", version=f"gifcomposer {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="More logging (-v info, -vv debug)")
    subparsers = parser.add_subparsers(dest="command")
    build_compose_parser(subparsers)
    build_cache_parser(subparsers)
    doctor = subparsers.add_parser("doctor", help="Report available media tools")
    doctor.add_argument("--config", default=None, help="YAML configuration file")
    doctor.set_defaults(func=cmd_doctor)

    args = parser.parse_args(argv)
    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "cache":
        if getattr(args, "func", None) is None:
            subparsers.choices["cache"].print_help()
            return 0
    return args.func(args)


def cli_entry() -> None:
    sys.exit(main())
