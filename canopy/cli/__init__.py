"""Command line interface for canopy.

Usage:
    from canopy.cli import main
    sys.exit(main(["list"]))
"""

from canopy.cli.main import build_parser, main

__all__ = ["build_parser", "main"]
