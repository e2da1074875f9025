"""Argument parsing functionality for voltpm."""

import argparse
from constants import Constants


def _add_common_arguments(parser):
    """Flags shared by every subcommand."""
    parser.add_argument("-C", "--dir",
                        dest="PROJECT_DIR",
                        help="Project directory containing package.json (default: current directory)",
                        action="store",
                        type=str,
                        default=".")
    parser.add_argument("--registry",
                        dest="REGISTRY",
                        help=f"Default registry base URL or local directory (default: {Constants.REGISTRY_URL_NPM})",
                        action="store",
                        type=str)
    parser.add_argument("--cache-dir",
                        dest="CACHE_DIR",
                        help="Content cache directory",
                        action="store",
                        type=str)
    parser.add_argument("-j", "--concurrency",
                        dest="CONCURRENCY",
                        help="Maximum number of parallel network requests",
                        action="store",
                        type=int)
    parser.add_argument("--retries",
                        dest="RETRIES",
                        help="Attempts per HTTP request before giving up",
                        action="store",
                        type=int)
    parser.add_argument("--production",
                        dest="PRODUCTION",
                        help="Skip devDependencies",
                        action="store_true")
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML)",
                        action="store",
                        type=str)
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)


def build_parser():
    """Build the top-level parser with ``install`` and ``resolve`` subcommands."""
    parser = argparse.ArgumentParser(
        prog="voltpm",
        description="voltpm - fast, deterministic JavaScript package installer",
        add_help=True,
    )
    sub = parser.add_subparsers(dest="COMMAND", metavar="COMMAND")
    sub.required = True

    install = sub.add_parser("install", help="Resolve, fetch and link dependencies")
    install.add_argument("PACKAGES",
                         help="Extra packages to install, e.g. react@^18 or @scope/name",
                         nargs="*",
                         default=[])
    install.add_argument("--frozen-lockfile",
                         dest="FROZEN_LOCKFILE",
                         help="Fail instead of resolving when the lockfile is missing or out of date",
                         action="store_true")
    install.add_argument("--link-mode",
                         dest="LINK_MODE",
                         help="How package files are placed into node_modules",
                         action="store",
                         type=str,
                         choices=["copy", "hardlink"])
    _add_common_arguments(install)

    resolve = sub.add_parser("resolve", help="Print the resolved dependency graph as JSON")
    resolve.add_argument("PACKAGES",
                         help="Extra packages to include in the resolution",
                         nargs="*",
                         default=[])
    resolve.add_argument("-o", "--output",
                         dest="OUTPUT",
                         help="Write the graph to this file instead of stdout",
                         action="store",
                         type=str)
    _add_common_arguments(resolve)
    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
