"""Argument parsing functionality for depforge."""

import argparse

from constants import Constants


def _add_resolve_options(parser):
    """Options shared by every subcommand that needs a catalog."""
    parser.add_argument("-d", "--directory",
                        dest="DIRECTORY",
                        help="Project or workspace root containing pyproject.toml",
                        action="store", type=str,
                        default=".")
    parser.add_argument("--lockfile",
                        dest="LOCKFILE",
                        help="Lockfile path (default: <directory>/" + Constants.LOCKFILE_NAME + ")",
                        action="store", type=str)
    parser.add_argument("--catalog",
                        dest="CATALOG",
                        help="Resolve offline against a JSON catalog snapshot",
                        action="store", type=str)
    parser.add_argument("--index-url",
                        dest="INDEX_URL",
                        help="Package index JSON API base URL",
                        action="store", type=str)
    parser.add_argument("--mode",
                        dest="MODE",
                        help="Candidate preference: highest or lowest-direct (default: highest)",
                        action="store", type=str,
                        choices=["highest", "lowest-direct"],
                        default="highest")
    parser.add_argument("--prerelease",
                        dest="PRERELEASE",
                        help="Allow pre-releases for a package ('*' for all); repeatable",
                        action="append", type=str,
                        default=[])
    parser.add_argument("--python-version",
                        dest="PYTHON_VERSION",
                        help="Target python_version marker (e.g. 3.12)",
                        action="store", type=str)
    parser.add_argument("--platform",
                        dest="PLATFORM",
                        help="Target sys_platform marker (e.g. linux, win32, darwin)",
                        action="store", type=str)
    parser.add_argument("--env",
                        dest="ENV_OVERRIDES",
                        help="Marker variable override (KEY=VALUE); repeatable",
                        action="append", type=str,
                        default=[])
    parser.add_argument("--member",
                        dest="MEMBER",
                        help="Restrict output to one workspace member's closure",
                        action="store", type=str)


def build_parser():
    """Build the top-level parser with its subcommands."""
    parser = argparse.ArgumentParser(
        prog="depforge",
        description="depforge - dependency resolver and lockfile engine",
        add_help=True,
    )
    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        default='INFO')
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML)",
                        action="store",
                        type=str)

    sub = parser.add_subparsers(dest="COMMAND", metavar="command")
    sub.required = True

    lock = sub.add_parser("lock", help="Resolve and write the lockfile")
    _add_resolve_options(lock)

    check = sub.add_parser("check", help="Verify the lockfile matches the project")
    _add_resolve_options(check)

    tree = sub.add_parser("tree", help="Print the resolved dependency tree")
    _add_resolve_options(tree)
    tree.add_argument("--locked",
                      dest="LOCKED",
                      help="Render from the existing lockfile instead of resolving",
                      action="store_true")
    return parser


def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    return build_parser().parse_args(argv)
