#! /usr/bin/env python3
"""depforge: resolve a project or workspace and manage its lockfile.

Subcommands:
    lock   resolve and write the lockfile
    check  compare the lockfile against the current project (exit 4 if stale)
    tree   print the resolved dependency tree
"""

import logging
import os
import sys
import tempfile

import yaml

from args import parse_args
from constants import Constants, ExitCodes, apply_config, load_config
from common.errors import (
    CatalogError,
    FormatError,
    ParseError,
    ResolveError,
    StaleLockError,
    WorkspaceError,
)
from common.logging_utils import configure_logging, extra_context, is_debug_enabled
from lockfile.codec import decode
from registry.cache import MetadataCache
from registry.direct import DirectSourceReader
from registry.pypi import PyPICatalog
from registry.snapshot import SnapshotCatalog
from resolution.service import check_lock, lock, render_tree, resolve
from versioning.environment import EnvironmentProvider
from workspace.loader import load_workspace

logger = logging.getLogger(__name__)


def environment_overrides(args):
    """Collect marker overrides from --python-version, --platform and --env."""
    overrides = {}
    if args.PYTHON_VERSION:
        parts = args.PYTHON_VERSION.split(".")
        overrides["python_version"] = ".".join(parts[:2])
        overrides["python_full_version"] = (
            args.PYTHON_VERSION if len(parts) > 2 else args.PYTHON_VERSION + ".0"
        )
    if args.PLATFORM:
        overrides["sys_platform"] = args.PLATFORM
    for pair in args.ENV_OVERRIDES:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --env override {pair!r}; expected KEY=VALUE")
        overrides[key.strip()] = value.strip()
    return overrides


def build_catalog(args, root):
    """Snapshot catalog when --catalog is given, PyPI otherwise."""
    cache = MetadataCache(Constants.METADATA_CACHE_TTL_SEC, Constants.METADATA_CACHE_MAX_ENTRIES)
    if args.CATALOG:
        return SnapshotCatalog.from_file(args.CATALOG, cache=cache)
    return PyPICatalog(
        index_url=args.INDEX_URL or Constants.INDEX_URL,
        cache=cache,
        direct=DirectSourceReader(root=root),
    )


def lockfile_path(args, root):
    return args.LOCKFILE or os.path.join(root, Constants.LOCKFILE_NAME)


def write_lockfile(path, data):
    """Write atomically so a failed run never leaves a partial lockfile."""
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp = tempfile.mkstemp(prefix=".depforge-", suffix=".lock", dir=directory)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def run(args):
    """Execute one subcommand; returns an ExitCodes member."""
    root = os.path.abspath(args.DIRECTORY)
    path = lockfile_path(args, root)

    if args.COMMAND == "tree" and args.LOCKED:
        with open(path, "rb") as fh:
            resolution = decode(fh.read())
        sys.stdout.write(render_tree(resolution))
        return ExitCodes.SUCCESS

    graph = load_workspace(root)
    catalog = graph.overlay(build_catalog(args, root))
    roots = graph.own_roots(graph.get(args.MEMBER)) if args.MEMBER else graph.union_roots()
    environment = EnvironmentProvider(environment_overrides(args))
    prereleases = args.PRERELEASE or False

    if args.COMMAND == "check":
        with open(path, "rb") as fh:
            data = fh.read()
        status = check_lock(
            data,
            roots,
            catalog,
            environment=environment,
            mode=args.MODE,
            allow_prerelease=prereleases,
        )
        status.raise_for_status()
        logger.info("Lockfile %s is up to date", path)
        return ExitCodes.SUCCESS

    resolution = resolve(
        graph.union_roots(),
        catalog,
        environment=environment,
        mode=args.MODE,
        allow_prerelease=prereleases,
    )
    if args.MEMBER:
        resolution = graph.project_member_subset(resolution, args.MEMBER)

    if args.COMMAND == "tree":
        sys.stdout.write(render_tree(resolution))
        return ExitCodes.SUCCESS

    write_lockfile(path, lock(resolution))
    logger.info("Wrote %s (%d packages)", path, len(resolution))
    if is_debug_enabled(logger):
        logger.debug("Metadata cache: %s", catalog.delegate.cache.stats())
    return ExitCodes.SUCCESS


def main(argv=None):
    """Main function of the program."""
    args = parse_args(argv)
    configure_logging(args.LOG_LEVEL)

    try:
        apply_config(load_config(args.CONFIG))
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.error("Failed to load configuration: %s", exc)
        sys.exit(ExitCodes.FILE_ERROR.value)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND)
        )

    try:
        code = run(args)
    except StaleLockError as exc:
        logger.error("%s (%s)", exc, lockfile_path(args, os.path.abspath(args.DIRECTORY)))
        code = ExitCodes.STALE_LOCK
    except ResolveError as exc:
        logger.error("%s", exc)
        code = ExitCodes.RESOLUTION_ERROR
    except CatalogError as exc:
        logger.error("%s", exc)
        code = ExitCodes.CONNECTION_ERROR
    except (ParseError, WorkspaceError, FormatError) as exc:
        logger.error("%s", exc)
        code = ExitCodes.FILE_ERROR
    except (OSError, ValueError) as exc:
        logger.error("%s", exc)
        code = ExitCodes.FILE_ERROR

    if is_debug_enabled(logger):
        logger.debug(
            "CLI finished",
            extra=extra_context(
                event="function_exit", component="cli", action=args.COMMAND, outcome=code.name.lower()
            )
        )
    sys.exit(code.value)


if __name__ == "__main__":
    main()
