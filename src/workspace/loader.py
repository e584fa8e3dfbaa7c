"""Load workspace members from ``pyproject.toml`` files.

The root project lists its members under ``[tool.depforge.workspace]``::

    [tool.depforge.workspace]
    members = ["packages/*"]
    exclude = ["packages/legacy"]

A root that declares ``[project]`` is itself a member. Each member contributes
``[project]`` dependencies, ``optional-dependencies`` and PEP 735
``[dependency-groups]`` (with ``{include-group = "..."}`` entries expanded).
"""

from __future__ import annotations

import fnmatch
import glob
import hashlib
import logging
import os
from typing import Any, Dict, List, Optional, Set, Tuple

from constants import Constants
from common.errors import ParseError, WorkspaceError
from versioning.models import Requirement, normalize_name
from versioning.parser import parse_requirement, parse_version
from .graph import WorkspaceGraph, WorkspaceMember

try:
    import tomllib as toml  # type: ignore
except ImportError:  # Python < 3.11
    import tomli as toml  # type: ignore

logger = logging.getLogger(__name__)


def _read_pyproject(directory: str) -> Tuple[Dict[str, Any], bytes]:
    path = os.path.join(directory, Constants.PYPROJECT_TOML_FILE)
    try:
        with open(path, "rb") as fh:
            raw = fh.read()
    except OSError as exc:
        raise WorkspaceError(f"Cannot read {path}: {exc}") from exc
    try:
        return toml.loads(raw.decode("utf-8")), raw
    except (UnicodeDecodeError, toml.TOMLDecodeError) as exc:
        raise WorkspaceError(f"Invalid {path}: {exc}") from exc


def expand_dependency_groups(table: Dict[str, Any], where: str = "") -> Dict[str, List[str]]:
    """Flatten PEP 735 groups, inlining ``include-group`` references."""
    groups = {normalize_name(k): v for k, v in (table or {}).items()}
    resolved: Dict[str, List[str]] = {}

    def visit(name: str, active: List[str]) -> List[str]:
        if name in resolved:
            return resolved[name]
        if name in active:
            raise WorkspaceError(
                f"{where}: dependency group include cycle: " + " -> ".join(active + [name])
            )
        if name not in groups:
            raise WorkspaceError(f"{where}: unknown dependency group {name!r}")
        items: List[str] = []
        for entry in groups[name]:
            if isinstance(entry, str):
                items.append(entry)
            elif isinstance(entry, dict) and "include-group" in entry:
                items.extend(visit(normalize_name(entry["include-group"]), active + [name]))
            else:
                raise WorkspaceError(f"{where}: invalid entry in group {name!r}: {entry!r}")
        resolved[name] = items
        return items

    for name in sorted(groups):
        visit(name, [])
    return resolved


def _parse_all(lines: List[str], where: str) -> Tuple[Requirement, ...]:
    try:
        return tuple(parse_requirement(line) for line in lines)
    except ParseError as exc:
        raise ParseError(exc.text, f"{exc.reason} (in {where})") from exc


def load_member(root: str, directory: str) -> WorkspaceMember:
    """Build a WorkspaceMember from ``directory/pyproject.toml``."""
    data, raw = _read_pyproject(directory)
    where = os.path.join(directory, Constants.PYPROJECT_TOML_FILE)
    project = data.get("project")
    if not isinstance(project, dict) or "name" not in project:
        raise WorkspaceError(f"{where} has no [project] name")
    if "version" not in project:
        raise WorkspaceError(f"{where} must declare a static version")

    relative = os.path.relpath(directory, root).replace(os.sep, "/")
    path = "." if relative == "." else f"./{relative}"
    groups = expand_dependency_groups(data.get("dependency-groups") or {}, where)
    return WorkspaceMember(
        name=normalize_name(project["name"]),
        path=path,
        version=parse_version(project["version"]),
        requirements=_parse_all(list(project.get("dependencies", [])), where),
        groups={g: _parse_all(reqs, where) for g, reqs in sorted(groups.items())},
        extras={
            normalize_name(extra): _parse_all(list(reqs), where)
            for extra, reqs in sorted((project.get("optional-dependencies") or {}).items())
        },
        digest="sha256:" + hashlib.sha256(raw).hexdigest(),
    )


def discover_members(root: str, data: Optional[Dict[str, Any]] = None) -> List[str]:
    """Member directories of the workspace rooted at ``root``, sorted."""
    if data is None:
        data, _ = _read_pyproject(root)
    config = ((data.get("tool") or {}).get("depforge") or {}).get("workspace") or {}
    patterns = config.get("members") or []
    excludes = config.get("exclude") or []

    found: Set[str] = set()
    if isinstance(data.get("project"), dict):
        found.add(os.path.abspath(root))
    for pattern in patterns:
        matches = glob.glob(os.path.join(root, pattern))
        if not matches and not any(c in pattern for c in "*?["):
            raise WorkspaceError(f"Workspace member {pattern!r} does not exist")
        for match in matches:
            relative = os.path.relpath(match, root).replace(os.sep, "/")
            if any(fnmatch.fnmatch(relative, ex) for ex in excludes):
                logger.debug("Excluding workspace member %s", relative)
                continue
            if os.path.isfile(os.path.join(match, Constants.PYPROJECT_TOML_FILE)):
                found.add(os.path.abspath(match))
            else:
                logger.warning("Skipping %s: no %s", relative, Constants.PYPROJECT_TOML_FILE)
    return sorted(found)


def load_workspace(root: str) -> WorkspaceGraph:
    """Discover and load all members under ``root`` and build the graph."""
    root = os.path.abspath(root)
    data, _ = _read_pyproject(root)
    directories = discover_members(root, data)
    if not directories:
        raise WorkspaceError(f"No workspace members found under {root}")
    members = [load_member(root, d) for d in directories]
    logger.info("Loaded %d workspace members", len(members))
    return WorkspaceGraph.build(members, root)
