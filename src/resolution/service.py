"""Entry points over the solver and lockfile codec.

``resolve`` runs one solve to completion; ``lock`` and ``check_lock`` wrap
the lockfile codec; ``render_tree`` prints a resolution per root group.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Mapping, Optional, Set, Tuple, Union

from lockfile.codec import LockStatus, encode, is_consistent
from registry.catalog import SourceCatalog
from versioning.environment import Environment, EnvironmentProvider
from versioning.models import Requirement
from versioning.parser import parse_requirement
from .models import PrereleasePolicy, Resolution, ResolutionMode
from .solver import Solver

logger = logging.getLogger(__name__)

RootGroups = Mapping[str, Iterable[Union[Requirement, str]]]
EnvironmentLike = Union[None, Environment, EnvironmentProvider]
PrereleaseLike = Union[None, bool, Iterable[str], PrereleasePolicy]


def _environment(environment: EnvironmentLike) -> Environment:
    if environment is None:
        return EnvironmentProvider().snapshot()
    if isinstance(environment, EnvironmentProvider):
        return environment.snapshot()
    if isinstance(environment, Environment):
        return environment
    raise TypeError(f"Unsupported environment: {environment!r}")


def _mode(mode: Union[str, ResolutionMode]) -> ResolutionMode:
    return mode if isinstance(mode, ResolutionMode) else ResolutionMode(mode)


def _requirements(root_groups: RootGroups) -> dict:
    return {
        group: [r if isinstance(r, Requirement) else parse_requirement(r) for r in reqs]
        for group, reqs in root_groups.items()
    }


async def resolve_async(
    root_groups: RootGroups,
    catalog: SourceCatalog,
    environment: EnvironmentLike = None,
    mode: Union[str, ResolutionMode] = ResolutionMode.HIGHEST,
    allow_prerelease: PrereleaseLike = False,
    max_attempts: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> Resolution:
    """Coroutine form of :func:`resolve`; cancelling it abandons all fetches."""
    solver = Solver(
        _requirements(root_groups),
        catalog,
        _environment(environment),
        mode=_mode(mode),
        prereleases=PrereleasePolicy.coerce(allow_prerelease),
        max_attempts=max_attempts,
        concurrency=concurrency,
    )
    return await solver.solve()


def resolve(
    root_groups: RootGroups,
    catalog: SourceCatalog,
    environment: EnvironmentLike = None,
    mode: Union[str, ResolutionMode] = ResolutionMode.HIGHEST,
    allow_prerelease: PrereleaseLike = False,
    max_attempts: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> Resolution:
    """Resolve root requirement groups against a catalog.

    Args:
        root_groups: Group name to requirements (objects or PEP 508 strings).
        catalog: Source catalog to draw candidates from.
        environment: Marker environment; defaults to the running interpreter.
        mode: "highest" or "lowest-direct".
        allow_prerelease: True, False, or an iterable of package names
            ("*" for all).
        max_attempts: Per-package attempt bound.
        concurrency: Number of concurrent fetch workers.

    Returns:
        Resolution: The committed package set.

    Raises:
        ParseError: A root requirement is malformed.
        UnsatisfiableError: No consistent assignment exists.
        CatalogError: A required listing or direct source could not be fetched.
    """
    return asyncio.run(
        resolve_async(
            root_groups,
            catalog,
            environment=environment,
            mode=mode,
            allow_prerelease=allow_prerelease,
            max_attempts=max_attempts,
            concurrency=concurrency,
        )
    )


def lock(resolution: Resolution) -> bytes:
    """Encode a resolution as lockfile bytes."""
    return encode(resolution)


def check_lock(
    data: bytes,
    root_groups: RootGroups,
    catalog: Union[SourceCatalog, str],
    environment: EnvironmentLike = None,
    mode: Union[None, str, ResolutionMode] = None,
    allow_prerelease: PrereleaseLike = None,
) -> LockStatus:
    """Report whether ``data`` still matches the given inputs.

    Never resolves; a stale lock is reported, not refreshed.
    """
    fingerprint = catalog.fingerprint() if isinstance(catalog, SourceCatalog) else catalog
    env = _environment(environment) if environment is not None else None
    return is_consistent(
        data,
        root_groups,
        fingerprint,
        environment=env,
        mode=mode,
        allow_prerelease=allow_prerelease,
    )


def _name_and_marker(text: str) -> Tuple[str, str]:
    """Split a normalized manifest entry into its name and marker."""
    req = parse_requirement(text)
    return req.name, str(req.marker) if req.marker is not None else ""


def render_tree(resolution: Resolution) -> str:
    """Render each root group as an indented dependency tree.

    Packages already expanded earlier in the same group are marked ``(*)``.
    """
    by_name = {p.name: p for p in resolution.packages}
    lines: List[str] = []

    def label(name: str) -> str:
        package = by_name[name]
        text = f"{name} {package.version}"
        if package.extras:
            text += f" [{','.join(package.extras)}]"
        if package.source.kind.value != "registry":
            text += f" ({package.source.locator()})"
        return text

    for group, reqs in resolution.groups:
        lines.append(group)
        roots = []
        for text in reqs:
            name, marker = _name_and_marker(text)
            if name in by_name and resolution.marker_holds(marker) and name not in roots:
                roots.append(name)
        shown: Set[str] = set()
        # (name, prefix, is_last)
        stack = [(name, "", i == len(roots) - 1) for i, name in enumerate(roots)]
        stack.reverse()
        while stack:
            name, prefix, last = stack.pop()
            branch = "└── " if last else "├── "
            repeated = name in shown
            lines.append(prefix + branch + label(name) + (" (*)" if repeated else ""))
            if repeated:
                continue
            shown.add(name)
            children = sorted({d.name for d in resolution.active_dependencies(by_name[name])} - {name})
            child_prefix = prefix + ("    " if last else "│   ")
            for i in reversed(range(len(children))):
                stack.append((children[i], child_prefix, i == len(children) - 1))
    return "\n".join(lines) + ("\n" if lines else "")
