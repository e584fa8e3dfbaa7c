"""Workspace member graph.

Members are stored in a node array sorted by name; edges are adjacency lists
of node indices. A reference from one member to a sibling is rewritten into
a path requirement pinned to the sibling's declared version, so siblings are
never re-resolved from the registry.
"""

from __future__ import annotations

import hashlib
import json
import logging
import posixpath
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from packaging.specifiers import SpecifierSet
from packaging.version import Version

from constants import Constants
from common.errors import CycleError, WorkspaceError
from registry.catalog import SourceCatalog
from resolution.models import Resolution, normalize_groups
from versioning.models import (
    CandidateVersion,
    PathSource,
    RegistrySource,
    Requirement,
    Source,
    is_direct,
    normalize_name,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkspaceMember:
    """One package of the workspace, as declared in its project metadata."""
    name: str
    path: str
    version: Version
    requirements: Tuple[Requirement, ...] = ()
    groups: Dict[str, Tuple[Requirement, ...]] = field(default_factory=dict)
    extras: Dict[str, Tuple[Requirement, ...]] = field(default_factory=dict)
    digest: str = ""

    def all_requirements(self) -> List[Requirement]:
        reqs = list(self.requirements)
        for _, extra_reqs in sorted(self.extras.items()):
            reqs.extend(extra_reqs)
        for _, group_reqs in sorted(self.groups.items()):
            reqs.extend(group_reqs)
        return reqs

    def identity(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "path": self.path,
            "version": str(self.version),
            "requirements": [r.to_string() for r in self.requirements],
            "extras": {k: [r.to_string() for r in v] for k, v in sorted(self.extras.items())},
            "groups": {k: [r.to_string() for r in v] for k, v in sorted(self.groups.items())},
        }


def _normalize_path(*parts: str) -> str:
    return posixpath.normpath(posixpath.join(*(p.replace("\\", "/") for p in parts)))


def _same_path(a: str, b: str) -> bool:
    return _normalize_path(a) == _normalize_path(b)


class WorkspaceGraph:
    """Validated, acyclic set of workspace members."""

    def __init__(self, members: Sequence[WorkspaceMember], adjacency: Sequence[Sequence[int]], root: str = ""):
        self.root = root
        self.members: List[WorkspaceMember] = list(members)
        self.adjacency: List[List[int]] = [list(a) for a in adjacency]
        self.index: Dict[str, int] = {m.name: i for i, m in enumerate(self.members)}

    @classmethod
    def build(cls, members: Iterable[WorkspaceMember], root: str = "") -> "WorkspaceGraph":
        """Index members, wire sibling edges and reject cycles.

        ``root`` is the workspace directory member paths are relative to.

        Raises:
            WorkspaceError: Two members share a normalized name.
            CycleError: Members depend on each other in a loop.
        """
        nodes: List[WorkspaceMember] = []
        seen: Dict[str, str] = {}
        for member in members:
            name = normalize_name(member.name)
            if name in seen:
                raise WorkspaceError(
                    f"Duplicate workspace member {name!r} at {seen[name]} and {member.path}"
                )
            seen[name] = member.path
            nodes.append(replace(member, name=name))
        nodes.sort(key=lambda m: m.name)
        index = {m.name: i for i, m in enumerate(nodes)}

        adjacency: List[List[int]] = []
        for i, member in enumerate(nodes):
            targets = {
                index[r.name] for r in member.all_requirements()
                if r.name in index and index[r.name] != i
            }
            adjacency.append(sorted(targets))

        graph = cls(nodes, adjacency, root)
        cycle = graph.find_cycle()
        if cycle is not None:
            raise CycleError(cycle)
        logger.debug("Workspace graph with %d members", len(nodes))
        return graph

    def find_cycle(self) -> Optional[List[str]]:
        """Iterative DFS; returns the first cycle found as a closed name path."""
        unvisited, on_stack, done = 0, 1, 2
        state = [unvisited] * len(self.members)
        for start in range(len(self.members)):
            if state[start] != unvisited:
                continue
            state[start] = on_stack
            path = [start]
            stack = [iter(self.adjacency[start])]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    state[path.pop()] = done
                    continue
                if state[nxt] == on_stack:
                    loop = path[path.index(nxt):] + [nxt]
                    return [self.members[i].name for i in loop]
                if state[nxt] == unvisited:
                    state[nxt] = on_stack
                    path.append(nxt)
                    stack.append(iter(self.adjacency[nxt]))
        return None

    def get(self, name: str) -> WorkspaceMember:
        key = normalize_name(name)
        if key not in self.index:
            raise WorkspaceError(f"{name!r} is not a workspace member")
        return self.members[self.index[key]]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_name(name) in self.index

    def __iter__(self):
        return iter(self.members)

    def __len__(self) -> int:
        return len(self.members)

    # ---------------------------------------------------------------- roots

    def member_requirement(self, member: WorkspaceMember, extras: Iterable[str] = ()) -> Requirement:
        """Path requirement pinned to the member's declared version."""
        return Requirement(
            name=member.name,
            specifier=SpecifierSet(f"=={member.version}"),
            extras=frozenset(extras),
            source=PathSource(path=member.path),
        )

    def rewrite(self, req: Requirement, member: Optional[WorkspaceMember] = None) -> List[Requirement]:
        """Bind a sibling reference to the sibling's path and version.

        The declared specifier stays as a registry-kind constraint, so a
        declaration the sibling no longer satisfies surfaces as a conflict.
        An explicit path reference is resolved against the declaring
        ``member``'s directory and bound when it lands on the sibling.
        References to non-members and other direct references are kept.
        """
        if req.name not in self.index:
            return [req]
        sibling = self.members[self.index[req.name]]
        if is_direct(req.source):
            if not isinstance(req.source, PathSource):
                return [req]
            base = member.path if member is not None else "."
            target = _normalize_path(self.root, base, req.source.path)
            if target != _normalize_path(self.root, sibling.path):
                return [req]
            return [replace(self.member_requirement(sibling, req.extras), marker=req.marker)]
        pinned = replace(self.member_requirement(sibling, req.extras), marker=req.marker)
        if not str(req.specifier):
            return [pinned]
        return [pinned, replace(req, extras=frozenset())]

    def _rewrite_all(self, member: WorkspaceMember, reqs: Iterable[Requirement]) -> Tuple[Requirement, ...]:
        result: List[Requirement] = []
        for req in reqs:
            result.extend(self.rewrite(req, member))
        return tuple(result)

    def own_roots(self, member: WorkspaceMember) -> Dict[str, List[Requirement]]:
        """The member itself under ``main`` plus its own dependency groups."""
        roots: Dict[str, List[Requirement]] = {Constants.DEFAULT_GROUP: [self.member_requirement(member)]}
        for group, reqs in sorted(member.groups.items()):
            roots.setdefault(normalize_name(group), []).extend(self._rewrite_all(member, reqs))
        return roots

    def union_roots(self) -> Dict[str, List[Requirement]]:
        """Root groups for resolving the whole workspace as one unit."""
        roots: Dict[str, List[Requirement]] = {Constants.DEFAULT_GROUP: []}
        for member in self.members:
            for group, reqs in self.own_roots(member).items():
                roots.setdefault(group, []).extend(reqs)
        return roots

    # -------------------------------------------------------------- catalog

    def member_candidate(self, member: WorkspaceMember) -> CandidateVersion:
        digest = member.digest or "sha256:" + hashlib.sha256(
            json.dumps(member.identity(), sort_keys=True).encode("utf-8")
        ).hexdigest()
        return CandidateVersion(
            name=member.name,
            version=member.version,
            source=PathSource(path=member.path),
            digest=digest,
            dependencies=self._rewrite_all(member, member.requirements),
            extra_dependencies={
                normalize_name(extra): self._rewrite_all(member, reqs)
                for extra, reqs in sorted(member.extras.items())
            },
        )

    def overlay(self, catalog: SourceCatalog) -> "WorkspaceCatalog":
        return WorkspaceCatalog(self, catalog)

    # ----------------------------------------------------------- projection

    def project_member_subset(self, resolution: Resolution, member_name: str) -> Resolution:
        """Restrict a workspace resolution to one member's closure.

        The result's manifest holds only that member's own roots, and each
        package's group membership is recomputed within the subset.
        """
        member = self.get(member_name)
        roots = self.own_roots(member)
        membership: Dict[str, Set[str]] = {}
        for group, reqs in roots.items():
            names = [
                r.name for r in reqs
                if resolution.marker_holds(str(r.marker) if r.marker is not None else "")
            ]
            for name in resolution.closure(names):
                membership.setdefault(name, set()).add(group)
        packages = [
            replace(p, groups=tuple(sorted(membership[p.name])))
            for p in resolution.packages if p.name in membership
        ]
        return Resolution.build(
            packages,
            groups=normalize_groups(roots),
            catalog=resolution.catalog,
            environment=resolution.environment,
            mode=resolution.mode,
            prereleases=resolution.prereleases,
        )


class WorkspaceCatalog(SourceCatalog):
    """Serves workspace members from memory; everything else is delegated."""

    def __init__(self, graph: WorkspaceGraph, delegate: SourceCatalog):
        super().__init__(cache=None)
        self.graph = graph
        self.delegate = delegate
        payload = json.dumps(
            {
                "catalog": delegate.fingerprint(),
                "members": [m.identity() for m in graph.members],
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        self._fingerprint = "workspace:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def fingerprint(self) -> str:
        return self._fingerprint

    def _member_for(self, name: str, source: Source) -> Optional[WorkspaceMember]:
        if not isinstance(source, PathSource) or name not in self.graph:
            return None
        member = self.graph.get(name)
        return member if _same_path(member.path, source.path) else None

    def list_versions(self, name: str, source: Optional[Source] = None) -> List[str]:
        return self.delegate.list_versions(name, source)

    def fetch_metadata(self, name: str, target: Union[Version, str, Source]) -> CandidateVersion:
        if not isinstance(target, (Version, str)):
            member = self._member_for(name, target)
            if member is not None:
                return self.graph.member_candidate(member)
        return self.delegate.fetch_metadata(name, target)

    def _list_versions(self, name: str) -> List[str]:
        return self.delegate.list_versions(name, RegistrySource())

    def _fetch_metadata(self, name: str, version: Version) -> CandidateVersion:
        return self.delegate.fetch_metadata(name, version)
