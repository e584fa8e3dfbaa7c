"""Resolution result types."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import (
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)

from packaging.markers import Marker
from packaging.version import Version

from versioning.models import Requirement, Source, normalize_name
from versioning.parser import parse_requirement


class ResolutionMode(Enum):
    """Candidate preference strategy."""
    HIGHEST = "highest"
    LOWEST_DIRECT = "lowest-direct"


@dataclass(frozen=True)
class PrereleasePolicy:
    """Which packages may resolve to pre-release versions."""
    allow_all: bool = False
    packages: FrozenSet[str] = frozenset()

    @classmethod
    def coerce(cls, value: Union[None, bool, Iterable[str], "PrereleasePolicy"]) -> "PrereleasePolicy":
        if isinstance(value, PrereleasePolicy):
            return value
        if value is None or value is False:
            return cls()
        if value is True:
            return cls(allow_all=True)
        names = frozenset(normalize_name(n) for n in value)
        if "*" in names:
            return cls(allow_all=True)
        return cls(packages=names)

    def allows(self, name: str) -> bool:
        return self.allow_all or name in self.packages

    def as_tuple(self) -> Tuple[str, ...]:
        return ("*",) if self.allow_all else tuple(sorted(self.packages))


@dataclass(frozen=True)
class Dependency:
    """A dependency edge as evaluated at lock time."""
    name: str
    specifier: str = ""
    marker: str = ""
    extra: str = ""

    def sort_key(self) -> Tuple[str, str, str, str]:
        return (self.name, self.extra, self.specifier, self.marker)


@dataclass(frozen=True)
class ResolvedPackage:
    """One chosen candidate and its provenance."""
    name: str
    version: Version
    source: Source
    digest: str = ""
    extras: Tuple[str, ...] = ()
    groups: Tuple[str, ...] = ()
    dependencies: Tuple[Dependency, ...] = ()

    def __post_init__(self):
        # Canonical ordering keeps encoded output stable.
        object.__setattr__(self, "extras", tuple(sorted(set(self.extras))))
        object.__setattr__(self, "groups", tuple(sorted(set(self.groups))))
        object.__setattr__(
            self, "dependencies", tuple(sorted(set(self.dependencies), key=Dependency.sort_key))
        )

    def sort_key(self) -> Tuple[str, int, Version]:
        return (self.name, self.source.kind.order, self.version)


GroupTable = Tuple[Tuple[str, Tuple[str, ...]], ...]


def normalize_groups(root_groups: Mapping[str, Iterable[Union[Requirement, str]]]) -> GroupTable:
    """Normalize root groups into sorted, de-duplicated requirement strings."""
    table: Dict[str, set] = {}
    for group, reqs in root_groups.items():
        bucket = table.setdefault(normalize_name(group), set())
        for req in reqs:
            if not isinstance(req, Requirement):
                req = parse_requirement(str(req))
            bucket.add(req.to_string())
    return tuple((group, tuple(sorted(reqs))) for group, reqs in sorted(table.items()))


def compute_fingerprint(
    groups: GroupTable,
    catalog: str,
    environment: Tuple[Tuple[str, str], ...],
    mode: str,
    prereleases: Tuple[str, ...],
) -> str:
    """Hash of everything that determines a resolution's inputs."""
    payload = json.dumps(
        {
            "groups": {g: list(r) for g, r in groups},
            "catalog": catalog,
            "environment": dict(environment),
            "mode": mode,
            "prereleases": list(prereleases),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Resolution:
    """Immutable package-name to candidate mapping for one resolve pass."""
    packages: Tuple[ResolvedPackage, ...]
    groups: GroupTable = ()
    catalog: str = ""
    environment: Tuple[Tuple[str, str], ...] = ()
    mode: str = ResolutionMode.HIGHEST.value
    prereleases: Tuple[str, ...] = ()

    def __post_init__(self):
        ordered = tuple(sorted(self.packages, key=ResolvedPackage.sort_key))
        names = [p.name for p in ordered]
        if len(names) != len(set(names)):
            raise ValueError("A package may only be chosen once per resolution")
        object.__setattr__(self, "packages", ordered)
        object.__setattr__(self, "environment", tuple(sorted(self.environment)))
        object.__setattr__(
            self, "groups", tuple(sorted((g, tuple(sorted(r))) for g, r in self.groups))
        )
        object.__setattr__(self, "prereleases", tuple(sorted(self.prereleases)))

    @classmethod
    def build(cls, packages: Iterable[ResolvedPackage], **kwargs) -> "Resolution":
        return cls(packages=tuple(packages), **kwargs)

    @property
    def fingerprint(self) -> str:
        return compute_fingerprint(
            self.groups, self.catalog, self.environment, self.mode, self.prereleases
        )

    def group_names(self) -> List[str]:
        return [g for g, _ in self.groups]

    def get(self, name: str) -> Optional[ResolvedPackage]:
        key = normalize_name(name)
        for package in self.packages:
            if package.name == key:
                return package
        return None

    def __getitem__(self, name: str) -> ResolvedPackage:
        package = self.get(name)
        if package is None:
            raise KeyError(name)
        return package

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __iter__(self) -> Iterator[ResolvedPackage]:
        return iter(self.packages)

    def __len__(self) -> int:
        return len(self.packages)

    def versions(self) -> Dict[str, str]:
        """Convenience mapping of name to version string."""
        return {p.name: str(p.version) for p in self.packages}

    def marker_holds(self, marker: str, extra: str = "") -> bool:
        """Evaluate a recorded marker against the locked environment."""
        if not marker:
            return True
        values = dict(self.environment)
        values["extra"] = extra
        return Marker(marker).evaluate(values)

    def active_dependencies(self, package: ResolvedPackage) -> List[Dependency]:
        """Recorded edges of ``package`` that were in effect when locked."""
        names = {p.name for p in self.packages}
        return [
            d for d in package.dependencies
            if d.name in names and self.marker_holds(d.marker, d.extra)
        ]

    def closure(self, roots: Iterable[str]) -> Set[str]:
        """Names reachable from ``roots`` through active dependency edges."""
        by_name = {p.name: p for p in self.packages}
        seen: Set[str] = set()
        pending = [normalize_name(r) for r in roots]
        while pending:
            name = pending.pop()
            if name in seen or name not in by_name:
                continue
            seen.add(name)
            pending.extend(d.name for d in self.active_dependencies(by_name[name]))
        return seen
