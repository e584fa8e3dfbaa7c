"""Data models for requirements, sources and candidates."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Optional, Tuple, Union

from packaging.markers import Marker
from packaging.specifiers import SpecifierSet
from packaging.utils import canonicalize_name
from packaging.version import Version

if TYPE_CHECKING:
    from .environment import Environment


def normalize_name(name: str) -> str:
    """Return the PEP 503 normalized form of a package name."""
    return canonicalize_name(name)


class SourceKind(Enum):
    """Kinds of package sources, in lockfile sort order."""
    REGISTRY = "registry"
    GIT = "git"
    URL = "url"
    PATH = "path"

    @property
    def order(self) -> int:
        return _KIND_ORDER[self]


_KIND_ORDER = {
    SourceKind.REGISTRY: 0,
    SourceKind.GIT: 1,
    SourceKind.URL: 2,
    SourceKind.PATH: 3,
}


@dataclass(frozen=True)
class RegistrySource:
    """Package served by a version-listing index."""
    index: str = ""
    kind = SourceKind.REGISTRY

    def locator(self) -> str:
        return self.index


@dataclass(frozen=True)
class GitSource:
    """Package built from a git repository; ``ref`` is a commit once pinned."""
    url: str
    ref: str = ""
    subdirectory: str = ""
    kind = SourceKind.GIT

    def locator(self) -> str:
        text = f"git+{self.url}"
        if self.ref:
            text += f"@{self.ref}"
        if self.subdirectory:
            text += f"#subdirectory={self.subdirectory}"
        return text


@dataclass(frozen=True)
class UrlSource:
    """Package archive at a fixed URL."""
    url: str
    kind = SourceKind.URL

    def locator(self) -> str:
        return self.url


@dataclass(frozen=True)
class PathSource:
    """Package in a local directory (including workspace members)."""
    path: str
    kind = SourceKind.PATH

    def locator(self) -> str:
        return self.path


Source = Union[RegistrySource, GitSource, UrlSource, PathSource]


def is_direct(source: Source) -> bool:
    """True for sources that skip version search."""
    return source.kind is not SourceKind.REGISTRY


def source_to_dict(source: Source) -> Dict[str, str]:
    """Encode a source as a flat mapping keyed by its kind."""
    if isinstance(source, RegistrySource):
        return {"registry": source.index}
    if isinstance(source, GitSource):
        data = {"git": source.url}
        if source.ref:
            data["ref"] = source.ref
        if source.subdirectory:
            data["subdirectory"] = source.subdirectory
        return data
    if isinstance(source, UrlSource):
        return {"url": source.url}
    if isinstance(source, PathSource):
        return {"path": source.path}
    raise TypeError(f"Unknown source variant: {source!r}")


def source_from_dict(data: Dict[str, Any]) -> Source:
    """Inverse of :func:`source_to_dict`; raises ValueError on unknown shapes."""
    if not isinstance(data, dict):
        raise ValueError(f"Source must be a table, got {type(data).__name__}")
    if "registry" in data:
        return RegistrySource(index=str(data["registry"]))
    if "git" in data:
        return GitSource(
            url=str(data["git"]),
            ref=str(data.get("ref", "")),
            subdirectory=str(data.get("subdirectory", "")),
        )
    if "url" in data:
        return UrlSource(url=str(data["url"]))
    if "path" in data:
        return PathSource(path=str(data["path"]))
    raise ValueError(f"Unknown source table: {sorted(data)}")


@dataclass(frozen=True)
class Requirement:
    """A named constraint a dependency must satisfy."""
    name: str
    specifier: SpecifierSet = field(default_factory=SpecifierSet)
    extras: FrozenSet[str] = frozenset()
    marker: Optional[Marker] = None
    source: Source = field(default_factory=RegistrySource)

    def applies(self, environment: "Environment", extra: str = "") -> bool:
        """Evaluate the marker against ``environment`` with ``extra`` bound."""
        if self.marker is None:
            return True
        return self.marker.evaluate(environment.marker_values(extra))

    @property
    def is_pinned(self) -> bool:
        """Explicit ``==``/``===`` clause or a direct source."""
        if is_direct(self.source):
            return True
        return any(spec.operator in ("==", "===") and "*" not in spec.version
                   for spec in self.specifier)

    @property
    def names_prerelease(self) -> bool:
        """True when a clause explicitly mentions a pre-release version."""
        for spec in self.specifier:
            try:
                if Version(spec.version.rstrip(".*")).is_prerelease:
                    return True
            except ValueError:
                continue
        return False

    def to_string(self) -> str:
        """Canonical text used for manifests, fingerprints and messages."""
        text = self.name
        if self.extras:
            text += "[" + ",".join(sorted(self.extras)) + "]"
        if is_direct(self.source):
            text += f" @ {self.source.locator()}"
        else:
            text += str(self.specifier)
        if self.marker is not None:
            text += f" ; {self.marker}"
        return text

    def __str__(self) -> str:
        return self.to_string()


@dataclass(frozen=True)
class CandidateVersion:
    """A concrete version or source pin, with its declared dependencies."""
    name: str
    version: Version
    source: Source
    digest: str = ""
    dependencies: Tuple[Requirement, ...] = ()
    extra_dependencies: Dict[str, Tuple[Requirement, ...]] = field(default_factory=dict)

    @property
    def extras(self) -> FrozenSet[str]:
        return frozenset(self.extra_dependencies)

    def __str__(self) -> str:
        if is_direct(self.source):
            return f"{self.name} {self.version} ({self.source.locator()})"
        return f"{self.name} {self.version}"
