"""Exception taxonomy shared by the parser, catalogs, solver and lockfile codec."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Tuple


class DepforgeError(Exception):
    """Base class for all user-facing failures."""


class ParseError(DepforgeError):
    """Malformed requirement syntax."""

    def __init__(self, text: str, reason: str):
        self.text = text
        self.reason = reason
        super().__init__(f"Invalid requirement {text!r}: {reason}")


class CatalogError(DepforgeError):
    """Failure reported by a source catalog."""


class NetworkError(CatalogError):
    """Transient transport failure; retried at the catalog boundary."""


class NotFound(CatalogError):
    """The package, version or source does not exist."""


class WorkspaceError(DepforgeError):
    """Invalid workspace configuration."""


class CycleError(WorkspaceError):
    """Workspace members depend on each other in a cycle."""

    def __init__(self, path: Sequence[str]):
        self.path = tuple(path)
        super().__init__("Workspace dependency cycle: " + " -> ".join(self.path))


class FormatError(DepforgeError):
    """Lockfile could not be decoded."""


class UnsupportedFormat(FormatError):
    """Lockfile was written by a newer, unknown format version."""

    def __init__(self, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Lockfile format version {found} is newer than supported version {supported}"
        )


class StaleLockError(DepforgeError):
    """Lockfile no longer matches the current requirements."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Lockfile is stale: {reason}")


class ResolveError(DepforgeError):
    """Resolution could not be completed."""


@dataclass(frozen=True)
class ConflictStep:
    """One requirement edge: ``origin`` declared ``requirement``."""

    origin: str
    requirement: str

    def __str__(self) -> str:
        return f"{self.origin} requires {self.requirement}"


@dataclass(frozen=True)
class ConflictPath:
    """Requirement edges leading from a root group to the conflicting package."""

    steps: Tuple[ConflictStep, ...]

    @property
    def root(self) -> str:
        return self.steps[0].origin if self.steps else ""

    def __str__(self) -> str:
        return " -> ".join(str(step) for step in self.steps)


class UnsatisfiableError(ResolveError):
    """No assignment satisfies every reachable requirement.

    ``chain`` holds the minimal set of requirement paths that conflict on
    ``package``: dropping any one of them makes the rest satisfiable.
    """

    def __init__(self, package: str, chain: Sequence[ConflictPath], detail: str = ""):
        self.package = package
        self.chain = tuple(chain)
        self.detail = detail
        super().__init__(self.explain())

    def explain(self) -> str:
        lines = [f"Cannot find a version of {self.package} that satisfies all requirements:"]
        for path in self.chain:
            lines.append(f"  - {path}")
        if self.detail:
            lines.append(self.detail)
        return "\n".join(lines)


class ResolutionTooDeep(UnsatisfiableError):
    """The per-package attempt bound was exhausted."""
