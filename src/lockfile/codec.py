"""TOML lockfile encoding, decoding and freshness checks.

Layout::

    version = 1
    fingerprint = "sha256:..."

    [manifest]            # group -> normalized root requirement strings
    [environment]         # marker variables the lock was computed for
    [options]             # catalog identity, mode, prerelease policy
    [[package]]           # one record per chosen candidate

Records are ordered by name, source kind, then version, and every list
inside a record is sorted, so the same Resolution always encodes to the same
bytes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import tomli_w

from constants import Constants
from common.errors import FormatError, ParseError, StaleLockError, UnsupportedFormat
from resolution.models import (
    Dependency,
    GroupTable,
    PrereleasePolicy,
    Resolution,
    ResolutionMode,
    ResolvedPackage,
    compute_fingerprint,
    normalize_groups,
)
from versioning.environment import Environment
from versioning.models import Requirement, source_from_dict, source_to_dict
from versioning.parser import parse_version

try:
    import tomllib as toml  # type: ignore
except ImportError:  # Python < 3.11
    import tomli as toml  # type: ignore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockStatus:
    """Outcome of a freshness check; ``reason`` is empty when fresh."""
    fresh: bool
    reason: str = ""

    @property
    def stale(self) -> bool:
        return not self.fresh

    def raise_for_status(self) -> None:
        """Raise StaleLockError when the lockfile is stale."""
        if not self.fresh:
            raise StaleLockError(self.reason)

    def __bool__(self) -> bool:
        return self.fresh


def _package_record(package: ResolvedPackage) -> Dict[str, Any]:
    return {
        "name": package.name,
        "version": str(package.version),
        "source": source_to_dict(package.source),
        "digest": package.digest,
        "groups": list(package.groups),
        "extras": list(package.extras),
        "dependencies": [
            {"name": d.name, "specifier": d.specifier, "marker": d.marker, "extra": d.extra}
            for d in package.dependencies
        ],
    }


def encode(resolution: Resolution) -> bytes:
    """Serialize a Resolution to lockfile bytes."""
    document = {
        "version": Constants.LOCKFILE_FORMAT_VERSION,
        "fingerprint": resolution.fingerprint,
        "manifest": {group: list(reqs) for group, reqs in resolution.groups},
        "environment": dict(resolution.environment),
        "options": {
            "catalog": resolution.catalog,
            "mode": resolution.mode,
            "prereleases": list(resolution.prereleases),
        },
        "package": [_package_record(p) for p in resolution.packages],
    }
    text = tomli_w.dumps(document)
    if not text.endswith("\n"):
        text += "\n"
    return text.encode("utf-8")


def _table(document: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = document.get(key, {})
    if not isinstance(value, dict):
        raise FormatError(f"Lockfile [{key}] must be a table")
    return value


def _strings(value: Any, what: str) -> Tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise FormatError(f"Lockfile {what} must be a list of strings")
    return tuple(value)


def _read_package(record: Any) -> ResolvedPackage:
    if not isinstance(record, dict):
        raise FormatError("Lockfile [[package]] entries must be tables")
    name = record["name"]
    dependencies = []
    for dep in record.get("dependencies", []):
        if not isinstance(dep, dict):
            raise FormatError(f"Dependency of {name} must be a table")
        dependencies.append(
            Dependency(
                name=str(dep["name"]),
                specifier=str(dep.get("specifier", "")),
                marker=str(dep.get("marker", "")),
                extra=str(dep.get("extra", "")),
            )
        )
    return ResolvedPackage(
        name=str(name),
        version=parse_version(record["version"]),
        source=source_from_dict(record["source"]),
        digest=str(record.get("digest", "")),
        groups=_strings(record.get("groups", []), f"groups of {name}"),
        extras=_strings(record.get("extras", []), f"extras of {name}"),
        dependencies=tuple(dependencies),
    )


def decode(data: bytes) -> Resolution:
    """Parse lockfile bytes back into a Resolution.

    Raises:
        UnsupportedFormat: The format tag is newer than this version reads.
        FormatError: Malformed TOML, missing fields, or a header fingerprint
            that does not match the recorded manifest.
    """
    try:
        document = toml.loads(data.decode("utf-8"))
    except UnicodeDecodeError as exc:
        raise FormatError(f"Lockfile is not valid UTF-8: {exc}") from exc
    except toml.TOMLDecodeError as exc:
        raise FormatError(f"Lockfile is not valid TOML: {exc}") from exc

    tag = document.get("version")
    if isinstance(tag, bool) or not isinstance(tag, int):
        raise FormatError("Lockfile is missing an integer format version")
    if tag > Constants.LOCKFILE_FORMAT_VERSION:
        raise UnsupportedFormat(tag, Constants.LOCKFILE_FORMAT_VERSION)
    if tag < 1:
        raise FormatError(f"Invalid lockfile format version {tag}")

    try:
        manifest = _table(document, "manifest")
        groups: GroupTable = tuple(
            (str(group), _strings(reqs, f"manifest group {group!r}"))
            for group, reqs in sorted(manifest.items())
        )
        environment = tuple(sorted((str(k), str(v)) for k, v in _table(document, "environment").items()))
        options = _table(document, "options")
        packages = document.get("package", [])
        if not isinstance(packages, list):
            raise FormatError("Lockfile [[package]] must be an array of tables")
        resolution = Resolution.build(
            [_read_package(record) for record in packages],
            groups=groups,
            catalog=str(options.get("catalog", "")),
            environment=environment,
            mode=str(options.get("mode", ResolutionMode.HIGHEST.value)),
            prereleases=_strings(options.get("prereleases", []), "prereleases"),
        )
    except FormatError:
        raise
    except KeyError as exc:
        raise FormatError(f"Lockfile is missing field {exc}") from exc
    except (TypeError, ValueError, ParseError) as exc:
        raise FormatError(f"Malformed lockfile: {exc}") from exc

    if document.get("fingerprint") != resolution.fingerprint:
        raise FormatError("Lockfile fingerprint does not match its manifest")
    return resolution


def _describe_changes(
    locked: Resolution,
    groups: GroupTable,
    catalog: str,
    environment: Tuple[Tuple[str, str], ...],
    mode: str,
    prereleases: Tuple[str, ...],
) -> str:
    reasons: List[str] = []
    before, after = dict(locked.groups), dict(groups)
    for group in sorted(set(after) - set(before)):
        reasons.append(f"group '{group}' added")
    for group in sorted(set(before) - set(after)):
        reasons.append(f"group '{group}' removed")
    for group in sorted(set(before) & set(after)):
        if before[group] != after[group]:
            reasons.append(f"requirements of group '{group}' changed")
    if locked.catalog != catalog:
        reasons.append(f"catalog changed ({locked.catalog} -> {catalog})")
    if locked.environment != environment:
        reasons.append("environment changed")
    if locked.mode != mode:
        reasons.append(f"resolution mode changed ({locked.mode} -> {mode})")
    if locked.prereleases != prereleases:
        reasons.append("prerelease policy changed")
    return "; ".join(reasons) or "fingerprint mismatch"


def is_consistent(
    data: bytes,
    root_groups: Mapping[str, Iterable[Union[Requirement, str]]],
    catalog_fingerprint: str,
    environment: Optional[Environment] = None,
    mode: Union[None, str, ResolutionMode] = None,
    allow_prerelease: Union[None, bool, Iterable[str], PrereleasePolicy] = None,
) -> LockStatus:
    """Compare a lockfile against the current inputs without resolving.

    Inputs left as None are taken from the lockfile itself, so a caller can
    check only the root groups and catalog identity.
    """
    locked = decode(data)
    groups = normalize_groups(root_groups)
    env_values = environment.values if environment is not None else locked.environment
    if mode is None:
        mode_value = locked.mode
    else:
        mode_value = mode.value if isinstance(mode, ResolutionMode) else ResolutionMode(mode).value
    if allow_prerelease is None:
        prereleases = locked.prereleases
    else:
        prereleases = PrereleasePolicy.coerce(allow_prerelease).as_tuple()

    current = compute_fingerprint(groups, catalog_fingerprint, env_values, mode_value, prereleases)
    if current == locked.fingerprint:
        return LockStatus(fresh=True)
    reason = _describe_changes(locked, groups, catalog_fingerprint, env_values, mode_value, prereleases)
    logger.info("Lockfile is stale: %s", reason)
    return LockStatus(fresh=False, reason=reason)
