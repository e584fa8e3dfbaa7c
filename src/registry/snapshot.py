"""Offline catalog backed by a JSON snapshot.

Snapshot layout::

    {
      "packages": {
        "pkga": {
          "1.5": {"dependencies": ["pkgb>=2.0"], "extras": {"socks": ["pysocks"]}}
        }
      },
      "direct": {
        "./libs/tool": {"name": "tool", "version": "0.3", "dependencies": []},
        "git+https://example.com/x.git@main": {"name": "x", "version": "1.0", "commit": "<sha>"}
      }
    }

Direct entries are keyed by the source locator. A missing ``digest`` is
derived from the entry's canonical JSON.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Dict, List, Optional

from packaging.version import Version

from common.errors import NotFound
from versioning.models import (
    CandidateVersion,
    GitSource,
    RegistrySource,
    Source,
    normalize_name,
)
from versioning.parser import parse_requirement, parse_version
from .cache import MetadataCache
from .catalog import SourceCatalog


def _entry_digest(entry: Dict[str, Any]) -> str:
    payload = json.dumps(entry, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()


class SnapshotCatalog(SourceCatalog):
    """Catalog serving a fixed, in-memory snapshot."""

    def __init__(self, data: Dict[str, Any], cache: Optional[MetadataCache] = None, index: str = "snapshot"):
        super().__init__(cache)
        self.index = index
        self._packages: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for name, versions in (data.get("packages") or {}).items():
            bucket = self._packages.setdefault(normalize_name(name), {})
            for raw, entry in (versions or {}).items():
                bucket[str(parse_version(raw))] = dict(entry or {})
        self._direct: Dict[str, Dict[str, Any]] = {
            str(locator): dict(entry) for locator, entry in (data.get("direct") or {}).items()
        }
        canonical = json.dumps(
            {"packages": self._packages, "direct": self._direct}, sort_keys=True, separators=(",", ":")
        )
        self._fingerprint = "snapshot:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    @classmethod
    def from_file(cls, path: str, cache: Optional[MetadataCache] = None) -> "SnapshotCatalog":
        with open(path, "r", encoding="utf-8") as fh:
            return cls(json.load(fh), cache=cache)

    def fingerprint(self) -> str:
        return self._fingerprint

    def _list_versions(self, name: str) -> List[str]:
        if name not in self._packages:
            raise NotFound(f"Package {name} not found in snapshot")
        return list(self._packages[name])

    def _fetch_metadata(self, name: str, version: Version) -> CandidateVersion:
        entry = self._packages.get(name, {}).get(str(version))
        if entry is None:
            raise NotFound(f"{name} {version} not found in snapshot")
        return self._build(name, version, RegistrySource(index=self.index), entry)

    def _fetch_direct(self, name: str, source: Source) -> CandidateVersion:
        entry = self._direct.get(source.locator())
        if entry is None:
            raise NotFound(f"{source.locator()} not found in snapshot")
        if normalize_name(entry.get("name", "")) != name:
            raise NotFound(f"{source.locator()} provides {entry.get('name')!r}, expected {name!r}")
        pinned = source
        if isinstance(source, GitSource) and entry.get("commit"):
            pinned = GitSource(url=source.url, ref=entry["commit"], subdirectory=source.subdirectory)
        return self._build(name, parse_version(entry["version"]), pinned, entry)

    @staticmethod
    def _build(name: str, version: Version, source: Source, entry: Dict[str, Any]) -> CandidateVersion:
        return CandidateVersion(
            name=name,
            version=version,
            source=source,
            digest=entry.get("digest") or _entry_digest(dict(entry, name=name, version=str(version))),
            dependencies=tuple(parse_requirement(r) for r in entry.get("dependencies", [])),
            extra_dependencies={
                normalize_name(extra): tuple(parse_requirement(r) for r in reqs)
                for extra, reqs in sorted((entry.get("extras") or {}).items())
            },
        )
