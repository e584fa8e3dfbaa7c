"""Readers for direct sources: local paths, git repositories and URL archives.

Each reader returns a CandidateVersion pinned to the content it read: a git
ref becomes the resolved commit, a URL carries the archive digest, a path
carries the digest of its project metadata.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import subprocess
import tempfile
import zipfile
from email.parser import HeaderParser
from typing import Any, Dict, Optional

from common.errors import NetworkError, NotFound
from common.http_client import get_bytes
from common.logging_utils import safe_url
from versioning.models import (
    CandidateVersion,
    GitSource,
    PathSource,
    RegistrySource,
    Source,
    UrlSource,
    normalize_name,
)
from versioning.parser import parse_requirement, parse_version
from .catalog import split_requires_dist

logger = logging.getLogger(__name__)

try:
    import tomllib as toml  # type: ignore
except ImportError:  # Python < 3.11
    import tomli as toml  # type: ignore


def candidate_from_pyproject(
    data: Dict[str, Any], name: str, source: Any, digest: str
) -> CandidateVersion:
    """Build a candidate from a parsed ``pyproject.toml`` mapping."""
    project = data.get("project")
    if not isinstance(project, dict):
        raise NotFound(f"{source.locator()} has no [project] table")
    declared = normalize_name(str(project.get("name", "")))
    if declared != name:
        raise NotFound(f"{source.locator()} declares {declared!r}, expected {name!r}")
    if "version" not in project:
        raise NotFound(f"{source.locator()} does not declare a static version")
    dependencies = tuple(parse_requirement(r) for r in project.get("dependencies", []))
    extras = {
        normalize_name(extra): tuple(parse_requirement(r) for r in reqs)
        for extra, reqs in sorted((project.get("optional-dependencies") or {}).items())
    }
    return CandidateVersion(
        name=name,
        version=parse_version(project["version"]),
        source=source,
        digest=digest,
        dependencies=dependencies,
        extra_dependencies=extras,
    )


def read_project_dir(name: str, directory: str, source: Any) -> CandidateVersion:
    """Read ``pyproject.toml`` from ``directory``."""
    pyproject = os.path.join(directory, "pyproject.toml")
    try:
        with open(pyproject, "rb") as fh:
            raw = fh.read()
    except FileNotFoundError as exc:
        raise NotFound(f"No pyproject.toml in {directory}") from exc
    except OSError as exc:
        raise NetworkError(f"Failed to read {pyproject}: {exc}") from exc
    try:
        data = toml.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, toml.TOMLDecodeError) as exc:
        raise NotFound(f"Invalid pyproject.toml in {directory}: {exc}") from exc
    digest = "sha256:" + hashlib.sha256(raw).hexdigest()
    return candidate_from_pyproject(data, name, source, digest)


class DirectSourceReader:
    """Fetches metadata for path, git and url sources.

    Relative paths are resolved against ``root``.
    """

    def __init__(self, root: Optional[str] = None, git: str = "git"):
        self.root = root or os.getcwd()
        self.git = git

    def read(self, name: str, source: Source) -> CandidateVersion:
        """Dispatch on the source variant."""
        if isinstance(source, PathSource):
            return self.read_path(name, source)
        if isinstance(source, GitSource):
            return self.read_git(name, source)
        if isinstance(source, UrlSource):
            return self.read_url(name, source)
        if isinstance(source, RegistrySource):
            raise TypeError(f"{name}: registry sources are not direct")
        raise TypeError(f"Unknown source variant: {source!r}")

    def read_path(self, name: str, source: PathSource) -> CandidateVersion:
        directory = os.path.expanduser(source.path)
        if not os.path.isabs(directory):
            directory = os.path.join(self.root, directory)
        return read_project_dir(name, directory, source)

    def read_url(self, name: str, source: UrlSource) -> CandidateVersion:
        filename = source.url.rsplit("/", 1)[-1].split("#", 1)[0].split("?", 1)[0]
        if not filename.endswith(".whl"):
            raise NotFound(f"Only wheel URLs carry static metadata: {safe_url(source.url)}")
        body = get_bytes(source.url)
        digest = "sha256:" + hashlib.sha256(body).hexdigest()
        try:
            with zipfile.ZipFile(io.BytesIO(body)) as wheel:
                metadata_name = next(
                    (n for n in wheel.namelist() if n.endswith(".dist-info/METADATA")), None
                )
                if metadata_name is None:
                    raise NotFound(f"{safe_url(source.url)} has no METADATA")
                text = wheel.read(metadata_name).decode("utf-8")
        except zipfile.BadZipFile as exc:
            raise NotFound(f"{safe_url(source.url)} is not a valid wheel") from exc
        headers = HeaderParser().parsestr(text)
        declared = normalize_name(headers.get("Name", ""))
        if declared != name:
            raise NotFound(f"{safe_url(source.url)} contains {declared!r}, expected {name!r}")
        base, extras = split_requires_dist(headers.get_all("Requires-Dist") or [])
        return CandidateVersion(
            name=name,
            version=parse_version(headers.get("Version", "")),
            source=source,
            digest=digest,
            dependencies=base,
            extra_dependencies=extras,
        )

    def read_git(self, name: str, source: GitSource) -> CandidateVersion:
        commit = self._resolve_commit(source)
        pinned = GitSource(url=source.url, ref=commit, subdirectory=source.subdirectory)
        with tempfile.TemporaryDirectory(prefix="depforge-git-") as checkout:
            self._run_git("clone", "--quiet", "--no-checkout", source.url, checkout)
            self._run_git("-C", checkout, "checkout", "--quiet", commit)
            directory = os.path.join(checkout, source.subdirectory) if source.subdirectory else checkout
            candidate = read_project_dir(name, directory, pinned)
        return CandidateVersion(
            name=candidate.name,
            version=candidate.version,
            source=pinned,
            digest=f"git:{commit}",
            dependencies=candidate.dependencies,
            extra_dependencies=candidate.extra_dependencies,
        )

    def _resolve_commit(self, source: GitSource) -> str:
        ref = source.ref or "HEAD"
        if len(ref) == 40 and all(c in "0123456789abcdef" for c in ref.lower()):
            return ref.lower()
        output = self._run_git("ls-remote", source.url, ref)
        for line in output.splitlines():
            sha, _, _ = line.partition("\t")
            if sha:
                return sha.strip()
        raise NotFound(f"Ref {ref!r} not found in {safe_url(source.url)}")

    def _run_git(self, *args: str) -> str:
        try:
            result = subprocess.run(
                [self.git, *args],
                capture_output=True,
                text=True,
                timeout=120,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise NetworkError(f"git {args[0]} failed: {exc}") from exc
        if result.returncode != 0:
            raise NetworkError(f"git {args[0]} failed: {result.stderr.strip()}")
        return result.stdout
