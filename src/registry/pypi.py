"""PyPI catalog backed by the JSON API (``/pypi/<name>/json``)."""

from __future__ import annotations

import hashlib
import logging
from typing import List, Optional

from packaging.version import Version

from constants import Constants
from common.errors import NetworkError
from common.http_client import get_json
from common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from versioning.models import CandidateVersion, RegistrySource
from versioning.parser import try_parse_version
from .cache import MetadataCache
from .catalog import SourceCatalog, split_requires_dist
from .direct import DirectSourceReader

logger = logging.getLogger(__name__)

HEADERS_JSON = {"Accept": "application/json"}


def _files_digest(files) -> str:
    """Combine per-file sha256 digests into one content digest."""
    entries = sorted(
        f"{f.get('filename', '')} {(f.get('digests') or {}).get('sha256', '')}"
        for f in files
        if isinstance(f, dict)
    )
    if not entries:
        return ""
    return "sha256:" + hashlib.sha256("\n".join(entries).encode("utf-8")).hexdigest()


class PyPICatalog(SourceCatalog):
    """Catalog for a PyPI-compatible JSON index.

    Args:
        index_url: Base URL ending in ``/pypi/``.
        cache: Optional metadata cache.
        direct: Reader for path/git/url sources.
    """

    def __init__(
        self,
        index_url: Optional[str] = None,
        cache: Optional[MetadataCache] = None,
        direct: Optional[DirectSourceReader] = None,
    ):
        super().__init__(cache)
        base = index_url or Constants.INDEX_URL
        self.index_url = base if base.endswith("/") else base + "/"
        self.direct = direct or DirectSourceReader()

    def fingerprint(self) -> str:
        return f"pypi:{self.index_url}"

    def _list_versions(self, name: str) -> List[str]:
        url = f"{self.index_url}{name}/json"
        with Timer() as timer:
            _, _, data = get_json(url, headers=HEADERS_JSON)
        if not isinstance(data, dict):
            raise NetworkError(f"Unexpected response from {safe_url(url)}")

        versions = []
        for raw, files in (data.get("releases") or {}).items():
            if try_parse_version(raw) is None:
                continue
            # Releases without files, or with every file yanked, are not installable.
            if not files or all(f.get("yanked") for f in files if isinstance(f, dict)):
                continue
            versions.append(raw)

        if is_debug_enabled(logger):
            logger.debug(
                "Listed versions",
                extra=extra_context(
                    event="list_versions",
                    component="pypi",
                    target=safe_url(url),
                    count=len(versions),
                    duration_ms=timer.duration_ms(),
                )
            )
        return versions

    def _fetch_metadata(self, name: str, version: Version) -> CandidateVersion:
        url = f"{self.index_url}{name}/{version}/json"
        _, _, data = get_json(url, headers=HEADERS_JSON)
        if not isinstance(data, dict):
            raise NetworkError(f"Unexpected response from {safe_url(url)}")
        info = data.get("info") or {}
        base, extras = split_requires_dist(info.get("requires_dist") or [])
        return CandidateVersion(
            name=name,
            version=version,
            source=RegistrySource(index=self.index_url),
            digest=_files_digest(data.get("urls") or []),
            dependencies=base,
            extra_dependencies=extras,
        )

    def _fetch_direct(self, name, source):
        return self.direct.read(name, source)
