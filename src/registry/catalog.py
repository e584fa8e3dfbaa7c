"""Source catalog abstraction.

A catalog enumerates candidate versions of a package and fetches the
metadata (declared dependencies and extras) of one candidate. Subclasses
implement ``_list_versions`` and ``_fetch_metadata``; the public methods add
the bounded-backoff retry boundary and metadata caching.
"""

from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar, Union

from packaging.version import Version

from constants import Constants
from common.errors import NetworkError, NotFound, ParseError
from common.logging_utils import extra_context, is_debug_enabled
from versioning.models import (
    CandidateVersion,
    RegistrySource,
    Requirement,
    Source,
    is_direct,
    normalize_name,
    source_from_dict,
    source_to_dict,
)
from versioning.parser import parse_requirement, parse_version
from .cache import MetadataCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXTRA_MARKER = re.compile(r"""\bextra\s*==\s*['"]([^'"]+)['"]""")


def split_requires_dist(
    lines: Iterable[str], index: str = ""
) -> Tuple[Tuple[Requirement, ...], Dict[str, Tuple[Requirement, ...]]]:
    """Split Requires-Dist entries into base and extra-scoped dependencies.

    An entry whose marker mentions ``extra == "x"`` belongs to extra ``x``;
    its marker is kept and evaluated later with that extra bound.
    """
    base: List[Requirement] = []
    extras: Dict[str, List[Requirement]] = {}
    for line in lines:
        req = parse_requirement(line, index=index)
        match = _EXTRA_MARKER.search(str(req.marker)) if req.marker is not None else None
        if match:
            extras.setdefault(normalize_name(match.group(1)), []).append(req)
        else:
            base.append(req)
    return tuple(base), {k: tuple(v) for k, v in sorted(extras.items())}


def candidate_to_dict(candidate: CandidateVersion) -> Dict[str, Any]:
    """Serialize a candidate for the metadata cache."""
    return {
        "name": candidate.name,
        "version": str(candidate.version),
        "source": source_to_dict(candidate.source),
        "digest": candidate.digest,
        "dependencies": [r.to_string() for r in candidate.dependencies],
        "extras": {
            extra: [r.to_string() for r in reqs]
            for extra, reqs in sorted(candidate.extra_dependencies.items())
        },
    }


def candidate_from_dict(data: Dict[str, Any]) -> CandidateVersion:
    """Inverse of :func:`candidate_to_dict`."""
    return CandidateVersion(
        name=normalize_name(data["name"]),
        version=parse_version(data["version"]),
        source=source_from_dict(data["source"]),
        digest=data.get("digest", ""),
        dependencies=tuple(parse_requirement(r) for r in data.get("dependencies", [])),
        extra_dependencies={
            normalize_name(extra): tuple(parse_requirement(r) for r in reqs)
            for extra, reqs in data.get("extras", {}).items()
        },
    )


class SourceCatalog(ABC):
    """Base class for candidate catalogs."""

    def __init__(self, cache: Optional[MetadataCache] = None):
        self.cache = cache

    @abstractmethod
    def fingerprint(self) -> str:
        """Identity of the catalog (index URL, snapshot digest, ...)."""

    @abstractmethod
    def _list_versions(self, name: str) -> List[str]:
        """Return all version strings the registry offers for ``name``."""

    @abstractmethod
    def _fetch_metadata(self, name: str, version: Version) -> CandidateVersion:
        """Return metadata for one registry version."""

    def _fetch_direct(self, name: str, source: Source) -> CandidateVersion:
        """Return metadata for a git, url or path source."""
        raise NotFound(f"{type(self).__name__} cannot fetch {name} from {source.locator()}")

    def list_versions(self, name: str, source: Optional[Source] = None) -> List[str]:
        """List versions (registry) or the single locator (direct sources)."""
        source = source or RegistrySource()
        if is_direct(source):
            return [source.locator()]
        return self._with_retries(f"list versions of {name}", self._list_versions, name)

    def fetch_metadata(self, name: str, target: Union[Version, str, Source]) -> CandidateVersion:
        """Fetch one candidate's metadata.

        ``target`` is a registry version (Version or str) or a direct source.
        Registry metadata is immutable per (name, version) and is cached.
        """
        if isinstance(target, (Version, str)):
            version = target if isinstance(target, Version) else parse_version(target)
            key = f"{self.fingerprint()}:{name}:{version}"
            if self.cache is not None:
                cached = self.cache.get(key)
                if cached is not None:
                    return candidate_from_dict(json.loads(cached.decode("utf-8")))
            candidate = self._with_retries(
                f"fetch {name} {version}", self._fetch_metadata, name, version
            )
            if self.cache is not None:
                payload = json.dumps(candidate_to_dict(candidate), sort_keys=True)
                self.cache.put(key, payload.encode("utf-8"))
            return candidate
        return self._with_retries(
            f"fetch {name} from {target.locator()}", self._fetch_direct, name, target
        )

    def _with_retries(self, what: str, func: Callable[..., T], *args: Any) -> T:
        """Call ``func`` retrying NetworkError with exponential backoff.

        NotFound and ParseError are permanent and propagate immediately.
        """
        attempts = max(1, Constants.HTTP_RETRY_MAX)
        for attempt in range(attempts):
            try:
                return func(*args)
            except (NotFound, ParseError):
                raise
            except NetworkError as exc:
                if attempt + 1 >= attempts:
                    logger.warning("Giving up on %s after %d attempts: %s", what, attempts, exc)
                    raise
                delay = Constants.HTTP_RETRY_BASE_DELAY_SEC * (2 ** attempt)
                if is_debug_enabled(logger):
                    logger.debug(
                        "Catalog retry",
                        extra=extra_context(
                            event="catalog_retry",
                            component="catalog",
                            action=what,
                            attempt=attempt + 1,
                            delay=delay,
                        )
                    )
                time.sleep(delay)
        raise AssertionError("unreachable")
