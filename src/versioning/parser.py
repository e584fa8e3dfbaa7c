"""Requirement parsing utilities.

Accepts PEP 508 strings, including direct references:

- ``name @ git+https://host/repo.git@ref#subdirectory=pkg``
- ``name @ https://host/pkg-1.0-py3-none-any.whl``
- ``name @ file:///abs/path`` or ``name @ ./relative/path``
"""

from __future__ import annotations

import urllib.parse
from typing import Iterable, List, Optional

from packaging.requirements import InvalidRequirement
from packaging.requirements import Requirement as Pep508Requirement
from packaging.specifiers import InvalidSpecifier
from packaging.version import InvalidVersion, Version

from common.errors import ParseError
from .models import (
    GitSource,
    PathSource,
    RegistrySource,
    Requirement,
    Source,
    UrlSource,
    normalize_name,
)


def parse_version(text: str) -> Version:
    """Parse a PEP 440 version, raising ParseError on invalid input."""
    try:
        return Version(str(text).strip())
    except InvalidVersion as exc:
        raise ParseError(str(text), "invalid version") from exc


def _parse_git(url: str) -> GitSource:
    """Split ``git+<url>[@ref][#subdirectory=..]`` into a GitSource."""
    bare = url[len("git+"):]
    bare, _, fragment = bare.partition("#")
    subdirectory = ""
    for key, value in urllib.parse.parse_qsl(fragment):
        if key == "subdirectory":
            subdirectory = value
    parts = urllib.parse.urlsplit(bare)
    path, ref = parts.path, ""
    if "@" in path:
        path, ref = path.rsplit("@", 1)
    repo = urllib.parse.urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))
    return GitSource(url=repo, ref=ref, subdirectory=subdirectory)


def _looks_like_path(locator: str) -> bool:
    return locator.startswith((".", "/", "~")) or (len(locator) > 2 and locator[1] == ":")


def parse_source(locator: str, text: str) -> Source:
    """Classify a direct-reference locator into a source variant."""
    if locator.startswith("git+"):
        return _parse_git(locator)
    if locator.startswith("file:"):
        path = urllib.parse.unquote(urllib.parse.urlsplit(locator).path)
        if not path:
            raise ParseError(text, "empty file URL")
        return PathSource(path=path)
    if locator.startswith(("http://", "https://")):
        return UrlSource(url=locator)
    if _looks_like_path(locator):
        return PathSource(path=locator)
    raise ParseError(text, f"unsupported source {locator!r}")


def parse_requirement(text: str, index: str = "") -> Requirement:
    """Parse one requirement string into a Requirement.

    Args:
        text: PEP 508 requirement text.
        index: Index URL recorded on registry-sourced requirements.

    Returns:
        Requirement with a normalized name.
    """
    raw = (text or "").strip()
    if not raw:
        raise ParseError(text, "empty requirement")
    try:
        parsed = Pep508Requirement(raw)
    except (InvalidRequirement, InvalidSpecifier) as exc:
        raise ParseError(raw, str(exc)) from exc

    source: Source = RegistrySource(index=index)
    if parsed.url:
        source = parse_source(parsed.url, raw)

    return Requirement(
        name=normalize_name(parsed.name),
        specifier=parsed.specifier,
        extras=frozenset(normalize_name(e) for e in parsed.extras),
        marker=parsed.marker,
        source=source,
    )


def parse_requirements(lines: Iterable[str], index: str = "") -> List[Requirement]:
    """Parse requirement lines, skipping blanks and ``#`` comments."""
    result: List[Requirement] = []
    for line in lines:
        stripped = line.split(" #", 1)[0].strip()
        if not stripped or stripped.startswith("#"):
            continue
        result.append(parse_requirement(stripped, index=index))
    return result


def try_parse_version(text: Optional[str]) -> Optional[Version]:
    """Lenient variant used for catalog listings that may carry junk entries."""
    if text is None:
        return None
    try:
        return Version(str(text))
    except InvalidVersion:
        return None
