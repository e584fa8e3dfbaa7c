"""Conflict-driven backtracking resolver.

The search state (edges per package, pins, applied extras) is owned by a
``Solver`` created for one resolve call. Decisions are pushed on a stack
together with the state they were made from; a conflict backjumps to the
most recent decision implicated in it and tries that decision's next
candidate. Every conflict is appended to the conflict log, from which the
minimal explanation is built when the search is exhausted.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, NoReturn, Optional, Sequence, Set, Tuple, Union

from packaging.version import Version

from constants import Constants
from common.errors import (
    CatalogError,
    ConflictPath,
    ConflictStep,
    NotFound,
    ResolutionTooDeep,
    UnsatisfiableError,
)
from common.logging_utils import Timer, extra_context, is_debug_enabled
from registry.catalog import SourceCatalog
from versioning.environment import Environment
from versioning.models import CandidateVersion, Requirement, Source, is_direct, normalize_name
from versioning.parser import try_parse_version
from .fetcher import FetchPool
from .models import (
    Dependency,
    PrereleasePolicy,
    Resolution,
    ResolutionMode,
    ResolvedPackage,
    normalize_groups,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Edge:
    """A marker-surviving requirement and who declared it."""
    requirement: Requirement
    parent: Optional[str] = None
    parent_version: Optional[Version] = None
    group: str = ""
    extra: str = ""

    def origin(self) -> str:
        if self.parent is None:
            return f"group '{self.group}'"
        label = f"{self.parent} {self.parent_version}"
        return f"{label} [{self.extra}]" if self.extra else label

    def identity(self) -> Tuple[str, str, str, str, str]:
        req = self.requirement
        return (self.parent or "", self.group, self.extra, req.to_string(), str(req.specifier))


@dataclass
class _State:
    edges: Dict[str, List[Edge]] = field(default_factory=dict)
    pins: Dict[str, CandidateVersion] = field(default_factory=dict)
    pin_sources: Dict[str, Optional[Source]] = field(default_factory=dict)
    applied: Dict[str, FrozenSet[str]] = field(default_factory=dict)

    def copy(self) -> "_State":
        return _State(
            edges={k: list(v) for k, v in self.edges.items()},
            pins=dict(self.pins),
            pin_sources=dict(self.pin_sources),
            applied=dict(self.applied),
        )

    def frontier(self) -> List[str]:
        return sorted(n for n, e in self.edges.items() if e and n not in self.pins)


@dataclass(frozen=True)
class _Option:
    """A registry version, or a direct source whose version is its content's."""
    version: Optional[Version] = None
    source: Optional[Source] = None

    @property
    def target(self) -> Union[Version, Source]:
        return self.source if self.source is not None else self.version


@dataclass
class _Decision:
    name: str
    state: _State
    options: List[_Option]
    conflict_set: Set[str] = field(default_factory=set)


@dataclass(frozen=True)
class _Conflict:
    name: str
    implicated: FrozenSet[str]
    chain: Tuple[ConflictPath, ...]
    exhaustive: bool = True


class Solver:
    """One resolve call's solver context.

    Args:
        root_groups: Group name to root requirements.
        catalog: Candidate catalog.
        environment: Marker environment snapshot.
        mode: Candidate preference mode.
        prereleases: Pre-release policy.
        max_attempts: Bound on candidates tried per package.
        concurrency: Number of fetch workers.
    """

    def __init__(
        self,
        root_groups: Mapping[str, Sequence[Requirement]],
        catalog: SourceCatalog,
        environment: Environment,
        mode: ResolutionMode = ResolutionMode.HIGHEST,
        prereleases: Optional[PrereleasePolicy] = None,
        max_attempts: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        self.root_groups: Dict[str, List[Requirement]] = {}
        for group, reqs in root_groups.items():
            self.root_groups.setdefault(normalize_name(group), []).extend(reqs)
        self.catalog = catalog
        self.environment = environment
        self.mode = mode
        self.prereleases = prereleases or PrereleasePolicy()
        self.max_attempts = max_attempts or Constants.MAX_ATTEMPTS_PER_PACKAGE
        self.concurrency = concurrency
        self.direct_names: Set[str] = {r.name for reqs in self.root_groups.values() for r in reqs}
        self.conflicts: List[_Conflict] = []
        self._pool: Optional[FetchPool] = None
        self._versions: Dict[str, List[Version]] = {}
        self._direct: Dict[Tuple[str, str], CandidateVersion] = {}
        self._attempts: Dict[str, int] = defaultdict(int)
        self._fetch_failures: Dict[str, List[str]] = defaultdict(list)
        self._warned_extras: Set[Tuple[str, str]] = set()

    # ------------------------------------------------------------------ search

    async def solve(self) -> Resolution:
        """Run the search to completion; raises UnsatisfiableError."""
        if is_debug_enabled(logger):
            logger.debug(
                "Solving for environment %s (%s mode)", self.environment.identity()[:12], self.mode.value
            )
        with Timer() as timer:
            async with FetchPool(self.catalog, self.concurrency) as pool:
                self._pool = pool
                try:
                    state = self._initial_state()
                    state = await self._search(state)
                finally:
                    self._pool = None
        logger.info("Resolved %d packages in %d ms", len(state.pins), timer.duration_ms())
        return self._build_resolution(state)

    def _initial_state(self) -> _State:
        state = _State()
        for group in sorted(self.root_groups):
            for req in self.root_groups[group]:
                if not req.applies(self.environment):
                    logger.debug("Dropping %s for this environment", req)
                    continue
                state.edges.setdefault(req.name, []).append(Edge(requirement=req, group=group))
        return state

    async def _search(self, state: _State) -> _State:
        stack: List[_Decision] = []
        while True:
            name = await self._select(state)
            if name is None:
                return state
            options = await self._options(state, name)
            if not options:
                conflict = self._record_conflict(state, name)
                state = await self._backjump(stack, set(conflict.implicated))
                continue
            decision = _Decision(name=name, state=state, options=options)
            stack.append(decision)
            next_state = await self._attempt(decision)
            if next_state is None:
                state = await self._backjump(stack, set(), top_exhausted=True)
            else:
                state = next_state

    async def _backjump(
        self, stack: List[_Decision], implicated: Set[str], top_exhausted: bool = False
    ) -> _State:
        """Revise the most recent implicated decision until one succeeds.

        An exhausted decision passes its conflict set, plus the parents of
        the edges that constrained it, further down the stack.
        """
        pending_exhausted = top_exhausted
        while True:
            if pending_exhausted:
                exhausted = stack.pop()
                implicated = set(exhausted.conflict_set)
                implicated.update(e.parent for e in exhausted.state.edges.get(exhausted.name, []) if e.parent)
                implicated.discard(exhausted.name)
                logger.debug("Exhausted candidates for %s; implicated: %s", exhausted.name, sorted(implicated))
            while stack and stack[-1].name not in implicated:
                stack.pop()
            if not stack:
                self._raise_unsatisfiable()
            target = stack[-1]
            target.conflict_set.update(implicated - {target.name})
            next_state = await self._attempt(target)
            if next_state is not None:
                return next_state
            pending_exhausted = True

    async def _attempt(self, decision: _Decision) -> Optional[_State]:
        """Try the decision's remaining options in preference order."""
        name = decision.name
        while decision.options:
            option = decision.options.pop(0)
            self._attempts[name] += 1
            if self._attempts[name] > self.max_attempts:
                self._raise_unsatisfiable(too_deep=name)
            fatal = option.source is not None and self._rooted(decision.state, name, option.source)
            candidate = await self._candidate(name, option, fatal=fatal)
            if candidate is None:
                continue
            state = decision.state.copy()
            edges = state.edges.get(name, [])
            rejected = [e for e in edges if not self._accepts(e, candidate, option.source)]
            if rejected:
                conflict = self._record_conflict(state, name, pinned=(candidate, option.source))
                decision.conflict_set.update(conflict.implicated - {name})
                continue
            state.pins[name] = candidate
            state.pin_sources[name] = option.source
            conflict = self._expand(state, name)
            if conflict is not None:
                decision.conflict_set.update(conflict.implicated - {name})
                continue
            if is_debug_enabled(logger):
                logger.debug(
                    "Pinned candidate",
                    extra=extra_context(
                        event="pin",
                        component="solver",
                        target=name,
                        version=str(candidate.version),
                        attempt=self._attempts[name],
                    )
                )
            return state
        return None

    def _expand(self, state: _State, name: str) -> Optional[_Conflict]:
        """Add the pinned candidate's dependencies (and requested extras)."""
        work = [name]
        expanded: Set[str] = set()
        while work:
            current = work.pop()
            expanded.add(current)
            candidate = state.pins[current]
            wanted: Set[str] = set()
            for edge in state.edges.get(current, []):
                wanted.update(edge.requirement.extras)
            applied = state.applied.get(current)
            additions: List[Tuple[Requirement, str]] = []
            if applied is None:
                applied = frozenset()
                additions.extend((req, "") for req in candidate.dependencies)
            for extra in sorted(wanted - applied):
                if extra in candidate.extra_dependencies:
                    additions.extend((req, extra) for req in candidate.extra_dependencies[extra])
                elif (current, extra) not in self._warned_extras:
                    self._warned_extras.add((current, extra))
                    logger.warning("%s %s does not provide extra '%s'", current, candidate.version, extra)
            state.applied[current] = applied | frozenset(wanted)

            for req, extra in additions:
                if not req.applies(self.environment, extra):
                    continue
                edge = Edge(requirement=req, parent=current, parent_version=candidate.version, extra=extra)
                state.edges.setdefault(req.name, []).append(edge)
                if req.name not in state.pins:
                    continue
                pinned = state.pins[req.name]
                if not self._accepts(edge, pinned, state.pin_sources.get(req.name)):
                    return self._record_conflict(
                        state, req.name, pinned=(pinned, state.pin_sources.get(req.name)), also=expanded
                    )
                if req.extras - state.applied.get(req.name, frozenset()):
                    work.append(req.name)
        return None

    # --------------------------------------------------------------- choosing

    async def _select(self, state: _State) -> Optional[str]:
        """Pick the next unresolved package deterministically.

        Order: explicit pin first, then fewest candidates, then name.
        """
        frontier = state.frontier()
        if not frontier:
            return None
        registry_names = []
        for name in frontier:
            direct = self._direct_sources(state, name)
            if len(direct) == 1:
                self._pool.request_metadata(name, next(iter(direct.values())))
            elif not direct:
                registry_names.append(name)
                self._pool.request_versions(name)
        for name in registry_names:
            await self._load_versions(state, name)
            self._prefetch_preferred(state, name)

        def rank(name: str) -> Tuple[int, int, str]:
            edges = state.edges[name]
            pinned = any(e.requirement.is_pinned for e in edges)
            direct = self._direct_sources(state, name)
            if direct:
                count = 1 if len(direct) == 1 else 0
            else:
                count = len(self._filter(state, name, self._versions.get(name, [])))
            return (0 if pinned else 1, count, name)

        return min(frontier, key=rank)

    def _direct_sources(self, state: _State, name: str) -> Dict[str, Source]:
        sources: Dict[str, Source] = {}
        for edge in state.edges.get(name, []):
            source = edge.requirement.source
            if is_direct(source):
                sources.setdefault(_source_id(source), source)
        return sources

    async def _options(self, state: _State, name: str) -> List[_Option]:
        direct = self._direct_sources(state, name)
        if len(direct) > 1:
            logger.debug("%s requested from %d different sources", name, len(direct))
            for source in direct.values():
                self._pool.request_metadata(name, source)
            for _, source in sorted(direct.items()):
                await self._candidate(name, _Option(source=source), fatal=self._rooted(state, name, source))
            return []
        if direct:
            option = _Option(source=next(iter(direct.values())))
            candidate = await self._candidate(name, option, fatal=self._rooted(state, name, option.source))
            return [option] if candidate is not None else []
        versions = self._filter(state, name, await self._load_versions(state, name))
        ascending = self.mode is ResolutionMode.LOWEST_DIRECT and name in self.direct_names
        ordered = sorted(versions, reverse=not ascending)
        for version in ordered[: Constants.PREFETCH_CANDIDATES]:
            self._pool.request_metadata(name, version)
        return [_Option(version=v) for v in ordered]

    def _filter(self, state: _State, name: str, versions: Iterable[Version]) -> List[Version]:
        edges = state.edges.get(name, [])
        allow_pre = self._allows_prerelease(name, edges)
        return [
            v for v in versions
            if all(e.requirement.specifier.contains(v, prereleases=allow_pre) for e in edges)
            and (allow_pre or not v.is_prerelease)
        ]

    def _allows_prerelease(self, name: str, edges: Iterable[Edge]) -> bool:
        if self.prereleases.allows(name):
            return True
        return any(e.parent is None and e.requirement.names_prerelease for e in edges)

    def _accepts(self, edge: Edge, candidate: CandidateVersion, requested: Optional[Source]) -> bool:
        """Whether a chosen candidate satisfies one edge."""
        req = edge.requirement
        if is_direct(req.source):
            if requested is None or _source_id(requested) != _source_id(req.source):
                return False
        return req.specifier.contains(candidate.version, prereleases=True)

    # --------------------------------------------------------------- fetching

    def _rooted(self, state: _State, name: str, source: Optional[Source] = None) -> bool:
        """Whether a root group itself demands ``name`` (from ``source``, if given)."""
        for edge in state.edges.get(name, []):
            if edge.parent is not None:
                continue
            if source is None:
                return True
            wanted = edge.requirement.source
            if is_direct(wanted) and _source_id(wanted) == _source_id(source):
                return True
        return False

    def _note_failure(self, name: str, message: str) -> None:
        if message not in self._fetch_failures[name]:
            self._fetch_failures[name].append(message)

    async def _load_versions(self, state: _State, name: str) -> List[Version]:
        """Listing of ``name``; a failure is fatal only for names a root group requires."""
        if name in self._versions:
            return self._versions[name]
        try:
            raw = await self._pool.versions(name)
        except NotFound as exc:
            logger.warning("No versions of %s available: %s", name, exc)
            self._note_failure(name, str(exc))
            raw = []
        except CatalogError as exc:
            if self._rooted(state, name):
                raise
            logger.warning("Listing %s failed; its dependents will be revised: %s", name, exc)
            self._note_failure(name, str(exc))
            raw = []
        parsed = sorted({v for v in (try_parse_version(r) for r in raw) if v is not None})
        self._versions[name] = parsed
        return parsed

    def _prefetch_preferred(self, state: _State, name: str) -> None:
        versions = self._filter(state, name, self._versions.get(name, []))
        if not versions:
            return
        ascending = self.mode is ResolutionMode.LOWEST_DIRECT and name in self.direct_names
        self._pool.request_metadata(name, versions[0] if ascending else versions[-1])

    async def _candidate(self, name: str, option: _Option, fatal: bool = False) -> Optional[CandidateVersion]:
        """Fetch an option's metadata; unless ``fatal``, a failure returns None."""
        try:
            candidate = await self._pool.metadata(name, option.target)
        except CatalogError as exc:
            if fatal:
                raise
            label = str(option.version) if option.source is None else option.source.locator()
            self._note_failure(name, f"{label}: {exc}")
            logger.warning("Skipping %s %s: %s", name, label, exc)
            return None
        if option.source is not None:
            self._direct[(name, _source_id(option.source))] = candidate
        return candidate

    # -------------------------------------------------------------- conflicts

    def _record_conflict(
        self,
        state: _State,
        name: str,
        pinned: Optional[Tuple[CandidateVersion, Optional[Source]]] = None,
        also: Iterable[str] = (),
    ) -> _Conflict:
        edges = _unique(state.edges.get(name, []))
        implicated = {e.parent for e in edges if e.parent}
        implicated.update(also)
        if name in state.pins:
            implicated.add(name)
        kept, exhaustive = self._minimize(name, edges, pinned)
        chain = tuple(self._path(state, e) for e in kept)
        conflict = _Conflict(
            name=name, implicated=frozenset(implicated), chain=chain, exhaustive=exhaustive
        )
        self.conflicts.append(conflict)
        if is_debug_enabled(logger):
            logger.debug(
                "Conflict",
                extra=extra_context(
                    event="conflict",
                    component="solver",
                    target=name,
                    implicated=sorted(implicated),
                    chain=[str(p) for p in chain],
                )
            )
        return conflict

    def _universe(self, name: str, pinned) -> List[Tuple[Version, Optional[str]]]:
        """Every candidate known for ``name`` as (version, direct source id)."""
        entries: List[Tuple[Version, Optional[str]]] = [(v, None) for v in self._versions.get(name, [])]
        for (pkg, source_id), candidate in sorted(self._direct.items(), key=lambda item: item[0]):
            if pkg == name:
                entries.append((candidate.version, source_id))
        if pinned is not None:
            candidate, source = pinned
            entries.append((candidate.version, _source_id(source) if source is not None else None))
        return entries

    def _satisfiable(self, name: str, edges: Sequence[Edge], universe) -> bool:
        if not edges:
            return True
        allow_pre = self._allows_prerelease(name, edges)
        wants_direct = any(is_direct(e.requirement.source) for e in edges)
        for version, source_id in universe:
            if source_id is None and (wants_direct or (version.is_prerelease and not allow_pre)):
                continue
            if all(_admits(e, version, source_id) for e in edges):
                return True
        return False

    def _minimize(self, name: str, edges: List[Edge], pinned) -> Tuple[List[Edge], bool]:
        """Deletion-based reduction to a 1-minimal unsatisfiable edge set.

        Returns the edges and whether they are unsatisfiable on their own;
        when they are not, the conflict lies with the pinned candidate.
        """
        universe = self._universe(name, pinned)
        kept = list(edges)
        if self._satisfiable(name, kept, universe):
            return kept, False
        for edge in list(edges):
            trial = [e for e in kept if e is not edge]
            if not self._satisfiable(name, trial, universe):
                kept = trial
        return kept, True

    def _path(self, state: _State, edge: Edge) -> ConflictPath:
        steps = [ConflictStep(edge.origin(), edge.requirement.to_string())]
        seen = {edge.requirement.name}
        current = edge
        while current.parent is not None and current.parent not in seen:
            seen.add(current.parent)
            parents = state.edges.get(current.parent, [])
            if not parents:
                break
            current = parents[0]
            steps.append(ConflictStep(current.origin(), current.requirement.to_string()))
        return ConflictPath(tuple(reversed(steps)))

    def _raise_unsatisfiable(self, too_deep: Optional[str] = None) -> NoReturn:
        if self.conflicts:
            last = next((c for c in reversed(self.conflicts) if c.exhaustive), self.conflicts[-1])
            name, chain = last.name, last.chain
        else:
            name, chain = too_deep or "", ()
        detail = ""
        failures = self._fetch_failures.get(name)
        if failures:
            detail = "Unavailable candidates: " + "; ".join(failures)
        if too_deep is not None:
            detail = (detail + "\n" if detail else "") + (
                f"Gave up after {self.max_attempts} attempts for {too_deep}"
            )
            raise ResolutionTooDeep(name, chain, detail)
        raise UnsatisfiableError(name, chain, detail)

    # ------------------------------------------------------------------ output

    def _build_resolution(self, state: _State) -> Resolution:
        children: Dict[str, Set[str]] = defaultdict(set)
        for target, edges in state.edges.items():
            for edge in edges:
                if edge.parent is not None:
                    children[edge.parent].add(target)

        membership: Dict[str, Set[str]] = defaultdict(set)
        for group in self.root_groups:
            frontier = [e.requirement.name for edges in state.edges.values()
                        for e in edges if e.parent is None and e.group == group]
            seen: Set[str] = set()
            while frontier:
                current = frontier.pop()
                if current in seen or current not in state.pins:
                    continue
                seen.add(current)
                membership[current].add(group)
                frontier.extend(children.get(current, ()))

        packages = []
        for name, candidate in state.pins.items():
            extras = sorted(state.applied.get(name, frozenset()) & candidate.extras)
            deps = [_dependency(r, "") for r in candidate.dependencies]
            for extra in extras:
                deps.extend(_dependency(r, extra) for r in candidate.extra_dependencies[extra])
            packages.append(
                ResolvedPackage(
                    name=name,
                    version=candidate.version,
                    source=candidate.source,
                    digest=candidate.digest,
                    extras=tuple(extras),
                    groups=tuple(sorted(membership.get(name, ()))),
                    dependencies=tuple(sorted(set(deps), key=Dependency.sort_key)),
                )
            )
        return Resolution.build(
            packages,
            groups=normalize_groups(self.root_groups),
            catalog=self.catalog.fingerprint(),
            environment=self.environment.values,
            mode=self.mode.value,
            prereleases=self.prereleases.as_tuple(),
        )


def _source_id(source: Source) -> str:
    return f"{source.kind.value}:{source.locator()}"


def _admits(edge: Edge, version: Version, source_id: Optional[str]) -> bool:
    req = edge.requirement
    if is_direct(req.source) and source_id != _source_id(req.source):
        return False
    return req.specifier.contains(version, prereleases=True)


def _dependency(req: Requirement, extra: str) -> Dependency:
    return Dependency(
        name=req.name,
        specifier=str(req.specifier),
        marker=str(req.marker) if req.marker is not None else "",
        extra=extra,
    )


def _unique(edges: Iterable[Edge]) -> List[Edge]:
    seen: Set[Tuple[str, str, str, str, str]] = set()
    result = []
    for edge in edges:
        key = edge.identity()
        if key not in seen:
            seen.add(key)
            result.append(edge)
    return sorted(result, key=Edge.identity)
