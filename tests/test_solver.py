"""Tests for the constraint solver."""

import asyncio
import logging
import random
import threading
import time
from unittest.mock import patch

import pytest
from packaging.version import Version

from common.errors import NetworkError, NotFound, ResolutionTooDeep, UnsatisfiableError
from registry.snapshot import SnapshotCatalog
from resolution.models import Dependency
from resolution.service import lock, resolve, resolve_async
from versioning.environment import Environment
from versioning.models import PathSource
from versioning.parser import parse_requirement

ENV = Environment.from_mapping({
    "implementation_name": "cpython",
    "os_name": "posix",
    "platform_system": "Linux",
    "python_full_version": "3.12.1",
    "python_version": "3.12",
    "sys_platform": "linux",
})


def snapshot(packages, direct=None):
    return SnapshotCatalog({"packages": packages, "direct": direct or {}})


# web 2.0 needs core>=3 but cli caps core below 3, so web backs off to 1.5.
WEB = {
    "web": {
        "1.0": {"dependencies": ["core>=1"]},
        "1.5": {"dependencies": ["core>=2", "utils"]},
        "2.0": {"dependencies": ["core>=3"]},
    },
    "cli": {
        "1.0": {"dependencies": ["core<3"]},
        "1.1": {"dependencies": ["core<3", "utils>=1.2"]},
    },
    "core": {"1.0": {}, "2.0": {}, "2.5": {}, "3.0": {}},
    "utils": {"1.0": {}, "1.2": {}, "1.3": {}},
}
WEB_ROOTS = {"main": ["web>=1", "cli"], "dev": ["utils"]}


class ShuffledCatalog(SnapshotCatalog):
    """Snapshot catalog whose answers arrive after random delays."""

    def __init__(self, data, seed):
        super().__init__(data)
        self._rng = random.Random(seed)
        self._rng_lock = threading.Lock()

    def _delay(self):
        with self._rng_lock:
            pause = self._rng.uniform(0, 0.01)
        time.sleep(pause)

    def _list_versions(self, name):
        self._delay()
        return list(reversed(super()._list_versions(name)))

    def _fetch_metadata(self, name, version):
        self._delay()
        return super()._fetch_metadata(name, version)


def assert_sound(resolution, roots):
    """Every marker-surviving edge is satisfied by the chosen candidate."""
    chosen = {p.name: p for p in resolution.packages}
    for reqs in roots.values():
        for text in reqs:
            req = parse_requirement(text)
            if req.applies(ENV):
                assert req.specifier.contains(chosen[req.name].version, prereleases=True)
    for package in resolution.packages:
        for dep in resolution.active_dependencies(package):
            spec = parse_requirement(f"{dep.name}{dep.specifier}").specifier
            assert spec.contains(chosen[dep.name].version, prereleases=True), (package.name, dep)


class TestScenarios:
    def test_conflict_through_transitive_dependency(self):
        catalog = snapshot({
            "pkgA": {"1.5": {"dependencies": ["pkgB>=2.0"]}},
            "pkgB": {"1.9": {}, "2.0": {}},
        })
        with pytest.raises(UnsatisfiableError) as excinfo:
            resolve({"main": ["pkgA>=1.0,<2.0"], "dev": ["pkgB==1.9"]}, catalog, ENV)
        err = excinfo.value
        assert err.package == "pkgb"
        paths = [str(p) for p in err.chain]
        assert "group 'dev' requires pkgb==1.9" in paths
        assert "group 'main' requires pkga<2.0,>=1.0 -> pkga 1.5 requires pkgb>=2.0" in paths
        assert "Cannot find a version of pkgb" in err.explain()

    def test_highest_version_is_chosen(self):
        catalog = snapshot({"pkgA": {"1.0": {}, "1.1": {}, "2.0": {}}})
        resolution = resolve({"main": ["pkgA"]}, catalog, ENV)
        assert resolution.versions() == {"pkga": "2.0"}

    def test_fetch_completion_order_does_not_change_lock(self):
        outputs = {
            lock(resolve(WEB_ROOTS, ShuffledCatalog({"packages": WEB}, seed), ENV, concurrency=8))
            for seed in (1, 2, 3)
        }
        assert len(outputs) == 1

    def test_backtracking_result(self):
        resolution = resolve(WEB_ROOTS, snapshot(WEB), ENV)
        assert resolution.versions() == {"cli": "1.1", "core": "2.5", "utils": "1.3", "web": "1.5"}
        assert_sound(resolution, WEB_ROOTS)

    def test_group_membership(self):
        resolution = resolve(WEB_ROOTS, snapshot(WEB), ENV)
        assert resolution["utils"].groups == ("dev", "main")
        assert resolution["core"].groups == ("main",)
        assert resolution.group_names() == ["dev", "main"]


class TestConflictMinimality:
    @pytest.mark.parametrize("seed", range(40))
    def test_generated_range_conflicts(self, seed):
        rng = random.Random(seed)
        versions = [f"{i}.0" for i in range(1, 11)]
        roots = {}
        for g in range(rng.randint(2, 5)):
            low = rng.randint(1, 9)
            high = rng.randint(low + 1, 10)
            roots[f"g{g}"] = [f"x>={low}.0,<{high}.0"]
        catalog = snapshot({"x": {v: {} for v in versions}})
        specs = [parse_requirement(r[0]).specifier for r in roots.values()]
        feasible = [Version(v) for v in versions if all(s.contains(v) for s in specs)]
        try:
            resolution = resolve(roots, catalog, ENV)
        except UnsatisfiableError as err:
            assert not feasible
            terminal = [parse_requirement(p.steps[-1].requirement).specifier for p in err.chain]
            assert terminal
            assert not any(all(s.contains(v) for s in terminal) for v in versions)
            for i in range(len(terminal)):
                rest = terminal[:i] + terminal[i + 1:]
                assert any(all(s.contains(v) for s in rest) for v in versions)
        else:
            assert resolution["x"].version == max(feasible)

    def test_chain_names_only_conflicting_edges(self):
        catalog = snapshot({"x": {"1.0": {}, "2.0": {}, "3.0": {}}})
        roots = {"a": ["x>=1.0"], "b": ["x<2.0"], "c": ["x>=3.0"], "d": ["x!=5.0"]}
        with pytest.raises(UnsatisfiableError) as excinfo:
            resolve(roots, catalog, ENV)
        roots_in_chain = sorted(p.root for p in excinfo.value.chain)
        assert roots_in_chain == ["group 'b'", "group 'c'"]


class TestPreferences:
    CATALOG = {"pkga": {"1.0": {}, "2.0b1": {}}, "other": {"1.0": {"dependencies": ["pkga>=2.0b1"]}}}

    def test_prereleases_excluded_by_default(self):
        resolution = resolve({"main": ["pkga"]}, snapshot(self.CATALOG), ENV)
        assert resolution.versions()["pkga"] == "1.0"

    @pytest.mark.parametrize("allow", [True, ["pkga"], ["*"]])
    def test_prereleases_allowed(self, allow):
        resolution = resolve({"main": ["pkga"]}, snapshot(self.CATALOG), ENV, allow_prerelease=allow)
        assert resolution.versions()["pkga"] == "2.0b1"

    def test_root_naming_prerelease_allows_it(self):
        resolution = resolve({"main": ["pkga>=2.0b1"]}, snapshot(self.CATALOG), ENV)
        assert resolution.versions()["pkga"] == "2.0b1"

    def test_transitive_prerelease_needs_opt_in(self):
        with pytest.raises(UnsatisfiableError):
            resolve({"main": ["other"]}, snapshot(self.CATALOG), ENV)
        resolution = resolve({"main": ["other"]}, snapshot(self.CATALOG), ENV, allow_prerelease=["pkga"])
        assert resolution.versions()["pkga"] == "2.0b1"

    def test_lowest_direct(self):
        catalog = snapshot({
            "pkga": {v: {"dependencies": ["pkgb>=1"]} for v in ("1.0", "1.1", "2.0")},
            "pkgb": {"1.0": {}, "2.0": {}},
        })
        resolution = resolve({"main": ["pkga"]}, catalog, ENV, mode="lowest-direct")
        assert resolution.versions() == {"pkga": "1.0", "pkgb": "2.0"}
        assert resolution.mode == "lowest-direct"

    def test_explicit_pin_is_decided_first(self):
        catalog = snapshot({
            "alpha": {"1.0": {"dependencies": ["zeta<2"]}, "2.0": {"dependencies": ["zeta>=2"]}},
            "zeta": {"1.0": {}, "2.0": {}},
        })
        resolution = resolve({"main": ["alpha", "zeta==1.0"]}, catalog, ENV)
        assert resolution.versions() == {"alpha": "1.0", "zeta": "1.0"}


class TestExtrasAndMarkers:
    def test_extra_adds_dependencies(self):
        catalog = snapshot({
            "pkga": {"1.0": {"extras": {"socks": ["pysocks>=1"]}}},
            "pysocks": {"1.7": {}},
        })
        resolution = resolve({"main": ["pkga[socks]"]}, catalog, ENV)
        assert "pysocks" in resolution
        assert resolution["pkga"].extras == ("socks",)
        assert Dependency(name="pysocks", specifier=">=1", extra="socks") in resolution["pkga"].dependencies

    def test_extra_requested_after_pin(self):
        catalog = snapshot({
            "pkga": {"1.0": {"extras": {"socks": ["pysocks"]}}},
            "pysocks": {"1.7": {}},
            "tool": {"1.0": {"dependencies": ["pkga[socks]"]}},
        })
        resolution = resolve({"main": ["pkga", "tool"]}, catalog, ENV)
        assert "pysocks" in resolution
        assert resolution["pkga"].extras == ("socks",)

    def test_unknown_extra_is_ignored(self, caplog):
        catalog = snapshot({"pkga": {"1.0": {}}})
        with caplog.at_level(logging.WARNING):
            resolution = resolve({"main": ["pkga[nope]"]}, catalog, ENV)
        assert resolution["pkga"].extras == ()
        assert "does not provide extra 'nope'" in caplog.text

    def test_marker_false_edges_are_recorded_not_resolved(self):
        catalog = snapshot({
            "pkga": {"1.0": {"dependencies": ['winonly ; sys_platform == "win32"', "pkgb"]}},
            "pkgb": {"1.0": {}},
        })
        roots = {"main": ["pkga", 'colorama ; sys_platform == "win32"']}
        resolution = resolve(roots, catalog, ENV)
        assert sorted(resolution.versions()) == ["pkga", "pkgb"]
        recorded = {d.name: d for d in resolution["pkga"].dependencies}
        assert recorded["winonly"].marker == 'sys_platform == "win32"'
        manifest = dict(resolution.groups)["main"]
        assert 'colorama ; sys_platform == "win32"' in manifest


class TestDirectSources:
    DIRECT = {"./libs/tool": {"name": "tool", "version": "0.3", "dependencies": ["pkgb"]}}

    def test_path_source_takes_precedence(self):
        catalog = snapshot(
            {"tool": {"9.0": {}}, "pkgb": {"1.0": {}}, "pkga": {"1.0": {"dependencies": ["tool>=0.2"]}}},
            self.DIRECT,
        )
        resolution = resolve({"main": ["tool @ ./libs/tool", "pkga"]}, catalog, ENV)
        assert resolution["tool"].version == Version("0.3")
        assert resolution["tool"].source == PathSource(path="./libs/tool")

    def test_sibling_specifier_mismatch_conflicts(self):
        catalog = snapshot(
            {"pkgb": {"1.0": {}}, "pkga": {"1.0": {"dependencies": ["tool>=0.5"]}}}, self.DIRECT
        )
        with pytest.raises(UnsatisfiableError) as excinfo:
            resolve({"main": ["tool @ ./libs/tool", "pkga"]}, catalog, ENV)
        assert excinfo.value.package == "tool"

    def test_two_direct_sources_conflict(self):
        direct = dict(self.DIRECT)
        direct["git+https://example.com/tool.git@main"] = {"name": "tool", "version": "0.3", "commit": "a" * 40}
        catalog = snapshot({"pkgb": {"1.0": {}}}, direct)
        roots = {"main": ["tool @ ./libs/tool"], "dev": ["tool @ git+https://example.com/tool.git@main"]}
        with pytest.raises(UnsatisfiableError) as excinfo:
            resolve(roots, catalog, ENV)
        assert sorted(p.root for p in excinfo.value.chain) == ["group 'dev'", "group 'main'"]

    def test_git_source_is_locked_to_commit(self):
        direct = {"git+https://example.com/tool.git@main": {"name": "tool", "version": "0.3", "commit": "a" * 40}}
        resolution = resolve({"main": ["tool @ git+https://example.com/tool.git@main"]}, snapshot({}, direct), ENV)
        assert resolution["tool"].source.ref == "a" * 40


class TestFailures:
    def test_attempt_bound(self):
        with pytest.raises(ResolutionTooDeep) as excinfo:
            resolve(WEB_ROOTS, snapshot(WEB), ENV, max_attempts=1)
        assert isinstance(excinfo.value, UnsatisfiableError)
        assert "Gave up after 1 attempts" in excinfo.value.explain()

    def test_unknown_package(self):
        with pytest.raises(UnsatisfiableError) as excinfo:
            resolve({"main": ["missing"]}, snapshot({}), ENV)
        assert [str(p) for p in excinfo.value.chain] == ["group 'main' requires missing"]

    @patch("registry.catalog.time.sleep")
    def test_listing_failure_is_fatal(self, _sleep):
        class Down(SnapshotCatalog):
            def _list_versions(self, name):
                raise NetworkError("connection refused")

        with pytest.raises(NetworkError):
            resolve({"main": ["pkga"]}, Down({"packages": {"pkga": {"1.0": {}}}}), ENV)

    @patch("registry.catalog.time.sleep")
    def test_tentative_candidate_failure_falls_back(self, _sleep):
        class Broken(SnapshotCatalog):
            def _fetch_metadata(self, name, version):
                if str(version) == "2.0":
                    raise NotFound("metadata missing")
                return super()._fetch_metadata(name, version)

        resolution = resolve({"main": ["pkga"]}, Broken({"packages": {"pkga": {"1.0": {}, "2.0": {}}}}), ENV)
        assert resolution.versions() == {"pkga": "1.0"}

    def test_unfetchable_transitive_source_revises_parent(self):
        packages = {
            "pkga": {
                "1.0": {},
                "2.0": {"dependencies": ["gone @ https://example.invalid/gone-1.0-py3-none-any.whl"]},
            },
        }
        resolution = resolve({"main": ["pkga"]}, snapshot(packages), ENV)
        assert resolution.versions() == {"pkga": "1.0"}

    def test_unfetchable_root_source_is_fatal(self):
        with pytest.raises(NotFound):
            resolve({"main": ["gone @ https://example.invalid/gone-1.0-py3-none-any.whl"]}, snapshot({}), ENV)

    @patch("registry.catalog.time.sleep")
    def test_transitive_listing_failure_revises_parent(self, _sleep):
        class Flaky(SnapshotCatalog):
            def _list_versions(self, name):
                if name == "pkgb":
                    raise NetworkError("connection reset")
                return super()._list_versions(name)

        packages = {"pkga": {"1.0": {}, "2.0": {"dependencies": ["pkgb"]}}, "pkgb": {"1.0": {}}}
        resolution = resolve({"main": ["pkga"]}, Flaky({"packages": packages}), ENV)
        assert resolution.versions() == {"pkga": "1.0"}

    @patch("registry.catalog.time.sleep")
    def test_exhausted_fetch_failures_are_explained(self, _sleep):
        packages = {"pkga": {"1.0": {"dependencies": ["gone @ https://example.invalid/gone.whl"]}}}
        with pytest.raises(UnsatisfiableError) as excinfo:
            resolve({"main": ["pkga"]}, snapshot(packages), ENV)
        assert "example.invalid" in excinfo.value.explain()

    def test_cancellation(self):
        class Slow(SnapshotCatalog):
            def _list_versions(self, name):
                time.sleep(0.2)
                return super()._list_versions(name)

        async def run():
            task = asyncio.ensure_future(
                resolve_async({"main": ["pkga"]}, Slow({"packages": {"pkga": {"1.0": {}}}}), ENV)
            )
            await asyncio.sleep(0.05)
            task.cancel()
            await task

        with pytest.raises(asyncio.CancelledError):
            asyncio.run(run())
