"""Tests for lockfile encoding, decoding and freshness checks."""

import pytest
from packaging.version import Version

from common.errors import FormatError, StaleLockError, UnsupportedFormat
from lockfile import LockStatus, decode, encode, is_consistent
from registry.snapshot import SnapshotCatalog
from resolution.models import Dependency, Resolution, ResolvedPackage
from resolution.service import check_lock, lock, resolve
from versioning.environment import Environment
from versioning.models import GitSource, PathSource, RegistrySource

ENV = Environment.from_mapping({"python_version": "3.12", "sys_platform": "linux"})

CATALOG = {
    "packages": {
        "pkga": {"1.0": {"dependencies": ["pkgb>=1", 'winonly ; sys_platform == "win32"']}},
        "pkgb": {"1.0": {}, "2.0": {"extras": {"fast": ["speedups"]}}},
        "speedups": {"0.9": {}},
    },
}
ROOTS = {"main": ["pkga"], "dev": ["pkgb[fast]>=2"]}


@pytest.fixture
def catalog():
    return SnapshotCatalog(CATALOG)


@pytest.fixture
def resolution(catalog):
    return resolve(ROOTS, catalog, ENV)


def _handmade():
    packages = [
        ResolvedPackage(
            name="zeta",
            version=Version("1.0"),
            source=RegistrySource(index="https://pypi.org/pypi/"),
            digest="sha256:aa",
            groups=("main",),
        ),
        ResolvedPackage(
            name="tool",
            version=Version("0.3"),
            source=GitSource(url="https://example.com/tool.git", ref="c" * 40),
            groups=("main", "dev"),
            dependencies=(Dependency(name="zeta", specifier=">=1"),),
        ),
        ResolvedPackage(name="local", version=Version("2.1"), source=PathSource(path="./local")),
    ]
    return Resolution.build(
        packages,
        groups=(("main", ("zeta", "tool @ git+https://example.com/tool.git")), ("dev", ("tool",))),
        catalog="snapshot:x",
        environment=ENV.values,
        mode="highest",
        prereleases=("zeta",),
    )


class TestEncode:
    def test_deterministic(self, catalog):
        first = lock(resolve(ROOTS, catalog, ENV))
        second = lock(resolve(dict(reversed(list(ROOTS.items()))), SnapshotCatalog(CATALOG), ENV))
        assert first == second

    def test_layout(self, resolution):
        text = encode(resolution).decode("utf-8")
        assert text.startswith("version = 1\n")
        assert text.endswith("\n")
        assert "[manifest]" in text
        assert "[[package]]" in text
        assert text.index('name = "pkga"') < text.index('name = "pkgb"') < text.index('name = "speedups"')

    def test_round_trip(self, resolution):
        assert decode(encode(resolution)) == resolution

    def test_round_trip_of_direct_sources(self):
        original = _handmade()
        restored = decode(encode(original))
        assert restored == original
        assert restored["tool"].source.ref == "c" * 40
        assert restored["local"].source == PathSource(path="./local")

    def test_input_order_does_not_matter(self):
        original = _handmade()
        shuffled = Resolution.build(
            reversed(original.packages),
            groups=tuple(reversed(original.groups)),
            catalog=original.catalog,
            environment=tuple(reversed(original.environment)),
            mode=original.mode,
            prereleases=original.prereleases,
        )
        assert encode(shuffled) == encode(original)

    def test_duplicate_package_rejected(self):
        package = _handmade().packages[0]
        with pytest.raises(ValueError):
            Resolution.build([package, package])


class TestDecode:
    def test_newer_format_version(self, resolution):
        data = encode(resolution).replace(b"version = 1\n", b"version = 99\n", 1)
        with pytest.raises(UnsupportedFormat) as excinfo:
            decode(data)
        assert excinfo.value.found == 99

    @pytest.mark.parametrize("data", [
        b"version = [",
        b"fingerprint = \"x\"\n",
        b"version = true\n",
        b"version = 0\n",
        b"\xff\xfe",
    ])
    def test_malformed(self, data):
        with pytest.raises(FormatError):
            decode(data)

    def test_tampered_manifest(self, resolution):
        data = encode(resolution).replace(b'"pkga"', b'"pkga>=9"', 1)
        with pytest.raises(FormatError):
            decode(data)

    def test_missing_package_field(self):
        data = b'version = 1\nfingerprint = "x"\n[[package]]\nname = "a"\n'
        with pytest.raises(FormatError):
            decode(data)


class TestFreshness:
    def test_fresh(self, resolution, catalog):
        status = is_consistent(encode(resolution), ROOTS, catalog.fingerprint(), ENV, "highest", False)
        assert status.fresh and bool(status)
        status.raise_for_status()

    def test_changed_group(self, resolution, catalog):
        roots = {"main": ["pkga>=1"], "dev": ROOTS["dev"]}
        status = is_consistent(encode(resolution), roots, catalog.fingerprint())
        assert status.stale
        assert status.reason == "requirements of group 'main' changed"
        with pytest.raises(StaleLockError):
            status.raise_for_status()

    def test_added_and_removed_groups(self, resolution, catalog):
        roots = {"main": ROOTS["main"], "docs": ["sphinx"]}
        status = is_consistent(encode(resolution), roots, catalog.fingerprint())
        assert status.reason == "group 'docs' added; group 'dev' removed"

    def test_environment_and_options(self, resolution, catalog):
        other = Environment.from_mapping({"python_version": "3.9", "sys_platform": "linux"})
        data = encode(resolution)
        assert is_consistent(data, ROOTS, catalog.fingerprint(), environment=other).reason == "environment changed"
        assert is_consistent(data, ROOTS, catalog.fingerprint(), mode="lowest-direct").reason == \
            "resolution mode changed (highest -> lowest-direct)"
        assert is_consistent(data, ROOTS, catalog.fingerprint(), allow_prerelease=True).reason == \
            "prerelease policy changed"
        assert is_consistent(data, ROOTS, "snapshot:other").reason.startswith("catalog changed")

    def test_equivalent_spelling_is_fresh(self, resolution, catalog):
        roots = {"Main": ["PKGA"], "dev": ["pkgb[FAST] >= 2"]}
        assert is_consistent(encode(resolution), roots, catalog.fingerprint()).fresh

    def test_check_lock_accepts_catalog(self, resolution, catalog):
        status = check_lock(lock(resolution), ROOTS, catalog, environment=ENV)
        assert status == LockStatus(fresh=True)
        changed = SnapshotCatalog({"packages": {"pkga": {"1.0": {}}}})
        assert check_lock(lock(resolution), ROOTS, changed).stale

    def test_marker_edges_recorded(self, resolution):
        recorded = {d.name: d for d in decode(encode(resolution))["pkga"].dependencies}
        assert recorded["winonly"].marker == 'sys_platform == "win32"'
        assert "winonly" not in resolution
