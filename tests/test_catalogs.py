"""Tests for the catalog retry boundary, PyPI, snapshot and direct sources."""

from unittest.mock import patch

import pytest
from packaging.version import Version

from common.errors import NetworkError, NotFound
from registry.cache import MetadataCache
from registry.catalog import SourceCatalog, split_requires_dist
from registry.direct import DirectSourceReader
from registry.pypi import PyPICatalog
from registry.snapshot import SnapshotCatalog
from versioning.models import CandidateVersion, GitSource, PathSource, RegistrySource


class FlakyCatalog(SourceCatalog):
    """Fails ``failures`` times with NetworkError before answering."""

    def __init__(self, failures, cache=None, error=NetworkError):
        super().__init__(cache)
        self.failures = failures
        self.error = error
        self.calls = 0

    def fingerprint(self):
        return "flaky"

    def _list_versions(self, name):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("boom")
        return ["1.0", "2.0"]

    def _fetch_metadata(self, name, version):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error("boom")
        return CandidateVersion(name=name, version=version, source=RegistrySource(index="x"))


class TestRetryBoundary:
    @patch("registry.catalog.time.sleep")
    def test_network_errors_are_retried(self, mock_sleep):
        catalog = FlakyCatalog(failures=2)
        assert catalog.list_versions("pkga") == ["1.0", "2.0"]
        assert catalog.calls == 3
        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == sorted(delays) and len(delays) == 2

    @patch("registry.catalog.time.sleep")
    def test_persistent_failure_propagates(self, mock_sleep):
        catalog = FlakyCatalog(failures=10)
        with pytest.raises(NetworkError):
            catalog.list_versions("pkga")
        assert catalog.calls == 3

    @patch("registry.catalog.time.sleep")
    def test_not_found_is_not_retried(self, mock_sleep):
        catalog = FlakyCatalog(failures=10, error=NotFound)
        with pytest.raises(NotFound):
            catalog.list_versions("pkga")
        assert catalog.calls == 1
        mock_sleep.assert_not_called()

    def test_direct_source_lists_its_locator(self):
        catalog = FlakyCatalog(failures=0)
        assert catalog.list_versions("tool", PathSource(path="./tool")) == ["./tool"]
        assert catalog.calls == 0

    def test_metadata_is_cached(self):
        catalog = FlakyCatalog(failures=0, cache=MetadataCache(default_ttl=60))
        first = catalog.fetch_metadata("pkga", "1.0")
        second = catalog.fetch_metadata("pkga", Version("1.0"))
        assert first == second
        assert catalog.calls == 1


class TestSplitRequiresDist:
    def test_extra_entries_are_grouped(self):
        base, extras = split_requires_dist([
            "urllib3>=1.21",
            'PySocks!=1.5.7,>=1.5.6 ; extra == "socks"',
            'chardet<6,>=3.0.2 ; extra == "use_chardet_on_py3"',
        ])
        assert [r.name for r in base] == ["urllib3"]
        assert sorted(extras) == ["socks", "use-chardet-on-py3"]
        assert extras["socks"][0].name == "pysocks"


def _release(sha="aa", yanked=False):
    return [{"filename": "f.whl", "digests": {"sha256": sha}, "yanked": yanked}]


class TestPyPICatalog:
    @patch("registry.pypi.get_json")
    def test_list_versions_skips_empty_yanked_and_invalid(self, mock_get):
        mock_get.return_value = (200, {}, {"releases": {
            "1.0": _release(),
            "1.1": [],
            "1.2": _release(yanked=True),
            "not a version": _release(),
            "2.0": _release(),
        }})
        catalog = PyPICatalog(index_url="https://index.example/pypi")
        assert sorted(catalog.list_versions("pkga")) == ["1.0", "2.0"]
        assert mock_get.call_args.args[0] == "https://index.example/pypi/pkga/json"

    @patch("registry.pypi.get_json")
    def test_fetch_metadata(self, mock_get):
        mock_get.return_value = (200, {}, {
            "info": {"requires_dist": ["pkgb>=2.0", 'pysocks ; extra == "socks"']},
            "urls": [{"filename": "pkga-1.5.tar.gz", "digests": {"sha256": "bb"}}],
        })
        catalog = PyPICatalog(index_url="https://index.example/pypi/")
        candidate = catalog.fetch_metadata("pkga", "1.5")
        assert candidate.version == Version("1.5")
        assert [r.name for r in candidate.dependencies] == ["pkgb"]
        assert candidate.extras == frozenset({"socks"})
        assert candidate.digest.startswith("sha256:")
        assert candidate.source == RegistrySource(index="https://index.example/pypi/")

    @patch("registry.catalog.time.sleep")
    @patch("registry.pypi.get_json")
    def test_transient_errors_retry(self, mock_get, _sleep):
        mock_get.side_effect = [NetworkError("503"), (200, {}, {"releases": {"1.0": _release()}})]
        catalog = PyPICatalog(index_url="https://index.example/pypi/")
        assert catalog.list_versions("pkga") == ["1.0"]
        assert mock_get.call_count == 2

    def test_fingerprint_names_index(self):
        assert PyPICatalog(index_url="https://a.example/pypi/").fingerprint() != \
            PyPICatalog(index_url="https://b.example/pypi/").fingerprint()


SNAPSHOT = {
    "packages": {
        "PkgA": {
            "1.0": {"dependencies": []},
            "1.5": {"dependencies": ["pkgb>=2.0"], "extras": {"fast": ["speedups"]}},
        },
        "pkgb": {"2.0": {}},
    },
    "direct": {
        "git+https://example.com/tool.git@main": {"name": "tool", "version": "0.3", "commit": "c" * 40},
    },
}


class TestSnapshotCatalog:
    def test_listing_and_metadata(self):
        catalog = SnapshotCatalog(SNAPSHOT)
        assert sorted(catalog.list_versions("pkga")) == ["1.0", "1.5"]
        candidate = catalog.fetch_metadata("pkga", "1.5")
        assert [r.name for r in candidate.dependencies] == ["pkgb"]
        assert "fast" in candidate.extras
        assert candidate.digest != catalog.fetch_metadata("pkga", "1.0").digest

    def test_unknown_package(self):
        with pytest.raises(NotFound):
            SnapshotCatalog(SNAPSHOT).list_versions("missing")

    def test_git_source_pins_commit(self):
        catalog = SnapshotCatalog(SNAPSHOT)
        source = GitSource(url="https://example.com/tool.git", ref="main")
        candidate = catalog.fetch_metadata("tool", source)
        assert candidate.source.ref == "c" * 40
        assert candidate.version == Version("0.3")

    def test_fingerprint_tracks_content(self):
        changed = {"packages": {"pkga": {"1.0": {}}}}
        assert SnapshotCatalog(SNAPSHOT).fingerprint() == SnapshotCatalog(SNAPSHOT).fingerprint()
        assert SnapshotCatalog(SNAPSHOT).fingerprint() != SnapshotCatalog(changed).fingerprint()


class TestDirectSourceReader:
    def test_reads_local_project(self, tmp_path):
        project = tmp_path / "tool"
        project.mkdir()
        (project / "pyproject.toml").write_text(
            '[project]\nname = "Tool"\nversion = "0.3.1"\n'
            'dependencies = ["pkga>=1.0"]\n'
            '[project.optional-dependencies]\ncli = ["click"]\n',
            encoding="utf-8",
        )
        reader = DirectSourceReader(root=str(tmp_path))
        candidate = reader.read("tool", PathSource(path="./tool"))
        assert candidate.version == Version("0.3.1")
        assert [r.name for r in candidate.dependencies] == ["pkga"]
        assert candidate.extras == frozenset({"cli"})
        assert candidate.digest.startswith("sha256:")

    def test_name_mismatch(self, tmp_path):
        (tmp_path / "pyproject.toml").write_text('[project]\nname = "other"\nversion = "1"\n', encoding="utf-8")
        with pytest.raises(NotFound):
            DirectSourceReader(root=str(tmp_path)).read("tool", PathSource(path="."))

    def test_missing_directory(self, tmp_path):
        with pytest.raises(NotFound):
            DirectSourceReader(root=str(tmp_path)).read("tool", PathSource(path="./absent"))

    def test_registry_source_is_rejected(self):
        with pytest.raises(TypeError):
            DirectSourceReader().read("tool", RegistrySource())

    @patch("registry.direct.subprocess.run")
    def test_git_failure_is_network_error(self, mock_run):
        mock_run.return_value.returncode = 128
        mock_run.return_value.stderr = "fatal: repository not found"
        with pytest.raises(NetworkError):
            DirectSourceReader().read("tool", GitSource(url="https://example.com/tool.git", ref="main"))
