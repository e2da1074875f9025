"""Tests for the registry client and package sources."""

import json
import threading
import time
from unittest.mock import patch

import pytest

from common.errors import PackageNotFound, RegistryError
from common.http_client import RetryPolicy
from registry.client import RegistryClient
from registry.models import RegistryMetadata
from registry.sources import (
    FileRegistrySource,
    HttpRegistrySource,
    escape_name,
    source_for_location,
)

from conftest import FakeRegistry, make_tarball, sri


class SlowRegistry(FakeRegistry):
    """Registry whose metadata responses are slow."""

    def fetch_metadata(self, name):
        time.sleep(0.05)
        return super().fetch_metadata(name)


class TestSingleFlight:
    """Test per-run metadata memoization."""

    def test_concurrent_requests_collapse(self):
        """Test concurrent metadata requests collapse into one."""
        registry = SlowRegistry()
        registry.add("a", "1.0.0")
        client = RegistryClient(registry)
        results = []
        threads = [threading.Thread(target=lambda: results.append(client.fetch_metadata("a"))) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert registry.metadata_calls == {"a": 1}
        assert client.metadata_requests == 1
        assert all(r is results[0] for r in results)

    def test_failure_is_memoized(self, registry, client):
        """Test a failed lookup is not repeated."""
        for _ in range(3):
            with pytest.raises(PackageNotFound):
                client.fetch_metadata("ghost")
        assert registry.metadata_calls == {"ghost": 1}
        assert client.cached_metadata("ghost") is None

    def test_reset_forgets(self, registry, client):
        """Test reset starts a fresh memo."""
        registry.add("a", "1.0.0")
        client.fetch_metadata("a")
        client.reset()
        client.fetch_metadata("a")
        assert registry.metadata_calls == {"a": 2}


class TestScopes:
    """Test per-scope source selection."""

    def test_scoped_source_selected(self):
        """Test scoped names use their scope's source."""
        public, corp = FakeRegistry(), FakeRegistry()
        corp.add("@corp/ui", "1.0.0")
        public.add("lodash", "4.17.21")
        client = RegistryClient(public, {"@corp": corp})
        assert client.source_for("@corp/ui") is corp
        assert client.source_for("@other/x") is public
        client.fetch_metadata("@corp/ui")
        client.fetch_metadata("lodash")
        assert corp.metadata_calls == {"@corp/ui": 1}
        assert public.metadata_calls == {"lodash": 1}

    def test_tarball_dispatch_by_scope(self):
        """Test tarballs are fetched through the scope's source."""
        public, corp = FakeRegistry(), FakeRegistry()
        url = corp.add("@corp/ui", "1.0.0")
        client = RegistryClient(public, {"@corp": corp})
        assert client.fetch_tarball(url, package="@corp/ui@1.0.0") == corp.tarballs[url]
        assert client.tarball_requests == 1

    def test_off_registry_file_tarball(self, tmp_path):
        """A file:// tarball is read locally even when the registry is HTTP."""
        data = make_tarball({"index.js": "x"})
        path = tmp_path / "a-1.0.0.tgz"
        path.write_bytes(data)
        client = RegistryClient(HttpRegistrySource("https://npm.example/", RetryPolicy(attempts=1)))
        assert client.fetch_tarball(path.as_uri(), package="a@1.0.0") == data

    def test_default_source_serves_what_scoped_cannot(self, tmp_path):
        """Tarball dispatch asks each source whether it handles the URL."""
        http = HttpRegistrySource("https://npm.example/", RetryPolicy(attempts=1))
        local = FileRegistrySource(str(tmp_path))
        client = RegistryClient(http, {"@corp": local})
        with patch.object(HttpRegistrySource, "fetch_tarball", return_value=b"bytes") as fetch:
            assert client.fetch_tarball("https://cdn.example/x.tgz", package="@corp/x@1.0.0") == b"bytes"
        fetch.assert_called_once_with("https://cdn.example/x.tgz", context="@corp/x@1.0.0")

    def test_from_constants(self):
        """Test building a client from configured registries."""
        with patch("constants.Constants.REGISTRY_URL_NPM", "https://npm.example/"), \
                patch("constants.Constants.SCOPED_REGISTRIES", {"@corp": "https://corp.example/"}):
            client = RegistryClient.from_constants(RetryPolicy(attempts=1))
        assert isinstance(client.default, HttpRegistrySource)
        assert client.default.base_url == "https://npm.example/"
        assert client.scoped["@corp"].base_url == "https://corp.example/"


class TestHttpRegistrySource:
    """Test the HTTP registry source."""

    def test_scoped_names_escaped(self):
        """Test scoped names are escaped with a lowercase slash."""
        assert escape_name("@types/node") == "@types%2fnode"
        assert escape_name("lodash") == "lodash"
        source = HttpRegistrySource("https://npm.example", RetryPolicy(attempts=1))
        assert source.metadata_url("@types/node") == "https://npm.example/@types%2fnode"

    def test_fetch_metadata_sends_accept_header(self):
        """Test the abbreviated metadata Accept header is sent."""
        source = HttpRegistrySource("https://npm.example/", RetryPolicy(attempts=1))
        doc = {"versions": {"1.0.0": {"dist": {"tarball": "t", "integrity": "sha512-x"}}}}
        with patch("registry.sources.get_json", return_value=doc) as get_json:
            meta = source.fetch_metadata("a")
        assert isinstance(meta, RegistryMetadata)
        assert meta.version_list() == ["1.0.0"]
        _, kwargs = get_json.call_args
        assert "application/vnd.npm.install-v1+json" in kwargs["headers"]["Accept"]

    def test_non_object_document(self):
        """Test a non-object document is PackageNotFound."""
        source = HttpRegistrySource("https://npm.example/", RetryPolicy(attempts=1))
        with patch("registry.sources.get_json", return_value=["nope"]):
            with pytest.raises(PackageNotFound):
                source.fetch_metadata("a")


class TestFileRegistrySource:
    """Test the local directory source."""

    def _mirror(self, tmp_path):
        data = make_tarball({"index.js": "x"})
        (tmp_path / "tarballs").mkdir()
        (tmp_path / "tarballs" / "a-1.0.0.tgz").write_bytes(data)
        doc = {"versions": {"1.0.0": {"dist": {"tarball": "tarballs/a-1.0.0.tgz", "integrity": sri(data)}}}}
        (tmp_path / "a.json").write_text(json.dumps(doc))
        (tmp_path / "@s").mkdir()
        (tmp_path / "@s" / "b.json").write_text(json.dumps({"versions": {}}))
        (tmp_path / "bad.json").write_text("{")
        return data

    def test_reads_packuments_and_tarballs(self, tmp_path):
        """Test reading packuments and tarballs from disk."""
        data = self._mirror(tmp_path)
        source = FileRegistrySource(str(tmp_path))
        meta = source.fetch_metadata("a")
        assert meta.version_list() == ["1.0.0"]
        assert source.fetch_tarball(meta.get("1.0.0").tarball, context="a") == data
        assert source.fetch_tarball((tmp_path / "tarballs" / "a-1.0.0.tgz").as_uri(), context="a") == data

    def test_scoped_packument(self, tmp_path):
        """Test scoped packuments nest under the scope directory."""
        self._mirror(tmp_path)
        assert FileRegistrySource(str(tmp_path)).fetch_metadata("@s/b").versions == {}

    def test_missing_and_broken(self, tmp_path):
        """Test missing and unreadable mirror files."""
        self._mirror(tmp_path)
        source = FileRegistrySource(str(tmp_path))
        with pytest.raises(PackageNotFound):
            source.fetch_metadata("nope")
        with pytest.raises(RegistryError):
            source.fetch_metadata("bad")
        with pytest.raises(PackageNotFound):
            source.fetch_tarball("tarballs/missing.tgz", context="a")

    def test_source_for_location(self, tmp_path):
        """Test source selection by location scheme."""
        assert isinstance(source_for_location("https://npm.example/"), HttpRegistrySource)
        assert isinstance(source_for_location(str(tmp_path)), FileRegistrySource)
        assert isinstance(source_for_location(tmp_path.as_uri()), FileRegistrySource)


class TestHandles:
    """Sources declare which tarball URLs they can serve."""

    def test_http_and_file_schemes(self, tmp_path):
        """Each built-in source accepts only its own schemes."""
        http = HttpRegistrySource("https://npm.example/", RetryPolicy(attempts=1))
        local = FileRegistrySource(str(tmp_path))
        assert http.handles("https://npm.example/a/-/a-1.0.0.tgz")
        assert not http.handles("file:///tmp/a.tgz")
        assert local.handles("file:///tmp/a.tgz")
        assert local.handles("tarballs/a-1.0.0.tgz")
        assert not local.handles("http://npm.example/a.tgz")

    def test_custom_source_accepts_own_urls(self):
        """A source without its own rule serves every URL it is handed."""
        assert FakeRegistry().handles("fake://a/-/a-1.0.0.tgz")
