"""Tests for the acquisition pipeline."""

import os
import time

import pytest

from common.errors import IntegrityMismatch, NetworkFailure
from install.acquire import AcquisitionPipeline, prune_skipped
from registry.client import RegistryClient
from resolver.resolver import Resolver
from versioning.models import Requirement

from conftest import FakeRegistry


def _graph(client, *reqs):
    return Resolver(client, max_workers=2, os_name="linux", cpu="x64").resolve(list(reqs))


class TestAcquire:
    """Test fetching, verifying and extracting resolved packages."""

    def test_fetches_verifies_and_extracts(self, registry, client, cache):
        """Test a fresh package is downloaded and unpacked."""
        registry.add("a", "1.0.0")
        graph = _graph(client, Requirement("a", "^1"))
        result = AcquisitionPipeline(client, cache, 2).acquire_all(list(graph))
        pkg = result.packages[("a", "1.0.0")]
        assert pkg.fetched
        assert os.path.isfile(os.path.join(pkg.tree_path, "index.js"))
        assert result.fetched == 1 and result.cache_hits == 0

    def test_second_run_uses_cache(self, registry, client, cache):
        """Test a repeated run is served from the cache."""
        registry.add("a", "1.0.0")
        graph = _graph(client, Requirement("a", "^1"))
        AcquisitionPipeline(client, cache, 2).acquire_all(list(graph))
        result = AcquisitionPipeline(client, cache, 2).acquire_all(list(graph))
        assert result.cache_hits == 1
        assert registry.total_tarball_calls == 1

    def test_shared_node_fetched_once(self, registry, client, cache):
        """Test a package shared by two parents is fetched once."""
        registry.add("a", "1.0.0", dependencies={"c": "^1"})
        registry.add("b", "1.0.0", dependencies={"c": "^1"})
        registry.add("c", "1.0.0")
        graph = _graph(client, Requirement("a", "^1"), Requirement("b", "^1"))
        AcquisitionPipeline(client, cache, 4).acquire_all(list(graph))
        assert registry.tarball_calls[registry.tarball_url("c", "1.0.0")] == 1

    def test_identical_content_shares_cache_entry(self, registry, client, cache):
        """Test identical tarballs share one extracted tree."""
        files = {"index.js": "same"}
        registry.add("a", "1.0.0", files=files)
        registry.add("b", "1.0.0", files=files)
        # package.json differs by name, so give both the same tarball bytes.
        registry.tarballs[registry.tarball_url("b", "1.0.0")] = registry.tarballs[registry.tarball_url("a", "1.0.0")]
        registry.packuments["b"]["versions"]["1.0.0"]["dist"]["integrity"] = (
            registry.packuments["a"]["versions"]["1.0.0"]["dist"]["integrity"]
        )
        graph = _graph(client, Requirement("a", "^1"), Requirement("b", "^1"))
        result = AcquisitionPipeline(client, cache, 1).acquire_all(list(graph))
        assert result.packages[("a", "1.0.0")].tree_path == result.packages[("b", "1.0.0")].tree_path

    def test_corrupt_blob_is_refetched(self, registry, client, cache):
        """Test a rotten cached blob is evicted and downloaded again."""
        registry.add("a", "1.0.0")
        graph = _graph(client, Requirement("a", "^1"))
        node = graph.get("a", "1.0.0")
        cache.put_if_absent(node.integrity, registry.tarballs[node.tarball])
        with open(cache.blob_path(node.integrity), "wb") as f:
            f.write(b"rotten")
        result = AcquisitionPipeline(client, cache, 1).acquire_all([node])
        assert result.packages[node.key].fetched
        assert cache.get_blob(node.integrity) == registry.tarballs[node.tarball]


class TestFailures:
    """Test per-node failure handling in the pipeline."""

    def test_integrity_mismatch_aborts_without_cache_write(self, registry, client, cache):
        """Test a tampered tarball aborts and leaves the cache clean."""
        registry.add("a", "1.0.0")
        graph = _graph(client, Requirement("a", "^1"))
        node = graph.get("a", "1.0.0")
        registry.tampered_tarballs.add(node.tarball)
        with pytest.raises(IntegrityMismatch) as exc:
            AcquisitionPipeline(client, cache, 1).acquire_all(list(graph))
        assert "a@1.0.0" in str(exc.value)
        assert not cache.has_blob(node.integrity)
        assert cache.get_extracted_tree(node.integrity) is None

    def test_integrity_mismatch_fatal_even_when_optional(self, registry, client, cache):
        """Test integrity failures are fatal for optional packages too."""
        registry.add("a", "1.0.0", optional={"b": "^1"})
        registry.add("b", "1.0.0")
        graph = _graph(client, Requirement("a", "^1"))
        registry.tampered_tarballs.add(registry.tarball_url("b", "1.0.0"))
        with pytest.raises(IntegrityMismatch):
            AcquisitionPipeline(client, cache, 1).acquire_all(list(graph), graph.required_keys())

    def test_required_download_failure_is_fatal(self, registry, client, cache):
        """Test a failed required download aborts the run."""
        registry.add("a", "1.0.0")
        graph = _graph(client, Requirement("a", "^1"))
        registry.missing_tarballs.add(registry.tarball_url("a", "1.0.0"))
        with pytest.raises(NetworkFailure):
            AcquisitionPipeline(client, cache, 1).acquire_all(list(graph), graph.required_keys())

    def test_optional_download_failure_is_skipped(self, registry, client, cache):
        """Test a failed optional download is skipped with its subtree."""
        registry.add("a", "1.0.0", optional={"b": "^1"})
        registry.add("b", "1.0.0", dependencies={"c": "^1"})
        registry.add("c", "1.0.0")
        graph = _graph(client, Requirement("a", "^1"))
        registry.missing_tarballs.add(registry.tarball_url("b", "1.0.0"))
        result = AcquisitionPipeline(client, cache, 2).acquire_all(list(graph), graph.required_keys())
        assert [n.ident for n, _ in result.skipped] == ["b@1.0.0"]
        assert prune_skipped(graph, result) == 2
        assert [n.ident for n in graph] == ["a@1.0.0"]

    def test_skipped_child_takes_required_parents_along(self, registry, client, cache):
        """Test parents needing a skipped package are pruned up to the optional edge."""
        registry.add("a", "1.0.0", optional={"x": "^1"})
        registry.add("x", "1.0.0", dependencies={"y": "^1"})
        registry.add("y", "1.0.0")
        graph = _graph(client, Requirement("a", "^1"))
        registry.missing_tarballs.add(registry.tarball_url("y", "1.0.0"))
        result = AcquisitionPipeline(client, cache, 2).acquire_all(list(graph), graph.required_keys())
        assert [n.ident for n, _ in result.skipped] == ["y@1.0.0"]
        assert prune_skipped(graph, result) == 2
        assert [n.ident for n in graph] == ["a@1.0.0"]
        assert graph.edges(("a", "1.0.0")) == ()

    def test_abort_stops_remaining_work(self, cache):
        """Test a fatal failure stops queued downloads."""
        class SlowRegistry(FakeRegistry):
            """Registry whose successful downloads are slow."""

            def fetch_tarball(self, url, *, context):
                if url not in self.missing_tarballs:
                    time.sleep(0.2)
                return super().fetch_tarball(url, context=context)

        registry = SlowRegistry()
        client = RegistryClient(registry)
        for name in "abcdefgh":
            registry.add(name, "1.0.0")
        graph = _graph(client, *[Requirement(n, "^1") for n in "abcdefgh"])
        registry.missing_tarballs.add(registry.tarball_url("a", "1.0.0"))
        with pytest.raises(NetworkFailure):
            AcquisitionPipeline(client, cache, 1).acquire_all(list(graph))
        assert registry.total_tarball_calls <= 2
