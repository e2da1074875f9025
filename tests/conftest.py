"""Shared fixtures: in-memory registry, tarball builder, cache and client."""

import base64
import hashlib
import io
import json
import tarfile
import threading

import pytest

from common.errors import NetworkFailure, PackageNotFound
from registry.client import RegistryClient
from registry.models import RegistryMetadata
from registry.sources import PackageSource
from store.cache import ContentCache


def make_tarball(files, prefix="package"):
    """Build a gzipped npm-style tarball from ``{relative_path: text}``."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as archive:
        for rel, content in sorted(files.items()):
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(name=f"{prefix}/{rel}")
            info.size = len(data)
            info.mode = 0o755 if rel.startswith("bin/") else 0o644
            archive.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def sri(data, algorithm="sha512"):
    """SRI string for ``data``."""
    return f"{algorithm}-" + base64.b64encode(hashlib.new(algorithm, data).digest()).decode("ascii")


class FakeRegistry(PackageSource):
    """In-memory package source that records every request."""

    def __init__(self):
        self.packuments = {}
        self.tarballs = {}
        self.metadata_calls = {}
        self.tarball_calls = {}
        self.missing_tarballs = set()
        self.tampered_tarballs = set()
        self._lock = threading.Lock()

    def add(self, name, version, dependencies=None, optional=None, peers=None,
            os_list=None, cpu_list=None, bin_map=None, files=None, tags=None):
        """Publish ``name@version`` and return its tarball URL."""
        body = {"package.json": json.dumps({"name": name, "version": version})}
        body.update(files or {"index.js": f"module.exports = '{name}@{version}';\n"})
        data = make_tarball(body)
        url = f"fake://{name}/-/{name.split('/')[-1]}-{version}.tgz"
        self.tarballs[url] = data
        manifest = {
            "name": name,
            "version": version,
            "dist": {"tarball": url, "integrity": sri(data)},
        }
        if dependencies:
            manifest["dependencies"] = dict(dependencies)
        if optional:
            manifest["optionalDependencies"] = dict(optional)
        if peers:
            manifest["peerDependencies"] = dict(peers)
        if os_list:
            manifest["os"] = list(os_list)
        if cpu_list:
            manifest["cpu"] = list(cpu_list)
        if bin_map:
            manifest["bin"] = bin_map
        doc = self.packuments.setdefault(name, {"name": name, "versions": {}, "dist-tags": {}})
        doc["versions"][version] = manifest
        doc["dist-tags"].update(tags or {})
        return url

    def tarball_url(self, name, version):
        return self.packuments[name]["versions"][version]["dist"]["tarball"]

    def fetch_metadata(self, name):
        with self._lock:
            self.metadata_calls[name] = self.metadata_calls.get(name, 0) + 1
        if name not in self.packuments:
            raise PackageNotFound(f"{name}: not found", package=name, status_code=404)
        return RegistryMetadata.from_packument(name, self.packuments[name])

    def fetch_tarball(self, url, *, context):
        with self._lock:
            self.tarball_calls[url] = self.tarball_calls.get(url, 0) + 1
        if url in self.missing_tarballs:
            raise NetworkFailure(f"{context}: simulated outage", package=context)
        data = self.tarballs[url]
        if url in self.tampered_tarballs:
            return data + b"tampered"
        return data

    @property
    def total_metadata_calls(self):
        return sum(self.metadata_calls.values())

    @property
    def total_tarball_calls(self):
        return sum(self.tarball_calls.values())


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def client(registry):
    return RegistryClient(registry)


@pytest.fixture
def cache(tmp_path):
    return ContentCache(str(tmp_path / "cache"))


@pytest.fixture
def project(tmp_path):
    """Factory writing package.json into a fresh project directory."""
    def _make(dependencies=None, dev=None, optional=None):
        root = tmp_path / "project"
        root.mkdir(exist_ok=True)
        manifest = {"name": "demo", "version": "1.0.0"}
        if dependencies is not None:
            manifest["dependencies"] = dependencies
        if dev is not None:
            manifest["devDependencies"] = dev
        if optional is not None:
            manifest["optionalDependencies"] = optional
        (root / "package.json").write_text(json.dumps(manifest), encoding="utf-8")
        return root
    return _make
