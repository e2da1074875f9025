"""Registry metadata models and npm packument parsing."""
from __future__ import annotations

import base64
import binascii
import logging
import platform
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from versioning.matcher import sort_versions
from versioning.models import Requirement

logger = logging.getLogger(__name__)

_NODE_PLATFORMS = {"win32": "win32", "cygwin": "win32", "darwin": "darwin"}
_NODE_ARCHES = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "armv7l": "arm",
    "ppc64le": "ppc64",
    "s390x": "s390x",
}


def current_os() -> str:
    """Host OS in npm's vocabulary (``process.platform``)."""
    for prefix, name in _NODE_PLATFORMS.items():
        if sys.platform.startswith(prefix):
            return name
    return sys.platform.rstrip("0123456789") or sys.platform


def current_cpu() -> str:
    """Host CPU in npm's vocabulary (``process.arch``)."""
    machine = platform.machine().lower()
    return _NODE_ARCHES.get(machine, machine)


def _allowed(value: str, rules: Tuple[str, ...]) -> bool:
    if not rules:
        return True
    negated = [r[1:] for r in rules if r.startswith("!")]
    allowed = [r for r in rules if not r.startswith("!")]
    if value in negated:
        return False
    if allowed:
        return value in allowed or "any" in allowed
    return True


@dataclass(frozen=True)
class PlatformConstraints:
    """``os`` / ``cpu`` lists from a version manifest (``!`` negates)."""

    os: Tuple[str, ...] = ()
    cpu: Tuple[str, ...] = ()

    def allows(self, os_name: Optional[str] = None, cpu: Optional[str] = None) -> bool:
        return _allowed(os_name or current_os(), self.os) and _allowed(cpu or current_cpu(), self.cpu)

    def __bool__(self) -> bool:
        return bool(self.os or self.cpu)


@dataclass(frozen=True)
class VersionRecord:
    """One published version of a package."""

    name: str
    version: str
    tarball: str
    integrity: str
    dependencies: Tuple[Requirement, ...] = ()
    peer_dependencies: Tuple[Tuple[str, str], ...] = ()
    platform: PlatformConstraints = field(default_factory=PlatformConstraints)
    bin: Tuple[Tuple[str, str], ...] = ()

    @property
    def key(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True)
class RegistryMetadata:
    """All published versions of a package, ascending by precedence."""

    name: str
    versions: Dict[str, VersionRecord]
    dist_tags: Dict[str, str] = field(default_factory=dict)

    def version_list(self):
        return list(self.versions.keys())

    def get(self, version: str) -> Optional[VersionRecord]:
        return self.versions.get(version)

    @classmethod
    def from_packument(cls, name: str, data: Dict[str, Any]) -> "RegistryMetadata":
        """Build metadata from an npm packument (full or abbreviated).

        Versions without a tarball URL or any usable integrity information are
        skipped with a debug log; they can never be installed safely.
        """
        raw_versions = data.get("versions") or {}
        if not isinstance(raw_versions, dict):
            raw_versions = {}
        records: Dict[str, VersionRecord] = {}
        for version in sort_versions(raw_versions.keys()):
            manifest = raw_versions.get(version)
            if not isinstance(manifest, dict):
                continue
            record = parse_version_manifest(name, version, manifest)
            if record is None:
                logger.debug("Skipping %s@%s: no tarball or integrity", name, version)
                continue
            records[version] = record
        tags = data.get("dist-tags") or {}
        dist_tags = {str(k): str(v) for k, v in tags.items()} if isinstance(tags, dict) else {}
        return cls(name=name, versions=records, dist_tags=dist_tags)


def shasum_to_integrity(shasum: str) -> Optional[str]:
    """Convert a hex SHA-1 ``dist.shasum`` into an SRI string."""
    try:
        raw = binascii.unhexlify(shasum.strip())
    except (binascii.Error, ValueError):
        return None
    if len(raw) != 20:
        return None
    return "sha1-" + base64.b64encode(raw).decode("ascii")


def _string_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if isinstance(v, str)}


def _string_tuple(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list):
        return tuple(str(v) for v in value if isinstance(v, str))
    return ()


def _bin_map(name: str, value: Any) -> Dict[str, str]:
    if isinstance(value, str):
        return {name.split("/")[-1]: value}
    return _string_map(value)


def parse_version_manifest(name: str, version: str, manifest: Dict[str, Any]) -> Optional[VersionRecord]:
    """Parse one ``versions[v]`` entry of a packument."""
    dist = manifest.get("dist") or {}
    tarball = dist.get("tarball")
    integrity = dist.get("integrity") or (
        shasum_to_integrity(dist["shasum"]) if dist.get("shasum") else None
    )
    if not tarball or not integrity:
        return None

    parent = f"{name}@{version}"
    deps = _string_map(manifest.get("dependencies"))
    optional = _string_map(manifest.get("optionalDependencies"))
    # optionalDependencies win over dependencies of the same name, as in npm.
    for dep in optional:
        deps.pop(dep, None)
    requirements = [
        Requirement(name=dep, range_expr=deps[dep].strip(), parent=parent)
        for dep in sorted(deps)
    ]
    requirements.extend(
        Requirement(name=dep, range_expr=optional[dep].strip(), parent=parent, optional=True)
        for dep in sorted(optional)
    )
    peers = _string_map(manifest.get("peerDependencies"))
    return VersionRecord(
        name=name,
        version=version,
        tarball=str(tarball),
        integrity=str(integrity),
        dependencies=tuple(requirements),
        peer_dependencies=tuple(sorted(peers.items())),
        platform=PlatformConstraints(
            os=_string_tuple(manifest.get("os")), cpu=_string_tuple(manifest.get("cpu"))
        ),
        bin=tuple(sorted(_bin_map(name, manifest.get("bin")).items())),
    )
