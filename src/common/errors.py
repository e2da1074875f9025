"""Error taxonomy for resolution, acquisition and linking.

Every failure surfaced to the user derives from ``VoltError`` and carries
enough context (package, version, range, requesting parent) for a one-line
message naming the offender.
"""
from __future__ import annotations

from typing import Optional


class VoltError(Exception):
    """Base class for all voltpm failures."""

    def __init__(
        self,
        message: str,
        *,
        package: Optional[str] = None,
        version: Optional[str] = None,
        range_expr: Optional[str] = None,
        parent: Optional[str] = None,
    ):
        super().__init__(message)
        self.package = package
        self.version = version
        self.range_expr = range_expr
        self.parent = parent


class ResolutionError(VoltError):
    """Dependency graph could not be built."""


class RangeUnsatisfiable(ResolutionError):
    """No published version satisfies a required range."""


class UnsupportedPlatform(ResolutionError):
    """The selected version declares os/cpu constraints excluding this host."""


class RegistryError(VoltError):
    """Registry transport failure."""


class PackageNotFound(RegistryError):
    """Registry answered 4xx for a package or tarball."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class NetworkFailure(RegistryError):
    """Transient failures persisted past the retry limit."""


class IntegrityMismatch(VoltError):
    """Content hash does not match its integrity descriptor."""


class CacheCorruption(VoltError):
    """A stored cache entry is unreadable or unsafe to use."""


class LinkConflict(VoltError):
    """A package cannot be placed into the dependency directory."""


class ManifestError(VoltError):
    """The project manifest is missing or malformed."""


class LockfileError(VoltError):
    """The lockfile is unreadable or inconsistent."""
