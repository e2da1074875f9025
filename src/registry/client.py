"""Registry client: per-run metadata memo and tarball fetch dispatch.

One ``RegistryClient`` lives for one resolution run. Metadata is fetched at
most once per package name even under concurrent callers; every waiter on
the same name receives the same result or the same error.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from common.concurrency import SingleFlight
from common.http_client import RetryPolicy
from common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from constants import Constants
from versioning.parser import scope_of

from .models import RegistryMetadata
from .sources import PackageSource, source_for_location, transport_for_tarball

logger = logging.getLogger(__name__)


class RegistryClient:
    """Front door for metadata and tarball requests.

    Args:
        default: Source used for unscoped names and unknown scopes.
        scoped: ``{"@scope": source}`` overrides.
    """

    def __init__(self, default: PackageSource, scoped: Optional[Dict[str, PackageSource]] = None):
        self.default = default
        self.scoped = dict(scoped or {})
        self._metadata: SingleFlight[RegistryMetadata] = SingleFlight()
        self._stats_lock = threading.Lock()
        self.metadata_requests = 0
        self.tarball_requests = 0

    @classmethod
    def from_constants(cls, policy: Optional[RetryPolicy] = None) -> "RegistryClient":
        """Build a client from configured registry URLs."""
        policy = policy or RetryPolicy.from_constants()
        default = source_for_location(Constants.REGISTRY_URL_NPM, policy)
        scoped = {
            scope: source_for_location(url, policy)
            for scope, url in Constants.SCOPED_REGISTRIES.items()
        }
        return cls(default, scoped)

    def source_for(self, name: str) -> PackageSource:
        scope = scope_of(name)
        if scope and scope in self.scoped:
            return self.scoped[scope]
        return self.default

    def fetch_metadata(self, name: str) -> RegistryMetadata:
        """Return metadata for ``name``, fetching it at most once per run."""
        return self._metadata.do(name, lambda: self._load_metadata(name))

    def cached_metadata(self, name: str) -> Optional[RegistryMetadata]:
        return self._metadata.peek(name)

    def _load_metadata(self, name: str) -> RegistryMetadata:
        source = self.source_for(name)
        with self._stats_lock:
            self.metadata_requests += 1
        with Timer() as t:
            metadata = source.fetch_metadata(name)
        if is_debug_enabled(logger):
            logger.debug(
                "Metadata loaded",
                extra=extra_context(
                    event="function_exit",
                    component="registry_client",
                    action="fetch_metadata",
                    outcome="success",
                    package=name,
                    version_count=len(metadata.versions),
                    duration_ms=t.duration_ms(),
                ),
            )
        return metadata

    def _transport_for_url(self, url: str, package: str) -> PackageSource:
        """Pick a source able to serve ``url``; tarballs may live off-registry."""
        source = self.source_for(package)
        for candidate in (source, self.default):
            if candidate.handles(url):
                return candidate
        return transport_for_tarball(url) or source

    def fetch_tarball(self, url: str, *, package: str) -> bytes:
        """Fetch raw tarball bytes for ``package`` from ``url``."""
        transport = self._transport_for_url(url, package)
        with self._stats_lock:
            self.tarball_requests += 1
        if is_debug_enabled(logger):
            logger.debug(
                "Fetching tarball",
                extra=extra_context(
                    event="function_entry",
                    component="registry_client",
                    action="fetch_tarball",
                    target=safe_url(url),
                    package=package,
                ),
            )
        return transport.fetch_tarball(url, context=package)

    def reset(self) -> None:
        """Forget memoized metadata (start of a new resolution run)."""
        self._metadata.clear()
