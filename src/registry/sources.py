"""Package sources: transports that yield registry metadata and tarballs.

A source is a capability pair {fetch_metadata, fetch_tarball}. The HTTP
source speaks the npm registry protocol; the file source reads a local
mirror laid out as ``<root>/<name>.json`` packuments plus tarball files.
"""
from __future__ import annotations

import json
import logging
import os
import urllib.parse
import urllib.request
from abc import ABC, abstractmethod
from typing import Optional

from constants import Constants
from common.errors import PackageNotFound, RegistryError
from common.http_client import RetryPolicy, get_json, request_with_retry
from common.logging_utils import extra_context, is_debug_enabled, safe_url

from .models import RegistryMetadata

logger = logging.getLogger(__name__)


def escape_name(name: str) -> str:
    """URL-escape a package name the way registries expect (``@scope%2fname``)."""
    if name.startswith("@"):
        return "@" + urllib.parse.quote(name[1:], safe="").replace("%2F", "%2f")
    return urllib.parse.quote(name, safe="")


class PackageSource(ABC):
    """Capability interface implemented by every transport."""

    @abstractmethod
    def fetch_metadata(self, name: str) -> RegistryMetadata:
        """Return metadata for ``name``.

        Raises:
            PackageNotFound: The source has no such package.
            NetworkFailure: Transient failures exhausted the retry limit.
        """

    @abstractmethod
    def fetch_tarball(self, url: str, *, context: str) -> bytes:
        """Return raw tarball bytes for ``url``."""

    def handles(self, url: str) -> bool:  # pylint: disable=unused-argument
        """Whether ``fetch_tarball`` can serve ``url``.

        Sources that only ever see URLs they published themselves accept
        everything.
        """
        return True


class HttpRegistrySource(PackageSource):
    """npm-compatible HTTP(S) registry."""

    def __init__(self, base_url: Optional[str] = None, policy: Optional[RetryPolicy] = None):
        self.base_url = (base_url or Constants.REGISTRY_URL_NPM).rstrip("/") + "/"
        self.policy = policy or RetryPolicy.from_constants()

    def metadata_url(self, name: str) -> str:
        return self.base_url + escape_name(name)

    def fetch_metadata(self, name: str) -> RegistryMetadata:
        url = self.metadata_url(name)
        if is_debug_enabled(logger):
            logger.debug(
                "Fetching packument",
                extra=extra_context(
                    event="function_entry",
                    component="registry",
                    action="fetch_metadata",
                    target=safe_url(url),
                    package=name,
                ),
            )
        data = get_json(
            url,
            context=name,
            policy=self.policy,
            headers={"Accept": Constants.REGISTRY_ACCEPT_HEADER},
        )
        if not isinstance(data, dict):
            raise PackageNotFound(f"{name}: registry returned no package document", package=name)
        return RegistryMetadata.from_packument(name, data)

    def fetch_tarball(self, url: str, *, context: str) -> bytes:
        return request_with_retry(url, context=context, policy=self.policy)

    def handles(self, url: str) -> bool:
        return urllib.parse.urlsplit(url).scheme in ("http", "https")

    def __repr__(self) -> str:
        return f"HttpRegistrySource({safe_url(self.base_url)!r})"


def file_url_to_path(url: str) -> str:
    """Convert a ``file://`` URL (or plain path) to a local filesystem path."""
    parts = urllib.parse.urlsplit(url)
    if parts.scheme == "file":
        return urllib.request.url2pathname(parts.path)
    return url


class FileRegistrySource(PackageSource):
    """Local directory mirror of a registry.

    Packuments live at ``<root>/<name>.json`` (scoped names nest as
    ``<root>/@scope/name.json``). Tarball URLs may be ``file://`` URLs or
    paths relative to ``root``.
    """

    def __init__(self, root: str):
        self.root = os.path.abspath(file_url_to_path(root))

    def fetch_metadata(self, name: str) -> RegistryMetadata:
        path = os.path.join(self.root, *name.split("/")) + ".json"
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise PackageNotFound(f"{name}: not found in {self.root}", package=name) from e
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryError(f"{name}: unreadable packument {path}: {e}", package=name) from e
        return RegistryMetadata.from_packument(name, data if isinstance(data, dict) else {})

    def fetch_tarball(self, url: str, *, context: str) -> bytes:
        path = file_url_to_path(url)
        if not os.path.isabs(path):
            path = os.path.join(self.root, path)
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError as e:
            raise PackageNotFound(f"{context}: tarball {path} not found", package=context) from e

    def handles(self, url: str) -> bool:
        return urllib.parse.urlsplit(url).scheme in ("", "file")

    def __repr__(self) -> str:
        return f"FileRegistrySource({self.root!r})"


def source_for_location(location: str, policy: Optional[RetryPolicy] = None) -> PackageSource:
    """Build the right source variant for a registry location string."""
    scheme = urllib.parse.urlsplit(location).scheme
    if scheme in ("http", "https"):
        return HttpRegistrySource(location, policy)
    return FileRegistrySource(location)


def transport_for_tarball(url: str, policy: Optional[RetryPolicy] = None) -> Optional[PackageSource]:
    """A standalone source for a tarball hosted outside its package's registry."""
    scheme = urllib.parse.urlsplit(url).scheme
    if scheme in ("http", "https"):
        return HttpRegistrySource(policy=policy)
    if scheme == "file":
        return FileRegistrySource(os.path.dirname(file_url_to_path(url)))
    return None
