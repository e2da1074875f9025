"""Content-addressed cache for tarballs and their extracted trees.

Layout under the cache root::

    content/<algorithm>/<hex[0:2]>/<hex[2:4]>/<hex>   raw tarball bytes
    trees/<algorithm>/<hex[0:2]>/<hex>/               extracted package files
    tmp/                                              staging area

Entries are immutable once published. Writes go to ``tmp/`` first and are
published with an atomic rename, so a crashed writer never leaves a
half-written entry behind and concurrent processes converge on one copy.
Within a process, writers of the same key are serialized by a per-key lock:
one thread writes, the others wait and then read the published entry.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from typing import Optional, Union

from common.concurrency import KeyedLocks
from common.errors import CacheCorruption, IntegrityMismatch
from common.logging_utils import extra_context, is_debug_enabled
from constants import Constants

from .extract import extract_tarball
from .integrity import Hash, IntegrityDescriptor, parse_integrity, verify

logger = logging.getLogger(__name__)

IntegrityLike = Union[str, IntegrityDescriptor, Hash]


@dataclass(frozen=True)
class CacheEntry:
    """A published cache blob."""

    key: Hash
    path: str
    size: int

    @property
    def integrity(self) -> str:
        return self.key.to_sri()


def _as_hash(integrity: IntegrityLike) -> Hash:
    if isinstance(integrity, Hash):
        return integrity
    if isinstance(integrity, IntegrityDescriptor):
        return integrity.strongest
    return parse_integrity(integrity).strongest


def _as_descriptor(integrity: IntegrityLike) -> IntegrityDescriptor:
    if isinstance(integrity, IntegrityDescriptor):
        return integrity
    if isinstance(integrity, Hash):
        return IntegrityDescriptor(hashes=(integrity,))
    return parse_integrity(integrity)


class ContentCache:
    """Content-addressed store keyed by integrity hash."""

    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(root or Constants.CACHE_DIR)
        self._blob_locks = KeyedLocks()
        self._tree_locks = KeyedLocks()
        for sub in ("content", "trees", "tmp"):
            os.makedirs(os.path.join(self.root, sub), exist_ok=True)

    # Paths -----------------------------------------------------------------

    def blob_path(self, integrity: IntegrityLike) -> str:
        key = _as_hash(integrity)
        hexd = key.hexdigest
        return os.path.join(self.root, "content", key.algorithm, hexd[:2], hexd[2:4], hexd)

    def tree_path(self, integrity: IntegrityLike) -> str:
        key = _as_hash(integrity)
        hexd = key.hexdigest
        return os.path.join(self.root, "trees", key.algorithm, hexd[:2], hexd)

    def _staging(self, prefix: str) -> str:
        return tempfile.mkdtemp(prefix=prefix, dir=os.path.join(self.root, "tmp"))

    # Blobs -----------------------------------------------------------------

    def has_blob(self, integrity: IntegrityLike) -> bool:
        return os.path.isfile(self.blob_path(integrity))

    def put_if_absent(self, integrity: IntegrityLike, data: bytes) -> CacheEntry:
        """Store ``data`` under ``integrity`` unless an entry already exists.

        The bytes are verified first; bytes that do not hash to the declared
        key are rejected and nothing is written.

        Raises:
            IntegrityMismatch: ``data`` does not match ``integrity``.
        """
        key = verify(data, _as_descriptor(integrity))
        path = self.blob_path(key)
        with self._blob_locks(("blob", key.algorithm, key.hexdigest)):
            if os.path.isfile(path):
                if is_debug_enabled(logger):
                    logger.debug(
                        "Cache blob present",
                        extra=extra_context(event="cache_hit", component="cache", target=key.to_sri()),
                    )
                return CacheEntry(key=key, path=path, size=os.path.getsize(path))
            os.makedirs(os.path.dirname(path), exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix="blob-", dir=os.path.join(self.root, "tmp"))
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
            logger.debug("Cached %d bytes as %s", len(data), key.to_sri())
            return CacheEntry(key=key, path=path, size=len(data))

    def get_blob(self, integrity: IntegrityLike) -> Optional[bytes]:
        """Read and re-verify a blob.

        Returns:
            The bytes, or None on a miss.

        Raises:
            CacheCorruption: The stored bytes are unreadable or no longer match.
        """
        path = self.blob_path(integrity)
        try:
            with open(path, "rb") as f:
                data = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheCorruption(f"unreadable cache entry {path}: {e}") from e
        try:
            verify(data, _as_descriptor(integrity))
        except IntegrityMismatch as e:
            raise CacheCorruption(f"cache entry {path} does not match its key") from e
        return data

    def evict(self, integrity: IntegrityLike) -> None:
        """Drop a blob and its tree (used after corruption is detected)."""
        key = _as_hash(integrity)
        with self._blob_locks(("blob", key.algorithm, key.hexdigest)):
            try:
                os.unlink(self.blob_path(key))
            except FileNotFoundError:
                pass
        with self._tree_locks(("tree", key.algorithm, key.hexdigest)):
            shutil.rmtree(self.tree_path(key), ignore_errors=True)
        logger.warning("Evicted corrupt cache entry %s", key.to_sri())

    # Trees -----------------------------------------------------------------

    def get_extracted_tree(self, integrity: IntegrityLike) -> Optional[str]:
        """Return the extracted directory for ``integrity``, or None on a miss."""
        path = self.tree_path(integrity)
        return path if os.path.isdir(path) else None

    def ensure_extracted_tree(self, integrity: IntegrityLike, *, context: str = "") -> str:
        """Return the extracted tree, extracting the cached blob on first use.

        Raises:
            CacheCorruption: The blob is missing, corrupt or not a valid archive.
        """
        key = _as_hash(integrity)
        path = self.tree_path(key)
        with self._tree_locks(("tree", key.algorithm, key.hexdigest)):
            if os.path.isdir(path):
                return path
            data = self.get_blob(integrity)
            if data is None:
                raise CacheCorruption(f"{context}: no cached tarball for {key.to_sri()}", package=context or None)
            staging = self._staging("tree-")
            try:
                count = extract_tarball(data, staging, context=context)
                os.makedirs(os.path.dirname(path), exist_ok=True)
                try:
                    os.rename(staging, path)
                except OSError:
                    # Another process published the same tree first.
                    if not os.path.isdir(path):
                        raise
                    shutil.rmtree(staging, ignore_errors=True)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise
            logger.debug("%s: extracted %d files into %s", context, count, path)
            return path
