"""Safe extraction of npm package tarballs."""
from __future__ import annotations

import io
import logging
import os
import posixpath
import tarfile
import zlib

from common.errors import CacheCorruption

logger = logging.getLogger(__name__)


def _member_path(name: str) -> str:
    """Strip the leading top-level directory (usually ``package/``)."""
    normalized = posixpath.normpath(name.replace("\\", "/"))
    if normalized.startswith("/") or normalized == ".." or normalized.startswith("../"):
        raise CacheCorruption(f"unsafe path in tarball: {name!r}")
    parts = normalized.split("/")
    if len(parts) < 2:
        return ""
    rest = "/".join(parts[1:])
    if ".." in rest.split("/"):
        raise CacheCorruption(f"unsafe path in tarball: {name!r}")
    return rest


def extract_tarball(data: bytes, dest: str, *, context: str = "") -> int:
    """Extract a gzipped (or plain) tarball into ``dest``.

    Directory and regular file members are written; links, devices and any
    member escaping ``dest`` are rejected.

    Returns:
        int: Number of files written.

    Raises:
        CacheCorruption: On unreadable archives or unsafe members.
    """
    os.makedirs(dest, exist_ok=True)
    written = 0
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
            for member in archive:
                rel = _member_path(member.name)
                if not rel:
                    continue
                target = os.path.join(dest, *rel.split("/"))
                if member.isdir():
                    os.makedirs(target, exist_ok=True)
                    continue
                if not member.isfile():
                    if member.issym() or member.islnk():
                        raise CacheCorruption(f"{context}: link member {member.name!r} not allowed")
                    logger.debug("%s: skipping special member %s", context, member.name)
                    continue
                os.makedirs(os.path.dirname(target), exist_ok=True)
                source = archive.extractfile(member)
                if source is None:
                    continue
                with source, open(target, "wb") as out:
                    while True:
                        chunk = source.read(64 * 1024)
                        if not chunk:
                            break
                        out.write(chunk)
                mode = 0o755 if member.mode & 0o111 else 0o644
                os.chmod(target, mode)
                written += 1
    except (tarfile.TarError, EOFError, OSError, zlib.error) as e:
        # Real filesystem errors carry an errno; decoder errors do not.
        if isinstance(e, OSError) and e.errno is not None:
            raise
        raise CacheCorruption(f"{context}: unreadable tarball: {e}") from e
    return written
