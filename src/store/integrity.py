"""Subresource-integrity parsing, digests and verification.

This is the only trust boundary between bytes from the network and the
local cache: every failure here is fatal, never a warning.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from dataclasses import dataclass
from typing import Iterable, List

from common.errors import IntegrityMismatch

# Strongest first.
ALGORITHMS = ("sha512", "sha384", "sha256", "sha1")


@dataclass(frozen=True)
class Hash:
    """A single algorithm-tagged digest."""

    algorithm: str
    digest: bytes

    @property
    def hexdigest(self) -> str:
        return self.digest.hex()

    def to_sri(self) -> str:
        return f"{self.algorithm}-{base64.b64encode(self.digest).decode('ascii')}"

    def __str__(self) -> str:
        return self.to_sri()


@dataclass(frozen=True)
class IntegrityDescriptor:
    """Parsed SRI string; may carry several hashes."""

    hashes: tuple

    @property
    def strongest(self) -> Hash:
        return self.hashes[0]

    def __str__(self) -> str:
        return " ".join(h.to_sri() for h in self.hashes)


def parse_integrity(text: str) -> IntegrityDescriptor:
    """Parse an SRI string such as ``sha512-<base64>``.

    Unknown algorithms are ignored; options after ``?`` are dropped. The
    result is ordered strongest-first.

    Raises:
        IntegrityMismatch: When no supported, well-formed hash is present.
    """
    if not isinstance(text, str) or not text.strip():
        raise IntegrityMismatch("missing integrity descriptor")
    found: List[Hash] = []
    for token in text.split():
        algorithm, sep, encoded = token.partition("-")
        algorithm = algorithm.lower()
        if not sep or algorithm not in ALGORITHMS:
            continue
        encoded = encoded.split("?", 1)[0]
        try:
            digest = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise IntegrityMismatch(f"malformed {algorithm} digest in integrity '{text}'") from e
        if len(digest) != hashlib.new(algorithm).digest_size:
            raise IntegrityMismatch(f"{algorithm} digest has wrong length in integrity '{text}'")
        found.append(Hash(algorithm, digest))
    if not found:
        raise IntegrityMismatch(f"no supported algorithm in integrity '{text}'")
    found.sort(key=lambda h: ALGORITHMS.index(h.algorithm))
    return IntegrityDescriptor(hashes=tuple(found))


def digest(data: bytes, algorithm: str = "sha512") -> Hash:
    """Hash ``data`` with ``algorithm``."""
    return Hash(algorithm, hashlib.new(algorithm, data).digest())


def digest_stream(chunks: Iterable[bytes], algorithm: str = "sha512") -> Hash:
    """Hash an iterable of byte chunks."""
    hasher = hashlib.new(algorithm)
    for chunk in chunks:
        hasher.update(chunk)
    return Hash(algorithm, hasher.digest())


def verify(data: bytes, expected) -> Hash:
    """Check ``data`` against ``expected`` (SRI string or descriptor).

    Only the strongest listed algorithm is checked; every hash listed for that
    algorithm is accepted.

    Returns:
        The matching Hash, usable as a cache key.

    Raises:
        IntegrityMismatch: On any mismatch or unparseable descriptor.
    """
    descriptor = expected if isinstance(expected, IntegrityDescriptor) else parse_integrity(expected)
    algorithm = descriptor.strongest.algorithm
    actual = digest(data, algorithm)
    for candidate in descriptor.hashes:
        if candidate.algorithm == algorithm and hmac.compare_digest(candidate.digest, actual.digest):
            return candidate
    raise IntegrityMismatch(
        f"integrity check failed: expected {descriptor.strongest.to_sri()}, got {actual.to_sri()}"
    )
