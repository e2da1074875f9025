"""Acquisition pipeline: resolved nodes -> verified, extracted cache trees.

For each node: extracted-tree hit -> done; otherwise fetch the tarball,
verify it against the node's integrity, publish it to the cache and extract
it. Nodes are processed by a bounded worker pool. The first failure on a
required node aborts the run (queued work is cancelled, running work is
allowed to finish); failures on optional nodes are logged and skipped.
Integrity mismatches are fatal regardless of optionality.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from common.errors import CacheCorruption, IntegrityMismatch, VoltError
from common.logging_utils import Timer, extra_context, is_debug_enabled
from constants import Constants
from registry.client import RegistryClient
from resolver.graph import DependencyGraph, NodeKey, ResolvedNode
from store.cache import ContentCache
from store.integrity import parse_integrity

logger = logging.getLogger(__name__)


class AcquisitionAborted(VoltError):
    """Raised inside workers that start after the run was aborted."""


@dataclass(frozen=True)
class AcquiredPackage:
    """A node whose files are available in the cache."""

    node: ResolvedNode
    tree_path: str
    fetched: bool


@dataclass
class AcquisitionResult:
    """Outcome of ``acquire_all``."""

    packages: Dict[NodeKey, AcquiredPackage] = field(default_factory=dict)
    skipped: List[Tuple[ResolvedNode, VoltError]] = field(default_factory=list)

    @property
    def fetched(self) -> int:
        return sum(1 for p in self.packages.values() if p.fetched)

    @property
    def cache_hits(self) -> int:
        return sum(1 for p in self.packages.values() if not p.fetched)


class AcquisitionPipeline:
    """Fetch -> verify -> cache -> extract, per node, in parallel."""

    def __init__(self, client: RegistryClient, cache: ContentCache, max_workers: Optional[int] = None):
        self.client = client
        self.cache = cache
        self.max_workers = max(1, int(max_workers or Constants.MAX_CONCURRENCY))
        self._abort = threading.Event()

    def acquire(self, node: ResolvedNode) -> AcquiredPackage:
        """Make ``node``'s extracted tree available in the cache.

        Raises:
            IntegrityMismatch: Descriptor unparseable or downloaded bytes differ.
            PackageNotFound, NetworkFailure: Tarball could not be downloaded.
            CacheCorruption: The archive is unreadable or unsafe.
        """
        if self._abort.is_set():
            raise AcquisitionAborted(f"{node.ident}: skipped after an earlier failure", package=node.name)
        try:
            descriptor = parse_integrity(node.integrity)
        except IntegrityMismatch as e:
            raise IntegrityMismatch(f"{node.ident}: {e}", package=node.name, version=node.version) from e

        tree = self.cache.get_extracted_tree(descriptor)
        if tree is not None:
            if is_debug_enabled(logger):
                logger.debug(
                    "Cache hit",
                    extra=extra_context(event="cache_hit", component="acquire", package=node.ident),
                )
            return AcquiredPackage(node=node, tree_path=tree, fetched=False)

        if self.cache.has_blob(descriptor):
            try:
                tree = self.cache.ensure_extracted_tree(descriptor, context=node.ident)
                return AcquiredPackage(node=node, tree_path=tree, fetched=False)
            except CacheCorruption as e:
                logger.warning("%s: %s; fetching again", node.ident, e)
                self.cache.evict(descriptor)

        with Timer() as t:
            data = self.client.fetch_tarball(node.tarball, package=node.ident)
            try:
                self.cache.put_if_absent(descriptor, data)
            except IntegrityMismatch as e:
                raise IntegrityMismatch(
                    f"{node.ident}: {e}", package=node.name, version=node.version
                ) from e
            tree = self.cache.ensure_extracted_tree(descriptor, context=node.ident)
        if is_debug_enabled(logger):
            logger.debug(
                "Acquired package",
                extra=extra_context(
                    event="acquired",
                    component="acquire",
                    package=node.ident,
                    size=len(data),
                    duration_ms=t.duration_ms(),
                ),
            )
        return AcquiredPackage(node=node, tree_path=tree, fetched=True)

    def acquire_all(
        self, nodes: Iterable[ResolvedNode], required: Optional[Set[NodeKey]] = None
    ) -> AcquisitionResult:
        """Acquire every node, failing fast on required ones.

        Args:
            nodes: Unique nodes to acquire.
            required: Keys whose failure aborts the run; defaults to all.
        """
        nodes = list(nodes)
        result = AcquisitionResult()
        self._abort.clear()
        first_error: Optional[VoltError] = None

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="voltpm-fetch")
        try:
            futures: Dict[Future, ResolvedNode] = {pool.submit(self.acquire, n): n for n in nodes}
            for future in as_completed(futures):
                node = futures[future]
                if future.cancelled():
                    continue
                try:
                    result.packages[node.key] = future.result()
                    continue
                except AcquisitionAborted:
                    continue
                except VoltError as e:
                    is_required = required is None or node.key in required
                    if is_required or isinstance(e, IntegrityMismatch):
                        first_error = e
                    else:
                        logger.warning(
                            "Skipping optional package %s: %s",
                            node.ident,
                            e,
                            extra=extra_context(event="optional_skipped", component="acquire", package=node.ident),
                        )
                        result.skipped.append((node, e))
                        continue
                # Fatal: stop scheduling, let in-flight work finish.
                self._abort.set()
                for pending in futures:
                    pending.cancel()
                break
        except BaseException:
            self._abort.set()
            raise
        finally:
            pool.shutdown(wait=True)

        if first_error is not None:
            raise first_error
        logger.info(
            "Acquired %d packages (%d downloaded, %d from cache, %d skipped)",
            len(result.packages),
            result.fetched,
            result.cache_hits,
            len(result.skipped),
        )
        return result


def prune_skipped(graph: DependencyGraph, result: AcquisitionResult) -> int:
    """Remove skipped optional nodes from ``graph``.

    Parents that need a skipped node through a required edge go too, up to
    the nearest optional edge, along with whatever only they reached.
    """
    skipped = {node.key for node, _ in result.skipped}
    if not skipped:
        return 0
    return graph.drop_broken(skipped)
