"""Dependency resolver: root requirements -> DependencyGraph.

Breadth-first expansion over a work queue. Each level's package metadata is
prefetched concurrently through the registry client (which collapses
duplicate requests per name); version selection and graph bookkeeping then
run sequentially in a fixed order so the same inputs always produce the same
graph.

Failures below optional edges are recovered: the failing subtree is pruned
and a warning recorded. Whether a node is optional is only known once the
whole graph is built, so failures are collected and judged at the end.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from common.errors import (
    NetworkFailure,
    PackageNotFound,
    RangeUnsatisfiable,
    RegistryError,
    UnsupportedPlatform,
    VoltError,
)
from common.logging_utils import Timer, extra_context, is_debug_enabled
from constants import Constants
from registry.client import RegistryClient
from registry.models import VersionRecord, current_cpu, current_os
from versioning.matcher import best_match, satisfies
from versioning.models import Requirement

from .graph import DependencyGraph, Edge, NodeKey, ResolvedNode, ROOT_KEY

logger = logging.getLogger(__name__)


@dataclass
class _Failure:
    parent: NodeKey
    requirement: Requirement
    error: VoltError


def node_from_record(record: VersionRecord) -> ResolvedNode:
    """Freeze a registry VersionRecord into a graph node."""
    return ResolvedNode(
        name=record.name,
        version=record.version,
        integrity=record.integrity,
        tarball=record.tarball,
        dependencies=record.dependencies,
        peer_dependencies=record.peer_dependencies,
        bin=record.bin,
    )


class Resolver:
    """Builds a conflict-free version graph from root requirements.

    Args:
        client: Registry client scoped to this resolution run.
        max_workers: Metadata prefetch pool size.
        os_name: Platform override (npm vocabulary), mainly for tests.
        cpu: CPU override (npm vocabulary), mainly for tests.
    """

    def __init__(
        self,
        client: RegistryClient,
        *,
        max_workers: Optional[int] = None,
        os_name: Optional[str] = None,
        cpu: Optional[str] = None,
    ):
        self.client = client
        self.max_workers = max(1, int(max_workers or Constants.MAX_CONCURRENCY))
        self.os_name = os_name or current_os()
        self.cpu = cpu or current_cpu()

    def resolve(self, root_requirements: Iterable[Requirement]) -> DependencyGraph:
        """Resolve ``root_requirements`` into a DependencyGraph.

        Raises:
            RangeUnsatisfiable: A required range has no matching version.
            PackageNotFound: A required package does not exist.
            NetworkFailure: A required package's metadata could not be fetched.
            UnsupportedPlatform: A required version excludes this platform.
        """
        graph = DependencyGraph(tuple(root_requirements))
        failures: List[_Failure] = []
        frontier: List[NodeKey] = [ROOT_KEY]
        level = 0

        with Timer() as timer, ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="voltpm-meta"
        ) as pool:
            while frontier:
                self._prefetch(pool, graph, frontier)
                next_frontier: List[NodeKey] = []
                for key in frontier:
                    edges: List[Edge] = []
                    for req in graph.node(key).dependencies:
                        try:
                            target = self._select(req)
                        except VoltError as e:
                            failures.append(_Failure(parent=key, requirement=req, error=e))
                            continue
                        node, created = graph.register(target)
                        if created:
                            next_frontier.append(node.key)
                        edges.append(Edge(requirement=req, target=node.key))
                    graph.set_edges(key, edges)
                if is_debug_enabled(logger):
                    logger.debug(
                        "Resolved level",
                        extra=extra_context(
                            event="resolve_level",
                            component="resolver",
                            level=level,
                            expanded=len(frontier),
                            discovered=len(next_frontier),
                        ),
                    )
                frontier = next_frontier
                level += 1

        self._settle_failures(graph, failures)
        logger.info(
            "Resolved %d packages (%d edges) in %.2fs",
            len(graph),
            graph.edge_count(),
            timer.duration_ms() / 1000.0,
        )
        return graph

    def _prefetch(self, pool: ThreadPoolExecutor, graph: DependencyGraph, frontier: List[NodeKey]) -> None:
        """Fetch metadata for every name required by ``frontier`` in parallel.

        Errors are not raised here; they resurface (memoized) when the
        requirement is selected.
        """
        names = sorted({req.name for key in frontier for req in graph.node(key).dependencies})
        pending = [
            pool.submit(self.client.fetch_metadata, name)
            for name in names
            if self.client.cached_metadata(name) is None
        ]
        if pending:
            wait(pending)

    def _select(self, req: Requirement) -> ResolvedNode:
        """Pick the node satisfying ``req``; the caller judges optionality of failures."""
        try:
            metadata = self.client.fetch_metadata(req.name)
        except PackageNotFound as e:
            raise PackageNotFound(
                f"{req.describe()}: package not found in registry",
                package=req.name,
                range_expr=req.range_expr,
                parent=req.parent,
                status_code=e.status_code,
            ) from e
        except NetworkFailure as e:
            raise NetworkFailure(
                f"{req.describe()}: {e}", package=req.name, range_expr=req.range_expr, parent=req.parent
            ) from e
        except RegistryError as e:
            raise RegistryError(
                f"{req.describe()}: {e}", package=req.name, range_expr=req.range_expr, parent=req.parent
            ) from e

        try:
            version = best_match(req.range_expr, metadata.version_list(), metadata.dist_tags)
        except ValueError as e:
            raise RangeUnsatisfiable(
                f"{req.describe()}: invalid range expression",
                package=req.name,
                range_expr=req.range_expr,
                parent=req.parent,
            ) from e
        if version is None:
            raise RangeUnsatisfiable(
                f"{req.describe()}: no version satisfies the range "
                f"({len(metadata.versions)} versions published)",
                package=req.name,
                range_expr=req.range_expr,
                parent=req.parent,
            )

        record = metadata.get(version)
        if record.platform and not record.platform.allows(self.os_name, self.cpu):
            raise UnsupportedPlatform(
                f"{record.key} does not support {self.os_name}/{self.cpu} "
                f"(os={list(record.platform.os)}, cpu={list(record.platform.cpu)}); required by {req.parent}",
                package=req.name,
                version=version,
                range_expr=req.range_expr,
                parent=req.parent,
            )
        return node_from_record(record)

    def _settle_failures(self, graph: DependencyGraph, failures: List[_Failure]) -> None:
        """Abort on failures under required nodes, prune the optional ones."""
        if not failures:
            return

        required = graph.required_keys() | {ROOT_KEY}
        for failure in failures:
            if not failure.requirement.optional and failure.parent in required:
                raise failure.error

        # A parent missing a required child is itself unusable.
        broken: Set[NodeKey] = {f.parent for f in failures if not f.requirement.optional}

        for failure in failures:
            message = f"Skipping optional dependency {failure.requirement.describe()}: {failure.error}"
            logger.warning(
                message,
                extra=extra_context(
                    event="optional_dropped",
                    component="resolver",
                    package=failure.requirement.name,
                    parent=failure.requirement.parent,
                ),
            )
            graph.warnings.append(message)

        dropped = graph.drop_broken(broken)
        if dropped:
            logger.info("Pruned %d packages from failed optional subtrees", dropped)


def check_peer_dependencies(graph: DependencyGraph) -> List[str]:
    """Warn about unmet or incompatible peer dependencies.

    A peer is met when some node of that name in the graph satisfies the
    declared range. Problems are logged and returned, never raised.
    """
    problems: List[str] = []
    by_name: Dict[str, List[ResolvedNode]] = {}
    for node in graph:
        by_name.setdefault(node.name, []).append(node)
    for node in graph:
        for peer_name, peer_range in node.peer_dependencies:
            present = by_name.get(peer_name, [])
            if not present:
                problems.append(f"{node.ident} has unmet peer dependency {peer_name}@{peer_range}")
            elif not any(satisfies(p.version, peer_range) for p in present):
                found = ", ".join(sorted(p.version for p in present))
                problems.append(
                    f"{node.ident} has incompatible peer dependency {peer_name}@{peer_range} (found {found})"
                )
    for problem in problems:
        logger.warning(problem, extra=extra_context(event="peer_dependency", component="resolver"))
    graph.warnings.extend(problems)
    return problems
