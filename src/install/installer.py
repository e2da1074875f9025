"""End-to-end install: manifest -> graph -> cache -> node_modules -> lockfile.

The lockfile is written only after every step succeeded, so an aborted run
never looks complete. Re-running with no external change converges: the
lockfile short-circuits metadata requests, cached trees short-circuit
tarball downloads, and install markers short-circuit file copies.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from common.errors import LockfileError
from constants import Constants
from project.manifest import load_manifest
from registry.client import RegistryClient
from resolver.graph import DependencyGraph
from resolver.lockfile import graph_from_lockfile, graph_to_lockfile, read_lockfile, write_lockfile
from resolver.resolver import Resolver, check_peer_dependencies
from store.cache import ContentCache
from versioning.models import PackageSpec, Requirement, ROOT_NAME

from . import linker
from .acquire import AcquisitionPipeline, prune_skipped

logger = logging.getLogger(__name__)


@dataclass
class InstallReport:
    """Summary of one install run."""

    packages: int = 0
    from_lockfile: bool = False
    downloaded: int = 0
    cache_hits: int = 0
    linked: int = 0
    unchanged: int = 0
    removed: int = 0
    skipped: int = 0
    metadata_requests: int = 0
    tarball_requests: int = 0
    lockfile_written: bool = False
    warnings: List[str] = field(default_factory=list)


def merge_requirements(base: Iterable[Requirement], extra: Iterable[PackageSpec]) -> List[Requirement]:
    """Overlay CLI package specs onto manifest requirements (CLI wins)."""
    merged = {req.name: req for req in base}
    for spec in extra:
        merged[spec.name] = Requirement(name=spec.name, range_expr=spec.range_expr or "latest", parent=ROOT_NAME)
    return [merged[name] for name in sorted(merged)]


class Installer:
    """Wires resolver, acquisition pipeline and linker for one project."""

    def __init__(
        self,
        project_dir: str,
        *,
        client: Optional[RegistryClient] = None,
        cache: Optional[ContentCache] = None,
        max_workers: Optional[int] = None,
        frozen_lockfile: bool = False,
        include_dev: bool = True,
        link_mode: Optional[str] = None,
        os_name: Optional[str] = None,
        cpu: Optional[str] = None,
    ):
        self.project_dir = os.path.abspath(project_dir)
        self.client = client or RegistryClient.from_constants()
        self.cache = cache or ContentCache()
        self.max_workers = max_workers or Constants.MAX_CONCURRENCY
        self.frozen_lockfile = frozen_lockfile
        self.include_dev = include_dev
        self.link_mode = link_mode
        self.os_name = os_name
        self.cpu = cpu

    @property
    def lockfile_path(self) -> str:
        return os.path.join(self.project_dir, Constants.LOCKFILE_FILE)

    def root_requirements(self, extra: Iterable[PackageSpec] = ()) -> List[Requirement]:
        manifest = load_manifest(self.project_dir)
        return merge_requirements(manifest.requirements(include_dev=self.include_dev), extra)

    def _graph_from_lockfile(self, requirements: List[Requirement]) -> Optional[DependencyGraph]:
        try:
            data = read_lockfile(self.lockfile_path)
            if data is None:
                return None
            return graph_from_lockfile(data, requirements)
        except LockfileError as e:
            if self.frozen_lockfile:
                raise
            logger.warning("Ignoring lockfile: %s", e)
            return None

    def resolve(self, requirements: List[Requirement]) -> Tuple[DependencyGraph, bool]:
        """Prefer a valid lockfile; otherwise run the resolver.

        Returns:
            (graph, True if it came from the lockfile)

        Raises:
            LockfileError: ``frozen_lockfile`` is set and the lockfile is missing or stale.
        """
        graph = self._graph_from_lockfile(requirements)
        if graph is not None:
            logger.info("Using lockfile %s (%d packages)", self.lockfile_path, len(graph))
            return graph, True
        if self.frozen_lockfile:
            raise LockfileError(f"{Constants.LOCKFILE_FILE} is missing or out of date and --frozen-lockfile is set")
        resolver = Resolver(self.client, max_workers=self.max_workers, os_name=self.os_name, cpu=self.cpu)
        return resolver.resolve(requirements), False

    def install(self, extra: Iterable[PackageSpec] = ()) -> InstallReport:
        """Run a full install.

        Raises:
            VoltError: The first fatal error; nothing is reported as installed.
        """
        report = InstallReport()
        requirements = self.root_requirements(extra)
        graph, from_lock = self.resolve(requirements)
        report.from_lockfile = from_lock
        check_peer_dependencies(graph)

        pipeline = AcquisitionPipeline(self.client, self.cache, self.max_workers)
        acquired = pipeline.acquire_all(list(graph), graph.required_keys())
        for node, error in acquired.skipped:
            graph.warnings.append(f"Skipped optional package {node.ident}: {error}")
        prune_skipped(graph, acquired)

        link_plan = linker.plan(graph)
        trees = {key: pkg.tree_path for key, pkg in acquired.packages.items()}
        link_result = linker.apply(link_plan, trees, self.project_dir, link_mode=self.link_mode)

        report.lockfile_written = self._write_lockfile_if_changed(graph)
        report.packages = len(graph)
        report.downloaded = acquired.fetched
        report.cache_hits = acquired.cache_hits
        report.skipped = len(acquired.skipped)
        report.linked = link_result.linked
        report.unchanged = link_result.unchanged
        report.removed = link_result.removed
        report.metadata_requests = self.client.metadata_requests
        report.tarball_requests = self.client.tarball_requests
        report.warnings = list(graph.warnings)
        return report

    def _write_lockfile_if_changed(self, graph: DependencyGraph) -> bool:
        try:
            current = read_lockfile(self.lockfile_path)
        except LockfileError:
            current = None
        if current == graph_to_lockfile(graph):
            return False
        write_lockfile(self.lockfile_path, graph)
        return True
