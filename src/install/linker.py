"""Linker: project a DependencyGraph onto a nested ``node_modules`` layout.

Placement walks the graph breadth-first from the project root. For each
edge the consumer's lookup chain is walked upward (its own
``node_modules``, then each ancestor's, then the top level), the way the
host runtime resolves a bare import:

* the first occupant with the required name is the same version -> reuse it;
* otherwise the node goes to the shallowest free level strictly below the
  first conflicting occupant, skipping any level where it would shadow a
  lookup already recorded for a consumer beneath that level.

``apply`` is re-runnable: each installed directory carries a marker naming
the node and its integrity, written last, and matching directories are left
untouched.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from common.errors import LinkConflict
from common.logging_utils import extra_context, is_debug_enabled
from constants import Constants
from resolver.graph import DependencyGraph, NodeKey, ResolvedNode, ROOT_KEY

logger = logging.getLogger(__name__)

# ("a", "b") means node_modules/a/node_modules/b; () is the project root.
InstallPath = Tuple[str, ...]


@dataclass
class LinkPlan:
    """Mapping of install paths to nodes."""

    placements: Dict[InstallPath, ResolvedNode] = field(default_factory=dict)

    def paths_for(self, key: NodeKey) -> List[InstallPath]:
        return sorted(p for p, n in self.placements.items() if n.key == key)

    def node_at(self, path: InstallPath) -> Optional[ResolvedNode]:
        return self.placements.get(tuple(path))

    def ordered(self) -> List[Tuple[InstallPath, ResolvedNode]]:
        """Placements parents-first, then lexically."""
        return sorted(self.placements.items(), key=lambda item: (len(item[0]), item[0]))

    def relative_dir(self, path: InstallPath) -> str:
        return relative_dir(path)

    def to_dict(self) -> Dict[str, str]:
        return {relative_dir(p): n.ident for p, n in self.ordered()}


def relative_dir(path: InstallPath) -> str:
    """``("a", "@s/b")`` -> ``node_modules/a/node_modules/@s/b``."""
    parts: List[str] = []
    for name in path:
        parts.append(Constants.MODULES_DIR)
        parts.extend(name.split("/"))
    return os.path.join(*parts) if parts else ""


@dataclass(frozen=True)
class _Lookup:
    consumer: InstallPath
    found_at: InstallPath  # level whose node_modules holds the dependency
    target: NodeKey


def _is_within(path: InstallPath, level: InstallPath) -> bool:
    return path[: len(level)] == level


class _Planner:
    def __init__(self, graph: DependencyGraph):
        self.graph = graph
        self.plan = LinkPlan()
        self.occupancy: Dict[InstallPath, Dict[str, NodeKey]] = {}
        self.lookups: Dict[str, List[_Lookup]] = {}

    def _occupant(self, level: InstallPath, name: str) -> Optional[NodeKey]:
        return self.occupancy.get(level, {}).get(name)

    def _would_shadow(self, level: InstallPath, name: str, target: NodeKey) -> bool:
        for lookup in self.lookups.get(name, ()):
            if lookup.target == target or not _is_within(lookup.consumer, level):
                continue
            if len(lookup.found_at) < len(level):
                return True
        return False

    def _record(self, consumer: InstallPath, name: str, level: InstallPath, target: NodeKey) -> None:
        self.lookups.setdefault(name, []).append(_Lookup(consumer, level, target))

    def _guard_cycle(self, level: InstallPath, target: NodeKey, name: str) -> None:
        for depth in range(1, len(level) + 1):
            ancestor = self.plan.placements.get(level[:depth])
            if ancestor is not None and ancestor.key == target:
                raise LinkConflict(
                    f"{name}@{target[1]} would be nested inside itself at {relative_dir(level + (name,))}",
                    package=name,
                    version=target[1],
                )

    def place(self, consumer: InstallPath, name: str, target: NodeKey) -> Optional[InstallPath]:
        """Resolve one edge; returns the new install path if a copy was placed."""
        chain = [consumer[:i] for i in range(len(consumer), -1, -1)]
        found_level = None
        for level in chain:
            if self._occupant(level, name) is not None:
                found_level = level
                break

        if found_level is not None and self._occupant(found_level, name) == target:
            self._record(consumer, name, found_level, target)
            return None

        candidates = chain[: chain.index(found_level)] if found_level is not None else chain
        for level in reversed(candidates):
            if self._would_shadow(level, name, target):
                continue
            self._guard_cycle(level, target, name)
            path = level + (name,)
            self.occupancy.setdefault(level, {})[name] = target
            self.plan.placements[path] = self.graph.node(target)
            self._record(consumer, name, level, target)
            return path

        raise LinkConflict(
            f"no install location for {name}@{target[1]} required from "
            f"{relative_dir(consumer) or 'project root'}",
            package=name,
            version=target[1],
        )

    def run(self) -> LinkPlan:
        queue = deque([((), ROOT_KEY)])
        while queue:
            consumer, key = queue.popleft()
            for edge in sorted(self.graph.edges(key), key=lambda e: e.requirement.name):
                path = self.place(consumer, edge.requirement.name, edge.target)
                if path is not None:
                    queue.append((path, edge.target))
        return self.plan


def plan(graph: DependencyGraph) -> LinkPlan:
    """Compute install locations for every node reachable from the root."""
    link_plan = _Planner(graph).run()
    if is_debug_enabled(logger):
        logger.debug(
            "Link plan computed",
            extra=extra_context(
                event="link_plan",
                component="linker",
                placements=len(link_plan.placements),
                nested=sum(1 for p in link_plan.placements if len(p) > 1),
            ),
        )
    return link_plan


@dataclass
class LinkResult:
    """Counts from ``apply``."""

    linked: int = 0
    unchanged: int = 0
    removed: int = 0
    bins: int = 0


def _marker_payload(node: ResolvedNode) -> str:
    return json.dumps({"package": node.ident, "integrity": node.integrity}, sort_keys=True)


def _read_marker(directory: str) -> Optional[str]:
    try:
        with open(os.path.join(directory, Constants.INSTALL_MARKER), "r", encoding="utf-8") as f:
            return f.read()
    except OSError:
        return None


def _clear_package_dir(directory: str) -> None:
    """Empty ``directory`` but keep its nested node_modules (managed separately)."""
    if not os.path.isdir(directory) or os.path.islink(directory):
        if os.path.lexists(directory):
            os.unlink(directory)
        return
    for entry in os.listdir(directory):
        if entry == Constants.MODULES_DIR:
            continue
        full = os.path.join(directory, entry)
        if os.path.isdir(full) and not os.path.islink(full):
            shutil.rmtree(full)
        else:
            os.unlink(full)


def _copy_tree(source: str, dest: str, link_mode: str) -> None:
    for current, dirs, files in os.walk(source):
        rel = os.path.relpath(current, source)
        target_dir = dest if rel == "." else os.path.join(dest, rel)
        os.makedirs(target_dir, exist_ok=True)
        if rel == ".":
            # A package's own node_modules is never shipped; ours is managed.
            dirs[:] = [d for d in dirs if d != Constants.MODULES_DIR]
        for name in files:
            src_file = os.path.join(current, name)
            dst_file = os.path.join(target_dir, name)
            if link_mode == "hardlink":
                try:
                    os.link(src_file, dst_file)
                    continue
                except OSError:
                    # cross-device or unsupported; copy instead
                    pass
            shutil.copy2(src_file, dst_file)


def _write_marker(directory: str, node: ResolvedNode) -> None:
    tmp = os.path.join(directory, Constants.INSTALL_MARKER + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(_marker_payload(node))
    os.replace(tmp, os.path.join(directory, Constants.INSTALL_MARKER))


def _iter_installed(modules_dir: str, prefix: InstallPath = ()):
    """Yield (install path, directory) for package dirs under ``modules_dir``."""
    try:
        entries = sorted(os.listdir(modules_dir))
    except OSError:
        return
    for entry in entries:
        if entry.startswith("."):
            continue
        full = os.path.join(modules_dir, entry)
        if not os.path.isdir(full):
            continue
        if entry.startswith("@"):
            for sub in sorted(os.listdir(full)):
                pkg_dir = os.path.join(full, sub)
                if os.path.isdir(pkg_dir):
                    path = prefix + (f"{entry}/{sub}",)
                    yield path, pkg_dir
                    yield from _iter_installed(os.path.join(pkg_dir, Constants.MODULES_DIR), path)
            continue
        path = prefix + (entry,)
        yield path, full
        yield from _iter_installed(os.path.join(full, Constants.MODULES_DIR), path)


def _link_bins(project_dir: str, link_plan: LinkPlan) -> int:
    bin_dir = os.path.join(project_dir, Constants.MODULES_DIR, Constants.BIN_DIR)
    count = 0
    if os.path.isdir(bin_dir):
        for entry in os.listdir(bin_dir):
            link_path = os.path.join(bin_dir, entry)
            if os.path.islink(link_path) and not os.path.exists(link_path):
                os.unlink(link_path)
    for path, node in link_plan.ordered():
        if len(path) != 1 or not node.bin:
            continue
        pkg_rel = os.path.join(*node.name.split("/"))
        for command, script in node.bin:
            if "/" in command or command.startswith("."):
                logger.warning("%s: ignoring unsafe bin name %r", node.ident, command)
                continue
            script_path = os.path.normpath(os.path.join(project_dir, Constants.MODULES_DIR, pkg_rel, script))
            link_path = os.path.join(bin_dir, command)
            try:
                os.makedirs(bin_dir, exist_ok=True)
                if os.path.lexists(link_path):
                    os.unlink(link_path)
                os.symlink(os.path.relpath(script_path, bin_dir), link_path)
                if os.path.isfile(script_path):
                    os.chmod(script_path, os.stat(script_path).st_mode | 0o111)
                count += 1
            except OSError as e:
                logger.warning("%s: could not link bin %s: %s", node.ident, command, e)
    return count


def apply(
    link_plan: LinkPlan,
    trees: Mapping[NodeKey, str],
    project_dir: str,
    *,
    link_mode: Optional[str] = None,
) -> LinkResult:
    """Materialize ``link_plan`` under ``project_dir``.

    Args:
        link_plan: Output of ``plan``.
        trees: Extracted cache directory per node key.
        project_dir: Project root; packages land under its node_modules.
        link_mode: ``copy`` (default) or ``hardlink`` (falls back to copy).

    Raises:
        LinkConflict: A directory could not be written or a tree is missing.
    """
    link_mode = link_mode or Constants.LINK_MODE
    result = LinkResult()
    modules_dir = os.path.join(project_dir, Constants.MODULES_DIR)

    planned = set(link_plan.placements)
    for path, directory in list(_iter_installed(modules_dir)):
        if path in planned or _read_marker(directory) is None:
            continue
        if not os.path.isdir(directory):
            continue  # already removed with its parent
        shutil.rmtree(directory, ignore_errors=True)
        result.removed += 1
        logger.debug("Removed extraneous %s", relative_dir(path))

    for path, node in link_plan.ordered():
        target = os.path.join(project_dir, relative_dir(path))
        if _read_marker(target) == _marker_payload(node):
            result.unchanged += 1
            continue
        source = trees.get(node.key)
        if source is None:
            raise LinkConflict(f"{node.ident}: no extracted tree to link", package=node.name, version=node.version)
        try:
            os.makedirs(target, exist_ok=True)
            _clear_package_dir(target)
            os.makedirs(target, exist_ok=True)
            _copy_tree(source, target, link_mode)
            _write_marker(target, node)
        except OSError as e:
            raise LinkConflict(
                f"{node.ident}: cannot install into {target}: {e}", package=node.name, version=node.version
            ) from e
        result.linked += 1

    result.bins = _link_bins(project_dir, link_plan)
    logger.info(
        "Linked %d packages (%d unchanged, %d removed)", result.linked, result.unchanged, result.removed
    )
    return result
