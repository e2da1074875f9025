"""Lockfile read/write and graph reconstruction.

The lockfile records, for every resolved node, its exact version, tarball
URL and integrity, plus each outgoing edge's range and chosen version. A
lockfile whose root snapshot matches the manifest rebuilds the identical
graph without any metadata request.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Any, Dict, Iterable, List, Optional, Tuple

from common.errors import LockfileError
from versioning.models import Requirement

from .graph import DependencyGraph, Edge, ResolvedNode, ROOT_KEY

logger = logging.getLogger(__name__)

LOCKFILE_VERSION = 1


def _requirement_snapshot(requirements: Iterable[Requirement]) -> Dict[str, Dict[str, Any]]:
    return {
        req.name: {"range": req.range_expr, "optional": req.optional}
        for req in sorted(requirements, key=lambda r: r.name)
    }


def graph_to_lockfile(graph: DependencyGraph) -> Dict[str, Any]:
    """Serialize a resolved graph into the lockfile mapping."""
    requirements = _requirement_snapshot(graph.root.dependencies)
    for edge in graph.edges(ROOT_KEY):
        requirements[edge.requirement.name]["version"] = edge.target[1]

    packages: Dict[str, Dict[str, Any]] = {}
    for node in graph:
        deps = {}
        for edge in graph.edges(node.key):
            deps[edge.requirement.name] = {
                "range": edge.requirement.range_expr,
                "version": edge.target[1],
                "optional": edge.requirement.optional,
            }
        entry: Dict[str, Any] = {
            "name": node.name,
            "version": node.version,
            "tarball": node.tarball,
            "integrity": node.integrity,
            "dependencies": deps,
        }
        if node.bin:
            entry["bin"] = dict(node.bin)
        if node.peer_dependencies:
            entry["peerDependencies"] = dict(node.peer_dependencies)
        packages[node.ident] = entry

    return {
        "lockfileVersion": LOCKFILE_VERSION,
        "requirements": requirements,
        "packages": packages,
    }


def write_lockfile(path: str, graph: DependencyGraph) -> None:
    """Atomically write the lockfile for ``graph`` to ``path``."""
    data = graph_to_lockfile(graph)
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".voltpm-lock-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    logger.debug("Wrote lockfile %s (%d packages)", path, len(data["packages"]))


def read_lockfile(path: str) -> Optional[Dict[str, Any]]:
    """Load a lockfile.

    Returns:
        The parsed mapping, or None when the file does not exist.

    Raises:
        LockfileError: The file exists but is unreadable or has the wrong shape.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        raise LockfileError(f"Unreadable lockfile {path}: {e}") from e
    if not isinstance(data, dict) or data.get("lockfileVersion") != LOCKFILE_VERSION:
        raise LockfileError(f"Unsupported lockfile format in {path}")
    if not isinstance(data.get("packages"), dict) or not isinstance(data.get("requirements"), dict):
        raise LockfileError(f"Malformed lockfile {path}")
    return data


def matches_requirements(data: Dict[str, Any], root_requirements: Iterable[Requirement]) -> bool:
    """True when the lockfile's root snapshot equals the manifest's requirements."""
    recorded = {
        name: {"range": spec.get("range"), "optional": bool(spec.get("optional", False))}
        for name, spec in data.get("requirements", {}).items()
        if isinstance(spec, dict)
    }
    return recorded == _requirement_snapshot(root_requirements)


def _edge_requirements(
    parent: str, deps: Dict[str, Any], where: str
) -> List[Tuple[Requirement, str]]:
    result = []
    if not isinstance(deps, dict):
        raise LockfileError(f"Malformed dependencies for {where}")
    for name in sorted(deps):
        spec = deps[name]
        if not isinstance(spec, dict) or "version" not in spec:
            raise LockfileError(f"Malformed dependency {name} of {where}")
        req = Requirement(
            name=name,
            range_expr=str(spec.get("range", "")),
            parent=parent,
            optional=bool(spec.get("optional", False)),
        )
        result.append((req, str(spec["version"])))
    return result


def graph_from_lockfile(
    data: Dict[str, Any], root_requirements: Iterable[Requirement]
) -> Optional[DependencyGraph]:
    """Rebuild the DependencyGraph recorded in ``data``.

    Returns:
        The graph, or None when the lockfile is stale for these requirements.

    Raises:
        LockfileError: The lockfile is internally inconsistent.
    """
    root_requirements = tuple(root_requirements)
    if not matches_requirements(data, root_requirements):
        logger.info("Lockfile is stale for the current manifest; re-resolving")
        return None

    packages = data["packages"]
    pending_edges = []
    nodes_by_ident: Dict[str, ResolvedNode] = {}
    for ident, entry in packages.items():
        if not isinstance(entry, dict):
            raise LockfileError(f"Malformed lockfile entry {ident}")
        try:
            name, version = str(entry["name"]), str(entry["version"])
            integrity, tarball = str(entry["integrity"]), str(entry["tarball"])
        except KeyError as e:
            raise LockfileError(f"Lockfile entry {ident} is missing {e}") from e
        if f"{name}@{version}" != ident:
            raise LockfileError(f"Lockfile entry {ident} does not match its name/version")
        edges = _edge_requirements(ident, entry.get("dependencies", {}), ident)
        node = ResolvedNode(
            name=name,
            version=version,
            integrity=integrity,
            tarball=tarball,
            dependencies=tuple(req for req, _ in edges),
            peer_dependencies=tuple(sorted((entry.get("peerDependencies") or {}).items())),
            bin=tuple(sorted((entry.get("bin") or {}).items())),
        )
        nodes_by_ident[ident] = node
        pending_edges.append((node.key, edges))

    graph = DependencyGraph(root_requirements)
    for ident in sorted(nodes_by_ident):
        graph.register(nodes_by_ident[ident])

    root_edges = []
    for req in graph.root.dependencies:
        version = data["requirements"].get(req.name, {}).get("version")
        if version is None:
            continue  # dropped optional requirement
        if (req.name, str(version)) not in graph:
            raise LockfileError(f"Lockfile root requirement {req.name}@{version} has no entry")
        root_edges.append(Edge(requirement=req, target=(req.name, str(version))))
    graph.set_edges(ROOT_KEY, root_edges)

    for key, edges in pending_edges:
        resolved = []
        for req, version in edges:
            if (req.name, version) not in graph:
                raise LockfileError(f"Lockfile dependency {req.name}@{version} of {key[0]}@{key[1]} has no entry")
            resolved.append(Edge(requirement=req, target=(req.name, version)))
        graph.set_edges(key, resolved)

    bad = graph.unsatisfied_edges()
    if bad:
        parent, edge = bad[0]
        raise LockfileError(
            f"Lockfile edge {parent.ident} -> {edge.target[0]}@{edge.target[1]} "
            f"does not satisfy {edge.requirement.range_expr}"
        )
    orphans = graph.prune_unreachable()
    if orphans:
        logger.debug("Dropped %d unreachable lockfile entries", orphans)
    return graph
