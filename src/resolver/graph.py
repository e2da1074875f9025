"""Dependency graph arena.

Nodes are addressed by ``(name, version)`` and stored once; edges reference
nodes by key, so shared subtrees and cycles never produce duplicate or
recursive structures.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set, Tuple

from versioning.matcher import satisfies
from versioning.models import Requirement, ROOT_NAME

NodeKey = Tuple[str, str]

ROOT_KEY: NodeKey = (ROOT_NAME, "")


@dataclass(frozen=True)
class ResolvedNode:
    """A concrete package version selected by the resolver."""

    name: str
    version: str
    integrity: str = ""
    tarball: str = ""
    dependencies: Tuple[Requirement, ...] = ()
    peer_dependencies: Tuple[Tuple[str, str], ...] = ()
    bin: Tuple[Tuple[str, str], ...] = ()

    @property
    def key(self) -> NodeKey:
        return (self.name, self.version)

    @property
    def ident(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name

    @property
    def is_root(self) -> bool:
        return self.key == ROOT_KEY


@dataclass(frozen=True)
class Edge:
    """A requirement satisfied by the node at ``target``."""

    requirement: Requirement
    target: NodeKey


class DependencyGraph:
    """Arena of ResolvedNodes plus a finalized edge list per node."""

    def __init__(self, root_requirements: Tuple[Requirement, ...] = ()):
        self.root = ResolvedNode(name=ROOT_NAME, version="", dependencies=tuple(root_requirements))
        self._nodes: Dict[NodeKey, ResolvedNode] = {ROOT_KEY: self.root}
        self._edges: Dict[NodeKey, Tuple[Edge, ...]] = {}
        self.warnings: List[str] = []

    # Arena -----------------------------------------------------------------

    def register(self, node: ResolvedNode) -> Tuple[ResolvedNode, bool]:
        """Insert ``node`` unless its key exists.

        Returns:
            (the arena's node for that key, True if newly inserted)
        """
        existing = self._nodes.get(node.key)
        if existing is not None:
            return existing, False
        self._nodes[node.key] = node
        return node, True

    def get(self, name: str, version: str) -> Optional[ResolvedNode]:
        return self._nodes.get((name, version))

    def node(self, key: NodeKey) -> ResolvedNode:
        return self._nodes[key]

    def __contains__(self, key: NodeKey) -> bool:
        return key in self._nodes

    def __len__(self) -> int:
        return len(self._nodes) - 1

    def __iter__(self) -> Iterator[ResolvedNode]:
        """Iterate package nodes (root excluded) in key order."""
        for key in sorted(k for k in self._nodes if k != ROOT_KEY):
            yield self._nodes[key]

    def versions_of(self, name: str) -> List[ResolvedNode]:
        return [n for n in self if n.name == name]

    # Edges -----------------------------------------------------------------

    def set_edges(self, key: NodeKey, edges: List[Edge]) -> None:
        """Attach the finalized child list of ``key`` (exactly once)."""
        if key not in self._nodes:
            raise KeyError(f"unknown node {key!r}")
        if key in self._edges:
            raise ValueError(f"edges of {key!r} already finalized")
        self._edges[key] = tuple(edges)

    def edges(self, key: NodeKey) -> Tuple[Edge, ...]:
        return self._edges.get(key, ())

    def children(self, key: NodeKey) -> List[Tuple[Requirement, ResolvedNode]]:
        return [(e.requirement, self._nodes[e.target]) for e in self.edges(key)]

    def edge_count(self) -> int:
        return sum(len(v) for v in self._edges.values())

    # Traversals ------------------------------------------------------------

    def breadth_first(self) -> List[Tuple[ResolvedNode, int]]:
        """Reachable package nodes with their shortest depth from the root."""
        seen: Set[NodeKey] = {ROOT_KEY}
        queue = deque([(ROOT_KEY, 0)])
        order: List[Tuple[ResolvedNode, int]] = []
        while queue:
            key, depth = queue.popleft()
            for edge in self.edges(key):
                if edge.target in seen:
                    continue
                seen.add(edge.target)
                order.append((self._nodes[edge.target], depth + 1))
                queue.append((edge.target, depth + 1))
        return order

    def required_keys(self) -> Set[NodeKey]:
        """Nodes reachable from the root through non-optional edges only."""
        seen: Set[NodeKey] = set()
        stack = [ROOT_KEY]
        while stack:
            key = stack.pop()
            for edge in self.edges(key):
                if edge.requirement.optional or edge.target in seen:
                    continue
                seen.add(edge.target)
                stack.append(edge.target)
        return seen

    def is_optional(self, key: NodeKey) -> bool:
        return key not in self.required_keys()

    def prune_unreachable(self) -> int:
        """Drop nodes no longer reachable from the root; returns the count."""
        reachable = {node.key for node, _ in self.breadth_first()}
        reachable.add(ROOT_KEY)
        dead = [k for k in self._nodes if k not in reachable]
        for key in dead:
            del self._nodes[key]
            self._edges.pop(key, None)
        return len(dead)

    def remove_edges_to(self, targets: Set[NodeKey]) -> None:
        """Drop every edge pointing at ``targets`` (optional subtree pruning)."""
        for key, edges in list(self._edges.items()):
            kept = tuple(e for e in edges if e.target not in targets)
            if len(kept) != len(edges):
                self._edges[key] = kept

    def drop_broken(self, broken: Set[NodeKey]) -> int:
        """Remove nodes that cannot be installed complete, then prune orphans.

        Any node that needs a broken node through a required edge is broken
        as well, so breakage climbs until an optional edge absorbs it.

        Args:
            broken: Keys of nodes known to be unusable.

        Returns:
            int: Number of nodes removed from the arena.

        Raises:
            ValueError: The root itself would be broken.
        """
        broken = set(broken)
        changed = True
        while changed:
            changed = False
            for key in [ROOT_KEY] + [node.key for node in self]:
                if key in broken:
                    continue
                if any(not e.requirement.optional and e.target in broken for e in self.edges(key)):
                    broken.add(key)
                    changed = True
        if ROOT_KEY in broken:
            raise ValueError("a required dependency of the project is broken")
        if broken:
            self.remove_edges_to(broken)
        return self.prune_unreachable()

    def unsatisfied_edges(self) -> List[Tuple[ResolvedNode, Edge]]:
        """Edges whose target version does not satisfy the requirement range.

        Dist-tag edges are skipped because a tag is not a range.
        """
        bad = []
        for key, edges in self._edges.items():
            for edge in edges:
                target = self._nodes.get(edge.target)
                if target is None:
                    bad.append((self._nodes[key], edge))
                    continue
                if edge.requirement.range_expr and _looks_like_tag(edge.requirement.range_expr):
                    continue
                if not satisfies(target.version, edge.requirement.range_expr):
                    bad.append((self._nodes[key], edge))
        return bad

    def to_dict(self) -> Dict[str, object]:
        """JSON-friendly view used by ``voltpm resolve``."""
        return {
            "root": {e.requirement.name: e.target[1] for e in self.edges(ROOT_KEY)},
            "packages": {
                node.ident: {
                    "integrity": node.integrity,
                    "dependencies": {e.requirement.name: e.target[1] for e in self.edges(node.key)},
                }
                for node in self
            },
        }


def _looks_like_tag(range_expr: str) -> bool:
    text = range_expr.strip()
    return bool(text) and text[0].isalpha() and text not in ("x", "X") and not text.startswith("v")
