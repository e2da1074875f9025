"""Dependency resolution: graph arena, resolver and lockfile."""

from .graph import DependencyGraph, Edge, ResolvedNode, ROOT_KEY
from .resolver import Resolver, check_peer_dependencies

__all__ = [
    "DependencyGraph",
    "Edge",
    "ResolvedNode",
    "ROOT_KEY",
    "Resolver",
    "check_peer_dependencies",
]
