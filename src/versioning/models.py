"""Data models for requirements and version specs."""

from dataclasses import dataclass
from typing import Optional

# Pseudo-name used for the project itself as the parent of root requirements.
ROOT_NAME = "<root>"


@dataclass(frozen=True)
class Requirement:
    """A declared (name, range) edge.

    Attributes:
        name: Package name, including any ``@scope/`` prefix.
        range_expr: Range expression or dist-tag as written by the declarer.
        parent: ``name@version`` of the declaring package, or ``ROOT_NAME``.
        optional: True for optionalDependencies; failures prune instead of abort.
    """

    name: str
    range_expr: str
    parent: str = ROOT_NAME
    optional: bool = False

    def describe(self) -> str:
        """Human-readable ``name@range`` (requested by parent) string."""
        return f"{self.name}@{self.range_expr or '*'} (required by {self.parent})"


@dataclass(frozen=True)
class PackageSpec:
    """Parsed ``name[@range]`` token."""

    name: str
    range_expr: Optional[str]
