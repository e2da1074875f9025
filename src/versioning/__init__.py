"""Version range matching and requirement parsing."""

from .matcher import best_match, satisfies, sort_versions, parse_version
from .models import Requirement, PackageSpec, ROOT_NAME

__all__ = [
    "best_match",
    "satisfies",
    "sort_versions",
    "parse_version",
    "Requirement",
    "PackageSpec",
    "ROOT_NAME",
]
