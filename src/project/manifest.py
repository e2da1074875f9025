"""package.json reading: root requirements for a project."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from common.errors import ManifestError
from constants import Constants
from versioning.models import Requirement, ROOT_NAME
from versioning.parser import requirements_from_mapping

logger = logging.getLogger(__name__)


@dataclass
class Manifest:
    """The subset of package.json the installer consumes."""

    path: str
    name: Optional[str] = None
    version: Optional[str] = None
    dependencies: Dict[str, str] = field(default_factory=dict)
    dev_dependencies: Dict[str, str] = field(default_factory=dict)
    optional_dependencies: Dict[str, str] = field(default_factory=dict)

    @property
    def directory(self) -> str:
        return os.path.dirname(os.path.abspath(self.path))

    def requirements(self, include_dev: bool = True) -> List[Requirement]:
        """Root requirements; optionalDependencies override same-named entries."""
        required: Dict[str, str] = {}
        if include_dev:
            required.update(self.dev_dependencies)
        required.update(self.dependencies)
        for name in self.optional_dependencies:
            required.pop(name, None)
        reqs = requirements_from_mapping(required, parent=ROOT_NAME)
        reqs.extend(requirements_from_mapping(self.optional_dependencies, parent=ROOT_NAME, optional=True))
        return reqs


def _string_map(data: Dict[str, Any], key: str, path: str) -> Dict[str, str]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ManifestError(f"{path}: '{key}' must be an object")
    result = {}
    for name, spec in value.items():
        if not isinstance(spec, str):
            raise ManifestError(f"{path}: {key}.{name} must be a string range", package=name)
        result[str(name)] = spec
    return result


def load_manifest(project_dir: str) -> Manifest:
    """Read ``package.json`` from ``project_dir``.

    Raises:
        ManifestError: Missing file, invalid JSON or wrongly typed fields.
    """
    path = os.path.join(project_dir, Constants.MANIFEST_FILE)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ManifestError(f"No {Constants.MANIFEST_FILE} found in {project_dir}") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ManifestError(f"Unreadable {path}: {e}") from e
    if not isinstance(data, dict):
        raise ManifestError(f"{path}: top level must be an object")

    manifest = Manifest(
        path=path,
        name=data.get("name") if isinstance(data.get("name"), str) else None,
        version=data.get("version") if isinstance(data.get("version"), str) else None,
        dependencies=_string_map(data, "dependencies", path),
        dev_dependencies=_string_map(data, "devDependencies", path),
        optional_dependencies=_string_map(data, "optionalDependencies", path),
    )
    logger.debug(
        "Loaded manifest %s (%d deps, %d dev, %d optional)",
        path,
        len(manifest.dependencies),
        len(manifest.dev_dependencies),
        len(manifest.optional_dependencies),
    )
    return manifest
