"""Token parsing utilities for package specs and dependency maps."""

from typing import Dict, List, Optional, Tuple

from .models import PackageSpec, Requirement, ROOT_NAME


def tokenize_rightmost_at(s: str) -> Tuple[str, Optional[str]]:
    """Return (name, range or None) using the rightmost-``@`` rule.

    A leading ``@`` belongs to the scope, never to the range.
    """
    s = s.strip()
    at = s.rfind("@")
    if at <= 0:
        return s, None
    name = s[:at].strip()
    spec_part = s[at + 1:].strip()
    return name, (spec_part if spec_part else None)


def is_valid_name(name: str) -> bool:
    """Loose npm name check: non-empty, no whitespace, scoped names have one slash."""
    if not name or any(ch.isspace() for ch in name):
        return False
    if name.startswith("@"):
        scope, _, rest = name[1:].partition("/")
        return bool(scope) and bool(rest) and "/" not in rest
    return "/" not in name and not name.startswith((".", "_"))


def parse_package_spec(token: str) -> PackageSpec:
    """Parse a CLI token such as ``lodash``, ``lodash@^4``, ``@types/node@18``.

    Raises:
        ValueError: If the name part is not a valid package name.
    """
    name, range_expr = tokenize_rightmost_at(token)
    if not is_valid_name(name):
        raise ValueError(f"Invalid package name in '{token}'")
    return PackageSpec(name=name, range_expr=range_expr)


def scope_of(name: str) -> Optional[str]:
    """Return ``@scope`` for scoped names, else None."""
    if name.startswith("@") and "/" in name:
        return name.split("/", 1)[0]
    return None


def requirements_from_mapping(
    deps: Optional[Dict[str, str]],
    parent: str = ROOT_NAME,
    optional: bool = False,
) -> List[Requirement]:
    """Build Requirements from a ``{name: range}`` mapping, sorted by name."""
    if not deps:
        return []
    reqs = []
    for name in sorted(deps):
        raw = deps[name]
        range_expr = raw.strip() if isinstance(raw, str) else "*"
        reqs.append(Requirement(name=name, range_expr=range_expr, parent=parent, optional=optional))
    return reqs
