"""npm-style semantic version range matching.

Pure functions over version strings: no I/O, no state. Ranges use the npm
grammar (caret, tilde, x-ranges, hyphen ranges, comparator sets joined by
``||``) as implemented by ``semantic_version.NpmSpec``. Pre-release versions
only match ranges that explicitly mention a pre-release.
"""

import re
from typing import Dict, Iterable, List, Optional

import semantic_version

_PRERELEASE_IN_RANGE = re.compile(r"\d+\.\d+\.\d+-[0-9A-Za-z]")
_ANY_RANGES = {"", "*", "x", "X"}


def parse_version(raw: str) -> Optional[semantic_version.Version]:
    """Parse a concrete version, tolerating a leading ``v`` or ``=``.

    Returns:
        The parsed Version, or None when ``raw`` is not valid semver.
    """
    if not raw:
        return None
    text = raw.strip()
    while text[:1] in ("v", "="):
        text = text[1:]
    try:
        return semantic_version.Version(text)
    except ValueError:
        return None


def compile_range(range_expr: str) -> semantic_version.NpmSpec:
    """Compile a range expression.

    Raises:
        ValueError: If the expression is not valid npm range syntax.
    """
    text = (range_expr or "").strip()
    if text in _ANY_RANGES:
        text = "*"
    return semantic_version.NpmSpec(text)


def allows_prerelease(range_expr: str) -> bool:
    """True when the range explicitly names a pre-release version."""
    return bool(_PRERELEASE_IN_RANGE.search(range_expr or ""))


def sort_versions(versions: Iterable[str]) -> List[str]:
    """Return valid semver strings ascending by precedence.

    Invalid strings are dropped. Versions of equal precedence (differing only
    in build metadata) keep lexical order so the result is deterministic.
    """
    parsed = []
    for raw in sorted(set(versions)):
        version = parse_version(raw)
        if version is not None:
            parsed.append((version, raw))
    parsed.sort(key=lambda pair: pair[0])
    return [raw for _, raw in parsed]


def satisfies(version: str, range_expr: str) -> bool:
    """Return True if ``version`` satisfies ``range_expr``.

    Invalid versions or ranges never satisfy anything.
    """
    parsed = parse_version(version)
    if parsed is None:
        return False
    try:
        spec = compile_range(range_expr)
    except ValueError:
        return False
    if parsed.prerelease and not allows_prerelease(range_expr):
        return False
    return spec.match(parsed)


def best_match(
    range_expr: str,
    versions: Iterable[str],
    dist_tags: Optional[Dict[str, str]] = None,
) -> Optional[str]:
    """Pick the highest version satisfying ``range_expr``.

    Args:
        range_expr: npm range, or a dist-tag name when ``dist_tags`` is given.
        versions: Candidate version strings.
        dist_tags: Optional tag -> version mapping (e.g. ``{"latest": "1.2.0"}``).

    Returns:
        The best matching version string, or None when nothing matches.

    Raises:
        ValueError: If ``range_expr`` is neither a dist-tag nor a valid range.
    """
    candidates = list(versions)
    text = (range_expr or "").strip()
    if dist_tags and text in dist_tags:
        tagged = dist_tags[text]
        return tagged if tagged in candidates else None
    if text == "latest":
        text = "*"

    spec = compile_range(text)
    include_prerelease = allows_prerelease(text)
    best = None
    for raw in reversed(sort_versions(candidates)):
        parsed = parse_version(raw)
        if parsed.prerelease and not include_prerelease:
            continue
        if spec.match(parsed):
            best = raw
            break
    return best
