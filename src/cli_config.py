"""CLI configuration overrides for runtime tunables.

Kept out of voltpm.py so the entrypoint stays slim. Precedence, lowest to
highest: Constants defaults, YAML config file, command-line flags.
"""

from __future__ import annotations

import logging
import os

from constants import Constants

logger = logging.getLogger(__name__)


def apply_cli_overrides(args) -> None:
    """Apply command-line flags onto Constants.

    Args:
        args: Parsed CLI namespace; absent attributes are ignored.
    """
    registry = getattr(args, "REGISTRY", None)
    if registry:
        Constants.REGISTRY_URL_NPM = registry.rstrip("/") + "/"
    cache_dir = getattr(args, "CACHE_DIR", None)
    if cache_dir:
        Constants.CACHE_DIR = os.path.abspath(os.path.expanduser(cache_dir))
    concurrency = getattr(args, "CONCURRENCY", None)
    if concurrency is not None:
        if concurrency < 1:
            logger.warning("Ignoring --concurrency %s; must be at least 1", concurrency)
        else:
            Constants.MAX_CONCURRENCY = concurrency
    retries = getattr(args, "RETRIES", None)
    if retries is not None:
        Constants.HTTP_RETRY_MAX = max(1, retries)
    link_mode = getattr(args, "LINK_MODE", None)
    if link_mode:
        Constants.LINK_MODE = link_mode
