"""Constants used in the project."""

import logging
import os
from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    RESOLUTION_ERROR = 4
    INTEGRITY_ERROR = 5
    LINK_ERROR = 6


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    REGISTRY_URL_NPM = "https://registry.npmjs.org/"
    # Scope -> registry base URL, e.g. {"@corp": "https://npm.corp.example/"}
    SCOPED_REGISTRIES = {}
    REGISTRY_ACCEPT_HEADER = (
        "application/vnd.npm.install-v1+json; q=1.0, application/json; q=0.8, */*"
    )
    USER_AGENT = "voltpm/0.3.0"

    MANIFEST_FILE = "package.json"
    LOCKFILE_FILE = "voltpm.lock"
    MODULES_DIR = "node_modules"
    BIN_DIR = ".bin"
    INSTALL_MARKER = ".voltpm-integrity"
    LINK_MODE = "copy"  # or "hardlink"
    CACHE_DIR = os.path.join(os.path.expanduser("~"), ".voltpm", "cache")

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    HTTP_RETRY_MAX = 4
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_RETRY_MAX_DELAY_SEC = 8.0
    MAX_CONCURRENCY = 16
    TARBALL_CHUNK_BYTES = 64 * 1024

    CONFIG_ENV = "VOLTPM_CONFIG"
    CONFIG_LOCAL = ".voltpmrc.yml"
    CONFIG_USER = os.path.join(os.path.expanduser("~"), ".voltpm", "config.yml")


def _config_path():
    """Pick the first existing configuration file in priority order."""
    env_path = os.environ.get(Constants.CONFIG_ENV)
    if env_path:
        return env_path
    for candidate in (Constants.CONFIG_LOCAL, Constants.CONFIG_USER):
        if os.path.isfile(candidate):
            return candidate
    return None


def _apply_config(data):
    """Apply recognised keys from a parsed config mapping onto Constants."""
    if not isinstance(data, dict):
        return
    if data.get("registry"):
        Constants.REGISTRY_URL_NPM = str(data["registry"]).rstrip("/") + "/"
    scopes = data.get("scopes")
    if isinstance(scopes, dict):
        Constants.SCOPED_REGISTRIES = {
            str(scope): str(url).rstrip("/") + "/" for scope, url in scopes.items()
        }
    if data.get("cache_dir"):
        Constants.CACHE_DIR = os.path.expanduser(str(data["cache_dir"]))
    if data.get("link_mode") in ("copy", "hardlink"):
        Constants.LINK_MODE = data["link_mode"]
    if data.get("concurrency") is not None:
        Constants.MAX_CONCURRENCY = max(1, int(data["concurrency"]))
    http = data.get("http")
    if isinstance(http, dict):
        if http.get("timeout") is not None:
            Constants.REQUEST_TIMEOUT = float(http["timeout"])
        if http.get("retries") is not None:
            Constants.HTTP_RETRY_MAX = max(1, int(http["retries"]))
        if http.get("backoff_base") is not None:
            Constants.HTTP_RETRY_BASE_DELAY_SEC = float(http["backoff_base"])
        if http.get("backoff_max") is not None:
            Constants.HTTP_RETRY_MAX_DELAY_SEC = float(http["backoff_max"])


def _load_yaml_config(path=None):
    """Load YAML configuration and apply it to Constants.

    Args:
        path (str, optional): Explicit config path. Defaults to the first of
            $VOLTPM_CONFIG, ./.voltpmrc.yml and ~/.voltpm/config.yml.

    Returns:
        dict: The parsed configuration (empty when none was found).
    """
    import yaml  # pylint: disable=import-outside-toplevel

    config_path = path or _config_path()
    if not config_path or not os.path.isfile(config_path):
        return {}
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logging.warning("Ignoring unreadable config file %s: %s", config_path, e)
        return {}
    _apply_config(data)
    return data if isinstance(data, dict) else {}
