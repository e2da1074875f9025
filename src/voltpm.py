"""voltpm - fast, deterministic JavaScript package installer.

Returns:
    int: Exit code (see constants.ExitCodes)
"""
import json
import logging
import os
import sys

from args import parse_args
from cli_config import apply_cli_overrides
from common.errors import (
    CacheCorruption,
    IntegrityMismatch,
    LinkConflict,
    LockfileError,
    ManifestError,
    PackageNotFound,
    RegistryError,
    ResolutionError,
    VoltError,
)
from common.logging_utils import configure_logging, extra_context, is_debug_enabled
from constants import Constants, ExitCodes, _load_yaml_config
from install.installer import Installer
from registry.client import RegistryClient
from store.cache import ContentCache
from versioning.parser import parse_package_spec

logger = logging.getLogger(__name__)

# Checked in order; subclasses must precede their bases.
_ERROR_EXIT_CODES = (
    (IntegrityMismatch, ExitCodes.INTEGRITY_ERROR),
    (CacheCorruption, ExitCodes.INTEGRITY_ERROR),
    (ResolutionError, ExitCodes.RESOLUTION_ERROR),
    (PackageNotFound, ExitCodes.RESOLUTION_ERROR),
    (RegistryError, ExitCodes.CONNECTION_ERROR),
    (LinkConflict, ExitCodes.LINK_ERROR),
    (ManifestError, ExitCodes.FILE_ERROR),
    (LockfileError, ExitCodes.FILE_ERROR),
)


def exit_code_for(error: VoltError) -> ExitCodes:
    """Map a failure to the process exit code."""
    for error_type, code in _ERROR_EXIT_CODES:
        if isinstance(error, error_type):
            return code
    return ExitCodes.FILE_ERROR


def _setup_logging(args) -> None:
    """Configure logging based on CLI arguments."""
    configure_logging(getattr(args, "LOG_LEVEL", None))
    log_file = getattr(args, "LOG_FILE", None)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logging.getLogger().addHandler(file_handler)
        logger.info("Logging to file: %s", log_file)


def _build_installer(args) -> Installer:
    return Installer(
        args.PROJECT_DIR,
        client=RegistryClient.from_constants(),
        cache=ContentCache(Constants.CACHE_DIR),
        max_workers=Constants.MAX_CONCURRENCY,
        frozen_lockfile=getattr(args, "FROZEN_LOCKFILE", False),
        include_dev=not getattr(args, "PRODUCTION", False),
        link_mode=Constants.LINK_MODE,
    )


def run_install(args) -> ExitCodes:
    """``voltpm install``: resolve, fetch and link."""
    specs = [parse_package_spec(token) for token in args.PACKAGES]
    report = _build_installer(args).install(specs)
    for warning in report.warnings:
        logger.warning(warning)
    source = "lockfile" if report.from_lockfile else "registry"
    logger.info(
        "Installed %d packages (graph from %s): %d downloaded, %d from cache, "
        "%d linked, %d unchanged, %d removed, %d skipped",
        report.packages,
        source,
        report.downloaded,
        report.cache_hits,
        report.linked,
        report.unchanged,
        report.removed,
        report.skipped,
    )
    return ExitCodes.SUCCESS


def run_resolve(args) -> ExitCodes:
    """``voltpm resolve``: print the dependency graph as JSON without fetching tarballs."""
    specs = [parse_package_spec(token) for token in args.PACKAGES]
    installer = _build_installer(args)
    graph, _ = installer.resolve(installer.root_requirements(specs))
    payload = json.dumps(graph.to_dict(), indent=2, sort_keys=True)
    output = getattr(args, "OUTPUT", None)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(payload + "\n")
        logger.info("Dependency graph written to %s", output)
    else:
        sys.stdout.write(payload + "\n")
    return ExitCodes.SUCCESS


_COMMANDS = {
    "install": run_install,
    "resolve": run_resolve,
}


def main(argv=None) -> int:
    """Main function of the program."""
    args = parse_args(argv)
    _setup_logging(args)
    _load_yaml_config(getattr(args, "CONFIG", None))
    apply_cli_overrides(args)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI start",
            extra=extra_context(event="function_entry", component="cli", action=args.COMMAND,
                                target=os.path.abspath(args.PROJECT_DIR)),
        )

    try:
        code = _COMMANDS[args.COMMAND](args)
    except ValueError as e:
        logger.error("%s", e)
        code = ExitCodes.FILE_ERROR
    except VoltError as e:
        logger.error("%s", e)
        code = exit_code_for(e)

    if is_debug_enabled(logger):
        logger.debug(
            "CLI finished",
            extra=extra_context(event="function_exit", component="cli", action=args.COMMAND,
                                outcome=code.name.lower()),
        )
    return code.value


if __name__ == "__main__":
    sys.exit(main())
