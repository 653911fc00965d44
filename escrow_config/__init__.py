"""
escrow_config -- single public entrypoint for release configuration.

Responsibility:
    Provides the ONLY way to obtain release rules at runtime through
    ``get_active_config()``.  The engine never reads configuration files or
    environment variables itself; it receives a frozen ``ReleaseConfig``.

Architecture position:
    Configuration -- sits above ``escrow_kernel`` and below
    ``escrow_release``.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - A config that fails validation is never returned.
    - Same YAML always produces the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the requested YAML file does not exist.
    - ``ReleaseConfigError`` -- validation errors (carries the full list).
    - ``KeyError`` / ``ValueError`` -- structurally malformed YAML.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``release_config_loaded`` log entry containing the config_id, version
    and checksum.  The same checksum is stamped on every RunSummary.
"""

from __future__ import annotations

from pathlib import Path

from escrow_config.loader import load_yaml_file, parse_release_config
from escrow_config.schema import (
    EngineSettings,
    NotificationSettings,
    PolicyRule,
    ReleaseConfig,
    RetrySettings,
    RuleSet,
    TriggerDef,
)
from escrow_config.validator import validate_configuration
from escrow_kernel.exceptions import ReleaseConfigError
from escrow_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "sets" / "default.yaml"


def get_active_config(path: Path | str | None = None) -> ReleaseConfig:
    """The ONLY public configuration entrypoint.

    Args:
        path: YAML file to load.  Defaults to the packaged
            ``escrow_config/sets/default.yaml``.

    Returns:
        A validated, frozen ``ReleaseConfig``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ReleaseConfigError: If validation fails.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH

    data = load_yaml_file(config_path)
    config = parse_release_config(data, source_path=str(config_path))

    validation = validate_configuration(config)
    for warning in validation.warnings:
        _logger.warning(
            "release_config_warning",
            extra={"config_id": config.config_id, "warning": warning},
        )
    if not validation.is_valid:
        raise ReleaseConfigError(validation.errors)

    _logger.info(
        "release_config_loaded",
        extra={
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "source_path": config.source_path,
            "trigger_count": len(config.triggers),
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "EngineSettings",
    "NotificationSettings",
    "PolicyRule",
    "ReleaseConfig",
    "RetrySettings",
    "RuleSet",
    "TriggerDef",
    "get_active_config",
]
