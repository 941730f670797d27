"""
flow_config -- single public entrypoint for engine configuration.

Responsibility:
    ``get_engine_config()`` builds the frozen ``EngineConfig`` once at
    process start.  No other component reads configuration files or
    environment variables; the config object is passed down explicitly.

Audit relevance:
    Every call emits a ``FLOW_CONFIG_TRACE`` log entry with the source
    path and the checksum of the effective configuration.
"""

from __future__ import annotations

import logging
from pathlib import Path

from flow_config.loader import load_yaml_file, parse_engine_config
from flow_config.schema import (
    DatabaseConfig,
    DispatcherConfig,
    EngineConfig,
    IdempotencyConfig,
    LoggingConfig,
)

_logger = logging.getLogger("flow_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"


def get_engine_config(path: Path | str | None = None) -> EngineConfig:
    """Load and validate the engine configuration.

    Args:
        path: YAML file.  Defaults to flow_config/defaults.yaml.

    Raises:
        FileNotFoundError: the file does not exist.
        KeyError: unknown section or key.
        ValueError: invalid value.
    """
    source = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    config = parse_engine_config(load_yaml_file(source))

    _logger.info(
        "FLOW_CONFIG_TRACE",
        extra={
            "trace_type": "FLOW_CONFIG_TRACE",
            "source": str(source),
            "checksum": config.checksum,
            "max_attempts": config.dispatcher.max_attempts,
            "lock_timeout_seconds": config.idempotency.lock_timeout_seconds,
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DatabaseConfig",
    "DispatcherConfig",
    "EngineConfig",
    "IdempotencyConfig",
    "LoggingConfig",
    "get_engine_config",
]
