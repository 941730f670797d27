"""
Configuration Loader (``flow_config.loader``).

Responsibility
--------------
Loads the engine YAML file and parses it into the frozen dataclasses of
``flow_config.schema``.  Runtime callers use
``flow_config.get_engine_config()``, not this module.

Invariants enforced
-------------------
* Unknown sections or keys raise ``KeyError``; invalid values raise
  ``ValueError``.  Missing sections fall back to schema defaults.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  effective configuration.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from flow_config.schema import (
    DatabaseConfig,
    DispatcherConfig,
    EngineConfig,
    IdempotencyConfig,
    LoggingConfig,
)

_SECTIONS: dict[str, type] = {
    "database": DatabaseConfig,
    "idempotency": IdempotencyConfig,
    "dispatcher": DispatcherConfig,
    "logging": LoggingConfig,
}

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML must be a mapping")
    return data


def _parse_section(name: str, cls: type, data: Any) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"config section {name!r} must be a mapping")
    known = {f.name: f for f in dataclasses.fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise KeyError(f"unknown keys in config section {name!r}: {sorted(unknown)}")

    values: dict[str, Any] = {}
    for key, raw in data.items():
        default = getattr(cls(), key)
        if isinstance(default, bool):
            if not isinstance(raw, bool):
                raise ValueError(f"{name}.{key} must be a boolean, got {raw!r}")
            values[key] = raw
        elif isinstance(default, (int, float)):
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                raise ValueError(f"{name}.{key} must be a number, got {raw!r}")
            if raw < 0:
                raise ValueError(f"{name}.{key} must be >= 0, got {raw!r}")
            if isinstance(default, int) and isinstance(raw, float) and not raw.is_integer():
                raise ValueError(f"{name}.{key} must be an integer, got {raw!r}")
            values[key] = type(default)(raw)
        else:
            if not isinstance(raw, str):
                raise ValueError(f"{name}.{key} must be a string, got {raw!r}")
            values[key] = raw
    return cls(**values)


def parse_engine_config(data: dict[str, Any]) -> EngineConfig:
    """
    Parse an ``EngineConfig`` from a dict.

    Raises:
        KeyError: unknown section or key.
        ValueError: wrongly typed or out-of-range value.
    """
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise KeyError(f"unknown config sections: {sorted(unknown)}")

    sections = {name: _parse_section(name, cls, data.get(name)) for name, cls in _SECTIONS.items()}

    dispatcher = sections["dispatcher"]
    if dispatcher.max_attempts < 1:
        raise ValueError("dispatcher.max_attempts must be >= 1")
    if dispatcher.concurrency < 1:
        raise ValueError("dispatcher.concurrency must be >= 1")
    if dispatcher.batch_size < 1:
        raise ValueError("dispatcher.batch_size must be >= 1")
    level = sections["logging"].level.upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {sorted(_LOG_LEVELS)}, got {level!r}")
    sections["logging"] = LoggingConfig(level=level)

    effective = {name: dataclasses.asdict(section) for name, section in sections.items()}
    return EngineConfig(**sections, checksum=compute_checksum(effective))


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
