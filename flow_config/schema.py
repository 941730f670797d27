"""
Configuration schema -- frozen dataclasses for engine configuration.

Every runtime setting lives here.  An ``EngineConfig`` is built once at
process start (``flow_config.get_engine_config()``) and passed down by
constructor injection; no service reads files or environment variables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///flow.db"
    echo: bool = False
    pool_size: int = 20


@dataclass(frozen=True)
class IdempotencyConfig:
    lock_timeout_seconds: float = 120.0
    ttl_hours: float = 24.0
    retry_after_ms: int = 1000

    @property
    def lock_timeout(self) -> timedelta:
        return timedelta(seconds=self.lock_timeout_seconds)

    @property
    def ttl(self) -> timedelta:
        return timedelta(hours=self.ttl_hours)


@dataclass(frozen=True)
class DispatcherConfig:
    max_attempts: int = 5
    backoff_base_seconds: float = 2.0
    poll_interval_seconds: float = 1.0
    batch_size: int = 10
    concurrency: int = 4
    lease_seconds: float = 300.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(frozen=True)
class EngineConfig:
    """Root configuration object."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    idempotency: IdempotencyConfig = field(default_factory=IdempotencyConfig)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    checksum: str = ""
