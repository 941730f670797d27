"""
flow_engines.tracer -- FLOW_ENGINE_TRACE records for pure engine calls.

Responsibility:
    ``@traced_engine`` wraps an engine entry point and logs, at DEBUG,
    which engine ran, its version, how long it took and a fingerprint of
    the inputs named in ``fingerprint_fields``.  Two calls with equal
    inputs log the same fingerprint, so a replayed orchestration step can
    be matched against the original one in the logs.

Architecture position:
    Engines.  Emits a log record and nothing else; the wrapped function's
    arguments and result pass through untouched.

Usage:
    @traced_engine("interpreter", "1.0", fingerprint_fields=("snapshot", "events"))
    def step(spec, snapshot, events):
        ...
"""

from __future__ import annotations

import functools
import hashlib
import inspect
import time
from collections.abc import Callable, Mapping
from typing import Any

from flow_kernel.logging_config import get_logger
from flow_kernel.utils.hashing import canonicalize_json

logger = get_logger("engines.tracer")

FINGERPRINT_LENGTH = 16


def _encode(value: Any) -> str:
    try:
        return canonicalize_json(value)
    except TypeError:
        return repr(value)


def compute_input_fingerprint(
    fingerprint_fields: tuple[str, ...],
    arguments: Mapping[str, Any],
) -> str:
    """SHA-256 prefix over the named arguments; absent ones count as null."""
    digest = hashlib.sha256()
    for name in fingerprint_fields:
        digest.update(f"{name}={_encode(arguments.get(name))}\x1f".encode("utf-8"))
    return digest.hexdigest()[:FINGERPRINT_LENGTH]


def traced_engine(
    engine_name: str,
    engine_version: str,
    fingerprint_fields: tuple[str, ...] = (),
) -> Callable:

    def decorator(func: Callable) -> Callable:
        signature = inspect.signature(func)

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            fingerprint = ""
            if fingerprint_fields:
                arguments = signature.bind_partial(*args, **kwargs).arguments
                fingerprint = compute_input_fingerprint(fingerprint_fields, arguments)

            started = time.perf_counter()
            result = func(*args, **kwargs)
            logger.debug(
                "FLOW_ENGINE_TRACE",
                extra={
                    "engine_name": engine_name,
                    "engine_version": engine_version,
                    "function": func.__qualname__,
                    "input_fingerprint": fingerprint,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                },
            )
            return result

        return wrapper

    return decorator
