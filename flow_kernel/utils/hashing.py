"""
Deterministic hashing utilities.

Request fingerprints must be reproducible across processes and Python
versions.  The idempotency gateway, the approval gate and the engine
tracer all hash the same canonical JSON form produced here.
"""

import dataclasses
import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    """Encode the non-JSON types that appear in payloads and engine inputs."""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Decimal):
        return str(obj.normalize())
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """Sorted keys, no whitespace, special types encoded by ``_json_serializer``."""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def to_json_document(data: Any) -> Any:
    """Round-trip ``data`` through canonical JSON so it is safe to store in a JSON column."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: Any) -> str:
    """Hex SHA-256 (64 characters) of the canonical JSON form."""
    return hashlib.sha256(canonicalize_json(payload).encode("utf-8")).hexdigest()


def hash_request(action_key: str, entity_id: str, payload: dict) -> str:
    """Fingerprint of an externally triggered command.

    Two requests with the same action, entity and payload always hash to
    the same value regardless of key ordering in ``payload``.
    """
    return hash_payload(
        {"actionKey": action_key, "entityId": entity_id, "payload": payload}
    )
