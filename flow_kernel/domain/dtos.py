"""
Data Transfer Objects for the persistence layer.

Frozen snapshots of ORM rows, returned by services and selectors so callers
never hold live ORM objects across transaction boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from flow_kernel.domain.workflow import (
    DefinitionStatus,
    DefinitionType,
    InstanceStatus,
    Snapshot,
    TaskStatus,
    TaskType,
)


@dataclass(frozen=True)
class WorkflowDefinition:
    id: UUID
    tenant_id: str
    key: str
    version: int
    name: str
    status: DefinitionStatus
    type: DefinitionType
    spec: Mapping[str, Any]
    description: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class WorkflowInstance:
    id: UUID
    tenant_id: str
    definition_id: UUID
    status: InstanceStatus
    current_state: str
    context: Mapping[str, Any]
    revision: int
    business_key: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None

    @property
    def snapshot(self) -> Snapshot:
        return Snapshot(current_state=self.current_state, context=self.context)


@dataclass(frozen=True)
class WorkflowEventRecord:
    id: UUID
    tenant_id: str
    instance_id: UUID
    seq: int
    type: str
    payload: Mapping[str, Any]
    created_at: datetime | None = None


@dataclass(frozen=True)
class WorkflowTask:
    id: UUID
    tenant_id: str
    instance_id: UUID
    type: TaskType
    status: TaskStatus
    input: Mapping[str, Any] = field(default_factory=dict)
    name: str | None = None
    output: Mapping[str, Any] | None = None
    error: Mapping[str, Any] | None = None
    assignee_user_id: str | None = None
    assignee_role_id: str | None = None
    assignee_permission_key: str | None = None
    due_at: datetime | None = None
    completed_at: datetime | None = None
    idempotency_key: str | None = None
    created_at: datetime | None = None

    @property
    def approve_event(self) -> str | None:
        return self.input.get("approveEvent")

    @property
    def reject_event(self) -> str | None:
        return self.input.get("rejectEvent")


class IdempotencyStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class IdempotencyMode(str, Enum):
    """Outcome of ``start_or_replay``."""

    STARTED = "STARTED"  # First sight (or reclaimed); caller proceeds
    REPLAY = "REPLAY"  # COMPLETED record; stored response returned
    IN_PROGRESS = "IN_PROGRESS"  # Another caller holds a live lock
    MISMATCH = "MISMATCH"  # Same key, different request hash
    FAILED = "FAILED"  # FAILED record; stored response returned


@dataclass(frozen=True)
class IdempotencyRecord:
    id: UUID
    tenant_id: str
    action_key: str
    key: str
    status: IdempotencyStatus
    expires_at: datetime
    updated_at: datetime
    user_id: str | None = None
    request_hash: str | None = None
    response_status: int | None = None
    response_body: str | None = None


@dataclass(frozen=True)
class StartOrReplayResult:
    mode: IdempotencyMode
    record_id: UUID | None = None
    response_status: int | None = None
    response_body: Any = None
    response_text: str | None = None
    retry_after_ms: int | None = None

    @property
    def should_proceed(self) -> bool:
        return self.mode == IdempotencyMode.STARTED
