"""
flow_dispatch.domain.types -- Pure frozen dataclasses for orchestration jobs.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from flow_kernel.domain.workflow import InstanceStatus, WorkflowEventInput


class JobStatus(str, Enum):
    """Orchestration job lifecycle status."""

    QUEUED = "QUEUED"  # Waiting for next_run_at
    RUNNING = "RUNNING"  # Claimed by a worker (lease in locked_at)
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"  # Attempts exhausted


class JobOutcome(str, Enum):
    """What processing a job did to its instance."""

    APPLIED = "APPLIED"  # Snapshot and/or status written
    NO_CHANGE = "NO_CHANGE"  # No event had a handler
    IGNORED = "IGNORED"  # Instance already terminal
    MISSING_INSTANCE = "MISSING_INSTANCE"


@dataclass(frozen=True)
class OrchestrationJob:
    """Immutable snapshot of a queued orchestration job."""

    id: UUID
    job_key: str  # "<instance_id>:<seq>", unique
    seq: int
    tenant_id: str
    instance_id: UUID
    status: JobStatus
    events: tuple[Mapping[str, Any], ...] = ()
    attempts: int = 0
    max_attempts: int = 5
    next_run_at: datetime | None = None
    locked_at: datetime | None = None
    locked_by: str | None = None
    last_error: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def event_inputs(self) -> tuple[WorkflowEventInput, ...]:
        return tuple(WorkflowEventInput.from_document(e) for e in self.events)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


@dataclass(frozen=True)
class ProcessResult:
    """Result of ``OrchestrationDispatcher.process_job``."""

    instance_id: UUID
    outcome: JobOutcome
    status: InstanceStatus | None = None
    current_state: str | None = None
    revision: int | None = None
    transitions: int = 0
    task_ids: tuple[UUID, ...] = field(default_factory=tuple)


def compute_backoff(attempt: int, base_seconds: float) -> timedelta:
    """Delay before retrying after failed attempt number ``attempt`` (1-based).

    ``base * 2 ** (attempt - 1)``: 2s, 4s, 8s, 16s with the default base.
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return timedelta(seconds=base_seconds * (2 ** (attempt - 1)))
