"""
OrchestrationJobModel -- the durable dispatch queue.

Contract:
    One row per ``enqueue_orchestrator`` call.  Workers claim rows with a
    conditional UPDATE, so the table is both the queue and the delivery
    record operators inspect after a failure.

Invariants enforced:
    - ``job_key`` is UNIQUE (``<instance_id>:<seq>``); repeated enqueues
      for one instance never collide.
    - ``seq`` is the autoincrementing primary key, assigned by the
      database on INSERT; claims are served in ``seq`` order among due
      jobs.  ``id`` stays a unique uuid4 that workers address rows by.
    - ``attempts`` never exceeds ``max_attempts``.
    - ``instance_id`` carries no foreign key: a job whose instance is gone
      is acknowledged by the worker, not rejected by the database.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from flow_kernel.db.base import JSONDocument, SequenceKey, TrackedBase, UUIDString
from flow_kernel.domain.clock import as_utc

from flow_dispatch.domain.types import JobStatus, OrchestrationJob


class OrchestrationJobModel(TrackedBase):
    """Persistent orchestration job."""

    __tablename__ = "orchestration_jobs"

    __table_args__ = (
        Index("ix_orchestration_jobs_due", "status", "next_run_at"),
        Index("ix_orchestration_jobs_instance", "instance_id"),
        CheckConstraint(
            "status IN ('QUEUED', 'RUNNING', 'SUCCEEDED', 'FAILED')",
            name="ck_orchestration_job_status",
        ),
        CheckConstraint("attempts >= 0", name="ck_orchestration_job_attempts"),
        {"sqlite_autoincrement": True},
    )

    seq: Mapped[int] = mapped_column(SequenceKey, primary_key=True, autoincrement=True)
    id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True, default=uuid4)
    job_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    events: Mapped[list[dict[str, Any]]] = mapped_column(JSONDocument, nullable=False, default=list)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.QUEUED.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    def to_dto(self) -> OrchestrationJob:
        return OrchestrationJob(
            id=self.id,
            job_key=self.job_key,
            seq=self.seq,
            tenant_id=self.tenant_id,
            instance_id=self.instance_id,
            status=JobStatus(self.status),
            events=tuple(self.events or ()),
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            next_run_at=as_utc(self.next_run_at),
            locked_at=as_utc(self.locked_at),
            locked_by=self.locked_by,
            last_error=self.last_error,
            completed_at=as_utc(self.completed_at),
            created_at=as_utc(self.created_at),
        )

    def __repr__(self) -> str:
        return f"<OrchestrationJob {self.job_key} {self.status} {self.attempts}/{self.max_attempts}>"
