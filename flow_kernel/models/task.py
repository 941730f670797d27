"""
WorkflowTaskModel -- units of externally required work.

Contract:
    Created from a ``createTask`` action, resolved exactly once
    (PENDING -> SUCCEEDED | FAILED), never reopened.

Invariants enforced:
    - UNIQUE (tenant_id, idempotency_key): redelivered actions do not
      duplicate tasks.
    - A resolved task cannot change again (db/immutability.py).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from flow_kernel.db.base import JSONDocument, TrackedBase, UUIDString
from flow_kernel.domain.clock import as_utc
from flow_kernel.domain.dtos import WorkflowTask
from flow_kernel.domain.workflow import TaskStatus, TaskType


class WorkflowTaskModel(TrackedBase):
    __tablename__ = "workflow_tasks"

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_task_idempotency_key"),
        Index("idx_task_instance", "instance_id"),
        Index("idx_task_tenant_status", "tenant_id", "status"),
        Index("idx_task_assignee_user", "tenant_id", "assignee_user_id"),
        Index("idx_task_assignee_role", "tenant_id", "assignee_role_id"),
        CheckConstraint(
            "status IN ('PENDING', 'SUCCEEDED', 'FAILED')",
            name="ck_task_status",
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_instances.id"),
        nullable=False,
    )
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default=TaskType.HUMAN.value)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TaskStatus.PENDING.value
    )
    input: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
    output: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)
    error: Mapped[dict[str, Any] | None] = mapped_column(JSONDocument, nullable=True)
    assignee_user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    assignee_role_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    assignee_permission_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    trace_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def to_dto(self) -> WorkflowTask:
        return WorkflowTask(
            id=self.id,
            tenant_id=self.tenant_id,
            instance_id=self.instance_id,
            name=self.name,
            type=TaskType(self.type),
            status=TaskStatus(self.status),
            input=self.input or {},
            output=self.output,
            error=self.error,
            assignee_user_id=self.assignee_user_id,
            assignee_role_id=self.assignee_role_id,
            assignee_permission_key=self.assignee_permission_key,
            due_at=as_utc(self.due_at),
            completed_at=as_utc(self.completed_at),
            idempotency_key=self.idempotency_key,
            created_at=as_utc(self.created_at),
        )

    def __repr__(self) -> str:
        return f"<WorkflowTask {self.id} {self.type} {self.status}>"
