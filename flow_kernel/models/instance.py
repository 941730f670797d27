"""
WorkflowInstanceModel -- one execution of a definition.

Contract:
    Holds the materialized snapshot (``current_state`` + ``context``) for
    read efficiency; the event log is the audit record.  Mutated only by the
    dispatcher's interpreter step (compare-and-set on ``revision``) or by an
    explicit cancel.  Never deleted.

Invariants enforced:
    - UNIQUE (tenant_id, definition_id, business_key); NULL business keys
      never collide.
    - ``revision`` increases by exactly one on every snapshot/status write.
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
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from flow_kernel.db.base import JSONDocument, TrackedBase, UUIDString
from flow_kernel.domain.clock import as_utc
from flow_kernel.domain.dtos import WorkflowInstance
from flow_kernel.domain.workflow import InstanceStatus


class WorkflowInstanceModel(TrackedBase):
    __tablename__ = "workflow_instances"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "definition_id", "business_key",
            name="uq_instance_business_key",
        ),
        Index("idx_instance_tenant_status", "tenant_id", "status"),
        Index("idx_instance_definition", "definition_id"),
        CheckConstraint(
            "status IN ('PENDING', 'RUNNING', 'COMPLETED', 'CANCELLED', 'FAILED')",
            name="ck_instance_status",
        ),
        CheckConstraint("revision >= 0", name="ck_instance_revision"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    definition_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_definitions.id"),
        nullable=False,
    )
    business_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InstanceStatus.PENDING.value
    )
    current_state: Mapped[str] = mapped_column(String(200), nullable=False)
    context: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> WorkflowInstance:
        return WorkflowInstance(
            id=self.id,
            tenant_id=self.tenant_id,
            definition_id=self.definition_id,
            business_key=self.business_key,
            status=InstanceStatus(self.status),
            current_state=self.current_state,
            context=self.context or {},
            revision=self.revision,
            started_at=as_utc(self.started_at),
            completed_at=as_utc(self.completed_at),
            last_error=self.last_error,
        )

    def __repr__(self) -> str:
        return f"<WorkflowInstance {self.id} {self.status} @{self.current_state} r{self.revision}>"
