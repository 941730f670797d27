"""
WorkflowEventModel -- append-only instance event log.

Contract:
    Rows are written once and never updated or deleted (ORM listeners in
    db/immutability.py).  ``seq`` is the autoincrementing primary key and
    the insertion order used for audit replay; the database assigns it on
    INSERT, so concurrent writers never wait on a shared counter row.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import DateTime, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from flow_kernel.db.base import Base, JSONDocument, SequenceKey, UUIDString
from flow_kernel.domain.clock import as_utc
from flow_kernel.domain.dtos import WorkflowEventRecord


class WorkflowEventModel(Base):
    __tablename__ = "workflow_events"

    __table_args__ = (
        Index("idx_workflow_event_instance_seq", "instance_id", "seq"),
        Index("idx_workflow_event_tenant_type", "tenant_id", "type"),
        {"sqlite_autoincrement": True},
    )

    seq: Mapped[int] = mapped_column(SequenceKey, primary_key=True, autoincrement=True)
    id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False, unique=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instance_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("workflow_instances.id"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_dto(self) -> WorkflowEventRecord:
        return WorkflowEventRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            instance_id=self.instance_id,
            seq=self.seq,
            type=self.type,
            payload=self.payload or {},
            created_at=as_utc(self.created_at),
        )

    def __repr__(self) -> str:
        return f"<WorkflowEvent #{self.seq} {self.type} instance={self.instance_id}>"
