"""
IdempotencyRecordModel -- recorded outcome of an externally keyed command.

Contract:
    One row per ``(tenant_id, action_key, key)``; the unique constraint is
    the only serialization point between concurrent duplicate requests.
    ``response_body`` holds the serialized response text so a replay is
    byte-identical.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from flow_kernel.db.base import Base
from flow_kernel.domain.clock import as_utc
from flow_kernel.domain.dtos import IdempotencyRecord, IdempotencyStatus


class IdempotencyRecordModel(Base):
    __tablename__ = "idempotency_records"

    __table_args__ = (
        UniqueConstraint("tenant_id", "action_key", "key", name="uq_idempotency_key"),
        Index("idx_idempotency_expires", "expires_at"),
        CheckConstraint(
            "status IN ('IN_PROGRESS', 'COMPLETED', 'FAILED')",
            name="ck_idempotency_status",
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action_key: Mapped[str] = mapped_column(String(200), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    request_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def to_dto(self) -> IdempotencyRecord:
        return IdempotencyRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            action_key=self.action_key,
            key=self.key,
            user_id=self.user_id,
            request_hash=self.request_hash,
            status=IdempotencyStatus(self.status),
            response_status=self.response_status,
            response_body=self.response_body,
            expires_at=as_utc(self.expires_at),
            updated_at=as_utc(self.updated_at),
        )
