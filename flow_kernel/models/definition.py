"""
WorkflowDefinitionModel -- versioned, declarative state-machine documents.

Contract:
    One row per ``(tenant_id, key, version)``.  The ``spec`` document is
    validated by ``parse_spec`` before insert and never changes afterwards;
    only ``status`` (and row timestamps) may move.

Invariants enforced:
    - UNIQUE (tenant_id, key, version).
    - status / type restricted by CHECK constraints.
    - Identity and spec are frozen (db/immutability.py).
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import CheckConstraint, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from flow_kernel.db.base import JSONDocument, TrackedBase
from flow_kernel.domain.clock import as_utc
from flow_kernel.domain.dtos import WorkflowDefinition
from flow_kernel.domain.workflow import DefinitionStatus, DefinitionType


class WorkflowDefinitionModel(TrackedBase):
    __tablename__ = "workflow_definitions"

    __table_args__ = (
        UniqueConstraint("tenant_id", "key", "version", name="uq_definition_key_version"),
        Index("idx_definition_tenant_key_status", "tenant_id", "key", "status"),
        CheckConstraint(
            "status IN ('ACTIVE', 'INACTIVE', 'ARCHIVED')",
            name="ck_definition_status",
        ),
        CheckConstraint("type IN ('GENERIC', 'APPROVAL')", name="ck_definition_type"),
        CheckConstraint("version > 0", name="ck_definition_version_positive"),
    )

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    key: Mapped[str] = mapped_column(String(200), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DefinitionStatus.ACTIVE.value
    )
    type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DefinitionType.GENERIC.value
    )
    spec: Mapped[dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    def to_dto(self) -> WorkflowDefinition:
        return WorkflowDefinition(
            id=self.id,
            tenant_id=self.tenant_id,
            key=self.key,
            version=self.version,
            name=self.name,
            description=self.description,
            status=DefinitionStatus(self.status),
            type=DefinitionType(self.type),
            spec=self.spec,
            created_by=self.created_by,
            created_at=as_utc(self.created_at),
        )

    def __repr__(self) -> str:
        return f"<WorkflowDefinition {self.key} v{self.version} {self.status}>"
