"""
Module: flow_kernel.selectors.workflow_selector
Responsibility: Read-only queries over definitions, instances, events and
    tasks.  Returns frozen DTOs, never live ORM rows.
Architecture position: Kernel > Selectors.  May import from db/ and models/.
    Selectors NEVER create, modify, or delete data.

Invariants enforced:
    - Every query is tenant-scoped.
    - Events are returned in insertion (``seq``) order for audit replay.
"""

from __future__ import annotations

from typing import Iterable
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from flow_kernel.domain.dtos import (
    WorkflowDefinition,
    WorkflowEventRecord,
    WorkflowInstance,
    WorkflowTask,
)
from flow_kernel.domain.workflow import (
    DefinitionStatus,
    DefinitionType,
    InstanceStatus,
    TaskStatus,
    TaskType,
)
from flow_kernel.models.definition import WorkflowDefinitionModel
from flow_kernel.models.event import WorkflowEventModel
from flow_kernel.models.instance import WorkflowInstanceModel
from flow_kernel.models.task import WorkflowTaskModel


class WorkflowSelector:
    """Tenant-scoped read access to workflow state."""

    def __init__(self, session: Session):
        self.session = session

    # Definitions

    def get_definition(self, tenant_id: str, definition_id: UUID) -> WorkflowDefinition | None:
        model = self.session.execute(
            select(WorkflowDefinitionModel).where(
                WorkflowDefinitionModel.tenant_id == tenant_id,
                WorkflowDefinitionModel.id == definition_id,
            )
        ).scalar_one_or_none()
        return model.to_dto() if model else None

    def list_definitions(
        self,
        tenant_id: str,
        key: str | None = None,
        key_prefix: str | None = None,
        definition_type: DefinitionType | None = None,
        status: DefinitionStatus | None = None,
    ) -> list[WorkflowDefinition]:
        query = select(WorkflowDefinitionModel).where(
            WorkflowDefinitionModel.tenant_id == tenant_id
        )
        if key is not None:
            query = query.where(WorkflowDefinitionModel.key == key)
        if key_prefix is not None:
            query = query.where(WorkflowDefinitionModel.key.startswith(key_prefix, autoescape=True))
        if definition_type is not None:
            query = query.where(WorkflowDefinitionModel.type == DefinitionType(definition_type).value)
        if status is not None:
            query = query.where(WorkflowDefinitionModel.status == DefinitionStatus(status).value)
        query = query.order_by(
            WorkflowDefinitionModel.key, WorkflowDefinitionModel.version.desc()
        )
        return [m.to_dto() for m in self.session.execute(query).scalars()]

    # Instances

    def get_instance(self, tenant_id: str, instance_id: UUID) -> WorkflowInstance | None:
        model = self.session.execute(
            select(WorkflowInstanceModel)
            .where(
                WorkflowInstanceModel.tenant_id == tenant_id,
                WorkflowInstanceModel.id == instance_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model else None

    def list_instances(
        self,
        tenant_id: str,
        status: InstanceStatus | None = None,
        definition_ids: Iterable[UUID] | None = None,
        definition_type: DefinitionType | None = None,
        limit: int = 100,
    ) -> list[WorkflowInstance]:
        query = select(WorkflowInstanceModel).where(
            WorkflowInstanceModel.tenant_id == tenant_id
        )
        if status is not None:
            query = query.where(WorkflowInstanceModel.status == InstanceStatus(status).value)
        if definition_ids is not None:
            query = query.where(WorkflowInstanceModel.definition_id.in_(list(definition_ids)))
        if definition_type is not None:
            query = query.join(
                WorkflowDefinitionModel,
                WorkflowDefinitionModel.id == WorkflowInstanceModel.definition_id,
            ).where(WorkflowDefinitionModel.type == DefinitionType(definition_type).value)
        query = query.order_by(WorkflowInstanceModel.started_at.desc()).limit(limit)
        return [m.to_dto() for m in self.session.execute(query).scalars()]

    # Events

    def list_events(self, tenant_id: str, instance_id: UUID) -> list[WorkflowEventRecord]:
        models = self.session.execute(
            select(WorkflowEventModel)
            .where(
                WorkflowEventModel.tenant_id == tenant_id,
                WorkflowEventModel.instance_id == instance_id,
            )
            .order_by(WorkflowEventModel.seq)
        ).scalars()
        return [m.to_dto() for m in models]

    # Tasks

    def get_task(self, tenant_id: str, task_id: UUID) -> WorkflowTask | None:
        model = self.session.execute(
            select(WorkflowTaskModel)
            .where(
                WorkflowTaskModel.tenant_id == tenant_id,
                WorkflowTaskModel.id == task_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return model.to_dto() if model else None

    def list_tasks(
        self,
        tenant_id: str,
        instance_id: UUID,
        status: TaskStatus | None = None,
    ) -> list[WorkflowTask]:
        query = select(WorkflowTaskModel).where(
            WorkflowTaskModel.tenant_id == tenant_id,
            WorkflowTaskModel.instance_id == instance_id,
        )
        if status is not None:
            query = query.where(WorkflowTaskModel.status == TaskStatus(status).value)
        query = query.order_by(WorkflowTaskModel.created_at, WorkflowTaskModel.idempotency_key)
        return [
            m.to_dto()
            for m in self.session.execute(
                query.execution_options(populate_existing=True)
            ).scalars()
        ]

    def list_inbox(
        self,
        tenant_id: str,
        user_id: str,
        role_id: str | None = None,
        permission_keys: Iterable[str] = (),
    ) -> list[WorkflowTask]:
        """PENDING HUMAN tasks addressed to the user, their role, or a held permission."""
        audience = [WorkflowTaskModel.assignee_user_id == user_id]
        if role_id is not None:
            audience.append(WorkflowTaskModel.assignee_role_id == role_id)
        keys = sorted(set(permission_keys))
        if keys:
            audience.append(WorkflowTaskModel.assignee_permission_key.in_(keys))

        models = self.session.execute(
            select(WorkflowTaskModel)
            .where(
                WorkflowTaskModel.tenant_id == tenant_id,
                WorkflowTaskModel.status == TaskStatus.PENDING.value,
                WorkflowTaskModel.type == TaskType.HUMAN.value,
                or_(*audience),
            )
            .order_by(WorkflowTaskModel.created_at)
        ).scalars()
        return [m.to_dto() for m in models]
