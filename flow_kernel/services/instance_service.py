"""
InstanceService -- workflow instance rows and their snapshot.

Responsibility:
    Creates instances (idempotently per business key), and writes snapshot
    and status changes through an optimistic compare-and-set on
    ``revision``.

Invariants enforced:
    - Idempotent start: ``(tenant_id, definition_id, business_key)`` is
      unique; a duplicate start returns the existing row, including when
      the duplicate arrives concurrently (savepoint + re-read).
    - No lost updates: every snapshot/status write is
      ``UPDATE ... WHERE id = :id AND revision = :expected`` and bumps the
      revision by one.  Zero rows updated raises ``ConcurrentUpdateError``.

Failure modes:
    - InstanceNotFoundError: unknown id for the tenant.
    - InstanceNotActiveError: cancel on a terminal instance.
    - ConcurrentUpdateError: revision moved between read and write.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from flow_kernel.domain.workflow import InstanceStatus, Snapshot
from flow_kernel.exceptions import (
    ConcurrentUpdateError,
    InstanceNotActiveError,
    InstanceNotFoundError,
)
from flow_kernel.logging_config import get_logger
from flow_kernel.models.definition import WorkflowDefinitionModel
from flow_kernel.models.instance import WorkflowInstanceModel
from flow_kernel.services.base import BaseService
from flow_kernel.utils.hashing import to_json_document

logger = get_logger("services.instance")


class InstanceService(BaseService[WorkflowInstanceModel]):
    """Write-side access to workflow instances."""

    def find_by_business_key(
        self,
        tenant_id: str,
        definition_id: UUID,
        business_key: str,
    ) -> WorkflowInstanceModel | None:
        return self.session.execute(
            select(WorkflowInstanceModel)
            .where(
                WorkflowInstanceModel.tenant_id == tenant_id,
                WorkflowInstanceModel.definition_id == definition_id,
                WorkflowInstanceModel.business_key == business_key,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def create(
        self,
        definition: WorkflowDefinitionModel,
        snapshot: Snapshot,
        business_key: str | None = None,
    ) -> tuple[WorkflowInstanceModel, bool]:
        """
        Insert a PENDING instance positioned at ``snapshot``.

        Returns:
            ``(instance, created)``.  ``created`` is False when an instance
            with the same business key already existed.
        """
        tenant_id = definition.tenant_id
        if business_key is not None:
            existing = self.find_by_business_key(tenant_id, definition.id, business_key)
            if existing is not None:
                logger.info(
                    "instance_start_deduplicated",
                    extra={
                        "tenant_id": tenant_id,
                        "instance_id": str(existing.id),
                        "business_key": business_key,
                    },
                )
                return existing, False

        now = self.clock.now()
        model = WorkflowInstanceModel(
            tenant_id=tenant_id,
            definition_id=definition.id,
            business_key=business_key,
            status=InstanceStatus.PENDING.value,
            current_state=snapshot.current_state,
            context=to_json_document(dict(snapshot.context)),
            revision=0,
            started_at=now,
            created_at=now,
            updated_at=now,
        )

        savepoint = self.session.begin_nested()
        try:
            self.session.add(model)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            if business_key is None:
                raise
            existing = self.find_by_business_key(tenant_id, definition.id, business_key)
            if existing is None:
                raise
            logger.info(
                "instance_start_race_resolved",
                extra={
                    "tenant_id": tenant_id,
                    "instance_id": str(existing.id),
                    "business_key": business_key,
                },
            )
            return existing, False

        return model, True

    def get(self, tenant_id: str, instance_id: UUID) -> WorkflowInstanceModel:
        model = self.session.execute(
            select(WorkflowInstanceModel)
            .where(
                WorkflowInstanceModel.id == instance_id,
                WorkflowInstanceModel.tenant_id == tenant_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise InstanceNotFoundError(str(instance_id))
        return model

    def find(self, tenant_id: str, instance_id: UUID) -> WorkflowInstanceModel | None:
        try:
            return self.get(tenant_id, instance_id)
        except InstanceNotFoundError:
            return None

    def compare_and_set(
        self,
        instance: WorkflowInstanceModel,
        expected_revision: int,
        *,
        current_state: str | None = None,
        context: Mapping[str, Any] | None = None,
        status: InstanceStatus | None = None,
        completed_at: datetime | None = None,
        last_error: str | None = None,
    ) -> int:
        """
        Write the given fields only if ``revision`` is still ``expected_revision``.

        Returns:
            The new revision.
        """
        values: dict[str, Any] = {
            "revision": expected_revision + 1,
            "updated_at": self.clock.now(),
        }
        if current_state is not None:
            values["current_state"] = current_state
        if context is not None:
            values["context"] = to_json_document(dict(context))
        if status is not None:
            values["status"] = InstanceStatus(status).value
        if completed_at is not None:
            values["completed_at"] = completed_at
        if last_error is not None:
            values["last_error"] = last_error

        result = self.session.execute(
            update(WorkflowInstanceModel)
            .where(
                WorkflowInstanceModel.id == instance.id,
                WorkflowInstanceModel.revision == expected_revision,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "instance_concurrent_update",
                extra={
                    "instance_id": str(instance.id),
                    "expected_revision": expected_revision,
                },
            )
            raise ConcurrentUpdateError(str(instance.id), expected_revision)

        self.session.refresh(instance)
        return expected_revision + 1

    def cancel(self, tenant_id: str, instance_id: UUID) -> WorkflowInstanceModel:
        """Mark an active instance CANCELLED (one-way)."""
        instance = self.get(tenant_id, instance_id)
        status = InstanceStatus(instance.status)
        if status.is_terminal:
            raise InstanceNotActiveError(str(instance_id), status.value)

        now = self.clock.now()
        self.compare_and_set(
            instance,
            instance.revision,
            status=InstanceStatus.CANCELLED,
            completed_at=now,
        )
        logger.info(
            "instance_cancelled",
            extra={"tenant_id": tenant_id, "instance_id": str(instance_id)},
        )
        return instance
