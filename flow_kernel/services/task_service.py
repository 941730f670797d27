"""
TaskService -- persistence for workflow tasks.

Responsibility:
    Inserts tasks materialized from ``createTask`` actions and resolves
    them exactly once.

Invariants enforced:
    - Duplicate materialization is a no-op: tasks carry an idempotency key
      and ``(tenant_id, idempotency_key)`` is unique.
    - PENDING -> SUCCEEDED | FAILED happens through a conditional UPDATE
      (``WHERE status = 'PENDING'``), so two concurrent resolutions cannot
      both win.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from flow_kernel.domain.workflow import TaskStatus, TaskType
from flow_kernel.exceptions import TaskNotFoundError, TaskNotPendingError
from flow_kernel.logging_config import get_logger
from flow_kernel.models.task import WorkflowTaskModel
from flow_kernel.services.base import BaseService
from flow_kernel.utils.hashing import to_json_document

logger = get_logger("services.task")


@dataclass(frozen=True)
class NewTask:
    """Row to insert; produced by the task manager from a TaskTemplate."""

    idempotency_key: str
    type: TaskType
    input: Mapping[str, Any]
    name: str | None = None
    assignee_user_id: str | None = None
    assignee_role_id: str | None = None
    assignee_permission_key: str | None = None
    due_at: datetime | None = None


class TaskService(BaseService[WorkflowTaskModel]):
    """Write-side access to workflow tasks."""

    def find_by_idempotency_key(self, tenant_id: str, key: str) -> WorkflowTaskModel | None:
        return self.session.execute(
            select(WorkflowTaskModel).where(
                WorkflowTaskModel.tenant_id == tenant_id,
                WorkflowTaskModel.idempotency_key == key,
            )
        ).scalar_one_or_none()

    def create_tasks(
        self,
        tenant_id: str,
        instance_id: UUID,
        tasks: Sequence[NewTask],
        trace_id: str | None = None,
    ) -> list[WorkflowTaskModel]:
        """
        Insert ``tasks``, skipping any whose idempotency key already exists.

        Returns:
            Only the newly created rows.
        """
        created: list[WorkflowTaskModel] = []
        now = self.clock.now()

        for task in tasks:
            if self.find_by_idempotency_key(tenant_id, task.idempotency_key) is not None:
                logger.info(
                    "task_duplicate_skipped",
                    extra={"instance_id": str(instance_id), "idempotency_key": task.idempotency_key},
                )
                continue

            model = WorkflowTaskModel(
                tenant_id=tenant_id,
                instance_id=instance_id,
                name=task.name,
                type=TaskType(task.type).value,
                status=TaskStatus.PENDING.value,
                input=to_json_document(dict(task.input)),
                assignee_user_id=task.assignee_user_id,
                assignee_role_id=task.assignee_role_id,
                assignee_permission_key=task.assignee_permission_key,
                due_at=task.due_at,
                idempotency_key=task.idempotency_key,
                trace_id=trace_id,
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
                logger.info(
                    "task_duplicate_skipped",
                    extra={"instance_id": str(instance_id), "idempotency_key": task.idempotency_key},
                )
                continue
            created.append(model)

        return created

    def get(self, tenant_id: str, task_id: UUID) -> WorkflowTaskModel:
        model = self.session.execute(
            select(WorkflowTaskModel)
            .where(
                WorkflowTaskModel.id == task_id,
                WorkflowTaskModel.tenant_id == tenant_id,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if model is None:
            raise TaskNotFoundError(str(task_id))
        return model

    def resolve(
        self,
        task: WorkflowTaskModel,
        status: TaskStatus,
        *,
        output: Mapping[str, Any] | None = None,
        error: Mapping[str, Any] | None = None,
    ) -> WorkflowTaskModel:
        """
        Move a PENDING task to ``status`` exactly once.

        Raises:
            TaskNotPendingError: the task was already resolved (possibly
                by a concurrent caller).
        """
        if status == TaskStatus.PENDING:
            raise ValueError("resolve() requires a terminal status")

        now = self.clock.now()
        values: dict[str, Any] = {
            "status": TaskStatus(status).value,
            "completed_at": now,
            "updated_at": now,
        }
        if output is not None:
            values["output"] = to_json_document(dict(output))
        if error is not None:
            values["error"] = to_json_document(dict(error))

        result = self.session.execute(
            update(WorkflowTaskModel)
            .where(
                WorkflowTaskModel.id == task.id,
                WorkflowTaskModel.status == TaskStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(task)
        if result.rowcount != 1:
            raise TaskNotPendingError(str(task.id), task.status)

        logger.info(
            "task_resolved",
            extra={
                "task_id": str(task.id),
                "instance_id": str(task.instance_id),
                "status": task.status,
            },
        )
        return task

    def withdraw_pending(
        self,
        tenant_id: str,
        instance_id: UUID,
        error: Mapping[str, Any],
    ) -> int:
        """Fail every PENDING task of an instance; returns how many moved.

        Uses the same ``WHERE status = 'PENDING'`` guard as ``resolve``, so a
        task completed concurrently is either withdrawn here or completed
        there, never both.
        """
        now = self.clock.now()
        result = self.session.execute(
            update(WorkflowTaskModel)
            .where(
                WorkflowTaskModel.tenant_id == tenant_id,
                WorkflowTaskModel.instance_id == instance_id,
                WorkflowTaskModel.status == TaskStatus.PENDING.value,
            )
            .values(
                status=TaskStatus.FAILED.value,
                error=to_json_document(dict(error)),
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(
                "tasks_withdrawn",
                extra={"instance_id": str(instance_id), "count": result.rowcount},
            )
        return result.rowcount
