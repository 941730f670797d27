"""
flow_services.task_manager -- Human/system task lifecycle.

Responsibility:
    Materializes ``createTask`` actions into task rows, completes and fails
    tasks, and turns each resolution into the event that resumes the
    workflow.

Architecture position:
    Services layer.  Implements ``flow_dispatch.services.TaskMaterializer``
    for the dispatcher, and enqueues orchestration jobs through the
    ``JobQueue`` in the caller's transaction.

Invariants enforced:
    - Only PENDING tasks resolve, exactly once (conditional UPDATE in
      TaskService); a second completion raises TaskNotPendingError and
      enqueues nothing.
    - Only HUMAN tasks are completed through ``complete``.
    - Task creation is idempotent on ``<instance_id>:<revision>:<action_index>``.
    - The resume event is always derivable: explicit event, then
      ``output.decision`` mapped to ``approveEvent``/``rejectEvent``, then
      ``completionEvent``, then TASK_COMPLETED.

Failure modes:
    - TaskNotFoundError, TaskNotCompletableError, TaskNotPendingError.
    - InstanceNotActiveError when the task's instance is CANCELLED,
      COMPLETED or FAILED; cancelling an instance also withdraws its open
      tasks.
    - UnauthorizedAssigneeError when a ``user_id`` is supplied and does not
      match the task's assignee.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from flow_dispatch.services.dispatcher import JobQueue
from flow_kernel.domain.approval import ApprovalDecision
from flow_kernel.domain.clock import Clock, SystemClock
from flow_kernel.domain.dtos import WorkflowTask
from flow_kernel.domain.workflow import (
    EventType,
    TaskStatus,
    TaskTemplate,
    TaskType,
    WorkflowEventInput,
)
from flow_kernel.exceptions import (
    InstanceNotActiveError,
    InstanceNotFoundError,
    TaskNotCompletableError,
    TaskNotPendingError,
)
from flow_kernel.logging_config import LogContext, get_logger
from flow_kernel.models.instance import WorkflowInstanceModel
from flow_kernel.selectors.workflow_selector import WorkflowSelector
from flow_kernel.services.event_log import EventLogService
from flow_kernel.services.task_service import NewTask, TaskService

from flow_services.authorization import AssigneeAuthorizer

logger = get_logger("services.task_manager")


def derive_completion_event(
    task: WorkflowTask,
    output: Mapping[str, Any] | None,
    event: str | None,
) -> str:
    """Event that resumes the workflow after ``task`` completes."""
    if event:
        return event
    decision = (output or {}).get("decision")
    if isinstance(decision, str):
        decision = decision.upper()
        if decision == ApprovalDecision.APPROVE.value and task.approve_event:
            return task.approve_event
        if decision == ApprovalDecision.REJECT.value and task.reject_event:
            return task.reject_event
    completion_event = task.input.get("completionEvent")
    if completion_event:
        return completion_event
    return EventType.TASK_COMPLETED


class TaskManager:
    """Task lifecycle over TaskService, EventLogService and JobQueue.

    Non-goals:
        - Does NOT commit.
        - Does NOT advance the instance; it only enqueues the resume event.
    """

    def __init__(
        self,
        session: Session,
        tasks: TaskService,
        event_log: EventLogService,
        queue: JobQueue,
        authorizer: AssigneeAuthorizer,
        selector: WorkflowSelector | None = None,
        clock: Clock | None = None,
    ):
        self._session = session
        self._tasks = tasks
        self._event_log = event_log
        self._queue = queue
        self._authorizer = authorizer
        self._selector = selector or WorkflowSelector(session)
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Materialization (TaskMaterializer)
    # -------------------------------------------------------------------------

    def create_from_action(
        self,
        instance: WorkflowInstanceModel,
        revision: int,
        action_index: int,
        template: TaskTemplate,
    ) -> WorkflowTask | None:
        task_input = dict(template.input)
        if template.completion_event:
            task_input["completionEvent"] = template.completion_event

        due_at = None
        if template.due_in_hours is not None:
            due_at = self._clock.now() + timedelta(hours=template.due_in_hours)

        new_task = NewTask(
            idempotency_key=f"{instance.id}:{revision}:{action_index}",
            type=template.type,
            input=task_input,
            name=template.name,
            assignee_user_id=template.assignee_user_id,
            assignee_role_id=template.assignee_role_id,
            assignee_permission_key=template.assignee_permission_key,
            due_at=due_at,
        )
        created = self._tasks.create_tasks(
            instance.tenant_id,
            instance.id,
            [new_task],
            trace_id=LogContext.get_all().get("trace_id"),
        )
        if not created:
            return None

        task = created[0].to_dto()
        logger.info(
            "task_created",
            extra={
                "task_id": str(task.id),
                "instance_id": str(instance.id),
                "task_type": task.type.value,
                "idempotency_key": task.idempotency_key,
            },
        )
        return task

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def complete(
        self,
        tenant_id: str,
        task_id: UUID,
        output: Mapping[str, Any] | None = None,
        event: str | None = None,
        user_id: str | None = None,
    ) -> WorkflowTask:
        """Complete a PENDING HUMAN task and enqueue its resume event."""
        model = self._tasks.get(tenant_id, task_id)
        task = model.to_dto()
        self._require_active_instance(tenant_id, task)
        if task.type != TaskType.HUMAN:
            raise TaskNotCompletableError(str(task_id), task.type.value)
        if task.status != TaskStatus.PENDING:
            raise TaskNotPendingError(str(task_id), task.status.value)
        if user_id is not None:
            self._authorizer.assert_assignee(tenant_id, user_id, task)

        resume_event = derive_completion_event(task, output, event)
        resolved = self._tasks.resolve(model, TaskStatus.SUCCEEDED, output=output or {}).to_dto()

        self._event_log.append(
            tenant_id,
            task.instance_id,
            EventType.TASK_COMPLETED,
            {
                "taskId": str(task_id),
                "event": resume_event,
                "output": dict(output or {}),
                "completedBy": user_id,
            },
        )
        self._queue.enqueue(
            tenant_id,
            task.instance_id,
            [WorkflowEventInput(resume_event, {"taskId": str(task_id), "output": dict(output or {})})],
        )
        logger.info(
            "task_completed",
            extra={"task_id": str(task_id), "instance_id": str(task.instance_id), "event": resume_event},
        )
        return resolved

    def fail(
        self,
        tenant_id: str,
        task_id: UUID,
        error: Mapping[str, Any] | str,
    ) -> WorkflowTask:
        """Fail a PENDING task and enqueue TASK_FAILED."""
        model = self._tasks.get(tenant_id, task_id)
        task = model.to_dto()
        self._require_active_instance(tenant_id, task)
        if task.status != TaskStatus.PENDING:
            raise TaskNotPendingError(str(task_id), task.status.value)

        error_doc = {"message": error} if isinstance(error, str) else dict(error)
        resolved = self._tasks.resolve(model, TaskStatus.FAILED, error=error_doc).to_dto()

        self._event_log.append(
            tenant_id,
            task.instance_id,
            EventType.TASK_FAILED,
            {"taskId": str(task_id), "error": error_doc},
        )
        self._queue.enqueue(
            tenant_id,
            task.instance_id,
            [WorkflowEventInput(EventType.TASK_FAILED, {"taskId": str(task_id), "error": error_doc})],
        )
        logger.warning(
            "task_failed",
            extra={"task_id": str(task_id), "instance_id": str(task.instance_id)},
        )
        return resolved

    def _require_active_instance(self, tenant_id: str, task: WorkflowTask) -> None:
        instance = self._selector.get_instance(tenant_id, task.instance_id)
        if instance is None:
            raise InstanceNotFoundError(str(task.instance_id))
        if instance.status.is_terminal:
            raise InstanceNotActiveError(str(task.instance_id), instance.status.value)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get(self, tenant_id: str, task_id: UUID) -> WorkflowTask:
        return self._tasks.get(tenant_id, task_id).to_dto()

    def list_tasks(
        self, tenant_id: str, instance_id: UUID, status: TaskStatus | None = None
    ) -> list[WorkflowTask]:
        return self._selector.list_tasks(tenant_id, instance_id, status)

    def assert_assignee(self, tenant_id: str, user_id: str, task: WorkflowTask):
        return self._authorizer.assert_assignee(tenant_id, user_id, task)

    def list_inbox(self, tenant_id: str, user_id: str) -> list[WorkflowTask]:
        role_id, keys = self._authorizer.effective_access(tenant_id, user_id)
        return self._selector.list_inbox(tenant_id, user_id, role_id, keys)
