"""
flow_services.approval_request_service -- Approver-facing operations.

Responsibility:
    Deciding approval tasks, approver inboxes, and read access to
    approval requests (instances of APPROVAL definitions).
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from flow_kernel.domain.approval import ApprovalDecision
from flow_kernel.domain.dtos import WorkflowEventRecord, WorkflowInstance, WorkflowTask
from flow_kernel.domain.workflow import DefinitionType, InstanceStatus
from flow_kernel.exceptions import InstanceNotFoundError, InvalidDecisionError
from flow_kernel.logging_config import get_logger
from flow_kernel.selectors.workflow_selector import WorkflowSelector

from flow_services.task_manager import TaskManager

logger = get_logger("services.approval_requests")


@dataclass(frozen=True)
class ApprovalRequestView:
    """An approval instance with its tasks and audit trail."""

    instance: WorkflowInstance
    tasks: tuple[WorkflowTask, ...]
    events: tuple[WorkflowEventRecord, ...]


class ApprovalRequestService:
    def __init__(self, task_manager: TaskManager, selector: WorkflowSelector):
        self._task_manager = task_manager
        self._selector = selector

    def decide_task(
        self,
        tenant_id: str,
        task_id: UUID,
        user_id: str,
        decision: ApprovalDecision | str,
        comment: str | None = None,
    ) -> WorkflowTask:
        """Approve or reject an approval task as ``user_id``."""
        try:
            decision = ApprovalDecision(str(getattr(decision, "value", decision)).upper())
        except ValueError:
            raise InvalidDecisionError(str(task_id), decision) from None

        task = self._task_manager.get(tenant_id, task_id)
        event = (
            task.approve_event if decision == ApprovalDecision.APPROVE else task.reject_event
        )
        result = self._task_manager.complete(
            tenant_id,
            task_id,
            output={"decision": decision.value, "comment": comment, "decidedBy": user_id},
            event=event,
            user_id=user_id,
        )
        logger.info(
            "approval_task_decided",
            extra={"task_id": str(task_id), "user_id": user_id, "decision": decision.value},
        )
        return result

    def list_inbox(self, tenant_id: str, user_id: str) -> list[WorkflowTask]:
        return self._task_manager.list_inbox(tenant_id, user_id)

    def list_requests(
        self,
        tenant_id: str,
        status: InstanceStatus | None = None,
        limit: int = 100,
    ) -> list[WorkflowInstance]:
        return self._selector.list_instances(
            tenant_id,
            status=status,
            definition_type=DefinitionType.APPROVAL,
            limit=limit,
        )

    def get_request(self, tenant_id: str, instance_id: UUID) -> ApprovalRequestView:
        instance = self._selector.get_instance(tenant_id, instance_id)
        if instance is None:
            raise InstanceNotFoundError(str(instance_id))
        return ApprovalRequestView(
            instance=instance,
            tasks=tuple(self._selector.list_tasks(tenant_id, instance_id)),
            events=tuple(self._selector.list_events(tenant_id, instance_id)),
        )
