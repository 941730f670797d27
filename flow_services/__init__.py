"""
flow_services -- Application services over the flow kernel.

Workflow commands, task lifecycle, approval policies, the approval gate
and the composition root (``WorkflowRuntime``).
"""

from flow_services.approval_gate import ApprovalGate
from flow_services.approval_policy_service import ApprovalPolicyService
from flow_services.approval_request_service import ApprovalRequestService, ApprovalRequestView
from flow_services.authorization import (
    AssigneeAuthorizer,
    AssigneeDirectory,
    AssigneeMatch,
    InMemoryAssigneeDirectory,
)
from flow_services.runtime import WorkflowRuntime, build_worker
from flow_services.task_manager import TaskManager, derive_completion_event
from flow_services.workflow_service import WorkflowService

__all__ = [
    "ApprovalGate",
    "ApprovalPolicyService",
    "ApprovalRequestService",
    "ApprovalRequestView",
    "AssigneeAuthorizer",
    "AssigneeDirectory",
    "AssigneeMatch",
    "InMemoryAssigneeDirectory",
    "TaskManager",
    "WorkflowRuntime",
    "WorkflowService",
    "build_worker",
    "derive_completion_event",
]
