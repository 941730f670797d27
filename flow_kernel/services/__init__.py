"""Services for the flow kernel (write side)."""

from flow_kernel.services.definition_service import DefinitionService
from flow_kernel.services.event_log import EventLogService
from flow_kernel.services.idempotency_service import IdempotencyService
from flow_kernel.services.instance_service import InstanceService
from flow_kernel.services.task_service import NewTask, TaskService

__all__ = [
    "DefinitionService",
    "EventLogService",
    "IdempotencyService",
    "InstanceService",
    "NewTask",
    "TaskService",
]
