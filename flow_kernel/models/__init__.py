"""ORM models for the flow kernel."""

from flow_kernel.models.definition import WorkflowDefinitionModel
from flow_kernel.models.event import WorkflowEventModel
from flow_kernel.models.idempotency import IdempotencyRecordModel
from flow_kernel.models.instance import WorkflowInstanceModel
from flow_kernel.models.task import WorkflowTaskModel

__all__ = [
    "WorkflowDefinitionModel",
    "WorkflowInstanceModel",
    "WorkflowEventModel",
    "WorkflowTaskModel",
    "IdempotencyRecordModel",
]
