"""Orchestration services: enqueue, single-job processing, worker loop."""

from flow_dispatch.services.dispatcher import (
    JobQueue,
    OrchestrationDispatcher,
    TaskMaterializer,
)
from flow_dispatch.services.worker import OrchestrationWorker

__all__ = [
    "JobQueue",
    "OrchestrationDispatcher",
    "OrchestrationWorker",
    "TaskMaterializer",
]
