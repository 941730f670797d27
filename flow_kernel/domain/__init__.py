"""
Pure domain layer.

Immutable value objects and validation with NO dependencies on
ORM, database, wall-clock time or I/O.
"""

from flow_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from flow_kernel.domain.workflow import (
    AppliedTransition,
    AssignAction,
    CreateTaskAction,
    DefinitionStatus,
    DefinitionType,
    EventType,
    InstanceStatus,
    Snapshot,
    StepResult,
    TaskStatus,
    TaskTemplate,
    TaskType,
    WORKFLOW_START_EVENT,
    WorkflowEventInput,
    WorkflowSpec,
    load_stored_spec,
    parse_spec,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "AppliedTransition",
    "AssignAction",
    "CreateTaskAction",
    "DefinitionStatus",
    "DefinitionType",
    "EventType",
    "InstanceStatus",
    "Snapshot",
    "StepResult",
    "TaskStatus",
    "TaskTemplate",
    "TaskType",
    "WORKFLOW_START_EVENT",
    "WorkflowEventInput",
    "WorkflowSpec",
    "load_stored_spec",
    "parse_spec",
]
