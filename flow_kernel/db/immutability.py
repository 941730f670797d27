"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

The workflow event log is the audit record of every instance.  Events must
never change once written, definitions must not change underneath running
instances, and a resolved task must never be reopened.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
We register listeners that intercept these events and check the rules:

    session.flush()
         |
         v
    [before_update event] --> _check_*() --> ImmutabilityViolationError
         |
         v
    [before_delete event] --> _check_*_delete() --> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

Core ``update()`` / ``delete()`` statements bypass these listeners.  The
kernel uses Core statements only for the guarded PENDING -> terminal task
transition and the instance compare-and-set, both of which respect the same
rules in their WHERE clauses.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                  | When Immutable                | Fields
------------------------|-------------------------------|----------------------------
WorkflowEvent           | ALWAYS                        | all; no deletes
WorkflowDefinition      | ALWAYS                        | tenant_id, key, version, type, spec; no deletes
WorkflowTask            | After status leaves PENDING   | all except updated_at
WorkflowInstance        | never deleted                 | -

===============================================================================
USAGE
===============================================================================

    from flow_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once at startup

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from flow_kernel.exceptions import ImmutabilityViolationError
from flow_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

_AUDIT_METADATA_FIELDS = frozenset({"updated_at"})

_DEFINITION_FROZEN_FIELDS = ("tenant_id", "key", "version", "type", "spec")

_TERMINAL_TASK_STATUSES = frozenset({"SUCCEEDED", "FAILED"})


def _changed_fields(target) -> set[str]:
    state = inspect(target)
    return {
        attr.key
        for attr in state.attrs
        if attr.history.has_changes()
    }


def _blocked(entity_type: str, entity_id, operation: str, reason: str) -> ImmutabilityViolationError:
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


# =============================================================================
# WorkflowEvent -- append-only
# =============================================================================


def _check_event_immutability(mapper, connection, target):
    raise _blocked(
        "WorkflowEvent", target.id, "UPDATE",
        "Workflow events are append-only and cannot be modified",
    )


def _check_event_delete(mapper, connection, target):
    raise _blocked(
        "WorkflowEvent", target.id, "DELETE",
        "Workflow events cannot be deleted",
    )


# =============================================================================
# WorkflowDefinition -- frozen identity and spec
# =============================================================================


def _check_definition_immutability(mapper, connection, target):
    changed = _changed_fields(target) & set(_DEFINITION_FROZEN_FIELDS)
    if changed:
        raise _blocked(
            "WorkflowDefinition", target.id, "UPDATE",
            f"Definition fields {sorted(changed)} are immutable; create a new version",
        )


def _check_definition_delete(mapper, connection, target):
    raise _blocked(
        "WorkflowDefinition", target.id, "DELETE",
        "Definitions cannot be deleted; archive them instead",
    )


# =============================================================================
# WorkflowTask -- resolved exactly once
# =============================================================================


def _check_task_immutability(mapper, connection, target):
    history = inspect(target).attrs.status.history
    previous = history.deleted[0] if history.deleted else target.status
    if previous not in _TERMINAL_TASK_STATUSES:
        return
    changed = _changed_fields(target) - _AUDIT_METADATA_FIELDS
    if changed:
        raise _blocked(
            "WorkflowTask", target.id, "UPDATE",
            f"Task is already {previous} and cannot be reopened or modified",
        )


# =============================================================================
# WorkflowInstance -- never deleted
# =============================================================================


def _check_instance_delete(mapper, connection, target):
    raise _blocked(
        "WorkflowInstance", target.id, "DELETE",
        "Workflow instances are retained for audit and cannot be deleted",
    )


def _listeners():
    from flow_kernel.models.definition import WorkflowDefinitionModel
    from flow_kernel.models.event import WorkflowEventModel
    from flow_kernel.models.instance import WorkflowInstanceModel
    from flow_kernel.models.task import WorkflowTaskModel

    return (
        (WorkflowEventModel, "before_update", _check_event_immutability),
        (WorkflowEventModel, "before_delete", _check_event_delete),
        (WorkflowDefinitionModel, "before_update", _check_definition_immutability),
        (WorkflowDefinitionModel, "before_delete", _check_definition_delete),
        (WorkflowTaskModel, "before_update", _check_task_immutability),
        (WorkflowInstanceModel, "before_delete", _check_instance_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Call this after all models are imported but before any database
    operations begin.  Safe to call more than once.
    """
    for model, name, fn in _listeners():
        if not event.contains(model, name, fn):
            event.listen(model, name, fn)
    logger.debug("immutability_listeners_registered")


def unregister_immutability_listeners():
    """
    Remove all immutability enforcement event listeners.

    WARNING: Only use this in tests that need to bypass immutability.
    """
    for model, name, fn in _listeners():
        if event.contains(model, name, fn):
            event.remove(model, name, fn)
