"""
flow_services.workflow_service -- Generic workflow commands and queries.

Responsibility:
    createDefinition, startInstance, sendEvent, cancelInstance and the
    read side (definitions, instances, events, tasks).

Architecture position:
    Services layer.  Commands never step the interpreter; they append to
    the event log and enqueue an orchestration job in the same
    transaction, and the dispatcher worker advances the instance.

Invariants enforced:
    - Spec documents are validated exactly once, at definition create.
    - Idempotent start: a duplicate ``business_key`` returns the existing
      instance and enqueues nothing.
    - A terminal instance (COMPLETED, CANCELLED, FAILED) accepts no
      events and cannot be cancelled.
    - Every command leaves an audit event: INSTANCE_STARTED,
      EVENT_RECEIVED, INSTANCE_CANCELLED.

Failure modes:
    - InvalidSpecError, DuplicateDefinitionError on create.
    - DefinitionNotFoundError, InstanceNotFoundError on lookup.
    - InstanceNotActiveError on send/cancel against a terminal instance.
"""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from flow_dispatch.domain.types import OrchestrationJob
from flow_dispatch.services.dispatcher import JobQueue
from flow_engines.interpreter import initial_snapshot
from flow_kernel.domain.clock import Clock, SystemClock
from flow_kernel.domain.dtos import (
    WorkflowDefinition,
    WorkflowEventRecord,
    WorkflowInstance,
    WorkflowTask,
)
from flow_kernel.domain.workflow import (
    WORKFLOW_START_EVENT,
    DefinitionStatus,
    DefinitionType,
    EventType,
    InstanceStatus,
    TaskStatus,
    WorkflowEventInput,
)
from flow_kernel.exceptions import (
    DefinitionNotFoundError,
    InstanceNotActiveError,
    InstanceNotFoundError,
)
from flow_kernel.logging_config import get_logger
from flow_kernel.selectors.workflow_selector import WorkflowSelector
from flow_kernel.services.definition_service import DefinitionService
from flow_kernel.services.event_log import EventLogService
from flow_kernel.services.instance_service import InstanceService
from flow_kernel.services.task_service import TaskService

logger = get_logger("services.workflow")


class WorkflowService:
    """
    Command and query facade for generic workflows.

    Contract:
        - ``start_instance`` returns the instance in PENDING status; it is
          RUNNING/COMPLETED only after the worker processed the start job.
        - ``send_event`` returns the enqueued job.

    Non-goals:
        - Does NOT commit; the caller owns the transaction.
    """

    def __init__(
        self,
        session: Session,
        definitions: DefinitionService,
        instances: InstanceService,
        event_log: EventLogService,
        queue: JobQueue,
        selector: WorkflowSelector | None = None,
        clock: Clock | None = None,
        tasks: TaskService | None = None,
    ):
        self._session = session
        self._definitions = definitions
        self._instances = instances
        self._event_log = event_log
        self._queue = queue
        self._selector = selector or WorkflowSelector(session)
        self._clock = clock or SystemClock()
        self._tasks = tasks or TaskService(session, self._clock)

    # -------------------------------------------------------------------------
    # Definitions
    # -------------------------------------------------------------------------

    def create_definition(
        self,
        tenant_id: str,
        key: str,
        spec: Mapping[str, Any],
        name: str | None = None,
        version: int | None = None,
        status: DefinitionStatus = DefinitionStatus.ACTIVE,
        definition_type: DefinitionType = DefinitionType.GENERIC,
        description: str | None = None,
        created_by: str | None = None,
    ) -> WorkflowDefinition:
        model = self._definitions.create(
            tenant_id=tenant_id,
            key=key,
            name=name or key,
            spec=spec,
            version=version,
            status=status,
            definition_type=definition_type,
            description=description,
            created_by=created_by,
        )
        return model.to_dto()

    def set_definition_status(
        self, tenant_id: str, definition_id: UUID, status: DefinitionStatus
    ) -> WorkflowDefinition:
        return self._definitions.set_status(tenant_id, definition_id, status).to_dto()

    def get_definition(self, tenant_id: str, definition_id: UUID) -> WorkflowDefinition:
        definition = self._selector.get_definition(tenant_id, definition_id)
        if definition is None:
            raise DefinitionNotFoundError(tenant_id, definition_id=str(definition_id))
        return definition

    def list_definitions(
        self,
        tenant_id: str,
        key: str | None = None,
        definition_type: DefinitionType | None = None,
        status: DefinitionStatus | None = None,
    ) -> list[WorkflowDefinition]:
        return self._selector.list_definitions(
            tenant_id, key=key, definition_type=definition_type, status=status
        )

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    def start_instance(
        self,
        tenant_id: str,
        definition_id: UUID | None = None,
        definition_key: str | None = None,
        version: int | None = None,
        business_key: str | None = None,
        context: Mapping[str, Any] | None = None,
        start_event: str | None = None,
        start_payload: Mapping[str, Any] | None = None,
    ) -> WorkflowInstance:
        definition = self._definitions.resolve(
            tenant_id, definition_id=definition_id, key=definition_key, version=version
        )
        spec = self._definitions.load_spec(definition)
        snapshot = initial_snapshot(spec, context)

        instance, created = self._instances.create(definition, snapshot, business_key)
        if not created:
            return instance.to_dto()

        event = WorkflowEventInput(start_event or WORKFLOW_START_EVENT, dict(start_payload or {}))
        self._event_log.append(
            tenant_id,
            instance.id,
            EventType.INSTANCE_STARTED,
            {
                "definitionId": str(definition.id),
                "definitionKey": definition.key,
                "version": definition.version,
                "businessKey": business_key,
                "startEvent": event.type,
                "context": dict(snapshot.context),
            },
        )
        self._queue.enqueue(tenant_id, instance.id, [event])

        logger.info(
            "instance_started",
            extra={
                "tenant_id": tenant_id,
                "instance_id": str(instance.id),
                "definition_key": definition.key,
                "version": definition.version,
                "business_key": business_key,
            },
        )
        return instance.to_dto()

    def send_event(
        self,
        tenant_id: str,
        instance_id: UUID,
        event_type: str,
        payload: Mapping[str, Any] | None = None,
    ) -> OrchestrationJob:
        event = WorkflowEventInput.from_document({"type": event_type, "payload": payload or {}})
        instance = self._instances.get(tenant_id, instance_id)
        status = InstanceStatus(instance.status)
        if status.is_terminal:
            raise InstanceNotActiveError(str(instance_id), status.value)

        self._event_log.append(tenant_id, instance_id, EventType.EVENT_RECEIVED, event.to_document())
        job = self._queue.enqueue(tenant_id, instance_id, [event])
        logger.info(
            "event_received",
            extra={"instance_id": str(instance_id), "event_type": event.type},
        )
        return job

    def cancel_instance(
        self,
        tenant_id: str,
        instance_id: UUID,
        reason: str | None = None,
        cancelled_by: str | None = None,
    ) -> WorkflowInstance:
        instance = self._instances.cancel(tenant_id, instance_id)
        self._tasks.withdraw_pending(
            tenant_id, instance_id, {"message": "instance cancelled", "reason": reason}
        )
        self._event_log.append(
            tenant_id,
            instance_id,
            EventType.INSTANCE_CANCELLED,
            {"reason": reason, "cancelledBy": cancelled_by},
        )
        return instance.to_dto()

    def get_instance(self, tenant_id: str, instance_id: UUID) -> WorkflowInstance:
        instance = self._selector.get_instance(tenant_id, instance_id)
        if instance is None:
            raise InstanceNotFoundError(str(instance_id))
        return instance

    def list_instances(
        self,
        tenant_id: str,
        status: InstanceStatus | None = None,
        definition_id: UUID | None = None,
        limit: int = 100,
    ) -> list[WorkflowInstance]:
        return self._selector.list_instances(
            tenant_id,
            status=status,
            definition_ids=[definition_id] if definition_id is not None else None,
            limit=limit,
        )

    def list_events(self, tenant_id: str, instance_id: UUID) -> list[WorkflowEventRecord]:
        return self._selector.list_events(tenant_id, instance_id)

    def list_tasks(
        self, tenant_id: str, instance_id: UUID, status: TaskStatus | None = None
    ) -> list[WorkflowTask]:
        return self._selector.list_tasks(tenant_id, instance_id, status)
