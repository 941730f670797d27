"""
OrchestrationDispatcher -- enqueue and process orchestration jobs.

Contract:
    ``enqueue_orchestrator(tenant_id, instance_id, events)`` writes one job
    row in the caller's transaction.  ``process_job(job)`` performs one
    delivery: reload the instance, step the interpreter against the
    persisted snapshot, compare-and-set the result, append the audit events
    and materialize the step's actions.

Architecture: flow_dispatch/services.  Imports from flow_dispatch.domain,
    flow_dispatch.models, flow_engines and kernel services.

Invariants enforced:
    - Always reload before stepping; never trust an in-memory snapshot.
    - The snapshot write is ``UPDATE ... WHERE revision = :read``; a job
      overlapping another job for the same instance loses with
      ConcurrentUpdateError and is retried against the fresh snapshot.
    - Event append and instance update share the caller's transaction.
    - Actions are interpreted by one exhaustive switch; an unknown action
      kind is a programming error (TypeError), not a silent skip.
    - A terminal instance (CANCELLED, COMPLETED, FAILED) acknowledges the job
      without interpreting it.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from flow_engines.interpreter import step
from flow_kernel.domain.clock import Clock, SystemClock
from flow_kernel.domain.dtos import WorkflowTask
from flow_kernel.domain.workflow import (
    AssignAction,
    CreateTaskAction,
    EventType,
    InstanceStatus,
    StepResult,
    TaskTemplate,
    WorkflowEventInput,
)
from flow_kernel.logging_config import get_logger
from flow_kernel.models.instance import WorkflowInstanceModel
from flow_kernel.services.definition_service import DefinitionService
from flow_kernel.services.event_log import EventLogService
from flow_kernel.services.instance_service import InstanceService
from flow_kernel.utils.hashing import to_json_document

from flow_dispatch.domain.types import (
    JobOutcome,
    JobStatus,
    OrchestrationJob,
    ProcessResult,
)
from flow_dispatch.models.job import OrchestrationJobModel

logger = get_logger("dispatch.dispatcher")

DEFAULT_MAX_ATTEMPTS = 5


class TaskMaterializer(Protocol):
    """Creates the task row for a ``createTask`` action.

    Implemented by ``flow_services.task_manager.TaskManager``.  Returns None
    when the task already exists (redelivered action).
    """

    def create_from_action(
        self,
        instance: WorkflowInstanceModel,
        revision: int,
        action_index: int,
        template: TaskTemplate,
    ) -> WorkflowTask | None: ...


class JobQueue:
    """Writes orchestration jobs.  Does NOT commit."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._max_attempts = max_attempts

    def enqueue(
        self,
        tenant_id: str,
        instance_id: UUID,
        events: Sequence[WorkflowEventInput | Mapping[str, Any]],
    ) -> OrchestrationJob:
        documents = [
            e.to_document() if isinstance(e, WorkflowEventInput)
            else WorkflowEventInput.from_document(e).to_document()
            for e in events
        ]
        now = self._clock.now()
        job_id = uuid4()
        model = OrchestrationJobModel(
            id=job_id,
            # Placeholder until the INSERT assigns seq.
            job_key=str(job_id),
            tenant_id=tenant_id,
            instance_id=instance_id,
            events=to_json_document(documents),
            status=JobStatus.QUEUED.value,
            attempts=0,
            max_attempts=self._max_attempts,
            next_run_at=now,
            created_at=now,
            updated_at=now,
        )
        self._session.add(model)
        self._session.flush()
        model.job_key = f"{instance_id}:{model.seq}"
        self._session.flush()

        logger.info(
            "job_enqueued",
            extra={
                "job_key": model.job_key,
                "tenant_id": tenant_id,
                "instance_id": str(instance_id),
                "event_types": [d["type"] for d in documents],
            },
        )
        return model.to_dto()


class OrchestrationDispatcher:
    """Single-delivery processing of orchestration jobs.

    Contract:
        - ``enqueue_orchestrator()`` delegates to the JobQueue.
        - ``process_job()`` is safe to call more than once for the same
          job: redelivered events find no handler, and redelivered tasks
          hit their idempotency key.

    Non-goals:
        - Does NOT commit, retry or claim.  The worker owns transactions,
          attempts and backoff.
    """

    def __init__(
        self,
        session: Session,
        queue: JobQueue,
        instances: InstanceService,
        definitions: DefinitionService,
        event_log: EventLogService,
        tasks: TaskMaterializer,
        clock: Clock | None = None,
    ):
        self._session = session
        self._queue = queue
        self._instances = instances
        self._definitions = definitions
        self._event_log = event_log
        self._tasks = tasks
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def enqueue_orchestrator(
        self,
        tenant_id: str,
        instance_id: UUID,
        events: Sequence[WorkflowEventInput | Mapping[str, Any]],
    ) -> OrchestrationJob:
        return self._queue.enqueue(tenant_id, instance_id, events)

    def process_job(self, job: OrchestrationJob) -> ProcessResult:
        log_extra = {"job_key": job.job_key, "instance_id": str(job.instance_id)}

        instance = self._instances.find(job.tenant_id, job.instance_id)
        if instance is None:
            logger.warning("job_instance_missing", extra=log_extra)
            return ProcessResult(instance_id=job.instance_id, outcome=JobOutcome.MISSING_INSTANCE)

        status = InstanceStatus(instance.status)
        if status.is_terminal:
            logger.info(
                "EVENT_IGNORED",
                extra={
                    **log_extra,
                    "status": status.value,
                    "event_types": [e.get("type") for e in job.events],
                },
            )
            return ProcessResult(
                instance_id=instance.id,
                outcome=JobOutcome.IGNORED,
                status=status,
                current_state=instance.current_state,
                revision=instance.revision,
            )

        definition = self._definitions.get(instance.tenant_id, instance.definition_id)
        spec = self._definitions.load_spec(definition)
        events = job.event_inputs
        snapshot = instance.to_dto().snapshot
        read_revision = instance.revision

        result = step(spec, snapshot, events)
        new_status = self._derive_status(result, events)

        for event in events:
            if not result.consumed(event.type):
                logger.debug(
                    "event_not_handled",
                    extra={**log_extra, "event_type": event.type, "state": snapshot.current_state},
                )

        if not result.changed and new_status == status:
            logger.info("job_no_change", extra={**log_extra, "state": snapshot.current_state})
            return ProcessResult(
                instance_id=instance.id,
                outcome=JobOutcome.NO_CHANGE,
                status=status,
                current_state=snapshot.current_state,
                revision=read_revision,
            )

        now = self._clock.now()
        last_error = None
        if new_status == InstanceStatus.FAILED:
            last_error = self._failure_reason(events)
        new_revision = self._instances.compare_and_set(
            instance,
            read_revision,
            current_state=result.snapshot.current_state,
            context=result.snapshot.context if result.changed else None,
            status=new_status,
            completed_at=now if new_status.is_terminal else None,
            last_error=last_error,
        )

        self._append_audit(instance, result, new_status)
        task_ids = self._materialize(instance, read_revision, result)

        logger.info(
            "instance_stepped",
            extra={
                **log_extra,
                "from_state": snapshot.current_state,
                "to_state": result.snapshot.current_state,
                "status": new_status.value,
                "revision": new_revision,
                "transitions": len(result.transitions),
                "tasks_created": len(task_ids),
            },
        )
        return ProcessResult(
            instance_id=instance.id,
            outcome=JobOutcome.APPLIED,
            status=new_status,
            current_state=result.snapshot.current_state,
            revision=new_revision,
            transitions=len(result.transitions),
            task_ids=tuple(task_ids),
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @staticmethod
    def _derive_status(
        result: StepResult, events: Sequence[WorkflowEventInput]
    ) -> InstanceStatus:
        if result.final:
            return InstanceStatus.COMPLETED
        for event in events:
            if event.type == EventType.TASK_FAILED and not result.consumed(event.type):
                return InstanceStatus.FAILED
        return InstanceStatus.RUNNING

    @staticmethod
    def _failure_reason(events: Sequence[WorkflowEventInput]) -> str:
        for event in events:
            if event.type == EventType.TASK_FAILED:
                error = event.payload.get("error")
                if error:
                    return str(error)
        return "task failed"

    def _append_audit(
        self,
        instance: WorkflowInstanceModel,
        result: StepResult,
        new_status: InstanceStatus,
    ) -> None:
        for transition in result.transitions:
            self._event_log.append(
                instance.tenant_id,
                instance.id,
                EventType.EVENT_APPLIED,
                {"type": transition.event, "payload": dict(transition.payload)},
            )
            self._event_log.append(
                instance.tenant_id,
                instance.id,
                EventType.STATE_TRANSITION,
                {
                    "event": transition.event,
                    "from": transition.from_state,
                    "to": transition.to_state,
                },
            )

        if new_status == InstanceStatus.COMPLETED:
            self._event_log.append(
                instance.tenant_id,
                instance.id,
                EventType.INSTANCE_COMPLETED,
                {"state": result.snapshot.current_state},
            )
        elif new_status == InstanceStatus.FAILED:
            self._event_log.append(
                instance.tenant_id,
                instance.id,
                EventType.INSTANCE_FAILED,
                {"state": result.snapshot.current_state, "error": instance.last_error},
            )

    def _materialize(
        self,
        instance: WorkflowInstanceModel,
        revision: int,
        result: StepResult,
    ) -> list[UUID]:
        task_ids: list[UUID] = []
        for index, action in enumerate(result.actions):
            if isinstance(action, CreateTaskAction):
                task = self._tasks.create_from_action(instance, revision, index, action.task)
                if task is None:
                    continue
                self._event_log.append(
                    instance.tenant_id,
                    instance.id,
                    EventType.TASK_CREATED,
                    {
                        "taskId": str(task.id),
                        "name": task.name,
                        "type": task.type.value,
                        "idempotencyKey": task.idempotency_key,
                    },
                )
                task_ids.append(task.id)
            elif isinstance(action, AssignAction):
                # Already applied to the context by the interpreter.
                continue
            else:
                raise TypeError(f"unhandled workflow action {action!r}")
        return task_ids
