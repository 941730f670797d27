"""
flow_services.runtime -- Composition root for the workflow engine.

Responsibility:
    Creates every service exactly once per session and wires them together
    by plain constructor injection.  No service constructs its
    collaborators internally.

Architecture position:
    Services -- top of the service layer.  The construction order below is
    the authoritative dependency graph.

Usage:
    config = get_engine_config()
    with session_scope() as session:
        runtime = WorkflowRuntime.from_session(session, config, directory)
        runtime.gate.require_approval(...)

    worker = build_worker(config, get_session_factory(), directory)
    worker.start()
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from flow_config.schema import EngineConfig
from flow_dispatch.services.dispatcher import JobQueue, OrchestrationDispatcher
from flow_dispatch.services.worker import OrchestrationWorker
from flow_kernel.domain.clock import Clock, SystemClock
from flow_kernel.selectors.workflow_selector import WorkflowSelector
from flow_kernel.services.definition_service import DefinitionService
from flow_kernel.services.event_log import EventLogService
from flow_kernel.services.idempotency_service import IdempotencyService
from flow_kernel.services.instance_service import InstanceService
from flow_kernel.services.task_service import TaskService

from flow_services.approval_gate import ApprovalGate
from flow_services.approval_policy_service import ApprovalPolicyService
from flow_services.approval_request_service import ApprovalRequestService
from flow_services.authorization import AssigneeAuthorizer, AssigneeDirectory
from flow_services.task_manager import TaskManager
from flow_services.workflow_service import WorkflowService


@dataclass(frozen=True)
class WorkflowRuntime:
    """All services bound to one session."""

    session: Session
    clock: Clock
    selector: WorkflowSelector
    idempotency: IdempotencyService
    queue: JobQueue
    dispatcher: OrchestrationDispatcher
    tasks: TaskManager
    workflows: WorkflowService
    policies: ApprovalPolicyService
    gate: ApprovalGate
    approvals: ApprovalRequestService

    @classmethod
    def from_session(
        cls,
        session: Session,
        config: EngineConfig,
        directory: AssigneeDirectory,
        clock: Clock | None = None,
    ) -> WorkflowRuntime:
        clock = clock or SystemClock()

        event_log = EventLogService(session, clock)
        definitions = DefinitionService(session, clock)
        instances = InstanceService(session, clock)
        task_rows = TaskService(session, clock)
        idempotency = IdempotencyService(
            session,
            clock,
            lock_timeout=config.idempotency.lock_timeout,
            default_ttl=config.idempotency.ttl,
            retry_after_ms=config.idempotency.retry_after_ms,
        )
        selector = WorkflowSelector(session)
        queue = JobQueue(session, clock, max_attempts=config.dispatcher.max_attempts)

        tasks = TaskManager(
            session,
            task_rows,
            event_log,
            queue,
            AssigneeAuthorizer(directory),
            selector=selector,
            clock=clock,
        )
        dispatcher = OrchestrationDispatcher(
            session,
            queue,
            instances,
            definitions,
            event_log,
            tasks,
            clock=clock,
        )
        workflows = WorkflowService(
            session,
            definitions,
            instances,
            event_log,
            queue,
            selector=selector,
            clock=clock,
            tasks=task_rows,
        )
        policies = ApprovalPolicyService(definitions, selector)
        gate = ApprovalGate(session, idempotency, policies, workflows)
        approvals = ApprovalRequestService(tasks, selector)

        return cls(
            session=session,
            clock=clock,
            selector=selector,
            idempotency=idempotency,
            queue=queue,
            dispatcher=dispatcher,
            tasks=tasks,
            workflows=workflows,
            policies=policies,
            gate=gate,
            approvals=approvals,
        )


def build_worker(
    config: EngineConfig,
    session_factory: Callable[[], Session],
    directory: AssigneeDirectory,
    clock: Clock | None = None,
    worker_id: str | None = None,
) -> OrchestrationWorker:
    """Worker whose per-job dispatcher comes from a fresh runtime."""
    clock = clock or SystemClock()

    def dispatcher_factory(session: Session) -> OrchestrationDispatcher:
        return WorkflowRuntime.from_session(session, config, directory, clock).dispatcher

    return OrchestrationWorker.from_config(
        config.dispatcher,
        session_factory,
        dispatcher_factory,
        clock=clock,
        worker_id=worker_id,
    )
