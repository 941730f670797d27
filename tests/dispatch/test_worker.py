"""
Tests for OrchestrationWorker.

These tests need real commits (claims, acks and failure records each run
in their own transaction), so they use ``session_factory`` and never the
rollback ``session`` fixture.
"""

import time
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from flow_dispatch.domain.types import JobStatus
from flow_dispatch.models.job import OrchestrationJobModel
from flow_dispatch.services.dispatcher import JobQueue
from flow_dispatch.services.worker import OrchestrationWorker
from flow_kernel.domain.workflow import EventType, InstanceStatus, TaskStatus
from flow_services.runtime import WorkflowRuntime


class ExplodingDispatcher:
    """Dispatcher whose every delivery fails."""

    def __init__(self, session):
        self.session = session

    def process_job(self, job):
        raise RuntimeError("downstream unavailable")


@pytest.fixture
def open_runtime(session_factory, engine_config, directory, deterministic_clock):
    """Run ``fn(runtime)`` in a committed transaction and return its result."""

    def _in_transaction(fn):
        session = session_factory()
        try:
            result = fn(
                WorkflowRuntime.from_session(
                    session, engine_config, directory, deterministic_clock
                )
            )
            session.commit()
            return result
        finally:
            session.close()

    return _in_transaction


@pytest.fixture
def order_instance(open_runtime, tenant_id, order_spec):
    def _seed(rt):
        definition = rt.workflows.create_definition(tenant_id, "order", order_spec)
        instance = rt.workflows.start_instance(tenant_id, definition_id=definition.id)
        rt.workflows.send_event(tenant_id, instance.id, "SUBMIT")
        return instance

    return open_runtime(_seed)


def all_jobs(session_factory):
    session = session_factory()
    try:
        models = session.execute(
            select(OrchestrationJobModel).order_by(OrchestrationJobModel.seq)
        ).scalars().all()
        return [m.to_dto() for m in models]
    finally:
        session.close()


class TestDrain:

    def test_processes_jobs_in_order(
        self, worker, open_runtime, session_factory, tenant_id, order_instance
    ):
        assert worker.drain() == 2

        instance = open_runtime(lambda rt: rt.workflows.get_instance(tenant_id, order_instance.id))
        assert instance.status == InstanceStatus.RUNNING
        assert instance.current_state == "review"
        jobs = all_jobs(session_factory)
        assert [j.status for j in jobs] == [JobStatus.SUCCEEDED, JobStatus.SUCCEEDED]
        assert all(j.attempts == 1 and j.locked_by is None for j in jobs)

    def test_task_completion_round_trip(
        self, worker, open_runtime, directory, tenant_id, order_instance
    ):
        worker.drain()
        directory.assign_role(tenant_id, "rita", "reviewer")

        def approve(rt):
            (task,) = rt.tasks.list_inbox(tenant_id, "rita")
            rt.tasks.complete(tenant_id, task.id, output={"decision": "APPROVE"}, user_id="rita")

        open_runtime(approve)
        assert worker.drain() == 1

        instance = open_runtime(lambda rt: rt.workflows.get_instance(tenant_id, order_instance.id))
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.context["approved"] is True
        tasks = open_runtime(lambda rt: rt.tasks.list_tasks(tenant_id, order_instance.id))
        assert [t.status for t in tasks] == [TaskStatus.SUCCEEDED]

    def test_nothing_due(self, worker):
        assert worker.run_once() == 0

    def test_missing_instance_is_acknowledged(
        self, worker, session_factory, tenant_id, deterministic_clock, captured_logs
    ):
        session = session_factory()
        try:
            JobQueue(session, deterministic_clock).enqueue(
                tenant_id, uuid4(), [{"type": "SUBMIT"}]
            )
            session.commit()
        finally:
            session.close()

        assert worker.drain() == 1

        (job,) = all_jobs(session_factory)
        assert job.status == JobStatus.SUCCEEDED
        assert any(r["message"] == "job_instance_missing" for r in captured_logs())


class TestRetries:

    @pytest.fixture
    def failing_worker(self, session_factory, deterministic_clock):
        return OrchestrationWorker(
            session_factory,
            ExplodingDispatcher,
            clock=deterministic_clock,
            worker_id="failing-worker",
            backoff_base_seconds=2.0,
        )

    @pytest.fixture
    def started_instance(self, open_runtime, tenant_id, order_spec):
        def _seed(rt):
            definition = rt.workflows.create_definition(tenant_id, "order", order_spec)
            return rt.workflows.start_instance(tenant_id, definition_id=definition.id)

        return open_runtime(_seed)

    def test_backoff_schedule(
        self, failing_worker, session_factory, deterministic_clock, started_instance
    ):
        start = deterministic_clock.now()

        assert failing_worker.run_once() == 1
        (job,) = all_jobs(session_factory)
        assert job.status == JobStatus.QUEUED
        assert job.attempts == 1
        assert job.next_run_at == start + timedelta(seconds=2)
        assert job.last_error == "RuntimeError: downstream unavailable"

        deterministic_clock.advance(1)
        assert failing_worker.run_once() == 0

        deterministic_clock.advance(1)
        assert failing_worker.run_once() == 1
        (job,) = all_jobs(session_factory)
        assert job.attempts == 2
        assert job.next_run_at == deterministic_clock.now() + timedelta(seconds=4)

    def test_exhaustion_after_five_attempts(
        self,
        failing_worker,
        session_factory,
        open_runtime,
        tenant_id,
        deterministic_clock,
        started_instance,
        captured_logs,
    ):
        assert failing_worker.run_once() == 1
        for delay in (2, 4, 8, 16):
            deterministic_clock.advance(delay)
            assert failing_worker.run_once() == 1

        (job,) = all_jobs(session_factory)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 5
        assert job.completed_at == deterministic_clock.now()

        deterministic_clock.advance(3600)
        assert failing_worker.run_once() == 0

        events = open_runtime(lambda rt: rt.workflows.list_events(tenant_id, started_instance.id))
        assert events[-1].type == EventType.DISPATCH_FAILED
        assert events[-1].payload["attempts"] == 5
        exhausted = [r for r in captured_logs() if r["message"] == "job_exhausted"]
        assert len(exhausted) == 1
        assert exhausted[0]["level"] == "ERROR"
        retries = [r for r in captured_logs() if r["message"] == "job_retry_scheduled"]
        assert len(retries) == 4

    def test_list_failed_jobs(
        self, failing_worker, tenant_id, other_tenant_id, deterministic_clock, started_instance
    ):
        failing_worker.run_once()
        for delay in (2, 4, 8, 16):
            deterministic_clock.advance(delay)
            failing_worker.run_once()

        (failed,) = failing_worker.list_failed_jobs(tenant_id)
        assert failed.instance_id == started_instance.id
        assert failing_worker.list_failed_jobs(other_tenant_id) == []


class TestLease:

    def _abandon_job(self, session_factory, clock):
        session = session_factory()
        try:
            session.execute(
                update(OrchestrationJobModel)
                .values(
                    status=JobStatus.RUNNING.value,
                    locked_at=clock.now(),
                    locked_by="crashed-worker",
                    attempts=1,
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
        finally:
            session.close()

    def test_running_job_not_reclaimed_within_lease(
        self, worker, session_factory, deterministic_clock, open_runtime, tenant_id, order_spec
    ):
        open_runtime(
            lambda rt: rt.workflows.start_instance(
                tenant_id,
                definition_id=rt.workflows.create_definition(tenant_id, "order", order_spec).id,
            )
        )
        self._abandon_job(session_factory, deterministic_clock)

        deterministic_clock.advance(299)
        assert worker.run_once() == 0

    def test_expired_lease_reclaimed(
        self,
        worker,
        session_factory,
        deterministic_clock,
        open_runtime,
        tenant_id,
        order_spec,
        captured_logs,
    ):
        instance = open_runtime(
            lambda rt: rt.workflows.start_instance(
                tenant_id,
                definition_id=rt.workflows.create_definition(tenant_id, "order", order_spec).id,
            )
        )
        self._abandon_job(session_factory, deterministic_clock)

        deterministic_clock.advance(301)
        assert worker.run_once() == 1

        (job,) = all_jobs(session_factory)
        assert job.status == JobStatus.SUCCEEDED
        assert job.attempts == 2
        assert any(r["message"] == "job_lease_expired_reclaimed" for r in captured_logs())
        current = open_runtime(lambda rt: rt.workflows.get_instance(tenant_id, instance.id))
        assert current.status == InstanceStatus.RUNNING


class TestBackgroundLoop:

    def test_start_and_stop(self, worker, open_runtime, tenant_id, order_instance):
        worker.start()
        try:
            assert worker.is_running
            deadline = time.monotonic() + 10
            state = None
            while time.monotonic() < deadline:
                state = open_runtime(
                    lambda rt: rt.workflows.get_instance(tenant_id, order_instance.id).current_state
                )
                if state == "review":
                    break
                time.sleep(0.02)
        finally:
            worker.stop()

        assert state == "review"
        assert not worker.is_running

    @pytest.mark.slow_locks
    def test_concurrent_batch(
        self, session_factory, engine_config, directory, deterministic_clock,
        open_runtime, tenant_id, order_spec,
    ):
        def _seed(rt):
            definition = rt.workflows.create_definition(tenant_id, "order", order_spec)
            return [
                rt.workflows.start_instance(tenant_id, definition_id=definition.id).id
                for _ in range(6)
            ]

        instance_ids = open_runtime(_seed)
        pool_worker = OrchestrationWorker(
            session_factory,
            lambda s: WorkflowRuntime.from_session(
                s, engine_config, directory, deterministic_clock
            ).dispatcher,
            clock=deterministic_clock,
            concurrency=4,
        )

        assert pool_worker.drain() == 6

        statuses = open_runtime(
            lambda rt: {rt.workflows.get_instance(tenant_id, i).status for i in instance_ids}
        )
        assert statuses == {InstanceStatus.RUNNING}
