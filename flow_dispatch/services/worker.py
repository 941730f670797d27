"""
OrchestrationWorker -- in-process polling worker for orchestration jobs.

Contract:
    Claims due jobs, processes each in its own session and transaction via
    an ``OrchestrationDispatcher``, and records success, retry or
    exhaustion.

Architecture: flow_dispatch/services.  Uses flow_dispatch.domain for pure
    backoff and flow_dispatch.services.dispatcher for processing.

Invariants enforced:
    - A claim is a conditional UPDATE on the row's observed status and
      lease, so two workers never both claim the same job.
    - ``attempts`` is incremented at claim time; a crash mid-job still
      consumes an attempt once the lease expires.
    - Retry delay is ``backoff_base * 2 ** (attempt - 1)``.
    - After ``max_attempts`` the job is FAILED and a DISPATCH_FAILED event
      is appended to the instance.  Logged at ERROR as ``job_exhausted``.
    - All timestamps from the injected Clock.
    - Graceful shutdown: ``stop()`` lets in-flight jobs finish.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from flow_kernel.domain.clock import Clock, SystemClock
from flow_kernel.domain.workflow import EventType
from flow_kernel.logging_config import LogContext, get_logger
from flow_kernel.models.instance import WorkflowInstanceModel
from flow_kernel.services.event_log import EventLogService

from flow_dispatch.domain.types import (
    JobStatus,
    OrchestrationJob,
    ProcessResult,
    compute_backoff,
)
from flow_dispatch.models.job import OrchestrationJobModel
from flow_dispatch.services.dispatcher import OrchestrationDispatcher

logger = get_logger("dispatch.worker")

_MAX_ERROR_LENGTH = 2000


class OrchestrationWorker:
    """Polling worker for the orchestration job table.

    Contract:
        - ``run_once()`` claims and processes one batch (public for testing).
        - ``start()`` / ``stop()`` for background thread operation.
        - ``list_failed_jobs()`` for operators.

    Non-goals:
        - NOT a distributed scheduler (no leader election); correctness
          across workers comes from the conditional claim and the instance
          revision check.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher_factory: Callable[[Session], OrchestrationDispatcher],
        clock: Clock | None = None,
        worker_id: str | None = None,
        backoff_base_seconds: float = 2.0,
        batch_size: int = 10,
        concurrency: int = 1,
        lease_seconds: float = 300.0,
        poll_interval_seconds: float = 1.0,
    ):
        self._session_factory = session_factory
        self._dispatcher_factory = dispatcher_factory
        self._clock = clock or SystemClock()
        self._worker_id = worker_id or f"worker-{uuid4()}"
        self._backoff_base = backoff_base_seconds
        self._batch_size = batch_size
        self._concurrency = max(1, concurrency)
        self._lease = timedelta(seconds=lease_seconds)
        self._poll_interval = poll_interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(
        cls,
        config,
        session_factory: Callable[[], Session],
        dispatcher_factory: Callable[[Session], OrchestrationDispatcher],
        clock: Clock | None = None,
        worker_id: str | None = None,
    ) -> OrchestrationWorker:
        """Build from a ``flow_config.schema.DispatcherConfig``."""
        return cls(
            session_factory=session_factory,
            dispatcher_factory=dispatcher_factory,
            clock=clock,
            worker_id=worker_id,
            backoff_base_seconds=config.backoff_base_seconds,
            batch_size=config.batch_size,
            concurrency=config.concurrency,
            lease_seconds=config.lease_seconds,
            poll_interval_seconds=config.poll_interval_seconds,
        )

    @property
    def worker_id(self) -> str:
        return self._worker_id

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def run_once(self) -> int:
        """Claim and process one batch of due jobs.

        Returns the number of jobs claimed.
        """
        claimed = self._claim_batch()
        if not claimed:
            return 0

        if self._concurrency == 1 or len(claimed) == 1:
            for job in claimed:
                if self._stop_event.is_set():
                    break
                self._run_job(job)
        else:
            with ThreadPoolExecutor(
                max_workers=self._concurrency,
                thread_name_prefix="flow-dispatch",
            ) as pool:
                list(pool.map(self._run_job, claimed))
        return len(claimed)

    def drain(self, max_rounds: int = 100) -> int:
        """Run batches until no job is due.  Returns the total processed."""
        total = 0
        for _ in range(max_rounds):
            count = self.run_once()
            if count == 0:
                break
            total += count
        return total

    def start(self) -> None:
        """Start the worker in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="flow-dispatch-worker",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "worker_started",
            extra={"worker_id": self._worker_id, "poll_interval": self._poll_interval},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current batch to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("worker_stopped", extra={"worker_id": self._worker_id})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def list_failed_jobs(
        self, tenant_id: str | None = None, limit: int = 100
    ) -> list[OrchestrationJob]:
        session = self._session_factory()
        try:
            query = select(OrchestrationJobModel).where(
                OrchestrationJobModel.status == JobStatus.FAILED.value
            )
            if tenant_id is not None:
                query = query.where(OrchestrationJobModel.tenant_id == tenant_id)
            query = query.order_by(OrchestrationJobModel.updated_at.desc()).limit(limit)
            return [m.to_dto() for m in session.execute(query).scalars().all()]
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                claimed = self.run_once()
            except Exception:
                logger.exception("worker_poll_exception")
                claimed = 0
            if claimed == 0:
                self._stop_event.wait(timeout=self._poll_interval)

    def _claim_batch(self) -> list[OrchestrationJob]:
        session = self._session_factory()
        try:
            now = self._clock.now()
            lease_cutoff = now - self._lease
            candidates = session.execute(
                select(
                    OrchestrationJobModel.id,
                    OrchestrationJobModel.status,
                    OrchestrationJobModel.locked_at,
                )
                .where(
                    or_(
                        and_(
                            OrchestrationJobModel.status == JobStatus.QUEUED.value,
                            OrchestrationJobModel.next_run_at <= now,
                        ),
                        and_(
                            OrchestrationJobModel.status == JobStatus.RUNNING.value,
                            OrchestrationJobModel.locked_at < lease_cutoff,
                        ),
                    )
                )
                .order_by(OrchestrationJobModel.next_run_at, OrchestrationJobModel.seq)
                .limit(self._batch_size)
            ).all()

            claimed_ids: list[UUID] = []
            for job_id, status, locked_at in candidates:
                conditions = [
                    OrchestrationJobModel.id == job_id,
                    OrchestrationJobModel.status == status,
                ]
                if locked_at is None:
                    conditions.append(OrchestrationJobModel.locked_at.is_(None))
                else:
                    conditions.append(OrchestrationJobModel.locked_at == locked_at)
                result = session.execute(
                    update(OrchestrationJobModel)
                    .where(*conditions)
                    .values(
                        status=JobStatus.RUNNING.value,
                        locked_at=now,
                        locked_by=self._worker_id,
                        attempts=OrchestrationJobModel.attempts + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(job_id)
                    if status == JobStatus.RUNNING.value:
                        logger.warning(
                            "job_lease_expired_reclaimed",
                            extra={"job_id": str(job_id), "worker_id": self._worker_id},
                        )

            jobs = []
            if claimed_ids:
                jobs = [
                    m.to_dto()
                    for m in session.execute(
                        select(OrchestrationJobModel)
                        .where(OrchestrationJobModel.id.in_(claimed_ids))
                        .order_by(OrchestrationJobModel.next_run_at, OrchestrationJobModel.seq)
                    ).scalars().all()
                ]
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if jobs:
            logger.debug(
                "jobs_claimed",
                extra={"worker_id": self._worker_id, "count": len(jobs)},
            )
        return jobs

    def _run_job(self, job: OrchestrationJob) -> ProcessResult | None:
        with LogContext.bind(
            job_id=job.job_key,
            tenant_id=job.tenant_id,
            instance_id=str(job.instance_id),
        ):
            session = self._session_factory()
            try:
                dispatcher = self._dispatcher_factory(session)
                result = dispatcher.process_job(job)
                if not self._ack(session, job):
                    session.rollback()
                    logger.warning(
                        "job_lease_lost",
                        extra={"job_key": job.job_key, "worker_id": self._worker_id},
                    )
                    return None
                session.commit()
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "job_attempt_failed",
                    extra={
                        "job_key": job.job_key,
                        "attempt": job.attempts,
                        "max_attempts": job.max_attempts,
                    },
                )
                self._record_failure(job, exc)
                return None
            finally:
                session.close()

            logger.info(
                "job_succeeded",
                extra={
                    "job_key": job.job_key,
                    "attempt": job.attempts,
                    "outcome": result.outcome.value,
                },
            )
            return result

    def _ack(self, session: Session, job: OrchestrationJob) -> bool:
        now = self._clock.now()
        result = session.execute(
            update(OrchestrationJobModel)
            .where(
                OrchestrationJobModel.id == job.id,
                OrchestrationJobModel.status == JobStatus.RUNNING.value,
                OrchestrationJobModel.locked_by == self._worker_id,
            )
            .values(
                status=JobStatus.SUCCEEDED.value,
                completed_at=now,
                locked_at=None,
                locked_by=None,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _record_failure(self, job: OrchestrationJob, exc: BaseException) -> None:
        error = f"{type(exc).__name__}: {exc}"[:_MAX_ERROR_LENGTH]
        exhausted = job.exhausted
        now = self._clock.now()

        session = self._session_factory()
        try:
            values = {
                "locked_at": None,
                "locked_by": None,
                "last_error": error,
                "updated_at": now,
            }
            if exhausted:
                values["status"] = JobStatus.FAILED.value
                values["completed_at"] = now
            else:
                values["status"] = JobStatus.QUEUED.value
                values["next_run_at"] = now + compute_backoff(job.attempts, self._backoff_base)

            result = session.execute(
                update(OrchestrationJobModel)
                .where(
                    OrchestrationJobModel.id == job.id,
                    OrchestrationJobModel.status == JobStatus.RUNNING.value,
                    OrchestrationJobModel.locked_by == self._worker_id,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "job_lease_lost",
                    extra={"job_key": job.job_key, "worker_id": self._worker_id},
                )
                return

            if exhausted:
                instance_exists = session.execute(
                    select(WorkflowInstanceModel.id).where(
                        WorkflowInstanceModel.id == job.instance_id
                    )
                ).scalar_one_or_none()
                if instance_exists is not None:
                    EventLogService(session, self._clock).append(
                        job.tenant_id,
                        job.instance_id,
                        EventType.DISPATCH_FAILED,
                        {"jobKey": job.job_key, "attempts": job.attempts, "error": error},
                    )
                logger.error(
                    "job_exhausted",
                    extra={
                        "job_key": job.job_key,
                        "attempts": job.attempts,
                        "error": error,
                    },
                )
            else:
                logger.info(
                    "job_retry_scheduled",
                    extra={
                        "job_key": job.job_key,
                        "attempt": job.attempts,
                        "next_run_at": values["next_run_at"].isoformat(),
                    },
                )
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("job_failure_record_failed", extra={"job_key": job.job_key})
            raise
        finally:
            session.close()
