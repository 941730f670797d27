"""
IdempotencyService -- exactly-once recording of keyed command outcomes.

Responsibility:
    Guards externally retried commands.  ``start_or_replay`` decides whether
    the caller may proceed (STARTED) or must return something else:

        no record                         -> STARTED (record IN_PROGRESS)
        stored hash != request hash       -> MISMATCH
        COMPLETED                         -> REPLAY   (stored response)
        FAILED                            -> FAILED   (stored response)
        IN_PROGRESS, younger than timeout -> IN_PROGRESS (retry later)
        IN_PROGRESS, older than timeout   -> STARTED  (reclaimed)

    A caller that got STARTED must call ``complete`` or ``fail`` exactly once.

Architecture position:
    Kernel > Services.  Used by the approval gate and by any other command
    that must be idempotent across client retries.

Invariants enforced:
    - One row per ``(tenant_id, action_key, key)``; the unique constraint is
      the serialization point, so two concurrent first sights yield exactly
      one STARTED.
    - Reclaiming a stale lock is a compare-and-set on ``updated_at``, so two
      concurrent reclaimers yield exactly one STARTED.
    - Replays return the stored response text verbatim.

Failure modes:
    - A crashed holder blocks its key for at most ``lock_timeout``; callers
      see IN_PROGRESS until then.
"""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flow_kernel.domain.clock import Clock, as_utc
from flow_kernel.domain.dtos import (
    IdempotencyMode,
    IdempotencyStatus,
    StartOrReplayResult,
)
from flow_kernel.logging_config import get_logger
from flow_kernel.models.idempotency import IdempotencyRecordModel
from flow_kernel.services.base import BaseService
from flow_kernel.utils.hashing import canonicalize_json

logger = get_logger("services.idempotency")

DEFAULT_LOCK_TIMEOUT = timedelta(minutes=2)
DEFAULT_TTL = timedelta(hours=24)
DEFAULT_RETRY_AFTER_MS = 1000
DEFAULT_FAILURE_STATUS = 500


class IdempotencyService(BaseService[IdempotencyRecordModel]):
    """
    Idempotency gateway over ``idempotency_records``.

    Guarantees:
        - Never two STARTED results for the same key while the first holder
          is within the lock timeout.
        - MISMATCH whenever both hashes are present and differ, even after
          COMPLETED.

    Non-goals:
        - Does NOT commit; a STARTED record becomes visible to other callers
          when the caller's transaction commits.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        lock_timeout: timedelta = DEFAULT_LOCK_TIMEOUT,
        default_ttl: timedelta = DEFAULT_TTL,
        retry_after_ms: int = DEFAULT_RETRY_AFTER_MS,
    ):
        super().__init__(session, clock)
        self._lock_timeout = lock_timeout
        self._default_ttl = default_ttl
        self._retry_after_ms = retry_after_ms

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def start_or_replay(
        self,
        action_key: str,
        tenant_id: str,
        idempotency_key: str,
        request_hash: str | None = None,
        user_id: str | None = None,
        ttl: timedelta | None = None,
    ) -> StartOrReplayResult:
        record = self._find(tenant_id, action_key, idempotency_key)

        if record is None:
            now = self.clock.now()
            record = IdempotencyRecordModel(
                tenant_id=tenant_id,
                action_key=action_key,
                key=idempotency_key,
                user_id=user_id,
                request_hash=request_hash,
                status=IdempotencyStatus.IN_PROGRESS.value,
                expires_at=now + (ttl or self._default_ttl),
                created_at=now,
                updated_at=now,
            )
            savepoint = self.session.begin_nested()
            try:
                self.session.add(record)
                self.session.flush()
                savepoint.commit()
                logger.info(
                    "idempotency_started",
                    extra={"action_key": action_key, "idempotency_key": idempotency_key},
                )
                return StartOrReplayResult(mode=IdempotencyMode.STARTED, record_id=record.id)
            except IntegrityError:
                savepoint.rollback()
                logger.info(
                    "idempotency_insert_race",
                    extra={"action_key": action_key, "idempotency_key": idempotency_key},
                )
                record = self._find(tenant_id, action_key, idempotency_key)
                if record is None:
                    raise

        return self._evaluate(record, request_hash, user_id, ttl)

    def complete(
        self,
        action_key: str,
        tenant_id: str,
        idempotency_key: str,
        response_status: int,
        response_body: Any,
    ) -> None:
        self._finish(
            action_key, tenant_id, idempotency_key,
            IdempotencyStatus.COMPLETED, response_status, response_body,
        )

    def fail(
        self,
        action_key: str,
        tenant_id: str,
        idempotency_key: str,
        response_body: Any = None,
        response_status: int = DEFAULT_FAILURE_STATUS,
    ) -> None:
        self._finish(
            action_key, tenant_id, idempotency_key,
            IdempotencyStatus.FAILED, response_status, response_body,
        )

    def purge_expired(self) -> int:
        """Delete finished records past ``expires_at``; returns the count."""
        result = self.session.execute(
            delete(IdempotencyRecordModel)
            .where(
                IdempotencyRecordModel.expires_at < self.clock.now(),
                IdempotencyRecordModel.status != IdempotencyStatus.IN_PROGRESS.value,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info("idempotency_records_purged", extra={"count": result.rowcount})
        return result.rowcount

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _find(
        self, tenant_id: str, action_key: str, idempotency_key: str
    ) -> IdempotencyRecordModel | None:
        return self.session.execute(
            select(IdempotencyRecordModel)
            .where(
                IdempotencyRecordModel.tenant_id == tenant_id,
                IdempotencyRecordModel.action_key == action_key,
                IdempotencyRecordModel.key == idempotency_key,
            )
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _evaluate(
        self,
        record: IdempotencyRecordModel,
        request_hash: str | None,
        user_id: str | None,
        ttl: timedelta | None,
    ) -> StartOrReplayResult:
        log_extra = {"action_key": record.action_key, "idempotency_key": record.key}

        if record.request_hash and request_hash and record.request_hash != request_hash:
            logger.warning("idempotency_mismatch", extra=log_extra)
            return StartOrReplayResult(mode=IdempotencyMode.MISMATCH, record_id=record.id)

        if record.status in (IdempotencyStatus.COMPLETED.value, IdempotencyStatus.FAILED.value):
            mode = (
                IdempotencyMode.REPLAY
                if record.status == IdempotencyStatus.COMPLETED.value
                else IdempotencyMode.FAILED
            )
            logger.info("idempotency_replayed", extra={**log_extra, "mode": mode.value})
            return StartOrReplayResult(
                mode=mode,
                record_id=record.id,
                response_status=record.response_status,
                response_body=(
                    json.loads(record.response_body) if record.response_body is not None else None
                ),
                response_text=record.response_body,
            )

        now = self.clock.now()
        locked_at = as_utc(record.updated_at)
        if now - locked_at > self._lock_timeout:
            if self._reclaim(record, request_hash, user_id, ttl):
                logger.warning(
                    "idempotency_lock_reclaimed",
                    extra={**log_extra, "locked_at": locked_at.isoformat()},
                )
                return StartOrReplayResult(mode=IdempotencyMode.STARTED, record_id=record.id)

        return StartOrReplayResult(
            mode=IdempotencyMode.IN_PROGRESS,
            record_id=record.id,
            retry_after_ms=self._retry_after_ms,
        )

    def _reclaim(
        self,
        record: IdempotencyRecordModel,
        request_hash: str | None,
        user_id: str | None,
        ttl: timedelta | None,
    ) -> bool:
        now = self.clock.now()
        result = self.session.execute(
            update(IdempotencyRecordModel)
            .where(
                IdempotencyRecordModel.id == record.id,
                IdempotencyRecordModel.status == IdempotencyStatus.IN_PROGRESS.value,
                IdempotencyRecordModel.updated_at == record.updated_at,
            )
            .values(
                updated_at=now,
                request_hash=request_hash or record.request_hash,
                user_id=user_id or record.user_id,
                expires_at=now + (ttl or self._default_ttl),
            )
            .execution_options(synchronize_session=False)
        )
        self.session.refresh(record)
        return result.rowcount == 1

    def _finish(
        self,
        action_key: str,
        tenant_id: str,
        idempotency_key: str,
        status: IdempotencyStatus,
        response_status: int,
        response_body: Any,
    ) -> None:
        result = self.session.execute(
            update(IdempotencyRecordModel)
            .where(
                IdempotencyRecordModel.tenant_id == tenant_id,
                IdempotencyRecordModel.action_key == action_key,
                IdempotencyRecordModel.key == idempotency_key,
                IdempotencyRecordModel.status == IdempotencyStatus.IN_PROGRESS.value,
            )
            .values(
                status=status.value,
                response_status=response_status,
                response_body=(
                    canonicalize_json(response_body) if response_body is not None else None
                ),
                updated_at=self.clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        log_extra = {
            "action_key": action_key,
            "idempotency_key": idempotency_key,
            "status": status.value,
            "response_status": response_status,
        }
        if result.rowcount != 1:
            logger.warning("idempotency_finish_without_lock", extra=log_extra)
            return
        logger.info("idempotency_finished", extra=log_extra)
