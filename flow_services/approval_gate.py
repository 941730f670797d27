"""
flow_services.approval_gate -- Idempotent "does this action need approval?" gate.

Responsibility:
    ``require_approval`` decides, once per idempotency key, whether an
    action on an entity may proceed now (APPROVED) or must wait for an
    approval workflow (PENDING), and starts that workflow when needed.

Architecture position:
    Services layer.  Composes the IdempotencyService, the
    ApprovalPolicyService, the Rule Evaluator and the WorkflowService.

Invariants enforced:
    - Exactly one observable outcome per ``(tenant, actionKey,
      idempotencyKey)``: retries replay the stored body verbatim.
    - Reusing a key for a different ``{actionKey, entityId, payload}``
      raises IdempotencyKeyMismatchError (client error, never retried).
    - A domain failure while starting the workflow is recorded as FAILED
      and replayed; partial writes of that attempt are rolled back to a
      savepoint so the idempotency record survives.

Audit relevance:
    The idempotency record stores the response status (200 / 202 / 500)
    and body for every key the gate has answered.
"""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy.orm import Session

from flow_engines.policy_compiler import policy_rules
from flow_engines.rules import evaluate
from flow_kernel.domain.approval import (
    APPROVAL_REQUESTED,
    GATE_ACTION_PREFIX,
    ApprovalGateResult,
    GateReason,
    GateStatus,
)
from flow_kernel.domain.dtos import IdempotencyMode
from flow_kernel.exceptions import (
    IdempotencyKeyMismatchError,
    NotFoundError,
    ValidationError,
)
from flow_kernel.logging_config import get_logger
from flow_kernel.services.idempotency_service import IdempotencyService
from flow_kernel.utils.hashing import hash_request

from flow_services.approval_policy_service import ApprovalPolicyService
from flow_services.workflow_service import WorkflowService

logger = get_logger("services.approval_gate")

STATUS_APPROVED = 200
STATUS_PENDING = 202
STATUS_FAILED = 500


class ApprovalGate:
    """The ``requireApproval`` command."""

    def __init__(
        self,
        session: Session,
        idempotency: IdempotencyService,
        policies: ApprovalPolicyService,
        workflows: WorkflowService,
    ):
        self._session = session
        self._idempotency = idempotency
        self._policies = policies
        self._workflows = workflows

    def require_approval(
        self,
        tenant_id: str,
        action_key: str,
        entity_type: str,
        entity_id: str,
        payload: Mapping[str, Any],
        idempotency_key: str,
        requested_by: str | None = None,
    ) -> ApprovalGateResult:
        gate_key = f"{GATE_ACTION_PREFIX}{action_key}"
        request_hash = hash_request(action_key, entity_id, payload)
        log_extra = {
            "tenant_id": tenant_id,
            "action_key": action_key,
            "entity_id": entity_id,
            "idempotency_key": idempotency_key,
        }

        started = self._idempotency.start_or_replay(
            gate_key,
            tenant_id,
            idempotency_key,
            request_hash=request_hash,
            user_id=requested_by,
        )

        if started.mode == IdempotencyMode.MISMATCH:
            raise IdempotencyKeyMismatchError(gate_key, idempotency_key)
        if started.mode in (IdempotencyMode.REPLAY, IdempotencyMode.FAILED):
            logger.info("approval_gate_replayed", extra={**log_extra, "mode": started.mode.value})
            return ApprovalGateResult.from_body(started.response_body, replayed=True)
        if started.mode == IdempotencyMode.IN_PROGRESS:
            return ApprovalGateResult(
                status=GateStatus.PENDING,
                retry_after_ms=started.retry_after_ms,
            )

        policy = self._policies.get_active_policy(tenant_id, action_key)
        if policy is None:
            return self._finish(
                gate_key, tenant_id, idempotency_key, STATUS_APPROVED,
                ApprovalGateResult(status=GateStatus.APPROVED, reason=GateReason.NO_POLICY),
                log_extra,
            )

        if not evaluate(policy_rules(policy.spec), payload):
            return self._finish(
                gate_key, tenant_id, idempotency_key, STATUS_APPROVED,
                ApprovalGateResult(
                    status=GateStatus.APPROVED,
                    reason=GateReason.RULES_NOT_MATCHED,
                    policy_id=policy.id,
                ),
                log_extra,
            )

        savepoint = self._session.begin_nested()
        try:
            instance = self._workflows.start_instance(
                tenant_id,
                definition_id=policy.id,
                business_key=f"{action_key}:{entity_id}",
                context={
                    "actionKey": action_key,
                    "entityType": entity_type,
                    "entityId": entity_id,
                    "payload": dict(payload),
                    "requestedBy": requested_by,
                },
                start_event=APPROVAL_REQUESTED,
            )
            savepoint.commit()
        except (ValidationError, NotFoundError) as exc:
            savepoint.rollback()
            logger.error(
                "approval_gate_start_failed",
                extra={**log_extra, "error_code": exc.code, "error": str(exc)},
            )
            result = ApprovalGateResult(status=GateStatus.FAILED, error=str(exc))
            self._idempotency.fail(
                gate_key, tenant_id, idempotency_key,
                response_body=result.to_body(), response_status=STATUS_FAILED,
            )
            return result

        return self._finish(
            gate_key, tenant_id, idempotency_key, STATUS_PENDING,
            ApprovalGateResult(
                status=GateStatus.PENDING,
                instance_id=instance.id,
                policy_id=policy.id,
            ),
            log_extra,
        )

    def _finish(
        self,
        gate_key: str,
        tenant_id: str,
        idempotency_key: str,
        response_status: int,
        result: ApprovalGateResult,
        log_extra: dict[str, Any],
    ) -> ApprovalGateResult:
        self._idempotency.complete(
            gate_key, tenant_id, idempotency_key, response_status, result.to_body()
        )
        logger.info(
            "approval_gate_decided",
            extra={
                **log_extra,
                "status": result.status.value,
                "reason": result.reason,
                "instance_id": str(result.instance_id) if result.instance_id else None,
            },
        )
        return result
