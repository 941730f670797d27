"""
Approval domain types.

Responsibility:
    Pure value objects for approval policies (the business-level input that
    ``flow_engines.policy_compiler`` turns into a workflow spec), decisions,
    and the approval gate's response body.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Invariants enforced:
    - Every step names exactly one assignee: user, role, or permission key.
    - Step events are synthetic and per step (``STEP_<n>_APPROVED``) so two
      steps awaiting distinct tasks are never ambiguous; rejection is shared.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

from flow_kernel.domain.rules import RuleSet, parse_rule_set
from flow_kernel.domain.workflow import DefinitionStatus
from flow_kernel.exceptions import InvalidPolicyError, InvalidRuleError

# Definitions compiled from a policy are stored under this key prefix.
POLICY_KEY_PREFIX = "approval."

# Idempotency action-key namespace used by the approval gate.
GATE_ACTION_PREFIX = "approvalGate:"

APPROVAL_REQUESTED = "APPROVAL_REQUESTED"
APPROVAL_REJECTED = "APPROVAL_REJECTED"


def step_approved_event(step_number: int) -> str:
    return f"STEP_{step_number}_APPROVED"


def step_state(step_number: int) -> str:
    return f"step_{step_number}"


def policy_definition_key(policy_key: str) -> str:
    if policy_key.startswith(POLICY_KEY_PREFIX):
        return policy_key
    return f"{POLICY_KEY_PREFIX}{policy_key}"


class ApprovalDecision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


class GateStatus(str, Enum):
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    FAILED = "FAILED"


class GateReason:
    NO_POLICY = "no_policy"
    RULES_NOT_MATCHED = "rules_not_matched"


@dataclass(frozen=True)
class ApprovalStep:
    """One sequential approval step."""

    name: str
    assignee_user_id: str | None = None
    assignee_role_id: str | None = None
    assignee_permission_key: str | None = None
    due_in_hours: float | None = None

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, Any] = {"name": self.name}
        if self.assignee_user_id is not None:
            doc["assigneeUserId"] = self.assignee_user_id
        if self.assignee_role_id is not None:
            doc["assigneeRoleId"] = self.assignee_role_id
        if self.assignee_permission_key is not None:
            doc["assigneePermissionKey"] = self.assignee_permission_key
        if self.due_in_hours is not None:
            doc["dueInHours"] = self.due_in_hours
        return doc


@dataclass(frozen=True)
class ApprovalPolicyInput:
    """Business-level approval policy.

    ``rules`` decide whether approval is required at all; they are kept in
    the compiled spec's ``meta.policy`` and re-evaluated by the gate.
    """

    key: str
    name: str
    steps: tuple[ApprovalStep, ...]
    rules: RuleSet | None = None
    description: str | None = None
    status: DefinitionStatus = DefinitionStatus.ACTIVE

    def to_document(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "rules": self.rules.to_document() if self.rules is not None else None,
            "steps": [s.to_document() for s in self.steps],
        }


def parse_policy_input(doc: Mapping[str, Any]) -> ApprovalPolicyInput:
    """Build an ``ApprovalPolicyInput`` from camelCase wire input.

    Raises:
        InvalidPolicyError: missing key/name, or malformed rules/steps.
    """
    key = doc.get("key")
    if not isinstance(key, str) or not key:
        raise InvalidPolicyError(str(key), "'key' must be a non-empty string")
    name = doc.get("name") or key

    try:
        rules = parse_rule_set(doc["rules"]) if doc.get("rules") is not None else None
    except InvalidRuleError as exc:
        raise InvalidPolicyError(key, exc.reason) from exc

    steps_doc = doc.get("steps")
    if not isinstance(steps_doc, (list, tuple)):
        raise InvalidPolicyError(key, "'steps' must be a list")
    steps = []
    for index, step in enumerate(steps_doc, start=1):
        if not isinstance(step, Mapping):
            raise InvalidPolicyError(key, f"step {index} must be an object")
        steps.append(
            ApprovalStep(
                name=step.get("name") or f"Step {index}",
                assignee_user_id=step.get("assigneeUserId"),
                assignee_role_id=step.get("assigneeRoleId"),
                assignee_permission_key=step.get("assigneePermissionKey"),
                due_in_hours=step.get("dueInHours"),
            )
        )

    status = doc.get("status", DefinitionStatus.ACTIVE.value)
    try:
        status = DefinitionStatus(status)
    except ValueError:
        raise InvalidPolicyError(key, f"unknown status {status!r}") from None

    return ApprovalPolicyInput(
        key=key,
        name=name,
        steps=tuple(steps),
        rules=rules,
        description=doc.get("description"),
        status=status,
    )


@dataclass(frozen=True)
class ApprovalGateResult:
    """Response of ``require_approval``.

    ``to_body()`` is exactly what the idempotency record stores and what a
    replay returns.
    """

    status: GateStatus
    reason: str | None = None
    instance_id: UUID | None = None
    policy_id: UUID | None = None
    retry_after_ms: int | None = None
    error: str | None = None
    replayed: bool = False

    @property
    def requires_approval(self) -> bool:
        return self.status == GateStatus.PENDING

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status.value}
        if self.reason is not None:
            body["reason"] = self.reason
        if self.instance_id is not None:
            body["instanceId"] = str(self.instance_id)
        if self.policy_id is not None:
            body["policyId"] = str(self.policy_id)
        if self.retry_after_ms is not None:
            body["retryAfterMs"] = self.retry_after_ms
        if self.error is not None:
            body["error"] = self.error
        return body

    @classmethod
    def from_body(cls, body: Mapping[str, Any], replayed: bool = False) -> ApprovalGateResult:
        return cls(
            status=GateStatus(body["status"]),
            reason=body.get("reason"),
            instance_id=UUID(body["instanceId"]) if body.get("instanceId") else None,
            policy_id=UUID(body["policyId"]) if body.get("policyId") else None,
            retry_after_ms=body.get("retryAfterMs"),
            error=body.get("error"),
            replayed=replayed,
        )
