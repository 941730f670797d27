"""
flow_engines.policy_compiler -- Approval policy to workflow spec.

Responsibility:
    Compile a business-level ``ApprovalPolicyInput`` into a generic
    state-machine spec document the interpreter can run.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Compiled shape (N steps)::

    start    --APPROVAL_REQUESTED--> step_1    [createTask step 1]
    step_i   --STEP_i_APPROVED-----> step_i+1  [createTask step i+1]
    step_N   --STEP_N_APPROVED-----> approved  (final)
    step_i   --APPROVAL_REJECTED---> rejected  (final)

Invariants enforced:
    - Exactly N + 3 states.
    - ``approved`` is reachable from ``start`` only through the N distinct
      ``STEP_<i>_APPROVED`` events, in order.
    - The policy's rules are stored in ``meta.policy`` and not baked into
      transitions; the approval gate re-evaluates them per request.
    - The output passes ``parse_spec`` (validated before it is returned).

Failure modes:
    - InvalidPolicyError: no steps, a step without exactly one assignee,
      or a negative ``dueInHours``.
"""

from __future__ import annotations

from typing import Any, Mapping

from flow_engines.tracer import traced_engine
from flow_kernel.domain.approval import (
    APPROVAL_REJECTED,
    APPROVAL_REQUESTED,
    ApprovalPolicyInput,
    ApprovalStep,
    step_approved_event,
    step_state,
)
from flow_kernel.domain.rules import RuleSet, parse_rule_set
from flow_kernel.domain.workflow import DefinitionType, parse_spec
from flow_kernel.exceptions import InvalidPolicyError, InvalidSpecError

COMPILER_VERSION = "1.0"

START_STATE = "start"
APPROVED_STATE = "approved"
REJECTED_STATE = "rejected"


def _validate_step(policy_key: str, number: int, step: ApprovalStep) -> None:
    assignees = [
        a
        for a in (step.assignee_user_id, step.assignee_role_id, step.assignee_permission_key)
        if a
    ]
    if len(assignees) != 1:
        raise InvalidPolicyError(
            policy_key,
            f"step {number} must name exactly one of assigneeUserId, "
            f"assigneeRoleId, assigneePermissionKey",
        )
    due = step.due_in_hours
    if due is not None and (isinstance(due, bool) or not isinstance(due, (int, float)) or due < 0):
        raise InvalidPolicyError(policy_key, f"step {number} dueInHours must be >= 0")


def _task_action(policy_key: str, number: int, step: ApprovalStep) -> dict[str, Any]:
    task: dict[str, Any] = {
        "type": "HUMAN",
        "name": step.name,
        "input": {
            "policyKey": policy_key,
            "stepNumber": number,
            "stepName": step.name,
            "approveEvent": step_approved_event(number),
            "rejectEvent": APPROVAL_REJECTED,
        },
    }
    if step.assignee_user_id:
        task["assigneeUserId"] = step.assignee_user_id
    if step.assignee_role_id:
        task["assigneeRoleId"] = step.assignee_role_id
    if step.assignee_permission_key:
        task["assigneePermissionKey"] = step.assignee_permission_key
    if step.due_in_hours is not None:
        task["dueInHours"] = step.due_in_hours
    return {"type": "createTask", "task": task}


@traced_engine("policy_compiler", COMPILER_VERSION, fingerprint_fields=("policy",))
def compile_policy(policy: ApprovalPolicyInput) -> dict[str, Any]:
    """Return the spec document for ``policy``."""
    if not policy.steps:
        raise InvalidPolicyError(policy.key, "at least one step is required")
    for number, step in enumerate(policy.steps, start=1):
        _validate_step(policy.key, number, step)

    count = len(policy.steps)
    states: dict[str, Any] = {
        START_STATE: {
            "on": {
                APPROVAL_REQUESTED: {
                    "target": step_state(1),
                    "actions": [_task_action(policy.key, 1, policy.steps[0])],
                }
            }
        }
    }

    for number in range(1, count + 1):
        if number < count:
            approve = {
                "target": step_state(number + 1),
                "actions": [_task_action(policy.key, number + 1, policy.steps[number])],
            }
        else:
            approve = {"target": APPROVED_STATE}
        states[step_state(number)] = {
            "on": {
                step_approved_event(number): approve,
                APPROVAL_REJECTED: {"target": REJECTED_STATE},
            }
        }

    states[APPROVED_STATE] = {"type": "final"}
    states[REJECTED_STATE] = {"type": "final"}

    document = {
        "id": f"approval:{policy.key}",
        "initial": START_STATE,
        "context": {},
        "states": states,
        "meta": {
            "type": DefinitionType.APPROVAL.value,
            "policy": policy.to_document(),
        },
    }

    try:
        parse_spec(document)
    except InvalidSpecError as exc:
        raise InvalidPolicyError(policy.key, exc.reason) from exc
    return document


def policy_rules(spec_document: Mapping[str, Any]) -> RuleSet:
    """Rules stored in a compiled spec's ``meta.policy`` (empty when absent)."""
    meta = spec_document.get("meta") or {}
    policy = meta.get("policy") or {}
    return parse_rule_set(policy.get("rules"))
