"""
End-to-end approval tests: policy management, the approval gate and
approver decisions driving a compiled multi-step workflow.
"""

import pytest

from flow_kernel.domain.approval import (
    APPROVAL_REJECTED,
    GATE_ACTION_PREFIX,
    GateReason,
    GateStatus,
)
from flow_kernel.domain.dtos import IdempotencyMode
from flow_kernel.domain.workflow import (
    DefinitionStatus,
    DefinitionType,
    EventType,
    InstanceStatus,
    TaskStatus,
)
from flow_kernel.exceptions import (
    IdempotencyKeyMismatchError,
    InvalidDecisionError,
    InvalidPolicyError,
    InvalidSpecError,
    PolicyNotFoundError,
    UnauthorizedAssigneeError,
)

ACTION = "invoice.pay"


@pytest.fixture
def policy(runtime, tenant_id, two_step_policy):
    return runtime.policies.create_policy(tenant_id, two_step_policy, created_by="admin")


@pytest.fixture
def approvers(directory, tenant_id):
    directory.assign_role(tenant_id, "mia", "manager")
    directory.assign_role(tenant_id, "cfo", "executive")
    directory.assign_role(tenant_id, "sam", "sales")
    return directory


def request(runtime, tenant_id, amount, key="req-1", entity_id="inv-1"):
    return runtime.gate.require_approval(
        tenant_id,
        ACTION,
        entity_type="invoice",
        entity_id=entity_id,
        payload={"amount": amount},
        idempotency_key=key,
        requested_by="clerk",
    )


def pending_task(runtime, tenant_id, instance_id):
    (task,) = runtime.tasks.list_tasks(tenant_id, instance_id, status=TaskStatus.PENDING)
    return task


class TestPolicies:

    def test_create_policy_stores_approval_definition(self, policy):
        assert policy.key == "approval.invoice.pay"
        assert policy.type == DefinitionType.APPROVAL
        assert policy.status == DefinitionStatus.ACTIVE
        assert policy.spec["initial"] == "start"
        assert policy.spec["meta"]["policy"]["key"] == ACTION

    def test_list_and_get(self, runtime, tenant_id, policy, order_spec):
        runtime.workflows.create_definition(tenant_id, "order", order_spec)

        assert [p.id for p in runtime.policies.list_policies(tenant_id)] == [policy.id]
        assert runtime.policies.get_policy(tenant_id, policy.id).id == policy.id

    def test_generic_definition_is_not_a_policy(self, runtime, tenant_id, order_spec):
        definition = runtime.workflows.create_definition(tenant_id, "order", order_spec)
        with pytest.raises(PolicyNotFoundError):
            runtime.policies.get_policy(tenant_id, definition.id)

    def test_deactivate_and_activate(self, runtime, tenant_id, policy):
        runtime.policies.deactivate_policy(tenant_id, policy.id)
        assert runtime.policies.get_active_policy(tenant_id, ACTION) is None

        runtime.policies.activate_policy(tenant_id, policy.id)
        assert runtime.policies.get_active_policy(tenant_id, ACTION).id == policy.id

    def test_new_version_supersedes(self, runtime, tenant_id, policy, two_step_policy):
        two_step_policy["steps"] = two_step_policy["steps"][:1]
        v2 = runtime.policies.create_policy(tenant_id, two_step_policy)

        assert v2.version == 2
        assert runtime.policies.get_active_policy(tenant_id, ACTION).id == v2.id

    def test_invalid_policy(self, runtime, tenant_id, two_step_policy):
        two_step_policy["steps"] = []
        with pytest.raises(InvalidPolicyError):
            runtime.policies.create_policy(tenant_id, two_step_policy)


class TestApprovalGate:

    def test_no_policy_is_approved(self, runtime, tenant_id):
        result = request(runtime, tenant_id, 5000)

        assert result.status == GateStatus.APPROVED
        assert result.reason == GateReason.NO_POLICY
        assert not result.requires_approval

    def test_rules_not_matched(self, runtime, tenant_id, policy):
        result = request(runtime, tenant_id, 500)

        assert result.status == GateStatus.APPROVED
        assert result.reason == GateReason.RULES_NOT_MATCHED
        assert result.policy_id == policy.id
        assert runtime.approvals.list_requests(tenant_id) == []

    def test_pending_starts_one_instance_with_first_step(
        self, runtime, run_jobs, tenant_id, policy
    ):
        result = request(runtime, tenant_id, 1500)
        assert result.status == GateStatus.PENDING
        assert result.requires_approval
        assert result.policy_id == policy.id

        run_jobs()

        instance = runtime.workflows.get_instance(tenant_id, result.instance_id)
        assert instance.current_state == "step_1"
        assert instance.business_key == f"{ACTION}:inv-1"
        assert instance.context["payload"] == {"amount": 1500}
        assert instance.context["requestedBy"] == "clerk"
        task = pending_task(runtime, tenant_id, instance.id)
        assert task.name == "Manager review"
        assert task.assignee_role_id == "manager"
        assert task.input["approveEvent"] == "STEP_1_APPROVED"
        assert task.input["rejectEvent"] == APPROVAL_REJECTED

    def test_retry_replays_stored_response(self, runtime, tenant_id, policy):
        first = request(runtime, tenant_id, 1500)
        second = request(runtime, tenant_id, 1500)

        assert second.replayed
        assert second.to_body() == first.to_body()
        assert len(runtime.approvals.list_requests(tenant_id)) == 1

    def test_key_reuse_with_different_payload(self, runtime, tenant_id, policy):
        request(runtime, tenant_id, 1500)
        with pytest.raises(IdempotencyKeyMismatchError):
            request(runtime, tenant_id, 2500)

    def test_new_key_same_entity_joins_existing_request(self, runtime, tenant_id, policy):
        first = request(runtime, tenant_id, 1500, key="req-1")
        second = request(runtime, tenant_id, 1500, key="req-2")

        assert not second.replayed
        assert second.instance_id == first.instance_id

    def test_in_progress_key(self, runtime, tenant_id, policy):
        held = runtime.idempotency.start_or_replay(
            f"{GATE_ACTION_PREFIX}{ACTION}", tenant_id, "req-1"
        )
        assert held.mode == IdempotencyMode.STARTED

        result = request(runtime, tenant_id, 1500)

        assert result.status == GateStatus.PENDING
        assert result.instance_id is None
        assert result.retry_after_ms == 1000

    def test_start_failure_is_recorded_and_replayed(
        self, runtime, tenant_id, policy, monkeypatch, captured_logs
    ):
        def broken_start(*args, **kwargs):
            raise InvalidSpecError("cannot start", path="states")

        monkeypatch.setattr(runtime.workflows, "start_instance", broken_start)

        result = request(runtime, tenant_id, 1500)
        replay = request(runtime, tenant_id, 1500)

        assert result.status == GateStatus.FAILED
        assert "cannot start" in result.error
        assert replay.status == GateStatus.FAILED
        assert replay.replayed
        assert any(
            r["message"] == "approval_gate_start_failed" and r["level"] == "ERROR"
            for r in captured_logs()
        )

    def test_gate_is_tenant_scoped(self, runtime, tenant_id, other_tenant_id, policy):
        result = request(runtime, other_tenant_id, 1500)
        assert result.reason == GateReason.NO_POLICY


class TestDecisions:

    def test_two_step_approval(self, runtime, run_jobs, tenant_id, policy, approvers):
        gate = request(runtime, tenant_id, 1500)
        run_jobs()

        first = pending_task(runtime, tenant_id, gate.instance_id)
        assert [t.id for t in runtime.approvals.list_inbox(tenant_id, "mia")] == [first.id]
        runtime.approvals.decide_task(tenant_id, first.id, "mia", "approve", comment="ok")
        run_jobs()

        second = pending_task(runtime, tenant_id, gate.instance_id)
        assert second.name == "CFO sign-off"
        assert second.assignee_user_id == "cfo"
        assert runtime.approvals.list_inbox(tenant_id, "mia") == []
        runtime.approvals.decide_task(tenant_id, second.id, "cfo", "APPROVE")
        run_jobs()

        view = runtime.approvals.get_request(tenant_id, gate.instance_id)
        assert view.instance.status == InstanceStatus.COMPLETED
        assert view.instance.current_state == "approved"
        assert [t.status for t in view.tasks] == [TaskStatus.SUCCEEDED, TaskStatus.SUCCEEDED]
        assert view.tasks[0].output == {"decision": "APPROVE", "comment": "ok", "decidedBy": "mia"}
        assert view.events[-1].type == EventType.INSTANCE_COMPLETED

    def test_rejection_ends_workflow(self, runtime, run_jobs, tenant_id, policy, approvers):
        gate = request(runtime, tenant_id, 1500)
        run_jobs()

        task = pending_task(runtime, tenant_id, gate.instance_id)
        runtime.approvals.decide_task(tenant_id, task.id, "mia", "REJECT", comment="duplicate")
        run_jobs()

        instance = runtime.workflows.get_instance(tenant_id, gate.instance_id)
        assert instance.status == InstanceStatus.COMPLETED
        assert instance.current_state == "rejected"
        assert runtime.tasks.list_tasks(tenant_id, gate.instance_id, status=TaskStatus.PENDING) == []

    def test_wrong_approver(self, runtime, run_jobs, tenant_id, policy, approvers):
        gate = request(runtime, tenant_id, 1500)
        run_jobs()
        task = pending_task(runtime, tenant_id, gate.instance_id)

        with pytest.raises(UnauthorizedAssigneeError):
            runtime.approvals.decide_task(tenant_id, task.id, "sam", "APPROVE")

    def test_invalid_decision(self, runtime, run_jobs, tenant_id, policy, approvers):
        gate = request(runtime, tenant_id, 1500)
        run_jobs()
        task = pending_task(runtime, tenant_id, gate.instance_id)

        with pytest.raises(InvalidDecisionError):
            runtime.approvals.decide_task(tenant_id, task.id, "mia", "MAYBE")

    def test_list_requests_by_status(self, runtime, run_jobs, tenant_id, policy, approvers):
        first = request(runtime, tenant_id, 1500, key="a", entity_id="inv-1")
        request(runtime, tenant_id, 2500, key="b", entity_id="inv-2")
        run_jobs()

        task = pending_task(runtime, tenant_id, first.instance_id)
        runtime.approvals.decide_task(tenant_id, task.id, "mia", "REJECT")
        run_jobs()

        running = runtime.approvals.list_requests(tenant_id, status=InstanceStatus.RUNNING)
        completed = runtime.approvals.list_requests(tenant_id, status=InstanceStatus.COMPLETED)
        assert len(running) == 1
        assert [i.id for i in completed] == [first.instance_id]
