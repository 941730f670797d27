"""
Tests for the approval policy compiler.

Tests cover:
- compiled shape: N + 3 states, per-step events, shared rejection
- approval requires N distinct step approvals, in order
- rules preserved in meta.policy
- invalid policies rejected
"""

import pytest

from flow_engines.interpreter import initial_snapshot, step
from flow_engines.policy_compiler import (
    APPROVED_STATE,
    REJECTED_STATE,
    START_STATE,
    compile_policy,
    policy_rules,
)
from flow_engines.rules import evaluate
from flow_kernel.domain.approval import (
    APPROVAL_REJECTED,
    APPROVAL_REQUESTED,
    ApprovalPolicyInput,
    ApprovalStep,
    parse_policy_input,
    step_approved_event,
)
from flow_kernel.domain.workflow import CreateTaskAction, WorkflowEventInput, parse_spec
from flow_kernel.exceptions import InvalidPolicyError


def make_policy(step_count: int = 2, rules: dict | None = None) -> ApprovalPolicyInput:
    return parse_policy_input({
        "key": "po.release",
        "name": "PO release",
        "rules": rules,
        "steps": [
            {"name": f"Level {i}", "assigneeRoleId": f"approver-{i}"}
            for i in range(1, step_count + 1)
        ],
    })


def run(spec_doc, *event_types):
    spec = parse_spec(spec_doc)
    return step(spec, initial_snapshot(spec), [WorkflowEventInput(t) for t in event_types])


class TestCompiledShape:

    @pytest.mark.parametrize("step_count", [1, 2, 5])
    def test_state_count(self, step_count):
        document = compile_policy(make_policy(step_count))

        assert len(document["states"]) == step_count + 3
        assert document["initial"] == START_STATE
        assert document["states"][APPROVED_STATE] == {"type": "final"}
        assert document["states"][REJECTED_STATE] == {"type": "final"}

    def test_identity_and_meta(self):
        document = compile_policy(make_policy(1))

        assert document["id"] == "approval:po.release"
        assert document["meta"]["type"] == "APPROVAL"
        assert document["meta"]["policy"]["key"] == "po.release"

    def test_output_is_a_valid_spec(self):
        parse_spec(compile_policy(make_policy(3)))

    def test_first_task_created_on_request(self):
        result = run(compile_policy(make_policy(2)), APPROVAL_REQUESTED)

        assert result.snapshot.current_state == "step_1"
        assert len(result.actions) == 1
        action = result.actions[0]
        assert isinstance(action, CreateTaskAction)
        assert action.task.assignee_role_id == "approver-1"
        assert action.task.input["approveEvent"] == "STEP_1_APPROVED"
        assert action.task.input["rejectEvent"] == APPROVAL_REJECTED
        assert action.task.input["stepNumber"] == 1

    def test_due_in_hours_carried_to_task(self):
        policy = ApprovalPolicyInput(
            key="k",
            name="k",
            steps=(ApprovalStep(name="only", assignee_user_id="u1", due_in_hours=8),),
        )
        result = run(compile_policy(policy), APPROVAL_REQUESTED)
        assert result.actions[0].task.due_in_hours == 8


class TestApprovalPath:

    def test_all_steps_approve_in_order(self):
        document = compile_policy(make_policy(3))
        result = run(
            document,
            APPROVAL_REQUESTED,
            step_approved_event(1),
            step_approved_event(2),
            step_approved_event(3),
        )

        assert result.snapshot.current_state == APPROVED_STATE
        assert result.final is True
        created = [a.task.input["stepNumber"] for a in result.actions]
        assert created == [1, 2, 3]

    def test_repeated_step_event_does_not_advance(self):
        document = compile_policy(make_policy(2))
        result = run(
            document,
            APPROVAL_REQUESTED,
            step_approved_event(1),
            step_approved_event(1),
        )
        assert result.snapshot.current_state == "step_2"
        assert result.final is False

    def test_out_of_order_approval_ignored(self):
        document = compile_policy(make_policy(2))
        result = run(document, APPROVAL_REQUESTED, step_approved_event(2))
        assert result.snapshot.current_state == "step_1"

    @pytest.mark.parametrize("approved_before_reject", [0, 1])
    def test_rejection_from_any_step(self, approved_before_reject):
        events = [APPROVAL_REQUESTED]
        events += [step_approved_event(i) for i in range(1, approved_before_reject + 1)]
        events.append(APPROVAL_REJECTED)

        result = run(compile_policy(make_policy(2)), *events)

        assert result.snapshot.current_state == REJECTED_STATE
        assert result.final is True


class TestRules:

    def test_rules_kept_in_meta_not_transitions(self):
        rules = {"all": [{"field": "amount", "operator": "gt", "value": 1000}]}
        document = compile_policy(make_policy(1, rules))

        for state in document["states"].values():
            for transition in state.get("on", {}).values():
                assert "guard" not in transition
        restored = policy_rules(document)
        assert evaluate(restored, {"amount": 1500}) is True
        assert evaluate(restored, {"amount": 500}) is False

    def test_no_rules_means_always_required(self):
        restored = policy_rules(compile_policy(make_policy(1)))
        assert restored.is_empty
        assert evaluate(restored, {}) is True


class TestInvalidPolicies:

    def test_no_steps(self):
        with pytest.raises(InvalidPolicyError):
            compile_policy(make_policy(0))

    def test_step_without_assignee(self):
        policy = ApprovalPolicyInput(key="k", name="k", steps=(ApprovalStep(name="nobody"),))
        with pytest.raises(InvalidPolicyError, match="exactly one"):
            compile_policy(policy)

    def test_step_with_two_assignees(self):
        policy = ApprovalPolicyInput(
            key="k",
            name="k",
            steps=(ApprovalStep(name="both", assignee_user_id="u", assignee_role_id="r"),),
        )
        with pytest.raises(InvalidPolicyError):
            compile_policy(policy)

    def test_negative_due(self):
        policy = ApprovalPolicyInput(
            key="k",
            name="k",
            steps=(ApprovalStep(name="s", assignee_user_id="u", due_in_hours=-1),),
        )
        with pytest.raises(InvalidPolicyError):
            compile_policy(policy)

    def test_parse_rejects_bad_input(self):
        with pytest.raises(InvalidPolicyError):
            parse_policy_input({"name": "no key", "steps": []})
        with pytest.raises(InvalidPolicyError):
            parse_policy_input({"key": "k", "steps": "not-a-list"})
        with pytest.raises(InvalidPolicyError):
            parse_policy_input({"key": "k", "steps": [], "rules": {"all": [{"field": "a"}]}})
