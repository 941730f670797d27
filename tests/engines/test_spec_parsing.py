"""
Tests for workflow spec validation (``parse_spec``).

Spec documents are validated once, when a definition is created; these
tests pin the structural rules that validation enforces.
"""

import copy

import pytest

from flow_kernel.domain.workflow import AssignAction, CreateTaskAction, load_stored_spec, parse_spec
from flow_kernel.exceptions import InvalidSpecError

VALID = {
    "id": "leave",
    "initial": "requested",
    "states": {
        "requested": {
            "on": {
                "REVIEW": {
                    "target": "reviewing",
                    "actions": [
                        {
                            "type": "createTask",
                            "task": {
                                "assigneeRoleId": "hr",
                                "completionEvent": "REVIEWED",
                            },
                        }
                    ],
                }
            }
        },
        "reviewing": {"on": {"REVIEWED": {"target": "closed"}}},
        "closed": {"type": "final"},
    },
}


def mutated(**changes):
    doc = copy.deepcopy(VALID)
    doc.update(changes)
    return doc


class TestValidSpec:

    def test_parses(self):
        spec = parse_spec(VALID)

        assert spec.initial == "requested"
        assert spec.is_final("closed")
        assert not spec.is_final("reviewing")
        transition = spec.state("requested").on["REVIEW"]
        assert isinstance(transition.actions[0], CreateTaskAction)
        assert transition.actions[0].task.completion_event == "REVIEWED"

    def test_string_shorthand_transition(self):
        doc = copy.deepcopy(VALID)
        doc["states"]["reviewing"]["on"]["REVIEWED"] = "closed"
        assert parse_spec(doc).state("reviewing").on["REVIEWED"].target == "closed"

    def test_assign_action(self):
        doc = copy.deepcopy(VALID)
        doc["states"]["reviewing"]["on"]["REVIEWED"]["actions"] = [
            {"type": "assign", "path": "result.ok", "value": True}
        ]
        action = parse_spec(doc).state("reviewing").on["REVIEWED"].actions[0]
        assert action == AssignAction(path="result.ok", value=True)


class TestInvalidSpec:

    @pytest.mark.parametrize(
        "document",
        [
            None,
            [],
            mutated(id=""),
            mutated(states={}),
            mutated(initial="nowhere"),
        ],
    )
    def test_top_level(self, document):
        with pytest.raises(InvalidSpecError):
            parse_spec(document)

    def test_undeclared_target(self):
        doc = copy.deepcopy(VALID)
        doc["states"]["reviewing"]["on"]["REVIEWED"]["target"] = "archived"
        with pytest.raises(InvalidSpecError, match="archived"):
            parse_spec(doc)

    def test_final_state_with_transitions(self):
        doc = copy.deepcopy(VALID)
        doc["states"]["closed"]["on"] = {"REOPEN": "requested"}
        with pytest.raises(InvalidSpecError, match="final"):
            parse_spec(doc)

    def test_unknown_action_type(self):
        doc = copy.deepcopy(VALID)
        doc["states"]["reviewing"]["on"]["REVIEWED"]["actions"] = [{"type": "sendEmail"}]
        with pytest.raises(InvalidSpecError, match="sendEmail"):
            parse_spec(doc)

    def test_unknown_task_type(self):
        doc = copy.deepcopy(VALID)
        doc["states"]["requested"]["on"]["REVIEW"]["actions"][0]["task"]["type"] = "ROBOT"
        with pytest.raises(InvalidSpecError):
            parse_spec(doc)

    def test_negative_due_in_hours(self):
        doc = copy.deepcopy(VALID)
        doc["states"]["requested"]["on"]["REVIEW"]["actions"][0]["task"]["dueInHours"] = -2
        with pytest.raises(InvalidSpecError):
            parse_spec(doc)

    def test_task_event_not_handled_by_waiting_state(self):
        doc = copy.deepcopy(VALID)
        doc["states"]["requested"]["on"]["REVIEW"]["actions"][0]["task"]["completionEvent"] = "DONE"
        with pytest.raises(InvalidSpecError, match="DONE"):
            parse_spec(doc)

    def test_invalid_guard(self):
        doc = copy.deepcopy(VALID)
        doc["states"]["reviewing"]["on"]["REVIEWED"]["guard"] = {
            "all": [{"field": "x", "operator": "like", "value": 1}]
        }
        with pytest.raises(InvalidSpecError) as exc_info:
            parse_spec(doc)
        assert exc_info.value.path == "states.reviewing.on.REVIEWED.guard"


class TestStoredSpec:

    def test_stored_loader_matches_parser(self):
        doc = copy.deepcopy(VALID)
        doc["context"] = {"days": 3}
        doc["states"]["requested"]["on"]["REVIEW"]["guard"] = {
            "all": [{"field": "context.days", "operator": "gt", "value": 0}],
            "any": [{"field": "event.payload.kind", "operator": "in", "value": ["sick", "annual"]}],
        }
        doc["states"]["reviewing"]["on"]["REVIEWED"] = {
            "target": "closed",
            "actions": [{"type": "assign", "path": "result.ok", "value": True}],
        }
        doc["states"]["reviewing"]["on"]["WITHDRAW"] = "closed"

        assert load_stored_spec(doc) == parse_spec(doc)

    def test_stored_loader_skips_validation(self):
        doc = copy.deepcopy(VALID)
        # Would fail parse_spec: the task's completion event is not handled.
        del doc["states"]["reviewing"]["on"]["REVIEWED"]
        doc["states"]["reviewing"]["on"]["DONE"] = "closed"

        with pytest.raises(InvalidSpecError):
            parse_spec(doc)
        assert load_stored_spec(doc).state("reviewing").on["DONE"].target == "closed"
