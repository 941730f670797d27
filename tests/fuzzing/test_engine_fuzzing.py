"""
Hypothesis fuzzing of the pure engines.

- Rule evaluator: never raises on arbitrary JSON payloads; numeric
  operators fail closed on non-numbers.
- Interpreter: any event sequence is deterministic, lands on a declared
  state, never mutates its input and never leaves a final state.
- Backoff: each retry waits exactly twice as long as the previous one.
"""

from __future__ import annotations

import copy

from hypothesis import given, settings
from hypothesis import strategies as st

from flow_dispatch.domain.types import compute_backoff
from flow_engines.interpreter import initial_snapshot, step
from flow_engines.rules import evaluate, match_condition
from flow_kernel.domain.rules import NUMERIC_OPERATORS, RuleCondition, RuleOperator
from flow_kernel.domain.workflow import Snapshot, WorkflowEventInput, parse_spec

SPEC = parse_spec({
    "id": "fuzz-order",
    "initial": "draft",
    "context": {"approved": False, "history": []},
    "states": {
        "draft": {"on": {"SUBMIT": "review", "CANCEL": "cancelled"}},
        "review": {
            "on": {
                "APPROVE": {
                    "target": "done",
                    "guard": {"all": [{"field": "event.payload.amount", "operator": "lte", "value": 1000}]},
                    "actions": [{"type": "assign", "path": "approved", "value": True}],
                },
                "REJECT": "draft",
            }
        },
        "done": {"type": "final"},
        "cancelled": {"type": "final"},
    },
})

FINAL_STATES = {"done", "cancelled"}

json_scalars = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-10**6, max_value=10**6),
    st.floats(allow_nan=False, allow_infinity=False),
    st.text(max_size=20),
)
json_values = st.recursive(
    json_scalars,
    lambda children: st.one_of(
        st.lists(children, max_size=4),
        st.dictionaries(st.text(min_size=1, max_size=8), children, max_size=4),
    ),
    max_leaves=12,
)
field_paths = st.sampled_from(["amount", "vendor.id", "items.0", "items.0.sku", "missing", "a.b.c"])
conditions = st.builds(
    RuleCondition,
    field=field_paths,
    operator=st.sampled_from(list(RuleOperator)),
    value=json_values,
)
parseable_conditions = conditions.filter(
    lambda c: c.operator != RuleOperator.IN or isinstance(c.value, list)
)
events = st.lists(
    st.builds(
        WorkflowEventInput,
        type=st.sampled_from(["SUBMIT", "APPROVE", "REJECT", "CANCEL", "NOISE"]),
        payload=st.fixed_dictionaries({"amount": st.one_of(st.integers(0, 5000), st.text(max_size=4))}),
    ),
    max_size=8,
)


class TestRuleEvaluatorFuzzing:

    @given(condition=conditions, payload=json_values)
    @settings(max_examples=300)
    def test_never_raises(self, condition, payload):
        assert match_condition(condition, payload) in (True, False)

    @given(
        operator=st.sampled_from(sorted(NUMERIC_OPERATORS, key=lambda o: o.value)),
        actual=st.one_of(st.none(), st.booleans(), st.text(max_size=5), st.lists(st.integers(), max_size=3)),
        expected=st.integers(),
    )
    def test_numeric_operators_fail_closed(self, operator, actual, expected):
        condition = RuleCondition(field="amount", operator=operator, value=expected)
        assert match_condition(condition, {"amount": actual}) is False

    @given(
        all_of=st.lists(parseable_conditions, max_size=3),
        any_of=st.lists(parseable_conditions, max_size=3),
        payload=json_values,
    )
    def test_document_and_parsed_forms_agree(self, all_of, any_of, payload):
        document = {
            "all": [c.to_document() for c in all_of],
            "any": [c.to_document() for c in any_of],
        }
        expected = all(match_condition(c, payload) for c in all_of) and (
            not any_of or any(match_condition(c, payload) for c in any_of)
        )
        assert evaluate(document, payload) is expected


class TestInterpreterFuzzing:

    @given(sequence=events)
    @settings(max_examples=300)
    def test_deterministic_and_pure(self, sequence):
        snapshot = initial_snapshot(SPEC)
        before = copy.deepcopy(snapshot)

        first = step(SPEC, snapshot, sequence)
        second = step(SPEC, snapshot, sequence)

        assert first == second
        assert snapshot == before
        assert first.snapshot.current_state in SPEC.states
        assert first.final == (first.snapshot.current_state in FINAL_STATES)
        assert len(first.transitions) <= len(sequence)

    @given(sequence=events, state=st.sampled_from(sorted(FINAL_STATES)))
    def test_final_states_absorb_events(self, sequence, state):
        snapshot = Snapshot(current_state=state, context={"approved": False})

        result = step(SPEC, snapshot, sequence)

        assert result.snapshot.current_state == state
        assert not result.changed
        assert result.final

    @given(sequence=events)
    def test_step_composes(self, sequence):
        """Stepping events one job at a time equals stepping them in one batch."""
        batched = step(SPEC, initial_snapshot(SPEC), sequence)

        snapshot = initial_snapshot(SPEC)
        for event in sequence:
            snapshot = step(SPEC, snapshot, [event]).snapshot

        assert snapshot == batched.snapshot


class TestBackoffFuzzing:

    @given(
        attempt=st.integers(min_value=1, max_value=30),
        base=st.integers(min_value=1, max_value=60),
    )
    def test_doubles_each_attempt(self, attempt, base):
        assert compute_backoff(attempt + 1, base) == 2 * compute_backoff(attempt, base)
