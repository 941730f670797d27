"""
flow_engines.interpreter -- Pure state-machine interpreter.

Responsibility:
    ``step(spec, snapshot, events)`` folds an ordered event list over a
    snapshot and returns the new snapshot plus the side-effect actions the
    caller must materialize.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import flow_kernel/domain/ types and sibling engines.
    Consumed by the orchestration dispatcher, which owns every side effect.

Invariants enforced:
    - ``step(S, P, [])`` returns ``P`` unchanged.
    - An event with no handler at the current state is a no-op; so is an
      event whose transition guard does not match.  Duplicate delivery is
      therefore harmless.
    - A final state accepts no further events.
    - Deterministic: no clock, no randomness, no mutation of inputs.
      ``assign`` actions are applied to a copy of the context.

Failure modes:
    - InvalidSpecError when the snapshot names a state the spec does not
      declare (definition/instance mismatch; never a routine no-op).
"""

from __future__ import annotations

import copy
from typing import Any, Mapping, Sequence

from flow_engines.rules import evaluate
from flow_engines.tracer import traced_engine
from flow_kernel.domain.workflow import (
    Action,
    AppliedTransition,
    AssignAction,
    Snapshot,
    StepResult,
    WorkflowEventInput,
    WorkflowSpec,
)

INTERPRETER_VERSION = "1.0"


def initial_snapshot(
    spec: WorkflowSpec,
    context: Mapping[str, Any] | None = None,
) -> Snapshot:
    """Snapshot at ``spec.initial`` with the caller context merged over the spec's."""
    merged = copy.deepcopy(dict(spec.context))
    if context:
        merged.update(copy.deepcopy(dict(context)))
    return Snapshot(current_state=spec.initial, context=merged)


def _assign(context: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = context
    for part in parts[:-1]:
        child = target.get(part)
        if not isinstance(child, dict):
            child = {}
            target[part] = child
        target = child
    target[parts[-1]] = copy.deepcopy(value)


def _coerce_event(event: WorkflowEventInput | Mapping[str, Any]) -> WorkflowEventInput:
    if isinstance(event, WorkflowEventInput):
        return event
    return WorkflowEventInput.from_document(event)


@traced_engine("interpreter", INTERPRETER_VERSION, fingerprint_fields=("snapshot", "events"))
def step(
    spec: WorkflowSpec,
    snapshot: Snapshot,
    events: Sequence[WorkflowEventInput | Mapping[str, Any]],
) -> StepResult:
    """
    Apply ``events`` in order.

    Returns:
        StepResult whose ``actions`` are the actions of every fired
        transition, in firing order.  ``assign`` actions are already
        reflected in the returned context; they are reported so the caller
        can audit them, and need no further materialization.
    """
    if not events:
        return StepResult(
            snapshot=snapshot,
            final=spec.is_final(snapshot.current_state),
        )

    current = snapshot.current_state
    context: dict[str, Any] | None = None
    actions: list[Action] = []
    transitions: list[AppliedTransition] = []

    for raw in events:
        event = _coerce_event(raw)
        state = spec.state(current)
        if state.final:
            continue
        transition = state.on.get(event.type)
        if transition is None:
            continue

        working = context if context is not None else dict(snapshot.context)
        if transition.guard is not None and not evaluate(
            transition.guard,
            {"context": working, "event": event.to_document()},
        ):
            continue

        for action in transition.actions:
            if isinstance(action, AssignAction):
                if context is None:
                    context = copy.deepcopy(dict(snapshot.context))
                _assign(context, action.path, action.value)
            actions.append(action)

        transitions.append(
            AppliedTransition(
                event=event.type,
                from_state=current,
                to_state=transition.target,
                payload=event.payload,
            )
        )
        current = transition.target

    if not transitions:
        return StepResult(
            snapshot=snapshot,
            final=spec.is_final(snapshot.current_state),
        )

    new_context = context if context is not None else snapshot.context
    return StepResult(
        snapshot=Snapshot(current_state=current, context=new_context),
        actions=tuple(actions),
        transitions=tuple(transitions),
        final=spec.is_final(current),
    )
