"""
Workflow spec model -- the declarative state-machine document.

Responsibility:
    Typed, immutable representation of a workflow definition's ``spec``
    document and of the runtime values the interpreter works on
    (snapshots, events, actions).  ``parse_spec`` is the single boundary
    where the JSON document is validated; after that the kernel only passes
    ``WorkflowSpec`` objects around.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Consumed by ``flow_engines`` and by
    the definition service at create time.

Invariants enforced:
    - ``initial`` and every transition ``target`` name a declared state.
    - A final state (``type: "final"``) declares no transitions.
    - Actions form a closed union: ``CreateTaskAction`` | ``AssignAction``.
    - A created task's ``approveEvent`` / ``rejectEvent`` are declared on the
      state the transition enters, so the completion path can always resume.

Wire format::

    {"id": "...", "initial": "start", "context": {...},
     "states": {
        "start": {"on": {"GO": {"target": "done",
                                "guard": {"all": [...]},
                                "actions": [{"type": "createTask", "task": {...}},
                                            {"type": "assign", "path": "a.b", "value": 1}]}}},
        "done": {"type": "final"}},
     "meta": {...}}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Union

from flow_kernel.domain.rules import RuleCondition, RuleOperator, RuleSet, parse_rule_set
from flow_kernel.exceptions import InvalidRuleError, InvalidSpecError


# =============================================================================
# Status enums
# =============================================================================


class DefinitionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class DefinitionType(str, Enum):
    GENERIC = "GENERIC"
    APPROVAL = "APPROVAL"


class InstanceStatus(str, Enum):
    """Orthogonal to the spec's states: checked before interpreting."""

    PENDING = "PENDING"  # Created, start event not yet applied
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"  # Reached a final state
    CANCELLED = "CANCELLED"  # Explicit, one-way
    FAILED = "FAILED"  # A task failed and no transition handled it

    @property
    def is_terminal(self) -> bool:
        return self in (
            InstanceStatus.COMPLETED,
            InstanceStatus.CANCELLED,
            InstanceStatus.FAILED,
        )


class TaskType(str, Enum):
    HUMAN = "HUMAN"
    SYSTEM = "SYSTEM"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class EventType:
    """Event types written to the instance event log."""

    INSTANCE_STARTED = "INSTANCE_STARTED"
    EVENT_RECEIVED = "EVENT_RECEIVED"
    EVENT_APPLIED = "EVENT_APPLIED"
    STATE_TRANSITION = "STATE_TRANSITION"
    TASK_CREATED = "TASK_CREATED"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_FAILED = "TASK_FAILED"
    INSTANCE_COMPLETED = "INSTANCE_COMPLETED"
    INSTANCE_FAILED = "INSTANCE_FAILED"
    INSTANCE_CANCELLED = "INSTANCE_CANCELLED"
    DISPATCH_FAILED = "DISPATCH_FAILED"


# Start event used when the caller does not supply one.
WORKFLOW_START_EVENT = "WORKFLOW_START"


# =============================================================================
# Actions (closed union)
# =============================================================================


@dataclass(frozen=True)
class TaskTemplate:
    """Description of a task to materialize when a transition fires."""

    type: TaskType = TaskType.HUMAN
    name: str | None = None
    assignee_user_id: str | None = None
    assignee_role_id: str | None = None
    assignee_permission_key: str | None = None
    due_in_hours: float | None = None
    completion_event: str | None = None
    input: Mapping[str, Any] = field(default_factory=dict)

    @property
    def approve_event(self) -> str | None:
        return self.input.get("approveEvent")

    @property
    def reject_event(self) -> str | None:
        return self.input.get("rejectEvent")


@dataclass(frozen=True)
class CreateTaskAction:
    task: TaskTemplate
    kind: str = "createTask"


@dataclass(frozen=True)
class AssignAction:
    """Set ``path`` (dot notation) in the instance context to ``value``."""

    path: str
    value: Any = None
    kind: str = "assign"


Action = Union[CreateTaskAction, AssignAction]


# =============================================================================
# Spec
# =============================================================================


@dataclass(frozen=True)
class TransitionSpec:
    target: str
    actions: tuple[Action, ...] = ()
    guard: RuleSet | None = None


@dataclass(frozen=True)
class StateSpec:
    name: str
    on: Mapping[str, TransitionSpec] = field(default_factory=dict)
    final: bool = False


@dataclass(frozen=True)
class WorkflowSpec:
    id: str
    initial: str
    states: Mapping[str, StateSpec]
    context: Mapping[str, Any] = field(default_factory=dict)
    meta: Mapping[str, Any] = field(default_factory=dict)

    def state(self, name: str) -> StateSpec:
        try:
            return self.states[name]
        except KeyError:
            raise InvalidSpecError(f"unknown state {name!r}", path="states") from None

    def is_final(self, name: str) -> bool:
        state = self.states.get(name)
        return state is not None and state.final


# =============================================================================
# Runtime values
# =============================================================================


@dataclass(frozen=True)
class Snapshot:
    """Materialized ``{currentState, context}`` of an instance."""

    current_state: str
    context: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WorkflowEventInput:
    """An event offered to the interpreter."""

    type: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        return {"type": self.type, "payload": dict(self.payload)}

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> WorkflowEventInput:
        event_type = doc.get("type")
        if not isinstance(event_type, str) or not event_type:
            raise InvalidSpecError("event type must be a non-empty string", path="event.type")
        return cls(type=event_type, payload=dict(doc.get("payload") or {}))


@dataclass(frozen=True)
class AppliedTransition:
    event: str
    from_state: str
    to_state: str
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepResult:
    snapshot: Snapshot
    actions: tuple[Action, ...] = ()
    transitions: tuple[AppliedTransition, ...] = ()
    final: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.transitions)

    def consumed(self, event_type: str) -> bool:
        return any(t.event == event_type for t in self.transitions)


# =============================================================================
# Parsing (validated once, at definition-create time)
# =============================================================================


def _require_mapping(value: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise InvalidSpecError("expected an object", path=path)
    return value


def _optional_str(doc: Mapping[str, Any], key: str, path: str) -> str | None:
    value = doc.get(key)
    if value is not None and not isinstance(value, str):
        raise InvalidSpecError(f"'{key}' must be a string", path=path)
    return value


def _parse_task(doc: Any, path: str) -> TaskTemplate:
    doc = _require_mapping(doc, path)
    try:
        task_type = TaskType(doc.get("type", TaskType.HUMAN.value))
    except ValueError:
        raise InvalidSpecError(f"unknown task type {doc.get('type')!r}", path=path) from None

    due = doc.get("dueInHours")
    if due is not None and (isinstance(due, bool) or not isinstance(due, (int, float)) or due < 0):
        raise InvalidSpecError("'dueInHours' must be a non-negative number", path=path)

    task_input = doc.get("input") or {}
    _require_mapping(task_input, f"{path}.input")

    return TaskTemplate(
        type=task_type,
        name=_optional_str(doc, "name", path),
        assignee_user_id=_optional_str(doc, "assigneeUserId", path),
        assignee_role_id=_optional_str(doc, "assigneeRoleId", path),
        assignee_permission_key=_optional_str(doc, "assigneePermissionKey", path),
        due_in_hours=due,
        completion_event=_optional_str(doc, "completionEvent", path),
        input=dict(task_input),
    )


def _parse_action(doc: Any, path: str) -> Action:
    doc = _require_mapping(doc, path)
    kind = doc.get("type")
    if kind == "createTask":
        return CreateTaskAction(task=_parse_task(doc.get("task"), f"{path}.task"))
    if kind == "assign":
        target = doc.get("path")
        if not isinstance(target, str) or not target:
            raise InvalidSpecError("assign requires a non-empty 'path'", path=path)
        return AssignAction(path=target, value=doc.get("value"))
    raise InvalidSpecError(f"unknown action type {kind!r}", path=path)


def _parse_transition(doc: Any, path: str, state_names: set[str]) -> TransitionSpec:
    if isinstance(doc, str):
        doc = {"target": doc}
    doc = _require_mapping(doc, path)
    target = doc.get("target")
    if not isinstance(target, str) or target not in state_names:
        raise InvalidSpecError(f"target {target!r} is not a declared state", path=path)

    actions_doc = doc.get("actions") or []
    if not isinstance(actions_doc, (list, tuple)):
        raise InvalidSpecError("'actions' must be a list", path=path)
    actions = tuple(
        _parse_action(item, f"{path}.actions[{i}]") for i, item in enumerate(actions_doc)
    )

    guard = None
    if doc.get("guard") is not None:
        try:
            guard = parse_rule_set(doc["guard"])
        except InvalidRuleError as exc:
            raise InvalidSpecError(exc.reason, path=f"{path}.guard") from exc

    return TransitionSpec(target=target, actions=actions, guard=guard)


def parse_spec(document: Any) -> WorkflowSpec:
    """Validate a spec document and return its typed form.

    Raises:
        InvalidSpecError: on the first structural problem found.
    """
    doc = _require_mapping(document, "spec")

    spec_id = doc.get("id")
    if not isinstance(spec_id, str) or not spec_id:
        raise InvalidSpecError("'id' must be a non-empty string", path="id")

    states_doc = _require_mapping(doc.get("states"), "states")
    if not states_doc:
        raise InvalidSpecError("at least one state is required", path="states")
    state_names = set(states_doc)

    initial = doc.get("initial")
    if not isinstance(initial, str) or initial not in state_names:
        raise InvalidSpecError(f"initial state {initial!r} is not declared", path="initial")

    states: dict[str, StateSpec] = {}
    for name, state_doc in states_doc.items():
        path = f"states.{name}"
        state_doc = _require_mapping(state_doc, path)
        state_type = state_doc.get("type")
        if state_type not in (None, "final", "atomic"):
            raise InvalidSpecError(f"unknown state type {state_type!r}", path=path)
        on_doc = _require_mapping(state_doc.get("on") or {}, f"{path}.on")
        final = state_type == "final"
        if final and on_doc:
            raise InvalidSpecError("final states accept no events", path=path)
        states[name] = StateSpec(
            name=name,
            on={
                event: _parse_transition(t, f"{path}.on.{event}", state_names)
                for event, t in on_doc.items()
            },
            final=final,
        )

    _check_task_events(states)

    return WorkflowSpec(
        id=spec_id,
        initial=initial,
        states=states,
        context=dict(_require_mapping(doc.get("context") or {}, "context")),
        meta=dict(_require_mapping(doc.get("meta") or {}, "meta")),
    )


def _check_task_events(states: Mapping[str, StateSpec]) -> None:
    """A task's approve/reject events must be handled by the state it waits in."""
    for state in states.values():
        for event, transition in state.on.items():
            entered = states[transition.target]
            for action in transition.actions:
                if not isinstance(action, CreateTaskAction):
                    continue
                for declared in (
                    action.task.approve_event,
                    action.task.reject_event,
                    action.task.completion_event,
                ):
                    if declared is not None and declared not in entered.on:
                        raise InvalidSpecError(
                            f"task event {declared!r} is not handled by state "
                            f"{entered.name!r}",
                            path=f"states.{state.name}.on.{event}",
                        )


# =============================================================================
# Loading stored documents (no validation)
# =============================================================================


def _stored_rule_set(doc: Mapping[str, Any]) -> RuleSet:
    def _conditions(items: Any) -> tuple[RuleCondition, ...]:
        return tuple(
            RuleCondition(
                field=item["field"],
                operator=RuleOperator(item["operator"]),
                value=tuple(item["value"]) if isinstance(item.get("value"), list) else item.get("value"),
            )
            for item in items or ()
        )

    return RuleSet(all_of=_conditions(doc.get("all")), any_of=_conditions(doc.get("any")))


def _stored_action(doc: Mapping[str, Any]) -> Action:
    if doc["type"] == "assign":
        return AssignAction(path=doc["path"], value=doc.get("value"))
    task = doc["task"]
    return CreateTaskAction(
        task=TaskTemplate(
            type=TaskType(task.get("type", TaskType.HUMAN.value)),
            name=task.get("name"),
            assignee_user_id=task.get("assigneeUserId"),
            assignee_role_id=task.get("assigneeRoleId"),
            assignee_permission_key=task.get("assigneePermissionKey"),
            due_in_hours=task.get("dueInHours"),
            completion_event=task.get("completionEvent"),
            input=dict(task.get("input") or {}),
        )
    )


def _stored_transition(doc: Any) -> TransitionSpec:
    if isinstance(doc, str):
        return TransitionSpec(target=doc)
    guard = doc.get("guard")
    return TransitionSpec(
        target=doc["target"],
        actions=tuple(_stored_action(a) for a in doc.get("actions") or ()),
        guard=_stored_rule_set(guard) if guard is not None else None,
    )


def load_stored_spec(document: Mapping[str, Any]) -> WorkflowSpec:
    """Typed view of a spec that already passed ``parse_spec`` when it was stored.

    Definitions are immutable, so the document is trusted as-is.  Running
    instances keep working even if ``parse_spec`` later becomes stricter.
    """
    return WorkflowSpec(
        id=document["id"],
        initial=document["initial"],
        states={
            name: StateSpec(
                name=name,
                on={
                    event: _stored_transition(t)
                    for event, t in (state.get("on") or {}).items()
                },
                final=state.get("type") == "final",
            )
            for name, state in document["states"].items()
        },
        context=dict(document.get("context") or {}),
        meta=dict(document.get("meta") or {}),
    )
