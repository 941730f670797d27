"""
Typed Exception Hierarchy for the Flow Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the orchestration kernel (an HTTP layer, a worker, an operator
script) must map failures to responses without parsing messages:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

    try:
        gate.require_approval(...)
    except IdempotencyKeyMismatchError as e:
        return response(409, code=e.code, key=e.idempotency_key)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    FlowKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidSpecError
    |   +-- InvalidPolicyError
    |   +-- InvalidRuleError
    |   +-- TaskNotCompletableError
    |
    +-- NotFoundError
    |   +-- DefinitionNotFoundError
    |   +-- InstanceNotFoundError
    |   +-- TaskNotFoundError
    |   +-- PolicyNotFoundError
    |
    +-- ConflictError
    |   +-- DuplicateDefinitionError
    |   +-- TaskNotPendingError
    |   +-- InstanceNotActiveError
    |   +-- ConcurrentUpdateError
    |
    +-- AuthorizationError
    |   +-- UnauthorizedAssigneeError
    |
    +-- MismatchError
    |   +-- IdempotencyKeyMismatchError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                      | When Raised
--------------|---------------------------|-------------------------------------
Validation    | INVALID_SPEC              | Definition spec document malformed
              | INVALID_POLICY            | Approval policy input malformed
              | INVALID_RULE              | Rule condition malformed
              | TASK_NOT_COMPLETABLE      | Completing a non-HUMAN task
              | INVALID_DECISION          | Decision not APPROVE / REJECT
--------------|---------------------------|-------------------------------------
Not found     | DEFINITION_NOT_FOUND      | Unknown definition id / key
              | INSTANCE_NOT_FOUND        | Unknown instance id
              | TASK_NOT_FOUND            | Unknown task id
              | POLICY_NOT_FOUND          | No policy with that key
--------------|---------------------------|-------------------------------------
Conflict      | DUPLICATE_DEFINITION      | (tenant, key, version) already exists
              | TASK_NOT_PENDING          | Task already SUCCEEDED / FAILED
              | INSTANCE_NOT_ACTIVE       | Instance CANCELLED / COMPLETED
              | CONCURRENT_UPDATE         | Instance revision moved underneath
--------------|---------------------------|-------------------------------------
Authorization | UNAUTHORIZED_ASSIGNEE     | Actor is not an assignee of the task
--------------|---------------------------|-------------------------------------
Mismatch      | IDEMPOTENCY_KEY_MISMATCH  | Key reused with a different request
--------------|---------------------------|-------------------------------------
Immutability  | IMMUTABILITY_VIOLATION    | Modifying an append-only record

===============================================================================
HANDLING PATTERNS
===============================================================================

1. ConcurrentUpdateError is retryable.  The dispatcher worker treats it as
   an ordinary attempt failure and re-derives from the persisted snapshot.

2. MismatchError is a client error and is never retried automatically.

3. "No transition for event" is NOT an error.  The interpreter treats it
   as a defined no-op so duplicate delivery stays safe.
"""


class FlowKernelError(Exception):
    """
    Base exception for all flow kernel errors.

    All subclasses must have a ``code`` class attribute for
    machine-readable error identification.
    """

    code: str = "FLOW_KERNEL_ERROR"


# Validation


class ValidationError(FlowKernelError):
    """Malformed command input or violated business invariant."""

    code: str = "VALIDATION_ERROR"


class InvalidSpecError(ValidationError):
    """Definition spec document does not describe a valid state machine."""

    code: str = "INVALID_SPEC"

    def __init__(self, reason: str, path: str | None = None):
        self.reason = reason
        self.path = path
        location = f" at {path}" if path else ""
        super().__init__(f"Invalid workflow spec{location}: {reason}")


class InvalidPolicyError(ValidationError):
    """Approval policy input cannot be compiled."""

    code: str = "INVALID_POLICY"

    def __init__(self, policy_key: str, reason: str):
        self.policy_key = policy_key
        self.reason = reason
        super().__init__(f"Invalid approval policy {policy_key!r}: {reason}")


class InvalidRuleError(ValidationError):
    """Rule condition is malformed (unknown operator, missing field)."""

    code: str = "INVALID_RULE"

    def __init__(self, reason: str, rule: object | None = None):
        self.reason = reason
        self.rule = rule
        super().__init__(f"Invalid rule: {reason}")


class TaskNotCompletableError(ValidationError):
    """Only HUMAN tasks can be completed through the task API."""

    code: str = "TASK_NOT_COMPLETABLE"

    def __init__(self, task_id: str, task_type: str):
        self.task_id = task_id
        self.task_type = task_type
        super().__init__(
            f"Task {task_id} of type {task_type} cannot be completed manually"
        )


class InvalidDecisionError(ValidationError):
    """Approval decision is neither APPROVE nor REJECT."""

    code: str = "INVALID_DECISION"

    def __init__(self, task_id: str, decision: object):
        self.task_id = task_id
        self.decision = decision
        super().__init__(f"Invalid decision {decision!r} for task {task_id}")


# Not found


class NotFoundError(FlowKernelError):
    """Referenced entity does not exist for the tenant."""

    code: str = "NOT_FOUND"


class DefinitionNotFoundError(NotFoundError):
    """No definition matches the given id, or key and version."""

    code: str = "DEFINITION_NOT_FOUND"

    def __init__(
        self,
        tenant_id: str,
        definition_id: str | None = None,
        key: str | None = None,
        version: int | None = None,
    ):
        self.tenant_id = tenant_id
        self.definition_id = definition_id
        self.key = key
        self.version = version
        if definition_id is not None:
            ref = f"id={definition_id}"
        elif version is not None:
            ref = f"key={key} version={version}"
        else:
            ref = f"active key={key}"
        super().__init__(f"Workflow definition not found ({ref})")


class InstanceNotFoundError(NotFoundError):
    """Workflow instance does not exist."""

    code: str = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Workflow instance not found: {instance_id}")


class TaskNotFoundError(NotFoundError):
    """Workflow task does not exist."""

    code: str = "TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Workflow task not found: {task_id}")


class PolicyNotFoundError(NotFoundError):
    """No approval policy with the given key."""

    code: str = "POLICY_NOT_FOUND"

    def __init__(self, policy_key: str):
        self.policy_key = policy_key
        super().__init__(f"Approval policy not found: {policy_key}")


# Conflict


class ConflictError(FlowKernelError):
    """Command conflicts with persisted state."""

    code: str = "CONFLICT"


class DuplicateDefinitionError(ConflictError):
    """A definition with the same (tenant, key, version) already exists."""

    code: str = "DUPLICATE_DEFINITION"

    def __init__(self, tenant_id: str, key: str, version: int):
        self.tenant_id = tenant_id
        self.key = key
        self.version = version
        super().__init__(
            f"Workflow definition {key} v{version} already exists"
        )


class TaskNotPendingError(ConflictError):
    """Task has already been resolved and cannot be resolved again."""

    code: str = "TASK_NOT_PENDING"

    def __init__(self, task_id: str, status: str):
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} is not PENDING (status={status})")


class InstanceNotActiveError(ConflictError):
    """Instance is in a terminal status and accepts no further commands."""

    code: str = "INSTANCE_NOT_ACTIVE"

    def __init__(self, instance_id: str, status: str):
        self.instance_id = instance_id
        self.status = status
        super().__init__(
            f"Workflow instance {instance_id} is not active (status={status})"
        )


class ConcurrentUpdateError(ConflictError):
    """Instance revision changed between read and compare-and-set."""

    code: str = "CONCURRENT_UPDATE"

    def __init__(self, instance_id: str, expected_revision: int):
        self.instance_id = instance_id
        self.expected_revision = expected_revision
        super().__init__(
            f"Workflow instance {instance_id} was modified concurrently "
            f"(expected revision {expected_revision})"
        )


# Authorization


class AuthorizationError(FlowKernelError):
    """Actor may not perform the requested operation."""

    code: str = "AUTHORIZATION_ERROR"


class UnauthorizedAssigneeError(AuthorizationError):
    """Actor matches none of the task's assignee user, role or permission."""

    code: str = "UNAUTHORIZED_ASSIGNEE"

    def __init__(self, task_id: str, user_id: str):
        self.task_id = task_id
        self.user_id = user_id
        super().__init__(f"User {user_id} is not an assignee of task {task_id}")


# Mismatch


class MismatchError(FlowKernelError):
    """Idempotent command replayed with different content."""

    code: str = "MISMATCH"


class IdempotencyKeyMismatchError(MismatchError):
    """Idempotency key reused for a different request body."""

    code: str = "IDEMPOTENCY_KEY_MISMATCH"

    def __init__(self, action_key: str, idempotency_key: str):
        self.action_key = action_key
        self.idempotency_key = idempotency_key
        super().__init__(
            f"Idempotency key {idempotency_key!r} for {action_key} was "
            "already used with a different request"
        )


# Immutability


class ImmutabilityViolationError(FlowKernelError):
    """Attempted to modify or delete an append-only or frozen record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )
