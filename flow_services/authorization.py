"""
flow_services.authorization -- Task assignee authorization.

Responsibility:
    Decide whether an actor may act on a task.  Role and permission storage
    is external; this module consumes it through the ``AssigneeDirectory``
    protocol and applies the match order:

        1. direct user match   (task.assignee_user_id == user)
        2. role match          (task.assignee_role_id == role of user)
        3. permission match    (task.assignee_permission_key in the role's keys)

    The first match wins; no match raises ``UnauthorizedAssigneeError``.

Architecture position:
    Services layer.  The kernel remains actor-agnostic; callers supply the
    acting user id and this module resolves the rest through the directory.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Protocol

from flow_kernel.domain.dtos import WorkflowTask
from flow_kernel.exceptions import UnauthorizedAssigneeError
from flow_kernel.logging_config import get_logger

logger = get_logger("services.authorization")


class AssigneeMatch(str, Enum):
    USER = "user"
    ROLE = "role"
    PERMISSION = "permission"


class AssigneeDirectory(Protocol):
    """External role/permission lookup."""

    def role_for(self, tenant_id: str, user_id: str) -> str | None: ...

    def permission_keys_for(self, tenant_id: str, role_id: str) -> frozenset[str]: ...


class InMemoryAssigneeDirectory:
    """Dictionary-backed directory for development and tests."""

    def __init__(self) -> None:
        self._roles: dict[tuple[str, str], str] = {}
        self._permissions: dict[tuple[str, str], set[str]] = {}

    def assign_role(self, tenant_id: str, user_id: str, role_id: str) -> None:
        self._roles[(tenant_id, user_id)] = role_id

    def grant(self, tenant_id: str, role_id: str, *permission_keys: str) -> None:
        self._permissions.setdefault((tenant_id, role_id), set()).update(permission_keys)

    def role_for(self, tenant_id: str, user_id: str) -> str | None:
        return self._roles.get((tenant_id, user_id))

    def permission_keys_for(self, tenant_id: str, role_id: str) -> frozenset[str]:
        return frozenset(self._permissions.get((tenant_id, role_id), ()))


def match_assignee(
    task: WorkflowTask,
    user_id: str,
    role_id: str | None,
    permission_keys: Iterable[str],
) -> AssigneeMatch | None:
    """Pure match in precedence order; None when nothing matches."""
    if task.assignee_user_id is not None and task.assignee_user_id == user_id:
        return AssigneeMatch.USER
    if role_id is not None and task.assignee_role_id is not None and task.assignee_role_id == role_id:
        return AssigneeMatch.ROLE
    if task.assignee_permission_key is not None and task.assignee_permission_key in set(
        permission_keys
    ):
        return AssigneeMatch.PERMISSION
    return None


class AssigneeAuthorizer:
    """Applies ``match_assignee`` against an ``AssigneeDirectory``."""

    def __init__(self, directory: AssigneeDirectory):
        self._directory = directory

    def effective_access(self, tenant_id: str, user_id: str) -> tuple[str | None, frozenset[str]]:
        role_id = self._directory.role_for(tenant_id, user_id)
        keys = self._directory.permission_keys_for(tenant_id, role_id) if role_id else frozenset()
        return role_id, keys

    def assert_assignee(self, tenant_id: str, user_id: str, task: WorkflowTask) -> AssigneeMatch:
        """
        Raises:
            UnauthorizedAssigneeError: no rule matched.
        """
        if task.assignee_user_id is not None and task.assignee_user_id == user_id:
            return AssigneeMatch.USER

        role_id, keys = self.effective_access(tenant_id, user_id)
        match = match_assignee(task, user_id, role_id, keys)
        if match is None:
            logger.warning(
                "task_assignee_denied",
                extra={"task_id": str(task.id), "user_id": user_id, "role_id": role_id},
            )
            raise UnauthorizedAssigneeError(str(task.id), user_id)

        logger.debug(
            "task_assignee_authorized",
            extra={"task_id": str(task.id), "user_id": user_id, "match": match.value},
        )
        return match
