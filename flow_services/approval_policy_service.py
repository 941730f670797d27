"""
flow_services.approval_policy_service -- Approval policy lifecycle.

Responsibility:
    Compiles approval policies into workflow definitions (type APPROVAL,
    key ``approval.<policy key>``) and manages which version is active.

Architecture position:
    Services layer.  Uses flow_engines.policy_compiler (pure) and the
    kernel DefinitionService; a policy IS a definition, so versioning,
    uniqueness and the single-ACTIVE rule come from the definition table.

Invariants enforced:
    - Each ``create_policy`` stores the next version for the key.
    - At most one ACTIVE version per policy key.
"""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from flow_engines.policy_compiler import compile_policy
from flow_kernel.domain.approval import (
    POLICY_KEY_PREFIX,
    ApprovalPolicyInput,
    parse_policy_input,
    policy_definition_key,
)
from flow_kernel.domain.dtos import WorkflowDefinition
from flow_kernel.domain.workflow import DefinitionStatus, DefinitionType
from flow_kernel.exceptions import PolicyNotFoundError
from flow_kernel.logging_config import get_logger
from flow_kernel.selectors.workflow_selector import WorkflowSelector
from flow_kernel.services.definition_service import DefinitionService

logger = get_logger("services.approval_policy")


class ApprovalPolicyService:
    """Create, list, activate and deactivate approval policies."""

    def __init__(self, definitions: DefinitionService, selector: WorkflowSelector):
        self._definitions = definitions
        self._selector = selector

    def create_policy(
        self,
        tenant_id: str,
        policy: ApprovalPolicyInput | Mapping[str, Any],
        created_by: str | None = None,
    ) -> WorkflowDefinition:
        if not isinstance(policy, ApprovalPolicyInput):
            policy = parse_policy_input(policy)
        spec = compile_policy(policy)

        model = self._definitions.create(
            tenant_id=tenant_id,
            key=policy_definition_key(policy.key),
            name=policy.name,
            spec=spec,
            status=policy.status,
            definition_type=DefinitionType.APPROVAL,
            description=policy.description,
            created_by=created_by,
        )
        logger.info(
            "approval_policy_created",
            extra={
                "tenant_id": tenant_id,
                "policy_key": policy.key,
                "policy_id": str(model.id),
                "version": model.version,
                "steps": len(policy.steps),
            },
        )
        return model.to_dto()

    def list_policies(
        self, tenant_id: str, status: DefinitionStatus | None = None
    ) -> list[WorkflowDefinition]:
        return self._selector.list_definitions(
            tenant_id,
            key_prefix=POLICY_KEY_PREFIX,
            definition_type=DefinitionType.APPROVAL,
            status=status,
        )

    def get_policy(self, tenant_id: str, policy_id: UUID) -> WorkflowDefinition:
        policy = self._selector.get_definition(tenant_id, policy_id)
        if policy is None or policy.type != DefinitionType.APPROVAL:
            raise PolicyNotFoundError(str(policy_id))
        return policy

    def get_active_policy(self, tenant_id: str, key: str) -> WorkflowDefinition | None:
        model = self._definitions.find_active(tenant_id, policy_definition_key(key))
        if model is None or model.type != DefinitionType.APPROVAL.value:
            return None
        return model.to_dto()

    def activate_policy(self, tenant_id: str, policy_id: UUID) -> WorkflowDefinition:
        self.get_policy(tenant_id, policy_id)
        return self._definitions.set_status(tenant_id, policy_id, DefinitionStatus.ACTIVE).to_dto()

    def deactivate_policy(self, tenant_id: str, policy_id: UUID) -> WorkflowDefinition:
        self.get_policy(tenant_id, policy_id)
        return self._definitions.set_status(
            tenant_id, policy_id, DefinitionStatus.INACTIVE
        ).to_dto()
