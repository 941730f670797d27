"""
DefinitionService -- versioned workflow definitions.

Responsibility:
    Creates definitions (validating the spec document exactly once),
    resolves them by id or by key/version, and moves their status.

Invariants enforced:
    - ``(tenant_id, key, version)`` is unique; a lost insert race surfaces
      as ``DuplicateDefinitionError``.
    - At most one ACTIVE version per key: activating a version deactivates
      the others.
    - The spec is frozen once written (db/immutability.py).

Failure modes:
    - InvalidSpecError: spec document is not a valid state machine.
    - DuplicateDefinitionError: explicit version already exists.
    - DefinitionNotFoundError: unknown id, or no ACTIVE version for a key.
"""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from flow_kernel.domain.workflow import (
    DefinitionStatus,
    DefinitionType,
    WorkflowSpec,
    load_stored_spec,
    parse_spec,
)
from flow_kernel.exceptions import (
    DefinitionNotFoundError,
    DuplicateDefinitionError,
    InvalidSpecError,
)
from flow_kernel.logging_config import get_logger
from flow_kernel.models.definition import WorkflowDefinitionModel
from flow_kernel.services.base import BaseService
from flow_kernel.utils.hashing import to_json_document

logger = get_logger("services.definition")


class DefinitionService(BaseService[WorkflowDefinitionModel]):
    """Write-side access to workflow definitions."""

    def latest_version(self, tenant_id: str, key: str) -> int:
        value = self.session.execute(
            select(func.max(WorkflowDefinitionModel.version)).where(
                WorkflowDefinitionModel.tenant_id == tenant_id,
                WorkflowDefinitionModel.key == key,
            )
        ).scalar_one_or_none()
        return value or 0

    def create(
        self,
        tenant_id: str,
        key: str,
        name: str,
        spec: Mapping[str, Any],
        version: int | None = None,
        status: DefinitionStatus = DefinitionStatus.ACTIVE,
        definition_type: DefinitionType = DefinitionType.GENERIC,
        description: str | None = None,
        created_by: str | None = None,
    ) -> WorkflowDefinitionModel:
        """
        Validate ``spec`` and insert a new definition version.

        ``version`` defaults to the latest version of ``key`` plus one.
        """
        if not key:
            raise InvalidSpecError("definition key must be a non-empty string", path="key")
        parse_spec(spec)

        if version is None:
            version = self.latest_version(tenant_id, key) + 1
        elif version < 1:
            raise InvalidSpecError("version must be a positive integer", path="version")

        now = self.clock.now()
        model = WorkflowDefinitionModel(
            tenant_id=tenant_id,
            key=key,
            version=version,
            name=name or key,
            description=description,
            status=DefinitionStatus(status).value,
            type=DefinitionType(definition_type).value,
            spec=to_json_document(dict(spec)),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )

        savepoint = self.session.begin_nested()
        try:
            self.session.add(model)
            self.session.flush()
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.info(
                "definition_version_conflict",
                extra={"tenant_id": tenant_id, "key": key, "version": version},
            )
            raise DuplicateDefinitionError(tenant_id, key, version) from None

        if model.status == DefinitionStatus.ACTIVE.value:
            self._deactivate_siblings(model)

        logger.info(
            "definition_created",
            extra={
                "tenant_id": tenant_id,
                "definition_id": str(model.id),
                "key": key,
                "version": version,
                "type": model.type,
                "status": model.status,
            },
        )
        return model

    def get(self, tenant_id: str, definition_id: UUID) -> WorkflowDefinitionModel:
        model = self.session.execute(
            select(WorkflowDefinitionModel).where(
                WorkflowDefinitionModel.id == definition_id,
                WorkflowDefinitionModel.tenant_id == tenant_id,
            )
        ).scalar_one_or_none()
        if model is None:
            raise DefinitionNotFoundError(tenant_id, definition_id=str(definition_id))
        return model

    def find_active(self, tenant_id: str, key: str) -> WorkflowDefinitionModel | None:
        return self.session.execute(
            select(WorkflowDefinitionModel)
            .where(
                WorkflowDefinitionModel.tenant_id == tenant_id,
                WorkflowDefinitionModel.key == key,
                WorkflowDefinitionModel.status == DefinitionStatus.ACTIVE.value,
            )
            .order_by(WorkflowDefinitionModel.version.desc())
            .limit(1)
        ).scalar_one_or_none()

    def resolve(
        self,
        tenant_id: str,
        definition_id: UUID | None = None,
        key: str | None = None,
        version: int | None = None,
    ) -> WorkflowDefinitionModel:
        """Resolve by id, by key and version, or by key alone (ACTIVE version)."""
        if definition_id is not None:
            return self.get(tenant_id, definition_id)
        if not key:
            raise InvalidSpecError(
                "either definition_id or definition key is required", path="definition"
            )
        if version is not None:
            model = self.session.execute(
                select(WorkflowDefinitionModel).where(
                    WorkflowDefinitionModel.tenant_id == tenant_id,
                    WorkflowDefinitionModel.key == key,
                    WorkflowDefinitionModel.version == version,
                )
            ).scalar_one_or_none()
        else:
            model = self.find_active(tenant_id, key)
        if model is None:
            raise DefinitionNotFoundError(tenant_id, key=key, version=version)
        return model

    def set_status(
        self,
        tenant_id: str,
        definition_id: UUID,
        status: DefinitionStatus,
    ) -> WorkflowDefinitionModel:
        model = self.get(tenant_id, definition_id)
        previous = model.status
        model.status = DefinitionStatus(status).value
        model.updated_at = self.clock.now()
        self.session.flush()
        if model.status == DefinitionStatus.ACTIVE.value:
            self._deactivate_siblings(model)

        logger.info(
            "definition_status_changed",
            extra={
                "tenant_id": tenant_id,
                "definition_id": str(definition_id),
                "key": model.key,
                "from_status": previous,
                "to_status": model.status,
            },
        )
        return model

    def load_spec(self, model: WorkflowDefinitionModel) -> WorkflowSpec:
        """Typed view of a stored spec; validated once, by ``create``."""
        return load_stored_spec(model.spec)

    def _deactivate_siblings(self, model: WorkflowDefinitionModel) -> None:
        siblings = self.session.execute(
            select(WorkflowDefinitionModel).where(
                WorkflowDefinitionModel.tenant_id == model.tenant_id,
                WorkflowDefinitionModel.key == model.key,
                WorkflowDefinitionModel.status == DefinitionStatus.ACTIVE.value,
                WorkflowDefinitionModel.id != model.id,
            )
        ).scalars().all()
        now = self.clock.now()
        for sibling in siblings:
            sibling.status = DefinitionStatus.INACTIVE.value
            sibling.updated_at = now
        if siblings:
            self.session.flush()
