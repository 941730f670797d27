"""
EventLogService -- append-only writer for the instance event log.

Responsibility:
    Appends ``WorkflowEventModel`` rows; the database assigns each a
    monotonic ``seq`` so the log replays in insertion order.  Writers
    append inside the same transaction that changes the instance row; the
    caller commits both together.

Invariants enforced:
    - Append-only: there is no update or delete API (and the ORM listeners
      in db/immutability.py block both).
    - Ordering: ``seq`` is the table's autoincrement key, never a
      timestamp.
"""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from flow_kernel.domain.dtos import WorkflowEventRecord
from flow_kernel.logging_config import get_logger
from flow_kernel.models.event import WorkflowEventModel
from flow_kernel.services.base import BaseService
from flow_kernel.utils.hashing import to_json_document

logger = get_logger("services.event_log")


class EventLogService(BaseService[WorkflowEventModel]):
    """Appends workflow events."""

    def append(
        self,
        tenant_id: str,
        instance_id: UUID,
        event_type: str,
        payload: Mapping[str, Any] | None = None,
    ) -> WorkflowEventRecord:
        model = WorkflowEventModel(
            tenant_id=tenant_id,
            instance_id=instance_id,
            type=event_type,
            payload=to_json_document(dict(payload or {})),
            created_at=self.clock.now(),
        )
        self.session.add(model)
        self.session.flush()

        logger.debug(
            "workflow_event_appended",
            extra={
                "instance_id": str(instance_id),
                "event_type": event_type,
                "seq": model.seq,
            },
        )
        return model.to_dto()
