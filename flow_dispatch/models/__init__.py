"""
flow_dispatch.models -- ORM models for orchestration jobs.

Architecture: flow_dispatch/models. Imports from flow_kernel.db.base only.
"""

from flow_dispatch.models.job import OrchestrationJobModel

__all__ = ["OrchestrationJobModel"]
