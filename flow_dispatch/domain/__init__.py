"""Pure types for orchestration jobs.  ZERO I/O."""

from flow_dispatch.domain.types import (
    JobOutcome,
    JobStatus,
    OrchestrationJob,
    ProcessResult,
    compute_backoff,
)

__all__ = [
    "JobOutcome",
    "JobStatus",
    "OrchestrationJob",
    "ProcessResult",
    "compute_backoff",
]
