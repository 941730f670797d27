"""Tests for retry backoff and job exhaustion (pure, no DB)."""

from datetime import timedelta
from uuid import uuid4

import pytest

from flow_dispatch.domain.types import JobStatus, OrchestrationJob, compute_backoff


class TestComputeBackoff:

    @pytest.mark.parametrize("attempt, seconds", [(1, 2), (2, 4), (3, 8), (4, 16)])
    def test_doubles_from_base(self, attempt, seconds):
        assert compute_backoff(attempt, 2.0) == timedelta(seconds=seconds)

    def test_custom_base(self):
        assert compute_backoff(3, 0.5) == timedelta(seconds=2)

    def test_attempt_is_one_based(self):
        with pytest.raises(ValueError):
            compute_backoff(0, 2.0)


class TestExhausted:

    def _job(self, attempts, max_attempts=5):
        return OrchestrationJob(
            id=uuid4(),
            job_key="x:1",
            seq=1,
            tenant_id="t",
            instance_id=uuid4(),
            status=JobStatus.RUNNING,
            attempts=attempts,
            max_attempts=max_attempts,
        )

    def test_not_exhausted_before_max(self):
        assert not self._job(4).exhausted

    def test_exhausted_at_max(self):
        assert self._job(5).exhausted
        assert self._job(1, max_attempts=1).exhausted

    def test_event_inputs_parsed(self):
        job = OrchestrationJob(
            id=uuid4(),
            job_key="x:1",
            seq=1,
            tenant_id="t",
            instance_id=uuid4(),
            status=JobStatus.QUEUED,
            events=({"type": "SUBMIT", "payload": {"a": 1}},),
        )
        (event,) = job.event_inputs
        assert event.type == "SUBMIT"
        assert event.payload == {"a": 1}
