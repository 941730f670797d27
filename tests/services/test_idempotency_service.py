"""
Tests for the idempotency gateway.

Covers every ``start_or_replay`` outcome, lock reclamation at the two
minute boundary, verbatim replay, and purging of expired records.
"""

import pytest

from flow_kernel.domain.dtos import IdempotencyMode
from flow_kernel.utils.hashing import canonicalize_json, hash_request

ACTION = "invoice.pay"


@pytest.fixture
def idempotency(runtime):
    return runtime.idempotency


@pytest.fixture
def request_hash():
    return hash_request(ACTION, "inv-1", {"amount": 1500})


class TestFirstSight:

    def test_started_then_in_progress(self, idempotency, tenant_id, request_hash):
        first = idempotency.start_or_replay(ACTION, tenant_id, "k1", request_hash, user_id="u1")
        second = idempotency.start_or_replay(ACTION, tenant_id, "k1", request_hash)

        assert first.mode == IdempotencyMode.STARTED
        assert first.should_proceed
        assert second.mode == IdempotencyMode.IN_PROGRESS
        assert second.retry_after_ms == 1000
        assert second.record_id == first.record_id

    def test_keys_are_scoped_by_tenant_and_action(
        self, idempotency, tenant_id, other_tenant_id
    ):
        idempotency.start_or_replay(ACTION, tenant_id, "k1")

        assert idempotency.start_or_replay(ACTION, other_tenant_id, "k1").mode == IdempotencyMode.STARTED
        assert idempotency.start_or_replay("invoice.void", tenant_id, "k1").mode == IdempotencyMode.STARTED


class TestLockTimeout:

    def test_not_reclaimed_before_timeout(self, idempotency, tenant_id, deterministic_clock):
        idempotency.start_or_replay(ACTION, tenant_id, "k1")
        deterministic_clock.advance(119)

        assert idempotency.start_or_replay(ACTION, tenant_id, "k1").mode == IdempotencyMode.IN_PROGRESS

    def test_not_reclaimed_at_exact_timeout(self, idempotency, tenant_id, deterministic_clock):
        idempotency.start_or_replay(ACTION, tenant_id, "k1")
        deterministic_clock.advance(120)

        assert idempotency.start_or_replay(ACTION, tenant_id, "k1").mode == IdempotencyMode.IN_PROGRESS

    def test_reclaimed_after_timeout(self, idempotency, tenant_id, deterministic_clock, captured_logs):
        idempotency.start_or_replay(ACTION, tenant_id, "k1")
        deterministic_clock.advance(121)

        reclaimed = idempotency.start_or_replay(ACTION, tenant_id, "k1")
        again = idempotency.start_or_replay(ACTION, tenant_id, "k1")

        assert reclaimed.mode == IdempotencyMode.STARTED
        assert again.mode == IdempotencyMode.IN_PROGRESS
        assert any(r["message"] == "idempotency_lock_reclaimed" for r in captured_logs())


class TestFinishedRecords:

    def test_replay_returns_stored_response(self, idempotency, tenant_id, request_hash):
        idempotency.start_or_replay(ACTION, tenant_id, "k1", request_hash)
        body = {"status": "PENDING", "instanceId": "abc", "nested": {"b": 2, "a": 1}}
        idempotency.complete(ACTION, tenant_id, "k1", 202, body)

        replay = idempotency.start_or_replay(ACTION, tenant_id, "k1", request_hash)

        assert replay.mode == IdempotencyMode.REPLAY
        assert replay.response_status == 202
        assert replay.response_body == body
        assert replay.response_text == canonicalize_json(body)

    def test_replay_without_hash(self, idempotency, tenant_id, request_hash):
        idempotency.start_or_replay(ACTION, tenant_id, "k1", request_hash)
        idempotency.complete(ACTION, tenant_id, "k1", 200, {"ok": True})

        assert idempotency.start_or_replay(ACTION, tenant_id, "k1").mode == IdempotencyMode.REPLAY

    def test_mismatch_even_after_completion(self, idempotency, tenant_id, request_hash):
        idempotency.start_or_replay(ACTION, tenant_id, "k1", request_hash)
        idempotency.complete(ACTION, tenant_id, "k1", 200, {"ok": True})

        other = hash_request(ACTION, "inv-1", {"amount": 9999})
        result = idempotency.start_or_replay(ACTION, tenant_id, "k1", other)

        assert result.mode == IdempotencyMode.MISMATCH
        assert result.response_body is None

    def test_mismatch_while_in_progress(self, idempotency, tenant_id, request_hash):
        idempotency.start_or_replay(ACTION, tenant_id, "k1", request_hash)
        other = hash_request(ACTION, "inv-2", {"amount": 1500})

        assert idempotency.start_or_replay(ACTION, tenant_id, "k1", other).mode == IdempotencyMode.MISMATCH

    def test_failed_record_replays_failure(self, idempotency, tenant_id):
        idempotency.start_or_replay(ACTION, tenant_id, "k1")
        idempotency.fail(ACTION, tenant_id, "k1", {"error": "boom"})

        result = idempotency.start_or_replay(ACTION, tenant_id, "k1")

        assert result.mode == IdempotencyMode.FAILED
        assert result.response_status == 500
        assert result.response_body == {"error": "boom"}
        assert not result.should_proceed

    def test_finish_without_lock_is_noop(self, idempotency, tenant_id, captured_logs):
        idempotency.complete(ACTION, tenant_id, "never-started", 200, {"ok": True})

        assert any(r["message"] == "idempotency_finish_without_lock" for r in captured_logs())
        assert idempotency.start_or_replay(ACTION, tenant_id, "never-started").mode == IdempotencyMode.STARTED

    def test_second_finish_does_not_overwrite(self, idempotency, tenant_id):
        idempotency.start_or_replay(ACTION, tenant_id, "k1")
        idempotency.complete(ACTION, tenant_id, "k1", 200, {"first": True})
        idempotency.fail(ACTION, tenant_id, "k1", {"second": True})

        replay = idempotency.start_or_replay(ACTION, tenant_id, "k1")
        assert replay.mode == IdempotencyMode.REPLAY
        assert replay.response_body == {"first": True}


class TestPurge:

    def test_purges_only_expired_finished_records(
        self, idempotency, tenant_id, deterministic_clock
    ):
        idempotency.start_or_replay(ACTION, tenant_id, "done")
        idempotency.complete(ACTION, tenant_id, "done", 200, {"ok": True})
        idempotency.start_or_replay(ACTION, tenant_id, "stuck")

        assert idempotency.purge_expired() == 0

        deterministic_clock.advance(24 * 3600 + 1)

        assert idempotency.purge_expired() == 1
        assert idempotency.start_or_replay(ACTION, tenant_id, "done").mode == IdempotencyMode.STARTED
