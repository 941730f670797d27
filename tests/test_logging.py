"""Tests for structured JSON logging and LogContext propagation."""

import json
import logging
import sys
from uuid import UUID

from flow_kernel.exceptions import TaskNotPendingError
from flow_kernel.logging_config import LogContext, StructuredFormatter, get_logger


def make_record(msg="event_name", level=logging.INFO, exc_info=None, **extra):
    record = logging.LogRecord(
        name="flow_kernel.test", level=level, pathname=__file__, lineno=1,
        msg=msg, args=(), exc_info=exc_info,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:

    def test_envelope_and_extras(self):
        out = json.loads(StructuredFormatter().format(
            make_record(instance_ref=UUID(int=1), attempts=3)
        ))

        assert out["message"] == "event_name"
        assert out["level"] == "INFO"
        assert out["logger"] == "flow_kernel.test"
        assert out["instance_ref"] == str(UUID(int=1))
        assert out["attempts"] == 3
        assert "ts" in out

    def test_context_fields_included(self):
        LogContext.set(tenant_id="tenant-a", job_id="job-1")

        out = json.loads(StructuredFormatter().format(make_record()))

        assert out["tenant_id"] == "tenant-a"
        assert out["job_id"] == "job-1"

    def test_exception_fields(self):
        try:
            raise TaskNotPendingError("task-1", "SUCCEEDED")
        except TaskNotPendingError:
            record = make_record(level=logging.ERROR, exc_info=sys.exc_info())

        out = json.loads(StructuredFormatter().format(record))

        assert out["exc_type"] == "TaskNotPendingError"
        assert out["exc_code"] == TaskNotPendingError.code
        assert "traceback" in out


class TestLogContext:

    def test_bind_restores_previous_values(self):
        LogContext.set(tenant_id="outer")
        with LogContext.bind(tenant_id="inner", instance_id="i-1"):
            assert LogContext.get_all() == {"tenant_id": "inner", "instance_id": "i-1"}
        assert LogContext.get_all() == {"tenant_id": "outer"}

    def test_none_values_are_ignored(self):
        LogContext.set(actor_id="u1")
        LogContext.set(actor_id=None)
        assert LogContext.get_all() == {"actor_id": "u1"}

    def test_clear(self):
        LogContext.set(correlation_id="c", trace_id="t")
        LogContext.clear()
        assert LogContext.get_all() == {}


class TestGetLogger:

    def test_namespaced_under_flow_kernel(self, captured_logs):
        logger = get_logger("services.example")
        assert logger.name == "flow_kernel.services.example"

        logger.info("example_event", extra={"count": 2})

        (record,) = [r for r in captured_logs() if r["message"] == "example_event"]
        assert record["count"] == 2
