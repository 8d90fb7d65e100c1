"""
Tests for structured logging and tracing helpers.
"""

import json
import logging
from uuid import uuid4

import pytest
from opentelemetry.sdk.trace import TracerProvider

from eventrelay.observability import StructuredFormatter, get_trace_id, traced


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("eventrelay.outbox", logging.INFO, __file__, 1, "dispatched %s", ("batch",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredFormatter:
    """JSON log lines."""

    def test_without_span(self):
        entry = json.loads(StructuredFormatter("relay-test").format(make_record()))

        assert entry["message"] == "dispatched batch"
        assert entry["service"] == "relay-test"
        assert entry["level"] == "INFO"
        assert entry["trace_id"] is None
        assert entry["span_id"] is None
        assert entry["timestamp"].endswith("Z")

    def test_inside_span_carries_ids(self):
        tracer = TracerProvider().get_tracer("tests")

        with tracer.start_as_current_span("outbox.dispatch") as span:
            entry = json.loads(StructuredFormatter().format(make_record()))
            context = span.get_span_context()

        assert entry["trace_id"] == format(context.trace_id, "032x")
        assert entry["span_id"] == format(context.span_id, "016x")

    def test_extra_fields(self):
        message_id = uuid4()

        entry = json.loads(StructuredFormatter().format(
            make_record(message_id=message_id, event_type="UserCreatedEvent", _private="x")
        ))

        assert entry["message_id"] == str(message_id)
        assert entry["event_type"] == "UserCreatedEvent"
        assert "_private" not in entry


class TestTraced:
    """Decorator over the no-op tracer."""

    def test_sync(self):
        @traced("outbox.test")
        def double(x):
            return x * 2

        assert double(4) == 8
        assert get_trace_id() is None

    @pytest.mark.asyncio
    async def test_async_reraises(self):
        @traced()
        async def broken():
            raise ValueError("bad payload")

        with pytest.raises(ValueError):
            await broken()
