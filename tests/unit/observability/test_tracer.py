"""
Unit tests for tracer protocol and implementations.

Tests for:
- Tracer Protocol (runtime_checkable)
- NullTracer class
- OpenTelemetryTracer class
- MockTracer class
- create_tracer() factory function
"""

from __future__ import annotations

import contextlib
from typing import Any

import pytest

from relayout.observability import (
    OTEL_AVAILABLE,
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from relayout.observability import tracer as tracer_module


class TestTracerProtocol:
    """Tests for Tracer protocol."""

    def test_null_tracer_implements_protocol(self):
        assert isinstance(NullTracer(), Tracer)

    def test_mock_tracer_implements_protocol(self):
        assert isinstance(MockTracer(), Tracer)

    @pytest.mark.skipif(not OTEL_AVAILABLE, reason="OTEL not installed")
    def test_otel_tracer_implements_protocol(self):
        assert isinstance(OpenTelemetryTracer(__name__), Tracer)

    def test_custom_implementation_matches_protocol(self):
        """Custom implementations can match the protocol."""

        class CustomTracer:
            def span(self, name: str, attributes: dict[str, Any] | None = None):
                return contextlib.nullcontext()

            @property
            def enabled(self) -> bool:
                return False

        assert isinstance(CustomTracer(), Tracer)

    def test_object_without_span_does_not_match(self):
        class NotATracer:
            enabled = False

        assert not isinstance(NotATracer(), Tracer)


class TestNullTracer:
    """Tests for NullTracer class."""

    def test_span_yields_none(self):
        with NullTracer().span("relayout.test", {"relayout.job.id": "x"}) as span:
            assert span is None

    def test_enabled_is_false(self):
        assert NullTracer().enabled is False

    def test_exceptions_propagate(self):
        """Errors raised inside a span are not swallowed."""
        with pytest.raises(ValueError, match="boom"):
            with NullTracer().span("relayout.test"):
                raise ValueError("boom")


class TestMockTracer:
    """Tests for MockTracer class."""

    def test_records_spans_in_order(self):
        tracer = MockTracer()

        with tracer.span("relayout.controller.start_job", {"relayout.job.source": "db.a"}):
            with tracer.span("relayout.enumerator.enumerate"):
                pass

        assert tracer.span_names == [
            "relayout.controller.start_job",
            "relayout.enumerator.enumerate",
        ]
        assert tracer.spans[0][1] == {"relayout.job.source": "db.a"}
        assert tracer.spans[1][1] is None

    def test_enabled_is_true(self):
        assert MockTracer().enabled is True

    def test_clear(self):
        tracer = MockTracer()
        with tracer.span("relayout.test"):
            pass

        tracer.clear()

        assert tracer.spans == []


@pytest.mark.skipif(not OTEL_AVAILABLE, reason="OTEL not installed")
class TestOpenTelemetryTracer:
    """Tests for OpenTelemetryTracer class."""

    def test_enabled_is_true(self):
        assert OpenTelemetryTracer(__name__).enabled is True

    def test_span_yields_span(self):
        tracer = OpenTelemetryTracer(__name__)

        with tracer.span("relayout.test", {"relayout.unit.id": "202401"}) as span:
            assert span is not None


class TestCreateTracer:
    """Tests for create_tracer() factory."""

    def test_disabled_returns_null_tracer(self):
        assert isinstance(create_tracer(__name__, enable_tracing=False), NullTracer)

    def test_null_tracer_without_opentelemetry(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(tracer_module, "OTEL_AVAILABLE", False)

        assert isinstance(create_tracer(__name__, enable_tracing=True), NullTracer)

    @pytest.mark.skipif(not OTEL_AVAILABLE, reason="OTEL not installed")
    def test_enabled_returns_otel_tracer(self):
        assert isinstance(create_tracer(__name__, enable_tracing=True), OpenTelemetryTracer)
