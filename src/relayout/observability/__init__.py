"""
Observability utilities for relayout.

Tracing is optional: every component works with a ``NullTracer`` when
OpenTelemetry is not installed.

Example:
    >>> from relayout.observability import create_tracer
    >>> tracer = create_tracer(__name__, enable_tracing=True)
    >>> with tracer.span("relayout.example", {"relayout.job.id": "..."}):
    ...     pass
"""

from relayout.observability.attributes import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_ERROR_TYPE,
    ATTR_GATE_OK,
    ATTR_GATE_REASON,
    ATTR_JOB_ID,
    ATTR_JOB_STATUS,
    ATTR_LOCK_ACQUIRED,
    ATTR_LOCK_KEY,
    ATTR_ROWS,
    ATTR_SOURCE,
    ATTR_TARGET,
    ATTR_UNIT_ATTEMPT,
    ATTR_UNIT_COUNT,
    ATTR_UNIT_ID,
    ATTR_UNIT_STATE,
)
from relayout.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    Tracer,
    create_tracer,
)
from relayout.observability.tracing import OTEL_AVAILABLE

__all__ = [
    "OTEL_AVAILABLE",
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "create_tracer",
    "ATTR_JOB_ID",
    "ATTR_JOB_STATUS",
    "ATTR_SOURCE",
    "ATTR_TARGET",
    "ATTR_UNIT_ID",
    "ATTR_UNIT_STATE",
    "ATTR_UNIT_ATTEMPT",
    "ATTR_UNIT_COUNT",
    "ATTR_ROWS",
    "ATTR_GATE_OK",
    "ATTR_GATE_REASON",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_LOCK_KEY",
    "ATTR_LOCK_ACQUIRED",
    "ATTR_ERROR_TYPE",
]
