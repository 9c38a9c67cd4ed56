"""
OpenTelemetry availability detection for relayout.

OpenTelemetry is an optional dependency (``relayout-py[telemetry]``). This
module is the single place that tries to import it; every other module asks
``OTEL_AVAILABLE`` or goes through :func:`create_tracer`.

Example:
    >>> from relayout.observability import OTEL_AVAILABLE, create_tracer
    >>> tracer = create_tracer(__name__, enable_tracing=OTEL_AVAILABLE)
"""

# Optional OpenTelemetry import - single source of truth
try:
    from opentelemetry import trace  # noqa: F401

    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False


__all__ = [
    "OTEL_AVAILABLE",
]
