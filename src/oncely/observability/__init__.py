"""Oncely observability: OpenTelemetry tracing for store operations."""

from oncely.observability.tracing import configure_tracing, is_tracing_enabled

__all__ = ["configure_tracing", "is_tracing_enabled"]
