"""OpenTelemetry tracing configuration for Oncely.

Environment Variables:
    ONCELY_OTEL_ENABLED: Set to "1" to enable tracing (default: disabled)
    ONCELY_REQUIRE_OTEL: Set to "1" to fail startup if tracing cannot initialize
    ONCELY_OTEL_SERVICE_NAME: Service name for spans (default: "oncely")
    ONCELY_OTEL_EXPORTER: Exporter type - "otlp" or "console" (default: "otlp")
    ONCELY_OTEL_EXPORTER_OTLP_ENDPOINT: OTLP endpoint URL (optional)
    ONCELY_OTEL_TEST_CAPTURE: Set to "1" to use in-memory exporter for tests

Security:
    - Raw idempotency tokens are never exported; spans carry a SHA-256 digest.
    - Result and error payloads are never attached to spans.
"""

from __future__ import annotations

import functools
import logging
import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, TypeVar, cast

if TYPE_CHECKING:
    from opentelemetry.sdk.trace import ReadableSpan, TracerProvider

    from oncely.idempotency.keys import IdempotencyKey

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

_tracer_provider: TracerProvider | None = None
_is_configured: bool = False
_test_exporter: Any = None


class TracingConfigError(Exception):
    """Raised when tracing configuration fails and ONCELY_REQUIRE_OTEL=1."""


def _get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean from environment variable."""
    val = os.environ.get(key, "").strip().lower()
    if val in ("1", "true", "yes"):
        return True
    return default


def _get_env_str(key: str, default: str = "") -> str:
    """Get string from environment variable."""
    return os.environ.get(key, default).strip()


def is_tracing_enabled() -> bool:
    """Check if OpenTelemetry tracing is enabled."""
    return _get_env_bool("ONCELY_OTEL_ENABLED", False)


def configure_tracing() -> bool:
    """Configure OpenTelemetry tracing for Oncely.

    Idempotent - safe to call multiple times.

    Returns:
        True if tracing is enabled and configured, False otherwise.

    Raises:
        TracingConfigError: If ONCELY_REQUIRE_OTEL=1 and configuration fails.
    """
    global _tracer_provider, _is_configured, _test_exporter

    if not is_tracing_enabled():
        _is_configured = True
        logger.debug("OpenTelemetry tracing disabled (ONCELY_OTEL_ENABLED not set)")
        return False

    test_capture = _get_env_bool("ONCELY_OTEL_TEST_CAPTURE", False)
    if _test_exporter is not None and test_capture:
        return True

    if _is_configured and _tracer_provider is not None:
        return True

    _is_configured = True
    require_otel = _get_env_bool("ONCELY_REQUIRE_OTEL", False)

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import (
            BatchSpanProcessor,
            ConsoleSpanExporter,
            SimpleSpanProcessor,
        )

        service_name = _get_env_str("ONCELY_OTEL_SERVICE_NAME", "oncely")
        exporter_type = _get_env_str("ONCELY_OTEL_EXPORTER", "otlp")

        provider = TracerProvider(resource=Resource.create({"service.name": service_name}))

        if test_capture:
            from opentelemetry.sdk.trace.export.in_memory_span_exporter import (
                InMemorySpanExporter,
            )

            _test_exporter = InMemorySpanExporter()
            provider.add_span_processor(SimpleSpanProcessor(_test_exporter))
        elif exporter_type == "console":
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        else:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
                OTLPSpanExporter,
            )

            endpoint = _get_env_str("ONCELY_OTEL_EXPORTER_OTLP_ENDPOINT", "")
            kwargs: dict[str, Any] = {"endpoint": endpoint} if endpoint else {}
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(**kwargs)))

        trace.set_tracer_provider(provider)
        _tracer_provider = provider

        logger.info(
            "OpenTelemetry tracing configured: service=%s, exporter=%s",
            service_name,
            "in-memory" if test_capture else exporter_type,
        )
        return True

    except Exception as e:
        logger.error("Failed to configure OpenTelemetry tracing: %s", e)
        if require_otel:
            raise TracingConfigError(
                f"OpenTelemetry tracing required but configuration failed: {e}"
            ) from e
        return False


def traced_store_operation(operation: str) -> Callable[[F], F]:
    """Decorator to trace key-addressed store operations.

    The wrapped method must take the IdempotencyKey as its first argument.
    Spans are named ``oncely.store.<operation>`` and carry the scope and the
    token digest.

    Args:
        operation: Operation name (e.g. "try_claim", "complete").
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: Any, key: IdempotencyKey, *args: Any, **kwargs: Any) -> Any:
            if not is_tracing_enabled():
                return func(self, key, *args, **kwargs)

            from opentelemetry import trace

            tracer = trace.get_tracer("oncely.store")
            with tracer.start_as_current_span(f"oncely.store.{operation}") as span:
                span.set_attribute("oncely.scope", key.scope)
                span.set_attribute("oncely.token_sha256", key.token_sha256)
                span.set_attribute("oncely.store.backend", getattr(self, "backend_name", "unknown"))
                try:
                    result = func(self, key, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("oncely.error_type", type(e).__name__)
                    raise
                outcome = getattr(result, "outcome", None)
                if outcome is not None:
                    span.set_attribute("oncely.claim_outcome", str(outcome))
                return result

        return cast(F, wrapper)

    return decorator


def traced_store_sweep(operation: str) -> Callable[[F], F]:
    """Decorator to trace retention and lease sweeps.

    Sweeps are not addressed by key; the span records the number of deleted
    records as ``oncely.deleted`` instead.
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
            if not is_tracing_enabled():
                return func(self, *args, **kwargs)

            from opentelemetry import trace

            tracer = trace.get_tracer("oncely.store")
            with tracer.start_as_current_span(f"oncely.store.{operation}") as span:
                span.set_attribute("oncely.store.backend", getattr(self, "backend_name", "unknown"))
                try:
                    deleted = func(self, *args, **kwargs)
                except Exception as e:
                    span.set_attribute("oncely.error_type", type(e).__name__)
                    raise
                span.set_attribute("oncely.deleted", deleted)
                return deleted

        return cast(F, wrapper)

    return decorator


def get_test_spans() -> list[ReadableSpan]:
    """Get captured spans from in-memory exporter (for testing)."""
    if _test_exporter is not None and hasattr(_test_exporter, "get_finished_spans"):
        return list(_test_exporter.get_finished_spans())
    return []


def clear_test_spans() -> None:
    """Clear captured spans from in-memory exporter (for testing)."""
    if _test_exporter is not None and hasattr(_test_exporter, "clear"):
        _test_exporter.clear()


def reset_tracing() -> None:
    """Reset tracing configuration (for testing).

    OpenTelemetry's global TracerProvider cannot be replaced once set, so the
    in-memory exporter is kept and only its spans are cleared.
    """
    global _is_configured

    clear_test_spans()
    _is_configured = False
