"""Tests for OpenTelemetry store spans.

- Tracing OFF by default, ON via ONCELY_OTEL_ENABLED=1
- Store operations emit oncely.store.<operation> spans
- Spans carry the scope and token digest, never the raw token
- Tests use the in-memory exporter (no external collector required)
"""

from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta

import pytest

from oncely.coordinator.config import CoordinatorConfig
from oncely.coordinator.coordinator import IdempotencyCoordinator
from oncely.coordinator.results import Ok
from oncely.idempotency.keys import IdempotencyKey
from oncely.observability.tracing import (
    clear_test_spans,
    configure_tracing,
    get_test_spans,
    reset_tracing,
)

SECRET_TOKEN = "tok-4f9a-secret"
RETENTION = timedelta(hours=1)


@pytest.fixture(autouse=True)
def reset_tracing_state() -> Generator[None, None, None]:
    reset_tracing()
    yield
    reset_tracing()


@pytest.fixture
def capture(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ONCELY_OTEL_ENABLED", "1")
    monkeypatch.setenv("ONCELY_OTEL_TEST_CAPTURE", "1")
    assert configure_tracing() is True
    clear_test_spans()


class TestTracingConfiguration:
    def test_tracing_disabled_by_default(self, memory_store, clock) -> None:
        assert configure_tracing() is False

        key = IdempotencyKey("payments", SECRET_TOKEN)
        memory_store.try_claim(key, "owner-1", CoordinatorConfig().lease_duration, clock())

        assert get_test_spans() == []


class TestStoreSpans:
    def test_claim_span_attributes(self, capture: None, store, clock) -> None:
        key = IdempotencyKey("payments", SECRET_TOKEN)

        store.try_claim(key, "owner-1", CoordinatorConfig().lease_duration, clock())

        spans = [s for s in get_test_spans() if s.name == "oncely.store.try_claim"]
        assert len(spans) == 1
        attributes = dict(spans[0].attributes or {})
        assert attributes["oncely.scope"] == "payments"
        assert attributes["oncely.token_sha256"] == key.token_sha256
        assert attributes["oncely.store.backend"] == store.backend_name
        assert attributes["oncely.claim_outcome"] == "claimed"

    def test_execute_emits_claim_and_complete(self, capture: None, memory_store, clock) -> None:
        coordinator = IdempotencyCoordinator(
            memory_store, CoordinatorConfig(), clock=clock, sleep=clock.sleep
        )

        coordinator.execute(IdempotencyKey("payments", SECRET_TOKEN), lambda: Ok("txn-1"))

        names = [s.name for s in get_test_spans()]
        assert names == ["oncely.store.try_claim", "oncely.store.complete"]

    def test_sweeps_emit_spans_with_deleted_count(self, capture: None, store, clock) -> None:
        key = IdempotencyKey("payments", SECRET_TOKEN)
        store.try_claim(key, "owner-1", timedelta(seconds=5), clock())
        clock.advance(10)
        clear_test_spans()

        store.delete_expired_leases(clock())
        store.delete_expired_completed(clock())

        spans = {s.name: dict(s.attributes or {}) for s in get_test_spans()}
        assert spans["oncely.store.delete_expired_leases"]["oncely.deleted"] == 1
        assert spans["oncely.store.delete_expired_completed"]["oncely.deleted"] == 0
        assert spans["oncely.store.delete_expired_leases"]["oncely.store.backend"] == (
            store.backend_name
        )

    def test_raw_token_never_exported(self, capture: None, memory_store, clock) -> None:
        coordinator = IdempotencyCoordinator(
            memory_store, CoordinatorConfig(), clock=clock, sleep=clock.sleep
        )
        key = IdempotencyKey("payments", SECRET_TOKEN)

        coordinator.execute(key, lambda: Ok("txn-1"))
        coordinator.execute(key, lambda: Ok("txn-2"))

        for span in get_test_spans():
            for value in (span.attributes or {}).values():
                assert SECRET_TOKEN not in str(value)

    def test_lease_lost_marks_error_type(self, capture: None, memory_store, clock) -> None:
        from oncely.idempotency.store import LeaseLostError

        key = IdempotencyKey("payments", SECRET_TOKEN)

        with pytest.raises(LeaseLostError):
            memory_store.complete(key, "nobody", b"1", RETENTION, clock())

        span = get_test_spans()[-1]
        assert span.name == "oncely.store.complete"
        assert dict(span.attributes or {})["oncely.error_type"] == "LeaseLostError"
