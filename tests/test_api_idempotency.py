"""Tests for the FastAPI idempotency adapter.

Tests cover:
A) Replay returns identical body with X-Idempotency-Replay: true
B) Missing/blank Idempotency-Key returns 400
C) Coordinator error kinds map to HTTP status codes
D) Store unavailability fails closed with 503
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from oncely.api.idempotency import (
    IDEMPOTENCY_KEY_HEADER,
    IDEMPOTENCY_REPLAY_HEADER,
    IdempotencyHttpError,
    execute_idempotent,
    idempotency_http_error_handler,
    idempotency_key_from_request,
    status_code_for_error,
)
from oncely.coordinator.config import CoordinatorConfig, FailurePolicy
from oncely.coordinator.coordinator import IdempotencyCoordinator
from oncely.coordinator.results import CoordinatorError, Err, ErrorKind, Ok
from oncely.idempotency.keys import IdempotencyKey
from oncely.idempotency.store import (
    IdempotencyStore,
    InMemoryIdempotencyStore,
    StoreUnavailableError,
)


@dataclass
class PaymentsApp:
    client: TestClient
    store: IdempotencyStore
    charges: list[dict[str, Any]] = field(default_factory=list)
    refunds: list[dict[str, Any]] = field(default_factory=list)


def _create_app(store: IdempotencyStore, clock: Any) -> PaymentsApp:
    coordinator = IdempotencyCoordinator(store, CoordinatorConfig(), clock=clock, sleep=clock.sleep)
    app = FastAPI()
    app.add_exception_handler(IdempotencyHttpError, idempotency_http_error_handler)
    harness = PaymentsApp(client=TestClient(app), store=store)

    @app.post("/v1/charges")
    async def create_charge(request: Request) -> JSONResponse:
        body = await request.json()

        def charge() -> Ok[dict[str, Any]] | Err[dict[str, str]]:
            harness.charges.append(body)
            if body["amount"] <= 0:
                return Err({"code": "invalid_amount"})
            return Ok({"txn": f"txn-{len(harness.charges)}", "amount": body["amount"]})

        return await execute_idempotent(
            request, coordinator, "payments", charge, success_status=201
        )

    @app.post("/v1/refunds")
    async def create_refund(request: Request) -> JSONResponse:
        body = await request.json()

        def refund() -> Ok[dict[str, Any]] | Err[dict[str, str]]:
            harness.refunds.append(body)
            if len(harness.refunds) == 1:
                return Err({"code": "processor_busy"})
            return Ok({"refund": f"rf-{len(harness.refunds)}"})

        return await execute_idempotent(
            request,
            coordinator,
            "refunds",
            refund,
            failure_policy=FailurePolicy.RETRY_FAILURES,
        )

    @app.get("/v1/keys/echo")
    async def echo_key(request: Request) -> dict[str, str]:
        key = idempotency_key_from_request(request, "payments")
        return {"scope": key.scope, "token": key.token}

    return harness


@pytest.fixture
def payments(clock) -> PaymentsApp:
    return _create_app(InMemoryIdempotencyStore(), clock)


class TestReplay:
    def test_duplicate_request_replays_response(self, payments: PaymentsApp) -> None:
        headers = {IDEMPOTENCY_KEY_HEADER: "abc123"}

        first = payments.client.post("/v1/charges", json={"amount": 500}, headers=headers)
        second = payments.client.post("/v1/charges", json={"amount": 500}, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 201
        assert first.json() == {"txn": "txn-1", "amount": 500}
        assert second.content == first.content
        assert IDEMPOTENCY_REPLAY_HEADER not in first.headers
        assert second.headers[IDEMPOTENCY_REPLAY_HEADER] == "true"
        assert len(payments.charges) == 1

    def test_different_keys_execute_separately(self, payments: PaymentsApp) -> None:
        a = payments.client.post(
            "/v1/charges", json={"amount": 1}, headers={IDEMPOTENCY_KEY_HEADER: "a"}
        )
        b = payments.client.post(
            "/v1/charges", json={"amount": 1}, headers={IDEMPOTENCY_KEY_HEADER: "b"}
        )

        assert a.json()["txn"] == "txn-1"
        assert b.json()["txn"] == "txn-2"

    def test_operation_error_is_422_and_cached(self, payments: PaymentsApp) -> None:
        headers = {IDEMPOTENCY_KEY_HEADER: "bad-charge"}

        first = payments.client.post("/v1/charges", json={"amount": 0}, headers=headers)
        second = payments.client.post("/v1/charges", json={"amount": 0}, headers=headers)

        assert first.status_code == 422
        assert first.json()["code"] == "OPERATION_ERROR"
        assert first.json()["details"] == {"operation_error": {"code": "invalid_amount"}}
        assert second.status_code == 422
        assert second.headers[IDEMPOTENCY_REPLAY_HEADER] == "true"
        assert len(payments.charges) == 1

    def test_route_failure_policy_override_retries(self, payments: PaymentsApp) -> None:
        headers = {IDEMPOTENCY_KEY_HEADER: "rf-1"}

        first = payments.client.post("/v1/refunds", json={"amount": 100}, headers=headers)
        second = payments.client.post("/v1/refunds", json={"amount": 100}, headers=headers)
        third = payments.client.post("/v1/refunds", json={"amount": 100}, headers=headers)

        assert first.status_code == 422
        assert second.status_code == 200
        assert second.json() == {"refund": "rf-2"}
        assert third.json() == {"refund": "rf-2"}
        assert third.headers[IDEMPOTENCY_REPLAY_HEADER] == "true"
        assert len(payments.refunds) == 2


class TestInvalidKey:
    def test_missing_header_is_400(self, payments: PaymentsApp) -> None:
        response = payments.client.post("/v1/charges", json={"amount": 500})

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_IDEMPOTENCY_KEY"
        assert payments.charges == []

    def test_empty_header_is_400(self, payments: PaymentsApp) -> None:
        response = payments.client.post(
            "/v1/charges", json={"amount": 500}, headers={IDEMPOTENCY_KEY_HEADER: ""}
        )

        assert response.status_code == 400

    def test_exception_handler_renders_key_errors(self, payments: PaymentsApp) -> None:
        ok = payments.client.get("/v1/keys/echo", headers={"idempotency-key": "abc123"})
        missing = payments.client.get("/v1/keys/echo")

        assert ok.json() == {"scope": "payments", "token": "abc123"}
        assert missing.status_code == 400
        assert missing.json()["code"] == "INVALID_IDEMPOTENCY_KEY"


class TestErrorMapping:
    def test_in_progress_key_is_409(self, payments: PaymentsApp, clock) -> None:
        payments.store.try_claim(
            IdempotencyKey("payments", "busy"), "other", timedelta(seconds=30), clock()
        )

        response = payments.client.post(
            "/v1/charges", json={"amount": 500}, headers={IDEMPOTENCY_KEY_HEADER: "busy"}
        )

        assert response.status_code == 409
        assert response.json()["code"] == "CONFLICT"
        assert payments.charges == []

    def test_store_outage_is_503(self, clock) -> None:
        class DownStore(InMemoryIdempotencyStore):
            def try_claim(self, *args, **kwargs):
                raise StoreUnavailableError("connection refused")

        payments = _create_app(DownStore(), clock)

        response = payments.client.post(
            "/v1/charges", json={"amount": 500}, headers={IDEMPOTENCY_KEY_HEADER: "abc123"}
        )

        assert response.status_code == 503
        assert response.json()["code"] == "STORE_UNAVAILABLE"

    @pytest.mark.parametrize(
        ("kind", "status"),
        [
            (ErrorKind.CONFLICT, 409),
            (ErrorKind.TIMEOUT, 504),
            (ErrorKind.LEASE_LOST, 500),
            (ErrorKind.STORE_UNAVAILABLE, 503),
            (ErrorKind.OPERATION_ERROR, 422),
        ],
    )
    def test_status_code_for_error(self, kind: ErrorKind, status: int) -> None:
        assert status_code_for_error(CoordinatorError(kind, "x")) == status
