"""Pytest configuration and fixtures for Oncely tests.

This module provides common fixtures and configuration for all tests.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Generator
from datetime import UTC, datetime, timedelta

import pytest

from oncely.idempotency.keys import IdempotencyKey
from oncely.idempotency.sqlite_store import SqliteIdempotencyStore
from oncely.idempotency.store import IdempotencyStore, InMemoryIdempotencyStore

EPOCH = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock; also usable as the coordinator's sleep."""

    def __init__(self, start: datetime = EPOCH) -> None:
        self._now = start
        self._lock = threading.Lock()
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@pytest.fixture(autouse=True)
def clean_oncely_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove ONCELY_* variables so configuration defaults apply in every test.

    Postgres connection variables are kept so integration tests can opt in.
    """
    for name in list(os.environ):
        if name.startswith("ONCELY_") and not name.startswith("ONCELY_DATABASE"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def key() -> IdempotencyKey:
    return IdempotencyKey(scope="payments", token="abc123")


@pytest.fixture
def memory_store() -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore()


@pytest.fixture
def sqlite_store() -> Generator[SqliteIdempotencyStore, None, None]:
    """In-memory SQLite store (disk-safe)."""
    store = SqliteIdempotencyStore(in_memory=True)
    yield store
    store.close()


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest) -> Generator[IdempotencyStore, None, None]:
    """Every local backend; contract tests run once per backend."""
    if request.param == "memory":
        yield InMemoryIdempotencyStore()
        return
    sqlite = SqliteIdempotencyStore(in_memory=True)
    yield sqlite
    sqlite.close()
