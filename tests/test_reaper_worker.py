"""Tests for the background lease reaper."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from oncely.idempotency.keys import IdempotencyKey
from oncely.idempotency.store import InMemoryIdempotencyStore, StoreUnavailableError
from oncely.reaper.worker import LeaseReaper, start_reaper, stop_reaper

LEASE = timedelta(seconds=30)
RETENTION = timedelta(minutes=10)


def _populate(store, clock) -> dict[str, IdempotencyKey]:
    keys = {name: IdempotencyKey("payments", name) for name in ("crashed", "live", "done")}
    store.try_claim(keys["crashed"], "owner-1", timedelta(seconds=5), clock())
    store.try_claim(keys["done"], "owner-3", LEASE, clock())
    store.complete(keys["done"], "owner-3", b'"txn-1"', RETENTION, clock())
    clock.advance(10)
    store.try_claim(keys["live"], "owner-2", LEASE, clock())
    return keys


class TestRunOnce:
    """Single sweeps against both local backends."""

    def test_removes_only_expired_leases(self, store, clock) -> None:
        keys = _populate(store, clock)

        report = LeaseReaper(store, timedelta(seconds=15), clock=clock).run_once()

        assert report.expired_leases == 1
        assert report.expired_records == 0
        assert store.get(keys["crashed"]) is None
        assert store.get(keys["live"]) is not None
        assert store.get(keys["done"]) is not None

    def test_key_unseen_after_retention_expiry(self, store, clock) -> None:
        keys = _populate(store, clock)
        clock.advance(RETENTION.total_seconds())

        report = LeaseReaper(store, timedelta(seconds=15)).run_once(now=clock())

        assert report.expired_records == 1
        assert report.total == 3
        assert store.get(keys["done"]) is None
        assert store.try_claim(keys["done"], "owner-4", LEASE, clock()).claimed

    def test_store_failure_propagates(self, key, clock) -> None:
        class DownStore(InMemoryIdempotencyStore):
            def delete_expired_leases(self, now):
                raise StoreUnavailableError("connection refused")

        with pytest.raises(StoreUnavailableError):
            LeaseReaper(DownStore(), timedelta(seconds=1), clock=clock).run_once()


class TestReaperConfiguration:
    def test_interval_defaults_to_half_lease(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ONCELY_LEASE_SECONDS", "8")

        reaper = LeaseReaper(InMemoryIdempotencyStore())

        assert reaper._interval_seconds == 4.0

    def test_non_positive_interval_rejected(self) -> None:
        with pytest.raises(ValueError):
            LeaseReaper(InMemoryIdempotencyStore(), timedelta(0))


class TestReaperLifecycle:
    """asyncio start/stop."""

    def test_loop_sweeps_until_stopped(self, clock) -> None:
        store = InMemoryIdempotencyStore()
        store.try_claim(IdempotencyKey("payments", "crashed"), "owner-1", LEASE, clock())
        clock.advance(60)
        reaper = LeaseReaper(store, timedelta(seconds=0.01), clock=clock)

        async def run() -> None:
            await reaper.start()
            assert reaper.running
            for _ in range(100):
                if len(store) == 0:
                    break
                await asyncio.sleep(0.01)
            await reaper.stop()

        asyncio.run(run())

        assert len(store) == 0
        assert not reaper.running

    def test_loop_survives_failing_tick(self, clock) -> None:
        class FlakyStore(InMemoryIdempotencyStore):
            calls = 0

            def delete_expired_leases(self, now):
                FlakyStore.calls += 1
                if FlakyStore.calls == 1:
                    raise StoreUnavailableError("transient")
                return super().delete_expired_leases(now)

        store = FlakyStore()
        reaper = LeaseReaper(store, timedelta(seconds=0.01), clock=clock)

        async def run() -> None:
            await reaper.start()
            for _ in range(100):
                if FlakyStore.calls >= 2:
                    break
                await asyncio.sleep(0.01)
            await reaper.stop()

        asyncio.run(run())

        assert FlakyStore.calls >= 2

    def test_global_reaper_start_is_idempotent(self) -> None:
        store = InMemoryIdempotencyStore()

        async def run() -> None:
            first = await start_reaper(store, timedelta(seconds=0.05))
            second = await start_reaper(store, timedelta(seconds=0.05))
            assert first is second
            await stop_reaper()
            await stop_reaper()
            assert not first.running

        asyncio.run(run())
