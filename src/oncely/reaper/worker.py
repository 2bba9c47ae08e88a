"""Background reaper for idempotency records.

Each tick removes:
- CLAIMED records whose lease expired (crashed or abandoned executions), so
  a later caller claims a fresh record instead of reclaiming a stale one.
- COMPLETED/FAILED records whose retention expired.

Neither sweep can touch a live lease or a record still inside its retention
window, so running the reaper concurrently with coordinators is safe.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from oncely.coordinator.config import load_coordinator_config
from oncely.idempotency.store import IdempotencyStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReapReport:
    """Counts removed by one reaper tick."""

    expired_leases: int
    expired_records: int

    @property
    def total(self) -> int:
        return self.expired_leases + self.expired_records


class LeaseReaper:
    """Periodic sweeper that keeps the idempotency store bounded."""

    def __init__(
        self,
        store: IdempotencyStore,
        interval: timedelta | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize reaper.

        Args:
            store: Store to sweep.
            interval: Time between ticks. If None, uses the configured reaper
                interval (half the lease duration unless overridden).
            clock: Returns the current aware datetime (default: UTC now).
        """
        if interval is None:
            interval = load_coordinator_config().effective_reaper_interval
        if interval <= timedelta(0):
            raise ValueError(f"interval must be positive, got {interval}")
        self._store = store
        self._interval_seconds = interval.total_seconds()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    def run_once(self, now: datetime | None = None) -> ReapReport:
        """Run a single sweep synchronously.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        if now is None:
            now = self._clock()
        report = ReapReport(
            expired_leases=self._store.delete_expired_leases(now),
            expired_records=self._store.delete_expired_completed(now),
        )
        if report.total:
            logger.info(
                "Reaped %d expired leases and %d expired records",
                report.expired_leases,
                report.expired_records,
                extra={"backend": self._store.backend_name},
            )
        return report

    async def start(self) -> None:
        """Start the reaper loop on the running event loop."""
        if self._running:
            logger.warning("Reaper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Lease reaper started")

    async def stop(self) -> None:
        """Stop the reaper loop."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Lease reaper stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                # Store calls block; keep them off the event loop.
                await asyncio.to_thread(self.run_once)
            except Exception as e:
                logger.error(f"Error in reaper loop: {e}", exc_info=True)

            await asyncio.sleep(self._interval_seconds)


# Global reaper instance
_reaper: LeaseReaper | None = None


async def start_reaper(
    store: IdempotencyStore, interval: timedelta | None = None
) -> LeaseReaper:
    """Start the global reaper (idempotent)."""
    global _reaper

    if _reaper is not None:
        logger.warning("Reaper already started")
        return _reaper

    _reaper = LeaseReaper(store, interval)
    await _reaper.start()
    return _reaper


async def stop_reaper() -> None:
    """Stop the global reaper."""
    global _reaper

    if _reaper is None:
        return

    await _reaper.stop()
    _reaper = None
