"""Lease heartbeat for long-running operations.

Renews the owner's lease on a background thread so a slow but healthy
operation is not mistaken for a crashed one and reclaimed. The interval must
stay below half the lease duration so one missed renewal does not let the
lease lapse.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from types import TracebackType

from oncely.idempotency.keys import IdempotencyKey
from oncely.idempotency.store import IdempotencyStore, LeaseLostError, StoreUnavailableError

logger = logging.getLogger(__name__)


class LeaseHeartbeat:
    """Background lease renewal for one claimed key.

    If a renewal reports the lease lost, the heartbeat stops and sets
    cancel_event (when given) so a cooperative operation can stop early.
    Transient store failures are logged and retried on the next tick.
    """

    def __init__(
        self,
        store: IdempotencyStore,
        key: IdempotencyKey,
        owner_token: str,
        lease_duration: timedelta,
        interval: timedelta,
        clock: Callable[[], datetime],
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._store = store
        self._key = key
        self._owner_token = owner_token
        self._lease_duration = lease_duration
        self._interval_seconds = interval.total_seconds()
        self._clock = clock
        self._cancel_event = cancel_event
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.lost = False
        self.renewals = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"oncely-heartbeat-{self._key.scope}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def beat(self) -> bool:
        """Renew once. Returns False once the lease is known to be lost."""
        now = self._clock()
        try:
            self._store.renew_lease(
                self._key, self._owner_token, now + self._lease_duration, now
            )
        except LeaseLostError as e:
            self.lost = True
            logger.warning(
                "Lease lost during heartbeat for %s: %s",
                self._key,
                e.reason,
                extra={"scope": self._key.scope, "owner_token": self._owner_token},
            )
            if self._cancel_event is not None:
                self._cancel_event.set()
            return False
        except StoreUnavailableError as e:
            logger.warning("Lease renewal failed for %s, will retry: %s", self._key, e)
            return True
        self.renewals += 1
        return True

    def _run(self) -> None:
        while not self._stop.wait(self._interval_seconds):
            if not self.beat():
                return

    def __enter__(self) -> LeaseHeartbeat:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop()
