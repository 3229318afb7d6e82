"""Idempotent command executor.

Wraps a write command so that repeated invocations with the same
``(caller, idempotency_key)`` pair return the first saved response instead
of running the command again.

Flow for a keyed call
---------------------
1. ``lookup`` in a short read session; a hit is returned verbatim.
2. ``begin`` in a fresh session.  When the key is reserved, the command,
   ``complete`` and the commit all run in that one transaction: a failure
   rolls back the issue, its delivery tasks and the reservation together,
   so a retry is free to run the command again.
3. When another request already holds the key, the command is **not**
   run; the executor polls ``lookup`` with bounded backoff until the
   winner's response is durable.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy.orm import Session, sessionmaker

from newsletter.idempotency.key import IdempotencyKey, SavedResponse
from newsletter.idempotency.store import IdempotencyStore, ReservationStatus

logger = logging.getLogger(__name__)

Command = Callable[[Session], SavedResponse]

_MAX_POLL_INTERVAL_S = 1.0


class IdempotencyInProgressError(RuntimeError):
    """Raised when a concurrent request with the same key did not finish in time."""


class IdempotentExecutor:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        wait_timeout_s: float = 5.0,
        poll_interval_s: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.wait_timeout_s = wait_timeout_s
        self.poll_interval_s = poll_interval_s
        self._sleep = sleep

    def execute(self, caller: str, key: IdempotencyKey | None, command: Command) -> SavedResponse:
        """Run *command* at most once for *caller*/*key* and return its response."""
        if key is None:
            return self._run_in_transaction(command)

        saved = self._lookup(caller, key)
        if saved is not None:
            logger.info("Replaying saved response: caller=%s status=%d", caller, saved.status_code)
            return saved

        with self.session_factory() as db:
            try:
                store = IdempotencyStore(db)
                if store.begin(caller, key) is ReservationStatus.RESERVED:
                    response = command(db)
                    store.complete(caller, key, response)
                    db.commit()
                    return response
            except Exception:
                db.rollback()
                raise

        return self._wait_for_saved_response(caller, key)

    def _run_in_transaction(self, command: Command) -> SavedResponse:
        with self.session_factory() as db:
            try:
                response = command(db)
                db.commit()
            except Exception:
                db.rollback()
                raise
        return response

    def _lookup(self, caller: str, key: IdempotencyKey) -> SavedResponse | None:
        with self.session_factory() as db:
            return IdempotencyStore(db).lookup(caller, key)

    def _wait_for_saved_response(self, caller: str, key: IdempotencyKey) -> SavedResponse:
        deadline = time.monotonic() + self.wait_timeout_s
        interval = self.poll_interval_s
        while True:
            saved = self._lookup(caller, key)
            if saved is not None:
                logger.info("Concurrent request finished first; replaying: caller=%s", caller)
                return saved

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise IdempotencyInProgressError(
                    f"A request with idempotency key {key.value!r} is still in progress"
                )
            self._sleep(min(interval, remaining))
            interval = min(interval * 2, _MAX_POLL_INTERVAL_S)
