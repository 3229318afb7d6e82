"""Idempotency store: saved responses keyed by ``(caller, idempotency_key)``.

``begin`` reserves a key by inserting an empty ``IdempotencyRecord`` row in
the caller's transaction.  The primary key makes the reservation atomic:
on PostgreSQL a concurrent insert for the same key blocks until the first
transaction finishes, then fails with a unique violation.  ``complete``
fills the reserved row before the caller commits, so readers never see a
record without a response.

Flushes but does **not** commit; the caller controls the transaction
boundary (except for ``begin``, which rolls back on conflict).
"""
from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from newsletter.db.models import IdempotencyRecord, utcnow
from newsletter.idempotency.key import IdempotencyKey, SavedResponse

logger = logging.getLogger(__name__)


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    ALREADY_STARTED = "already_started"


class IdempotencyStore:
    def __init__(self, db_session: Session) -> None:
        self.db = db_session

    def lookup(self, caller: str, key: IdempotencyKey) -> SavedResponse | None:
        """Return the saved response for *caller*/*key*, or ``None``."""
        stmt = (
            select(IdempotencyRecord)
            .where(
                IdempotencyRecord.caller == caller,
                IdempotencyRecord.idempotency_key == key.value,
            )
            .execution_options(populate_existing=True)
        )
        record = self.db.execute(stmt).scalar_one_or_none()
        if record is None or record.response_status_code is None:
            return None
        return SavedResponse(
            status_code=record.response_status_code,
            headers=list(record.response_headers or []),
            body=record.response_body or b"",
        )

    def begin(self, caller: str, key: IdempotencyKey) -> ReservationStatus:
        """Reserve *key* for *caller* inside the current transaction."""
        try:
            self.db.execute(
                insert(IdempotencyRecord).values(
                    caller=caller,
                    idempotency_key=key.value,
                    created_at=utcnow(),
                )
            )
        except IntegrityError:
            self.db.rollback()
            logger.info("Idempotency key already started: caller=%s", caller)
            return ReservationStatus.ALREADY_STARTED
        return ReservationStatus.RESERVED

    def complete(self, caller: str, key: IdempotencyKey, response: SavedResponse) -> None:
        """Persist *response* into the row reserved by :meth:`begin`."""
        record = self.db.get(IdempotencyRecord, (caller, key.value))
        if record is None:
            raise KeyError(f"No reservation for idempotency key {key.value!r}")
        if record.response_status_code is not None:
            raise ValueError(f"Idempotency key {key.value!r} already has a saved response")

        record.response_status_code = response.status_code
        record.response_headers = list(response.headers)
        record.response_body = response.body
        self.db.flush()

    def prune(self, older_than: datetime) -> int:
        """Delete records created before *older_than*; return how many."""
        result = self.db.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.created_at < older_than)
        )
        return result.rowcount or 0
