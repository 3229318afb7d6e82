"""Delivery outbox: the ``issue_delivery_queue`` table.

``enqueue_delivery_tasks`` runs inside the transaction that inserts the
issue, so an issue never exists with a partial set of tasks.  It copies
the subscribers confirmed *at that moment* with one ``INSERT ... SELECT``;
subscribers confirmed later are never added to an existing issue.

Flushes but does **not** commit.  The caller controls the transaction
boundary.
"""
from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, Integer, String, Uuid, func, insert, literal, select
from sqlalchemy.orm import Session

from newsletter.db.models import (
    SUBSCRIPTION_CONFIRMED,
    TASK_FAILED_TERMINAL,
    TASK_PENDING,
    VALID_TASK_STATUSES,
    DeliveryTask,
    Subscriber,
    utcnow,
)


def enqueue_delivery_tasks(
    db_session: Session,
    newsletter_issue_id: UUID,
    now: datetime | None = None,
) -> int:
    """Insert one ``pending`` task per confirmed subscriber; return the count."""
    now = now or utcnow()
    confirmed = select(
        literal(newsletter_issue_id, Uuid()),
        Subscriber.email,
        literal(TASK_PENDING, String()),
        literal(0, Integer()),
        literal(now, DateTime(timezone=True)),
        literal(now, DateTime(timezone=True)),
    ).where(Subscriber.status == SUBSCRIPTION_CONFIRMED)

    result = db_session.execute(
        insert(DeliveryTask).from_select(
            [
                "newsletter_issue_id",
                "subscriber_email",
                "status",
                "n_attempts",
                "execute_after",
                "created_at",
            ],
            confirmed,
        )
    )
    return result.rowcount or 0


def count_tasks_by_status(db_session: Session, newsletter_issue_id: UUID | None = None) -> dict[str, int]:
    """Return ``{status: count}`` with every known status present."""
    stmt = select(DeliveryTask.status, func.count()).group_by(DeliveryTask.status)
    if newsletter_issue_id is not None:
        stmt = stmt.where(DeliveryTask.newsletter_issue_id == newsletter_issue_id)
    counts = {status: 0 for status in sorted(VALID_TASK_STATUSES)}
    for status, count in db_session.execute(stmt).all():
        counts[status] = count
    return counts


def list_failed_tasks(db_session: Session, limit: int = 100, offset: int = 0) -> list[DeliveryTask]:
    """Return ``failed_terminal`` tasks for operator inspection, oldest first."""
    stmt = (
        select(DeliveryTask)
        .where(DeliveryTask.status == TASK_FAILED_TERMINAL)
        .order_by(DeliveryTask.created_at.asc())
        .offset(offset)
        .limit(limit)
    )
    return list(db_session.execute(stmt).scalars().all())
