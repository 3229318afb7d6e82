from __future__ import annotations

import base64
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    SmallInteger,
    String,
    Text,
    TypeDecorator,
    text as sql_text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from newsletter.db.base import Base

SUBSCRIPTION_PENDING = "pending_confirmation"
SUBSCRIPTION_CONFIRMED = "confirmed"

TASK_PENDING = "pending"
TASK_IN_PROGRESS = "in_progress"
TASK_FAILED_TERMINAL = "failed_terminal"

MAX_CALLER_LENGTH = 128

VALID_TASK_STATUSES: frozenset[str] = frozenset({TASK_PENDING, TASK_IN_PROGRESS, TASK_FAILED_TERMINAL})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HeaderList(TypeDecorator):
    """Ordered ``(name, raw bytes)`` header pairs, stored as JSON.

    Values are base64-encoded on the way in so arbitrary bytes survive
    the round trip unchanged.
    """

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return [[name, base64.b64encode(raw).decode("ascii")] for name, raw in value]

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return [(name, base64.b64decode(encoded)) for name, encoded in value]


class Subscriber(Base):
    """A newsletter subscriber.

    Rows are written by the sign-up and confirmation flow, which lives
    outside this service.  Delivery only reads rows whose status is
    ``confirmed``.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_status", "status"),)

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=SUBSCRIPTION_PENDING, server_default=sql_text(f"'{SUBSCRIPTION_PENDING}'")
    )
    subscribed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class NewsletterIssue(Base):
    __tablename__ = "newsletter_issues"

    newsletter_issue_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    text_content: Mapped[str] = mapped_column(Text, nullable=False)
    html_content: Mapped[str] = mapped_column(Text, nullable=False)
    published_by: Mapped[str] = mapped_column(String(MAX_CALLER_LENGTH), nullable=False)
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    delivery_tasks: Mapped[list[DeliveryTask]] = relationship(back_populates="issue")


class IdempotencyRecord(Base):
    """Saved response for a ``(caller, idempotency_key)`` pair.

    The row is inserted empty to reserve the key and filled with the
    response inside the same transaction, so a committed record always
    carries a response.  Never updated after commit.
    """

    __tablename__ = "idempotency"
    __table_args__ = (Index("ix_idempotency_created_at", "created_at"),)

    caller: Mapped[str] = mapped_column(String(MAX_CALLER_LENGTH), primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    response_status_code: Mapped[int | None] = mapped_column(SmallInteger, nullable=True)
    response_headers: Mapped[list | None] = mapped_column(HeaderList, nullable=True)
    response_body: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class DeliveryTask(Base):
    """One outbox row per (issue, recipient).

    Deleting the row is the success marker.  ``failed_terminal`` rows stay
    for operator inspection and are never picked up again.
    """

    __tablename__ = "issue_delivery_queue"
    __table_args__ = (Index("ix_issue_delivery_queue_status_execute_after", "status", "execute_after"),)

    newsletter_issue_id: Mapped[UUID] = mapped_column(
        ForeignKey("newsletter_issues.newsletter_issue_id", ondelete="CASCADE"), primary_key=True
    )
    subscriber_email: Mapped[str] = mapped_column(String(320), primary_key=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default=TASK_PENDING, server_default=sql_text(f"'{TASK_PENDING}'")
    )
    n_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=sql_text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    execute_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    locked_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    issue: Mapped[NewsletterIssue] = relationship(back_populates="delivery_tasks")
