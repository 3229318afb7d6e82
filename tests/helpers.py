"""Shared builders for the test suite."""
from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from newsletter.db.models import SUBSCRIPTION_CONFIRMED, SUBSCRIPTION_PENDING, Subscriber
from newsletter.db.repositories import NewsletterIssueRepository
from newsletter.delivery.outbox import enqueue_delivery_tasks

T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; every stored value is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class FakeClock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


def add_subscribers(db, emails, status: str = SUBSCRIPTION_CONFIRMED) -> None:
    for index, email in enumerate(emails):
        db.add(Subscriber(email=email, name=f"Subscriber {index}", status=status))
    db.flush()


def seed_issue(session_factory, emails, *, now: datetime = T0, pending=()) -> UUID:
    """Commit confirmed subscribers plus one issue with its outbox rows."""
    with session_factory() as db:
        add_subscribers(db, emails)
        if pending:
            add_subscribers(db, pending, status=SUBSCRIPTION_PENDING)
        issue = NewsletterIssueRepository(db).create(
            title="Weekly digest",
            html_content="<p>Hello</p>",
            text_content="Hello",
            published_by="publisher-1",
        )
        enqueue_delivery_tasks(db, issue.newsletter_issue_id, now=now)
        db.commit()
        return issue.newsletter_issue_id
