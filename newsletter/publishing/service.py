"""Publish-issue command.

Creates the ``NewsletterIssue`` and its outbox rows in the caller's
transaction and returns the HTTP response to save for replays.  Publish
success means "accepted and durably enqueued", not "delivered".

Validation happens in :func:`validate_issue` before any write, so a
rejected request leaves no state behind and can be retried with
corrected input.
"""
from __future__ import annotations

import json
import logging

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.orm import Session

from newsletter.db.repositories import NewsletterIssueRepository
from newsletter.delivery.outbox import enqueue_delivery_tasks
from newsletter.idempotency.key import SavedResponse

logger = logging.getLogger(__name__)

class IssueValidationError(ValueError):
    """Raised for malformed issue content."""


class IssueForm(BaseModel):
    title: str = Field(max_length=256)
    html_content: str
    text_content: str

    @field_validator("title", "html_content", "text_content")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


def validate_issue(
    title: str | None,
    html_content: str | None,
    text_content: str | None,
) -> IssueForm:
    """Return a validated :class:`IssueForm` or raise :class:`IssueValidationError`."""
    missing = [
        name
        for name, value in (("title", title), ("html_content", html_content), ("text_content", text_content))
        if value is None
    ]
    if missing:
        raise IssueValidationError(f"Missing field(s): {', '.join(missing)}")
    try:
        return IssueForm(title=title, html_content=html_content, text_content=text_content)
    except ValidationError as exc:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
        raise IssueValidationError(problems) from exc


def publish_issue(db_session: Session, caller: str, form: IssueForm) -> SavedResponse:
    """Insert the issue, enqueue one delivery task per confirmed subscriber.

    Flushes but does **not** commit.
    """
    issue = NewsletterIssueRepository(db_session).create(
        title=form.title,
        html_content=form.html_content,
        text_content=form.text_content,
        published_by=caller,
    )
    enqueued = enqueue_delivery_tasks(db_session, issue.newsletter_issue_id)
    logger.info(
        "Published issue %s by %s; %d delivery tasks enqueued",
        issue.newsletter_issue_id,
        caller,
        enqueued,
    )

    body = json.dumps(
        {
            "newsletter_issue_id": str(issue.newsletter_issue_id),
            "enqueued": enqueued,
            "message": "The newsletter issue has been accepted and will be delivered shortly.",
        }
    ).encode("utf-8")
    return SavedResponse(
        status_code=200,
        headers=[("content-type", b"application/json")],
        body=body,
    )
