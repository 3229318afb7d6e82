"""Newsletter publishing route.

POST /admin/newsletters publishes an issue.  With an idempotency key the
first response is saved and every retry with the same key gets the same
status, headers and body back, without creating a second issue.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from newsletter.api.deps import get_idempotent_executor, get_publisher_id
from newsletter.idempotency.executor import IdempotencyInProgressError, IdempotentExecutor
from newsletter.idempotency.key import IdempotencyKey, SavedResponse
from newsletter.publishing.service import IssueValidationError, publish_issue, validate_issue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["newsletters"])


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class PublishBody(BaseModel):
    title: str | None = None
    html_content: str | None = None
    text_content: str | None = None
    idempotency_key: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_response(saved: SavedResponse) -> Response:
    """Rebuild the exact saved response, header order and bytes included."""
    response = Response(content=saved.body, status_code=saved.status_code)
    raw_headers = [(name.lower().encode("latin-1"), value) for name, value in saved.headers]
    if not any(name == b"content-length" for name, _ in raw_headers):
        raw_headers.append((b"content-length", str(len(saved.body)).encode("latin-1")))
    response.raw_headers = raw_headers
    return response


def _parse_key(body_key: str | None, header_key: str | None) -> IdempotencyKey | None:
    if body_key is not None and header_key is not None and body_key != header_key:
        raise ValueError("Idempotency key in body and Idempotency-Key header differ")
    raw = body_key if body_key is not None else header_key
    if raw is None:
        return None
    return IdempotencyKey.parse(raw)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("/newsletters", summary="Publish a newsletter issue")
def publish_newsletter(
    body: PublishBody,
    publisher_id: str = Depends(get_publisher_id),
    executor: IdempotentExecutor = Depends(get_idempotent_executor),
    idempotency_key: str | None = Header(default=None),
):
    try:
        key = _parse_key(body.idempotency_key, idempotency_key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    # Content is validated inside the command: a saved response is replayed
    # as is, and a rejected request rolls back its reservation.
    def command(db):
        form = validate_issue(body.title, body.html_content, body.text_content)
        return publish_issue(db, publisher_id, form)

    try:
        saved = executor.execute(publisher_id, key, command)
    except IssueValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except IdempotencyInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except SQLAlchemyError:
        logger.exception("Storage failure while publishing for %s", publisher_id)
        raise HTTPException(status_code=500, detail="Storage unavailable")

    return _to_response(saved)
