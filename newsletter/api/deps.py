"""FastAPI dependency injection: database sessions, caller identity, executor."""
from __future__ import annotations

from collections.abc import Generator

from fastapi import Header, HTTPException
from sqlalchemy.orm import Session

from newsletter.core.settings import get_settings
from newsletter.db.models import MAX_CALLER_LENGTH
from newsletter.db.session import get_session_factory
from newsletter.idempotency.executor import IdempotentExecutor


def get_db() -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    db = get_session_factory()()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_publisher_id(x_publisher_id: str | None = Header(default=None)) -> str:
    """Return the authenticated publisher set by the upstream auth layer.

    Authentication itself (sessions, passwords) happens before requests
    reach this service; it forwards the identity in ``X-Publisher-Id``.
    """
    if x_publisher_id is None or not x_publisher_id.strip():
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": 'Basic realm="publish"'},
        )
    publisher_id = x_publisher_id.strip()
    if len(publisher_id) > MAX_CALLER_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"X-Publisher-Id must be at most {MAX_CALLER_LENGTH} characters",
        )
    return publisher_id


def get_idempotent_executor() -> IdempotentExecutor:
    """Return an executor bound to the application session factory."""
    settings = get_settings()
    return IdempotentExecutor(
        get_session_factory(),
        wait_timeout_s=settings.idempotency_wait_timeout_s,
        poll_interval_s=settings.idempotency_poll_interval_s,
    )
