"""Operator inspection of the delivery outbox."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from newsletter.api.deps import get_db, get_publisher_id
from newsletter.core.logging import mask_email
from newsletter.db.models import DeliveryTask
from newsletter.delivery.outbox import count_tasks_by_status, list_failed_tasks

router = APIRouter(prefix="/admin/deliveries", tags=["deliveries"], dependencies=[Depends(get_publisher_id)])


def _serialize_task(task: DeliveryTask) -> dict:
    return {
        "newsletter_issue_id": str(task.newsletter_issue_id),
        "recipient": mask_email(task.subscriber_email),
        "status": task.status,
        "n_attempts": task.n_attempts,
        "last_error": task.last_error,
        "created_at": task.created_at.isoformat() if task.created_at else None,
    }


@router.get("/stats", summary="Outbox task counts per status")
def delivery_stats(db: Session = Depends(get_db)):
    return count_tasks_by_status(db)


@router.get("/failed", summary="Tasks that failed terminally")
def failed_deliveries(
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    return [_serialize_task(t) for t in list_failed_tasks(db, limit=limit, offset=offset)]
