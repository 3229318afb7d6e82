"""FastAPI application factory.

Assembles the publishing, delivery-inspection and health routers.
newsletter/main.py re-exports the app object defined here.

Background work started by the lifespan:

- the idempotency retention sweep (always)
- an in-process delivery worker pool (``DELIVERY_WORKERS_IN_PROCESS=true``);
  production runs the workers as a separate ``newsletter-worker`` process
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from sqlalchemy.exc import SQLAlchemyError

from newsletter.api.routes.deliveries import router as deliveries_router
from newsletter.api.routes.health import router as health_router
from newsletter.api.routes.newsletters import router as newsletters_router
from newsletter.core.logging import setup_logging
from newsletter.core.settings import get_settings
from newsletter.db.models import utcnow
from newsletter.db.session import get_session_factory
from newsletter.delivery.runner import build_worker_pool
from newsletter.idempotency.store import IdempotencyStore

logger = logging.getLogger(__name__)


def prune_idempotency_records(retention: timedelta) -> int:
    """Delete idempotency records older than *retention*; return how many."""
    with get_session_factory()() as db:
        try:
            removed = IdempotencyStore(db).prune(utcnow() - retention)
            db.commit()
        except Exception:
            db.rollback()
            raise
    if removed:
        logger.info("Pruned %d expired idempotency records", removed)
    return removed


async def _sweep_expired_idempotency_records() -> None:
    """Periodically prune idempotency records past the retention window."""
    settings = get_settings()
    retention = timedelta(hours=settings.idempotency_retention_hours)
    while True:
        await asyncio.sleep(settings.idempotency_sweep_interval_s)
        try:
            await asyncio.to_thread(prune_idempotency_records, retention)
        except SQLAlchemyError:
            logger.exception("Idempotency retention sweep failed")


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    settings = get_settings()
    task = asyncio.create_task(_sweep_expired_idempotency_records())

    pool = None
    if settings.delivery_workers_in_process:
        pool = build_worker_pool(settings)
        pool.start()

    yield

    if pool is not None:
        await asyncio.to_thread(pool.stop)
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(newsletters_router)
app.include_router(deliveries_router)
