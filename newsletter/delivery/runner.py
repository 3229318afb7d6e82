"""Standalone delivery worker process.

Usage:
    newsletter-worker                      # uses DATABASE_URL etc. from env / .env
    python -m newsletter.delivery.runner
"""
from __future__ import annotations

import logging
import signal
from datetime import timedelta

from newsletter.core.logging import setup_logging
from newsletter.core.settings import Settings, get_settings
from newsletter.db.session import get_session_factory
from newsletter.delivery.backoff import RetryPolicy
from newsletter.delivery.gateway import build_email_gateway
from newsletter.delivery.worker import DeliveryWorkerPool

logger = logging.getLogger(__name__)


def build_worker_pool(settings: Settings, session_factory=None, gateway=None) -> DeliveryWorkerPool:
    """Assemble a :class:`DeliveryWorkerPool` from *settings*."""
    return DeliveryWorkerPool(
        session_factory or get_session_factory(),
        gateway or build_email_gateway(settings),
        worker_count=settings.delivery_worker_count,
        retry_policy=RetryPolicy(
            max_attempts=settings.delivery_max_attempts,
            base_s=settings.delivery_backoff_base_s,
            max_s=settings.delivery_backoff_max_s,
        ),
        lease=timedelta(seconds=settings.delivery_lease_s),
        poll_interval_s=settings.delivery_poll_interval_s,
        error_backoff_s=settings.delivery_error_backoff_s,
    )


def main() -> None:
    setup_logging()
    settings = get_settings()
    pool = build_worker_pool(settings)

    def _shutdown(signum, _frame) -> None:
        logger.info("Received signal %d; stopping delivery workers", signum)
        pool.request_stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    pool.start()
    pool.wait()
    pool.stop()
    logger.info("Delivery workers shut down")


if __name__ == "__main__":
    main()
