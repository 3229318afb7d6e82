"""Delivery worker: drains the outbox one task at a time.

Each iteration
--------------
1. **Claim** (short transaction): pick one eligible task with
   ``SELECT ... FOR UPDATE SKIP LOCKED``, mark it ``in_progress`` with a
   lease (``locked_by`` / ``locked_until``), count the attempt, commit.
   Eligible means ``pending`` and due (``execute_after <= now``), or
   ``in_progress`` with an expired lease (the previous owner crashed or
   stalled).  An expired task whose abandoned attempt was its last one is
   marked ``failed_terminal`` here instead of being sent again.
   Losing the claim to another worker reports ``CLAIM_CONFLICT`` so the
   loop tries again without idling.
2. **Send** outside any transaction or lock.
3. **Record** (short transaction), guarded by ``locked_by``:

   - OK                         delete the task
   - transient, attempts left   back to ``pending`` with ``execute_after``
                                pushed out by the retry policy
   - transient, exhausted       ``failed_terminal``
   - permanent                  ``failed_terminal`` immediately

   If the lease was lost meanwhile, the row belongs to another worker and
   is left alone.

The attempt is counted at claim time, so an attempt that crashed the
worker still counts toward ``max_attempts``.

Mutual exclusion lives entirely in the database.  Workers share nothing
in process except the engine's connection pool.
"""
from __future__ import annotations

import logging
import os
import socket
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from newsletter.core.logging import mask_email
from newsletter.db.models import (
    TASK_FAILED_TERMINAL,
    TASK_IN_PROGRESS,
    TASK_PENDING,
    DeliveryTask,
    NewsletterIssue,
    utcnow,
)
from newsletter.delivery.backoff import RetryPolicy
from newsletter.delivery.gateway import EmailGateway, SendOutcome, SendResult

logger = logging.getLogger(__name__)

_MAX_ERROR_LENGTH = 2000
_LEASE_EXPIRED_ON_FINAL_ATTEMPT = "lease expired on final attempt"


class ExecutionOutcome(str, Enum):
    TASK_COMPLETED = "task_completed"
    EMPTY_QUEUE = "empty_queue"
    CLAIM_CONFLICT = "claim_conflict"


@dataclass(frozen=True, slots=True)
class ClaimedTask:
    newsletter_issue_id: UUID
    subscriber_email: str
    n_attempts: int
    title: str
    html_content: str
    text_content: str


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class DeliveryWorker:
    """One delivery loop.  Thread-safe only in the sense that each thread
    should own its own ``DeliveryWorker``; the session factory is shared.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: EmailGateway,
        *,
        retry_policy: RetryPolicy | None = None,
        lease: timedelta = timedelta(seconds=60),
        worker_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.retry_policy = retry_policy or RetryPolicy()
        self.lease = lease
        self.worker_id = worker_id or default_worker_id()
        self._clock = clock

    # -- single iteration ---------------------------------------------------

    def try_execute_task(self) -> ExecutionOutcome:
        """Claim, send and record one task.  Storage errors propagate."""
        claimed = self._claim_task()
        if isinstance(claimed, ExecutionOutcome):
            return claimed

        result = self.gateway.send(
            claimed.subscriber_email,
            claimed.title,
            claimed.html_content,
            claimed.text_content,
        )
        self._record_result(claimed, result)
        return ExecutionOutcome.TASK_COMPLETED

    # -- claim --------------------------------------------------------------

    def _claim_task(self) -> ClaimedTask | ExecutionOutcome:
        with self.session_factory() as db:
            try:
                claimed = self._claim_in_session(db)
                db.commit()
            except Exception:
                db.rollback()
                raise
        return claimed

    def _select_eligible(self, db: Session, eligible) -> DeliveryTask | None:
        stmt = (
            select(DeliveryTask)
            .where(eligible)
            .order_by(DeliveryTask.execute_after.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        return db.execute(stmt).scalar_one_or_none()

    def _claim_in_session(self, db: Session) -> ClaimedTask | ExecutionOutcome:
        now = self._clock()
        eligible = or_(
            and_(DeliveryTask.status == TASK_PENDING, DeliveryTask.execute_after <= now),
            and_(DeliveryTask.status == TASK_IN_PROGRESS, DeliveryTask.locked_until < now),
        )
        task = self._select_eligible(db, eligible)
        if task is None:
            return ExecutionOutcome.EMPTY_QUEUE

        # Compare-and-set on the eligibility predicate: on backends without
        # row locks (SQLite) a concurrent claim makes these updates a no-op.
        same_row = and_(
            DeliveryTask.newsletter_issue_id == task.newsletter_issue_id,
            DeliveryTask.subscriber_email == task.subscriber_email,
            eligible,
        )
        recipient = mask_email(task.subscriber_email)

        if task.status == TASK_IN_PROGRESS and self.retry_policy.is_exhausted(task.n_attempts):
            # The abandoned attempt was the last one allowed.
            result = db.execute(
                update(DeliveryTask)
                .where(same_row)
                .values(
                    status=TASK_FAILED_TERMINAL,
                    last_error=_LEASE_EXPIRED_ON_FINAL_ATTEMPT,
                    locked_by=None,
                    locked_until=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return ExecutionOutcome.CLAIM_CONFLICT
            logger.error(
                "Delivery failed terminally: issue=%s recipient=%s attempt=%d outcome=lease_expired previous_owner=%s",
                task.newsletter_issue_id,
                recipient,
                task.n_attempts,
                task.locked_by,
            )
            return ExecutionOutcome.TASK_COMPLETED

        if task.status == TASK_IN_PROGRESS:
            logger.warning(
                "Reclaiming task with expired lease: issue=%s recipient=%s previous_owner=%s",
                task.newsletter_issue_id,
                recipient,
                task.locked_by,
            )

        result = db.execute(
            update(DeliveryTask)
            .where(same_row)
            .values(
                status=TASK_IN_PROGRESS,
                locked_by=self.worker_id,
                locked_until=now + self.lease,
                n_attempts=DeliveryTask.n_attempts + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug("Lost claim race for issue=%s recipient=%s", task.newsletter_issue_id, recipient)
            return ExecutionOutcome.CLAIM_CONFLICT

        issue = db.get(NewsletterIssue, task.newsletter_issue_id)
        if issue is None:
            raise LookupError(f"Newsletter issue {task.newsletter_issue_id} not found")

        return ClaimedTask(
            newsletter_issue_id=task.newsletter_issue_id,
            subscriber_email=task.subscriber_email,
            n_attempts=task.n_attempts + 1,
            title=issue.title,
            html_content=issue.html_content,
            text_content=issue.text_content,
        )

    # -- record -------------------------------------------------------------

    def _record_result(self, task: ClaimedTask, result: SendResult) -> None:
        owned = and_(
            DeliveryTask.newsletter_issue_id == task.newsletter_issue_id,
            DeliveryTask.subscriber_email == task.subscriber_email,
            DeliveryTask.status == TASK_IN_PROGRESS,
            DeliveryTask.locked_by == self.worker_id,
        )
        recipient = mask_email(task.subscriber_email)

        if result.outcome is SendOutcome.OK:
            stmt = delete(DeliveryTask).where(owned)
            action = "delivered"
        elif result.outcome is SendOutcome.PERMANENT_ERROR or self.retry_policy.is_exhausted(task.n_attempts):
            stmt = (
                update(DeliveryTask)
                .where(owned)
                .values(
                    status=TASK_FAILED_TERMINAL,
                    last_error=_truncate(result.detail),
                    locked_by=None,
                    locked_until=None,
                )
            )
            action = "failed_terminal"
        else:
            stmt = (
                update(DeliveryTask)
                .where(owned)
                .values(
                    status=TASK_PENDING,
                    last_error=_truncate(result.detail),
                    execute_after=self._clock() + self.retry_policy.delay(task.n_attempts),
                    locked_by=None,
                    locked_until=None,
                )
            )
            action = "retry_scheduled"

        with self.session_factory() as db:
            try:
                rowcount = db.execute(stmt.execution_options(synchronize_session=False)).rowcount
                db.commit()
            except Exception:
                db.rollback()
                raise

        if rowcount != 1:
            logger.warning(
                "Lease lost before recording outcome: issue=%s recipient=%s outcome=%s",
                task.newsletter_issue_id,
                recipient,
                result.outcome.value,
            )
            return

        if action == "delivered":
            logger.info(
                "Delivered issue=%s recipient=%s attempt=%d",
                task.newsletter_issue_id,
                recipient,
                task.n_attempts,
            )
        elif action == "failed_terminal":
            logger.error(
                "Delivery failed terminally: issue=%s recipient=%s attempt=%d outcome=%s",
                task.newsletter_issue_id,
                recipient,
                task.n_attempts,
                result.outcome.value,
            )
        else:
            logger.warning(
                "Transient delivery failure, retry scheduled: issue=%s recipient=%s attempt=%d",
                task.newsletter_issue_id,
                recipient,
                task.n_attempts,
            )

    # -- loop ---------------------------------------------------------------

    def run_until_stopped(
        self,
        stop_event: threading.Event,
        *,
        poll_interval_s: float = 10.0,
        error_backoff_s: float = 1.0,
    ) -> None:
        """Drain the outbox until *stop_event* is set.  Never busy-spins."""
        logger.info("Delivery worker %s started", self.worker_id)
        while not stop_event.is_set():
            try:
                outcome = self.try_execute_task()
            except Exception:
                logger.exception("Delivery worker %s iteration failed", self.worker_id)
                stop_event.wait(error_backoff_s)
                continue
            if outcome is ExecutionOutcome.EMPTY_QUEUE:
                stop_event.wait(poll_interval_s)
        logger.info("Delivery worker %s stopped", self.worker_id)


def _truncate(detail: str | None) -> str | None:
    if detail is None:
        return None
    return detail[:_MAX_ERROR_LENGTH]


class DeliveryWorkerPool:
    """N worker threads sharing one session factory and gateway."""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: EmailGateway,
        *,
        worker_count: int = 2,
        retry_policy: RetryPolicy | None = None,
        lease: timedelta = timedelta(seconds=60),
        poll_interval_s: float = 10.0,
        error_backoff_s: float = 1.0,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self.poll_interval_s = poll_interval_s
        self.error_backoff_s = error_backoff_s
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self.workers = [
            DeliveryWorker(session_factory, gateway, retry_policy=retry_policy, lease=lease)
            for _ in range(worker_count)
        ]

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._stop_event.clear()
        for index, worker in enumerate(self.workers):
            thread = threading.Thread(
                target=worker.run_until_stopped,
                args=(self._stop_event,),
                kwargs={"poll_interval_s": self.poll_interval_s, "error_backoff_s": self.error_backoff_s},
                name=f"delivery-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d delivery workers", len(self._threads))

    def request_stop(self) -> None:
        """Signal every worker to finish its current task and exit."""
        self._stop_event.set()

    def stop(self, timeout_s: float | None = 30.0) -> None:
        self.request_stop()
        for thread in self._threads:
            thread.join(timeout_s)
        self._threads.clear()

    def wait(self) -> None:
        """Block until :meth:`stop` is called from another thread or a signal handler."""
        self._stop_event.wait()
