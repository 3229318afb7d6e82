"""Tests for newsletter/delivery/worker.py.

Gateways are scripted in-process fakes; time is driven by ``FakeClock``.
"""
from __future__ import annotations

import logging
import threading
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from helpers import T0, FakeClock, as_utc, seed_issue
from newsletter.db.models import TASK_FAILED_TERMINAL, TASK_IN_PROGRESS, TASK_PENDING, DeliveryTask, utcnow
from newsletter.delivery.backoff import RetryPolicy
from newsletter.delivery.gateway import SendResult, StubEmailGateway
from newsletter.delivery.worker import DeliveryWorker, DeliveryWorkerPool, ExecutionOutcome


# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------

class ScriptedGateway:
    """Returns the scripted results in order, repeating the last one."""

    def __init__(self, *results: SendResult) -> None:
        self.results = list(results) or [SendResult.ok()]
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def send(self, recipient, subject, html_body, text_body) -> SendResult:
        with self._lock:
            self.calls.append(recipient)
            if len(self.results) > 1:
                return self.results.pop(0)
            return self.results[0]


def _task(session_factory, issue_id, email) -> DeliveryTask | None:
    with session_factory() as db:
        return db.get(DeliveryTask, (issue_id, email))


def _task_count(session_factory) -> int:
    with session_factory() as db:
        return db.execute(select(func.count()).select_from(DeliveryTask)).scalar_one()


def _worker(session_factory, gateway, clock=None, **kwargs) -> DeliveryWorker:
    kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, base_s=1.0, max_s=300.0))
    return DeliveryWorker(session_factory, gateway, clock=clock or FakeClock(), **kwargs)


# ===========================================================================
# Single iteration
# ===========================================================================

class TestTryExecuteTask:
    def test_empty_queue(self, session_factory):
        worker = _worker(session_factory, ScriptedGateway())

        assert worker.try_execute_task() is ExecutionOutcome.EMPTY_QUEUE

    def test_success_deletes_task(self, session_factory):
        issue_id = seed_issue(session_factory, ["a@example.com"])
        gateway = ScriptedGateway(SendResult.ok())
        worker = _worker(session_factory, gateway)

        assert worker.try_execute_task() is ExecutionOutcome.TASK_COMPLETED
        assert gateway.calls == ["a@example.com"]
        assert _task(session_factory, issue_id, "a@example.com") is None
        assert worker.try_execute_task() is ExecutionOutcome.EMPTY_QUEUE

    def test_sends_issue_content(self, session_factory):
        seed_issue(session_factory, ["a@example.com"])
        gateway = StubEmailGateway()

        _worker(session_factory, gateway).try_execute_task()

        assert list(gateway.sent) == [("a@example.com", "Weekly digest")]

    def test_each_task_is_sent_once(self, session_factory):
        seed_issue(session_factory, ["a@example.com", "b@example.com", "c@example.com"])
        gateway = ScriptedGateway(SendResult.ok())
        worker = _worker(session_factory, gateway)

        while worker.try_execute_task() is ExecutionOutcome.TASK_COMPLETED:
            pass

        assert sorted(gateway.calls) == ["a@example.com", "b@example.com", "c@example.com"]
        assert _task_count(session_factory) == 0

    def test_task_not_yet_due_is_skipped(self, session_factory):
        seed_issue(session_factory, ["a@example.com"], now=T0 + timedelta(minutes=5))
        worker = _worker(session_factory, ScriptedGateway(), clock=FakeClock(T0))

        assert worker.try_execute_task() is ExecutionOutcome.EMPTY_QUEUE


class TestRetries:
    def test_transient_failure_schedules_retry(self, session_factory):
        issue_id = seed_issue(session_factory, ["a@example.com"])
        clock = FakeClock(T0)
        worker = _worker(session_factory, ScriptedGateway(SendResult.transient("HTTP 503: busy")), clock=clock)

        worker.try_execute_task()

        task = _task(session_factory, issue_id, "a@example.com")
        assert task.status == TASK_PENDING
        assert task.n_attempts == 1
        assert task.last_error == "HTTP 503: busy"
        assert as_utc(task.execute_after) == T0 + timedelta(seconds=1)
        assert task.locked_by is None
        assert task.locked_until is None

    def test_retry_waits_for_backoff(self, session_factory):
        seed_issue(session_factory, ["a@example.com"])
        clock = FakeClock(T0)
        gateway = ScriptedGateway(SendResult.transient("timeout"), SendResult.ok())
        worker = _worker(session_factory, gateway, clock=clock)

        worker.try_execute_task()
        assert worker.try_execute_task() is ExecutionOutcome.EMPTY_QUEUE

        clock.advance(timedelta(seconds=1))
        assert worker.try_execute_task() is ExecutionOutcome.TASK_COMPLETED
        assert _task_count(session_factory) == 0
        assert len(gateway.calls) == 2

    def test_exhaustion_at_exactly_max_attempts(self, session_factory):
        issue_id = seed_issue(session_factory, ["a@example.com"])
        clock = FakeClock(T0)
        gateway = ScriptedGateway(SendResult.transient("HTTP 500: down"))
        worker = _worker(session_factory, gateway, clock=clock)

        worker.try_execute_task()
        clock.advance(timedelta(seconds=1))
        worker.try_execute_task()
        task = _task(session_factory, issue_id, "a@example.com")
        assert task.status == TASK_PENDING
        assert as_utc(task.execute_after) == T0 + timedelta(seconds=3)

        clock.advance(timedelta(seconds=2))
        worker.try_execute_task()

        task = _task(session_factory, issue_id, "a@example.com")
        assert task.status == TASK_FAILED_TERMINAL
        assert task.n_attempts == 3
        assert task.last_error == "HTTP 500: down"
        assert task.locked_by is None

        clock.advance(timedelta(hours=1))
        assert worker.try_execute_task() is ExecutionOutcome.EMPTY_QUEUE
        assert len(gateway.calls) == 3

    def test_permanent_failure_is_terminal_immediately(self, session_factory):
        issue_id = seed_issue(session_factory, ["a@example.com"])
        worker = _worker(session_factory, ScriptedGateway(SendResult.permanent("HTTP 422: inactive")))

        worker.try_execute_task()

        task = _task(session_factory, issue_id, "a@example.com")
        assert task.status == TASK_FAILED_TERMINAL
        assert task.n_attempts == 1

    def test_invalid_stored_address_fails_permanently(self, session_factory):
        issue_id = seed_issue(session_factory, ["not-an-email"])
        gateway = StubEmailGateway()

        _worker(session_factory, gateway).try_execute_task()

        task = _task(session_factory, issue_id, "not-an-email")
        assert task.status == TASK_FAILED_TERMINAL
        assert task.last_error.startswith("invalid recipient")
        assert list(gateway.sent) == []

    def test_long_error_detail_is_truncated(self, session_factory):
        issue_id = seed_issue(session_factory, ["a@example.com"])
        worker = _worker(session_factory, ScriptedGateway(SendResult.permanent("x" * 5000)))

        worker.try_execute_task()

        assert len(_task(session_factory, issue_id, "a@example.com").last_error) == 2000


class TestLeases:
    def test_claim_sets_lease_and_counts_attempt(self, session_factory):
        issue_id = seed_issue(session_factory, ["a@example.com"])
        observed = {}

        class PeekingGateway:
            def send(self, recipient, subject, html_body, text_body):
                observed["task"] = _task(session_factory, issue_id, recipient)
                return SendResult.ok()

        worker = _worker(session_factory, PeekingGateway(), worker_id="worker-a", lease=timedelta(seconds=30))
        worker.try_execute_task()

        task = observed["task"]
        assert task.status == TASK_IN_PROGRESS
        assert task.locked_by == "worker-a"
        assert as_utc(task.locked_until) == T0 + timedelta(seconds=30)
        assert task.n_attempts == 1

    def test_expired_lease_is_reclaimed(self, session_factory, caplog):
        issue_id = seed_issue(session_factory, ["a@example.com"])

        class CrashingGateway:
            def send(self, recipient, subject, html_body, text_body):
                raise RuntimeError("worker process died")

        crashed = _worker(session_factory, CrashingGateway(), worker_id="worker-a", lease=timedelta(seconds=60))
        with pytest.raises(RuntimeError):
            crashed.try_execute_task()

        gateway = ScriptedGateway(SendResult.ok())
        before_expiry = _worker(session_factory, gateway, clock=FakeClock(T0 + timedelta(seconds=59)))
        assert before_expiry.try_execute_task() is ExecutionOutcome.EMPTY_QUEUE

        after_expiry = _worker(session_factory, gateway, clock=FakeClock(T0 + timedelta(seconds=61)))
        with caplog.at_level(logging.WARNING, logger="newsletter.delivery.worker"):
            assert after_expiry.try_execute_task() is ExecutionOutcome.TASK_COMPLETED

        assert "Reclaiming task with expired lease" in caplog.text
        assert "a@example.com" not in caplog.text
        assert _task(session_factory, issue_id, "a@example.com") is None

    def test_reclaim_counts_crashed_attempt(self, session_factory):
        issue_id = seed_issue(session_factory, ["a@example.com"])

        class CrashingGateway:
            def send(self, recipient, subject, html_body, text_body):
                raise RuntimeError("crash")

        with pytest.raises(RuntimeError):
            _worker(session_factory, CrashingGateway()).try_execute_task()

        retrying = _worker(
            session_factory,
            ScriptedGateway(SendResult.transient("busy")),
            clock=FakeClock(T0 + timedelta(minutes=5)),
        )
        retrying.try_execute_task()

        assert _task(session_factory, issue_id, "a@example.com").n_attempts == 2

    def test_lost_lease_does_not_overwrite_new_owner(self, session_factory, caplog):
        issue_id = seed_issue(session_factory, ["a@example.com"])
        late_gateway = ScriptedGateway(SendResult.transient("HTTP 503"))
        thief = _worker(
            session_factory,
            late_gateway,
            worker_id="worker-b",
            clock=FakeClock(T0 + timedelta(seconds=61)),
        )

        class StallingGateway:
            """Stalls past the lease; meanwhile worker-b takes the task over."""

            def send(self, recipient, subject, html_body, text_body):
                thief.try_execute_task()
                return SendResult.ok()

        slow = _worker(session_factory, StallingGateway(), worker_id="worker-a", lease=timedelta(seconds=60))
        with caplog.at_level(logging.WARNING, logger="newsletter.delivery.worker"):
            slow.try_execute_task()

        assert "Lease lost before recording outcome" in caplog.text
        task = _task(session_factory, issue_id, "a@example.com")
        assert task is not None
        assert task.status == TASK_PENDING
        assert task.n_attempts == 2
        assert task.last_error == "HTTP 503"

    def test_expired_lease_on_final_attempt_is_not_sent_again(self, session_factory, caplog):
        issue_id = seed_issue(session_factory, ["a@example.com"])
        policy = RetryPolicy(max_attempts=2, base_s=1.0, max_s=300.0)
        clock = FakeClock(T0)
        gateway = ScriptedGateway(SendResult.transient("HTTP 503"))

        _worker(session_factory, gateway, clock=clock, retry_policy=policy).try_execute_task()

        class CrashingGateway:
            def send(self, recipient, subject, html_body, text_body):
                gateway.calls.append(recipient)
                raise RuntimeError("worker process died")

        clock.advance(timedelta(seconds=1))
        crashed = _worker(session_factory, CrashingGateway(), clock=clock, retry_policy=policy)
        with pytest.raises(RuntimeError):
            crashed.try_execute_task()

        clock.advance(timedelta(seconds=61))
        reclaimer = _worker(session_factory, gateway, clock=clock, retry_policy=policy)
        with caplog.at_level(logging.ERROR, logger="newsletter.delivery.worker"):
            assert reclaimer.try_execute_task() is ExecutionOutcome.TASK_COMPLETED

        task = _task(session_factory, issue_id, "a@example.com")
        assert task.status == TASK_FAILED_TERMINAL
        assert task.n_attempts == 2
        assert task.last_error == "lease expired on final attempt"
        assert task.locked_by is None
        assert task.locked_until is None
        assert len(gateway.calls) == 2
        assert "outcome=lease_expired" in caplog.text
        assert reclaimer.try_execute_task() is ExecutionOutcome.EMPTY_QUEUE

    def test_lost_claim_race_reports_conflict(self, session_factory):
        issue_id = seed_issue(session_factory, ["a@example.com"])

        class RacedWorker(DeliveryWorker):
            """Another worker takes the row between the select and the claim."""

            def _select_eligible(self, db, eligible):
                task = super()._select_eligible(db, eligible)
                db.execute(
                    update(DeliveryTask)
                    .values(status=TASK_IN_PROGRESS, locked_by="worker-b", locked_until=T0 + timedelta(minutes=1))
                    .execution_options(synchronize_session=False)
                )
                return task

        gateway = ScriptedGateway(SendResult.ok())
        worker = RacedWorker(session_factory, gateway, worker_id="worker-a", clock=FakeClock(T0))

        assert worker.try_execute_task() is ExecutionOutcome.CLAIM_CONFLICT
        assert gateway.calls == []
        task = _task(session_factory, issue_id, "a@example.com")
        assert task.locked_by == "worker-b"
        assert task.n_attempts == 0

    def test_claim_conflict_does_not_idle(self, session_factory):
        stop = threading.Event()
        outcomes = [ExecutionOutcome.CLAIM_CONFLICT, ExecutionOutcome.CLAIM_CONFLICT]

        class ContendedWorker(DeliveryWorker):
            def try_execute_task(self):
                if outcomes:
                    return outcomes.pop(0)
                stop.set()
                return ExecutionOutcome.EMPTY_QUEUE

        worker = ContendedWorker(session_factory, ScriptedGateway())
        waits = []
        original_wait = stop.wait
        stop.wait = lambda timeout=None: waits.append(timeout) or original_wait(0)

        worker.run_until_stopped(stop, poll_interval_s=10.0)

        assert outcomes == []
        assert waits == [10.0]

    def test_concurrent_workers_never_send_twice(self, file_session_factory):
        emails = [f"reader{i}@example.com" for i in range(24)]
        seed_issue(file_session_factory, emails)
        gateway = ScriptedGateway(SendResult.ok())
        workers = [
            DeliveryWorker(file_session_factory, gateway, worker_id=f"worker-{i}", clock=FakeClock(T0))
            for i in range(4)
        ]
        errors: list[Exception] = []

        def drain(worker):
            try:
                while worker.try_execute_task() is not ExecutionOutcome.EMPTY_QUEUE:
                    pass
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=drain, args=(worker,)) for worker in workers]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(60)
        drain(workers[0])

        assert errors == []
        assert sorted(gateway.calls) == sorted(emails)
        assert _task_count(file_session_factory) == 0


# ===========================================================================
# Loop and pool
# ===========================================================================

class TestRunUntilStopped:
    def test_drains_queue_then_stops(self, session_factory):
        seed_issue(session_factory, ["a@example.com", "b@example.com"])
        gateway = ScriptedGateway(SendResult.ok())
        stop = threading.Event()

        class StopWhenIdle(DeliveryWorker):
            def try_execute_task(self):
                outcome = super().try_execute_task()
                if outcome is ExecutionOutcome.EMPTY_QUEUE:
                    stop.set()
                return outcome

        worker = StopWhenIdle(session_factory, gateway, clock=FakeClock(T0))
        worker.run_until_stopped(stop, poll_interval_s=0.01)

        assert sorted(gateway.calls) == ["a@example.com", "b@example.com"]

    def test_iteration_errors_are_logged_and_loop_continues(self, session_factory, caplog):
        stop = threading.Event()
        calls = []

        class FlakyWorker(DeliveryWorker):
            def try_execute_task(self):
                calls.append(1)
                if len(calls) == 1:
                    raise RuntimeError("database unavailable")
                stop.set()
                return ExecutionOutcome.EMPTY_QUEUE

        worker = FlakyWorker(session_factory, ScriptedGateway())
        with caplog.at_level(logging.ERROR, logger="newsletter.delivery.worker"):
            worker.run_until_stopped(stop, poll_interval_s=0.01, error_backoff_s=0.01)

        assert len(calls) == 2
        assert "iteration failed" in caplog.text


class TestDeliveryWorkerPool:
    def test_pool_delivers_and_stops(self, file_session_factory):
        seed_issue(file_session_factory, ["a@example.com", "b@example.com", "c@example.com"], now=utcnow())
        gateway = ScriptedGateway(SendResult.ok())
        pool = DeliveryWorkerPool(file_session_factory, gateway, worker_count=2, poll_interval_s=0.05)

        pool.start()
        try:
            for _ in range(200):
                if _task_count(file_session_factory) == 0:
                    break
                threading.Event().wait(0.05)
        finally:
            pool.stop(timeout_s=5)

        assert sorted(gateway.calls) == ["a@example.com", "b@example.com", "c@example.com"]
        assert _task_count(file_session_factory) == 0

    def test_start_twice_raises(self, session_factory):
        pool = DeliveryWorkerPool(session_factory, ScriptedGateway(), worker_count=1, poll_interval_s=0.01)
        pool.start()
        try:
            with pytest.raises(RuntimeError, match="already started"):
                pool.start()
        finally:
            pool.stop(timeout_s=5)

    def test_worker_count_must_be_positive(self, session_factory):
        with pytest.raises(ValueError):
            DeliveryWorkerPool(session_factory, ScriptedGateway(), worker_count=0)

    def test_workers_get_distinct_ids(self, session_factory):
        pool = DeliveryWorkerPool(session_factory, ScriptedGateway(), worker_count=3)

        assert len({worker.worker_id for worker in pool.workers}) == 3
