"""Queue worker that executes report runs."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from report_orchestrator.reporting.errors import ExecutorCrash, ScheduleBusy
from report_orchestrator.reporting.executor import RunExecutor
from report_orchestrator.reporting.locks import LockCoordinator, lock_key
from report_orchestrator.reporting.models import JobView, RunStatus
from report_orchestrator.reporting.queue import (
    RESULT_COMPLETED,
    RESULT_DUPLICATE,
    RESULT_SKIPPED,
    JobQueue,
)
from report_orchestrator.reporting.runtime import sleep_with_stop, stop_signal_handlers
from report_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

RUN_LOCK_RESOURCE = "report-run"
SCHEDULE_EXEC_LOCK_RESOURCE = "schedule-exec"


class JobOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"
    RETRIED = "retried"
    DEAD = "dead"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    duplicates: int = 0
    deferred: int = 0
    retried: int = 0
    dead_lettered: int = 0
    idle_polls: int = 0

    def record(self, outcome: JobOutcome) -> None:
        self.processed += 1
        if outcome == JobOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome == JobOutcome.FAILED:
            self.failed += 1
        elif outcome == JobOutcome.SKIPPED:
            self.skipped += 1
        elif outcome == JobOutcome.DUPLICATE:
            self.duplicates += 1
        elif outcome == JobOutcome.DEFERRED:
            self.deferred += 1
        elif outcome == JobOutcome.RETRIED:
            self.retried += 1
        else:
            self.dead_lettered += 1


class SlidingWindowRateLimiter:
    """Allow at most ``max_events`` per rolling ``window_seconds``."""

    def __init__(
        self,
        *,
        max_events: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_events <= 0 or window_seconds <= 0:
            raise ValueError("Rate limiter needs a positive budget and window.")
        self.max_events = max_events
        self.window_seconds = window_seconds
        self._clock = clock
        self._events: deque[float] = deque()
        self._guard = threading.Lock()

    def try_acquire(self) -> bool:
        with self._guard:
            now = self._clock()
            while self._events and now - self._events[0] >= self.window_seconds:
                self._events.popleft()
            if len(self._events) >= self.max_events:
                return False
            self._events.append(now)
            return True

    def refund(self) -> None:
        """Give back the most recent slot, e.g. after an empty poll."""

        with self._guard:
            if self._events:
                self._events.pop()


class ReportWorker:
    """Consume report jobs with a concurrency ceiling and a rate ceiling."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        queue: JobQueue,
        executor: RunExecutor,
        locks: LockCoordinator,
        worker_id: str,
        lock_env: str = "development",
        run_lock_ttl_seconds: int = 600,
        concurrency: int = 5,
        rate_limit_jobs: int = 10,
        rate_window_seconds: float = 60.0,
        poll_interval_seconds: float = 2.0,
        retry_base_seconds: float = 5.0,
        retry_max_seconds: float = 300.0,
        stale_job_seconds: int = 900,
        busy_defer_seconds: float = 30.0,
    ) -> None:
        self.queue = queue
        self.executor = executor
        self.locks = locks
        self.worker_id = worker_id
        self.lock_env = lock_env
        self.run_lock_ttl_seconds = run_lock_ttl_seconds
        self.concurrency = max(1, concurrency)
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_job_seconds = stale_job_seconds
        self.busy_defer_seconds = busy_defer_seconds
        self.rate_limiter = SlidingWindowRateLimiter(
            max_events=rate_limit_jobs,
            window_seconds=rate_window_seconds,
        )
        self._random = random.Random()  # noqa: S311
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary
        summary.record(self.process_job(job))
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run the worker until the queue is idle, ``max_jobs`` is reached, or a stop signal.

        Args:
            max_jobs: Stop claiming after this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting
                (None = poll forever).
        """

        aggregate = WorkerRunSummary()
        in_flight: set[Future[JobOutcome]] = set()
        claimed = 0
        consecutive_idle = 0

        with stop_signal_handlers(self._on_signal), ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix=f"{self.worker_id}-job",
        ) as pool:
            while not self._stop_requested:
                if max_jobs is not None and claimed >= max_jobs:
                    break
                in_flight = self._collect_finished(in_flight, aggregate)
                if len(in_flight) >= self.concurrency:
                    wait(in_flight, timeout=self.poll_interval_seconds, return_when=FIRST_COMPLETED)
                    continue
                if not self.rate_limiter.try_acquire():
                    self._sleep_with_stop(min(1.0, self.poll_interval_seconds))
                    continue

                job = self._claim_job()
                if job is None:
                    self.rate_limiter.refund()
                    if in_flight:
                        wait(in_flight, timeout=self.poll_interval_seconds, return_when=FIRST_COMPLETED)
                        continue
                    consecutive_idle += 1
                    aggregate.idle_polls += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0
                claimed += 1
                in_flight.add(pool.submit(self.process_job, job))
            wait(in_flight)
            self._collect_finished(in_flight, aggregate)
        return aggregate

    def process_job(self, job: JobView) -> JobOutcome:
        """Execute one claimed job under the per-run lock."""

        run_key = lock_key(
            env=self.lock_env,
            resource=RUN_LOCK_RESOURCE,
            lock_id=job.run_id,
            tenant_id=job.tenant_id,
        )
        if not self.locks.try_acquire(run_key, self.run_lock_ttl_seconds):
            logger.warning("Run %s already being processed; skipping duplicate job %s", job.run_id, job.job_id)
            self.queue.complete(job_id=job.job_id, result=RESULT_DUPLICATE)
            return JobOutcome.DUPLICATE
        try:
            return self._execute_locked(job)
        finally:
            self.locks.release(run_key)

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Worker %s stop requested (%s)", self.worker_id, signal_name)

    def _execute_locked(self, job: JobView) -> JobOutcome:
        schedule_id = job.payload.get("schedule_id")
        exec_key = None
        if schedule_id:
            exec_key = lock_key(
                env=self.lock_env,
                resource=SCHEDULE_EXEC_LOCK_RESOURCE,
                lock_id=str(schedule_id),
                tenant_id=job.tenant_id,
            )
            if not self.locks.try_acquire(exec_key, self.run_lock_ttl_seconds):
                return self._defer(job, reason=f"schedule {schedule_id} has a run in progress")
        try:
            result = self.executor.execute(
                run_id=job.run_id,
                tenant_id=job.tenant_id,
                allow_from_failed=job.attempt > 1,
            )
        except ScheduleBusy as error:
            return self._defer(job, reason=error.message)
        except ExecutorCrash as error:
            return self._retry_or_dead_letter(job, error=error.message)
        except Exception as error:
            logger.exception("Job %s for run %s raised outside the executor", job.job_id, job.run_id)
            return self._retry_or_dead_letter(job, error=str(error) or type(error).__name__)
        finally:
            if exec_key is not None:
                self.locks.release(exec_key)

        if result.skipped:
            self.queue.complete(job_id=job.job_id, result=RESULT_SKIPPED)
            return JobOutcome.SKIPPED
        self.queue.complete(job_id=job.job_id, result=RESULT_COMPLETED)
        if result.status == RunStatus.SUCCESS:
            return JobOutcome.SUCCEEDED
        return JobOutcome.FAILED

    def _collect_finished(
        self,
        in_flight: set[Future[JobOutcome]],
        aggregate: WorkerRunSummary,
    ) -> set[Future[JobOutcome]]:
        pending: set[Future[JobOutcome]] = set()
        for future in in_flight:
            if not future.done():
                pending.add(future)
                continue
            try:
                outcome = future.result()
            except Exception:  # noqa: BLE001
                logger.exception("Worker %s job handler raised", self.worker_id)
                outcome = JobOutcome.FAILED
            aggregate.record(outcome)
        return pending

    def _defer(self, job: JobView, *, reason: str) -> JobOutcome:
        logger.info("Deferring job %s for run %s: %s", job.job_id, job.run_id, reason)
        self.queue.defer(
            job_id=job.job_id,
            run_after=utc_now() + timedelta(seconds=self.busy_defer_seconds),
            reason=reason,
        )
        return JobOutcome.DEFERRED

    def _retry_or_dead_letter(self, job: JobView, *, error: str) -> JobOutcome:
        if job.attempt < job.max_attempts:
            delay_seconds = self._compute_retry_delay(retry_number=job.attempt)
            self.queue.schedule_retry(
                job_id=job.job_id,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
                error=error,
            )
            logger.warning(
                "Job %s attempt %s/%s crashed; retrying in %.1fs",
                job.job_id,
                job.attempt,
                job.max_attempts,
                delay_seconds,
            )
            return JobOutcome.RETRIED
        self.queue.dead_letter(job_id=job.job_id, error=error)
        return JobOutcome.DEAD

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _claim_job(self) -> JobView | None:
        self._requeue_stale_jobs()
        if self._stop_requested:
            return None
        return self.queue.claim_next(worker_id=self.worker_id)

    def _requeue_stale_jobs(self) -> None:
        if self.stale_job_seconds <= 0:
            return
        self.queue.requeue_stale(
            claimed_before=utc_now() - timedelta(seconds=self.stale_job_seconds),
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        sleep_with_stop(seconds, lambda: self._stop_requested)

    def _on_signal(self, signal_name: str) -> None:
        self.request_stop(signal_name=signal_name)
