from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import allure
import pytest
from reporting_data import RUN_PERIOD, TENANT

from report_orchestrator.reporting.aggregation import QueryPlan
from report_orchestrator.reporting.collaborators import InMemoryDataAccess
from report_orchestrator.reporting.locks import LockCoordinator, SqliteLockStore, lock_key
from report_orchestrator.reporting.models import (
    JobStatus,
    OutputFormat,
    RunCreate,
    RunStatus,
    RunView,
    Scope,
    TriggerType,
)
from report_orchestrator.reporting.queue import RESULT_DUPLICATE, JobQueue
from report_orchestrator.reporting.repository import ReportingRepository
from report_orchestrator.reporting.worker import (
    RUN_LOCK_RESOURCE,
    SCHEDULE_EXEC_LOCK_RESOURCE,
    JobOutcome,
    ReportWorker,
    SlidingWindowRateLimiter,
)
from report_orchestrator.storage.common import utc_now

pytestmark = [
    allure.epic("Run Lifecycle"),
    allure.feature("Queue Worker"),
]


class _CrashingRenderer:
    def __init__(self) -> None:
        self.calls = 0

    def render(self, section_results, output_format, context):  # noqa: ANN001, ANN201
        self.calls += 1
        raise RuntimeError("renderer backend unavailable")


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _worker(job_queue: JobQueue, executor, lock_store: SqliteLockStore, **overrides) -> ReportWorker:
    options = {
        "queue": job_queue,
        "executor": executor,
        "locks": LockCoordinator(lock_store, holder_id="worker-test"),
        "worker_id": "worker-test",
        "lock_env": "test",
        "concurrency": 1,
        "poll_interval_seconds": 0.01,
        "retry_base_seconds": 0.0,
    }
    options.update(overrides)
    return ReportWorker(**options)


def test_duplicate_delivery_executes_the_run_once(
    trigger_run,
    make_executor,
    job_queue: JobQueue,
    lock_store: SqliteLockStore,
    repository: ReportingRepository,
) -> None:
    run = trigger_run()
    job_queue.enqueue(run_id=run.run_id, tenant_id=TENANT, payload={"run_id": run.run_id})
    worker = _worker(job_queue, make_executor(), lock_store)

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.processed == 2
    assert summary.succeeded == 1
    assert summary.skipped + summary.duplicates == 1
    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.status == RunStatus.SUCCESS
    assert stored.attempts == 1
    details = repository.get_run_details(tenant_id=TENANT, run_id=run.run_id)
    assert details is not None
    assert [event.event_type for event in details.events].count("started") == 1
    assert {job.status for job in job_queue.list_jobs(run_id=run.run_id)} == {JobStatus.COMPLETED}


def test_crashing_job_is_retried_then_dead_lettered(
    create_template,
    make_executor,
    job_queue: JobQueue,
    lock_store: SqliteLockStore,
    repository: ReportingRepository,
) -> None:
    renderer = _CrashingRenderer()
    run = _queued_run(repository, create_template().template_id)
    job_queue.enqueue(run_id=run.run_id, tenant_id=TENANT, payload={"run_id": run.run_id}, max_attempts=2)
    worker = _worker(job_queue, make_executor(renderer=renderer), lock_store)

    first = worker.run_once()
    second = worker.run_once()
    third = worker.run_once()

    assert first.retried == 1
    assert second.dead_lettered == 1
    assert third.idle_polls == 1
    assert renderer.calls == 2
    [dead] = job_queue.list_jobs(status=JobStatus.DEAD)
    assert dead.attempt == 2
    assert "renderer backend unavailable" in (dead.last_error or "")
    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.status == RunStatus.FAILED
    assert stored.attempts == 2


def test_job_is_dropped_as_duplicate_while_run_lock_is_held(
    trigger_run,
    make_executor,
    job_queue: JobQueue,
    lock_store: SqliteLockStore,
    repository: ReportingRepository,
) -> None:
    run = trigger_run()
    other_worker = LockCoordinator(lock_store, holder_id="other-worker")
    key = lock_key(env="test", resource=RUN_LOCK_RESOURCE, lock_id=run.run_id, tenant_id=TENANT)
    assert other_worker.try_acquire(key, 600)

    summary = _worker(job_queue, make_executor(), lock_store).run_once()

    assert summary.duplicates == 1
    job = job_queue.get_job(job_id=run.job_id)
    assert job is not None
    assert job.status == JobStatus.COMPLETED
    assert job.result == RESULT_DUPLICATE
    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.status == RunStatus.QUEUED


def test_job_is_deferred_without_losing_an_attempt_while_schedule_is_busy(
    create_template,
    make_executor,
    job_queue: JobQueue,
    lock_store: SqliteLockStore,
    repository: ReportingRepository,
) -> None:
    template = create_template()
    runs = [_queued_run(repository, template.template_id, schedule_id="schedule-1") for _ in range(2)]
    assert repository.start_run(run_id=runs[0].run_id, tenant_id=TENANT) is not None
    # No schedule id in the payload, so the database guard is what trips.
    handle = job_queue.enqueue(run_id=runs[1].run_id, tenant_id=TENANT, payload={})

    summary = _worker(job_queue, make_executor(), lock_store).run_once()

    assert summary.deferred == 1
    job = job_queue.get_job(job_id=handle.job_id)
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.attempt == 0
    assert job.run_after > job.updated_at
    stored = repository.get_run(tenant_id=TENANT, run_id=runs[1].run_id)
    assert stored is not None
    assert stored.status == RunStatus.QUEUED


def test_job_is_deferred_while_schedule_execution_lock_is_held(
    make_executor,
    job_queue: JobQueue,
    lock_store: SqliteLockStore,
) -> None:
    handle = job_queue.enqueue(
        run_id="run-1",
        tenant_id=TENANT,
        payload={"schedule_id": "schedule-7"},
    )
    key = lock_key(env="test", resource=SCHEDULE_EXEC_LOCK_RESOURCE, lock_id="schedule-7", tenant_id=TENANT)
    assert LockCoordinator(lock_store, holder_id="other-worker").try_acquire(key, 600)

    worker = _worker(job_queue, make_executor(), lock_store)
    job = job_queue.claim_next(worker_id=worker.worker_id)
    assert job is not None

    assert worker.process_job(job) == JobOutcome.DEFERRED
    deferred = job_queue.get_job(job_id=handle.job_id)
    assert deferred is not None
    assert deferred.attempt == 0
    assert deferred.status == JobStatus.QUEUED


@pytest.mark.parametrize("retry_number", [1, 2, 3, 8, 20])
def test_retry_delay_is_full_jitter_capped_exponential(
    make_executor,
    job_queue: JobQueue,
    lock_store: SqliteLockStore,
    retry_number: int,
) -> None:
    worker = _worker(
        job_queue,
        make_executor(),
        lock_store,
        retry_base_seconds=5.0,
        retry_max_seconds=60.0,
    )
    ceiling = min(60.0, 5.0 * 2 ** (retry_number - 1))

    delays = [worker._compute_retry_delay(retry_number=retry_number) for _ in range(50)]

    assert all(0.0 <= delay <= ceiling for delay in delays)


def test_sliding_window_rate_limiter() -> None:
    clock = _FakeClock()
    limiter = SlidingWindowRateLimiter(max_events=2, window_seconds=10, clock=clock)

    assert limiter.try_acquire()
    clock.now = 4.0
    assert limiter.try_acquire()
    assert not limiter.try_acquire()

    limiter.refund()
    assert limiter.try_acquire()

    clock.now = 10.0
    assert limiter.try_acquire()
    assert not limiter.try_acquire()

    with pytest.raises(ValueError, match="positive"):
        SlidingWindowRateLimiter(max_events=0, window_seconds=10)


def test_job_of_vanished_worker_is_redelivered_after_visibility_timeout(job_queue: JobQueue) -> None:
    handle = job_queue.enqueue(run_id="run-1", tenant_id=TENANT, payload={})
    assert job_queue.claim_next(worker_id="crashed-worker") is not None

    assert job_queue.requeue_stale(claimed_before=utc_now() - timedelta(minutes=15)) == 0
    assert job_queue.requeue_stale(claimed_before=utc_now() + timedelta(seconds=1)) == 1

    job = job_queue.get_job(job_id=handle.job_id)
    assert job is not None
    assert job.status == JobStatus.QUEUED
    assert job.attempt == 1
    redelivered = job_queue.claim_next(worker_id="worker-test")
    assert redelivered is not None
    assert redelivered.job_id == handle.job_id
    assert redelivered.attempt == 2


def test_stale_job_with_no_attempts_left_is_dead_lettered(job_queue: JobQueue) -> None:
    handle = job_queue.enqueue(run_id="run-1", tenant_id=TENANT, payload={}, max_attempts=2)
    claimed_attempts = []

    for _ in range(3):
        job = job_queue.claim_next(worker_id="crashing-worker")
        if job is None:
            break
        claimed_attempts.append(job.attempt)
        job_queue.requeue_stale(claimed_before=utc_now() + timedelta(seconds=1))

    assert claimed_attempts == [1, 2]
    job = job_queue.get_job(job_id=handle.job_id)
    assert job is not None
    assert job.status == JobStatus.DEAD
    assert "no attempts left" in (job.last_error or "")
    assert job_queue.claim_next(worker_id="worker-test") is None


class _BlockingDataAccess:
    """Holds the first query open until the test releases it."""

    def __init__(self) -> None:
        self.inner = InMemoryDataAccess()
        self.started = threading.Event()
        self.release = threading.Event()

    def run_query_plan(self, plan: QueryPlan) -> list[dict]:
        self.started.set()
        self.release.wait(timeout=10)
        return self.inner.run_query_plan(plan)


def test_overlapping_workers_on_one_run_execute_it_once(
    trigger_run,
    make_executor,
    job_queue: JobQueue,
    lock_store: SqliteLockStore,
    repository: ReportingRepository,
) -> None:
    run = trigger_run()
    job_queue.enqueue(run_id=run.run_id, tenant_id=TENANT, payload={"run_id": run.run_id})
    data_access = _BlockingDataAccess()
    executor = make_executor(data_access=data_access)
    worker_a = _worker(
        job_queue,
        executor,
        lock_store,
        worker_id="worker-a",
        locks=LockCoordinator(lock_store, holder_id="worker-a"),
    )
    worker_b = _worker(
        job_queue,
        executor,
        lock_store,
        worker_id="worker-b",
        locks=LockCoordinator(lock_store, holder_id="worker-b"),
    )
    job_a = job_queue.claim_next(worker_id=worker_a.worker_id)
    job_b = job_queue.claim_next(worker_id=worker_b.worker_id)
    assert job_a is not None
    assert job_b is not None

    with ThreadPoolExecutor(max_workers=1) as pool:
        first = pool.submit(worker_a.process_job, job_a)
        assert data_access.started.wait(timeout=10)
        try:
            second = worker_b.process_job(job_b)
        finally:
            data_access.release.set()
        outcomes = [first.result(timeout=30), second]

    assert outcomes.count(JobOutcome.DUPLICATE) == 1
    assert outcomes.count(JobOutcome.SUCCEEDED) == 1
    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.status == RunStatus.SUCCESS
    assert stored.attempts == 1
    details = repository.get_run_details(tenant_id=TENANT, run_id=run.run_id)
    assert details is not None
    assert [event.event_type for event in details.events].count("started") == 1


def _queued_run(repository: ReportingRepository, template_id: str, *, schedule_id: str | None = None) -> RunView:
    return repository.create_run(
        RunCreate(
            tenant_id=TENANT,
            template_id=template_id,
            schedule_id=schedule_id,
            period=RUN_PERIOD,
            scope=Scope(),
            output_formats=(OutputFormat.JSON,),
            trigger_type=TriggerType.SCHEDULE if schedule_id else TriggerType.MANUAL,
        ),
        manual_rate_limit=None,
        rate_window_seconds=3_600,
        max_active_runs=10,
    )
