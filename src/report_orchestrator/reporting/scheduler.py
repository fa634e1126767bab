"""Scheduler poller: turn due schedules into queued runs.

One tick runs under a global lease so only one poller instance evaluates
schedules at a time. Each due schedule is additionally processed under its own
lease and re-read after the lease is granted, so a poller working from a stale
list never triggers the same firing twice.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from report_orchestrator.reporting.cadence import compute_next_run_at
from report_orchestrator.reporting.errors import ConfigurationError, ReportingError
from report_orchestrator.reporting.locks import LockCoordinator, lock_key
from report_orchestrator.reporting.models import RunStatus, ScheduleStatus, ScheduleView
from report_orchestrator.reporting.repository import ReportingRepository
from report_orchestrator.reporting.runtime import sleep_with_stop, stop_signal_handlers
from report_orchestrator.reporting.services import ReportingService
from report_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

POLLER_LOCK_RESOURCE = "scheduler"
POLLER_LOCK_ID = "report-scheduler"
SCHEDULE_LOCK_RESOURCE = "schedule"


@dataclass(slots=True)
class TickSummary:
    """Counters for one poller tick."""

    lock_denied: bool = False
    due: int = 0
    triggered: int = 0
    failed: int = 0
    busy: int = 0
    stale: int = 0
    disabled: int = 0
    swept: int = 0


@dataclass(slots=True)
class PollerRunSummary:
    """Aggregate counters across ticks for CLI reporting."""

    ticks: int = 0
    skipped_ticks: int = 0
    triggered: int = 0
    failed: int = 0
    swept: int = 0

    def record(self, tick: TickSummary) -> None:
        self.ticks += 1
        if tick.lock_denied:
            self.skipped_ticks += 1
        self.triggered += tick.triggered
        self.failed += tick.failed
        self.swept += tick.swept


class SchedulerPoller:
    """Evaluate due schedules on a fixed interval."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        service: ReportingService,
        repository: ReportingRepository,
        locks: LockCoordinator,
        lock_env: str = "development",
        poller_lock_ttl_seconds: int = 60,
        schedule_lock_ttl_seconds: int = 300,
        interval_seconds: float = 60.0,
        stuck_run_seconds: int = 3_600,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.service = service
        self.repository = repository
        self.locks = locks
        self.lock_env = lock_env
        self.poller_lock_ttl_seconds = poller_lock_ttl_seconds
        self.schedule_lock_ttl_seconds = schedule_lock_ttl_seconds
        self.interval_seconds = interval_seconds
        self.stuck_run_seconds = stuck_run_seconds
        self.batch_size = batch_size
        self._clock = clock
        self._stop_requested = False

    def tick(self, now: datetime | None = None) -> TickSummary:
        """Run one evaluation pass; returns immediately if another poller holds the lease."""

        now = now or self._clock()
        summary = TickSummary()
        poller_key = lock_key(
            env=self.lock_env,
            resource=POLLER_LOCK_RESOURCE,
            lock_id=POLLER_LOCK_ID,
        )
        if not self.locks.try_acquire(poller_key, self.poller_lock_ttl_seconds):
            logger.debug("Scheduler lock already held, skipping tick")
            summary.lock_denied = True
            return summary

        try:
            summary.swept = self._sweep_stuck_runs(now)
            due = self.repository.due_schedules(now=now, limit=self.batch_size)
            summary.due = len(due)
            for schedule in due:
                try:
                    self._process_schedule(schedule, now=now, summary=summary)
                except Exception:  # noqa: BLE001
                    summary.failed += 1
                    logger.exception("Failed to process schedule %s", schedule.schedule_id)
        finally:
            self.locks.release(poller_key)

        logger.info(
            "Scheduler tick: due=%s triggered=%s failed=%s busy=%s stale=%s disabled=%s swept=%s",
            summary.due,
            summary.triggered,
            summary.failed,
            summary.busy,
            summary.stale,
            summary.disabled,
            summary.swept,
        )
        return summary

    def run_loop(self, *, max_ticks: int | None = None) -> PollerRunSummary:
        """Tick every ``interval_seconds`` until stopped or ``max_ticks`` is reached."""

        aggregate = PollerRunSummary()
        logger.info("Starting report scheduler interval=%ss", self.interval_seconds)
        with stop_signal_handlers(self._on_signal):
            while not self._stop_requested:
                aggregate.record(self.tick())
                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    break
                sleep_with_stop(self.interval_seconds, lambda: self._stop_requested)
        return aggregate

    def request_stop(self, *, signal_name: str = "manual") -> None:
        self._stop_requested = True
        logger.info("Scheduler stop requested (%s)", signal_name)

    def _process_schedule(self, schedule: ScheduleView, *, now: datetime, summary: TickSummary) -> None:
        schedule_key = lock_key(
            env=self.lock_env,
            resource=SCHEDULE_LOCK_RESOURCE,
            lock_id=schedule.schedule_id,
            tenant_id=schedule.tenant_id,
        )
        if not self.locks.try_acquire(schedule_key, self.schedule_lock_ttl_seconds):
            logger.debug("Schedule %s lock already held, skipping", schedule.schedule_id)
            summary.busy += 1
            return
        try:
            current = self.repository.get_schedule(
                tenant_id=schedule.tenant_id,
                schedule_id=schedule.schedule_id,
            )
            if (
                current is None
                or current.status != ScheduleStatus.ACTIVE
                or current.next_run_at != schedule.next_run_at
            ):
                summary.stale += 1
                return

            outcome = self._trigger(current, now=now)
            if outcome == RunStatus.SUCCESS:
                summary.triggered += 1
            else:
                summary.failed += 1

            try:
                next_run_at = compute_next_run_at(current.cadence, now)
            except ConfigurationError as error:
                if self.repository.disable_schedule(
                    schedule_id=current.schedule_id,
                    reason=error.message,
                ):
                    summary.disabled += 1
                return
            advanced = self.repository.record_schedule_evaluation(
                schedule_id=current.schedule_id,
                evaluated_next_run_at=current.next_run_at,
                next_run_at=next_run_at,
                last_run_status=outcome,
            )
            if advanced:
                logger.info(
                    "Schedule %s processed; next_run_at=%s",
                    current.schedule_id,
                    next_run_at.isoformat(),
                )
            else:
                logger.warning("Schedule %s was advanced concurrently", current.schedule_id)
        finally:
            self.locks.release(schedule_key)

    def _trigger(self, schedule: ScheduleView, *, now: datetime) -> RunStatus:
        try:
            run = self.service.trigger_scheduled_run(
                tenant_id=schedule.tenant_id,
                schedule_id=schedule.schedule_id,
                now=now,
            )
        except ReportingError as error:
            logger.error(
                "Failed to trigger schedule %s [%s]: %s",
                schedule.schedule_id,
                error.code,
                error.message,
            )
            return RunStatus.FAILED
        except Exception:  # noqa: BLE001
            logger.exception("Failed to trigger schedule %s", schedule.schedule_id)
            return RunStatus.FAILED
        logger.debug("Schedule %s triggered run %s", schedule.schedule_id, run.run_id)
        return RunStatus.SUCCESS

    def _sweep_stuck_runs(self, now: datetime) -> int:
        if self.stuck_run_seconds <= 0:
            return 0
        try:
            swept = self.repository.sweep_stuck_runs(
                started_before=now - timedelta(seconds=self.stuck_run_seconds),
            )
        except Exception:  # noqa: BLE001
            logger.exception("Stuck-run sweep failed")
            return 0
        for run in swept:
            logger.warning(
                "Run %s stuck in running since %s; marked failed",
                run.run_id,
                run.started_at.isoformat() if run.started_at else "-",
            )
        return len(swept)

    def _on_signal(self, signal_name: str) -> None:
        self.request_stop(signal_name=signal_name)
