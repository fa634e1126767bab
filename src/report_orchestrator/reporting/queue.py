"""Durable job queue for report runs.

Jobs live in the ``report_jobs`` table next to runs. Claiming is a guarded
``queued -> active`` update, so concurrent workers never both claim the same
row. A worker that dies leaves its job ``active``; ``requeue_stale`` hands it
back to the queue after the visibility timeout, which makes delivery
at-least-once.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from report_orchestrator.reporting.models import JobHandle, JobStatus, JobView
from report_orchestrator.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from report_orchestrator.storage.sqlmodel_models import ReportJobRecord

logger = logging.getLogger(__name__)

RESULT_COMPLETED = "completed"
RESULT_DUPLICATE = "duplicate"
RESULT_SKIPPED = "skipped"


class JobQueue:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        default_max_attempts: int = 3,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.default_max_attempts = default_max_attempts
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def enqueue(
        self,
        *,
        run_id: str,
        tenant_id: str,
        payload: dict[str, Any],
        max_attempts: int | None = None,
        run_after: datetime | None = None,
    ) -> JobHandle:
        """Fire-and-forget: persist a queued job and return its handle."""

        now = utc_now()
        job_id = str(uuid4())
        with Session(self.engine) as session:
            session.add(
                ReportJobRecord(
                    job_id=job_id,
                    run_id=run_id,
                    tenant_id=tenant_id,
                    payload_json=dump_json(payload),
                    status=JobStatus.QUEUED.value,
                    attempt=0,
                    max_attempts=max_attempts or self.default_max_attempts,
                    run_after=to_db_datetime(run_after or now),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
        logger.debug("Enqueued job %s for run %s", job_id, run_id)
        return JobHandle(job_id=job_id, run_id=run_id)

    def claim_next(self, *, worker_id: str) -> JobView | None:
        """Atomically claim one job ready for execution."""

        while True:
            now = to_db_datetime(utc_now())
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(ReportJobRecord)
                    .where(
                        ReportJobRecord.status == JobStatus.QUEUED.value,
                        col(ReportJobRecord.run_after) <= now,
                    )
                    .order_by(
                        col(ReportJobRecord.run_after).asc(),
                        col(ReportJobRecord.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(  # type: ignore[call-overload]
                    sa_update(ReportJobRecord)
                    .where(
                        col(ReportJobRecord.job_id) == candidate.job_id,
                        col(ReportJobRecord.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.ACTIVE.value,
                        attempt=candidate.attempt + 1,
                        claimed_by=worker_id,
                        claimed_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                claimed = session.exec(
                    select(ReportJobRecord).where(ReportJobRecord.job_id == candidate.job_id),
                ).one()
                return _to_job_view(claimed)

    def complete(self, *, job_id: str, result: str = RESULT_COMPLETED) -> bool:
        now = to_db_datetime(utc_now())
        return self._transition(
            job_id=job_id,
            expected=JobStatus.ACTIVE,
            values={
                "status": JobStatus.COMPLETED.value,
                "result": result,
                "updated_at": now,
            },
        )

    def schedule_retry(self, *, job_id: str, run_after: datetime, error: str) -> bool:
        """Requeue a crashed job for another attempt after ``run_after``."""

        now = to_db_datetime(utc_now())
        return self._transition(
            job_id=job_id,
            expected=JobStatus.ACTIVE,
            values={
                "status": JobStatus.QUEUED.value,
                "run_after": to_db_datetime(run_after),
                "last_error": error,
                "claimed_by": None,
                "claimed_at": None,
                "updated_at": now,
            },
        )

    def defer(self, *, job_id: str, run_after: datetime, reason: str) -> bool:
        """Hand a job back without consuming an attempt."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(ReportJobRecord)
                .where(
                    col(ReportJobRecord.job_id) == job_id,
                    col(ReportJobRecord.status) == JobStatus.ACTIVE.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    attempt=col(ReportJobRecord.attempt) - 1,
                    run_after=to_db_datetime(run_after),
                    result=reason,
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def dead_letter(self, *, job_id: str, error: str) -> bool:
        """Park an exhausted job; dead jobs are never re-queued automatically."""

        now = to_db_datetime(utc_now())
        moved = self._transition(
            job_id=job_id,
            expected=JobStatus.ACTIVE,
            values={
                "status": JobStatus.DEAD.value,
                "last_error": error,
                "updated_at": now,
            },
        )
        if moved:
            logger.error("Job %s moved to dead-letter: %s", job_id, error)
        return moved

    def requeue_stale(self, *, claimed_before: datetime) -> int:
        """Return jobs whose worker vanished to the queue.

        A stale job that already used its last attempt is dead-lettered
        instead, so a job that keeps killing its worker is not redelivered
        forever. Returns the number of jobs put back on the queue.
        """

        now = to_db_datetime(utc_now())
        stale = (
            col(ReportJobRecord.status) == JobStatus.ACTIVE.value,
            col(ReportJobRecord.claimed_at) < to_db_datetime(claimed_before),
        )
        with Session(self.engine) as session:
            exhausted = session.exec(  # type: ignore[call-overload]
                sa_update(ReportJobRecord)
                .where(*stale, col(ReportJobRecord.attempt) >= col(ReportJobRecord.max_attempts))
                .values(
                    status=JobStatus.DEAD.value,
                    last_error="Visibility timeout expired with no attempts left.",
                    updated_at=now,
                ),
            )
            requeued = session.exec(  # type: ignore[call-overload]
                sa_update(ReportJobRecord)
                .where(*stale, col(ReportJobRecord.attempt) < col(ReportJobRecord.max_attempts))
                .values(
                    status=JobStatus.QUEUED.value,
                    run_after=now,
                    claimed_by=None,
                    claimed_at=None,
                    last_error="Visibility timeout expired; redelivering.",
                    updated_at=now,
                ),
            )
            session.commit()
            dead_count = int(exhausted.rowcount or 0)
            count = int(requeued.rowcount or 0)
        if dead_count:
            logger.error("Moved %d stale job(s) with no attempts left to dead-letter", dead_count)
        if count:
            logger.warning("Requeued %d stale job(s)", count)
        return count

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ReportJobRecord).where(ReportJobRecord.job_id == job_id),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        run_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        statement = select(ReportJobRecord)
        if status is not None:
            statement = statement.where(ReportJobRecord.status == status.value)
        if run_id is not None:
            statement = statement.where(ReportJobRecord.run_id == run_id)
        statement = statement.order_by(col(ReportJobRecord.created_at).desc()).limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def _transition(self, *, job_id: str, expected: JobStatus, values: dict[str, Any]) -> bool:
        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(ReportJobRecord)
                .where(
                    col(ReportJobRecord.job_id) == job_id,
                    col(ReportJobRecord.status) == expected.value,
                )
                .values(**values),
            )
            session.commit()
            return result.rowcount == 1


def _to_job_view(row: ReportJobRecord) -> JobView:
    payload = load_json(row.payload_json, default={})
    return JobView(
        job_id=row.job_id,
        run_id=row.run_id,
        tenant_id=row.tenant_id,
        payload=payload if isinstance(payload, dict) else {},
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware(row.run_after),
        claimed_by=row.claimed_by,
        claimed_at=optional_utc_aware(row.claimed_at),
        result=row.result,
        last_error=row.last_error,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
