"""Durable store for report templates, schedules, runs and audit entries."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from report_orchestrator.reporting.errors import (
    ConcurrencyLimitExceeded,
    ConflictError,
    NotFoundError,
    RateLimitExceeded,
    ScheduleBusy,
)
from report_orchestrator.reporting.models import (
    AuditEntryView,
    Cadence,
    CadenceSpec,
    DeliveryPreferences,
    OutputFormat,
    Period,
    RenderedArtifact,
    ReportType,
    RunAt,
    RunCreate,
    RunDetails,
    RunError,
    RunEventView,
    RunPage,
    RunStats,
    RunStatus,
    RunView,
    ScheduleStatus,
    ScheduleUpdate,
    ScheduleView,
    ScheduleWrite,
    Scope,
    TemplateStatus,
    TemplateUpdate,
    TemplateView,
    TemplateWrite,
    TriggerType,
)
from report_orchestrator.reporting.payloads import (
    output_defaults_to_payload,
    parse_output_defaults,
    parse_sections,
    sections_to_payload,
)
from report_orchestrator.storage.alembic_runner import upgrade_head
from report_orchestrator.storage.common import (
    begin_immediate,
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from report_orchestrator.storage.sqlmodel_models import (
    AuditLogRecord,
    ReportRunEventRecord,
    ReportRunRecord,
    ReportScheduleRecord,
    ReportTemplateRecord,
)

logger = logging.getLogger(__name__)

ACTIVE_RUN_STATUSES = (RunStatus.QUEUED.value, RunStatus.RUNNING.value)
RATE_LIMITED_TRIGGERS = (TriggerType.MANUAL.value, TriggerType.API.value)
EXECUTION_ERROR_CODE = "EXECUTION_ERROR"
STUCK_RUN_CODE = "STUCK_RUN"
# Failures a redelivered job may restart; anything else is terminal for the run.
RECLAIMABLE_FAILURE_CODES = (EXECUTION_ERROR_CODE, STUCK_RUN_CODE)


class ReportingRepository:
    """Persistence facade backed by SQLModel + SQLite.

    Status transitions are guarded ``UPDATE .. WHERE status = ..`` statements;
    a zero rowcount means another process got there first.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    # Templates

    def create_template(
        self,
        *,
        tenant_id: str,
        payload: TemplateWrite,
        actor_id: str | None,
    ) -> TemplateView:
        now = to_db_datetime(utc_now())
        row = ReportTemplateRecord(
            template_id=str(uuid4()),
            tenant_id=tenant_id,
            code=payload.code,
            name=payload.name,
            description=payload.description,
            report_type=payload.report_type.value,
            status=payload.status.value,
            sections_json=dump_json(sections_to_payload(payload.sections)),
            output_defaults_json=dump_json(output_defaults_to_payload(payload.output_defaults)),
            ai_narrative=payload.ai_narrative,
            created_by=actor_id,
            updated_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise ConflictError(
                    f"Template code {payload.code!r} already exists for this tenant.",
                ) from error
            session.refresh(row)
            return _to_template_view(row)

    def update_template(
        self,
        *,
        tenant_id: str,
        template_id: str,
        update: TemplateUpdate,
        actor_id: str | None,
    ) -> TemplateView:
        with Session(self.engine) as session:
            row = self._get_template_row(session=session, tenant_id=tenant_id, template_id=template_id)
            if update.name is not None:
                row.name = update.name
            if update.description is not None:
                row.description = update.description
            if update.report_type is not None:
                row.report_type = update.report_type.value
            if update.sections is not None:
                row.sections_json = dump_json(sections_to_payload(update.sections))
            if update.output_defaults is not None:
                row.output_defaults_json = dump_json(
                    output_defaults_to_payload(update.output_defaults),
                )
            if update.ai_narrative is not None:
                row.ai_narrative = update.ai_narrative
            row.updated_by = actor_id
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_template_view(row)

    def set_template_status(
        self,
        *,
        tenant_id: str,
        template_id: str,
        status: TemplateStatus,
        actor_id: str | None,
    ) -> TemplateView:
        with Session(self.engine) as session:
            row = self._get_template_row(session=session, tenant_id=tenant_id, template_id=template_id)
            row.status = status.value
            row.updated_by = actor_id
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_template_view(row)

    def get_template(self, *, tenant_id: str, template_id: str) -> TemplateView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ReportTemplateRecord).where(
                    ReportTemplateRecord.template_id == template_id,
                    ReportTemplateRecord.tenant_id == tenant_id,
                ),
            ).one_or_none()
            return _to_template_view(row) if row is not None else None

    def list_templates(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        report_type: ReportType | None = None,
        status: TemplateStatus | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> list[TemplateView]:
        statement = select(ReportTemplateRecord).where(ReportTemplateRecord.tenant_id == tenant_id)
        if report_type is not None:
            statement = statement.where(ReportTemplateRecord.report_type == report_type.value)
        if status is not None:
            statement = statement.where(ReportTemplateRecord.status == status.value)
        if search:
            pattern = f"%{search.strip()}%"
            statement = statement.where(
                col(ReportTemplateRecord.name).like(pattern)
                | col(ReportTemplateRecord.code).like(pattern),
            )
        statement = (
            statement.order_by(col(ReportTemplateRecord.created_at).desc())
            .offset(max(0, page - 1) * limit)
            .limit(limit)
        )
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_template_view(row) for row in rows]

    def delete_template(self, *, tenant_id: str, template_id: str) -> None:
        with Session(self.engine) as session:
            row = self._get_template_row(session=session, tenant_id=tenant_id, template_id=template_id)
            references = session.exec(
                select(func.count())
                .select_from(ReportScheduleRecord)
                .where(ReportScheduleRecord.template_id == template_id),
            ).one()
            if references:
                raise ConflictError(
                    f"Template {template_id} is referenced by {references} schedule(s); "
                    "disable it instead.",
                )
            session.delete(row)
            session.commit()

    # Schedules

    def create_schedule(
        self,
        *,
        tenant_id: str,
        payload: ScheduleWrite,
        next_run_at: datetime | None,
        actor_id: str | None,
    ) -> ScheduleView:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            self._get_template_row(
                session=session,
                tenant_id=tenant_id,
                template_id=payload.template_id,
            )
            row = ReportScheduleRecord(
                schedule_id=str(uuid4()),
                tenant_id=tenant_id,
                template_id=payload.template_id,
                name=payload.name,
                status=payload.status.value,
                next_run_at=to_db_datetime(next_run_at) if next_run_at is not None else None,
                created_by=actor_id,
                updated_by=actor_id,
                created_at=now,
                updated_at=now,
                scope_json=dump_json(payload.scope.to_dict()),
                delivery_json=dump_json(payload.delivery.to_dict()),
                output_formats_json=dump_json([item.value for item in payload.output_formats]),
                **_cadence_columns(payload.cadence),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_schedule_view(row)

    def update_schedule(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        schedule_id: str,
        update: ScheduleUpdate,
        next_run_at: datetime | None,
        actor_id: str | None,
    ) -> ScheduleView:
        """Apply a partial update; ``next_run_at=None`` keeps the stored value."""

        with Session(self.engine) as session:
            row = self._get_schedule_row(session=session, tenant_id=tenant_id, schedule_id=schedule_id)
            if update.name is not None:
                row.name = update.name
            if update.cadence is not None:
                for column_name, value in _cadence_columns(update.cadence).items():
                    setattr(row, column_name, value)
            if update.scope is not None:
                row.scope_json = dump_json(update.scope.to_dict())
            if update.delivery is not None:
                row.delivery_json = dump_json(update.delivery.to_dict())
            if update.output_formats is not None:
                row.output_formats_json = dump_json([item.value for item in update.output_formats])
            if next_run_at is not None:
                row.next_run_at = to_db_datetime(next_run_at)
            row.updated_by = actor_id
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_schedule_view(row)

    def set_schedule_status(
        self,
        *,
        tenant_id: str,
        schedule_id: str,
        status: ScheduleStatus,
        next_run_at: datetime | None,
        actor_id: str | None,
    ) -> ScheduleView:
        with Session(self.engine) as session:
            row = self._get_schedule_row(session=session, tenant_id=tenant_id, schedule_id=schedule_id)
            row.status = status.value
            if next_run_at is not None:
                row.next_run_at = to_db_datetime(next_run_at)
            row.updated_by = actor_id
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_schedule_view(row)

    def delete_schedule(self, *, tenant_id: str, schedule_id: str) -> None:
        with Session(self.engine) as session:
            row = self._get_schedule_row(session=session, tenant_id=tenant_id, schedule_id=schedule_id)
            session.delete(row)
            session.commit()

    def get_schedule(self, *, tenant_id: str, schedule_id: str) -> ScheduleView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ReportScheduleRecord).where(
                    ReportScheduleRecord.schedule_id == schedule_id,
                    ReportScheduleRecord.tenant_id == tenant_id,
                ),
            ).one_or_none()
            return _to_schedule_view(row) if row is not None else None

    def list_schedules(
        self,
        *,
        tenant_id: str,
        status: ScheduleStatus | None = None,
        template_id: str | None = None,
        limit: int = 50,
    ) -> list[ScheduleView]:
        statement = select(ReportScheduleRecord).where(ReportScheduleRecord.tenant_id == tenant_id)
        if status is not None:
            statement = statement.where(ReportScheduleRecord.status == status.value)
        if template_id is not None:
            statement = statement.where(ReportScheduleRecord.template_id == template_id)
        statement = statement.order_by(col(ReportScheduleRecord.created_at).desc()).limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_schedule_view(row) for row in rows]

    def upcoming_schedules(self, *, tenant_id: str, until: datetime) -> list[ScheduleView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ReportScheduleRecord)
                .where(
                    ReportScheduleRecord.tenant_id == tenant_id,
                    ReportScheduleRecord.status == ScheduleStatus.ACTIVE.value,
                    col(ReportScheduleRecord.next_run_at).is_not(None),
                    col(ReportScheduleRecord.next_run_at) <= to_db_datetime(until),
                )
                .order_by(col(ReportScheduleRecord.next_run_at).asc()),
            ).all()
        return [_to_schedule_view(row) for row in rows]

    def due_schedules(self, *, now: datetime, limit: int = 100) -> list[ScheduleView]:
        """Active schedules of every tenant whose ``next_run_at`` has passed."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ReportScheduleRecord)
                .where(
                    ReportScheduleRecord.status == ScheduleStatus.ACTIVE.value,
                    col(ReportScheduleRecord.next_run_at).is_not(None),
                    col(ReportScheduleRecord.next_run_at) <= to_db_datetime(now),
                )
                .order_by(col(ReportScheduleRecord.next_run_at).asc())
                .limit(limit),
            ).all()
        return [_to_schedule_view(row) for row in rows]

    def record_schedule_evaluation(
        self,
        *,
        schedule_id: str,
        evaluated_next_run_at: datetime | None,
        next_run_at: datetime,
        last_run_status: RunStatus | None,
    ) -> bool:
        """Advance ``next_run_at`` only if no other poller advanced it meanwhile."""

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"next_run_at": to_db_datetime(next_run_at), "updated_at": now}
        if last_run_status is not None:
            values["last_run_at"] = now
            values["last_run_status"] = last_run_status.value
        expected = col(ReportScheduleRecord.next_run_at)
        guard = (
            expected.is_(None)
            if evaluated_next_run_at is None
            else expected == to_db_datetime(evaluated_next_run_at)
        )
        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(ReportScheduleRecord)
                .where(col(ReportScheduleRecord.schedule_id) == schedule_id, guard)
                .values(**values),
            )
            session.commit()
            return result.rowcount == 1

    def disable_schedule(self, *, schedule_id: str, reason: str) -> bool:
        """Disable a schedule whose cadence can no longer be resolved."""

        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(ReportScheduleRecord)
                .where(
                    col(ReportScheduleRecord.schedule_id) == schedule_id,
                    col(ReportScheduleRecord.status) == ScheduleStatus.ACTIVE.value,
                )
                .values(
                    status=ScheduleStatus.DISABLED.value,
                    last_run_status=RunStatus.FAILED.value,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
        if result.rowcount == 1:
            logger.warning("Disabled schedule %s: %s", schedule_id, reason)
            return True
        return False

    # Runs

    def create_run(
        self,
        payload: RunCreate,
        *,
        manual_rate_limit: int | None,
        rate_window_seconds: int,
        max_active_runs: int,
    ) -> RunView:
        """Admit and insert a queued run.

        Manual and API triggers are rate limited per tenant over a rolling
        window; every trigger type honours the active-run cap. A rejected
        request writes nothing.
        """

        now = utc_now()
        with Session(self.engine) as session:
            begin_immediate(session)
            if manual_rate_limit is not None and payload.trigger_type.value in RATE_LIMITED_TRIGGERS:
                window_start = to_db_datetime(now - timedelta(seconds=rate_window_seconds))
                recent = session.exec(
                    select(func.count())
                    .select_from(ReportRunRecord)
                    .where(
                        ReportRunRecord.tenant_id == payload.tenant_id,
                        col(ReportRunRecord.trigger_type).in_(RATE_LIMITED_TRIGGERS),
                        col(ReportRunRecord.created_at) >= window_start,
                    ),
                ).one()
                if recent >= manual_rate_limit:
                    raise RateLimitExceeded(
                        f"Manual run rate limit of {manual_rate_limit} per "
                        f"{rate_window_seconds}s exceeded; try again later.",
                    )
            active = self._count_active_runs(session=session, tenant_id=payload.tenant_id)
            if active >= max_active_runs:
                raise ConcurrencyLimitExceeded(
                    f"Too many concurrent report runs ({active}/{max_active_runs}); "
                    "wait for some to complete.",
                )

            run_id = str(uuid4())
            row = ReportRunRecord(
                run_id=run_id,
                tenant_id=payload.tenant_id,
                template_id=payload.template_id,
                schedule_id=payload.schedule_id,
                period_from=to_db_datetime(payload.period.start),
                period_to=to_db_datetime(payload.period.end),
                period_label=payload.period.label,
                scope_json=dump_json(payload.scope.to_dict()),
                output_formats_json=dump_json([item.value for item in payload.output_formats]),
                status=RunStatus.QUEUED.value,
                outputs_json="[]",
                data_summary_json="{}",
                attempts=0,
                triggered_by=payload.triggered_by,
                trigger_type=payload.trigger_type.value,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="created",
                actor_id=payload.triggered_by,
                status_from=None,
                status_to=RunStatus.QUEUED,
                details={
                    "trigger_type": payload.trigger_type.value,
                    "schedule_id": payload.schedule_id,
                    "period": payload.period.to_dict(),
                },
            )
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def attach_job(self, *, run_id: str, job_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(  # type: ignore[call-overload]
                sa_update(ReportRunRecord)
                .where(col(ReportRunRecord.run_id) == run_id)
                .values(job_id=job_id, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()

    def start_run(
        self,
        *,
        run_id: str,
        tenant_id: str,
        allow_from_failed: bool = False,
    ) -> RunView | None:
        """Claim a run for execution; ``None`` when it is not claimable.

        ``allow_from_failed`` lets a queue-level retry restart a run that the
        crashed attempt already marked failed. Runs that failed on a contained
        error such as a disabled template stay failed.
        """

        claimable = [RunStatus.QUEUED.value]
        if allow_from_failed:
            claimable.append(RunStatus.FAILED.value)
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(ReportRunRecord).where(
                    ReportRunRecord.run_id == run_id,
                    ReportRunRecord.tenant_id == tenant_id,
                ),
            ).one_or_none()
            if row is None or row.status not in claimable:
                return None
            if row.status == RunStatus.FAILED.value and row.error_code not in RECLAIMABLE_FAILURE_CODES:
                return None
            previous = RunStatus(row.status)
            try:
                result = session.exec(  # type: ignore[call-overload]
                    sa_update(ReportRunRecord)
                    .where(
                        col(ReportRunRecord.run_id) == run_id,
                        col(ReportRunRecord.status) == previous.value,
                    )
                    .values(
                        status=RunStatus.RUNNING.value,
                        attempts=row.attempts + 1,
                        started_at=now,
                        finished_at=None,
                        duration_ms=None,
                        error_message=None,
                        error_code=None,
                        updated_at=now,
                    ),
                )
            except IntegrityError as error:
                session.rollback()
                raise ScheduleBusy(
                    f"Schedule {row.schedule_id} already has a running run.",
                ) from error
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="started",
                actor_id=None,
                status_from=previous,
                status_to=RunStatus.RUNNING,
                details={"attempt": row.attempts + 1},
            )
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def complete_run(
        self,
        *,
        run_id: str,
        outputs: list[RenderedArtifact],
        data_summary: dict[str, Any],
        duration_ms: int,
    ) -> bool:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(ReportRunRecord)
                .where(
                    col(ReportRunRecord.run_id) == run_id,
                    col(ReportRunRecord.status) == RunStatus.RUNNING.value,
                )
                .values(
                    status=RunStatus.SUCCESS.value,
                    outputs_json=dump_json([artifact.to_dict() for artifact in outputs]),
                    data_summary_json=dump_json(data_summary),
                    finished_at=now,
                    duration_ms=duration_ms,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="succeeded",
                actor_id=None,
                status_from=RunStatus.RUNNING,
                status_to=RunStatus.SUCCESS,
                details={"duration_ms": duration_ms, "outputs": len(outputs)},
            )
            session.commit()
            return True

    def fail_run(
        self,
        *,
        run_id: str,
        error: RunError,
        duration_ms: int | None,
        data_summary: dict[str, Any] | None = None,
    ) -> bool:
        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {
            "status": RunStatus.FAILED.value,
            "error_message": error.message,
            "error_code": error.code,
            "finished_at": now,
            "duration_ms": duration_ms,
            "updated_at": now,
        }
        if data_summary is not None:
            values["data_summary_json"] = dump_json(data_summary)
        with Session(self.engine) as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_update(ReportRunRecord)
                .where(
                    col(ReportRunRecord.run_id) == run_id,
                    col(ReportRunRecord.status) == RunStatus.RUNNING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="failed",
                actor_id=None,
                status_from=RunStatus.RUNNING,
                status_to=RunStatus.FAILED,
                details={"code": error.code, "message": error.message},
            )
            session.commit()
            return True

    def retry_run(
        self,
        *,
        tenant_id: str,
        run_id: str,
        actor_id: str | None,
        max_active_runs: int,
    ) -> RunView:
        """Operator retry: ``failed -> queued`` with attempts reset to zero."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            begin_immediate(session)
            row = self._get_run_row(session=session, tenant_id=tenant_id, run_id=run_id)
            if row.status != RunStatus.FAILED.value:
                raise ConflictError(f"Only failed runs can be retried, got status={row.status}.")
            active = self._count_active_runs(session=session, tenant_id=tenant_id)
            if active >= max_active_runs:
                raise ConcurrencyLimitExceeded(
                    f"Too many concurrent report runs ({active}/{max_active_runs}); "
                    "wait for some to complete.",
                )
            result = session.exec(  # type: ignore[call-overload]
                sa_update(ReportRunRecord)
                .where(
                    col(ReportRunRecord.run_id) == run_id,
                    col(ReportRunRecord.status) == RunStatus.FAILED.value,
                )
                .values(
                    status=RunStatus.QUEUED.value,
                    attempts=0,
                    error_message=None,
                    error_code=None,
                    outputs_json="[]",
                    started_at=None,
                    finished_at=None,
                    duration_ms=None,
                    job_id=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(
                    "Run state changed concurrently while retrying; "
                    f"please retry command (run_id={run_id}).",
                )
            self._add_event(
                session=session,
                run_id=run_id,
                event_type="manual_retry",
                actor_id=actor_id,
                status_from=RunStatus.FAILED,
                status_to=RunStatus.QUEUED,
                details={},
            )
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def delete_run(self, *, tenant_id: str, run_id: str) -> RunView:
        with Session(self.engine) as session:
            row = self._get_run_row(session=session, tenant_id=tenant_id, run_id=run_id)
            if row.status == RunStatus.RUNNING.value:
                raise ConflictError("Cannot delete a running report run.")
            view = _to_run_view(row)
            result = session.exec(  # type: ignore[call-overload]
                sa_delete(ReportRunRecord).where(
                    col(ReportRunRecord.run_id) == run_id,
                    col(ReportRunRecord.status) != RunStatus.RUNNING.value,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConflictError(f"Run {run_id} started while deleting; try again.")
            session.commit()
            return view

    def get_run(self, *, tenant_id: str, run_id: str) -> RunView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ReportRunRecord).where(
                    ReportRunRecord.run_id == run_id,
                    ReportRunRecord.tenant_id == tenant_id,
                ),
            ).one_or_none()
            return _to_run_view(row) if row is not None else None

    def get_run_details(self, *, tenant_id: str, run_id: str) -> RunDetails | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ReportRunRecord).where(
                    ReportRunRecord.run_id == run_id,
                    ReportRunRecord.tenant_id == tenant_id,
                ),
            ).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(ReportRunEventRecord)
                .where(ReportRunEventRecord.run_id == run_id)
                .order_by(col(ReportRunEventRecord.event_id).asc()),
            ).all()
            run = _to_run_view(row)
        return RunDetails(run=run, events=[_to_event_view(item) for item in event_rows])

    def list_runs(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        template_id: str | None = None,
        schedule_id: str | None = None,
        status: RunStatus | None = None,
        trigger_type: TriggerType | None = None,
        created_from: datetime | None = None,
        created_to: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> RunPage:
        conditions = [ReportRunRecord.tenant_id == tenant_id]
        if template_id is not None:
            conditions.append(ReportRunRecord.template_id == template_id)
        if schedule_id is not None:
            conditions.append(ReportRunRecord.schedule_id == schedule_id)
        if status is not None:
            conditions.append(ReportRunRecord.status == status.value)
        if trigger_type is not None:
            conditions.append(ReportRunRecord.trigger_type == trigger_type.value)
        if created_from is not None:
            conditions.append(col(ReportRunRecord.created_at) >= to_db_datetime(created_from))
        if created_to is not None:
            conditions.append(col(ReportRunRecord.created_at) <= to_db_datetime(created_to))

        page = max(1, page)
        with Session(self.engine) as session:
            total = session.exec(
                select(func.count()).select_from(ReportRunRecord).where(*conditions),
            ).one()
            rows = session.exec(
                select(ReportRunRecord)
                .where(*conditions)
                .order_by(col(ReportRunRecord.created_at).desc(), col(ReportRunRecord.run_id))
                .offset((page - 1) * limit)
                .limit(limit),
            ).all()
        return RunPage(
            items=[_to_run_view(row) for row in rows],
            total=int(total),
            page=page,
            limit=limit,
        )

    def run_stats(self, *, tenant_id: str) -> RunStats:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ReportRunRecord.status, func.count())
                .where(ReportRunRecord.tenant_id == tenant_id)
                .group_by(ReportRunRecord.status),
            ).all()
        counts = {status: int(count) for status, count in rows}
        return RunStats(
            total_runs=sum(counts.values()),
            success_runs=counts.get(RunStatus.SUCCESS.value, 0),
            failed_runs=counts.get(RunStatus.FAILED.value, 0),
            active_runs=sum(counts.get(status, 0) for status in ACTIVE_RUN_STATUSES),
        )

    def sweep_stuck_runs(self, *, started_before: datetime) -> list[RunView]:
        """Fail runs that have been ``running`` since before ``started_before``."""

        with Session(self.engine) as session:
            candidates = session.exec(
                select(ReportRunRecord).where(
                    ReportRunRecord.status == RunStatus.RUNNING.value,
                    col(ReportRunRecord.started_at) < to_db_datetime(started_before),
                ),
            ).all()
            candidate_ids = [row.run_id for row in candidates]

        swept: list[RunView] = []
        for run_id in candidate_ids:
            failed = self.fail_run(
                run_id=run_id,
                error=RunError(
                    message="Run exceeded the maximum running time and was failed by the sweep.",
                    code=STUCK_RUN_CODE,
                ),
                duration_ms=None,
            )
            if not failed:
                continue
            with Session(self.engine) as session:
                row = session.exec(
                    select(ReportRunRecord).where(ReportRunRecord.run_id == run_id),
                ).one_or_none()
                if row is not None:
                    swept.append(_to_run_view(row))
        return swept

    # Audit

    def record_audit(  # noqa: PLR0913
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: str,
        actor_id: str | None,
        tenant_id: str,
        diff: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                AuditLogRecord(
                    tenant_id=tenant_id,
                    action=action,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    actor_id=actor_id,
                    diff_json=dump_json(diff) if diff is not None else None,
                    metadata_json=dump_json(metadata or {}),
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def list_audit_entries(
        self,
        *,
        tenant_id: str,
        resource_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditEntryView]:
        statement = select(AuditLogRecord).where(AuditLogRecord.tenant_id == tenant_id)
        if resource_id is not None:
            statement = statement.where(AuditLogRecord.resource_id == resource_id)
        statement = statement.order_by(col(AuditLogRecord.entry_id).asc()).limit(limit)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [
            AuditEntryView(
                entry_id=row.entry_id or 0,
                tenant_id=row.tenant_id,
                action=row.action,
                resource_type=row.resource_type,
                resource_id=row.resource_id,
                actor_id=row.actor_id,
                diff=load_json(row.diff_json, default=None),
                metadata=load_json(row.metadata_json, default={}),
                created_at=to_utc_aware(row.created_at),
            )
            for row in rows
        ]

    def _count_active_runs(self, *, session: Session, tenant_id: str) -> int:
        return int(
            session.exec(
                select(func.count())
                .select_from(ReportRunRecord)
                .where(
                    ReportRunRecord.tenant_id == tenant_id,
                    col(ReportRunRecord.status).in_(ACTIVE_RUN_STATUSES),
                ),
            ).one(),
        )

    def _get_template_row(
        self,
        *,
        session: Session,
        tenant_id: str,
        template_id: str,
    ) -> ReportTemplateRecord:
        row = session.exec(
            select(ReportTemplateRecord).where(
                ReportTemplateRecord.template_id == template_id,
                ReportTemplateRecord.tenant_id == tenant_id,
            ),
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Template not found: {template_id}")
        return row

    def _get_schedule_row(
        self,
        *,
        session: Session,
        tenant_id: str,
        schedule_id: str,
    ) -> ReportScheduleRecord:
        row = session.exec(
            select(ReportScheduleRecord).where(
                ReportScheduleRecord.schedule_id == schedule_id,
                ReportScheduleRecord.tenant_id == tenant_id,
            ),
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Schedule not found: {schedule_id}")
        return row

    def _get_run_row(self, *, session: Session, tenant_id: str, run_id: str) -> ReportRunRecord:
        row = session.exec(
            select(ReportRunRecord).where(
                ReportRunRecord.run_id == run_id,
                ReportRunRecord.tenant_id == tenant_id,
            ),
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Report run not found: {run_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        run_id: str,
        event_type: str,
        actor_id: str | None,
        status_from: RunStatus | None,
        status_to: RunStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            ReportRunEventRecord(
                run_id=run_id,
                event_type=event_type,
                actor_id=actor_id,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details),
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _cadence_columns(spec: CadenceSpec) -> dict[str, Any]:
    return {
        "cadence": spec.cadence.value,
        "timezone": spec.timezone,
        "run_at_hour": spec.run_at.hour,
        "run_at_minute": spec.run_at.minute,
        "weekday": spec.weekday,
        "day_of_month": spec.day_of_month,
        "month_of_year": spec.month_of_year,
        "quarter": spec.quarter,
        "cron_expr": spec.cron_expr,
    }


def _to_template_view(row: ReportTemplateRecord) -> TemplateView:
    return TemplateView(
        template_id=row.template_id,
        tenant_id=row.tenant_id,
        code=row.code,
        name=row.name,
        description=row.description,
        report_type=ReportType(row.report_type),
        status=TemplateStatus(row.status),
        sections=parse_sections(load_json(row.sections_json, default=[])),
        output_defaults=parse_output_defaults(load_json(row.output_defaults_json, default={})),
        ai_narrative=bool(row.ai_narrative),
        created_by=row.created_by,
        updated_by=row.updated_by,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_schedule_view(row: ReportScheduleRecord) -> ScheduleView:
    return ScheduleView(
        schedule_id=row.schedule_id,
        tenant_id=row.tenant_id,
        template_id=row.template_id,
        name=row.name,
        status=ScheduleStatus(row.status),
        cadence=CadenceSpec(
            cadence=Cadence(row.cadence),
            timezone=row.timezone,
            run_at=RunAt(hour=row.run_at_hour, minute=row.run_at_minute),
            weekday=row.weekday,
            day_of_month=row.day_of_month,
            month_of_year=row.month_of_year,
            quarter=row.quarter,
            cron_expr=row.cron_expr,
        ),
        scope=Scope.from_dict(load_json(row.scope_json, default={})),
        delivery=DeliveryPreferences.from_dict(load_json(row.delivery_json, default={})),
        output_formats=tuple(
            OutputFormat(item) for item in load_json(row.output_formats_json, default=[])
        ),
        next_run_at=optional_utc_aware(row.next_run_at),
        last_run_at=optional_utc_aware(row.last_run_at),
        last_run_status=row.last_run_status,
        created_by=row.created_by,
        updated_by=row.updated_by,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_run_view(row: ReportRunRecord) -> RunView:
    error = None
    if row.error_code is not None or row.error_message is not None:
        error = RunError(message=row.error_message or "", code=row.error_code or "")
    return RunView(
        run_id=row.run_id,
        tenant_id=row.tenant_id,
        template_id=row.template_id,
        schedule_id=row.schedule_id,
        period=Period(
            start=to_utc_aware(row.period_from),
            end=to_utc_aware(row.period_to),
            label=row.period_label,
        ),
        scope_snapshot=Scope.from_dict(load_json(row.scope_json, default={})),
        output_formats=tuple(
            OutputFormat(item) for item in load_json(row.output_formats_json, default=[])
        ),
        status=RunStatus(row.status),
        outputs=[
            RenderedArtifact.from_dict(item) for item in load_json(row.outputs_json, default=[])
        ],
        data_summary=load_json(row.data_summary_json, default={}),
        error=error,
        attempts=row.attempts,
        job_id=row.job_id,
        started_at=optional_utc_aware(row.started_at),
        finished_at=optional_utc_aware(row.finished_at),
        duration_ms=row.duration_ms,
        triggered_by=row.triggered_by,
        trigger_type=TriggerType(row.trigger_type),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_event_view(row: ReportRunEventRecord) -> RunEventView:
    details = load_json(row.details_json, default={})
    return RunEventView(
        event_id=row.event_id or 0,
        run_id=row.run_id,
        event_type=row.event_type,
        actor_id=row.actor_id,
        status_from=RunStatus(row.status_from) if row.status_from is not None else None,
        status_to=RunStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware(row.created_at),
        details=details if isinstance(details, dict) else {},
    )
