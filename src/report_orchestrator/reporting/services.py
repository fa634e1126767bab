"""Use-case services for report templates, schedules and runs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from report_orchestrator.reporting.cadence import (
    compute_next_run_at,
    compute_period_for_schedule,
    validate_cadence,
)
from report_orchestrator.reporting.collaborators import AuditSink, SqlAuditSink
from report_orchestrator.reporting.errors import ConfigurationError, NotFoundError
from report_orchestrator.reporting.models import (
    OutputFormat,
    Period,
    ReportType,
    RunCreate,
    RunDetails,
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
    MAX_CODE_LENGTH,
    cadence_to_dict,
    output_defaults_to_payload,
    validate_scope,
    validate_sections,
)
from report_orchestrator.reporting.queue import JobQueue
from report_orchestrator.reporting.repository import ReportingRepository
from report_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_PERIOD = timedelta(days=365)
DEFAULT_UPCOMING_HOURS = 24
RUN_RESOURCE = "ReportRun"
SCHEDULE_RESOURCE = "ReportSchedule"
TEMPLATE_RESOURCE = "ReportTemplate"


@dataclass(slots=True)
class AdmissionPolicy:
    """Per-tenant run admission limits."""

    manual_rate_limit: int = 50
    rate_window_seconds: int = 3_600
    max_active_runs: int = 10


@dataclass(slots=True)
class ManualRunRequest:
    """High-level command to trigger a run outside any schedule."""

    template_id: str
    period: Period
    scope: Scope = field(default_factory=Scope)
    output_formats: tuple[OutputFormat, ...] | None = None
    trigger_type: TriggerType = TriggerType.MANUAL


class ReportingService:
    """Coordinates validation, persistence, dispatch and auditing."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: ReportingRepository,
        queue: JobQueue,
        admission: AdmissionPolicy | None = None,
        audit_sink: AuditSink | None = None,
        max_attempts: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.queue = queue
        self.admission = admission or AdmissionPolicy()
        self.audit_sink = audit_sink or SqlAuditSink(repository)
        self.max_attempts = max_attempts
        self._clock = clock

    # Runs

    def trigger_manual_run(
        self,
        *,
        tenant_id: str,
        request: ManualRunRequest,
        actor_id: str | None,
    ) -> RunView:
        """Admit, persist and enqueue an on-demand run.

        Raises ``RateLimitExceeded`` or ``ConcurrencyLimitExceeded`` before any
        record is written when the tenant is over its limits.
        """

        if request.trigger_type not in {TriggerType.MANUAL, TriggerType.API}:
            raise ConfigurationError(
                f"Unsupported trigger type for on-demand runs: {request.trigger_type.value}",
            )
        validate_period(request.period)
        validate_scope(request.scope)
        template = self._active_template(tenant_id=tenant_id, template_id=request.template_id)
        run = self.repository.create_run(
            RunCreate(
                tenant_id=tenant_id,
                template_id=template.template_id,
                period=request.period,
                scope=request.scope,
                output_formats=request.output_formats or template.output_defaults.formats,
                trigger_type=request.trigger_type,
                triggered_by=actor_id,
            ),
            manual_rate_limit=self.admission.manual_rate_limit,
            rate_window_seconds=self.admission.rate_window_seconds,
            max_active_runs=self.admission.max_active_runs,
        )
        self._audit(
            action="REPORT_RUN_TRIGGERED",
            resource_type=RUN_RESOURCE,
            resource_id=run.run_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            metadata={
                "template_id": template.template_id,
                "trigger_type": request.trigger_type.value,
                "period": request.period.to_dict(),
            },
        )
        self._dispatch(run)
        logger.info(
            "Manual report run triggered run=%s tenant=%s template=%s",
            run.run_id,
            tenant_id,
            template.template_id,
        )
        return run

    def trigger_scheduled_run(
        self,
        *,
        tenant_id: str,
        schedule_id: str,
        now: datetime | None = None,
    ) -> RunView:
        """Create and enqueue the run a due schedule owes.

        Scheduled runs skip the manual rate limit but count against the active
        run cap.
        """

        now = now or self._clock()
        schedule = self.repository.get_schedule(tenant_id=tenant_id, schedule_id=schedule_id)
        if schedule is None or schedule.status != ScheduleStatus.ACTIVE:
            raise NotFoundError(f"Schedule not found or inactive: {schedule_id}")
        template = self._active_template(tenant_id=tenant_id, template_id=schedule.template_id)
        period = compute_period_for_schedule(schedule.cadence, now)
        run = self.repository.create_run(
            RunCreate(
                tenant_id=tenant_id,
                template_id=template.template_id,
                schedule_id=schedule.schedule_id,
                period=period,
                scope=schedule.scope,
                output_formats=schedule.output_formats or template.output_defaults.formats,
                trigger_type=TriggerType.SCHEDULE,
            ),
            manual_rate_limit=None,
            rate_window_seconds=self.admission.rate_window_seconds,
            max_active_runs=self.admission.max_active_runs,
        )
        self._audit(
            action="REPORT_RUN_TRIGGERED",
            resource_type=RUN_RESOURCE,
            resource_id=run.run_id,
            actor_id=None,
            tenant_id=tenant_id,
            metadata={
                "template_id": template.template_id,
                "schedule_id": schedule.schedule_id,
                "trigger_type": TriggerType.SCHEDULE.value,
                "period": period.to_dict(),
            },
        )
        self._dispatch(run)
        logger.info(
            "Scheduled report run triggered run=%s tenant=%s schedule=%s period=%s",
            run.run_id,
            tenant_id,
            schedule.schedule_id,
            period.label,
        )
        return run

    def retry_run(self, *, tenant_id: str, run_id: str, actor_id: str | None) -> RunView:
        """Send a failed run back to the queue with attempts reset."""

        run = self.repository.retry_run(
            tenant_id=tenant_id,
            run_id=run_id,
            actor_id=actor_id,
            max_active_runs=self.admission.max_active_runs,
        )
        self._audit(
            action="REPORT_RUN_TRIGGERED",
            resource_type=RUN_RESOURCE,
            resource_id=run.run_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            metadata={"template_id": run.template_id, "trigger_type": "retry"},
        )
        self._dispatch(run)
        logger.info("Report run %s re-queued by %s", run_id, actor_id or "system")
        return run

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
        return self.repository.list_runs(
            tenant_id=tenant_id,
            template_id=template_id,
            schedule_id=schedule_id,
            status=status,
            trigger_type=trigger_type,
            created_from=created_from,
            created_to=created_to,
            page=page,
            limit=limit,
        )

    def get_run(self, *, tenant_id: str, run_id: str) -> RunView:
        run = self.repository.get_run(tenant_id=tenant_id, run_id=run_id)
        if run is None:
            raise NotFoundError(f"Report run not found: {run_id}")
        return run

    def get_run_details(self, *, tenant_id: str, run_id: str) -> RunDetails:
        details = self.repository.get_run_details(tenant_id=tenant_id, run_id=run_id)
        if details is None:
            raise NotFoundError(f"Report run not found: {run_id}")
        return details

    def delete_run(self, *, tenant_id: str, run_id: str, actor_id: str | None) -> RunView:
        run = self.repository.delete_run(tenant_id=tenant_id, run_id=run_id)
        self._audit(
            action="REPORT_RUN_DELETED",
            resource_type=RUN_RESOURCE,
            resource_id=run.run_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            metadata={"template_id": run.template_id, "status": run.status.value},
        )
        logger.info("Report run %s deleted by %s", run_id, actor_id or "system")
        return run

    def run_stats(self, *, tenant_id: str) -> RunStats:
        return self.repository.run_stats(tenant_id=tenant_id)

    # Schedules

    def create_schedule(
        self,
        *,
        tenant_id: str,
        payload: ScheduleWrite,
        actor_id: str | None,
    ) -> ScheduleView:
        validate_cadence(payload.cadence)
        validate_scope(payload.scope)
        self._active_template(tenant_id=tenant_id, template_id=payload.template_id)
        next_run_at = compute_next_run_at(payload.cadence, self._clock())
        schedule = self.repository.create_schedule(
            tenant_id=tenant_id,
            payload=payload,
            next_run_at=next_run_at,
            actor_id=actor_id,
        )
        self._audit(
            action="REPORT_SCHEDULE_CREATED",
            resource_type=SCHEDULE_RESOURCE,
            resource_id=schedule.schedule_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            metadata={
                "name": schedule.name,
                "template_id": schedule.template_id,
                "cadence": schedule.cadence.cadence.value,
            },
        )
        logger.info(
            "Report schedule created schedule=%s tenant=%s next_run_at=%s",
            schedule.schedule_id,
            tenant_id,
            next_run_at.isoformat(),
        )
        return schedule

    def update_schedule(
        self,
        *,
        tenant_id: str,
        schedule_id: str,
        update: ScheduleUpdate,
        actor_id: str | None,
    ) -> ScheduleView:
        """Apply a partial update; a cadence change recomputes ``next_run_at``."""

        before = self.get_schedule(tenant_id=tenant_id, schedule_id=schedule_id)
        next_run_at = None
        if update.cadence is not None:
            validate_cadence(update.cadence)
            next_run_at = compute_next_run_at(update.cadence, self._clock())
        if update.scope is not None:
            validate_scope(update.scope)
        after = self.repository.update_schedule(
            tenant_id=tenant_id,
            schedule_id=schedule_id,
            update=update,
            next_run_at=next_run_at,
            actor_id=actor_id,
        )
        self._audit(
            action="REPORT_SCHEDULE_UPDATED",
            resource_type=SCHEDULE_RESOURCE,
            resource_id=schedule_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            diff={"before": _schedule_snapshot(before), "after": _schedule_snapshot(after)},
            metadata={"name": after.name},
        )
        logger.info("Report schedule %s updated", schedule_id)
        return after

    def pause_schedule(
        self,
        *,
        tenant_id: str,
        schedule_id: str,
        actor_id: str | None,
    ) -> ScheduleView:
        return self._change_schedule_status(
            tenant_id=tenant_id,
            schedule_id=schedule_id,
            status=ScheduleStatus.PAUSED,
            next_run_at=None,
            actor_id=actor_id,
        )

    def resume_schedule(
        self,
        *,
        tenant_id: str,
        schedule_id: str,
        actor_id: str | None,
    ) -> ScheduleView:
        """Reactivate a schedule from the next firing after now; missed firings are not replayed."""

        schedule = self.get_schedule(tenant_id=tenant_id, schedule_id=schedule_id)
        return self._change_schedule_status(
            tenant_id=tenant_id,
            schedule_id=schedule_id,
            status=ScheduleStatus.ACTIVE,
            next_run_at=compute_next_run_at(schedule.cadence, self._clock()),
            actor_id=actor_id,
        )

    def delete_schedule(self, *, tenant_id: str, schedule_id: str, actor_id: str | None) -> None:
        schedule = self.get_schedule(tenant_id=tenant_id, schedule_id=schedule_id)
        self.repository.delete_schedule(tenant_id=tenant_id, schedule_id=schedule_id)
        self._audit(
            action="REPORT_SCHEDULE_DELETED",
            resource_type=SCHEDULE_RESOURCE,
            resource_id=schedule_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            metadata={"name": schedule.name},
        )
        logger.info("Report schedule %s deleted", schedule_id)

    def get_schedule(self, *, tenant_id: str, schedule_id: str) -> ScheduleView:
        schedule = self.repository.get_schedule(tenant_id=tenant_id, schedule_id=schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule not found: {schedule_id}")
        return schedule

    def list_schedules(
        self,
        *,
        tenant_id: str,
        status: ScheduleStatus | None = None,
        template_id: str | None = None,
        limit: int = 50,
    ) -> list[ScheduleView]:
        return self.repository.list_schedules(
            tenant_id=tenant_id,
            status=status,
            template_id=template_id,
            limit=limit,
        )

    def upcoming_schedules(
        self,
        *,
        tenant_id: str,
        hours: int = DEFAULT_UPCOMING_HOURS,
    ) -> list[ScheduleView]:
        """Active schedules due between now and ``hours`` from now."""

        if hours <= 0:
            raise ConfigurationError("hours must be positive.")
        now = self._clock()
        schedules = self.repository.upcoming_schedules(
            tenant_id=tenant_id,
            until=now + timedelta(hours=hours),
        )
        return [item for item in schedules if item.next_run_at is not None and item.next_run_at >= now]

    # Templates

    def create_template(
        self,
        *,
        tenant_id: str,
        payload: TemplateWrite,
        actor_id: str | None,
    ) -> TemplateView:
        validate_sections(payload.sections)
        template = self.repository.create_template(
            tenant_id=tenant_id,
            payload=payload,
            actor_id=actor_id,
        )
        self._audit(
            action="REPORT_TEMPLATE_CREATED",
            resource_type=TEMPLATE_RESOURCE,
            resource_id=template.template_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            metadata={"code": template.code, "name": template.name},
        )
        logger.info("Report template created template=%s code=%s", template.template_id, template.code)
        return template

    def update_template(
        self,
        *,
        tenant_id: str,
        template_id: str,
        update: TemplateUpdate,
        actor_id: str | None,
    ) -> TemplateView:
        if update.sections is not None:
            validate_sections(update.sections)
        before = self.get_template(tenant_id=tenant_id, template_id=template_id)
        after = self.repository.update_template(
            tenant_id=tenant_id,
            template_id=template_id,
            update=update,
            actor_id=actor_id,
        )
        self._audit(
            action="REPORT_TEMPLATE_UPDATED",
            resource_type=TEMPLATE_RESOURCE,
            resource_id=template_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            diff={"before": _template_snapshot(before), "after": _template_snapshot(after)},
            metadata={"code": after.code},
        )
        logger.info("Report template %s updated", template_id)
        return after

    def clone_template(
        self,
        *,
        tenant_id: str,
        template_id: str,
        actor_id: str | None,
    ) -> TemplateView:
        """Copy a template under a fresh code; the copy starts disabled."""

        source = self.get_template(tenant_id=tenant_id, template_id=template_id)
        suffix = f"_COPY_{int(self._clock().timestamp() * 1000)}"
        cloned = self.repository.create_template(
            tenant_id=tenant_id,
            payload=TemplateWrite(
                code=source.code[: MAX_CODE_LENGTH - len(suffix)] + suffix,
                name=f"{source.name} (Copy)",
                description=source.description,
                report_type=source.report_type,
                sections=source.sections,
                output_defaults=source.output_defaults,
                ai_narrative=source.ai_narrative,
                status=TemplateStatus.DISABLED,
            ),
            actor_id=actor_id,
        )
        self._audit(
            action="REPORT_TEMPLATE_CREATED",
            resource_type=TEMPLATE_RESOURCE,
            resource_id=cloned.template_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            metadata={"code": cloned.code, "cloned_from": source.template_id},
        )
        logger.info("Report template %s cloned to %s", template_id, cloned.template_id)
        return cloned

    def set_template_status(
        self,
        *,
        tenant_id: str,
        template_id: str,
        status: TemplateStatus,
        actor_id: str | None,
    ) -> TemplateView:
        before = self.get_template(tenant_id=tenant_id, template_id=template_id)
        after = self.repository.set_template_status(
            tenant_id=tenant_id,
            template_id=template_id,
            status=status,
            actor_id=actor_id,
        )
        self._audit(
            action="REPORT_TEMPLATE_UPDATED",
            resource_type=TEMPLATE_RESOURCE,
            resource_id=template_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            diff={"before": {"status": before.status.value}, "after": {"status": status.value}},
            metadata={
                "code": after.code,
                "status_change": f"{before.status.value} -> {status.value}",
            },
        )
        logger.info(
            "Report template %s status %s -> %s",
            template_id,
            before.status.value,
            status.value,
        )
        return after

    def get_template(self, *, tenant_id: str, template_id: str) -> TemplateView:
        template = self.repository.get_template(tenant_id=tenant_id, template_id=template_id)
        if template is None:
            raise NotFoundError(f"Template not found: {template_id}")
        return template

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
        return self.repository.list_templates(
            tenant_id=tenant_id,
            report_type=report_type,
            status=status,
            search=search,
            page=page,
            limit=limit,
        )

    def delete_template(self, *, tenant_id: str, template_id: str, actor_id: str | None) -> None:
        """Hard-delete an unreferenced template; referenced ones must be disabled instead."""

        template = self.get_template(tenant_id=tenant_id, template_id=template_id)
        self.repository.delete_template(tenant_id=tenant_id, template_id=template_id)
        self._audit(
            action="REPORT_TEMPLATE_DELETED",
            resource_type=TEMPLATE_RESOURCE,
            resource_id=template_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            metadata={"code": template.code, "name": template.name},
        )
        logger.info("Report template %s deleted", template_id)

    def _active_template(self, *, tenant_id: str, template_id: str) -> TemplateView:
        template = self.repository.get_template(tenant_id=tenant_id, template_id=template_id)
        if template is None or template.status != TemplateStatus.ACTIVE:
            raise NotFoundError(f"Template not found or inactive: {template_id}")
        return template

    def _change_schedule_status(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        schedule_id: str,
        status: ScheduleStatus,
        next_run_at: datetime | None,
        actor_id: str | None,
    ) -> ScheduleView:
        before = self.get_schedule(tenant_id=tenant_id, schedule_id=schedule_id)
        after = self.repository.set_schedule_status(
            tenant_id=tenant_id,
            schedule_id=schedule_id,
            status=status,
            next_run_at=next_run_at,
            actor_id=actor_id,
        )
        self._audit(
            action="REPORT_SCHEDULE_UPDATED",
            resource_type=SCHEDULE_RESOURCE,
            resource_id=schedule_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            diff={"before": {"status": before.status.value}, "after": {"status": status.value}},
            metadata={"name": after.name, "action": status.value},
        )
        logger.info("Report schedule %s %s -> %s", schedule_id, before.status.value, status.value)
        return after

    def _dispatch(self, run: RunView) -> None:
        handle = self.queue.enqueue(
            run_id=run.run_id,
            tenant_id=run.tenant_id,
            payload={
                "run_id": run.run_id,
                "tenant_id": run.tenant_id,
                "template_id": run.template_id,
                "schedule_id": run.schedule_id,
                "period": run.period.to_dict(),
                "scope": run.scope_snapshot.to_dict(),
                "output_formats": [item.value for item in run.output_formats],
            },
            max_attempts=self.max_attempts,
        )
        self.repository.attach_job(run_id=run.run_id, job_id=handle.job_id)
        run.job_id = handle.job_id

    def _audit(self, **entry: Any) -> None:
        try:
            self.audit_sink.record(**entry)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Failed to write audit entry %s for %s",
                entry.get("action"),
                entry.get("resource_id"),
            )


def validate_period(period: Period) -> None:
    """A run period must be non-empty and span at most one year."""

    if period.end <= period.start:
        raise ConfigurationError("Period end must be after period start.")
    if period.end - period.start > MAX_PERIOD:
        raise ConfigurationError("Period cannot exceed 1 year.")


def _schedule_snapshot(schedule: ScheduleView) -> dict[str, Any]:
    return {
        "name": schedule.name,
        "status": schedule.status.value,
        "cadence": cadence_to_dict(schedule.cadence),
        "scope": schedule.scope.to_dict(),
        "delivery": schedule.delivery.to_dict(),
        "output_formats": [item.value for item in schedule.output_formats],
        "next_run_at": schedule.next_run_at.isoformat() if schedule.next_run_at else None,
    }


def _template_snapshot(template: TemplateView) -> dict[str, Any]:
    return {
        "name": template.name,
        "description": template.description,
        "report_type": template.report_type.value,
        "section_keys": [section.key for section in template.sections],
        "output_defaults": output_defaults_to_payload(template.output_defaults),
        "ai_narrative": template.ai_narrative,
    }
