"""Controllers for reporting CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from report_orchestrator.config import Settings
from report_orchestrator.reporting.aggregation import PERIOD_FIELD
from report_orchestrator.reporting.collaborators import (
    InMemoryDataAccess,
    LocalFileRenderer,
    NotificationEmitter,
    SqlAuditSink,
    StatisticalInsightGenerator,
)
from report_orchestrator.reporting.errors import ConfigurationError
from report_orchestrator.reporting.executor import RunExecutor
from report_orchestrator.reporting.locks import (
    LockCoordinator,
    LockStore,
    RedisLockStore,
    SqliteLockStore,
)
from report_orchestrator.reporting.models import (
    EntityKind,
    JobStatus,
    Period,
    ReportType,
    RunStatus,
    RunView,
    ScheduleStatus,
    ScheduleView,
    Scope,
    ScopeType,
    TemplateStatus,
    TemplateView,
    TriggerType,
)
from report_orchestrator.reporting.notifications import (
    LoggingNotificationEmitter,
    WebhookNotificationEmitter,
)
from report_orchestrator.reporting.payloads import (
    parse_output_formats,
    parse_schedule_payload,
    parse_scope,
    parse_template_payload,
)
from report_orchestrator.reporting.queue import JobQueue
from report_orchestrator.reporting.repository import ReportingRepository
from report_orchestrator.reporting.scheduler import SchedulerPoller
from report_orchestrator.reporting.services import (
    AdmissionPolicy,
    ManualRunRequest,
    ReportingService,
)
from report_orchestrator.reporting.worker import ReportWorker
from report_orchestrator.storage.common import from_iso, utc_now


@dataclass(slots=True)
class TemplateCreateCommand:
    """CLI input for template creation from a JSON payload file."""

    db_path: Path | None
    tenant_id: str
    actor_id: str | None
    payload_path: Path


@dataclass(slots=True)
class TemplateListCommand:
    db_path: Path | None
    tenant_id: str
    report_type: str | None
    status: str | None
    search: str | None
    page: int
    limit: int


@dataclass(slots=True)
class TemplateRefCommand:
    """CLI input addressing one template (show, clone, delete)."""

    db_path: Path | None
    tenant_id: str
    actor_id: str | None
    template_id: str


@dataclass(slots=True)
class TemplateStatusCommand:
    db_path: Path | None
    tenant_id: str
    actor_id: str | None
    template_id: str
    status: str


@dataclass(slots=True)
class ScheduleCreateCommand:
    """CLI input for schedule creation from a JSON payload file."""

    db_path: Path | None
    tenant_id: str
    actor_id: str | None
    payload_path: Path


@dataclass(slots=True)
class ScheduleListCommand:
    db_path: Path | None
    tenant_id: str
    status: str | None
    template_id: str | None
    limit: int


@dataclass(slots=True)
class ScheduleRefCommand:
    """CLI input addressing one schedule (pause, resume, delete)."""

    db_path: Path | None
    tenant_id: str
    actor_id: str | None
    schedule_id: str


@dataclass(slots=True)
class ScheduleUpcomingCommand:
    db_path: Path | None
    tenant_id: str
    hours: int


@dataclass(slots=True)
class RunTriggerCommand:
    """CLI input for an on-demand run."""

    db_path: Path | None
    tenant_id: str
    actor_id: str | None
    template_id: str
    period_from: str
    period_to: str
    label: str | None
    formats: tuple[str, ...]
    scope_type: str
    scope_id: str | None
    custom_filters: tuple[str, ...] = ()
    trigger_type: str = "manual"


@dataclass(slots=True)
class RunListCommand:
    db_path: Path | None
    tenant_id: str
    template_id: str | None
    schedule_id: str | None
    status: str | None
    trigger_type: str | None
    page: int
    limit: int


@dataclass(slots=True)
class RunRefCommand:
    """CLI input addressing one run (show, retry, delete)."""

    db_path: Path | None
    tenant_id: str
    actor_id: str | None
    run_id: str


@dataclass(slots=True)
class RunStatsCommand:
    db_path: Path | None
    tenant_id: str


@dataclass(slots=True)
class RunSweepCommand:
    db_path: Path | None
    stuck_seconds: int | None


@dataclass(slots=True)
class DeadLettersCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None
    fixtures_path: Path | None


@dataclass(slots=True)
class SchedulerCommand:
    """CLI input for scheduler poller execution."""

    db_path: Path | None
    once: bool
    max_ticks: int | None


@dataclass(slots=True)
class _Runtime:
    settings: Settings
    repository: ReportingRepository
    queue: JobQueue
    locks: LockCoordinator
    service: ReportingService


class ReportingCliController:
    """Coordinates template, schedule, run, worker and scheduler CLI operations."""

    # Templates

    def create_template(self, command: TemplateCreateCommand) -> list[str]:
        payload = parse_template_payload(_read_json_object(command.payload_path))
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            template = runtime.service.create_template(
                tenant_id=command.tenant_id,
                payload=payload,
                actor_id=command.actor_id,
            )
        return [
            "Template created: "
            f"template_id={template.template_id} code={template.code} "
            f"sections={len(template.sections)} status={template.status.value}",
        ]

    def list_templates(self, command: TemplateListCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            templates = runtime.service.list_templates(
                tenant_id=command.tenant_id,
                report_type=ReportType(command.report_type.upper()) if command.report_type else None,
                status=TemplateStatus(command.status.lower()) if command.status else None,
                search=command.search,
                page=command.page,
                limit=command.limit,
            )
        if not templates:
            return ["No templates found."]
        return [_template_line(template) for template in templates]

    def show_template(self, command: TemplateRefCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            template = runtime.service.get_template(
                tenant_id=command.tenant_id,
                template_id=command.template_id,
            )
        lines = [
            _template_line(template),
            f"  description={template.description or '-'}",
            "  output_defaults="
            f"formats={','.join(item.value for item in template.output_defaults.formats)} "
            f"timezone={template.output_defaults.timezone} "
            f"locale={template.output_defaults.locale}",
        ]
        for section in template.sections:
            lines.append(
                f"  section key={section.key} title={section.title!r} "
                f"entity={section.source.entity.value} view={section.view.kind.value} "
                f"enabled={'yes' if section.enabled else 'no'}",
            )
        return lines

    def set_template_status(self, command: TemplateStatusCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            template = runtime.service.set_template_status(
                tenant_id=command.tenant_id,
                template_id=command.template_id,
                status=TemplateStatus(command.status.lower()),
                actor_id=command.actor_id,
            )
        return [f"Template {template.template_id} status={template.status.value}"]

    def clone_template(self, command: TemplateRefCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            cloned = runtime.service.clone_template(
                tenant_id=command.tenant_id,
                template_id=command.template_id,
                actor_id=command.actor_id,
            )
        return [
            "Template cloned: "
            f"template_id={cloned.template_id} code={cloned.code} status={cloned.status.value}",
        ]

    def delete_template(self, command: TemplateRefCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            runtime.service.delete_template(
                tenant_id=command.tenant_id,
                template_id=command.template_id,
                actor_id=command.actor_id,
            )
        return [f"Template deleted: {command.template_id}"]

    # Schedules

    def create_schedule(self, command: ScheduleCreateCommand) -> list[str]:
        payload = parse_schedule_payload(_read_json_object(command.payload_path))
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            schedule = runtime.service.create_schedule(
                tenant_id=command.tenant_id,
                payload=payload,
                actor_id=command.actor_id,
            )
        return ["Schedule created: " + _schedule_line(schedule)]

    def list_schedules(self, command: ScheduleListCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            schedules = runtime.service.list_schedules(
                tenant_id=command.tenant_id,
                status=ScheduleStatus(command.status.lower()) if command.status else None,
                template_id=command.template_id,
                limit=command.limit,
            )
        if not schedules:
            return ["No schedules found."]
        return [_schedule_line(schedule) for schedule in schedules]

    def pause_schedule(self, command: ScheduleRefCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            schedule = runtime.service.pause_schedule(
                tenant_id=command.tenant_id,
                schedule_id=command.schedule_id,
                actor_id=command.actor_id,
            )
        return ["Schedule paused: " + _schedule_line(schedule)]

    def resume_schedule(self, command: ScheduleRefCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            schedule = runtime.service.resume_schedule(
                tenant_id=command.tenant_id,
                schedule_id=command.schedule_id,
                actor_id=command.actor_id,
            )
        return ["Schedule resumed: " + _schedule_line(schedule)]

    def delete_schedule(self, command: ScheduleRefCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            runtime.service.delete_schedule(
                tenant_id=command.tenant_id,
                schedule_id=command.schedule_id,
                actor_id=command.actor_id,
            )
        return [f"Schedule deleted: {command.schedule_id}"]

    def upcoming_schedules(self, command: ScheduleUpcomingCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            schedules = runtime.service.upcoming_schedules(
                tenant_id=command.tenant_id,
                hours=command.hours,
            )
        if not schedules:
            return [f"No schedules due in the next {command.hours}h."]
        return [_schedule_line(schedule) for schedule in schedules]

    # Runs

    def trigger_run(self, command: RunTriggerCommand) -> list[str]:
        period_from = from_iso(command.period_from)
        period_to = from_iso(command.period_to)
        scope = parse_scope(_scope_payload(command.scope_type, command.scope_id, command.custom_filters))
        request = ManualRunRequest(
            template_id=command.template_id,
            period=Period(
                start=period_from,
                end=period_to,
                label=command.label
                or f"Custom - {period_from.date().isoformat()} to {period_to.date().isoformat()}",
            ),
            scope=scope,
            output_formats=parse_output_formats(list(command.formats)) if command.formats else None,
            trigger_type=TriggerType(command.trigger_type.lower()),
        )
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            run = runtime.service.trigger_manual_run(
                tenant_id=command.tenant_id,
                request=request,
                actor_id=command.actor_id,
            )
        return ["Run queued: " + _run_line(run)]

    def list_runs(self, command: RunListCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            page = runtime.service.list_runs(
                tenant_id=command.tenant_id,
                template_id=command.template_id,
                schedule_id=command.schedule_id,
                status=RunStatus(command.status.lower()) if command.status else None,
                trigger_type=TriggerType(command.trigger_type.lower()) if command.trigger_type else None,
                page=command.page,
                limit=command.limit,
            )
        lines = [f"Runs: total={page.total} page={page.page}/{max(1, page.pages)}"]
        lines.extend("  " + _run_line(run) for run in page.items)
        return lines

    def show_run(self, command: RunRefCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            details = runtime.service.get_run_details(
                tenant_id=command.tenant_id,
                run_id=command.run_id,
            )
        run = details.run
        lines = [
            _run_line(run),
            f"  period={run.period.label} from={run.period.start.isoformat()} "
            f"to={run.period.end.isoformat()}",
            f"  scope={run.scope_snapshot.type.value} trigger={run.trigger_type.value} "
            f"triggered_by={run.triggered_by or '-'} job_id={run.job_id or '-'}",
        ]
        if run.error is not None:
            lines.append(f"  error[{run.error.code}]={run.error.message}")
        for artifact in run.outputs:
            lines.append(
                f"  output format={artifact.format.value} size={artifact.size_bytes} "
                f"location={artifact.location_ref}",
            )
        for key, summary in sorted(run.data_summary.items()):
            lines.append(f"  section {key}: {json.dumps(summary, ensure_ascii=False, sort_keys=True)}")
        lines.append("Events:")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'}"
                f" -> {event.status_to.value if event.status_to else '-'}"
                f" actor={event.actor_id or '-'}",
            )
        return lines

    def retry_run(self, command: RunRefCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            run = runtime.service.retry_run(
                tenant_id=command.tenant_id,
                run_id=command.run_id,
                actor_id=command.actor_id,
            )
        return ["Run re-queued: " + _run_line(run)]

    def delete_run(self, command: RunRefCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            runtime.service.delete_run(
                tenant_id=command.tenant_id,
                run_id=command.run_id,
                actor_id=command.actor_id,
            )
        return [f"Run deleted: {command.run_id}"]

    def run_stats(self, command: RunStatsCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            stats = runtime.service.run_stats(tenant_id=command.tenant_id)
        return [
            "Run stats: "
            f"total={stats.total_runs} success={stats.success_runs} "
            f"failed={stats.failed_runs} active={stats.active_runs} "
            f"success_rate={stats.success_rate:.2f}%",
        ]

    def sweep_runs(self, command: RunSweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        stuck_seconds = command.stuck_seconds or settings.scheduler.stuck_run_seconds
        with _runtime(settings) as runtime:
            swept = runtime.repository.sweep_stuck_runs(
                started_before=utc_now() - timedelta(seconds=stuck_seconds),
            )
        lines = [f"Stuck runs failed: {len(swept)} (threshold={stuck_seconds}s)"]
        lines.extend("  " + _run_line(run) for run in swept)
        return lines

    # Queue, worker, scheduler

    def dead_letters(self, command: DeadLettersCommand) -> list[str]:
        with _runtime(Settings.from_env(db_path=command.db_path)) as runtime:
            jobs = runtime.queue.list_jobs(status=JobStatus.DEAD, limit=command.limit)
        if not jobs:
            return ["Dead-letter queue is empty."]
        return [
            f"job_id={job.job_id} run_id={job.run_id} tenant={job.tenant_id} "
            f"attempts={job.attempt}/{job.max_attempts} error={job.last_error or '-'}"
            for job in jobs
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        data_access = InMemoryDataAccess(_load_fixtures(command.fixtures_path))
        with _runtime(settings) as runtime, _notifier(settings) as notifier:
            worker = ReportWorker(
                queue=runtime.queue,
                executor=RunExecutor(
                    repository=runtime.repository,
                    data_access=data_access,
                    renderer=LocalFileRenderer(settings.output.root_dir),
                    insight_generator=StatisticalInsightGenerator(),
                    notifier=notifier,
                    audit_sink=SqlAuditSink(runtime.repository),
                ),
                locks=runtime.locks,
                worker_id=settings.worker.worker_id,
                lock_env=settings.locks.env,
                run_lock_ttl_seconds=settings.locks.run_ttl_seconds,
                concurrency=settings.worker.concurrency,
                rate_limit_jobs=settings.worker.rate_limit_jobs,
                rate_window_seconds=settings.worker.rate_window_seconds,
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                retry_base_seconds=settings.worker.retry_base_seconds,
                retry_max_seconds=settings.worker.retry_max_seconds,
                stale_job_seconds=settings.worker.stale_job_seconds,
            )
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} skipped={summary.skipped} "
            f"duplicates={summary.duplicates} deferred={summary.deferred} "
            f"retried={summary.retried} dead={summary.dead_lettered} "
            f"idle_polls={summary.idle_polls}",
        ]

    def run_scheduler(self, command: SchedulerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            poller = SchedulerPoller(
                service=runtime.service,
                repository=runtime.repository,
                locks=runtime.locks,
                lock_env=settings.locks.env,
                poller_lock_ttl_seconds=settings.locks.poller_ttl_seconds,
                schedule_lock_ttl_seconds=settings.locks.schedule_ttl_seconds,
                interval_seconds=settings.scheduler.interval_seconds,
                stuck_run_seconds=settings.scheduler.stuck_run_seconds,
                batch_size=settings.scheduler.batch_size,
            )
            if command.once:
                tick = poller.tick()
                if tick.lock_denied:
                    return ["Scheduler tick skipped: another poller holds the lock."]
                return [
                    "Scheduler tick: "
                    f"due={tick.due} triggered={tick.triggered} failed={tick.failed} "
                    f"busy={tick.busy} stale={tick.stale} disabled={tick.disabled} "
                    f"swept={tick.swept}",
                ]
            summary = poller.run_loop(max_ticks=command.max_ticks)

        return [
            "Scheduler summary: "
            f"ticks={summary.ticks} skipped={summary.skipped_ticks} "
            f"triggered={summary.triggered} failed={summary.failed} swept={summary.swept}",
        ]


def _template_line(template: TemplateView) -> str:
    return (
        f"template_id={template.template_id} code={template.code} name={template.name!r} "
        f"type={template.report_type.value} status={template.status.value} "
        f"sections={len(template.sections)} ai_narrative={'yes' if template.ai_narrative else 'no'}"
    )


def _schedule_line(schedule: ScheduleView) -> str:
    next_run = schedule.next_run_at.isoformat() if schedule.next_run_at else "-"
    return (
        f"schedule_id={schedule.schedule_id} name={schedule.name!r} "
        f"template_id={schedule.template_id} cadence={schedule.cadence.cadence.value} "
        f"timezone={schedule.cadence.timezone} status={schedule.status.value} "
        f"next_run_at={next_run} last_run_status={schedule.last_run_status or '-'}"
    )


def _run_line(run: RunView) -> str:
    duration = f"{run.duration_ms}ms" if run.duration_ms is not None else "-"
    return (
        f"run_id={run.run_id} status={run.status.value} template_id={run.template_id} "
        f"schedule_id={run.schedule_id or '-'} trigger={run.trigger_type.value} "
        f"attempts={run.attempts} duration={duration} "
        f"formats={','.join(item.value for item in run.output_formats)}"
    )


def _scope_payload(
    scope_type: str,
    scope_id: str | None,
    custom_filters: tuple[str, ...] = (),
) -> dict[str, Any]:
    normalized = ScopeType(scope_type.upper())
    payload: dict[str, Any] = {"type": normalized.value}
    if custom_filters and normalized != ScopeType.CUSTOM:
        raise ConfigurationError("--filter is only valid with a CUSTOM scope.")
    if normalized == ScopeType.CUSTOM:
        payload["custom_filters"] = _parse_filters(custom_filters)
    id_field = {
        ScopeType.DEPARTMENT: "department_id",
        ScopeType.TEAM: "team_id",
        ScopeType.USER: "user_id",
    }.get(normalized)
    if id_field is not None:
        payload[id_field] = scope_id
    return payload


def _parse_filters(items: tuple[str, ...]) -> dict[str, str]:
    filters: dict[str, str] = {}
    for item in items:
        field, separator, value = item.partition("=")
        if not separator or not field.strip():
            raise ConfigurationError(f"Invalid filter {item!r}; expected FIELD=VALUE.")
        filters[field.strip()] = value.strip()
    return filters


def _read_json_object(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as error:
        raise ConfigurationError(f"Invalid JSON in {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigurationError(f"Expected a JSON object in {path}.")
    return payload


def _load_fixtures(path: Path | None) -> dict[EntityKind, list[dict[str, Any]]]:
    """Read ``{entity_kind: [rows]}`` fixture data for the in-memory data access."""

    if path is None:
        return {}
    payload = _read_json_object(path)
    fixtures: dict[EntityKind, list[dict[str, Any]]] = {}
    for kind, rows in payload.items():
        try:
            entity = EntityKind(kind)
        except ValueError as error:
            raise ConfigurationError(f"Unknown entity kind in fixtures: {kind!r}") from error
        if not isinstance(rows, list):
            raise ConfigurationError(f"Fixture rows for {kind!r} must be a list.")
        fixtures[entity] = [_fixture_row(row) for row in rows if isinstance(row, dict)]
    return fixtures


def _fixture_row(row: dict[str, Any]) -> dict[str, Any]:
    value = row.get(PERIOD_FIELD)
    if isinstance(value, str):
        return {**row, PERIOD_FIELD: from_iso(value)}
    return row


def _lock_store(settings: Settings) -> LockStore:
    if settings.locks.backend == "redis":
        return RedisLockStore.from_url(settings.locks.redis_url)
    return SqliteLockStore(settings.db_path, sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms)


@contextmanager
def _notifier(settings: Settings) -> Iterator[NotificationEmitter]:
    if settings.notifications.webhook_url is None:
        yield LoggingNotificationEmitter()
        return
    emitter = WebhookNotificationEmitter(
        settings.notifications.webhook_url,
        timeout_seconds=settings.notifications.webhook_timeout_seconds,
    )
    try:
        yield emitter
    finally:
        emitter.close()


@contextmanager
def _runtime(settings: Settings) -> Iterator[_Runtime]:
    settings.validate()
    repository = ReportingRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    queue = JobQueue(
        settings.db_path,
        default_max_attempts=settings.worker.max_attempts,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    lock_store = _lock_store(settings)
    service = ReportingService(
        repository=repository,
        queue=queue,
        admission=AdmissionPolicy(
            manual_rate_limit=settings.admission.manual_rate_limit,
            rate_window_seconds=settings.admission.rate_window_seconds,
            max_active_runs=settings.admission.max_active_runs,
        ),
        max_attempts=settings.worker.max_attempts,
    )
    try:
        yield _Runtime(
            settings=settings,
            repository=repository,
            queue=queue,
            locks=LockCoordinator(lock_store, holder_id=settings.worker.worker_id),
            service=service,
        )
    finally:
        lock_store.close()
        queue.close()
        repository.close()
