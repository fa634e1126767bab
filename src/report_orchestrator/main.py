"""CLI entrypoint for report-orchestrator."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from report_orchestrator import __version__
from report_orchestrator.reporting.controllers import (
    DeadLettersCommand,
    ReportingCliController,
    RunListCommand,
    RunRefCommand,
    RunStatsCommand,
    RunSweepCommand,
    RunTriggerCommand,
    ScheduleCreateCommand,
    ScheduleListCommand,
    ScheduleRefCommand,
    SchedulerCommand,
    ScheduleUpcomingCommand,
    TemplateCreateCommand,
    TemplateListCommand,
    TemplateRefCommand,
    TemplateStatusCommand,
    WorkerCommand,
)
from report_orchestrator.reporting.errors import ReportingError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ReportingCliController()

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")
OUTPUT_FORMAT_CHOICES = ("PDF", "XLSX", "CSV", "JSON", "HTML")
SCOPE_CHOICES = ("TENANT", "DEPARTMENT", "TEAM", "USER", "CUSTOM")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
tenant_option = click.option(
    "--tenant-id",
    required=True,
    envvar="REPORT_ORCH_TENANT_ID",
    help="Tenant the command acts on.",
)
actor_option = click.option(
    "--actor-id",
    default=None,
    envvar="REPORT_ORCH_ACTOR_ID",
    help="User recorded in audit entries.",
)


@click.group()
@click.version_option(version=__version__, prog_name="report-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for worker and scheduler output.",
)
def report_orchestrator(log_level: str) -> None:
    """Scheduled report orchestration CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Templates


@report_orchestrator.group()
def templates() -> None:
    """Report template commands."""


@templates.command("create")
@db_path_option
@tenant_option
@actor_option
@click.option(
    "--file",
    "payload_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON template definition.",
)
def templates_create(
    db_path: Path | None,
    tenant_id: str,
    actor_id: str | None,
    payload_path: Path,
) -> None:
    """Create a template from a JSON definition file."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.create_template(
                TemplateCreateCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    payload_path=payload_path,
                ),
            ),
        )


@templates.command("list")
@db_path_option
@tenant_option
@click.option("--report-type", default=None, help="Filter by report type, for example DSR.")
@click.option(
    "--status",
    type=click.Choice(("active", "disabled"), case_sensitive=False),
    default=None,
    help="Filter by template status.",
)
@click.option("--search", default=None, help="Case-insensitive match on name or code.")
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--limit", type=click.IntRange(min=1, max=100), default=20, show_default=True)
def templates_list(  # noqa: PLR0913
    db_path: Path | None,
    tenant_id: str,
    report_type: str | None,
    status: str | None,
    search: str | None,
    page: int,
    limit: int,
) -> None:
    """List report templates."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.list_templates(
                TemplateListCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    report_type=report_type,
                    status=status,
                    search=search,
                    page=page,
                    limit=limit,
                ),
            ),
        )


@templates.command("show")
@db_path_option
@tenant_option
@click.option("--template-id", required=True, help="Template id.")
def templates_show(db_path: Path | None, tenant_id: str, template_id: str) -> None:
    """Show a template with its sections."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.show_template(
                TemplateRefCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    actor_id=None,
                    template_id=template_id,
                ),
            ),
        )


@templates.command("clone")
@db_path_option
@tenant_option
@actor_option
@click.option("--template-id", required=True, help="Template id.")
def templates_clone(
    db_path: Path | None,
    tenant_id: str,
    actor_id: str | None,
    template_id: str,
) -> None:
    """Copy a template; the copy starts disabled."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.clone_template(
                TemplateRefCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    template_id=template_id,
                ),
            ),
        )


@templates.command("set-status")
@db_path_option
@tenant_option
@actor_option
@click.option("--template-id", required=True, help="Template id.")
@click.option(
    "--status",
    type=click.Choice(("active", "disabled"), case_sensitive=False),
    required=True,
)
def templates_set_status(
    db_path: Path | None,
    tenant_id: str,
    actor_id: str | None,
    template_id: str,
    status: str,
) -> None:
    """Enable or disable a template."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.set_template_status(
                TemplateStatusCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    template_id=template_id,
                    status=status,
                ),
            ),
        )


@templates.command("delete")
@db_path_option
@tenant_option
@actor_option
@click.option("--template-id", required=True, help="Template id.")
def templates_delete(
    db_path: Path | None,
    tenant_id: str,
    actor_id: str | None,
    template_id: str,
) -> None:
    """Delete a template that no schedule or run references."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.delete_template(
                TemplateRefCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    template_id=template_id,
                ),
            ),
        )


# Schedules


@report_orchestrator.group()
def schedules() -> None:
    """Report schedule commands."""


@schedules.command("create")
@db_path_option
@tenant_option
@actor_option
@click.option(
    "--file",
    "payload_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON schedule definition.",
)
def schedules_create(
    db_path: Path | None,
    tenant_id: str,
    actor_id: str | None,
    payload_path: Path,
) -> None:
    """Create a schedule from a JSON definition file."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.create_schedule(
                ScheduleCreateCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    payload_path=payload_path,
                ),
            ),
        )


@schedules.command("list")
@db_path_option
@tenant_option
@click.option(
    "--status",
    type=click.Choice(("active", "paused", "disabled"), case_sensitive=False),
    default=None,
)
@click.option("--template-id", default=None, help="Only schedules of this template.")
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def schedules_list(
    db_path: Path | None,
    tenant_id: str,
    status: str | None,
    template_id: str | None,
    limit: int,
) -> None:
    """List schedules."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.list_schedules(
                ScheduleListCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    status=status,
                    template_id=template_id,
                    limit=limit,
                ),
            ),
        )


@schedules.command("upcoming")
@db_path_option
@tenant_option
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Look-ahead window.",
)
def schedules_upcoming(db_path: Path | None, tenant_id: str, hours: int) -> None:
    """Show active schedules due within the look-ahead window."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.upcoming_schedules(
                ScheduleUpcomingCommand(db_path=db_path, tenant_id=tenant_id, hours=hours),
            ),
        )


@schedules.command("pause")
@db_path_option
@tenant_option
@actor_option
@click.option("--schedule-id", required=True, help="Schedule id.")
def schedules_pause(
    db_path: Path | None,
    tenant_id: str,
    actor_id: str | None,
    schedule_id: str,
) -> None:
    """Pause an active schedule."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.pause_schedule(
                ScheduleRefCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    schedule_id=schedule_id,
                ),
            ),
        )


@schedules.command("resume")
@db_path_option
@tenant_option
@actor_option
@click.option("--schedule-id", required=True, help="Schedule id.")
def schedules_resume(
    db_path: Path | None,
    tenant_id: str,
    actor_id: str | None,
    schedule_id: str,
) -> None:
    """Resume a paused schedule from its next firing after now."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.resume_schedule(
                ScheduleRefCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    schedule_id=schedule_id,
                ),
            ),
        )


@schedules.command("delete")
@db_path_option
@tenant_option
@actor_option
@click.option("--schedule-id", required=True, help="Schedule id.")
def schedules_delete(
    db_path: Path | None,
    tenant_id: str,
    actor_id: str | None,
    schedule_id: str,
) -> None:
    """Delete a schedule; its past runs are kept."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.delete_schedule(
                ScheduleRefCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    schedule_id=schedule_id,
                ),
            ),
        )


# Runs


@report_orchestrator.group()
def runs() -> None:
    """Report run commands."""


@runs.command("trigger")
@db_path_option
@tenant_option
@actor_option
@click.option("--template-id", required=True, help="Template id.")
@click.option("--from", "period_from", required=True, help="Period start (ISO 8601).")
@click.option("--to", "period_to", required=True, help="Period end (ISO 8601).")
@click.option("--label", default=None, help="Human-readable period label.")
@click.option(
    "--format",
    "formats",
    multiple=True,
    type=click.Choice(OUTPUT_FORMAT_CHOICES, case_sensitive=False),
    help="Output format. Can be repeated; defaults to the template's formats.",
)
@click.option(
    "--scope",
    "scope_type",
    type=click.Choice(SCOPE_CHOICES, case_sensitive=False),
    default="TENANT",
    show_default=True,
)
@click.option("--scope-id", default=None, help="Department, team or user id for the scope.")
@click.option(
    "--filter",
    "custom_filters",
    multiple=True,
    metavar="FIELD=VALUE",
    help="Equality filter for a CUSTOM scope. Can be repeated.",
)
@click.option(
    "--trigger-type",
    type=click.Choice(("manual", "api"), case_sensitive=False),
    default="manual",
    show_default=True,
)
def runs_trigger(  # noqa: PLR0913
    db_path: Path | None,
    tenant_id: str,
    actor_id: str | None,
    template_id: str,
    period_from: str,
    period_to: str,
    label: str | None,
    formats: tuple[str, ...],
    scope_type: str,
    scope_id: str | None,
    custom_filters: tuple[str, ...],
    trigger_type: str,
) -> None:
    """Queue an on-demand run for a custom period."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.trigger_run(
                RunTriggerCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    template_id=template_id,
                    period_from=period_from,
                    period_to=period_to,
                    label=label,
                    formats=tuple(item.upper() for item in formats),
                    scope_type=scope_type,
                    scope_id=scope_id,
                    custom_filters=custom_filters,
                    trigger_type=trigger_type,
                ),
            ),
        )


@runs.command("list")
@db_path_option
@tenant_option
@click.option("--template-id", default=None)
@click.option("--schedule-id", default=None)
@click.option(
    "--status",
    type=click.Choice(("queued", "running", "success", "failed"), case_sensitive=False),
    default=None,
)
@click.option(
    "--trigger-type",
    type=click.Choice(("manual", "schedule", "api"), case_sensitive=False),
    default=None,
)
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--limit", type=click.IntRange(min=1, max=100), default=20, show_default=True)
def runs_list(  # noqa: PLR0913
    db_path: Path | None,
    tenant_id: str,
    template_id: str | None,
    schedule_id: str | None,
    status: str | None,
    trigger_type: str | None,
    page: int,
    limit: int,
) -> None:
    """List runs, newest first."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.list_runs(
                RunListCommand(
                    db_path=db_path,
                    tenant_id=tenant_id,
                    template_id=template_id,
                    schedule_id=schedule_id,
                    status=status,
                    trigger_type=trigger_type,
                    page=page,
                    limit=limit,
                ),
            ),
        )


@runs.command("show")
@db_path_option
@tenant_option
@click.option("--run-id", required=True, help="Run id.")
def runs_show(db_path: Path | None, tenant_id: str, run_id: str) -> None:
    """Show a run with its outputs, section summaries and event history."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.show_run(
                RunRefCommand(db_path=db_path, tenant_id=tenant_id, actor_id=None, run_id=run_id),
            ),
        )


@runs.command("retry")
@db_path_option
@tenant_option
@actor_option
@click.option("--run-id", required=True, help="Run id.")
def runs_retry(db_path: Path | None, tenant_id: str, actor_id: str | None, run_id: str) -> None:
    """Re-queue a failed run."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.retry_run(
                RunRefCommand(db_path=db_path, tenant_id=tenant_id, actor_id=actor_id, run_id=run_id),
            ),
        )


@runs.command("delete")
@db_path_option
@tenant_option
@actor_option
@click.option("--run-id", required=True, help="Run id.")
def runs_delete(db_path: Path | None, tenant_id: str, actor_id: str | None, run_id: str) -> None:
    """Delete a run that is not currently running."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.delete_run(
                RunRefCommand(db_path=db_path, tenant_id=tenant_id, actor_id=actor_id, run_id=run_id),
            ),
        )


@runs.command("stats")
@db_path_option
@tenant_option
def runs_stats(db_path: Path | None, tenant_id: str) -> None:
    """Show run counts and success rate."""

    with _cli_errors():
        _emit_lines(CONTROLLER.run_stats(RunStatsCommand(db_path=db_path, tenant_id=tenant_id)))


@runs.command("sweep")
@db_path_option
@click.option(
    "--stuck-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Fail runs running longer than this. Defaults to REPORT_ORCH_STUCK_RUN_SECONDS.",
)
def runs_sweep(db_path: Path | None, stuck_seconds: int | None) -> None:
    """Fail runs stuck in the running state."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.sweep_runs(RunSweepCommand(db_path=db_path, stuck_seconds=stuck_seconds)),
        )


# Queue, worker and scheduler


@report_orchestrator.group()
def queue() -> None:
    """Job queue commands."""


@queue.command("dead-letters")
@db_path_option
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def queue_dead_letters(db_path: Path | None, limit: int) -> None:
    """List jobs that exhausted their attempts."""

    with _cli_errors():
        _emit_lines(CONTROLLER.dead_letters(DeadLettersCommand(db_path=db_path, limit=limit)))


@report_orchestrator.command("worker")
@db_path_option
@click.option("--once", is_flag=True, default=False, help="Process at most one job.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after claiming this many jobs.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls (default: poll forever).",
)
@click.option(
    "--fixtures",
    "fixtures_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file mapping entity kinds to rows served to report sections.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int | None,
    fixtures_path: Path | None,
) -> None:
    """Run the report worker."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_jobs=max_jobs,
                    max_idle_polls=max_idle_polls,
                    fixtures_path=fixtures_path,
                ),
            ),
        )


@report_orchestrator.command("scheduler")
@db_path_option
@click.option("--once", is_flag=True, default=False, help="Run a single tick and exit.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks.",
)
def scheduler(db_path: Path | None, once: bool, max_ticks: int | None) -> None:
    """Run the schedule poller."""

    with _cli_errors():
        _emit_lines(
            CONTROLLER.run_scheduler(
                SchedulerCommand(db_path=db_path, once=once, max_ticks=max_ticks),
            ),
        )


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except ReportingError as error:
        raise click.ClickException(f"[{error.code}] {error.message}") from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    report_orchestrator()
