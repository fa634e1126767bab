"""SQLModel ORM tables for report orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class ReportTemplateRecord(SQLModel, table=True):
    __tablename__ = "report_templates"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_report_templates_tenant_code"),
    )

    template_id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    code: str
    name: str
    description: str = ""
    report_type: str = Field(index=True)
    status: str = Field(index=True)
    sections_json: str = Field(sa_column=Column(Text, nullable=False))
    output_defaults_json: str = Field(sa_column=Column(Text, nullable=False))
    ai_narrative: bool = False
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReportScheduleRecord(SQLModel, table=True):
    __tablename__ = "report_schedules"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_report_schedules_status_next_run", "status", "next_run_at"),)

    schedule_id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    template_id: str = Field(
        sa_column=Column(
            ForeignKey("report_templates.template_id", ondelete="RESTRICT"),
            nullable=False,
            index=True,
        ),
    )
    name: str
    status: str
    cadence: str
    timezone: str
    run_at_hour: int = 9
    run_at_minute: int = 0
    weekday: int | None = None
    day_of_month: int | None = None
    month_of_year: int | None = None
    quarter: int | None = None
    cron_expr: str | None = None
    scope_json: str = Field(sa_column=Column(Text, nullable=False))
    delivery_json: str = Field(sa_column=Column(Text, nullable=False))
    output_formats_json: str = Field(sa_column=Column(Text, nullable=False))
    next_run_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_run_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_run_status: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReportRunRecord(SQLModel, table=True):
    __tablename__ = "report_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_report_runs_schedule_running",
            "schedule_id",
            unique=True,
            sqlite_where=text("status = 'running' AND schedule_id IS NOT NULL"),
        ),
        Index("idx_report_runs_tenant_status", "tenant_id", "status"),
        Index("idx_report_runs_tenant_trigger_created", "tenant_id", "trigger_type", "created_at"),
    )

    run_id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    template_id: str = Field(index=True)
    schedule_id: str | None = Field(default=None, index=True)
    period_from: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    period_to: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    period_label: str = ""
    scope_json: str = Field(sa_column=Column(Text, nullable=False))
    output_formats_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    outputs_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    data_summary_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_code: str | None = None
    attempts: int = 0
    job_id: str | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None
    triggered_by: str | None = None
    trigger_type: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReportRunEventRecord(SQLModel, table=True):
    __tablename__ = "report_run_events"  # type: ignore[bad-override]

    event_id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("report_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    actor_id: str | None = None
    status_from: str | None = None
    status_to: str | None = None
    details_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ReportJobRecord(SQLModel, table=True):
    __tablename__ = "report_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_report_jobs_status_run_after", "status", "run_after"),)

    job_id: str = Field(primary_key=True)
    run_id: str = Field(index=True)
    tenant_id: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    attempt: int = 0
    max_attempts: int = 3
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_by: str | None = None
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result: str | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LockLease(SQLModel, table=True):
    __tablename__ = "lock_leases"  # type: ignore[bad-override]

    lock_key: str = Field(primary_key=True)
    holder_token: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )


class AuditLogRecord(SQLModel, table=True):
    __tablename__ = "audit_log"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_audit_log_resource", "resource_type", "resource_id"),
    )

    entry_id: int | None = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    action: str = Field(index=True)
    resource_type: str
    resource_id: str
    actor_id: str | None = None
    diff_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    metadata_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
