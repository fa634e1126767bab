"""Domain models for report templates, schedules, runs and queue jobs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from report_orchestrator.storage.common import from_iso, to_utc_aware


class TemplateStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class ReportType(str, Enum):
    DSR = "DSR"
    WSR = "WSR"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"
    CUSTOM = "CUSTOM"


class EntityKind(str, Enum):
    """Closed set of data sources a section may aggregate."""

    TASK = "task"
    TASK_TIME_LOG = "task_time_log"
    TASK_ACTIVITY = "task_activity"
    REPORT_SUBMISSION = "report_submission"
    PERFORMANCE_SNAPSHOT = "performance_snapshot"
    EXTERNAL_WORK_ITEM = "external_work_item"
    USER = "user"


class ViewKind(str, Enum):
    TABLE = "TABLE"
    CHART = "CHART"
    TEXT = "TEXT"
    KPI = "KPI"
    LIST = "LIST"


class AggregateOp(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"


class Cadence(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    YEARLY = "YEARLY"
    CRON = "CRON"


class ScopeType(str, Enum):
    TENANT = "TENANT"
    DEPARTMENT = "DEPARTMENT"
    TEAM = "TEAM"
    USER = "USER"
    CUSTOM = "CUSTOM"


class RunStatus(str, Enum):
    """Durable run lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    API = "api"


class OutputFormat(str, Enum):
    PDF = "PDF"
    XLSX = "XLSX"
    CSV = "CSV"
    JSON = "JSON"
    HTML = "HTML"


class DeliveryChannel(str, Enum):
    IN_APP = "IN_APP"
    EMAIL = "EMAIL"
    SLACK = "SLACK"
    WEBHOOK = "WEBHOOK"


class JobStatus(str, Enum):
    """Queue-level job states, independent from run states."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD = "dead"


@dataclass(slots=True, frozen=True)
class Scope:
    """Who a report covers inside one tenant."""

    type: ScopeType = ScopeType.TENANT
    department_id: str | None = None
    team_id: str | None = None
    user_id: str | None = None
    custom_filters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "department_id": self.department_id,
            "team_id": self.team_id,
            "user_id": self.user_id,
            "custom_filters": dict(self.custom_filters),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> Scope:
        if not payload:
            return cls()
        return cls(
            type=ScopeType(payload.get("type") or ScopeType.TENANT.value),
            department_id=payload.get("department_id"),
            team_id=payload.get("team_id"),
            user_id=payload.get("user_id"),
            custom_filters=dict(payload.get("custom_filters") or {}),
        )


@dataclass(slots=True, frozen=True)
class Period:
    """Time range a run reports on."""

    start: datetime
    end: datetime
    label: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "from": to_utc_aware(self.start).isoformat(),
            "to": to_utc_aware(self.end).isoformat(),
            "label": self.label,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Period:
        return cls(
            start=from_iso(str(payload["from"])),
            end=from_iso(str(payload["to"])),
            label=str(payload.get("label") or ""),
        )


@dataclass(slots=True, frozen=True)
class Metric:
    name: str
    op: AggregateOp
    field: str | None = None


@dataclass(slots=True, frozen=True)
class GroupBy:
    field: str
    metrics: tuple[Metric, ...] = ()


@dataclass(slots=True, frozen=True)
class SortKey:
    field: str
    descending: bool = False


@dataclass(slots=True, frozen=True)
class SectionSource:
    entity: EntityKind
    base_filters: dict[str, Any] = field(default_factory=dict)
    group_by: GroupBy | None = None
    sort: tuple[SortKey, ...] = ()
    limit: int | None = None


@dataclass(slots=True, frozen=True)
class SectionView:
    kind: ViewKind = ViewKind.TABLE
    columns: tuple[str, ...] = ()
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class TemplateSection:
    key: str
    title: str
    source: SectionSource
    view: SectionView = field(default_factory=SectionView)
    enabled: bool = True


@dataclass(slots=True, frozen=True)
class OutputDefaults:
    formats: tuple[OutputFormat, ...] = (OutputFormat.PDF,)
    timezone: str = "Asia/Kolkata"
    locale: str = "en-IN"


@dataclass(slots=True)
class TemplateWrite:
    """Payload for creating a report template."""

    code: str
    name: str
    report_type: ReportType
    sections: tuple[TemplateSection, ...]
    description: str = ""
    output_defaults: OutputDefaults = field(default_factory=OutputDefaults)
    ai_narrative: bool = False
    status: TemplateStatus = TemplateStatus.ACTIVE


@dataclass(slots=True)
class TemplateUpdate:
    """Partial template update; ``None`` leaves a field untouched."""

    name: str | None = None
    description: str | None = None
    report_type: ReportType | None = None
    sections: tuple[TemplateSection, ...] | None = None
    output_defaults: OutputDefaults | None = None
    ai_narrative: bool | None = None


@dataclass(slots=True)
class TemplateView:
    template_id: str
    tenant_id: str
    code: str
    name: str
    description: str
    report_type: ReportType
    status: TemplateStatus
    sections: tuple[TemplateSection, ...]
    output_defaults: OutputDefaults
    ai_narrative: bool
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class RunAt:
    hour: int = 9
    minute: int = 0


@dataclass(slots=True, frozen=True)
class CadenceSpec:
    """Recurrence rule evaluated by the cadence resolver."""

    cadence: Cadence
    timezone: str = "Asia/Kolkata"
    run_at: RunAt = field(default_factory=RunAt)
    weekday: int | None = None
    day_of_month: int | None = None
    month_of_year: int | None = None
    quarter: int | None = None
    cron_expr: str | None = None


@dataclass(slots=True, frozen=True)
class DeliveryPreferences:
    channels: tuple[DeliveryChannel, ...] = (DeliveryChannel.IN_APP,)
    user_ids: tuple[str, ...] = ()
    emails: tuple[str, ...] = ()
    subject_template: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "channels": [channel.value for channel in self.channels],
            "user_ids": list(self.user_ids),
            "emails": list(self.emails),
            "subject_template": self.subject_template,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> DeliveryPreferences:
        if not payload:
            return cls()
        return cls(
            channels=tuple(DeliveryChannel(value) for value in payload.get("channels") or ())
            or (DeliveryChannel.IN_APP,),
            user_ids=tuple(payload.get("user_ids") or ()),
            emails=tuple(payload.get("emails") or ()),
            subject_template=payload.get("subject_template"),
        )


@dataclass(slots=True)
class ScheduleWrite:
    """Payload for creating a schedule."""

    template_id: str
    name: str
    cadence: CadenceSpec
    scope: Scope = field(default_factory=Scope)
    delivery: DeliveryPreferences = field(default_factory=DeliveryPreferences)
    output_formats: tuple[OutputFormat, ...] = (OutputFormat.PDF,)
    status: ScheduleStatus = ScheduleStatus.ACTIVE


@dataclass(slots=True)
class ScheduleUpdate:
    """Partial schedule update; ``None`` leaves a field untouched."""

    name: str | None = None
    cadence: CadenceSpec | None = None
    scope: Scope | None = None
    delivery: DeliveryPreferences | None = None
    output_formats: tuple[OutputFormat, ...] | None = None


@dataclass(slots=True)
class ScheduleView:
    schedule_id: str
    tenant_id: str
    template_id: str
    name: str
    status: ScheduleStatus
    cadence: CadenceSpec
    scope: Scope
    delivery: DeliveryPreferences
    output_formats: tuple[OutputFormat, ...]
    next_run_at: datetime | None
    last_run_at: datetime | None
    last_run_status: str | None
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class RenderedArtifact:
    """Output file produced for one format."""

    format: OutputFormat
    location_ref: str
    size_bytes: int
    checksum: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "format": self.format.value,
            "location_ref": self.location_ref,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RenderedArtifact:
        return cls(
            format=OutputFormat(payload["format"]),
            location_ref=str(payload["location_ref"]),
            size_bytes=int(payload.get("size_bytes") or 0),
            checksum=payload.get("checksum"),
        )


@dataclass(slots=True, frozen=True)
class RunError:
    message: str
    code: str


@dataclass(slots=True)
class RunCreate:
    """Input for creating a queued run."""

    tenant_id: str
    template_id: str
    period: Period
    scope: Scope
    output_formats: tuple[OutputFormat, ...]
    trigger_type: TriggerType
    schedule_id: str | None = None
    triggered_by: str | None = None


@dataclass(slots=True)
class RunView:
    run_id: str
    tenant_id: str
    template_id: str
    schedule_id: str | None
    period: Period
    scope_snapshot: Scope
    output_formats: tuple[OutputFormat, ...]
    status: RunStatus
    outputs: list[RenderedArtifact]
    data_summary: dict[str, Any]
    error: RunError | None
    attempts: int
    job_id: str | None
    started_at: datetime | None
    finished_at: datetime | None
    duration_ms: int | None
    triggered_by: str | None
    trigger_type: TriggerType
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class RunEventView:
    """Run transition entry for the audit trail."""

    event_id: int
    run_id: str
    event_type: str
    actor_id: str | None
    status_from: RunStatus | None
    status_to: RunStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RunDetails:
    run: RunView
    events: list[RunEventView]


@dataclass(slots=True)
class RunPage:
    items: list[RunView]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


@dataclass(slots=True)
class RunStats:
    total_runs: int
    success_runs: int
    failed_runs: int
    active_runs: int

    @property
    def success_rate(self) -> float:
        if self.total_runs == 0:
            return 0.0
        return round(self.success_runs * 100.0 / self.total_runs, 2)


@dataclass(slots=True, frozen=True)
class JobHandle:
    job_id: str
    run_id: str


@dataclass(slots=True)
class JobView:
    job_id: str
    run_id: str
    tenant_id: str
    payload: dict[str, Any]
    status: JobStatus
    attempt: int
    max_attempts: int
    run_after: datetime
    claimed_by: str | None
    claimed_at: datetime | None
    result: str | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class AuditEntryView:
    entry_id: int
    tenant_id: str
    action: str
    resource_type: str
    resource_id: str
    actor_id: str | None
    diff: dict[str, Any] | None
    metadata: dict[str, Any]
    created_at: datetime


@dataclass(slots=True, frozen=True)
class NotificationEvent:
    """Abstract completion event handed to the notification emitter."""

    tenant_id: str
    run_id: str
    status: RunStatus
    title: str
    message: str
    created_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    type: str = "REPORT_COMPLETED"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "tenant_id": self.tenant_id,
            "run_id": self.run_id,
            "status": self.status.value,
            "title": self.title,
            "message": self.message,
            "metadata": dict(self.metadata),
            "created_at": to_utc_aware(self.created_at).isoformat(),
        }
