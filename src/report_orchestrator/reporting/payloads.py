"""Parse and serialize template/schedule payloads.

Template sections are a closed tagged union (entity kind, view kind) checked
here, at create/update time, so that the executor never sees an unknown
source or view.
"""

from __future__ import annotations

from typing import Any

from report_orchestrator.reporting.cadence import validate_cadence
from report_orchestrator.reporting.errors import ConfigurationError
from report_orchestrator.reporting.models import (
    AggregateOp,
    Cadence,
    CadenceSpec,
    DeliveryPreferences,
    EntityKind,
    GroupBy,
    Metric,
    OutputDefaults,
    OutputFormat,
    ReportType,
    RunAt,
    Scope,
    ScopeType,
    ScheduleStatus,
    ScheduleWrite,
    SectionSource,
    SectionView,
    SortKey,
    TemplateSection,
    TemplateStatus,
    TemplateWrite,
    ViewKind,
)

MAX_SECTIONS = 50
MAX_CODE_LENGTH = 100
MAX_NAME_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 1000
DEFAULT_TIMEZONE = "Asia/Kolkata"
DEFAULT_LOCALE = "en-IN"


def parse_template_payload(payload: dict[str, Any]) -> TemplateWrite:
    """Build a validated ``TemplateWrite`` from a plain mapping."""

    code = _required_str(payload, "code", max_length=MAX_CODE_LENGTH)
    name = _required_str(payload, "name", max_length=MAX_NAME_LENGTH)
    description = str(payload.get("description") or "")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ConfigurationError(f"description exceeds {MAX_DESCRIPTION_LENGTH} characters.")
    return TemplateWrite(
        code=code,
        name=name,
        description=description,
        report_type=_enum(ReportType, payload.get("report_type"), what="report_type"),
        sections=parse_sections(payload.get("sections")),
        output_defaults=parse_output_defaults(payload.get("output_defaults")),
        ai_narrative=bool(payload.get("ai_narrative", False)),
        status=_enum(
            TemplateStatus,
            payload.get("status") or TemplateStatus.ACTIVE.value,
            what="status",
        ),
    )


def parse_sections(raw: Any) -> tuple[TemplateSection, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError("Template requires at least one section.")
    if len(raw) > MAX_SECTIONS:
        raise ConfigurationError(f"Template may not have more than {MAX_SECTIONS} sections.")
    sections = tuple(_parse_section(item, index) for index, item in enumerate(raw))
    validate_sections(sections)
    return sections


def validate_sections(sections: tuple[TemplateSection, ...]) -> None:
    seen: set[str] = set()
    for section in sections:
        if section.key in seen:
            raise ConfigurationError(f"Duplicate section key: {section.key!r}")
        seen.add(section.key)
        limit = section.source.limit
        if limit is not None and (isinstance(limit, bool) or limit <= 0):
            raise ConfigurationError(f"Section {section.key!r} limit must be positive.")
        group_by = section.source.group_by
        if group_by is not None:
            for metric in group_by.metrics:
                if metric.op != AggregateOp.COUNT and not metric.field:
                    raise ConfigurationError(
                        f"Section {section.key!r} metric {metric.name!r} requires a field.",
                    )


def parse_output_defaults(raw: Any) -> OutputDefaults:
    if not raw:
        return OutputDefaults()
    if not isinstance(raw, dict):
        raise ConfigurationError("output_defaults must be an object.")
    formats = parse_output_formats(raw.get("formats"))
    return OutputDefaults(
        formats=formats,
        timezone=str(raw.get("timezone") or DEFAULT_TIMEZONE),
        locale=str(raw.get("locale") or DEFAULT_LOCALE),
    )


def parse_output_formats(raw: Any) -> tuple[OutputFormat, ...]:
    if not raw:
        return (OutputFormat.PDF,)
    if isinstance(raw, str):
        raw = [part for part in raw.split(",") if part.strip()]
    formats = tuple(_enum(OutputFormat, str(item).strip().upper(), what="format") for item in raw)
    return tuple(dict.fromkeys(formats))


def parse_scope(raw: Any) -> Scope:
    if not raw:
        return Scope()
    if not isinstance(raw, dict):
        raise ConfigurationError("scope must be an object.")
    scope = Scope(
        type=_enum(ScopeType, raw.get("type") or ScopeType.TENANT.value, what="scope type"),
        department_id=raw.get("department_id"),
        team_id=raw.get("team_id"),
        user_id=raw.get("user_id"),
        custom_filters=dict(raw.get("custom_filters") or {}),
    )
    validate_scope(scope)
    return scope


def validate_scope(scope: Scope) -> None:
    required = {
        ScopeType.DEPARTMENT: ("department_id", scope.department_id),
        ScopeType.TEAM: ("team_id", scope.team_id),
        ScopeType.USER: ("user_id", scope.user_id),
    }
    if scope.type in required:
        field_name, value = required[scope.type]
        if not value:
            raise ConfigurationError(f"Scope {scope.type.value} requires {field_name}.")


def parse_cadence(raw: dict[str, Any]) -> CadenceSpec:
    run_at_raw = raw.get("run_at") or {}
    spec = CadenceSpec(
        cadence=_enum(Cadence, raw.get("cadence"), what="cadence"),
        timezone=str(raw.get("timezone") or DEFAULT_TIMEZONE),
        run_at=RunAt(
            hour=_optional_int(run_at_raw.get("hour"), default=9),
            minute=_optional_int(run_at_raw.get("minute"), default=0),
        ),
        weekday=_optional_int(raw.get("weekday")),
        day_of_month=_optional_int(raw.get("day_of_month")),
        month_of_year=_optional_int(raw.get("month_of_year")),
        quarter=_optional_int(raw.get("quarter")),
        cron_expr=raw.get("cron_expr"),
    )
    validate_cadence(spec)
    return spec


def parse_schedule_payload(payload: dict[str, Any]) -> ScheduleWrite:
    """Build a validated ``ScheduleWrite`` from a plain mapping."""

    return ScheduleWrite(
        template_id=_required_str(payload, "template_id", max_length=MAX_CODE_LENGTH),
        name=_required_str(payload, "name", max_length=MAX_NAME_LENGTH),
        cadence=parse_cadence(payload),
        scope=parse_scope(payload.get("scope")),
        delivery=parse_delivery(payload.get("delivery")),
        output_formats=parse_output_formats(payload.get("output_formats")),
        status=_enum(
            ScheduleStatus,
            payload.get("status") or ScheduleStatus.ACTIVE.value,
            what="status",
        ),
    )


def parse_delivery(raw: Any) -> DeliveryPreferences:
    if not raw:
        return DeliveryPreferences()
    if not isinstance(raw, dict):
        raise ConfigurationError("delivery must be an object.")
    try:
        return DeliveryPreferences.from_dict(raw)
    except ValueError as error:
        raise ConfigurationError(f"Invalid delivery preferences: {error}") from error


def cadence_to_dict(spec: CadenceSpec) -> dict[str, Any]:
    return {
        "cadence": spec.cadence.value,
        "timezone": spec.timezone,
        "run_at": {"hour": spec.run_at.hour, "minute": spec.run_at.minute},
        "weekday": spec.weekday,
        "day_of_month": spec.day_of_month,
        "month_of_year": spec.month_of_year,
        "quarter": spec.quarter,
        "cron_expr": spec.cron_expr,
    }


def sections_to_payload(sections: tuple[TemplateSection, ...]) -> list[dict[str, Any]]:
    return [_section_to_payload(section) for section in sections]


def output_defaults_to_payload(defaults: OutputDefaults) -> dict[str, Any]:
    return {
        "formats": [item.value for item in defaults.formats],
        "timezone": defaults.timezone,
        "locale": defaults.locale,
    }


def _parse_section(raw: Any, index: int) -> TemplateSection:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Section #{index} must be an object.")
    key = _required_str(raw, "key", max_length=MAX_CODE_LENGTH, where=f"section #{index}")
    title = _required_str(raw, "title", max_length=MAX_NAME_LENGTH, where=f"section {key!r}")
    source_raw = raw.get("source")
    if not isinstance(source_raw, dict):
        raise ConfigurationError(f"Section {key!r} requires a source object.")
    view_raw = raw.get("view") or {}
    if not isinstance(view_raw, dict):
        raise ConfigurationError(f"Section {key!r} view must be an object.")
    return TemplateSection(
        key=key,
        title=title,
        enabled=bool(raw.get("enabled", True)),
        source=_parse_source(source_raw, key=key),
        view=SectionView(
            kind=_enum(ViewKind, view_raw.get("type") or ViewKind.TABLE.value, what="view type"),
            columns=tuple(str(column) for column in view_raw.get("columns") or ()),
            options=dict(view_raw.get("options") or {}),
        ),
    )


def _parse_source(raw: dict[str, Any], *, key: str) -> SectionSource:
    base_filters = raw.get("base_filters") or {}
    if not isinstance(base_filters, dict):
        raise ConfigurationError(f"Section {key!r} base_filters must be an object.")
    group_by = None
    group_raw = raw.get("group_by")
    if group_raw:
        if not isinstance(group_raw, dict) or not group_raw.get("field"):
            raise ConfigurationError(f"Section {key!r} group_by requires a field.")
        group_by = GroupBy(
            field=str(group_raw["field"]),
            metrics=tuple(
                Metric(
                    name=_required_str(metric, "name", max_length=MAX_CODE_LENGTH, where=key),
                    op=_enum(AggregateOp, metric.get("op"), what="metric op"),
                    field=metric.get("field"),
                )
                for metric in _objects(group_raw.get("metrics"), what="metrics", key=key)
            ),
        )
    sort = tuple(
        SortKey(
            field=_required_str(item, "field", max_length=MAX_CODE_LENGTH, where=key),
            descending=bool(item.get("descending", False)),
        )
        for item in _objects(raw.get("sort"), what="sort", key=key)
    )
    limit = raw.get("limit")
    return SectionSource(
        entity=_enum(EntityKind, raw.get("entity"), what="entity"),
        base_filters=dict(base_filters),
        group_by=group_by,
        sort=sort,
        limit=None if limit is None else _optional_int(limit),
    )


def _section_to_payload(section: TemplateSection) -> dict[str, Any]:
    source = section.source
    group_by = None
    if source.group_by is not None:
        group_by = {
            "field": source.group_by.field,
            "metrics": [
                {"name": metric.name, "op": metric.op.value, "field": metric.field}
                for metric in source.group_by.metrics
            ],
        }
    return {
        "key": section.key,
        "title": section.title,
        "enabled": section.enabled,
        "source": {
            "entity": source.entity.value,
            "base_filters": dict(source.base_filters),
            "group_by": group_by,
            "sort": [{"field": item.field, "descending": item.descending} for item in source.sort],
            "limit": source.limit,
        },
        "view": {
            "type": section.view.kind.value,
            "columns": list(section.view.columns),
            "options": dict(section.view.options),
        },
    }


def _required_str(
    payload: dict[str, Any],
    field_name: str,
    *,
    max_length: int,
    where: str = "payload",
) -> str:
    value = payload.get(field_name)
    if not isinstance(value, str) or not value.strip():
        raise ConfigurationError(f"{field_name} is required in {where}.")
    if len(value) > max_length:
        raise ConfigurationError(f"{field_name} exceeds {max_length} characters.")
    return value.strip()


def _objects(raw: Any, *, what: str, key: str) -> list[dict[str, Any]]:
    if not raw:
        return []
    if not isinstance(raw, list) or not all(isinstance(item, dict) for item in raw):
        raise ConfigurationError(f"Section {key!r} {what} must be a list of objects.")
    return raw


def _enum(enum_type, value: Any, *, what: str):  # noqa: ANN001, ANN202
    try:
        return enum_type(value)
    except ValueError as error:
        allowed = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(f"Invalid {what} {value!r}; expected one of: {allowed}") from error


def _optional_int(value: Any, *, default: int | None = None) -> int | None:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"Expected integer, got {value!r}.")
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise ConfigurationError(f"Expected integer, got {value!r}.") from error
