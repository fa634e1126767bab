"""Cadence resolution: next firing instants and reporting periods.

All calendar arithmetic happens on wall-clock values in the schedule's own
timezone and is converted to UTC at the end, so "09:00 Asia/Kolkata" stays
09:00 local across DST changes in other zones and across month lengths.
"""

from __future__ import annotations

import calendar
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from report_orchestrator.reporting.errors import ConfigurationError
from report_orchestrator.reporting.models import Cadence, CadenceSpec, Period

_MAX_CALENDAR_STEPS = 64


def resolve_timezone(name: str) -> ZoneInfo:
    """Return the IANA zone or raise ``ConfigurationError``."""

    if not name or not name.strip():
        raise ConfigurationError("Schedule timezone is required.")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as error:
        raise ConfigurationError(f"Unknown IANA timezone: {name!r}") from error


def validate_cadence(spec: CadenceSpec) -> None:
    """Fail fast on cadence configuration that can never be resolved."""

    resolve_timezone(spec.timezone)
    if not 0 <= spec.run_at.hour <= 23 or not 0 <= spec.run_at.minute <= 59:  # noqa: PLR2004
        raise ConfigurationError(
            f"run_at must be a valid wall-clock time, got {spec.run_at.hour}:{spec.run_at.minute}.",
        )

    if spec.cadence == Cadence.CRON:
        if not spec.cron_expr or not spec.cron_expr.strip():
            raise ConfigurationError("cron_expr is required when cadence is CRON.")
        if not croniter.is_valid(spec.cron_expr.strip()):
            raise ConfigurationError(f"Invalid cron expression: {spec.cron_expr!r}")
        return

    if spec.cadence == Cadence.DAILY:
        return
    if spec.cadence == Cadence.WEEKLY:
        _require_range("weekday", spec.weekday, 0, 6, cadence=spec.cadence)
        return
    if spec.cadence == Cadence.MONTHLY:
        _require_range("day_of_month", spec.day_of_month, 1, 31, cadence=spec.cadence)
        return
    if spec.cadence == Cadence.QUARTERLY:
        _require_range("quarter", spec.quarter, 1, 4, cadence=spec.cadence)
        _require_range("day_of_month", spec.day_of_month, 1, 31, cadence=spec.cadence)
        return
    if spec.cadence == Cadence.YEARLY:
        _require_range("month_of_year", spec.month_of_year, 1, 12, cadence=spec.cadence)
        _require_range("day_of_month", spec.day_of_month, 1, 31, cadence=spec.cadence)
        return
    raise ConfigurationError(f"Unsupported cadence: {spec.cadence!r}")


def compute_next_run_at(spec: CadenceSpec, now: datetime) -> datetime:
    """Return the first firing strictly after ``now`` as an aware UTC datetime."""

    validate_cadence(spec)
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware.")

    zone = resolve_timezone(spec.timezone)
    local_now = now.astimezone(zone)

    if spec.cadence == Cadence.CRON:
        iterator = croniter(str(spec.cron_expr).strip(), local_now)
        return iterator.get_next(datetime).astimezone(UTC)

    run_time = time(hour=spec.run_at.hour, minute=spec.run_at.minute)
    for candidate_day in _candidate_days(spec, local_now.date()):
        candidate = _at_local(candidate_day, run_time, zone)
        if candidate > now:
            return candidate.astimezone(UTC)
    raise ConfigurationError(  # pragma: no cover - candidate generators are unbounded in practice
        f"Could not resolve next run for cadence {spec.cadence.value}.",
    )


def compute_period_for_schedule(spec: CadenceSpec, now: datetime) -> Period:
    """Reporting window that a run triggered at ``now`` covers.

    The window always ends before the local day of ``now`` so a schedule firing
    on the 1st of a month reports on the complete previous month.
    """

    zone = resolve_timezone(spec.timezone)
    today = now.astimezone(zone).date()

    if spec.cadence == Cadence.DAILY:
        start_day = today - timedelta(days=1)
        return _period(start_day, today, zone, label=f"Daily - {start_day.isoformat()}")
    if spec.cadence == Cadence.WEEKLY:
        start_day = today - timedelta(days=7)
        return _period(start_day, today, zone, label=f"Weekly - {start_day.isoformat()}")
    if spec.cadence == Cadence.MONTHLY:
        end_day = today.replace(day=1)
        start_day = _add_months(end_day, -1)
        return _period(start_day, end_day, zone, label=f"Monthly - {start_day:%Y-%m}")
    if spec.cadence == Cadence.QUARTERLY:
        current_quarter_start = date(today.year, 3 * ((today.month - 1) // 3) + 1, 1)
        start_day = _add_months(current_quarter_start, -3)
        quarter_no = (start_day.month - 1) // 3 + 1
        return _period(
            start_day,
            current_quarter_start,
            zone,
            label=f"Q{quarter_no} {start_day.year}",
        )
    if spec.cadence == Cadence.YEARLY:
        start_day = date(today.year - 1, 1, 1)
        return _period(start_day, date(today.year, 1, 1), zone, label=f"Yearly - {start_day.year}")

    end = now.astimezone(UTC)
    return Period(start=end - timedelta(days=1), end=end, label="Custom")


def _candidate_days(spec: CadenceSpec, today: date):
    """Yield ascending local calendar days on which the cadence may fire.

    The first yielded day may already be in the past relative to the run time;
    the caller keeps consuming until one lands strictly after ``now``.
    """

    if spec.cadence == Cadence.DAILY:
        for offset in range(_MAX_CALENDAR_STEPS):
            yield today + timedelta(days=offset)
        return

    if spec.cadence == Cadence.WEEKLY:
        # 0 = Sunday (cron convention); date.weekday() uses 0 = Monday.
        target = (int(spec.weekday or 0) - 1) % 7
        first = today + timedelta(days=(target - today.weekday()) % 7)
        for offset in range(_MAX_CALENDAR_STEPS):
            yield first + timedelta(weeks=offset)
        return

    day_of_month = int(spec.day_of_month or 1)
    if spec.cadence == Cadence.MONTHLY:
        for offset in range(_MAX_CALENDAR_STEPS):
            month_start = _add_months(today.replace(day=1), offset)
            yield _clamped_day(month_start.year, month_start.month, day_of_month)
        return

    if spec.cadence == Cadence.QUARTERLY:
        anchor_month = (int(spec.quarter or 1) - 1) * 3 + 1
        for offset in range(_MAX_CALENDAR_STEPS):
            month_start = _add_months(today.replace(day=1), offset)
            if (month_start.month - anchor_month) % 3 != 0:
                continue
            yield _clamped_day(month_start.year, month_start.month, day_of_month)
        return

    if spec.cadence == Cadence.YEARLY:
        month = int(spec.month_of_year or 1)
        for offset in range(_MAX_CALENDAR_STEPS):
            yield _clamped_day(today.year + offset, month, day_of_month)
        return

    raise ConfigurationError(f"Unsupported cadence: {spec.cadence!r}")


def _at_local(day: date, run_time: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, run_time, tzinfo=zone)


def _period(start_day: date, end_day: date, zone: ZoneInfo, *, label: str) -> Period:
    start = datetime.combine(start_day, time.min, tzinfo=zone).astimezone(UTC)
    end = datetime.combine(end_day, time.min, tzinfo=zone).astimezone(UTC) - timedelta(
        microseconds=1,
    )
    return Period(start=start, end=end, label=label)


def _add_months(day: date, months: int) -> date:
    month_index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(month_index, 12)
    return _clamped_day(year, month + 1, day.day)


def _clamped_day(year: int, month: int, day_of_month: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def _require_range(
    name: str,
    value: int | None,
    lower: int,
    upper: int,
    *,
    cadence: Cadence,
) -> None:
    if value is None:
        raise ConfigurationError(f"{name} is required when cadence is {cadence.value}.")
    if isinstance(value, bool) or not isinstance(value, int) or not lower <= value <= upper:
        raise ConfigurationError(
            f"{name} must be an integer in [{lower}, {upper}], got {value!r}.",
        )
