from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from report_orchestrator.reporting.cadence import (
    compute_next_run_at,
    compute_period_for_schedule,
    validate_cadence,
)
from report_orchestrator.reporting.errors import ConfigurationError
from report_orchestrator.reporting.models import Cadence, CadenceSpec, RunAt

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Cadence Resolution"),
]


def _utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=UTC)


def test_daily_cadence_fires_at_local_wall_clock_time() -> None:
    spec = CadenceSpec(cadence=Cadence.DAILY, timezone="Asia/Kolkata", run_at=RunAt(hour=9, minute=0))

    # 08:30 IST on 2026-10-19
    first = compute_next_run_at(spec, _utc(2026, 10, 19, 3, 0))
    assert first == _utc(2026, 10, 19, 3, 30)

    second = compute_next_run_at(spec, first)
    assert second == _utc(2026, 10, 20, 3, 30)


def test_next_run_is_strictly_after_now_even_at_the_exact_firing_instant() -> None:
    spec = CadenceSpec(cadence=Cadence.DAILY, timezone="UTC", run_at=RunAt(hour=9, minute=0))

    assert compute_next_run_at(spec, _utc(2026, 10, 19, 9, 0)) == _utc(2026, 10, 20, 9, 0)


def test_daily_cadence_keeps_local_time_across_dst_change() -> None:
    spec = CadenceSpec(
        cadence=Cadence.DAILY,
        timezone="America/New_York",
        run_at=RunAt(hour=9, minute=0),
    )

    before_change = compute_next_run_at(spec, _utc(2026, 3, 6, 15, 0))
    after_change = compute_next_run_at(spec, _utc(2026, 3, 7, 15, 0))

    assert before_change == _utc(2026, 3, 7, 14, 0)
    assert after_change == _utc(2026, 3, 8, 13, 0)


def test_weekly_cadence_uses_sunday_as_day_zero() -> None:
    monday_morning = _utc(2026, 10, 19, 10, 0)
    sunday = CadenceSpec(cadence=Cadence.WEEKLY, timezone="UTC", weekday=0)
    monday = CadenceSpec(cadence=Cadence.WEEKLY, timezone="UTC", weekday=1)

    assert compute_next_run_at(sunday, monday_morning) == _utc(2026, 10, 25, 9, 0)
    assert compute_next_run_at(monday, monday_morning) == _utc(2026, 10, 26, 9, 0)
    assert compute_next_run_at(monday, _utc(2026, 10, 18, 12, 0)) == _utc(2026, 10, 19, 9, 0)


def test_monthly_cadence_clamps_day_to_month_length() -> None:
    spec = CadenceSpec(cadence=Cadence.MONTHLY, timezone="UTC", day_of_month=31)

    february = compute_next_run_at(spec, _utc(2026, 2, 10, 0, 0))
    march = compute_next_run_at(spec, february)

    assert february == _utc(2026, 2, 28, 9, 0)
    assert march == _utc(2026, 3, 31, 9, 0)


def test_quarterly_cadence_fires_in_months_aligned_with_quarter_start() -> None:
    spec = CadenceSpec(cadence=Cadence.QUARTERLY, timezone="UTC", quarter=1, day_of_month=1)

    assert compute_next_run_at(spec, _utc(2026, 10, 19, 0, 0)) == _utc(2027, 1, 1, 9, 0)
    assert compute_next_run_at(spec, _utc(2026, 9, 30, 0, 0)) == _utc(2026, 10, 1, 9, 0)


def test_yearly_cadence_clamps_leap_day_in_common_years() -> None:
    spec = CadenceSpec(cadence=Cadence.YEARLY, timezone="UTC", month_of_year=2, day_of_month=29)

    assert compute_next_run_at(spec, _utc(2026, 1, 1, 0, 0)) == _utc(2026, 2, 28, 9, 0)
    assert compute_next_run_at(spec, _utc(2027, 3, 1, 0, 0)) == _utc(2028, 2, 29, 9, 0)


def test_cron_cadence_is_evaluated_in_schedule_timezone() -> None:
    every_quarter_hour = CadenceSpec(cadence=Cadence.CRON, timezone="UTC", cron_expr="*/15 * * * *")
    nine_local = CadenceSpec(cadence=Cadence.CRON, timezone="Asia/Kolkata", cron_expr="0 9 * * *")

    assert compute_next_run_at(every_quarter_hour, _utc(2026, 10, 19, 10, 7)) == _utc(
        2026,
        10,
        19,
        10,
        15,
    )
    assert compute_next_run_at(nine_local, _utc(2026, 10, 19, 3, 0)) == _utc(2026, 10, 19, 3, 30)


@pytest.mark.parametrize(
    "spec",
    [
        CadenceSpec(cadence=Cadence.DAILY, timezone="Asia/Kolkata"),
        CadenceSpec(cadence=Cadence.WEEKLY, timezone="Europe/Berlin", weekday=3),
        CadenceSpec(cadence=Cadence.MONTHLY, timezone="America/New_York", day_of_month=31),
        CadenceSpec(cadence=Cadence.QUARTERLY, timezone="UTC", quarter=2, day_of_month=30),
        CadenceSpec(cadence=Cadence.CRON, timezone="Asia/Tokyo", cron_expr="30 1 * * *"),
    ],
    ids=["daily", "weekly", "monthly", "quarterly", "cron"],
)
def test_successive_firings_strictly_increase(spec: CadenceSpec) -> None:
    current = _utc(2026, 1, 1, 0, 0)
    for _ in range(40):
        following = compute_next_run_at(spec, current)
        assert following > current
        current = following


def test_compute_next_run_rejects_naive_now() -> None:
    spec = CadenceSpec(cadence=Cadence.DAILY, timezone="UTC")

    with pytest.raises(ValueError, match="timezone-aware"):
        compute_next_run_at(spec, datetime(2026, 10, 19, 3, 0))


@pytest.mark.parametrize(
    ("spec", "message"),
    [
        (CadenceSpec(cadence=Cadence.DAILY, timezone="Mars/Olympus"), "Unknown IANA timezone"),
        (CadenceSpec(cadence=Cadence.CRON, timezone="UTC"), "cron_expr is required"),
        (
            CadenceSpec(cadence=Cadence.CRON, timezone="UTC", cron_expr="not a cron"),
            "Invalid cron expression",
        ),
        (CadenceSpec(cadence=Cadence.WEEKLY, timezone="UTC", weekday=7), "weekday must be"),
        (CadenceSpec(cadence=Cadence.MONTHLY, timezone="UTC"), "day_of_month is required"),
        (
            CadenceSpec(cadence=Cadence.DAILY, timezone="UTC", run_at=RunAt(hour=24, minute=0)),
            "run_at must be",
        ),
    ],
    ids=["timezone", "cron-missing", "cron-invalid", "weekday", "day-of-month", "run-at"],
)
def test_validate_cadence_rejects_unresolvable_configuration(spec: CadenceSpec, message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        validate_cadence(spec)


def test_daily_period_covers_previous_local_day() -> None:
    spec = CadenceSpec(cadence=Cadence.DAILY, timezone="Asia/Kolkata")

    period = compute_period_for_schedule(spec, _utc(2026, 10, 19, 3, 30))

    assert period.label == "Daily - 2026-10-18"
    assert period.start == _utc(2026, 10, 17, 18, 30)
    assert period.end == _utc(2026, 10, 18, 18, 30) - timedelta(microseconds=1)


def test_monthly_period_covers_previous_calendar_month() -> None:
    spec = CadenceSpec(cadence=Cadence.MONTHLY, timezone="UTC", day_of_month=1)

    period = compute_period_for_schedule(spec, _utc(2026, 11, 1, 9, 0))

    assert period.label == "Monthly - 2026-10"
    assert period.start == _utc(2026, 10, 1, 0, 0)
    assert period.end == _utc(2026, 11, 1, 0, 0) - timedelta(microseconds=1)


def test_quarterly_and_yearly_periods_cover_previous_full_unit() -> None:
    quarterly = CadenceSpec(cadence=Cadence.QUARTERLY, timezone="UTC", quarter=1, day_of_month=1)
    yearly = CadenceSpec(cadence=Cadence.YEARLY, timezone="UTC", month_of_year=1, day_of_month=1)

    quarter = compute_period_for_schedule(quarterly, _utc(2026, 10, 1, 9, 0))
    year = compute_period_for_schedule(yearly, _utc(2026, 1, 1, 9, 0))

    assert quarter.label == "Q3 2026"
    assert quarter.start == _utc(2026, 7, 1, 0, 0)
    assert year.label == "Yearly - 2025"
    assert year.start == _utc(2025, 1, 1, 0, 0)
    assert year.end < _utc(2026, 1, 1, 0, 0)
