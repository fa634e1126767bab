from __future__ import annotations

import copy
from typing import Any

import allure
import pytest
from reporting_data import template_payload

from report_orchestrator.reporting.errors import ConfigurationError
from report_orchestrator.reporting.models import (
    AggregateOp,
    Cadence,
    DeliveryChannel,
    OutputFormat,
    ScopeType,
    TemplateStatus,
    ViewKind,
)
from report_orchestrator.reporting.payloads import (
    parse_delivery,
    parse_output_formats,
    parse_schedule_payload,
    parse_scope,
    parse_template_payload,
)

pytestmark = [
    allure.epic("Templates"),
    allure.feature("Payload Validation"),
]


def test_template_payload_is_parsed_into_typed_sections() -> None:
    template = parse_template_payload(template_payload())

    assert template.code == "DSR_DAILY"
    assert template.status == TemplateStatus.ACTIVE
    assert [section.key for section in template.sections] == ["done_tasks", "hours", "summary"]
    hours = template.sections[1]
    assert hours.view.kind == ViewKind.CHART
    assert hours.source.group_by is not None
    assert hours.source.group_by.metrics[0].op == AggregateOp.SUM
    assert template.output_defaults.formats == (OutputFormat.JSON, OutputFormat.CSV)
    assert template.output_defaults.timezone == "Asia/Kolkata"


def _without(field: str) -> dict[str, Any]:
    payload = template_payload()
    payload.pop(field)
    return payload


def _with_duplicate_section_key() -> dict[str, Any]:
    payload = template_payload()
    payload["sections"].append(copy.deepcopy(payload["sections"][0]))
    return payload


def _with_section_change(index: int, **changes: Any) -> dict[str, Any]:
    payload = template_payload()
    payload["sections"][index].update(changes)
    return payload


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        (_without("code"), "code is required"),
        (template_payload(code="X" * 101), "code exceeds 100 characters"),
        (template_payload(report_type="WEEKLY_DIGEST"), "Invalid report_type"),
        (template_payload(sections=[]), "at least one section"),
        (_with_duplicate_section_key(), "Duplicate section key: 'done_tasks'"),
        (_with_section_change(0, source={"entity": "invoice"}), "Invalid entity 'invoice'"),
        (_with_section_change(0, view={"type": "MAP"}), "Invalid view type"),
        (
            _with_section_change(
                1,
                source={
                    "entity": "task_time_log",
                    "group_by": {"field": "user_id", "metrics": [{"name": "minutes", "op": "sum"}]},
                },
            ),
            "metric 'minutes' requires a field",
        ),
        (_with_section_change(0, source={"entity": "task", "limit": 0}), "limit must be positive"),
        (template_payload(output_defaults={"formats": ["DOCX"]}), "Invalid format 'DOCX'"),
    ],
    ids=[
        "missing-code",
        "long-code",
        "report-type",
        "no-sections",
        "duplicate-key",
        "entity",
        "view-type",
        "metric-field",
        "limit",
        "format",
    ],
)
def test_invalid_template_payload_is_rejected(payload: dict[str, Any], message: str) -> None:
    with pytest.raises(ConfigurationError, match=message):
        parse_template_payload(payload)


def test_output_formats_are_normalized_and_deduplicated() -> None:
    assert parse_output_formats("json, csv,JSON") == (OutputFormat.JSON, OutputFormat.CSV)
    assert parse_output_formats(None) == (OutputFormat.PDF,)


def test_scope_requires_the_id_for_its_type() -> None:
    assert parse_scope(None).type == ScopeType.TENANT
    assert parse_scope({"type": "TEAM", "team_id": "team-9"}).team_id == "team-9"

    with pytest.raises(ConfigurationError, match="Scope DEPARTMENT requires department_id"):
        parse_scope({"type": "DEPARTMENT"})
    with pytest.raises(ConfigurationError, match="Invalid scope type"):
        parse_scope({"type": "COMPANY"})


def test_delivery_defaults_to_in_app_and_rejects_unknown_channel() -> None:
    assert parse_delivery(None).channels == (DeliveryChannel.IN_APP,)

    with pytest.raises(ConfigurationError, match="Invalid delivery preferences"):
        parse_delivery({"channels": ["carrier_pigeon"]})


def test_schedule_payload_defaults_run_time_and_formats() -> None:
    schedule = parse_schedule_payload(
        {"template_id": "tpl-1", "name": "Weekly review", "cadence": "WEEKLY", "weekday": 1},
    )

    assert schedule.cadence.cadence == Cadence.WEEKLY
    assert (schedule.cadence.run_at.hour, schedule.cadence.run_at.minute) == (9, 0)
    assert schedule.cadence.timezone == "Asia/Kolkata"
    assert schedule.output_formats == (OutputFormat.PDF,)


def test_schedule_payload_rejects_unknown_cadence() -> None:
    with pytest.raises(ConfigurationError, match="Invalid cadence 'HOURLY'"):
        parse_schedule_payload({"template_id": "tpl-1", "name": "Hourly", "cadence": "HOURLY"})
