"""Tenants, clock values and payload builders shared by the test modules."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from report_orchestrator.reporting.models import NotificationEvent, Period

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
FIXED_NOW = datetime(2026, 10, 19, 3, 0, tzinfo=UTC)
RUN_PERIOD = Period(
    start=datetime(2026, 10, 18, tzinfo=UTC),
    end=datetime(2026, 10, 19, tzinfo=UTC),
    label="Custom - 2026-10-18",
)


def template_payload(code: str = "DSR_DAILY", **overrides: Any) -> dict[str, Any]:
    """Three-section daily status template: table, grouped chart and narrative text."""

    payload: dict[str, Any] = {
        "code": code,
        "name": "Daily Status",
        "report_type": "DSR",
        "description": "Completed work and logged hours.",
        "sections": [
            {
                "key": "done_tasks",
                "title": "Completed tasks",
                "source": {"entity": "task", "base_filters": {"status": "done"}},
                "view": {"type": "TABLE", "columns": ["task_id", "user_id"]},
            },
            {
                "key": "hours",
                "title": "Hours by user",
                "source": {
                    "entity": "task_time_log",
                    "group_by": {
                        "field": "user_id",
                        "metrics": [{"name": "minutes", "op": "sum", "field": "minutes"}],
                    },
                    "sort": [{"field": "minutes", "descending": True}],
                },
                "view": {"type": "CHART"},
            },
            {
                "key": "summary",
                "title": "Summary",
                "source": {"entity": "task"},
                "view": {"type": "TEXT"},
            },
        ],
        "output_defaults": {"formats": ["JSON", "CSV"], "timezone": "Asia/Kolkata"},
        "ai_narrative": True,
    }
    payload.update(overrides)
    return payload



class RecordingNotifier:
    """Notification emitter that keeps events in memory, optionally failing."""

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.events: list[NotificationEvent] = []

    def emit(self, event: NotificationEvent) -> None:
        if self.fail:
            raise RuntimeError("notification channel unavailable")
        self.events.append(event)
