from __future__ import annotations

from pathlib import Path

import allure
import pytest

from report_orchestrator.config import (
    LockSettings,
    NotificationSettings,
    SchedulerSettings,
    Settings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()

    settings.validate()

    assert settings.locks.backend == "sqlite"
    assert settings.admission.manual_rate_limit == 50
    assert settings.admission.rate_window_seconds == 3_600
    assert settings.admission.max_active_runs == 10
    assert (settings.locks.poller_ttl_seconds, settings.locks.schedule_ttl_seconds) == (60, 300)
    assert settings.locks.run_ttl_seconds == 600


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("REPORT_ORCH_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("REPORT_ORCH_LOCK_BACKEND", " Redis ")
    monkeypatch.setenv("REPORT_ORCH_REDIS_URL", "redis://cache:6379/2")
    monkeypatch.setenv("REPORT_ORCH_ENV", "production")
    monkeypatch.setenv("REPORT_ORCH_MANUAL_RATE_LIMIT", "5")
    monkeypatch.setenv("REPORT_ORCH_MAX_ACTIVE_RUNS", "3")
    monkeypatch.setenv("REPORT_ORCH_WORKER_ID", "worker-7")
    monkeypatch.setenv("REPORT_ORCH_WORKER_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("REPORT_ORCH_OUTPUT_DIR", str(tmp_path / "out"))
    monkeypatch.setenv("REPORT_ORCH_WEBHOOK_URL", "  ")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.locks.backend == "redis"
    assert settings.locks.redis_url == "redis://cache:6379/2"
    assert settings.locks.env == "production"
    assert settings.admission.manual_rate_limit == 5
    assert settings.admission.max_active_runs == 3
    assert settings.worker.worker_id == "worker-7"
    assert settings.worker.max_attempts == 4
    assert settings.output.root_dir == tmp_path / "out"
    assert settings.notifications.webhook_url is None
    settings.validate()


def test_explicit_db_path_wins_over_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("REPORT_ORCH_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(locks=LockSettings(backend="etcd")), "REPORT_ORCH_LOCK_BACKEND"),
        (
            Settings(locks=LockSettings(backend="redis", redis_url="http://cache")),
            "Invalid REPORT_ORCH_REDIS_URL",
        ),
        (Settings(worker=WorkerSettings(concurrency=0)), "REPORT_ORCH_WORKER_CONCURRENCY"),
        (Settings(worker=WorkerSettings(retry_base_seconds=-1)), "backoff"),
        (Settings(scheduler=SchedulerSettings(interval_seconds=0)), "SCHEDULER_INTERVAL"),
        (Settings(scheduler=SchedulerSettings(stuck_run_seconds=600)), "must exceed"),
        (
            Settings(notifications=NotificationSettings(webhook_url="ftp://hooks")),
            "Invalid REPORT_ORCH_WEBHOOK_URL",
        ),
    ],
    ids=["backend", "redis-url", "concurrency", "backoff", "interval", "stuck-vs-ttl", "webhook"],
)
def test_validate_rejects_invalid_settings(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_stuck_run_sweep_can_be_disabled() -> None:
    Settings(scheduler=SchedulerSettings(stuck_run_seconds=0)).validate()
