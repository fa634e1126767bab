"""Runtime configuration for report orchestration."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

LOCK_BACKENDS = ("sqlite", "redis")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass(slots=True)
class LockSettings:
    """Distributed lease settings."""

    backend: str = "sqlite"
    redis_url: str = "redis://localhost:6379/0"
    env: str = "development"
    poller_ttl_seconds: int = 60
    schedule_ttl_seconds: int = 300
    run_ttl_seconds: int = 600


@dataclass(slots=True)
class AdmissionSettings:
    """Per-tenant run admission limits."""

    manual_rate_limit: int = 50
    rate_window_seconds: int = 3_600
    max_active_runs: int = 10


@dataclass(slots=True)
class WorkerSettings:
    """Queue worker settings."""

    worker_id: str = field(default_factory=_default_worker_id)
    concurrency: int = 5
    rate_limit_jobs: int = 10
    rate_window_seconds: int = 60
    max_attempts: int = 3
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    poll_interval_seconds: float = 2.0
    stale_job_seconds: int = 900


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduler poller settings."""

    interval_seconds: float = 60.0
    stuck_run_seconds: int = 3_600
    batch_size: int = 100


@dataclass(slots=True)
class OutputSettings:
    root_dir: Path = Path(".report_outputs")


@dataclass(slots=True)
class NotificationSettings:
    webhook_url: str | None = None
    webhook_timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".report_orchestrator.db")
    sqlite_busy_timeout_ms: int = 5_000
    locks: LockSettings = field(default_factory=LockSettings)
    admission: AdmissionSettings = field(default_factory=AdmissionSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    output: OutputSettings = field(default_factory=OutputSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("REPORT_ORCH_DB_PATH", ".report_orchestrator.db")),
            sqlite_busy_timeout_ms=int(os.getenv("REPORT_ORCH_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            locks=LockSettings(
                backend=os.getenv("REPORT_ORCH_LOCK_BACKEND", "sqlite").strip().lower(),
                redis_url=os.getenv("REPORT_ORCH_REDIS_URL", "redis://localhost:6379/0"),
                env=os.getenv("REPORT_ORCH_ENV", "development"),
                poller_ttl_seconds=int(os.getenv("REPORT_ORCH_POLLER_LOCK_TTL_SECONDS", "60")),
                schedule_ttl_seconds=int(
                    os.getenv("REPORT_ORCH_SCHEDULE_LOCK_TTL_SECONDS", "300"),
                ),
                run_ttl_seconds=int(os.getenv("REPORT_ORCH_RUN_LOCK_TTL_SECONDS", "600")),
            ),
            admission=AdmissionSettings(
                manual_rate_limit=int(os.getenv("REPORT_ORCH_MANUAL_RATE_LIMIT", "50")),
                rate_window_seconds=int(
                    os.getenv("REPORT_ORCH_MANUAL_RATE_WINDOW_SECONDS", "3600"),
                ),
                max_active_runs=int(os.getenv("REPORT_ORCH_MAX_ACTIVE_RUNS", "10")),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("REPORT_ORCH_WORKER_ID") or _default_worker_id(),
                concurrency=int(os.getenv("REPORT_ORCH_WORKER_CONCURRENCY", "5")),
                rate_limit_jobs=int(os.getenv("REPORT_ORCH_WORKER_RATE_LIMIT_JOBS", "10")),
                rate_window_seconds=int(
                    os.getenv("REPORT_ORCH_WORKER_RATE_WINDOW_SECONDS", "60"),
                ),
                max_attempts=int(os.getenv("REPORT_ORCH_WORKER_MAX_ATTEMPTS", "3")),
                retry_base_seconds=float(
                    os.getenv("REPORT_ORCH_WORKER_RETRY_BASE_SECONDS", "5.0"),
                ),
                retry_max_seconds=float(
                    os.getenv("REPORT_ORCH_WORKER_RETRY_MAX_SECONDS", "300.0"),
                ),
                poll_interval_seconds=float(
                    os.getenv("REPORT_ORCH_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                stale_job_seconds=int(os.getenv("REPORT_ORCH_WORKER_STALE_JOB_SECONDS", "900")),
            ),
            scheduler=SchedulerSettings(
                interval_seconds=float(
                    os.getenv("REPORT_ORCH_SCHEDULER_INTERVAL_SECONDS", "60.0"),
                ),
                stuck_run_seconds=int(os.getenv("REPORT_ORCH_STUCK_RUN_SECONDS", "3600")),
                batch_size=int(os.getenv("REPORT_ORCH_SCHEDULER_BATCH_SIZE", "100")),
            ),
            output=OutputSettings(
                root_dir=Path(os.getenv("REPORT_ORCH_OUTPUT_DIR", ".report_outputs")),
            ),
            notifications=NotificationSettings(
                webhook_url=os.getenv("REPORT_ORCH_WEBHOOK_URL", "").strip() or None,
                webhook_timeout_seconds=float(
                    os.getenv("REPORT_ORCH_WEBHOOK_TIMEOUT_SECONDS", "10.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise ``ValueError`` describing the first invalid setting."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ValueError("REPORT_ORCH_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.locks.backend not in LOCK_BACKENDS:
            raise ValueError(
                f"REPORT_ORCH_LOCK_BACKEND must be one of {', '.join(LOCK_BACKENDS)}, "
                f"got {self.locks.backend!r}.",
            )
        if self.locks.backend == "redis":
            parsed = urlparse(self.locks.redis_url)
            if parsed.scheme not in {"redis", "rediss", "unix"}:
                raise ValueError(f"Invalid REPORT_ORCH_REDIS_URL: {self.locks.redis_url!r}")
        for name, value in (
            ("REPORT_ORCH_POLLER_LOCK_TTL_SECONDS", self.locks.poller_ttl_seconds),
            ("REPORT_ORCH_SCHEDULE_LOCK_TTL_SECONDS", self.locks.schedule_ttl_seconds),
            ("REPORT_ORCH_RUN_LOCK_TTL_SECONDS", self.locks.run_ttl_seconds),
            ("REPORT_ORCH_MANUAL_RATE_LIMIT", self.admission.manual_rate_limit),
            ("REPORT_ORCH_MANUAL_RATE_WINDOW_SECONDS", self.admission.rate_window_seconds),
            ("REPORT_ORCH_MAX_ACTIVE_RUNS", self.admission.max_active_runs),
            ("REPORT_ORCH_WORKER_CONCURRENCY", self.worker.concurrency),
            ("REPORT_ORCH_WORKER_RATE_LIMIT_JOBS", self.worker.rate_limit_jobs),
            ("REPORT_ORCH_WORKER_RATE_WINDOW_SECONDS", self.worker.rate_window_seconds),
            ("REPORT_ORCH_WORKER_MAX_ATTEMPTS", self.worker.max_attempts),
            ("REPORT_ORCH_SCHEDULER_BATCH_SIZE", self.scheduler.batch_size),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.worker.retry_base_seconds < 0 or self.worker.retry_max_seconds < 0:
            raise ValueError("Worker retry backoff seconds must be >= 0.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("REPORT_ORCH_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.stale_job_seconds < 0:
            raise ValueError("REPORT_ORCH_WORKER_STALE_JOB_SECONDS must be >= 0.")
        if self.scheduler.interval_seconds <= 0:
            raise ValueError("REPORT_ORCH_SCHEDULER_INTERVAL_SECONDS must be > 0.")
        if 0 < self.scheduler.stuck_run_seconds <= self.locks.run_ttl_seconds:
            raise ValueError(
                "REPORT_ORCH_STUCK_RUN_SECONDS must exceed REPORT_ORCH_RUN_LOCK_TTL_SECONDS "
                "(or be 0 to disable the sweep).",
            )
        if self.scheduler.stuck_run_seconds < 0:
            raise ValueError("REPORT_ORCH_STUCK_RUN_SECONDS must be >= 0.")
        if self.notifications.webhook_url is not None:
            parsed = urlparse(self.notifications.webhook_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "Invalid REPORT_ORCH_WEBHOOK_URL: "
                    f"{self.notifications.webhook_url!r}. Expected an absolute http(s) URL.",
                )
        if self.notifications.webhook_timeout_seconds <= 0:
            raise ValueError("REPORT_ORCH_WEBHOOK_TIMEOUT_SECONDS must be > 0.")
