"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from reporting_data import RUN_PERIOD, TENANT, RecordingNotifier, template_payload

from report_orchestrator.reporting.collaborators import (
    DataAccess,
    InMemoryDataAccess,
    LocalFileRenderer,
    OutputRenderer,
    SqlAuditSink,
    StatisticalInsightGenerator,
)
from report_orchestrator.reporting.executor import RunExecutor
from report_orchestrator.reporting.locks import SqliteLockStore
from report_orchestrator.reporting.models import RunView, TemplateView
from report_orchestrator.reporting.payloads import parse_template_payload
from report_orchestrator.reporting.queue import JobQueue
from report_orchestrator.reporting.repository import ReportingRepository
from report_orchestrator.reporting.services import (
    AdmissionPolicy,
    ManualRunRequest,
    ReportingService,
)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "reports.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[ReportingRepository]:
    repo = ReportingRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def job_queue(db_path: Path, repository: ReportingRepository) -> Iterator[JobQueue]:
    queue = JobQueue(db_path)
    yield queue
    queue.close()


@pytest.fixture()
def service(repository: ReportingRepository, job_queue: JobQueue) -> ReportingService:
    return ReportingService(
        repository=repository,
        queue=job_queue,
        admission=AdmissionPolicy(manual_rate_limit=50, rate_window_seconds=3_600, max_active_runs=10),
    )


@pytest.fixture()
def create_template(service: ReportingService) -> Callable[..., TemplateView]:
    def _create(tenant_id: str = TENANT, code: str = "DSR_DAILY", **overrides: Any) -> TemplateView:
        return service.create_template(
            tenant_id=tenant_id,
            payload=parse_template_payload(template_payload(code, **overrides)),
            actor_id="user-1",
        )

    return _create


@pytest.fixture()
def trigger_run(service: ReportingService, create_template) -> Callable[..., RunView]:
    """Create a template (unless given) and queue a manual run for ``RUN_PERIOD``."""

    def _trigger(template: TemplateView | None = None, **request: Any) -> RunView:
        template = template or create_template()
        return service.trigger_manual_run(
            tenant_id=template.tenant_id,
            request=ManualRunRequest(template_id=template.template_id, period=RUN_PERIOD, **request),
            actor_id="user-1",
        )

    return _trigger


@pytest.fixture()
def lock_store(db_path: Path, repository: ReportingRepository) -> Iterator[SqliteLockStore]:
    store = SqliteLockStore(db_path)
    yield store
    store.close()


@pytest.fixture()
def make_executor(
    tmp_path: Path,
    repository: ReportingRepository,
) -> Callable[..., RunExecutor]:
    def _make(
        *,
        data_access: DataAccess | None = None,
        renderer: OutputRenderer | None = None,
        notifier: RecordingNotifier | None = None,
    ) -> RunExecutor:
        return RunExecutor(
            repository=repository,
            data_access=data_access or InMemoryDataAccess(),
            renderer=renderer or LocalFileRenderer(tmp_path / "outputs"),
            insight_generator=StatisticalInsightGenerator(),
            notifier=notifier or RecordingNotifier(),
            audit_sink=SqlAuditSink(repository),
        )

    return _make
