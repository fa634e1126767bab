from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from reporting_data import OTHER_TENANT, TENANT, RecordingNotifier

from report_orchestrator.reporting.aggregation import QueryPlan
from report_orchestrator.reporting.collaborators import InMemoryDataAccess
from report_orchestrator.reporting.errors import ExecutorCrash
from report_orchestrator.reporting.models import EntityKind, RunStatus, TemplateStatus
from report_orchestrator.reporting.repository import ReportingRepository
from report_orchestrator.reporting.services import ReportingService

pytestmark = [
    allure.epic("Report Execution"),
    allure.feature("Run Executor"),
]

INSIDE = datetime(2026, 10, 18, 10, 0, tzinfo=UTC)


def _fixture_rows() -> InMemoryDataAccess:
    return InMemoryDataAccess(
        {
            EntityKind.TASK: [
                {"tenant_id": TENANT, "created_at": INSIDE, "status": "done", "task_id": "t1", "user_id": "u1"},
                {"tenant_id": TENANT, "created_at": INSIDE, "status": "done", "task_id": "t2", "user_id": "u2"},
                {"tenant_id": TENANT, "created_at": INSIDE, "status": "open", "task_id": "t3", "user_id": "u2"},
                {
                    "tenant_id": OTHER_TENANT,
                    "created_at": INSIDE,
                    "status": "done",
                    "task_id": "x1",
                    "user_id": "intruder",
                },
            ],
            EntityKind.TASK_TIME_LOG: [
                {"tenant_id": TENANT, "created_at": INSIDE, "user_id": "u1", "minutes": 90},
                {"tenant_id": TENANT, "created_at": INSIDE, "user_id": "u2", "minutes": 30},
                {"tenant_id": OTHER_TENANT, "created_at": INSIDE, "user_id": "intruder", "minutes": 999},
            ],
        },
    )


class _FailingEntityAccess:
    """Delegates to fixture rows but fails every query for one entity."""

    def __init__(self, inner: InMemoryDataAccess, failing: EntityKind) -> None:
        self.inner = inner
        self.failing = failing

    def run_query_plan(self, plan: QueryPlan) -> list[dict]:
        if plan.entity == self.failing:
            raise TimeoutError("aggregation timed out")
        return self.inner.run_query_plan(plan)


class _CrashingRenderer:
    def render(self, section_results, output_format, context):  # noqa: ANN001, ANN201
        raise RuntimeError("disk full")


def test_run_succeeds_with_outputs_narrative_and_tenant_only_rows(
    trigger_run,
    make_executor,
    repository: ReportingRepository,
) -> None:
    run = trigger_run()
    notifier = RecordingNotifier()
    executor = make_executor(data_access=_fixture_rows(), notifier=notifier)

    result = executor.execute(run_id=run.run_id, tenant_id=TENANT)

    assert result.status == RunStatus.SUCCESS
    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.status == RunStatus.SUCCESS
    assert stored.attempts == 1
    assert stored.data_summary["done_tasks"] == {"title": "Completed tasks", "count": 2}
    assert stored.data_summary["hours"]["count"] == 2
    assert "narrative" in stored.data_summary["summary"]
    assert [artifact.format.value for artifact in stored.outputs] == ["JSON", "CSV"]
    for artifact in stored.outputs:
        assert Path(artifact.location_ref).is_file()
        assert artifact.size_bytes > 0

    document = Path(stored.outputs[0].location_ref).read_text(encoding="utf-8")
    assert "intruder" not in document
    assert json.loads(document)["run_id"] == run.run_id

    assert [event.status for event in notifier.events] == [RunStatus.SUCCESS]
    assert notifier.events[0].title == "Report Ready"
    actions = [entry.action for entry in repository.list_audit_entries(tenant_id=TENANT, resource_id=run.run_id)]
    assert actions == ["REPORT_RUN_TRIGGERED", "REPORT_RUN_SUCCESS"]


def test_failing_section_degrades_instead_of_failing_the_run(
    trigger_run,
    make_executor,
    repository: ReportingRepository,
) -> None:
    run = trigger_run()
    executor = make_executor(
        data_access=_FailingEntityAccess(_fixture_rows(), EntityKind.TASK_TIME_LOG),
    )

    result = executor.execute(run_id=run.run_id, tenant_id=TENANT)

    assert result.status == RunStatus.SUCCESS
    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.data_summary["hours"] == {
        "title": "Hours by user",
        "count": 0,
        "error": "aggregation timed out",
    }
    assert stored.data_summary["done_tasks"]["count"] == 2
    assert "Unavailable: Hours by user." in stored.data_summary["summary"]["narrative"]
    assert len(stored.outputs) == 2
    audit = repository.list_audit_entries(tenant_id=TENANT, resource_id=run.run_id)
    assert audit[-1].metadata["failed_sections"] == ["hours"]


def test_notifier_failure_does_not_change_the_outcome(
    trigger_run,
    make_executor,
    repository: ReportingRepository,
) -> None:
    run = trigger_run()
    executor = make_executor(notifier=RecordingNotifier(fail=True))

    result = executor.execute(run_id=run.run_id, tenant_id=TENANT)

    assert result.status == RunStatus.SUCCESS
    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.status == RunStatus.SUCCESS


def test_template_disabled_after_trigger_fails_run_with_configuration_error(
    trigger_run,
    make_executor,
    service: ReportingService,
    repository: ReportingRepository,
) -> None:
    run = trigger_run()
    service.set_template_status(
        tenant_id=TENANT,
        template_id=run.template_id,
        status=TemplateStatus.DISABLED,
        actor_id="user-1",
    )
    notifier = RecordingNotifier()

    result = make_executor(notifier=notifier).execute(run_id=run.run_id, tenant_id=TENANT)

    assert result.status == RunStatus.FAILED
    assert result.error is not None
    assert result.error.code == "CONFIGURATION_ERROR"
    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.status == RunStatus.FAILED
    assert stored.error is not None
    assert "disabled" in stored.error.message
    assert notifier.events[0].title == "Report Failed"
    actions = [entry.action for entry in repository.list_audit_entries(tenant_id=TENANT, resource_id=run.run_id)]
    assert actions[-1] == "REPORT_RUN_FAILED"


def test_unexpected_error_fails_run_and_surfaces_as_crash(
    trigger_run,
    make_executor,
    repository: ReportingRepository,
) -> None:
    run = trigger_run()
    executor = make_executor(renderer=_CrashingRenderer())

    with pytest.raises(ExecutorCrash, match="disk full"):
        executor.execute(run_id=run.run_id, tenant_id=TENANT)

    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.status == RunStatus.FAILED
    assert stored.error is not None
    assert stored.error.code == "EXECUTION_ERROR"


def test_finished_run_is_not_executed_twice(trigger_run, make_executor) -> None:
    run = trigger_run()
    executor = make_executor()

    first = executor.execute(run_id=run.run_id, tenant_id=TENANT)
    second = executor.execute(run_id=run.run_id, tenant_id=TENANT)
    failed_retry = executor.execute(run_id=run.run_id, tenant_id=TENANT, allow_from_failed=True)

    assert first.status == RunStatus.SUCCESS
    assert second.skipped
    assert failed_retry.skipped


def test_run_of_another_tenant_is_not_claimable(trigger_run, make_executor) -> None:
    run = trigger_run()

    result = make_executor().execute(run_id=run.run_id, tenant_id=OTHER_TENANT)

    assert result.skipped


def test_configuration_failure_is_not_reexecuted_by_a_redelivered_job(
    trigger_run,
    make_executor,
    service: ReportingService,
    repository: ReportingRepository,
) -> None:
    run = trigger_run()
    service.set_template_status(
        tenant_id=TENANT,
        template_id=run.template_id,
        status=TemplateStatus.DISABLED,
        actor_id="user-1",
    )
    executor = make_executor()
    assert executor.execute(run_id=run.run_id, tenant_id=TENANT).status == RunStatus.FAILED

    redelivered = executor.execute(run_id=run.run_id, tenant_id=TENANT, allow_from_failed=True)

    assert redelivered.skipped
    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.status == RunStatus.FAILED
    assert stored.attempts == 1
    assert stored.error is not None
    assert stored.error.code == "CONFIGURATION_ERROR"


def test_crashed_run_is_reclaimed_by_a_redelivered_job(
    trigger_run,
    make_executor,
    repository: ReportingRepository,
) -> None:
    run = trigger_run()
    with pytest.raises(ExecutorCrash):
        make_executor(renderer=_CrashingRenderer()).execute(run_id=run.run_id, tenant_id=TENANT)

    result = make_executor().execute(run_id=run.run_id, tenant_id=TENANT, allow_from_failed=True)

    assert result.status == RunStatus.SUCCESS
    stored = repository.get_run(tenant_id=TENANT, run_id=run.run_id)
    assert stored is not None
    assert stored.attempts == 2
    assert stored.error is None
