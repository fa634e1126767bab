"""Run executor: turn one queued run into rendered outputs."""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from report_orchestrator.reporting.aggregation import build_query_plan
from report_orchestrator.reporting.collaborators import (
    AuditSink,
    DataAccess,
    InsightGenerator,
    NotificationEmitter,
    OutputRenderer,
    RenderContext,
    SectionResult,
)
from report_orchestrator.reporting.errors import (
    ConfigurationError,
    ExecutorCrash,
    ReportingError,
    SectionExecutionError,
)
from report_orchestrator.reporting.models import (
    NotificationEvent,
    RenderedArtifact,
    RunError,
    RunStatus,
    RunView,
    TemplateStatus,
    TemplateView,
    ViewKind,
)
from report_orchestrator.reporting.repository import EXECUTION_ERROR_CODE, ReportingRepository
from report_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

FALLBACK_TEMPLATE_NAME = "Report"


@dataclass(slots=True, frozen=True)
class RunResult:
    """Outcome of one execute call.

    ``status`` is ``None`` when the run was not claimable and nothing changed.
    """

    run_id: str
    status: RunStatus | None
    duration_ms: int = 0
    error: RunError | None = None

    @property
    def skipped(self) -> bool:
        return self.status is None


class RunExecutor:
    """Execute a run end to end and record exactly one outcome."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: ReportingRepository,
        data_access: DataAccess,
        renderer: OutputRenderer,
        insight_generator: InsightGenerator,
        notifier: NotificationEmitter,
        audit_sink: AuditSink,
    ) -> None:
        self.repository = repository
        self.data_access = data_access
        self.renderer = renderer
        self.insight_generator = insight_generator
        self.notifier = notifier
        self.audit_sink = audit_sink

    def execute(self, *, run_id: str, tenant_id: str, allow_from_failed: bool = False) -> RunResult:
        """Run the lifecycle ``queued -> running -> success|failed``.

        Collaborator errors that are part of the reporting taxonomy fail the run
        for good. Anything else fails the run and is re-raised as
        ``ExecutorCrash`` so the queue can retry the job.
        """

        started = time.monotonic()
        run = self.repository.start_run(
            run_id=run_id,
            tenant_id=tenant_id,
            allow_from_failed=allow_from_failed,
        )
        if run is None:
            logger.info("Run %s is not claimable; skipping", run_id)
            return RunResult(run_id=run_id, status=None)

        logger.info("Starting report run %s tenant=%s attempt=%s", run_id, tenant_id, run.attempts)
        template_name = FALLBACK_TEMPLATE_NAME
        try:
            template = self._load_template(run)
            template_name = template.name
            context = RenderContext(
                tenant_id=run.tenant_id,
                run_id=run.run_id,
                template_name=template.name,
                period=run.period,
                locale=template.output_defaults.locale,
                timezone=template.output_defaults.timezone,
            )
            results = self._collect_sections(template, run)
            if template.ai_narrative:
                self._attach_narrative(results, context)
            outputs = self._render_outputs(results, run, context)
            data_summary = {result.key: result.summary() for result in results}
            duration_ms = _elapsed_ms(started)
            if not self.repository.complete_run(
                run_id=run_id,
                outputs=outputs,
                data_summary=data_summary,
                duration_ms=duration_ms,
            ):
                logger.warning("Run %s left running state before completion; dropping result", run_id)
                return RunResult(run_id=run_id, status=None, duration_ms=duration_ms)
        except ReportingError as error:
            run_error = RunError(message=error.message, code=error.code)
            self._record_failure(run, run_error, template_name, started)
            return RunResult(
                run_id=run_id,
                status=RunStatus.FAILED,
                duration_ms=_elapsed_ms(started),
                error=run_error,
            )
        except Exception as error:
            run_error = RunError(message=str(error) or type(error).__name__, code=EXECUTION_ERROR_CODE)
            logger.exception("Report run %s crashed", run_id)
            self._record_failure(run, run_error, template_name, started)
            raise ExecutorCrash(run_error.message) from error

        logger.info("Report run %s completed in %sms", run_id, duration_ms)
        self._emit(run, RunStatus.SUCCESS, template_name, error=None)
        self._audit(
            run,
            action="REPORT_RUN_SUCCESS",
            metadata={
                "template_id": run.template_id,
                "duration_ms": duration_ms,
                "output_count": len(outputs),
                "failed_sections": [
                    result.key for result in results if result.error is not None
                ],
            },
        )
        return RunResult(run_id=run_id, status=RunStatus.SUCCESS, duration_ms=duration_ms)

    def _load_template(self, run: RunView) -> TemplateView:
        template = self.repository.get_template(
            tenant_id=run.tenant_id,
            template_id=run.template_id,
        )
        if template is None:
            raise ConfigurationError(f"Template not found: {run.template_id}")
        if template.status != TemplateStatus.ACTIVE:
            raise ConfigurationError(f"Template {run.template_id} is disabled.")
        return template

    def _collect_sections(self, template: TemplateView, run: RunView) -> list[SectionResult]:
        results: list[SectionResult] = []
        for section in template.sections:
            if not section.enabled:
                continue
            result = SectionResult(key=section.key, title=section.title, view_kind=section.view.kind)
            try:
                plan = build_query_plan(
                    section.source,
                    tenant_id=run.tenant_id,
                    period=run.period,
                    scope=run.scope_snapshot,
                )
                result.rows = list(self.data_access.run_query_plan(plan))
            except Exception as error:  # noqa: BLE001
                failure = SectionExecutionError(section.key, str(error) or type(error).__name__)
                logger.warning("Run %s: %s", run.run_id, failure.message)
                result.rows = []
                result.error = str(error) or type(error).__name__
            results.append(result)
        return results

    def _attach_narrative(self, results: list[SectionResult], context: RenderContext) -> None:
        text_sections = [result for result in results if result.view_kind == ViewKind.TEXT]
        if not text_sections:
            return
        data_sections = [result for result in results if result.view_kind != ViewKind.TEXT]
        try:
            narrative = self.insight_generator.summarize(data_sections, context)
        except Exception as error:  # noqa: BLE001
            logger.warning("Run %s: narrative generation failed: %s", context.run_id, error)
            narrative = f"Narrative unavailable: {error}"
        for result in text_sections:
            result.narrative = narrative

    def _render_outputs(
        self,
        results: Sequence[SectionResult],
        run: RunView,
        context: RenderContext,
    ) -> list[RenderedArtifact]:
        outputs: list[RenderedArtifact] = []
        for output_format in run.output_formats:
            artifact = self.renderer.render(results, output_format, context)
            logger.debug("Run %s rendered %s at %s", run.run_id, output_format.value, artifact.location_ref)
            outputs.append(artifact)
        return outputs

    def _record_failure(
        self,
        run: RunView,
        run_error: RunError,
        template_name: str,
        started: float,
    ) -> None:
        duration_ms = _elapsed_ms(started)
        logger.error("Report run %s failed [%s]: %s", run.run_id, run_error.code, run_error.message)
        if not self.repository.fail_run(
            run_id=run.run_id,
            error=run_error,
            duration_ms=duration_ms,
        ):
            logger.warning("Run %s left running state before failure could be recorded", run.run_id)
            return
        self._emit(run, RunStatus.FAILED, template_name, error=run_error.message)
        self._audit(
            run,
            action="REPORT_RUN_FAILED",
            metadata={
                "template_id": run.template_id,
                "error": run_error.message,
                "code": run_error.code,
                "duration_ms": duration_ms,
            },
        )

    def _emit(
        self,
        run: RunView,
        status: RunStatus,
        template_name: str,
        *,
        error: str | None,
    ) -> None:
        if status == RunStatus.SUCCESS:
            title = "Report Ready"
            message = f'Your report "{template_name}" has been generated successfully.'
        else:
            title = "Report Failed"
            message = f'Report "{template_name}" failed: {error}'
        event = NotificationEvent(
            tenant_id=run.tenant_id,
            run_id=run.run_id,
            status=status,
            title=title,
            message=message,
            created_at=utc_now(),
            metadata={"run_id": run.run_id, "status": status.value, "template_name": template_name},
        )
        try:
            self.notifier.emit(event)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to emit notification for run %s", run.run_id)

    def _audit(self, run: RunView, *, action: str, metadata: dict[str, Any]) -> None:
        try:
            self.audit_sink.record(
                action=action,
                resource_type="ReportRun",
                resource_id=run.run_id,
                actor_id=None,
                tenant_id=run.tenant_id,
                metadata=metadata,
            )
        except Exception:  # noqa: BLE001
            logger.exception("Failed to write audit entry for run %s", run.run_id)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
