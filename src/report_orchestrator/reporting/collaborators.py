"""Collaborator contracts consumed by the run executor, with local adapters."""

from __future__ import annotations

import csv
import hashlib
import html
import io
import json
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from report_orchestrator.reporting.aggregation import QueryPlan
from report_orchestrator.reporting.models import (
    AggregateOp,
    EntityKind,
    NotificationEvent,
    OutputFormat,
    Period,
    RenderedArtifact,
    ViewKind,
)
from report_orchestrator.reporting.repository import ReportingRepository

logger = logging.getLogger(__name__)

_TEXT_RENDITION_FORMATS = {OutputFormat.PDF, OutputFormat.XLSX}


@dataclass(slots=True)
class SectionResult:
    """Rows produced for one template section."""

    key: str
    title: str
    view_kind: ViewKind
    rows: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    narrative: str | None = None

    @property
    def count(self) -> int:
        return len(self.rows)

    def summary(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"title": self.title, "count": self.count}
        if self.error is not None:
            payload["error"] = self.error
        if self.narrative is not None:
            payload["narrative"] = self.narrative
        return payload


@dataclass(slots=True, frozen=True)
class RenderContext:
    tenant_id: str
    run_id: str
    template_name: str
    period: Period
    locale: str = "en-IN"
    timezone: str = "Asia/Kolkata"


class DataAccess(Protocol):
    def run_query_plan(self, plan: QueryPlan) -> list[dict[str, Any]]: ...


class OutputRenderer(Protocol):
    def render(
        self,
        section_results: Sequence[SectionResult],
        output_format: OutputFormat,
        context: RenderContext,
    ) -> RenderedArtifact: ...


class InsightGenerator(Protocol):
    def summarize(self, section_results: Sequence[SectionResult], context: RenderContext) -> str: ...


class NotificationEmitter(Protocol):
    def emit(self, event: NotificationEvent) -> None: ...


class AuditSink(Protocol):
    def record(  # noqa: PLR0913
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: str,
        actor_id: str | None,
        tenant_id: str,
        diff: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...


class InMemoryDataAccess:
    """Evaluate query plans over fixture rows keyed by entity kind."""

    def __init__(self, rows: dict[EntityKind, Iterable[dict[str, Any]]] | None = None) -> None:
        self._rows: dict[EntityKind, list[dict[str, Any]]] = {
            EntityKind(kind): list(items) for kind, items in (rows or {}).items()
        }

    def add_rows(self, entity: EntityKind, rows: Iterable[dict[str, Any]]) -> None:
        self._rows.setdefault(entity, []).extend(rows)

    def run_query_plan(self, plan: QueryPlan) -> list[dict[str, Any]]:
        matched = [
            dict(row)
            for row in self._rows.get(plan.entity, [])
            if all(predicate.matches(row) for predicate in plan.predicates)
        ]
        if plan.group_by is not None:
            matched = _group_rows(matched, plan)
        for key in reversed(plan.sort):
            matched.sort(
                key=lambda row, name=key.field: (row.get(name) is None, row.get(name)),
                reverse=key.descending,
            )
        if plan.limit is not None:
            matched = matched[: plan.limit]
        return matched


class LocalFileRenderer:
    """Write one artifact per format under ``<root>/<tenant>/<run>/``.

    JSON, CSV and HTML are rendered natively. PDF and XLSX get a plain-text
    rendition, since binary document generation is outside this package.
    """

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def render(
        self,
        section_results: Sequence[SectionResult],
        output_format: OutputFormat,
        context: RenderContext,
    ) -> RenderedArtifact:
        run_dir = self.root_dir / _safe_segment(context.tenant_id) / _safe_segment(context.run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        suffix = output_format.value.lower()
        if output_format in _TEXT_RENDITION_FORMATS:
            suffix = f"{suffix}.txt"
        path = run_dir / f"report.{suffix}"
        payload = _RENDERERS[output_format](section_results, context).encode("utf-8")
        path.write_bytes(payload)
        return RenderedArtifact(
            format=output_format,
            location_ref=str(path),
            size_bytes=len(payload),
            checksum=hashlib.sha256(payload).hexdigest(),
        )


class StatisticalInsightGenerator:
    """Deterministic narrative built from section counts."""

    def summarize(self, section_results: Sequence[SectionResult], context: RenderContext) -> str:
        healthy = [result for result in section_results if result.error is None]
        total = sum(result.count for result in healthy)
        parts = [
            f"{context.template_name} for {context.period.label or 'the selected period'}: "
            f"{total} record(s) across {len(healthy)} section(s).",
        ]
        if healthy:
            largest = max(healthy, key=lambda result: result.count)
            parts.append(f"Largest section is {largest.title!r} with {largest.count} record(s).")
        failed = [result.title for result in section_results if result.error is not None]
        if failed:
            parts.append(f"Unavailable: {', '.join(failed)}.")
        return " ".join(parts)


class SqlAuditSink:
    """Append audit entries to the ``audit_log`` table."""

    def __init__(self, repository: ReportingRepository) -> None:
        self.repository = repository

    def record(  # noqa: PLR0913
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: str,
        actor_id: str | None,
        tenant_id: str,
        diff: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.repository.record_audit(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            tenant_id=tenant_id,
            diff=diff,
            metadata=metadata,
        )


def _group_rows(rows: list[dict[str, Any]], plan: QueryPlan) -> list[dict[str, Any]]:
    assert plan.group_by is not None
    buckets: dict[Any, list[dict[str, Any]]] = {}
    for row in rows:
        buckets.setdefault(row.get(plan.group_by.field), []).append(row)

    grouped: list[dict[str, Any]] = []
    for key, members in buckets.items():
        out: dict[str, Any] = {"_id": key}
        for metric in plan.group_by.metrics:
            values = [
                member.get(metric.field)
                for member in members
                if metric.field and isinstance(member.get(metric.field), int | float)
            ]
            if metric.op == AggregateOp.COUNT:
                out[metric.name] = len(members)
            elif metric.op == AggregateOp.SUM:
                out[metric.name] = sum(values)
            elif metric.op == AggregateOp.AVG:
                out[metric.name] = sum(values) / len(values) if values else None
            elif metric.op == AggregateOp.MIN:
                out[metric.name] = min(values) if values else None
            else:
                out[metric.name] = max(values) if values else None
        grouped.append(out)
    return grouped


def _render_json(section_results: Sequence[SectionResult], context: RenderContext) -> str:
    document = {
        "template": context.template_name,
        "run_id": context.run_id,
        "period": context.period.to_dict(),
        "locale": context.locale,
        "sections": [
            {"key": result.key, **result.summary(), "rows": result.rows}
            for result in section_results
        ],
    }
    return json.dumps(document, ensure_ascii=False, indent=2, sort_keys=True, default=str)


def _render_csv(section_results: Sequence[SectionResult], context: RenderContext) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["section", "field", "value", "row"])
    for result in section_results:
        for index, row in enumerate(result.rows):
            for column, value in row.items():
                writer.writerow([result.key, column, value, index])
        if result.error is not None:
            writer.writerow([result.key, "error", result.error, ""])
    return buffer.getvalue()


def _render_html(section_results: Sequence[SectionResult], context: RenderContext) -> str:
    lines = [
        "<!DOCTYPE html>",
        f"<html lang=\"{html.escape(context.locale)}\"><body>",
        f"<h1>{html.escape(context.template_name)}</h1>",
        f"<p>{html.escape(context.period.label)}</p>",
    ]
    for result in section_results:
        lines.append(f"<h2>{html.escape(result.title)}</h2>")
        if result.error is not None:
            lines.append(f"<p class=\"error\">{html.escape(result.error)}</p>")
        if result.narrative:
            lines.append(f"<p>{html.escape(result.narrative)}</p>")
        if result.rows:
            columns = list(dict.fromkeys(column for row in result.rows for column in row))
            lines.append("<table>")
            lines.append(
                "<tr>" + "".join(f"<th>{html.escape(str(c))}</th>" for c in columns) + "</tr>",
            )
            for row in result.rows:
                cells = "".join(f"<td>{html.escape(str(row.get(c, '')))}</td>" for c in columns)
                lines.append(f"<tr>{cells}</tr>")
            lines.append("</table>")
    lines.append("</body></html>")
    return "\n".join(lines)


def _render_text(section_results: Sequence[SectionResult], context: RenderContext) -> str:
    lines = [context.template_name, context.period.label, ""]
    for result in section_results:
        lines.append(f"## {result.title} ({result.count})")
        if result.error is not None:
            lines.append(f"error: {result.error}")
        if result.narrative:
            lines.append(result.narrative)
        lines.extend(
            ", ".join(f"{key}={value}" for key, value in row.items()) for row in result.rows
        )
        lines.append("")
    return "\n".join(lines)


_RENDERERS = {
    OutputFormat.JSON: _render_json,
    OutputFormat.CSV: _render_csv,
    OutputFormat.HTML: _render_html,
    OutputFormat.PDF: _render_text,
    OutputFormat.XLSX: _render_text,
}


def _safe_segment(value: str) -> str:
    cleaned = "".join(char if char.isalnum() or char in "-_" else "_" for char in value)
    return cleaned or "_"
