"""Tenant-isolated query plans for template sections.

The plan is a small typed pipeline: one match stage made of predicates, then
optional group, sort and limit stages. The tenant predicate is always first
and user-supplied filters can neither remove nor shadow it.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from report_orchestrator.reporting.errors import ConfigurationError
from report_orchestrator.reporting.models import (
    AggregateOp,
    EntityKind,
    GroupBy,
    Period,
    Scope,
    ScopeType,
    SectionSource,
    SortKey,
)
from report_orchestrator.storage.common import to_utc_aware

logger = logging.getLogger(__name__)

TENANT_FIELD = "tenant_id"
PERIOD_FIELD = "created_at"
SCOPE_FIELDS = {
    ScopeType.DEPARTMENT: "department_id",
    ScopeType.TEAM: "team_id",
    ScopeType.USER: "user_id",
}
SYSTEM_FIELDS = frozenset({TENANT_FIELD, PERIOD_FIELD, *SCOPE_FIELDS.values()})
MAX_ROW_LIMIT = 10_000

_FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")
_SCALAR_TYPES = (str, int, float, bool, datetime, date)


class PredicateOp(str, Enum):
    EQ = "eq"
    IN = "in"
    GTE = "gte"
    LTE = "lte"


@dataclass(slots=True, frozen=True)
class Predicate:
    field: str
    op: PredicateOp
    value: Any

    def matches(self, row: dict[str, Any]) -> bool:
        actual = _lookup(row, self.field)
        if self.op == PredicateOp.EQ:
            return _comparable(actual) == _comparable(self.value)
        if self.op == PredicateOp.IN:
            return _comparable(actual) in {_comparable(item) for item in self.value}
        if actual is None:
            return False
        if self.op == PredicateOp.GTE:
            return _comparable(actual) >= _comparable(self.value)
        return _comparable(actual) <= _comparable(self.value)


@dataclass(slots=True, frozen=True)
class QueryPlan:
    """Executable description of one section's data request."""

    entity: EntityKind
    tenant_id: str
    predicates: tuple[Predicate, ...]
    group_by: GroupBy | None = None
    sort: tuple[SortKey, ...] = ()
    limit: int | None = None

    def __post_init__(self) -> None:
        if (
            not self.predicates
            or self.predicates[0].field != TENANT_FIELD
            or self.predicates[0].op != PredicateOp.EQ
            or self.predicates[0].value != self.tenant_id
        ):
            raise ValueError("Query plan must start with the tenant predicate.")
        if sum(1 for predicate in self.predicates if predicate.field == TENANT_FIELD) != 1:
            raise ValueError("Query plan must carry exactly one tenant predicate.")

    def to_pipeline(self) -> list[dict[str, Any]]:
        """Render the plan as document-store style stages."""

        match: dict[str, Any] = {}
        for predicate in self.predicates:
            if predicate.op == PredicateOp.EQ:
                match[predicate.field] = predicate.value
            else:
                match.setdefault(predicate.field, {})[f"${predicate.op.value}"] = (
                    list(predicate.value) if predicate.op == PredicateOp.IN else predicate.value
                )
        stages: list[dict[str, Any]] = [{"$match": match}]
        if self.group_by is not None:
            group: dict[str, Any] = {"_id": f"${self.group_by.field}"}
            for metric in self.group_by.metrics:
                if metric.op == AggregateOp.COUNT:
                    group[metric.name] = {"$sum": 1}
                else:
                    group[metric.name] = {f"${metric.op.value}": f"${metric.field}"}
            stages.append({"$group": group})
        if self.sort:
            stages.append({"$sort": {key.field: -1 if key.descending else 1 for key in self.sort}})
        if self.limit is not None:
            stages.append({"$limit": self.limit})
        return stages


def build_query_plan(
    source: SectionSource,
    *,
    tenant_id: str,
    period: Period,
    scope: Scope,
) -> QueryPlan:
    """Build the plan for one section, always anchored to ``tenant_id``."""

    if not tenant_id or not str(tenant_id).strip():
        raise ConfigurationError("tenant_id is required to build a query plan.")

    predicates: list[Predicate] = [
        Predicate(field=TENANT_FIELD, op=PredicateOp.EQ, value=tenant_id),
        Predicate(field=PERIOD_FIELD, op=PredicateOp.GTE, value=to_utc_aware(period.start)),
        Predicate(field=PERIOD_FIELD, op=PredicateOp.LTE, value=to_utc_aware(period.end)),
    ]
    predicates.extend(_scope_predicates(scope))
    for key, value in sanitize_filters(source.base_filters).items():
        predicates.append(_filter_predicate(key, value))

    if source.group_by is not None:
        _require_field_name(source.group_by.field, what="group_by field")
        for metric in source.group_by.metrics:
            _require_field_name(metric.name, what="metric name")
            if metric.op != AggregateOp.COUNT:
                _require_field_name(metric.field or "", what=f"metric {metric.name!r} field")
    for key in source.sort:
        _require_field_name(key.field, what="sort field")

    return QueryPlan(
        entity=source.entity,
        tenant_id=tenant_id,
        predicates=tuple(predicates),
        group_by=source.group_by,
        sort=tuple(source.sort),
        limit=_effective_limit(source.limit),
    )


def sanitize_filters(filters: dict[str, Any] | None) -> dict[str, Any]:
    """Allow-list user filters: plain field names with scalar or list-of-scalar values.

    Lists become inclusion predicates. Everything else, including operator
    sigil keys and keys that would shadow system predicates, is dropped.
    """

    sanitized: dict[str, Any] = {}
    for key, value in (filters or {}).items():
        if not isinstance(key, str) or not _FIELD_NAME_RE.match(key):
            logger.debug("Dropping filter with unsafe key %r", key)
            continue
        if key in SYSTEM_FIELDS:
            logger.debug("Dropping filter shadowing system field %r", key)
            continue
        if isinstance(value, _SCALAR_TYPES):
            sanitized[key] = value
        elif isinstance(value, list | tuple) and all(
            isinstance(item, _SCALAR_TYPES) for item in value
        ):
            sanitized[key] = tuple(value)
        else:
            logger.debug("Dropping filter %r with unsupported value type", key)
    return sanitized


def _scope_predicates(scope: Scope) -> list[Predicate]:
    if scope.type == ScopeType.TENANT:
        return []
    if scope.type == ScopeType.CUSTOM:
        return [
            _filter_predicate(key, value)
            for key, value in sanitize_filters(scope.custom_filters).items()
        ]
    field_name = SCOPE_FIELDS[scope.type]
    scope_id = getattr(scope, field_name)
    if not scope_id:
        raise ConfigurationError(f"Scope {scope.type.value} requires {field_name}.")
    return [Predicate(field=field_name, op=PredicateOp.EQ, value=scope_id)]


def _filter_predicate(key: str, value: Any) -> Predicate:
    if isinstance(value, tuple):
        return Predicate(field=key, op=PredicateOp.IN, value=value)
    return Predicate(field=key, op=PredicateOp.EQ, value=value)


def _effective_limit(limit: int | None) -> int | None:
    if limit is None:
        return None
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ConfigurationError(f"Section limit must be a positive integer, got {limit!r}.")
    return min(limit, MAX_ROW_LIMIT)


def _require_field_name(value: str, *, what: str) -> None:
    if not _FIELD_NAME_RE.match(value or ""):
        raise ConfigurationError(f"Invalid {what}: {value!r}")


def _lookup(row: dict[str, Any], dotted: str) -> Any:
    current: Any = row
    for part in dotted.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_utc_aware(value)
    return value
