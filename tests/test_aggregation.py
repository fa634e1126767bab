from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from report_orchestrator.reporting.aggregation import (
    MAX_ROW_LIMIT,
    PERIOD_FIELD,
    TENANT_FIELD,
    Predicate,
    PredicateOp,
    QueryPlan,
    build_query_plan,
    sanitize_filters,
)
from report_orchestrator.reporting.collaborators import InMemoryDataAccess
from report_orchestrator.reporting.errors import ConfigurationError
from report_orchestrator.reporting.models import (
    AggregateOp,
    EntityKind,
    GroupBy,
    Metric,
    Period,
    Scope,
    ScopeType,
    SectionSource,
    SortKey,
)

pytestmark = [
    allure.epic("Report Execution"),
    allure.feature("Tenant-Isolated Aggregation"),
]

PERIOD = Period(
    start=datetime(2026, 10, 1, tzinfo=UTC),
    end=datetime(2026, 10, 2, tzinfo=UTC),
    label="Custom",
)
HOSTILE_FILTERS = {
    "tenant_id": "tenant-b",
    "$where": "return true",
    "user_id": "u-other",
    "created_at": {"$gte": "1970-01-01"},
    "status": "done",
    "priority": ["high", "urgent"],
    "meta": {"$ne": None},
    "bad key": "x",
}


def _fields(plan: QueryPlan) -> list[str]:
    return [predicate.field for predicate in plan.predicates]


@pytest.mark.parametrize(
    "scope",
    [
        Scope(),
        Scope(type=ScopeType.DEPARTMENT, department_id="d-1"),
        Scope(type=ScopeType.TEAM, team_id="t-1"),
        Scope(type=ScopeType.USER, user_id="u-1"),
        Scope(type=ScopeType.CUSTOM, custom_filters={"tenant_id": "tenant-b", "project": "apollo"}),
    ],
    ids=["tenant", "department", "team", "user", "custom"],
)
def test_tenant_predicate_survives_hostile_filters_for_every_scope(scope: Scope) -> None:
    source = SectionSource(entity=EntityKind.TASK, base_filters=dict(HOSTILE_FILTERS))

    plan = build_query_plan(source, tenant_id="tenant-a", period=PERIOD, scope=scope)

    assert plan.predicates[0] == Predicate(field=TENANT_FIELD, op=PredicateOp.EQ, value="tenant-a")
    assert _fields(plan).count(TENANT_FIELD) == 1
    assert _fields(plan).count(PERIOD_FIELD) == 2
    assert "$where" not in _fields(plan)
    assert "meta" not in _fields(plan)
    assert "bad key" not in _fields(plan)
    assert plan.to_pipeline()[0]["$match"][TENANT_FIELD] == "tenant-a"


def test_scope_adds_identity_predicate_and_user_filter_cannot_override_it() -> None:
    source = SectionSource(entity=EntityKind.TASK, base_filters={"user_id": "u-other"})

    plan = build_query_plan(
        source,
        tenant_id="tenant-a",
        period=PERIOD,
        scope=Scope(type=ScopeType.USER, user_id="u-1"),
    )

    user_predicates = [item for item in plan.predicates if item.field == "user_id"]
    assert user_predicates == [Predicate(field="user_id", op=PredicateOp.EQ, value="u-1")]


def test_list_filters_become_inclusion_predicates() -> None:
    source = SectionSource(entity=EntityKind.TASK, base_filters={"priority": ["high", "urgent"]})

    plan = build_query_plan(source, tenant_id="tenant-a", period=PERIOD, scope=Scope())

    assert plan.predicates[-1] == Predicate(
        field="priority",
        op=PredicateOp.IN,
        value=("high", "urgent"),
    )
    assert plan.to_pipeline()[0]["$match"]["priority"] == {"$in": ["high", "urgent"]}


def test_sanitize_filters_keeps_only_plain_scalar_filters() -> None:
    assert sanitize_filters(HOSTILE_FILTERS) == {
        "status": "done",
        "priority": ("high", "urgent"),
    }


def test_scope_without_identifier_is_rejected() -> None:
    source = SectionSource(entity=EntityKind.TASK)

    with pytest.raises(ConfigurationError, match="requires department_id"):
        build_query_plan(
            source,
            tenant_id="tenant-a",
            period=PERIOD,
            scope=Scope(type=ScopeType.DEPARTMENT),
        )


def test_missing_tenant_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="tenant_id is required"):
        build_query_plan(
            SectionSource(entity=EntityKind.TASK),
            tenant_id="  ",
            period=PERIOD,
            scope=Scope(),
        )


def test_query_plan_refuses_to_exist_without_leading_tenant_predicate() -> None:
    with pytest.raises(ValueError, match="tenant predicate"):
        QueryPlan(
            entity=EntityKind.TASK,
            tenant_id="tenant-a",
            predicates=(Predicate(field="status", op=PredicateOp.EQ, value="done"),),
        )
    with pytest.raises(ValueError, match="exactly one tenant predicate"):
        QueryPlan(
            entity=EntityKind.TASK,
            tenant_id="tenant-a",
            predicates=(
                Predicate(field=TENANT_FIELD, op=PredicateOp.EQ, value="tenant-a"),
                Predicate(field=TENANT_FIELD, op=PredicateOp.EQ, value="tenant-b"),
            ),
        )


def test_limit_is_capped_and_must_be_positive() -> None:
    capped = build_query_plan(
        SectionSource(entity=EntityKind.TASK, limit=MAX_ROW_LIMIT * 5),
        tenant_id="tenant-a",
        period=PERIOD,
        scope=Scope(),
    )
    assert capped.limit == MAX_ROW_LIMIT

    with pytest.raises(ConfigurationError, match="positive integer"):
        build_query_plan(
            SectionSource(entity=EntityKind.TASK, limit=0),
            tenant_id="tenant-a",
            period=PERIOD,
            scope=Scope(),
        )


def test_in_memory_data_access_never_returns_other_tenant_rows() -> None:
    inside = datetime(2026, 10, 1, 12, tzinfo=UTC)
    outside = datetime(2026, 9, 1, 12, tzinfo=UTC)
    data_access = InMemoryDataAccess(
        {
            EntityKind.TASK_TIME_LOG: [
                {"tenant_id": "tenant-a", "created_at": inside, "user_id": "u1", "minutes": 30},
                {"tenant_id": "tenant-a", "created_at": inside, "user_id": "u1", "minutes": 45},
                {"tenant_id": "tenant-a", "created_at": inside, "user_id": "u2", "minutes": 20},
                {"tenant_id": "tenant-a", "created_at": outside, "user_id": "u2", "minutes": 500},
                {"tenant_id": "tenant-b", "created_at": inside, "user_id": "u2", "minutes": 900},
            ],
        },
    )
    source = SectionSource(
        entity=EntityKind.TASK_TIME_LOG,
        base_filters={"tenant_id": "tenant-b"},
        group_by=GroupBy(
            field="user_id",
            metrics=(
                Metric(name="minutes", op=AggregateOp.SUM, field="minutes"),
                Metric(name="entries", op=AggregateOp.COUNT),
            ),
        ),
        sort=(SortKey(field="minutes", descending=True),),
    )

    plan = build_query_plan(source, tenant_id="tenant-a", period=PERIOD, scope=Scope())
    rows = data_access.run_query_plan(plan)

    assert rows == [
        {"_id": "u1", "minutes": 75, "entries": 2},
        {"_id": "u2", "minutes": 20, "entries": 1},
    ]
