from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from telemetry_engine.domain.exceptions import InvariantViolationError, StorageError
from telemetry_engine.domain.models import (
    AggregatedMetric,
    Aggregation,
    AlertRule,
    CostRecord,
)
from telemetry_engine.storage.sqlite_repository import SQLiteRepository

NOW = datetime(2024, 5, 6, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def temp_db(tmp_path: Path) -> Path:
    return tmp_path / "telemetry.db"


@pytest.fixture
def repo(temp_db: Path) -> SQLiteRepository:
    return SQLiteRepository(temp_db)


def _aggregate(start: int, count: int = 10, total: float = 10.0, **overrides):
    values = {
        "source_id": "api",
        "metric_name": "latency",
        "window_start": start,
        "window_end": start + 1_000,
        "count": count,
        "sum": total,
        "min": 1.0,
        "max": 1.0,
        "p50": 1.0,
        "p95": 1.0,
        "p99": 1.0,
    }
    values.update(overrides)
    return AggregatedMetric(**values)


def _rule(**overrides) -> AlertRule:
    values = {"name": "errors", "metric_name": "error_rate", "condition": ">", "threshold": 0.1}
    values.update(overrides)
    return AlertRule(**values)


def test_upsert_aggregates_is_idempotent(repo: SQLiteRepository):
    repo.upsert_aggregates([_aggregate(1_000), _aggregate(5_000)])
    repo.upsert_aggregates([_aggregate(1_000, count=20, total=40.0)])

    rows = repo.find_aggregates(0, 10_000)

    assert len(rows) == 2
    assert rows[0].count == 20
    assert rows[0].sum == 40.0


def test_find_aggregates_filters_by_window_end_and_identity(repo: SQLiteRepository):
    repo.upsert_aggregates(
        [
            _aggregate(1_000),
            _aggregate(5_000, source_id="worker"),
            _aggregate(9_000, metric_name="request"),
        ]
    )

    assert [row.window_start for row in repo.find_aggregates(2_000, 6_001)] == [1_000, 5_000]
    assert [row.source_id for row in repo.find_aggregates(0, 20_000, source_id="worker")] == [
        "worker"
    ]
    assert [
        row.metric_name for row in repo.find_aggregates(0, 20_000, metric_name="request")
    ] == ["request"]


def test_summarize_metrics_groups_per_day(repo: SQLiteRepository):
    base = int(NOW.timestamp() * 1000)
    repo.upsert_aggregates(
        [
            _aggregate(base, count=10, total=20.0, min=1.0, max=5.0),
            _aggregate(base + 60_000, count=30, total=20.0, min=0.5, max=3.0),
        ]
    )

    def value(aggregation: Aggregation) -> float:
        rows = repo.summarize_metrics(base - 1, base + 120_000, aggregation)
        assert len(rows) == 1
        return rows[0]["value"]

    assert value(Aggregation.SUM) == 40.0
    assert value(Aggregation.AVG) == pytest.approx(1.0)
    assert value(Aggregation.MIN) == 0.5
    assert value(Aggregation.MAX) == 5.0
    assert value(Aggregation.COUNT) == 40
    row = repo.summarize_metrics(base - 1, base + 120_000, Aggregation.SUM)[0]
    assert row["day"] == "2024-05-06"


def test_rule_crud_round_trip(repo: SQLiteRepository):
    created = repo.create_rule(_rule(notification_channels=["slack"]))
    assert created.id is not None

    repo.update_rule(created.model_copy(update={"threshold": 0.5, "enabled": False}))
    stored = repo.get_rule(created.id)

    assert stored is not None
    assert stored.threshold == 0.5
    assert stored.notification_channels == ("slack",)
    assert repo.list_rules(enabled_only=True) == []
    assert repo.delete_rule(created.id)
    assert repo.get_rule(created.id) is None


def test_only_one_open_alert_per_rule(repo: SQLiteRepository):
    rule = repo.create_rule(_rule())
    opened = repo.open_alert(rule.id, 0.2, NOW)

    with pytest.raises(InvariantViolationError):
        repo.open_alert(rule.id, 0.3, NOW)

    repo.resolve_alert(opened.id, NOW + timedelta(minutes=5))
    reopened = repo.open_alert(rule.id, 0.4, NOW + timedelta(minutes=10))

    assert reopened.id != opened.id
    assert repo.find_open_alert(rule.id).id == reopened.id
    history = repo.list_history(rule_id=rule.id)
    assert [row.is_open for row in history] == [False, True]
    assert history[0].resolved_at == NOW + timedelta(minutes=5)


def test_mark_notification_sent(repo: SQLiteRepository):
    rule = repo.create_rule(_rule())
    opened = repo.open_alert(rule.id, 0.2, NOW)

    repo.mark_notification_sent(opened.id)

    assert repo.get_history(opened.id).notification_sent


def test_delete_resolved_alerts_keeps_open_rows(repo: SQLiteRepository):
    first = repo.create_rule(_rule(name="a"))
    second = repo.create_rule(_rule(name="b"))
    old = NOW - timedelta(days=100)
    resolved = repo.open_alert(first.id, 1.0, old)
    repo.resolve_alert(resolved.id, old + timedelta(hours=1))
    repo.open_alert(second.id, 1.0, old)

    deleted = repo.delete_resolved_alerts_before(NOW - timedelta(days=90))

    assert deleted == 1
    assert [row.rule_id for row in repo.list_history()] == [second.id]


def test_cost_upsert_replaces_rows(repo: SQLiteRepository):
    record = CostRecord(
        date=date(2024, 5, 6),
        worker="api",
        resource_type="requests",
        usage_units=1_000,
        cost_usd=0.15,
    )
    repo.upsert_costs([record])
    repo.upsert_costs([record])

    rows = repo.find_costs(date(2024, 5, 1))

    assert rows == [record]
    assert repo.find_costs(date(2024, 5, 7)) == []
    assert repo.find_costs(date(2024, 5, 1), worker="other") == []


def test_delete_costs_before(repo: SQLiteRepository):
    for day in (date(2023, 1, 1), date(2024, 5, 6)):
        repo.upsert_costs(
            [
                CostRecord(
                    date=day, worker="api", resource_type="requests", usage_units=1, cost_usd=1
                )
            ]
        )

    assert repo.delete_costs_before(date(2024, 1, 1)) == 1
    assert len(repo.find_costs(date(2000, 1, 1))) == 1


def test_sqlite_errors_are_wrapped(tmp_path: Path):
    repo = SQLiteRepository(tmp_path / "telemetry.db")
    (tmp_path / "telemetry.db").unlink()
    (tmp_path / "telemetry.db").mkdir()

    with pytest.raises(StorageError):
        repo.ping()
