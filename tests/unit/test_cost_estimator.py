from datetime import date, datetime, timezone
from pathlib import Path
from typing import List

import pytest

from telemetry_engine.costs.estimator import (
    CURRENT_COSTS_KEY,
    CostEstimator,
    StorageEstimate,
    UsageCollector,
)
from telemetry_engine.costs.pricing import DEFAULT_UNIT_PRICES, PriceTable, calculate_cost
from telemetry_engine.domain.models import AggregatedMetric, AlertKind, Severity
from telemetry_engine.storage.cache import MetricsCache
from telemetry_engine.storage.sqlite_repository import SQLiteRepository

NOW = datetime(2024, 5, 6, 12, 30, tzinfo=timezone.utc)


def _ms(hour: int, minute: int) -> int:
    return int(datetime(2024, 5, 6, hour, minute, tzinfo=timezone.utc).timestamp() * 1000)


def _aggregate(metric: str, count: int, total: float, end: int, source: str = "api"):
    return AggregatedMetric(
        source_id=source,
        metric_name=metric,
        window_start=end - 1_000,
        window_end=end,
        count=count,
        sum=total,
        min=0,
        max=total,
        p50=0,
        p95=0,
        p99=0,
    )


class _Publisher:
    def __init__(self) -> None:
        self.messages: List = []

    def send(self, message) -> None:
        self.messages.append(message)


@pytest.fixture
def repo(tmp_path: Path) -> SQLiteRepository:
    repository = SQLiteRepository(tmp_path / "telemetry.db")
    repository.upsert_aggregates(
        [
            _aggregate("request", 1_000, 1_000, _ms(11, 30)),
            _aggregate("cpu_time", 1_000, 5_000, _ms(11, 30)),
            _aggregate("error", 10, 10, _ms(11, 30)),
            _aggregate("request", 500, 500, _ms(12, 10)),
        ]
    )
    return repository


PRICES = PriceTable({"requests": 0.01, "cpu_time": 0.001})


def _estimator(repo, publisher=None, cache=None, threshold=100.0):
    return CostEstimator(
        repo,
        UsageCollector(repo),
        PRICES,
        publisher=publisher,
        cache=cache,
        alert_threshold_usd=threshold,
    )


def test_price_table_defaults_unknown_resources_to_zero():
    table = PriceTable()

    assert table.price("requests") == DEFAULT_UNIT_PRICES["requests"]
    assert table.price("gpu_hours") == 0.0
    assert table.cost("gpu_hours", 1_000) == 0.0
    assert calculate_cost(2_000_000, 0.15 / 1_000_000) == pytest.approx(0.3)


def test_price_table_rejects_negative_prices():
    with pytest.raises(ValueError):
        PriceTable({"requests": -1})


def test_usage_collector_derives_resources(repo):
    collector = UsageCollector(
        repo, estimates={"api": StorageEstimate(reads_per_request=2.0, writes_per_request=0.5)}
    )

    usage = collector.collect(_ms(11, 0), _ms(12, 0))["api"]

    assert usage["requests"] == 1_000
    assert usage["cpu_time"] == 5_000
    assert usage["ingestion_writes"] == 2_010
    assert usage["storage_reads"] == 2_000
    assert usage["storage_writes"] == 500


def test_hourly_cost_and_projection(repo):
    result = _estimator(repo).run(NOW)

    assert result.hourly_cost == pytest.approx(15.0)
    assert result.projected_daily_cost == pytest.approx(360.0)


def test_cost_rows_carry_day_to_date_usage(repo):
    _estimator(repo).run(NOW)

    rows = {row.resource_type: row for row in repo.find_costs(date(2024, 5, 6))}

    assert rows["requests"].usage_units == 1_500
    assert rows["requests"].cost_usd == pytest.approx(15.0)
    assert rows["storage_reads"].cost_usd == 0.0


def test_rerunning_does_not_double_count(repo):
    estimator = _estimator(repo)
    estimator.run(NOW)
    first = repo.find_costs(date(2024, 5, 6))
    estimator.run(NOW)
    second = repo.find_costs(date(2024, 5, 6))

    assert second == first
    assert len([row for row in second if row.resource_type == "requests"]) == 1


@pytest.mark.parametrize(
    "threshold, severity",
    [(300.0, Severity.WARNING), (180.0, Severity.CRITICAL), (400.0, None)],
)
def test_cost_alert_severity_scales_with_overspend(repo, threshold, severity):
    publisher = _Publisher()

    result = _estimator(repo, publisher, threshold=threshold).run(NOW)

    if severity is None:
        assert result.alert is None
        assert publisher.messages == []
    else:
        assert result.alert.severity is severity
        assert publisher.messages[0].kind is AlertKind.COST
        assert publisher.messages[0].value == pytest.approx(360.0)


def test_run_caches_current_costs(repo):
    cache = MetricsCache()

    _estimator(repo, cache=cache).run(NOW)

    snapshot = cache.get(CURRENT_COSTS_KEY)
    assert snapshot["projected_daily_cost"] == pytest.approx(360.0)
    assert snapshot["by_worker"]["api"]["requests"] == pytest.approx(10.0)


def test_first_run_after_midnight_also_closes_previous_day(tmp_path: Path):
    repository = SQLiteRepository(tmp_path / "telemetry.db")
    late = int(datetime(2024, 5, 5, 23, 50, tzinfo=timezone.utc).timestamp() * 1000)
    repository.upsert_aggregates([_aggregate("request", 100, 100, late)])

    _estimator(repository).run(datetime(2024, 5, 6, 0, 5, tzinfo=timezone.utc))

    rows = repository.find_costs(date(2024, 5, 5), end=date(2024, 5, 6))
    requests = [row for row in rows if row.resource_type == "requests"]
    assert requests[0].usage_units == 100
