"""Hourly cost estimation, projection and overspend alerts."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Mapping, Optional, Sequence

from telemetry_engine.domain.exceptions import StorageError
from telemetry_engine.domain.interfaces import (
    IAlertPublisher,
    ICostRepository,
    IKeyValueCache,
    IMetricsRepository,
)
from telemetry_engine.domain.models import (
    AlertKind,
    AlertMessage,
    CostRecord,
    Severity,
    utcnow,
)
from telemetry_engine.utils.retry import retry

from .pricing import PriceTable

REQUEST_METRIC = "request"
CPU_TIME_METRIC = "cpu_time"

CURRENT_COSTS_KEY = "current_costs"
CURRENT_COSTS_TTL_SECONDS = 3600

Usage = Dict[str, Dict[str, float]]


def to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


@dataclass(frozen=True)
class StorageEstimate:
    """Estimated durable reads and writes caused by one request."""

    reads_per_request: float = 1.0
    writes_per_request: float = 0.1

    def __post_init__(self) -> None:
        if self.reads_per_request < 0 or self.writes_per_request < 0:
            raise ValueError("storage estimates must be non-negative")


class UsageCollector:
    """Derives per-worker resource usage from persisted aggregates.

    The worker of an aggregate is its source id.
    """

    def __init__(
        self,
        repository: IMetricsRepository,
        *,
        estimates: Optional[Mapping[str, StorageEstimate]] = None,
        default_estimate: StorageEstimate = StorageEstimate(),
    ) -> None:
        self._repository = repository
        self._estimates = dict(estimates or {})
        self._default_estimate = default_estimate

    def collect(self, start_ms: int, end_ms: int) -> Usage:
        usage: Dict[str, Dict[str, float]] = defaultdict(lambda: defaultdict(float))
        for agg in self._repository.find_aggregates(start_ms, end_ms):
            counters = usage[agg.source_id]
            counters["ingestion_writes"] += agg.count
            if agg.metric_name == REQUEST_METRIC:
                counters["requests"] += agg.count
            elif agg.metric_name == CPU_TIME_METRIC:
                counters["cpu_time"] += agg.sum

        collected: Usage = {}
        for worker, counters in usage.items():
            estimate = self._estimates.get(worker, self._default_estimate)
            requests = counters["requests"]
            counters["storage_reads"] = requests * estimate.reads_per_request
            counters["storage_writes"] = requests * estimate.writes_per_request
            collected[worker] = dict(counters)
        return collected


@dataclass
class CostRunResult:
    hourly_cost: float
    projected_daily_cost: float
    records: List[CostRecord] = field(default_factory=list)
    alert: Optional[AlertMessage] = None


class CostEstimator:
    """Prices the prior hour, projects a daily figure and persists day-to-date rows.

    Cost rows are keyed by (date, worker, resource_type) and always carry the
    whole day's usage so far, so running twice for the same period replaces
    rows rather than adding to them.
    """

    def __init__(
        self,
        repository: ICostRepository,
        collector: UsageCollector,
        price_table: Optional[PriceTable] = None,
        *,
        publisher: Optional[IAlertPublisher] = None,
        cache: Optional[IKeyValueCache] = None,
        alert_threshold_usd: float = 10.0,
        alert_channels: Sequence[str] = ("log",),
        persist_attempts: int = 3,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if alert_threshold_usd <= 0:
            raise ValueError("alert_threshold_usd must be greater than zero")
        self._repository = repository
        self._collector = collector
        self._prices = price_table or PriceTable()
        self._publisher = publisher
        self._cache = cache
        self._threshold = alert_threshold_usd
        self._alert_channels = tuple(alert_channels)
        self._persist = retry(attempts=persist_attempts, exceptions=(StorageError,))(
            repository.upsert_costs
        )
        self._logger = logger or logging.getLogger(__name__)

    def price_usage(self, usage: Usage) -> Dict[str, Dict[str, float]]:
        return {
            worker: {
                resource: self._prices.cost(resource, units)
                for resource, units in counters.items()
            }
            for worker, counters in usage.items()
        }

    def run(self, now: Optional[datetime] = None) -> CostRunResult:
        now = now or utcnow()
        hour_end = now.replace(minute=0, second=0, microsecond=0)
        hour_start = hour_end - timedelta(hours=1)

        hourly = self.price_usage(self._collector.collect(to_ms(hour_start), to_ms(hour_end)))
        hourly_cost = round(sum(sum(costs.values()) for costs in hourly.values()), 9)
        projected = round(hourly_cost * 24, 9)

        records: List[CostRecord] = []
        for day in sorted({hour_start.date(), now.date()}):
            records.extend(self._day_records(day, now))
        self._persist(records)

        result = CostRunResult(
            hourly_cost=hourly_cost, projected_daily_cost=projected, records=records
        )
        if projected > self._threshold:
            result.alert = self._alert(projected)
            if self._publisher is not None:
                self._publisher.send(result.alert)
            self._logger.warning(
                "cost_projection_exceeded",
                extra={"projected_daily_cost": projected, "threshold": self._threshold},
            )
        self._cache_snapshot(now, hourly, hourly_cost, projected)
        self._logger.info(
            "cost_run_completed",
            extra={
                "hourly_cost": hourly_cost,
                "projected_daily_cost": projected,
                "records": len(records),
            },
        )
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _day_records(self, day: date, now: datetime) -> List[CostRecord]:
        day_start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        day_end = min(day_start + timedelta(days=1), now + timedelta(milliseconds=1))
        usage = self._collector.collect(to_ms(day_start), to_ms(day_end))
        return [
            CostRecord(
                date=day,
                worker=worker,
                resource_type=resource,
                usage_units=units,
                cost_usd=self._prices.cost(resource, units),
            )
            for worker, counters in sorted(usage.items())
            for resource, units in sorted(counters.items())
        ]

    def _alert(self, projected: float) -> AlertMessage:
        severity = (
            Severity.CRITICAL if projected >= 2 * self._threshold else Severity.WARNING
        )
        return AlertMessage(
            kind=AlertKind.COST,
            severity=severity,
            title="Projected daily cost over budget",
            message=(
                f"Projected daily cost ${projected:.2f} exceeds "
                f"threshold ${self._threshold:.2f}"
            ),
            value=projected,
            threshold=self._threshold,
            channels=self._alert_channels,
        )

    def _cache_snapshot(
        self,
        now: datetime,
        hourly: Mapping[str, Mapping[str, float]],
        hourly_cost: float,
        projected: float,
    ) -> None:
        if self._cache is None:
            return
        self._cache.put(
            CURRENT_COSTS_KEY,
            {
                "computed_at": now.isoformat(),
                "hourly_cost": hourly_cost,
                "projected_daily_cost": projected,
                "by_worker": {worker: dict(costs) for worker, costs in hourly.items()},
            },
            CURRENT_COSTS_TTL_SECONDS,
        )
