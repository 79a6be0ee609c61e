"""Weekly summary report written to the report bucket."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence

from telemetry_engine.domain.interfaces import IAlertPublisher
from telemetry_engine.domain.models import AlertKind, AlertMessage, Severity, utcnow
from telemetry_engine.storage.bucket import ReportBucket
from telemetry_engine.storage.sqlite_repository import SQLiteRepository

REPORT_PERIOD = timedelta(days=7)


def report_key(moment: datetime) -> str:
    return f"weekly-reports/{moment.year}/{moment.month}/{moment.day}.json"


class WeeklyReporter:
    def __init__(
        self,
        repository: SQLiteRepository,
        bucket: ReportBucket,
        publisher: Optional[IAlertPublisher] = None,
        *,
        channels: Sequence[str] = ("log",),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._bucket = bucket
        self._publisher = publisher
        self._channels = tuple(channels)
        self._logger = logger or logging.getLogger(__name__)

    def build(self, now: datetime) -> Dict[str, Any]:
        start = now - REPORT_PERIOD
        aggregates = self._repository.find_aggregates(
            int(start.timestamp() * 1000), int(now.timestamp() * 1000) + 1
        )
        requests = sum(a.count for a in aggregates if a.metric_name == "request")
        errors = sum(a.count for a in aggregates if a.metric_name == "error")
        latencies = [a.p50 for a in aggregates if a.metric_name == "response_time"]

        cost_by_resource: Dict[str, float] = {}
        for record in self._repository.find_costs(
            start.date(), end=now.date() + timedelta(days=1)
        ):
            cost_by_resource[record.resource_type] = (
                cost_by_resource.get(record.resource_type, 0.0) + record.cost_usd
            )

        return {
            "period_start": start.isoformat(),
            "period_end": now.isoformat(),
            "total_requests": requests,
            "total_errors": errors,
            "error_rate": errors / requests if requests else 0.0,
            "avg_response_time_p50": (
                sum(latencies) / len(latencies) if latencies else 0.0
            ),
            "total_cost_usd": round(sum(cost_by_resource.values()), 6),
            "cost_by_resource": cost_by_resource,
        }

    def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        report = self.build(now)
        key = report_key(now)
        self._bucket.put(key, report)
        self._logger.info("weekly_report_written", extra={"key": key})
        if self._publisher is not None:
            self._publisher.send(
                AlertMessage(
                    kind=AlertKind.REPORT,
                    severity=Severity.INFO,
                    title="Weekly telemetry report",
                    message=(
                        f"{report['total_requests']} requests, "
                        f"error rate {report['error_rate']:.2%}, "
                        f"total cost ${report['total_cost_usd']:.2f} ({key})"
                    ),
                    channels=self._channels,
                )
            )
        return {**report, "key": key}
