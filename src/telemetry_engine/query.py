"""Read-only queries over persisted aggregates and cost rows."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from telemetry_engine.domain.exceptions import ValidationError
from telemetry_engine.domain.models import Aggregation, utcnow
from telemetry_engine.storage.sqlite_repository import SQLiteRepository


class MetricsQueryService:
    """Dashboard-facing queries; nothing here writes to the store."""

    PERIOD_DAYS = {"day": 1, "week": 7, "month": 30}
    DEFAULT_RANGE = timedelta(hours=24)
    PROJECTION_DAYS = 30

    def __init__(self, repository: SQLiteRepository) -> None:
        self._repository = repository

    def query_metrics(
        self,
        *,
        source_id: Optional[str] = None,
        metric_name: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        aggregation: Aggregation | str = Aggregation.AVG,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        """Rows grouped by day, source and metric with one aggregated ``value``."""

        try:
            function = Aggregation(aggregation)
        except ValueError as exc:
            raise ValidationError(
                "Unsupported aggregation", context={"aggregation": aggregation}
            ) from exc
        end = end or utcnow()
        start = start or end - self.DEFAULT_RANGE
        if start > end:
            raise ValidationError(
                "start must not be after end",
                context={"start": start.isoformat(), "end": end.isoformat()},
            )
        return self._repository.summarize_metrics(
            int(start.timestamp() * 1000),
            int(end.timestamp() * 1000),
            function,
            source_id=source_id,
            metric_name=metric_name,
            limit=limit,
        )

    def query_costs(
        self,
        period: str = "day",
        *,
        breakdown: bool = False,
        worker: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        days = self.PERIOD_DAYS.get(period)
        if days is None:
            raise ValidationError(
                "Unsupported period",
                context={"period": period, "allowed": sorted(self.PERIOD_DAYS)},
            )
        today = (now or utcnow()).date()
        start = today - timedelta(days=days - 1)
        records = self._repository.find_costs(
            start, end=today + timedelta(days=1), worker=worker
        )
        total = sum(record.cost_usd for record in records)
        daily_average = total / days

        rows: List[Dict[str, Any]]
        if breakdown:
            grouped: Dict[tuple[str, str], List[float]] = defaultdict(lambda: [0.0, 0.0])
            for record in records:
                bucket = grouped[(record.worker, record.resource_type)]
                bucket[0] += record.usage_units
                bucket[1] += record.cost_usd
            rows = [
                {
                    "worker": worker_name,
                    "resource_type": resource,
                    "usage_units": usage,
                    "cost_usd": round(cost, 9),
                }
                for (worker_name, resource), (usage, cost) in grouped.items()
            ]
            rows.sort(key=lambda row: row["cost_usd"], reverse=True)
        else:
            per_day: Dict[str, float] = defaultdict(float)
            for record in records:
                per_day[record.date.isoformat()] += record.cost_usd
            rows = [
                {"date": day, "cost_usd": round(cost, 9)}
                for day, cost in sorted(per_day.items(), reverse=True)
            ]

        return {
            "period": period,
            "start": start.isoformat(),
            "end": today.isoformat(),
            "total_cost_usd": round(total, 9),
            "daily_average_usd": round(daily_average, 9),
            "projected_30d_usd": round(daily_average * self.PROJECTION_DAYS, 9),
            "rows": rows,
        }

    @staticmethod
    def to_dataframe(rows: Sequence[Dict[str, Any]]) -> Any:
        """Export query rows to a pandas DataFrame."""

        try:
            import pandas as pd  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("pandas is required for dataframe export") from exc
        return pd.DataFrame(list(rows))
