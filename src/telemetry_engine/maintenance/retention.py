"""Deletes expired aggregates, resolved alerts and cost rows."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from telemetry_engine.domain.models import utcnow
from telemetry_engine.storage.sqlite_repository import SQLiteRepository


@dataclass(frozen=True)
class RetentionPolicy:
    """How many days each kind of row is kept."""

    hourly_aggregates_days: int = 30
    alerts_days: int = 90
    cost_days: int = 365

    def __post_init__(self) -> None:
        for name in ("hourly_aggregates_days", "alerts_days", "cost_days"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be greater than zero")


@dataclass(frozen=True)
class CleanupResult:
    aggregates: int
    alerts: int
    costs: int


class RetentionCleaner:
    """Applies a :class:`RetentionPolicy`; open alert rows are never deleted."""

    def __init__(
        self,
        repository: SQLiteRepository,
        policy: Optional[RetentionPolicy] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._repository = repository
        self._policy = policy or RetentionPolicy()
        self._logger = logger or logging.getLogger(__name__)

    def run(self, now: Optional[datetime] = None) -> CleanupResult:
        now = now or utcnow()
        aggregate_cutoff = now - timedelta(days=self._policy.hourly_aggregates_days)
        alert_cutoff = now - timedelta(days=self._policy.alerts_days)
        cost_cutoff = (now - timedelta(days=self._policy.cost_days)).date()

        result = CleanupResult(
            aggregates=self._repository.delete_aggregates_before(
                int(aggregate_cutoff.timestamp() * 1000)
            ),
            alerts=self._repository.delete_resolved_alerts_before(alert_cutoff),
            costs=self._repository.delete_costs_before(cost_cutoff),
        )
        self._logger.info(
            "retention_cleanup_completed",
            extra={
                "aggregates": result.aggregates,
                "alerts": result.alerts,
                "costs": result.costs,
            },
        )
        return result
