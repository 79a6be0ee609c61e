"""Facade tying ingestion, rollup, alerting, notifications and costs together."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx

from telemetry_engine.aggregation.ingestion import IngestionService
from telemetry_engine.alerting.rules import AlertRuleService
from telemetry_engine.core.config import EngineConfig
from telemetry_engine.core.rollup import RollupJob, RollupResult
from telemetry_engine.core.scheduler import PeriodicTaskRunner
from telemetry_engine.costs.estimator import CostEstimator, CostRunResult
from telemetry_engine.domain.models import HealthReport, MetricSample
from telemetry_engine.health import HealthChecker
from telemetry_engine.maintenance.reports import WeeklyReporter
from telemetry_engine.maintenance.retention import CleanupResult, RetentionCleaner
from telemetry_engine.notifications.dispatcher import NotificationDispatcher
from telemetry_engine.notifications.queue import NotificationQueue
from telemetry_engine.query import MetricsQueryService
from telemetry_engine.ratelimit.limiter import RateLimiter

ROLLUP_TASK = "rollup"
COST_TASK = "costs"
CLEANUP_TASK = "cleanup"
REPORT_TASK = "report"
RATE_LIMIT_PURGE_TASK = "rate_limit_purge"


@dataclass(frozen=True)
class EngineComponents:
    ingestion: IngestionService
    rollup: RollupJob
    rules: AlertRuleService
    queue: NotificationQueue
    dispatcher: NotificationDispatcher
    costs: CostEstimator
    cleaner: RetentionCleaner
    reporter: WeeklyReporter
    query: MetricsQueryService
    health: HealthChecker
    scheduler: PeriodicTaskRunner
    rate_limiter: RateLimiter


class TelemetryEngine:
    """Single entry point for instrumented services, operators and dashboards."""

    def __init__(
        self,
        config: EngineConfig,
        components: EngineComponents,
        *,
        http_client: Optional[httpx.Client] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.components = components
        self._http_client = http_client
        self._logger = logger or logging.getLogger(__name__)
        self._register_tasks()

    # ----- Ingestion -----
    def submit_sample(
        self,
        source_id: str,
        metric_name: str,
        value: float,
        timestamp_ms: Optional[int] = None,
        *,
        is_error: bool = False,
    ) -> bool:
        return self.components.ingestion.submit_sample(
            source_id, metric_name, value, timestamp_ms, is_error=is_error
        )

    def submit_batch(self, client_key: str, samples: Iterable[MetricSample]) -> int:
        return self.components.ingestion.submit_batch(client_key, samples)

    # ----- Operator and dashboard surfaces -----
    @property
    def rules(self) -> AlertRuleService:
        return self.components.rules

    @property
    def query(self) -> MetricsQueryService:
        return self.components.query

    def health(self) -> HealthReport:
        return self.components.health.check()

    def dead_letters(self) -> List[Dict[str, Any]]:
        return [message.model_dump() for message in self.components.queue.dead_letters()]

    # ----- Ticks, runnable on demand -----
    def run_rollup(self) -> RollupResult:
        return self.components.rollup.run()

    def run_costs(self, now: Optional[datetime] = None) -> CostRunResult:
        return self.components.costs.run(now)

    def run_cleanup(self, now: Optional[datetime] = None) -> CleanupResult:
        return self.components.cleaner.run(now)

    def run_report(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return self.components.reporter.run(now)

    def dispatch_pending(self) -> int:
        return self.components.dispatcher.drain()

    # ----- Lifecycle -----
    def start(self) -> None:
        self.components.scheduler.start()
        self.components.dispatcher.start(self.config.notification_workers)
        self._logger.info("engine_started")

    def stop(self) -> None:
        self.components.scheduler.stop()
        self.components.dispatcher.stop()
        if self._http_client is not None:
            self._http_client.close()
        self._logger.info("engine_stopped")

    def __enter__(self) -> "TelemetryEngine":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _register_tasks(self) -> None:
        scheduler = self.components.scheduler
        if scheduler.tasks():
            return
        scheduler.register(
            ROLLUP_TASK, self.config.rollup_interval_seconds, self.run_rollup
        )
        scheduler.register(COST_TASK, self.config.cost_interval_seconds, self.run_costs)
        scheduler.register(
            CLEANUP_TASK, self.config.cleanup_interval_seconds, self.run_cleanup
        )
        scheduler.register(
            REPORT_TASK, self.config.report_interval_seconds, self.run_report
        )
        scheduler.register(
            RATE_LIMIT_PURGE_TASK,
            self.config.rollup_interval_seconds,
            self.components.rate_limiter.purge_expired,
        )
