"""Dependency injection container for building fully-wired engine instances."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

import httpx

from telemetry_engine.aggregation.ingestion import (
    AdaptiveSamplingPolicy,
    FullSamplingPolicy,
    IngestionService,
)
from telemetry_engine.aggregation.registry import ShardRegistry
from telemetry_engine.alerting.evaluator import AlertEvaluator
from telemetry_engine.alerting.rules import AlertRuleService
from telemetry_engine.core.config import EngineConfig
from telemetry_engine.core.engine import EngineComponents, TelemetryEngine
from telemetry_engine.core.rollup import RollupJob
from telemetry_engine.core.scheduler import PeriodicTaskRunner
from telemetry_engine.costs.estimator import CostEstimator, UsageCollector
from telemetry_engine.costs.pricing import PriceTable
from telemetry_engine.domain.interfaces import INotificationChannel, ISamplingPolicy
from telemetry_engine.health import HealthChecker
from telemetry_engine.maintenance.reports import WeeklyReporter
from telemetry_engine.maintenance.retention import RetentionCleaner
from telemetry_engine.notifications.channels.base import ChannelConfig
from telemetry_engine.notifications.channels.factory import ChannelFactory
from telemetry_engine.notifications.dispatcher import NotificationDispatcher
from telemetry_engine.notifications.queue import NotificationQueue
from telemetry_engine.query import MetricsQueryService
from telemetry_engine.ratelimit.limiter import RateLimiter
from telemetry_engine.storage.bucket import ReportBucket
from telemetry_engine.storage.cache import MetricsCache
from telemetry_engine.storage.sqlite_repository import SQLiteRepository


class DIContainer:
    """Factory helpers that assemble a TelemetryEngine with default wiring."""

    @staticmethod
    def create_engine(
        config: Optional[EngineConfig] = None,
        *,
        db_path: str | Path = "telemetry.db",
        reports_dir: str | Path = "reports",
        channels: Optional[Mapping[str, INotificationChannel]] = None,
        http_client: Optional[httpx.Client] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> TelemetryEngine:
        cfg = config or EngineConfig.from_env()

        repository = SQLiteRepository(db_path)
        cache = MetricsCache()
        bucket = ReportBucket(reports_dir)
        queue = NotificationQueue(max_deliveries=cfg.max_deliveries)

        owned_client: Optional[httpx.Client] = None
        if channels is None:
            if http_client is None:
                owned_client = http_client = httpx.Client()
            channel_map = DIContainer._build_channels(cfg, http_client)
        else:
            channel_map = {"log": ChannelFactory.log_channel(), **channels}

        registry = ShardRegistry(high_water_mark=cfg.high_water_mark)
        rate_limiter = RateLimiter(cfg.rate_limit)
        ingestion = IngestionService(
            registry,
            policy=DIContainer._select_sampling_policy(cfg),
            rate_limiter=rate_limiter,
        )
        evaluator = AlertEvaluator(repository, queue, clock=clock)
        rollup = RollupJob(
            registry,
            repository,
            evaluator,
            cache=cache,
            cache_ttl_seconds=cfg.rollup_interval_seconds * 2,
            persist_attempts=cfg.persist_attempts,
        )
        dispatcher = NotificationDispatcher(
            queue,
            channel_map,
            repository,
            default_channels=cfg.default_channels,
        )
        costs = CostEstimator(
            repository,
            UsageCollector(repository),
            PriceTable(cfg.price_table),
            publisher=queue,
            cache=cache,
            alert_threshold_usd=cfg.cost_alert_threshold_usd,
            alert_channels=cfg.default_channels,
            persist_attempts=cfg.persist_attempts,
        )

        components = EngineComponents(
            ingestion=ingestion,
            rollup=rollup,
            rules=AlertRuleService(repository, evaluator),
            queue=queue,
            dispatcher=dispatcher,
            costs=costs,
            cleaner=RetentionCleaner(repository, cfg.retention),
            reporter=WeeklyReporter(
                repository, bucket, queue, channels=cfg.default_channels
            ),
            query=MetricsQueryService(repository),
            health=HealthChecker(repository, cache, queue, bucket),
            scheduler=PeriodicTaskRunner(clock=clock),
            rate_limiter=rate_limiter,
        )
        return TelemetryEngine(cfg, components, http_client=owned_client)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _build_channels(
        config: EngineConfig, http_client: httpx.Client
    ) -> Dict[str, INotificationChannel]:
        def factory(channel_config: ChannelConfig) -> httpx.Client:
            return http_client

        return ChannelFactory(factory).create_all(config.channels)

    @staticmethod
    def _select_sampling_policy(config: EngineConfig) -> ISamplingPolicy:
        if config.adaptive_sampling:
            return AdaptiveSamplingPolicy()
        return FullSamplingPolicy()
