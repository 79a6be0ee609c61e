"""Rollup tick: flush shards, persist aggregates, evaluate alert rules."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from telemetry_engine.aggregation.registry import ShardRegistry
from telemetry_engine.alerting.evaluator import AlertEvaluator
from telemetry_engine.domain.exceptions import StorageError
from telemetry_engine.domain.interfaces import IKeyValueCache, IMetricsRepository
from telemetry_engine.domain.models import AggregatedMetric, utcnow
from telemetry_engine.utils.retry import retry

CURRENT_METRICS_KEY = "current_metrics"


@dataclass(frozen=True)
class RollupResult:
    persisted: int
    failed: int
    triggered: int = 0
    resolved: int = 0
    dropped: int = 0


class RollupJob:
    """One rollup tick.

    Aggregates that could not be persisted are kept in hand and retried on
    the next tick; shard buffers are never re-read for them. After
    ``max_pending_ticks`` failed ticks an aggregate is dropped and logged at
    error level, so a row the store can never accept does not grow the backlog.
    """

    def __init__(
        self,
        registry: ShardRegistry,
        repository: IMetricsRepository,
        evaluator: Optional[AlertEvaluator] = None,
        *,
        cache: Optional[IKeyValueCache] = None,
        cache_ttl_seconds: int = 600,
        persist_attempts: int = 3,
        retry_delay: float = 0.1,
        max_pending_ticks: int = 5,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._registry = registry
        self._evaluator = evaluator
        self._cache = cache
        self._cache_ttl_seconds = cache_ttl_seconds
        self._upsert = retry(
            attempts=persist_attempts, delay=retry_delay, exceptions=(StorageError,)
        )(repository.upsert_aggregates)
        if max_pending_ticks < 1:
            raise ValueError("max_pending_ticks must be at least 1")
        self._max_pending_ticks = max_pending_ticks
        self._pending: List[AggregatedMetric] = []
        self._failed_ticks: Dict[Tuple[str, str, int], int] = {}
        self._pending_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def pending(self) -> List[AggregatedMetric]:
        with self._pending_lock:
            return list(self._pending)

    def run(self) -> RollupResult:
        with self._run_lock:
            return self._run()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _run(self) -> RollupResult:
        with self._pending_lock:
            batch = self._pending + self._registry.collect()
            self._pending = []

        persisted, failed = self._persist(batch)
        for aggregate in persisted:
            self._failed_ticks.pop(aggregate.key, None)
        retained, dropped = self._retain(failed)
        if retained:
            with self._pending_lock:
                self._pending.extend(retained)

        triggered = resolved = 0
        if self._evaluator is not None and persisted:
            evaluation = self._evaluator.evaluate(persisted)
            triggered = len(evaluation.triggered)
            resolved = len(evaluation.resolved)

        self._cache_snapshot(persisted)
        result = RollupResult(
            persisted=len(persisted),
            failed=len(failed),
            triggered=triggered,
            resolved=resolved,
            dropped=len(dropped),
        )
        self._logger.info(
            "rollup_tick_completed",
            extra={
                "persisted": result.persisted,
                "failed": result.failed,
                "triggered": triggered,
                "resolved": resolved,
                "dropped": result.dropped,
            },
        )
        return result

    def _persist(
        self, batch: Sequence[AggregatedMetric]
    ) -> Tuple[List[AggregatedMetric], List[AggregatedMetric]]:
        if not batch:
            return [], []
        try:
            self._upsert(batch)
            return list(batch), []
        except StorageError:
            self._logger.warning(
                "rollup_batch_persist_failed", extra={"size": len(batch)}, exc_info=True
            )

        persisted: List[AggregatedMetric] = []
        failed: List[AggregatedMetric] = []
        for aggregate in batch:
            try:
                self._upsert([aggregate])
            except StorageError:
                self._logger.exception(
                    "aggregate_persist_failed",
                    extra={
                        "source_id": aggregate.source_id,
                        "metric_name": aggregate.metric_name,
                        "window_start": aggregate.window_start,
                    },
                )
                failed.append(aggregate)
            else:
                persisted.append(aggregate)
        return persisted, failed

    def _retain(
        self, failed: Sequence[AggregatedMetric]
    ) -> Tuple[List[AggregatedMetric], List[AggregatedMetric]]:
        retained: List[AggregatedMetric] = []
        dropped: List[AggregatedMetric] = []
        for aggregate in failed:
            ticks = self._failed_ticks.get(aggregate.key, 0) + 1
            if ticks < self._max_pending_ticks:
                self._failed_ticks[aggregate.key] = ticks
                retained.append(aggregate)
                continue
            self._failed_ticks.pop(aggregate.key, None)
            dropped.append(aggregate)
            self._logger.error(
                "aggregate_dropped",
                extra={
                    "source_id": aggregate.source_id,
                    "metric_name": aggregate.metric_name,
                    "window_start": aggregate.window_start,
                    "count": aggregate.count,
                    "failed_ticks": ticks,
                },
            )
        return retained, dropped

    def _cache_snapshot(self, persisted: Sequence[AggregatedMetric]) -> None:
        if self._cache is None or not persisted:
            return
        self._cache.put(
            CURRENT_METRICS_KEY,
            {
                "computed_at": utcnow().isoformat(),
                "aggregates": [agg.model_dump() for agg in persisted],
            },
            self._cache_ttl_seconds,
        )
