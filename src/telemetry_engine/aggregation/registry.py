"""Registry that owns every aggregation shard and their auto-flush outbox."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional, Tuple

from telemetry_engine.domain.models import AggregatedMetric, MetricSample

from .actor import AggregationActor


class ShardRegistry:
    """Creates shards lazily and gathers their finished aggregates."""

    def __init__(
        self,
        *,
        high_water_mark: int = 100,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._high_water_mark = high_water_mark
        self._shards: Dict[Tuple[str, str], AggregationActor] = {}
        self._shards_lock = threading.Lock()
        self._outbox: Deque[AggregatedMetric] = deque()
        self._logger = logger or logging.getLogger(__name__)

    def shard(self, source_id: str, metric_name: str) -> AggregationActor:
        key = (source_id, metric_name)
        with self._shards_lock:
            actor = self._shards.get(key)
            if actor is None:
                actor = AggregationActor(
                    source_id,
                    metric_name,
                    high_water_mark=self._high_water_mark,
                    sink=self._outbox.append,
                )
                self._shards[key] = actor
            return actor

    def add(self, sample: MetricSample) -> None:
        self.shard(sample.source_id, sample.metric_name).add(sample)

    def shards(self) -> List[AggregationActor]:
        with self._shards_lock:
            return list(self._shards.values())

    def dirty_shards(self) -> List[AggregationActor]:
        return [actor for actor in self.shards() if actor.pending > 0]

    def drain_outbox(self) -> List[AggregatedMetric]:
        drained: List[AggregatedMetric] = []
        while True:
            try:
                drained.append(self._outbox.popleft())
            except IndexError:
                return drained

    def collect(self) -> List[AggregatedMetric]:
        """Return auto-flushed aggregates plus a fresh flush of every dirty shard."""

        collected = self.drain_outbox()
        for actor in self.dirty_shards():
            try:
                aggregate = actor.flush()
            except Exception:
                self._logger.exception(
                    "shard_flush_failed",
                    extra={"source_id": actor.source_id, "metric_name": actor.metric_name},
                )
                continue
            if aggregate is not None:
                collected.append(aggregate)
        return collected
