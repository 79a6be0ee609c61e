"""Single-writer aggregation state for one (source, metric) shard."""

from __future__ import annotations

import math
import threading
from typing import Callable, List, Optional, Sequence

from telemetry_engine.domain.models import AggregatedMetric, MetricSample

PERCENTILES = (("p50", 0.5), ("p95", 0.95), ("p99", 0.99))

AggregateSink = Callable[[AggregatedMetric], None]


def nearest_rank(sorted_values: Sequence[float], quantile: float) -> float:
    """Return the observed value at rank ``ceil(n * quantile)`` (1-indexed)."""

    if not sorted_values:
        raise ValueError("cannot take a percentile of an empty sequence")
    # rounding guards against 0.95 * 20 landing a hair above 19
    index = math.ceil(round(len(sorted_values) * quantile, 9)) - 1
    index = min(max(index, 0), len(sorted_values) - 1)
    return sorted_values[index]


def _total(values: Sequence[float]) -> float:
    try:
        return math.fsum(values)
    except (OverflowError, ValueError):
        # fsum refuses overflowing partials and inf - inf; plain sum yields inf or nan
        return sum(values)


def compute_aggregate(
    source_id: str,
    metric_name: str,
    samples: Sequence[MetricSample],
    *,
    window_start: Optional[int] = None,
) -> AggregatedMetric:
    """Fold a non-empty batch of samples into one summary row."""

    if not samples:
        raise ValueError("cannot aggregate an empty batch")
    values = sorted(sample.value for sample in samples)
    timestamps = [sample.timestamp_ms for sample in samples]
    start = min(timestamps) if window_start is None else window_start
    end = max(max(timestamps), start)
    percentiles = {name: nearest_rank(values, q) for name, q in PERCENTILES}
    return AggregatedMetric(
        source_id=source_id,
        metric_name=metric_name,
        window_start=start,
        window_end=end,
        count=len(values),
        sum=_total(values),
        min=values[0],
        max=values[-1],
        **percentiles,
    )


class AggregationActor:
    """Buffers samples of one shard and turns them into aggregates.

    All ``add``/``flush`` calls of a shard run under the shard's own lock, so
    two flushes never interleave and a sample is folded into exactly one
    aggregate. The sink is invoked outside the lock.
    """

    def __init__(
        self,
        source_id: str,
        metric_name: str,
        *,
        high_water_mark: int = 100,
        sink: Optional[AggregateSink] = None,
    ) -> None:
        if high_water_mark < 1:
            raise ValueError("high_water_mark must be at least 1")
        self.source_id = source_id
        self.metric_name = metric_name
        self.high_water_mark = high_water_mark
        self._sink = sink
        self._buffer: List[MetricSample] = []
        self._last_window_end: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_id, self.metric_name)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def add(self, sample: MetricSample) -> Optional[AggregatedMetric]:
        """Append a sample; returns the aggregate when the high-water mark fired."""

        if (sample.source_id, sample.metric_name) != self.key:
            raise ValueError(
                f"sample for {(sample.source_id, sample.metric_name)} sent to shard {self.key}"
            )
        with self._lock:
            self._buffer.append(sample)
            if len(self._buffer) < self.high_water_mark:
                return None
            aggregate = self._flush_locked()
        if aggregate is not None and self._sink is not None:
            self._sink(aggregate)
        return aggregate

    def flush(self) -> Optional[AggregatedMetric]:
        """Summarize and clear the buffer; None when there is nothing to flush."""

        with self._lock:
            return self._flush_locked()

    def _flush_locked(self) -> Optional[AggregatedMetric]:
        if not self._buffer:
            return None
        earliest = min(sample.timestamp_ms for sample in self._buffer)
        if self._last_window_end is not None and earliest <= self._last_window_end:
            earliest = self._last_window_end + 1
        # the buffer is only cleared once the aggregate exists
        aggregate = compute_aggregate(
            self.source_id, self.metric_name, self._buffer, window_start=earliest
        )
        self._buffer = []
        self._last_window_end = aggregate.window_end
        return aggregate
