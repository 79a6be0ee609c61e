"""Sample ingestion with pluggable sampling and optional rate limiting."""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Tuple, Union

from telemetry_engine.domain.interfaces import ISamplingPolicy
from telemetry_engine.domain.models import MetricSample
from telemetry_engine.ratelimit.limiter import RateLimiter

from .registry import ShardRegistry

DEFAULT_SAMPLING_TIERS: Tuple[Tuple[int, float], ...] = (
    (100, 1.0),
    (1_000, 0.5),
    (10_000, 0.1),
)


class FullSamplingPolicy(ISamplingPolicy):
    """Keeps every sample."""

    def sample_rate(self, events_per_minute: int, is_error: bool) -> float:
        return 1.0


class AdaptiveSamplingPolicy(ISamplingPolicy):
    """Lowers the keep rate as traffic grows; errors are always kept."""

    def __init__(
        self,
        tiers: Sequence[Tuple[int, float]] = DEFAULT_SAMPLING_TIERS,
        floor_rate: float = 0.01,
    ) -> None:
        ordered = sorted(tiers)
        for _, rate in ordered:
            if not 0 < rate <= 1:
                raise ValueError("sampling rates must be in (0, 1]")
        if not 0 < floor_rate <= 1:
            raise ValueError("floor_rate must be in (0, 1]")
        self._tiers = tuple(ordered)
        self._floor_rate = floor_rate

    def sample_rate(self, events_per_minute: int, is_error: bool) -> float:
        if is_error:
            return 1.0
        for limit, rate in self._tiers:
            if events_per_minute < limit:
                return rate
        return self._floor_rate


class IngestionService:
    """Entry point used by instrumented services to submit samples.

    Submission is best-effort: invalid or sampled-out samples are dropped and
    reported through the boolean return value, never through exceptions.
    """

    def __init__(
        self,
        registry: ShardRegistry,
        *,
        policy: Optional[ISamplingPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        rng: Optional[Callable[[], float]] = None,
        clock: Optional[Callable[[], float]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._registry = registry
        self._policy = policy or FullSamplingPolicy()
        self._rate_limiter = rate_limiter
        self._rng = rng or random.random
        self._clock = clock or time.time
        self._logger = logger or logging.getLogger(__name__)
        self._minute: int = -1
        self._minute_count = 0
        self._counter_lock = threading.Lock()

    def submit_sample(
        self,
        source_id: str,
        metric_name: str,
        value: float,
        timestamp_ms: Optional[int] = None,
        *,
        is_error: bool = False,
    ) -> bool:
        if value is None:
            return False
        now = self._clock()
        try:
            sample = MetricSample(
                source_id=source_id,
                metric_name=metric_name,
                value=value,
                timestamp_ms=int(now * 1000) if timestamp_ms is None else timestamp_ms,
                is_error=is_error,
            )
        except ValueError as exc:
            self._logger.debug(
                "sample_rejected",
                extra={"source_id": source_id, "metric_name": metric_name, "error": str(exc)},
            )
            return False
        return self._accept(sample, now)

    def submit(self, sample: MetricSample) -> bool:
        return self._accept(sample, self._clock())

    def submit_batch(
        self,
        client_key: str,
        samples: Iterable[Union[MetricSample, Mapping[str, Any]]],
    ) -> int:
        """Rate-limited bulk submission; returns how many samples were kept.

        A batch carrying malformed entries counts as a failure against the
        client key; a clean batch forgives one earlier failure.
        """

        if self._rate_limiter is not None:
            self._rate_limiter.enforce(client_key)
        kept = 0
        rejected = 0
        now = self._clock()
        for entry in samples:
            try:
                sample = (
                    entry
                    if isinstance(entry, MetricSample)
                    else MetricSample.model_validate(entry)
                )
            except ValueError:
                rejected += 1
                continue
            if self._accept(sample, now):
                kept += 1
        if self._rate_limiter is not None:
            if rejected:
                self._rate_limiter.record_failure(client_key)
            else:
                self._rate_limiter.record_success(client_key)
        if rejected:
            self._logger.info(
                "batch_samples_rejected",
                extra={"client_key": client_key, "rejected": rejected, "kept": kept},
            )
        return kept

    def _accept(self, sample: MetricSample, now: float) -> bool:
        rate = self._policy.sample_rate(self._tick(now), sample.is_error)
        if rate < 1.0 and self._rng() >= rate:
            return False
        try:
            self._registry.add(sample)
        except Exception:
            self._logger.exception(
                "sample_add_failed",
                extra={"source_id": sample.source_id, "metric_name": sample.metric_name},
            )
            return False
        return True

    def _tick(self, now: float) -> int:
        minute = int(now // 60)
        with self._counter_lock:
            if minute != self._minute:
                self._minute = minute
                self._minute_count = 0
            self._minute_count += 1
            return self._minute_count
