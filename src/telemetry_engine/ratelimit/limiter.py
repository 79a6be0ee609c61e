"""Fixed-window rate limiter with failure-driven backoff and temporary bans."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from telemetry_engine.domain.exceptions import RateLimitExceededError
from telemetry_engine.domain.models import RateLimitDecision, RateLimitRecord


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitConfig:
    """Budget and penalty settings shared by every key of one limiter."""

    window_ms: int = 10 * 60 * 1000
    max_requests: int = 1
    failure_multiplier: float = 2.0
    max_failures: int = 5
    ban_duration_ms: int = 60 * 60 * 1000
    max_wait_ms: Optional[int] = None

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ValueError("window_ms must be greater than zero")
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.failure_multiplier < 1:
            raise ValueError("failure_multiplier must be at least 1")
        if self.max_failures < 1:
            raise ValueError("max_failures must be at least 1")
        if self.ban_duration_ms <= 0:
            raise ValueError("ban_duration_ms must be greater than zero")
        if self.max_wait_ms is not None and self.max_wait_ms <= 0:
            raise ValueError("max_wait_ms must be greater than zero when set")


class RateLimiter:
    """In-memory limiter keyed by client identity.

    The window is fixed-size, but the wait reported on rejection is scaled by
    ``failure_multiplier ** failure_count`` so clients with a history of
    failures are asked to back off for longer.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        *,
        clock: Optional[Callable[[], int]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock or _now_ms
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()
        self._logger = logger or logging.getLogger(__name__)

    def check_limit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            record = self._records.get(key)
            if record is not None and record.banned_until is not None:
                if record.banned_until > now:
                    return RateLimitDecision(
                        allowed=False,
                        remaining_ms=record.banned_until - now,
                        reason="banned",
                    )
                record.banned_until = None
                record.failure_count = 0

            if record is None or now >= record.window_reset_at:
                record = RateLimitRecord(
                    key=key,
                    count=0,
                    failure_count=record.failure_count if record else 0,
                    window_reset_at=now + self.config.window_ms,
                )
                self._records[key] = record

            if record.count >= self.config.max_requests:
                return RateLimitDecision(
                    allowed=False,
                    remaining_ms=self._scaled_wait(record, now),
                    reason="rate_limited",
                )

            record.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining_requests=self.config.max_requests - record.count,
            )

    def enforce(self, key: str) -> RateLimitDecision:
        """Like check_limit but raises RateLimitExceededError on rejection."""

        decision = self.check_limit(key)
        if not decision.allowed:
            self._logger.info(
                "rate_limit_rejected",
                extra={
                    "key": key,
                    "reason": decision.reason,
                    "retry_after_ms": decision.remaining_ms,
                },
            )
            raise RateLimitExceededError(
                retry_after_ms=decision.remaining_ms,
                reason=decision.reason or "rate_limited",
                context={"key": key},
            )
        return decision

    def record_failure(self, key: str, critical: bool = False) -> RateLimitRecord:
        now = self._clock()
        with self._lock:
            record = self._records.get(key)
            if record is None:
                record = RateLimitRecord(
                    key=key, window_reset_at=now + self.config.window_ms
                )
                self._records[key] = record
            record.failure_count += 1
            if critical or record.failure_count >= self.config.max_failures:
                record.banned_until = now + self.config.ban_duration_ms
                self._logger.warning(
                    "rate_limit_ban_applied",
                    extra={
                        "key": key,
                        "critical": critical,
                        "failure_count": record.failure_count,
                        "banned_until": record.banned_until,
                    },
                )
            return record.model_copy()

    def record_success(self, key: str) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is not None and record.failure_count > 0:
                record.failure_count -= 1

    def get_record(self, key: str) -> Optional[RateLimitRecord]:
        with self._lock:
            record = self._records.get(key)
            return record.model_copy() if record is not None else None

    def purge_expired(self) -> int:
        """Drop records that carry no window, ban or failure state any more."""

        now = self._clock()
        with self._lock:
            stale = [
                key
                for key, record in self._records.items()
                if now >= record.window_reset_at
                and record.failure_count == 0
                and (record.banned_until is None or record.banned_until <= now)
            ]
            for key in stale:
                del self._records[key]
        return len(stale)

    def _scaled_wait(self, record: RateLimitRecord, now: int) -> int:
        base = max(record.window_reset_at - now, 0)
        wait = int(base * (self.config.failure_multiplier**record.failure_count))
        if self.config.max_wait_ms is not None:
            wait = min(wait, self.config.max_wait_ms)
        return wait
