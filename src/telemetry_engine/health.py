"""Dependency health probes."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Optional, Protocol

from telemetry_engine.domain.models import HealthReport


class IPingable(Protocol):
    def ping(self) -> bool:
        """Return True when the dependency answers."""


class HealthChecker:
    """Probes each dependency independently; a failing probe never raises."""

    def __init__(
        self,
        store: IPingable,
        cache: IPingable,
        queue: IPingable,
        bucket: IPingable,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._probes: Dict[str, Callable[[], bool]] = {
            "store": store.ping,
            "cache": cache.ping,
            "queue": queue.ping,
            "bucket": bucket.ping,
        }
        self._logger = logger or logging.getLogger(__name__)

    def check(self) -> HealthReport:
        checks: Dict[str, bool] = {}
        for name, probe in self._probes.items():
            try:
                checks[name] = bool(probe())
            except Exception:
                self._logger.warning(
                    "health_probe_failed", extra={"dependency": name}, exc_info=True
                )
                checks[name] = False
        status = "healthy" if all(checks.values()) else "degraded"
        return HealthReport(status=status, checks=checks)
