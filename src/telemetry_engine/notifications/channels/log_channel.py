"""Channel that writes notifications to the application log."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from telemetry_engine.domain.interfaces import INotificationChannel

_LEVELS = {
    "critical": logging.CRITICAL,
    "warning": logging.WARNING,
    "info": logging.INFO,
}


class LogChannel(INotificationChannel):
    """Always-available fallback channel."""

    def __init__(
        self, name: str = "log", *, logger: Optional[logging.Logger] = None
    ) -> None:
        self.name = name
        self.logger = logger or logging.getLogger(__name__)

    def send(self, payload: Mapping[str, Any]) -> None:
        self.logger.log(
            _LEVELS.get(str(payload.get("severity")), logging.INFO),
            "alert_notification",
            extra={
                "title": payload.get("title"),
                "alert_message": payload.get("message"),
                "kind": payload.get("kind"),
                "value": payload.get("value"),
                "threshold": payload.get("threshold"),
            },
        )
