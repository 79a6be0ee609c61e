"""PagerDuty Events API v2 channel."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from .base import BaseHttpChannel, ChannelConfig

PAGERDUTY_EVENTS_URL = "https://events.pagerduty.com/v2/enqueue"


class PagerDutyChannel(BaseHttpChannel):
    """Triggers and resolves incidents keyed by rule so redeliveries collapse."""

    CHANNEL_TYPE = "pagerduty"

    def __init__(
        self,
        http_client: httpx.Client,
        config: ChannelConfig,
        *,
        name: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not config.api_key:
            raise ValueError("PagerDuty channel requires a routing key as api_key")
        super().__init__(http_client, config, name=name, logger=logger)

    def _build_body(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        action = "resolve" if payload["kind"] == "resolve" else "trigger"
        body: Dict[str, Any] = {
            "routing_key": self.config.api_key,
            "event_action": action,
            "dedup_key": self._dedup_key(payload),
        }
        if action == "trigger":
            body["payload"] = {
                "summary": f"{payload['title']}: {payload['message']}",
                "severity": payload["severity"],
                "source": payload.get("source_id") or "telemetry-engine",
                "timestamp": payload["timestamp"],
                "custom_details": {
                    "metric": payload.get("metric_name"),
                    "value": payload.get("value"),
                    "threshold": payload.get("threshold"),
                },
            }
        return body

    @staticmethod
    def _dedup_key(payload: Mapping[str, Any]) -> str:
        if payload.get("rule_id") is not None:
            return f"rule-{payload['rule_id']}"
        return str(payload["message_id"])
