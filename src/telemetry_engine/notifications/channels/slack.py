"""Slack incoming-webhook channel."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Mapping

from .base import BaseHttpChannel


class SlackChannel(BaseHttpChannel):
    """Posts a severity-coloured attachment to an incoming webhook."""

    CHANNEL_TYPE = "slack"

    def _build_body(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        fields: List[Dict[str, Any]] = [
            {"title": "Severity", "value": str(payload["severity"]).upper(), "short": True},
        ]
        if payload.get("metric_name"):
            fields.append(
                {"title": "Metric", "value": payload["metric_name"], "short": True}
            )
        if payload.get("value") is not None:
            fields.append(
                {"title": "Value", "value": f"{payload['value']:.2f}", "short": True}
            )
        if payload.get("threshold") is not None:
            fields.append(
                {"title": "Threshold", "value": str(payload["threshold"]), "short": True}
            )
        return {
            "text": payload["title"],
            "attachments": [
                {
                    "color": payload["color"],
                    "title": payload["title"],
                    "text": payload["message"],
                    "fields": fields,
                    "footer": "telemetry-engine",
                    "ts": int(datetime.fromisoformat(payload["timestamp"]).timestamp()),
                }
            ],
        }
