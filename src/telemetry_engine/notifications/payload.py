"""Channel-neutral alert payload shared by every notification channel."""

from __future__ import annotations

from typing import Any, Dict

from telemetry_engine.domain.models import AlertMessage, Severity

SEVERITY_COLORS: Dict[Severity, str] = {
    Severity.CRITICAL: "#FF0000",
    Severity.WARNING: "#FFA500",
    Severity.INFO: "#36A64F",
}


def build_payload(message: AlertMessage) -> Dict[str, Any]:
    return {
        "message_id": message.message_id,
        "kind": message.kind.value,
        "severity": message.severity.value,
        "color": SEVERITY_COLORS[message.severity],
        "title": message.title,
        "message": message.message,
        "value": message.value,
        "threshold": message.threshold,
        "rule_id": message.rule_id,
        "history_id": message.history_id,
        "source_id": message.source_id,
        "metric_name": message.metric_name,
        "timestamp": message.timestamp.isoformat(),
    }
