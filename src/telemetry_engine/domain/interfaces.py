"""Domain-level interfaces defining contracts for engine collaborators."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from .models import (
    AggregatedMetric,
    AlertHistory,
    AlertMessage,
    AlertRule,
    CostRecord,
)


class IMetricsRepository(Protocol):
    """Durable storage for hourly aggregates."""

    def upsert_aggregates(self, aggregates: Sequence[AggregatedMetric]) -> None:
        """Insert or replace rows keyed by (source, metric, window_start)."""

    def find_aggregates(
        self,
        start_ms: int,
        end_ms: int,
        *,
        source_id: Optional[str] = None,
        metric_name: Optional[str] = None,
    ) -> List[AggregatedMetric]:
        """Return aggregates whose window_end falls in [start_ms, end_ms)."""


class IAlertRepository(Protocol):
    """Durable storage for alert rules and their history."""

    def list_rules(self, *, enabled_only: bool = False) -> List[AlertRule]:
        """Return configured rules."""

    def get_rule(self, rule_id: int) -> Optional[AlertRule]:
        """Return a single rule or None."""

    def find_open_alert(self, rule_id: int) -> Optional[AlertHistory]:
        """Return the unresolved history row of a rule, if any."""

    def open_alert(
        self, rule_id: int, observed_value: float, triggered_at: datetime
    ) -> AlertHistory:
        """Insert a new unresolved history row."""

    def resolve_alert(self, history_id: int, resolved_at: datetime) -> None:
        """Set resolved_at on an open history row."""

    def mark_notification_sent(self, history_id: int) -> None:
        """Flag a history row as announced."""


class ICostRepository(Protocol):
    """Durable storage for per-day cost rows."""

    def upsert_costs(self, records: Sequence[CostRecord]) -> None:
        """Insert or replace rows keyed by (date, worker, resource_type)."""

    def find_costs(
        self, start: date, *, worker: Optional[str] = None
    ) -> List[CostRecord]:
        """Return cost rows dated on or after start."""


class INotificationChannel(Protocol):
    """Black-box delivery target for alert payloads."""

    name: str

    def send(self, payload: "Mapping[str, Any]") -> None:
        """Deliver the payload or raise ChannelDeliveryError."""


class IAlertPublisher(Protocol):
    """Anything alert messages can be handed to (usually the notification queue)."""

    def send(self, message: AlertMessage) -> None:
        """Enqueue the message for asynchronous delivery."""


class ISamplingPolicy(Protocol):
    """Decides which fraction of incoming samples is kept."""

    def sample_rate(self, events_per_minute: int, is_error: bool) -> float:
        """Return a keep probability between 0 and 1."""


class IKeyValueCache(Protocol):
    """Short-lived cache for the latest rollup and cost snapshots."""

    def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        """Store a JSON-compatible value."""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the value if present and not expired."""
