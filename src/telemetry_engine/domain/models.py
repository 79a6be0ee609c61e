"""Domain value objects for telemetry aggregation, alerting and cost tracking."""

from __future__ import annotations

import math
import datetime as dt
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Condition(str, Enum):
    """Comparison applied between a rule's decision value and its threshold."""

    GREATER_THAN = ">"
    LESS_THAN = "<"
    EQUALS = "="

    @classmethod
    def _missing_(cls, value: object) -> Optional["Condition"]:
        aliases = {
            "greater_than": cls.GREATER_THAN,
            "gt": cls.GREATER_THAN,
            "less_than": cls.LESS_THAN,
            "lt": cls.LESS_THAN,
            "equals": cls.EQUALS,
            "eq": cls.EQUALS,
            "==": cls.EQUALS,
        }
        if isinstance(value, str):
            return aliases.get(value.strip().lower())
        return None

    def evaluate(self, value: float, threshold: float) -> bool:
        if self is Condition.GREATER_THAN:
            return value > threshold
        if self is Condition.LESS_THAN:
            return value < threshold
        return math.isclose(value, threshold, rel_tol=0.0, abs_tol=0.001)


class Severity(str, Enum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertKind(str, Enum):
    """Type of message travelling through the notification queue."""

    TRIGGER = "trigger"
    RESOLVE = "resolve"
    COST = "cost"
    REPORT = "report"


class Aggregation(str, Enum):
    """Aggregation functions supported by the metrics query interface."""

    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    COUNT = "count"


class MetricSample(BaseModel):
    """A single raw observation submitted by an instrumented service."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    metric_name: str
    value: float
    timestamp_ms: int
    is_error: bool = False

    @model_validator(mode="after")
    def validate_identity(self) -> "MetricSample":
        if not self.source_id.strip() or not self.metric_name.strip():
            raise ValueError("source_id and metric_name must be non-empty")
        # NaN carries no value; infinities are kept as outliers
        if math.isnan(self.value):
            raise ValueError("value must be a number")
        return self


class AggregatedMetric(BaseModel):
    """Immutable statistical summary of one shard over one window."""

    model_config = ConfigDict(frozen=True)

    source_id: str
    metric_name: str
    window_start: int
    window_end: int
    count: int = Field(..., ge=0)
    sum: float
    min: float
    max: float
    p50: float
    p95: float
    p99: float

    @model_validator(mode="after")
    def validate_window(self) -> "AggregatedMetric":
        if self.window_end < self.window_start:
            raise ValueError("window_end must not precede window_start")
        return self

    @property
    def average(self) -> float:
        if self.count == 0:
            return 0.0
        return self.sum / self.count

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.source_id, self.metric_name, self.window_start)


class AlertRule(BaseModel):
    """Operator-defined threshold rule."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    name: str = Field(..., min_length=1)
    source_filter: Optional[str] = None
    metric_name: str = Field(..., min_length=1)
    condition: Condition
    threshold: float
    window_minutes: int = Field(default=5, gt=0)
    severity: Severity = Severity.WARNING
    enabled: bool = True
    notification_channels: Tuple[str, ...] = Field(default_factory=tuple)

    @field_validator("threshold", mode="before")
    @classmethod
    def validate_threshold(cls, value: object) -> object:
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError("threshold must be a number")
        if not math.isfinite(float(value)):
            raise ValueError("threshold must be finite")
        return value

    @field_validator("notification_channels", mode="before")
    @classmethod
    def normalize_channels(cls, value: object) -> object:
        if isinstance(value, str):
            raise ValueError("notification_channels must be a list of channel names")
        return tuple(dict.fromkeys(value)) if value is not None else ()


class AlertHistory(BaseModel):
    """Audit trail row for one alert incident of a rule."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    rule_id: int
    triggered_at: datetime
    resolved_at: Optional[datetime] = None
    observed_value: float
    notification_sent: bool = False

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


class CostRecord(BaseModel):
    """Cost of one resource consumed by one worker on one day."""

    model_config = ConfigDict(frozen=True)

    date: dt.date
    worker: str
    resource_type: str
    usage_units: float = Field(..., ge=0)
    cost_usd: float = Field(..., ge=0)


class RateLimitRecord(BaseModel):
    """Mutable per-client counter state held by the rate limiter."""

    key: str
    count: int = 0
    failure_count: int = 0
    window_reset_at: int
    banned_until: Optional[int] = None


class RateLimitDecision(BaseModel):
    """Outcome of a rate limit check."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    remaining_ms: int = 0
    remaining_requests: int = 0
    reason: Optional[str] = None


class AlertMessage(BaseModel):
    """Queue payload describing something that must be announced to operators."""

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=lambda: uuid4().hex)
    kind: AlertKind
    severity: Severity
    title: str
    message: str
    value: Optional[float] = None
    threshold: Optional[float] = None
    rule_id: Optional[int] = None
    history_id: Optional[int] = None
    source_id: Optional[str] = None
    metric_name: Optional[str] = None
    channels: Tuple[str, ...] = Field(default_factory=tuple)
    timestamp: datetime = Field(default_factory=utcnow)


class HealthReport(BaseModel):
    """Per-dependency health verdict."""

    model_config = ConfigDict(frozen=True)

    status: str
    checks: Dict[str, bool]
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"
