"""Exception hierarchy for telemetry engine failures."""

from __future__ import annotations

from typing import Any, Mapping


class TelemetryEngineError(Exception):
    """Base class for all domain-level errors in the telemetry engine."""

    default_message = "Telemetry engine error occurred"

    def __init__(
        self, message: str | None = None, *, context: Mapping[str, Any] | None = None
    ):
        self.message = message or self.default_message
        self.context: Mapping[str, Any] = dict(context or {})
        formatted = self._format_message()
        super().__init__(formatted)

    def _format_message(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


class StorageError(TelemetryEngineError):
    """Durable store is unavailable or rejected a write."""

    default_message = "Storage operation failed"


class NotificationError(TelemetryEngineError):
    """Generic notification delivery issues."""

    default_message = "Notification error"


class ChannelDeliveryError(NotificationError):
    """A single channel failed to accept a notification."""

    default_message = "Channel delivery failed"


class UnknownChannelError(NotificationError):
    """A rule references a channel that is not configured."""

    default_message = "Notification channel is not configured"


class RateLimitExceededError(TelemetryEngineError):
    """Caller exceeded its request budget or is currently banned."""

    default_message = "Rate limit exceeded"

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after_ms: int = 0,
        reason: str = "rate_limited",
        context: Mapping[str, Any] | None = None,
    ):
        self.retry_after_ms = retry_after_ms
        self.reason = reason
        merged = {"retry_after_ms": retry_after_ms, "reason": reason, **(context or {})}
        super().__init__(message, context=merged)


class ValidationError(TelemetryEngineError):
    """Raised when an operator-supplied rule payload is invalid."""

    default_message = "Validation failed"


class RuleNotFoundError(TelemetryEngineError):
    """Raised when an alert rule id does not exist."""

    default_message = "Alert rule not found"


class InvariantViolationError(TelemetryEngineError):
    """An engine invariant was broken (for example two open alerts for one rule)."""

    default_message = "Engine invariant violated"
