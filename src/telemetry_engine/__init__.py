"""Telemetry aggregation and alerting engine following Clean Architecture layering."""

from .core.config import EngineConfig
from .core.container import DIContainer
from .core.engine import TelemetryEngine

__all__ = [
    "EngineConfig",
    "DIContainer",
    "TelemetryEngine",
    "domain",
    "core",
    "aggregation",
    "alerting",
    "notifications",
    "costs",
    "storage",
    "maintenance",
    "ratelimit",
    "utils",
]
