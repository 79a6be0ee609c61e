"""Engine configuration management helpers."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping

from telemetry_engine.costs.pricing import DEFAULT_UNIT_PRICES
from telemetry_engine.maintenance.retention import RetentionPolicy
from telemetry_engine.ratelimit.limiter import RateLimitConfig


def _str_to_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    value = value.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return default


def _str_to_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer value: {value}") from exc


def _str_to_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid float value: {value}") from exc


def _str_to_list(value: str | None, default: List[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass(frozen=True)
class EngineConfig:
    """Immutable configuration object loaded from env or files."""

    high_water_mark: int = 100
    rollup_interval_seconds: int = 300
    cost_interval_seconds: int = 3600
    cleanup_interval_seconds: int = 86400
    report_interval_seconds: int = 604800
    cost_alert_threshold_usd: float = 10.0
    default_channels: List[str] = field(default_factory=lambda: ["log"])
    max_deliveries: int = 5
    persist_attempts: int = 3
    notification_workers: int = 2
    # Kept samples are not reweighted by their keep rate. Errors are always kept
    # while requests are thinned, so error_rate reads high, success_rate reads
    # low and request-based cost usage reads low once traffic passes 100/min.
    adaptive_sampling: bool = False
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    price_table: Dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_UNIT_PRICES)
    )
    channels: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    ENV_PREFIX = "TELEMETRY_"

    def __post_init__(self) -> None:
        self.validate()

    @classmethod
    def from_env(cls) -> "EngineConfig":
        defaults = cls()

        def env(name: str) -> str | None:
            return os.getenv(f"{cls.ENV_PREFIX}{name}")

        rate_limit = RateLimitConfig(
            window_ms=_str_to_int(env("RATE_LIMIT_WINDOW_MS"), defaults.rate_limit.window_ms),
            max_requests=_str_to_int(
                env("RATE_LIMIT_MAX_REQUESTS"), defaults.rate_limit.max_requests
            ),
            failure_multiplier=_str_to_float(
                env("RATE_LIMIT_FAILURE_MULTIPLIER"),
                defaults.rate_limit.failure_multiplier,
            ),
            max_failures=_str_to_int(
                env("RATE_LIMIT_MAX_FAILURES"), defaults.rate_limit.max_failures
            ),
            ban_duration_ms=_str_to_int(
                env("RATE_LIMIT_BAN_DURATION_MS"), defaults.rate_limit.ban_duration_ms
            ),
        )
        retention = RetentionPolicy(
            hourly_aggregates_days=_str_to_int(
                env("RETENTION_AGGREGATES_DAYS"),
                defaults.retention.hourly_aggregates_days,
            ),
            alerts_days=_str_to_int(
                env("RETENTION_ALERTS_DAYS"), defaults.retention.alerts_days
            ),
            cost_days=_str_to_int(env("RETENTION_COST_DAYS"), defaults.retention.cost_days),
        )

        channels: Dict[str, Dict[str, Any]] = {}
        if env("SLACK_WEBHOOK_URL"):
            channels["slack"] = {"type": "slack", "url": env("SLACK_WEBHOOK_URL")}
        if env("PAGERDUTY_ROUTING_KEY"):
            channels["pagerduty"] = {
                "type": "pagerduty",
                "api_key": env("PAGERDUTY_ROUTING_KEY"),
            }
        if env("WEBHOOK_URL"):
            channels["webhook"] = {
                "type": "webhook",
                "url": env("WEBHOOK_URL"),
                "api_key": env("WEBHOOK_TOKEN"),
            }

        return cls(
            high_water_mark=_str_to_int(env("HIGH_WATER_MARK"), defaults.high_water_mark),
            rollup_interval_seconds=_str_to_int(
                env("ROLLUP_INTERVAL_SECONDS"), defaults.rollup_interval_seconds
            ),
            cost_interval_seconds=_str_to_int(
                env("COST_INTERVAL_SECONDS"), defaults.cost_interval_seconds
            ),
            cleanup_interval_seconds=_str_to_int(
                env("CLEANUP_INTERVAL_SECONDS"), defaults.cleanup_interval_seconds
            ),
            report_interval_seconds=_str_to_int(
                env("REPORT_INTERVAL_SECONDS"), defaults.report_interval_seconds
            ),
            cost_alert_threshold_usd=_str_to_float(
                env("COST_ALERT_THRESHOLD_USD"), defaults.cost_alert_threshold_usd
            ),
            default_channels=_str_to_list(
                env("DEFAULT_CHANNELS"), defaults.default_channels
            ),
            max_deliveries=_str_to_int(env("MAX_DELIVERIES"), defaults.max_deliveries),
            persist_attempts=_str_to_int(
                env("PERSIST_ATTEMPTS"), defaults.persist_attempts
            ),
            notification_workers=_str_to_int(
                env("NOTIFICATION_WORKERS"), defaults.notification_workers
            ),
            adaptive_sampling=_str_to_bool(
                env("ADAPTIVE_SAMPLING"), defaults.adaptive_sampling
            ),
            rate_limit=rate_limit,
            retention=retention,
            channels=channels,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "EngineConfig":
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        raw = file_path.read_text()
        data: Dict[str, Any]
        suffix = file_path.suffix.lower()
        if suffix == ".json":
            data = json.loads(raw)
        elif suffix in {".yaml", ".yml"}:
            data = cls._load_yaml(raw)
        else:
            raise ValueError("Unsupported config format. Use JSON or YAML.")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        if isinstance(values.get("rate_limit"), Mapping):
            values["rate_limit"] = RateLimitConfig(**values["rate_limit"])
        if isinstance(values.get("retention"), Mapping):
            values["retention"] = RetentionPolicy(**values["retention"])
        if "default_channels" in values:
            values["default_channels"] = list(values["default_channels"])
        if "price_table" in values:
            values["price_table"] = {
                **DEFAULT_UNIT_PRICES,
                **{str(k): float(v) for k, v in values["price_table"].items()},
            }
        if "channels" in values:
            values["channels"] = {
                str(name): dict(spec) for name, spec in values["channels"].items()
            }
        return cls(**values)

    def validate(self) -> None:
        if self.high_water_mark < 1:
            raise ValueError("high_water_mark must be at least 1")
        for name in (
            "rollup_interval_seconds",
            "cost_interval_seconds",
            "cleanup_interval_seconds",
            "report_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be greater than zero")
        if self.cost_alert_threshold_usd <= 0:
            raise ValueError("cost_alert_threshold_usd must be greater than zero")
        if not isinstance(self.default_channels, list) or not self.default_channels:
            raise ValueError("default_channels must be a non-empty list")
        if self.max_deliveries < 1:
            raise ValueError("max_deliveries must be at least 1")
        if self.persist_attempts < 1:
            raise ValueError("persist_attempts must be at least 1")
        if self.notification_workers < 1:
            raise ValueError("notification_workers must be at least 1")
        if any(price < 0 for price in self.price_table.values()):
            raise ValueError("price_table entries must be non-negative")

    @staticmethod
    def _load_yaml(raw: str) -> Dict[str, Any]:
        try:
            import yaml  # type: ignore
        except ImportError as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("PyYAML is required to parse YAML config files") from exc
        return yaml.safe_load(raw) or {}
