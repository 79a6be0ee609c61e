import json
from pathlib import Path

import pytest

from telemetry_engine.core.config import EngineConfig
from telemetry_engine.costs.pricing import DEFAULT_UNIT_PRICES


def test_engine_config_defaults():
    config = EngineConfig()
    assert config.high_water_mark == 100
    assert config.rollup_interval_seconds == 300
    assert config.default_channels == ["log"]
    assert config.adaptive_sampling is False
    assert config.rate_limit.max_requests == 1
    assert config.retention.alerts_days == 90
    assert config.price_table == dict(DEFAULT_UNIT_PRICES)
    assert config.channels == {}


def test_engine_config_from_env(monkeypatch):
    monkeypatch.setenv("TELEMETRY_HIGH_WATER_MARK", "50")
    monkeypatch.setenv("TELEMETRY_COST_ALERT_THRESHOLD_USD", "2.5")
    monkeypatch.setenv("TELEMETRY_DEFAULT_CHANNELS", "log, slack")
    monkeypatch.setenv("TELEMETRY_ADAPTIVE_SAMPLING", "yes")
    monkeypatch.setenv("TELEMETRY_RATE_LIMIT_MAX_REQUESTS", "10")
    monkeypatch.setenv("TELEMETRY_RETENTION_COST_DAYS", "30")
    monkeypatch.setenv("TELEMETRY_SLACK_WEBHOOK_URL", "https://hooks.slack.test/T000")
    monkeypatch.setenv("TELEMETRY_PAGERDUTY_ROUTING_KEY", "routing-key")

    config = EngineConfig.from_env()

    assert config.high_water_mark == 50
    assert config.cost_alert_threshold_usd == pytest.approx(2.5)
    assert config.default_channels == ["log", "slack"]
    assert config.adaptive_sampling is True
    assert config.rate_limit.max_requests == 10
    assert config.retention.cost_days == 30
    assert config.channels["slack"] == {"type": "slack", "url": "https://hooks.slack.test/T000"}
    assert config.channels["pagerduty"]["api_key"] == "routing-key"
    assert "webhook" not in config.channels


def test_engine_config_from_env_rejects_garbage(monkeypatch):
    monkeypatch.setenv("TELEMETRY_MAX_DELIVERIES", "many")

    with pytest.raises(ValueError):
        EngineConfig.from_env()


def test_engine_config_from_file_json(tmp_path: Path):
    data = {
        "rollup_interval_seconds": 60,
        "rate_limit": {"max_requests": 5, "window_ms": 1000},
        "retention": {"hourly_aggregates_days": 7},
        "price_table": {"requests": 0.01},
        "channels": {"ops": {"type": "webhook", "url": "https://ops.test/hook"}},
        "unknown_key": "ignored",
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))

    config = EngineConfig.from_file(path)

    assert config.rollup_interval_seconds == 60
    assert config.rate_limit.max_requests == 5
    assert config.rate_limit.window_ms == 1000
    assert config.retention.hourly_aggregates_days == 7
    assert config.retention.cost_days == 365
    assert config.price_table["requests"] == pytest.approx(0.01)
    assert config.price_table["cpu_time"] == DEFAULT_UNIT_PRICES["cpu_time"]
    assert config.channels["ops"]["type"] == "webhook"


def test_engine_config_from_file_yaml(tmp_path: Path):
    yaml = pytest.importorskip("yaml")
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump({"notification_workers": 4, "default_channels": ["log", "pagerduty"]})
    )

    config = EngineConfig.from_file(path)

    assert config.notification_workers == 4
    assert config.default_channels == ["log", "pagerduty"]


def test_engine_config_from_file_errors(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        EngineConfig.from_file(tmp_path / "missing.json")

    path = tmp_path / "config.toml"
    path.write_text("")
    with pytest.raises(ValueError):
        EngineConfig.from_file(path)


@pytest.mark.parametrize(
    "overrides",
    [
        {"high_water_mark": 0},
        {"rollup_interval_seconds": 0},
        {"cost_alert_threshold_usd": -1},
        {"default_channels": []},
        {"max_deliveries": 0},
        {"price_table": {"requests": -0.1}},
    ],
)
def test_engine_config_validation(overrides):
    with pytest.raises(ValueError):
        EngineConfig(**overrides)


def test_nested_config_validation_surfaces_from_dict():
    with pytest.raises(ValueError):
        EngineConfig.from_dict({"retention": {"alerts_days": 0}})
