import json
import logging

import httpx
import pytest

from telemetry_engine.domain.exceptions import ChannelDeliveryError, UnknownChannelError
from telemetry_engine.domain.models import AlertKind, AlertMessage, Severity
from telemetry_engine.notifications.channels.base import ChannelConfig
from telemetry_engine.notifications.channels.factory import ChannelFactory
from telemetry_engine.notifications.channels.log_channel import LogChannel
from telemetry_engine.notifications.channels.pagerduty import PagerDutyChannel
from telemetry_engine.notifications.channels.slack import SlackChannel
from telemetry_engine.notifications.channels.webhook import WebhookChannel
from telemetry_engine.notifications.payload import build_payload


def _build_client(handler):
    transport = httpx.MockTransport(handler)
    return httpx.Client(transport=transport)


def _payload(**overrides):
    values = {
        "kind": AlertKind.TRIGGER,
        "severity": Severity.WARNING,
        "title": "Slow responses",
        "message": "response_time_p95 is 812.00 (threshold: 500.0)",
        "value": 812.0,
        "threshold": 500.0,
        "rule_id": 4,
        "metric_name": "response_time_p95",
        "source_id": "api",
    }
    values.update(overrides)
    return build_payload(AlertMessage(**values))


def test_slack_channel_posts_coloured_attachment():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, text="ok")

    channel = SlackChannel(
        _build_client(handler), ChannelConfig(url="https://hooks.slack.test/T1")
    )

    channel.send(_payload())

    attachment = captured["body"]["attachments"][0]
    assert captured["url"] == "https://hooks.slack.test/T1"
    assert attachment["color"] == "#FFA500"
    assert attachment["title"] == "Slow responses"
    fields = {field["title"]: field["value"] for field in attachment["fields"]}
    assert fields["Value"] == "812.00"
    assert fields["Threshold"] == "500.0"
    assert isinstance(attachment["ts"], int)


def test_pagerduty_trigger_and_resolve_share_dedup_key():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(202, json={"status": "success"})

    channel = PagerDutyChannel(
        _build_client(handler),
        ChannelConfig(url="https://events.pagerduty.test/v2/enqueue", api_key="rk-1"),
    )

    channel.send(_payload())
    channel.send(_payload(kind=AlertKind.RESOLVE, severity=Severity.INFO))

    trigger, resolve = bodies
    assert trigger["event_action"] == "trigger"
    assert trigger["routing_key"] == "rk-1"
    assert trigger["payload"]["severity"] == "warning"
    assert trigger["payload"]["source"] == "api"
    assert resolve["event_action"] == "resolve"
    assert "payload" not in resolve
    assert trigger["dedup_key"] == resolve["dedup_key"] == "rule-4"


def test_pagerduty_requires_routing_key():
    with pytest.raises(ValueError):
        PagerDutyChannel(
            _build_client(lambda request: httpx.Response(202)),
            ChannelConfig(url="https://events.pagerduty.test"),
        )


def test_webhook_sends_payload_with_bearer_token():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = dict(request.headers)
        captured["body"] = json.loads(request.content)
        return httpx.Response(204)

    channel = WebhookChannel(
        _build_client(handler),
        ChannelConfig(url="https://ops.test/hook", api_key="secret"),
        name="ops",
    )

    channel.send(_payload())

    assert channel.name == "ops"
    assert captured["headers"]["authorization"] == "Bearer secret"
    assert captured["body"]["metric_name"] == "response_time_p95"


def test_http_error_status_raises_delivery_error():
    channel = WebhookChannel(
        _build_client(lambda request: httpx.Response(503, text="down")),
        ChannelConfig(url="https://ops.test/hook"),
    )

    with pytest.raises(ChannelDeliveryError) as exc_info:
        channel.send(_payload())

    assert exc_info.value.context["status"] == 503


def test_transport_error_raises_delivery_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    channel = SlackChannel(
        _build_client(handler), ChannelConfig(url="https://hooks.slack.test/T1")
    )

    with pytest.raises(ChannelDeliveryError):
        channel.send(_payload())


def test_log_channel_logs_at_severity_level(caplog):
    channel = LogChannel()

    with caplog.at_level(logging.INFO):
        channel.send(_payload(severity=Severity.CRITICAL))

    assert caplog.records[-1].levelno == logging.CRITICAL
    assert caplog.records[-1].getMessage() == "alert_notification"


def test_factory_builds_configured_channels():
    clients = []

    def client_factory(config: ChannelConfig) -> httpx.Client:
        clients.append(config)
        return _build_client(lambda request: httpx.Response(200))

    channels = ChannelFactory(client_factory).create_all(
        {
            "slack": {"type": "slack", "url": "https://hooks.slack.test/T1"},
            "oncall": {"type": "pagerduty", "api_key": "rk-1"},
        }
    )

    assert set(channels) == {"log", "slack", "oncall"}
    assert isinstance(channels["oncall"], PagerDutyChannel)
    assert clients[1].url == "https://events.pagerduty.com/v2/enqueue"


def test_factory_rejects_unknown_type():
    factory = ChannelFactory(lambda config: _build_client(lambda r: httpx.Response(200)))

    with pytest.raises(UnknownChannelError):
        factory.create("sms", {"type": "sms", "url": "https://sms.test"})


def test_channel_config_validation():
    with pytest.raises(ValueError):
        ChannelConfig(url="")
    with pytest.raises(ValueError):
        ChannelConfig(url="https://x.test", timeout=0)
