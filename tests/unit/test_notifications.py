import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping

import pytest

from telemetry_engine.domain.exceptions import ChannelDeliveryError
from telemetry_engine.domain.models import AlertKind, AlertMessage, AlertRule, Severity
from telemetry_engine.notifications.dispatcher import NotificationDispatcher
from telemetry_engine.notifications.payload import SEVERITY_COLORS, build_payload
from telemetry_engine.notifications.queue import NotificationQueue
from telemetry_engine.storage.sqlite_repository import SQLiteRepository


class _RecordingChannel:
    def __init__(self, name: str, *, fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.payloads: List[Mapping[str, Any]] = []

    def send(self, payload: Mapping[str, Any]) -> None:
        if self.fail:
            raise ChannelDeliveryError(context={"channel": self.name})
        self.payloads.append(payload)


def _message(**overrides) -> AlertMessage:
    values = {
        "kind": AlertKind.TRIGGER,
        "severity": Severity.CRITICAL,
        "title": "High error rate",
        "message": "error_rate is 0.20 (threshold: 0.1)",
        "value": 0.2,
        "threshold": 0.1,
        "channels": ("slack", "pagerduty"),
    }
    values.update(overrides)
    return AlertMessage(**values)


@pytest.fixture
def repo(tmp_path: Path) -> SQLiteRepository:
    return SQLiteRepository(tmp_path / "telemetry.db")


def test_payload_carries_colour_and_fields():
    payload = build_payload(_message())

    assert payload["color"] == SEVERITY_COLORS[Severity.CRITICAL] == "#FF0000"
    assert payload["severity"] == "critical"
    assert payload["value"] == 0.2
    assert payload["threshold"] == 0.1
    assert datetime.fromisoformat(payload["timestamp"]).tzinfo is not None


def test_queue_redelivers_after_nack():
    queue = NotificationQueue(max_deliveries=3)
    queue.send(_message())

    first = queue.receive(timeout=0)
    queue.nack(first)
    second = queue.receive(timeout=0)

    assert first.attempts == 1
    assert second.attempts == 2
    assert second.message == first.message
    queue.ack(second)
    assert queue.receive(timeout=0) is None
    assert queue.in_flight_count() == 0


def test_queue_dead_letters_after_max_deliveries():
    queue = NotificationQueue(max_deliveries=2)
    message = _message()
    queue.send(message)

    for _ in range(2):
        queue.nack(queue.receive(timeout=0))

    assert queue.receive(timeout=0) is None
    assert queue.dead_letters() == [message]


def test_queue_receive_times_out_when_empty():
    assert NotificationQueue().receive(timeout=0.01) is None


def test_dispatcher_isolates_channel_failures():
    queue = NotificationQueue()
    slack = _RecordingChannel("slack", fail=True)
    pagerduty = _RecordingChannel("pagerduty")
    dispatcher = NotificationDispatcher(queue, {"slack": slack, "pagerduty": pagerduty})
    queue.send(_message())

    assert dispatcher.drain() == 1

    assert len(pagerduty.payloads) == 1
    assert queue.ready_count() == 0
    assert queue.in_flight_count() == 0


def test_dispatcher_nacks_when_every_channel_fails():
    queue = NotificationQueue(max_deliveries=2)
    dispatcher = NotificationDispatcher(
        queue,
        {"slack": _RecordingChannel("slack", fail=True)},
    )
    queue.send(_message())

    dispatcher.drain()
    assert queue.ready_count() == 1
    dispatcher.drain()

    assert queue.ready_count() == 0
    assert len(queue.dead_letters()) == 1


def test_unknown_channel_counts_as_failure():
    queue = NotificationQueue(max_deliveries=1)
    dispatcher = NotificationDispatcher(queue, {})
    queue.send(_message(channels=("missing",)))

    dispatcher.drain()

    assert len(queue.dead_letters()) == 1


def test_dispatcher_uses_default_channels_when_message_has_none():
    queue = NotificationQueue()
    log = _RecordingChannel("log")
    dispatcher = NotificationDispatcher(queue, {"log": log}, default_channels=["log"])
    queue.send(_message(channels=()))

    dispatcher.drain()

    assert len(log.payloads) == 1


def test_successful_trigger_marks_history_as_notified(repo: SQLiteRepository):
    rule = repo.create_rule(
        AlertRule(name="errors", metric_name="error_rate", condition=">", threshold=0.1)
    )
    history = repo.open_alert(rule.id, 0.2, datetime.now(timezone.utc))
    queue = NotificationQueue()
    dispatcher = NotificationDispatcher(
        queue, {"slack": _RecordingChannel("slack")}, repo
    )
    queue.send(_message(rule_id=rule.id, history_id=history.id, channels=("slack",)))

    dispatcher.drain()

    assert repo.get_history(history.id).notification_sent


def test_failed_delivery_leaves_history_unflagged(repo: SQLiteRepository):
    rule = repo.create_rule(
        AlertRule(name="errors", metric_name="error_rate", condition=">", threshold=0.1)
    )
    history = repo.open_alert(rule.id, 0.2, datetime.now(timezone.utc))
    queue = NotificationQueue()
    dispatcher = NotificationDispatcher(
        queue, {"slack": _RecordingChannel("slack", fail=True)}, repo
    )
    queue.send(_message(history_id=history.id, channels=("slack",)))

    dispatcher.drain()

    assert not repo.get_history(history.id).notification_sent


def test_redelivery_of_same_message_is_tolerated(repo: SQLiteRepository):
    rule = repo.create_rule(
        AlertRule(name="errors", metric_name="error_rate", condition=">", threshold=0.1)
    )
    history = repo.open_alert(rule.id, 0.2, datetime.now(timezone.utc))
    queue = NotificationQueue()
    channel = _RecordingChannel("slack")
    dispatcher = NotificationDispatcher(queue, {"slack": channel}, repo)
    message = _message(history_id=history.id, channels=("slack",))

    queue.send(message)
    queue.send(message)
    dispatcher.drain()

    assert len(channel.payloads) == 2
    assert repo.get_history(history.id).notification_sent


def test_worker_threads_deliver_queued_messages():
    queue = NotificationQueue()
    channel = _RecordingChannel("log")
    dispatcher = NotificationDispatcher(
        queue, {"log": channel}, default_channels=["log"], poll_interval=0.01
    )
    dispatcher.start(workers=2)
    try:
        for _ in range(5):
            queue.send(_message(channels=()))
        deadline = time.monotonic() + 5
        while len(channel.payloads) < 5 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        dispatcher.stop()

    assert len(channel.payloads) == 5
