"""Queue consumer fanning alert messages out to notification channels."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Mapping, Optional, Sequence

from telemetry_engine.domain.exceptions import UnknownChannelError
from telemetry_engine.domain.interfaces import IAlertRepository, INotificationChannel
from telemetry_engine.domain.models import AlertKind

from .payload import build_payload
from .queue import Delivery, NotificationQueue


class NotificationDispatcher:
    """Delivers each message to all of its channels, failures isolated per channel.

    A message is acknowledged when at least one channel accepted it. When every
    channel fails it is nacked so the queue redelivers it; duplicates on the
    channels that did accept an earlier attempt are tolerated.
    """

    def __init__(
        self,
        queue: NotificationQueue,
        channels: Mapping[str, INotificationChannel],
        repository: Optional[IAlertRepository] = None,
        *,
        default_channels: Sequence[str] = ("log",),
        poll_interval: float = 0.5,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._queue = queue
        self._channels: Dict[str, INotificationChannel] = dict(channels)
        self._repository = repository
        self._default_channels = tuple(default_channels)
        self._poll_interval = poll_interval
        self._logger = logger or logging.getLogger(__name__)
        self._stop_event = threading.Event()
        self._workers: List[threading.Thread] = []

    @property
    def channels(self) -> Dict[str, INotificationChannel]:
        return dict(self._channels)

    def process(self, delivery: Delivery) -> bool:
        message = delivery.message
        names = message.channels or self._default_channels
        payload = build_payload(message)
        delivered: List[str] = []
        for name in names:
            try:
                channel = self._channels.get(name)
                if channel is None:
                    raise UnknownChannelError(context={"channel": name})
                channel.send(payload)
            except Exception:
                self._logger.exception(
                    "notification_channel_failed",
                    extra={
                        "channel": name,
                        "message_id": message.message_id,
                        "attempt": delivery.attempts,
                    },
                )
                continue
            delivered.append(name)

        if not delivered:
            self._queue.nack(delivery)
            return False

        if message.kind is AlertKind.TRIGGER and message.history_id is not None:
            if self._repository is not None:
                try:
                    self._repository.mark_notification_sent(message.history_id)
                except Exception:
                    self._logger.exception(
                        "notification_flag_failed",
                        extra={"history_id": message.history_id},
                    )
                    self._queue.nack(delivery)
                    return False
        self._queue.ack(delivery)
        self._logger.info(
            "notification_delivered",
            extra={
                "message_id": message.message_id,
                "channels": delivered,
                "attempt": delivery.attempts,
            },
        )
        return True

    def drain(self) -> int:
        """Process the messages queued right now; redeliveries wait for the next call."""

        processed = 0
        for _ in range(self._queue.ready_count()):
            delivery = self._queue.receive(timeout=0)
            if delivery is None:
                break
            self.process(delivery)
            processed += 1
        return processed

    def start(self, workers: int = 1) -> None:
        if self._workers:
            return
        self._stop_event.clear()
        for index in range(max(1, workers)):
            thread = threading.Thread(
                target=self._run_worker,
                name=f"notification-worker-{index}",
                daemon=True,
            )
            thread.start()
            self._workers.append(thread)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        for thread in self._workers:
            thread.join(timeout)
        self._workers = []

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _run_worker(self) -> None:
        while not self._stop_event.is_set():
            delivery = self._queue.receive(timeout=self._poll_interval)
            if delivery is None:
                continue
            try:
                self.process(delivery)
            except Exception:
                self._logger.exception(
                    "notification_worker_failed",
                    extra={"message_id": delivery.message.message_id},
                )
                self._queue.nack(delivery)
