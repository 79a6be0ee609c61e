"""In-process retryable queue with at-least-once delivery and a dead-letter list."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Dict, List, Optional

from telemetry_engine.domain.models import AlertMessage


@dataclass(frozen=True)
class Delivery:
    """One receipt of a message; ``attempts`` counts receipts so far."""

    message: AlertMessage
    attempts: int = 0


class NotificationQueue:
    """Messages stay in flight until acked; a nack puts them back.

    After ``max_deliveries`` unacknowledged receipts a message is moved to the
    dead-letter list instead of being redelivered.
    """

    def __init__(
        self,
        *,
        max_deliveries: int = 5,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if max_deliveries < 1:
            raise ValueError("max_deliveries must be at least 1")
        self._max_deliveries = max_deliveries
        self._ready: Deque[Delivery] = deque()
        self._in_flight: Dict[str, Delivery] = {}
        self._dead: List[AlertMessage] = []
        self._condition = threading.Condition()
        self._logger = logger or logging.getLogger(__name__)

    def send(self, message: AlertMessage) -> None:
        with self._condition:
            self._ready.append(Delivery(message))
            self._condition.notify()
        self._logger.debug(
            "notification_enqueued",
            extra={"message_id": message.message_id, "kind": message.kind.value},
        )

    def receive(self, timeout: Optional[float] = None) -> Optional[Delivery]:
        """Take the next message, waiting up to ``timeout`` seconds."""

        with self._condition:
            if not self._ready:
                self._condition.wait_for(lambda: bool(self._ready), timeout=timeout)
            if not self._ready:
                return None
            queued = self._ready.popleft()
            delivery = replace(queued, attempts=queued.attempts + 1)
            self._in_flight[delivery.message.message_id] = delivery
            return delivery

    def ack(self, delivery: Delivery) -> None:
        with self._condition:
            self._in_flight.pop(delivery.message.message_id, None)

    def nack(self, delivery: Delivery) -> None:
        message = delivery.message
        with self._condition:
            if self._in_flight.pop(message.message_id, None) is None:
                return
            if delivery.attempts >= self._max_deliveries:
                self._dead.append(message)
                dead_lettered = True
            else:
                self._ready.append(delivery)
                self._condition.notify()
                dead_lettered = False
        if dead_lettered:
            self._logger.error(
                "notification_dead_lettered",
                extra={
                    "message_id": message.message_id,
                    "kind": message.kind.value,
                    "attempts": delivery.attempts,
                    "title": message.title,
                },
            )

    def ready_count(self) -> int:
        with self._condition:
            return len(self._ready)

    def in_flight_count(self) -> int:
        with self._condition:
            return len(self._in_flight)

    def dead_letters(self) -> List[AlertMessage]:
        with self._condition:
            return list(self._dead)

    def ping(self) -> bool:
        with self._condition:
            return True
