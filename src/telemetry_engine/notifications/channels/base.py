"""Channel abstractions and shared HTTP delivery behaviour."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from telemetry_engine.domain.exceptions import ChannelDeliveryError
from telemetry_engine.domain.interfaces import INotificationChannel


@dataclass(frozen=True)
class ChannelConfig:
    """Endpoint settings shared by all HTTP channel adapters."""

    url: str
    api_key: Optional[str] = None
    timeout: float = 10.0

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("url must be provided")
        if self.timeout <= 0:
            raise ValueError("timeout must be greater than zero")


class BaseHttpChannel(INotificationChannel, ABC):
    """Template-method base class: subclasses only shape the request body.

    A single attempt is made per call; redelivery of the whole message by the
    notification queue is the retry mechanism.
    """

    CHANNEL_TYPE = "http"

    def __init__(
        self,
        http_client: httpx.Client,
        config: ChannelConfig,
        *,
        name: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.name = name or self.CHANNEL_TYPE
        self._http = http_client
        self.logger = logger or logging.getLogger(
            f"{__name__}.{self.__class__.__name__}"
        )

    def send(self, payload: Mapping[str, Any]) -> None:
        body = self._build_body(payload)
        self.log_request(payload)
        try:
            response = self._http.post(
                self.config.url,
                json=body,
                headers=self._headers(),
                timeout=self.config.timeout,
            )
        except httpx.HTTPError as exc:
            raise ChannelDeliveryError(
                "Channel request failed",
                context={"channel": self.name, "error": str(exc)},
            ) from exc
        self._check_response(response)
        self.log_response(response)

    @abstractmethod
    def _build_body(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """Channel-specific request body."""

    def _headers(self) -> Dict[str, str]:
        return {"content-type": "application/json"}

    def _check_response(self, response: httpx.Response) -> None:
        if response.status_code >= 400:
            raise ChannelDeliveryError(
                "Channel rejected notification",
                context={
                    "channel": self.name,
                    "status": response.status_code,
                    "body": response.text[:200],
                },
            )

    def log_request(self, payload: Mapping[str, Any]) -> None:
        """Hook for logging prior to delivery."""

        self.logger.debug(
            "channel_request",
            extra={
                "channel": self.name,
                "message_id": payload.get("message_id"),
                "severity": payload.get("severity"),
            },
        )

    def log_response(self, response: httpx.Response) -> None:
        self.logger.debug(
            "channel_response",
            extra={"channel": self.name, "status": response.status_code},
        )
