"""Channel factory that wires HTTP clients to concrete channel adapters."""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Type

import httpx

from telemetry_engine.domain.exceptions import UnknownChannelError
from telemetry_engine.domain.interfaces import INotificationChannel

from .base import BaseHttpChannel, ChannelConfig
from .log_channel import LogChannel
from .pagerduty import PAGERDUTY_EVENTS_URL, PagerDutyChannel
from .slack import SlackChannel
from .webhook import WebhookChannel


class ChannelFactory:
    """Builds named channels from plain configuration mappings.

    A channel spec looks like ``{"type": "slack", "url": "...", "timeout": 5}``.
    """

    def __init__(
        self, http_client_factory: Callable[[ChannelConfig], httpx.Client]
    ) -> None:
        self._http_client_factory = http_client_factory
        self._registry: Dict[str, Type[BaseHttpChannel]] = {}
        self._register_defaults()

    def register_channel(
        self, channel_type: str, channel_class: Type[BaseHttpChannel]
    ) -> None:
        self._registry[channel_type.lower()] = channel_class

    def create(self, name: str, spec: Mapping[str, Any]) -> INotificationChannel:
        channel_type = str(spec.get("type", name)).lower()
        if channel_type == "log":
            return LogChannel(name)
        channel_cls = self._registry.get(channel_type)
        if channel_cls is None:
            raise UnknownChannelError(
                f"No channel registered for type '{channel_type}'",
                context={"channel": name},
            )
        url = spec.get("url")
        if url is None and channel_cls is PagerDutyChannel:
            url = PAGERDUTY_EVENTS_URL
        config = ChannelConfig(
            url=str(url or ""),
            api_key=spec.get("api_key"),
            timeout=float(spec.get("timeout", 10.0)),
        )
        return channel_cls(self._http_client_factory(config), config, name=name)

    def create_all(
        self, specs: Optional[Mapping[str, Mapping[str, Any]]] = None
    ) -> Dict[str, INotificationChannel]:
        """Build every configured channel; ``log`` is always present."""

        channels: Dict[str, INotificationChannel] = {"log": self.log_channel()}
        for name, spec in (specs or {}).items():
            channels[name] = self.create(name, spec)
        return channels

    @staticmethod
    def log_channel() -> INotificationChannel:
        return LogChannel()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _register_defaults(self) -> None:
        self.register_channel(SlackChannel.CHANNEL_TYPE, SlackChannel)
        self.register_channel(PagerDutyChannel.CHANNEL_TYPE, PagerDutyChannel)
        self.register_channel(WebhookChannel.CHANNEL_TYPE, WebhookChannel)
