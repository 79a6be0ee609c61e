"""Generic JSON webhook channel."""

from __future__ import annotations

from typing import Any, Dict, Mapping

from .base import BaseHttpChannel


class WebhookChannel(BaseHttpChannel):
    CHANNEL_TYPE = "webhook"

    def _build_body(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return dict(payload)

    def _headers(self) -> Dict[str, str]:
        headers = super()._headers()
        if self.config.api_key:
            headers["authorization"] = f"Bearer {self.config.api_key}"
        return headers
