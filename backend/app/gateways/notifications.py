"""Inbound webhook request and the authenticated event handed to adapters."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..subscriptions.models import Gateway


@dataclass(frozen=True)
class WebhookRequest:
    """Raw delivery as received over HTTP, before any trust is granted."""

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def json(self) -> Dict[str, Any]:
        """Parse the body as a JSON object, raising ``ValueError`` otherwise."""

        payload = json.loads(self.body.decode("utf-8") or "null")
        if not isinstance(payload, dict):
            raise ValueError("webhook body is not a JSON object")
        return payload


class VerifiedWebhook(BaseModel):
    """A webhook whose origin has been proven; adapters only ever see these."""

    gateway: Gateway
    event_type: str
    event_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookSignal(str, Enum):
    """Provider-independent meaning of a notification."""

    ACTIVATED = "activated"
    RENEWED = "renewed"
    RECOVERED = "recovered"
    CANCELED = "canceled"
    CANCEL_AT_PERIOD_END = "cancel_at_period_end"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"
