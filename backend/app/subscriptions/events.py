"""Domain events published by the subscription core."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field

from .models import Gateway, SubscriberRef


class SubscriptionEventType(str, Enum):
    """Kinds of events emitted as subscriptions move through their lifecycle."""

    CREATED = "subscription.created"
    RENEWED = "subscription.renewed"
    CANCELED = "subscription.canceled"
    RESUMED = "subscription.resumed"
    SWAPPED = "subscription.swapped"
    TRANSACTION_RECORDED = "subscription.transaction_recorded"
    PAYMENT_SUCCEEDED = "subscription.payment_succeeded"
    PAYMENT_FAILED = "subscription.payment_failed"
    FEATURE_USED = "feature.used"
    FEATURE_LIMIT_EXCEEDED = "feature.limit_exceeded"
    WEBHOOK_RECEIVED = "webhook.received"


class SubscriptionEvent(BaseModel):
    """Structured event handed to the configured sink."""

    event_type: SubscriptionEventType
    subscription_id: Optional[str] = None
    gateway: Optional[Gateway] = None
    subscriber: Optional[SubscriberRef] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SubscriptionEventSink(Protocol):
    """Receives lifecycle events for notifications, analytics, or auditing."""

    def publish(self, event: SubscriptionEvent) -> None:
        ...


class InMemoryEventSink:
    """Collects events in a list; suitable for tests and local development."""

    def __init__(self) -> None:
        self.events: List[SubscriptionEvent] = []

    def publish(self, event: SubscriptionEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: SubscriptionEventType) -> List[SubscriptionEvent]:
        return [event for event in self.events if event.event_type == event_type]
