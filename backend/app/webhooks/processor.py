"""Authenticate, deduplicate and dispatch inbound gateway webhooks."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Union

from ..gateways.manager import GatewayManager, parse_gateway
from ..gateways.notifications import WebhookRequest
from ..subscriptions.events import SubscriptionEvent, SubscriptionEventSink, SubscriptionEventType
from ..subscriptions.exceptions import AuthenticationFailure, SubscriptionError
from ..subscriptions.models import Gateway, WebhookEventRecord
from ..subscriptions.service import SubscriptionRepository
from .base import WebhookAuthenticator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookAcknowledgement:
    """What the HTTP layer answers; providers always receive a 200."""

    gateway: Gateway
    status: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None

    @property
    def status_code(self) -> int:
        return 200

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gateway": self.gateway.value,
            "status": self.status,
            "event_id": self.event_id,
            "event_type": self.event_type,
        }


class WebhookProcessor:
    """Single entry point for provider notifications.

    Failures never propagate to the provider: rejected, duplicate and failed
    deliveries are logged and acknowledged so the provider stops retrying a
    delivery that will never succeed.
    """

    def __init__(
        self,
        *,
        gateways: GatewayManager,
        repository: SubscriptionRepository,
        event_sink: SubscriptionEventSink,
        authenticators: Mapping[Gateway, WebhookAuthenticator],
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.gateways = gateways
        self.repository = repository
        self.event_sink = event_sink
        self.authenticators = dict(authenticators)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def process(self, gateway: Union[str, Gateway], request: WebhookRequest) -> WebhookAcknowledgement:
        resolved = parse_gateway(gateway)
        received_at = self._clock()
        self.event_sink.publish(
            SubscriptionEvent(
                event_type=SubscriptionEventType.WEBHOOK_RECEIVED,
                gateway=resolved,
                metadata={"content_length": len(request.body)},
                occurred_at=received_at,
            )
        )

        authenticator = self.authenticators.get(resolved)
        if authenticator is None:
            logger.warning("No webhook authenticator configured", extra={"gateway": resolved.value})
            return WebhookAcknowledgement(gateway=resolved, status="rejected")

        try:
            event = authenticator.authenticate(request)
        except AuthenticationFailure as exc:
            logger.warning(
                "Rejected unauthenticated webhook",
                extra={"gateway": resolved.value, "reason": exc.reason},
            )
            return WebhookAcknowledgement(gateway=resolved, status="rejected")

        if event.event_id:
            first_delivery = self.repository.record_webhook_event(
                WebhookEventRecord(
                    gateway=resolved,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    received_at=received_at,
                )
            )
            if not first_delivery:
                logger.info(
                    "Skipping duplicate webhook delivery",
                    extra={"gateway": resolved.value, "event_id": event.event_id, "event_type": event.event_type},
                )
                return WebhookAcknowledgement(
                    gateway=resolved,
                    status="duplicate",
                    event_id=event.event_id,
                    event_type=event.event_type,
                )
        else:
            logger.info(
                "Webhook carries no event id; processing without deduplication",
                extra={"gateway": resolved.value, "event_type": event.event_type},
            )

        context = {"gateway": resolved.value, "event_id": event.event_id, "event_type": event.event_type}
        try:
            self.gateways.driver(resolved).handle_webhook(event)
        except SubscriptionError as exc:
            logger.error(
                "Webhook processing failed",
                extra={**context, "error_code": exc.code, "error": exc.message},
            )
            self._forget(resolved, event.event_id)
            return WebhookAcknowledgement(
                gateway=resolved, status="failed", event_id=event.event_id, event_type=event.event_type
            )
        except Exception:
            logger.exception("Unexpected error while processing webhook", extra=context)
            self._forget(resolved, event.event_id)
            return WebhookAcknowledgement(
                gateway=resolved, status="failed", event_id=event.event_id, event_type=event.event_type
            )

        logger.info("Processed webhook", extra=context)
        return WebhookAcknowledgement(
            gateway=resolved, status="processed", event_id=event.event_id, event_type=event.event_type
        )

    def _forget(self, gateway: Gateway, event_id: Optional[str]) -> None:
        # A failed delivery must not be skipped as a duplicate when it is redelivered.
        if event_id:
            self.repository.forget_webhook_event(gateway, event_id)
