"""PayPal webhooks, verified by PayPal's own verify-webhook-signature API."""
from __future__ import annotations

import logging
from typing import Optional

from ..gateways.notifications import VerifiedWebhook, WebhookRequest
from ..gateways.paypal import PayPalClient
from ..subscriptions.exceptions import AuthenticationFailure, ProviderError
from ..subscriptions.models import Gateway

logger = logging.getLogger(__name__)

TRANSMISSION_HEADERS = {
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
    "cert_url": "PAYPAL-CERT-URL",
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
}


class PayPalWebhookAuthenticator:
    gateway = Gateway.PAYPAL

    def __init__(self, client: PayPalClient, webhook_id: Optional[str]) -> None:
        self.client = client
        self.webhook_id = webhook_id

    def _fail(self, reason: str) -> AuthenticationFailure:
        return AuthenticationFailure(self.gateway.value, reason)

    def authenticate(self, request: WebhookRequest) -> VerifiedWebhook:
        if not self.webhook_id:
            raise self._fail("PAYPAL_WEBHOOK_ID is not configured")

        transmission = {key: request.header(header) for key, header in TRANSMISSION_HEADERS.items()}
        missing = [TRANSMISSION_HEADERS[key] for key, value in transmission.items() if not value]
        if missing:
            raise self._fail(f"missing headers: {', '.join(missing)}")

        try:
            event = request.json()
        except ValueError as exc:
            raise self._fail("body is not a JSON object") from exc

        try:
            status = self.client.verify_webhook_signature(
                webhook_id=self.webhook_id,
                raw_event=request.body,
                **transmission,
            )
        except ProviderError as exc:
            logger.error(
                "PayPal signature verification call failed",
                extra={"provider_status": exc.provider_status, "transmission_id": transmission["transmission_id"]},
            )
            raise self._fail("signature could not be verified") from exc

        if status != "SUCCESS":
            raise self._fail(f"verification status {status or 'missing'}")

        return VerifiedWebhook(
            gateway=self.gateway,
            event_type=str(event.get("event_type") or ""),
            event_id=event.get("id") or transmission["transmission_id"],
            payload=event,
        )
