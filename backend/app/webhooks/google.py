"""Google Play real-time developer notifications delivered by Pub/Sub push."""
from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, Optional

from ..gateways.notifications import VerifiedWebhook, WebhookRequest
from ..subscriptions.exceptions import AuthenticationFailure
from ..subscriptions.models import Gateway


class GooglePubSubAuthenticator:
    """Decode the Pub/Sub envelope (or a raw notification) and pin the package name.

    The notification carries no signature; the adapter re-reads every
    purchase from the Android Publisher API before acting on it.
    """

    gateway = Gateway.GOOGLE

    def __init__(self, package_name: Optional[str] = None) -> None:
        self.package_name = package_name

    def _fail(self, reason: str) -> AuthenticationFailure:
        return AuthenticationFailure(self.gateway.value, reason)

    def authenticate(self, request: WebhookRequest) -> VerifiedWebhook:
        try:
            envelope = request.json()
        except ValueError as exc:
            raise self._fail("body is not a JSON object") from exc

        message = envelope.get("message")
        if message is None:
            # Relayed without the Pub/Sub envelope.
            decoded = envelope
            event_id = None
        else:
            decoded = self._decode_message(message)
            event_id = message.get("messageId") or message.get("message_id")

        package_name = decoded.get("packageName")
        if not package_name:
            raise self._fail("notification has no package name")
        if self.package_name and package_name != self.package_name:
            raise self._fail("notification is for a different package")

        notification = decoded.get("subscriptionNotification")
        if isinstance(notification, dict):
            event_type = f"subscription.{notification.get('notificationType')}"
        elif decoded.get("testNotification"):
            event_type = "test"
        else:
            event_type = "other"

        return VerifiedWebhook(
            gateway=self.gateway,
            event_type=event_type,
            event_id=event_id,
            payload=decoded,
        )

    def _decode_message(self, message: Any) -> Dict[str, Any]:
        if not isinstance(message, dict) or not message.get("data"):
            raise self._fail("Pub/Sub message data is missing")
        try:
            decoded = json.loads(base64.b64decode(message["data"], validate=True))
        except (binascii.Error, TypeError, ValueError) as exc:
            raise self._fail("Pub/Sub message data could not be decoded") from exc
        if not isinstance(decoded, dict):
            raise self._fail("Pub/Sub message data is not a JSON object")
        return decoded
