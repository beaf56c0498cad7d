"""Xendit callbacks, authenticated by the shared callback token."""
from __future__ import annotations

import hmac
from typing import Optional

from ..gateways.notifications import VerifiedWebhook, WebhookRequest
from ..subscriptions.exceptions import AuthenticationFailure
from ..subscriptions.models import Gateway

CALLBACK_TOKEN_HEADER = "x-callback-token"


class XenditCallbackAuthenticator:
    gateway = Gateway.XENDIT

    def __init__(self, callback_token: Optional[str]) -> None:
        self.callback_token = callback_token

    def _fail(self, reason: str) -> AuthenticationFailure:
        return AuthenticationFailure(self.gateway.value, reason)

    def authenticate(self, request: WebhookRequest) -> VerifiedWebhook:
        if not self.callback_token:
            raise self._fail("XENDIT_CALLBACK_TOKEN is not configured")
        presented = request.header(CALLBACK_TOKEN_HEADER) or ""
        if not hmac.compare_digest(presented.encode("utf-8"), self.callback_token.encode("utf-8")):
            raise self._fail("callback token mismatch")

        try:
            body = request.json()
        except ValueError as exc:
            raise self._fail("body is not a JSON object") from exc

        return VerifiedWebhook(
            gateway=self.gateway,
            event_type=str(body.get("event") or ""),
            event_id=body.get("id") or request.header("webhook-id"),
            payload=body,
        )
