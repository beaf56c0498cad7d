"""Contract for proving that an inbound webhook came from its provider."""
from __future__ import annotations

from typing import Protocol

from ..gateways.notifications import VerifiedWebhook, WebhookRequest
from ..subscriptions.models import Gateway


class WebhookAuthenticator(Protocol):
    """Turns a raw delivery into a :class:`VerifiedWebhook` or raises.

    Implementations raise :class:`AuthenticationFailure` for anything they
    cannot prove, including malformed bodies.
    """

    gateway: Gateway

    def authenticate(self, request: WebhookRequest) -> VerifiedWebhook:
        ...
