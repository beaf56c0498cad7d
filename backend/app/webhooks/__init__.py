"""Inbound webhook authentication and processing."""

from .apple import AppleSignedPayloadVerifier, AppleWebhookAuthenticator, load_root_certificate
from .base import WebhookAuthenticator
from .google import GooglePubSubAuthenticator
from .paypal import PayPalWebhookAuthenticator
from .processor import WebhookAcknowledgement, WebhookProcessor
from .xendit import XenditCallbackAuthenticator

__all__ = [
    "AppleSignedPayloadVerifier",
    "AppleWebhookAuthenticator",
    "GooglePubSubAuthenticator",
    "PayPalWebhookAuthenticator",
    "WebhookAcknowledgement",
    "WebhookAuthenticator",
    "WebhookProcessor",
    "XenditCallbackAuthenticator",
    "load_root_certificate",
]
