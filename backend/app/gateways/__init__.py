"""Payment gateway adapters sharing one lifecycle contract."""

from .apple import AppleGateway
from .base import GatewayAdapter
from .google import GoogleGateway, ServiceAccountTokenProvider
from .http import HttpClient, HttpResponse, HttpTransportError, RetryPolicy, UrllibHttpClient
from .manager import CheckoutResult, GatewayManager, parse_gateway
from .notifications import VerifiedWebhook, WebhookRequest, WebhookSignal
from .paypal import PayPalClient, PayPalGateway
from .xendit import XenditGateway

__all__ = [
    "AppleGateway",
    "CheckoutResult",
    "GatewayAdapter",
    "GatewayManager",
    "GoogleGateway",
    "HttpClient",
    "HttpResponse",
    "HttpTransportError",
    "PayPalClient",
    "PayPalGateway",
    "RetryPolicy",
    "ServiceAccountTokenProvider",
    "UrllibHttpClient",
    "VerifiedWebhook",
    "WebhookRequest",
    "WebhookSignal",
    "XenditGateway",
    "parse_gateway",
]
