"""Application wiring for the subscription core and its gateways."""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Dict

from dotenv import load_dotenv

from ..config import SubscriptionConfig, load_subscription_config
from ..gateways import GatewayManager
from ..subscriptions import (
    Gateway,
    PostgresSubscriptionRepository,
    SubscriptionEvent,
    SubscriptionEventSink,
    SubscriptionRepository,
    SubscriptionService,
)
from ..subscriptions.usage import UsageLedger
from ..webhooks import (
    AppleSignedPayloadVerifier,
    AppleWebhookAuthenticator,
    GooglePubSubAuthenticator,
    PayPalWebhookAuthenticator,
    WebhookAuthenticator,
    WebhookProcessor,
    XenditCallbackAuthenticator,
    load_root_certificate,
)

load_dotenv()

logger = logging.getLogger("subscriptions")


class LoggingEventSink(SubscriptionEventSink):
    """Event sink forwarding subscription events to the application logger."""

    def publish(self, event: SubscriptionEvent) -> None:
        logger.info(
            "Subscription event %s subscription=%s gateway=%s metadata=%s",
            event.event_type.value,
            event.subscription_id,
            event.gateway.value if event.gateway else None,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_subscription_config() -> SubscriptionConfig:
    return load_subscription_config()


@lru_cache(maxsize=1)
def get_event_sink() -> SubscriptionEventSink:
    return LoggingEventSink()


@lru_cache(maxsize=1)
def get_subscription_repository() -> SubscriptionRepository:
    return PostgresSubscriptionRepository()


@lru_cache(maxsize=1)
def get_subscription_service() -> SubscriptionService:
    return SubscriptionService(repository=get_subscription_repository(), event_sink=get_event_sink())


@lru_cache(maxsize=1)
def get_usage_ledger() -> UsageLedger:
    return UsageLedger(get_subscription_service())


@lru_cache(maxsize=1)
def get_gateway_manager() -> GatewayManager:
    return GatewayManager(get_subscription_config(), get_subscription_service())


def build_authenticators(config: SubscriptionConfig, manager: GatewayManager) -> Dict[Gateway, WebhookAuthenticator]:
    """Authenticators for every gateway whose verification material is present."""

    authenticators: Dict[Gateway, WebhookAuthenticator] = {
        Gateway.GOOGLE: GooglePubSubAuthenticator(config.google.package_name),
        Gateway.XENDIT: XenditCallbackAuthenticator(config.xendit.callback_token),
    }
    if os.path.exists(config.apple.root_cert_path):
        verifier = AppleSignedPayloadVerifier(
            load_root_certificate(config.apple.root_cert_path),
            bundle_id=config.apple.bundle_id,
        )
        authenticators[Gateway.APPLE] = AppleWebhookAuthenticator(verifier)
    else:
        logger.warning(
            "Apple root certificate not found; Apple webhooks will be rejected",
            extra={"root_cert_path": config.apple.root_cert_path},
        )
    if config.paypal.client_id and config.paypal.client_secret:
        authenticators[Gateway.PAYPAL] = PayPalWebhookAuthenticator(
            manager.paypal_client(),
            config.paypal.webhook_id,
        )
    return authenticators


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookProcessor:
    manager = get_gateway_manager()
    return WebhookProcessor(
        gateways=manager,
        repository=get_subscription_repository(),
        event_sink=get_event_sink(),
        authenticators=build_authenticators(get_subscription_config(), manager),
    )


__all__ = [
    "LoggingEventSink",
    "build_authenticators",
    "get_gateway_manager",
    "get_subscription_config",
    "get_subscription_repository",
    "get_subscription_service",
    "get_usage_ledger",
    "get_webhook_processor",
]
