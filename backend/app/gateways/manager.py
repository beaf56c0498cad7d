"""Resolve gateway adapters by name, building each one lazily from configuration."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Union

from ..config import ConfigurationError, SubscriptionConfig
from ..subscriptions.identity import ObfuscatedIdentityCodec
from ..subscriptions.models import Gateway, Plan, SubscriberRef, Subscription
from ..subscriptions.service import SubscriptionService
from .apple import AppleGateway
from .base import GatewayAdapter
from .google import GoogleGateway, ServiceAccountTokenProvider
from .http import HttpClient, RetryPolicy, UrllibHttpClient
from .paypal import PayPalClient, PayPalGateway
from .xendit import XenditGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    subscription: Subscription
    provider_response: Dict[str, Any] = field(default_factory=dict)
    redirect_url: Optional[str] = None


def parse_gateway(name: Union[str, Gateway]) -> Gateway:
    if isinstance(name, Gateway):
        return name
    try:
        return Gateway(str(name).strip().lower())
    except ValueError:
        raise ConfigurationError(f"Unsupported gateway: {name!r}") from None


class GatewayManager:
    """Registry of adapters keyed by :class:`Gateway`.

    Adapters are created on first use so a deployment only needs settings
    for the providers it actually calls.
    """

    def __init__(
        self,
        config: SubscriptionConfig,
        subscriptions: SubscriptionService,
        *,
        http_client: Optional[HttpClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        identity_codec: Optional[ObfuscatedIdentityCodec] = None,
    ) -> None:
        self.config = config
        self.subscriptions = subscriptions
        self.http_client = http_client or UrllibHttpClient(timeout=config.http.timeout_seconds)
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.http.max_attempts,
            backoff_seconds=config.http.backoff_seconds,
        )
        self.identity_codec = identity_codec
        self._drivers: Dict[Gateway, GatewayAdapter] = {}
        self._paypal_client: Optional[PayPalClient] = None
        self._lock = threading.RLock()
        self._factories: Dict[Gateway, Callable[[], GatewayAdapter]] = {
            Gateway.APPLE: self._create_apple,
            Gateway.GOOGLE: self._create_google,
            Gateway.PAYPAL: self._create_paypal,
            Gateway.XENDIT: self._create_xendit,
        }

    def register(self, gateway: Union[str, Gateway], adapter: GatewayAdapter) -> None:
        """Install a prebuilt adapter, replacing any cached one."""

        with self._lock:
            self._drivers[parse_gateway(gateway)] = adapter

    def driver(self, gateway: Union[str, Gateway]) -> GatewayAdapter:
        resolved = parse_gateway(gateway)
        with self._lock:
            adapter = self._drivers.get(resolved)
            if adapter is None:
                self.config.require(resolved)
                adapter = self._factories[resolved]()
                self._drivers[resolved] = adapter
                logger.info("Initialized gateway adapter", extra={"gateway": resolved.value})
            return adapter

    def paypal_client(self) -> PayPalClient:
        with self._lock:
            if self._paypal_client is None:
                self.config.require(Gateway.PAYPAL)
                settings = self.config.paypal
                self._paypal_client = PayPalClient(
                    client_id=settings.client_id or "",
                    client_secret=settings.client_secret or "",
                    base_url=settings.base_url,
                    http_client=self.http_client,
                    retry_policy=self.retry_policy,
                    timeout=self.config.http.timeout_seconds,
                    clock=self.subscriptions.now,
                )
            return self._paypal_client

    def _common(self) -> Dict[str, object]:
        return {
            "subscriptions": self.subscriptions,
            "http_client": self.http_client,
            "retry_policy": self.retry_policy,
            "timeout": self.config.http.timeout_seconds,
        }

    def _create_apple(self) -> GatewayAdapter:
        settings = self.config.apple
        return AppleGateway(shared_secret=settings.shared_secret or "", sandbox=settings.sandbox, **self._common())

    def _create_google(self) -> GatewayAdapter:
        settings = self.config.google
        token_provider = ServiceAccountTokenProvider.from_file(
            settings.service_account_path or "",
            http_client=self.http_client,
            retry_policy=self.retry_policy,
            clock=self.subscriptions.now,
        )
        return GoogleGateway(
            package_name=settings.package_name or "",
            token_provider=token_provider,
            identity_codec=self.identity_codec or ObfuscatedIdentityCodec(settings.obfuscation_salt or ""),
            **self._common(),
        )

    def _create_paypal(self) -> GatewayAdapter:
        settings = self.config.paypal
        return PayPalGateway(
            client=self.paypal_client(),
            use_custom_id=settings.use_custom_id,
            return_url=settings.return_url,
            cancel_url=settings.cancel_url,
            brand_name=settings.brand_name,
            **self._common(),
        )

    def _create_xendit(self) -> GatewayAdapter:
        settings = self.config.xendit
        return XenditGateway(
            secret_key=settings.secret_key or "",
            success_return_url=settings.success_return_url,
            failure_return_url=settings.failure_return_url,
            currencies=settings.currencies,
            **self._common(),
        )

    def subscribe(
        self,
        subscriber: SubscriberRef,
        plan: Plan,
        gateway: Union[str, Gateway],
        options: Optional[Mapping[str, Any]] = None,
    ) -> CheckoutResult:
        """Create a local subscription and hand it to the provider.

        If the provider rejects the purchase the pending row is removed again,
        so a failed checkout leaves no local state behind.
        """

        resolved = parse_gateway(gateway)
        adapter = self.driver(resolved)
        pending = self.subscriptions.create_pending(subscriber, plan, resolved)
        try:
            response = adapter.create_subscription(pending, dict(options or {}))
        except Exception:
            discarded = self.subscriptions.discard_pending(pending)
            logger.warning(
                "Checkout failed; pending subscription %s",
                "discarded" if discarded else "kept because the provider confirmed it",
                extra={"gateway": resolved.value, "subscription_id": pending.id, "plan_id": plan.id},
            )
            raise

        subscription = self.subscriptions.get_subscription(pending.id)
        redirect_url = adapter.redirect_target(subscription) if subscription.is_pending else None
        return CheckoutResult(subscription=subscription, provider_response=response, redirect_url=redirect_url)
