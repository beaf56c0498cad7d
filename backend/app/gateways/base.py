"""Contract every payment gateway adapter implements, plus shared helpers."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from ..subscriptions.exceptions import UnsupportedOperation
from ..subscriptions.models import (
    Gateway,
    Plan,
    Subscription,
    TransactionStatus,
    TransactionType,
)
from ..subscriptions.pricing import ResolvedPrice, resolve_price
from ..subscriptions.service import SubscriptionService
from .http import HttpClient, HttpResponse, RetryPolicy, send_with_retries
from .notifications import VerifiedWebhook

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")
_REFERENCE_PREFIX = "sub-"


def reference_for(subscription: Subscription) -> str:
    """Provider-side reference that points back at a local subscription."""

    return f"{_REFERENCE_PREFIX}{subscription.id}"


def subscription_id_from_reference(reference: Optional[str]) -> Optional[str]:
    if not reference or not reference.startswith(_REFERENCE_PREFIX):
        return None
    return reference[len(_REFERENCE_PREFIX):] or None


class GatewayAdapter(ABC):
    """Uniform lifecycle operations over one payment provider.

    Adapters never write subscription fields directly: every change goes
    through :class:`SubscriptionService`, paired with the ledger entry that
    justifies it.
    """

    gateway: Gateway

    def __init__(
        self,
        *,
        subscriptions: SubscriptionService,
        http_client: HttpClient,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.http_client = http_client
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = timeout

    @abstractmethod
    def create_subscription(self, subscription: Subscription, options: Mapping[str, Any]) -> Dict[str, Any]:
        """Validate proof of purchase or start a provider checkout."""

    @abstractmethod
    def cancel_subscription(self, subscription: Subscription) -> Subscription:
        """Cancel at the provider where possible, then locally."""

    def resume_subscription(self, subscription: Subscription) -> Subscription:
        raise UnsupportedOperation(self.gateway.value, "resume")

    def swap_plan(self, subscription: Subscription, new_plan: Plan) -> Subscription:
        raise UnsupportedOperation(self.gateway.value, "swap")

    def redirect_target(
        self,
        subscription: Subscription,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        """URL the subscriber must visit to approve the purchase, if any."""

        return None

    @abstractmethod
    def handle_webhook(self, event: VerifiedWebhook) -> None:
        """Apply an authenticated provider notification."""

    # Shared helpers ----------------------------------------------------------

    def _send(
        self,
        method: str,
        url: str,
        *,
        action: str,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> HttpResponse:
        return send_with_retries(
            self.http_client,
            method,
            url,
            gateway=self.gateway.value,
            action=action,
            policy=self.retry_policy,
            headers=headers,
            body=body,
            timeout=self.timeout,
        )

    def _price(self, subscription: Subscription, plan: Optional[Plan] = None) -> ResolvedPrice:
        return resolve_price(plan or self.subscriptions.plan_for(subscription), self.gateway)

    def _mark_active(
        self,
        subscription: Subscription,
        *,
        gateway_id: Optional[str],
        ends_at: Optional[datetime],
        gateway_response: Mapping[str, Any],
        gateway_transaction_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
    ) -> Optional[Subscription]:
        """Activate and record the initial payment; ``None`` if already active."""

        activated = self.subscriptions.activate(
            subscription,
            gateway_id=gateway_id,
            ends_at=ends_at,
            gateway_response=gateway_response,
        )
        if activated is None:
            return None
        price = self._price(activated)
        self.subscriptions.record_transaction(
            activated,
            TransactionType.PAYMENT,
            amount=price.amount if amount is None else amount,
            currency=currency or price.currency,
            gateway_transaction_id=gateway_transaction_id,
            metadata={"source": "activation"},
        )
        logger.info(
            "Subscription activated",
            extra={"gateway": self.gateway.value, "subscription_id": activated.id, "gateway_id": gateway_id},
        )
        return activated

    def _mark_renewed(
        self,
        subscription: Subscription,
        *,
        ends_at: Optional[datetime],
        gateway_transaction_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Subscription]:
        if subscription.is_pending:
            # A renewal that outruns its activation notice confirms the purchase.
            return self._mark_active(
                subscription,
                gateway_id=subscription.gateway_id,
                ends_at=ends_at,
                gateway_response=dict(metadata or {}),
                gateway_transaction_id=gateway_transaction_id,
                amount=amount,
                currency=currency,
            )
        renewed = self.subscriptions.renew(
            subscription,
            ends_at,
            amount=amount,
            currency=currency,
            gateway_transaction_id=gateway_transaction_id,
            metadata=metadata,
        )
        if renewed is not None or ends_at is None or subscription.is_canceled:
            return renewed
        if gateway_transaction_id and self.subscriptions.repository.has_transaction(
            subscription.id, gateway_transaction_id, TransactionType.RENEWAL
        ):
            return None

        # The provider collected payment after the local period lapsed.
        synced = self.subscriptions.sync_ends_at(subscription, ends_at, forward_only=True)
        if synced is None:
            return None
        price = self._price(synced)
        self.subscriptions.record_transaction(
            synced,
            TransactionType.RENEWAL,
            amount=price.amount if amount is None else amount,
            currency=currency or price.currency,
            gateway_transaction_id=gateway_transaction_id,
            metadata={"source": "lapsed_renewal", **dict(metadata or {})},
        )
        return synced

    def _mark_canceled(
        self,
        subscription: Subscription,
        *,
        immediate: bool,
        reason: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Subscription:
        canceled = self.subscriptions.cancel_once(subscription, immediate=immediate)
        if canceled is None:
            return self.subscriptions.get_subscription(subscription.id)
        price = self._price(canceled)
        self.subscriptions.record_transaction(
            canceled,
            TransactionType.EXPIRY,
            amount=_ZERO,
            currency=price.currency,
            metadata={"reason": reason, "immediate": immediate, **dict(metadata or {})},
        )
        return canceled

    def _record_payment_failure(
        self,
        subscription: Subscription,
        *,
        reason: str,
        gateway_transaction_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        price = self._price(subscription)
        self.subscriptions.record_transaction(
            subscription,
            TransactionType.FAILED,
            amount=price.amount if amount is None else amount,
            currency=currency or price.currency,
            gateway_transaction_id=gateway_transaction_id,
            status=TransactionStatus.FAILED,
            metadata={"reason": reason, **dict(metadata or {})},
        )
        logger.warning(
            "Subscription payment failed",
            extra={"gateway": self.gateway.value, "subscription_id": subscription.id, "reason": reason},
        )

    def _log_unmatched(self, event: VerifiedWebhook, **context: Any) -> None:
        logger.warning(
            "Webhook did not match a subscription",
            extra={
                "gateway": self.gateway.value,
                "event_type": event.event_type,
                "event_id": event.event_id,
                **context,
            },
        )

    def _log_ignored(self, event: VerifiedWebhook) -> None:
        logger.debug(
            "Ignoring webhook notification",
            extra={"gateway": self.gateway.value, "event_type": event.event_type, "event_id": event.event_id},
        )
