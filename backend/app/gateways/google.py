"""Google Play Billing adapter backed by the Android Publisher API."""
from __future__ import annotations

import json
import logging
import re
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.parse import quote

from jose import jwt

from ..subscriptions.exceptions import DuplicateSubscription, ProviderError, UnsupportedOperation, ValidationError
from ..subscriptions.identity import ObfuscatedIdentityCodec
from ..subscriptions.models import Gateway, SubscriberRef, Subscription
from .base import GatewayAdapter
from .http import HttpClient, RetryPolicy, expect_json, form_body, json_body, send_with_retries
from .notifications import VerifiedWebhook, WebhookSignal

logger = logging.getLogger(__name__)

API_ROOT = "https://androidpublisher.googleapis.com/androidpublisher/v3/applications"
ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

_ENTITLED_STATES = {"SUBSCRIPTION_STATE_ACTIVE", "SUBSCRIPTION_STATE_IN_GRACE_PERIOD"}

# Real-time developer notification codes.
GOOGLE_SIGNALS: Dict[int, WebhookSignal] = {
    1: WebhookSignal.RECOVERED,
    2: WebhookSignal.RENEWED,
    3: WebhookSignal.CANCEL_AT_PERIOD_END,
    4: WebhookSignal.RENEWED,
    5: WebhookSignal.PAYMENT_FAILED,
    6: WebhookSignal.PAYMENT_FAILED,
    7: WebhookSignal.RECOVERED,
    12: WebhookSignal.CANCELED,
    13: WebhookSignal.CANCELED,
}

_FRACTION = re.compile(r"\.(\d+)")


def parse_rfc3339(value: Any) -> Optional[datetime]:
    """Parse Google timestamps, which may carry up to nanosecond precision."""

    if not value:
        return None
    if isinstance(value, Mapping):
        seconds = int(value.get("seconds") or 0)
        nanos = int(value.get("nanos") or 0)
        return datetime.fromtimestamp(seconds, tz=timezone.utc) + timedelta(microseconds=nanos // 1000)
    text = str(value).strip().replace("Z", "+00:00")
    text = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def latest_expiry(purchase: Mapping[str, Any]) -> Optional[datetime]:
    expiries = [parse_rfc3339(line.get("expiryTime")) for line in purchase.get("lineItems") or []]
    expiries = [expiry for expiry in expiries if expiry is not None]
    return max(expiries) if expiries else None


class ServiceAccountTokenProvider:
    """OAuth access tokens for a Google service account via a signed JWT grant."""

    def __init__(
        self,
        credentials: Mapping[str, Any],
        *,
        http_client: HttpClient,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        missing = [key for key in ("client_email", "private_key") if not credentials.get(key)]
        if missing:
            raise ValueError(f"Service account credentials missing {', '.join(missing)}")
        self._credentials = dict(credentials)
        self._http_client = http_client
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    @classmethod
    def from_file(cls, path: str, **kwargs: Any) -> "ServiceAccountTokenProvider":
        with open(path, "r", encoding="utf-8") as handle:
            return cls(json.load(handle), **kwargs)

    def access_token(self) -> str:
        with self._lock:
            now = self._clock()
            if self._token and self._expires_at and now < self._expires_at - timedelta(seconds=60):
                return self._token

        # Fetched without the lock so a slow token endpoint does not stall other callers.
        token, expires_at = self._fetch_token(now)
        with self._lock:
            self._token = token
            self._expires_at = expires_at
        return token

    def _fetch_token(self, now: datetime) -> Tuple[str, datetime]:
        token_uri = self._credentials.get("token_uri") or DEFAULT_TOKEN_URI
        issued_at = int(now.timestamp())
        headers = {"kid": self._credentials["private_key_id"]} if self._credentials.get("private_key_id") else None
        assertion = jwt.encode(
            {
                "iss": self._credentials["client_email"],
                "scope": ANDROID_PUBLISHER_SCOPE,
                "aud": token_uri,
                "iat": issued_at,
                "exp": issued_at + 3600,
            },
            self._credentials["private_key"],
            algorithm="RS256",
            headers=headers,
        )
        response = send_with_retries(
            self._http_client,
            "POST",
            token_uri,
            gateway=Gateway.GOOGLE.value,
            action="service_account_token",
            policy=self._retry_policy,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            body=form_body(
                {
                    "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                    "assertion": assertion,
                }
            ),
        )
        payload = expect_json(response, gateway=Gateway.GOOGLE.value, action="service_account_token")
        token = payload.get("access_token")
        if not token:
            raise ProviderError(Gateway.GOOGLE.value, "Token endpoint returned no access_token")
        return str(token), now + timedelta(seconds=int(payload.get("expires_in") or 3600))


class GoogleGateway(GatewayAdapter):
    """Mobile-billing provider; purchases are re-read from Google before trust."""

    gateway = Gateway.GOOGLE

    def __init__(
        self,
        *,
        package_name: str,
        token_provider: ServiceAccountTokenProvider,
        identity_codec: ObfuscatedIdentityCodec,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.package_name = package_name
        self.token_provider = token_provider
        self.identity_codec = identity_codec

    def obfuscated_account_id(self, subscriber: SubscriberRef) -> str:
        """Value the client passes as ``obfuscatedAccountId`` when purchasing."""

        return self.identity_codec.encode(subscriber)

    def _purchase_url(self, token: str, suffix: str = "") -> str:
        return (
            f"{API_ROOT}/{quote(self.package_name, safe='')}"
            f"/purchases/subscriptionsv2/tokens/{quote(token, safe='')}{suffix}"
        )

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token_provider.access_token()}"}

    def fetch_purchase(self, purchase_token: str) -> Dict[str, Any]:
        response = self._send("GET", self._purchase_url(purchase_token), action="get_purchase", headers=self._auth_headers())
        if response.status_code in (400, 404, 410):
            raise ValidationError(
                "Purchase token was rejected by Google Play",
                detail={"provider_status": response.status_code},
            )
        return expect_json(response, gateway=self.gateway.value, action="get_purchase")

    def _purchase_owner(self, purchase: Mapping[str, Any]) -> Optional[SubscriberRef]:
        identifiers = purchase.get("externalAccountIdentifiers") or {}
        return self.identity_codec.decode(identifiers.get("obfuscatedExternalAccountId"))

    def create_subscription(self, subscription: Subscription, options: Mapping[str, Any]) -> Dict[str, Any]:
        purchase_token = options.get("purchase_token")
        if not purchase_token:
            raise ValidationError("purchase_token is required for Google Play purchases")

        purchase = self.fetch_purchase(str(purchase_token))
        state = purchase.get("subscriptionState")
        if state not in _ENTITLED_STATES:
            raise ValidationError("Purchase is not in an entitled state", detail={"subscription_state": state})

        owner = self._purchase_owner(purchase)
        if owner is not None and owner != subscription.subscriber:
            raise ValidationError("Purchase belongs to a different account")

        self._mark_active(
            subscription,
            gateway_id=str(purchase_token),
            ends_at=latest_expiry(purchase),
            gateway_response=purchase,
            gateway_transaction_id=purchase.get("latestOrderId"),
        )
        return purchase

    def cancel_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.gateway_id:
            response = self._send(
                "POST",
                self._purchase_url(subscription.gateway_id, ":cancel"),
                action="cancel_purchase",
                headers={**self._auth_headers(), "Content-Type": "application/json"},
                body=json_body({}),
            )
            expect_json(response, gateway=self.gateway.value, action="cancel_purchase")
        # Access continues until the paid period runs out.
        return self._mark_canceled(subscription, immediate=False, reason="canceled_by_request")

    def resume_subscription(self, subscription: Subscription) -> Subscription:
        """Clear a local cancellation once the subscriber restored it in Play."""

        if not subscription.gateway_id:
            raise UnsupportedOperation(self.gateway.value, "resume")
        purchase = self.fetch_purchase(subscription.gateway_id)
        auto_renewing = any(
            (line.get("autoRenewingPlan") or {}).get("autoRenewEnabled")
            for line in purchase.get("lineItems") or []
        )
        if purchase.get("subscriptionState") not in _ENTITLED_STATES or not auto_renewing:
            raise UnsupportedOperation(
                self.gateway.value,
                "resume",
                "Google Play subscriptions can only be restored by the subscriber in the Play Store",
            )
        return self.subscriptions.resume(subscription)

    def handle_webhook(self, event: VerifiedWebhook) -> None:
        notification = event.payload.get("subscriptionNotification")
        if not notification:
            if event.payload.get("testNotification"):
                logger.info("Received Google Play test notification", extra={"gateway": self.gateway.value})
            else:
                self._log_ignored(event)
            return

        purchase_token = notification.get("purchaseToken")
        try:
            code = int(notification.get("notificationType"))
        except (TypeError, ValueError):
            code = 0
        signal = GOOGLE_SIGNALS.get(code)
        if signal is None or not purchase_token:
            self._log_ignored(event)
            return

        # The notification itself is unsigned; Google's API is the source of truth.
        purchase = self.fetch_purchase(purchase_token)
        subscription = self.subscriptions.repository.find_by_gateway_id(self.gateway, purchase_token)
        if subscription is None:
            self._bind_purchase(event, purchase_token, purchase, signal)
            return

        expiry = latest_expiry(purchase)
        order_id = purchase.get("latestOrderId")
        metadata = {"notification_type": code, "subscription_state": purchase.get("subscriptionState")}

        if signal is WebhookSignal.RENEWED:
            self._mark_renewed(subscription, ends_at=expiry, gateway_transaction_id=order_id, metadata=metadata)
        elif signal is WebhookSignal.RECOVERED:
            resumed = self.subscriptions.resume(subscription)
            self._mark_renewed(resumed, ends_at=expiry, gateway_transaction_id=order_id, metadata=metadata)
        elif signal is WebhookSignal.CANCEL_AT_PERIOD_END:
            if expiry is not None:
                # Access runs until Google's expiryTime, not our cached period end.
                synced = self.subscriptions.sync_ends_at(subscription, expiry, gateway_response=purchase)
                subscription = synced or subscription
            self._mark_canceled(subscription, immediate=False, reason="canceled", metadata=metadata)
        elif signal is WebhookSignal.CANCELED:
            self._mark_canceled(
                subscription,
                immediate=True,
                reason="revoked" if code == 12 else "expired",
                metadata=metadata,
            )
        else:
            self._record_payment_failure(
                subscription,
                reason="on_hold" if code == 5 else "in_grace_period",
                gateway_transaction_id=order_id,
                metadata=metadata,
            )
            if expiry is not None:
                self.subscriptions.sync_ends_at(subscription, expiry, gateway_response=purchase)

        logger.info(
            "Processed Google Play notification",
            extra={
                "gateway": self.gateway.value,
                "subscription_id": subscription.id,
                "event_type": event.event_type,
                "signal": signal.value,
            },
        )

    def _bind_purchase(
        self,
        event: VerifiedWebhook,
        purchase_token: str,
        purchase: Mapping[str, Any],
        signal: WebhookSignal,
    ) -> Optional[Subscription]:
        """Attach a purchase made outside ``create_subscription`` to its subscriber."""

        if signal not in (WebhookSignal.RENEWED, WebhookSignal.RECOVERED):
            self._log_unmatched(event, purchase_token_suffix=purchase_token[-8:])
            return None

        owner = self._purchase_owner(purchase)
        if owner is None:
            self._log_unmatched(event, reason="no obfuscated account id", purchase_token_suffix=purchase_token[-8:])
            return None

        line_items: List[Mapping[str, Any]] = list(purchase.get("lineItems") or [])
        line = line_items[0] if line_items else {}
        offer = line.get("offerDetails") or {}
        plan = self.subscriptions.find_plan_for_gateway(
            self.gateway,
            gateway_plan_id=offer.get("basePlanId"),
            gateway_offer_id=offer.get("offerId"),
            gateway_product_id=line.get("productId"),
        )
        if plan is None:
            self._log_unmatched(
                event,
                reason="no plan for product",
                product_id=line.get("productId"),
                base_plan_id=offer.get("basePlanId"),
                offer_id=offer.get("offerId"),
            )
            return None

        pending = next(
            (
                candidate
                for candidate in self.subscriptions.repository.list_for_subscriber(owner)
                if candidate.gateway == self.gateway and candidate.plan_id == plan.id and candidate.is_pending
            ),
            None,
        )
        try:
            if pending is None:
                pending = self.subscriptions.create_pending(owner, plan, self.gateway, gateway_id=purchase_token)
            activated = self._mark_active(
                pending,
                gateway_id=purchase_token,
                ends_at=latest_expiry(purchase),
                gateway_response=purchase,
                gateway_transaction_id=purchase.get("latestOrderId"),
            )
        except DuplicateSubscription:
            # A concurrent delivery bound the same purchase token first.
            existing = self.subscriptions.repository.find_by_gateway_id(self.gateway, purchase_token)
            logger.info(
                "Google Play purchase already bound",
                extra={"gateway": self.gateway.value, "subscription_id": existing.id if existing else None},
            )
            return existing
        logger.info(
            "Bound Google Play purchase to subscriber",
            extra={"gateway": self.gateway.value, "subscription_id": pending.id, "plan_id": plan.id},
        )
        return activated
