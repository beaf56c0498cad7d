"""PayPal Subscriptions adapter using the REST billing API."""
from __future__ import annotations

import base64
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from ..subscriptions.exceptions import ProviderError, UnsupportedOperation, ValidationError
from ..subscriptions.models import Gateway, Plan, Subscription, TransactionType
from ..subscriptions.pricing import resolve_price
from ..subscriptions.service import amount_or_none
from .base import GatewayAdapter, reference_for, subscription_id_from_reference
from .google import parse_rfc3339
from .http import (
    HttpClient,
    HttpResponse,
    RetryPolicy,
    expect_json,
    form_body,
    json_body,
    new_idempotency_key,
    send_with_retries,
)
from .notifications import VerifiedWebhook, WebhookSignal

logger = logging.getLogger(__name__)

PAYPAL_SIGNALS: Dict[str, WebhookSignal] = {
    "BILLING.SUBSCRIPTION.ACTIVATED": WebhookSignal.ACTIVATED,
    "BILLING.SUBSCRIPTION.CREATED": WebhookSignal.ACTIVATED,
    "BILLING.SUBSCRIPTION.CANCELLED": WebhookSignal.CANCELED,
    "BILLING.SUBSCRIPTION.EXPIRED": WebhookSignal.CANCELED,
    "BILLING.SUBSCRIPTION.SUSPENDED": WebhookSignal.PAYMENT_FAILED,
    "BILLING.SUBSCRIPTION.PAYMENT.FAILED": WebhookSignal.PAYMENT_FAILED,
    "BILLING.SUBSCRIPTION.RE-ACTIVATED": WebhookSignal.RECOVERED,
    "PAYMENT.SALE.COMPLETED": WebhookSignal.RENEWED,
    "PAYMENT.SALE.DENIED": WebhookSignal.PAYMENT_FAILED,
}

_APPROVAL_RELS = ("approve", "payer-action")
# Statuses a freshly created subscription reports before the buyer has approved it.
_AWAITING_APPROVAL = ("APPROVAL_PENDING", "APPROVED")


def approval_link(response: Mapping[str, Any]) -> Optional[str]:
    for link in response.get("links") or []:
        if link.get("rel") in _APPROVAL_RELS and link.get("href"):
            return str(link["href"])
    return None


class PayPalClient:
    """Authenticated access to the PayPal REST API with a cached OAuth token."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        base_url: str,
        http_client: HttpClient,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self.base_url = base_url.rstrip("/")
        self._http_client = http_client
        self._retry_policy = retry_policy or RetryPolicy()
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at: Optional[datetime] = None

    def _send(self, method: str, path: str, *, action: str, headers: Mapping[str, str], body: Optional[bytes]) -> HttpResponse:
        return send_with_retries(
            self._http_client,
            method,
            f"{self.base_url}{path}",
            gateway=Gateway.PAYPAL.value,
            action=action,
            policy=self._retry_policy,
            headers=headers,
            body=body,
            timeout=self._timeout,
        )

    def access_token(self) -> str:
        with self._lock:
            now = self._clock()
            if self._token and self._expires_at and now < self._expires_at - timedelta(seconds=60):
                return self._token

        token, expires_at = self._fetch_token(now)
        with self._lock:
            self._token = token
            self._expires_at = expires_at
        return token

    def _fetch_token(self, now: datetime) -> Tuple[str, datetime]:
        credentials = base64.b64encode(f"{self._client_id}:{self._client_secret}".encode("utf-8")).decode("ascii")
        response = self._send(
            "POST",
            "/v1/oauth2/token",
            action="oauth_token",
            headers={
                "Authorization": f"Basic {credentials}",
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            body=form_body({"grant_type": "client_credentials"}),
        )
        payload = expect_json(response, gateway=Gateway.PAYPAL.value, action="oauth_token")
        token = payload.get("access_token")
        if not token:
            raise ProviderError(Gateway.PAYPAL.value, "OAuth response contained no access_token")
        return str(token), now + timedelta(seconds=int(payload.get("expires_in") or 3600))

    def call(
        self,
        method: str,
        path: str,
        *,
        action: str,
        payload: Optional[Mapping[str, Any]] = None,
        body: Optional[bytes] = None,
        request_id: Optional[str] = None,
    ) -> HttpResponse:
        headers = {
            "Authorization": f"Bearer {self.access_token()}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        if payload is not None:
            body = json_body(payload)
        return self._send(method, path, action=action, headers=headers, body=body)

    def get_subscription(self, paypal_subscription_id: str) -> Dict[str, Any]:
        response = self.call("GET", f"/v1/billing/subscriptions/{paypal_subscription_id}", action="get_subscription")
        return expect_json(response, gateway=Gateway.PAYPAL.value, action="get_subscription")

    def verify_webhook_signature(
        self,
        *,
        webhook_id: str,
        transmission_id: str,
        transmission_time: str,
        cert_url: str,
        auth_algo: str,
        transmission_sig: str,
        raw_event: bytes,
    ) -> str:
        """Ask PayPal to check a delivery; returns its ``verification_status``.

        The event is spliced in byte-for-byte because PayPal signs the exact
        body it sent, and re-serializing could reorder or reformat it.
        """

        envelope = json.dumps(
            {
                "auth_algo": auth_algo,
                "cert_url": cert_url,
                "transmission_id": transmission_id,
                "transmission_sig": transmission_sig,
                "transmission_time": transmission_time,
                "webhook_id": webhook_id,
            },
            separators=(",", ":"),
        )
        body = envelope[:-1].encode("utf-8") + b',"webhook_event":' + raw_event.strip() + b"}"
        response = self.call(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            action="verify_webhook_signature",
            body=body,
        )
        payload = expect_json(response, gateway=Gateway.PAYPAL.value, action="verify_webhook_signature")
        return str(payload.get("verification_status") or "")


class PayPalGateway(GatewayAdapter):
    """Redirect-checkout provider; activation arrives by webhook after approval."""

    gateway = Gateway.PAYPAL

    def __init__(
        self,
        *,
        client: PayPalClient,
        use_custom_id: bool = True,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        brand_name: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.client = client
        self.use_custom_id = use_custom_id
        self.return_url = return_url
        self.cancel_url = cancel_url
        self.brand_name = brand_name

    def create_subscription(self, subscription: Subscription, options: Mapping[str, Any]) -> Dict[str, Any]:
        price = self._price(subscription)
        if not price.gateway_plan_id:
            raise ValidationError("Plan has no PayPal plan id", detail={"plan_id": subscription.plan_id})

        application_context = {
            "brand_name": options.get("brand_name") or self.brand_name,
            "locale": options.get("locale") or "en-US",
            "shipping_preference": "NO_SHIPPING",
            "user_action": "SUBSCRIBE_NOW",
            "return_url": options.get("return_url") or self.return_url,
            "cancel_url": options.get("cancel_url") or self.cancel_url,
        }
        payload: Dict[str, Any] = {
            "plan_id": price.gateway_plan_id,
            "application_context": {key: value for key, value in application_context.items() if value},
        }
        if options.get("email"):
            payload["subscriber"] = {"email_address": options["email"]}
            if options.get("given_name") or options.get("surname"):
                payload["subscriber"]["name"] = {
                    "given_name": options.get("given_name") or "",
                    "surname": options.get("surname") or "",
                }
        if self.use_custom_id:
            payload["custom_id"] = reference_for(subscription)

        response = self.client.call(
            "POST",
            "/v1/billing/subscriptions",
            action="create_subscription",
            payload=payload,
            request_id=new_idempotency_key(self.gateway.value, "create", subscription.id),
        )
        body = expect_json(response, gateway=self.gateway.value, action="create_subscription")
        if body.get("status") != "APPROVAL_PENDING" or not body.get("id"):
            raise ProviderError(
                self.gateway.value,
                "PayPal did not return a subscription awaiting approval",
                detail={"status": body.get("status")},
            )

        self.subscriptions.set_gateway_id(subscription, str(body["id"]), gateway_response=body)
        logger.info(
            "Created PayPal subscription awaiting approval",
            extra={"gateway": self.gateway.value, "subscription_id": subscription.id, "gateway_id": body["id"]},
        )
        return body

    def redirect_target(
        self,
        subscription: Subscription,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        response: Mapping[str, Any] = subscription.gateway_response
        if not (subscription.gateway_id and approval_link(response)):
            response = self.create_subscription(subscription, options or {})
        link = approval_link(response)
        if link is None:
            raise ProviderError(self.gateway.value, "PayPal response had no approval link")
        return link

    def cancel_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.gateway_id:
            response = self.client.call(
                "POST",
                f"/v1/billing/subscriptions/{subscription.gateway_id}/cancel",
                action="cancel_subscription",
                payload={"reason": "Canceled by subscriber"},
                request_id=new_idempotency_key(self.gateway.value, "cancel", subscription.id),
            )
            if not response.ok:
                expect_json(response, gateway=self.gateway.value, action="cancel_subscription")
        return self._mark_canceled(subscription, immediate=True, reason="canceled_by_request")

    def resume_subscription(self, subscription: Subscription) -> Subscription:
        """Reactivate a suspended PayPal subscription."""

        if not subscription.gateway_id:
            raise UnsupportedOperation(self.gateway.value, "resume")
        response = self.client.call(
            "POST",
            f"/v1/billing/subscriptions/{subscription.gateway_id}/activate",
            action="activate_subscription",
            payload={"reason": "Reactivated by subscriber"},
            request_id=new_idempotency_key(self.gateway.value, "activate", subscription.id),
        )
        if response.status_code == 422:
            raise UnsupportedOperation(
                self.gateway.value,
                "resume",
                "PayPal can only reactivate suspended subscriptions",
            )
        if not response.ok:
            expect_json(response, gateway=self.gateway.value, action="activate_subscription")
        return self.subscriptions.resume(subscription)

    def swap_plan(self, subscription: Subscription, new_plan: Plan) -> Subscription:
        if not subscription.gateway_id:
            raise ValidationError("Subscription has not been created at PayPal yet")
        new_price = resolve_price(new_plan, self.gateway)
        if not new_price.gateway_plan_id:
            raise ValidationError("Plan has no PayPal plan id", detail={"plan_id": new_plan.id})

        response = self.client.call(
            "POST",
            f"/v1/billing/subscriptions/{subscription.gateway_id}/revise",
            action="revise_subscription",
            payload={"plan_id": new_price.gateway_plan_id},
            request_id=new_idempotency_key(self.gateway.value, "revise", subscription.id),
        )
        body = expect_json(response, gateway=self.gateway.value, action="revise_subscription")

        swapped = self.subscriptions.swap(subscription, new_plan)
        self.subscriptions.record_transaction(
            swapped,
            TransactionType.PLAN_SWAP,
            amount=new_price.amount,
            currency=new_price.currency,
            metadata={
                "previous_plan_id": subscription.plan_id,
                "plan_id": new_plan.id,
                "approval_url": approval_link(body),
            },
        )
        return swapped

    def _find_subscription(self, event_type: str, resource: Mapping[str, Any]) -> Optional[Subscription]:
        repository = self.subscriptions.repository
        if event_type.startswith("PAYMENT.SALE."):
            gateway_id = resource.get("billing_agreement_id")
        else:
            gateway_id = resource.get("id")
        if gateway_id:
            found = repository.find_by_gateway_id(self.gateway, str(gateway_id))
            if found is not None:
                return found

        local_id = subscription_id_from_reference(resource.get("custom_id") or resource.get("custom"))
        if local_id:
            found = repository.get_subscription(local_id)
            if found is not None and found.gateway == self.gateway:
                return found
        return None

    def handle_webhook(self, event: VerifiedWebhook) -> None:
        event_type = event.event_type
        resource = event.payload.get("resource") or {}
        signal = PAYPAL_SIGNALS.get(event_type)
        if signal is None:
            self._log_ignored(event)
            return

        subscription = self._find_subscription(event_type, resource)
        if subscription is None:
            self._log_unmatched(
                event,
                resource_id=resource.get("id"),
                billing_agreement_id=resource.get("billing_agreement_id"),
            )
            return

        metadata = {"event_type": event_type}
        if signal is WebhookSignal.ACTIVATED:
            if event_type == "BILLING.SUBSCRIPTION.CREATED" and resource.get("status") in _AWAITING_APPROVAL:
                logger.info(
                    "PayPal subscription created but not yet approved",
                    extra={
                        "gateway": self.gateway.value,
                        "subscription_id": subscription.id,
                        "status": resource.get("status"),
                    },
                )
                return
            billing_info = resource.get("billing_info") or {}
            last_payment = (billing_info.get("last_payment") or {}).get("amount") or {}
            self._mark_active(
                subscription,
                gateway_id=str(resource.get("id") or subscription.gateway_id or "") or None,
                ends_at=parse_rfc3339(billing_info.get("next_billing_time")),
                gateway_response=resource,
                amount=amount_or_none(last_payment.get("value")),
                currency=last_payment.get("currency_code"),
            )
        elif signal is WebhookSignal.RENEWED:
            amount = resource.get("amount") or {}
            # The sale carries no period end; PayPal's subscription record does.
            details = self.client.get_subscription(str(resource.get("billing_agreement_id") or subscription.gateway_id))
            next_billing = parse_rfc3339((details.get("billing_info") or {}).get("next_billing_time"))
            self._mark_renewed(
                subscription,
                ends_at=next_billing,
                gateway_transaction_id=resource.get("id"),
                amount=amount_or_none(amount.get("total")),
                currency=amount.get("currency"),
                metadata=metadata,
            )
        elif signal is WebhookSignal.CANCELED:
            self._mark_canceled(subscription, immediate=True, reason=event_type.rsplit(".", 1)[-1].lower(), metadata=metadata)
        elif signal is WebhookSignal.RECOVERED:
            self.subscriptions.resume(subscription)
        else:
            amount = resource.get("amount") or {}
            self._record_payment_failure(
                subscription,
                reason=event_type.lower(),
                gateway_transaction_id=resource.get("id") if event_type.startswith("PAYMENT.SALE.") else None,
                amount=amount_or_none(amount.get("total")),
                currency=amount.get("currency"),
                metadata=metadata,
            )

        logger.info(
            "Processed PayPal webhook",
            extra={
                "gateway": self.gateway.value,
                "subscription_id": subscription.id,
                "event_type": event_type,
                "signal": signal.value,
            },
        )
