"""Apple App Store adapter: receipt validation and server notifications v2."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from ..subscriptions.exceptions import ValidationError
from ..subscriptions.models import Gateway, Subscription, TransactionStatus, TransactionType, quantize_amount
from .base import GatewayAdapter
from .http import expect_json, json_body
from .notifications import VerifiedWebhook, WebhookSignal

logger = logging.getLogger(__name__)

PRODUCTION_VERIFY_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_VERIFY_URL = "https://sandbox.itunes.apple.com/verifyReceipt"
# verifyReceipt answers this when a sandbox receipt hits production.
SANDBOX_RECEIPT_STATUS = 21007

_SIGNALS: Dict[str, WebhookSignal] = {
    "SUBSCRIBED": WebhookSignal.RENEWED,
    "DID_RENEW": WebhookSignal.RENEWED,
    "DID_FAIL_TO_RENEW": WebhookSignal.PAYMENT_FAILED,
    "EXPIRED": WebhookSignal.CANCELED,
    "REVOKE": WebhookSignal.CANCELED,
    "GRACE_PERIOD_EXPIRED": WebhookSignal.CANCELED,
    "BILLING_RECOVERY": WebhookSignal.RECOVERED,
    "REFUND": WebhookSignal.REFUNDED,
}


def apple_signal(notification_type: Optional[str], subtype: Optional[str]) -> Optional[WebhookSignal]:
    """Translate an App Store notification type and subtype into a signal."""

    if notification_type == "DID_CHANGE_RENEWAL_STATUS":
        if subtype == "AUTO_RENEW_DISABLED":
            return WebhookSignal.CANCEL_AT_PERIOD_END
        if subtype == "AUTO_RENEW_ENABLED":
            return WebhookSignal.RECOVERED
        return None
    if notification_type == "DID_RENEW" and subtype == "BILLING_RECOVERY":
        return WebhookSignal.RECOVERED
    return _SIGNALS.get(notification_type or "")


def _from_millis(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _from_milli_units(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    return quantize_amount(Decimal(str(value)) / 1000)


class AppleGateway(GatewayAdapter):
    """Store-receipt provider; cancellation and plan changes happen on device."""

    gateway = Gateway.APPLE

    def __init__(self, *, shared_secret: str, sandbox: bool = True, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._shared_secret = shared_secret
        self.sandbox = sandbox

    def verify_receipt(self, receipt_data: str) -> Dict[str, Any]:
        """Call ``verifyReceipt``, falling back to sandbox for sandbox receipts."""

        url = SANDBOX_VERIFY_URL if self.sandbox else PRODUCTION_VERIFY_URL
        response = self._post_receipt(url, receipt_data)
        if response.get("status") == SANDBOX_RECEIPT_STATUS and url == PRODUCTION_VERIFY_URL:
            logger.info("Retrying Apple receipt against sandbox", extra={"gateway": self.gateway.value})
            response = self._post_receipt(SANDBOX_VERIFY_URL, receipt_data)
        return response

    def _post_receipt(self, url: str, receipt_data: str) -> Dict[str, Any]:
        response = self._send(
            "POST",
            url,
            action="verify_receipt",
            headers={"Content-Type": "application/json"},
            body=json_body(
                {
                    "receipt-data": receipt_data,
                    "password": self._shared_secret,
                    "exclude-old-transactions": True,
                }
            ),
        )
        return expect_json(response, gateway=self.gateway.value, action="verify_receipt")

    def create_subscription(self, subscription: Subscription, options: Mapping[str, Any]) -> Dict[str, Any]:
        receipt_data = options.get("receipt_data")
        if not receipt_data:
            raise ValidationError("receipt_data is required for Apple purchases")

        response = self.verify_receipt(str(receipt_data))
        status = response.get("status")
        if status != 0:
            raise ValidationError(f"Invalid receipt: status {status}", detail={"apple_status": status})

        receipt_lines = response.get("latest_receipt_info") or []
        if not receipt_lines:
            raise ValidationError("Receipt contains no subscription transactions")
        latest = max(receipt_lines, key=lambda line: int(line.get("expires_date_ms") or 0))

        price = self._price(subscription)
        if price.gateway_plan_id and latest.get("product_id") != price.gateway_plan_id:
            raise ValidationError(
                "Receipt is for a different product",
                detail={"product_id": latest.get("product_id"), "expected_product_id": price.gateway_plan_id},
            )

        gateway_id = latest.get("original_transaction_id") or latest.get("transaction_id")
        self._mark_active(
            subscription,
            gateway_id=str(gateway_id) if gateway_id else None,
            ends_at=_from_millis(latest.get("expires_date_ms")),
            gateway_response=response,
            gateway_transaction_id=str(latest.get("transaction_id") or "") or None,
        )
        return response

    def cancel_subscription(self, subscription: Subscription) -> Subscription:
        # Subscribers cancel in the App Store; there is no server-side API.
        logger.info(
            "Canceling Apple subscription locally",
            extra={"gateway": self.gateway.value, "subscription_id": subscription.id},
        )
        return self._mark_canceled(subscription, immediate=True, reason="canceled_by_request")

    def handle_webhook(self, event: VerifiedWebhook) -> None:
        payload = event.payload
        data = payload.get("data") or {}
        transaction = data.get("transactionInfo") or {}
        original_id = transaction.get("originalTransactionId")
        if not original_id:
            self._log_unmatched(event, reason="missing originalTransactionId")
            return

        subscription = self.subscriptions.repository.find_by_gateway_id(self.gateway, str(original_id))
        if subscription is None:
            self._log_unmatched(event, original_transaction_id=original_id, product_id=transaction.get("productId"))
            return

        notification_type = payload.get("notificationType")
        subtype = payload.get("subtype")
        signal = apple_signal(notification_type, subtype)
        if signal is None:
            self._log_ignored(event)
            return

        expires_at = _from_millis(transaction.get("expiresDate"))
        transaction_id = str(transaction.get("transactionId") or "") or None
        amount = _from_milli_units(transaction.get("price"))
        currency = transaction.get("currency") if amount is not None else None
        metadata = {"notification_type": notification_type, "subtype": subtype}

        if signal is WebhookSignal.RENEWED:
            self._mark_renewed(
                subscription,
                ends_at=expires_at,
                gateway_transaction_id=transaction_id,
                amount=amount,
                currency=currency,
                metadata=metadata,
            )
        elif signal is WebhookSignal.RECOVERED:
            resumed = self.subscriptions.resume(subscription)
            self._mark_renewed(
                resumed,
                ends_at=expires_at,
                gateway_transaction_id=transaction_id,
                amount=amount,
                currency=currency,
                metadata=metadata,
            )
        elif signal is WebhookSignal.PAYMENT_FAILED:
            self._record_payment_failure(
                subscription,
                reason=(subtype or notification_type or "").lower(),
                gateway_transaction_id=transaction_id,
                metadata=metadata,
            )
        elif signal is WebhookSignal.CANCEL_AT_PERIOD_END:
            self._mark_canceled(subscription, immediate=False, reason="auto_renew_disabled", metadata=metadata)
        elif signal is WebhookSignal.REFUNDED:
            price = self._price(subscription)
            self.subscriptions.record_transaction(
                subscription,
                TransactionType.REFUND,
                amount=price.amount if amount is None else amount,
                currency=currency or price.currency,
                gateway_transaction_id=transaction_id,
                status=TransactionStatus.REFUNDED,
                metadata=metadata,
            )
            self._mark_canceled(subscription, immediate=True, reason="refund", metadata=metadata)
        else:
            self._mark_canceled(
                subscription,
                immediate=True,
                reason=(notification_type or "expired").lower(),
                metadata=metadata,
            )

        logger.info(
            "Processed Apple notification",
            extra={
                "gateway": self.gateway.value,
                "subscription_id": subscription.id,
                "event_type": notification_type,
                "signal": signal.value,
            },
        )
