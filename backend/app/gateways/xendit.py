"""Xendit recurring-plan adapter."""
from __future__ import annotations

import base64
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from ..subscriptions.exceptions import ProviderError, ValidationError
from ..subscriptions.models import BillingInterval, Gateway, Plan, Subscription, TransactionType
from ..subscriptions.service import amount_or_none
from .base import GatewayAdapter, reference_for, subscription_id_from_reference
from .google import parse_rfc3339
from .http import HttpResponse, expect_json, json_body, new_idempotency_key
from .notifications import VerifiedWebhook

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.xendit.co"
API_VERSION = "2022-07-31"

_SCHEDULE_INTERVALS: Dict[BillingInterval, Tuple[str, int]] = {
    BillingInterval.DAY: ("DAY", 1),
    BillingInterval.WEEK: ("WEEK", 1),
    BillingInterval.MONTH: ("MONTH", 1),
    BillingInterval.YEAR: ("MONTH", 12),
}


def schedule_interval(plan: Plan) -> Tuple[str, int]:
    """Map a plan's billing cadence onto Xendit's schedule units."""

    try:
        unit, multiplier = _SCHEDULE_INTERVALS[plan.interval]
    except KeyError:
        raise ValidationError(
            f"Xendit cannot bill every {plan.interval.value}",
            detail={"plan_id": plan.id, "interval": plan.interval.value},
        ) from None
    return unit, multiplier * plan.interval_count


def auth_action_url(response: Mapping[str, Any]) -> Optional[str]:
    for action in response.get("actions") or []:
        if action.get("action") == "AUTH" and action.get("url"):
            return str(action["url"])
    return None


class XenditGateway(GatewayAdapter):
    """Recurring plans linked through Xendit's hosted authorization page."""

    gateway = Gateway.XENDIT

    def __init__(
        self,
        *,
        secret_key: str,
        success_return_url: Optional[str] = None,
        failure_return_url: Optional[str] = None,
        currencies: Sequence[str] = (),
        base_url: str = API_BASE_URL,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._secret_key = secret_key
        self.success_return_url = success_return_url
        self.failure_return_url = failure_return_url
        self.currencies = tuple(currency.upper() for currency in currencies)
        self.base_url = base_url.rstrip("/")

    def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        payload: Optional[Mapping[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> HttpResponse:
        credentials = base64.b64encode(f"{self._secret_key}:".encode("utf-8")).decode("ascii")
        headers = {
            "Authorization": f"Basic {credentials}",
            "Content-Type": "application/json",
            "api-version": API_VERSION,
        }
        if idempotency_key:
            headers["idempotency-key"] = idempotency_key
        return self._send(
            method,
            f"{self.base_url}{path}",
            action=action,
            headers=headers,
            body=json_body(payload) if payload is not None else None,
        )

    def create_subscription(self, subscription: Subscription, options: Mapping[str, Any]) -> Dict[str, Any]:
        plan = self.subscriptions.plan_for(subscription)
        price = self._price(subscription, plan)
        if self.currencies and price.currency not in self.currencies:
            raise ValidationError(
                f"Xendit does not support {price.currency}",
                detail={"currency": price.currency, "supported": list(self.currencies)},
            )
        interval, interval_count = schedule_interval(plan)

        payload: Dict[str, Any] = {
            "reference_id": reference_for(subscription),
            "recurring_action": "PAYMENT",
            "currency": price.currency,
            "amount": float(price.amount),
            "schedule": {
                "reference_id": f"sched-{subscription.id}",
                "interval": interval,
                "interval_count": interval_count,
                "retry_interval": "DAY",
                "retry_interval_count": 3,
                "total_retry": 9,
                "failed_attempt_notifications": [1, 3, 9],
            },
            "description": f"{plan.name} Subscription",
            "notification_config": {
                "recurring_created": ["EMAIL"],
                "recurring_succeeded": ["EMAIL"],
                "recurring_failed": ["EMAIL"],
                "locale": options.get("locale") or "en",
            },
            "failed_cycle_action": "STOP",
            "immediate_action_type": "FULL_AMOUNT",
            "metadata": {"subscription_id": subscription.id, "subscriber": subscription.subscriber.key()},
        }
        if options.get("customer_id"):
            payload["customer_id"] = options["customer_id"]
        success_url = options.get("success_return_url") or self.success_return_url
        failure_url = options.get("failure_return_url") or self.failure_return_url
        if success_url:
            payload["success_return_url"] = success_url
        if failure_url:
            payload["failure_return_url"] = failure_url

        response = self._request(
            "POST",
            "/recurring/plans",
            action="create_plan",
            payload=payload,
            idempotency_key=new_idempotency_key(self.gateway.value, "create", subscription.id),
        )
        body = expect_json(response, gateway=self.gateway.value, action="create_plan")
        if not body.get("id"):
            raise ProviderError(self.gateway.value, "Xendit response had no plan id")

        updated = self.subscriptions.set_gateway_id(subscription, str(body["id"]), gateway_response=body)
        self.subscriptions.record_transaction(
            updated,
            TransactionType.SETUP,
            amount=price.amount,
            currency=price.currency,
            gateway_transaction_id=str(body["id"]),
            metadata={"status": body.get("status")},
        )
        return body

    def redirect_target(
        self,
        subscription: Subscription,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        response: Mapping[str, Any] = subscription.gateway_response
        if not (subscription.gateway_id and auth_action_url(response)):
            response = self.create_subscription(subscription, options or {})
        url = auth_action_url(response)
        if url is None:
            raise ProviderError(
                self.gateway.value,
                f"No AUTH action in Xendit response (plan status {response.get('status')})",
            )
        return url

    def cancel_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.gateway_id:
            # Deactivation is permanent at Xendit; there is no resume.
            response = self._request(
                "POST",
                f"/recurring/plans/{subscription.gateway_id}/deactivate",
                action="deactivate_plan",
                idempotency_key=new_idempotency_key(self.gateway.value, "cancel", subscription.id),
            )
            expect_json(response, gateway=self.gateway.value, action="deactivate_plan")
        return self._mark_canceled(subscription, immediate=True, reason="canceled_by_request")

    def swap_plan(self, subscription: Subscription, new_plan: Plan) -> Subscription:
        if not subscription.gateway_id:
            raise ValidationError("Subscription has not been created at Xendit yet")
        current_price = self._price(subscription)
        new_price = self._price(subscription, new_plan)
        interval, interval_count = schedule_interval(new_plan)

        details = expect_json(
            self._request("GET", f"/recurring/plans/{subscription.gateway_id}", action="get_plan"),
            gateway=self.gateway.value,
            action="get_plan",
        )

        plan_changes: Dict[str, Any] = {"description": f"{new_plan.name} Subscription"}
        if new_price.amount != current_price.amount:
            plan_changes["amount"] = float(new_price.amount)
        if new_price.currency != current_price.currency:
            plan_changes["currency"] = new_price.currency
        expect_json(
            self._request(
                "PATCH",
                f"/recurring/plans/{subscription.gateway_id}",
                action="update_plan",
                payload=plan_changes,
                idempotency_key=new_idempotency_key(self.gateway.value, "swap", subscription.id),
            ),
            gateway=self.gateway.value,
            action="update_plan",
        )

        schedule = details.get("schedule") or {}
        if schedule.get("id") and (
            schedule.get("interval") != interval or schedule.get("interval_count") != interval_count
        ):
            expect_json(
                self._request(
                    "PATCH",
                    f"/recurring/schedules/{schedule['id']}",
                    action="update_schedule",
                    payload={"interval": interval, "interval_count": interval_count},
                    idempotency_key=new_idempotency_key(self.gateway.value, "reschedule", subscription.id),
                ),
                gateway=self.gateway.value,
                action="update_schedule",
            )

        swapped = self.subscriptions.swap(subscription, new_plan)
        self.subscriptions.record_transaction(
            swapped,
            TransactionType.PLAN_SWAP,
            amount=new_price.amount,
            currency=new_price.currency,
            gateway_transaction_id=subscription.gateway_id,
            metadata={"previous_plan_id": subscription.plan_id, "plan_id": new_plan.id},
        )
        return swapped

    def _first_period_end(self, subscription: Subscription) -> datetime:
        return self.subscriptions.plan_for(subscription).next_period_end(self.subscriptions.now())

    def _find_subscription(self, data: Mapping[str, Any]) -> Optional[Subscription]:
        repository = self.subscriptions.repository
        local_id = subscription_id_from_reference(data.get("reference_id"))
        if local_id:
            found = repository.get_subscription(local_id)
            if found is not None and found.gateway == self.gateway:
                return found
        for key in ("plan_id", "id"):
            gateway_id = data.get(key)
            if gateway_id:
                found = repository.find_by_gateway_id(self.gateway, str(gateway_id))
                if found is not None:
                    return found
        return None

    def handle_webhook(self, event: VerifiedWebhook) -> None:
        event_type = event.event_type
        data = event.payload.get("data") or {}
        subscription = self._find_subscription(data)
        if subscription is None:
            self._log_unmatched(event, reference_id=data.get("reference_id"), plan_id=data.get("plan_id") or data.get("id"))
            return

        amount = amount_or_none(data.get("amount"))
        currency = data.get("currency") if amount is not None else None
        metadata = {"event_type": event_type}

        if event_type == "recurring.plan.activated":
            self._mark_active(
                subscription,
                gateway_id=str(data.get("id") or subscription.gateway_id or "") or None,
                ends_at=self._first_period_end(subscription),
                gateway_response=data,
                gateway_transaction_id=data.get("id"),
                amount=amount,
                currency=currency,
            )
        elif event_type == "recurring.plan.inactivated":
            self._mark_canceled(subscription, immediate=True, reason="plan_inactivated", metadata=metadata)
        elif event_type == "recurring.cycle.succeeded":
            cycle_id = data.get("id")
            plan = self.subscriptions.plan_for(subscription)
            if subscription.is_pending:
                self._mark_renewed(
                    subscription,
                    ends_at=self._first_period_end(subscription),
                    gateway_transaction_id=cycle_id,
                    amount=amount,
                    currency=currency,
                    metadata=metadata,
                )
            elif int(data.get("cycle_number") or 0) == 1:
                # The first cycle is the activation charge, already covered.
                logger.info(
                    "Ignoring first Xendit cycle for active subscription",
                    extra={"gateway": self.gateway.value, "subscription_id": subscription.id, "cycle_id": cycle_id},
                )
            else:
                scheduled = parse_rfc3339(data.get("scheduled_timestamp"))
                self.subscriptions.renew(
                    subscription,
                    plan.next_period_end(scheduled) if scheduled else None,
                    amount=amount,
                    currency=currency,
                    gateway_transaction_id=cycle_id,
                    metadata=metadata,
                )
        elif event_type == "recurring.cycle.failed":
            self._record_payment_failure(
                subscription,
                reason="cycle_failed",
                gateway_transaction_id=data.get("id"),
                amount=amount,
                currency=currency,
                metadata=metadata,
            )
            if data.get("failed_cycle_action") == "STOP":
                self._mark_canceled(subscription, immediate=True, reason="cycle_failed", metadata=metadata)
        elif event_type == "recurring.cycle.retrying":
            logger.info(
                "Xendit cycle retrying",
                extra={
                    "gateway": self.gateway.value,
                    "subscription_id": subscription.id,
                    "cycle_id": data.get("id"),
                    "attempt_count": data.get("attempt_count"),
                },
            )
        else:
            self._log_ignored(event)
            return

        logger.info(
            "Processed Xendit webhook",
            extra={"gateway": self.gateway.value, "subscription_id": subscription.id, "event_type": event_type},
        )
