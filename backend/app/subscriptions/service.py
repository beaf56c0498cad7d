"""Subscription state machine shared by every gateway adapter."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence
from uuid import uuid4

from .events import SubscriptionEvent, SubscriptionEventSink, SubscriptionEventType
from .exceptions import SubscriptionNotFound
from .models import (
    Gateway,
    Plan,
    SubscriberRef,
    Subscription,
    SubscriptionState,
    SubscriptionTransaction,
    TransactionStatus,
    TransactionType,
    UsageRecord,
    WebhookEventRecord,
    ensure_utc,
    quantize_amount,
)
from .pricing import match_plan, resolve_price

logger = logging.getLogger(__name__)


class SubscriptionRepository(Protocol):
    """Persistence operations required by the subscription core.

    Every mutating method is a single guarded write that returns ``None``
    when its guard did not hold, so callers can tell a no-op from a change.
    """

    def list_plans(self) -> Sequence[Plan]:
        ...

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        ...

    def create_subscription(self, subscription: Subscription) -> Subscription:
        ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def find_by_gateway_id(self, gateway: Gateway, gateway_id: str) -> Optional[Subscription]:
        ...

    def list_for_subscriber(self, subscriber: SubscriberRef) -> Sequence[Subscription]:
        ...

    def delete_subscription(self, subscription_id: str) -> bool:
        ...

    def activate(
        self,
        subscription_id: str,
        *,
        gateway_id: Optional[str],
        starts_at: datetime,
        ends_at: Optional[datetime],
        trial_ends_at: Optional[datetime],
        grace_ends_at: Optional[datetime],
        gateway_response: Mapping[str, Any],
    ) -> Optional[Subscription]:
        ...

    def set_gateway_id(
        self,
        subscription_id: str,
        gateway_id: str,
        *,
        gateway_response: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Subscription]:
        ...

    def advance_ends_at(
        self,
        subscription_id: str,
        *,
        ends_at: datetime,
        grace_ends_at: Optional[datetime],
        expected_ends_at: Optional[datetime],
        compare_expected: bool,
    ) -> Optional[Subscription]:
        ...

    def sync_ends_at(
        self,
        subscription_id: str,
        *,
        ends_at: datetime,
        grace_ends_at: Optional[datetime],
        gateway_response: Optional[Mapping[str, Any]] = None,
        forward_only: bool = False,
    ) -> Optional[Subscription]:
        ...

    def mark_canceled(
        self,
        subscription_id: str,
        *,
        canceled_at: datetime,
        immediate: bool,
    ) -> Optional[Subscription]:
        ...

    def clear_canceled(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def swap_plan(self, subscription_id: str, plan_id: str) -> Optional[Subscription]:
        ...

    def append_transaction(self, transaction: SubscriptionTransaction) -> SubscriptionTransaction:
        ...

    def list_transactions(self, subscription_id: str) -> Sequence[SubscriptionTransaction]:
        ...

    def has_transaction(
        self,
        subscription_id: str,
        gateway_transaction_id: str,
        transaction_type: TransactionType,
    ) -> bool:
        ...

    def record_usage_within_quota(self, record: UsageRecord, limit: Optional[int]) -> Optional[UsageRecord]:
        ...

    def sum_usage(self, subscription_id: str, feature_slug: str) -> int:
        ...

    def delete_usage(self, subscription_id: str) -> int:
        ...

    def record_webhook_event(self, record: WebhookEventRecord) -> bool:
        ...

    def forget_webhook_event(self, gateway: Gateway, event_id: str) -> None:
        ...

    def list_due_for_renewal(
        self,
        *,
        due_before: datetime,
        gateways: Optional[Sequence[Gateway]] = None,
        limit: int = 50,
        after_id: Optional[str] = None,
    ) -> Sequence[Subscription]:
        ...


def _current_time(clock: Optional[Callable[[], datetime]]) -> datetime:
    if clock is None:
        return datetime.now(timezone.utc)
    value = clock()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def end_of_day(moment: datetime) -> datetime:
    """Last representable instant of ``moment``'s UTC calendar day."""

    utc = moment.astimezone(timezone.utc)
    return datetime.combine(utc.date(), time.max, tzinfo=timezone.utc)


@dataclass
class RenewalSweepSummary:
    """Outcome counters for one pass over subscriptions due for renewal."""

    scanned: int = 0
    renewed: int = 0
    skipped: int = 0
    failed: int = 0
    failures: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "renewed": self.renewed,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": list(self.failures),
        }


@dataclass
class SubscriptionService:
    """Applies lifecycle transitions and keeps the transaction ledger in step."""

    repository: SubscriptionRepository
    event_sink: SubscriptionEventSink
    clock: Optional[Callable[[], datetime]] = None

    def now(self) -> datetime:
        return _current_time(self.clock)

    # Queries -------------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Subscription:
        subscription = self.repository.get_subscription(subscription_id)
        if subscription is None:
            raise SubscriptionNotFound(subscription_id)
        return subscription

    def get_plan(self, plan_id: str) -> Plan:
        plan = self.repository.get_plan(plan_id)
        if plan is None:
            raise LookupError(f"Plan not found: {plan_id}")
        return plan

    def plan_for(self, subscription: Subscription) -> Plan:
        return self.get_plan(subscription.plan_id)

    def find_plan_for_gateway(
        self,
        gateway: Gateway,
        *,
        gateway_plan_id: Optional[str] = None,
        gateway_offer_id: Optional[str] = None,
        gateway_product_id: Optional[str] = None,
    ) -> Optional[Plan]:
        return match_plan(
            self.repository.list_plans(),
            gateway,
            gateway_plan_id=gateway_plan_id,
            gateway_offer_id=gateway_offer_id,
            gateway_product_id=gateway_product_id,
        )

    def is_active(self, subscription: Subscription) -> bool:
        return subscription.is_active(self.now())

    def on_trial(self, subscription: Subscription) -> bool:
        return subscription.on_trial(self.now())

    def on_grace_period(self, subscription: Subscription) -> bool:
        return subscription.on_grace_period(self.now())

    def state(self, subscription: Subscription) -> SubscriptionState:
        return subscription.state(self.now())

    def active_subscription(self, subscriber: SubscriberRef) -> Optional[Subscription]:
        """Newest confirmed subscription that currently grants entitlements."""

        now = self.now()
        for subscription in self.repository.list_for_subscriber(subscriber):
            if subscription.is_pending:
                continue
            if subscription.is_active(now):
                return subscription
        return None

    def subscribed_to(self, subscriber: SubscriberRef, plan_id: str) -> bool:
        subscription = self.active_subscription(subscriber)
        return subscription is not None and subscription.plan_id == plan_id

    def transactions(self, subscription: Subscription) -> Sequence[SubscriptionTransaction]:
        return self.repository.list_transactions(subscription.id)

    # Lifecycle -------------------------------------------------------------

    def create_pending(
        self,
        subscriber: SubscriberRef,
        plan: Plan,
        gateway: Gateway,
        *,
        gateway_id: Optional[str] = None,
    ) -> Subscription:
        """Persist a subscription awaiting provider confirmation."""

        now = self.now()
        subscription = Subscription(
            id=f"sub_{uuid4().hex}",
            subscriber=subscriber,
            plan_id=plan.id,
            gateway=gateway,
            gateway_id=gateway_id,
            created_at=now,
            updated_at=now,
        )
        stored = self.repository.create_subscription(subscription)
        logger.info(
            "Created pending subscription",
            extra={"subscription_id": stored.id, "gateway": gateway.value, "plan_id": plan.id},
        )
        return stored

    def discard_pending(self, subscription: Subscription) -> bool:
        """Roll back a checkout the provider never confirmed.

        Confirmed subscriptions are left untouched and ``False`` is returned.
        """

        removed = self.repository.delete_subscription(subscription.id)
        if removed:
            logger.info(
                "Discarded unconfirmed subscription",
                extra={"subscription_id": subscription.id, "gateway": subscription.gateway.value},
            )
        return removed

    def activate(
        self,
        subscription: Subscription,
        *,
        gateway_id: Optional[str],
        ends_at: Optional[datetime] = None,
        gateway_response: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Subscription]:
        """Confirm a pending subscription, starting any trial the plan grants.

        Returns ``None`` when the subscription had already been activated.
        """

        now = self.now()
        plan = self.plan_for(subscription)
        ends_at = ensure_utc(ends_at)
        trial_ends_at = now + timedelta(days=plan.trial_days) if plan.trial_days else None
        updated = self.repository.activate(
            subscription.id,
            gateway_id=gateway_id,
            starts_at=now,
            ends_at=ends_at,
            trial_ends_at=trial_ends_at,
            grace_ends_at=plan.grace_end_for(ends_at),
            gateway_response=dict(gateway_response or {}),
        )
        if updated is None:
            logger.info(
                "Subscription already activated; skipping",
                extra={"subscription_id": subscription.id, "gateway": subscription.gateway.value},
            )
            return None

        self._publish(
            SubscriptionEventType.CREATED,
            updated,
            metadata={"plan_id": plan.id, "trial_ends_at": _iso(trial_ends_at), "ends_at": _iso(ends_at)},
        )
        return updated

    def set_gateway_id(
        self,
        subscription: Subscription,
        gateway_id: str,
        *,
        gateway_response: Optional[Mapping[str, Any]] = None,
    ) -> Subscription:
        updated = self.repository.set_gateway_id(
            subscription.id,
            gateway_id,
            gateway_response=dict(gateway_response) if gateway_response is not None else None,
        )
        if updated is None:
            raise SubscriptionNotFound(subscription.id)
        return updated

    def renew(
        self,
        subscription: Subscription,
        next_ends_at: Optional[datetime] = None,
        *,
        amount: Optional[Any] = None,
        currency: Optional[str] = None,
        gateway_transaction_id: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Subscription]:
        """Extend the subscription by one period, or to ``next_ends_at``.

        Returns ``None`` without side effects when the subscription is
        canceled or lapsed, or another writer already advanced it. An
        explicit target only ever moves ``ends_at`` forward, so replaying the
        same provider event is a no-op.
        """

        now = self.now()
        if subscription.is_canceled or not subscription.is_active(now):
            logger.info(
                "Skipping renewal of inactive subscription",
                extra={"subscription_id": subscription.id, "state": subscription.state(now).value},
            )
            return None

        if gateway_transaction_id and self.repository.has_transaction(
            subscription.id, gateway_transaction_id, TransactionType.RENEWAL
        ):
            logger.info(
                "Renewal already recorded for provider transaction",
                extra={"subscription_id": subscription.id, "gateway_transaction_id": gateway_transaction_id},
            )
            return None

        plan = self.plan_for(subscription)
        if next_ends_at is None:
            anchors = [value for value in (subscription.ends_at, subscription.starts_at, now) if value is not None]
            target = plan.next_period_end(max(anchors))
            updated = self.repository.advance_ends_at(
                subscription.id,
                ends_at=target,
                grace_ends_at=plan.grace_end_for(target),
                expected_ends_at=subscription.ends_at,
                compare_expected=True,
            )
        else:
            target = ensure_utc(next_ends_at)
            updated = self.repository.advance_ends_at(
                subscription.id,
                ends_at=target,
                grace_ends_at=plan.grace_end_for(target),
                expected_ends_at=None,
                compare_expected=False,
            )

        if updated is None:
            logger.info(
                "Renewal was a no-op",
                extra={"subscription_id": subscription.id, "target_ends_at": _iso(target)},
            )
            return None

        price = resolve_price(plan, subscription.gateway)
        transaction = self.record_transaction(
            updated,
            TransactionType.RENEWAL,
            amount=price.amount if amount is None else amount,
            currency=currency or price.currency,
            gateway_transaction_id=gateway_transaction_id,
            metadata=metadata,
        )
        self._publish(
            SubscriptionEventType.RENEWED,
            updated,
            metadata={
                "previous_ends_at": _iso(subscription.ends_at),
                "ends_at": _iso(updated.ends_at),
                "renewal_count": updated.renewal_count,
                "transaction_id": transaction.id,
            },
        )
        return updated

    def sync_ends_at(
        self,
        subscription: Subscription,
        ends_at: datetime,
        *,
        gateway_response: Optional[Mapping[str, Any]] = None,
        forward_only: bool = False,
    ) -> Optional[Subscription]:
        """Overwrite the period end with the provider's value."""

        plan = self.plan_for(subscription)
        ends_at = ensure_utc(ends_at)
        return self.repository.sync_ends_at(
            subscription.id,
            ends_at=ends_at,
            grace_ends_at=plan.grace_end_for(ends_at),
            gateway_response=dict(gateway_response) if gateway_response is not None else None,
            forward_only=forward_only,
        )

    def cancel(self, subscription: Subscription, *, immediate: bool = False) -> Subscription:
        """Cancel now or at the end of the paid period.

        Canceling twice keeps the original ``canceled_at``.
        """

        updated = self.cancel_once(subscription, immediate=immediate)
        if updated is None:
            return self.get_subscription(subscription.id)
        return updated

    def cancel_once(self, subscription: Subscription, *, immediate: bool = False) -> Optional[Subscription]:
        """Like :meth:`cancel` but returns ``None`` when nothing changed."""

        now = self.now()
        updated = self.repository.mark_canceled(subscription.id, canceled_at=now, immediate=immediate)
        if updated is None:
            logger.info("Subscription already canceled", extra={"subscription_id": subscription.id})
            return None

        self._publish(
            SubscriptionEventType.CANCELED,
            updated,
            metadata={"immediate": immediate, "ends_at": _iso(updated.ends_at)},
        )
        return updated

    def resume(self, subscription: Subscription) -> Subscription:
        updated = self.repository.clear_canceled(subscription.id)
        if updated is None:
            return self.get_subscription(subscription.id)
        self._publish(SubscriptionEventType.RESUMED, updated)
        return updated

    def swap(self, subscription: Subscription, new_plan: Plan) -> Subscription:
        """Move to ``new_plan`` and wipe the usage ledger in the same write."""

        updated = self.repository.swap_plan(subscription.id, new_plan.id)
        if updated is None:
            raise SubscriptionNotFound(subscription.id)
        self._publish(
            SubscriptionEventType.SWAPPED,
            updated,
            metadata={"previous_plan_id": subscription.plan_id, "plan_id": new_plan.id},
        )
        return updated

    def record_transaction(
        self,
        subscription: Subscription,
        transaction_type: TransactionType,
        *,
        amount: Any,
        currency: str,
        gateway_transaction_id: Optional[str] = None,
        status: TransactionStatus = TransactionStatus.COMPLETED,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> SubscriptionTransaction:
        transaction = SubscriptionTransaction(
            id=f"txn_{uuid4().hex}",
            subscription_id=subscription.id,
            gateway=subscription.gateway,
            type=transaction_type,
            amount=quantize_amount(amount),
            currency=currency,
            status=status,
            gateway_transaction_id=gateway_transaction_id,
            metadata=dict(metadata or {}),
            occurred_at=self.now(),
        )
        stored = self.repository.append_transaction(transaction)
        event_metadata = {
            "transaction_id": stored.id,
            "type": stored.type.value,
            "status": stored.status.value,
            "amount": str(stored.amount),
            "currency": stored.currency,
            "gateway_transaction_id": stored.gateway_transaction_id,
        }
        self._publish(SubscriptionEventType.TRANSACTION_RECORDED, subscription, metadata=event_metadata)
        if stored.status == TransactionStatus.COMPLETED and stored.type in (
            TransactionType.PAYMENT,
            TransactionType.RENEWAL,
        ):
            self._publish(SubscriptionEventType.PAYMENT_SUCCEEDED, subscription, metadata=event_metadata)
        elif stored.status == TransactionStatus.FAILED:
            self._publish(SubscriptionEventType.PAYMENT_FAILED, subscription, metadata=event_metadata)
        return stored

    def process_due_renewals(
        self,
        now: Optional[datetime] = None,
        *,
        gateways: Optional[Sequence[Gateway]] = None,
        batch_size: int = 50,
    ) -> RenewalSweepSummary:
        """Renew every subscription whose period ends by the close of today.

        Safe to run from several workers at once: each renewal is a
        compare-and-set on ``ends_at``, so a row only advances once.
        """

        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        due_before = end_of_day(now or self.now())
        summary = RenewalSweepSummary()
        after_id: Optional[str] = None
        while True:
            batch = self.repository.list_due_for_renewal(
                due_before=due_before,
                gateways=gateways,
                limit=batch_size,
                after_id=after_id,
            )
            if not batch:
                break
            for subscription in batch:
                summary.scanned += 1
                try:
                    renewed = self.renew(subscription)
                except Exception:
                    logger.exception(
                        "Failed to renew subscription",
                        extra={"subscription_id": subscription.id, "gateway": subscription.gateway.value},
                    )
                    summary.failed += 1
                    summary.failures.append(subscription.id)
                    continue
                if renewed is None:
                    summary.skipped += 1
                else:
                    summary.renewed += 1
            after_id = batch[-1].id
            if len(batch) < batch_size:
                break

        logger.info("Processed due renewals", extra=summary.to_dict())
        return summary

    def _publish(
        self,
        event_type: SubscriptionEventType,
        subscription: Subscription,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.event_sink.publish(
            SubscriptionEvent(
                event_type=event_type,
                subscription_id=subscription.id,
                gateway=subscription.gateway,
                subscriber=subscription.subscriber,
                metadata=dict(metadata or {}),
                occurred_at=self.now(),
            )
        )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def amount_or_none(value: Any) -> Optional[Decimal]:
    """Parse a provider-supplied amount, returning ``None`` when absent."""

    if value is None or value == "":
        return None
    return quantize_amount(value)
