"""Quota-checked usage ledger for countable plan features."""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from .events import SubscriptionEvent, SubscriptionEventType
from .exceptions import QuotaExceeded, SubscriptionNotFound
from .models import SubscriberRef, Subscription, UsageRecord
from .service import SubscriptionService

logger = logging.getLogger(__name__)

# Returned for features a plan does not meter.
UNLIMITED = sys.maxsize


@dataclass(frozen=True)
class UsageEvaluation:
    """Represents the outcome of a feature quota check."""

    feature: str
    quota: Optional[int]
    used: int
    requested: int
    allowed: bool

    @property
    def remaining(self) -> int:
        if self.quota is None:
            return UNLIMITED
        return max(self.quota - self.used, 0)

    def to_dict(self) -> dict[str, object]:
        """Serialize the evaluation for logging or telemetry."""

        return {
            "feature": self.feature,
            "quota": self.quota,
            "used": self.used,
            "requested": self.requested,
            "remaining": self.remaining,
            "allowed": self.allowed,
        }


@dataclass
class UsageLedger:
    """Check and record feature consumption against the subscription's plan.

    Features the plan does not list are unmetered. Metered features are
    checked and written under one lock per subscription and feature, so two
    concurrent writers can never overshoot the quota together.
    """

    subscriptions: SubscriptionService

    def _quota(self, subscription: Subscription, feature_slug: str) -> Optional[int]:
        feature = self.subscriptions.plan_for(subscription).feature(feature_slug)
        return feature.value if feature is not None else None

    def evaluate(self, subscription: Subscription, feature_slug: str, quantity: int = 1) -> UsageEvaluation:
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        quota = self._quota(subscription, feature_slug)
        used = self.subscriptions.repository.sum_usage(subscription.id, feature_slug)
        allowed = quota is None or used + quantity <= quota
        return UsageEvaluation(
            feature=feature_slug,
            quota=quota,
            used=used,
            requested=quantity,
            allowed=allowed,
        )

    def can_use_feature(self, subscription: Subscription, feature_slug: str, quantity: int = 1) -> bool:
        return self.evaluate(subscription, feature_slug, quantity).allowed

    def remaining_usage(self, subscription: Subscription, feature_slug: str) -> int:
        quota = self._quota(subscription, feature_slug)
        if quota is None:
            return UNLIMITED
        used = self.subscriptions.repository.sum_usage(subscription.id, feature_slug)
        return max(quota - used, 0)

    def record_usage(self, subscription: Subscription, feature_slug: str, quantity: int = 1) -> UsageRecord:
        """Append usage or raise :class:`QuotaExceeded` leaving the ledger untouched."""

        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        quota = self._quota(subscription, feature_slug)
        record = UsageRecord(
            id=f"use_{uuid4().hex}",
            subscription_id=subscription.id,
            feature_slug=feature_slug,
            quantity=quantity,
            used_at=self.subscriptions.now(),
        )
        stored = self.subscriptions.repository.record_usage_within_quota(record, quota)
        if stored is None:
            remaining = self.remaining_usage(subscription, feature_slug)
            logger.info(
                "Feature usage rejected",
                extra={
                    "subscription_id": subscription.id,
                    "feature": feature_slug,
                    "requested": quantity,
                    "remaining": remaining,
                },
            )
            self._publish(
                SubscriptionEventType.FEATURE_LIMIT_EXCEEDED,
                subscription,
                feature_slug,
                {"requested": quantity, "remaining": remaining},
            )
            raise QuotaExceeded(feature_slug, requested=quantity, remaining=remaining)

        self._publish(
            SubscriptionEventType.FEATURE_USED,
            subscription,
            feature_slug,
            {"quantity": quantity, "usage_id": stored.id},
        )
        return stored

    def reset_usage(self, subscription: Subscription) -> int:
        deleted = self.subscriptions.repository.delete_usage(subscription.id)
        logger.info("Reset feature usage", extra={"subscription_id": subscription.id, "deleted": deleted})
        return deleted

    # Subscriber-level helpers resolve the active subscription first.

    def _active_for(self, subscriber: SubscriberRef) -> Optional[Subscription]:
        return self.subscriptions.active_subscription(subscriber)

    def subscriber_can_use(self, subscriber: SubscriberRef, feature_slug: str, quantity: int = 1) -> bool:
        subscription = self._active_for(subscriber)
        return subscription is not None and self.can_use_feature(subscription, feature_slug, quantity)

    def subscriber_remaining_usage(self, subscriber: SubscriberRef, feature_slug: str) -> int:
        subscription = self._active_for(subscriber)
        if subscription is None:
            return 0
        return self.remaining_usage(subscription, feature_slug)

    def record_subscriber_usage(self, subscriber: SubscriberRef, feature_slug: str, quantity: int = 1) -> UsageRecord:
        subscription = self._active_for(subscriber)
        if subscription is None:
            raise SubscriptionNotFound(subscriber.key())
        return self.record_usage(subscription, feature_slug, quantity)

    def _publish(
        self,
        event_type: SubscriptionEventType,
        subscription: Subscription,
        feature_slug: str,
        metadata: dict,
    ) -> None:
        self.subscriptions.event_sink.publish(
            SubscriptionEvent(
                event_type=event_type,
                subscription_id=subscription.id,
                gateway=subscription.gateway,
                subscriber=subscription.subscriber,
                metadata={"feature": feature_slug, **metadata},
                occurred_at=self.subscriptions.now(),
            )
        )
