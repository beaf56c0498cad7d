"""API schemas for subscription endpoints."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..subscriptions import Gateway, Subscription, SubscriptionState, UsageEvaluation


class CreateSubscriptionRequest(BaseModel):
    plan_id: str = Field(alias="planId")
    gateway: Gateway
    options: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class SwapPlanRequest(BaseModel):
    plan_id: str = Field(alias="planId")

    model_config = ConfigDict(populate_by_name=True)


class RecordUsageRequest(BaseModel):
    quantity: int = Field(default=1, ge=1)


class SubscriptionResponse(BaseModel):
    id: str
    plan_id: str = Field(alias="planId")
    gateway: Gateway
    state: SubscriptionState
    active: bool
    starts_at: Optional[datetime] = Field(alias="startsAt", default=None)
    ends_at: Optional[datetime] = Field(alias="endsAt", default=None)
    trial_ends_at: Optional[datetime] = Field(alias="trialEndsAt", default=None)
    grace_ends_at: Optional[datetime] = Field(alias="graceEndsAt", default=None)
    canceled_at: Optional[datetime] = Field(alias="canceledAt", default=None)
    renewal_count: int = Field(alias="renewalCount", default=0)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription, now: datetime) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            plan_id=subscription.plan_id,
            gateway=subscription.gateway,
            state=subscription.state(now),
            active=not subscription.is_pending and subscription.is_active(now),
            starts_at=subscription.starts_at,
            ends_at=subscription.ends_at,
            trial_ends_at=subscription.trial_ends_at,
            grace_ends_at=subscription.grace_ends_at,
            canceled_at=subscription.canceled_at,
            renewal_count=subscription.renewal_count,
        )


class CheckoutResponse(BaseModel):
    subscription: SubscriptionResponse
    redirect_url: Optional[str] = Field(alias="redirectUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)


class FeatureUsageResponse(BaseModel):
    feature: str
    quota: Optional[int] = None
    used: int
    remaining: int
    allowed: bool

    @classmethod
    def from_evaluation(cls, evaluation: UsageEvaluation) -> "FeatureUsageResponse":
        return cls(
            feature=evaluation.feature,
            quota=evaluation.quota,
            used=evaluation.used,
            remaining=evaluation.remaining,
            allowed=evaluation.allowed,
        )


class WebhookAcknowledgementResponse(BaseModel):
    gateway: Gateway
    status: str
    event_id: Optional[str] = Field(alias="eventId", default=None)
    event_type: Optional[str] = Field(alias="eventType", default=None)

    model_config = ConfigDict(populate_by_name=True)
