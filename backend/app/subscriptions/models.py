"""Domain models for provider-agnostic subscriptions."""
from __future__ import annotations

import calendar
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

_CENT = Decimal("0.01")


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive timestamps and normalize aware ones."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def quantize_amount(value: Any) -> Decimal:
    """Coerce ``value`` into a two-decimal monetary amount."""

    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def normalize_currency(value: str) -> str:
    code = (value or "").strip().upper()
    if len(code) != 3 or not code.isalpha():
        raise ValueError(f"Invalid ISO-4217 currency code: {value!r}")
    return code


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class Gateway(str, Enum):
    """Payment providers a subscription can be billed through."""

    APPLE = "apple"
    GOOGLE = "google"
    PAYPAL = "paypal"
    XENDIT = "xendit"


class BillingInterval(str, Enum):
    """Billing period unit for a plan."""

    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    def advance(self, moment: datetime, count: int = 1) -> datetime:
        """Return ``moment`` moved forward by ``count`` intervals.

        Month and year steps clamp the day to the end of shorter months, so
        January 31st plus one month lands on the last day of February.
        """

        if self is BillingInterval.HOUR:
            return moment + timedelta(hours=count)
        if self is BillingInterval.DAY:
            return moment + timedelta(days=count)
        if self is BillingInterval.WEEK:
            return moment + timedelta(weeks=count)
        if self is BillingInterval.MONTH:
            return _add_months(moment, count)
        return _add_months(moment, count * 12)


class SubscriptionState(str, Enum):
    """Derived lifecycle state of a subscription at a point in time."""

    PENDING = "pending"
    TRIALING = "trialing"
    ACTIVE = "active"
    GRACE = "grace"
    CANCELED = "canceled"
    EXPIRED = "expired"


class TransactionType(str, Enum):
    """Reason a ledger transaction was appended."""

    PAYMENT = "payment"
    RENEWAL = "renewal"
    REFUND = "refund"
    FAILED = "failed"
    SETUP = "setup"
    EXPIRY = "expiry"
    PLAN_SWAP = "plan_swap"


class TransactionStatus(str, Enum):
    """Settlement status reported for a transaction."""

    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubscriberRef(BaseModel):
    """Polymorphic reference to whoever owns a subscription."""

    owner_type: str = Field(min_length=1)
    owner_id: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("owner_type")
    @classmethod
    def _reject_separator(cls, value: str) -> str:
        if ":" in value:
            raise ValueError("owner_type may not contain ':'")
        return value

    def key(self) -> str:
        """Stable ``type:id`` string used for storage and obfuscation."""

        return f"{self.owner_type}:{self.owner_id}"

    @classmethod
    def parse(cls, value: str) -> "SubscriberRef":
        owner_type, sep, owner_id = value.partition(":")
        if not sep:
            raise ValueError(f"Malformed subscriber reference: {value!r}")
        return cls(owner_type=owner_type, owner_id=owner_id)


class PlanGatewayPrice(BaseModel):
    """Per-provider price override and provider-side identifiers for a plan."""

    gateway: Gateway
    price: Decimal
    currency: str
    gateway_plan_id: Optional[str] = Field(
        default=None,
        description="Provider plan or product identifier (Apple product, Google base plan, PayPal plan).",
    )
    gateway_offer_id: Optional[str] = None
    gateway_product_id: Optional[str] = Field(
        default=None,
        description="Parent product identifier for providers that nest plans under products.",
    )

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("price")
    @classmethod
    def _quantize_price(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("price must be >= 0")
        return quantize_amount(value)

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return normalize_currency(value)


class PlanFeature(BaseModel):
    """Countable capability granted by a plan."""

    slug: str = Field(min_length=1)
    value: int = Field(ge=0, description="Quota for the feature within one billing period.")
    resettable: bool = True

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Plan(BaseModel):
    """Sellable plan with its default price and optional provider overrides."""

    id: str
    slug: str
    name: str
    tier: Optional[str] = None
    description: Optional[str] = None
    price: Decimal
    currency: str = "USD"
    interval: BillingInterval = BillingInterval.MONTH
    interval_count: int = Field(default=1, ge=1)
    trial_days: int = Field(default=0, ge=0)
    grace_days: int = Field(default=0, ge=0)
    active: bool = True
    gateway_prices: Tuple[PlanGatewayPrice, ...] = ()
    features: Tuple[PlanFeature, ...] = ()

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("price")
    @classmethod
    def _quantize_price(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("price must be >= 0")
        return quantize_amount(value)

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return normalize_currency(value)

    def feature(self, slug: str) -> Optional[PlanFeature]:
        for feature in self.features:
            if feature.slug == slug:
                return feature
        return None

    def next_period_end(self, start: datetime) -> datetime:
        """End of one billing period beginning at ``start``."""

        return self.interval.advance(start, self.interval_count)

    def grace_end_for(self, ends_at: Optional[datetime]) -> Optional[datetime]:
        if ends_at is None or not self.grace_days:
            return None
        return ends_at + timedelta(days=self.grace_days)


class Subscription(BaseModel):
    """A subscriber's binding to a plan through exactly one gateway.

    State is never stored directly. It is derived from the timestamps, which
    keeps concurrent writers from disagreeing about a status column.
    """

    id: str
    subscriber: SubscriberRef
    plan_id: str
    gateway: Gateway
    gateway_id: Optional[str] = Field(
        default=None,
        description="Provider-side subscription identifier once one has been issued.",
    )
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    renewal_count: int = Field(default=0, ge=0)
    gateway_response: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator(
        "starts_at",
        "ends_at",
        "trial_ends_at",
        "grace_ends_at",
        "canceled_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def is_canceled(self) -> bool:
        return self.canceled_at is not None

    @property
    def is_pending(self) -> bool:
        """Created locally but not yet confirmed by the provider."""

        return self.starts_at is None

    def on_trial(self, now: datetime) -> bool:
        return self.trial_ends_at is not None and self.trial_ends_at > now

    def on_grace_period(self, now: datetime) -> bool:
        if self.grace_ends_at is None or self.ends_at is None:
            return False
        return self.ends_at <= now < self.grace_ends_at

    def is_active(self, now: datetime) -> bool:
        """Whether the subscriber currently holds the plan's entitlements.

        A running trial keeps the subscription active even when ``ends_at``
        has elapsed, but only while it is not canceled. A cancellation takes
        effect at ``ends_at``: immediate cancels move ``ends_at`` to the cancel
        time, period-end cancels leave access in place until it passes.
        Unconfirmed subscriptions never grant access.
        """

        if self.is_pending:
            return False
        if self.is_canceled:
            return self.ends_at is not None and self.ends_at > now
        if self.on_trial(now):
            return True
        return self.ends_at is None or self.ends_at > now

    def state(self, now: datetime) -> SubscriptionState:
        if self.is_canceled:
            return SubscriptionState.CANCELED
        if self.on_trial(now):
            return SubscriptionState.TRIALING
        if self.is_pending:
            return SubscriptionState.PENDING
        if self.ends_at is None or self.ends_at > now:
            return SubscriptionState.ACTIVE
        if self.on_grace_period(now):
            return SubscriptionState.GRACE
        return SubscriptionState.EXPIRED


class SubscriptionTransaction(BaseModel):
    """Append-only ledger entry justifying a change to a subscription."""

    id: str
    subscription_id: str
    gateway: Gateway
    type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus = TransactionStatus.COMPLETED
    gateway_transaction_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("amount")
    @classmethod
    def _quantize_amount(cls, value: Decimal) -> Decimal:
        return quantize_amount(value)

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return normalize_currency(value)

    @field_validator("occurred_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class UsageRecord(BaseModel):
    """One consumption of a countable feature."""

    id: str
    subscription_id: str
    feature_slug: str
    quantity: int = Field(ge=1)
    used_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class WebhookEventRecord(BaseModel):
    """Marker proving a provider event id has already been processed."""

    gateway: Gateway
    event_id: str
    event_type: str
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(populate_by_name=True, frozen=True)
