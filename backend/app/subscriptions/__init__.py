"""Provider-agnostic subscription core: models, state machine, ledgers."""

from .events import InMemoryEventSink, SubscriptionEvent, SubscriptionEventSink, SubscriptionEventType
from .exceptions import (
    AuthenticationFailure,
    DuplicateSubscription,
    ProviderError,
    QuotaExceeded,
    SubscriptionError,
    SubscriptionNotFound,
    UnsupportedOperation,
    ValidationError,
)
from .identity import ObfuscatedIdentityCodec
from .models import (
    BillingInterval,
    Gateway,
    Plan,
    PlanFeature,
    PlanGatewayPrice,
    SubscriberRef,
    Subscription,
    SubscriptionState,
    SubscriptionTransaction,
    TransactionStatus,
    TransactionType,
    UsageRecord,
    WebhookEventRecord,
)
from .pricing import ResolvedPrice, match_plan, resolve_price
from .repository import InMemorySubscriptionRepository, PostgresSubscriptionRepository
from .service import RenewalSweepSummary, SubscriptionRepository, SubscriptionService
from .usage import UNLIMITED, UsageEvaluation, UsageLedger

__all__ = [
    "AuthenticationFailure",
    "BillingInterval",
    "DuplicateSubscription",
    "Gateway",
    "InMemoryEventSink",
    "InMemorySubscriptionRepository",
    "ObfuscatedIdentityCodec",
    "Plan",
    "PlanFeature",
    "PlanGatewayPrice",
    "PostgresSubscriptionRepository",
    "ProviderError",
    "QuotaExceeded",
    "RenewalSweepSummary",
    "ResolvedPrice",
    "SubscriberRef",
    "Subscription",
    "SubscriptionError",
    "SubscriptionEvent",
    "SubscriptionEventSink",
    "SubscriptionEventType",
    "SubscriptionNotFound",
    "SubscriptionRepository",
    "SubscriptionService",
    "SubscriptionState",
    "SubscriptionTransaction",
    "TransactionStatus",
    "TransactionType",
    "UNLIMITED",
    "UnsupportedOperation",
    "UsageEvaluation",
    "UsageLedger",
    "UsageRecord",
    "ValidationError",
    "WebhookEventRecord",
    "match_plan",
    "resolve_price",
]
