"""Persistence layer for subscriptions, their ledger, and usage records."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import psycopg2
import psycopg2.errors
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from backend.app_context import get_conn

from .exceptions import DuplicateSubscription
from .models import (
    BillingInterval,
    Gateway,
    Plan,
    PlanFeature,
    PlanGatewayPrice,
    SubscriberRef,
    Subscription,
    SubscriptionTransaction,
    TransactionStatus,
    TransactionType,
    UsageRecord,
    WebhookEventRecord,
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


_GATEWAY_ID_CONSTRAINT = "subscriptions_subscriber_gateway_id_key"


@contextmanager
def _unique_gateway_id(gateway_id: Optional[str], *, gateway: Optional[str] = None):
    """Translate the (subscriber, gateway, gateway_id) constraint into a domain error."""

    try:
        yield
    except psycopg2.errors.UniqueViolation as exc:
        if getattr(exc.diag, "constraint_name", None) != _GATEWAY_ID_CONSTRAINT:
            raise
        raise DuplicateSubscription(gateway_id, gateway=gateway) from exc


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        id=row["id"],
        subscriber=SubscriberRef(owner_type=row["subscriber_type"], owner_id=row["subscriber_id"]),
        plan_id=row["plan_id"],
        gateway=Gateway(row["gateway"]),
        gateway_id=row.get("gateway_id"),
        starts_at=row.get("starts_at"),
        ends_at=row.get("ends_at"),
        trial_ends_at=row.get("trial_ends_at"),
        grace_ends_at=row.get("grace_ends_at"),
        canceled_at=row.get("canceled_at"),
        renewal_count=int(row.get("renewal_count") or 0),
        gateway_response=row.get("gateway_response") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_transaction(row: dict) -> SubscriptionTransaction:
    return SubscriptionTransaction(
        id=row["id"],
        subscription_id=row["subscription_id"],
        gateway=Gateway(row["gateway"]),
        type=TransactionType(row["type"]),
        amount=row["amount"],
        currency=row["currency"],
        status=TransactionStatus(row["status"]),
        gateway_transaction_id=row.get("gateway_transaction_id"),
        metadata=row.get("metadata") or {},
        occurred_at=row["occurred_at"],
    )


def _row_to_usage(row: dict) -> UsageRecord:
    return UsageRecord(
        id=row["id"],
        subscription_id=row["subscription_id"],
        feature_slug=row["feature_slug"],
        quantity=int(row["quantity"]),
        used_at=row["used_at"],
    )


def _row_to_plan(row: dict, prices: Iterable[dict], features: Iterable[dict]) -> Plan:
    return Plan(
        id=row["id"],
        slug=row["slug"],
        name=row["name"],
        tier=row.get("tier"),
        description=row.get("description"),
        price=row["price"],
        currency=row["currency"],
        interval=BillingInterval(row["interval"]),
        interval_count=int(row["interval_count"]),
        trial_days=int(row["trial_days"]),
        grace_days=int(row["grace_days"]),
        active=bool(row["active"]),
        gateway_prices=tuple(
            PlanGatewayPrice(
                gateway=Gateway(price["gateway"]),
                price=price["price"],
                currency=price["currency"],
                gateway_plan_id=price.get("gateway_plan_id"),
                gateway_offer_id=price.get("gateway_offer_id"),
                gateway_product_id=price.get("gateway_product_id"),
            )
            for price in prices
        ),
        features=tuple(
            PlanFeature(slug=feature["slug"], value=int(feature["value"]), resettable=bool(feature["resettable"]))
            for feature in features
        ),
    )


class PostgresSubscriptionRepository:
    """Concrete repository persisting subscriptions in PostgreSQL.

    Each mutating statement carries its own guard in the ``WHERE`` clause so
    concurrent workers and duplicate webhooks race safely at the database.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def _load_plans(self, where: str, params: Sequence[Any]) -> List[Plan]:
        with self._cursor() as cursor:
            cursor.execute(f"SELECT * FROM subscription_plans {where} ORDER BY id", params)
            rows = cursor.fetchall() or []
            if not rows:
                return []
            plan_ids = [row["id"] for row in rows]
            cursor.execute(
                "SELECT * FROM subscription_plan_prices WHERE plan_id = ANY(%s)"
                " ORDER BY gateway, gateway_plan_id NULLS FIRST",
                (plan_ids,),
            )
            prices = cursor.fetchall() or []
            cursor.execute(
                "SELECT * FROM subscription_plan_features WHERE plan_id = ANY(%s) ORDER BY slug",
                (plan_ids,),
            )
            features = cursor.fetchall() or []

        return [
            _row_to_plan(
                row,
                [price for price in prices if price["plan_id"] == row["id"]],
                [feature for feature in features if feature["plan_id"] == row["id"]],
            )
            for row in rows
        ]

    def list_plans(self) -> Sequence[Plan]:
        return self._load_plans("", ())

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        plans = self._load_plans("WHERE id = %s", (plan_id,))
        return plans[0] if plans else None

    def create_subscription(self, subscription: Subscription) -> Subscription:
        with _unique_gateway_id(subscription.gateway_id, gateway=subscription.gateway.value), self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscriptions (
                    id,
                    subscriber_type,
                    subscriber_id,
                    plan_id,
                    gateway,
                    gateway_id,
                    starts_at,
                    ends_at,
                    trial_ends_at,
                    grace_ends_at,
                    canceled_at,
                    renewal_count,
                    gateway_response
                )
                VALUES (%(id)s, %(subscriber_type)s, %(subscriber_id)s, %(plan_id)s, %(gateway)s,
                        %(gateway_id)s, %(starts_at)s, %(ends_at)s, %(trial_ends_at)s,
                        %(grace_ends_at)s, %(canceled_at)s, %(renewal_count)s, %(gateway_response)s)
                RETURNING *
                """,
                {
                    "id": subscription.id,
                    "subscriber_type": subscription.subscriber.owner_type,
                    "subscriber_id": subscription.subscriber.owner_id,
                    "plan_id": subscription.plan_id,
                    "gateway": subscription.gateway.value,
                    "gateway_id": subscription.gateway_id,
                    "starts_at": subscription.starts_at,
                    "ends_at": subscription.ends_at,
                    "trial_ends_at": subscription.trial_ends_at,
                    "grace_ends_at": subscription.grace_ends_at,
                    "canceled_at": subscription.canceled_at,
                    "renewal_count": subscription.renewal_count,
                    "gateway_response": psycopg2.extras.Json(subscription.gateway_response),
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM subscriptions WHERE id = %s LIMIT 1", (subscription_id,))
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_by_gateway_id(self, gateway: Gateway, gateway_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE gateway = %s AND gateway_id = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (gateway.value, gateway_id),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def list_for_subscriber(self, subscriber: SubscriberRef) -> Sequence[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE subscriber_type = %s AND subscriber_id = %s
                ORDER BY created_at DESC, id DESC
                """,
                (subscriber.owner_type, subscriber.owner_id),
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]

    def delete_subscription(self, subscription_id: str) -> bool:
        """Remove a subscription that no gateway ever confirmed; confirmed rows are kept."""

        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM subscriptions WHERE id = %s AND starts_at IS NULL",
                (subscription_id,),
            )
            return cursor.rowcount > 0

    def _update_returning(self, sql: str, params: Mapping[str, Any]) -> Optional[Subscription]:
        with _unique_gateway_id(params.get("gateway_id")), self._cursor() as cursor:
            cursor.execute(sql, params)
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

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
        return self._update_returning(
            """
            UPDATE subscriptions
            SET gateway_id = COALESCE(%(gateway_id)s, gateway_id),
                starts_at = %(starts_at)s,
                ends_at = %(ends_at)s,
                trial_ends_at = %(trial_ends_at)s,
                grace_ends_at = %(grace_ends_at)s,
                canceled_at = NULL,
                gateway_response = %(gateway_response)s,
                updated_at = NOW()
            WHERE id = %(id)s AND starts_at IS NULL
            RETURNING *
            """,
            {
                "id": subscription_id,
                "gateway_id": gateway_id,
                "starts_at": starts_at,
                "ends_at": ends_at,
                "trial_ends_at": trial_ends_at,
                "grace_ends_at": grace_ends_at,
                "gateway_response": psycopg2.extras.Json(dict(gateway_response)),
            },
        )

    def set_gateway_id(
        self,
        subscription_id: str,
        gateway_id: str,
        *,
        gateway_response: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Subscription]:
        return self._update_returning(
            """
            UPDATE subscriptions
            SET gateway_id = %(gateway_id)s,
                gateway_response = COALESCE(%(gateway_response)s, gateway_response),
                updated_at = NOW()
            WHERE id = %(id)s
            RETURNING *
            """,
            {
                "id": subscription_id,
                "gateway_id": gateway_id,
                "gateway_response": (
                    psycopg2.extras.Json(dict(gateway_response)) if gateway_response is not None else None
                ),
            },
        )

    def advance_ends_at(
        self,
        subscription_id: str,
        *,
        ends_at: datetime,
        grace_ends_at: Optional[datetime],
        expected_ends_at: Optional[datetime],
        compare_expected: bool,
    ) -> Optional[Subscription]:
        return self._update_returning(
            """
            UPDATE subscriptions
            SET ends_at = %(ends_at)s,
                grace_ends_at = %(grace_ends_at)s,
                renewal_count = renewal_count + 1,
                updated_at = NOW()
            WHERE id = %(id)s
              AND canceled_at IS NULL
              AND (ends_at IS NULL OR ends_at < %(ends_at)s)
              AND (NOT %(compare_expected)s OR ends_at IS NOT DISTINCT FROM %(expected_ends_at)s)
            RETURNING *
            """,
            {
                "id": subscription_id,
                "ends_at": ends_at,
                "grace_ends_at": grace_ends_at,
                "expected_ends_at": expected_ends_at,
                "compare_expected": compare_expected,
            },
        )

    def sync_ends_at(
        self,
        subscription_id: str,
        *,
        ends_at: datetime,
        grace_ends_at: Optional[datetime],
        gateway_response: Optional[Mapping[str, Any]] = None,
        forward_only: bool = False,
    ) -> Optional[Subscription]:
        return self._update_returning(
            """
            UPDATE subscriptions
            SET ends_at = %(ends_at)s,
                grace_ends_at = %(grace_ends_at)s,
                gateway_response = COALESCE(%(gateway_response)s, gateway_response),
                updated_at = NOW()
            WHERE id = %(id)s
              AND (NOT %(forward_only)s OR ends_at IS NULL OR ends_at < %(ends_at)s)
            RETURNING *
            """,
            {
                "id": subscription_id,
                "ends_at": ends_at,
                "grace_ends_at": grace_ends_at,
                "forward_only": forward_only,
                "gateway_response": (
                    psycopg2.extras.Json(dict(gateway_response)) if gateway_response is not None else None
                ),
            },
        )

    def mark_canceled(
        self,
        subscription_id: str,
        *,
        canceled_at: datetime,
        immediate: bool,
    ) -> Optional[Subscription]:
        return self._update_returning(
            """
            UPDATE subscriptions
            SET canceled_at = COALESCE(canceled_at, %(canceled_at)s),
                ends_at = CASE WHEN %(immediate)s THEN %(canceled_at)s ELSE ends_at END,
                trial_ends_at = CASE
                    WHEN %(immediate)s AND trial_ends_at IS NOT NULL THEN %(canceled_at)s
                    ELSE trial_ends_at
                END,
                grace_ends_at = CASE WHEN %(immediate)s THEN NULL ELSE grace_ends_at END,
                updated_at = NOW()
            WHERE id = %(id)s
              AND (
                  canceled_at IS NULL
                  OR (%(immediate)s AND (ends_at IS NULL OR ends_at > %(canceled_at)s))
              )
            RETURNING *
            """,
            {"id": subscription_id, "canceled_at": canceled_at, "immediate": immediate},
        )

    def clear_canceled(self, subscription_id: str) -> Optional[Subscription]:
        return self._update_returning(
            """
            UPDATE subscriptions
            SET canceled_at = NULL,
                updated_at = NOW()
            WHERE id = %(id)s AND canceled_at IS NOT NULL
            RETURNING *
            """,
            {"id": subscription_id},
        )

    def swap_plan(self, subscription_id: str, plan_id: str) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET plan_id = %s,
                    updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (plan_id, subscription_id),
            )
            row = cursor.fetchone()
            if not row:
                return None
            cursor.execute("DELETE FROM subscription_usage WHERE subscription_id = %s", (subscription_id,))
            return _row_to_subscription(row)

    def append_transaction(self, transaction: SubscriptionTransaction) -> SubscriptionTransaction:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_transactions (
                    id,
                    subscription_id,
                    gateway,
                    type,
                    amount,
                    currency,
                    status,
                    gateway_transaction_id,
                    metadata,
                    occurred_at
                )
                VALUES (%(id)s, %(subscription_id)s, %(gateway)s, %(type)s, %(amount)s, %(currency)s,
                        %(status)s, %(gateway_transaction_id)s, %(metadata)s, %(occurred_at)s)
                RETURNING *
                """,
                {
                    "id": transaction.id,
                    "subscription_id": transaction.subscription_id,
                    "gateway": transaction.gateway.value,
                    "type": transaction.type.value,
                    "amount": transaction.amount,
                    "currency": transaction.currency,
                    "status": transaction.status.value,
                    "gateway_transaction_id": transaction.gateway_transaction_id,
                    "metadata": psycopg2.extras.Json(transaction.metadata),
                    "occurred_at": transaction.occurred_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription transaction")
            return _row_to_transaction(row)

    def list_transactions(self, subscription_id: str) -> Sequence[SubscriptionTransaction]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscription_transactions
                WHERE subscription_id = %s
                ORDER BY occurred_at ASC, id ASC
                """,
                (subscription_id,),
            )
            rows = cursor.fetchall() or []
            return [_row_to_transaction(row) for row in rows]

    def has_transaction(
        self,
        subscription_id: str,
        gateway_transaction_id: str,
        transaction_type: TransactionType,
    ) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT 1
                FROM subscription_transactions
                WHERE subscription_id = %s AND gateway_transaction_id = %s AND type = %s
                LIMIT 1
                """,
                (subscription_id, gateway_transaction_id, transaction_type.value),
            )
            return cursor.fetchone() is not None

    def record_usage_within_quota(self, record: UsageRecord, limit: Optional[int]) -> Optional[UsageRecord]:
        with self._cursor() as cursor:
            # Serializes concurrent writers for one (subscription, feature) pair.
            cursor.execute(
                "SELECT pg_advisory_xact_lock(hashtext(%s))",
                (f"{record.subscription_id}:{record.feature_slug}",),
            )
            if limit is not None:
                cursor.execute(
                    """
                    SELECT COALESCE(SUM(quantity), 0) AS used
                    FROM subscription_usage
                    WHERE subscription_id = %s AND feature_slug = %s
                    """,
                    (record.subscription_id, record.feature_slug),
                )
                used = int(cursor.fetchone()["used"])
                if used + record.quantity > limit:
                    return None
            cursor.execute(
                """
                INSERT INTO subscription_usage (id, subscription_id, feature_slug, quantity, used_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (record.id, record.subscription_id, record.feature_slug, record.quantity, record.used_at),
            )
            return _row_to_usage(cursor.fetchone())

    def sum_usage(self, subscription_id: str, feature_slug: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT COALESCE(SUM(quantity), 0) AS used
                FROM subscription_usage
                WHERE subscription_id = %s AND feature_slug = %s
                """,
                (subscription_id, feature_slug),
            )
            row = cursor.fetchone()
            return int(row["used"]) if row else 0

    def delete_usage(self, subscription_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM subscription_usage WHERE subscription_id = %s", (subscription_id,))
            return cursor.rowcount

    def record_webhook_event(self, record: WebhookEventRecord) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_webhook_events (gateway, event_id, event_type, received_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (gateway, event_id) DO NOTHING
                """,
                (record.gateway.value, record.event_id, record.event_type, record.received_at),
            )
            return cursor.rowcount > 0

    def forget_webhook_event(self, gateway: Gateway, event_id: str) -> None:
        """Drop a delivery record so the provider's redelivery is processed again."""

        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM subscription_webhook_events WHERE gateway = %s AND event_id = %s",
                (gateway.value, event_id),
            )

    def list_due_for_renewal(
        self,
        *,
        due_before: datetime,
        gateways: Optional[Sequence[Gateway]] = None,
        limit: int = 50,
        after_id: Optional[str] = None,
    ) -> Sequence[Subscription]:
        gateway_values = [gateway.value for gateway in gateways] if gateways else None
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE canceled_at IS NULL
                  AND ends_at IS NOT NULL
                  AND ends_at <= %(due_before)s
                  AND (%(gateways)s::text[] IS NULL OR gateway = ANY(%(gateways)s::text[]))
                  AND (%(after_id)s::text IS NULL OR id > %(after_id)s::text)
                ORDER BY id
                LIMIT %(limit)s
                """,
                {
                    "due_before": due_before,
                    "gateways": gateway_values,
                    "after_id": after_id,
                    "limit": limit,
                },
            )
            rows = cursor.fetchall() or []
            return [_row_to_subscription(row) for row in rows]


class InMemorySubscriptionRepository:
    """Thread-safe dictionary-backed repository; suitable for tests and local development.

    Applies the same guards as :class:`PostgresSubscriptionRepository` under a
    single lock so race semantics match.
    """

    def __init__(self, plans: Iterable[Plan] = ()) -> None:
        self._lock = threading.RLock()
        self.plans: Dict[str, Plan] = {plan.id: plan for plan in plans}
        self.subscriptions: Dict[str, Subscription] = {}
        self.transactions: List[SubscriptionTransaction] = []
        self.usage: List[UsageRecord] = []
        self.webhook_events: Dict[tuple, WebhookEventRecord] = {}

    def add_plan(self, plan: Plan) -> Plan:
        with self._lock:
            self.plans[plan.id] = plan
            return plan

    def list_plans(self) -> Sequence[Plan]:
        with self._lock:
            return sorted(self.plans.values(), key=lambda plan: plan.id)

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._lock:
            return self.plans.get(plan_id)

    def create_subscription(self, subscription: Subscription) -> Subscription:
        with self._lock:
            if subscription.id in self.subscriptions:
                raise ValueError(f"Duplicate subscription id {subscription.id}")
            self._check_gateway_id(subscription, subscription.gateway_id)
            self.subscriptions[subscription.id] = subscription
            return subscription

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            return self.subscriptions.get(subscription_id)

    def find_by_gateway_id(self, gateway: Gateway, gateway_id: str) -> Optional[Subscription]:
        with self._lock:
            matches = [
                subscription
                for subscription in self.subscriptions.values()
                if subscription.gateway == gateway and subscription.gateway_id == gateway_id
            ]
            matches.sort(key=lambda subscription: subscription.created_at, reverse=True)
            return matches[0] if matches else None

    def list_for_subscriber(self, subscriber: SubscriberRef) -> Sequence[Subscription]:
        with self._lock:
            matches = [
                subscription
                for subscription in self.subscriptions.values()
                if subscription.subscriber == subscriber
            ]
            return sorted(matches, key=lambda subscription: (subscription.created_at, subscription.id), reverse=True)

    def _check_gateway_id(self, subscription: Subscription, gateway_id: Optional[str]) -> None:
        if gateway_id is None:
            return
        for other in self.subscriptions.values():
            if (
                other.id != subscription.id
                and other.subscriber == subscription.subscriber
                and other.gateway == subscription.gateway
                and other.gateway_id == gateway_id
            ):
                raise DuplicateSubscription(gateway_id, gateway=subscription.gateway.value)

    def delete_subscription(self, subscription_id: str) -> bool:
        with self._lock:
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None or subscription.starts_at is not None:
                return False
            del self.subscriptions[subscription_id]
            self.transactions = [txn for txn in self.transactions if txn.subscription_id != subscription_id]
            self.usage = [record for record in self.usage if record.subscription_id != subscription_id]
            return True

    def _replace(self, subscription: Subscription, **changes: Any) -> Subscription:
        changes["updated_at"] = datetime.now(subscription.updated_at.tzinfo)
        updated = subscription.model_copy(update=changes)
        self.subscriptions[subscription.id] = updated
        return updated

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
        with self._lock:
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None or subscription.starts_at is not None:
                return None
            self._check_gateway_id(subscription, gateway_id)
            return self._replace(
                subscription,
                gateway_id=gateway_id or subscription.gateway_id,
                starts_at=starts_at,
                ends_at=ends_at,
                trial_ends_at=trial_ends_at,
                grace_ends_at=grace_ends_at,
                canceled_at=None,
                gateway_response=dict(gateway_response),
            )

    def set_gateway_id(
        self,
        subscription_id: str,
        gateway_id: str,
        *,
        gateway_response: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Subscription]:
        with self._lock:
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None:
                return None
            self._check_gateway_id(subscription, gateway_id)
            response = dict(gateway_response) if gateway_response is not None else subscription.gateway_response
            return self._replace(subscription, gateway_id=gateway_id, gateway_response=response)

    def advance_ends_at(
        self,
        subscription_id: str,
        *,
        ends_at: datetime,
        grace_ends_at: Optional[datetime],
        expected_ends_at: Optional[datetime],
        compare_expected: bool,
    ) -> Optional[Subscription]:
        with self._lock:
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None or subscription.canceled_at is not None:
                return None
            if subscription.ends_at is not None and subscription.ends_at >= ends_at:
                return None
            if compare_expected and subscription.ends_at != expected_ends_at:
                return None
            return self._replace(
                subscription,
                ends_at=ends_at,
                grace_ends_at=grace_ends_at,
                renewal_count=subscription.renewal_count + 1,
            )

    def sync_ends_at(
        self,
        subscription_id: str,
        *,
        ends_at: datetime,
        grace_ends_at: Optional[datetime],
        gateway_response: Optional[Mapping[str, Any]] = None,
        forward_only: bool = False,
    ) -> Optional[Subscription]:
        with self._lock:
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None:
                return None
            if forward_only and subscription.ends_at is not None and subscription.ends_at >= ends_at:
                return None
            response = dict(gateway_response) if gateway_response is not None else subscription.gateway_response
            return self._replace(
                subscription,
                ends_at=ends_at,
                grace_ends_at=grace_ends_at,
                gateway_response=response,
            )

    def mark_canceled(
        self,
        subscription_id: str,
        *,
        canceled_at: datetime,
        immediate: bool,
    ) -> Optional[Subscription]:
        with self._lock:
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None:
                return None
            if subscription.canceled_at is not None:
                # Only an immediate cancel may cut short a pending period-end cancel.
                still_running = subscription.ends_at is None or subscription.ends_at > canceled_at
                if not (immediate and still_running):
                    return None
            changes: Dict[str, Any] = {"canceled_at": subscription.canceled_at or canceled_at}
            if immediate:
                changes["ends_at"] = canceled_at
                changes["grace_ends_at"] = None
                if subscription.trial_ends_at is not None:
                    changes["trial_ends_at"] = canceled_at
            return self._replace(subscription, **changes)

    def clear_canceled(self, subscription_id: str) -> Optional[Subscription]:
        with self._lock:
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None or subscription.canceled_at is None:
                return None
            return self._replace(subscription, canceled_at=None)

    def swap_plan(self, subscription_id: str, plan_id: str) -> Optional[Subscription]:
        with self._lock:
            subscription = self.subscriptions.get(subscription_id)
            if subscription is None:
                return None
            self.usage = [record for record in self.usage if record.subscription_id != subscription_id]
            return self._replace(subscription, plan_id=plan_id)

    def append_transaction(self, transaction: SubscriptionTransaction) -> SubscriptionTransaction:
        with self._lock:
            self.transactions.append(transaction)
            return transaction

    def list_transactions(self, subscription_id: str) -> Sequence[SubscriptionTransaction]:
        with self._lock:
            return [txn for txn in self.transactions if txn.subscription_id == subscription_id]

    def has_transaction(
        self,
        subscription_id: str,
        gateway_transaction_id: str,
        transaction_type: TransactionType,
    ) -> bool:
        with self._lock:
            return any(
                txn.subscription_id == subscription_id
                and txn.gateway_transaction_id == gateway_transaction_id
                and txn.type == transaction_type
                for txn in self.transactions
            )

    def record_usage_within_quota(self, record: UsageRecord, limit: Optional[int]) -> Optional[UsageRecord]:
        with self._lock:
            if limit is not None:
                used = self.sum_usage(record.subscription_id, record.feature_slug)
                if used + record.quantity > limit:
                    return None
            self.usage.append(record)
            return record

    def sum_usage(self, subscription_id: str, feature_slug: str) -> int:
        with self._lock:
            return sum(
                record.quantity
                for record in self.usage
                if record.subscription_id == subscription_id and record.feature_slug == feature_slug
            )

    def delete_usage(self, subscription_id: str) -> int:
        with self._lock:
            before = len(self.usage)
            self.usage = [record for record in self.usage if record.subscription_id != subscription_id]
            return before - len(self.usage)

    def record_webhook_event(self, record: WebhookEventRecord) -> bool:
        with self._lock:
            key = (record.gateway, record.event_id)
            if key in self.webhook_events:
                return False
            self.webhook_events[key] = record
            return True

    def forget_webhook_event(self, gateway: Gateway, event_id: str) -> None:
        with self._lock:
            self.webhook_events.pop((gateway, event_id), None)

    def list_due_for_renewal(
        self,
        *,
        due_before: datetime,
        gateways: Optional[Sequence[Gateway]] = None,
        limit: int = 50,
        after_id: Optional[str] = None,
    ) -> Sequence[Subscription]:
        with self._lock:
            due = [
                subscription
                for subscription in self.subscriptions.values()
                if subscription.canceled_at is None
                and subscription.ends_at is not None
                and subscription.ends_at <= due_before
                and (not gateways or subscription.gateway in gateways)
                and (after_id is None or subscription.id > after_id)
            ]
            due.sort(key=lambda subscription: subscription.id)
            return due[:limit]
