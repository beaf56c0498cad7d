from __future__ import annotations

import base64
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from backend.app.gateways import RetryPolicy, VerifiedWebhook, XenditGateway
from backend.app.gateways.xendit import schedule_interval
from backend.app.subscriptions import (
    BillingInterval,
    Gateway,
    TransactionType,
    ValidationError,
)

AUTH_URL = "https://checkout.xendit.test/auth/repl_1"


@pytest.fixture
def gateway(service, http_client):
    return XenditGateway(
        secret_key="xnd_development_key",
        success_return_url="https://app.test/billing/success",
        currencies=("IDR", "PHP"),
        subscriptions=service,
        http_client=http_client,
        retry_policy=RetryPolicy(backoff_seconds=0),
    )


@pytest.fixture
def created(service, gateway, http_client, subscriber, basic_plan):
    http_client.add(
        "POST",
        "/recurring/plans",
        201,
        {"id": "repl_1", "status": "REQUIRES_ACTION", "actions": [{"action": "AUTH", "url": AUTH_URL}]},
    )
    pending = service.create_pending(subscriber, basic_plan, Gateway.XENDIT)
    gateway.create_subscription(pending, {"customer_id": "cust_1"})
    return service.get_subscription(pending.id)


def _event(event_type, **data):
    return VerifiedWebhook(gateway=Gateway.XENDIT, event_type=event_type, event_id=f"evt-{event_type}", payload={"event": event_type, "data": data})


def _activate(service, gateway, subscription):
    gateway.handle_webhook(
        _event(
            "recurring.plan.activated",
            id="repl_1",
            reference_id=f"sub-{subscription.id}",
            amount=150000,
            currency="IDR",
        )
    )
    return service.get_subscription(subscription.id)


def _types(repository, subscription):
    return [txn.type for txn in repository.list_transactions(subscription.id)]


def test_create_subscription_posts_recurring_plan(created, http_client, repository):
    [call] = http_client.calls("POST", "/recurring/plans")
    payload = http_client.json_of(call)

    assert call["url"] == "https://api.xendit.co/recurring/plans"
    assert call["headers"]["api-version"] == "2022-07-31"
    assert call["headers"]["idempotency-key"].startswith(f"xendit-create-sub-{created.id}-")
    expected_auth = base64.b64encode(b"xnd_development_key:").decode("ascii")
    assert call["headers"]["Authorization"] == f"Basic {expected_auth}"
    assert payload["reference_id"] == f"sub-{created.id}"
    assert payload["currency"] == "IDR"
    assert payload["amount"] == 150000.0
    assert payload["customer_id"] == "cust_1"
    assert payload["schedule"]["interval"] == "MONTH"
    assert payload["schedule"]["interval_count"] == 1
    assert payload["failed_cycle_action"] == "STOP"
    assert payload["success_return_url"] == "https://app.test/billing/success"

    assert created.gateway_id == "repl_1"
    assert created.is_pending
    assert _types(repository, created) == [TransactionType.SETUP]


def test_redirect_target_reuses_stored_auth_action(created, gateway, http_client):
    assert gateway.redirect_target(created) == AUTH_URL
    assert len(http_client.requests) == 1


def test_unsupported_currency_is_rejected_before_calling_xendit(service, gateway, http_client, repository, subscriber, basic_plan):
    usd_plan = repository.add_plan(basic_plan.model_copy(update={"id": "plan_usd", "gateway_prices": ()}))
    pending = service.create_pending(subscriber, usd_plan, Gateway.XENDIT)

    with pytest.raises(ValidationError):
        gateway.create_subscription(pending, {})

    assert http_client.requests == []


def test_schedule_interval_maps_years_to_months(basic_plan):
    yearly = basic_plan.model_copy(update={"interval": BillingInterval.YEAR, "interval_count": 2})
    hourly = basic_plan.model_copy(update={"interval": BillingInterval.HOUR})

    assert schedule_interval(yearly) == ("MONTH", 24)
    with pytest.raises(ValidationError):
        schedule_interval(hourly)


def test_plan_activated_starts_first_period(created, service, gateway, repository):
    activated = _activate(service, gateway, created)

    assert activated.starts_at == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
    assert activated.ends_at == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)
    assert service.is_active(activated)
    payment = repository.list_transactions(created.id)[-1]
    assert payment.type == TransactionType.PAYMENT
    assert payment.amount == Decimal("150000.00")


def test_first_cycle_after_activation_is_not_a_renewal(created, service, gateway):
    _activate(service, gateway, created)

    gateway.handle_webhook(_event("recurring.cycle.succeeded", id="cyc_1", plan_id="repl_1", cycle_number=1))

    assert service.get_subscription(created.id).renewal_count == 0


def test_cycle_succeeded_before_activation_confirms_subscription(created, service, gateway):
    gateway.handle_webhook(
        _event("recurring.cycle.succeeded", id="cyc_1", plan_id="repl_1", cycle_number=1, amount=150000, currency="IDR")
    )

    confirmed = service.get_subscription(created.id)
    assert not confirmed.is_pending
    assert confirmed.ends_at == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)


def test_later_cycle_renews_to_scheduled_period(created, service, gateway, repository):
    _activate(service, gateway, created)
    event = _event(
        "recurring.cycle.succeeded",
        id="cyc_2",
        plan_id="repl_1",
        cycle_number=2,
        scheduled_timestamp="2024-06-01T12:00:00Z",
        amount=150000,
        currency="IDR",
    )

    gateway.handle_webhook(event)
    gateway.handle_webhook(event)

    renewed = service.get_subscription(created.id)
    assert renewed.ends_at == datetime(2024, 7, 1, 12, tzinfo=timezone.utc)
    assert renewed.renewal_count == 1
    assert _types(repository, created).count(TransactionType.RENEWAL) == 1


def test_cycle_after_sweep_does_not_extend_again(created, service, gateway, clock):
    _activate(service, gateway, created)
    clock.advance(days=30, hours=20)

    summary = service.process_due_renewals()
    gateway.handle_webhook(
        _event(
            "recurring.cycle.succeeded",
            id="cyc_2",
            plan_id="repl_1",
            cycle_number=2,
            scheduled_timestamp="2024-06-01T12:00:00Z",
        )
    )

    assert summary.renewed == 1
    renewed = service.get_subscription(created.id)
    assert renewed.ends_at == datetime(2024, 7, 1, 12, tzinfo=timezone.utc)
    assert renewed.renewal_count == 1


def test_failed_cycle_with_stop_action_cancels(created, service, gateway, repository):
    _activate(service, gateway, created)

    gateway.handle_webhook(
        _event("recurring.cycle.failed", id="cyc_2", plan_id="repl_1", failed_cycle_action="STOP", amount=150000, currency="IDR")
    )

    canceled = service.get_subscription(created.id)
    assert canceled.is_canceled
    assert not service.is_active(canceled)
    types = _types(repository, created)
    assert TransactionType.FAILED in types
    assert types[-1] == TransactionType.EXPIRY


def test_plan_inactivated_cancels_immediately(created, service, gateway):
    _activate(service, gateway, created)

    gateway.handle_webhook(_event("recurring.plan.inactivated", id="repl_1"))

    assert not service.is_active(service.get_subscription(created.id))


def test_unknown_plan_is_ignored(created, service, gateway, repository):
    gateway.handle_webhook(_event("recurring.plan.activated", id="repl_unknown"))

    assert service.get_subscription(created.id).is_pending
    assert _types(repository, created) == [TransactionType.SETUP]


def test_cancel_deactivates_plan(created, service, gateway, http_client):
    _activate(service, gateway, created)
    http_client.add("POST", "/recurring/plans/repl_1/deactivate", 200, {"id": "repl_1", "status": "INACTIVE"})

    canceled = gateway.cancel_subscription(service.get_subscription(created.id))

    assert canceled.ends_at == canceled.canceled_at
    assert len(http_client.calls("POST", "/deactivate")) == 1


def test_swap_updates_amount_and_keeps_schedule(created, service, gateway, http_client, repository, pro_plan):
    _activate(service, gateway, created)
    http_client.add(
        "GET",
        "/recurring/plans/repl_1",
        200,
        {"id": "repl_1", "schedule": {"id": "resc_1", "interval": "MONTH", "interval_count": 1}},
    )
    http_client.add("PATCH", "/recurring/plans/repl_1", 200, {"id": "repl_1"})

    swapped = gateway.swap_plan(service.get_subscription(created.id), pro_plan)

    assert swapped.plan_id == pro_plan.id
    [patch] = http_client.calls("PATCH", "/recurring/plans/repl_1")
    assert http_client.json_of(patch) == {"description": "Pro Subscription", "amount": 350000.0}
    assert http_client.calls("PATCH", "/recurring/schedules") == []
    assert _types(repository, created)[-1] == TransactionType.PLAN_SWAP


def test_swap_to_different_cadence_reschedules(created, service, gateway, http_client, repository, pro_plan):
    yearly = repository.add_plan(pro_plan.model_copy(update={"id": "plan_pro_yearly", "interval": BillingInterval.YEAR}))
    _activate(service, gateway, created)
    http_client.add(
        "GET",
        "/recurring/plans/repl_1",
        200,
        {"id": "repl_1", "schedule": {"id": "resc_1", "interval": "MONTH", "interval_count": 1}},
    )
    http_client.add("PATCH", "/recurring/plans/repl_1", 200, {"id": "repl_1"})
    http_client.add("PATCH", "/recurring/schedules/resc_1", 200, {"id": "resc_1"})

    gateway.swap_plan(service.get_subscription(created.id), yearly)

    [reschedule] = http_client.calls("PATCH", "/recurring/schedules/resc_1")
    assert http_client.json_of(reschedule) == {"interval": "MONTH", "interval_count": 12}
