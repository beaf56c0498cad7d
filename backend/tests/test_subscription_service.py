"""State machine tests for the subscription core."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend.app.subscriptions import (
    DuplicateSubscription,
    Gateway,
    SubscriberRef,
    SubscriptionEventType,
    SubscriptionNotFound,
    SubscriptionState,
    TransactionStatus,
    TransactionType,
    UsageLedger,
)

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _activate(service, subscriber, plan, *, ends_at=None, gateway=Gateway.XENDIT):
    pending = service.create_pending(subscriber, plan, gateway)
    return service.activate(pending, gateway_id=f"gw-{pending.id}", ends_at=ends_at)


def _renewals(repository, subscription):
    return [txn for txn in repository.list_transactions(subscription.id) if txn.type == TransactionType.RENEWAL]


def test_create_pending_is_not_an_active_subscription(service, subscriber, basic_plan):
    pending = service.create_pending(subscriber, basic_plan, Gateway.PAYPAL)

    assert pending.is_pending
    assert service.state(pending) == SubscriptionState.PENDING
    assert service.active_subscription(subscriber) is None


def test_activate_starts_period_and_publishes_created(service, events, subscriber, basic_plan):
    pending = service.create_pending(subscriber, basic_plan, Gateway.XENDIT)

    activated = service.activate(pending, gateway_id="plan-1", ends_at=T0 + timedelta(days=30))

    assert activated is not None
    assert activated.starts_at == T0
    assert activated.ends_at == T0 + timedelta(days=30)
    assert activated.trial_ends_at is None
    assert service.state(activated) == SubscriptionState.ACTIVE
    assert service.active_subscription(subscriber).id == activated.id
    assert len(events.of_type(SubscriptionEventType.CREATED)) == 1

    assert service.activate(pending, gateway_id="plan-1") is None
    assert len(events.of_type(SubscriptionEventType.CREATED)) == 1


def test_trial_keeps_subscription_active_after_period_end(service, repository, clock, subscriber, basic_plan):
    trial_plan = repository.add_plan(basic_plan.model_copy(update={"id": "plan_trial", "trial_days": 7}))

    subscription = _activate(service, subscriber, trial_plan, ends_at=T0 + timedelta(days=1))

    assert subscription.trial_ends_at == T0 + timedelta(days=7)
    assert service.is_active(subscription)
    assert not service.on_grace_period(subscription)

    clock.advance(days=3)
    assert service.is_active(subscription)
    assert service.state(subscription) == SubscriptionState.TRIALING

    clock.advance(days=5)
    assert not service.is_active(subscription)
    assert service.state(subscription) == SubscriptionState.EXPIRED


def test_grace_period_is_reported_without_granting_access(service, repository, clock, subscriber, basic_plan):
    grace_plan = repository.add_plan(basic_plan.model_copy(update={"id": "plan_grace", "grace_days": 3}))
    subscription = _activate(service, subscriber, grace_plan, ends_at=T0 + timedelta(days=1))

    assert subscription.grace_ends_at == T0 + timedelta(days=4)

    clock.advance(days=2)
    assert service.on_grace_period(subscription)
    assert not service.is_active(subscription)
    assert service.state(subscription) == SubscriptionState.GRACE


def test_is_active_follows_trial_grace_cancel_and_expiry(service, repository, clock, subscriber, basic_plan):
    plan = repository.add_plan(basic_plan.model_copy(update={"id": "plan_walk", "grace_days": 3}))
    pending = service.create_pending(subscriber, plan, Gateway.XENDIT)
    assert not pending.is_active(T0)
    assert not service.is_active(pending)

    subscription = service.activate(pending, gateway_id="gw-walk", ends_at=T0 + timedelta(days=1))
    assert subscription.is_active(T0)

    canceled = service.cancel(subscription)
    assert canceled.is_active(T0)
    assert service.state(canceled) == SubscriptionState.CANCELED
    resumed = service.resume(canceled)

    clock.advance(days=2)
    assert service.state(resumed) == SubscriptionState.GRACE
    assert not resumed.is_active(clock())

    clock.advance(days=3)
    assert service.state(resumed) == SubscriptionState.EXPIRED
    assert not resumed.is_active(clock())

    trial_plan = repository.add_plan(basic_plan.model_copy(update={"id": "plan_walk_trial", "trial_days": 7}))
    trialing = _activate(service, subscriber, trial_plan, ends_at=clock() + timedelta(days=1))
    clock.advance(days=3)
    assert trialing.is_active(clock())

    canceled_trial = service.cancel(trialing)
    assert not canceled_trial.is_active(clock())
    assert service.active_subscription(subscriber) is None


def test_provider_id_is_unique_per_subscriber_and_gateway(service, repository, subscriber, basic_plan):
    service.create_pending(subscriber, basic_plan, Gateway.GOOGLE, gateway_id="tok-dup")

    with pytest.raises(DuplicateSubscription) as excinfo:
        service.create_pending(subscriber, basic_plan, Gateway.GOOGLE, gateway_id="tok-dup")

    assert excinfo.value.status_code == 409
    other = SubscriberRef(owner_type="user", owner_id="43")
    service.create_pending(other, basic_plan, Gateway.GOOGLE, gateway_id="tok-dup")
    service.create_pending(subscriber, basic_plan, Gateway.PAYPAL, gateway_id="tok-dup")
    service.create_pending(subscriber, basic_plan, Gateway.GOOGLE)
    service.create_pending(subscriber, basic_plan, Gateway.GOOGLE)
    assert len(repository.subscriptions) == 5


def test_taken_provider_id_cannot_be_bound_to_another_row(service, repository, subscriber, basic_plan):
    service.create_pending(subscriber, basic_plan, Gateway.GOOGLE, gateway_id="tok-taken")
    pending = service.create_pending(subscriber, basic_plan, Gateway.GOOGLE)

    with pytest.raises(DuplicateSubscription):
        service.set_gateway_id(pending, "tok-taken")
    with pytest.raises(DuplicateSubscription):
        service.activate(pending, gateway_id="tok-taken")

    stored = repository.get_subscription(pending.id)
    assert stored.gateway_id is None
    assert stored.is_pending


def test_renew_extends_by_one_period_and_records_transaction(service, repository, events, subscriber, basic_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=datetime(2024, 5, 31, 12, tzinfo=timezone.utc))

    renewed = service.renew(subscription)

    assert renewed is not None
    assert renewed.ends_at == datetime(2024, 6, 30, 12, tzinfo=timezone.utc)
    assert renewed.renewal_count == 1
    [transaction] = _renewals(repository, subscription)
    assert transaction.amount == Decimal("150000.00")
    assert transaction.currency == "IDR"
    assert len(events.of_type(SubscriptionEventType.RENEWED)) == 1
    assert len(events.of_type(SubscriptionEventType.PAYMENT_SUCCEEDED)) == 1


def test_renew_from_stale_copy_does_not_advance_twice(service, repository, subscriber, basic_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(hours=2))

    first = service.renew(subscription)
    second = service.renew(subscription)

    assert first is not None
    assert second is None
    stored = repository.get_subscription(subscription.id)
    assert stored.ends_at == first.ends_at
    assert stored.renewal_count == 1
    assert len(_renewals(repository, subscription)) == 1


def test_renew_to_same_provider_target_is_idempotent(service, repository, subscriber, basic_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(days=1))
    target = T0 + timedelta(days=31)

    first = service.renew(subscription, target, gateway_transaction_id="txn-1")
    replay = service.renew(first, target, gateway_transaction_id="txn-1")
    same_target = service.renew(first, target)

    assert first.ends_at == target
    assert replay is None
    assert same_target is None
    assert repository.get_subscription(subscription.id).renewal_count == 1


def test_renew_skips_lapsed_subscription(service, repository, clock, subscriber, basic_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(days=1))
    clock.advance(days=2)

    assert service.renew(subscription) is None
    assert _renewals(repository, subscription) == []


def test_cancel_at_period_end_keeps_access_until_ends_at(service, events, clock, subscriber, basic_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(days=10))

    canceled = service.cancel(subscription)

    assert canceled.canceled_at == T0
    assert canceled.ends_at == T0 + timedelta(days=10)
    assert service.is_active(canceled)
    assert service.state(canceled) == SubscriptionState.CANCELED
    assert service.renew(canceled) is None

    clock.advance(days=11)
    assert not service.is_active(canceled)


def test_cancel_twice_keeps_original_timestamp(service, events, clock, subscriber, basic_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(days=10))
    service.cancel(subscription)

    clock.advance(days=1)
    again = service.cancel(subscription)

    assert again.canceled_at == T0
    assert len(events.of_type(SubscriptionEventType.CANCELED)) == 1


def test_immediate_cancel_revokes_access_now(service, subscriber, basic_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(days=10))

    canceled = service.cancel(subscription, immediate=True)

    assert canceled.canceled_at == T0
    assert canceled.ends_at == T0
    assert not service.is_active(canceled)


def test_immediate_cancel_cuts_short_a_period_end_cancel(service, events, clock, subscriber, basic_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(days=10))
    service.cancel(subscription)
    clock.advance(days=1)

    revoked = service.cancel(subscription, immediate=True)

    assert revoked.canceled_at == T0
    assert revoked.ends_at == T0 + timedelta(days=1)
    assert not service.is_active(revoked)
    assert len(events.of_type(SubscriptionEventType.CANCELED)) == 2


def test_resume_clears_cancellation_only_when_set(service, events, subscriber, basic_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(days=10))

    unchanged = service.resume(subscription)
    assert unchanged.canceled_at is None
    assert events.of_type(SubscriptionEventType.RESUMED) == []

    service.cancel(subscription)
    resumed = service.resume(subscription)

    assert resumed.canceled_at is None
    assert resumed.ends_at == T0 + timedelta(days=10)
    assert len(events.of_type(SubscriptionEventType.RESUMED)) == 1


def test_swap_resets_usage_to_new_plan_quota(service, repository, events, subscriber, basic_plan, pro_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(days=10))
    ledger = UsageLedger(service)
    ledger.record_usage(subscription, "api-calls", 30)

    swapped = service.swap(subscription, pro_plan)

    assert swapped.plan_id == pro_plan.id
    assert repository.sum_usage(subscription.id, "api-calls") == 0
    assert ledger.remaining_usage(swapped, "api-calls") == 1000
    [event] = events.of_type(SubscriptionEventType.SWAPPED)
    assert event.metadata == {"previous_plan_id": basic_plan.id, "plan_id": pro_plan.id}


def test_record_transaction_publishes_payment_failed(service, events, subscriber, basic_plan):
    subscription = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(days=10))

    transaction = service.record_transaction(
        subscription,
        TransactionType.FAILED,
        amount="10",
        currency="usd",
        status=TransactionStatus.FAILED,
    )

    assert transaction.amount == Decimal("10.00")
    assert transaction.currency == "USD"
    assert len(events.of_type(SubscriptionEventType.PAYMENT_FAILED)) == 1
    assert events.of_type(SubscriptionEventType.PAYMENT_SUCCEEDED) == []


def test_get_subscription_raises_for_unknown_id(service):
    with pytest.raises(SubscriptionNotFound):
        service.get_subscription("sub_missing")


def test_process_due_renewals_renews_only_due_active_rows(service, repository, subscriber, basic_plan):
    due = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(hours=2))
    later = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(days=5))
    lapsed = _activate(service, subscriber, basic_plan, ends_at=T0 - timedelta(days=1))
    canceled = _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(hours=3))
    service.cancel(canceled)

    summary = service.process_due_renewals(batch_size=1)

    assert summary.scanned == 2
    assert summary.renewed == 1
    assert summary.skipped == 1
    assert summary.failed == 0
    assert repository.get_subscription(due.id).ends_at == datetime(2024, 6, 1, 14, tzinfo=timezone.utc)
    assert repository.get_subscription(later.id).renewal_count == 0
    assert repository.get_subscription(lapsed.id).renewal_count == 0
    assert repository.get_subscription(canceled.id).renewal_count == 0

    rerun = service.process_due_renewals()
    assert rerun.renewed == 0
    assert rerun.scanned == 1


def test_process_due_renewals_filters_by_gateway(service, subscriber, basic_plan):
    _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(hours=2), gateway=Gateway.XENDIT)

    summary = service.process_due_renewals(gateways=[Gateway.APPLE])

    assert summary.scanned == 0


def test_process_due_renewals_counts_failures(service, repository, subscriber, basic_plan, monkeypatch):
    _activate(service, subscriber, basic_plan, ends_at=T0 + timedelta(hours=2))

    def explode(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(repository, "advance_ends_at", explode)

    summary = service.process_due_renewals()

    assert summary.failed == 1
    assert len(summary.failures) == 1
