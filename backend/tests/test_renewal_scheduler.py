from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from backend import renewals
from backend.app.config import load_subscription_config
from backend.app.subscriptions import Gateway


@pytest.fixture(autouse=True)
def reset_metrics():
    renewals._reset_metrics_for_testing()
    yield
    renewals._reset_metrics_for_testing()


@pytest.fixture
def config():
    return load_subscription_config({"SUBSCRIPTION_RENEWAL_BATCH_SIZE": "2"})


@pytest.fixture(autouse=True)
def wired(monkeypatch, service, config):
    monkeypatch.setattr(renewals, "get_subscription_service", lambda: service)
    monkeypatch.setattr(renewals, "get_subscription_config", lambda: config)


def _active(service, clock, subscriber, plan, gateway, *, days):
    pending = service.create_pending(subscriber, plan, gateway)
    return service.activate(pending, gateway_id=f"{gateway.value}-{days}", ends_at=clock() + timedelta(days=days))


def test_run_renewal_job_records_metrics(service, clock, subscriber, basic_plan):
    due = _active(service, clock, subscriber, basic_plan, Gateway.XENDIT, days=0.25)
    _active(service, clock, subscriber, basic_plan, Gateway.PAYPAL, days=10)

    summary = renewals.run_renewal_job(now=clock())

    assert summary.renewed == 1
    assert service.get_subscription(due.id).renewal_count == 1
    metrics = renewals.get_renewal_metrics()
    assert metrics["runs"] == 1
    assert metrics["renewed"] == 1
    assert metrics["last_error"] is None
    assert metrics["last_success_at"] == datetime(2024, 5, 1, 12, tzinfo=timezone.utc).isoformat()


def test_run_renewal_job_honours_gateway_filter(monkeypatch, service, clock, subscriber, basic_plan, config):
    restricted = replace(config, renewal=replace(config.renewal, gateways=(Gateway.PAYPAL,)))
    monkeypatch.setattr(renewals, "get_subscription_config", lambda: restricted)
    xendit = _active(service, clock, subscriber, basic_plan, Gateway.XENDIT, days=0.25)

    summary = renewals.run_renewal_job(now=clock())

    assert summary.scanned == 0
    assert service.get_subscription(xendit.id).renewal_count == 0


def test_run_renewal_job_records_failure(monkeypatch, service, clock):
    def explode(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(service, "process_due_renewals", explode)

    with pytest.raises(RuntimeError):
        renewals.run_renewal_job(now=clock())

    metrics = renewals.get_renewal_metrics()
    assert metrics["runs"] == 1
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "RuntimeError: database unavailable"
    assert metrics["last_success_at"] is None


def test_naive_run_time_is_treated_as_utc(service):
    summary = renewals.run_renewal_job(now=datetime(2024, 5, 1, 12))

    assert summary.scanned == 0
    assert renewals.get_renewal_metrics()["last_run_at"] == "2024-05-01T12:00:00+00:00"


def test_scheduler_start_is_idempotent(monkeypatch):
    started = []

    class FakeWorker:
        def __init__(self, *, interval):
            self.interval = interval

        def start(self):
            started.append(self.interval)

        def stop(self):
            started.append("stopped")

        def join(self, timeout=None):
            pass

    monkeypatch.setattr(renewals, "_RenewalWorker", FakeWorker)

    renewals.start_renewal_scheduler(interval=5)
    renewals.start_renewal_scheduler(interval=5)
    renewals.shutdown_renewal_scheduler()
    renewals.shutdown_renewal_scheduler()

    assert started == [5, "stopped"]
