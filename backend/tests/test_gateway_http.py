from __future__ import annotations

import pytest

from backend.app.gateways.http import (
    HttpResponse,
    HttpTransportError,
    RetryPolicy,
    expect_json,
    new_idempotency_key,
    send_with_retries,
)
from backend.app.subscriptions import ProviderError


class FlakyClient:
    def __init__(self, failures):
        self.failures = failures
        self.calls = []

    def request(self, method, url, *, headers=None, body=None, timeout=None):
        self.calls.append(dict(headers or {}))
        if len(self.calls) <= self.failures:
            raise HttpTransportError("connection reset")
        return HttpResponse(status_code=200, body=b'{"ok": true}')


def test_server_errors_are_retried_with_same_headers(http_client):
    http_client.add("POST", "/charge", 503, {"error": "busy"})
    http_client.add("POST", "/charge", 201, {"id": "ch_1"})
    sleeps = []
    headers = {"idempotency-key": new_idempotency_key("xendit", "charge", "sub_1")}

    response = send_with_retries(
        http_client,
        "POST",
        "https://api.test/charge",
        gateway="xendit",
        action="charge",
        policy=RetryPolicy(max_attempts=3, backoff_seconds=0.5),
        headers=headers,
        sleep=sleeps.append,
    )

    assert response.status_code == 201
    assert sleeps == [0.5]
    keys = [call["headers"]["idempotency-key"] for call in http_client.requests]
    assert len(keys) == 2
    assert keys[0] == keys[1]


def test_client_errors_are_not_retried(http_client):
    http_client.add("GET", "/plans/missing", 404, {"error": "not found"})
    sleeps = []

    response = send_with_retries(
        http_client,
        "GET",
        "https://api.test/plans/missing",
        gateway="xendit",
        action="get_plan",
        policy=RetryPolicy(),
        sleep=sleeps.append,
    )

    assert response.status_code == 404
    assert len(http_client.requests) == 1
    assert sleeps == []


def test_last_server_error_is_returned_when_attempts_run_out(http_client):
    http_client.add("GET", "/status", 502, {"error": "bad gateway"})

    response = send_with_retries(
        http_client,
        "GET",
        "https://api.test/status",
        gateway="paypal",
        action="status",
        policy=RetryPolicy(max_attempts=2, backoff_seconds=0),
        sleep=lambda _: None,
    )

    assert response.status_code == 502
    assert len(http_client.requests) == 2


def test_transport_errors_raise_provider_error_after_attempts():
    client = FlakyClient(failures=5)
    sleeps = []

    with pytest.raises(ProviderError) as excinfo:
        send_with_retries(
            client,
            "POST",
            "https://api.test/token",
            gateway="google",
            action="token",
            policy=RetryPolicy(max_attempts=3, backoff_seconds=0.5),
            sleep=sleeps.append,
        )

    assert excinfo.value.gateway == "google"
    assert len(client.calls) == 3
    assert sleeps == [0.5, 1.0]


def test_transport_error_then_success():
    client = FlakyClient(failures=1)

    response = send_with_retries(
        client,
        "GET",
        "https://api.test/ping",
        gateway="google",
        action="ping",
        policy=RetryPolicy(max_attempts=3, backoff_seconds=0),
        sleep=lambda _: None,
    )

    assert response.json() == {"ok": True}
    assert len(client.calls) == 2


def test_expect_json_raises_for_rejected_response():
    with pytest.raises(ProviderError) as excinfo:
        expect_json(HttpResponse(status_code=400, body=b'{"message": "bad"}'), gateway="paypal", action="create")

    assert excinfo.value.provider_status == 400
    assert excinfo.value.status_code == 502
    assert "bad" in excinfo.value.payload["response"]


@pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
def test_expect_json_rejects_unusable_payloads(body):
    with pytest.raises(ProviderError):
        expect_json(HttpResponse(status_code=200, body=body), gateway="xendit", action="get_plan")


def test_idempotency_keys_are_scoped_and_unique():
    first = new_idempotency_key("paypal", "create", "sub_1")
    second = new_idempotency_key("paypal", "create", "sub_1")

    assert first.startswith("paypal-create-sub-sub_1-")
    assert first != second
    assert new_idempotency_key("xendit", "refresh").startswith("xendit-refresh-global-")
