import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from jose import jwt


ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import backend.main as backend_main


def _session_token(subject, *, expires_delta=timedelta(minutes=30), secret=None):
    claims = {"exp": datetime.now(timezone.utc) + expires_delta}
    if subject is not None:
        claims["sub"] = subject
    return jwt.encode(claims, secret or backend_main.JWT_SECRET_KEY, algorithm=backend_main.JWT_ALGORITHM)


def test_resolve_subscriber_from_valid_token():
    subscriber = backend_main.resolve_subscriber_from_session_token(_session_token("team:17"))

    assert subscriber.owner_type == "team"
    assert subscriber.owner_id == "17"


def test_resolve_subscriber_invalid_token_returns_none():
    assert backend_main.resolve_subscriber_from_session_token("not-a-valid-token") is None


def test_resolve_subscriber_expired_token_returns_none():
    token = _session_token("user:42", expires_delta=timedelta(minutes=-5))

    assert backend_main.resolve_subscriber_from_session_token(token) is None


def test_resolve_subscriber_rejects_foreign_signature():
    token = _session_token("user:42", secret="someone-elses-secret")

    assert backend_main.resolve_subscriber_from_session_token(token) is None


def test_resolve_subscriber_requires_typed_subject():
    assert backend_main.resolve_subscriber_from_session_token(_session_token("42")) is None
    assert backend_main.resolve_subscriber_from_session_token(_session_token(None)) is None


def test_get_current_subscriber_missing_cookie_is_unauthorized():
    with pytest.raises(HTTPException) as excinfo:
        backend_main.get_current_subscriber(None)

    assert excinfo.value.status_code == 401


def test_get_current_subscriber_invalid_cookie_is_unauthorized():
    with pytest.raises(HTTPException) as excinfo:
        backend_main.get_current_subscriber("garbage")

    assert excinfo.value.status_code == 401


def test_get_current_subscriber_returns_reference():
    subscriber = backend_main.get_current_subscriber(_session_token("user:42"))

    assert subscriber.owner_type == "user"
    assert subscriber.owner_id == "42"


def test_subscription_routes_require_session_cookie():
    client = TestClient(backend_main.app)

    response = client.get("/api/subscriptions")

    assert response.status_code == 401


def test_health_and_renewal_metrics_endpoints():
    client = TestClient(backend_main.app)

    assert client.get("/health").json() == {"status": "ok"}
    metrics = client.get("/api/metrics/subscription-renewals").json()
    assert "runs" in metrics
    assert "last_error" in metrics
