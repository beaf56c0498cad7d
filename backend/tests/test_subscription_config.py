from __future__ import annotations

import pytest

from backend.app.config import (
    DEFAULT_XENDIT_CURRENCIES,
    ConfigurationError,
    load_subscription_config,
)
from backend.app.subscriptions import Gateway


def test_defaults_without_environment():
    config = load_subscription_config({})

    assert config.paypal.mode == "sandbox"
    assert config.paypal.base_url == "https://api-m.sandbox.paypal.com"
    assert config.apple.sandbox is True
    assert config.xendit.currencies == DEFAULT_XENDIT_CURRENCIES
    assert config.http.max_attempts == 3
    assert config.renewal.batch_size == 50
    assert config.renewal.gateways == tuple(Gateway)
    assert config.database.as_connect_kwargs()["port"] == 5432


def test_values_are_parsed_from_environment():
    config = load_subscription_config(
        {
            "PAYPAL_MODE": "LIVE",
            "PAYPAL_USE_CUSTOM_ID": "no",
            "APPLE_SANDBOX": "false",
            "XENDIT_CURRENCIES": "idr, php",
            "SUBSCRIPTION_HTTP_MAX_ATTEMPTS": "0",
            "SUBSCRIPTION_HTTP_TIMEOUT": "2.5",
            "SUBSCRIPTION_RENEWAL_GATEWAYS": "paypal,XENDIT",
            "DB_NAME": "billing",
        }
    )

    assert config.paypal.base_url == "https://api-m.paypal.com"
    assert config.paypal.use_custom_id is False
    assert config.apple.sandbox is False
    assert config.xendit.currencies == ("IDR", "PHP")
    assert config.http.max_attempts == 1
    assert config.http.timeout_seconds == 2.5
    assert config.renewal.gateways == (Gateway.PAYPAL, Gateway.XENDIT)
    assert config.database.as_connect_kwargs()["database"] == "billing"


@pytest.mark.parametrize(
    "env",
    [
        {"PAYPAL_MODE": "production"},
        {"SUBSCRIPTION_RENEWAL_GATEWAYS": "stripe"},
        {"SUBSCRIPTION_RENEWAL_BATCH_SIZE": "many"},
    ],
)
def test_invalid_values_are_rejected(env):
    with pytest.raises(ValueError):
        load_subscription_config(env)


@pytest.mark.parametrize(
    ("gateway", "missing"),
    [
        (Gateway.APPLE, "APPLE_SHARED_SECRET"),
        (Gateway.GOOGLE, "GOOGLE_PLAY_SERVICE_ACCOUNT"),
        (Gateway.PAYPAL, "PAYPAL_CLIENT_SECRET"),
        (Gateway.XENDIT, "XENDIT_SECRET_KEY"),
    ],
)
def test_require_names_missing_settings(gateway, missing):
    config = load_subscription_config({"PAYPAL_CLIENT_ID": "id", "GOOGLE_PLAY_PACKAGE_NAME": "com.example.app"})

    with pytest.raises(ConfigurationError, match=missing):
        config.require(gateway)


def test_require_passes_when_configured():
    config = load_subscription_config({"XENDIT_SECRET_KEY": "xnd", "APPLE_SHARED_SECRET": "secret"})

    config.require(Gateway.XENDIT)
    config.require(Gateway.APPLE)


def test_google_requires_explicit_obfuscation_salt():
    env = {"GOOGLE_PLAY_PACKAGE_NAME": "com.example.app", "GOOGLE_PLAY_SERVICE_ACCOUNT": "storage/google.json"}

    unsalted = load_subscription_config(env)
    assert unsalted.google.obfuscation_salt is None
    with pytest.raises(ConfigurationError, match="GOOGLE_PLAY_OBFUSCATION_SALT"):
        unsalted.require(Gateway.GOOGLE)

    salted = load_subscription_config({**env, "GOOGLE_PLAY_OBFUSCATION_SALT": "per-deployment-salt"})
    salted.require(Gateway.GOOGLE)
    assert salted.google.obfuscation_salt == "per-deployment-salt"
