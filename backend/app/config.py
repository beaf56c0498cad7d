"""Environment-driven configuration for subscriptions and their gateways."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .subscriptions.models import Gateway

DEFAULT_XENDIT_CURRENCIES: Tuple[str, ...] = ("IDR", "PHP", "MYR", "THB", "VND", "SGD")


class ConfigurationError(ValueError):
    """A gateway was requested without the settings it needs."""


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_list(value: Optional[str], *, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if value is None or not value.strip():
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class AppleConfig:
    shared_secret: Optional[str]
    sandbox: bool
    root_cert_path: str
    bundle_id: Optional[str]


@dataclass(frozen=True)
class GoogleConfig:
    package_name: Optional[str]
    service_account_path: Optional[str]
    obfuscation_salt: Optional[str]


@dataclass(frozen=True)
class PayPalConfig:
    mode: str
    client_id: Optional[str]
    client_secret: Optional[str]
    webhook_id: Optional[str]
    use_custom_id: bool
    return_url: Optional[str]
    cancel_url: Optional[str]
    brand_name: Optional[str]

    @property
    def base_url(self) -> str:
        if self.mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


@dataclass(frozen=True)
class XenditConfig:
    secret_key: Optional[str]
    callback_token: Optional[str]
    success_return_url: Optional[str]
    failure_return_url: Optional[str]
    currencies: Tuple[str, ...] = DEFAULT_XENDIT_CURRENCIES


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: float
    max_attempts: int
    backoff_seconds: float


@dataclass(frozen=True)
class RenewalConfig:
    batch_size: int
    interval_seconds: int
    gateways: Tuple[Gateway, ...]


@dataclass(frozen=True)
class DatabaseConfig:
    host: str
    port: int
    name: str
    user: str
    password: str
    connect_timeout: int

    def as_connect_kwargs(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "database": self.name,
            "user": self.user,
            "password": self.password,
            "connect_timeout": self.connect_timeout,
        }


@dataclass(frozen=True)
class SubscriptionConfig:
    """Settings for the subscription core and every supported gateway."""

    apple: AppleConfig
    google: GoogleConfig
    paypal: PayPalConfig
    xendit: XenditConfig
    http: HttpConfig
    renewal: RenewalConfig
    database: DatabaseConfig = field(repr=False)

    def require(self, gateway: Gateway) -> None:
        """Raise :class:`ConfigurationError` if ``gateway`` lacks mandatory settings."""

        required: Dict[str, Optional[str]]
        if gateway is Gateway.APPLE:
            required = {"APPLE_SHARED_SECRET": self.apple.shared_secret}
        elif gateway is Gateway.GOOGLE:
            required = {
                "GOOGLE_PLAY_PACKAGE_NAME": self.google.package_name,
                "GOOGLE_PLAY_SERVICE_ACCOUNT": self.google.service_account_path,
                "GOOGLE_PLAY_OBFUSCATION_SALT": self.google.obfuscation_salt,
            }
        elif gateway is Gateway.PAYPAL:
            required = {
                "PAYPAL_CLIENT_ID": self.paypal.client_id,
                "PAYPAL_CLIENT_SECRET": self.paypal.client_secret,
            }
        else:
            required = {"XENDIT_SECRET_KEY": self.xendit.secret_key}

        missing = [key for key, value in required.items() if not value]
        if missing:
            raise ConfigurationError(f"{gateway.value} gateway is not configured; missing {', '.join(missing)}")


def _parse_gateways(value: Optional[str]) -> Tuple[Gateway, ...]:
    names = _to_list(value, default=tuple(gateway.value for gateway in Gateway))
    try:
        return tuple(Gateway(name.lower()) for name in names)
    except ValueError as exc:
        raise ValueError(f"Unknown gateway in SUBSCRIPTION_RENEWAL_GATEWAYS: {value!r}") from exc


def load_subscription_config(env: Optional[Mapping[str, str]] = None) -> SubscriptionConfig:
    """Load :class:`SubscriptionConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    apple = AppleConfig(
        shared_secret=env_mapping.get("APPLE_SHARED_SECRET") or None,
        sandbox=_to_bool(env_mapping.get("APPLE_SANDBOX"), default=True),
        root_cert_path=env_mapping.get("APPLE_ROOT_CERT_PATH") or "storage/apple_root.pem",
        bundle_id=env_mapping.get("APPLE_BUNDLE_ID") or None,
    )
    google = GoogleConfig(
        package_name=env_mapping.get("GOOGLE_PLAY_PACKAGE_NAME") or None,
        service_account_path=env_mapping.get("GOOGLE_PLAY_SERVICE_ACCOUNT") or None,
        obfuscation_salt=env_mapping.get("GOOGLE_PLAY_OBFUSCATION_SALT") or None,
    )

    mode = (env_mapping.get("PAYPAL_MODE") or "sandbox").strip().lower()
    if mode not in {"sandbox", "live"}:
        raise ValueError(f"PAYPAL_MODE must be 'sandbox' or 'live', got {mode!r}")
    paypal = PayPalConfig(
        mode=mode,
        client_id=env_mapping.get("PAYPAL_CLIENT_ID") or None,
        client_secret=env_mapping.get("PAYPAL_CLIENT_SECRET") or None,
        webhook_id=env_mapping.get("PAYPAL_WEBHOOK_ID") or None,
        use_custom_id=_to_bool(env_mapping.get("PAYPAL_USE_CUSTOM_ID"), default=True),
        return_url=env_mapping.get("PAYPAL_RETURN_URL") or None,
        cancel_url=env_mapping.get("PAYPAL_CANCEL_URL") or None,
        brand_name=env_mapping.get("PAYPAL_BRAND_NAME") or None,
    )
    xendit = XenditConfig(
        secret_key=env_mapping.get("XENDIT_SECRET_KEY") or None,
        callback_token=env_mapping.get("XENDIT_CALLBACK_TOKEN") or None,
        success_return_url=env_mapping.get("XENDIT_SUCCESS_RETURN_URL") or None,
        failure_return_url=env_mapping.get("XENDIT_FAILURE_RETURN_URL") or None,
        currencies=tuple(
            code.upper()
            for code in _to_list(env_mapping.get("XENDIT_CURRENCIES"), default=DEFAULT_XENDIT_CURRENCIES)
        ),
    )

    http = HttpConfig(
        timeout_seconds=max(0.1, _to_float(env_mapping.get("SUBSCRIPTION_HTTP_TIMEOUT"), default=10.0)),
        max_attempts=max(1, _to_int(env_mapping.get("SUBSCRIPTION_HTTP_MAX_ATTEMPTS"), default=3)),
        backoff_seconds=max(0.0, _to_float(env_mapping.get("SUBSCRIPTION_HTTP_RETRY_BACKOFF"), default=0.5)),
    )
    renewal = RenewalConfig(
        batch_size=max(1, _to_int(env_mapping.get("SUBSCRIPTION_RENEWAL_BATCH_SIZE"), default=50)),
        interval_seconds=max(1, _to_int(env_mapping.get("SUBSCRIPTION_RENEWAL_INTERVAL_SECONDS"), default=3600)),
        gateways=_parse_gateways(env_mapping.get("SUBSCRIPTION_RENEWAL_GATEWAYS")),
    )
    database = DatabaseConfig(
        host=env_mapping.get("DB_HOST", "127.0.0.1"),
        port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        name=env_mapping.get("DB_NAME", "subscriptions"),
        user=env_mapping.get("DB_USER", "subscriptions"),
        password=env_mapping.get("DB_PASSWORD", ""),
        connect_timeout=_to_int(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5),
    )

    return SubscriptionConfig(
        apple=apple,
        google=google,
        paypal=paypal,
        xendit=xendit,
        http=http,
        renewal=renewal,
        database=database,
    )
