"""Error taxonomy raised by the subscription core and gateway adapters."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class SubscriptionError(Exception):
    """Base error carrying a stable code and an API-ready payload."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class ValidationError(SubscriptionError):
    """Purchase proof or request input was rejected."""

    def __init__(self, message: str, *, detail: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(
            code="invalid_purchase_proof",
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
        )


class ProviderError(SubscriptionError):
    """A provider API call failed or answered with something unusable."""

    def __init__(
        self,
        gateway: str,
        message: str,
        *,
        provider_status: Optional[int] = None,
        detail: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.gateway = gateway
        self.provider_status = provider_status
        merged: Dict[str, Any] = {"gateway": gateway}
        if provider_status is not None:
            merged["provider_status"] = provider_status
        if detail:
            merged.update(detail)
        super().__init__(
            code="provider_error",
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=merged,
        )


class UnsupportedOperation(SubscriptionError):
    """The provider has no way to perform the requested lifecycle change."""

    def __init__(self, gateway: str, operation: str, message: Optional[str] = None) -> None:
        self.gateway = gateway
        self.operation = operation
        super().__init__(
            code="unsupported_operation",
            message=message or f"{gateway} does not support {operation}",
            status_code=status.HTTP_409_CONFLICT,
            detail={"gateway": gateway, "operation": operation},
        )


class AuthenticationFailure(SubscriptionError):
    """An inbound webhook could not be proven to come from its provider."""

    def __init__(self, gateway: str, reason: str) -> None:
        self.gateway = gateway
        self.reason = reason
        super().__init__(
            code="webhook_authentication_failed",
            message=reason,
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"gateway": gateway},
        )


class QuotaExceeded(SubscriptionError):
    """Recording usage would push a feature past its plan quota."""

    def __init__(self, feature: str, *, requested: int, remaining: int) -> None:
        self.feature = feature
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            code="feature_limit_exceeded",
            message=f"Usage limit reached for {feature}",
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"feature": feature, "requested": requested, "remaining": remaining},
        )


class SubscriptionNotFound(SubscriptionError, LookupError):
    def __init__(self, subscription_id: str) -> None:
        self.subscription_id = subscription_id
        super().__init__(
            code="subscription_not_found",
            message="Subscription not found",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"subscription_id": subscription_id},
        )


class DuplicateSubscription(SubscriptionError):
    """Another subscription already holds this (subscriber, gateway, gateway id)."""

    def __init__(self, gateway_id: Optional[str], *, gateway: Optional[str] = None) -> None:
        self.gateway = gateway
        self.gateway_id = gateway_id
        super().__init__(
            code="duplicate_subscription",
            message="The subscriber already holds a subscription with this provider id",
            status_code=status.HTTP_409_CONFLICT,
            detail={"gateway": gateway, "gateway_id": gateway_id},
        )
