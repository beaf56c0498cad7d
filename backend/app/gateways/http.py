"""Outbound HTTP plumbing shared by every gateway adapter."""
from __future__ import annotations

import json
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Protocol
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request
from uuid import uuid4

from ..subscriptions.exceptions import ProviderError

logger = logging.getLogger(__name__)

_BODY_EXCERPT = 500


class HttpTransportError(Exception):
    """The request never produced an HTTP response (DNS, connect, timeout)."""


@dataclass(frozen=True)
class HttpResponse:
    status_code: int
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        if not self.body:
            return {}
        return json.loads(self.body.decode("utf-8"))

    def excerpt(self) -> str:
        return self.body[:_BODY_EXCERPT].decode("utf-8", errors="replace")


class HttpClient(Protocol):
    """Minimal transport the adapters depend on."""

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        ...


class UrllibHttpClient:
    """Blocking client built on :mod:`urllib.request`."""

    def __init__(self, *, timeout: float = 10.0) -> None:
        self.timeout = timeout

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        req = urllib_request.Request(url, data=body, method=method.upper(), headers=dict(headers or {}))
        try:
            with urllib_request.urlopen(req, timeout=timeout or self.timeout) as response:
                return HttpResponse(
                    status_code=response.status,
                    body=response.read(),
                    headers=dict(response.headers.items()),
                )
        except urllib_error.HTTPError as exc:
            return HttpResponse(
                status_code=exc.code,
                body=exc.read() or b"",
                headers=dict(exc.headers.items()) if exc.headers else {},
            )
        except (urllib_error.URLError, socket.timeout, ConnectionError) as exc:
            raise HttpTransportError(str(exc)) from exc


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.5


def json_body(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def form_body(fields: Mapping[str, str]) -> bytes:
    return urllib_parse.urlencode(fields).encode("utf-8")


def new_idempotency_key(gateway: str, action: str, subscription_id: Optional[str] = None) -> str:
    """Key sent unchanged on every retry of one logical provider call."""

    scope = f"sub-{subscription_id}" if subscription_id else "global"
    return f"{gateway}-{action}-{scope}-{uuid4().hex[:16]}"


def send_with_retries(
    client: HttpClient,
    method: str,
    url: str,
    *,
    gateway: str,
    action: str,
    policy: RetryPolicy,
    headers: Optional[Mapping[str, str]] = None,
    body: Optional[bytes] = None,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> HttpResponse:
    """Send a request, retrying transport failures and 5xx answers.

    Headers, including any idempotency key, are identical on every attempt.
    Raises :class:`ProviderError` once attempts are exhausted without a
    response; otherwise the last response is returned for the caller to judge.
    """

    attempts = max(1, policy.max_attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            response = client.request(method, url, headers=headers, body=body, timeout=timeout)
        except HttpTransportError as exc:
            logger.warning(
                "Gateway request failed to complete",
                extra={"gateway": gateway, "action": action, "attempt": attempt, "error": str(exc)},
            )
            if attempt >= attempts:
                raise ProviderError(gateway, f"{action} request failed: {exc}") from exc
            sleep(policy.backoff_seconds * attempt)
            continue

        if response.status_code >= 500 and attempt < attempts:
            logger.warning(
                "Gateway returned a server error; retrying",
                extra={
                    "gateway": gateway,
                    "action": action,
                    "attempt": attempt,
                    "provider_status": response.status_code,
                },
            )
            sleep(policy.backoff_seconds * attempt)
            continue
        return response


def expect_json(response: HttpResponse, *, gateway: str, action: str) -> Dict[str, Any]:
    """Decode a successful JSON response or raise :class:`ProviderError`."""

    if not response.ok:
        logger.error(
            "Gateway request rejected",
            extra={
                "gateway": gateway,
                "action": action,
                "provider_status": response.status_code,
                "response_excerpt": response.excerpt(),
            },
        )
        raise ProviderError(
            gateway,
            f"{action} failed with HTTP {response.status_code}",
            provider_status=response.status_code,
            detail={"response": response.excerpt()},
        )
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderError(
            gateway,
            f"{action} returned invalid JSON",
            provider_status=response.status_code,
        ) from exc
    if not isinstance(payload, dict):
        raise ProviderError(gateway, f"{action} returned an unexpected payload", provider_status=response.status_code)
    return payload
