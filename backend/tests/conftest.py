from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from backend.app.gateways.http import HttpResponse
from backend.app.subscriptions import (
    BillingInterval,
    Gateway,
    InMemoryEventSink,
    InMemorySubscriptionRepository,
    Plan,
    PlanFeature,
    PlanGatewayPrice,
    SubscriberRef,
    SubscriptionService,
)


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


class FakeHttpClient:
    """Routes requests by method and URL fragment and records every call.

    Queued responses for one route are consumed in order; the last one repeats.
    """

    def __init__(self) -> None:
        self.routes: List[Tuple[str, str, List[HttpResponse]]] = []
        self.requests: List[Dict[str, Any]] = []

    def add(
        self,
        method: str,
        fragment: str,
        status_code: int = 200,
        payload: Any = None,
        *,
        replace: bool = False,
    ) -> None:
        body = b"" if payload is None else json.dumps(payload).encode("utf-8")
        for route_method, route_fragment, responses in self.routes:
            if route_method == method and route_fragment == fragment:
                if replace:
                    responses.clear()
                responses.append(HttpResponse(status_code=status_code, body=body))
                return
        self.routes.append((method, fragment, [HttpResponse(status_code=status_code, body=body)]))

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        body: Optional[bytes] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        self.requests.append({"method": method, "url": url, "headers": dict(headers or {}), "body": body})
        matches = [route for route in self.routes if route[0] == method and route[1] in url]
        if not matches:
            return HttpResponse(status_code=404, body=b'{"message": "no route"}')
        # The most specific fragment wins.
        responses = max(matches, key=lambda route: len(route[1]))[2]
        return responses.pop(0) if len(responses) > 1 else responses[0]

    def calls(self, method: str, fragment: str) -> List[Dict[str, Any]]:
        return [call for call in self.requests if call["method"] == method and fragment in call["url"]]

    @staticmethod
    def json_of(call: Mapping[str, Any]) -> Any:
        return json.loads(call["body"].decode("utf-8"))


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def subscriber() -> SubscriberRef:
    return SubscriberRef(owner_type="user", owner_id="42")


@pytest.fixture
def basic_plan() -> Plan:
    return Plan(
        id="plan_basic",
        slug="basic",
        name="Basic",
        price=Decimal("10.00"),
        currency="USD",
        interval=BillingInterval.MONTH,
        features=(PlanFeature(slug="api-calls", value=100),),
        gateway_prices=(
            PlanGatewayPrice(gateway=Gateway.APPLE, price=Decimal("12.99"), currency="USD", gateway_plan_id="com.example.basic"),
            PlanGatewayPrice(
                gateway=Gateway.GOOGLE,
                price=Decimal("11.99"),
                currency="USD",
                gateway_plan_id="basic-monthly",
                gateway_product_id="basic",
            ),
            PlanGatewayPrice(gateway=Gateway.PAYPAL, price=Decimal("10.00"), currency="USD", gateway_plan_id="P-BASIC"),
            PlanGatewayPrice(gateway=Gateway.XENDIT, price=Decimal("150000"), currency="IDR"),
        ),
    )


@pytest.fixture
def pro_plan() -> Plan:
    return Plan(
        id="plan_pro",
        slug="pro",
        name="Pro",
        price=Decimal("25.00"),
        currency="USD",
        interval=BillingInterval.MONTH,
        features=(PlanFeature(slug="api-calls", value=1000),),
        gateway_prices=(
            PlanGatewayPrice(gateway=Gateway.PAYPAL, price=Decimal("25.00"), currency="USD", gateway_plan_id="P-PRO"),
            PlanGatewayPrice(gateway=Gateway.XENDIT, price=Decimal("350000"), currency="IDR"),
        ),
    )


@pytest.fixture
def repository(basic_plan: Plan, pro_plan: Plan) -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository([basic_plan, pro_plan])


@pytest.fixture
def events() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def service(repository: InMemorySubscriptionRepository, events: InMemoryEventSink, clock: FrozenClock) -> SubscriptionService:
    return SubscriptionService(repository=repository, event_sink=events, clock=clock)


@pytest.fixture
def http_client() -> FakeHttpClient:
    return FakeHttpClient()
