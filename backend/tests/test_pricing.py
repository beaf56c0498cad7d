from __future__ import annotations

from decimal import Decimal

import pytest

from backend.app.subscriptions import Gateway, Plan, PlanGatewayPrice, match_plan, resolve_price
from backend.app.subscriptions.pricing import currency_for_gateway, price_for_gateway


def _google_plan(plan_id, *, base_plan=None, offer=None, product="premium", active=True):
    return Plan(
        id=plan_id,
        slug=plan_id,
        name=plan_id.title(),
        price=Decimal("9.99"),
        active=active,
        gateway_prices=(
            PlanGatewayPrice(
                gateway=Gateway.GOOGLE,
                price=Decimal("9.99"),
                currency="USD",
                gateway_plan_id=base_plan,
                gateway_offer_id=offer,
                gateway_product_id=product,
            ),
        ),
    )


@pytest.fixture
def google_plans():
    return [
        _google_plan("monthly", base_plan="monthly"),
        _google_plan("intro", base_plan="monthly", offer="intro-offer"),
        _google_plan("any-premium"),
        _google_plan("legacy", base_plan="monthly", active=False),
    ]


def test_resolve_price_prefers_gateway_override(basic_plan):
    price = resolve_price(basic_plan, Gateway.APPLE)

    assert price.amount == Decimal("12.99")
    assert price.currency == "USD"
    assert price.gateway_plan_id == "com.example.basic"
    assert price.is_override


def test_resolve_price_falls_back_to_plan_default(pro_plan):
    price = resolve_price(pro_plan, Gateway.GOOGLE)

    assert price.amount == Decimal("25.00")
    assert price.currency == "USD"
    assert not price.is_override
    assert price_for_gateway(pro_plan, Gateway.GOOGLE) == Decimal("25.00")
    assert currency_for_gateway(pro_plan, Gateway.XENDIT) == "IDR"


def test_plan_rejects_invalid_currency():
    with pytest.raises(ValueError):
        Plan(id="bad", slug="bad", name="Bad", price=Decimal("1"), currency="DOLLARS")


def test_plan_quantizes_price():
    plan = Plan(id="p", slug="p", name="P", price=Decimal("4.995"))

    assert plan.price == Decimal("5.00")


def test_match_plan_prefers_exact_offer(google_plans):
    matched = match_plan(
        google_plans,
        Gateway.GOOGLE,
        gateway_plan_id="monthly",
        gateway_offer_id="intro-offer",
        gateway_product_id="premium",
    )

    assert matched.id == "intro"


def test_match_plan_prefers_active_plan_without_offer(google_plans):
    matched = match_plan(google_plans, Gateway.GOOGLE, gateway_plan_id="monthly", gateway_product_id="premium")

    assert matched.id == "monthly"


def test_match_plan_falls_back_to_product(google_plans):
    matched = match_plan(google_plans, Gateway.GOOGLE, gateway_plan_id="yearly", gateway_product_id="premium")

    assert matched.id == "any-premium"


def test_match_plan_returns_none_without_match(google_plans):
    assert match_plan(google_plans, Gateway.GOOGLE, gateway_plan_id="monthly", gateway_product_id="other") is None
    assert match_plan(google_plans, Gateway.APPLE, gateway_plan_id="monthly") is None


@pytest.fixture
def two_base_plans():
    return Plan(
        id="plan_premium",
        slug="premium",
        name="Premium",
        price=Decimal("9.99"),
        gateway_prices=(
            PlanGatewayPrice(
                gateway=Gateway.GOOGLE,
                price=Decimal("9.99"),
                currency="USD",
                gateway_plan_id="premium-monthly",
                gateway_product_id="premium",
            ),
            PlanGatewayPrice(
                gateway=Gateway.GOOGLE,
                price=Decimal("99.99"),
                currency="USD",
                gateway_plan_id="premium-yearly",
                gateway_product_id="premium",
            ),
        ),
    )


def test_match_plan_looks_past_first_entry_for_gateway(two_base_plans):
    yearly = match_plan([two_base_plans], Gateway.GOOGLE, gateway_plan_id="premium-yearly", gateway_product_id="premium")
    assert yearly is two_base_plans
    assert match_plan([two_base_plans], Gateway.GOOGLE, gateway_plan_id="premium-monthly") is two_base_plans
    assert match_plan([two_base_plans], Gateway.GOOGLE, gateway_plan_id="premium-weekly") is None


def test_resolve_price_picks_entry_by_provider_plan_id(two_base_plans):
    yearly = resolve_price(two_base_plans, Gateway.GOOGLE, "premium-yearly")
    default = resolve_price(two_base_plans, Gateway.GOOGLE)
    unknown = resolve_price(two_base_plans, Gateway.GOOGLE, "premium-weekly")

    assert yearly.amount == Decimal("99.99")
    assert yearly.gateway_plan_id == "premium-yearly"
    assert default.gateway_plan_id == "premium-monthly"
    assert unknown.amount == Decimal("9.99")
    assert resolve_price(two_base_plans, Gateway.PAYPAL).is_override is False
