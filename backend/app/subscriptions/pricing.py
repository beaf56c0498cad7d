"""Resolve per-gateway prices and map provider identifiers back to plans."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from .models import Gateway, Plan, PlanGatewayPrice


@dataclass(frozen=True)
class ResolvedPrice:
    """Price a plan is sold for through one gateway."""

    gateway: Gateway
    amount: Decimal
    currency: str
    gateway_plan_id: Optional[str] = None
    gateway_offer_id: Optional[str] = None
    gateway_product_id: Optional[str] = None
    is_override: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "gateway": self.gateway.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "gateway_plan_id": self.gateway_plan_id,
            "gateway_offer_id": self.gateway_offer_id,
            "gateway_product_id": self.gateway_product_id,
            "is_override": self.is_override,
        }


def gateway_prices_for(plan: Plan, gateway: Gateway) -> Tuple[PlanGatewayPrice, ...]:
    """Every entry ``plan`` carries for ``gateway``, in declaration order."""

    return tuple(entry for entry in plan.gateway_prices if entry.gateway == gateway)


def gateway_price_for(
    plan: Plan,
    gateway: Gateway,
    gateway_plan_id: Optional[str] = None,
) -> Optional[PlanGatewayPrice]:
    """The entry for ``gateway_plan_id``, else the first entry for ``gateway``."""

    entries = gateway_prices_for(plan, gateway)
    if gateway_plan_id is not None:
        for entry in entries:
            if entry.gateway_plan_id == gateway_plan_id:
                return entry
    return entries[0] if entries else None


def resolve_price(plan: Plan, gateway: Gateway, gateway_plan_id: Optional[str] = None) -> ResolvedPrice:
    """Return the override for ``gateway`` or fall back to the plan default.

    A plan may be sold under several provider plan ids on one gateway;
    ``gateway_plan_id`` picks among them.
    """

    override = gateway_price_for(plan, gateway, gateway_plan_id)
    if override is None:
        return ResolvedPrice(gateway=gateway, amount=plan.price, currency=plan.currency)
    return ResolvedPrice(
        gateway=gateway,
        amount=override.price,
        currency=override.currency,
        gateway_plan_id=override.gateway_plan_id,
        gateway_offer_id=override.gateway_offer_id,
        gateway_product_id=override.gateway_product_id,
        is_override=True,
    )


def price_for_gateway(plan: Plan, gateway: Gateway) -> Decimal:
    return resolve_price(plan, gateway).amount


def currency_for_gateway(plan: Plan, gateway: Gateway) -> str:
    return resolve_price(plan, gateway).currency


def match_plan(
    plans: Iterable[Plan],
    gateway: Gateway,
    *,
    gateway_plan_id: Optional[str] = None,
    gateway_offer_id: Optional[str] = None,
    gateway_product_id: Optional[str] = None,
) -> Optional[Plan]:
    """Find the plan whose provider identifiers best match an inbound purchase.

    An exact plan and offer match wins over a plan-only match, which in turn
    wins over a product-only match. Active plans win ties.
    """

    best: Optional[Plan] = None
    best_score = 0
    for plan in plans:
        for entry in gateway_prices_for(plan, gateway):
            score = _match_score(entry, gateway_plan_id, gateway_offer_id, gateway_product_id)
            if not score:
                continue
            if plan.active:
                score += 1
            if score > best_score:
                best, best_score = plan, score
    return best


def _match_score(
    entry: PlanGatewayPrice,
    gateway_plan_id: Optional[str],
    gateway_offer_id: Optional[str],
    gateway_product_id: Optional[str],
) -> int:
    if gateway_plan_id and entry.gateway_plan_id == gateway_plan_id:
        if gateway_product_id and entry.gateway_product_id not in (None, gateway_product_id):
            return 0
        if entry.gateway_offer_id and entry.gateway_offer_id != gateway_offer_id:
            return 0
        return 6 if entry.gateway_offer_id else 4
    if entry.gateway_plan_id is None and gateway_product_id and entry.gateway_product_id == gateway_product_id:
        return 2
    return 0
