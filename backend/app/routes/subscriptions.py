"""API routes exposing subscription lifecycle, feature usage and gateway webhooks."""
from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from backend import app_context

from ..config import ConfigurationError
from ..gateways import WebhookRequest, parse_gateway
from ..schemas.subscriptions import (
    CheckoutResponse,
    CreateSubscriptionRequest,
    FeatureUsageResponse,
    RecordUsageRequest,
    SubscriptionResponse,
    SwapPlanRequest,
    WebhookAcknowledgementResponse,
)
from ..services.subscriptions import (
    get_gateway_manager,
    get_subscription_service,
    get_usage_ledger,
    get_webhook_processor,
)
from ..subscriptions import SubscriberRef, Subscription, SubscriptionError, SubscriptionNotFound

_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_subscriber(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
) -> SubscriberRef:
    return app_context.get_current_subscriber(session_token=session_token)


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


def _owned_subscription(subscription_id: str, subscriber: SubscriberRef) -> Subscription:
    service = get_subscription_service()
    try:
        subscription = service.get_subscription(subscription_id)
    except SubscriptionNotFound as exc:
        raise exc.to_http_exception() from exc
    if subscription.subscriber != subscriber:
        # Other subscribers' rows are indistinguishable from missing ones.
        raise SubscriptionNotFound(subscription_id).to_http_exception()
    return subscription


def _to_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse.from_subscription(subscription, get_subscription_service().now())


@router.get("", response_model=List[SubscriptionResponse])
def list_subscriptions(
    *,
    current_subscriber: SubscriberRef = Depends(_get_current_subscriber),
) -> List[SubscriptionResponse]:
    service = get_subscription_service()
    return [_to_response(subscription) for subscription in service.repository.list_for_subscriber(current_subscriber)]


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: CreateSubscriptionRequest,
    *,
    current_subscriber: SubscriberRef = Depends(_get_current_subscriber),
) -> CheckoutResponse:
    service = get_subscription_service()
    try:
        plan = service.get_plan(payload.plan_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if not plan.active:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Plan is not available")

    try:
        result = get_gateway_manager().subscribe(current_subscriber, plan, payload.gateway, payload.options)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except SubscriptionError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutResponse(subscription=_to_response(result.subscription), redirect_url=result.redirect_url)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription(
    subscription_id: str,
    *,
    current_subscriber: SubscriberRef = Depends(_get_current_subscriber),
) -> SubscriptionResponse:
    return _to_response(_owned_subscription(subscription_id, current_subscriber))


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    subscription_id: str,
    *,
    current_subscriber: SubscriberRef = Depends(_get_current_subscriber),
) -> SubscriptionResponse:
    subscription = _owned_subscription(subscription_id, current_subscriber)
    try:
        updated = get_gateway_manager().driver(subscription.gateway).cancel_subscription(subscription)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except SubscriptionError as exc:
        raise exc.to_http_exception() from exc
    return _to_response(updated)


@router.post("/{subscription_id}/resume", response_model=SubscriptionResponse)
def resume_subscription(
    subscription_id: str,
    *,
    current_subscriber: SubscriberRef = Depends(_get_current_subscriber),
) -> SubscriptionResponse:
    subscription = _owned_subscription(subscription_id, current_subscriber)
    try:
        updated = get_gateway_manager().driver(subscription.gateway).resume_subscription(subscription)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except SubscriptionError as exc:
        raise exc.to_http_exception() from exc
    return _to_response(updated)


@router.post("/{subscription_id}/swap", response_model=SubscriptionResponse)
def swap_plan(
    subscription_id: str,
    payload: SwapPlanRequest,
    *,
    current_subscriber: SubscriberRef = Depends(_get_current_subscriber),
) -> SubscriptionResponse:
    subscription = _owned_subscription(subscription_id, current_subscriber)
    service = get_subscription_service()
    try:
        new_plan = service.get_plan(payload.plan_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if new_plan.id == subscription.plan_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Subscription is already on this plan")

    try:
        updated = get_gateway_manager().driver(subscription.gateway).swap_plan(subscription, new_plan)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except SubscriptionError as exc:
        raise exc.to_http_exception() from exc
    return _to_response(updated)


@router.get("/{subscription_id}/features/{feature_slug}", response_model=FeatureUsageResponse)
def get_feature_usage(
    subscription_id: str,
    feature_slug: str,
    *,
    current_subscriber: SubscriberRef = Depends(_get_current_subscriber),
) -> FeatureUsageResponse:
    subscription = _owned_subscription(subscription_id, current_subscriber)
    evaluation = get_usage_ledger().evaluate(subscription, feature_slug)
    return FeatureUsageResponse.from_evaluation(evaluation)


@router.post("/{subscription_id}/features/{feature_slug}/usage", response_model=FeatureUsageResponse)
def record_feature_usage(
    subscription_id: str,
    feature_slug: str,
    payload: RecordUsageRequest,
    *,
    current_subscriber: SubscriberRef = Depends(_get_current_subscriber),
) -> FeatureUsageResponse:
    subscription = _owned_subscription(subscription_id, current_subscriber)
    ledger = get_usage_ledger()
    if subscription.is_pending or not get_subscription_service().is_active(subscription):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Subscription is not active")
    try:
        ledger.record_usage(subscription, feature_slug, payload.quantity)
    except SubscriptionError as exc:
        raise exc.to_http_exception() from exc
    evaluation = ledger.evaluate(subscription, feature_slug)
    return FeatureUsageResponse.from_evaluation(evaluation)


@router.post("/webhooks/{gateway}", response_model=WebhookAcknowledgementResponse)
async def receive_webhook(gateway: str, request: Request) -> Dict[str, Any]:
    try:
        resolved = parse_gateway(gateway)
    except ConfigurationError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    body = await request.body()
    delivery = WebhookRequest(body=body, headers=dict(request.headers))
    acknowledgement = await run_in_threadpool(get_webhook_processor().process, resolved, delivery)
    return acknowledgement.to_dict()
