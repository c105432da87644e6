from fastapi import APIRouter, Depends, Header
from sqlalchemy.orm import Session

from cadence.core.database import get_db
from cadence.core.errors import BillingError
from cadence.core.http_errors import http_exception_for
from cadence.gateways.base import PaymentGatewayPort, Subscription
from cadence.gateways.factory import provide_gateway
from cadence.models.plan_swap import PlanSwap
from cadence.repositories.plan_swap_repository import PlanSwapRepository
from cadence.schemas.subscription import (
    PlanSwapResponse,
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionPlanChange,
    SubscriptionResponse,
    SubscriptionStatusResponse,
)
from cadence.services.billing_service import BillingService

router = APIRouter()


def _to_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse.model_validate(subscription)


@router.get(
    "/{customer_id}/subscription",
    response_model=SubscriptionStatusResponse,
    summary="Get subscription status",
    responses={502: {"description": "Payment gateway rejected the request"}},
)
async def get_subscription(
    customer_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayPort = Depends(provide_gateway),
) -> SubscriptionStatusResponse:
    """Return the customer's lifecycle state and current subscription."""
    service = BillingService(db, gateway, customer_id)
    try:
        subscription = service.current_subscription()
    except BillingError as e:
        raise http_exception_for(e) from e

    account = service.account()
    return SubscriptionStatusResponse(
        customer_id=customer_id,
        state=service.lifecycle.state(subscription),
        reconciliation_required=bool(account and account.reconciliation_required),
        subscription=_to_response(subscription) if subscription else None,
    )


@router.post(
    "/{customer_id}/subscription",
    response_model=SubscriptionResponse,
    status_code=201,
    summary="Create subscription",
    responses={
        402: {"description": "No usable payment method"},
        404: {"description": "Plan or coupon not found"},
        422: {"description": "Customer already subscribed or invalid request"},
        502: {"description": "Payment gateway rejected the request"},
    },
)
async def create_subscription(
    customer_id: str,
    data: SubscriptionCreate,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayPort = Depends(provide_gateway),
) -> SubscriptionResponse:
    """Subscribe the customer to a plan."""
    service = BillingService(db, gateway, customer_id)
    try:
        subscription = service.create_subscription(
            data.plan_id,
            data.payment_method_token,
            coupon=data.coupon,
            trial_ends_at=data.trial_ends_at,
            first_billing_date=data.first_billing_date,
            options=data.options or None,
        )
    except BillingError as e:
        raise http_exception_for(e) from e
    return _to_response(subscription)


@router.put(
    "/{customer_id}/subscription",
    response_model=SubscriptionResponse,
    summary="Change subscription plan",
    responses={
        404: {"description": "Subscription or plan not found"},
        409: {"description": "Old subscription canceled but replacement not created"},
        422: {"description": "Subscription is canceled or plan is unchanged"},
        502: {"description": "Payment gateway rejected the request"},
    },
)
async def change_subscription_plan(
    customer_id: str,
    data: SubscriptionPlanChange,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    db: Session = Depends(get_db),
    gateway: PaymentGatewayPort = Depends(provide_gateway),
) -> SubscriptionResponse:
    """Move the customer's subscription to another plan.

    Send an ``Idempotency-Key`` header to make a frequency change safe to
    retry with the same key.
    """
    service = BillingService(db, gateway, customer_id)
    try:
        subscription = service.change_subscription_plan(
            data.plan_id, idempotency_key=idempotency_key, options=data.options or None
        )
    except BillingError as e:
        raise http_exception_for(e) from e
    return _to_response(subscription)


@router.post(
    "/{customer_id}/subscription/cancel",
    response_model=SubscriptionResponse,
    summary="Cancel subscription",
    responses={
        404: {"description": "Subscription not found"},
        422: {"description": "Subscription already canceled"},
    },
)
async def cancel_subscription(
    customer_id: str,
    data: SubscriptionCancel | None = None,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayPort = Depends(provide_gateway),
) -> SubscriptionResponse:
    """Cancel at the end of the current period, or immediately."""
    at_period_end = data.at_period_end if data is not None else True
    service = BillingService(db, gateway, customer_id)
    try:
        return _to_response(service.cancel_subscription(at_period_end=at_period_end))
    except BillingError as e:
        raise http_exception_for(e) from e


@router.post(
    "/{customer_id}/subscription/resume",
    response_model=SubscriptionResponse,
    summary="Resume subscription",
    responses={
        404: {"description": "Subscription not found"},
        422: {"description": "Subscription has already ended"},
    },
)
async def resume_subscription(
    customer_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayPort = Depends(provide_gateway),
) -> SubscriptionResponse:
    """Resume a subscription that is in its grace period."""
    service = BillingService(db, gateway, customer_id)
    try:
        return _to_response(service.resume_subscription())
    except BillingError as e:
        raise http_exception_for(e) from e


@router.get(
    "/{customer_id}/subscription/swaps",
    response_model=list[PlanSwapResponse],
    summary="List unresolved plan swaps",
)
async def list_unresolved_swaps(
    customer_id: str,
    db: Session = Depends(get_db),
) -> list[PlanSwap]:
    """Frequency swaps that canceled the old subscription without a confirmed replacement."""
    return PlanSwapRepository(db).get_unresolved(customer_id)


@router.post(
    "/{customer_id}/subscription/swaps/{idempotency_key}/retry",
    response_model=SubscriptionResponse,
    summary="Retry plan swap",
    responses={
        404: {"description": "Plan swap not found"},
        409: {"description": "Replacement subscription still could not be created"},
        502: {"description": "Payment gateway rejected the request"},
    },
)
async def retry_plan_swap(
    customer_id: str,
    idempotency_key: str,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayPort = Depends(provide_gateway),
) -> SubscriptionResponse:
    """Retry an incomplete frequency swap from its last recorded step."""
    service = BillingService(db, gateway, customer_id)
    try:
        return _to_response(service.retry_plan_change(idempotency_key))
    except BillingError as e:
        raise http_exception_for(e) from e
