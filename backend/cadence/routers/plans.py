from fastapi import APIRouter, Depends

from cadence.core.errors import BillingError
from cadence.core.http_errors import http_exception_for
from cadence.gateways.base import PaymentGatewayPort, Plan
from cadence.gateways.factory import provide_gateway
from cadence.schemas.plan import PlanResponse
from cadence.services.plan_catalog import PlanCatalog

router = APIRouter()


@router.get(
    "/",
    response_model=list[PlanResponse],
    summary="List plans",
    responses={502: {"description": "Payment gateway rejected the request"}},
)
async def list_plans(
    gateway: PaymentGatewayPort = Depends(provide_gateway),
) -> list[Plan]:
    """List the plans offered by the payment gateway."""
    try:
        return PlanCatalog(gateway).all_plans()
    except BillingError as e:
        raise http_exception_for(e) from e


@router.get(
    "/{plan_id}",
    response_model=PlanResponse,
    summary="Get plan",
    responses={404: {"description": "Plan not found"}},
)
async def get_plan(
    plan_id: str,
    gateway: PaymentGatewayPort = Depends(provide_gateway),
) -> Plan:
    """Get a plan by ID."""
    try:
        return PlanCatalog(gateway).find_plan(plan_id)
    except BillingError as e:
        raise http_exception_for(e) from e
