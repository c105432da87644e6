from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from cadence.core.database import get_db
from cadence.core.errors import BillingError
from cadence.core.http_errors import http_exception_for
from cadence.gateways.base import PaymentGatewayPort
from cadence.gateways.factory import provide_gateway
from cadence.schemas.invoice import Invoice
from cadence.services.billing_service import BillingService

router = APIRouter()


@router.get(
    "/{customer_id}/invoice",
    response_model=Invoice,
    summary="Get invoice",
    responses={502: {"description": "Payment gateway rejected the request"}},
)
async def get_invoice(
    customer_id: str,
    db: Session = Depends(get_db),
    gateway: PaymentGatewayPort = Depends(provide_gateway),
) -> Invoice:
    """Build the customer's invoice from the gateway billing history.

    ``subtotal_cents`` is null without charge lines and ``total_cents`` is
    null unless a discount applies.
    """
    try:
        return BillingService(db, gateway, customer_id).build_invoice()
    except BillingError as e:
        raise http_exception_for(e) from e
