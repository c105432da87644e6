"""Translation of billing errors into HTTP responses."""

from fastapi import HTTPException

from cadence.core.errors import (
    BillingError,
    BillingValidationError,
    GatewayRejectedError,
    NoPaymentMethodError,
    NotFoundError,
    PartialFailureError,
)

_STATUS_CODES: dict[type[BillingError], int] = {
    NotFoundError: 404,
    NoPaymentMethodError: 402,
    GatewayRejectedError: 502,
    PartialFailureError: 409,
    BillingValidationError: 422,
}


def http_exception_for(exc: BillingError) -> HTTPException:
    if isinstance(exc, PartialFailureError):
        return HTTPException(status_code=409, detail=exc.to_dict())
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
