"""Error taxonomy for subscription and invoice operations."""

from typing import Any


class BillingError(Exception):
    """Base class for every billing failure surfaced to callers."""


class NotFoundError(BillingError):
    """A plan, subscription, coupon or customer could not be found."""

    def __init__(self, resource: str, identifier: Any) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource.capitalize()} {identifier} not found")


class NoPaymentMethodError(BillingError):
    """No usable (non-expired) payment method is available."""

    def __init__(self, customer_id: str) -> None:
        self.customer_id = customer_id
        super().__init__("No available payment method to subscribe")


class GatewayRejectedError(BillingError):
    """The payment gateway or processor declined the request.

    ``reason`` is forwarded verbatim from the gateway.
    """

    def __init__(self, reason: str, operation: str | None = None) -> None:
        self.reason = reason
        self.operation = operation
        message = f"Gateway rejected {operation}: {reason}" if operation else reason
        super().__init__(message)


class BillingValidationError(BillingError):
    """Malformed discount, amount or request data."""


class PartialFailureError(BillingError):
    """A frequency swap canceled the old subscription but the replacement was not created.

    Raised instead of retrying so the caller can reconcile manually or
    retry the swap explicitly with the same ``swap_key``.
    """

    def __init__(
        self,
        swap_key: str,
        old_subscription_id: str,
        current_plan_id: str,
        target_plan_id: str,
        credit_amount_cents: int,
        reason: str,
    ) -> None:
        self.swap_key = swap_key
        self.old_subscription_id = old_subscription_id
        self.current_plan_id = current_plan_id
        self.target_plan_id = target_plan_id
        self.credit_amount_cents = credit_amount_cents
        self.reason = reason
        super().__init__(
            f"Subscription {old_subscription_id} was canceled but the replacement on plan "
            f"{target_plan_id} could not be created: {reason}"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "swap_key": self.swap_key,
            "old_subscription_id": self.old_subscription_id,
            "current_plan_id": self.current_plan_id,
            "target_plan_id": self.target_plan_id,
            "credit_amount_cents": self.credit_amount_cents,
            "reason": self.reason,
        }
