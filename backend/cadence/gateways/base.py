"""Payment gateway port.

The subscription engine talks to the billing processor only through
``PaymentGatewayPort``; the value types below are the vocabulary shared by
the port, the lifecycle services and the invoice assembler.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from cadence.core.errors import BillingValidationError


class TrialUnit(str, Enum):
    DAY = "day"
    MONTH = "month"


def interval_label(billing_frequency_months: int) -> str:
    """Map a billing frequency in months to its interval label."""
    if billing_frequency_months == 1:
        return "monthly"
    if billing_frequency_months == 3:
        return "quarterly"
    return "yearly"


class BillingLineKind(str, Enum):
    CHARGE = "charge"
    CREDIT = "credit"
    DISCOUNT = "discount"
    PAYMENT = "payment"
    STARTING_BALANCE = "starting_balance"


@dataclass(frozen=True)
class Plan:
    """Catalog entry: price in minor units and billing frequency in months."""

    id: str
    price_cents: int
    billing_frequency_months: int
    name: str | None = None

    def __post_init__(self) -> None:
        if self.price_cents < 0:
            raise BillingValidationError(f"Plan {self.id} has a negative price")
        if self.billing_frequency_months <= 0:
            raise BillingValidationError(f"Plan {self.id} has an invalid billing frequency")


@dataclass(frozen=True)
class Discount:
    """A coupon or credit attached to a subscription.

    ``coupon_id`` is the gateway's identifier for the coupon; ``name`` is its
    display name, if any. ``amount_off_cents`` and ``percent_off`` are
    mutually exclusive. ``number_of_billing_cycles`` of ``None`` means the
    discount never expires. ``plan_credit`` marks the one-off credit issued
    by a frequency swap, which gateways may have to mint on the fly.
    """

    coupon_id: str
    amount_off_cents: int | None = None
    percent_off: Decimal | None = None
    applied_at: datetime | None = None
    expires_at: datetime | None = None
    number_of_billing_cycles: int | None = None
    name: str | None = None
    plan_credit: bool = False

    def __post_init__(self) -> None:
        if self.amount_off_cents is not None and self.percent_off is not None:
            raise BillingValidationError(
                f"Discount {self.coupon_id} cannot set both amount_off and percent_off"
            )
        if self.amount_off_cents is not None and self.amount_off_cents < 0:
            raise BillingValidationError(f"Discount {self.coupon_id} has a negative amount_off")
        if self.percent_off is not None and not (0 < self.percent_off <= 100):
            raise BillingValidationError(
                f"Discount {self.coupon_id} percent_off must be within (0, 100]"
            )
        if self.number_of_billing_cycles is not None and self.number_of_billing_cycles < 0:
            raise BillingValidationError(
                f"Discount {self.coupon_id} has a negative number of billing cycles"
            )

    @property
    def is_empty(self) -> bool:
        return not self.amount_off_cents and not self.percent_off


@dataclass(frozen=True)
class TrialPeriod:
    duration: int
    unit: TrialUnit = TrialUnit.DAY


@dataclass(frozen=True)
class PaymentMethod:
    token: str
    expired: bool = False
    is_default: bool = False


@dataclass
class Subscription:
    """Gateway-reported subscription record.

    ``current_billing_cycle`` is whatever the adapter reports. Gateways that
    do not count cycles report 1, which still ends a soft cancel with the
    current period.
    """

    id: str
    customer_id: str
    plan_id: str
    price_cents: int
    billing_frequency_months: int
    active: bool
    created_at: datetime
    period_start: datetime | None = None
    period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    payment_method_token: str | None = None
    discounts: list[Discount] = field(default_factory=list)
    quantity: int = 1
    balance_cents: int = 0
    current_billing_cycle: int = 1
    number_of_billing_cycles: int | None = None
    status: str = "active"

    @property
    def interval(self) -> str:
        return interval_label(self.billing_frequency_months)

    @property
    def never_expires(self) -> bool:
        return self.number_of_billing_cycles is None


@dataclass(frozen=True)
class BillingLineRecord:
    """One gateway-reported transaction or adjustment.

    Records are passed to the invoice assembler as-is; fields the gateway
    did not supply stay ``None`` and are validated there.
    """

    id: str
    kind: str
    amount_cents: int | None
    description: str | None = None
    subscription_id: str | None = None
    quantity: int = 1
    period_start: datetime | None = None
    period_end: datetime | None = None
    created_at: datetime | None = None
    coupon_id: str | None = None
    amount_off_cents: int | None = None
    percent_off: Decimal | None = None


class PaymentGatewayPort(ABC):
    """Abstract payment gateway used by the subscription engine.

    ``create_subscription`` options understood by every adapter:

    - ``trial``: a :class:`TrialPeriod`
    - ``discounts``: list of :class:`Discount` to attach
    - ``first_billing_date``: :class:`datetime.date`
    - ``idempotency_key``: repeated calls with the same key must return the
      subscription created by the first call

    Any other option is passed through to the processor untouched.

    ``update_subscription`` fields: ``plan_id``, ``price_cents``,
    ``never_expires``, ``number_of_billing_cycles``, ``prorate_charges``.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the gateway name."""
        pass  # pragma: no cover

    @abstractmethod
    def list_plans(self) -> list[Plan]:
        pass  # pragma: no cover

    @abstractmethod
    def find_plan(self, plan_id: str) -> Plan:
        """Return the plan or raise ``NotFoundError``."""
        pass  # pragma: no cover

    @abstractmethod
    def find_discount_template(self, coupon_id: str) -> Discount:
        """Return the named coupon template or raise ``NotFoundError``."""
        pass  # pragma: no cover

    @abstractmethod
    def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        pass  # pragma: no cover

    @abstractmethod
    def find_subscription(self, subscription_id: str) -> Subscription:
        """Return the subscription or raise ``NotFoundError``."""
        pass  # pragma: no cover

    @abstractmethod
    def create_subscription(
        self,
        customer_id: str,
        plan_id: str,
        payment_method_token: str,
        options: dict[str, Any] | None = None,
    ) -> Subscription:
        pass  # pragma: no cover

    @abstractmethod
    def update_subscription(self, subscription_id: str, fields: dict[str, Any]) -> Subscription:
        pass  # pragma: no cover

    @abstractmethod
    def cancel_subscription(self, subscription_id: str) -> None:
        pass  # pragma: no cover

    @abstractmethod
    def list_billing_history(self, customer_id: str) -> list[BillingLineRecord]:
        """Return billing-line records oldest first."""
        pass  # pragma: no cover

