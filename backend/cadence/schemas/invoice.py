from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class InvoiceItem(BaseModel):
    """One priced line. Negative amounts are credits or refunds."""

    model_config = ConfigDict(frozen=True)

    description: str | None = None
    subscription_id: str | None = None
    quantity: int = 1
    amount_cents: int
    period_start: datetime | None = None
    period_end: datetime | None = None
    is_discount: bool = False


class InvoiceDiscount(BaseModel):
    model_config = ConfigDict(frozen=True)

    coupon_id: str
    amount_off_cents: int | None = None
    percent_off: Decimal | None = None
    discount_cents: int


class Invoice(BaseModel):
    """Display-ready invoice.

    ``subtotal_cents`` is absent when there are no charge lines and
    ``total_cents`` is absent unless at least one discount applies;
    display code branches on presence, so neither defaults to zero.
    """

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    date: datetime | None = None
    items: list[InvoiceItem] = Field(default_factory=list)
    subtotal_cents: int | None = None
    total_cents: int | None = None
    starting_balance_cents: int | None = None
    amount_cents: int = 0
    discounts: list[InvoiceDiscount] = Field(default_factory=list)
