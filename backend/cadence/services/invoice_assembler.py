"""Turns gateway billing-line history into a priced invoice."""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from cadence.core.errors import BillingValidationError
from cadence.gateways.base import BillingLineKind, BillingLineRecord, Discount
from cadence.schemas.invoice import Invoice, InvoiceDiscount, InvoiceItem

logger = logging.getLogger(__name__)

_ITEM_KINDS = {BillingLineKind.CHARGE, BillingLineKind.CREDIT}


@dataclass
class _ParsedLine:
    record: BillingLineRecord
    kind: BillingLineKind
    amount_cents: int
    discount: Discount | None = None


def _require_cents(amount: object, field: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise BillingValidationError(f"{field} {amount!r} is not an integer number of cents")
    return amount


def _require_amount(record: BillingLineRecord) -> int:
    return _require_cents(record.amount_cents)


def _require_percent(value: object) -> Decimal:
    try:
        percent = Decimal(str(value))
    except InvalidOperation:
        raise BillingValidationError(f"percent_off {value!r} is not a number") from None
    if not percent.is_finite():
        raise BillingValidationError(f"percent_off {value!r} is not a number")
    return percent


def _parse(record: BillingLineRecord) -> _ParsedLine:
    try:
        kind = BillingLineKind(record.kind)
    except ValueError:
        raise BillingValidationError(f"unknown billing line kind {record.kind!r}") from None

    if isinstance(record.quantity, bool) or not isinstance(record.quantity, int):
        raise BillingValidationError(f"quantity {record.quantity!r} is not an integer")

    if kind != BillingLineKind.DISCOUNT:
        return _ParsedLine(record=record, kind=kind, amount_cents=_require_amount(record))

    amount_off = record.amount_off_cents
    percent_off = record.percent_off
    if amount_off is None and percent_off is None:
        if record.amount_cents is None:
            raise BillingValidationError("discount line has neither amount_off nor percent_off")
        # Some gateways report a discount as a plain negative line
        amount_off = abs(_require_amount(record))
    elif amount_off is not None:
        amount_off = _require_cents(amount_off, "amount_off")

    discount = Discount(
        coupon_id=str(record.coupon_id or record.description or "discount"),
        amount_off_cents=amount_off,
        percent_off=_require_percent(percent_off) if percent_off is not None else None,
        applied_at=record.created_at,
    )
    return _ParsedLine(record=record, kind=kind, amount_cents=0, discount=discount)


class InvoiceAssembler:
    """Builds an :class:`Invoice` from ordered billing-line records.

    Pure transform. A malformed record is skipped with a warning instead of
    failing the whole invoice.
    """

    def assemble(self, records: Iterable[BillingLineRecord]) -> Invoice:
        lines: list[_ParsedLine] = []
        for record in records:
            try:
                lines.append(_parse(record))
            except BillingValidationError as exc:
                logger.warning(
                    "Skipping malformed billing line %s: %s",
                    getattr(record, "id", None),
                    exc,
                    extra={
                        "billing_line_id": getattr(record, "id", None),
                        "billing_line_kind": getattr(record, "kind", None),
                        "reason": str(exc),
                    },
                )

        charge_lines = [line for line in lines if line.kind in _ITEM_KINDS]
        subtotal = sum(line.amount_cents for line in charge_lines) if charge_lines else None

        discount_cents: dict[int, int] = {}
        discounts: list[InvoiceDiscount] = []
        for index, line in enumerate(lines):
            if line.discount is None:
                continue
            amount = self._discount_amount(line.discount, subtotal or 0)
            discount_cents[index] = amount
            discounts.append(
                InvoiceDiscount(
                    coupon_id=line.discount.coupon_id,
                    amount_off_cents=line.discount.amount_off_cents,
                    percent_off=line.discount.percent_off,
                    discount_cents=amount,
                )
            )

        items: list[InvoiceItem] = []
        for index, line in enumerate(lines):
            if line.kind in _ITEM_KINDS:
                items.append(self._item(line.record, line.amount_cents))
            elif line.kind == BillingLineKind.DISCOUNT:
                items.append(self._item(line.record, -discount_cents[index], is_discount=True))

        total = None
        if discounts:
            total = (subtotal or 0) - sum(d.discount_cents for d in discounts)

        amount_paid = sum(
            line.amount_cents for line in lines if line.kind == BillingLineKind.PAYMENT
        )
        starting_balance = None
        for line in lines:
            if line.kind == BillingLineKind.STARTING_BALANCE:
                starting_balance = line.amount_cents

        latest = lines[-1].record if lines else None
        return Invoice(
            id=latest.id if latest else None,
            date=latest.created_at if latest else None,
            items=items,
            subtotal_cents=subtotal,
            total_cents=total,
            starting_balance_cents=starting_balance,
            amount_cents=amount_paid,
            discounts=discounts,
        )

    def _discount_amount(self, discount: Discount, subtotal_cents: int) -> int:
        if discount.amount_off_cents is not None:
            return discount.amount_off_cents
        if discount.percent_off is not None:
            value = Decimal(subtotal_cents) * discount.percent_off / Decimal("100")
            return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return 0

    def _item(
        self, record: BillingLineRecord, amount_cents: int, is_discount: bool = False
    ) -> InvoiceItem:
        return InvoiceItem(
            description=record.description,
            subscription_id=record.subscription_id,
            quantity=record.quantity,
            amount_cents=amount_cents,
            period_start=record.period_start,
            period_end=record.period_end,
            is_discount=is_discount,
        )
