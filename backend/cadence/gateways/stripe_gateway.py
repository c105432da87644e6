"""Stripe implementation of the payment gateway port.

Plans map to recurring Stripe prices, coupon templates to Stripe coupons,
and billing history to the lines of the customer's Stripe invoices.
Stripe objects are read with mapping access so plain dicts work as well.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, time
from decimal import Decimal
from typing import Any

from cadence.core.config import settings
from cadence.core.errors import BillingValidationError, GatewayRejectedError, NotFoundError
from cadence.gateways.base import (
    BillingLineKind,
    BillingLineRecord,
    Discount,
    PaymentGatewayPort,
    PaymentMethod,
    Plan,
    Subscription,
    TrialPeriod,
)
from cadence.services.subscription_dates import (
    SubscriptionDatesService,
    frequency_from_interval,
)

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = {"active", "trialing", "past_due"}
_PLAN_CREDIT_METADATA = "cadence_plan_credit"


def _timestamp(value: int | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


class StripeGateway(PaymentGatewayPort):
    """Stripe payment gateway."""

    def __init__(
        self,
        api_key: str | None = None,
        currency: str | None = None,
        credit_coupon_id: str | None = None,
    ):
        self.api_key = api_key or settings.stripe_api_key
        self.currency = currency or settings.stripe_currency
        self.credit_coupon_id = credit_coupon_id or settings.PLAN_CREDIT_COUPON_ID
        self.dates_service = SubscriptionDatesService()
        self._stripe: Any = None

    @property
    def stripe(self) -> Any:
        """Lazy-load stripe module."""
        if self._stripe is None:
            try:
                import stripe

                stripe.api_key = self.api_key
                self._stripe = stripe
            except ImportError as e:
                raise ImportError("stripe package not installed. Run: pip install stripe") from e
        return self._stripe

    @property
    def name(self) -> str:
        return "stripe"

    def _call(
        self,
        operation: str,
        func: Callable[..., Any],
        *args: Any,
        resource: str | None = None,
        identifier: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """Invoke a Stripe API call and translate its errors."""
        try:
            return func(*args, **kwargs)
        except self.stripe.error.InvalidRequestError as e:
            if resource is not None and getattr(e, "code", None) == "resource_missing":
                raise NotFoundError(resource, identifier) from e
            raise GatewayRejectedError(e.user_message or str(e), operation=operation) from e
        except self.stripe.error.StripeError as e:
            raise GatewayRejectedError(e.user_message or str(e), operation=operation) from e

    # ── Mapping ────────────────────────────────────────────────────

    def _to_plan(self, price: Any) -> Plan:
        recurring = price.get("recurring")
        if not recurring:
            raise BillingValidationError(f"Price {price['id']} is not a recurring price")
        product = price.get("product")
        name = product.get("name") if isinstance(product, dict) else None
        return Plan(
            id=price["id"],
            price_cents=int(price.get("unit_amount") or 0),
            billing_frequency_months=frequency_from_interval(
                recurring["interval"], int(recurring.get("interval_count") or 1)
            ),
            name=name or price.get("nickname"),
        )

    def _to_discount(self, coupon: Any, applied_at: datetime | None = None) -> Discount:
        duration = coupon.get("duration")
        if duration == "once":
            cycles: int | None = 1
        elif duration == "repeating":
            cycles = int(coupon.get("duration_in_months") or 0)
        else:
            cycles = None
        percent_off = coupon.get("percent_off")
        amount_off = coupon.get("amount_off")
        metadata = coupon.get("metadata") or {}
        return Discount(
            coupon_id=coupon["id"],
            amount_off_cents=int(amount_off) if amount_off is not None else None,
            percent_off=Decimal(str(percent_off)) if percent_off is not None else None,
            applied_at=applied_at,
            expires_at=_timestamp(coupon.get("redeem_by")),
            number_of_billing_cycles=cycles,
            name=coupon.get("name"),
            plan_credit=metadata.get(_PLAN_CREDIT_METADATA) == "true",
        )

    def _to_subscription(self, data: Any) -> Subscription:
        item = data["items"]["data"][0]
        plan = self._to_plan(item["price"])
        created_at = _timestamp(data.get("created")) or datetime.now(UTC)
        discounts = []
        for entry in data.get("discounts") or []:
            if isinstance(entry, dict) and entry.get("coupon"):
                discounts.append(
                    self._to_discount(entry["coupon"], _timestamp(entry.get("start")))
                )

        status = data.get("status", "active")
        period_start = _timestamp(item.get("current_period_start") or data.get("current_period_start"))
        period_end = _timestamp(item.get("current_period_end") or data.get("current_period_end"))
        trial_ends_at = _timestamp(data.get("trial_end"))

        customer = data.get("customer")
        balance = 0
        if isinstance(customer, dict):
            balance = int(customer.get("balance") or 0)
            customer_id = customer["id"]
        else:
            customer_id = customer

        return Subscription(
            id=data["id"],
            customer_id=customer_id,
            plan_id=plan.id,
            price_cents=plan.price_cents,
            billing_frequency_months=plan.billing_frequency_months,
            active=status in _ACTIVE_STATUSES,
            created_at=created_at,
            period_start=period_start or created_at,
            period_end=period_end or trial_ends_at,
            trial_ends_at=trial_ends_at,
            payment_method_token=data.get("default_payment_method"),
            discounts=discounts,
            quantity=int(item.get("quantity") or 1),
            balance_cents=balance,
            number_of_billing_cycles=1 if data.get("cancel_at_period_end") else None,
            status=status,
        )

    # ── Catalog ────────────────────────────────────────────────────

    def list_plans(self) -> list[Plan]:
        prices = self._call(
            "list_plans",
            self.stripe.Price.list,
            active=True,
            type="recurring",
            expand=["data.product"],
        )
        plans = []
        for price in prices.auto_paging_iter():
            try:
                plans.append(self._to_plan(price))
            except BillingValidationError as e:
                logger.warning("Skipping Stripe price %s: %s", price.get("id"), e)
        return plans

    def find_plan(self, plan_id: str) -> Plan:
        price = self._call(
            "find_plan",
            self.stripe.Price.retrieve,
            plan_id,
            expand=["product"],
            resource="plan",
            identifier=plan_id,
        )
        return self._to_plan(price)

    def find_discount_template(self, coupon_id: str) -> Discount:
        coupon = self._call(
            "find_discount_template",
            self.stripe.Coupon.retrieve,
            coupon_id,
            resource="coupon",
            identifier=coupon_id,
        )
        return self._to_discount(coupon)

    def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        methods = self._call(
            "list_payment_methods",
            self.stripe.PaymentMethod.list,
            customer=customer_id,
            type="card",
        )
        customer = self._call(
            "list_payment_methods",
            self.stripe.Customer.retrieve,
            customer_id,
            resource="customer",
            identifier=customer_id,
        )
        default = (customer.get("invoice_settings") or {}).get("default_payment_method")
        now = datetime.now(UTC)
        result = []
        for method in methods.auto_paging_iter():
            card = method.get("card") or {}
            exp = (int(card.get("exp_year") or 0), int(card.get("exp_month") or 0))
            result.append(
                PaymentMethod(
                    token=method["id"],
                    expired=exp < (now.year, now.month),
                    is_default=method["id"] == default,
                )
            )
        return result

    # ── Subscriptions ──────────────────────────────────────────────

    def find_subscription(self, subscription_id: str) -> Subscription:
        data = self._call(
            "find_subscription",
            self.stripe.Subscription.retrieve,
            subscription_id,
            expand=["customer", "discounts"],
            resource="subscription",
            identifier=subscription_id,
        )
        return self._to_subscription(data)

    def _coupon_for(self, discount: Discount, idempotency_key: str | None) -> str:
        """Return a Stripe coupon id for ``discount``.

        Plan credits are one-off amounts, so a single-use coupon is minted for
        them; any other discount refers to an existing coupon.
        """
        if not discount.plan_credit:
            return discount.coupon_id
        params: dict[str, Any] = {
            "name": self.credit_coupon_id,
            "amount_off": discount.amount_off_cents,
            "currency": self.currency,
            "duration": "once",
            "metadata": {_PLAN_CREDIT_METADATA: "true"},
        }
        if idempotency_key:
            params["idempotency_key"] = f"{idempotency_key}-credit"
        coupon = self._call("create_coupon", self.stripe.Coupon.create, **params)
        return coupon["id"]

    def create_subscription(
        self,
        customer_id: str,
        plan_id: str,
        payment_method_token: str,
        options: dict[str, Any] | None = None,
    ) -> Subscription:
        options = dict(options or {})
        idempotency_key = options.pop("idempotency_key", None)
        trial: TrialPeriod | None = options.pop("trial", None)
        first_billing_date = options.pop("first_billing_date", None)
        discounts: list[Discount] = options.pop("discounts", [])

        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": plan_id}],
            "default_payment_method": payment_method_token,
            "expand": ["customer", "discounts"],
        }
        if trial is not None:
            trial_end = self.dates_service.trial_end_date(datetime.now(UTC), trial)
            params["trial_end"] = int(trial_end.timestamp()) if trial_end else "now"
        if first_billing_date is not None:
            anchor = datetime.combine(first_billing_date, time.min, tzinfo=UTC)
            params["billing_cycle_anchor"] = int(anchor.timestamp())
        if discounts:
            params["discounts"] = [
                {"coupon": self._coupon_for(discount, idempotency_key)} for discount in discounts
            ]
        params.update(options)
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        data = self._call("create_subscription", self.stripe.Subscription.create, **params)
        return self._to_subscription(data)

    def update_subscription(self, subscription_id: str, fields: dict[str, Any]) -> Subscription:
        params: dict[str, Any] = {"expand": ["customer", "discounts"]}

        if "plan_id" in fields:
            current = self._call(
                "update_subscription",
                self.stripe.Subscription.retrieve,
                subscription_id,
                resource="subscription",
                identifier=subscription_id,
            )
            item_id = current["items"]["data"][0]["id"]
            params["items"] = [{"id": item_id, "price": fields["plan_id"]}]
        if "prorate_charges" in fields:
            params["proration_behavior"] = (
                "create_prorations" if fields["prorate_charges"] else "none"
            )
        if fields.get("never_expires"):
            params["cancel_at_period_end"] = False
        if fields.get("number_of_billing_cycles") is not None:
            params["cancel_at_period_end"] = True
        if "price_cents" in fields:
            logger.debug("Stripe prices follow the plan; ignoring price_cents override")

        data = self._call(
            "update_subscription",
            self.stripe.Subscription.modify,
            subscription_id,
            resource="subscription",
            identifier=subscription_id,
            **params,
        )
        return self._to_subscription(data)

    def cancel_subscription(self, subscription_id: str) -> None:
        self._call(
            "cancel_subscription",
            self.stripe.Subscription.cancel,
            subscription_id,
            resource="subscription",
            identifier=subscription_id,
        )

    def list_billing_history(self, customer_id: str) -> list[BillingLineRecord]:
        invoices = self._call(
            "list_billing_history",
            self.stripe.Invoice.list,
            customer=customer_id,
            expand=["data.total_discount_amounts.discount"],
        )
        # Stripe lists newest first
        ordered = sorted(invoices.auto_paging_iter(), key=lambda inv: inv.get("created") or 0)

        records: list[BillingLineRecord] = []
        for invoice in ordered:
            records.extend(self._invoice_records(invoice))
        return records

    def _invoice_records(self, invoice: Any) -> list[BillingLineRecord]:
        created_at = _timestamp(invoice.get("created"))
        records: list[BillingLineRecord] = []

        if invoice.get("starting_balance"):
            records.append(
                BillingLineRecord(
                    id=f"{invoice['id']}-balance",
                    kind=BillingLineKind.STARTING_BALANCE.value,
                    amount_cents=int(invoice["starting_balance"]),
                    created_at=created_at,
                )
            )

        for line in (invoice.get("lines") or {}).get("data", []):
            amount = line.get("amount")
            period = line.get("period") or {}
            kind = BillingLineKind.CHARGE if (amount or 0) >= 0 else BillingLineKind.CREDIT
            records.append(
                BillingLineRecord(
                    id=line["id"],
                    kind=kind.value,
                    amount_cents=int(amount) if amount is not None else None,
                    description=line.get("description"),
                    subscription_id=line.get("subscription"),
                    quantity=int(line.get("quantity") or 1),
                    period_start=_timestamp(period.get("start")),
                    period_end=_timestamp(period.get("end")),
                    created_at=created_at,
                )
            )

        for index, entry in enumerate(invoice.get("total_discount_amounts") or []):
            discount = entry.get("discount")
            coupon = discount.get("coupon") if isinstance(discount, dict) else None
            coupon_id = coupon.get("id") if coupon else None
            records.append(
                BillingLineRecord(
                    id=f"{invoice['id']}-discount-{index}",
                    kind=BillingLineKind.DISCOUNT.value,
                    amount_cents=None,
                    description=(coupon.get("name") or coupon_id) if coupon else None,
                    subscription_id=invoice.get("subscription"),
                    created_at=created_at,
                    coupon_id=coupon_id or "discount",
                    amount_off_cents=int(entry.get("amount") or 0),
                )
            )

        if invoice.get("amount_paid"):
            records.append(
                BillingLineRecord(
                    id=f"{invoice['id']}-payment",
                    kind=BillingLineKind.PAYMENT.value,
                    amount_cents=int(invoice["amount_paid"]),
                    subscription_id=invoice.get("subscription"),
                    created_at=created_at,
                )
            )
        return records
