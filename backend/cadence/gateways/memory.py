"""In-process payment gateway.

Keeps plans, coupon templates, payment methods, subscriptions and billing
history in memory. Used for local runs and tests; behaves like a hosted
gateway for the parts the subscription engine relies on, including
idempotent subscription creation.
"""

import copy
import itertools
import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, date, datetime, time
from typing import Any

from cadence.core.errors import GatewayRejectedError, NotFoundError
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
from cadence.services.subscription_dates import SubscriptionDatesService

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = {
    "plan_id",
    "price_cents",
    "never_expires",
    "number_of_billing_cycles",
    "prorate_charges",
}


class InMemoryGateway(PaymentGatewayPort):
    """Deterministic gateway with injectable failures."""

    def __init__(
        self,
        plans: list[Plan] | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.plans: dict[str, Plan] = {plan.id: plan for plan in plans or []}
        self.coupons: dict[str, Discount] = {}
        self.payment_methods: dict[str, list[PaymentMethod]] = {}
        self.subscriptions: dict[str, Subscription] = {}
        self.history: dict[str, list[BillingLineRecord]] = {}
        self.calls: list[tuple[str, str]] = []
        self._idempotency: dict[str, str] = {}
        self._failures: dict[str, str] = {}
        self._ids = itertools.count(1)
        self.clock = clock or (lambda: datetime.now(UTC))
        self.dates_service = SubscriptionDatesService()

    @property
    def name(self) -> str:
        return "memory"

    # ── Seeding and test hooks ─────────────────────────────────────

    def add_plan(self, plan: Plan) -> None:
        self.plans[plan.id] = plan

    def add_coupon(self, discount: Discount) -> None:
        self.coupons[discount.coupon_id] = discount

    def add_payment_method(self, customer_id: str, method: PaymentMethod) -> None:
        self.payment_methods.setdefault(customer_id, []).append(method)

    def add_billing_line(self, customer_id: str, record: BillingLineRecord) -> None:
        self.history.setdefault(customer_id, []).append(record)

    def fail_next(self, operation: str, reason: str) -> None:
        """Make the next call to ``operation`` be rejected with ``reason``."""
        self._failures[operation] = reason

    def _maybe_fail(self, operation: str) -> None:
        reason = self._failures.pop(operation, None)
        if reason is not None:
            raise GatewayRejectedError(reason, operation=operation)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    # ── Catalog ────────────────────────────────────────────────────

    def list_plans(self) -> list[Plan]:
        return list(self.plans.values())

    def find_plan(self, plan_id: str) -> Plan:
        plan = self.plans.get(plan_id)
        if plan is None:
            raise NotFoundError("plan", plan_id)
        return plan

    def find_discount_template(self, coupon_id: str) -> Discount:
        discount = self.coupons.get(coupon_id)
        if discount is None:
            raise NotFoundError("coupon", coupon_id)
        return discount

    def list_payment_methods(self, customer_id: str) -> list[PaymentMethod]:
        return list(self.payment_methods.get(customer_id, []))

    # ── Subscriptions ──────────────────────────────────────────────

    def find_subscription(self, subscription_id: str) -> Subscription:
        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return copy.deepcopy(subscription)

    def create_subscription(
        self,
        customer_id: str,
        plan_id: str,
        payment_method_token: str,
        options: dict[str, Any] | None = None,
    ) -> Subscription:
        options = dict(options or {})
        self.calls.append(("create_subscription", plan_id))

        idempotency_key = options.pop("idempotency_key", None)
        if idempotency_key and idempotency_key in self._idempotency:
            return self.find_subscription(self._idempotency[idempotency_key])

        self._maybe_fail("create_subscription")

        plan = self.find_plan(plan_id)
        methods = {m.token: m for m in self.payment_methods.get(customer_id, [])}
        method = methods.get(payment_method_token)
        if method is None:
            raise GatewayRejectedError(
                f"Payment method {payment_method_token} does not belong to customer",
                operation="create_subscription",
            )
        if method.expired:
            raise GatewayRejectedError("Expired card", operation="create_subscription")

        now = self.clock()
        trial: TrialPeriod | None = options.pop("trial", None)
        first_billing_date: date | None = options.pop("first_billing_date", None)
        trial_ends_at = self.dates_service.trial_end_date(now, trial)

        period_start = trial_ends_at or now
        if first_billing_date is not None:
            period_start = datetime.combine(first_billing_date, time.min, tzinfo=UTC)
        period_end = self.dates_service.add_billing_period(
            period_start, plan.billing_frequency_months
        )

        discounts = [
            replace(
                discount,
                applied_at=now,
                expires_at=self.dates_service.discount_end_date(
                    now, plan.billing_frequency_months, discount.number_of_billing_cycles
                ),
            )
            for discount in options.pop("discounts", [])
        ]

        subscription = Subscription(
            id=self._next_id("sub"),
            customer_id=customer_id,
            plan_id=plan.id,
            price_cents=plan.price_cents,
            billing_frequency_months=plan.billing_frequency_months,
            active=True,
            created_at=now,
            period_start=period_start,
            period_end=period_end,
            trial_ends_at=trial_ends_at,
            payment_method_token=payment_method_token,
            discounts=discounts,
        )
        self.subscriptions[subscription.id] = subscription
        if idempotency_key:
            self._idempotency[idempotency_key] = subscription.id
        if options:
            logger.debug("Ignoring pass-through options %s", sorted(options))

        if trial_ends_at is None and first_billing_date is None:
            self._bill_period(subscription, plan)

        return copy.deepcopy(subscription)

    def _bill_period(self, subscription: Subscription, plan: Plan) -> None:
        """Record the charge, discounts and payment for the first period."""
        customer_id = subscription.customer_id
        self.add_billing_line(
            customer_id,
            BillingLineRecord(
                id=self._next_id("line"),
                kind=BillingLineKind.CHARGE.value,
                amount_cents=plan.price_cents,
                description=f"Subscription to {plan.name or plan.id}",
                subscription_id=subscription.id,
                period_start=subscription.period_start,
                period_end=subscription.period_end,
                created_at=subscription.created_at,
            ),
        )
        discounted = 0
        for discount in subscription.discounts:
            if discount.amount_off_cents:
                discounted += discount.amount_off_cents
            elif discount.percent_off:
                discounted += int(plan.price_cents * discount.percent_off / 100)
            self.add_billing_line(
                customer_id,
                BillingLineRecord(
                    id=self._next_id("line"),
                    kind=BillingLineKind.DISCOUNT.value,
                    amount_cents=None,
                    description=discount.name or discount.coupon_id,
                    subscription_id=subscription.id,
                    created_at=subscription.created_at,
                    coupon_id=discount.coupon_id,
                    amount_off_cents=discount.amount_off_cents,
                    percent_off=discount.percent_off,
                ),
            )
        self.add_billing_line(
            customer_id,
            BillingLineRecord(
                id=self._next_id("line"),
                kind=BillingLineKind.PAYMENT.value,
                amount_cents=max(plan.price_cents - discounted, 0),
                subscription_id=subscription.id,
                created_at=subscription.created_at,
            ),
        )

    def update_subscription(self, subscription_id: str, fields: dict[str, Any]) -> Subscription:
        self.calls.append(("update_subscription", subscription_id))
        self._maybe_fail("update_subscription")

        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        if not subscription.active:
            raise GatewayRejectedError(
                "Subscription has already been canceled", operation="update_subscription"
            )

        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise GatewayRejectedError(
                f"Unsupported fields: {', '.join(sorted(unknown))}",
                operation="update_subscription",
            )

        if "plan_id" in fields:
            plan = self.find_plan(fields["plan_id"])
            subscription.plan_id = plan.id
            subscription.billing_frequency_months = plan.billing_frequency_months
            subscription.price_cents = plan.price_cents
        if "price_cents" in fields:
            subscription.price_cents = int(fields["price_cents"])
        if fields.get("never_expires"):
            subscription.number_of_billing_cycles = None
        if "number_of_billing_cycles" in fields:
            subscription.number_of_billing_cycles = fields["number_of_billing_cycles"]

        return copy.deepcopy(subscription)

    def cancel_subscription(self, subscription_id: str) -> None:
        self.calls.append(("cancel_subscription", subscription_id))
        self._maybe_fail("cancel_subscription")

        subscription = self.subscriptions.get(subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        if not subscription.active:
            raise GatewayRejectedError(
                "Subscription has already been canceled", operation="cancel_subscription"
            )
        subscription.active = False
        subscription.status = "canceled"

    def list_billing_history(self, customer_id: str) -> list[BillingLineRecord]:
        return list(self.history.get(customer_id, []))
