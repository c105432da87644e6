"""Service for subscription lifecycle management: create, plan changes, cancel and resume."""

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy.orm import Session

from cadence.core.errors import (
    BillingError,
    BillingValidationError,
    NoPaymentMethodError,
    NotFoundError,
    PartialFailureError,
)
from cadence.gateways.base import (
    Discount,
    PaymentGatewayPort,
    Plan,
    Subscription,
    TrialPeriod,
    TrialUnit,
)
from cadence.models.plan_swap import PlanSwap, PlanSwapStatus
from cadence.repositories.plan_swap_repository import PlanSwapRepository
from cadence.schemas.subscription import LifecycleState
from cadence.services.plan_catalog import PlanCatalog
from cadence.services.proration import ProrationCalculator
from cadence.services.subscription_dates import SubscriptionDatesService, as_utc

logger = logging.getLogger(__name__)


class SubscriptionLifecycleService:
    """Drives one customer's subscription through its lifecycle.

    None -> Active -> GracePeriod -> Canceled, with resume taking a
    grace-period subscription back to Active. Plan changes that keep the
    billing frequency update the subscription in place; changes across
    frequencies cancel it and create a replacement carrying a plan credit.
    """

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayPort,
        customer_id: str,
        clock: Callable[[], datetime] | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.customer_id = customer_id
        self.catalog = PlanCatalog(gateway)
        self.dates_service = SubscriptionDatesService()
        self.proration = ProrationCalculator(dates_service=self.dates_service)
        self.swap_repo = PlanSwapRepository(db)
        self.clock = clock or (lambda: datetime.now(UTC))

    # ── State ──────────────────────────────────────────────────────

    def state(self, subscription: Subscription | None) -> LifecycleState:
        """Derive the lifecycle state of ``subscription``.

        A subscription whose billing cycles have been fixed is in its grace
        period until the current period ends, and canceled afterwards.
        """
        if subscription is None:
            return LifecycleState.NONE
        if not subscription.active:
            return LifecycleState.CANCELED
        if subscription.number_of_billing_cycles is not None:
            if subscription.period_end and as_utc(subscription.period_end) > self.clock():
                return LifecycleState.GRACE_PERIOD
            return LifecycleState.CANCELED
        return LifecycleState.ACTIVE

    # ── Create ─────────────────────────────────────────────────────

    def create(
        self,
        plan_id: str,
        payment_method_token: str | None = None,
        *,
        coupon: str | None = None,
        trial_ends_at: datetime | None = None,
        first_billing_date: date | None = None,
        discounts: list[Discount] | None = None,
        idempotency_key: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> Subscription:
        """Create a new subscription on ``plan_id``.

        1. Resolve the plan (NotFound is fatal)
        2. Pick the payment method: the given token, else the default card, else
           the first non-expired one
        3. Derive the trial length from ``trial_ends_at``
        4. Attach the named coupon and any extra discounts
        """
        plan = self.catalog.find_plan(plan_id)
        token = self.select_payment_method(payment_method_token)

        gateway_options: dict[str, Any] = dict(options or {})
        attached = [d for d in discounts or [] if not d.is_empty]
        if coupon:
            attached.append(self._coupon_discount(coupon))
        if attached:
            gateway_options["discounts"] = attached
        if trial_ends_at is not None:
            gateway_options["trial"] = self.dates_service.derive_trial_period(
                trial_ends_at, self.clock()
            )
        if first_billing_date is not None:
            gateway_options["first_billing_date"] = first_billing_date
        if idempotency_key:
            gateway_options["idempotency_key"] = idempotency_key

        subscription = self.gateway.create_subscription(
            self.customer_id, plan.id, token, gateway_options
        )
        logger.info(
            "Created subscription %s on plan %s for customer %s",
            subscription.id,
            plan.id,
            self.customer_id,
        )
        return subscription

    def select_payment_method(self, payment_method_token: str | None = None) -> str:
        """Return a usable payment method token or raise ``NoPaymentMethodError``."""
        methods = self.gateway.list_payment_methods(self.customer_id)

        if payment_method_token:
            for method in methods:
                if method.token == payment_method_token and method.expired:
                    raise NoPaymentMethodError(self.customer_id)
            return payment_method_token

        usable = [method for method in methods if not method.expired]
        for method in usable:
            if method.is_default:
                return method.token
        if usable:
            return usable[0].token
        raise NoPaymentMethodError(self.customer_id)

    def _coupon_discount(self, coupon: str) -> Discount:
        template = self.gateway.find_discount_template(coupon)
        if template.expires_at is not None and as_utc(template.expires_at) <= self.clock():
            raise BillingValidationError(f"Coupon '{coupon}' has expired")
        return template

    # ── Plan changes ───────────────────────────────────────────────

    def update(
        self,
        subscription_id: str,
        plan_id: str,
        *,
        idempotency_key: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> Subscription:
        """Move a subscription to ``plan_id``.

        Same billing frequency: in-place plan and price swap, keeping
        proration on and clearing any fixed cycle count.
        Different frequency: frequency swap (cancel, then create with credit).
        """
        if idempotency_key:
            swap = self.swap_repo.get_by_key(idempotency_key)
            if swap is not None:
                return self._run_swap(self._owned(swap), subscription_id)

        subscription = self.gateway.find_subscription(subscription_id)
        if self.state(subscription) == LifecycleState.CANCELED:
            raise BillingValidationError("Can only change the plan of an active subscription")

        if subscription.plan_id == plan_id:
            raise BillingValidationError("New plan must be different from current plan")

        target_plan = self.catalog.find_plan(plan_id)
        current_plan = self.catalog.find_plan(subscription.plan_id)

        if self.catalog.would_change_billing_frequency(current_plan.id, target_plan.id):
            return self._swap_frequency(
                subscription, current_plan, target_plan, idempotency_key, options
            )

        updated = self.gateway.update_subscription(
            subscription.id,
            {
                "plan_id": target_plan.id,
                "price_cents": target_plan.price_cents,
                "never_expires": True,
                "number_of_billing_cycles": None,
                "prorate_charges": True,
            },
        )
        logger.info(
            "Swapped subscription %s from plan %s to %s in place",
            subscription.id,
            current_plan.id,
            target_plan.id,
        )
        return updated

    def _swap_frequency(
        self,
        subscription: Subscription,
        current_plan: Plan,
        target_plan: Plan,
        idempotency_key: str | None,
        options: dict[str, Any] | None,
    ) -> Subscription:
        credit = self.proration.calculate(
            current_plan,
            target_plan,
            subscription.period_end,
            balance_cents=subscription.balance_cents if subscription.active else 0,
            today=self.clock().date(),
        )
        swap = self.swap_repo.create(
            idempotency_key=idempotency_key or f"swap-{uuid.uuid4().hex}",
            customer_id=self.customer_id,
            old_subscription_id=subscription.id,
            current_plan_id=current_plan.id,
            target_plan_id=target_plan.id,
            credit_amount_cents=credit.amount_off_cents or 0,
            credit_billing_cycles=credit.number_of_billing_cycles or 0,
            passthrough_options=options or None,
        )
        logger.info(
            "Frequency swap %s: subscription %s from plan %s to %s with credit %d",
            swap.idempotency_key,
            subscription.id,
            current_plan.id,
            target_plan.id,
            swap.credit_amount_cents,
        )
        return self._run_swap(swap, subscription.id)

    def retry_swap(
        self, idempotency_key: str, current_subscription_id: str | None = None
    ) -> Subscription:
        """Resume a frequency swap from its last recorded step.

        ``current_subscription_id`` is the subscription the customer is known
        to be on; a swap that does not start from it is refused.
        """
        swap = self.swap_repo.get_by_key(idempotency_key)
        if swap is None:
            raise NotFoundError("plan swap", idempotency_key)
        return self._run_swap(self._owned(swap), current_subscription_id)

    def _owned(self, swap: PlanSwap) -> PlanSwap:
        if swap.customer_id != self.customer_id:
            raise NotFoundError("plan swap", swap.idempotency_key)
        return swap

    def _run_swap(
        self, swap: PlanSwap, current_subscription_id: str | None = None
    ) -> Subscription:
        """Execute the remaining steps of ``swap``.

        pending/aborted -> cancel old -> old_canceled -> create replacement -> completed

        A failed cancel leaves the old subscription in place (aborted). A
        failed create leaves the customer without a subscription and raises
        PartialFailureError; it is not retried here.
        """
        if swap.status == PlanSwapStatus.COMPLETED.value:
            return self.gateway.find_subscription(str(swap.new_subscription_id))

        old_subscription_id = str(swap.old_subscription_id)
        if current_subscription_id is not None and current_subscription_id != old_subscription_id:
            raise BillingValidationError(
                f"Plan swap {swap.idempotency_key} started from subscription "
                f"{old_subscription_id}, but the customer is now on {current_subscription_id}"
            )

        self.swap_repo.increment_attempts(swap)

        if swap.status in (PlanSwapStatus.PENDING.value, PlanSwapStatus.ABORTED.value):
            try:
                old = self.gateway.find_subscription(old_subscription_id)
                if old.active:
                    self.gateway.cancel_subscription(old_subscription_id)
            except BillingError as exc:
                self.swap_repo.mark(swap, PlanSwapStatus.ABORTED, error=str(exc))
                raise
            self.swap_repo.mark(swap, PlanSwapStatus.OLD_CANCELED)
            payment_method_token = old.payment_method_token
        else:
            payment_method_token = None

        credit = Discount(
            coupon_id=self.proration.credit_coupon_id,
            amount_off_cents=int(swap.credit_amount_cents),
            number_of_billing_cycles=int(swap.credit_billing_cycles),
            plan_credit=True,
        )
        try:
            token = self._replacement_payment_method(payment_method_token)
            replacement = self.create(
                str(swap.target_plan_id),
                token,
                discounts=[credit],
                idempotency_key=str(swap.idempotency_key),
                options={
                    **(swap.passthrough_options or {}),
                    "trial": TrialPeriod(duration=0, unit=TrialUnit.DAY),
                },
            )
        except BillingError as exc:
            logger.exception(
                "Frequency swap %s canceled subscription %s but could not create its replacement",
                swap.idempotency_key,
                old_subscription_id,
            )
            self.swap_repo.mark(swap, PlanSwapStatus.PARTIAL_FAILURE, error=str(exc))
            raise PartialFailureError(
                swap_key=str(swap.idempotency_key),
                old_subscription_id=old_subscription_id,
                current_plan_id=str(swap.current_plan_id),
                target_plan_id=str(swap.target_plan_id),
                credit_amount_cents=int(swap.credit_amount_cents),
                reason=str(exc),
            ) from exc

        self.swap_repo.mark(swap, PlanSwapStatus.COMPLETED, new_subscription_id=replacement.id)
        return replacement

    def _replacement_payment_method(self, previous_token: str | None) -> str:
        """Keep the retired subscription's card when it is still usable."""
        if previous_token:
            for method in self.gateway.list_payment_methods(self.customer_id):
                if method.token == previous_token and not method.expired:
                    return previous_token
        return self.select_payment_method()

    # ── Cancel / resume ────────────────────────────────────────────

    def cancel(self, subscription_id: str, at_period_end: bool = True) -> Subscription:
        """Cancel a subscription.

        By default this is a soft cancel: the number of billing cycles is
        fixed at the current cycle so the subscription lapses when the
        current period ends. ``at_period_end=False`` cancels immediately.
        """
        subscription = self.gateway.find_subscription(subscription_id)
        state = self.state(subscription)
        if state == LifecycleState.CANCELED:
            raise BillingValidationError("Subscription is already canceled")

        if not at_period_end:
            self.gateway.cancel_subscription(subscription_id)
            logger.info("Canceled subscription %s immediately", subscription_id)
            return self.gateway.find_subscription(subscription_id)

        if state == LifecycleState.GRACE_PERIOD:
            return subscription

        updated = self.gateway.update_subscription(
            subscription_id,
            {"number_of_billing_cycles": subscription.current_billing_cycle},
        )
        logger.info(
            "Canceled subscription %s at period end (%s)", subscription_id, updated.period_end
        )
        return updated

    def resume(self, subscription_id: str) -> Subscription:
        """Restore indefinite renewal for a subscription in its grace period."""
        subscription = self.gateway.find_subscription(subscription_id)
        state = self.state(subscription)
        if state == LifecycleState.CANCELED:
            raise BillingValidationError("Cannot resume a subscription that has ended")
        if state == LifecycleState.ACTIVE:
            return subscription

        updated = self.gateway.update_subscription(
            subscription_id,
            {"never_expires": True, "number_of_billing_cycles": None},
        )
        logger.info("Resumed subscription %s", subscription_id)
        return updated
