"""Per-customer billing facade.

Composes the lifecycle service, the invoice assembler and the billing
snapshot kept in the application's database. The snapshot only moves to a
new subscription once the gateway has confirmed it.
"""

import logging
from collections.abc import Callable
from datetime import date, datetime
from typing import Any

from sqlalchemy.orm import Session

from cadence.core.errors import BillingValidationError, NotFoundError, PartialFailureError
from cadence.gateways.base import PaymentGatewayPort, Subscription
from cadence.models.billing_account import BillingAccount
from cadence.repositories.billing_account_repository import BillingAccountRepository
from cadence.schemas.invoice import Invoice
from cadence.schemas.subscription import LifecycleState
from cadence.services.invoice_assembler import InvoiceAssembler
from cadence.services.subscription_lifecycle import SubscriptionLifecycleService

logger = logging.getLogger(__name__)


class BillingService:
    """Subscription and invoice operations for one customer."""

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
        self.account_repo = BillingAccountRepository(db)
        self.lifecycle = SubscriptionLifecycleService(db, gateway, customer_id, clock=clock)
        self.assembler = InvoiceAssembler()

    # ── Queries ────────────────────────────────────────────────────

    def account(self) -> BillingAccount | None:
        return self.account_repo.get_by_customer_id(self.customer_id)

    def current_subscription(self) -> Subscription | None:
        account = self.account()
        if account is None or not account.subscription_id:
            return None
        return self.gateway.find_subscription(str(account.subscription_id))

    def state(self) -> LifecycleState:
        return self.lifecycle.state(self.current_subscription())

    def subscribed(self) -> bool:
        return self.state() in (LifecycleState.ACTIVE, LifecycleState.GRACE_PERIOD)

    def on_grace_period(self) -> bool:
        return self.state() == LifecycleState.GRACE_PERIOD

    def canceled(self) -> bool:
        return self.state() in (LifecycleState.GRACE_PERIOD, LifecycleState.CANCELED)

    def billing_is_active(self) -> bool:
        account = self.account()
        return bool(account and account.active) and self.subscribed()

    def _require_subscription(self) -> Subscription:
        subscription = self.current_subscription()
        if subscription is None:
            raise NotFoundError("subscription", f"for customer {self.customer_id}")
        return subscription

    # ── Operations ─────────────────────────────────────────────────

    def create_subscription(
        self,
        plan_id: str,
        payment_method_token: str | None = None,
        *,
        coupon: str | None = None,
        trial_ends_at: datetime | None = None,
        first_billing_date: date | None = None,
        idempotency_key: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> Subscription:
        if self.state() in (LifecycleState.ACTIVE, LifecycleState.GRACE_PERIOD):
            raise BillingValidationError(
                f"Customer {self.customer_id} already has an active subscription"
            )
        unresolved = self.lifecycle.swap_repo.get_unresolved(self.customer_id)
        if unresolved:
            raise BillingValidationError(
                f"Customer {self.customer_id} has an unresolved plan change "
                f"{unresolved[0].idempotency_key}; retry it instead of subscribing again"
            )

        subscription = self.lifecycle.create(
            plan_id,
            payment_method_token,
            coupon=coupon,
            trial_ends_at=trial_ends_at,
            first_billing_date=first_billing_date,
            idempotency_key=idempotency_key,
            options=options,
        )
        self.account_repo.record_subscription(self.customer_id, subscription)
        return subscription

    def change_subscription_plan(
        self,
        plan_id: str,
        *,
        idempotency_key: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> Subscription:
        current = self._require_subscription()
        try:
            subscription = self.lifecycle.update(
                current.id, plan_id, idempotency_key=idempotency_key, options=options
            )
        except PartialFailureError:
            self.account_repo.flag_reconciliation(self.customer_id)
            raise
        self.account_repo.record_subscription(self.customer_id, subscription)
        return subscription

    def retry_plan_change(self, idempotency_key: str) -> Subscription:
        """Explicitly retry a frequency swap that did not complete."""
        account = self.account()
        current_id = str(account.subscription_id) if account and account.subscription_id else None
        try:
            subscription = self.lifecycle.retry_swap(
                idempotency_key, current_subscription_id=current_id
            )
        except PartialFailureError:
            self.account_repo.flag_reconciliation(self.customer_id)
            raise
        self.account_repo.record_subscription(self.customer_id, subscription)
        return subscription

    def cancel_subscription(self, at_period_end: bool = True) -> Subscription:
        current = self._require_subscription()
        subscription = self.lifecycle.cancel(current.id, at_period_end=at_period_end)
        ends_at = subscription.period_end if at_period_end else self.lifecycle.clock()
        self.account_repo.record_subscription(self.customer_id, subscription, ends_at=ends_at)
        return subscription

    def resume_subscription(self) -> Subscription:
        current = self._require_subscription()
        subscription = self.lifecycle.resume(current.id)
        self.account_repo.record_subscription(self.customer_id, subscription)
        return subscription

    def build_invoice(self) -> Invoice:
        history = self.gateway.list_billing_history(self.customer_id)
        invoice = self.assembler.assemble(history)
        logger.debug(
            "Built invoice for customer %s from %d billing lines", self.customer_id, len(history)
        )
        return invoice
