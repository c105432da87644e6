"""BillingAccount repository for data access."""

from datetime import datetime

from sqlalchemy.orm import Session

from cadence.gateways.base import Subscription
from cadence.models.billing_account import BillingAccount


class BillingAccountRepository:
    """Repository for BillingAccount model."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_customer_id(self, customer_id: str) -> BillingAccount | None:
        return (
            self.db.query(BillingAccount)
            .filter(BillingAccount.customer_id == customer_id)
            .first()
        )

    def get_or_create(self, customer_id: str) -> BillingAccount:
        account = self.get_by_customer_id(customer_id)
        if account is not None:
            return account
        account = BillingAccount(customer_id=customer_id, active=False)
        self.db.add(account)
        self.db.commit()
        self.db.refresh(account)
        return account

    def record_subscription(
        self,
        customer_id: str,
        subscription: Subscription,
        ends_at: datetime | None = None,
    ) -> BillingAccount:
        """Point the snapshot at ``subscription`` and clear any reconciliation flag."""
        account = self.get_or_create(customer_id)
        account.subscription_id = subscription.id  # type: ignore[assignment]
        account.plan_id = subscription.plan_id  # type: ignore[assignment]
        account.amount_cents = subscription.price_cents  # type: ignore[assignment]
        account.interval = subscription.interval  # type: ignore[assignment]
        account.card_token = subscription.payment_method_token  # type: ignore[assignment]
        account.active = subscription.active  # type: ignore[assignment]
        account.trial_ends_at = subscription.trial_ends_at  # type: ignore[assignment]
        account.subscription_ends_at = ends_at  # type: ignore[assignment]
        account.reconciliation_required = False  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(account)
        return account

    def flag_reconciliation(self, customer_id: str) -> BillingAccount:
        account = self.get_or_create(customer_id)
        account.reconciliation_required = True  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(account)
        return account
