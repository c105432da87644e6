"""BillingAccount model: the application's cached billing snapshot per customer."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, func

from cadence.core.database import Base


class BillingAccount(Base):
    """Snapshot of a customer's current subscription as last confirmed by the gateway."""

    __tablename__ = "billing_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    customer_id = Column(String(255), unique=True, index=True, nullable=False)
    subscription_id = Column(String(255), nullable=True, index=True)
    plan_id = Column(String(255), nullable=True)
    amount_cents = Column(Integer, nullable=True)
    interval = Column(String(20), nullable=True)
    card_token = Column(String(255), nullable=True)
    active = Column(Boolean, nullable=False, default=False)
    subscription_ends_at = Column(DateTime(timezone=True), nullable=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    reconciliation_required = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
