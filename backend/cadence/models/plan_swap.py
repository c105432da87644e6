"""PlanSwap model: persisted marker for the cancel-then-create frequency swap."""

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, func

from cadence.core.database import Base


class PlanSwapStatus(str, Enum):
    PENDING = "pending"
    ABORTED = "aborted"
    OLD_CANCELED = "old_canceled"
    PARTIAL_FAILURE = "partial_failure"
    COMPLETED = "completed"


class PlanSwap(Base):
    """One frequency swap, keyed by the caller's idempotency key."""

    __tablename__ = "plan_swaps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String(255), unique=True, index=True, nullable=False)
    customer_id = Column(String(255), index=True, nullable=False)
    old_subscription_id = Column(String(255), nullable=False)
    current_plan_id = Column(String(255), nullable=False)
    target_plan_id = Column(String(255), nullable=False)
    credit_amount_cents = Column(Integer, nullable=False, default=0)
    credit_billing_cycles = Column(Integer, nullable=False, default=0)
    passthrough_options = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default=PlanSwapStatus.PENDING.value, index=True)
    new_subscription_id = Column(String(255), nullable=True)
    last_error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
