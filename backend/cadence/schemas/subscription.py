from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LifecycleState(str, Enum):
    NONE = "none"
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    CANCELED = "canceled"


class SubscriptionCreate(BaseModel):
    plan_id: str = Field(min_length=1, max_length=255)
    payment_method_token: str | None = None
    coupon: str | None = None
    trial_ends_at: datetime | None = None
    first_billing_date: date | None = None
    options: dict[str, Any] = Field(default_factory=dict)


class SubscriptionPlanChange(BaseModel):
    plan_id: str = Field(min_length=1, max_length=255)
    options: dict[str, Any] = Field(default_factory=dict)


class SubscriptionCancel(BaseModel):
    at_period_end: bool = True


class DiscountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    coupon_id: str
    amount_off_cents: int | None = None
    percent_off: Decimal | None = None
    applied_at: datetime | None = None
    expires_at: datetime | None = None
    number_of_billing_cycles: int | None = None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    plan_id: str
    price_cents: int
    interval: str
    active: bool
    quantity: int
    created_at: datetime
    period_start: datetime | None = None
    period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    payment_method_token: str | None = None
    number_of_billing_cycles: int | None = None
    discounts: list[DiscountResponse] = Field(default_factory=list)


class SubscriptionStatusResponse(BaseModel):
    customer_id: str
    state: LifecycleState
    reconciliation_required: bool = False
    subscription: SubscriptionResponse | None = None


class PlanSwapResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    idempotency_key: str
    customer_id: str
    old_subscription_id: str
    current_plan_id: str
    target_plan_id: str
    credit_amount_cents: int
    status: str
    new_subscription_id: str | None = None
    last_error: str | None = None
    attempts: int
