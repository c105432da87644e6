"""Carry-forward credit for plan changes that alter the billing frequency."""

import logging
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal

from cadence.core.config import settings
from cadence.gateways.base import Discount, Plan
from cadence.services.subscription_dates import SubscriptionDatesService

logger = logging.getLogger(__name__)


class ProrationCalculator:
    """Computes the one-time plan-credit discount for a frequency swap.

    Pure: the result depends only on the arguments and ``today``.
    """

    def __init__(
        self,
        credit_coupon_id: str | None = None,
        dates_service: SubscriptionDatesService | None = None,
    ):
        self.credit_coupon_id = credit_coupon_id or settings.PLAN_CREDIT_COUPON_ID
        self.dates_service = dates_service or SubscriptionDatesService()

    def calculate(
        self,
        current_plan: Plan,
        target_plan: Plan,
        current_period_end: datetime | None,
        balance_cents: int = 0,
        today: date | None = None,
    ) -> Discount:
        """Calculate the credit owed when moving from ``current_plan`` to ``target_plan``.

        daily rate = target price / (target frequency * 30)
        estimated  = daily rate * days left in the current period, within [0, target price]

        A negative ``balance_cents`` (credit the customer already holds) is
        added on top. The sum is capped at one full period of the target plan.

        Args:
            current_plan: Plan of the subscription being retired.
            target_plan: Plan being moved to.
            current_period_end: End of the current billing period.
            balance_cents: Outstanding balance on the retired subscription.
            today: Reference date. Defaults to today (UTC).

        Returns:
            A plan-credit Discount. Its amount is zero, and it spans zero
            cycles, when nothing is owed.
        """
        if today is None:
            today = datetime.now(UTC).date()

        price = Decimal(target_plan.price_cents)
        days_in_frequency = target_plan.billing_frequency_months * self.dates_service.days_per_month
        daily_rate = price / Decimal(days_in_frequency)
        days_remaining = self.dates_service.days_remaining(current_period_end, today)

        estimated = min(daily_rate * Decimal(days_remaining), price)
        estimated = max(estimated, Decimal("0"))

        carried_balance = Decimal(abs(balance_cents)) if balance_cents < 0 else Decimal("0")

        credit = min(estimated + carried_balance, price)
        amount_cents = int(credit.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

        logger.debug(
            "Proration %s -> %s: %d days remaining, estimated %s, balance %s, credit %d",
            current_plan.id,
            target_plan.id,
            days_remaining,
            estimated,
            carried_balance,
            amount_cents,
        )

        return Discount(
            coupon_id=self.credit_coupon_id,
            amount_off_cents=amount_cents,
            number_of_billing_cycles=1 if amount_cents > 0 else 0,
            plan_credit=True,
        )
