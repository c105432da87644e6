"""Service for billing period, trial and discount date logic."""

import calendar as cal
from datetime import UTC, date, datetime, timedelta

from cadence.core.config import settings
from cadence.core.errors import BillingValidationError
from cadence.gateways.base import TrialPeriod, TrialUnit


def _add_months(dt: datetime, months: int) -> datetime:
    """Add months to a datetime, clamping to last day of month."""
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    max_day = cal.monthrange(year, month)[1]
    day = min(dt.day, max_day)
    return dt.replace(year=year, month=month, day=day)


def as_utc(dt: datetime) -> datetime:
    # SQLite and some gateways strip tz info
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


def frequency_from_interval(interval: str, interval_count: int = 1) -> int:
    """Convert a processor recurring interval into a billing frequency in months."""
    if interval == "month":
        return interval_count
    if interval == "year":
        return 12 * interval_count
    raise BillingValidationError(f"Unsupported recurring interval: {interval}")


class SubscriptionDatesService:
    """Service for calculating billing periods, trial lengths and discount expiry."""

    def __init__(
        self,
        days_per_month: int | None = None,
        trial_days_threshold: int | None = None,
    ):
        self.days_per_month = days_per_month or settings.DAYS_PER_BILLING_MONTH
        self.trial_days_threshold = trial_days_threshold or settings.TRIAL_DAYS_THRESHOLD

    def add_billing_period(self, start: datetime, billing_frequency_months: int) -> datetime:
        """Return the end of the billing period starting at ``start``."""
        return _add_months(start, billing_frequency_months)

    def derive_trial_period(
        self,
        trial_ends_at: datetime,
        now: datetime | None = None,
    ) -> TrialPeriod:
        """Express a target trial-end date as a gateway trial duration.

        A target in the past yields a zero-day trial. A target within the
        threshold (30 days by default) is expressed in days, anything later
        in 30-day months. Both are rounded to the nearest unit.

        Args:
            trial_ends_at: Requested trial end.
            now: Reference time. Defaults to now.

        Returns:
            The TrialPeriod to send to the gateway.
        """
        if now is None:
            now = datetime.now(UTC)

        remaining = (as_utc(trial_ends_at) - as_utc(now)).total_seconds()
        day = 60 * 60 * 24

        if remaining < 0:
            return TrialPeriod(duration=0, unit=TrialUnit.DAY)
        if remaining < day * self.trial_days_threshold:
            return TrialPeriod(duration=round(remaining / day), unit=TrialUnit.DAY)
        return TrialPeriod(
            duration=round(remaining / (day * self.days_per_month)),
            unit=TrialUnit.MONTH,
        )

    def trial_end_date(self, created_at: datetime, trial: TrialPeriod | None) -> datetime | None:
        """Calculate when a trial that started at ``created_at`` ends.

        Returns:
            The trial end datetime, or None if no trial.
        """
        if trial is None or trial.duration <= 0:
            return None
        if trial.unit == TrialUnit.MONTH:
            return _add_months(created_at, trial.duration)
        return created_at + timedelta(days=trial.duration)

    def discount_end_date(
        self,
        applied_at: datetime,
        billing_frequency_months: int,
        number_of_billing_cycles: int | None,
    ) -> datetime | None:
        """Calculate when a discount stops applying.

        Each cycle is counted as ``billing_frequency_months`` 30-day months.
        A discount without a cycle limit never expires.
        """
        if number_of_billing_cycles is None:
            return None
        cycle = timedelta(days=billing_frequency_months * self.days_per_month)
        return applied_at + cycle * number_of_billing_cycles

    def days_remaining(self, period_end: datetime | None, today: date | None = None) -> int:
        """Whole days from ``today`` until ``period_end``, never negative."""
        if period_end is None:
            return 0
        if today is None:
            today = datetime.now(UTC).date()
        return max(0, (as_utc(period_end).date() - today).days)
