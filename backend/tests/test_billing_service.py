"""Tests for the per-customer BillingService facade."""

from datetime import timedelta
from decimal import Decimal

import pytest

from cadence.core.errors import (
    BillingValidationError,
    GatewayRejectedError,
    NotFoundError,
    PartialFailureError,
)
from cadence.gateways.base import BillingLineKind, BillingLineRecord, Discount
from cadence.schemas.subscription import LifecycleState
from cadence.services.billing_service import BillingService
from tests.conftest import CUSTOMER_ID, NOW


@pytest.fixture
def service(db_session, gateway, clock):
    return BillingService(db_session, gateway, CUSTOMER_ID, clock=clock)


class TestQueries:
    def test_new_customer(self, service):
        assert service.account() is None
        assert service.current_subscription() is None
        assert service.state() == LifecycleState.NONE
        assert service.subscribed() is False
        assert service.billing_is_active() is False

    def test_subscribed_customer(self, service):
        service.create_subscription("basic-monthly")
        assert service.subscribed() is True
        assert service.on_grace_period() is False
        assert service.canceled() is False
        assert service.billing_is_active() is True

    def test_grace_period_predicates(self, service):
        service.create_subscription("basic-monthly")
        service.cancel_subscription()
        assert service.subscribed() is True
        assert service.on_grace_period() is True
        assert service.canceled() is True


class TestCreateSubscription:
    def test_records_snapshot(self, service):
        sub = service.create_subscription("premium-yearly")
        account = service.account()
        assert account.subscription_id == sub.id
        assert account.plan_id == "premium-yearly"
        assert account.amount_cents == 9000
        assert account.interval == "yearly"
        assert account.card_token == "card_1"
        assert account.active is True
        assert account.reconciliation_required is False

    def test_rejects_second_subscription(self, service):
        service.create_subscription("basic-monthly")
        with pytest.raises(BillingValidationError, match="already has an active subscription"):
            service.create_subscription("premium-monthly")

    def test_can_resubscribe_after_cancel(self, service):
        first = service.create_subscription("basic-monthly")
        service.cancel_subscription(at_period_end=False)
        second = service.create_subscription("premium-monthly")
        assert second.id != first.id
        assert service.account().subscription_id == second.id

    def test_failed_create_leaves_no_snapshot(self, service, gateway):
        gateway.fail_next("create_subscription", "Card declined")
        with pytest.raises(GatewayRejectedError, match="Card declined"):
            service.create_subscription("basic-monthly")
        assert service.account() is None


class TestChangePlan:
    def test_without_subscription(self, service):
        with pytest.raises(NotFoundError):
            service.change_subscription_plan("premium-monthly")

    def test_same_frequency(self, service):
        sub = service.create_subscription("basic-monthly")
        changed = service.change_subscription_plan("premium-monthly")
        assert changed.id == sub.id
        assert service.account().amount_cents == 2500

    def test_frequency_swap_moves_snapshot(self, service):
        sub = service.create_subscription("basic-monthly")
        replacement = service.change_subscription_plan("basic-quarterly", idempotency_key="k1")
        account = service.account()
        assert account.subscription_id == replacement.id
        assert account.subscription_id != sub.id
        assert account.interval == "quarterly"

    def test_partial_failure_flags_reconciliation(self, service, gateway):
        sub = service.create_subscription("basic-monthly")
        gateway.fail_next("create_subscription", "Card declined")

        with pytest.raises(PartialFailureError):
            service.change_subscription_plan("premium-yearly", idempotency_key="k2")

        account = service.account()
        assert account.reconciliation_required is True
        # Snapshot still points at the old subscription
        assert account.subscription_id == sub.id
        assert service.state() == LifecycleState.CANCELED

    def test_retry_clears_reconciliation(self, service, gateway):
        service.create_subscription("basic-monthly")
        gateway.fail_next("create_subscription", "Card declined")
        with pytest.raises(PartialFailureError):
            service.change_subscription_plan("premium-yearly", idempotency_key="k3")

        replacement = service.retry_plan_change("k3")

        account = service.account()
        assert account.subscription_id == replacement.id
        assert account.reconciliation_required is False
        assert service.state() == LifecycleState.ACTIVE

    def test_create_refused_while_swap_unresolved(self, service, gateway):
        service.create_subscription("basic-monthly")
        gateway.fail_next("create_subscription", "Card declined")
        with pytest.raises(PartialFailureError):
            service.change_subscription_plan("premium-yearly", idempotency_key="k4")

        with pytest.raises(BillingValidationError, match="unresolved plan change k4"):
            service.create_subscription("premium-monthly")

        assert service.account().reconciliation_required is True
        assert [s.id for s in gateway.subscriptions.values() if s.active] == []

    def test_retry_refused_once_customer_moved_on(self, service, gateway):
        service.create_subscription("basic-monthly")
        gateway.fail_next("create_subscription", "Card declined")
        with pytest.raises(PartialFailureError):
            service.change_subscription_plan("premium-yearly", idempotency_key="k5")
        other = gateway.create_subscription(CUSTOMER_ID, "basic-monthly", "card_1")
        service.account_repo.record_subscription(CUSTOMER_ID, other)

        with pytest.raises(BillingValidationError, match="started from subscription"):
            service.retry_plan_change("k5")

        assert [s.id for s in gateway.subscriptions.values() if s.active] == [other.id]
        assert service.account().subscription_id == other.id


class TestCancelResume:
    def test_cancel_records_end_of_period(self, service):
        sub = service.create_subscription("basic-monthly")
        service.cancel_subscription()
        account = service.account()
        assert account.subscription_ends_at.replace(tzinfo=None) == sub.period_end.replace(
            tzinfo=None
        )
        assert account.active is True

    def test_cancel_immediately(self, service):
        service.create_subscription("basic-monthly")
        service.cancel_subscription(at_period_end=False)
        account = service.account()
        assert account.active is False
        assert account.subscription_ends_at.replace(tzinfo=None) == NOW.replace(tzinfo=None)
        assert service.state() == LifecycleState.CANCELED

    def test_resume(self, service):
        service.create_subscription("basic-monthly")
        service.cancel_subscription()
        service.resume_subscription()
        assert service.state() == LifecycleState.ACTIVE
        assert service.account().subscription_ends_at is None

    def test_cancel_without_subscription(self, service):
        with pytest.raises(NotFoundError):
            service.cancel_subscription()


class TestBuildInvoice:
    def test_empty(self, service):
        invoice = service.build_invoice()
        assert invoice.items == []
        assert invoice.subtotal_cents is None
        assert invoice.total_cents is None

    def test_after_subscribing_with_coupon(self, service, gateway):
        gateway.add_coupon(Discount(coupon_id="spring", percent_off=Decimal("20")))
        service.create_subscription("basic-monthly", coupon="spring")

        invoice = service.build_invoice()

        assert invoice.subtotal_cents == 1000
        assert invoice.total_cents == 800
        assert invoice.amount_cents == 800
        assert [item.is_discount for item in invoice.items] == [False, True]

    def test_skips_malformed_history(self, service, gateway):
        gateway.add_billing_line(
            CUSTOMER_ID,
            BillingLineRecord(id="l1", kind=BillingLineKind.CHARGE.value, amount_cents=1000),
        )
        gateway.add_billing_line(
            CUSTOMER_ID, BillingLineRecord(id="l2", kind="mystery", amount_cents=5)
        )
        invoice = service.build_invoice()
        assert invoice.subtotal_cents == 1000

    def test_trial_has_no_charges(self, service):
        service.create_subscription("basic-monthly", trial_ends_at=NOW + timedelta(days=7))
        invoice = service.build_invoice()
        assert invoice.subtotal_cents is None
