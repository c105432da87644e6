"""Tests for SubscriptionLifecycleService."""

from datetime import timedelta
from decimal import Decimal

import pytest

from cadence.core.errors import (
    BillingValidationError,
    GatewayRejectedError,
    NoPaymentMethodError,
    NotFoundError,
    PartialFailureError,
)
from cadence.gateways.base import Discount, PaymentMethod
from cadence.models.plan_swap import PlanSwapStatus
from cadence.repositories.plan_swap_repository import PlanSwapRepository
from cadence.schemas.subscription import LifecycleState
from cadence.services.subscription_lifecycle import SubscriptionLifecycleService
from tests.conftest import CUSTOMER_ID, NOW


@pytest.fixture
def service(db_session, gateway, clock):
    return SubscriptionLifecycleService(db_session, gateway, CUSTOMER_ID, clock=clock)


@pytest.fixture
def subscription(service):
    return service.create("basic-monthly")


def _operations(gateway):
    return [operation for operation, _ in gateway.calls]


class TestCreate:
    def test_create(self, service, gateway):
        sub = service.create("basic-monthly")
        assert sub.plan_id == "basic-monthly"
        assert sub.payment_method_token == "card_1"
        assert service.state(sub) == LifecycleState.ACTIVE
        assert _operations(gateway) == ["create_subscription"]

    def test_unknown_plan(self, service, gateway):
        with pytest.raises(NotFoundError):
            service.create("missing")
        assert gateway.calls == []

    def test_no_payment_method(self, db_session, gateway, clock):
        service = SubscriptionLifecycleService(db_session, gateway, "cus_2", clock=clock)
        with pytest.raises(NoPaymentMethodError, match="No available payment method"):
            service.create("basic-monthly")
        assert gateway.calls == []

    def test_only_expired_payment_methods(self, db_session, gateway, clock):
        gateway.add_payment_method("cus_2", PaymentMethod(token="card_old", expired=True))
        service = SubscriptionLifecycleService(db_session, gateway, "cus_2", clock=clock)
        with pytest.raises(NoPaymentMethodError):
            service.create("basic-monthly")

    def test_picks_first_usable_payment_method(self, db_session, gateway, clock):
        gateway.add_payment_method("cus_2", PaymentMethod(token="card_old", expired=True))
        gateway.add_payment_method("cus_2", PaymentMethod(token="card_new"))
        service = SubscriptionLifecycleService(db_session, gateway, "cus_2", clock=clock)
        assert service.create("basic-monthly").payment_method_token == "card_new"

    def test_prefers_default_payment_method(self, db_session, gateway, clock):
        gateway.add_payment_method("cus_2", PaymentMethod(token="card_a"))
        gateway.add_payment_method("cus_2", PaymentMethod(token="card_b", is_default=True))
        service = SubscriptionLifecycleService(db_session, gateway, "cus_2", clock=clock)
        assert service.create("basic-monthly").payment_method_token == "card_b"

    def test_expired_default_falls_back(self, db_session, gateway, clock):
        gateway.add_payment_method("cus_2", PaymentMethod(token="card_a"))
        gateway.add_payment_method(
            "cus_2", PaymentMethod(token="card_b", expired=True, is_default=True)
        )
        service = SubscriptionLifecycleService(db_session, gateway, "cus_2", clock=clock)
        assert service.select_payment_method() == "card_a"

    def test_explicit_expired_token(self, service, gateway):
        gateway.add_payment_method(CUSTOMER_ID, PaymentMethod(token="card_old", expired=True))
        with pytest.raises(NoPaymentMethodError):
            service.create("basic-monthly", "card_old")

    def test_trial_from_target_date(self, service, gateway):
        sub = service.create("basic-monthly", trial_ends_at=NOW + timedelta(days=14))
        assert sub.trial_ends_at == NOW + timedelta(days=14)
        assert gateway.list_billing_history(CUSTOMER_ID) == []

    def test_trial_in_the_past_bills_now(self, service, gateway):
        sub = service.create("basic-monthly", trial_ends_at=NOW - timedelta(days=2))
        assert sub.trial_ends_at is None
        assert len(gateway.list_billing_history(CUSTOMER_ID)) == 2

    def test_coupon(self, service, gateway):
        gateway.add_coupon(Discount(coupon_id="spring", percent_off=Decimal("20")))
        sub = service.create("basic-monthly", coupon="spring")
        assert [d.coupon_id for d in sub.discounts] == ["spring"]

    def test_expired_coupon(self, service, gateway):
        gateway.add_coupon(
            Discount(
                coupon_id="winter",
                amount_off_cents=100,
                expires_at=NOW - timedelta(days=1),
            )
        )
        with pytest.raises(BillingValidationError, match="Coupon 'winter' has expired"):
            service.create("basic-monthly", coupon="winter")

    def test_unknown_coupon(self, service):
        with pytest.raises(NotFoundError):
            service.create("basic-monthly", coupon="nope")

    def test_empty_discounts_are_dropped(self, service):
        sub = service.create(
            "basic-monthly",
            discounts=[Discount(coupon_id="plan-credit", amount_off_cents=0)],
        )
        assert sub.discounts == []


class TestSameFrequencyChange:
    def test_updates_in_place(self, service, gateway, subscription):
        updated = service.update(subscription.id, "premium-monthly")
        assert updated.id == subscription.id
        assert updated.plan_id == "premium-monthly"
        assert updated.price_cents == 2500
        assert updated.never_expires is True
        assert _operations(gateway) == ["create_subscription", "update_subscription"]

    def test_clears_pending_cancellation(self, service, subscription):
        service.cancel(subscription.id)
        updated = service.update(subscription.id, "premium-monthly")
        assert service.state(updated) == LifecycleState.ACTIVE

    def test_same_plan(self, service, subscription):
        with pytest.raises(BillingValidationError, match="must be different"):
            service.update(subscription.id, "basic-monthly")

    def test_unknown_target_plan(self, service, subscription):
        with pytest.raises(NotFoundError):
            service.update(subscription.id, "missing")

    def test_canceled_subscription(self, service, subscription):
        service.cancel(subscription.id, at_period_end=False)
        with pytest.raises(BillingValidationError):
            service.update(subscription.id, "premium-monthly")


class TestFrequencySwap:
    def _prepare(self, gateway, subscription, days_left=15, balance_cents=-200):
        stored = gateway.subscriptions[subscription.id]
        stored.period_end = NOW + timedelta(days=days_left)
        stored.balance_cents = balance_cents

    def test_swap_carries_credit(self, service, gateway, subscription, db_session):
        self._prepare(gateway, subscription)

        replacement = service.update(subscription.id, "premium-yearly", idempotency_key="swap-1")

        assert replacement.id != subscription.id
        assert replacement.plan_id == "premium-yearly"
        assert replacement.interval == "yearly"
        assert replacement.trial_ends_at is None
        credit = replacement.discounts[0]
        assert credit.coupon_id == "plan-credit"
        assert credit.amount_off_cents == 575
        assert credit.number_of_billing_cycles == 1
        assert gateway.find_subscription(subscription.id).active is False

        swap = PlanSwapRepository(db_session).get_by_key("swap-1")
        assert swap.status == PlanSwapStatus.COMPLETED.value
        assert swap.new_subscription_id == replacement.id
        assert swap.credit_amount_cents == 575

    def test_cancel_happens_before_create(self, service, gateway, subscription):
        self._prepare(gateway, subscription)
        service.update(subscription.id, "premium-yearly")
        assert _operations(gateway)[1:] == ["cancel_subscription", "create_subscription"]

    def test_no_credit_without_remaining_time(self, service, gateway, subscription):
        self._prepare(gateway, subscription, days_left=0, balance_cents=0)
        replacement = service.update(subscription.id, "premium-yearly")
        assert replacement.discounts == []

    def test_keeps_payment_method(self, service, gateway, subscription):
        gateway.add_payment_method(CUSTOMER_ID, PaymentMethod(token="card_2"))
        gateway.subscriptions[subscription.id].payment_method_token = "card_2"
        replacement = service.update(subscription.id, "premium-yearly")
        assert replacement.payment_method_token == "card_2"

    def test_passthrough_options_are_stored(self, service, db_session, subscription):
        service.update(
            subscription.id,
            "premium-yearly",
            idempotency_key="swap-opts",
            options={"merchant_account_id": "acct_eu"},
        )
        swap = PlanSwapRepository(db_session).get_by_key("swap-opts")
        assert swap.passthrough_options == {"merchant_account_id": "acct_eu"}

    def test_replay_with_same_key(self, service, gateway, subscription):
        first = service.update(subscription.id, "premium-yearly", idempotency_key="swap-2")
        calls = len(gateway.calls)
        second = service.update(subscription.id, "premium-yearly", idempotency_key="swap-2")
        assert second.id == first.id
        assert len(gateway.calls) == calls


class TestSwapFailures:
    def test_failed_create_is_partial_failure(self, service, gateway, subscription, db_session):
        gateway.subscriptions[subscription.id].period_end = NOW + timedelta(days=15)
        gateway.fail_next("create_subscription", "Card declined")

        with pytest.raises(PartialFailureError) as exc_info:
            service.update(subscription.id, "premium-yearly", idempotency_key="swap-3")

        error = exc_info.value
        assert error.swap_key == "swap-3"
        assert error.old_subscription_id == subscription.id
        assert error.current_plan_id == "basic-monthly"
        assert error.target_plan_id == "premium-yearly"
        assert error.credit_amount_cents == 375
        assert error.reason == "Gateway rejected create_subscription: Card declined"
        assert isinstance(error.__cause__, GatewayRejectedError)

        assert gateway.find_subscription(subscription.id).active is False
        swap = PlanSwapRepository(db_session).get_by_key("swap-3")
        assert swap.status == PlanSwapStatus.PARTIAL_FAILURE.value
        assert "Card declined" in swap.last_error

    def test_partial_failure_is_not_retried(self, service, gateway, subscription):
        gateway.fail_next("create_subscription", "Card declined")
        with pytest.raises(PartialFailureError):
            service.update(subscription.id, "premium-yearly")
        assert _operations(gateway).count("create_subscription") == 2

    def test_explicit_retry_completes_swap(self, service, gateway, subscription, db_session):
        gateway.fail_next("create_subscription", "Card declined")
        with pytest.raises(PartialFailureError):
            service.update(subscription.id, "premium-yearly", idempotency_key="swap-4")

        replacement = service.retry_swap("swap-4")

        assert replacement.plan_id == "premium-yearly"
        assert _operations(gateway).count("cancel_subscription") == 1
        swap = PlanSwapRepository(db_session).get_by_key("swap-4")
        assert swap.status == PlanSwapStatus.COMPLETED.value
        assert swap.attempts == 2
        assert swap.last_error is None

    def test_failed_cancel_aborts(self, service, gateway, subscription, db_session):
        gateway.fail_next("cancel_subscription", "Gateway timeout")

        with pytest.raises(GatewayRejectedError, match="Gateway timeout"):
            service.update(subscription.id, "premium-yearly", idempotency_key="swap-5")

        assert gateway.find_subscription(subscription.id).active is True
        assert "create_subscription" not in _operations(gateway)[1:]
        swap = PlanSwapRepository(db_session).get_by_key("swap-5")
        assert swap.status == PlanSwapStatus.ABORTED.value

    def test_aborted_swap_resumes_with_same_key(self, service, gateway, subscription):
        gateway.fail_next("cancel_subscription", "Gateway timeout")
        with pytest.raises(GatewayRejectedError):
            service.update(subscription.id, "premium-yearly", idempotency_key="swap-6")

        replacement = service.update(subscription.id, "premium-yearly", idempotency_key="swap-6")

        assert replacement.plan_id == "premium-yearly"
        assert gateway.find_subscription(subscription.id).active is False

    def test_retry_unknown_swap(self, service):
        with pytest.raises(NotFoundError):
            service.retry_swap("nope")

    def test_retry_other_customers_swap(self, service, gateway, subscription, db_session, clock):
        gateway.fail_next("create_subscription", "Card declined")
        with pytest.raises(PartialFailureError):
            service.update(subscription.id, "premium-yearly", idempotency_key="swap-7")

        other = SubscriptionLifecycleService(db_session, gateway, "cus_2", clock=clock)
        with pytest.raises(NotFoundError):
            other.retry_swap("swap-7")

    def test_retry_from_another_subscription_is_refused(
        self, service, gateway, subscription, db_session
    ):
        gateway.fail_next("create_subscription", "Card declined")
        with pytest.raises(PartialFailureError):
            service.update(subscription.id, "premium-yearly", idempotency_key="swap-8")

        with pytest.raises(BillingValidationError, match="now on sub_other"):
            service.retry_swap("swap-8", current_subscription_id="sub_other")

        swap = PlanSwapRepository(db_session).get_by_key("swap-8")
        assert swap.status == PlanSwapStatus.PARTIAL_FAILURE.value
        assert swap.attempts == 1
        assert _operations(gateway).count("create_subscription") == 2


class TestCancelResume:
    def test_cancel_at_period_end(self, service, gateway, subscription):
        canceled = service.cancel(subscription.id)
        assert canceled.number_of_billing_cycles == 1
        assert canceled.active is True
        assert service.state(canceled) == LifecycleState.GRACE_PERIOD
        assert "cancel_subscription" not in _operations(gateway)

    def test_cancel_during_grace_period_is_noop(self, service, gateway, subscription):
        service.cancel(subscription.id)
        calls = len(gateway.calls)
        again = service.cancel(subscription.id)
        assert service.state(again) == LifecycleState.GRACE_PERIOD
        assert len(gateway.calls) == calls

    def test_cancel_immediately(self, service, subscription):
        canceled = service.cancel(subscription.id, at_period_end=False)
        assert canceled.active is False
        assert service.state(canceled) == LifecycleState.CANCELED

    def test_cancel_canceled(self, service, subscription):
        service.cancel(subscription.id, at_period_end=False)
        with pytest.raises(BillingValidationError, match="already canceled"):
            service.cancel(subscription.id)

    def test_resume_restores_subscription(self, service, subscription):
        service.cancel(subscription.id)
        resumed = service.resume(subscription.id)
        assert service.state(resumed) == LifecycleState.ACTIVE
        assert resumed.plan_id == subscription.plan_id
        assert resumed.price_cents == subscription.price_cents
        assert resumed.never_expires is True

    def test_resume_active_is_noop(self, service, gateway, subscription):
        resumed = service.resume(subscription.id)
        assert resumed.id == subscription.id
        assert "update_subscription" not in _operations(gateway)

    def test_resume_ended(self, service, subscription):
        service.cancel(subscription.id, at_period_end=False)
        with pytest.raises(BillingValidationError, match="has ended"):
            service.resume(subscription.id)

    def test_grace_period_ends_with_period(self, db_session, gateway, service, subscription):
        service.cancel(subscription.id)
        later = SubscriptionLifecycleService(
            db_session, gateway, CUSTOMER_ID, clock=lambda: NOW + timedelta(days=40)
        )
        assert later.state(gateway.find_subscription(subscription.id)) == LifecycleState.CANCELED


class TestState:
    def test_no_subscription(self, service):
        assert service.state(None) == LifecycleState.NONE
