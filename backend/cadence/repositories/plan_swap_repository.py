"""PlanSwap repository for data access."""

from typing import Any

from sqlalchemy.orm import Session

from cadence.models.plan_swap import PlanSwap, PlanSwapStatus


class PlanSwapRepository:
    """Repository for PlanSwap model."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_key(self, idempotency_key: str) -> PlanSwap | None:
        return (
            self.db.query(PlanSwap)
            .filter(PlanSwap.idempotency_key == idempotency_key)
            .first()
        )

    def get_unresolved(self, customer_id: str) -> list[PlanSwap]:
        """Swaps that canceled an old subscription without confirming a replacement."""
        return (
            self.db.query(PlanSwap)
            .filter(
                PlanSwap.customer_id == customer_id,
                PlanSwap.status.in_(
                    [PlanSwapStatus.OLD_CANCELED.value, PlanSwapStatus.PARTIAL_FAILURE.value]
                ),
            )
            .order_by(PlanSwap.created_at)
            .all()
        )

    def create(
        self,
        *,
        idempotency_key: str,
        customer_id: str,
        old_subscription_id: str,
        current_plan_id: str,
        target_plan_id: str,
        credit_amount_cents: int,
        credit_billing_cycles: int,
        passthrough_options: dict[str, Any] | None = None,
    ) -> PlanSwap:
        swap = PlanSwap(
            idempotency_key=idempotency_key,
            customer_id=customer_id,
            old_subscription_id=old_subscription_id,
            current_plan_id=current_plan_id,
            target_plan_id=target_plan_id,
            credit_amount_cents=credit_amount_cents,
            credit_billing_cycles=credit_billing_cycles,
            passthrough_options=passthrough_options,
            status=PlanSwapStatus.PENDING.value,
        )
        self.db.add(swap)
        self.db.commit()
        self.db.refresh(swap)
        return swap

    def mark(
        self,
        swap: PlanSwap,
        status: PlanSwapStatus,
        *,
        new_subscription_id: str | None = None,
        error: str | None = None,
    ) -> PlanSwap:
        swap.status = status.value  # type: ignore[assignment]
        if new_subscription_id is not None:
            swap.new_subscription_id = new_subscription_id  # type: ignore[assignment]
        swap.last_error = error  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(swap)
        return swap

    def increment_attempts(self, swap: PlanSwap) -> PlanSwap:
        swap.attempts = int(swap.attempts or 0) + 1  # type: ignore[assignment]
        self.db.commit()
        self.db.refresh(swap)
        return swap
