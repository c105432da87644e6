from cadence.models.billing_account import BillingAccount
from cadence.models.plan_swap import PlanSwap, PlanSwapStatus

__all__ = [
    "BillingAccount",
    "PlanSwap",
    "PlanSwapStatus",
]
