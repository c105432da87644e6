"""Read-only plan lookup backed by the payment gateway."""

from cadence.core.errors import NotFoundError
from cadence.gateways.base import PaymentGatewayPort, Plan


class PlanCatalog:
    """Looks up plan price and billing frequency.

    Plans are cached for the lifetime of the catalog, which is expected to
    be one customer operation.
    """

    def __init__(self, gateway: PaymentGatewayPort):
        self.gateway = gateway
        self._plans: dict[str, Plan] = {}

    def find_plan(self, plan_id: str | None) -> Plan:
        """Return the plan or raise ``NotFoundError``."""
        if not plan_id:
            raise NotFoundError("plan", plan_id)
        if plan_id not in self._plans:
            self._plans[plan_id] = self.gateway.find_plan(plan_id)
        return self._plans[plan_id]

    def all_plans(self) -> list[Plan]:
        plans = self.gateway.list_plans()
        for plan in plans:
            self._plans[plan.id] = plan
        return plans

    def would_change_billing_frequency(self, current_plan_id: str, target_plan_id: str) -> bool:
        current = self.find_plan(current_plan_id)
        target = self.find_plan(target_plan_id)
        return current.billing_frequency_months != target.billing_frequency_months
